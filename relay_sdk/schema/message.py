# relay_sdk/schema/message.py
# SPDX-License-Identifier: Apache-2.0
"""
Canonical message model shared by every vendor adapter.

A `Message` carries a fixed set of core fields (role, text, reasoning,
tool calls, multimodal parts, response metadata) plus an open `extra`
attachment map for vendor side-channel data (thinking signatures, cache
breakpoints, request ids, ...). `ToolCall`, multimodal parts and
`ToolInfo` carry the same kind of map at a finer grain.

Every value stored in an `extra` map of a streamed message must have a
reducer registered in `relay_sdk.schema.registry`, otherwise
concatenating two chunks that both carry the key fails.

Mutation discipline
-------------------
Producers build a fresh `Message` per chunk. Once a chunk is sent over a
pipe, the producer keeps no reference to it and never mutates it again.
"""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union

from relay_sdk.schema.errors import SchemaError


class Role(str, Enum):
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    TOOL = "tool"


class ChatMessagePartType(str, Enum):
    TEXT = "text"
    IMAGE_URL = "image_url"
    AUDIO_URL = "audio_url"
    VIDEO_URL = "video_url"
    FILE_URL = "file_url"


class ImageURLDetail(str, Enum):
    HIGH = "high"
    LOW = "low"
    AUTO = "auto"


class ToolChoice(str, Enum):
    """How the model may use bound tools."""
    FORBIDDEN = "forbidden"
    ALLOWED = "allowed"
    FORCED = "forced"


# =============================================================================
# Tool calls
# =============================================================================

@dataclass
class FunctionCall:
    name: str = ""
    arguments: str = ""


@dataclass
class ToolCall:
    """
    A tool invocation requested by the model.

    Attributes:
        index:
            Position of the call within a (possibly parallel) turn. None means
            the producer did not know it; the concat engine then matches the
            fragment by `id`.
        id:
            Vendor call id; continuation fragments usually leave it empty.
        function:
            Name and JSON arguments. Streamed arguments arrive as fragments.
        extra:
            Per-call attachments, e.g. a Gemini thought signature.
    """
    id: str = ""
    function: FunctionCall = field(default_factory=FunctionCall)
    index: Optional[int] = None
    type: str = "function"
    extra: Optional[Dict[str, Any]] = None


@dataclass
class ToolInfo:
    """Tool definition bound to a chat model. `parameters` is a JSON schema."""
    name: str
    description: str = ""
    parameters: Optional[Dict[str, Any]] = None
    extra: Optional[Dict[str, Any]] = None


# =============================================================================
# Multimodal parts
# =============================================================================

@dataclass
class MessagePartCommon:
    """
    Payload shared by every media part: exactly one of `url` or
    `base64_data`, plus the MIME type of the payload.
    """
    url: Optional[str] = None
    base64_data: Optional[str] = None
    mime_type: str = ""
    extra: Optional[Dict[str, Any]] = None

    def validate(self) -> None:
        has_url = bool(self.url)
        has_data = bool(self.base64_data)
        if has_url == has_data:
            raise SchemaError(
                "media part must carry exactly one of url or base64_data",
                details={"has_url": has_url, "has_base64_data": has_data},
            )
        if has_data and not self.mime_type:
            raise SchemaError("base64 media part requires mime_type")


@dataclass
class MessageInputImage(MessagePartCommon):
    detail: Optional[ImageURLDetail] = None


@dataclass
class MessageInputAudio(MessagePartCommon):
    pass


@dataclass
class MessageInputVideo(MessagePartCommon):
    pass


@dataclass
class MessageInputFile(MessagePartCommon):
    name: str = ""


@dataclass
class MessageOutputImage(MessagePartCommon):
    pass


@dataclass
class MessageOutputAudio(MessagePartCommon):
    pass


@dataclass
class MessageOutputVideo(MessagePartCommon):
    pass


@dataclass
class MessageInputPart:
    type: ChatMessagePartType = ChatMessagePartType.TEXT
    text: str = ""
    image: Optional[MessageInputImage] = None
    audio: Optional[MessageInputAudio] = None
    video: Optional[MessageInputVideo] = None
    file: Optional[MessageInputFile] = None
    extra: Optional[Dict[str, Any]] = None


@dataclass
class MessageOutputPart:
    type: ChatMessagePartType = ChatMessagePartType.TEXT
    text: str = ""
    image: Optional[MessageOutputImage] = None
    audio: Optional[MessageOutputAudio] = None
    video: Optional[MessageOutputVideo] = None
    extra: Optional[Dict[str, Any]] = None


_PART_FIELDS = {
    ChatMessagePartType.IMAGE_URL: "image",
    ChatMessagePartType.AUDIO_URL: "audio",
    ChatMessagePartType.VIDEO_URL: "video",
    ChatMessagePartType.FILE_URL: "file",
}


def validate_part(part: Union[MessageInputPart, MessageOutputPart]) -> None:
    """
    Check that the union field named by `part.type` is set and that its
    payload carries exactly one of url / base64 data.
    """
    if part.type == ChatMessagePartType.TEXT:
        return
    attr = _PART_FIELDS.get(part.type)
    if attr is None:
        raise SchemaError(f"unknown message part type: {part.type!r}")
    payload = getattr(part, attr, None)
    if payload is None:
        raise SchemaError(
            f"{part.type.value} part requires the '{attr}' field",
            details={"type": part.type.value},
        )
    payload.validate()


# =============================================================================
# Response metadata
# =============================================================================

@dataclass
class TokenUsage:
    """
    Token accounting reported by the vendor. Streaming vendors report
    cumulative counts, so chunks are merged with a field-wise max.
    """
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0
    cached_tokens: int = 0
    reasoning_tokens: int = 0


@dataclass
class ResponseMeta:
    finish_reason: str = ""
    usage: Optional[TokenUsage] = None


# =============================================================================
# Message
# =============================================================================

@dataclass
class Message:
    role: Optional[Role] = None
    content: str = ""
    reasoning_content: str = ""
    tool_calls: List[ToolCall] = field(default_factory=list)
    user_input_multi_content: List[MessageInputPart] = field(default_factory=list)
    assistant_gen_multi_content: List[MessageOutputPart] = field(default_factory=list)
    name: str = ""
    tool_call_id: str = ""
    tool_name: str = ""
    response_meta: Optional[ResponseMeta] = None
    extra: Optional[Dict[str, Any]] = None

    def is_empty(self) -> bool:
        """True when the message carries no text, reasoning, tool call or media."""
        return not (
            self.content
            or self.reasoning_content
            or self.tool_calls
            or self.user_input_multi_content
            or self.assistant_gen_multi_content
        )

    def copy(self) -> "Message":
        """
        Copy with fresh containers. Attachment values are shared, the maps
        and lists holding them are not.
        """
        return Message(
            role=self.role,
            content=self.content,
            reasoning_content=self.reasoning_content,
            tool_calls=[_copy_tool_call(tc) for tc in self.tool_calls],
            user_input_multi_content=[copy.copy(p) for p in self.user_input_multi_content],
            assistant_gen_multi_content=[copy.copy(p) for p in self.assistant_gen_multi_content],
            name=self.name,
            tool_call_id=self.tool_call_id,
            tool_name=self.tool_name,
            response_meta=copy.deepcopy(self.response_meta),
            extra=dict(self.extra) if self.extra is not None else None,
        )


def _copy_tool_call(tc: ToolCall) -> ToolCall:
    return ToolCall(
        id=tc.id,
        function=FunctionCall(name=tc.function.name, arguments=tc.function.arguments),
        index=tc.index,
        type=tc.type,
        extra=dict(tc.extra) if tc.extra is not None else None,
    )


def system_message(content: str) -> Message:
    return Message(role=Role.SYSTEM, content=content)


def user_message(content: str) -> Message:
    return Message(role=Role.USER, content=content)


def assistant_message(content: str, tool_calls: Optional[List[ToolCall]] = None) -> Message:
    return Message(role=Role.ASSISTANT, content=content, tool_calls=list(tool_calls or []))


def tool_message(content: str, tool_call_id: str, tool_name: str = "") -> Message:
    return Message(
        role=Role.TOOL,
        content=content,
        tool_call_id=tool_call_id,
        tool_name=tool_name,
    )


# =============================================================================
# Extra accessors
# =============================================================================

def get_extra(holder: Any, key: str, tp: Optional[Union[type, Tuple[type, ...]]] = None) -> Tuple[Any, bool]:
    """
    Typed read from an `extra` map.

    Works on anything with an `extra` attribute (Message, ToolCall, parts,
    ToolInfo). Returns `(value, True)` on success and `(None, False)` when
    the map or key is missing or the value is not an instance of `tp`.
    Never raises.
    """
    extra = getattr(holder, "extra", None)
    if not extra or key not in extra:
        return None, False
    value = extra[key]
    if tp is not None and not isinstance(value, tp):
        return None, False
    return value, True


def set_extra(holder: Any, key: str, value: Any) -> None:
    """Write to an `extra` map, allocating it on first use."""
    if getattr(holder, "extra", None) is None:
        holder.extra = {}
    holder.extra[key] = value


__all__ = [
    "Role",
    "ChatMessagePartType",
    "ImageURLDetail",
    "ToolChoice",
    "FunctionCall",
    "ToolCall",
    "ToolInfo",
    "MessagePartCommon",
    "MessageInputImage",
    "MessageInputAudio",
    "MessageInputVideo",
    "MessageInputFile",
    "MessageOutputImage",
    "MessageOutputAudio",
    "MessageOutputVideo",
    "MessageInputPart",
    "MessageOutputPart",
    "validate_part",
    "TokenUsage",
    "ResponseMeta",
    "Message",
    "system_message",
    "user_message",
    "assistant_message",
    "tool_message",
    "get_extra",
    "set_extra",
]
