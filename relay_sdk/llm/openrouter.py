# relay_sdk/llm/openrouter.py
# SPDX-License-Identifier: Apache-2.0
"""
OpenRouter chat model adapter.

OpenRouter speaks the Chat Completions wire format, so this adapter is an
`OpenAIChatModel` with OpenRouter extensions carried in `Message.extra`:

- `openrouter_reasoning_details`: structured reasoning blocks. Streamed
  fragments are concatenated by extending the list, and the details are
  replayed on the next turn.
- `openrouter_terminated_error`: set on the chunk whose finish reason is
  "error" when OpenRouter aborts a stream after it started. The stream
  itself ends normally; callers check `get_stream_terminated_error`.
- `openrouter_cache_control`: prompt-cache markers on a whole message or
  on individual text parts (ephemeral, 5 minute or 1 hour TTL).

Generated images (`delta.images`) become output image parts; data URLs are
split into MIME type and base64 payload, other URLs are kept as URLs.
"""

from __future__ import annotations

import dataclasses
import logging
import os
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple, Union

from relay_sdk.llm.llm_base import BadRequest, CallOptions, MetricsSink
from relay_sdk.llm.openai import OpenAIChatModel, _field
from relay_sdk.schema.message import (
    ChatMessagePartType,
    Message,
    MessageInputPart,
    MessageOutputImage,
    MessageOutputPart,
    get_extra,
    set_extra,
)
from relay_sdk.schema.registry import register_concat_func, register_name

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://openrouter.ai/api/v1"

KEY_TERMINATED_ERROR = "openrouter_terminated_error"
KEY_REASONING_DETAILS = "openrouter_reasoning_details"
KEY_CACHE_CONTROL = "openrouter_cache_control"

_FINISH_REASON_ERROR = "error"


# =============================================================================
# Extension types
# =============================================================================

@dataclass
class ReasoningDetail:
    type: str = ""
    format: str = ""
    index: int = 0
    text: str = ""
    data: str = ""

    @classmethod
    def from_raw(cls, raw: Any) -> "ReasoningDetail":
        return cls(
            type=str(_field(raw, "type", "") or ""),
            format=str(_field(raw, "format", "") or ""),
            index=int(_field(raw, "index", 0) or 0),
            text=str(_field(raw, "text", "") or ""),
            data=str(_field(raw, "data", "") or ""),
        )

    def to_param(self) -> Dict[str, Any]:
        return {k: v for k, v in dataclasses.asdict(self).items() if v not in ("", None)}


class ReasoningDetails(list):
    """Ordered `ReasoningDetail` blocks of one assistant reply."""

    def to_dict(self) -> List[Dict[str, Any]]:
        return [d.to_param() for d in self]

    @classmethod
    def from_dict(cls, payload: Sequence[Mapping[str, Any]]) -> "ReasoningDetails":
        return cls(ReasoningDetail.from_raw(item) for item in payload)


@dataclass
class StreamTerminatedError:
    """Error reported by OpenRouter after a stream had already started."""
    code: str = ""
    message: str = ""


class CacheControlTTL(str, Enum):
    FIVE_MINUTES = "5m"
    ONE_HOUR = "1h"


@dataclass
class CacheControl:
    type: str = "ephemeral"
    ttl: str = CacheControlTTL.FIVE_MINUTES.value

    def to_param(self) -> Dict[str, Any]:
        return {"type": self.type, "ttl": self.ttl}


@register_concat_func(ReasoningDetails)
def _concat_reasoning_details(values: List[ReasoningDetails]) -> ReasoningDetails:
    out = ReasoningDetails()
    for details in values:
        out.extend(details)
    return out


@register_concat_func(StreamTerminatedError)
def _concat_terminated_errors(values: List[StreamTerminatedError]) -> StreamTerminatedError:
    return values[-1]


@register_concat_func(CacheControl)
def _concat_cache_controls(values: List[CacheControl]) -> CacheControl:
    for value in values:
        if value.ttl == CacheControlTTL.ONE_HOUR.value:
            return value
    return values[-1]


register_name(ReasoningDetails, "_relay_openrouter_reasoning_details")
register_name(StreamTerminatedError, "_relay_openrouter_stream_terminated_error")
register_name(CacheControl, "_relay_openrouter_cache_control")


# =============================================================================
# Extra helpers
# =============================================================================

def get_stream_terminated_error(msg: Message) -> Tuple[Optional[StreamTerminatedError], bool]:
    return get_extra(msg, KEY_TERMINATED_ERROR, StreamTerminatedError)


def get_reasoning_details(msg: Message) -> Tuple[Optional[ReasoningDetails], bool]:
    return get_extra(msg, KEY_REASONING_DETAILS, ReasoningDetails)


def _cache_control(ttl: Union[CacheControlTTL, str]) -> CacheControl:
    return CacheControl(ttl=CacheControlTTL(ttl).value)


def enable_message_cache_control(
    msg: Message, ttl: Union[CacheControlTTL, str] = CacheControlTTL.FIVE_MINUTES
) -> None:
    """Mark the whole message content as a cache breakpoint."""
    set_extra(msg, KEY_CACHE_CONTROL, _cache_control(ttl))


def enable_input_part_cache_control(
    part: MessageInputPart, ttl: Union[CacheControlTTL, str] = CacheControlTTL.FIVE_MINUTES
) -> None:
    """Only text parts may carry cache control."""
    set_extra(part, KEY_CACHE_CONTROL, _cache_control(ttl))


def enable_output_part_cache_control(
    part: MessageOutputPart, ttl: Union[CacheControlTTL, str] = CacheControlTTL.FIVE_MINUTES
) -> None:
    """Only text parts may carry cache control."""
    set_extra(part, KEY_CACHE_CONTROL, _cache_control(ttl))


def _get_cache_control(holder: Any) -> Optional[CacheControl]:
    value, ok = get_extra(holder, KEY_CACHE_CONTROL, CacheControl)
    return value if ok else None


# =============================================================================
# Response extensions
# =============================================================================

def _split_data_url(url: str) -> Optional[Tuple[str, str]]:
    if not url.startswith("data:"):
        return None
    header, sep, data = url[len("data:"):].partition(";base64,")
    if not sep:
        return None
    return header, data


def _image_parts(msg: Message, images: Sequence[Any]) -> List[MessageOutputPart]:
    parts: List[MessageOutputPart] = []
    if msg.content:
        parts.append(MessageOutputPart(type=ChatMessagePartType.TEXT, text=msg.content))
    for img in images:
        url = _field(_field(img, "image_url"), "url", "") or ""
        if not url:
            continue
        split = _split_data_url(url)
        if split is None:
            image = MessageOutputImage(url=url)
        else:
            image = MessageOutputImage(mime_type=split[0], base64_data=split[1])
        parts.append(MessageOutputPart(type=ChatMessagePartType.IMAGE_URL, image=image))
    return parts


def populate_message_fields(msg: Message, raw_message: Any) -> None:
    """Copy OpenRouter fields of a response message (or delta) onto `msg`."""
    reasoning = _field(raw_message, "reasoning", "") or ""
    if reasoning and not msg.reasoning_content:
        msg.reasoning_content = reasoning

    details = _field(raw_message, "reasoning_details") or []
    if details:
        set_extra(msg, KEY_REASONING_DETAILS, ReasoningDetails(ReasoningDetail.from_raw(d) for d in details))

    images = _field(raw_message, "images") or []
    if images:
        msg.assistant_gen_multi_content.extend(_image_parts(msg, images))


def _first_choice(raw: Any) -> Any:
    for choice in _field(raw, "choices") or []:
        if (_field(choice, "index", 0) or 0) == 0:
            return choice
    return None


def _set_terminated_error(msg: Message, error: Any) -> None:
    if isinstance(error, str):
        terminated = StreamTerminatedError(message=error)
    else:
        terminated = StreamTerminatedError(
            code=str(_field(error, "code", "") or ""),
            message=str(_field(error, "message", "") or ""),
        )
    set_extra(msg, KEY_TERMINATED_ERROR, terminated)


class OpenRouterChatModel(OpenAIChatModel):
    """
    Chat model backed by OpenRouter.

    Parameters
    ----------
    api_key:
        Falls back to the OPENROUTER_API_KEY environment variable.
    base_url:
        Defaults to https://openrouter.ai/api/v1.
    models:
        Fallback model list tried by OpenRouter after `model`.
    reasoning:
        Reasoning config, e.g. ``{"effort": "high"}`` or
        ``{"max_tokens": 2000, "exclude": False}``.
    metadata:
        Free-form request metadata.

    Per-call overrides go through `CallOptions.extra` with the keys
    "models", "reasoning" and "metadata", plus every key accepted by
    `OpenAIChatModel`.
    """

    _vendor = "openrouter"

    def __init__(
        self,
        *,
        client=None,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: str = "openai/gpt-4.1-mini",
        models: Optional[Sequence[str]] = None,
        reasoning: Optional[Mapping[str, Any]] = None,
        metadata: Optional[Mapping[str, Any]] = None,
        metrics: Optional[MetricsSink] = None,
        callbacks=None,
        default_options: Optional[CallOptions] = None,
    ) -> None:
        super().__init__(
            client=client,
            api_key=api_key or os.environ.get("OPENROUTER_API_KEY"),
            base_url=base_url or DEFAULT_BASE_URL,
            model=model,
            metrics=metrics,
            callbacks=callbacks,
            default_options=default_options,
        )
        self._models = list(models) if models else None
        self._reasoning = dict(reasoning) if reasoning else None
        self._metadata = dict(metadata) if metadata else None

    # ------------------------------------------------------------------
    # Request
    # ------------------------------------------------------------------

    def _extra_body(self, options: CallOptions) -> Dict[str, Any]:
        body = super()._extra_body(options)
        for key, default in (("models", self._models), ("reasoning", self._reasoning), ("metadata", self._metadata)):
            value = options.vendor_option(key, default)
            if value:
                body[key] = value
        return body

    def _message_param(self, msg: Message) -> Dict[str, Any]:
        param = super()._message_param(msg)

        details, ok = get_reasoning_details(msg)
        if ok and details:
            param["reasoning_details"] = details.to_dict()

        if msg.user_input_multi_content:
            self._part_cache_controls(param, msg.user_input_multi_content, kind="input")
        elif msg.assistant_gen_multi_content:
            self._part_cache_controls(param, msg.assistant_gen_multi_content, kind="output")
        elif msg.content:
            ctrl = _get_cache_control(msg)
            if ctrl is not None:
                param["cache_control"] = ctrl.to_param()
        return param

    @staticmethod
    def _part_cache_controls(param: Dict[str, Any], parts: Sequence[Any], *, kind: str) -> None:
        content = param.get("content")
        position = 0
        for part in parts:
            ctrl = _get_cache_control(part)
            if ctrl is not None and part.type != ChatMessagePartType.TEXT:
                raise BadRequest(
                    f"only text parts support cache control in {kind} parts, got {part.type.value}"
                )
            # Output audio parts are replayed by id, not as content.
            if kind == "output" and part.type == ChatMessagePartType.AUDIO_URL:
                continue
            if ctrl is not None and isinstance(content, list):
                content[position]["cache_control"] = ctrl.to_param()
            position += 1

    # ------------------------------------------------------------------
    # Response
    # ------------------------------------------------------------------

    def _populate_chunk(self, msg: Message, raw: Any) -> Message:
        meta = msg.response_meta
        if meta is not None and meta.finish_reason == _FINISH_REASON_ERROR:
            error = _field(raw, "error")
            if error:
                _set_terminated_error(msg, error)
            return msg

        choice = _first_choice(raw)
        if choice is None:
            return msg
        raw_message = _field(choice, "delta") or _field(choice, "message")
        if raw_message is not None:
            populate_message_fields(msg, raw_message)
        return msg


__all__ = [
    "OpenRouterChatModel",
    "DEFAULT_BASE_URL",
    "KEY_TERMINATED_ERROR",
    "KEY_REASONING_DETAILS",
    "KEY_CACHE_CONTROL",
    "ReasoningDetail",
    "ReasoningDetails",
    "StreamTerminatedError",
    "CacheControl",
    "CacheControlTTL",
    "get_stream_terminated_error",
    "get_reasoning_details",
    "enable_message_cache_control",
    "enable_input_part_cache_control",
    "enable_output_part_cache_control",
    "populate_message_fields",
]
