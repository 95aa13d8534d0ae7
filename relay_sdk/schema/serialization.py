# relay_sdk/schema/serialization.py
# SPDX-License-Identifier: Apache-2.0
"""
JSON-safe (de)serialization of canonical messages and their `extra` maps.

Plain JSON values (None, bool, int, float, str and lists / dicts of those)
pass through unchanged. A value whose concrete type has a registered name
(`relay_sdk.schema.registry.register_name`) is wrapped so the concrete
type can be recovered on decode:

    {"__type__": "_relay_gemini_thought_signature", "value": "c2lnbmF0dXJl"}

Payload encoding by type:

- objects exposing `to_dict()` / `from_dict()` use them
- `bytes` subclasses are base64 encoded
- dataclasses go through `dataclasses.asdict`
- `str` / `int` / `float` subclasses are stored as their base value

A value that is neither JSON-native nor named raises `SchemaError`.
"""

from __future__ import annotations

import base64
import dataclasses
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional

from relay_sdk.schema.errors import SchemaError
from relay_sdk.schema.message import (
    ChatMessagePartType,
    FunctionCall,
    ImageURLDetail,
    Message,
    MessageInputAudio,
    MessageInputFile,
    MessageInputImage,
    MessageInputPart,
    MessageInputVideo,
    MessageOutputAudio,
    MessageOutputImage,
    MessageOutputPart,
    MessageOutputVideo,
    ResponseMeta,
    Role,
    TokenUsage,
    ToolCall,
)
from relay_sdk.schema.registry import get_registered_name, get_registered_type

TYPE_KEY = "__type__"
VALUE_KEY = "value"

_JSON_SCALARS = (type(None), bool, int, float, str)


# =============================================================================
# Extra values
# =============================================================================

def _encode_payload(value: Any, key: str) -> Any:
    to_dict = getattr(value, "to_dict", None)
    if callable(to_dict):
        return to_dict()
    if isinstance(value, (bytes, bytearray)):
        return base64.b64encode(bytes(value)).decode("ascii")
    if dataclasses.is_dataclass(value) and not isinstance(value, type):
        return encode_value(dataclasses.asdict(value), key=key)
    if isinstance(value, bool):
        return bool(value)
    if isinstance(value, str):
        return str(value)
    if isinstance(value, int):
        return int(value)
    if isinstance(value, float):
        return float(value)
    if isinstance(value, list):
        return [encode_value(v, key=key) for v in value]
    if isinstance(value, dict):
        return {str(k): encode_value(v, key=key) for k, v in value.items()}
    raise SchemaError(
        f"extra {key!r}: cannot encode payload of type {type(value).__name__}",
        details={"key": key},
    )


def encode_value(value: Any, *, key: str = "") -> Any:
    tp = type(value)
    if tp in _JSON_SCALARS:
        return value

    name = get_registered_name(tp)
    if name is not None:
        return {TYPE_KEY: name, VALUE_KEY: _encode_payload(value, key)}

    if tp is list or tp is tuple:
        return [encode_value(v, key=key) for v in value]
    if tp is dict:
        return {str(k): encode_value(v, key=key) for k, v in value.items()}

    raise SchemaError(
        f"extra {key!r}: value of type {tp.__module__}.{tp.__qualname__} "
        "is not JSON-native and has no registered name",
        details={"key": key},
    )


def _decode_payload(tp: type, payload: Any) -> Any:
    from_dict = getattr(tp, "from_dict", None)
    if callable(from_dict):
        return from_dict(payload)
    if issubclass(tp, (bytes, bytearray)):
        return tp(base64.b64decode(payload))
    if dataclasses.is_dataclass(tp):
        return tp(**{k: decode_value(v) for k, v in payload.items()})
    if issubclass(tp, list):
        return tp(decode_value(v) for v in payload)
    if issubclass(tp, dict):
        return tp({k: decode_value(v) for k, v in payload.items()})
    return tp(payload)


def decode_value(data: Any) -> Any:
    if isinstance(data, list):
        return [decode_value(v) for v in data]
    if not isinstance(data, dict):
        return data
    if TYPE_KEY in data and set(data) == {TYPE_KEY, VALUE_KEY}:
        name = data[TYPE_KEY]
        tp = get_registered_type(name)
        if tp is None:
            raise SchemaError(f"unknown registered type name {name!r}", details={"name": name})
        return _decode_payload(tp, data[VALUE_KEY])
    return {k: decode_value(v) for k, v in data.items()}


def encode_extra(extra: Optional[Mapping[str, Any]]) -> Optional[Dict[str, Any]]:
    if extra is None:
        return None
    return {key: encode_value(value, key=key) for key, value in extra.items()}


def decode_extra(data: Optional[Mapping[str, Any]]) -> Optional[Dict[str, Any]]:
    if data is None:
        return None
    return {key: decode_value(value) for key, value in data.items()}


# =============================================================================
# Messages
# =============================================================================

def _to_dict(obj: Any) -> Any:
    if isinstance(obj, Enum):
        return obj.value
    if isinstance(obj, list):
        return [_to_dict(v) for v in obj]
    if dataclasses.is_dataclass(obj) and not isinstance(obj, type):
        out: Dict[str, Any] = {}
        for f in dataclasses.fields(obj):
            value = getattr(obj, f.name)
            if f.name == "extra":
                value = encode_extra(value)
            else:
                value = _to_dict(value)
            if value is None or value == "" or value == []:
                continue
            out[f.name] = value
        return out
    return obj


def message_to_dict(msg: Message) -> Dict[str, Any]:
    """Encode a message tree into JSON-safe primitives."""
    return _to_dict(msg)


def _media(cls: type, data: Optional[Mapping[str, Any]]) -> Any:
    if data is None:
        return None
    kwargs: Dict[str, Any] = {
        "url": data.get("url"),
        "base64_data": data.get("base64_data"),
        "mime_type": data.get("mime_type", ""),
        "extra": decode_extra(data.get("extra")),
    }
    if cls is MessageInputImage and data.get("detail"):
        kwargs["detail"] = ImageURLDetail(data["detail"])
    if cls is MessageInputFile:
        kwargs["name"] = data.get("name", "")
    return cls(**kwargs)


def _input_part(data: Mapping[str, Any]) -> MessageInputPart:
    return MessageInputPart(
        type=ChatMessagePartType(data.get("type", "text")),
        text=data.get("text", ""),
        image=_media(MessageInputImage, data.get("image")),
        audio=_media(MessageInputAudio, data.get("audio")),
        video=_media(MessageInputVideo, data.get("video")),
        file=_media(MessageInputFile, data.get("file")),
        extra=decode_extra(data.get("extra")),
    )


def _output_part(data: Mapping[str, Any]) -> MessageOutputPart:
    return MessageOutputPart(
        type=ChatMessagePartType(data.get("type", "text")),
        text=data.get("text", ""),
        image=_media(MessageOutputImage, data.get("image")),
        audio=_media(MessageOutputAudio, data.get("audio")),
        video=_media(MessageOutputVideo, data.get("video")),
        extra=decode_extra(data.get("extra")),
    )


def _tool_call(data: Mapping[str, Any]) -> ToolCall:
    fn = data.get("function") or {}
    return ToolCall(
        id=data.get("id", ""),
        type=data.get("type", "function"),
        index=data.get("index"),
        function=FunctionCall(name=fn.get("name", ""), arguments=fn.get("arguments", "")),
        extra=decode_extra(data.get("extra")),
    )


def _response_meta(data: Optional[Mapping[str, Any]]) -> Optional[ResponseMeta]:
    if data is None:
        return None
    usage = data.get("usage")
    return ResponseMeta(
        finish_reason=data.get("finish_reason", ""),
        usage=TokenUsage(**usage) if usage is not None else None,
    )


def message_from_dict(data: Mapping[str, Any]) -> Message:
    """Rebuild a message produced by `message_to_dict`."""
    if not isinstance(data, Mapping):
        raise SchemaError("message payload must be a mapping")
    role = data.get("role")
    tool_calls: List[ToolCall] = [_tool_call(tc) for tc in data.get("tool_calls") or []]
    return Message(
        role=Role(role) if role else None,
        content=data.get("content", ""),
        reasoning_content=data.get("reasoning_content", ""),
        tool_calls=tool_calls,
        user_input_multi_content=[_input_part(p) for p in data.get("user_input_multi_content") or []],
        assistant_gen_multi_content=[_output_part(p) for p in data.get("assistant_gen_multi_content") or []],
        name=data.get("name", ""),
        tool_call_id=data.get("tool_call_id", ""),
        tool_name=data.get("tool_name", ""),
        response_meta=_response_meta(data.get("response_meta")),
        extra=decode_extra(data.get("extra")),
    )


__all__ = [
    "TYPE_KEY",
    "encode_value",
    "decode_value",
    "encode_extra",
    "decode_extra",
    "message_to_dict",
    "message_from_dict",
]
