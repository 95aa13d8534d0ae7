# relay_sdk/llm/openai.py
# SPDX-License-Identifier: Apache-2.0
"""
OpenAI-compatible chat model adapter (Chat Completions API).

Targets the official `openai` Python client (v1+ async API via
`AsyncOpenAI`). The same wire format is spoken by many vendors, so this
module is also the base for the OpenRouter and DeepSeek adapters:

- `_message_param(msg)` maps one canonical message; subclasses add vendor
  fields to the returned dict (it is sent as-is).
- `_populate_chunk(msg, raw)` runs after the standard conversion of every
  streamed chunk (and every full response) with the raw SDK object, so
  compatible vendors can read their own fields.

Usage
-----
    from openai import AsyncOpenAI
    from relay_sdk.llm.openai import OpenAIChatModel

    model = OpenAIChatModel(client=AsyncOpenAI(), model="gpt-4.1-mini")
    reader = await model.stream([user_message("Hello!")])
    reply = await concat_stream(reader)
    print(reply.content, get_request_id(reply))

Audio output
------------
With `modalities=["text", "audio"]` and an `audio` config, streamed audio
arrives as output audio parts carrying base64 data. Every fragment of one
reply carries the same audio id; fragments with different ids cannot be
concatenated.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import openai  # type: ignore

from relay_sdk.llm.llm_base import (
    BadRequest,
    BaseChatModel,
    CallOptions,
    EventStream,
    LLMAdapterError,
    MetricsSink,
    StreamContext,
    close_func_of,
    translate_vendor_error,
)
from relay_sdk.schema.errors import ConcatError
from relay_sdk.schema.message import (
    ChatMessagePartType,
    FunctionCall,
    Message,
    MessageInputPart,
    MessageOutputAudio,
    MessageOutputPart,
    ResponseMeta,
    Role,
    TokenUsage,
    ToolCall,
    ToolChoice,
    ToolInfo,
    get_extra,
    set_extra,
)
from relay_sdk.schema.registry import register_concat_func, register_name

logger = logging.getLogger(__name__)

try:  # pragma: no cover - import surface only
    from openai import AsyncOpenAI  # type: ignore[attr-defined]
except ImportError:  # pragma: no cover - very old client
    AsyncOpenAI = None  # type: ignore[misc,assignment]

OpenAIError = getattr(openai, "OpenAIError", Exception)
APIConnectionError = getattr(openai, "APIConnectionError", OpenAIError)
APITimeoutError = getattr(openai, "APITimeoutError", APIConnectionError)

KEY_REQUEST_ID = "openai-request-id"
KEY_AUDIO_ID = "openai-audio-id"
KEY_AUDIO_TRANSCRIPT = "openai-audio-transcript"

_AUDIO_MIME = {
    "mp3": "audio/mpeg",
    "wav": "audio/wav",
    "flac": "audio/flac",
    "opus": "audio/opus",
    "aac": "audio/aac",
    "pcm16": "audio/pcm",
}


# =============================================================================
# Extension types
# =============================================================================

class OpenAIRequestID(str):
    """Response id of a chat completion; streamed chunks keep the last."""


class AudioID(str):
    """Id of a generated audio reply; identical on every fragment."""


@register_concat_func(OpenAIRequestID)
def _concat_request_ids(values: List[OpenAIRequestID]) -> OpenAIRequestID:
    return values[-1]


@register_concat_func(AudioID)
def _concat_audio_ids(values: List[AudioID]) -> AudioID:
    first = values[0]
    for value in values[1:]:
        if value != first:
            raise ConcatError(
                "audio IDs are not consistent",
                details={"first": str(first), "other": str(value)},
            )
    return values[-1]


register_name(OpenAIRequestID, "_relay_openai_request_id")
register_name(AudioID, "_relay_openai_audio_id")


def get_request_id(msg: Message) -> str:
    value, ok = get_extra(msg, KEY_REQUEST_ID, str)
    return str(value) if ok else ""


def set_request_id(msg: Message, request_id: str) -> None:
    if request_id:
        set_extra(msg, KEY_REQUEST_ID, OpenAIRequestID(request_id))


def get_audio_id(audio: Optional[MessageOutputAudio]) -> Tuple[str, bool]:
    value, ok = get_extra(audio, KEY_AUDIO_ID, str)
    return (str(value), True) if ok else ("", False)


def get_audio_transcript(audio: Optional[MessageOutputAudio]) -> Tuple[str, bool]:
    return get_extra(audio, KEY_AUDIO_TRANSCRIPT, str)


# =============================================================================
# Response -> canonical
# =============================================================================

def _field(obj: Any, name: str, default: Any = None) -> Any:
    """
    Read a field from an SDK model or a plain dict.

    Vendor-specific fields (reasoning_content, audio, images, ...) are
    not declared on the SDK models and may surface as raw dicts.
    """
    if obj is None:
        return default
    if isinstance(obj, Mapping):
        return obj.get(name, default)
    value = getattr(obj, name, None)
    if value is None:
        extra = getattr(obj, "model_extra", None)
        if isinstance(extra, Mapping):
            value = extra.get(name)
    return default if value is None else value


def usage_from(usage: Any) -> Optional[TokenUsage]:
    if usage is None:
        return None
    prompt_details = _field(usage, "prompt_tokens_details")
    completion_details = _field(usage, "completion_tokens_details")
    return TokenUsage(
        prompt_tokens=int(_field(usage, "prompt_tokens", 0) or 0),
        completion_tokens=int(_field(usage, "completion_tokens", 0) or 0),
        total_tokens=int(_field(usage, "total_tokens", 0) or 0),
        cached_tokens=int(_field(prompt_details, "cached_tokens", 0) or 0),
        reasoning_tokens=int(_field(completion_details, "reasoning_tokens", 0) or 0),
    )


def _audio_part(audio: Any, audio_format: str) -> Optional[MessageOutputPart]:
    audio_id = _field(audio, "id", "") or ""
    data = _field(audio, "data", "") or ""
    transcript = _field(audio, "transcript", "") or ""
    if not (audio_id or data or transcript):
        return None
    out = MessageOutputAudio(
        base64_data=data or None,
        mime_type=_AUDIO_MIME.get(audio_format, f"audio/{audio_format}" if audio_format else ""),
    )
    if audio_id:
        set_extra(out, KEY_AUDIO_ID, AudioID(audio_id))
    if transcript:
        set_extra(out, KEY_AUDIO_TRANSCRIPT, transcript)
    return MessageOutputPart(type=ChatMessagePartType.AUDIO_URL, audio=out)


def _stream_tool_call(fragment: Any, stream_ctx: StreamContext) -> ToolCall:
    call_id = _field(fragment, "id", "") or ""
    index = _field(fragment, "index")
    if index is None:
        # Vendors that omit the index: an id marks a new call.
        index = stream_ctx.next_tool_index(bool(call_id))
    fn = _field(fragment, "function")
    return ToolCall(
        index=int(index),
        id=call_id,
        type=_field(fragment, "type", "") or "",
        function=FunctionCall(
            name=_field(fn, "name", "") or "",
            arguments=_field(fn, "arguments", "") or "",
        ),
    )


def convert_chunk(chunk: Any, stream_ctx: StreamContext, *, audio_format: str = "") -> Message:
    """One `ChatCompletionChunk` -> canonical chunk (possibly empty)."""
    message = Message(role=Role.ASSISTANT)
    set_request_id(message, _field(chunk, "id", "") or "")

    finish_reason = ""
    choices = _field(chunk, "choices") or []
    choice = next((c for c in choices if (_field(c, "index", 0) or 0) == 0), None)
    if choice is not None:
        finish_reason = _field(choice, "finish_reason", "") or ""
        delta = _field(choice, "delta")
        message.content = _field(delta, "content", "") or ""
        message.reasoning_content = _field(delta, "reasoning_content", "") or ""
        for fragment in _field(delta, "tool_calls") or []:
            message.tool_calls.append(_stream_tool_call(fragment, stream_ctx))
        part = _audio_part(_field(delta, "audio"), audio_format)
        if part is not None:
            message.assistant_gen_multi_content.append(part)

    usage = usage_from(_field(chunk, "usage"))
    if finish_reason or usage is not None:
        message.response_meta = ResponseMeta(finish_reason=finish_reason, usage=usage)
    return message


def convert_completion(resp: Any, *, audio_format: str = "") -> Message:
    """A full `ChatCompletion` -> canonical message."""
    message = Message(role=Role.ASSISTANT)
    set_request_id(message, _field(resp, "id", "") or "")

    choices = _field(resp, "choices") or []
    if not choices:
        raise BadRequest("openai response has no choices")
    choice = choices[0]
    msg = _field(choice, "message")
    message.content = _field(msg, "content", "") or ""
    message.reasoning_content = _field(msg, "reasoning_content", "") or ""
    for i, tc in enumerate(_field(msg, "tool_calls") or []):
        fn = _field(tc, "function")
        message.tool_calls.append(
            ToolCall(
                index=i,
                id=_field(tc, "id", "") or "",
                type=_field(tc, "type", "function") or "function",
                function=FunctionCall(
                    name=_field(fn, "name", "") or "",
                    arguments=_field(fn, "arguments", "") or "",
                ),
            )
        )
    part = _audio_part(_field(msg, "audio"), audio_format)
    if part is not None:
        message.assistant_gen_multi_content.append(part)

    message.response_meta = ResponseMeta(
        finish_reason=_field(choice, "finish_reason", "") or "",
        usage=usage_from(_field(resp, "usage")),
    )
    return message


# =============================================================================
# Canonical -> request
# =============================================================================

def _data_url(media: Any) -> str:
    return f"data:{media.mime_type};base64,{media.base64_data}"


def _media_url(media: Any, kind: str) -> str:
    if media is None:
        raise BadRequest(f"{kind} field must not be None for a {kind} part")
    if media.url:
        return media.url
    if media.base64_data:
        if not media.mime_type:
            raise BadRequest(f"{kind} part must have mime_type when using base64_data")
        return _data_url(media)
    raise BadRequest(f"{kind} part must have either url or base64_data")


def _input_part(part: MessageInputPart) -> Dict[str, Any]:
    if part.type == ChatMessagePartType.TEXT:
        return {"type": "text", "text": part.text}
    if part.type == ChatMessagePartType.IMAGE_URL:
        image_url: Dict[str, Any] = {"url": _media_url(part.image, "image")}
        if part.image.detail is not None:
            image_url["detail"] = part.image.detail.value
        return {"type": "image_url", "image_url": image_url}
    if part.type == ChatMessagePartType.AUDIO_URL:
        audio = part.audio
        if audio is None or not audio.base64_data:
            raise BadRequest("openai input audio requires base64_data")
        fmt = (audio.mime_type or "").split("/")[-1]
        if fmt == "mpeg":
            fmt = "mp3"
        return {"type": "input_audio", "input_audio": {"data": audio.base64_data, "format": fmt}}
    if part.type == ChatMessagePartType.FILE_URL:
        file = part.file
        if file is None or not file.base64_data:
            raise BadRequest("openai file parts require base64_data")
        payload: Dict[str, Any] = {"file_data": _data_url(file)}
        if file.name:
            payload["filename"] = file.name
        return {"type": "file", "file": payload}
    raise BadRequest(f"openai input part type not supported: {part.type.value}")


def _output_part(part: MessageOutputPart) -> Optional[Dict[str, Any]]:
    if part.type == ChatMessagePartType.TEXT:
        return {"type": "text", "text": part.text}
    if part.type == ChatMessagePartType.AUDIO_URL:
        # Replayed by id on the message, not as content.
        return None
    raise BadRequest(f"openai assistant output part type not supported: {part.type.value}")


def message_param(msg: Message) -> Dict[str, Any]:
    """Standard Chat Completions mapping of one canonical message."""
    if msg.role is None:
        raise BadRequest("message role is required")
    if msg.user_input_multi_content and msg.assistant_gen_multi_content:
        raise BadRequest("a message cannot carry both user input and assistant output parts")

    param: Dict[str, Any] = {"role": msg.role.value}
    if msg.name:
        param["name"] = msg.name

    if msg.user_input_multi_content:
        if msg.role != Role.USER:
            raise BadRequest(f"user input parts are only supported on user messages, got {msg.role}")
        param["content"] = [_input_part(p) for p in msg.user_input_multi_content]
    elif msg.assistant_gen_multi_content:
        if msg.role != Role.ASSISTANT:
            raise BadRequest(f"assistant output parts are only supported on assistant messages, got {msg.role}")
        parts = [p for p in (_output_part(x) for x in msg.assistant_gen_multi_content) if p is not None]
        if parts:
            param["content"] = parts
        for part in msg.assistant_gen_multi_content:
            audio_id, ok = get_audio_id(part.audio)
            if ok and audio_id:
                param["audio"] = {"id": audio_id}
                break
    else:
        param["content"] = msg.content

    if msg.tool_calls:
        param["tool_calls"] = [
            {
                "id": tc.id,
                "type": tc.type or "function",
                "function": {"name": tc.function.name, "arguments": tc.function.arguments},
            }
            for tc in msg.tool_calls
        ]
    if msg.role == Role.TOOL:
        if not msg.tool_call_id:
            raise BadRequest("tool message requires tool_call_id")
        param["tool_call_id"] = msg.tool_call_id
    return param


def convert_tools(tools: Sequence[ToolInfo]) -> List[Dict[str, Any]]:
    out = []
    for tool in tools:
        fn: Dict[str, Any] = {
            "name": tool.name,
            "parameters": tool.parameters or {"type": "object", "properties": {}},
        }
        if tool.description:
            fn["description"] = tool.description
        out.append({"type": "function", "function": fn})
    return out


class OpenAIChatModel(BaseChatModel):
    """
    Chat model backed by an OpenAI-compatible Chat Completions endpoint.

    Parameters
    ----------
    client:
        Pre-configured `AsyncOpenAI` client instance. Recommended when you
        want to control retries, proxies, etc.
    api_key / organization / base_url:
        Used only when `client` is not provided. `AsyncOpenAI` falls back
        to the OPENAI_API_KEY / OPENAI_BASE_URL environment variables.
    model:
        Default model id.
    audio:
        Audio output config, e.g. ``{"voice": "alloy", "format": "wav"}``.

    Per-call overrides go through `CallOptions.extra` with the keys
    "response_format", "seed", "presence_penalty", "frequency_penalty",
    "reasoning_effort", "modalities", "audio", "parallel_tool_calls",
    "user" and "extra_body".
    """

    _vendor = "openai"
    _passthrough_options = (
        "response_format",
        "seed",
        "presence_penalty",
        "frequency_penalty",
        "reasoning_effort",
        "modalities",
        "audio",
        "parallel_tool_calls",
        "user",
        "logprobs",
        "top_logprobs",
    )

    def __init__(
        self,
        *,
        client: Optional["AsyncOpenAI"] = None,
        api_key: Optional[str] = None,
        organization: Optional[str] = None,
        base_url: Optional[str] = None,
        model: str = "gpt-4.1-mini",
        audio: Optional[Mapping[str, Any]] = None,
        metrics: Optional[MetricsSink] = None,
        callbacks=None,
        default_options: Optional[CallOptions] = None,
    ) -> None:
        if client is None:
            if AsyncOpenAI is None:
                raise RuntimeError(
                    f"{type(self).__name__} requires `openai>=1.0.0` with AsyncOpenAI. "
                    "Upgrade via `pip install --upgrade openai`."
                )
            client = AsyncOpenAI(
                api_key=api_key,
                organization=organization,
                base_url=base_url,
            )

        super().__init__(
            model=model,
            metrics=metrics,
            callbacks=callbacks,
            default_options=default_options,
        )
        self._client = client
        self._audio = dict(audio) if audio else None

    # ------------------------------------------------------------------
    # Hooks for compatible vendors
    # ------------------------------------------------------------------

    def _message_param(self, msg: Message) -> Dict[str, Any]:
        return message_param(msg)

    def _extra_body(self, options: CallOptions) -> Dict[str, Any]:
        return dict(options.vendor_option("extra_body") or {})

    def _populate_chunk(self, msg: Message, raw: Any) -> Message:
        return msg

    # ------------------------------------------------------------------
    # Request
    # ------------------------------------------------------------------

    def _build_request(self, messages: Sequence[Message], options: CallOptions, *, stream: bool) -> Dict[str, Any]:
        request: Dict[str, Any] = {
            "model": options.model,
            "messages": [self._message_param(m) for m in messages],
        }
        if options.max_tokens is not None:
            request["max_tokens"] = options.max_tokens
        if options.temperature is not None:
            request["temperature"] = options.temperature
        if options.top_p is not None:
            request["top_p"] = options.top_p
        if options.stop:
            request["stop"] = list(options.stop)

        for key in self._passthrough_options:
            value = options.vendor_option(key)
            if value is not None:
                request[key] = value
        if "audio" not in request and self._audio:
            request["audio"] = dict(self._audio)

        self._populate_tools(request, options)

        extra_body = self._extra_body(options)
        if extra_body:
            request["extra_body"] = extra_body
        if stream:
            request["stream"] = True
            request["stream_options"] = {"include_usage": True}
        return request

    @staticmethod
    def _populate_tools(request: Dict[str, Any], options: CallOptions) -> None:
        tools = convert_tools(options.tools or ())
        if tools:
            request["tools"] = tools

        choice = options.tool_choice
        if choice is None:
            return
        if choice == ToolChoice.FORBIDDEN:
            request["tool_choice"] = "none"
        elif choice == ToolChoice.ALLOWED:
            request["tool_choice"] = "auto"
        elif choice == ToolChoice.FORCED:
            if not tools:
                raise BadRequest("tool choice is forced but no tool is provided")
            if len(tools) == 1:
                request["tool_choice"] = {"type": "function", "function": {"name": tools[0]["function"]["name"]}}
            else:
                request["tool_choice"] = "required"
        else:
            raise BadRequest(f"tool choice {choice!r} not supported")

    def _audio_format(self, request: Optional[Mapping[str, Any]] = None) -> str:
        audio = (request or {}).get("audio") or self._audio or {}
        return str(audio.get("format", "") or "")

    # ------------------------------------------------------------------
    # Vendor calls
    # ------------------------------------------------------------------

    def _translate_error(self, err: BaseException) -> LLMAdapterError:
        return translate_vendor_error(
            err,
            vendor=self._vendor,
            timeout_errors=(APITimeoutError,),
            connection_errors=(APIConnectionError,),
        )

    async def _create(self, request: Dict[str, Any]) -> Any:
        return await self._client.chat.completions.create(**request)

    async def _open_stream(self, request: Dict[str, Any]) -> EventStream:
        stream = await self._client.chat.completions.create(**request)
        return EventStream(stream, close=close_func_of(stream))

    def _convert_response(self, response: Any) -> Message:
        message = convert_completion(response, audio_format=self._audio_format())
        return self._populate_chunk(message, response)

    def _convert_stream_event(self, event: Any, stream_ctx: StreamContext) -> Optional[Message]:
        message = convert_chunk(event, stream_ctx, audio_format=self._audio_format(stream_ctx.request))
        return self._populate_chunk(message, event)

    # ------------------------------------------------------------------
    # Resource cleanup
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Close underlying client resources if supported."""
        close = getattr(self._client, "close", None)
        if close is None:
            return
        try:
            result = close()
            if asyncio.iscoroutine(result):
                await result
        except Exception:  # noqa: BLE001
            logger.debug("%s close() failed", type(self).__name__, exc_info=True)


__all__ = [
    "OpenAIChatModel",
    "OpenAIRequestID",
    "AudioID",
    "KEY_REQUEST_ID",
    "KEY_AUDIO_ID",
    "KEY_AUDIO_TRANSCRIPT",
    "get_request_id",
    "set_request_id",
    "get_audio_id",
    "get_audio_transcript",
    "usage_from",
    "convert_chunk",
    "convert_completion",
    "message_param",
    "convert_tools",
]
