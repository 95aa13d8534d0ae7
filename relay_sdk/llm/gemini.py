# relay_sdk/llm/gemini.py
# SPDX-License-Identifier: Apache-2.0
"""
Gemini chat model adapter (google-genai SDK).

Targets `google.genai.Client` and its async surface (`client.aio.models`).

Thought signatures
------------------
Gemini returns opaque `thought_signature` bytes that must be sent back on
the next turn:

- on a part carrying a `function_call`: stored on that `ToolCall.extra`
- on any other part (text, thought, inline data): stored on `Message.extra`

A part's signature goes to exactly one of the two places. For parallel
function calls only the first call carries a signature; absence is valid.

Signatures are `ThoughtSignature` values (a `bytes` subclass) so streamed
chunks keep the last non-empty signature when concatenated, and so they
survive JSON serialization of the message.
"""

from __future__ import annotations

import asyncio
import base64
import binascii
import json
import logging
from typing import Any, Dict, List, Optional, Sequence

from google import genai  # type: ignore
from google.genai import types as genai_types  # type: ignore

from relay_sdk.llm.llm_base import (
    BadRequest,
    BaseChatModel,
    CallOptions,
    EventStream,
    LLMAdapterError,
    MetricsSink,
    ProtocolViolation,
    StreamContext,
    close_func_of,
    translate_vendor_error,
)
from relay_sdk.schema.message import (
    ChatMessagePartType,
    FunctionCall,
    Message,
    MessageInputPart,
    MessageOutputImage,
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

KEY_THOUGHT_SIGNATURE = "gemini_thought_signature"
KEY_VIDEO_META_DATA = "gemini_video_meta_data"


class ThoughtSignature(bytes):
    """Opaque signature bytes returned by Gemini thinking models."""


@register_concat_func(ThoughtSignature)
def _concat_thought_signatures(values: List[ThoughtSignature]) -> ThoughtSignature:
    last = ThoughtSignature(b"")
    for value in values:
        if value:
            last = value
    return last


register_name(ThoughtSignature, "_relay_gemini_thought_signature")


# =============================================================================
# Extra helpers
# =============================================================================

def _read_signature(holder: Any) -> Optional[bytes]:
    value, ok = get_extra(holder, KEY_THOUGHT_SIGNATURE)
    if not ok or not value:
        return None
    if isinstance(value, (bytes, bytearray)):
        return bytes(value)
    if isinstance(value, str):
        # A signature that went through plain JSON comes back base64 encoded.
        try:
            return base64.b64decode(value)
        except (binascii.Error, ValueError):
            logger.warning("discarding undecodable gemini thought signature")
            return None
    return None


def get_message_thought_signature(msg: Message) -> Optional[bytes]:
    return _read_signature(msg)


def get_tool_call_thought_signature(tc: ToolCall) -> Optional[bytes]:
    return _read_signature(tc)


def set_message_thought_signature(msg: Message, signature: bytes) -> None:
    if signature:
        set_extra(msg, KEY_THOUGHT_SIGNATURE, ThoughtSignature(signature))


def set_tool_call_thought_signature(tc: ToolCall, signature: bytes) -> None:
    if signature:
        set_extra(tc, KEY_THOUGHT_SIGNATURE, ThoughtSignature(signature))


def set_input_video_meta_data(video: Any, meta: Dict[str, Any]) -> None:
    """
    Attach Gemini video metadata (e.g. ``{"fps": 1.0, "start_offset":
    "10s"}``) to a `MessageInputVideo`.
    """
    set_extra(video, KEY_VIDEO_META_DATA, dict(meta))


def get_input_video_meta_data(video: Any) -> Optional[Dict[str, Any]]:
    value, ok = get_extra(video, KEY_VIDEO_META_DATA, dict)
    return value if ok else None


# =============================================================================
# Response -> canonical
# =============================================================================

def _enum_str(value: Any) -> str:
    if value is None:
        return ""
    return str(getattr(value, "value", value))


def _usage_from(meta: Any) -> Optional[TokenUsage]:
    if meta is None:
        return None
    prompt = int(getattr(meta, "prompt_token_count", 0) or 0)
    completion = int(getattr(meta, "candidates_token_count", 0) or 0)
    return TokenUsage(
        prompt_tokens=prompt,
        completion_tokens=completion,
        total_tokens=int(getattr(meta, "total_token_count", 0) or 0) or prompt + completion,
        cached_tokens=int(getattr(meta, "cached_content_token_count", 0) or 0),
        reasoning_tokens=int(getattr(meta, "thoughts_token_count", 0) or 0),
    )


def _function_call_to_tool_call(fc: Any, stream_ctx: StreamContext) -> ToolCall:
    name = getattr(fc, "name", "") or ""
    args = getattr(fc, "args", None)
    return ToolCall(
        index=stream_ctx.next_tool_index(True),
        id=getattr(fc, "id", None) or name,
        function=FunctionCall(name=name, arguments=json.dumps(args or {}, ensure_ascii=False)),
    )


def _convert_candidate(candidate: Any, message: Message, stream_ctx: StreamContext) -> None:
    message.response_meta.finish_reason = _enum_str(getattr(candidate, "finish_reason", None))

    content = getattr(candidate, "content", None)
    parts = getattr(content, "parts", None) or []

    texts: List[str] = []
    reasoning: List[str] = []
    out_parts: List[MessageOutputPart] = []
    has_media = False

    for part in parts:
        signature = getattr(part, "thought_signature", None)
        fc = getattr(part, "function_call", None)

        if fc is not None:
            tc = _function_call_to_tool_call(fc, stream_ctx)
            if signature:
                set_tool_call_thought_signature(tc, signature)
            message.tool_calls.append(tc)
            continue

        if signature:
            set_message_thought_signature(message, signature)

        text = getattr(part, "text", None)
        if getattr(part, "thought", False):
            if text:
                reasoning.append(text)
            continue
        if text:
            texts.append(text)
            out_parts.append(MessageOutputPart(type=ChatMessagePartType.TEXT, text=text))

        inline = getattr(part, "inline_data", None)
        if inline is not None:
            mime = getattr(inline, "mime_type", "") or ""
            if not mime.startswith("image/"):
                raise ProtocolViolation(f"gemini inline data mime type is not supported: {mime!r}")
            data = getattr(inline, "data", b"") or b""
            if isinstance(data, (bytes, bytearray)):
                data = base64.b64encode(bytes(data)).decode("ascii")
            out_parts.append(
                MessageOutputPart(
                    type=ChatMessagePartType.IMAGE_URL,
                    image=MessageOutputImage(base64_data=data, mime_type=mime),
                )
            )
            has_media = True

        result = getattr(part, "code_execution_result", None)
        if result is not None and getattr(result, "output", None):
            texts.append(result.output)
        code = getattr(part, "executable_code", None)
        if code is not None and getattr(code, "code", None):
            texts.append(code.code)

    message.content = "".join(texts)
    message.reasoning_content = "".join(reasoning)
    if has_media:
        message.assistant_gen_multi_content = out_parts


def convert_response(resp: Any, stream_ctx: Optional[StreamContext] = None) -> Message:
    """
    `GenerateContentResponse` -> Message, from the first candidate.

    A response without candidates (a trailing usage-only stream frame)
    yields a message carrying only response metadata.
    """
    stream_ctx = stream_ctx or StreamContext()
    message = Message(
        role=Role.ASSISTANT,
        response_meta=ResponseMeta(usage=_usage_from(getattr(resp, "usage_metadata", None))),
    )
    candidates = getattr(resp, "candidates", None) or []
    if candidates:
        _convert_candidate(candidates[0], message, stream_ctx)
    return message


# =============================================================================
# Canonical -> request
# =============================================================================

def _decode_b64(data: str) -> bytes:
    if data.startswith("data:"):
        _, _, data = data.partition(",")
    try:
        return base64.b64decode(data)
    except (binascii.Error, ValueError) as exc:
        raise BadRequest("media part base64_data is not valid base64") from exc


def _media_part(media: Any, kind: str) -> genai_types.Part:
    if media is None:
        raise BadRequest(f"{kind} field must not be None for a {kind} part")
    if media.url:
        raise BadRequest(f"gemini: URL is not supported for {kind} parts, use base64_data instead")
    if not media.base64_data:
        raise BadRequest(f"{kind} part must carry base64_data")
    if not media.mime_type:
        raise BadRequest(f"mime_type is required for {kind} parts with base64_data")
    part = genai_types.Part(
        inline_data=genai_types.Blob(data=_decode_b64(media.base64_data), mime_type=media.mime_type)
    )
    if kind == "video":
        meta = get_input_video_meta_data(media)
        if meta:
            part.video_metadata = genai_types.VideoMetadata(**meta)
    return part


def _input_parts(parts: Sequence[MessageInputPart]) -> List[genai_types.Part]:
    out: List[genai_types.Part] = []
    for part in parts:
        if part.type == ChatMessagePartType.TEXT:
            out.append(genai_types.Part(text=part.text))
        elif part.type == ChatMessagePartType.IMAGE_URL:
            out.append(_media_part(part.image, "image"))
        elif part.type == ChatMessagePartType.AUDIO_URL:
            out.append(_media_part(part.audio, "audio"))
        elif part.type == ChatMessagePartType.VIDEO_URL:
            out.append(_media_part(part.video, "video"))
        elif part.type == ChatMessagePartType.FILE_URL:
            out.append(_media_part(part.file, "file"))
        else:
            raise BadRequest(f"gemini input part type not supported: {part.type.value}")
    return out


def _output_parts(parts: Sequence[MessageOutputPart]) -> List[genai_types.Part]:
    out: List[genai_types.Part] = []
    for part in parts:
        if part.type == ChatMessagePartType.TEXT:
            out.append(genai_types.Part(text=part.text))
        elif part.type == ChatMessagePartType.IMAGE_URL:
            out.append(_media_part(part.image, "image"))
        elif part.type == ChatMessagePartType.AUDIO_URL:
            out.append(_media_part(part.audio, "audio"))
        elif part.type == ChatMessagePartType.VIDEO_URL:
            out.append(_media_part(part.video, "video"))
        else:
            raise BadRequest(f"gemini output part type not supported: {part.type.value}")
    return out


def _tool_response_content(msg: Message) -> genai_types.Content:
    try:
        response = json.loads(msg.content)
    except ValueError:
        response = None
    if not isinstance(response, dict):
        response = {"output": msg.content}
    name = msg.tool_name or msg.tool_call_id
    fr = genai_types.FunctionResponse(name=name, response=response)
    if msg.tool_call_id and msg.tool_call_id != name:
        fr.id = msg.tool_call_id
    return genai_types.Content(role="user", parts=[genai_types.Part(function_response=fr)])


def convert_message(msg: Message) -> genai_types.Content:
    """One non-system canonical message -> a Gemini `Content`."""
    if msg.role == Role.TOOL:
        return _tool_response_content(msg)

    parts: List[genai_types.Part] = []
    if msg.reasoning_content:
        parts.append(genai_types.Part(text=msg.reasoning_content, thought=True))

    for tc in msg.tool_calls:
        try:
            args = json.loads(tc.function.arguments or "{}")
        except ValueError as exc:
            raise BadRequest(f"tool call {tc.id!r} arguments are not valid JSON") from exc
        fc = genai_types.FunctionCall(name=tc.function.name, args=args)
        if tc.id and tc.id != tc.function.name:
            fc.id = tc.id
        part = genai_types.Part(function_call=fc)
        signature = get_tool_call_thought_signature(tc)
        if signature:
            part.thought_signature = signature
        parts.append(part)

    if msg.user_input_multi_content and msg.assistant_gen_multi_content:
        raise BadRequest("a message cannot carry both user input and assistant output parts")
    if msg.user_input_multi_content:
        if msg.role != Role.USER:
            raise BadRequest(f"user input parts are only supported on user messages, got {msg.role}")
        parts.extend(_input_parts(msg.user_input_multi_content))
    elif msg.assistant_gen_multi_content:
        if msg.role != Role.ASSISTANT:
            raise BadRequest(f"assistant output parts are only supported on assistant messages, got {msg.role}")
        parts.extend(_output_parts(msg.assistant_gen_multi_content))
    elif msg.content:
        text_part = genai_types.Part(text=msg.content)
        if not msg.tool_calls:
            signature = get_message_thought_signature(msg)
            if signature:
                text_part.thought_signature = signature
        parts.append(text_part)

    return genai_types.Content(role="model" if msg.role == Role.ASSISTANT else "user", parts=parts)


def _is_tool_response(content: genai_types.Content) -> bool:
    return bool(content.parts) and content.parts[0].function_response is not None


def convert_messages(messages: Sequence[Message]) -> List[genai_types.Content]:
    """Adjacent tool results are merged into a single user content."""
    contents: List[genai_types.Content] = []
    for msg in messages:
        if msg.role == Role.SYSTEM:
            continue
        content = convert_message(msg)
        if contents and _is_tool_response(content) and _is_tool_response(contents[-1]):
            contents[-1].parts.extend(content.parts)
            continue
        contents.append(content)
    if not contents:
        raise BadRequest("at least one non-system message is required")
    return contents


def convert_tools(tools: Sequence[ToolInfo]) -> List[genai_types.Tool]:
    declarations = [
        genai_types.FunctionDeclaration(
            name=tool.name,
            description=tool.description or None,
            parameters_json_schema=tool.parameters or {"type": "object", "properties": {}},
        )
        for tool in tools
    ]
    return [genai_types.Tool(function_declarations=declarations)]


class GeminiChatModel(BaseChatModel):
    """
    Chat model backed by the Gemini API.

    Parameters
    ----------
    client:
        Pre-configured `genai.Client`. When omitted one is created from
        `api_key`; the SDK falls back to the GEMINI_API_KEY /
        GOOGLE_API_KEY environment variables.
    model:
        Default model id, e.g. "gemini-2.5-flash".
    thinking_budget / include_thoughts:
        Thinking configuration for thinking-capable models.
    response_modalities:
        e.g. ["TEXT", "IMAGE"] for image output.

    Per-call overrides go through `CallOptions.extra` with the keys
    "top_k", "thinking_budget", "include_thoughts", "response_modalities",
    "response_json_schema" and "cached_content".
    """

    _vendor = "gemini"

    def __init__(
        self,
        *,
        client: Optional[Any] = None,
        api_key: Optional[str] = None,
        model: str = "gemini-2.5-flash",
        thinking_budget: Optional[int] = None,
        include_thoughts: Optional[bool] = None,
        response_modalities: Optional[Sequence[str]] = None,
        metrics: Optional[MetricsSink] = None,
        callbacks=None,
        default_options: Optional[CallOptions] = None,
    ) -> None:
        if client is None:
            client = genai.Client(api_key=api_key) if api_key else genai.Client()
        super().__init__(
            model=model,
            metrics=metrics,
            callbacks=callbacks,
            default_options=default_options,
        )
        self._client = client
        self._thinking_budget = thinking_budget
        self._include_thoughts = include_thoughts
        self._response_modalities = list(response_modalities) if response_modalities else None

    # ------------------------------------------------------------------
    # Request
    # ------------------------------------------------------------------

    def _build_request(self, messages: Sequence[Message], options: CallOptions, *, stream: bool) -> Dict[str, Any]:
        config: Dict[str, Any] = {}

        system_parts = [genai_types.Part(text=m.content) for m in messages if m.role == Role.SYSTEM and m.content]
        if system_parts:
            config["system_instruction"] = genai_types.Content(role="user", parts=system_parts)

        if options.max_tokens is not None:
            config["max_output_tokens"] = options.max_tokens
        if options.temperature is not None:
            config["temperature"] = options.temperature
        if options.top_p is not None:
            config["top_p"] = options.top_p
        if options.stop:
            config["stop_sequences"] = list(options.stop)
        top_k = options.vendor_option("top_k")
        if top_k is not None:
            config["top_k"] = float(top_k)

        budget = options.vendor_option("thinking_budget", self._thinking_budget)
        include = options.vendor_option("include_thoughts", self._include_thoughts)
        if budget is not None or include is not None:
            config["thinking_config"] = genai_types.ThinkingConfig(
                thinking_budget=budget,
                include_thoughts=include,
            )

        modalities = options.vendor_option("response_modalities", self._response_modalities)
        if modalities:
            config["response_modalities"] = list(modalities)
        schema = options.vendor_option("response_json_schema")
        if schema is not None:
            config["response_mime_type"] = "application/json"
            config["response_json_schema"] = schema
        cached = options.vendor_option("cached_content")
        if cached:
            config["cached_content"] = cached

        self._populate_tools(config, options)

        return {
            "model": options.model,
            "contents": convert_messages(messages),
            "config": genai_types.GenerateContentConfig(**config),
        }

    @staticmethod
    def _populate_tools(config: Dict[str, Any], options: CallOptions) -> None:
        tools = options.tools or ()
        if tools:
            config["tools"] = convert_tools(tools)

        choice = options.tool_choice
        if choice is None:
            return
        if choice == ToolChoice.FORBIDDEN:
            mode = genai_types.FunctionCallingConfigMode.NONE
        elif choice == ToolChoice.ALLOWED:
            mode = genai_types.FunctionCallingConfigMode.AUTO
        elif choice == ToolChoice.FORCED:
            if not tools:
                raise BadRequest("tool choice is forced but no tool is provided")
            mode = genai_types.FunctionCallingConfigMode.ANY
        else:
            raise BadRequest(f"tool choice {choice!r} not supported")
        config["tool_config"] = genai_types.ToolConfig(
            function_calling_config=genai_types.FunctionCallingConfig(mode=mode)
        )

    # ------------------------------------------------------------------
    # Vendor calls
    # ------------------------------------------------------------------

    def _translate_error(self, err: BaseException) -> LLMAdapterError:
        return translate_vendor_error(err, vendor=self._vendor)

    async def _create(self, request: Dict[str, Any]) -> Any:
        return await self._client.aio.models.generate_content(**request)

    async def _open_stream(self, request: Dict[str, Any]) -> EventStream:
        stream = await self._client.aio.models.generate_content_stream(**request)
        return EventStream(stream, close=close_func_of(stream))

    def _convert_response(self, response: Any) -> Message:
        return convert_response(response)

    def _convert_stream_event(self, event: Any, stream_ctx: StreamContext) -> Optional[Message]:
        return convert_response(event, stream_ctx)

    # ------------------------------------------------------------------
    # Resource cleanup
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Close the async transport of the client if supported."""
        aio = getattr(self._client, "aio", None)
        close = close_func_of(aio) if aio is not None else None
        if close is None:
            return
        try:
            result = close()
            if asyncio.iscoroutine(result):
                await result
        except Exception:  # noqa: BLE001
            logger.debug("GeminiChatModel close() failed", exc_info=True)


__all__ = [
    "GeminiChatModel",
    "ThoughtSignature",
    "KEY_THOUGHT_SIGNATURE",
    "KEY_VIDEO_META_DATA",
    "get_message_thought_signature",
    "get_tool_call_thought_signature",
    "set_message_thought_signature",
    "set_tool_call_thought_signature",
    "set_input_video_meta_data",
    "get_input_video_meta_data",
    "convert_response",
    "convert_message",
    "convert_messages",
    "convert_tools",
]
