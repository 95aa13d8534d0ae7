# relay_sdk/llm/ollama.py
# SPDX-License-Identifier: Apache-2.0
"""
Ollama chat model adapter.

Targets `ollama.AsyncClient` (`/api/chat`). Ollama differs from the hosted
vendors in a few ways that shape this adapter:

- tool calls arrive complete (never fragmented) and without ids; each one
  gets a fresh index from the stream context so concatenation keeps them
  apart
- images are sent as base64 strings on the message; URL media is rejected
- `thinking` output of reasoning models maps to `reasoning_content`
- usage is reported on the final (`done`) chunk as prompt / eval counts
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Sequence

import ollama  # type: ignore

from relay_sdk.llm.llm_base import (
    BadRequest,
    BaseChatModel,
    CallOptions,
    EventStream,
    LLMAdapterError,
    MetricsSink,
    StreamContext,
    close_func_of,
    error_from_status,
    translate_vendor_error,
)
from relay_sdk.schema.message import (
    ChatMessagePartType,
    FunctionCall,
    Message,
    ResponseMeta,
    Role,
    TokenUsage,
    ToolCall,
    ToolChoice,
    ToolInfo,
)

logger = logging.getLogger(__name__)

ResponseError = getattr(ollama, "ResponseError", Exception)
RequestError = getattr(ollama, "RequestError", Exception)


# =============================================================================
# Response -> canonical
# =============================================================================

def _get(obj: Any, name: str, default: Any = None) -> Any:
    # ollama models are pydantic objects that also support item access.
    if obj is None:
        return default
    if isinstance(obj, dict):
        value = obj.get(name)
    else:
        value = getattr(obj, name, None)
    return default if value is None else value


def convert_response(resp: Any, stream_ctx: Optional[StreamContext] = None) -> Message:
    """One `ChatResponse` (a stream chunk or the full reply) -> Message."""
    stream_ctx = stream_ctx or StreamContext()
    raw = _get(resp, "message")
    message = Message(
        role=Role.ASSISTANT,
        content=_get(raw, "content", "") or "",
        reasoning_content=_get(raw, "thinking", "") or "",
    )
    for call in _get(raw, "tool_calls") or []:
        fn = _get(call, "function")
        arguments = _get(fn, "arguments") or {}
        message.tool_calls.append(
            ToolCall(
                index=stream_ctx.next_tool_index(True),
                function=FunctionCall(
                    name=_get(fn, "name", "") or "",
                    arguments=arguments if isinstance(arguments, str) else json.dumps(arguments, ensure_ascii=False),
                ),
            )
        )

    if _get(resp, "done", False):
        prompt = int(_get(resp, "prompt_eval_count", 0) or 0)
        completion = int(_get(resp, "eval_count", 0) or 0)
        message.response_meta = ResponseMeta(
            finish_reason=_get(resp, "done_reason", "") or "",
            usage=TokenUsage(
                prompt_tokens=prompt,
                completion_tokens=completion,
                total_tokens=prompt + completion,
            ),
        )
    return message


# =============================================================================
# Canonical -> request
# =============================================================================

def _base64_image(media: Any) -> str:
    if media is None:
        raise BadRequest("image field must not be None for an image part")
    if media.url:
        raise BadRequest("ollama: URL is not supported for image parts, use base64_data instead")
    if not media.base64_data:
        raise BadRequest("image part must carry base64_data")
    data = media.base64_data
    if data.startswith("data:"):
        _, _, data = data.partition(",")
    return data


def _collect_parts(parts: Sequence[Any], out: Dict[str, Any]) -> None:
    texts: List[str] = []
    images: List[str] = []
    for part in parts:
        if part.type == ChatMessagePartType.TEXT:
            texts.append(part.text)
        elif part.type == ChatMessagePartType.IMAGE_URL:
            images.append(_base64_image(part.image))
        else:
            raise BadRequest(f"ollama message part type not supported: {part.type.value}")
    out["content"] = "\n".join(texts)
    if images:
        out["images"] = images


def convert_message(msg: Message) -> Dict[str, Any]:
    if msg.role is None:
        raise BadRequest("message role is required")
    if msg.user_input_multi_content and msg.assistant_gen_multi_content:
        raise BadRequest("a message cannot carry both user input and assistant output parts")

    out: Dict[str, Any] = {"role": msg.role.value, "content": msg.content}
    if msg.user_input_multi_content:
        if msg.role != Role.USER:
            raise BadRequest(f"user input multi content only support user role, got {msg.role.value}")
        _collect_parts(msg.user_input_multi_content, out)
    elif msg.assistant_gen_multi_content:
        if msg.role != Role.ASSISTANT:
            raise BadRequest(f"assistant gen multi content only support assistant role, got {msg.role.value}")
        _collect_parts(msg.assistant_gen_multi_content, out)

    if msg.reasoning_content:
        out["thinking"] = msg.reasoning_content
    if msg.tool_calls:
        calls = []
        for tc in msg.tool_calls:
            try:
                arguments = json.loads(tc.function.arguments or "{}")
            except ValueError as exc:
                raise BadRequest(f"tool call {tc.function.name!r} arguments are not valid JSON") from exc
            calls.append({"function": {"name": tc.function.name, "arguments": arguments}})
        out["tool_calls"] = calls
    if msg.role == Role.TOOL and msg.tool_name:
        out["tool_name"] = msg.tool_name
    return out


def convert_tools(tools: Sequence[ToolInfo]) -> List[Dict[str, Any]]:
    return [
        {
            "type": "function",
            "function": {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.parameters or {"type": "object", "properties": {}},
            },
        }
        for tool in tools
    ]


class OllamaChatModel(BaseChatModel):
    """
    Chat model backed by a local or remote Ollama server.

    Parameters
    ----------
    client:
        Pre-configured `ollama.AsyncClient`.
    host:
        Used when a client is not provided; the client falls back to the
        OLLAMA_HOST environment variable, then http://localhost:11434.
    think:
        Enable thinking output on reasoning models (bool or a level such
        as "high" on models that support levels).
    keep_alive / format:
        Passed through to `/api/chat`.

    Per-call overrides go through `CallOptions.extra` with the keys
    "think", "format", "keep_alive" and "options" (raw Ollama model
    options such as ``{"num_ctx": 8192}``).
    """

    _vendor = "ollama"

    def __init__(
        self,
        *,
        client: Optional[Any] = None,
        host: Optional[str] = None,
        model: str = "llama3.1",
        think: Optional[Any] = None,
        keep_alive: Optional[Any] = None,
        format: Optional[Any] = None,
        metrics: Optional[MetricsSink] = None,
        callbacks=None,
        default_options: Optional[CallOptions] = None,
    ) -> None:
        if client is None:
            client = ollama.AsyncClient(host=host)
        super().__init__(
            model=model,
            metrics=metrics,
            callbacks=callbacks,
            default_options=default_options,
        )
        self._client = client
        self._think = think
        self._keep_alive = keep_alive
        self._format = format

    # ------------------------------------------------------------------
    # Request
    # ------------------------------------------------------------------

    def _build_request(self, messages: Sequence[Message], options: CallOptions, *, stream: bool) -> Dict[str, Any]:
        model_options: Dict[str, Any] = dict(options.vendor_option("options") or {})
        if options.max_tokens is not None:
            model_options["num_predict"] = options.max_tokens
        if options.temperature is not None:
            model_options["temperature"] = options.temperature
        if options.top_p is not None:
            model_options["top_p"] = options.top_p
        if options.stop:
            model_options["stop"] = list(options.stop)

        request: Dict[str, Any] = {
            "model": options.model,
            "messages": [convert_message(m) for m in messages],
            "stream": stream,
        }
        if model_options:
            request["options"] = model_options

        if options.tool_choice == ToolChoice.FORCED:
            raise BadRequest("ollama does not support forced tool choice")
        if options.tools and options.tool_choice != ToolChoice.FORBIDDEN:
            request["tools"] = convert_tools(options.tools)

        for key, default in (("think", self._think), ("format", self._format), ("keep_alive", self._keep_alive)):
            value = options.vendor_option(key, default)
            if value is not None:
                request[key] = value
        return request

    # ------------------------------------------------------------------
    # Vendor calls
    # ------------------------------------------------------------------

    def _translate_error(self, err: BaseException) -> LLMAdapterError:
        if isinstance(err, ResponseError):
            status = getattr(err, "status_code", 0) or 0
            message = getattr(err, "error", "") or str(err)
            # The SDK uses -1 when the server sent no status.
            if status > 0:
                return error_from_status(status, message, vendor=self._vendor)
        if isinstance(err, RequestError):
            return BadRequest(getattr(err, "error", "") or str(err), details={"vendor": self._vendor})
        return translate_vendor_error(err, vendor=self._vendor)

    async def _create(self, request: Dict[str, Any]) -> Any:
        return await self._client.chat(**request)

    async def _open_stream(self, request: Dict[str, Any]) -> EventStream:
        stream = await self._client.chat(**request)
        return EventStream(stream, close=close_func_of(stream))

    def _convert_response(self, response: Any) -> Message:
        return convert_response(response)

    def _convert_stream_event(self, event: Any, stream_ctx: StreamContext) -> Optional[Message]:
        return convert_response(event, stream_ctx)

    # ------------------------------------------------------------------
    # Resource cleanup
    # ------------------------------------------------------------------

    async def close(self) -> None:
        """Close the underlying HTTP client if the SDK exposes it."""
        inner = getattr(self._client, "_client", None)
        close = close_func_of(inner) if inner is not None else None
        if close is None:
            return
        try:
            result = close()
            if asyncio.iscoroutine(result):
                await result
        except Exception:  # noqa: BLE001
            logger.debug("OllamaChatModel close() failed", exc_info=True)


__all__ = [
    "OllamaChatModel",
    "convert_response",
    "convert_message",
    "convert_tools",
]
