# relay_sdk/llm/claude.py
# SPDX-License-Identifier: Apache-2.0
"""
Claude chat model adapter (Anthropic Messages API).

Targets the official `anthropic` Python client (`AsyncAnthropic`).

Goals
-----
- Map canonical messages -> Messages API request (system blocks, tool
  use / tool result blocks, thinking replay, image sources).
- Map the raw Messages stream (message_start / content_block_* /
  message_delta / message_stop) onto canonical chunks.
- Surface Claude extensions through `Message.extra`:
    * thinking text and its signature (replayed on the next turn)
    * cache breakpoints on messages and tools

Usage
-----
    from anthropic import AsyncAnthropic
    from relay_sdk.llm.claude import ClaudeChatModel

    model = ClaudeChatModel(client=AsyncAnthropic(), model="claude-sonnet-4-5")
    reader = await model.stream([user_message("Hello!")])
    reply = await concat_stream(reader)

Stream quirks
-------------
- A tool call with no arguments is streamed as repeated ``"{}"`` inputs;
  those placeholders are dropped at the source.
- Frames without text, tool calls or thinking (block starts, usage
  updates) are merged into the next real chunk by the base template.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, List, Optional, Sequence, Tuple

import anthropic  # type: ignore

from relay_sdk.llm.llm_base import (
    BadRequest,
    BaseChatModel,
    CallOptions,
    EventStream,
    LLMAdapterError,
    MetricsSink,
    ProtocolViolation,
    StreamContext,
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
    get_extra,
    set_extra,
)

logger = logging.getLogger(__name__)

try:  # pragma: no cover - import surface only
    from anthropic import AsyncAnthropic  # type: ignore[attr-defined]
except ImportError:  # pragma: no cover - older / unsupported client
    AsyncAnthropic = None  # type: ignore[misc,assignment]

# Error types (anthropic SDK), pulled via getattr so a missing symbol in a
# given SDK release falls back to its parent class.
AnthropicError = getattr(anthropic, "AnthropicError", Exception)
APIError = getattr(anthropic, "APIError", AnthropicError)
APIStatusError = getattr(anthropic, "APIStatusError", APIError)
APITimeoutError = getattr(anthropic, "APITimeoutError", APIError)
APIConnectionError = getattr(anthropic, "APIConnectionError", APIError)

KEY_THINKING = "_relay_claude_thinking"
KEY_BREAKPOINT = "_relay_claude_breakpoint"
KEY_THINKING_SIGNATURE = "_relay_claude_thinking_signature"

_EPHEMERAL = {"type": "ephemeral"}


# =============================================================================
# Extra helpers
# =============================================================================

def get_thinking(msg: Message) -> Tuple[str, bool]:
    """Thinking text attached to an assistant message."""
    return get_extra(msg, KEY_THINKING, str)


def get_thinking_signature(msg: Message) -> Tuple[str, bool]:
    return get_extra(msg, KEY_THINKING_SIGNATURE, str)


def set_thinking_signature(msg: Message, signature: str) -> None:
    set_extra(msg, KEY_THINKING_SIGNATURE, signature)


def set_message_breakpoint(msg: Message) -> Message:
    """Copy of `msg` marked as a prompt-cache breakpoint."""
    out = msg.copy()
    set_extra(out, KEY_BREAKPOINT, True)
    return out


def set_tool_info_breakpoint(tool: ToolInfo) -> ToolInfo:
    """Copy of `tool` marked as a prompt-cache breakpoint."""
    out = ToolInfo(
        name=tool.name,
        description=tool.description,
        parameters=tool.parameters,
        extra=dict(tool.extra or {}),
    )
    set_extra(out, KEY_BREAKPOINT, True)
    return out


def _is_breakpoint(holder: Any) -> bool:
    value, _ = get_extra(holder, KEY_BREAKPOINT, bool)
    return bool(value)


# =============================================================================
# Response -> canonical
# =============================================================================

def _usage_from(usage: Any) -> TokenUsage:
    """
    Anthropic usage -> TokenUsage. Cache reads and writes are billed input,
    so they are folded into prompt tokens.
    """
    if usage is None:
        return TokenUsage()
    input_tokens = int(getattr(usage, "input_tokens", 0) or 0)
    cache_read = int(getattr(usage, "cache_read_input_tokens", 0) or 0)
    cache_creation = int(getattr(usage, "cache_creation_input_tokens", 0) or 0)
    completion = int(getattr(usage, "output_tokens", 0) or 0)
    prompt = input_tokens + cache_read + cache_creation
    return TokenUsage(
        prompt_tokens=prompt,
        completion_tokens=completion,
        total_tokens=prompt + completion,
        cached_tokens=cache_read,
    )


def _tool_event(is_start: bool, call_id: str, name: str, arguments: Any, stream_ctx: StreamContext) -> ToolCall:
    if isinstance(arguments, (dict, list)):
        arguments = json.dumps(arguments, ensure_ascii=False)
    elif not isinstance(arguments, str):
        arguments = ""
    # Claude repeats "{}" for calls without arguments.
    if arguments == "{}":
        arguments = ""
    return ToolCall(
        index=stream_ctx.next_tool_index(is_start),
        id=call_id,
        function=FunctionCall(name=name, arguments=arguments),
    )


def _apply_content_block(block: Any, dst: Message, stream_ctx: StreamContext) -> None:
    btype = getattr(block, "type", None)
    if btype == "text":
        dst.content += getattr(block, "text", "") or ""
    elif btype == "tool_use":
        dst.tool_calls.append(
            _tool_event(True, block.id, block.name, getattr(block, "input", None), stream_ctx)
        )
    elif btype == "thinking":
        thinking = getattr(block, "thinking", "") or ""
        set_extra(dst, KEY_THINKING, thinking)
        dst.reasoning_content = thinking
        signature = getattr(block, "signature", "") or ""
        if signature:
            set_thinking_signature(dst, signature)
    elif btype == "redacted_thinking":
        pass
    elif btype in ("server_tool_use", "web_search_tool_result"):
        raise ProtocolViolation(f"claude content block {btype} is not supported")
    else:
        raise ProtocolViolation(f"unknown claude content block type: {btype}")


def convert_message(resp: Any, stream_ctx: Optional[StreamContext] = None) -> Message:
    """Convert a full Anthropic `Message` (also the message_start payload)."""
    stream_ctx = stream_ctx or StreamContext()
    message = Message(
        role=Role.ASSISTANT,
        response_meta=ResponseMeta(
            finish_reason=str(getattr(resp, "stop_reason", None) or ""),
            usage=_usage_from(getattr(resp, "usage", None)),
        ),
    )
    for block in getattr(resp, "content", None) or []:
        _apply_content_block(block, message, stream_ctx)
    return message


def convert_stream_event(event: Any, stream_ctx: StreamContext) -> Optional[Message]:
    """One raw Messages stream event -> zero or one chunk."""
    etype = getattr(event, "type", None)

    if etype == "message_start":
        message = convert_message(event.message, stream_ctx)
        if message.response_meta and message.response_meta.usage:
            stream_ctx.state["prompt_tokens"] = message.response_meta.usage.prompt_tokens
        return message

    if etype == "message_delta":
        delta = getattr(event, "delta", None)
        completion = int(getattr(getattr(event, "usage", None), "output_tokens", 0) or 0)
        prompt = int(stream_ctx.state.get("prompt_tokens", 0))
        return Message(
            role=Role.ASSISTANT,
            response_meta=ResponseMeta(
                finish_reason=str(getattr(delta, "stop_reason", None) or ""),
                usage=TokenUsage(
                    prompt_tokens=prompt,
                    completion_tokens=completion,
                    total_tokens=prompt + completion,
                ),
            ),
        )

    if etype in ("message_stop", "content_block_stop"):
        return None

    if etype == "content_block_start":
        message = Message(role=Role.ASSISTANT)
        _apply_content_block(event.content_block, message, stream_ctx)
        return message

    if etype == "content_block_delta":
        message = Message(role=Role.ASSISTANT)
        delta = event.delta
        dtype = getattr(delta, "type", None)
        if dtype == "text_delta":
            message.content = delta.text
        elif dtype == "thinking_delta":
            set_extra(message, KEY_THINKING, delta.thinking)
            message.reasoning_content = delta.thinking
        elif dtype == "input_json_delta":
            message.tool_calls.append(_tool_event(False, "", "", delta.partial_json, stream_ctx))
        elif dtype == "signature_delta":
            set_thinking_signature(message, delta.signature)
        elif dtype == "citations_delta":
            pass
        else:
            raise ProtocolViolation(f"unknown claude content block delta type: {dtype}")
        return message

    raise ProtocolViolation(f"unknown claude stream event type: {etype}")


# =============================================================================
# Canonical -> request
# =============================================================================

def _image_block(image: Any) -> Dict[str, Any]:
    if image is None:
        raise BadRequest("image field must not be None for an image_url part")
    if image.url:
        return {"type": "image", "source": {"type": "url", "url": image.url}}
    if image.base64_data:
        if not image.mime_type:
            raise BadRequest("image part must have mime_type when using base64_data")
        if image.base64_data.startswith("data:"):
            raise BadRequest("base64_data should be raw base64, not a data: URL")
        return {
            "type": "image",
            "source": {"type": "base64", "media_type": image.mime_type, "data": image.base64_data},
        }
    raise BadRequest("image part must have either url or base64_data")


def _part_blocks(parts: Sequence[Any]) -> List[Dict[str, Any]]:
    blocks: List[Dict[str, Any]] = []
    for part in parts:
        if part.type == ChatMessagePartType.TEXT:
            blocks.append({"type": "text", "text": part.text})
        elif part.type == ChatMessagePartType.IMAGE_URL:
            blocks.append(_image_block(part.image))
        else:
            raise BadRequest(f"claude message part type not supported: {part.type.value}")
    return blocks


def _tool_arguments(tc: ToolCall) -> Any:
    try:
        return json.loads(tc.function.arguments or "{}")
    except ValueError as exc:
        raise BadRequest(f"tool call {tc.id!r} arguments are not valid JSON") from exc


def convert_message_param(msg: Message) -> Dict[str, Any]:
    blocks: List[Dict[str, Any]] = []

    if msg.role == Role.ASSISTANT:
        thinking, has_thinking = get_thinking(msg)
        signature, has_signature = get_thinking_signature(msg)
        if has_thinking and thinking and has_signature and signature:
            blocks.append({"type": "thinking", "thinking": thinking, "signature": signature})

    if msg.user_input_multi_content and msg.assistant_gen_multi_content:
        raise BadRequest("a message cannot carry both user input and assistant output parts")

    if msg.content or msg.role == Role.TOOL:
        if msg.tool_call_id:
            blocks.append({"type": "tool_result", "tool_use_id": msg.tool_call_id, "content": msg.content})
        else:
            blocks.append({"type": "text", "text": msg.content})
    elif msg.user_input_multi_content:
        if msg.role != Role.USER:
            raise BadRequest(f"user input parts are only supported on user messages, got {msg.role}")
        blocks.extend(_part_blocks(msg.user_input_multi_content))
    elif msg.assistant_gen_multi_content:
        if msg.role != Role.ASSISTANT:
            raise BadRequest(f"assistant output parts are only supported on assistant messages, got {msg.role}")
        blocks.extend(_part_blocks(msg.assistant_gen_multi_content))

    for tc in msg.tool_calls:
        blocks.append({"type": "tool_use", "id": tc.id, "name": tc.function.name, "input": _tool_arguments(tc)})

    if not blocks:
        raise BadRequest("message has no content for claude")

    if _is_breakpoint(msg):
        blocks[-1]["cache_control"] = dict(_EPHEMERAL)

    return {"role": "assistant" if msg.role == Role.ASSISTANT else "user", "content": blocks}


def _split_system(messages: Sequence[Message]) -> Tuple[List[Message], List[Message]]:
    for i, msg in enumerate(messages):
        if msg.role == Role.SYSTEM:
            continue
        if msg.role != Role.USER:
            raise BadRequest("first non-system message should be a user message")
        return list(messages[:i]), list(messages[i:])
    raise BadRequest("only system messages in input, at least one user message is required")


def convert_tools(tools: Sequence[ToolInfo]) -> List[Dict[str, Any]]:
    out = []
    for tool in tools:
        param: Dict[str, Any] = {
            "name": tool.name,
            "description": tool.description,
            "input_schema": tool.parameters or {"type": "object", "properties": {}},
        }
        if _is_breakpoint(tool):
            param["cache_control"] = dict(_EPHEMERAL)
        out.append(param)
    return out


class ClaudeChatModel(BaseChatModel):
    """
    Chat model backed by the Anthropic Messages API.

    Parameters
    ----------
    client:
        Pre-configured `AsyncAnthropic` client. Recommended when you want
        to control retries, proxies, etc.
    api_key / base_url:
        Used when a client is not provided. `AsyncAnthropic` falls back to
        the ANTHROPIC_API_KEY environment variable.
    model:
        Default model id, e.g. "claude-sonnet-4-5".
    default_max_tokens:
        Anthropic requires `max_tokens` on every call.
    thinking_budget_tokens:
        Enables extended thinking with this budget.
    top_k / disable_parallel_tool_use / enable_auto_cache:
        Claude-specific request options.

    Per-call overrides go through `CallOptions.extra` with the keys
    "thinking_budget_tokens", "top_k", "disable_parallel_tool_use" and
    "enable_auto_cache".
    """

    _vendor = "claude"

    def __init__(
        self,
        *,
        client: Optional["AsyncAnthropic"] = None,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: str = "claude-sonnet-4-5",
        default_max_tokens: int = 4096,
        thinking_budget_tokens: Optional[int] = None,
        top_k: Optional[int] = None,
        disable_parallel_tool_use: Optional[bool] = None,
        enable_auto_cache: bool = False,
        metrics: Optional[MetricsSink] = None,
        callbacks=None,
        default_options: Optional[CallOptions] = None,
    ) -> None:
        if default_max_tokens <= 0:
            raise ValueError("default_max_tokens must be positive")
        if thinking_budget_tokens is not None and thinking_budget_tokens <= 0:
            raise ValueError("thinking_budget_tokens must be positive")

        if client is None:
            if AsyncAnthropic is None:
                raise RuntimeError(
                    "ClaudeChatModel requires the `anthropic` Python client with AsyncAnthropic. "
                    "Install via `pip install anthropic`."
                )
            client = AsyncAnthropic(api_key=api_key, base_url=base_url)

        super().__init__(
            model=model,
            metrics=metrics,
            callbacks=callbacks,
            default_options=default_options,
        )
        self._client = client
        self._default_max_tokens = int(default_max_tokens)
        self._thinking_budget_tokens = thinking_budget_tokens
        self._top_k = top_k
        self._disable_parallel_tool_use = disable_parallel_tool_use
        self._enable_auto_cache = bool(enable_auto_cache)

    # ------------------------------------------------------------------
    # Request
    # ------------------------------------------------------------------

    def _build_request(self, messages: Sequence[Message], options: CallOptions, *, stream: bool) -> Dict[str, Any]:
        system, turns = _split_system(messages)
        auto_cache = bool(options.vendor_option("enable_auto_cache", self._enable_auto_cache))

        request: Dict[str, Any] = {
            "model": options.model,
            "max_tokens": options.max_tokens or self._default_max_tokens,
        }
        if options.temperature is not None:
            request["temperature"] = options.temperature
        if options.top_p is not None:
            request["top_p"] = options.top_p
        if options.stop:
            request["stop_sequences"] = list(options.stop)
        top_k = options.vendor_option("top_k", self._top_k)
        if top_k is not None:
            request["top_k"] = int(top_k)
        budget = options.vendor_option("thinking_budget_tokens", self._thinking_budget_tokens)
        if budget:
            request["thinking"] = {"type": "enabled", "budget_tokens": int(budget)}

        self._populate_tools(request, options, auto_cache)

        if system:
            blocks = []
            for m in system:
                block: Dict[str, Any] = {"type": "text", "text": m.content}
                if _is_breakpoint(m):
                    block["cache_control"] = dict(_EPHEMERAL)
                blocks.append(block)
            if auto_cache and not any("cache_control" in b for b in blocks):
                blocks[-1]["cache_control"] = dict(_EPHEMERAL)
            request["system"] = blocks

        params = [convert_message_param(m) for m in turns]
        if auto_cache and not any("cache_control" in p["content"][-1] for p in params):
            params[-1]["content"][-1]["cache_control"] = dict(_EPHEMERAL)
        request["messages"] = params
        return request

    def _populate_tools(self, request: Dict[str, Any], options: CallOptions, auto_cache: bool) -> None:
        tools = convert_tools(options.tools or ())
        if tools and auto_cache and not any("cache_control" in t for t in tools):
            tools[-1]["cache_control"] = dict(_EPHEMERAL)

        disable_parallel = options.vendor_option("disable_parallel_tool_use", self._disable_parallel_tool_use)
        choice = options.tool_choice
        if choice == ToolChoice.FORBIDDEN:
            return
        if tools:
            request["tools"] = tools
        if choice == ToolChoice.ALLOWED:
            request["tool_choice"] = {"type": "auto"}
        elif choice == ToolChoice.FORCED:
            if not tools:
                raise BadRequest("tool choice is forced but no tool is provided")
            if len(tools) == 1:
                request["tool_choice"] = {"type": "tool", "name": tools[0]["name"]}
            else:
                request["tool_choice"] = {"type": "any"}
        if disable_parallel is not None and "tool_choice" in request and request["tool_choice"]["type"] != "tool":
            request["tool_choice"]["disable_parallel_tool_use"] = bool(disable_parallel)

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
        return await self._client.messages.create(**request)

    async def _open_stream(self, request: Dict[str, Any]) -> EventStream:
        stream = await self._client.messages.create(**request, stream=True)
        return EventStream(stream, close=getattr(stream, "close", None))

    def _convert_response(self, response: Any) -> Message:
        return convert_message(response)

    def _convert_stream_event(self, event: Any, stream_ctx: StreamContext) -> Optional[Message]:
        return convert_stream_event(event, stream_ctx)

    def _is_empty_chunk(self, chunk: Message) -> bool:
        thinking, _ = get_thinking(chunk)
        return chunk.is_empty() and not thinking

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
            # Best-effort cleanup; ignore close failures.
            logger.debug("ClaudeChatModel close() failed", exc_info=True)


__all__ = [
    "ClaudeChatModel",
    "KEY_THINKING",
    "KEY_BREAKPOINT",
    "KEY_THINKING_SIGNATURE",
    "get_thinking",
    "get_thinking_signature",
    "set_thinking_signature",
    "set_message_breakpoint",
    "set_tool_info_breakpoint",
    "convert_message",
    "convert_stream_event",
    "convert_message_param",
    "convert_tools",
]
