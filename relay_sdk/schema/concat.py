# relay_sdk/schema/concat.py
# SPDX-License-Identifier: Apache-2.0
"""
Stream concatenation engine.

Reduces an ordered sequence of `Message` chunks into one logical message
without reordering anything:

- `content` / `reasoning_content`: string append in chunk order.
- tool calls: grouped by `index` (index-less fragments join the group whose
  id they share), argument fragments appended in receipt order, groups
  emitted in ascending index order.
- multimodal output: consecutive text parts merged, consecutive inline
  (non-URL) audio parts merged (their `extra` reduced through the registry).
- `response_meta`: last non-empty finish reason, field-wise max usage.
- `extra`: union of keys; per key the values of the chunks carrying it
  (gaps skipped) are passed to the reducer registered for their type.
  A key carried by a single chunk needs no reducer.

Missing reducer policy: concatenation fails with `ConcatError` naming the
key and its value type. Nothing is dropped silently.

Tool argument placeholders: a fragment that is exactly ``"{}"`` is elided
when its group has other non-empty fragments. A group made only of
placeholders yields ``"{}"`` (a genuine no-argument call).
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence

from relay_sdk.schema.errors import ConcatError
from relay_sdk.schema.message import (
    ChatMessagePartType,
    FunctionCall,
    Message,
    MessageInputPart,
    MessageOutputAudio,
    MessageOutputPart,
    ResponseMeta,
    TokenUsage,
    ToolCall,
)
from relay_sdk.schema.registry import get_concat_func, register_concat_func

logger = logging.getLogger(__name__)

EMPTY_ARGUMENTS_PLACEHOLDER = "{}"


def _type_label(tp: type) -> str:
    return f"{tp.__module__}.{tp.__qualname__}"


# =============================================================================
# Extra maps
# =============================================================================

def concat_values(values: Sequence[Any], *, key: str = "") -> Any:
    """
    Reduce values collected for one `extra` key.

    A single value is returned as-is. Otherwise every value must share one
    concrete type, and the reducer registered for it is applied.
    """
    if not values:
        raise ConcatError("no values to concat", details={"key": key})
    if len(values) == 1:
        return values[0]

    tp = type(values[0])
    for v in values[1:]:
        if type(v) is not tp:
            raise ConcatError(
                f"cannot concat extra {key!r}: mixed value types "
                f"{_type_label(tp)} and {_type_label(type(v))}",
                details={"key": key},
            )

    func = get_concat_func(tp)
    if func is None:
        raise ConcatError(
            f"cannot concat extra {key!r}: no concat func registered for {_type_label(tp)}",
            details={"key": key, "type": _type_label(tp)},
        )

    try:
        return func(list(values))
    except Exception as exc:
        raise ConcatError(
            f"cannot concat extra {key!r}: {exc}",
            details={"key": key, "type": _type_label(tp)},
        ) from exc


def concat_extra(extras: Iterable[Optional[Dict[str, Any]]]) -> Optional[Dict[str, Any]]:
    """
    Merge `extra` maps key by key. Returns None when no map carries a key.
    """
    collected: Dict[str, List[Any]] = {}
    for extra in extras:
        if not extra:
            continue
        for key, value in extra.items():
            if value is None:
                continue
            collected.setdefault(key, []).append(value)

    if not collected:
        return None
    return {key: concat_values(values, key=key) for key, values in collected.items()}


@register_concat_func(dict)
def _concat_dicts(values: List[dict]) -> dict:
    return concat_extra(values) or {}


# =============================================================================
# Tool calls
# =============================================================================

def _first_non_empty(current: str, candidate: str, *, what: str, index: Any) -> str:
    if not candidate:
        return current
    if current and current != candidate:
        raise ConcatError(
            f"tool call {what} conflict at index {index}: {current!r} vs {candidate!r}",
            details={"index": index, "field": what},
        )
    return current or candidate


def _join_arguments(fragments: List[str]) -> str:
    non_empty = [f for f in fragments if f]
    if not non_empty:
        return ""
    real = [f for f in non_empty if f != EMPTY_ARGUMENTS_PLACEHOLDER]
    if not real:
        return EMPTY_ARGUMENTS_PLACEHOLDER
    return "".join(real)


def _merge_tool_call_group(index: Optional[int], group: List[ToolCall]) -> ToolCall:
    call_id = ""
    call_type = ""
    name = ""
    for tc in group:
        call_id = _first_non_empty(call_id, tc.id, what="id", index=index)
        call_type = _first_non_empty(call_type, tc.type, what="type", index=index)
        name = _first_non_empty(name, tc.function.name, what="name", index=index)

    return ToolCall(
        id=call_id,
        type=call_type or "function",
        index=index,
        function=FunctionCall(
            name=name,
            arguments=_join_arguments([tc.function.arguments for tc in group]),
        ),
        extra=concat_extra(tc.extra for tc in group),
    )


def concat_tool_calls(calls: Sequence[ToolCall]) -> List[ToolCall]:
    """
    Merge tool call fragments.

    Fragments with an index are grouped by it. An index-less fragment whose
    id matches an indexed fragment joins that group; other index-less
    fragments are kept as standalone calls after the indexed groups.
    """
    id_to_index: Dict[str, int] = {}
    for tc in calls:
        if tc.index is not None and tc.id:
            id_to_index.setdefault(tc.id, tc.index)

    groups: Dict[int, List[ToolCall]] = {}
    standalone: List[ToolCall] = []
    for tc in calls:
        index = tc.index
        if index is None and tc.id:
            index = id_to_index.get(tc.id)
        if index is None:
            standalone.append(_merge_tool_call_group(None, [tc]))
            continue
        groups.setdefault(index, []).append(tc)

    merged = [_merge_tool_call_group(index, groups[index]) for index in sorted(groups)]
    return merged + standalone


# =============================================================================
# Multimodal parts
# =============================================================================

def _is_inline_audio(part: MessageOutputPart) -> bool:
    # Streamed audio fragments carry data, a transcript delta or both; never a URL.
    return (
        part.type == ChatMessagePartType.AUDIO_URL
        and part.audio is not None
        and not part.audio.url
    )


def _concat_output_parts(parts: List[MessageOutputPart]) -> List[MessageOutputPart]:
    out: List[MessageOutputPart] = []
    for part in parts:
        last = out[-1] if out else None
        if last is not None and last.type == ChatMessagePartType.TEXT and part.type == ChatMessagePartType.TEXT:
            out[-1] = MessageOutputPart(
                type=ChatMessagePartType.TEXT,
                text=last.text + part.text,
                extra=concat_extra([last.extra, part.extra]),
            )
            continue
        if last is not None and _is_inline_audio(last) and _is_inline_audio(part):
            prev_audio, audio = last.audio, part.audio
            out[-1] = MessageOutputPart(
                type=ChatMessagePartType.AUDIO_URL,
                audio=MessageOutputAudio(
                    base64_data=(prev_audio.base64_data or "") + (audio.base64_data or "") or None,
                    mime_type=prev_audio.mime_type or audio.mime_type,
                    extra=concat_extra([prev_audio.extra, audio.extra]),
                ),
                extra=concat_extra([last.extra, part.extra]),
            )
            continue
        out.append(part)
    return out


def _concat_input_parts(parts: List[MessageInputPart]) -> List[MessageInputPart]:
    out: List[MessageInputPart] = []
    for part in parts:
        last = out[-1] if out else None
        if last is not None and last.type == ChatMessagePartType.TEXT and part.type == ChatMessagePartType.TEXT:
            out[-1] = MessageInputPart(
                type=ChatMessagePartType.TEXT,
                text=last.text + part.text,
                extra=concat_extra([last.extra, part.extra]),
            )
            continue
        out.append(part)
    return out


# =============================================================================
# Response metadata
# =============================================================================

def _concat_usage(usages: List[TokenUsage]) -> Optional[TokenUsage]:
    if not usages:
        return None
    return TokenUsage(
        prompt_tokens=max(u.prompt_tokens for u in usages),
        completion_tokens=max(u.completion_tokens for u in usages),
        total_tokens=max(u.total_tokens for u in usages),
        cached_tokens=max(u.cached_tokens for u in usages),
        reasoning_tokens=max(u.reasoning_tokens for u in usages),
    )


def _concat_response_meta(metas: List[ResponseMeta]) -> Optional[ResponseMeta]:
    if not metas:
        return None
    finish_reason = ""
    for meta in metas:
        if meta.finish_reason:
            finish_reason = meta.finish_reason
    return ResponseMeta(
        finish_reason=finish_reason,
        usage=_concat_usage([m.usage for m in metas if m.usage is not None]),
    )


# =============================================================================
# Messages
# =============================================================================

def _stable_field(msgs: Sequence[Message], attr: str) -> Any:
    value = None
    for m in msgs:
        candidate = getattr(m, attr)
        if not candidate:
            continue
        if value and value != candidate:
            raise ConcatError(
                f"cannot concat messages with different {attr}: {value!r} vs {candidate!r}",
                details={"field": attr},
            )
        value = value or candidate
    return value


def concat_messages(msgs: Sequence[Message]) -> Message:
    """
    Concatenate streamed chunks into one message.

    Raises:
        ConcatError: empty input, a None chunk, inconsistent stable fields,
            or an `extra` value that cannot be reduced.
    """
    if not msgs:
        raise ConcatError("cannot concat an empty message list")
    for i, m in enumerate(msgs):
        if m is None:
            raise ConcatError(f"message at position {i} is None", details={"position": i})
    if len(msgs) == 1:
        return msgs[0].copy()

    tool_calls: List[ToolCall] = []
    input_parts: List[MessageInputPart] = []
    output_parts: List[MessageOutputPart] = []
    metas: List[ResponseMeta] = []
    for m in msgs:
        tool_calls.extend(m.tool_calls)
        input_parts.extend(m.user_input_multi_content)
        output_parts.extend(m.assistant_gen_multi_content)
        if m.response_meta is not None:
            metas.append(m.response_meta)

    return Message(
        role=_stable_field(msgs, "role"),
        content="".join(m.content for m in msgs),
        reasoning_content="".join(m.reasoning_content for m in msgs),
        tool_calls=concat_tool_calls(tool_calls) if tool_calls else [],
        user_input_multi_content=_concat_input_parts(input_parts),
        assistant_gen_multi_content=_concat_output_parts(output_parts),
        name=_stable_field(msgs, "name") or "",
        tool_call_id=_stable_field(msgs, "tool_call_id") or "",
        tool_name=_stable_field(msgs, "tool_name") or "",
        response_meta=_concat_response_meta(metas),
        extra=concat_extra(m.extra for m in msgs),
    )


__all__ = [
    "EMPTY_ARGUMENTS_PLACEHOLDER",
    "concat_values",
    "concat_extra",
    "concat_tool_calls",
    "concat_messages",
]
