# SPDX-License-Identifier: Apache-2.0
"""
Chat model streaming template and call surface.

Covers:
  • Chunks are delivered in order and concatenate to the full reply
  • Content-less chunks are buffered into the next real chunk or flushed at the end
  • Vendor frames that produce no chunk are skipped
  • Transport errors arrive after every chunk already produced
  • Faults inside conversion surface once as StreamWorkerError
  • Closing the reader early cancels the worker and closes the vendor stream once
  • Open-stream failures are raised from stream() directly
  • Metrics and callbacks report outcomes and never break the data path
  • Option merging, validation and tool binding
"""

import logging

import pytest

from relay_sdk.core.error_context import get_context
from relay_sdk.llm.llm_base import (
    AuthError,
    BadRequest,
    CallOptions,
    DeadlineExceeded,
    LoggingCallbackHandler,
    ProtocolViolation,
    TransientNetwork,
)
from relay_sdk.schema.errors import StreamWorkerError
from relay_sdk.schema.message import (
    FunctionCall,
    Message,
    ResponseMeta,
    Role,
    ToolCall,
    ToolInfo,
    user_message,
)
from relay_sdk.schema.stream import concat_stream
from tests.mock.mock_chat_model import RaiseInConvert, ScriptedChatModel, text_chunk

pytestmark = pytest.mark.asyncio

HELLO = [user_message("hello")]


async def _drain(reader):
    """Collect chunks until the stream ends or fails; returns (chunks, error)."""
    chunks, error = [], None
    async with reader:
        try:
            async for chunk in reader:
                chunks.append(chunk)
        except Exception as exc:  # noqa: BLE001
            error = exc
    return chunks, error


async def test_stream_delivers_chunks_in_order(make_scripted_model):
    model = make_scripted_model([text_chunk("Hel"), text_chunk("lo"), text_chunk("!")])

    chunks, error = await _drain(await model.stream(HELLO))

    assert error is None
    assert [c.content for c in chunks] == ["Hel", "lo", "!"]
    assert model.requests[-1]["stream"] is True


async def test_concat_stream_joins_reply(make_scripted_model):
    model = make_scripted_model([text_chunk("Hel"), text_chunk("lo")])

    message = await concat_stream(await model.stream(HELLO))

    assert message.role == Role.ASSISTANT
    assert message.content == "Hello"


async def test_empty_chunks_are_buffered_into_next_chunk(make_scripted_model):
    """Metadata-only chunks ride along with the next chunk that has content."""
    head = Message(role=Role.ASSISTANT, extra={"request_id": "r-1"})
    tail = Message(role=Role.ASSISTANT, response_meta=ResponseMeta(finish_reason="stop"))
    model = make_scripted_model([head, text_chunk("Hel"), text_chunk("lo"), tail])

    chunks, error = await _drain(await model.stream(HELLO))

    assert error is None
    assert [c.content for c in chunks] == ["Hel", "lo", ""]
    assert chunks[0].extra == {"request_id": "r-1"}
    assert chunks[-1].response_meta.finish_reason == "stop"


async def test_frames_without_chunk_are_skipped(make_scripted_model):
    model = make_scripted_model([None, text_chunk("a"), None, None, text_chunk("b")])

    chunks, error = await _drain(await model.stream(HELLO))

    assert error is None
    assert [c.content for c in chunks] == ["a", "b"]


async def test_tool_call_fragments_concatenate(make_scripted_model):
    first = Message(
        role=Role.ASSISTANT,
        tool_calls=[ToolCall(id="call_1", index=0, function=FunctionCall(name="lookup", arguments='{"q": '))],
    )
    second = Message(
        role=Role.ASSISTANT,
        tool_calls=[ToolCall(index=0, function=FunctionCall(arguments='"tea"}'))],
    )
    model = make_scripted_model([first, second])

    message = await concat_stream(await model.stream(HELLO))

    assert len(message.tool_calls) == 1
    call = message.tool_calls[0]
    assert call.id == "call_1"
    assert call.function.name == "lookup"
    assert call.function.arguments == '{"q": "tea"}'


async def test_transport_error_arrives_after_partial_chunks(make_scripted_model, callbacks, metrics):
    model = make_scripted_model(
        [text_chunk("a"), text_chunk("b")],
        error=ConnectionError("connection reset"),
    )

    chunks, error = await _drain(await model.stream(HELLO))

    assert [c.content for c in chunks] == ["a", "b"], "partial chunks must precede the error"
    assert isinstance(error, TransientNetwork)
    ctx = get_context(error)
    assert ctx["operation"] == "stream"
    assert ctx["error_stage"] == "iterate"
    assert model.vendor_stream.close_calls == 1
    assert callbacks.events == ["start", "error"]
    assert metrics.observations[-1]["ok"] is False
    assert metrics.observations[-1]["code"] == "TRANSIENT_NETWORK"


async def test_adapter_error_from_conversion_is_sent_unchanged(make_scripted_model):
    model = make_scripted_model([text_chunk("a"), RaiseInConvert(ProtocolViolation("unknown delta"))])

    chunks, error = await _drain(await model.stream(HELLO))

    assert [c.content for c in chunks] == ["a"]
    assert isinstance(error, ProtocolViolation)
    assert model.vendor_stream.close_calls == 1


async def test_unexpected_fault_becomes_stream_worker_error(make_scripted_model, callbacks):
    model = make_scripted_model([text_chunk("a"), RaiseInConvert(ValueError("boom"))])

    chunks, error = await _drain(await model.stream(HELLO))

    assert [c.content for c in chunks] == ["a"]
    assert isinstance(error, StreamWorkerError)
    assert isinstance(error.info, ValueError)
    assert "Traceback" in error.stack
    assert model.vendor_stream.close_calls == 1
    assert callbacks.events == ["start", "error"]


async def test_reader_close_cancels_blocked_worker(make_scripted_model, callbacks, metrics):
    """A consumer that stops early must not leave the vendor stream open."""
    model = make_scripted_model([text_chunk("a")], block_at_end=True)
    reader = await model.stream(HELLO)

    first = await reader.recv()
    await reader.aclose()

    assert first.content == "a"
    assert model.vendor_stream.close_calls == 1
    assert callbacks.events == ["start"]
    assert metrics.observations[-1]["code"] == "CANCELLED"


async def test_reader_close_stops_producer_early(make_scripted_model):
    model = make_scripted_model([text_chunk(str(i)) for i in range(20)])
    reader = await model.stream(HELLO)

    await reader.recv()
    await reader.aclose()

    assert model.vendor_stream.close_calls == 1
    assert model.vendor_stream.consumed < 20
    assert reader.closed


async def test_completed_stream_closes_vendor_stream_once(make_scripted_model, callbacks, metrics):
    model = make_scripted_model([text_chunk("a"), text_chunk("b")])

    await concat_stream(await model.stream(HELLO))

    assert model.vendor_stream.close_calls == 1
    assert callbacks.events == ["start", "end"]
    assert callbacks.ended[0].content == "ab"
    obs = metrics.observations[-1]
    assert obs["op"] == "stream" and obs["ok"] is True
    assert obs["extra"] == {"vendor": "scripted", "model": "scripted-1"}


async def test_open_stream_error_is_raised_directly(callbacks, metrics):
    model = ScriptedChatModel(open_error=ConnectionError("refused"), callbacks=[callbacks], metrics=metrics)

    with pytest.raises(TransientNetwork) as exc_info:
        await model.stream(HELLO)

    assert get_context(exc_info.value)["error_stage"] == "open_stream"
    assert callbacks.events == ["start", "error"]
    assert metrics.observations[-1]["code"] == "TRANSIENT_NETWORK"
    assert model.vendor_stream.close_calls == 0


async def test_open_stream_adapter_error_is_not_rewrapped():
    original = AuthError("invalid api key")
    model = ScriptedChatModel(open_error=original)

    with pytest.raises(AuthError) as exc_info:
        await model.stream(HELLO)

    assert exc_info.value is original


async def test_generate_returns_converted_response(callbacks):
    model = ScriptedChatModel(
        response=Message(role=Role.ASSISTANT, content="done"),
        callbacks=[callbacks],
    )

    message = await model.generate(HELLO)

    assert message.content == "done"
    assert model.requests[-1]["stream"] is False
    assert model.requests[-1]["model"] == "scripted-1"
    assert callbacks.events == ["start", "end"]


async def test_generate_translates_vendor_errors(metrics):
    model = ScriptedChatModel(open_error=TimeoutError("read timed out"), metrics=metrics)

    with pytest.raises(DeadlineExceeded) as exc_info:
        await model.generate(HELLO)

    ctx = get_context(exc_info.value)
    assert ctx["framework"] == "scripted"
    assert ctx["operation"] == "generate"
    assert ctx["error_stage"] == "api_call"
    assert metrics.observations[-1]["code"] == "DEADLINE_EXCEEDED"


async def test_call_options_merge_over_defaults():
    model = ScriptedChatModel(default_options=CallOptions(temperature=0.2, extra={"a": 1}))

    await model.generate(HELLO, CallOptions(model="other", max_tokens=5, extra={"b": 2}))

    opts = model.requests[-1]["options"]
    assert opts.model == "other"
    assert opts.temperature == 0.2
    assert opts.max_tokens == 5
    assert opts.extra == {"a": 1, "b": 2}


@pytest.mark.parametrize(
    "options",
    [
        CallOptions(temperature=2.5),
        CallOptions(top_p=0.0),
        CallOptions(max_tokens=0),
    ],
)
async def test_invalid_options_rejected(options):
    model = ScriptedChatModel()

    with pytest.raises(BadRequest):
        await model.generate(HELLO, options)

    assert model.requests == [], "no request may be built for invalid options"


@pytest.mark.parametrize("messages", [[], ["hello"], [user_message("hi"), {"role": "user"}]])
async def test_invalid_messages_rejected(messages):
    model = ScriptedChatModel()

    with pytest.raises(BadRequest):
        await model.stream(messages)


async def test_bound_tools_flow_into_requests():
    model = ScriptedChatModel()
    weather = ToolInfo(name="weather", parameters={"type": "object", "properties": {}})
    model.bind_tools([weather])

    await model.generate(HELLO)

    assert model.requests[-1]["options"].tools == (weather,)


async def test_with_tools_leaves_original_unchanged():
    model = ScriptedChatModel()
    clone = model.with_tools([ToolInfo(name="search")])

    await model.generate(HELLO)
    await clone.generate(HELLO)

    assert model.requests[0]["options"].tools is None
    assert [t.name for t in model.requests[1]["options"].tools] == ["search"]


async def test_tool_binding_validation():
    model = ScriptedChatModel()

    with pytest.raises(BadRequest):
        model.bind_tools([])
    with pytest.raises(BadRequest, match="duplicate"):
        model.bind_tools([ToolInfo(name="a"), ToolInfo(name="a")])


async def test_failing_callbacks_and_metrics_do_not_break_calls(make_scripted_model):
    class Exploding:
        def on_start(self, **_):
            raise RuntimeError("callback down")

        def on_end(self, **_):
            raise RuntimeError("callback down")

    class BrokenMetrics:
        def observe(self, **_):
            raise RuntimeError("metrics down")

        def counter(self, **_):
            raise RuntimeError("metrics down")

    model = make_scripted_model([text_chunk("ok")], callbacks=[Exploding()], metrics=BrokenMetrics())

    message = await concat_stream(await model.stream(HELLO))

    assert message.content == "ok"


async def test_logging_callback_handler_logs_outcomes(caplog):
    model = ScriptedChatModel(callbacks=[LoggingCallbackHandler()])

    with caplog.at_level(logging.INFO, logger="relay_sdk.llm.llm_base"):
        await model.generate(HELLO)

    text = caplog.text
    assert "scripted chat start model=scripted-1 messages=1" in text
    assert "scripted chat end model=scripted-1" in text


async def test_async_context_manager_closes_model():
    closed = []

    class Closing(ScriptedChatModel):
        async def close(self):
            closed.append(True)

    async with Closing() as model:
        await model.generate(HELLO)

    assert closed == [True]


async def test_constructor_validation():
    with pytest.raises(ValueError):
        ScriptedChatModel(model="")
    with pytest.raises(ValueError):
        ScriptedChatModel(stream_capacity=0)
