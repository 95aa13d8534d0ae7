# SPDX-License-Identifier: Apache-2.0
"""
OpenAI-compatible adapter: ChatCompletionChunk -> messages, messages -> request.

Covers:
  • Text, tool-call fragments and the trailing usage chunk concatenate correctly
  • Index-less tool-call fragments are assigned indexes from the stream context
  • Request id keeps the last value; audio fragments merge under one audio id
  • Inconsistent audio ids fail concatenation
  • Request mapping: multimodal parts, audio replay by id, tool choice, passthrough options
  • SDK timeout errors map to DeadlineExceeded
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import httpx
import openai
import pytest

from relay_sdk.llm.llm_base import BadRequest, CallOptions, DeadlineExceeded, StreamContext
from relay_sdk.llm.openai import (
    KEY_AUDIO_ID,
    AudioID,
    OpenAIChatModel,
    convert_chunk,
    convert_completion,
    get_audio_id,
    get_audio_transcript,
    get_request_id,
    message_param,
)
from relay_sdk.schema.concat import concat_messages
from relay_sdk.schema.errors import ConcatError
from relay_sdk.schema.message import (
    ChatMessagePartType,
    FunctionCall,
    ImageURLDetail,
    Message,
    MessageInputAudio,
    MessageInputFile,
    MessageInputImage,
    MessageInputPart,
    MessageOutputAudio,
    MessageOutputPart,
    Role,
    ToolCall,
    ToolChoice,
    ToolInfo,
    tool_message,
    user_message,
)
from relay_sdk.schema.stream import concat_stream
from tests.mock.mock_chat_model import FakeVendorStream


def chunk(chunk_id="chatcmpl-1", *, finish_reason=None, usage=None, choices=True, **delta):
    choice_list = []
    if choices:
        choice_list.append(
            SimpleNamespace(index=0, finish_reason=finish_reason, delta=SimpleNamespace(**delta))
        )
    return SimpleNamespace(id=chunk_id, choices=choice_list, usage=usage)


def tool_fragment(index=None, call_id=None, name=None, arguments=None):
    return SimpleNamespace(
        index=index,
        id=call_id,
        type="function" if call_id else None,
        function=SimpleNamespace(name=name, arguments=arguments),
    )


def _model_with_stream(events, **kwargs):
    stream = FakeVendorStream(events)
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=stream)
    return OpenAIChatModel(client=client, **kwargs), client, stream


def _request(messages, options=None, **kwargs):
    model = OpenAIChatModel(client=MagicMock(), **kwargs)
    return model._build_request(messages, model._resolve_options(options), stream=False)


WEATHER = ToolInfo(name="get_weather", description="Weather", parameters={"type": "object", "properties": {}})
TIME = ToolInfo(name="get_time")


# ---------------------------------------------------------------------------
# Stream -> chunks
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_stream_text_tool_calls_and_usage():
    usage = SimpleNamespace(
        prompt_tokens=20,
        completion_tokens=11,
        total_tokens=31,
        prompt_tokens_details=SimpleNamespace(cached_tokens=8),
        completion_tokens_details=SimpleNamespace(reasoning_tokens=4),
    )
    events = [
        chunk(role="assistant", content=""),
        chunk(content="Checking "),
        chunk(content="both."),
        chunk(tool_calls=[tool_fragment(0, "call_a", "get_weather", "")]),
        chunk(tool_calls=[tool_fragment(0, arguments='{"city":"Oslo"}')]),
        chunk(tool_calls=[tool_fragment(1, "call_b", "get_time", "{}")]),
        chunk(finish_reason="tool_calls"),
        chunk("chatcmpl-2", choices=False, usage=usage),
    ]
    model, client, stream = _model_with_stream(events)

    reply = await concat_stream(await model.stream([user_message("Oslo weather and time?")]))

    assert reply.content == "Checking both."
    assert [(tc.index, tc.id, tc.function.name) for tc in reply.tool_calls] == [
        (0, "call_a", "get_weather"),
        (1, "call_b", "get_time"),
    ]
    assert [tc.function.arguments for tc in reply.tool_calls] == ['{"city":"Oslo"}', "{}"]
    assert reply.response_meta.finish_reason == "tool_calls"
    assert reply.response_meta.usage.cached_tokens == 8
    assert reply.response_meta.usage.reasoning_tokens == 4
    assert get_request_id(reply) == "chatcmpl-2"

    kwargs = client.chat.completions.create.call_args.kwargs
    assert kwargs["stream"] is True
    assert kwargs["stream_options"] == {"include_usage": True}
    assert stream.close_calls == 1


def test_index_less_fragments_use_stream_context():
    ctx = StreamContext()
    frames = [
        chunk(tool_calls=[tool_fragment(call_id="c1", name="a", arguments='{"x"')]),
        chunk(tool_calls=[tool_fragment(arguments=":1}")]),
        chunk(tool_calls=[tool_fragment(call_id="c2", name="b", arguments="{}")]),
    ]

    indexes = [convert_chunk(f, ctx).tool_calls[0].index for f in frames]

    assert indexes == [0, 0, 1]


def test_content_free_chunk_without_finish_has_no_meta():
    msg = convert_chunk(chunk(content=""), StreamContext())

    assert msg.is_empty()
    assert msg.response_meta is None
    assert get_request_id(msg) == "chatcmpl-1"


@pytest.mark.asyncio
async def test_audio_fragments_merge_under_one_id():
    events = [
        chunk(audio={"id": "audio_1", "transcript": "Hel"}),
        chunk(audio={"id": "audio_1", "data": "UklG", "transcript": "lo"}),
        chunk(audio={"id": "audio_1", "data": "RiQA"}),
        chunk(finish_reason="stop"),
    ]
    model, _, _ = _model_with_stream(events, audio={"voice": "alloy", "format": "wav"})

    reply = await concat_stream(
        await model.stream([user_message("Say hello")], CallOptions(extra={"modalities": ["text", "audio"]}))
    )

    parts = reply.assistant_gen_multi_content
    assert len(parts) == 1
    audio = parts[0].audio
    assert audio.base64_data == "UklGRiQA"
    assert audio.mime_type == "audio/wav"
    assert get_audio_id(audio) == ("audio_1", True)
    assert get_audio_transcript(audio) == ("Hello", True)


def test_inconsistent_audio_ids_fail():
    ctx = StreamContext()
    first = convert_chunk(chunk(audio={"id": "audio_1", "data": "AAAA"}), ctx, audio_format="wav")
    second = convert_chunk(chunk(audio={"id": "audio_2", "data": "BBBB"}), ctx, audio_format="wav")

    with pytest.raises(ConcatError, match="audio IDs are not consistent"):
        concat_messages([first, second])


def test_convert_completion():
    resp = SimpleNamespace(
        id="chatcmpl-9",
        choices=[
            SimpleNamespace(
                finish_reason="tool_calls",
                message=SimpleNamespace(
                    content="",
                    tool_calls=[
                        SimpleNamespace(id="c1", type="function", function=SimpleNamespace(name="a", arguments="{}")),
                        SimpleNamespace(id="c2", type="function", function=SimpleNamespace(name="b", arguments="{}")),
                    ],
                ),
            )
        ],
        usage=None,
    )

    msg = convert_completion(resp)

    assert [tc.index for tc in msg.tool_calls] == [0, 1]
    assert msg.response_meta.finish_reason == "tool_calls"
    assert get_request_id(msg) == "chatcmpl-9"


def test_convert_completion_without_choices():
    with pytest.raises(BadRequest):
        convert_completion(SimpleNamespace(id="x", choices=[], usage=None))


# ---------------------------------------------------------------------------
# Canonical -> request
# ---------------------------------------------------------------------------

def test_message_param_multimodal_input():
    msg = Message(
        role=Role.USER,
        user_input_multi_content=[
            MessageInputPart(text="Describe these"),
            MessageInputPart(
                type=ChatMessagePartType.IMAGE_URL,
                image=MessageInputImage(url="https://x/cat.png", detail=ImageURLDetail.HIGH),
            ),
            MessageInputPart(
                type=ChatMessagePartType.IMAGE_URL,
                image=MessageInputImage(base64_data="aW1n", mime_type="image/png"),
            ),
            MessageInputPart(
                type=ChatMessagePartType.AUDIO_URL,
                audio=MessageInputAudio(base64_data="bXAz", mime_type="audio/mpeg"),
            ),
            MessageInputPart(
                type=ChatMessagePartType.FILE_URL,
                file=MessageInputFile(base64_data="cGRm", mime_type="application/pdf", name="a.pdf"),
            ),
        ],
    )

    content = message_param(msg)["content"]

    assert content[0] == {"type": "text", "text": "Describe these"}
    assert content[1] == {"type": "image_url", "image_url": {"url": "https://x/cat.png", "detail": "high"}}
    assert content[2]["image_url"]["url"] == "data:image/png;base64,aW1n"
    assert content[3] == {"type": "input_audio", "input_audio": {"data": "bXAz", "format": "mp3"}}
    assert content[4] == {
        "type": "file",
        "file": {"file_data": "data:application/pdf;base64,cGRm", "filename": "a.pdf"},
    }


def test_message_param_replays_audio_by_id():
    audio = MessageOutputAudio(base64_data="AAAA", mime_type="audio/wav", extra={KEY_AUDIO_ID: AudioID("audio_1")})
    msg = Message(
        role=Role.ASSISTANT,
        assistant_gen_multi_content=[
            MessageOutputPart(text="Hello"),
            MessageOutputPart(type=ChatMessagePartType.AUDIO_URL, audio=audio),
        ],
    )

    param = message_param(msg)

    assert param["audio"] == {"id": "audio_1"}
    assert param["content"] == [{"type": "text", "text": "Hello"}]


def test_message_param_tool_turns():
    call = ToolCall(id="call_1", function=FunctionCall(name="get_weather", arguments='{"city":"Oslo"}'))
    assistant = message_param(Message(role=Role.ASSISTANT, tool_calls=[call]))
    result = message_param(tool_message("3C", "call_1"))

    assert assistant["tool_calls"] == [
        {"id": "call_1", "type": "function", "function": {"name": "get_weather", "arguments": '{"city":"Oslo"}'}}
    ]
    assert result == {"role": "tool", "content": "3C", "tool_call_id": "call_1"}

    with pytest.raises(BadRequest):
        message_param(Message(role=Role.TOOL, content="orphan"))


def test_message_param_role_checks():
    with pytest.raises(BadRequest):
        message_param(Message(content="no role"))
    with pytest.raises(BadRequest):
        message_param(Message(role=Role.ASSISTANT, user_input_multi_content=[MessageInputPart(text="x")]))


@pytest.mark.parametrize(
    "tools, choice, expected",
    [
        ([WEATHER], ToolChoice.FORBIDDEN, "none"),
        ([WEATHER], ToolChoice.ALLOWED, "auto"),
        ([WEATHER], ToolChoice.FORCED, {"type": "function", "function": {"name": "get_weather"}}),
        ([WEATHER, TIME], ToolChoice.FORCED, "required"),
    ],
)
def test_tool_choice_mapping(tools, choice, expected):
    req = _request([user_message("hi")], CallOptions(tools=tools, tool_choice=choice))

    assert req["tool_choice"] == expected
    assert req["tools"][0]["function"]["name"] == "get_weather"


def test_forced_tool_choice_requires_tools():
    with pytest.raises(BadRequest):
        _request([user_message("hi")], CallOptions(tool_choice=ToolChoice.FORCED))


def test_request_options_and_passthrough():
    req = _request(
        [user_message("hi")],
        CallOptions(
            max_tokens=100,
            temperature=0.5,
            stop=["\n\n"],
            extra={"seed": 7, "response_format": {"type": "json_object"}, "extra_body": {"top_k": 3}},
        ),
        model="gpt-test",
        audio={"voice": "alloy", "format": "mp3"},
    )

    assert req["model"] == "gpt-test"
    assert req["max_tokens"] == 100
    assert req["stop"] == ["\n\n"]
    assert req["seed"] == 7
    assert req["response_format"] == {"type": "json_object"}
    assert req["extra_body"] == {"top_k": 3}
    assert req["audio"] == {"voice": "alloy", "format": "mp3"}
    assert "stream" not in req


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_sdk_timeout_maps_to_deadline_exceeded():
    client = MagicMock()
    client.chat.completions.create = AsyncMock(
        side_effect=openai.APITimeoutError(request=httpx.Request("POST", "https://api.openai.com/v1/chat/completions"))
    )
    model = OpenAIChatModel(client=client)

    with pytest.raises(DeadlineExceeded):
        await model.stream([user_message("hi")])
