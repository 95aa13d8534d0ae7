# SPDX-License-Identifier: Apache-2.0
"""
DeepSeek adapter.

Covers:
  • Streamed reasoning_content concatenates into the reply
  • Reasoning is replayed only on assistant turns that carry tool calls
  • Prefix completion marks the final assistant message; misuse is a BadRequest
  • API key and base URL defaults
"""

from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock

import pytest

from relay_sdk.llm.deepseek import (
    DEFAULT_BASE_URL,
    DeepSeekChatModel,
    get_reasoning_content,
    has_prefix,
    set_prefix,
)
from relay_sdk.llm.llm_base import BadRequest
from relay_sdk.schema.message import FunctionCall, ToolCall, assistant_message, user_message
from relay_sdk.schema.stream import concat_stream
from tests.mock.mock_chat_model import FakeVendorStream


def chunk(*, finish_reason=None, **delta):
    choice = SimpleNamespace(index=0, finish_reason=finish_reason, delta=SimpleNamespace(**delta))
    return SimpleNamespace(id="ds-1", choices=[choice], usage=None)


@pytest.mark.asyncio
async def test_stream_reasoning_content():
    events = [
        chunk(role="assistant", reasoning_content="First, "),
        chunk(reasoning_content="compare."),
        chunk(content="9.11 < 9.9"),
        chunk(finish_reason="stop"),
    ]
    client = MagicMock()
    client.chat.completions.create = AsyncMock(return_value=FakeVendorStream(events))
    model = DeepSeekChatModel(client=client, model="deepseek-reasoner")

    reply = await concat_stream(await model.stream([user_message("9.11 or 9.9?")]))

    assert reply.content == "9.11 < 9.9"
    assert get_reasoning_content(reply) == ("First, compare.", True)
    assert client.chat.completions.create.await_args.kwargs["model"] == "deepseek-reasoner"


def test_reasoning_replayed_with_tool_calls_only():
    model = DeepSeekChatModel(client=MagicMock())
    call = ToolCall(id="call-1", function=FunctionCall(name="search", arguments="{}"))
    with_tools = assistant_message("", [call])
    with_tools.reasoning_content = "Need to search."
    plain = assistant_message("Done.")
    plain.reasoning_content = "Easy."

    assert model._message_param(with_tools)["reasoning_content"] == "Need to search."
    assert "reasoning_content" not in model._message_param(plain)


def test_prefix_completion():
    model = DeepSeekChatModel(client=MagicMock())
    prefix = assistant_message("```python\n")
    set_prefix(prefix)

    req = model._build_request(
        [user_message("Write quicksort"), prefix],
        model._resolve_options(None),
        stream=False,
    )

    assert has_prefix(prefix)
    assert req["messages"][-1]["prefix"] is True
    assert "prefix" not in req["messages"][0]


def test_prefix_on_user_message_rejected():
    model = DeepSeekChatModel(client=MagicMock())
    msg = user_message("hi")
    set_prefix(msg)

    with pytest.raises(BadRequest, match="assistant"):
        model._message_param(msg)


def test_prefix_must_be_last():
    model = DeepSeekChatModel(client=MagicMock())
    prefix = assistant_message("Sure")
    set_prefix(prefix)

    with pytest.raises(BadRequest, match="last message"):
        model._build_request([prefix, user_message("go on")], model._resolve_options(None), stream=False)


def test_defaults_from_environment(monkeypatch):
    monkeypatch.setenv("DEEPSEEK_API_KEY", "sk-ds-test")

    model = DeepSeekChatModel()

    assert model._client.api_key == "sk-ds-test"
    assert str(model._client.base_url).startswith(DEFAULT_BASE_URL)
