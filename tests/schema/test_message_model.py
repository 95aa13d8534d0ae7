# SPDX-License-Identifier: Apache-2.0
"""
Canonical message model and attachment map accessors.

Covers:
  • Typed extra reads never raise (missing map, missing key, wrong type)
  • set_extra allocates the map lazily on any holder
  • Media parts carry exactly one of url / base64_data
  • Part discriminant must match the populated union field
  • is_empty / copy semantics and convenience constructors
"""

import pytest

from relay_sdk.schema.errors import SchemaError
from relay_sdk.schema.message import (
    ChatMessagePartType,
    Message,
    MessageInputImage,
    MessageInputPart,
    MessageOutputAudio,
    MessageOutputPart,
    Role,
    ToolCall,
    ToolInfo,
    assistant_message,
    get_extra,
    set_extra,
    system_message,
    tool_message,
    user_message,
    validate_part,
)


def test_get_extra_on_missing_map_and_key():
    msg = Message(role=Role.ASSISTANT)

    assert get_extra(msg, "k") == (None, False)
    msg.extra = {"other": 1}
    assert get_extra(msg, "k") == (None, False)


def test_get_extra_type_mismatch_reports_not_ok():
    msg = Message(extra={"k": "text"})

    assert get_extra(msg, "k", int) == (None, False)
    assert get_extra(msg, "k", str) == ("text", True)
    assert get_extra(msg, "k") == ("text", True)


def test_get_extra_on_object_without_extra():
    assert get_extra(object(), "k") == (None, False)


@pytest.mark.parametrize(
    "holder",
    [Message(), ToolCall(), ToolInfo(name="t"), MessageInputPart(), MessageOutputAudio()],
)
def test_set_extra_allocates_lazily(holder):
    assert holder.extra is None

    set_extra(holder, "k", 1)
    set_extra(holder, "j", 2)

    assert holder.extra == {"k": 1, "j": 2}


def test_media_payload_needs_exactly_one_source():
    with pytest.raises(SchemaError):
        MessageInputImage().validate()
    with pytest.raises(SchemaError):
        MessageInputImage(url="https://x/a.png", base64_data="AAAA", mime_type="image/png").validate()

    MessageInputImage(url="https://x/a.png").validate()
    MessageInputImage(base64_data="AAAA", mime_type="image/png").validate()


def test_base64_media_requires_mime_type():
    with pytest.raises(SchemaError, match="mime_type"):
        MessageInputImage(base64_data="AAAA").validate()


def test_validate_part_checks_union_field():
    validate_part(MessageInputPart(text="hi"))
    validate_part(MessageInputPart(type=ChatMessagePartType.IMAGE_URL, image=MessageInputImage(url="https://x")))

    with pytest.raises(SchemaError, match="'image'"):
        validate_part(MessageInputPart(type=ChatMessagePartType.IMAGE_URL))
    with pytest.raises(SchemaError, match="'audio'"):
        validate_part(MessageOutputPart(type=ChatMessagePartType.AUDIO_URL))


def test_is_empty():
    assert Message(role=Role.ASSISTANT, extra={"k": "v"}).is_empty()
    assert not Message(content="x").is_empty()
    assert not Message(reasoning_content="x").is_empty()
    assert not Message(tool_calls=[ToolCall()]).is_empty()
    assert not Message(assistant_gen_multi_content=[MessageOutputPart(text="x")]).is_empty()


def test_copy_has_fresh_containers():
    call = ToolCall(id="c", extra={"s": "1"})
    msg = Message(role=Role.ASSISTANT, tool_calls=[call], extra={"k": "v"})

    dup = msg.copy()
    dup.tool_calls[0].function.arguments = "{}"
    dup.tool_calls[0].extra["s"] = "2"
    dup.extra["k"] = "w"

    assert call.function.arguments == ""
    assert call.extra == {"s": "1"}
    assert msg.extra == {"k": "v"}


def test_convenience_constructors():
    assert system_message("be brief").role == Role.SYSTEM
    assert user_message("hi").content == "hi"

    reply = assistant_message("", [ToolCall(id="c1")])
    assert reply.role == Role.ASSISTANT and reply.tool_calls[0].id == "c1"

    result = tool_message("42", "c1", "calc")
    assert (result.role, result.tool_call_id, result.tool_name) == (Role.TOOL, "c1", "calc")
