# relay_sdk/schema/__init__.py
# SPDX-License-Identifier: Apache-2.0

"""
Schema layer - Public API

Canonical messages, the `extra` extension registry, the stream
concatenation engine and the chunk pipe. Nothing here imports a vendor SDK.
"""

from relay_sdk.schema.errors import (
    SchemaError,
    ConcatError,
    RegistrationError,
    StreamWorkerError,
)
from relay_sdk.schema.registry import (
    register_concat_func,
    register_name,
    get_concat_func,
    get_registered_name,
    get_registered_type,
)
from relay_sdk.schema.message import (
    # Enums
    Role,
    ChatMessagePartType,
    ImageURLDetail,
    ToolChoice,

    # Tools
    FunctionCall,
    ToolCall,
    ToolInfo,

    # Multimodal parts
    MessagePartCommon,
    MessageInputImage,
    MessageInputAudio,
    MessageInputVideo,
    MessageInputFile,
    MessageOutputImage,
    MessageOutputAudio,
    MessageOutputVideo,
    MessageInputPart,
    MessageOutputPart,
    validate_part,

    # Messages
    TokenUsage,
    ResponseMeta,
    Message,
    system_message,
    user_message,
    assistant_message,
    tool_message,

    # Extra accessors
    get_extra,
    set_extra,
)
from relay_sdk.schema.concat import (
    concat_values,
    concat_extra,
    concat_tool_calls,
    concat_messages,
)
from relay_sdk.schema.serialization import (
    encode_extra,
    decode_extra,
    message_to_dict,
    message_from_dict,
)
from relay_sdk.schema.stream import (
    StreamReader,
    StreamWriter,
    pipe,
    spawn_stream,
    concat_stream,
)

__all__ = [
    "SchemaError",
    "ConcatError",
    "RegistrationError",
    "StreamWorkerError",
    "register_concat_func",
    "register_name",
    "get_concat_func",
    "get_registered_name",
    "get_registered_type",
    "Role",
    "ChatMessagePartType",
    "ImageURLDetail",
    "ToolChoice",
    "FunctionCall",
    "ToolCall",
    "ToolInfo",
    "MessagePartCommon",
    "MessageInputImage",
    "MessageInputAudio",
    "MessageInputVideo",
    "MessageInputFile",
    "MessageOutputImage",
    "MessageOutputAudio",
    "MessageOutputVideo",
    "MessageInputPart",
    "MessageOutputPart",
    "validate_part",
    "TokenUsage",
    "ResponseMeta",
    "Message",
    "system_message",
    "user_message",
    "assistant_message",
    "tool_message",
    "get_extra",
    "set_extra",
    "concat_values",
    "concat_extra",
    "concat_tool_calls",
    "concat_messages",
    "encode_extra",
    "decode_extra",
    "message_to_dict",
    "message_from_dict",
    "StreamReader",
    "StreamWriter",
    "pipe",
    "spawn_stream",
    "concat_stream",
]
