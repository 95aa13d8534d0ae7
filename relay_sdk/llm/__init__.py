# relay_sdk/llm/__init__.py
# SPDX-License-Identifier: Apache-2.0

"""
Chat models - Public API

Error taxonomy, call options, metrics / callback interfaces and the
`BaseChatModel` streaming template. Vendor adapters live in their own
modules so that importing this package never imports a vendor SDK:

    relay_sdk.llm.claude      ClaudeChatModel      (anthropic)
    relay_sdk.llm.gemini      GeminiChatModel      (google-genai)
    relay_sdk.llm.openai      OpenAIChatModel      (openai)
    relay_sdk.llm.openrouter  OpenRouterChatModel  (openai)
    relay_sdk.llm.deepseek    DeepSeekChatModel    (openai)
    relay_sdk.llm.ollama      OllamaChatModel      (ollama)
"""

from relay_sdk.llm.llm_base import (
    # Error types
    LLMAdapterError,
    BadRequest,
    AuthError,
    ResourceExhausted,
    TransientNetwork,
    Unavailable,
    NotSupported,
    ModelOverloaded,
    DeadlineExceeded,
    ProtocolViolation,
    StreamWorkerError,

    # Error helpers
    extract_retry_after_ms,
    error_from_status,
    translate_vendor_error,

    # Metrics and callbacks
    MetricsSink,
    NoopMetrics,
    CallbackHandler,
    LoggingCallbackHandler,

    # Options and streaming
    CallOptions,
    StreamContext,
    EventStream,
    close_func_of,

    # Base class
    BaseChatModel,
)

__all__ = [
    "LLMAdapterError",
    "BadRequest",
    "AuthError",
    "ResourceExhausted",
    "TransientNetwork",
    "Unavailable",
    "NotSupported",
    "ModelOverloaded",
    "DeadlineExceeded",
    "ProtocolViolation",
    "StreamWorkerError",
    "extract_retry_after_ms",
    "error_from_status",
    "translate_vendor_error",
    "MetricsSink",
    "NoopMetrics",
    "CallbackHandler",
    "LoggingCallbackHandler",
    "CallOptions",
    "StreamContext",
    "EventStream",
    "close_func_of",
    "BaseChatModel",
]
