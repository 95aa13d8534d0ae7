# relay_sdk/llm/deepseek.py
# SPDX-License-Identifier: Apache-2.0
"""
DeepSeek chat model adapter.

DeepSeek is OpenAI-compatible. Differences handled here:

- reasoning models stream `reasoning_content`, surfaced as
  `Message.reasoning_content` and replayed on assistant turns that carry
  tool calls
- chat prefix completion: `set_prefix(msg)` marks the final assistant
  message as a prefix the model continues from (requires the beta base
  URL, https://api.deepseek.com/beta)
"""

from __future__ import annotations

import logging
import os
from typing import Any, Dict, Optional, Tuple

from relay_sdk.llm.llm_base import BadRequest, CallOptions, MetricsSink
from relay_sdk.llm.openai import OpenAIChatModel
from relay_sdk.schema.message import Message, Role, get_extra, set_extra

logger = logging.getLogger(__name__)

DEFAULT_BASE_URL = "https://api.deepseek.com"

KEY_PREFIX = "deepseek_prefix"


def set_prefix(msg: Message) -> None:
    """Mark an assistant message for prefix completion."""
    set_extra(msg, KEY_PREFIX, True)


def has_prefix(msg: Message) -> bool:
    value, ok = get_extra(msg, KEY_PREFIX, bool)
    return ok and value


def get_reasoning_content(msg: Message) -> Tuple[str, bool]:
    return msg.reasoning_content, bool(msg.reasoning_content)


class DeepSeekChatModel(OpenAIChatModel):
    """
    Chat model backed by the DeepSeek API.

    `api_key` falls back to the DEEPSEEK_API_KEY environment variable.
    """

    _vendor = "deepseek"

    def __init__(
        self,
        *,
        client=None,
        api_key: Optional[str] = None,
        base_url: Optional[str] = None,
        model: str = "deepseek-chat",
        metrics: Optional[MetricsSink] = None,
        callbacks=None,
        default_options: Optional[CallOptions] = None,
    ) -> None:
        super().__init__(
            client=client,
            api_key=api_key or os.environ.get("DEEPSEEK_API_KEY"),
            base_url=base_url or DEFAULT_BASE_URL,
            model=model,
            metrics=metrics,
            callbacks=callbacks,
            default_options=default_options,
        )

    def _message_param(self, msg: Message) -> Dict[str, Any]:
        param = super()._message_param(msg)
        if msg.role != Role.ASSISTANT:
            if has_prefix(msg):
                raise BadRequest("prefix completion is only supported on assistant messages")
            return param
        if msg.reasoning_content and msg.tool_calls:
            param["reasoning_content"] = msg.reasoning_content
        if has_prefix(msg):
            param["prefix"] = True
        return param

    def _build_request(self, messages, options: CallOptions, *, stream: bool) -> Dict[str, Any]:
        for msg in messages[:-1]:
            if has_prefix(msg):
                raise BadRequest("only the last message may be marked for prefix completion")
        return super()._build_request(messages, options, stream=stream)


__all__ = [
    "DeepSeekChatModel",
    "DEFAULT_BASE_URL",
    "KEY_PREFIX",
    "set_prefix",
    "has_prefix",
    "get_reasoning_content",
]
