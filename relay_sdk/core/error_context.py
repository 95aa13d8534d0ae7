# relay_sdk/core/error_context.py
# SPDX-License-Identifier: Apache-2.0

"""
Error context utilities for chat model adapters and stream workers.

Helpers for attaching debugging context to exceptions as they propagate
out of a vendor adapter or a stream worker task, without touching the
exception's type, message or traceback.

Typical usage
-------------

    from relay_sdk.core.error_context import attach_context

    try:
        stream = await client.messages.create(**request)
    except Exception as exc:
        attach_context(
            exc,
            framework="claude",
            operation="stream",
            model="claude-sonnet-4-5",
        )
        raise

Later, in error handlers or observability systems:

    except Exception as exc:
        context = get_context(exc)
        logger.error("Chat model error", extra={"operation": context.get("operation")})

Two attributes are written:

* `__relay_context__` (canonical), merged across calls so several layers
  (adapter, stream worker, caller) can each contribute keys.
* `__<framework>_context__` (origin-specific), the same mapping under a
  more discoverable name.

Attachment is best-effort: a failure to attach is logged at debug level
and never masks the original exception.
"""

from __future__ import annotations

import logging
from typing import Any, Mapping, MutableMapping, Optional

logger = logging.getLogger(__name__)

_CANONICAL_ATTR = "__relay_context__"


def attach_context(
    exc: BaseException,
    framework: str,
    **context: Any,
) -> None:
    """
    Attach debugging context to an exception.

    Parameters
    ----------
    exc:
        The exception to enrich.

    framework:
        Origin of this context: a vendor adapter name ("claude", "gemini",
        "openai", ...) or an internal component ("relay_stream"). Stored
        under the `framework` key unless an earlier layer already set it.

    **context:
        Arbitrary JSON-safe keys, e.g. operation, model, messages_count,
        error_stage ("open_stream", "iterate", "convert_event"). Avoid
        secrets and PII.
    """
    try:
        merged_context: MutableMapping[str, Any] = {}

        existing = getattr(exc, _CANONICAL_ATTR, None)
        if isinstance(existing, Mapping):
            merged_context.update(existing)

        merged_context.setdefault("framework", framework)
        merged_context.update(context)

        setattr(exc, _CANONICAL_ATTR, merged_context)
        setattr(exc, f"__{framework}_context__", merged_context)

    except Exception as attachment_error:  # noqa: BLE001
        # Context attachment should never interfere with exception propagation.
        logger.debug(
            "Failed to attach error context to %s: %s",
            type(exc).__name__,
            attachment_error,
            extra={"framework": framework},
        )


def get_context(
    exc: BaseException,
    *,
    framework: Optional[str] = None,
) -> Mapping[str, Any]:
    """
    Retrieve attached context, or an empty dict when none is present.

    When `framework` is given, the origin-specific attribute is preferred.
    """
    if framework:
        ctx = getattr(exc, f"__{framework}_context__", None)
        if isinstance(ctx, Mapping):
            return ctx

    ctx = getattr(exc, _CANONICAL_ATTR, None)
    if isinstance(ctx, Mapping):
        return ctx
    return {}


__all__ = [
    "attach_context",
    "get_context",
]
