# relay_sdk/schema/errors.py
# SPDX-License-Identifier: Apache-2.0
"""
Errors raised by the vendor-neutral schema layer.

These do not derive from the LLM adapter error taxonomy in
`relay_sdk.llm.llm_base`. Concatenation failures surface unchanged to the
caller of `concat_messages` / `concat_stream`.
"""

from __future__ import annotations

from typing import Any, Mapping, Optional


class SchemaError(Exception):
    """
    Base exception for schema-level failures.

    Attributes:
        message:
            Human-readable description.
        details:
            Additional JSON-safe context (offending key, type name, ...).
    """
    def __init__(self, message: str = "", *, details: Optional[Mapping[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})

    def __str__(self) -> str:
        base = self.message or self.__class__.__name__
        if self.details:
            base += f" details={self.details}"
        return base


class ConcatError(SchemaError):
    """
    Chunk concatenation failed.

    Raised when chunks disagree on a field that must be stable across a
    stream (role, tool call id), when an `extra` value has no registered
    reducer, or when a registered reducer rejects its inputs.
    """


class RegistrationError(SchemaError):
    """Conflicting registration in the extension registry."""


class StreamWorkerError(Exception):
    """
    Unexpected fault inside a stream worker, recovered at the task boundary.

    Sent once on the output pipe as the terminal error so the consumer sees
    a failure instead of a hang.

    Attributes:
        info:
            The original exception.
        stack:
            Formatted traceback captured where the fault was recovered.
    """
    code = "INTERNAL"

    def __init__(self, info: BaseException, stack: str = ""):
        super().__init__(f"stream worker failed: {type(info).__name__}: {info}")
        self.info = info
        self.stack = stack

    def __str__(self) -> str:
        base = super().__str__()
        if self.stack:
            base += f"\n{self.stack}"
        return base


__all__ = [
    "SchemaError",
    "ConcatError",
    "RegistrationError",
    "StreamWorkerError",
]
