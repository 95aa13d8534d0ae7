# SPDX-License-Identifier: Apache-2.0
"""
Shared fixtures: scripted chat models, fake vendor streams and recorders.
"""

from __future__ import annotations

import pytest

from tests.mock.mock_chat_model import (
    FakeVendorStream,
    RecordingCallbacks,
    RecordingMetrics,
    ScriptedChatModel,
)


@pytest.fixture
def callbacks() -> RecordingCallbacks:
    return RecordingCallbacks()


@pytest.fixture
def metrics() -> RecordingMetrics:
    return RecordingMetrics()


@pytest.fixture
def make_scripted_model(callbacks, metrics):
    """Factory: `make_scripted_model(events, error=..., block_at_end=...)`."""

    def _make(events=(), *, error=None, block_at_end=False, **kwargs):
        stream = FakeVendorStream(events, error=error, block_at_end=block_at_end)
        kwargs.setdefault("callbacks", [callbacks])
        kwargs.setdefault("metrics", metrics)
        return ScriptedChatModel(stream, **kwargs)

    return _make
