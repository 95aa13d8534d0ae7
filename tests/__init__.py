# SPDX-License-Identifier: Apache-2.0
"""
Relay SDK tests

Schema (registry, messages, concatenation, serialization, pipe), the chat
model streaming template, and per-vendor stream and request mapping.
"""
