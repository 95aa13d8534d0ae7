# relay_sdk/schema/registry.py
# SPDX-License-Identifier: Apache-2.0
"""
Extension registry for `extra` attachment values.

Any module may teach the concatenation engine how to merge its own
attachment type without the engine knowing about that type up front:

    @dataclass
    class ReasoningDetails:
        items: list

    @register_concat_func(ReasoningDetails)
    def _concat_reasoning_details(values):
        ...

    register_name(ReasoningDetails, "_relay_openrouter_reasoning_details")

Two process-wide tables are kept:

- concrete type -> reducer `func(values: list[T]) -> T`
- concrete type <-> stable serialization name

Lookups use the exact runtime type (no MRO walk): a `str` subclass used as
an attachment carries its own reducer, independent from `str`.

Registration is expected at import time of the module that defines the
type. Writes are serialized with a lock; reads are lock-free afterwards.
Re-registering the same reducer (or the same name) for a type is a no-op,
a conflicting registration raises `RegistrationError`.
"""

from __future__ import annotations

import logging
import threading
from typing import Any, Callable, Dict, List, Optional, TypeVar

from relay_sdk.schema.errors import RegistrationError

logger = logging.getLogger(__name__)

T = TypeVar("T")

ConcatFunc = Callable[[List[Any]], Any]

_lock = threading.Lock()
_concat_funcs: Dict[type, ConcatFunc] = {}
_type_to_name: Dict[type, str] = {}
_name_to_type: Dict[str, type] = {}


def _type_label(tp: type) -> str:
    return f"{tp.__module__}.{tp.__qualname__}"


def register_concat_func(tp: type, func: Optional[ConcatFunc] = None):
    """
    Register the reducer used to merge N streamed values of type `tp`.

    Can be called directly or used as a decorator:

        register_concat_func(AudioID, _concat_audio_ids)

        @register_concat_func(AudioID)
        def _concat_audio_ids(values): ...

    Raises:
        TypeError: `tp` is not a class or `func` is not callable.
        RegistrationError: a different reducer is already registered for `tp`.
    """
    if not isinstance(tp, type):
        raise TypeError(f"register_concat_func expects a type, got {tp!r}")

    def _register(fn: ConcatFunc) -> ConcatFunc:
        if not callable(fn):
            raise TypeError(f"concat func for {_type_label(tp)} must be callable")
        with _lock:
            existing = _concat_funcs.get(tp)
            if existing is fn:
                return fn
            if existing is not None:
                raise RegistrationError(
                    f"concat func already registered for {_type_label(tp)}",
                    details={"type": _type_label(tp)},
                )
            _concat_funcs[tp] = fn
        logger.debug("registered concat func for %s", _type_label(tp))
        return fn

    if func is None:
        return _register
    return _register(func)


def register_name(tp: type, name: str) -> None:
    """
    Associate a stable, globally unique serialization name with `tp`.

    Raises:
        RegistrationError: `name` is taken by another type, or `tp` already
            carries a different name.
    """
    if not isinstance(tp, type):
        raise TypeError(f"register_name expects a type, got {tp!r}")
    if not name or not isinstance(name, str):
        raise ValueError("name must be a non-empty string")

    with _lock:
        owner = _name_to_type.get(name)
        current = _type_to_name.get(tp)
        if owner is tp and current == name:
            return
        if owner is not None:
            raise RegistrationError(
                f"name {name!r} already registered for {_type_label(owner)}",
                details={"name": name, "type": _type_label(tp)},
            )
        if current is not None:
            raise RegistrationError(
                f"{_type_label(tp)} already registered as {current!r}",
                details={"name": name, "type": _type_label(tp)},
            )
        _name_to_type[name] = tp
        _type_to_name[tp] = name


def get_concat_func(tp: type) -> Optional[ConcatFunc]:
    """Return the reducer registered for exactly `tp`, or None."""
    return _concat_funcs.get(tp)


def get_registered_name(tp: type) -> Optional[str]:
    return _type_to_name.get(tp)


def get_registered_type(name: str) -> Optional[type]:
    return _name_to_type.get(name)


# ---------------------------------------------------------------------------
# Built-in reducers (dict is registered by the concat engine, which recurses)
# ---------------------------------------------------------------------------

def _concat_strings(values: List[str]) -> str:
    return "".join(values)


def _concat_lists(values: List[list]) -> list:
    out: list = []
    for v in values:
        out.extend(v)
    return out


def _concat_bools(values: List[bool]) -> bool:
    return any(values)


register_concat_func(str, _concat_strings)
register_concat_func(list, _concat_lists)
register_concat_func(bool, _concat_bools)


__all__ = [
    "ConcatFunc",
    "register_concat_func",
    "register_name",
    "get_concat_func",
    "get_registered_name",
    "get_registered_type",
]
