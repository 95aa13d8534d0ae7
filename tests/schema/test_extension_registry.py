# SPDX-License-Identifier: Apache-2.0
"""
Extension registry: reducers keyed by concrete type and serialization names.

Covers:
  • Built-in reducers for str / list / bool / dict
  • Registration is idempotent for the same function and rejects a replacement
  • Lookup is by exact type (subclasses are not matched)
  • Decorator form of register_concat_func
  • Name table uniqueness in both directions
"""

import pytest

from relay_sdk.schema.errors import RegistrationError
from relay_sdk.schema.registry import (
    get_concat_func,
    get_registered_name,
    get_registered_type,
    register_concat_func,
    register_name,
)


def test_builtin_reducers():
    assert get_concat_func(str)(["a", "b", "c"]) == "abc"
    assert get_concat_func(list)([[1], [2, 3], []]) == [1, 2, 3]
    assert get_concat_func(bool)([False, True, False]) is True
    assert get_concat_func(dict)([{"a": "x"}, {"a": "y", "b": [1]}]) == {"a": "xy", "b": [1]}


def test_same_function_registered_twice_is_noop():
    class Marker(str):
        pass

    def reducer(values):
        return values[-1]

    register_concat_func(Marker, reducer)
    register_concat_func(Marker, reducer)

    assert get_concat_func(Marker) is reducer


def test_replacing_a_reducer_is_rejected():
    class Counter(int):
        pass

    register_concat_func(Counter, sum)

    with pytest.raises(RegistrationError):
        register_concat_func(Counter, max)
    assert get_concat_func(Counter) is sum, "existing reducer must survive a rejected registration"


def test_lookup_is_exact_type():
    class Base(str):
        pass

    class Derived(Base):
        pass

    register_concat_func(Base, lambda values: values[0])

    assert get_concat_func(Base) is not None
    assert get_concat_func(Derived) is None


def test_decorator_registration_returns_function():
    class Signature(bytes):
        pass

    @register_concat_func(Signature)
    def _last(values):
        return values[-1]

    assert get_concat_func(Signature) is _last
    assert _last([Signature(b"a"), Signature(b"b")]) == b"b"


def test_register_concat_func_argument_checks():
    with pytest.raises(TypeError):
        register_concat_func("not-a-type", sum)

    class Thing:
        pass

    with pytest.raises(TypeError):
        register_concat_func(Thing, "not-callable")


def test_register_name_round_trip_and_idempotence():
    class RequestId(str):
        pass

    register_name(RequestId, "_test_registry_request_id")
    register_name(RequestId, "_test_registry_request_id")

    assert get_registered_name(RequestId) == "_test_registry_request_id"
    assert get_registered_type("_test_registry_request_id") is RequestId


def test_register_name_conflicts():
    class First(str):
        pass

    class Second(str):
        pass

    register_name(First, "_test_registry_taken")

    with pytest.raises(RegistrationError):
        register_name(Second, "_test_registry_taken")
    with pytest.raises(RegistrationError):
        register_name(First, "_test_registry_other")
    with pytest.raises(ValueError):
        register_name(Second, "")


def test_unknown_lookups_return_none():
    class Unregistered:
        pass

    assert get_concat_func(Unregistered) is None
    assert get_registered_name(Unregistered) is None
    assert get_registered_type("_test_registry_missing") is None
