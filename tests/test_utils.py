import uuid
from datetime import timedelta, timezone

import pytest

from warden.errors import ValidationError
from warden.utils import (
    copy_map,
    copy_value,
    current_timestamp,
    format_duration,
    generate_execution_id,
    generate_id,
    generate_short_id,
    merge_map,
    safe_bool,
    safe_int,
    safe_string,
    unique_strings,
    validate_execution_id,
    validate_instance_id,
    validate_state_id,
)


def test_generate_id_is_uuid4_and_unique():
    ids = {generate_id() for _ in range(100)}
    assert len(ids) == 100
    for value in ids:
        assert uuid.UUID(value).version == 4


def test_generate_short_id_is_eight_random_bytes():
    value = generate_short_id()
    assert len(bytes.fromhex(value)) == 8
    assert generate_short_id() != value or generate_short_id() != value


def test_generate_execution_id_prefix():
    exec_id = generate_execution_id("order-1")
    prefix, _, suffix = exec_id.rpartition("_")
    assert prefix == "order-1"
    assert len(bytes.fromhex(suffix)) == 8


def test_validate_state_id_empty():
    with pytest.raises(ValidationError, match="state ID cannot be empty"):
        validate_state_id("")


def test_validate_state_id_too_long():
    validate_state_id("a" * 100)
    with pytest.raises(ValidationError, match=r"state ID too long \(max 100 characters\)"):
        validate_state_id("a" * 101)


@pytest.mark.parametrize("bad", ["1abc", "-abc", "$x"])
def test_validate_state_id_bad_start(bad):
    with pytest.raises(ValidationError, match="must start with a letter or underscore"):
        validate_state_id(bad)


@pytest.mark.parametrize("bad, ch", [("ab$", "$"), ("a b", " "), ("a.b", ".")])
def test_validate_state_id_invalid_character(bad, ch):
    with pytest.raises(ValidationError) as info:
        validate_state_id(bad)
    assert str(info.value) == f"state ID contains invalid character: {ch}"


def test_validate_instance_id_errors():
    with pytest.raises(ValidationError, match="instance ID cannot be empty"):
        validate_instance_id("")
    validate_instance_id("x" * 255)
    with pytest.raises(ValidationError, match="instance ID too long"):
        validate_instance_id("x" * 256)


@pytest.mark.parametrize("bad", ["a b", "a\tb", "a\nb", "a\rb"])
def test_validate_instance_id_whitespace(bad):
    with pytest.raises(ValidationError, match="instance ID cannot contain whitespace"):
        validate_instance_id(bad)


def test_validate_execution_id_empty():
    with pytest.raises(ValidationError, match="execution ID cannot be empty"):
        validate_execution_id("")


def test_copy_map_is_deep():
    original = {"a": 1, "nested": {"list": [1, {"k": "v"}]}}
    copied = copy_map(original)
    assert copied == original
    copied["nested"]["list"][1]["k"] = "changed"
    copied["nested"]["list"].append(2)
    assert original == {"a": 1, "nested": {"list": [1, {"k": "v"}]}}


def test_copy_map_none():
    assert copy_map(None) is None


def test_copy_value_returns_scalars_unchanged():
    marker = object()
    assert copy_value(marker) is marker
    assert copy_value("text") == "text"


def test_merge_map_overlay_wins():
    base = {"a": 1, "b": 2}
    overlay = {"b": 3, "c": 4}
    merged = merge_map(base, overlay)
    assert merged == {"a": 1, "b": 3, "c": 4}
    assert base == {"a": 1, "b": 2}
    assert overlay == {"b": 3, "c": 4}


def test_merge_map_none_cases():
    assert merge_map(None, None) == {}
    overlay = {"x": [1]}
    merged = merge_map(None, overlay)
    assert merged == overlay
    merged["x"].append(2)
    assert overlay == {"x": [1]}
    assert merge_map({"y": 1}, None) == {"y": 1}


def test_unique_strings_keeps_first_order():
    assert unique_strings(["b", "a", "b", "c", "a"]) == ["b", "a", "c"]
    assert unique_strings([]) == []


def test_format_duration_units():
    assert format_duration(timedelta(microseconds=500)).endswith("μs")
    assert format_duration(timedelta(milliseconds=250)) == "250.00ms"
    assert format_duration(timedelta(seconds=1.5)).endswith("s")
    assert not format_duration(timedelta(seconds=1.5)).endswith("ms")


def test_format_duration_long_form():
    assert format_duration(timedelta(minutes=1, seconds=30)) == "1m30s"
    assert format_duration(90) == format_duration(timedelta(seconds=90))


def test_current_timestamp_is_utc():
    assert current_timestamp().tzinfo == timezone.utc


def test_safe_string():
    assert safe_string(None) == ""
    assert safe_string("hello") == "hello"
    assert safe_string(42) == "42"
    assert safe_string(True) == "true"


def test_safe_int():
    assert safe_int(None) == 0
    assert safe_int(7) == 7
    assert safe_int(5.0) == 5
    assert safe_int("12") == 0
    assert safe_int([1]) == 0
    assert safe_int(float("nan")) == 0


def test_safe_bool():
    assert safe_bool(True) is True
    assert safe_bool(False) is False
    assert safe_bool(None) is False
    assert safe_bool(1) is False
    assert safe_bool("true") is False