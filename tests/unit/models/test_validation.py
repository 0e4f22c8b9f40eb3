"""
Unit tests for models._validation helpers.

Tests:
- validate_instance() type checks and messages
- validate_int() bool exclusion and bounds
- validate_str_no_null() and validate_hex()
- str_tuple() conversion
"""

import pytest

from relayhub.models._validation import (
    str_tuple,
    validate_hex,
    validate_instance,
    validate_int,
    validate_str_no_null,
)


class TestValidateInstance:
    def test_accepts_instance(self):
        validate_instance({}, dict, "data")

    def test_message_article(self):
        with pytest.raises(TypeError, match="must be an int"):
            validate_instance("x", int, "count")
        with pytest.raises(TypeError, match="must be a dict, got list"):
            validate_instance([], dict, "data")


class TestValidateInt:
    def test_accepts_in_range(self):
        validate_int(5, "n", minimum=0, maximum=10)

    def test_rejects_bool(self):
        with pytest.raises(TypeError):
            validate_int(True, "n")

    def test_rejects_float(self):
        with pytest.raises(TypeError):
            validate_int(1.0, "n")

    def test_below_minimum(self):
        with pytest.raises(ValueError, match=">= 0"):
            validate_int(-1, "n")

    def test_above_maximum(self):
        with pytest.raises(ValueError, match="<= 10"):
            validate_int(11, "n", maximum=10)


class TestValidateStrings:
    def test_null_bytes(self):
        with pytest.raises(ValueError, match="null bytes"):
            validate_str_no_null("a\x00", "s")

    def test_non_string(self):
        with pytest.raises(TypeError):
            validate_str_no_null(b"bytes", "s")

    def test_hex_valid(self):
        validate_hex("0a" * 4, "h", 8)

    def test_hex_wrong_length(self):
        with pytest.raises(ValueError, match="8 lowercase hex"):
            validate_hex("0a", "h", 8)

    def test_hex_uppercase(self):
        with pytest.raises(ValueError):
            validate_hex("0A" * 4, "h", 8)


class TestStrTuple:
    def test_list_to_tuple(self):
        assert str_tuple(["a", "b"], "xs") == ("a", "b")

    def test_generator(self):
        assert str_tuple((c for c in "ab"), "xs") == ("a", "b")

    def test_bare_string_rejected(self):
        with pytest.raises(TypeError, match="list of str"):
            str_tuple("ab", "xs")

    def test_non_string_item(self):
        with pytest.raises(TypeError, match="xs item"):
            str_tuple(["a", 1], "xs")
