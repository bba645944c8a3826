"""Tests for input node validators."""
import pytest

from core.errors import InputValidationError
from utils.validators import validate_input


class TestValidators:
    def test_none_accepts_any_text(self):
        assert validate_input("none", "  hello ") == "hello"
        assert validate_input("", "x") == "x"

    def test_empty_always_fails(self):
        for kind in ("none", "email", "number"):
            with pytest.raises(InputValidationError):
                validate_input(kind, "   ")

    def test_email(self):
        assert validate_input("email", "Maria@Example.COM") == "maria@example.com"
        with pytest.raises(InputValidationError):
            validate_input("email", "maria@")

    def test_phone(self):
        assert validate_input("phone", "+55 (11) 98765-4321") == "+5511987654321"
        with pytest.raises(InputValidationError):
            validate_input("phone", "12345")
        with pytest.raises(InputValidationError):
            validate_input("phone", "call me")

    def test_number(self):
        assert validate_input("number", "42") == "42"
        assert validate_input("number", "3,5") == "3.5"
        with pytest.raises(InputValidationError):
            validate_input("number", "12abc")

    def test_date_normalised_to_iso(self):
        assert validate_input("date", "2024-02-29") == "2024-02-29"
        assert validate_input("date", "31/12/2023") == "2023-12-31"
        with pytest.raises(InputValidationError):
            validate_input("date", "2023-02-30")

    def test_unknown_validation_is_permissive(self):
        assert validate_input("zipcode", "abc") == "abc"
