"""
Tests for Input Validation Utilities
"""
import pytest
from lastmile.core.validation import (
    PhoneNumberValidator,
    AddressValidator,
    NameValidator,
    TextSanitizer,
)


class TestPhoneNumberValidator:
    """Tests for phone number validation"""

    @pytest.mark.unit
    @pytest.mark.parametrize("phone,expected", [
        ("+94777654321", True),
        ("+94 77 765 4321", True),
        ("077-765-4321", True),
        ("(011) 234 5678", True),
        ("4155550100", True),
        ("123", False),
        ("abcdefghij", False),
        ("", False),
        ("+1234567890123456", False),  # 16 digits
        ("+94-77-abc-4321", False),
    ])
    def test_validate_phone(self, phone: str, expected: bool):
        assert PhoneNumberValidator.validate(phone) == expected

    @pytest.mark.unit
    def test_normalize_phone(self):
        assert PhoneNumberValidator.normalize("+94 77 765 4321") == "+94777654321"
        assert PhoneNumberValidator.normalize("(011) 234-5678") == "0112345678"
        assert PhoneNumberValidator.normalize("+94777654321") == "+94777654321"


class TestAddressValidator:
    """Tests for address validation"""

    @pytest.mark.unit
    @pytest.mark.parametrize("address,valid", [
        ("12 Galle Road, Colombo", True),
        ("Flat 4B, 221 Baker Street", True),
        ("1234", False),  # too short
        ("", False),
        ("   ", False),
        ("x" * 501, False),  # too long
        ("1 Main St <script>alert(1)</script>", False),
    ])
    def test_validate_address(self, address: str, valid: bool):
        is_valid, error = AddressValidator.validate(address)
        assert is_valid == valid
        assert (error is None) == valid

    @pytest.mark.unit
    def test_normalize_address(self):
        assert AddressValidator.normalize("  12   Galle\tRoad  ") == "12 Galle Road"


class TestNameValidator:
    """Tests for name validation"""

    @pytest.mark.unit
    @pytest.mark.parametrize("name,valid", [
        ("Nimal Perera", True),
        ("Mary-Jane O'Neil", True),
        ("Zoë Ångström", True),
        ("A", False),  # too short
        ("", False),
        ("x" * 101, False),  # too long
        ("7-Eleven", False),  # must start with a letter
        ("Robert'); DROP TABLE couriers;--", False),
    ])
    def test_validate_name(self, name: str, valid: bool):
        is_valid, error = NameValidator.validate(name)
        assert is_valid == valid


class TestTextSanitizer:
    """Tests for text sanitization"""

    @pytest.mark.unit
    def test_sanitize_preserves_special_chars(self):
        assert TextSanitizer.sanitize("O'Brien") == "O'Brien"
        assert TextSanitizer.sanitize("Tom & Jerry") == "Tom & Jerry"

    @pytest.mark.unit
    def test_sanitize_strips_control_chars_and_spaces(self):
        assert TextSanitizer.sanitize("  leave\x00 at   the\x07 door  ") == "leave at the door"

    @pytest.mark.unit
    def test_sanitize_keeps_newlines(self):
        assert TextSanitizer.sanitize("gate code 1234\nring twice") == "gate code 1234\nring twice"

    @pytest.mark.unit
    def test_sanitize_caps_length(self):
        assert len(TextSanitizer.sanitize("a" * 50, max_length=10)) == 10

    @pytest.mark.unit
    def test_sanitize_empty(self):
        assert TextSanitizer.sanitize("") == ""

    @pytest.mark.unit
    @pytest.mark.parametrize("text,safe", [
        ("Leave it with the guard", True),
        ("<script>alert(1)</script>", False),
        ("javascript:alert(1)", False),
        ('<img src=x onerror=alert(1)>', False),
        ("<iframe src='x'>", False),
    ])
    def test_check_for_injection(self, text: str, safe: bool):
        is_safe, pattern = TextSanitizer.check_for_injection(text)
        assert is_safe == safe
        assert (pattern is None) == safe
