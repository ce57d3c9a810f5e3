"""
Field checks for contact details and free text sent by couriers and customers.

Validators return ``(ok, error_message)`` so pydantic schemas can raise
``ValueError`` with the message as-is.
"""
import re
from typing import Optional, Tuple

CheckResult = Tuple[bool, Optional[str]]

# 7 to 15 digits, optional leading + (E.164)
_PHONE_RE = re.compile(r"^\+?[0-9]{7,15}$")
_PHONE_FORMATTING_RE = re.compile(r"[\s\-\(\)]")

# starts with a letter of any script; then letters, spaces and - ' .
_NAME_RE = re.compile(r"^[^\W\d_][\w\s\-\'\.]{1,99}$", re.UNICODE)

_MARKUP_RES = (
    re.compile(r"<script[^>]*>", re.IGNORECASE),
    re.compile(r"javascript:", re.IGNORECASE),
    re.compile(r"\bon\w+=", re.IGNORECASE),
    re.compile(r"<iframe", re.IGNORECASE),
)


def _check_length(value: str, label: str, minimum: int, maximum: int) -> Optional[str]:
    if len(value) < minimum:
        return f"{label} too short (minimum {minimum} characters)"
    if len(value) > maximum:
        return f"{label} too long (maximum {maximum} characters)"
    return None


class PhoneNumberValidator:

    @staticmethod
    def validate(phone: str) -> bool:
        return bool(phone) and bool(_PHONE_RE.match(_PHONE_FORMATTING_RE.sub("", phone)))

    @staticmethod
    def normalize(phone: str) -> str:
        """Digits and a leading + only."""
        return re.sub(r"[^\d+]", "", phone)


class TextSanitizer:
    """Cleanup for notes, feedback and cancellation reasons before storage."""

    @staticmethod
    def sanitize(text: str, max_length: int = 1000) -> str:
        if not text:
            return ""
        # newlines and tabs survive; other control characters and NULs do not
        printable = "".join(ch for ch in text if ch >= " " or ch in "\n\t")
        return re.sub(r" +", " ", printable.strip())[:max_length]

    @staticmethod
    def check_for_injection(text: str) -> CheckResult:
        """(is_safe, reason)"""
        if text and any(pattern.search(text) for pattern in _MARKUP_RES):
            return False, "script pattern detected"
        return True, None


class AddressValidator:
    """Delivery street line."""

    MIN_LENGTH = 5
    MAX_LENGTH = 500

    @classmethod
    def validate(cls, address: str) -> CheckResult:
        address = (address or "").strip()
        if not address:
            return False, "Address is required"
        error = _check_length(address, "Address", cls.MIN_LENGTH, cls.MAX_LENGTH)
        if error:
            return False, error
        is_safe, reason = TextSanitizer.check_for_injection(address)
        if not is_safe:
            return False, f"Invalid address: {reason}"
        return True, None

    @staticmethod
    def normalize(address: str) -> str:
        return " ".join(address.split())


class NameValidator:
    """Courier and customer names."""

    MIN_LENGTH = 2
    MAX_LENGTH = 100

    @classmethod
    def validate(cls, name: str) -> CheckResult:
        name = (name or "").strip()
        if not name:
            return False, "Name is required"
        error = _check_length(name, "Name", cls.MIN_LENGTH, cls.MAX_LENGTH)
        if error:
            return False, error
        if not _NAME_RE.match(name):
            return False, "Name contains invalid characters"
        return True, None
