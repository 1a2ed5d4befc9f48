"""
Input validation for dissonance.

Malformed or missing fields are reported to the caller immediately and are
never silently defaulted.
"""

import re
from datetime import datetime
from typing import Any, Optional

from .errors import DissonanceError
from .util import from_iso


# ============================================================
# Input Validation
# ============================================================

HEX_PATTERN = re.compile(r'^[a-fA-F0-9]+$')
IDENTIFIER_PATTERN = re.compile(r'^[A-Za-z0-9_.:/@-]{1,256}$')
RULE_ID_PATTERN = re.compile(r'^[A-Za-z0-9_-]{1,64}$')


class ValidationError(DissonanceError):
    """Raised when input validation fails."""
    def __init__(self, field: str, message: str):
        self.field = field
        self.message = message
        super().__init__(f"{field}: {message}")


def validate_hex(value: str, field_name: str, expected_length: Optional[int] = None) -> str:
    """
    Validate that a string is valid hexadecimal.

    Args:
        value: The string to validate
        field_name: Name of the field (for error messages)
        expected_length: Expected length of the hex string (optional)

    Returns:
        The validated (lowercased) hex string

    Raises:
        ValidationError: If validation fails
    """
    if not isinstance(value, str):
        raise ValidationError(field_name, "must be a string")

    value = value.lower().strip()

    if not value:
        raise ValidationError(field_name, "cannot be empty")

    if not HEX_PATTERN.match(value):
        raise ValidationError(field_name, "must be valid hexadecimal")

    if expected_length and len(value) != expected_length:
        raise ValidationError(field_name, f"must be {expected_length} characters")

    return value


def validate_identifier(value: Any, field_name: str) -> str:
    """Validate an organization, finding or event identifier."""
    if not isinstance(value, str):
        raise ValidationError(field_name, "must be a string")
    value = value.strip()
    if not value:
        raise ValidationError(field_name, "cannot be empty")
    if not IDENTIFIER_PATTERN.match(value):
        raise ValidationError(field_name, "invalid format")
    return value


def validate_rule_id(value: Any, field_name: str = "rule_id") -> str:
    if not isinstance(value, str) or not RULE_ID_PATTERN.match(value):
        raise ValidationError(field_name, "invalid rule identifier")
    return value


def validate_positive_int(value: Any, field_name: str, max_value: Optional[int] = None) -> int:
    """
    Validate that a value is a positive integer.

    Raises:
        ValidationError: If validation fails
    """
    if isinstance(value, bool):
        raise ValidationError(field_name, "must be an integer")
    try:
        int_value = int(value)
    except (TypeError, ValueError):
        raise ValidationError(field_name, "must be an integer")

    if int_value <= 0:
        raise ValidationError(field_name, "must be positive")

    if max_value and int_value > max_value:
        raise ValidationError(field_name, f"must not exceed {max_value}")

    return int_value


def validate_probability(value: Any, field_name: str) -> float:
    """Validate a rate in the closed interval [0, 1]."""
    if isinstance(value, bool):
        raise ValidationError(field_name, "must be a number")
    try:
        rate = float(value)
    except (TypeError, ValueError):
        raise ValidationError(field_name, "must be a number")
    if rate != rate or rate < 0.0 or rate > 1.0:
        raise ValidationError(field_name, "must be between 0 and 1")
    return rate


def validate_timestamp(value: Any, field_name: str) -> datetime:
    """Parse an ISO-8601 timestamp, raising ValidationError if it is malformed."""
    if not isinstance(value, (str, datetime)):
        raise ValidationError(field_name, "must be an ISO-8601 timestamp")
    try:
        return from_iso(value)
    except ValueError:
        raise ValidationError(field_name, "must be an ISO-8601 timestamp")


# ============================================================
# Log Redaction
# ============================================================

SECRET_LOG_FIELDS = frozenset({"nonce", "salt", "signature", "signing_key", "signing_key_hex", "secret"})


def redact_for_logging(data: Any) -> Any:
    """
    Copy of `data` safe to write to the audit log.

    Values under a secret-bearing key are cut to an 8-character prefix so
    records stay correlatable; nested dicts and lists are walked.
    """
    if isinstance(data, dict):
        return {
            key: _redact(value) if key in SECRET_LOG_FIELDS else redact_for_logging(value)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [redact_for_logging(item) for item in data]
    return data


def _redact(value: Any) -> str:
    if isinstance(value, str) and len(value) > 16:
        return value[:8] + "..."
    return "[REDACTED]"
