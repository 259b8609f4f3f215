"""
Input validation utilities for AgentMarket.

Every function either returns the normalized value or raises
ValidationError naming the offending field.

Usage:
    from agentmarket.validators import validate_signature, validate_limit

    signature = validate_signature(signature)
    limit = validate_limit(limit)
"""
from __future__ import annotations

import re
from typing import Any, Optional, Pattern

import base58

from .exceptions import ValidationError
from .pricing import PRICE_LIMIT_RE

# Solana transaction signatures are 64 raw bytes, base58 encoded
SIGNATURE_BYTES = 64
BASE58_PATTERN: Pattern[str] = re.compile(r"^[1-9A-HJ-NP-Za-km-z]+$")

URL_PATTERN: Pattern[str] = re.compile(
    r"^https?://[a-zA-Z0-9.-]+(?:\:[0-9]+)?(?:/[^\s]*)?$"
)

MIN_LIMIT = 1
MAX_LIMIT = 100


def validate_string(
    value: Any,
    field_name: str = "value",
    max_length: Optional[int] = None,
) -> str:
    """Validate a non-empty string and return it stripped."""
    if value is None:
        raise ValidationError(f"{field_name} is required", field=field_name)
    if not isinstance(value, str):
        raise ValidationError(
            f"{field_name} must be a string, got {type(value).__name__}",
            field=field_name,
        )
    value = value.strip()
    if not value:
        raise ValidationError(f"{field_name} cannot be empty", field=field_name)
    if max_length is not None and len(value) > max_length:
        raise ValidationError(
            f"{field_name} must be at most {max_length} characters",
            field=field_name,
        )
    return value


def validate_signature(value: Any, field_name: str = "signature") -> str:
    """Validate a Solana transaction signature (base58, 64 bytes).

    Raises:
        ValidationError: If the value is not a well-formed signature
    """
    signature = validate_string(value, field_name=field_name, max_length=128)
    if not BASE58_PATTERN.match(signature):
        raise ValidationError(
            f"{field_name} must be base58 encoded",
            field=field_name,
        )
    try:
        raw = base58.b58decode(signature)
    except ValueError as e:
        raise ValidationError(f"{field_name} is not valid base58", field=field_name) from e
    if len(raw) != SIGNATURE_BYTES:
        raise ValidationError(
            f"{field_name} must decode to {SIGNATURE_BYTES} bytes, got {len(raw)}",
            field=field_name,
        )
    return signature


def validate_price_limit(value: Any, field_name: str = "max_price") -> str:
    """Validate a caller price limit in the form "$X" or "$X.XX"."""
    price = validate_string(value, field_name=field_name)
    if not PRICE_LIMIT_RE.match(price):
        raise ValidationError(
            f'{field_name} must look like "$0.05" (got {price!r})',
            field=field_name,
        )
    return price


def validate_rating(value: Any, field_name: str = "min_rating") -> float:
    """Validate a rating threshold between 1 and 5."""
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{field_name} must be a number", field=field_name)
    if value < 1 or value > 5:
        raise ValidationError(f"{field_name} must be between 1 and 5", field=field_name)
    return float(value)


def validate_score(value: Any, field_name: str = "score") -> int:
    """Validate a rating score: an integer from 1 to 5."""
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field_name} must be an integer", field=field_name)
    if value < 1 or value > 5:
        raise ValidationError(f"{field_name} must be between 1 and 5", field=field_name)
    return value


def validate_limit(value: Any, field_name: str = "limit") -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise ValidationError(f"{field_name} must be an integer", field=field_name)
    if value < MIN_LIMIT or value > MAX_LIMIT:
        raise ValidationError(
            f"{field_name} must be between {MIN_LIMIT} and {MAX_LIMIT}",
            field=field_name,
        )
    return value


def validate_url(value: Any, field_name: str = "endpoint") -> str:
    url = validate_string(value, field_name=field_name, max_length=2048)
    if not URL_PATTERN.match(url):
        raise ValidationError(f"{field_name} must be an http(s) URL", field=field_name)
    return url
