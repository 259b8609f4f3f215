"""Tests for input validation and price handling."""
from __future__ import annotations

from decimal import Decimal

import pytest

from agentmarket.exceptions import ValidationError
from agentmarket.pricing import (
    format_price,
    from_smallest_units,
    parse_price,
    round_half_up,
    to_smallest_units,
)
from agentmarket.validators import (
    validate_limit,
    validate_price_limit,
    validate_rating,
    validate_score,
    validate_signature,
    validate_string,
    validate_url,
)

from market_helpers import make_signature


class TestValidateSignature:
    """Tests for validate_signature."""

    def test_valid(self):
        """Should accept a base58 encoded 64-byte signature."""
        signature = make_signature(3)
        assert validate_signature(f"  {signature} ") == signature

    @pytest.mark.parametrize("value", [None, "", "0OIl" * 22, "abc", 42])
    def test_invalid(self, value):
        """Should reject anything that is not a 64-byte base58 string."""
        with pytest.raises(ValidationError) as exc_info:
            validate_signature(value)
        assert exc_info.value.details["field"] == "signature"


class TestValidatePriceLimit:
    """Tests for validate_price_limit."""

    @pytest.mark.parametrize("value", ["$0", "$5", "$0.5", "$0.05", "$12.30"])
    def test_valid(self, value):
        """Should accept "$X" and "$X.XX"."""
        assert validate_price_limit(value) == value

    @pytest.mark.parametrize("value", ["0.05", "$0.001", "$-1", "five", "$", "$.50"])
    def test_invalid(self, value):
        """Should reject other shapes."""
        with pytest.raises(ValidationError):
            validate_price_limit(value)


class TestNumberValidators:
    """Tests for rating, score and limit validation."""

    @pytest.mark.parametrize("value", [1, 3.5, 5])
    def test_rating_valid(self, value):
        """Should accept ratings in 1-5."""
        assert validate_rating(value) == float(value)

    @pytest.mark.parametrize("value", [0.9, 5.1, "4", True, None])
    def test_rating_invalid(self, value):
        """Should reject ratings outside 1-5 or non-numbers."""
        with pytest.raises(ValidationError):
            validate_rating(value)

    @pytest.mark.parametrize("value", [0, 6, 2.0, False])
    def test_score_invalid(self, value):
        """Should reject scores that are not integers in 1-5."""
        with pytest.raises(ValidationError):
            validate_score(value)

    @pytest.mark.parametrize("value,ok", [(1, True), (100, True), (0, False), (101, False)])
    def test_limit(self, value, ok):
        """Should accept limits in 1-100."""
        if ok:
            assert validate_limit(value) == value
        else:
            with pytest.raises(ValidationError):
                validate_limit(value)


class TestStringValidators:
    """Tests for validate_string and validate_url."""

    def test_strips(self):
        """Should strip surrounding whitespace."""
        assert validate_string("  ocr ") == "ocr"

    def test_max_length(self):
        """Should enforce max_length."""
        with pytest.raises(ValidationError):
            validate_string("x" * 11, max_length=10)

    @pytest.mark.parametrize("value", ["https://api.example.com/v1", "http://localhost:8080/run"])
    def test_url_valid(self, value):
        """Should accept http(s) URLs."""
        assert validate_url(value) == value

    @pytest.mark.parametrize("value", ["ftp://example.com", "example.com", "https://"])
    def test_url_invalid(self, value):
        """Should reject non-HTTP URLs."""
        with pytest.raises(ValidationError):
            validate_url(value)


class TestPricing:
    """Tests for price parsing and unit conversion."""

    @pytest.mark.parametrize("value,expected", [("$0.02", "0.02"), ("0.5", "0.5"), ("$ 3", "3")])
    def test_parse_price(self, value, expected):
        """Should parse optionally prefixed decimals."""
        assert parse_price(value) == Decimal(expected)

    @pytest.mark.parametrize("value", [None, "", "$-1", "free", "1e3"])
    def test_parse_price_invalid(self, value):
        """Should raise ValueError for non-decimal prices."""
        with pytest.raises(ValueError):
            parse_price(value)

    def test_smallest_units(self):
        """Should convert USDC to 6-decimal smallest units, rounding half up."""
        assert to_smallest_units(Decimal("0.02")) == 20_000
        assert to_smallest_units(Decimal("1")) == 1_000_000
        assert to_smallest_units(Decimal("0.0000005")) == 1
        assert from_smallest_units(20_000) == Decimal("0.02")

    def test_format_price(self):
        """Should keep at least two decimal places."""
        assert format_price(Decimal("0.02")) == "$0.02"
        assert format_price(Decimal("1")) == "$1.00"
        assert format_price(Decimal("0.50")) == "$0.50"
        assert format_price(Decimal("0.001")) == "$0.001"

    @pytest.mark.parametrize("value,expected", [(4.25, 4.3), (4.35, 4.4), (4.24, 4.2), (Decimal("4.8022"), 4.8)])
    def test_round_half_up(self, value, expected):
        """Should round halves up, not to even."""
        assert round_half_up(value) == expected
