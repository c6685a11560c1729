"""
Unit tests for Argentine mobile phone normalization.
"""

import pytest

from whatsapp_worker.notifications.phone import normalize_phone, is_valid_phone, display_phone, mask_phone


class TestNormalizePhone:
    """Test normalize_phone."""

    @pytest.mark.parametrize("raw", [
        "01122334455",
        "91122334455",
        "1122334455",
        "+5491122334455",
        "5491122334455",
        "541122334455",
        "011 2233-4455",
        "(011) 2233 4455",
    ])
    def test_local_variants_normalize_to_canonical(self, raw):
        """Test every common local variant ends up as +549 plus area and number."""
        assert normalize_phone(raw) == "+5491122334455"

    def test_canonical_is_noop(self):
        """Test a canonical number is returned unchanged."""
        assert normalize_phone("+5491122334455") == "+5491122334455"

    @pytest.mark.parametrize("raw", [
        "01122334455",
        "351 555-1234",
        "+1 415 555 2671",
        "123",
        "",
        "abc",
    ])
    def test_idempotent(self, raw):
        """Test normalizing twice gives the same result as once."""
        once = normalize_phone(raw)
        assert normalize_phone(once) == once

    def test_foreign_number_keeps_country_code(self):
        """Test numbers with another country code are only cleaned."""
        assert normalize_phone("+1 (415) 555-2671") == "+14155552671"

    def test_never_raises_on_garbage(self):
        """Test the function is total."""
        assert normalize_phone(None) == "+54"
        assert normalize_phone("abc").startswith("+")
        assert normalize_phone(12345).startswith("+")

    def test_interior_area_code(self):
        """Test a three digit area code with trunk prefix."""
        assert normalize_phone("0351 155 123 456") == "+54351155123456"
        assert normalize_phone("0351 5123456") == "+5493515123456"


class TestIsValidPhone:
    """Test is_valid_phone."""

    def test_valid_canonical(self):
        """Test canonical mobile numbers are valid."""
        assert is_valid_phone("+5491122334455")
        assert is_valid_phone("01122334455")

    def test_length_boundaries(self):
        """Test +549 followed by 8 to 12 digits."""
        assert not is_valid_phone("+5491234567")
        assert is_valid_phone("+54912345678")
        assert is_valid_phone("+549123456789012")
        assert not is_valid_phone("+5491234567890123")

    def test_invalid_numbers(self):
        """Test non-mobile and foreign numbers are rejected."""
        assert not is_valid_phone("123")
        assert not is_valid_phone("+14155552671")
        assert not is_valid_phone("")
        assert not is_valid_phone(None)


class TestDisplayAndMask:
    """Test display_phone and mask_phone."""

    def test_display_phone(self):
        """Test human readable formatting."""
        assert display_phone("01122334455") == "+54 9 11 2233-4455"

    def test_display_phone_falls_back_to_normalized(self):
        """Test non-mobile numbers are shown normalized."""
        assert display_phone("+1 415 555 2671") == "+14155552671"

    def test_mask_phone(self):
        """Test only the last four digits are kept."""
        assert mask_phone("+5491122334455") == "*********4455"
        assert mask_phone("123") == "***"
        assert mask_phone("") == "***"
        assert mask_phone(None) == "***"
