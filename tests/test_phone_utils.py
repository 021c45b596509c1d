"""Tests for phone number normalisation and display formatting."""

import pytest
from callops.phone_utils import normalise_phone, format_for_display


class TestNormalisePhone:
    """Test phone number normalisation to E.164."""

    def test_tokyo_landline(self):
        e164, valid = normalise_phone("03-1234-5678")
        assert valid is True
        assert e164 == "+81312345678"

    def test_mobile_with_dashes(self):
        e164, valid = normalise_phone("090-1234-5678")
        assert valid is True
        assert e164 == "+819012345678"

    def test_mobile_digits_only(self):
        e164, valid = normalise_phone("09012345678")
        assert valid is True
        assert e164 == "+819012345678"

    def test_with_country_code(self):
        e164, valid = normalise_phone("+81 90 1234 5678")
        assert valid is True
        assert e164 == "+819012345678"

    def test_country_code_without_plus(self):
        e164, valid = normalise_phone("819012345678")
        assert valid is True
        assert e164 == "+819012345678"

    def test_with_spaces_around(self):
        e164, valid = normalise_phone("  03 1234 5678 ")
        assert valid is True
        assert e164 == "+81312345678"

    def test_foreign_number_keeps_country(self):
        e164, valid = normalise_phone("+44 20 8366 1177")
        assert valid is True
        assert e164 == "+442083661177"

    def test_other_default_region(self):
        e164, valid = normalise_phone("020 8366 1177", region="GB")
        assert valid is True
        assert e164 == "+442083661177"

    def test_invalid_short_number(self):
        _, valid = normalise_phone("123")
        assert valid is False

    def test_invalid_letters(self):
        raw = "not-a-phone"
        e164, valid = normalise_phone(raw)
        assert valid is False
        assert e164 == raw

    @pytest.mark.parametrize("raw", ["", "   "])
    def test_blank(self, raw):
        _, valid = normalise_phone(raw)
        assert valid is False


class TestFormatForDisplay:
    def test_format_landline(self):
        assert format_for_display("+81312345678") == "03-1234-5678"

    def test_format_mobile(self):
        assert format_for_display("+819012345678") == "090-1234-5678"

    def test_format_invalid(self):
        display = format_for_display("invalid")
        assert display == "invalid"
