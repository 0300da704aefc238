"""Tests for barcode check digit validation."""

import pytest

from smefin_engines.barcode import (
    BarcodeFormat,
    clean_barcode,
    complete_ean13,
    complete_upc,
    detect_format,
    ean13_check_digit,
    upc_check_digit,
    validate_barcode,
)


class TestEan13:

    def test_known_good_code(self):
        result = validate_barcode("4006381333931")

        assert result.is_valid
        assert result.format == BarcodeFormat.EAN13
        assert result.checksum_valid

    @pytest.mark.parametrize("last", [d for d in "0123456789" if d != "1"])
    def test_any_other_check_digit_invalidates(self, last):
        result = validate_barcode("400638133393" + last)

        assert not result.is_valid
        assert result.errors == ("Invalid EAN-13 checksum",)

    def test_check_digit(self):
        assert ean13_check_digit("400638133393") == 1

    def test_complete_pads_and_appends(self):
        assert complete_ean13("400638133393") == "4006381333931"
        assert len(complete_ean13("12345")) == 13

    def test_separators_ignored(self):
        assert validate_barcode("400-6381 333931").is_valid


class TestUpc:

    def test_known_good_code(self):
        result = validate_barcode("036000291452")
        assert result.is_valid
        assert result.format == BarcodeFormat.UPC

    def test_bad_check_digit(self):
        result = validate_barcode("036000291453")
        assert not result.is_valid
        assert result.errors == ("Invalid UPC checksum",)

    def test_check_digit_and_completion(self):
        assert upc_check_digit("03600029145") == 2
        assert complete_upc("03600029145") == "036000291452"

    def test_payload_length_enforced(self):
        with pytest.raises(ValueError):
            upc_check_digit("123")


class TestFormats:

    def test_code128_accepted_on_shape(self):
        result = validate_barcode("SKU12345")
        assert result.is_valid
        assert result.format == BarcodeFormat.CODE128

    def test_unknown_format(self):
        result = validate_barcode("AB!")
        assert not result.is_valid
        assert result.errors == ("Unknown barcode format",)

    def test_empty(self):
        assert validate_barcode("   ").errors == ("Barcode cannot be empty",)
        assert clean_barcode(None) == ""

    def test_detect_format(self):
        assert detect_format("4006381333931") == BarcodeFormat.EAN13
        assert detect_format("036000291452") == BarcodeFormat.UPC
        assert detect_format("12345") is None
