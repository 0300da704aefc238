"""
Barcode checksum arithmetic for inventory items.

Pure functions: no image generation, no lookups.  EAN-13 and UPC-A carry a
mod-10 check digit and are verified; CODE128 strings are accepted on shape
alone.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from enum import Enum


class BarcodeFormat(str, Enum):
    EAN13 = "EAN13"
    UPC = "UPC"
    CODE128 = "CODE128"


@dataclass(frozen=True)
class BarcodeValidation:
    is_valid: bool
    format: BarcodeFormat | None = None
    checksum_valid: bool = False
    errors: tuple[str, ...] = field(default_factory=tuple)


_SEPARATORS = re.compile(r"[\s\-]")
_CODE128_SHAPE = re.compile(r"^[A-Za-z0-9\-\s]+$")


def clean_barcode(barcode: str | None) -> str:
    """Strip whitespace and hyphens."""
    if not barcode:
        return ""
    return _SEPARATORS.sub("", barcode).strip()


def detect_format(barcode: str) -> BarcodeFormat | None:
    if barcode.isdigit() and len(barcode) == 13:
        return BarcodeFormat.EAN13
    if barcode.isdigit() and len(barcode) == 12:
        return BarcodeFormat.UPC
    if len(barcode) >= 6 and _CODE128_SHAPE.match(barcode):
        return BarcodeFormat.CODE128
    return None


def _check_digit(payload: str, odd_weight: int, even_weight: int) -> int:
    total = sum(
        int(digit) * (odd_weight if i % 2 == 0 else even_weight)
        for i, digit in enumerate(payload)
    )
    return (10 - total % 10) % 10


def ean13_check_digit(payload: str) -> int:
    """Check digit for the first 12 digits of an EAN-13 (weights 1,3,1,...)."""
    if len(payload) != 12 or not payload.isdigit():
        raise ValueError(f"EAN-13 payload must be 12 digits, got {payload!r}")
    return _check_digit(payload, 1, 3)


def upc_check_digit(payload: str) -> int:
    """Check digit for the first 11 digits of a UPC-A (weights 3,1,3,...)."""
    if len(payload) != 11 or not payload.isdigit():
        raise ValueError(f"UPC payload must be 11 digits, got {payload!r}")
    return _check_digit(payload, 3, 1)


def is_valid_ean13(barcode: str) -> bool:
    if len(barcode) != 13 or not barcode.isdigit():
        return False
    return ean13_check_digit(barcode[:12]) == int(barcode[12])


def is_valid_upc(barcode: str) -> bool:
    if len(barcode) != 12 or not barcode.isdigit():
        return False
    return upc_check_digit(barcode[:11]) == int(barcode[11])


def complete_ean13(data: str) -> str:
    """Zero-pad (or truncate) the digits of ``data`` to 12 and append the check digit."""
    payload = re.sub(r"\D", "", data)[:12].rjust(12, "0")
    return payload + str(ean13_check_digit(payload))


def complete_upc(data: str) -> str:
    payload = re.sub(r"\D", "", data)[:11].rjust(11, "0")
    return payload + str(upc_check_digit(payload))


def validate_barcode(barcode: str | None) -> BarcodeValidation:
    code = clean_barcode(barcode)
    if not code:
        return BarcodeValidation(is_valid=False, errors=("Barcode cannot be empty",))

    barcode_format = detect_format(code)
    if barcode_format is None:
        return BarcodeValidation(is_valid=False, errors=("Unknown barcode format",))

    if barcode_format == BarcodeFormat.EAN13:
        ok = is_valid_ean13(code)
        errors = () if ok else ("Invalid EAN-13 checksum",)
    elif barcode_format == BarcodeFormat.UPC:
        ok = is_valid_upc(code)
        errors = () if ok else ("Invalid UPC checksum",)
    else:
        ok, errors = True, ()

    return BarcodeValidation(
        is_valid=not errors,
        format=barcode_format,
        checksum_valid=ok,
        errors=errors,
    )
