"""
Format validators for Polish registry identifiers and contact fields.

NIP (tax id) and REGON (statistical registry id) carry mod-11 check digits.
Inputs may contain spaces or dashes; everything else must be digits.
"""

from __future__ import annotations

import re

NIP_WEIGHTS = (6, 5, 7, 2, 3, 4, 5, 6, 7)
REGON9_WEIGHTS = (8, 9, 2, 3, 4, 5, 6, 7)
REGON14_WEIGHTS = (2, 4, 8, 5, 0, 9, 7, 3, 6, 1, 2, 4, 8)

_FORMATTING_CHARS = re.compile(r"[\s-]+")
_EMAIL_REGEX = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_POSTAL_CODE_REGEX = re.compile(r"^[0-9]{2}-[0-9]{3}$")
_ASCII_DIGITS = re.compile(r"[0-9]+")


def strip_formatting(value: str | None) -> str:
    """Remove whitespace and dashes from an identifier."""
    if value is None:
        return ""
    return _FORMATTING_CHARS.sub("", str(value))


def _weighted_checksum(digits: str, weights: tuple[int, ...]) -> int:
    return sum(int(digit) * weight for digit, weight in zip(digits, weights)) % 11


def is_valid_nip(value: str | None) -> bool:
    """Return True when ``value`` is a 10-digit NIP with a correct check digit."""
    digits = strip_formatting(value)
    if len(digits) != 10 or not _ASCII_DIGITS.fullmatch(digits):
        return False
    checksum = _weighted_checksum(digits[:9], NIP_WEIGHTS)
    # A remainder of 10 is never issued.
    if checksum == 10:
        return False
    return checksum == int(digits[9])


def _regon9_checksum(digits: str) -> int:
    checksum = _weighted_checksum(digits[:8], REGON9_WEIGHTS)
    return 0 if checksum == 10 else checksum


def is_valid_regon(value: str | None) -> bool:
    """Return True for a valid 9- or 14-digit REGON."""
    digits = strip_formatting(value)
    if len(digits) not in (9, 14) or not _ASCII_DIGITS.fullmatch(digits):
        return False
    if _regon9_checksum(digits) != int(digits[8]):
        return False
    if len(digits) == 9:
        return True
    checksum = _weighted_checksum(digits[:13], REGON14_WEIGHTS)
    if checksum == 10:
        checksum = 0
    return checksum == int(digits[13])


def is_valid_email(value: str | None) -> bool:
    token = (value or "").strip()
    return bool(token) and bool(_EMAIL_REGEX.match(token))


def is_valid_postal_code(value: str | None) -> bool:
    """Polish postal codes use the ``DD-DDD`` layout."""
    return bool(_POSTAL_CODE_REGEX.match((value or "").strip()))
