"""
Phone number identity: normalization, keyed hashing and masking.

The raw number only exists at the edges of the system. Everything that is
stored, logged or sent to the backend uses the HMAC-SHA256 of the normalized
E.164 form, keyed with a static application-wide salt.

Normalization rules (home calling code `+91` by default):
- whitespace and punctuation are stripped; a leading `00` becomes `+`,
- a number that already starts with `+` is kept,
- `91XXXXXXXXXX` (home code without `+`, 12 digits) gains a `+`,
- `0XXXXXXXXXX` (trunk prefix, 11 digits) becomes `+91XXXXXXXXXX`,
- a bare 10-digit national number becomes `+91XXXXXXXXXX`,
- anything else is treated as already carrying a country code.

Inputs with fewer than 10 or more than 15 digits are rejected.
"""

from __future__ import annotations

import hashlib
import hmac
import re

import phonenumbers
from phonenumbers import NumberParseException


class InvalidNumberError(ValueError):
    """Raised when raw input cannot be normalized to a plausible E.164 number."""


_NON_DIALABLE = re.compile(r"[^\d+]+")
_HEX64 = re.compile(r"^[a-f0-9]{64}$")

MIN_DIGITS = 10
MAX_DIGITS = 15


def sanitize_number(raw: str) -> str:
    """
    Strip separators from user or platform input.

    - Trims whitespace.
    - Removes common separators (spaces, dashes, parentheses, dots).
    - Converts an international dialing prefix `00` into `+`.

    This function does not validate; it only sanitizes input.
    """

    s = raw.strip()
    if not s:
        return s

    s = _NON_DIALABLE.sub("", s)
    # A '+' is only meaningful in the leading position.
    if "+" in s[1:]:
        s = s[0] + s[1:].replace("+", "")
    if s.startswith("00"):
        s = f"+{s[2:]}"
    return s


def normalize_number(raw: str, *, home_calling_code: str = "+91") -> str:
    """
    Normalize raw digits to E.164.

    Raises:
        InvalidNumberError: if the result has fewer than 10 or more than 15 digits.
    """

    digits = sanitize_number(raw)
    home_digits = home_calling_code.lstrip("+")
    national_len = MIN_DIGITS

    if digits.startswith("+"):
        e164 = digits
    elif digits.startswith(home_digits) and len(digits) == len(home_digits) + national_len:
        e164 = f"+{digits}"
    elif digits.startswith("0") and len(digits) == national_len + 1:
        e164 = f"+{home_digits}{digits[1:]}"
    elif len(digits) == national_len:
        e164 = f"+{home_digits}{digits}"
    else:
        e164 = f"+{digits}"

    count = len(e164) - 1
    if count < MIN_DIGITS or count > MAX_DIGITS:
        raise InvalidNumberError(f"Expected {MIN_DIGITS}-{MAX_DIGITS} digits, got {count}.")
    return e164


def try_normalize(raw: str | None, *, home_calling_code: str = "+91") -> str | None:
    """`normalize_number` that returns None for blank or invalid input."""

    if raw is None or not raw.strip():
        return None
    try:
        return normalize_number(raw, home_calling_code=home_calling_code)
    except InvalidNumberError:
        return None


def _hmac_hex(data: str, salt: str) -> str:
    return hmac.new(salt.encode("utf-8"), data.encode("utf-8"), hashlib.sha256).hexdigest()


def hash_e164(e164: str, *, salt: str) -> str:
    """HMAC-SHA256 of an already-normalized E.164 number."""

    return _hmac_hex(e164, salt)


def hash_number(raw: str, *, salt: str, home_calling_code: str = "+91") -> str:
    """
    Normalize `raw` and return its keyed hash as 64 lowercase hex chars.

    Equal normalized numbers always hash identically.
    """

    return hash_e164(normalize_number(raw, home_calling_code=home_calling_code), salt=salt)


def hash_token(token: str, *, salt: str) -> str:
    """Keyed hash for device tokens and pairing tokens."""

    return _hmac_hex(token, salt)


def is_hex64(value: object) -> bool:
    return isinstance(value, str) and _HEX64.fullmatch(value) is not None


def mask_number(raw: str | None) -> str:
    """Display label that only reveals the last 4 digits."""

    if raw is None:
        return "Hidden"
    digits = re.sub(r"\D", "", raw)
    if not digits:
        return "Hidden"
    last4 = digits[-4:]
    return "*" * max(len(digits) - 4, 0) + last4


def region_for_e164(e164: str) -> str | None:
    """ISO 3166-1 alpha-2 region for an E.164 number, per libphonenumber metadata."""

    try:
        parsed = phonenumbers.parse(e164, None)
    except NumberParseException:
        return None
    region = phonenumbers.region_code_for_number(parsed)
    if not region or region == "ZZ":
        return None
    return region


class NumberHasher:
    """Normalization and hashing bound to one salt and home calling code."""

    def __init__(self, *, salt: str, home_calling_code: str = "+91") -> None:
        if not salt:
            raise ValueError("salt must not be empty")
        self._salt = salt
        self.home_calling_code = home_calling_code

    def normalize(self, raw: str | None) -> str | None:
        return try_normalize(raw, home_calling_code=self.home_calling_code)

    def hash(self, raw: str | None) -> str | None:
        e164 = self.normalize(raw)
        return None if e164 is None else hash_e164(e164, salt=self._salt)

    def hash_e164(self, e164: str) -> str:
        return hash_e164(e164, salt=self._salt)

    def hash_token(self, token: str) -> str:
        return hash_token(token, salt=self._salt)
