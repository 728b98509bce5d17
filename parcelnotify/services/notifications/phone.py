from __future__ import annotations

import re


_E164_PATTERN = re.compile(r"^\+[1-9]\d{6,14}$")
_NON_DIGITS = re.compile(r"\D")


def normalize_phone_to_e164(phone: str, default_country_code: str = "+46") -> str:
    # Swedish numbers arrive in every local variant: 070..., 4670..., +46 70..., 70...
    digits = _NON_DIGITS.sub("", phone)
    country_digits = default_country_code.lstrip("+")
    if default_country_code == "+46":
        if digits.startswith("0"):
            return "+46" + digits[1:]
        if digits.startswith("46"):
            return "+" + digits
        if 8 <= len(digits) <= 10:
            return "+46" + digits
    if not digits.startswith(country_digits):
        return default_country_code + digits
    return "+" + digits


def is_valid_e164(phone: str) -> bool:
    return bool(_E164_PATTERN.match(phone))
