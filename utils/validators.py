"""
Input validators shared by bot scripts and backend clients.

Phone numbers are normalized to international form (+<country><number>);
bare local numbers are assumed to be Indian (country code 91).
"""
from __future__ import annotations

import re

DEFAULT_COUNTRY_CODE = "91"

_NON_DIGIT = re.compile(r"\D")
_PHONE = re.compile(r"\+\d{8,15}")
_OTP = re.compile(r"\d{6}")
_SCRIPT_BLOCK = re.compile(r"<script[^>]*>.*?</script>", re.IGNORECASE | re.DOTALL)
_UNSAFE_CHARS = re.compile(r"[<>\"']")


def format_phone_input(raw: str, country_code: str = DEFAULT_COUNTRY_CODE) -> str:
    """'098765 43210' → '+919876543210'"""
    digits = _NON_DIGIT.sub("", raw or "")
    if digits.startswith("0"):
        digits = digits[1:]
    if len(digits) <= 10:
        digits = country_code + digits
    return "+" + digits


def is_valid_phone(phone: str) -> bool:
    return bool(phone) and _PHONE.fullmatch(phone) is not None


def is_valid_otp(otp: str) -> bool:
    return bool(otp) and _OTP.fullmatch(otp) is not None


def sanitize_input(text: str) -> str:
    """Strip <script> blocks and HTML/quote characters, then trim."""
    if not text:
        return ""
    cleaned = _SCRIPT_BLOCK.sub("", text)
    return _UNSAFE_CHARS.sub("", cleaned).strip()


def mask_phone(phone: str, visible: int = 4) -> str:
    """Mask all but the last `visible` digits for logging."""
    if not phone:
        return ""
    if len(phone) <= visible:
        return "*" * len(phone)
    return "*" * (len(phone) - visible) + phone[-visible:]
