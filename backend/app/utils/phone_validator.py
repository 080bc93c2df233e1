"""
Phone number validation and provider detection for Ugandan mobile money.

Ugandan mobile numbers format: +256 7XX XXX XXX (9 digits after the country code)
"""

import re
from typing import Tuple, Optional


MTN_PREFIXES = ['76', '77', '78', '39']
AIRTEL_PREFIXES = ['70', '74', '75', '20']


def validate_ugandan_phone(phone_number: str) -> Tuple[bool, Optional[str], Optional[str]]:
    """
    Validate and clean Ugandan phone number.

    Accepts international (+256 / 256) and local (07XX...) forms.

    Args:
        phone_number: Phone number to validate

    Returns:
        Tuple of (is_valid, cleaned_number, error_message)
    """
    if not phone_number:
        return False, None, "Phone number is required"

    # Remove all spaces, hyphens, and parentheses
    cleaned = re.sub(r'[\s\-\(\)]', '', phone_number)

    if cleaned.startswith('+256'):
        cleaned = cleaned[1:]
    elif cleaned.startswith('0') and len(cleaned) == 10:
        cleaned = '256' + cleaned[1:]
    elif not cleaned.startswith('256'):
        return False, None, "Phone number must start with +256, 256 or 0"

    # Should now be 256XXXXXXXXX (12 digits total: 256 + 9 digit number)
    if len(cleaned) != 12:
        return False, None, f"Invalid phone number length. Expected 12 digits (256 + 9), got {len(cleaned)}"

    if not cleaned.isdigit():
        return False, None, "Phone number must contain only digits"

    prefix = cleaned[3:5]
    if prefix not in MTN_PREFIXES + AIRTEL_PREFIXES + ['71', '72', '73', '79']:
        return False, None, "Invalid Ugandan mobile number prefix"

    return True, '+' + cleaned, None


def detect_provider(phone_number: str) -> Optional[str]:
    """
    Detect mobile money provider from a Ugandan phone number.

    - MTN: +256 76X, 77X, 78X, 39X
    - Airtel: +256 70X, 74X, 75X, 20X

    Returns:
        "mtn_mobile_money", "airtel_money" or None
    """
    is_valid, cleaned, error = validate_ugandan_phone(phone_number)
    if not is_valid or not cleaned:
        return None

    prefix = cleaned[4:6]  # Two digits after +256
    if prefix in MTN_PREFIXES:
        return "mtn_mobile_money"
    if prefix in AIRTEL_PREFIXES:
        return "airtel_money"
    return None


def format_phone_display(phone_number: str) -> str:
    """
    Format phone number for display.

    Returns:
        Formatted phone number (e.g., "+256 772 123 456")
    """
    is_valid, cleaned, _ = validate_ugandan_phone(phone_number)
    if not is_valid or not cleaned:
        return phone_number

    number = cleaned[1:]
    return f"+{number[:3]} {number[3:6]} {number[6:9]} {number[9:12]}"


def mask_phone(phone_number: Optional[str]) -> Optional[str]:
    """Mask phone number for logs (show only last 4 digits)."""
    if not phone_number:
        return None

    if len(phone_number) >= 8:
        return phone_number[:4] + "*" * (len(phone_number) - 8) + phone_number[-4:]
    return phone_number
