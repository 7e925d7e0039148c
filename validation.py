"""Field validation for addresses and profiles.

Validators return a list of human-readable messages; an empty list means the
input is acceptable. Handlers raise errors.ValidationError with the list.
"""
import re
from typing import Any, Dict, List, Optional

from lifecycle import ADDRESS_TYPES

MOBILE_RE = re.compile(r"^[6-9]\d{9}$")
PINCODE_RE = re.compile(r"^\d{6}$")
USERNAME_RE = re.compile(r"^[a-zA-Z0-9_]{3,30}$")

# (field, label, max length, required)
_TEXT_FIELDS = [
    ("full_name", "Full name", 100, True),
    ("address_line1", "Address line 1", 200, True),
    ("address_line2", "Address line 2", 200, False),
    ("city", "City", 100, True),
    ("state", "State", 100, True),
    ("landmark", "Landmark", 200, False),
]


def clean_phone_number(phone: str) -> str:
    return re.sub(r"\D", "", phone or "")


def is_valid_phone_number(phone: str) -> bool:
    return bool(MOBILE_RE.match(clean_phone_number(phone)))


def is_valid_pincode(pincode: str) -> bool:
    return bool(PINCODE_RE.match(pincode or ""))


def is_valid_username(username: str) -> bool:
    return bool(USERNAME_RE.match(username or ""))


def validate_address(data: Dict[str, Any], partial: bool = False) -> List[str]:
    """Validate address fields.

    With partial=True (PATCH) only the keys present in data are checked, and a
    present-but-blank required field is reported as "cannot be empty".
    """
    errors: List[str] = []

    for field, label, max_len, required in _TEXT_FIELDS:
        if partial and field not in data:
            continue
        value = data.get(field)
        if not (value or "").strip():
            if required:
                errors.append(f"{label} cannot be empty" if partial else f"{label} is required")
            continue
        if len(value) > max_len:
            errors.append(f"{label} must be less than {max_len} characters")

    if not partial or "phone_number" in data:
        phone = data.get("phone_number")
        if not (phone or "").strip():
            errors.append("Phone number cannot be empty" if partial else "Phone number is required")
        elif not is_valid_phone_number(phone):
            errors.append("Phone number must be a valid 10-digit Indian mobile number")

    if not partial or "pincode" in data:
        pincode = data.get("pincode")
        if not (pincode or "").strip():
            errors.append("Pincode cannot be empty" if partial else "Pincode is required")
        elif not is_valid_pincode(pincode.strip()):
            errors.append("Pincode must be a valid 6-digit code")

    if not partial or "address_type" in data:
        if data.get("address_type") not in ADDRESS_TYPES:
            errors.append("Address type must be shipping, billing, or both")

    return errors


def normalize_address(data: Dict[str, Any]) -> Dict[str, Any]:
    """Trim text, strip phone formatting, store blank optionals as None."""
    out: Dict[str, Any] = {}
    for field, _label, _max, required in _TEXT_FIELDS:
        if field in data:
            value = (data[field] or "").strip()
            out[field] = value if (value or required) else None
    if "phone_number" in data:
        out["phone_number"] = clean_phone_number(data["phone_number"])
    if "pincode" in data:
        out["pincode"] = (data["pincode"] or "").strip()
    for field in ("address_type", "is_default"):
        if data.get(field) is not None:
            out[field] = data[field]
    return out


def validate_profile(username: Optional[str] = None, phone_number: Optional[str] = None) -> List[str]:
    errors: List[str] = []
    if username is not None and username.strip() and not is_valid_username(username.strip()):
        errors.append("Username must be 3-30 characters and contain only letters, numbers, and underscores")
    if phone_number is not None:
        cleaned = clean_phone_number(phone_number)
        if cleaned and not MOBILE_RE.match(cleaned):
            errors.append("Phone number must be a valid 10-digit Indian mobile number")
    return errors
