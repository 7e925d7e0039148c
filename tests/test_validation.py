"""Tests for address and profile validation."""

from validation import (
    clean_phone_number,
    is_valid_phone_number,
    normalize_address,
    validate_address,
    validate_profile,
)

ADDRESS = {
    "address_type": "both",
    "full_name": "Asha Rao",
    "phone_number": "+91 98765-43210",
    "address_line1": "12 MG Road",
    "city": "Bengaluru",
    "state": "Karnataka",
    "pincode": "560001",
}


class TestPhone:
    def test_strips_formatting(self):
        assert clean_phone_number("(987) 654-3210") == "9876543210"

    def test_mobile_prefix(self):
        assert is_valid_phone_number("9876543210")
        assert not is_valid_phone_number("5876543210")
        assert not is_valid_phone_number("98765")


class TestValidateAddress:
    def test_valid(self):
        # +91 prefix leaves 12 digits after cleaning
        errors = validate_address(ADDRESS)
        assert errors == ["Phone number must be a valid 10-digit Indian mobile number"]
        assert validate_address({**ADDRESS, "phone_number": "98765-43210"}) == []

    def test_missing_fields_reported_together(self):
        errors = validate_address({"address_type": "shipping"})
        assert "Full name is required" in errors
        assert "Phone number is required" in errors
        assert "Address line 1 is required" in errors
        assert "City is required" in errors
        assert "State is required" in errors
        assert "Pincode is required" in errors

    def test_lengths_and_formats(self):
        errors = validate_address({
            **ADDRESS,
            "phone_number": "9876543210",
            "full_name": "x" * 101,
            "landmark": "y" * 201,
            "pincode": "5600",
            "address_type": "office",
        })
        assert "Full name must be less than 100 characters" in errors
        assert "Landmark must be less than 200 characters" in errors
        assert "Pincode must be a valid 6-digit code" in errors
        assert "Address type must be shipping, billing, or both" in errors

    def test_partial_checks_only_present_fields(self):
        assert validate_address({"city": "Mysuru"}, partial=True) == []
        assert validate_address({"city": "  "}, partial=True) == ["City cannot be empty"]


class TestNormalizeAddress:
    def test_trims_and_nulls_blank_optionals(self):
        out = normalize_address({
            **ADDRESS,
            "full_name": "  Asha Rao ",
            "address_line2": "   ",
            "landmark": None,
            "is_default": None,
        })
        assert out["full_name"] == "Asha Rao"
        assert out["phone_number"] == "919876543210"
        assert out["address_line2"] is None
        assert out["landmark"] is None
        assert "is_default" not in out


class TestValidateProfile:
    def test_username_rules(self):
        assert validate_profile(username="asha_r") == []
        assert validate_profile(username="  ") == []
        assert len(validate_profile(username="a!")) == 1

    def test_phone_blank_allowed(self):
        assert validate_profile(phone_number="") == []
        assert len(validate_profile(phone_number="12345")) == 1
