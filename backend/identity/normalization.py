"""
Identity Core - Identifier Normalisation

Phones are stored in E.164, emails lower-cased. Both are validated at the
boundary so lookups only ever see canonical values.
"""

from typing import Optional

import phonenumbers
from email_validator import validate_email, EmailNotValidError

from .errors import ValidationError

# Malaysia: the club's home region for numbers typed without a country code
DEFAULT_REGION = "MY"


def normalize_phone(value: Optional[str], default_region: str = DEFAULT_REGION) -> str:
    """
    Normalise a phone number to E.164.

    Accepts "+60123456789", "60123456789", "012-345 6789" and the like.

    Raises:
        ValidationError: If the value cannot be a phone number
    """
    if value is None or not str(value).strip():
        raise ValidationError("phone is required", parameter="phone")

    cleaned = str(value).strip()
    region = default_region
    # "60123456789" typed without the plus sign
    if not cleaned.startswith("+") and not cleaned.startswith("0"):
        digits = "".join(ch for ch in cleaned if ch.isdigit())
        country_code = phonenumbers.country_code_for_region(default_region)
        if country_code and digits.startswith(str(country_code)):
            cleaned = "+" + digits
            region = None

    try:
        parsed = phonenumbers.parse(cleaned, region)
    except phonenumbers.NumberParseException:
        raise ValidationError("phone number format is invalid", parameter="phone")

    if not phonenumbers.is_possible_number(parsed):
        raise ValidationError("phone number format is invalid", parameter="phone")

    return phonenumbers.format_number(parsed, phonenumbers.PhoneNumberFormat.E164)


def normalize_email(value: Optional[str]) -> str:
    """
    Normalise an email address (trimmed, lower-cased).

    Raises:
        ValidationError: If the value is not a syntactically valid address
    """
    if value is None or not str(value).strip():
        raise ValidationError("email is required", parameter="email")

    try:
        result = validate_email(str(value).strip(), check_deliverability=False)
    except EmailNotValidError:
        raise ValidationError("email format is invalid", parameter="email")

    return result.normalized.lower()


def normalize_optional_email(value: Optional[str]) -> Optional[str]:
    if value is None or not str(value).strip():
        return None
    return normalize_email(value)


def normalize_optional_phone(value: Optional[str], default_region: str = DEFAULT_REGION) -> Optional[str]:
    if value is None or not str(value).strip():
        return None
    return normalize_phone(value, default_region)


def mask_email(email: Optional[str]) -> Optional[str]:
    """'foo@bar.com' -> 'f***@bar.com'. For logs only."""
    if not email or "@" not in email:
        return email
    local, domain = email.split("@", 1)
    return f"{local[:1]}***@{domain}"


def mask_phone(phone: Optional[str]) -> Optional[str]:
    """'+60123456789' -> '***6789'. For logs only."""
    if not phone:
        return phone
    return f"***{phone[-4:]}" if len(phone) > 4 else "****"
