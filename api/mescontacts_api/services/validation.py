from __future__ import annotations

import re
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any
from urllib.parse import urlparse

from mescontacts_api.core.errors import ValidationError

_PHONE_RE = re.compile(r"^\+?1?\s*(?:\([0-9]{3}\)|[0-9]{3})[-.\s]*[0-9]{3}[-.\s]*[0-9]{4}$")
_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

REQUIRED_POST_FIELDS = ("business_name", "category", "phone", "email", "address", "city", "province")
MAX_FIELD_LENGTHS = {
    "business_name": 50,
    "category": 50,
    "description": 500,
    "address": 100,
    "city": 50,
    "province": 50,
    "postal_code": 10,
}


def validate_post_attributes(attributes: dict[str, Any]) -> dict[str, Any]:
    """Return a normalized copy of listing attributes or raise ValidationError.

    Text fields are trimmed, the business name and description are capitalized
    and phone numbers are rewritten as ``(XXX) XXX-XXXX``.
    """
    normalized: dict[str, Any] = {}
    for key in (*REQUIRED_POST_FIELDS, "description", "website", "postal_code"):
        normalized[key] = _coerce_text(attributes.get(key))

    missing = [key for key in REQUIRED_POST_FIELDS if not normalized[key]]
    if missing:
        raise ValidationError(f"required fields are empty: {', '.join(missing)}")

    for key, max_length in MAX_FIELD_LENGTHS.items():
        value = normalized.get(key)
        if value and len(value) > max_length:
            raise ValidationError(f"{key} must be at most {max_length} characters")

    normalized["business_name"] = _capitalize(normalized["business_name"])
    if normalized["description"]:
        normalized["description"] = _capitalize(normalized["description"])

    normalized["phone"] = normalize_phone(normalized["phone"])

    if not _EMAIL_RE.match(normalized["email"]):
        raise ValidationError("email must be a valid email address")

    website = normalized["website"]
    if website:
        parsed = urlparse(website)
        if parsed.scheme not in {"http", "https"} or not parsed.netloc:
            raise ValidationError("website must be an http(s) URL")

    normalized["geo"] = _validate_geo(attributes.get("geo"))
    return normalized


def normalize_phone(raw: str) -> str:
    if not _PHONE_RE.match(raw):
        raise ValidationError("phone must be a valid Canadian phone number")
    digits = re.sub(r"\D", "", raw)
    if len(digits) == 11:
        digits = digits[1:]
    return f"({digits[:3]}) {digits[3:6]}-{digits[6:]}"


def validate_amount_cents(amount_cents: Any) -> int:
    if isinstance(amount_cents, bool) or not isinstance(amount_cents, int):
        raise ValidationError("amount_cents must be an integer")
    if amount_cents < 0:
        raise ValidationError("amount_cents must be non-negative")
    return amount_cents


def validate_duration_days(duration_days: Any) -> int:
    if isinstance(duration_days, bool) or not isinstance(duration_days, int):
        raise ValidationError("duration_days must be an integer")
    if duration_days < 1:
        raise ValidationError("duration_days must be at least 1")
    return duration_days


def to_cents(amount: Decimal | float | int | str) -> int:
    """Convert a decimal currency amount to integer cents, rounding half up."""
    try:
        value = Decimal(str(amount))
    except InvalidOperation as exc:
        raise ValidationError("amount must be a decimal number") from exc
    if not value.is_finite():
        raise ValidationError("amount must be a decimal number")
    return int((value * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def _validate_geo(value: Any) -> dict[str, float] | None:
    if value is None:
        return None
    if hasattr(value, "model_dump"):
        value = value.model_dump()
    if not isinstance(value, dict):
        raise ValidationError("geo must be an object with longitude and latitude")
    try:
        longitude = float(value["longitude"])
        latitude = float(value["latitude"])
    except (KeyError, TypeError, ValueError) as exc:
        raise ValidationError("geo must be an object with longitude and latitude") from exc
    if not -180.0 <= longitude <= 180.0 or not -90.0 <= latitude <= 90.0:
        raise ValidationError("geo coordinates are out of range")
    return {"longitude": longitude, "latitude": latitude}


def _coerce_text(value: Any) -> str | None:
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    return stripped or None


def _capitalize(value: str) -> str:
    return value[:1].upper() + value[1:]
