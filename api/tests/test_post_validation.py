from decimal import Decimal

import pytest

from mescontacts_api.core.errors import ValidationError
from mescontacts_api.services.validation import normalize_phone, to_cents, validate_post_attributes

BASE = {
    "business_name": "  atelier vélo  ",
    "category": "Sport",
    "phone": "+1 819 555 0134",
    "email": "atelier@velo.ca",
    "address": "3 rue du Pont",
    "city": "Gatineau",
    "province": "QC",
}


def test_validate_post_attributes_normalizes_fields() -> None:
    result = validate_post_attributes({**BASE, "description": "réparations rapides", "website": "https://velo.ca"})

    assert result["business_name"] == "Atelier vélo"
    assert result["description"] == "Réparations rapides"
    assert result["phone"] == "(819) 555-0134"
    assert result["geo"] is None


@pytest.mark.parametrize("field", ["business_name", "phone", "email", "city"])
def test_validate_post_attributes_requires_fields(field: str) -> None:
    with pytest.raises(ValidationError, match=field):
        validate_post_attributes({**BASE, field: "   "})


@pytest.mark.parametrize(
    "overrides",
    [
        {"business_name": "x" * 51},
        {"email": "not-an-email"},
        {"website": "ftp://velo.ca"},
        {"geo": {"longitude": 200, "latitude": 45}},
        {"geo": {"longitude": -73.5}},
    ],
)
def test_validate_post_attributes_rejects_invalid_values(overrides: dict) -> None:
    with pytest.raises(ValidationError):
        validate_post_attributes({**BASE, **overrides})


def test_normalize_phone_accepts_common_formats() -> None:
    assert normalize_phone("514.555.0199") == "(514) 555-0199"
    assert normalize_phone("(514) 555-0199") == "(514) 555-0199"
    with pytest.raises(ValidationError):
        normalize_phone("555-0199")


def test_to_cents_rounds_half_up() -> None:
    assert to_cents(Decimal("49.99")) == 4999
    assert to_cents("10.005") == 1001
    assert to_cents(0) == 0
    with pytest.raises(ValidationError):
        to_cents("abc")
    with pytest.raises(ValidationError):
        to_cents(Decimal("NaN"))
