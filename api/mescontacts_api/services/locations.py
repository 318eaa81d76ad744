from __future__ import annotations

import unicodedata
from collections.abc import Iterable
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

import geonamescache

# Geonames "cities1000" extract: every populated place above 1000 inhabitants.
MIN_CITY_POPULATION = 1000

# Province code -> geonames admin1 code.
PROVINCE_ADMIN_CODES: dict[str, str] = {
    "AB": "01",
    "BC": "02",
    "MB": "03",
    "NB": "04",
    "NL": "05",
    "NS": "07",
    "ON": "08",
    "PE": "09",
    "QC": "10",
    "SK": "11",
    "YT": "12",
    "NT": "13",
    "NU": "14",
}

PROVINCE_LABELS: dict[str, str] = {
    "AB": "Alberta",
    "BC": "Colombie-Britannique",
    "MB": "Manitoba",
    "NB": "Nouveau-Brunswick",
    "NL": "Terre-Neuve-et-Labrador",
    "NS": "Nouvelle-Écosse",
    "ON": "Ontario",
    "PE": "Île-du-Prince-Édouard",
    "QC": "Québec",
    "SK": "Saskatchewan",
    "NT": "Territoires du Nord-Ouest",
    "NU": "Nunavut",
    "YT": "Yukon",
}


@dataclass(slots=True, frozen=True)
class City:
    name: str
    country: str
    admin1: str
    latitude: float | None = None
    longitude: float | None = None


def list_provinces() -> list[dict[str, str]]:
    return [{"code": code, "label": label} for code, label in PROVINCE_LABELS.items()]


def cities_for_province(province_code: str, *, cities: Iterable[City] | None = None) -> list[City]:
    """Canadian cities of a province, unique by name, in French collation order.

    Unknown province codes yield an empty list.
    """
    admin_code = PROVINCE_ADMIN_CODES.get(province_code.strip().upper())
    if admin_code is None:
        return []

    source = load_cities() if cities is None else cities
    seen: set[str] = set()
    unique: list[City] = []
    for city in source:
        if city.country != "CA" or city.admin1 != admin_code:
            continue
        if city.name in seen:
            continue
        seen.add(city.name)
        unique.append(city)

    unique.sort(key=lambda city: collation_key(city.name))
    return unique


def collation_key(name: str) -> tuple[str, str]:
    # Accents and case are ignored at the primary level, the raw name breaks ties.
    decomposed = unicodedata.normalize("NFKD", name)
    base = "".join(char for char in decomposed if not unicodedata.combining(char))
    return base.casefold(), name


@lru_cache
def load_cities(min_population: int = MIN_CITY_POPULATION) -> tuple[City, ...]:
    records = geonamescache.GeonamesCache(min_city_population=min_population).get_cities()
    return tuple(_city_from_record(record) for record in records.values() if record.get("countrycode") == "CA")


def _city_from_record(record: dict[str, Any]) -> City:
    return City(
        name=str(record.get("name", "")),
        country=str(record.get("countrycode", "")),
        admin1=str(record.get("admin1code", "")),
        latitude=_as_float(record.get("latitude")),
        longitude=_as_float(record.get("longitude")),
    )


def _as_float(value: Any) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None
