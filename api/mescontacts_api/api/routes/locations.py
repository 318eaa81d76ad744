from fastapi import APIRouter

from mescontacts_api.schemas.locations import CityOut, ProvinceOut
from mescontacts_api.services.locations import cities_for_province, list_provinces

router = APIRouter()


@router.get("/provinces", response_model=list[ProvinceOut])
async def get_provinces() -> list[ProvinceOut]:
    return [ProvinceOut(**row) for row in list_provinces()]


@router.get("/provinces/{province_code}/cities", response_model=list[CityOut])
async def get_cities(province_code: str) -> list[CityOut]:
    return [
        CityOut(
            name=city.name,
            country=city.country,
            admin1=city.admin1,
            latitude=city.latitude,
            longitude=city.longitude,
        )
        for city in cities_for_province(province_code)
    ]
