from pydantic import BaseModel


class ProvinceOut(BaseModel):
    code: str
    label: str


class CityOut(BaseModel):
    name: str
    country: str
    admin1: str
    latitude: float | None = None
    longitude: float | None = None
