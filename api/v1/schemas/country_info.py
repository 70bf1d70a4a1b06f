from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field


class CountryInfo(BaseModel):
    id: str = Field(..., description="Row identifier")
    name: str = Field(..., description="The name of the country")
    capital: Optional[str] = Field(None, description="The capital city of the country")
    region: Optional[str] = Field(None, description="The region where the country is located")
    population: int = Field(..., description="The population of the country")
    currency_code: Optional[str] = Field(None, description="The currency code of the country")
    exchange_rate: Optional[float] = Field(None, description="Units of currency per USD")
    estimated_gdp: Optional[float] = Field(None, description="The estimated GDP of the country")
    flag_url: Optional[str] = Field(None, description="URL to the country's flag image")
    last_refreshed_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, country) -> "CountryInfo":
        return cls(
            id=country.country_id,
            name=country.country_name,
            capital=country.capital,
            region=country.region,
            population=country.population,
            currency_code=country.currency_code,
            exchange_rate=country.exchange_rate,
            estimated_gdp=country.estimated_gdp,
            flag_url=country.flag_url,
            last_refreshed_at=country.last_refreshed_at,
        )


class TopCountry(BaseModel):
    name: str
    estimated_gdp: Optional[float] = None


class RefreshResult(BaseModel):
    message: str = "Countries data refreshed successfully."
    processed_count: int
    duration_seconds: float
    last_refreshed_at: Optional[datetime] = None
    top5: List[TopCountry] = []
    warnings: List[str] = []


class Pagination(BaseModel):
    total: int
    count: int
    limit: Optional[int] = None
    offset: int = 0


class CountryList(BaseModel):
    data: List[CountryInfo]
    pagination: Pagination
    filters: dict


class StatusInfo(BaseModel):
    processed_count: int
    last_refreshed_at: Optional[datetime] = None
    duration_seconds: Optional[float] = None
    status: str
    total_countries: int = 0
