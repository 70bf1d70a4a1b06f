from sqlalchemy import BigInteger, Column, DateTime, Float, String
from sqlalchemy.dialects.mysql import CHAR
from sqlalchemy.sql import func
import uuid

from api.db.database import Base


class CountryData(Base):
    __tablename__ = "country_data"

    country_id = Column(CHAR(36), primary_key=True, default=lambda: str(uuid.uuid4()))
    country_name = Column(String(255), nullable=False)
    # Lower-cased, trimmed name: the case-insensitive natural key.
    name_key = Column(String(255), nullable=False, unique=True)
    capital = Column(String(255), nullable=True)
    region = Column(String(255), nullable=True, index=True)
    population = Column(BigInteger, nullable=False)
    currency_code = Column(String(10), nullable=True, index=True)
    exchange_rate = Column(Float, nullable=True)
    estimated_gdp = Column(Float, nullable=True, index=True)
    flag_url = Column(String(512), nullable=True)
    last_refreshed_at = Column(DateTime(timezone=True), server_default=func.now())
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


def name_key_for(name: str) -> str:
    return name.strip().lower()
