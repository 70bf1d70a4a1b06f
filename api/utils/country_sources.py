"""
Upstream data sources for the refresh pipeline.

The country directory comes in two schema versions:

- v3.1 (primary):  {"name": {"common": ...}, "capital": [...], "flags": {"png": ...},
                    "currencies": {"NGN": {"name": ..., "symbol": ...}}, ...}
- v2   (fallback): {"name": ..., "capital": ..., "flag": ...,
                    "currencies": [{"code": "NGN", ...}], ...}

Each version has its own adapter that produces the same `RawCountry`.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

import httpx

from api.utils.exceptions import SchemaMismatch, SourceUnavailable
from api.utils.http_fetch import RetryingFetcher

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RawCountry:
    name: Any
    capital: Optional[str]
    region: Optional[str]
    population: Any
    flag_url: Optional[str]
    currencies: Dict[str, dict] = field(default_factory=dict)


# ==========================================================
# Schema adapters
# ==========================================================
def _require_object(item: Any, version: str) -> dict:
    if not isinstance(item, dict):
        raise SchemaMismatch(f"{version} record is not an object: {type(item).__name__}")
    return item


def _json_list(response: httpx.Response, version: str) -> list:
    try:
        payload = response.json()
    except ValueError as e:
        raise SchemaMismatch(f"{version} response is not JSON") from e
    if not isinstance(payload, list) or not payload:
        raise SchemaMismatch(f"{version} response is not a non-empty list")
    return payload


def normalize_v3(item: Any) -> RawCountry:
    item = _require_object(item, "v3")

    name = item.get("name")
    if not isinstance(name, dict):
        raise SchemaMismatch("v3 record has no name object")

    capitals = item.get("capital") or []
    if not isinstance(capitals, list):
        raise SchemaMismatch("v3 capital is not a list")

    flags = item.get("flags") or {}
    if not isinstance(flags, dict):
        raise SchemaMismatch("v3 flags is not an object")

    currencies = item.get("currencies") or {}
    if not isinstance(currencies, dict):
        raise SchemaMismatch("v3 currencies is not an object")

    return RawCountry(
        name=name.get("common"),
        capital=capitals[0] if capitals else None,
        region=item.get("region"),
        population=item.get("population"),
        flag_url=flags.get("png") or flags.get("svg"),
        currencies={code: (info if isinstance(info, dict) else {}) for code, info in currencies.items()},
    )


def normalize_v2(item: Any) -> RawCountry:
    item = _require_object(item, "v2")

    name = item.get("name")
    if isinstance(name, dict):
        raise SchemaMismatch("v2 name is an object (v3 payload?)")

    currencies = item.get("currencies") or []
    if not isinstance(currencies, list):
        raise SchemaMismatch("v2 currencies is not a list")

    by_code = {}
    for entry in currencies:
        if isinstance(entry, dict) and isinstance(entry.get("code"), str):
            by_code[entry["code"]] = entry

    return RawCountry(
        name=name,
        capital=item.get("capital"),
        region=item.get("region"),
        population=item.get("population"),
        flag_url=item.get("flag"),
        currencies=by_code,
    )


# ==========================================================
# Sources
# ==========================================================
class CountryDirectorySource:
    """Country directory: v3.1 first, v2 once on any failure."""

    def __init__(
        self,
        fetcher: RetryingFetcher,
        primary_url: str,
        fallback_url: str,
        timeout: float = 10.0,
        max_attempts: int = 3,
    ):
        self.fetcher = fetcher
        self.primary_url = primary_url
        self.fallback_url = fallback_url
        self.timeout = timeout
        self.max_attempts = max_attempts

    async def _fetch_version(self, url: str, version: str, adapter) -> List[RawCountry]:
        response = await self.fetcher.fetch(url, self.timeout, self.max_attempts)
        return [adapter(item) for item in _json_list(response, version)]

    async def fetch_all(self) -> List[RawCountry]:
        try:
            countries = await self._fetch_version(self.primary_url, "v3", normalize_v3)
            logger.info("Fetched %d countries from v3 directory", len(countries))
            return countries
        except (SourceUnavailable, SchemaMismatch) as e:
            logger.warning("v3 country directory failed (%s); falling back to v2", e)
            primary_error = e

        try:
            countries = await self._fetch_version(self.fallback_url, "v2", normalize_v2)
        except (SourceUnavailable, SchemaMismatch) as e:
            host = e.host if isinstance(e, SourceUnavailable) else httpx.URL(self.fallback_url).host
            raise SourceUnavailable(
                host,
                f"Countries API unavailable (v3: {primary_error}; v2: {e})",
            ) from e

        logger.info("Fetched %d countries from v2 directory", len(countries))
        return countries


class ExchangeRateSource:
    def __init__(
        self,
        fetcher: RetryingFetcher,
        url: str,
        timeout: float = 10.0,
        max_attempts: int = 3,
    ):
        self.fetcher = fetcher
        self.url = url
        self.timeout = timeout
        self.max_attempts = max_attempts

    async def fetch_rates(self) -> Dict[str, float]:
        response = await self.fetcher.fetch(self.url, self.timeout, self.max_attempts)
        host = httpx.URL(self.url).host

        try:
            data = response.json()
        except ValueError as e:
            raise SourceUnavailable(host, "Exchange Rate API returned invalid JSON") from e

        if not isinstance(data, dict) or data.get("result") == "error":
            raise SourceUnavailable(host, "Exchange Rate API returned an error payload")

        rates = data.get("rates")
        # An empty table is valid; every currency then lacks a rate.
        if not isinstance(rates, dict):
            raise SourceUnavailable(host, "Exchange Rate API returned no rates")

        table = {}
        for code, rate in rates.items():
            # bool is an int subclass; reject it explicitly.
            if not isinstance(code, str) or isinstance(rate, bool) or not isinstance(rate, (int, float)):
                raise SourceUnavailable(host, f"Exchange Rate API returned a malformed rate for {code!r}")
            table[code] = float(rate)

        logger.info("Fetched %d exchange rates", len(table))
        return table
