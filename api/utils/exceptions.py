"""
Error taxonomy for the country refresh pipeline.

Route handlers map these onto HTTP statuses:
SourceUnavailable -> 503, RefreshValidationError -> 422,
PersistenceError -> 500, InvalidSortKey -> 400.
"""

from typing import Dict, List


class CountryServiceError(Exception):
    pass


class SourceUnavailable(CountryServiceError):
    """An upstream API failed after all retries (or returned unusable data)."""

    def __init__(self, host: str, detail: str = ""):
        self.host = host
        self.detail = detail
        super().__init__(f"{host} unavailable: {detail}" if detail else f"{host} unavailable")


class SchemaMismatch(CountryServiceError):
    """A directory payload did not match the schema version it was fetched as."""


class RecordValidationError(CountryServiceError):
    def __init__(self, name, fields: Dict[str, str]):
        self.name = name
        self.fields = fields
        details = ", ".join(f"{field} {reason}" for field, reason in fields.items())
        super().__init__(f"Invalid country record {name!r}: {details}")


class RefreshValidationError(CountryServiceError):
    """Every fetched record was rejected; nothing was committed."""

    def __init__(self, warnings: List[str]):
        self.warnings = warnings
        super().__init__(f"All {len(warnings)} fetched country records failed validation")


class PersistenceError(CountryServiceError):
    pass


class InvalidSortKey(CountryServiceError, ValueError):
    def __init__(self, sort: str, allowed):
        self.sort = sort
        self.allowed = sorted(allowed)
        super().__init__(f"Invalid sort '{sort}'. Allowed: {', '.join(self.allowed)}")
