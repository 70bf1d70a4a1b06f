import logging
import uuid
from datetime import datetime, timezone
from typing import Iterable, List, Optional

from sqlalchemy import delete, func, or_, select
from sqlalchemy.dialects.mysql import insert as mysql_insert
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert

from api.db.database import Database
from api.utils.exceptions import InvalidSortKey, PersistenceError
from api.utils.reconciler import Reconciled
from api.v1.models.country_data import CountryData, name_key_for
from api.v1.models.refresh_run import RefreshRun

logger = logging.getLogger(__name__)

UPSERT_CHUNK_SIZE = 50

# Every column an upsert overwrites on conflict. `created_at` is left alone.
UPDATABLE_COLUMNS = (
    "country_name",
    "capital",
    "region",
    "population",
    "currency_code",
    "exchange_rate",
    "estimated_gdp",
    "flag_url",
    "last_refreshed_at",
    "updated_at",
)

SORT_OPTIONS = {
    "name_asc": (CountryData.country_name, "asc"),
    "name_desc": (CountryData.country_name, "desc"),
    "population_asc": (CountryData.population, "asc"),
    "population_desc": (CountryData.population, "desc"),
    "gdp_asc": (CountryData.estimated_gdp, "asc"),
    "gdp_desc": (CountryData.estimated_gdp, "desc"),
    "region_asc": (CountryData.region, "asc"),
    "region_desc": (CountryData.region, "desc"),
}
DEFAULT_SORT = "name_asc"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _escape_like(value: str) -> str:
    return value.replace("/", "//").replace("%", "/%").replace("_", "/_")


def _filters(region: Optional[str], currency: Optional[str], search: Optional[str]) -> list:
    """Conjunctive WHERE predicates for the list endpoints."""
    predicates = []
    if region:
        predicates.append(func.lower(CountryData.region) == region.strip().lower())
    if currency:
        predicates.append(func.upper(CountryData.currency_code) == currency.strip().upper())
    if search and search.strip():
        pattern = f"%{_escape_like(search.strip())}%"
        predicates.append(
            or_(
                CountryData.country_name.ilike(pattern, escape="/"),
                CountryData.capital.ilike(pattern, escape="/"),
            )
        )
    return predicates


def _order_by(sort: Optional[str]) -> list:
    sort = sort or DEFAULT_SORT
    if sort not in SORT_OPTIONS:
        raise InvalidSortKey(sort, SORT_OPTIONS)

    column, direction = SORT_OPTIONS[sort]
    # NULLs last for both directions, on every backend.
    ordering = [column.is_(None), column.asc() if direction == "asc" else column.desc()]
    if column is not CountryData.country_name:
        ordering.append(CountryData.country_name.asc())
    return ordering


class CountryStore:
    """
    Persistence for country rows and refresh runs.

    Country names are unique case-insensitively through `name_key`; an
    upsert with a known name rewrites that row instead of adding one.
    """

    def __init__(self, database: Database):
        self.database = database

    # ==========================================================
    # Writes
    # ==========================================================
    def _upsert_statement(self, rows: List[dict]):
        dialect = self.database.dialect_name

        if dialect == "mysql":
            stmt = mysql_insert(CountryData).values(rows)
            return stmt.on_duplicate_key_update(
                {column: stmt.inserted[column] for column in UPDATABLE_COLUMNS}
            )

        insert = pg_insert if dialect == "postgresql" else sqlite_insert
        stmt = insert(CountryData).values(rows)
        return stmt.on_conflict_do_update(
            index_elements=[CountryData.name_key],
            set_={column: stmt.excluded[column] for column in UPDATABLE_COLUMNS},
        )

    async def upsert_batch(self, records: Iterable[Reconciled]) -> int:
        """
        Insert-or-update every record in one transaction.
        Returns the number of distinct countries written.
        """
        now = _utcnow()

        # Collapse same-name duplicates; the last one wins.
        rows = {}
        for record in records:
            key = name_key_for(record.name)
            rows[key] = {
                "country_id": str(uuid.uuid4()),
                "country_name": record.name,
                "name_key": key,
                "capital": record.capital,
                "region": record.region,
                "population": record.population,
                "currency_code": record.currency_code,
                "exchange_rate": record.exchange_rate,
                "estimated_gdp": record.estimated_gdp,
                "flag_url": record.flag_url,
                "last_refreshed_at": now,
                "created_at": now,
                "updated_at": now,
            }

        if not rows:
            return 0

        values = list(rows.values())
        try:
            async with self.database.session() as session:
                async with session.begin():
                    for start in range(0, len(values), UPSERT_CHUNK_SIZE):
                        chunk = values[start:start + UPSERT_CHUNK_SIZE]
                        await session.execute(self._upsert_statement(chunk))
        except Exception as e:
            raise PersistenceError(f"Country upsert rolled back: {e}") from e

        logger.info("Upserted %d countries", len(values))
        return len(values)

    async def record_run(
        self,
        processed_count: int,
        duration_seconds: float,
        status: str,
        started_at: Optional[datetime] = None,
    ) -> RefreshRun:
        run = RefreshRun(
            processed_count=processed_count,
            started_at=started_at or _utcnow(),
            duration_seconds=round(duration_seconds, 2),
            status=status,
            created_at=_utcnow(),
        )
        async with self.database.session() as session:
            session.add(run)
            await session.commit()
        return run

    async def delete_by_name(self, name: str) -> Optional[CountryData]:
        async with self.database.session() as session:
            async with session.begin():
                country = await session.scalar(
                    select(CountryData).where(CountryData.name_key == name_key_for(name))
                )
                if country is None:
                    return None
                await session.execute(
                    delete(CountryData).where(CountryData.country_id == country.country_id)
                )
        return country

    # ==========================================================
    # Reads
    # ==========================================================
    async def latest_run(self) -> Optional[RefreshRun]:
        async with self.database.session() as session:
            return await session.scalar(
                select(RefreshRun)
                .order_by(RefreshRun.created_at.desc(), RefreshRun.id.desc())
                .limit(1)
            )

    async def top_by_estimate(self, n: int = 5) -> List[CountryData]:
        async with self.database.session() as session:
            result = await session.scalars(
                select(CountryData)
                .where(CountryData.estimated_gdp.isnot(None))
                .order_by(CountryData.estimated_gdp.desc(), CountryData.country_name.asc())
                .limit(n)
            )
            return list(result)

    async def get_by_name(self, name: str) -> Optional[CountryData]:
        async with self.database.session() as session:
            return await session.scalar(
                select(CountryData).where(CountryData.name_key == name_key_for(name))
            )

    async def list_filtered(
        self,
        region: Optional[str] = None,
        currency: Optional[str] = None,
        search: Optional[str] = None,
        sort: Optional[str] = None,
        limit: Optional[int] = None,
        offset: int = 0,
    ) -> List[CountryData]:
        query = select(CountryData).where(*_filters(region, currency, search)).order_by(*_order_by(sort))

        # --- Pagination only when a limit was asked for ---
        if limit is not None:
            query = query.limit(limit).offset(offset or 0)

        async with self.database.session() as session:
            result = await session.scalars(query)
            return list(result)

    async def count_filtered(
        self,
        region: Optional[str] = None,
        currency: Optional[str] = None,
        search: Optional[str] = None,
    ) -> int:
        async with self.database.session() as session:
            total = await session.scalar(
                select(func.count()).select_from(CountryData).where(*_filters(region, currency, search))
            )
            return total or 0

    async def count_all(self) -> int:
        return await self.count_filtered()
