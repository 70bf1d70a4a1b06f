import logging
import random
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from api.utils.country_sources import CountryDirectorySource, ExchangeRateSource
from api.utils.country_store import CountryStore
from api.utils.exceptions import PersistenceError, RefreshValidationError
from api.utils.reconciler import Reconciler
from api.utils.summary_image import TOP_N, SummaryImageGenerator
from api.v1.models.country_data import CountryData
from api.v1.models.refresh_run import RunStatus

logger = logging.getLogger(__name__)


@dataclass
class RefreshOutcome:
    processed_count: int
    duration_seconds: float
    last_refreshed_at: datetime
    top5: List[CountryData] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass
class StatusSnapshot:
    processed_count: int
    last_refreshed_at: Optional[datetime]
    duration_seconds: Optional[float]
    status: str
    total_countries: int


class RefreshOrchestrator:
    """
    Runs one refresh: directory -> rates -> reconcile + persist ->
    run record -> summary image.

    Every invocation writes exactly one refresh_runs row, whatever the
    outcome. Source failures leave the country table untouched.
    """

    def __init__(
        self,
        directory: CountryDirectorySource,
        rates: ExchangeRateSource,
        store: CountryStore,
        summary: SummaryImageGenerator,
        random_source: Optional[random.Random] = None,
    ):
        self.directory = directory
        self.rates = rates
        self.store = store
        self.summary = summary
        self.reconciler = Reconciler(random_source)

    async def refresh_countries(self) -> RefreshOutcome:
        started_at = datetime.now(timezone.utc)
        start = time.perf_counter()
        logger.info("Starting countries data refresh")

        async def fail(status: str) -> None:
            await self.store.record_run(0, time.perf_counter() - start, status, started_at)
            logger.error("Countries refresh failed: %s", status)

        # --- Fetch Countries Data ---
        try:
            raw_countries = await self.directory.fetch_all()
        except Exception:
            await fail(RunStatus.FAILED_DIRECTORY)
            raise

        # --- Fetch Exchange Rates ---
        try:
            rates = await self.rates.fetch_rates()
        except Exception:
            await fail(RunStatus.FAILED_RATES)
            raise

        # --- Reconcile + Persist ---
        try:
            report = self.reconciler.reconcile_all(raw_countries, rates)
        except Exception:
            logger.exception("Reconciliation raised unexpectedly")
            await fail(RunStatus.FAILED_VALIDATION)
            raise

        if raw_countries and not report.accepted:
            await fail(RunStatus.FAILED_VALIDATION)
            raise RefreshValidationError(report.warnings)

        try:
            processed = await self.store.upsert_batch(report.accepted)
        except Exception as e:
            await fail(RunStatus.FAILED_PERSISTENCE)
            if isinstance(e, PersistenceError):
                raise
            raise PersistenceError(f"Country upsert failed: {e}") from e

        run = await self.store.record_run(
            processed, time.perf_counter() - start, RunStatus.COMPLETED, started_at
        )
        top5 = await self.store.top_by_estimate(TOP_N)

        # --- Summary image (best effort) ---
        try:
            await self.summary.regenerate()
        except Exception:
            logger.exception("Summary image regeneration raised")

        logger.info(
            "Refreshed %d countries in %.2fs (%d rejected, %d warnings)",
            processed,
            run.duration_seconds,
            len(report.rejected),
            len(report.warnings),
        )

        return RefreshOutcome(
            processed_count=processed,
            duration_seconds=run.duration_seconds,
            last_refreshed_at=run.created_at,
            top5=top5,
            warnings=report.warnings,
        )

    async def get_status(self) -> StatusSnapshot:
        run = await self.store.latest_run()
        total = await self.store.count_all()

        if run is None:
            return StatusSnapshot(
                processed_count=0,
                last_refreshed_at=None,
                duration_seconds=None,
                status=RunStatus.NEVER_REFRESHED,
                total_countries=total,
            )

        return StatusSnapshot(
            processed_count=run.processed_count,
            last_refreshed_at=run.created_at,
            duration_seconds=run.duration_seconds,
            status=run.status,
            total_countries=total,
        )
