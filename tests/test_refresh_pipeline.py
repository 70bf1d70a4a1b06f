import asyncio
import random

import httpx
import pytest

from api.core.config import COUNTRIES_FALLBACK_URL, COUNTRIES_URL, EXCHANGE_URL
from api.utils.country_sources import CountryDirectorySource, ExchangeRateSource
from api.utils.country_tools import RefreshOrchestrator
from api.utils.exceptions import PersistenceError, RefreshValidationError, SourceUnavailable
from api.utils.http_fetch import RetryingFetcher
from api.utils.reconciler import Reconciler
from api.utils.summary_image import LocalArtifactStore, SummaryImageGenerator
from api.v1.models.refresh_run import RunStatus
from fakes import RATES_PATH, FakeUpstreams, SleepRecorder, rates_payload, v3_country

RURITANIA = v3_country("Ruritania", 1_000_000, {"XYZ": {"name": "Ruritanian crown"}}, capital="Strelsau")


class FailingArtifactStore:
    def write(self, data):
        raise OSError("disk full")

    def read(self):
        return None


def _orchestrator(store, upstreams, client, artifacts):
    fetcher = RetryingFetcher(client, sleep=SleepRecorder())
    return RefreshOrchestrator(
        directory=CountryDirectorySource(fetcher, COUNTRIES_URL, COUNTRIES_FALLBACK_URL, max_attempts=2),
        rates=ExchangeRateSource(fetcher, EXCHANGE_URL, max_attempts=2),
        store=store,
        summary=SummaryImageGenerator(store, artifacts),
        random_source=random.Random(1),
    )


def run_refresh(open_store, upstreams, artifacts, before=None, times=1):
    """
    Run `times` refreshes against the fake upstreams. Returns the list of
    outcomes (or the raised exception), the latest run and all rows.
    """

    async def scenario():
        async with open_store() as store, httpx.AsyncClient(transport=upstreams.transport()) as client:
            if before is not None:
                await before(store)
            orchestrator = _orchestrator(store, upstreams, client, artifacts)
            results = []
            for _ in range(times):
                try:
                    results.append(await orchestrator.refresh_countries())
                except Exception as e:
                    results.append(e)
            return results, await store.latest_run(), await store.list_filtered()

    return asyncio.run(scenario())


@pytest.fixture()
def artifacts(tmp_path):
    return LocalArtifactStore.in_directory(str(tmp_path / "cache"))


def test_matching_rate_persists_priced_row(open_store, artifacts):
    upstreams = FakeUpstreams(v3=[RURITANIA], rates=rates_payload({"XYZ": 100}))

    (outcome,), run, rows = run_refresh(open_store, upstreams, artifacts)

    assert outcome.processed_count == 1
    assert outcome.warnings == []
    assert [c.country_name for c in outcome.top5] == ["Ruritania"]
    assert run.status == RunStatus.COMPLETED
    assert run.processed_count == 1
    (row,) = rows
    assert row.exchange_rate == 100
    assert 10_000_000_000 <= row.estimated_gdp <= 20_000_000_000
    assert artifacts.read().startswith(b"\x89PNG")


def test_missing_rate_keeps_row_with_unknown_gdp(open_store, artifacts):
    upstreams = FakeUpstreams(v3=[RURITANIA], rates=rates_payload({"USD": 1}))

    (outcome,), run, rows = run_refresh(open_store, upstreams, artifacts)

    assert outcome.processed_count == 1
    assert len(outcome.warnings) == 1
    assert run.status == RunStatus.COMPLETED
    (row,) = rows
    assert row.currency_code == "XYZ"
    assert row.exchange_rate is None
    assert row.estimated_gdp is None


def test_country_without_currency_gets_zero_gdp(open_store, artifacts):
    upstreams = FakeUpstreams(v3=[v3_country("Antarctica", 1000)], rates=rates_payload({"USD": 1}))

    _, _, (row,) = run_refresh(open_store, upstreams, artifacts)

    assert row.currency_code is None
    assert row.exchange_rate is None
    assert row.estimated_gdp == 0


def test_repeated_refresh_keeps_row_count(open_store, artifacts):
    directory = [RURITANIA, v3_country("Genovia", 30_000, {"EUR": {}}), v3_country("ruritania", 2_000_000)]
    upstreams = FakeUpstreams(v3=directory, rates=rates_payload({"XYZ": 100, "EUR": 0.9}))

    outcomes, _, rows = run_refresh(open_store, upstreams, artifacts, times=2)

    assert [o.processed_count for o in outcomes] == [2, 2]
    assert sorted(c.country_name.lower() for c in rows) == ["genovia", "ruritania"]


def test_directory_outage_records_failed_run_and_changes_nothing(open_store, artifacts):
    upstreams = FakeUpstreams(v3=None, v2=None, rates=rates_payload({"XYZ": 100}))

    (error,), run, rows = run_refresh(open_store, upstreams, artifacts)

    assert isinstance(error, SourceUnavailable)
    assert run.status == RunStatus.FAILED_DIRECTORY
    assert run.processed_count == 0
    assert rows == []
    # Rates are never requested once the directory failed.
    assert RATES_PATH not in upstreams.calls


def test_rates_outage_records_failed_run_and_keeps_existing_rows(open_store, artifacts):
    seeded = FakeUpstreams(v3=[RURITANIA], rates=rates_payload({"XYZ": 100}))
    _, _, before_rows = run_refresh(open_store, seeded, artifacts)

    upstreams = FakeUpstreams(v3=[RURITANIA, v3_country("Genovia", 1)], rates=None)
    (error,), run, rows = run_refresh(open_store, upstreams, artifacts)

    assert isinstance(error, SourceUnavailable)
    assert run.status == RunStatus.FAILED_RATES
    assert run.processed_count == 0
    assert [(c.country_name, c.estimated_gdp) for c in rows] == [
        (c.country_name, c.estimated_gdp) for c in before_rows
    ]


def test_all_records_rejected_is_a_validation_failure(open_store, artifacts):
    upstreams = FakeUpstreams(
        v3=[v3_country("", 10), v3_country("Atlantis", -5)],
        rates=rates_payload({"USD": 1}),
    )

    (error,), run, rows = run_refresh(open_store, upstreams, artifacts)

    assert isinstance(error, RefreshValidationError)
    assert len(error.warnings) == 2
    assert run.status == RunStatus.FAILED_VALIDATION
    assert rows == []


def test_persistence_failure_records_failed_run(open_store, artifacts):
    async def break_upserts(store):
        async def boom(records):
            raise PersistenceError("constraint violated")

        store.upsert_batch = boom

    upstreams = FakeUpstreams(v3=[RURITANIA], rates=rates_payload({"XYZ": 100}))

    (error,), run, rows = run_refresh(open_store, upstreams, artifacts, before=break_upserts)

    assert isinstance(error, PersistenceError)
    assert run.status == RunStatus.FAILED_PERSISTENCE
    assert rows == []


def test_artifact_failure_does_not_change_outcome(open_store):
    upstreams = FakeUpstreams(v3=[RURITANIA], rates=rates_payload({"XYZ": 100}))

    (outcome,), run, _ = run_refresh(open_store, upstreams, FailingArtifactStore())

    assert outcome.processed_count == 1
    assert run.status == RunStatus.COMPLETED


def test_status_before_and_after_refresh(open_store, artifacts):
    upstreams = FakeUpstreams(v3=[RURITANIA], rates=rates_payload({"XYZ": 100}))

    async def scenario():
        async with open_store() as store, httpx.AsyncClient(transport=upstreams.transport()) as client:
            orchestrator = _orchestrator(store, upstreams, client, artifacts)
            before = await orchestrator.get_status()
            await orchestrator.refresh_countries()
            return before, await orchestrator.get_status()

    before, after = asyncio.run(scenario())

    assert before.status == "never_refreshed"
    assert before.last_refreshed_at is None
    assert after.status == RunStatus.COMPLETED
    assert after.processed_count == 1
    assert after.total_countries == 1
    assert after.last_refreshed_at is not None


def test_empty_rate_table_still_completes_with_unknown_gdp(open_store, artifacts):
    upstreams = FakeUpstreams(v3=[RURITANIA], rates=rates_payload({}))

    (outcome,), run, (row,) = run_refresh(open_store, upstreams, artifacts)

    assert outcome.processed_count == 1
    assert len(outcome.warnings) == 1
    assert run.status == RunStatus.COMPLETED
    assert run.processed_count == 1
    assert row.exchange_rate is None
    assert row.estimated_gdp is None


def test_v2_numeric_currency_code_is_treated_as_no_currency(open_store, artifacts):
    numland = {"name": "Numland", "population": 5, "currencies": [{"code": 978}]}
    upstreams = FakeUpstreams(v3=None, v2=[numland], rates=rates_payload({"EUR": 0.9}))

    (outcome,), run, (row,) = run_refresh(open_store, upstreams, artifacts)

    assert outcome.processed_count == 1
    assert run.status == RunStatus.COMPLETED
    assert row.currency_code is None
    assert row.estimated_gdp == 0


def test_oversized_population_is_skipped_with_a_warning(open_store, artifacts):
    upstreams = FakeUpstreams(
        v3=[RURITANIA, v3_country("Bigland", 10**20, {"XYZ": {}})],
        rates=rates_payload({"XYZ": 100}),
    )

    (outcome,), run, rows = run_refresh(open_store, upstreams, artifacts)

    assert outcome.processed_count == 1
    assert any("Bigland" in w for w in outcome.warnings)
    assert run.status == RunStatus.COMPLETED
    assert [c.country_name for c in rows] == ["Ruritania"]


def test_unexpected_store_error_still_records_failed_run(open_store, artifacts):
    async def break_upserts(store):
        async def boom(records):
            raise OverflowError("Python int too large to convert to SQLite INTEGER")

        store.upsert_batch = boom

    upstreams = FakeUpstreams(v3=[RURITANIA], rates=rates_payload({"XYZ": 100}))

    (error,), run, rows = run_refresh(open_store, upstreams, artifacts, before=break_upserts)

    assert isinstance(error, PersistenceError)
    assert isinstance(error.__cause__, OverflowError)
    assert run.status == RunStatus.FAILED_PERSISTENCE
    assert rows == []


def test_unexpected_reconcile_error_still_records_failed_run(open_store, artifacts, monkeypatch):
    def broken(self, raws, rates):
        raise AttributeError("'int' object has no attribute 'strip'")

    monkeypatch.setattr(Reconciler, "reconcile_all", broken)
    upstreams = FakeUpstreams(v3=[RURITANIA], rates=rates_payload({"XYZ": 100}))

    (error,), run, rows = run_refresh(open_store, upstreams, artifacts)

    assert isinstance(error, AttributeError)
    assert run is not None
    assert run.status == RunStatus.FAILED_VALIDATION
    assert run.processed_count == 0
    assert rows == []
