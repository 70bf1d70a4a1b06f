from __future__ import annotations

from contextlib import asynccontextmanager
from pathlib import Path

import pytest

from api.core.config import Settings
from api.db.database import Database
from api.utils.country_store import CountryStore
from fakes import SleepRecorder


@pytest.fixture()
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture()
def db_url(tmp_path: Path) -> str:
    return f"sqlite+aiosqlite:///{tmp_path / 'countries.db'}"


@pytest.fixture()
def settings(tmp_path: Path, db_url: str) -> Settings:
    return Settings(
        db_type="sqlite",
        db_url=db_url,
        artifact_dir=str(tmp_path / "cache"),
        fetch_timeout_seconds=1.0,
        fetch_max_attempts=2,
    )


@pytest.fixture()
def open_store(db_url: str):
    """Async context manager yielding a CountryStore on a fresh SQLite file."""

    @asynccontextmanager
    async def _open():
        database = Database(db_url)
        await database.open()
        await database.create_database()
        try:
            yield CountryStore(database)
        finally:
            await database.close()

    return _open
