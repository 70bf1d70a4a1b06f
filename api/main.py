import random
from contextlib import asynccontextmanager
from typing import Optional

import dropbox
import httpx
from fastapi import FastAPI

from api.core.config import Settings, load_settings
from api.core.logging_config import setup_logging
from api.db.database import Database
from api.utils.country_sources import CountryDirectorySource, ExchangeRateSource
from api.utils.country_store import CountryStore
from api.utils.country_tools import RefreshOrchestrator
from api.utils.http_fetch import RetryingFetcher
from api.utils.summary_image import (
    DropboxArtifactStore,
    LocalArtifactStore,
    SummaryImageGenerator,
)
from api.v1.routes.country_information import country_ops


def build_artifact_store(settings: Settings):
    if settings.dropbox_token:
        return DropboxArtifactStore(dropbox.Dropbox(settings.dropbox_token), settings.dropbox_path)
    return LocalArtifactStore.in_directory(settings.artifact_dir)


def create_app(
    settings: Optional[Settings] = None,
    transport: Optional[httpx.AsyncBaseTransport] = None,
    random_source: Optional[random.Random] = None,
    fetch_sleep=None,
) -> FastAPI:
    """
    Build the FastAPI app. The optional arguments replace the real
    upstream transport, GDP random source and retry sleep (used by tests).
    """
    settings = settings or load_settings()
    setup_logging(settings.log_level, settings.log_file)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        database = Database.from_settings(settings)
        await database.open()
        await database.create_database()

        client = httpx.AsyncClient(transport=transport, follow_redirects=True)
        fetcher = RetryingFetcher(client) if fetch_sleep is None else RetryingFetcher(client, sleep=fetch_sleep)

        store = CountryStore(database)
        summary = SummaryImageGenerator(store, build_artifact_store(settings))
        orchestrator = RefreshOrchestrator(
            directory=CountryDirectorySource(
                fetcher,
                settings.countries_url,
                settings.countries_fallback_url,
                timeout=settings.fetch_timeout_seconds,
                max_attempts=settings.fetch_max_attempts,
            ),
            rates=ExchangeRateSource(
                fetcher,
                settings.exchange_url,
                timeout=settings.fetch_timeout_seconds,
                max_attempts=settings.fetch_max_attempts,
            ),
            store=store,
            summary=summary,
            random_source=random_source,
        )

        app.state.database = database
        app.state.store = store
        app.state.summary = summary
        app.state.orchestrator = orchestrator
        try:
            yield
        finally:
            await client.aclose()
            await database.close()

    app = FastAPI(title="Country Currency & Exchange API", lifespan=lifespan)
    app.include_router(country_ops)

    @app.get("/health")
    def health() -> dict:
        return {"status": "ok"}

    return app


app = create_app()
