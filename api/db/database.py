from typing import Optional

from sqlalchemy.ext.asyncio import (
    AsyncEngine,
    AsyncSession,
    async_sessionmaker,
    create_async_engine,
)
from sqlalchemy.orm import declarative_base

from api.core.config import Settings

Base = declarative_base()


# ==========================================================
# 1️⃣  Connection URL
# ==========================================================
def get_database_url(settings: Settings) -> str:
    """
    Build the async SQLAlchemy URL for the configured backend.
    `DB_URL` wins when set; otherwise MySQL (aiomysql) is the default,
    with SQLite (aiosqlite) and PostgreSQL (asyncpg) as alternatives.
    """
    if settings.db_url:
        return settings.db_url

    db_type = settings.db_type

    if db_type == "sqlite":
        # Local fallback option
        return "sqlite+aiosqlite:///./countries.db"

    driver = "postgresql+asyncpg" if db_type in ("postgres", "postgresql") else "mysql+aiomysql"
    return (
        f"{driver}://{settings.db_user}:{settings.db_password}"
        f"@{settings.db_host}:{settings.db_port}/{settings.db_name}"
    )


def get_async_engine(database_url: str) -> AsyncEngine:
    """
    Create an asynchronous SQLAlchemy engine for the given URL.
    """
    if database_url.startswith("sqlite"):
        return create_async_engine(database_url, echo=False)

    return create_async_engine(
        database_url,
        echo=False,  # set True for debugging
        pool_pre_ping=True,
        pool_size=10,
        max_overflow=20,
    )


# ==========================================================
# 2️⃣  Explicit engine lifecycle (opened in the app lifespan)
# ==========================================================
class Database:
    """
    Owns one async engine and its session factory.

    Created at process start, `close()`d at shutdown. Handed to the
    components that need it instead of living in module globals.
    """

    def __init__(self, database_url: str):
        self.url = database_url
        self.engine: Optional[AsyncEngine] = None
        self.session_factory: Optional[async_sessionmaker[AsyncSession]] = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "Database":
        return cls(get_database_url(settings))

    async def open(self) -> None:
        if self.engine is not None:
            return
        self.engine = get_async_engine(self.url)
        self.session_factory = async_sessionmaker(
            bind=self.engine,
            class_=AsyncSession,
            expire_on_commit=False,
            autoflush=False,
        )

    async def close(self) -> None:
        if self.engine is None:
            return
        await self.engine.dispose()
        self.engine = None
        self.session_factory = None

    @property
    def dialect_name(self) -> str:
        return self._require_engine().dialect.name

    def session(self) -> AsyncSession:
        if self.session_factory is None:
            raise RuntimeError("Database is not open. Call open() on startup.")
        return self.session_factory()

    async def create_database(self) -> None:
        """Initialize all tables."""
        # Import models so they register on Base.metadata.
        from api.v1.models import country_data, refresh_run  # noqa: F401

        async with self._require_engine().begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    def _require_engine(self) -> AsyncEngine:
        if self.engine is None:
            raise RuntimeError("Database is not open. Call open() on startup.")
        return self.engine

