# api/v1/models/refresh_run.py
from sqlalchemy import Column, DateTime, Float, Integer, String
from sqlalchemy.sql import func

from api.db.database import Base


class RunStatus:
    COMPLETED = "completed"
    FAILED_DIRECTORY = "failed-directory-unavailable"
    FAILED_RATES = "failed-rates-unavailable"
    FAILED_VALIDATION = "failed-validation"
    FAILED_PERSISTENCE = "failed-persistence"
    # Reported by /status only; never stored.
    NEVER_REFRESHED = "never_refreshed"


class RefreshRun(Base):
    """One row per refresh invocation, whatever the outcome. Append-only."""

    __tablename__ = "refresh_runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    processed_count = Column(Integer, nullable=False, default=0)
    started_at = Column(DateTime(timezone=True), nullable=False)
    duration_seconds = Column(Float, nullable=False, default=0.0)
    status = Column(String(50), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False, index=True)
