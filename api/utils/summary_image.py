import asyncio
import io
import logging
import os
import tempfile
from datetime import datetime, timezone
from pathlib import Path
from typing import List, Optional

import dropbox
import dropbox.exceptions
import dropbox.files
from PIL import Image, ImageDraw, ImageFont

from api.utils.country_store import CountryStore
from api.v1.models.country_data import CountryData
from api.v1.models.refresh_run import RefreshRun

logger = logging.getLogger(__name__)

SUMMARY_FILENAME = "summary.png"
TOP_N = 5


# ==========================================================
# Where the image lives
# ==========================================================
class LocalArtifactStore:
    """Summary image on the local filesystem, replaced atomically."""

    def __init__(self, path: Path):
        self.path = Path(path)

    @classmethod
    def in_directory(cls, directory: str) -> "LocalArtifactStore":
        return cls(Path(directory) / SUMMARY_FILENAME)

    def write(self, data: bytes) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.path.parent, suffix=".tmp")
        try:
            with os.fdopen(fd, "wb") as fh:
                fh.write(data)
            os.replace(tmp_name, self.path)
        except BaseException:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def read(self) -> Optional[bytes]:
        if not self.path.exists():
            return None
        return self.path.read_bytes()


class DropboxArtifactStore:
    """Summary image kept in a Dropbox folder."""

    def __init__(self, dbx: dropbox.Dropbox, path: str):
        self.dbx = dbx
        self.path = path

    def write(self, data: bytes) -> None:
        self.dbx.files_upload(
            data,
            self.path,
            mode=dropbox.files.WriteMode("overwrite"),
            mute=True,
        )

    def read(self) -> Optional[bytes]:
        try:
            _, response = self.dbx.files_download(self.path)
        except dropbox.exceptions.ApiError as e:
            error = e.error
            if error.is_path() and error.get_path().is_not_found():
                return None
            raise
        return response.content


# ==========================================================
# Rendering
# ==========================================================
def _load_fonts():
    try:
        return ImageFont.truetype("arial.ttf", 28), ImageFont.truetype("arial.ttf", 20)
    except OSError:
        # Arial is missing on most Linux hosts
        return ImageFont.load_default(), ImageFont.load_default()


def format_estimate(value: Optional[float]) -> str:
    if value is None:
        return "N/A"
    return f"{round(value):,}"


def render_summary_png(
    top_countries: List[CountryData],
    processed_count: int,
    refreshed_at: Optional[datetime],
) -> bytes:
    img = Image.new("RGB", (800, 500), color=(240, 240, 240))
    draw = ImageDraw.Draw(img)
    font_title, font_text = _load_fonts()

    draw.text((50, 40), "Countries Summary", fill="black", font=font_title)
    draw.text((50, 100), f"Countries processed: {processed_count}", fill="black", font=font_text)
    draw.text((50, 140), f"Top {TOP_N} by Estimated GDP:", fill="black", font=font_text)

    y = 180
    if not top_countries:
        draw.text((70, y), "No GDP data available.", fill="gray", font=font_text)
        y += 30
    for idx, country in enumerate(top_countries, start=1):
        draw.text(
            (70, y),
            f"{idx}. {country.country_name}: {format_estimate(country.estimated_gdp)}",
            fill="black",
            font=font_text,
        )
        y += 30

    timestamp = (refreshed_at or datetime.now(timezone.utc)).isoformat()
    draw.text((50, y + 30), f"Last Refreshed: {timestamp}", fill="gray", font=font_text)

    image_bytes = io.BytesIO()
    img.save(image_bytes, format="PNG")
    return image_bytes.getvalue()


class SummaryImageGenerator:
    """
    Rebuilds the summary PNG from the store. Best effort: `regenerate()`
    logs failures and never raises.
    """

    def __init__(self, store: CountryStore, artifact_store):
        self.store = store
        self.artifact_store = artifact_store

    async def regenerate(self) -> None:
        try:
            top_countries = await self.store.top_by_estimate(TOP_N)
            run: Optional[RefreshRun] = await self.store.latest_run()

            processed = run.processed_count if run else 0
            refreshed_at = run.created_at if run else None

            png = await asyncio.to_thread(render_summary_png, top_countries, processed, refreshed_at)
            await asyncio.to_thread(self.artifact_store.write, png)
            logger.info("Summary image regenerated (%d bytes)", len(png))
        except Exception:
            logger.exception("Failed to generate or store summary image")

    async def read(self) -> Optional[bytes]:
        return await asyncio.to_thread(self.artifact_store.read)
