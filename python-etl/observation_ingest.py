"""Wildflower observation ingestion from iNaturalist.

Fetches flowering-plant observations for a region's iNaturalist place over
a date range and upserts them into the ``observations`` table that the
trail count pipeline reads. The iNaturalist API is paginated without a
reliable end marker, so every fetch loop is capped at ``MAX_PAGES``.
"""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from datetime import date, timedelta
from typing import Any, Protocol, runtime_checkable

import requests
from sqlalchemy import text
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from trail_counts_pipeline import REGIONS, chunked, normalize_region

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

INATURALIST_API_URL = "https://api.inaturalist.org/v1/observations"
PER_PAGE = 200
MAX_PAGES = 4
UPSERT_BATCH = 150
BACKFILL_DAYS = 30
BACKFILL_CHUNK_DAYS = 7

# Plant phenology annotation: "Flowers and Fruits" = "Flowers"
FLOWERING_TERM_ID = 12
FLOWERING_TERM_VALUE_ID = 13


@dataclass(frozen=True)
class IngestResult:
    """Observations fetched and written for one region and date range."""

    region: str
    start: date
    end: date
    fetched: int
    written: int


# ---------------------------------------------------------------------------
# Protocols (interfaces for dependency injection)
# ---------------------------------------------------------------------------


@runtime_checkable
class ObservationClient(Protocol):
    """Fetches one page of raw observations from a provider."""

    def fetch_page(
        self, place_id: int, start: date, end: date, page: int, per_page: int,
    ) -> list[dict[str, Any]]:
        """Return the raw results for a 1-based page."""
        ...


@runtime_checkable
class ObservationWriter(Protocol):
    """Persists observation rows."""

    def upsert_observations(self, rows: list[dict[str, Any]]) -> int:
        """Upsert rows keyed by (id, state); return count written."""
        ...


# ---------------------------------------------------------------------------
# Concrete implementations
# ---------------------------------------------------------------------------


class INaturalistClient:
    """Reads observations from the iNaturalist v1 REST API."""

    def __init__(self, url: str = INATURALIST_API_URL, timeout: int = 60) -> None:
        self._url = url
        self._timeout = timeout

    def fetch_page(
        self, place_id: int, start: date, end: date, page: int, per_page: int,
    ) -> list[dict[str, Any]]:
        """Fetch one page of geolocated, flowering observations.

        Raises:
            requests.HTTPError: If the API request fails.
        """
        params = {
            "place_id": place_id,
            "quality_grade": "research,needs_id",
            "term_id": FLOWERING_TERM_ID,
            "term_value_id": FLOWERING_TERM_VALUE_ID,
            "d1": start.isoformat(),
            "d2": end.isoformat(),
            "per_page": per_page,
            "geo": "true",
            "order_by": "observed_on",
            "page": page,
        }
        response = requests.get(self._url, params=params, timeout=self._timeout)
        response.raise_for_status()
        return response.json().get("results", [])


class PostgresObservationWriter:
    """Writes observation rows to PostgreSQL in bounded batches."""

    _UPSERT_SQL = text("""
        INSERT INTO observations
            (id, state, species, scientific_name, taxon_id, observed_on,
             quality_grade, user_login, photo_url, longitude, latitude, geojson)
        VALUES
            (:id, :state, :species, :scientific_name, :taxon_id, :observed_on,
             :quality_grade, :user_login, :photo_url, :longitude, :latitude,
             CAST(:geojson AS JSONB))
        ON CONFLICT (id, state) DO UPDATE
        SET species = EXCLUDED.species,
            scientific_name = EXCLUDED.scientific_name,
            taxon_id = EXCLUDED.taxon_id,
            observed_on = EXCLUDED.observed_on,
            quality_grade = EXCLUDED.quality_grade,
            user_login = EXCLUDED.user_login,
            photo_url = EXCLUDED.photo_url,
            longitude = EXCLUDED.longitude,
            latitude = EXCLUDED.latitude,
            geojson = EXCLUDED.geojson,
            fetched_at = now()
    """)

    def __init__(self, engine: Engine, batch_size: int = UPSERT_BATCH) -> None:
        self._engine = engine
        self._batch_size = batch_size

    def upsert_observations(self, rows: list[dict[str, Any]]) -> int:
        written = 0
        for batch in chunked(rows, self._batch_size):
            params = [
                {**row, "geojson": json.dumps(row["geojson"])} for row in batch
            ]
            with self._engine.connect() as conn:
                conn.execute(self._UPSERT_SQL, params)
                conn.commit()
            written += len(batch)
        return written


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------


def to_observation_rows(
    results: list[dict[str, Any]], region: str,
) -> list[dict[str, Any]]:
    """Map raw iNaturalist results to ``observations`` rows.

    Results without point coordinates are dropped.
    """
    rows: list[dict[str, Any]] = []
    for obs in results:
        geojson = obs.get("geojson") or {}
        coords = geojson.get("coordinates") or []
        if len(coords) < 2:
            continue
        taxon = obs.get("taxon") or {}
        photos = obs.get("photos") or []
        photo_url = photos[0].get("url") if photos else None
        taxon_id = obs.get("taxon_id")
        if taxon_id is None:
            taxon_id = taxon.get("id")
        rows.append({
            "id": obs["id"],
            "state": region,
            "species": taxon.get("preferred_common_name") or taxon.get("name"),
            "scientific_name": taxon.get("name"),
            "taxon_id": taxon_id,
            "observed_on": obs.get("observed_on") or None,
            "quality_grade": obs.get("quality_grade"),
            "user_login": (obs.get("user") or {}).get("login"),
            "photo_url": photo_url.replace("square", "small") if photo_url else None,
            "longitude": coords[0],
            "latitude": coords[1],
            "geojson": geojson,
        })
    return rows


def week_chunks(end: date, days: int) -> list[tuple[date, date]]:
    """Split the *days* before *end* into consecutive 7-day ranges."""
    start = end - timedelta(days=days)
    chunks: list[tuple[date, date]] = []
    d1 = start
    while d1 < end:
        d2 = min(d1 + timedelta(days=BACKFILL_CHUNK_DAYS - 1), end)
        chunks.append((d1, d2))
        d1 += timedelta(days=BACKFILL_CHUNK_DAYS)
    return chunks


# ---------------------------------------------------------------------------
# Ingestor
# ---------------------------------------------------------------------------


class ObservationIngestor:
    """Fetches observations per region and upserts them.

    Args:
        client: Provider client.
        writer: Observation row writer.
        max_pages: Hard ceiling on pages per fetch.
    """

    def __init__(
        self,
        client: ObservationClient,
        writer: ObservationWriter,
        max_pages: int = MAX_PAGES,
    ) -> None:
        self._client = client
        self._writer = writer
        self._max_pages = max_pages

    def fetch(self, region: str, start: date, end: date) -> list[dict[str, Any]]:
        """Fetch raw results page by page until a short page or the ceiling."""
        place_id = REGIONS[region]["inaturalist_place_id"]
        results: list[dict[str, Any]] = []
        page = 1
        while True:
            if page > self._max_pages:
                logger.warning(
                    "[%s] Page ceiling (%d) reached for %s..%s; treating as end of data",
                    region, self._max_pages, start, end,
                )
                break
            batch = self._client.fetch_page(place_id, start, end, page, PER_PAGE)
            if not batch:
                break
            results.extend(batch)
            if len(batch) < PER_PAGE:
                break
            page += 1
        return results

    def ingest(self, region: str, start: date, end: date) -> IngestResult:
        """Fetch and upsert observations for one region (no deletes)."""
        region = normalize_region(region)
        results = self.fetch(region, start, end)
        rows = to_observation_rows(results, region)
        written = self._writer.upsert_observations(rows) if rows else 0
        logger.info(
            "[%s] Ingested %d observations for %s..%s (%d fetched)",
            region, written, start, end, len(results),
        )
        return IngestResult(region, start, end, len(results), written)

    def backfill(
        self, region: str, days: int = BACKFILL_DAYS, today: date | None = None,
    ) -> list[IngestResult]:
        """Ingest the last *days* days in week-sized chunks.

        A failing chunk is logged and skipped so later chunks still load.
        """
        region = normalize_region(region)
        end = today or date.today()
        results: list[IngestResult] = []
        for d1, d2 in week_chunks(end, days):
            try:
                results.append(self.ingest(region, d1, d2))
            except (requests.RequestException, SQLAlchemyError) as exc:
                logger.error("[%s] Backfill chunk %s..%s failed: %s", region, d1, d2, exc)
        return results
