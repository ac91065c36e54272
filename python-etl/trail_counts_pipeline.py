"""Trail observation count refresh pipeline.

Reads a region's trail chunks and in-window wildflower observations from
PostgreSQL, joins them spatially (see ``trail_density``), and upserts one
``trail_observation_counts`` row per trail. Every store call is bounded
(page or batch size) to stay under the database's statement timeout.

Two modes share the same steps:

- **incremental**: the daily run; also deletes the single day of
  observations that just left the rolling window.
- **backfill**: upsert-only over an arbitrary date range.
"""

from __future__ import annotations

import enum
import json
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Callable, Iterator, Protocol, Sequence, TypeVar, runtime_checkable

from sqlalchemy import text
from sqlalchemy.engine import Engine

from trail_density import (
    BUFFER_DISTANCE_M,
    GRID_CELL_DEG,
    Observation,
    SpatialIndex,
    Trail,
    TrailObservationCount,
    calculate_trail_density,
    summarize_counts,
    top_species,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

REGIONS: dict[str, dict[str, Any]] = {
    "ca": {"name": "California", "inaturalist_place_id": 14},
    "or": {"name": "Oregon", "inaturalist_place_id": 11},
    "wa": {"name": "Washington", "inaturalist_place_id": 46},
}

WINDOW_DAYS = 7

# Store call sizes: keep each call under the statement timeout
TRAILS_PAGE = 10  # trail chunks per read
OBSERVATIONS_PAGE = 500
UPSERT_BATCH = 300
EVICT_PAGE = 1000

MODE_INCREMENTAL = "incremental"
MODE_BACKFILL = "backfill"
MODES = (MODE_INCREMENTAL, MODE_BACKFILL)


class Stage(str, enum.Enum):
    """Per-region pipeline states."""

    IDLE = "idle"
    LOADING_TRAILS = "loading_trails"
    LOADING_OBSERVATIONS = "loading_observations"
    INDEXING = "indexing"
    JOINING = "joining"
    AGGREGATING = "aggregating"
    EVICTING = "evicting"
    WRITING = "writing"
    DONE = "done"
    FAILED = "failed"


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class RefreshWindow:
    """Inclusive observation date range joined by one run."""

    start: date
    end: date

    def __post_init__(self) -> None:
        if self.start > self.end:
            raise ValueError(f"Window start {self.start} is after end {self.end}")

    @classmethod
    def trailing(cls, run_date: date, days: int = WINDOW_DAYS) -> RefreshWindow:
        """The rolling window ending on *run_date*."""
        return cls(start=run_date - timedelta(days=days), end=run_date)

    @property
    def eviction_date(self) -> date:
        """The one day that fell out of the window since yesterday's run."""
        return self.start - timedelta(days=1)

    def contains(self, day: date) -> bool:
        return self.start <= day <= self.end


@dataclass
class RegionOutcome:
    """Result of refreshing one region."""

    region: str
    mode: str
    trails_loaded: int = 0
    observations_loaded: int = 0
    rows_upserted: int = 0
    rows_evicted: int = 0
    trails_failed: int = 0
    stage: Stage = Stage.IDLE
    failed_stage: Stage | None = None
    error: str | None = None

    @property
    def ok(self) -> bool:
        return self.error is None and self.stage == Stage.DONE

    def as_dict(self) -> dict[str, Any]:
        return {
            "region": self.region,
            "mode": self.mode,
            "trails_loaded": self.trails_loaded,
            "observations_loaded": self.observations_loaded,
            "rows_upserted": self.rows_upserted,
            "rows_evicted": self.rows_evicted,
            "trails_failed": self.trails_failed,
            "stage": self.stage.value,
            "failed_stage": self.failed_stage.value if self.failed_stage else None,
            "error": self.error,
        }


@dataclass
class RefreshResult:
    """Outcomes for every region touched by a run."""

    outcomes: dict[str, RegionOutcome] = field(default_factory=dict)

    @property
    def failed_regions(self) -> list[str]:
        return [r for r, o in self.outcomes.items() if not o.ok]

    @property
    def status(self) -> str:
        """``'success'``, ``'partial'`` or ``'failed'``."""
        failed = len(self.failed_regions)
        if failed == 0:
            return "success"
        if failed < len(self.outcomes):
            return "partial"
        return "failed"

    def totals(self) -> dict[str, int]:
        return {
            "trails_loaded": sum(o.trails_loaded for o in self.outcomes.values()),
            "observations_loaded": sum(
                o.observations_loaded for o in self.outcomes.values()
            ),
            "rows_upserted": sum(o.rows_upserted for o in self.outcomes.values()),
            "rows_evicted": sum(o.rows_evicted for o in self.outcomes.values()),
        }


# ---------------------------------------------------------------------------
# Protocols (interfaces for dependency injection)
# ---------------------------------------------------------------------------


@runtime_checkable
class TrailCountStore(Protocol):
    """Bounded reads and writes against the trail counts database."""

    def fetch_trail_chunks(
        self, region: str, offset: int, limit: int,
    ) -> list[dict[str, Any]]:
        """Return trail chunk rows (``chunk_id``, ``geojson``) ordered by chunk_id."""
        ...

    def fetch_observations(
        self, region: str, window: RefreshWindow, offset: int, limit: int,
    ) -> list[dict[str, Any]]:
        """Return in-window observation rows, newest first."""
        ...

    def delete_observations_on(self, region: str, day: date, limit: int) -> int:
        """Delete up to *limit* observations dated exactly *day*; return count."""
        ...

    def upsert_trail_counts(self, rows: list[TrailObservationCount]) -> int:
        """Upsert rows keyed by (state, trail_name); return count written."""
        ...


# ---------------------------------------------------------------------------
# Concrete implementations
# ---------------------------------------------------------------------------


class PostgresTrailCountStore:
    """Trail count store backed by PostgreSQL via SQLAlchemy."""

    _TRAILS_SQL = text("""
        SELECT chunk_id, geojson
        FROM trails
        WHERE state = :state
        ORDER BY chunk_id ASC
        LIMIT :limit OFFSET :offset
    """)

    _OBSERVATIONS_SQL = text("""
        SELECT id, species, taxon_id, observed_on, longitude, latitude, geojson
        FROM observations
        WHERE state = :state
          AND observed_on >= :start
          AND observed_on <= :end
        ORDER BY observed_on DESC, id ASC
        LIMIT :limit OFFSET :offset
    """)

    _DELETE_DAY_SQL = text("""
        DELETE FROM observations
        WHERE ctid IN (
            SELECT ctid FROM observations
            WHERE state = :state AND observed_on = :day
            LIMIT :limit
        )
    """)

    _UPSERT_SQL = text("""
        INSERT INTO trail_observation_counts
            (state, trail_name, observation_count, species_breakdown, updated_at)
        VALUES
            (:state, :trail_name, :observation_count,
             CAST(:species_breakdown AS JSONB), :updated_at)
        ON CONFLICT (state, trail_name) DO UPDATE
        SET observation_count = EXCLUDED.observation_count,
            species_breakdown = EXCLUDED.species_breakdown,
            updated_at = EXCLUDED.updated_at
    """)

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def fetch_trail_chunks(
        self, region: str, offset: int, limit: int,
    ) -> list[dict[str, Any]]:
        with self._engine.connect() as conn:
            result = conn.execute(
                self._TRAILS_SQL,
                {"state": region, "limit": limit, "offset": offset},
            )
            return [dict(row) for row in result.mappings()]

    def fetch_observations(
        self, region: str, window: RefreshWindow, offset: int, limit: int,
    ) -> list[dict[str, Any]]:
        with self._engine.connect() as conn:
            result = conn.execute(self._OBSERVATIONS_SQL, {
                "state": region,
                "start": window.start,
                "end": window.end,
                "limit": limit,
                "offset": offset,
            })
            return [dict(row) for row in result.mappings()]

    def delete_observations_on(self, region: str, day: date, limit: int) -> int:
        with self._engine.connect() as conn:
            result = conn.execute(
                self._DELETE_DAY_SQL,
                {"state": region, "day": day, "limit": limit},
            )
            conn.commit()
        return result.rowcount

    def upsert_trail_counts(self, rows: list[TrailObservationCount]) -> int:
        """Upsert one batch in a single transaction."""
        if not rows:
            return 0
        params = [to_db_params(r) for r in rows]
        with self._engine.connect() as conn:
            conn.execute(self._UPSERT_SQL, params)
            conn.commit()
        return len(rows)


# ---------------------------------------------------------------------------
# Pure helpers (no I/O, always testable)
# ---------------------------------------------------------------------------


def normalize_region(region: str) -> str:
    """Lower-case and validate a region code.

    Raises:
        ValueError: If the region is not configured.
    """
    code = (region or "").strip().lower()
    if code not in REGIONS:
        raise ValueError(
            f"Unknown region {region!r}; expected one of {', '.join(REGIONS)}"
        )
    return code


def _check_mode(mode: str) -> None:
    if mode not in MODES:
        raise ValueError(f"Unknown mode {mode!r}; expected one of {', '.join(MODES)}")


def chunked(items: Sequence[T], size: int) -> Iterator[Sequence[T]]:
    """Yield consecutive slices of at most *size* items."""
    if size <= 0:
        raise ValueError("size must be > 0")
    for i in range(0, len(items), size):
        yield items[i:i + size]


def read_pages(
    fetch: Callable[[int, int], list[T]],
    page_size: int,
    *,
    label: str = "rows",
    max_pages: int | None = None,
) -> list[T]:
    """Read an offset-paginated source until a short page.

    Args:
        fetch: ``fetch(offset, limit)`` returning one page.
        page_size: Rows requested per call.
        label: Name used in log messages.
        max_pages: Hard ceiling for sources that may never return a short
            page. Hitting it is logged and treated as end of data.

    Returns:
        All rows in page order.
    """
    rows: list[T] = []
    offset = 0
    pages = 0
    while True:
        if max_pages is not None and pages >= max_pages:
            logger.warning(
                "Stopped reading %s after %d pages (ceiling reached)", label, pages,
            )
            break
        page = fetch(offset, page_size)
        pages += 1
        if not page:
            break
        rows.extend(page)
        logger.debug("Fetched %s page: %d rows (offset %d)", label, len(page), offset)
        if len(page) < page_size:
            break
        offset += page_size
    return rows


def _as_json(value: Any) -> Any:
    if isinstance(value, (str, bytes)):
        return json.loads(value)
    return value


def _as_date(value: Any) -> date | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value)[:10])


def trails_from_chunks(region: str, chunks: list[dict[str, Any]]) -> list[Trail]:
    """Flatten chunk FeatureCollections into the region's trail list.

    Features without a name cannot be keyed and are skipped.
    """
    trails: list[Trail] = []
    skipped = 0
    for chunk in chunks:
        collection = _as_json(chunk.get("geojson")) or {}
        for feature in collection.get("features") or []:
            props = feature.get("properties") or {}
            name = props.get("name")
            if not name:
                skipped += 1
                continue
            trails.append(Trail(
                region=region,
                name=str(name),
                geometry=feature.get("geometry"),
                way_ids=tuple(props.get("osmIds") or ()),
                relation_id=props.get("osmId"),
            ))
    if skipped:
        logger.warning("[%s] Skipped %d unnamed trail features", region, skipped)
    return trails


def observation_from_row(region: str, row: dict[str, Any]) -> Observation | None:
    """Map an observations table row, or None if it has no usable point."""
    lon, lat = row.get("longitude"), row.get("latitude")
    if lon is None or lat is None:
        geom = _as_json(row.get("geojson")) or {}
        coords = geom.get("coordinates") or []
        if len(coords) < 2:
            return None
        lon, lat = coords[0], coords[1]
    taxon_id = row.get("taxon_id")
    return Observation(
        id=int(row["id"]),
        region=region,
        species=row.get("species") or None,
        taxon_id=int(taxon_id) if taxon_id is not None else None,
        observed_on=_as_date(row.get("observed_on")),
        longitude=float(lon),
        latitude=float(lat),
    )


def dedupe_rows(rows: list[TrailObservationCount]) -> list[TrailObservationCount]:
    """Keep the last row per (region, trail_name), in first-seen key order."""
    by_key: dict[tuple[str, str], TrailObservationCount] = {}
    for row in rows:
        by_key[row.key] = row
    return list(by_key.values())


def to_db_params(row: TrailObservationCount) -> dict[str, Any]:
    """Bind parameters for the trail_observation_counts upsert."""
    return {
        "state": row.region,
        "trail_name": row.trail_name,
        "observation_count": row.observation_count,
        "species_breakdown": json.dumps(
            [s.to_dict() for s in row.species_breakdown],
        ),
        "updated_at": row.updated_at,
    }


# ---------------------------------------------------------------------------
# Pipeline
# ---------------------------------------------------------------------------


class TrailCountPipeline:
    """Refreshes ``trail_observation_counts`` region by region.

    Uses constructor injection for the store so each step can be tested
    with a fake.

    Args:
        store: Bounded reader/writer for trails, observations and counts.
        buffer_distance_m: Trail buffer distance in meters.
        grid_cell_deg: Spatial index cell size in degrees.
        max_workers: Regions refreshed concurrently by ``refresh_all``.
    """

    def __init__(
        self,
        store: TrailCountStore,
        *,
        buffer_distance_m: float = BUFFER_DISTANCE_M,
        grid_cell_deg: float = GRID_CELL_DEG,
        max_workers: int = len(REGIONS),
        trails_page: int = TRAILS_PAGE,
        observations_page: int = OBSERVATIONS_PAGE,
        upsert_batch: int = UPSERT_BATCH,
        evict_page: int = EVICT_PAGE,
    ) -> None:
        self._store = store
        self.buffer_distance_m = buffer_distance_m
        self.grid_cell_deg = grid_cell_deg
        self.max_workers = max(1, max_workers)
        self.trails_page = trails_page
        self.observations_page = observations_page
        self.upsert_batch = upsert_batch
        self.evict_page = evict_page

    # -- Loading ------------------------------------------------------------

    def load_trails(self, region: str) -> list[Trail]:
        """Read every trail chunk for *region*, ordered by chunk_id."""
        chunks = read_pages(
            lambda offset, limit: self._store.fetch_trail_chunks(region, offset, limit),
            self.trails_page,
            label=f"{region} trail chunks",
        )
        trails = trails_from_chunks(region, chunks)
        logger.info(
            "[%s] Loaded %d trails from %d chunks", region, len(trails), len(chunks),
        )
        return trails

    def load_observations(
        self, region: str, window: RefreshWindow,
    ) -> list[Observation]:
        """Read every observation dated inside *window* for *region*."""
        rows = read_pages(
            lambda offset, limit: self._store.fetch_observations(
                region, window, offset, limit,
            ),
            self.observations_page,
            label=f"{region} observations",
        )
        observations: list[Observation] = []
        seen: set[int] = set()
        for row in rows:
            obs = observation_from_row(region, row)
            if obs is None or obs.id in seen:
                continue
            if obs.observed_on is not None and not window.contains(obs.observed_on):
                continue
            seen.add(obs.id)
            observations.append(obs)
        dropped = len(rows) - len(observations)
        if dropped:
            logger.warning(
                "[%s] Dropped %d observation rows without a point or outside %s..%s",
                region, dropped, window.start, window.end,
            )
        logger.info(
            "[%s] Loaded %d observations (%s..%s)",
            region, len(observations), window.start, window.end,
        )
        return observations

    # -- Writing ------------------------------------------------------------

    def evict_expired(self, region: str, window: RefreshWindow) -> int:
        """Delete the observations dated exactly one day before the window.

        Assumes a daily cadence: older days were removed by earlier runs.
        """
        day = window.eviction_date
        total = 0
        while True:
            deleted = self._store.delete_observations_on(region, day, self.evict_page)
            total += deleted
            if deleted < self.evict_page:
                break
        logger.info("[%s] Evicted %d observations dated %s", region, total, day)
        return total

    def write_rows(self, rows: list[TrailObservationCount]) -> int:
        """Upsert rows in fixed-size batches.

        A failing batch propagates; earlier batches stay committed.
        """
        written = 0
        for batch in chunked(rows, self.upsert_batch):
            written += self._store.upsert_trail_counts(list(batch))
        return written

    # -- Orchestration ------------------------------------------------------

    def refresh_region(
        self,
        region: str,
        window: RefreshWindow,
        mode: str = MODE_INCREMENTAL,
        run_at: datetime | None = None,
    ) -> RegionOutcome:
        """Refresh one region's trail counts.

        Args:
            region: Region code (case-insensitive).
            window: Observation date range to aggregate.
            mode: ``'incremental'`` (upsert + single-day eviction) or
                ``'backfill'`` (upsert only).
            run_at: Timestamp stamped on every row. Defaults to now (UTC).

        Returns:
            RegionOutcome with ``stage == Stage.DONE`` on success, or
            ``Stage.FAILED`` with ``error`` and ``failed_stage`` set when a
            store call failed. Batches written before a failure stay
            committed.

        Raises:
            ValueError: For an unknown region or mode (before any I/O).
        """
        region = normalize_region(region)
        _check_mode(mode)
        run_at = run_at or datetime.now(timezone.utc)
        outcome = RegionOutcome(region=region, mode=mode)

        try:
            self._run_stages(outcome, window, run_at)
        except Exception as exc:
            outcome.failed_stage = outcome.stage
            outcome.stage = Stage.FAILED
            outcome.error = f"{type(exc).__name__}: {exc}"
            logger.exception(
                "[%s] %s refresh failed during %s",
                region, mode, outcome.failed_stage.value,
            )
        return outcome

    def _run_stages(
        self,
        outcome: RegionOutcome,
        window: RefreshWindow,
        run_at: datetime,
    ) -> None:
        region = outcome.region
        logger.info(
            "[%s] Starting %s refresh for %s..%s",
            region, outcome.mode, window.start, window.end,
        )

        outcome.stage = Stage.LOADING_TRAILS
        with ThreadPoolExecutor(max_workers=2) as executor:
            trails_future = executor.submit(self.load_trails, region)
            obs_future = executor.submit(self.load_observations, region, window)
            trails = trails_future.result()
            outcome.trails_loaded = len(trails)
            outcome.stage = Stage.LOADING_OBSERVATIONS
            observations = obs_future.result()
            outcome.observations_loaded = len(observations)

        outcome.stage = Stage.INDEXING
        index = SpatialIndex(observations, cell_size=self.grid_cell_deg)

        outcome.stage = Stage.JOINING
        rows = calculate_trail_density(
            region, trails, index,
            buffer_distance_m=self.buffer_distance_m,
            updated_at=run_at,
        )
        outcome.stage = Stage.AGGREGATING
        outcome.trails_failed = sum(1 for r in rows if r.error)
        rows = dedupe_rows(rows)
        logger.info("[%s] Summary: %s", region, summarize_counts(rows, self.buffer_distance_m))
        top = top_species(rows, 5)
        if top:
            logger.info(
                "[%s] Top species: %s",
                region, ", ".join(f"{s.species} ({s.count})" for s in top),
            )

        if outcome.mode == MODE_INCREMENTAL:
            outcome.stage = Stage.EVICTING
            outcome.rows_evicted = self.evict_expired(region, window)

        outcome.stage = Stage.WRITING
        outcome.rows_upserted = self.write_rows(rows)

        outcome.stage = Stage.DONE
        logger.info(
            "[%s] %s refresh ok: trails=%d obs=%d rows=%d evicted=%d failed_trails=%d",
            region, outcome.mode, outcome.trails_loaded,
            outcome.observations_loaded, outcome.rows_upserted,
            outcome.rows_evicted, outcome.trails_failed,
        )

    def refresh_all(
        self,
        window: RefreshWindow,
        mode: str = MODE_INCREMENTAL,
        regions: Sequence[str] | None = None,
        run_at: datetime | None = None,
    ) -> RefreshResult:
        """Refresh several regions concurrently; one failure does not stop the rest.

        Args:
            window: Observation date range to aggregate.
            mode: ``'incremental'`` or ``'backfill'``.
            regions: Region codes; defaults to every configured region.
            run_at: Timestamp shared by all rows of this run.

        Returns:
            RefreshResult with one outcome per region.

        Raises:
            ValueError: If any region or the mode is invalid (nothing runs).
        """
        codes = list(dict.fromkeys(
            normalize_region(r) for r in (regions or list(REGIONS))
        ))
        _check_mode(mode)
        run_at = run_at or datetime.now(timezone.utc)
        logger.info("Starting %s refresh for regions: %s", mode, ", ".join(codes))

        result = RefreshResult()
        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(codes))) as executor:
            futures = {
                code: executor.submit(self.refresh_region, code, window, mode, run_at)
                for code in codes
            }
            for code, future in futures.items():
                result.outcomes[code] = future.result()

        logger.info(
            "Finished %s refresh: status=%s totals=%s failed=%s",
            mode, result.status, result.totals(), result.failed_regions or "none",
        )
        return result
