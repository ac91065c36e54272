"""Trail counts entrypoint supporting incremental, backfill, ingest, and scheduled modes.

Usage:
    python entrypoint.py                                  # Daily incremental refresh (default)
    python entrypoint.py --mode incremental --region ca   # One region only
    python entrypoint.py --mode backfill --days 30        # Upsert-only over the last 30 days
    python entrypoint.py --mode backfill --start 2025-04-01 --end 2025-04-30
    python entrypoint.py --mode observations              # Fetch observations only
    python entrypoint.py --mode all                       # Fetch observations, then incremental
    python entrypoint.py --mode scheduled                 # Long-lived scheduler
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from datetime import date, datetime, timezone
from typing import Any, Sequence
from urllib.parse import quote_plus

from sqlalchemy import create_engine

from observation_ingest import (
    BACKFILL_DAYS,
    INaturalistClient,
    ObservationIngestor,
    PostgresObservationWriter,
)
from run_tracker import RunTracker
from trail_counts_pipeline import (
    MODE_BACKFILL,
    MODE_INCREMENTAL,
    REGIONS,
    WINDOW_DAYS,
    PostgresTrailCountStore,
    RefreshResult,
    RefreshWindow,
    TrailCountPipeline,
    normalize_region,
)
from trail_density import BUFFER_DISTANCE_M, GRID_CELL_DEG

logger = logging.getLogger(__name__)

RUN_TYPES = ("incremental", "backfill", "observations", "all")
# Run types that end with the single-day eviction
EVICTING_RUN_TYPES = ("incremental", "all")


def _resolve_database_url() -> str:
    """PostgreSQL URL from ``BLOOMSCOUT_DB_URI`` or ``DATABASE_URL``.

    Falls back to an ADO.NET-style ``ConnectionStrings__bloomscoutdb``
    (``Host=...;Port=...;Username=...;Password=...;Database=...``).
    Returns an empty string when nothing is configured.
    """
    url = os.environ.get("BLOOMSCOUT_DB_URI") or os.environ.get("DATABASE_URL")
    if url:
        return url

    ado = os.environ.get("ConnectionStrings__bloomscoutdb", "")
    fields = dict(
        (key.strip().lower(), value.strip())
        for key, _, value in (part.partition("=") for part in ado.split(";"))
        if value
    )
    if not fields:
        return ""
    user = quote_plus(fields.get("username", "postgres"))
    password = quote_plus(fields.get("password", ""))
    host = fields.get("host", "localhost")
    port = fields.get("port", "5432")
    database = fields.get("database", "bloomscoutdb")
    return f"postgresql://{user}:{password}@{host}:{port}/{database}"


def get_refresh_config() -> dict[str, Any]:
    """Read pipeline tuning from environment variables.

    Returns:
        Dict with keys: window_days, buffer_distance_m, grid_cell_deg,
        max_workers.
    """
    return {
        "window_days": int(os.environ.get("TRAIL_COUNTS_WINDOW_DAYS", WINDOW_DAYS)),
        "buffer_distance_m": float(
            os.environ.get("TRAIL_COUNTS_BUFFER_M", BUFFER_DISTANCE_M),
        ),
        "grid_cell_deg": float(
            os.environ.get("TRAIL_COUNTS_GRID_CELL_DEG", GRID_CELL_DEG),
        ),
        "max_workers": int(os.environ.get("TRAIL_COUNTS_MAX_WORKERS", len(REGIONS))),
    }


def resolve_window(
    update_type: str,
    *,
    today: date,
    window_days: int,
    start: date | None = None,
    end: date | None = None,
    days: int | None = None,
) -> RefreshWindow:
    """Pick the observation window for a run.

    Backfill uses ``[start, end]`` when given, otherwise the last *days*
    days. Every other run type uses the trailing window ending today.
    """
    if update_type == MODE_BACKFILL:
        if start is not None:
            return RefreshWindow(start=start, end=end or today)
        return RefreshWindow.trailing(end or today, days or BACKFILL_DAYS)
    return RefreshWindow.trailing(today, window_days)


def _ingest_observations(
    ingestor: ObservationIngestor,
    regions: Sequence[str],
    window: RefreshWindow,
) -> list[str]:
    """Fetch observations for each region; return regions that failed."""
    failed: list[str] = []
    for region in regions:
        try:
            ingestor.ingest(region, window.start, window.end)
        except Exception:
            logger.exception("[%s] Observation ingest failed", region)
            failed.append(region)
    return failed


def _warn_on_cadence_gap(tracker: RunTracker, now: datetime) -> None:
    gap = tracker.days_since_last_success(EVICTING_RUN_TYPES, now)
    if gap is not None and gap > 1:
        logger.warning(
            "Last successful refresh run was %d days ago; only one day of "
            "expired observations is evicted per run, run a backfill to reconcile",
            gap,
        )


def execute_run(
    update_type: str,
    regions: Sequence[str] | None = None,
    *,
    start: date | None = None,
    end: date | None = None,
    days: int | None = None,
) -> RefreshResult | None:
    """Execute a single run of the given type.

    Args:
        update_type: One of 'incremental', 'backfill', 'observations', 'all'.
        regions: Region codes; defaults to all configured regions.
        start: Backfill window start.
        end: Backfill window end.
        days: Backfill length when no start is given.

    Returns:
        The trail count RefreshResult, or None for observation-only runs.
    """
    if update_type not in RUN_TYPES:
        raise ValueError(f"Unknown update type: {update_type}")
    codes = [normalize_region(r) for r in (regions or list(REGIONS))]

    url = _resolve_database_url()
    if not url:
        logger.error("No database URL found")
        sys.exit(1)

    config = get_refresh_config()
    now = datetime.now(timezone.utc)
    window = resolve_window(
        update_type, today=now.date(), window_days=config["window_days"],
        start=start, end=end, days=days,
    )

    engine = create_engine(url)
    tracker = RunTracker(engine)
    pipeline = TrailCountPipeline(
        store=PostgresTrailCountStore(engine),
        buffer_distance_m=config["buffer_distance_m"],
        grid_cell_deg=config["grid_cell_deg"],
        max_workers=config["max_workers"],
    )

    run_id = tracker.start_run(update_type)
    try:
        ingest_failed: list[str] = []
        if update_type in ("observations", "all"):
            ingestor = ObservationIngestor(
                client=INaturalistClient(),
                writer=PostgresObservationWriter(engine),
            )
            ingest_failed = _ingest_observations(ingestor, codes, window)
            if update_type == "observations":
                if len(ingest_failed) == len(codes):
                    tracker.fail_run(run_id, "observation ingest failed for all regions")
                else:
                    tracker.complete_run(
                        run_id,
                        status="partial" if ingest_failed else "completed",
                        failed_regions=ingest_failed,
                    )
                return None

        mode = MODE_BACKFILL if update_type == "backfill" else MODE_INCREMENTAL
        if mode == MODE_INCREMENTAL:
            _warn_on_cadence_gap(tracker, now)
        result = pipeline.refresh_all(window, mode, codes, run_at=now)

        failed = sorted(set(result.failed_regions) | set(ingest_failed))
        if result.status == "failed":
            errors = "; ".join(
                f"{r}: {result.outcomes[r].error}" for r in result.failed_regions
            )
            tracker.fail_run(run_id, errors)
        else:
            tracker.complete_run(
                run_id,
                status="partial" if failed else "completed",
                failed_regions=failed,
                **result.totals(),
            )
        return result

    except Exception as exc:
        tracker.fail_run(run_id, str(exc))
        raise


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(f"invalid date {value!r}: {exc}") from exc


def main(argv: Sequence[str] | None = None) -> None:
    """Parse arguments and dispatch to the appropriate run mode."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    parser = argparse.ArgumentParser(description="Trail observation counts refresh")
    parser.add_argument(
        "--mode", default=None,
        choices=[*RUN_TYPES, "scheduled"],
        help="Run mode (default: $ETL_MODE or incremental)",
    )
    parser.add_argument(
        "--region", action="append", choices=sorted(REGIONS),
        help="Region code; repeat for several (default: all)",
    )
    parser.add_argument("--start", type=_parse_date, help="Backfill start (YYYY-MM-DD)")
    parser.add_argument("--end", type=_parse_date, help="Backfill end (YYYY-MM-DD)")
    parser.add_argument("--days", type=int, help="Backfill length in days")
    args = parser.parse_args(argv)

    mode = args.mode or os.environ.get("ETL_MODE", "incremental")

    if mode == "scheduled":
        from scheduler import get_schedule_config, run_scheduled
        run_scheduled(execute_run, get_schedule_config())
        return

    result = execute_run(
        mode, args.region, start=args.start, end=args.end, days=args.days,
    )
    if result is not None and result.status != "success":
        logger.error(
            "Refresh finished with status %s (failed: %s)",
            result.status, ", ".join(result.failed_regions),
        )
        sys.exit(1)


if __name__ == "__main__":
    main()
