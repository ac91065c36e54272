"""Run tracking for the meta.trail_count_runs table.

Records the start, completion, and outcome of each refresh run,
including per-run totals and the regions that failed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Sequence

from sqlalchemy import text
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RunRecord:
    """Immutable snapshot of a completed refresh run."""

    id: int
    run_type: str
    started_at: datetime
    completed_at: datetime | None
    status: str
    trails_loaded: int
    observations_loaded: int
    rows_upserted: int
    rows_evicted: int
    failed_regions: str | None
    error_message: str | None


class RunTracker:
    """Manages refresh run lifecycle in meta.trail_count_runs.

    Args:
        engine: SQLAlchemy engine connected to PostgreSQL.
    """

    def __init__(self, engine: Engine) -> None:
        self._engine = engine

    def start_run(self, run_type: str) -> int:
        """Insert a new run record and return its ID.

        Args:
            run_type: One of 'incremental', 'backfill', 'observations', 'all'.

        Returns:
            The auto-generated run ID.
        """
        sql = text("""
            INSERT INTO meta.trail_count_runs (run_type, status)
            VALUES (:run_type, 'running')
            RETURNING id
        """)
        with self._engine.connect() as conn:
            row = conn.execute(sql, {"run_type": run_type}).fetchone()
            conn.commit()
        run_id: int = row[0]
        logger.info("Started refresh run %d (type=%s)", run_id, run_type)
        return run_id

    def complete_run(
        self,
        run_id: int,
        *,
        status: str = "completed",
        trails_loaded: int = 0,
        observations_loaded: int = 0,
        rows_upserted: int = 0,
        rows_evicted: int = 0,
        failed_regions: list[str] | None = None,
    ) -> None:
        """Mark a run as finished with aggregate counts.

        Args:
            run_id: The run to complete.
            status: ``'completed'`` or ``'partial'`` (some regions failed).
            trails_loaded: Trails read across all regions.
            observations_loaded: In-window observations read across all regions.
            rows_upserted: trail_observation_counts rows written.
            rows_evicted: Observation rows deleted by the single-day eviction.
            failed_regions: Region codes whose refresh failed.
        """
        sql = text("""
            UPDATE meta.trail_count_runs
            SET completed_at = now(),
                status = :status,
                trails_loaded = :trails,
                observations_loaded = :observations,
                rows_upserted = :upserted,
                rows_evicted = :evicted,
                failed_regions = :failed
            WHERE id = :run_id
        """)
        with self._engine.connect() as conn:
            conn.execute(sql, {
                "run_id": run_id,
                "status": status,
                "trails": trails_loaded,
                "observations": observations_loaded,
                "upserted": rows_upserted,
                "evicted": rows_evicted,
                "failed": ",".join(failed_regions) if failed_regions else None,
            })
            conn.commit()
        logger.info(
            "Completed refresh run %d (%s): %d rows upserted, %d evicted",
            run_id, status, rows_upserted, rows_evicted,
        )

    def fail_run(self, run_id: int, error: str) -> None:
        """Mark a run as failed with an error message."""
        sql = text("""
            UPDATE meta.trail_count_runs
            SET completed_at = now(),
                status = 'failed',
                error_message = :error
            WHERE id = :run_id
        """)
        with self._engine.connect() as conn:
            conn.execute(sql, {"run_id": run_id, "error": error})
            conn.commit()
        logger.error("Failed refresh run %d: %s", run_id, error)

    def get_last_successful_run(
        self, run_types: str | Sequence[str],
    ) -> RunRecord | None:
        """Return the most recent completed run of any of the given types.

        Args:
            run_types: One run type, or several (e.g. runs that include an
                incremental refresh).

        Returns:
            RunRecord or None if no successful run exists.
        """
        sql = text("""
            SELECT id, run_type, started_at, completed_at, status,
                   trails_loaded, observations_loaded, rows_upserted,
                   rows_evicted, failed_regions, error_message
            FROM meta.trail_count_runs
            WHERE run_type = ANY(:run_types) AND status = 'completed'
            ORDER BY completed_at DESC
            LIMIT 1
        """)
        types = [run_types] if isinstance(run_types, str) else list(run_types)
        with self._engine.connect() as conn:
            row = conn.execute(sql, {"run_types": types}).fetchone()
        if row is None:
            return None
        return RunRecord(
            id=row[0], run_type=row[1], started_at=row[2],
            completed_at=row[3], status=row[4], trails_loaded=row[5],
            observations_loaded=row[6], rows_upserted=row[7],
            rows_evicted=row[8], failed_regions=row[9], error_message=row[10],
        )

    def days_since_last_success(
        self, run_types: str | Sequence[str], now: datetime,
    ) -> int | None:
        """Whole days between the last completed run's start and *now*.

        The single-day eviction only keeps the observations table clean
        when this is at most 1.
        """
        last = self.get_last_successful_run(run_types)
        if last is None:
            return None
        return (now.date() - last.started_at.date()).days
