"""Shared fakes for the trail counts tests."""

from __future__ import annotations

from datetime import date
from typing import Any

import pytest

from trail_counts_pipeline import RefreshWindow
from trail_density import TrailObservationCount

# A short east-west trail near Mount Diablo (~880 m long at 37.88N)
TRAIL_LAT = 37.88
TRAIL_WEST = -121.925
TRAIL_EAST = -121.915


def line_feature(name: str, coords: list[list[float]] | None = None) -> dict[str, Any]:
    return {
        "type": "Feature",
        "properties": {"name": name, "highway": "path"},
        "geometry": {
            "type": "MultiLineString",
            "coordinates": [coords or [[TRAIL_WEST, TRAIL_LAT], [TRAIL_EAST, TRAIL_LAT]]],
        },
    }


def obs_row(
    obs_id: int,
    lon: float,
    lat: float,
    observed_on: date,
    species: str | None = "California Poppy",
    taxon_id: int | None = None,
) -> dict[str, Any]:
    return {
        "id": obs_id,
        "species": species,
        "taxon_id": taxon_id,
        "observed_on": observed_on,
        "longitude": lon,
        "latitude": lat,
        "geojson": {"type": "Point", "coordinates": [lon, lat]},
    }


class FakeStore:
    """In-memory TrailCountStore that records every call."""

    def __init__(
        self,
        chunks: dict[str, list[dict[str, Any]]] | None = None,
        observations: dict[str, list[dict[str, Any]]] | None = None,
    ) -> None:
        self.chunks = chunks or {}
        self.observations = observations or {}
        self.counts: dict[tuple[str, str], TrailObservationCount] = {}
        self.calls: list[tuple[Any, ...]] = []
        self.fail_on: set[str] = set()
        self.fail_upsert_after: int | None = None
        self.upsert_batches: list[int] = []

    def _maybe_fail(self, name: str, region: str) -> None:
        if name in self.fail_on or f"{name}:{region}" in self.fail_on:
            raise ConnectionError(f"{name} timed out")

    def fetch_trail_chunks(self, region: str, offset: int, limit: int) -> list[dict[str, Any]]:
        self.calls.append(("trails", region, offset, limit))
        self._maybe_fail("trails", region)
        rows = sorted(self.chunks.get(region, []), key=lambda c: c["chunk_id"])
        return rows[offset:offset + limit]

    def fetch_observations(
        self, region: str, window: RefreshWindow, offset: int, limit: int,
    ) -> list[dict[str, Any]]:
        self.calls.append(("observations", region, offset, limit))
        self._maybe_fail("observations", region)
        rows = [
            r for r in self.observations.get(region, [])
            if window.start <= r["observed_on"] <= window.end
        ]
        rows.sort(key=lambda r: (-r["observed_on"].toordinal(), r["id"]))
        return rows[offset:offset + limit]

    def delete_observations_on(self, region: str, day: date, limit: int) -> int:
        self.calls.append(("delete", region, day, limit))
        self._maybe_fail("delete", region)
        rows = self.observations.get(region, [])
        doomed = [r for r in rows if r["observed_on"] == day][:limit]
        for r in doomed:
            rows.remove(r)
        return len(doomed)

    def upsert_trail_counts(self, rows: list[TrailObservationCount]) -> int:
        self.calls.append(("upsert", len(rows)))
        region = rows[0].region if rows else ""
        self._maybe_fail("upsert", region)
        if self.fail_upsert_after is not None and len(self.upsert_batches) >= self.fail_upsert_after:
            raise ConnectionError("upsert batch timed out")
        keys = [r.key for r in rows]
        assert len(keys) == len(set(keys)), "one batch must not touch a key twice"
        for row in rows:
            self.counts[row.key] = row
        self.upsert_batches.append(len(rows))
        return len(rows)

    def calls_of(self, kind: str) -> list[tuple[Any, ...]]:
        return [c for c in self.calls if c[0] == kind]


@pytest.fixture
def run_date() -> date:
    return date(2025, 4, 15)


@pytest.fixture
def window(run_date: date) -> RefreshWindow:
    return RefreshWindow.trailing(run_date)
