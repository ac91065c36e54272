"""Trail/observation spatial join for wildflower density.

Buffers each trail line by a fixed distance in meters, pulls candidate
observations out of a uniform degree grid, runs an exact point-in-polygon
test on the candidates only, and reduces the matches to a per-trail count
and species breakdown.

Pure computation: no database or HTTP access happens in this module.
"""

from __future__ import annotations

import logging
import math
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from typing import Any, Iterable

import geopandas as gpd
import numpy as np
from pyproj import CRS, Transformer
from pyproj.exceptions import ProjError
from shapely.errors import ShapelyError
from shapely.geometry import shape
from shapely.geometry.base import BaseGeometry
from shapely.ops import transform as shapely_transform

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

STORAGE_CRS = "EPSG:4326"
BUFFER_DISTANCE_M = 50.0
GRID_CELL_DEG = 0.01  # ~1 km at mid-latitudes
UNKNOWN_SPECIES = "Unknown"

Bbox = tuple[float, float, float, float]
CellKey = tuple[int, int]


# ---------------------------------------------------------------------------
# Data classes
# ---------------------------------------------------------------------------


class TrailBufferError(ValueError):
    """Raised when a trail geometry cannot be turned into a buffer polygon."""


@dataclass(frozen=True)
class Trail:
    """One named hiking route as stored in a region's trail chunks.

    ``geometry`` is kept as the raw GeoJSON mapping so a malformed
    feature only fails its own buffer, not the whole chunk.
    """

    region: str
    name: str
    geometry: dict[str, Any] | None
    way_ids: tuple[int, ...] = ()
    relation_id: int | None = None


@dataclass(frozen=True)
class Observation:
    """A single point sighting inside the refresh window."""

    id: int
    region: str
    species: str | None
    taxon_id: int | None
    observed_on: date | None
    longitude: float
    latitude: float


@dataclass(frozen=True)
class SpeciesCount:
    """One entry of a trail's species breakdown."""

    species: str
    count: int
    taxon_id: int | None = None

    def to_dict(self) -> dict[str, Any]:
        """JSON shape stored in ``species_breakdown``; taxon_id omitted when unknown."""
        out: dict[str, Any] = {"species": self.species, "count": self.count}
        if self.taxon_id is not None:
            out["taxon_id"] = self.taxon_id
        return out


@dataclass(frozen=True)
class TrailObservationCount:
    """Aggregated observations near one trail, keyed by (region, trail_name).

    ``error`` is set when the trail's buffer could not be built; such rows
    always carry a zero count and are still written.
    """

    region: str
    trail_name: str
    observation_count: int
    species_breakdown: tuple[SpeciesCount, ...] = ()
    updated_at: datetime | None = None
    error: str | None = field(default=None, compare=False)

    @property
    def key(self) -> tuple[str, str]:
        return (self.region, self.trail_name)


# ---------------------------------------------------------------------------
# Spatial index
# ---------------------------------------------------------------------------


def cell_key(longitude: float, latitude: float, cell_size: float = GRID_CELL_DEG) -> CellKey:
    """Grid cell containing a lon/lat coordinate."""
    return (math.floor(longitude / cell_size), math.floor(latitude / cell_size))


class SpatialIndex:
    """Uniform degree grid over a region's observations.

    Each observation lands in exactly one cell. Lookups by bounding box
    return every observation whose cell overlaps the box, which is a
    superset of the points actually inside it.

    Args:
        observations: Window-filtered observations for one region.
        cell_size: Cell edge length in degrees.
    """

    def __init__(
        self,
        observations: list[Observation],
        cell_size: float = GRID_CELL_DEG,
    ) -> None:
        if cell_size <= 0:
            raise ValueError("cell_size must be > 0")
        self.cell_size = cell_size
        self.observations = observations
        lons = np.array([o.longitude for o in observations], dtype=float)
        lats = np.array([o.latitude for o in observations], dtype=float)
        self.points = gpd.GeoSeries(
            gpd.points_from_xy(lons, lats), crs=STORAGE_CRS,
        )

        self._cells: dict[CellKey, list[int]] = defaultdict(list)
        cxs = np.floor(lons / cell_size).astype(np.int64)
        cys = np.floor(lats / cell_size).astype(np.int64)
        for pos, (cx, cy) in enumerate(zip(cxs.tolist(), cys.tolist())):
            self._cells[(cx, cy)].append(pos)
        logger.debug(
            "Indexed %d observations into %d grid cells",
            len(observations), len(self._cells),
        )

    def __len__(self) -> int:
        return len(self.observations)

    @property
    def cell_count(self) -> int:
        return len(self._cells)

    def candidates(self, bbox: Bbox) -> list[int]:
        """Positions of observations in cells overlapping *bbox*.

        Args:
            bbox: ``(minx, miny, maxx, maxy)`` in degrees.

        Returns:
            Sorted observation positions (load order), possibly including
            points just outside the box.
        """
        min_x, min_y, max_x, max_y = bbox
        min_cx, min_cy = cell_key(min_x, min_y, self.cell_size)
        max_cx, max_cy = cell_key(max_x, max_y, self.cell_size)

        found: list[int] = []
        for cx in range(min_cx, max_cx + 1):
            for cy in range(min_cy, max_cy + 1):
                found.extend(self._cells.get((cx, cy), ()))
        found.sort()
        return found


# ---------------------------------------------------------------------------
# Buffering and point-in-polygon
# ---------------------------------------------------------------------------


def _local_transformers(geom: BaseGeometry) -> tuple[Transformer, Transformer]:
    """Forward/inverse transformers for an azimuthal equidistant CRS centred on *geom*."""
    centroid = geom.centroid
    local = CRS.from_proj4(
        f"+proj=aeqd +lat_0={centroid.y} +lon_0={centroid.x} "
        "+datum=WGS84 +units=m +no_defs"
    )
    forward = Transformer.from_crs(STORAGE_CRS, local, always_xy=True)
    inverse = Transformer.from_crs(local, STORAGE_CRS, always_xy=True)
    return forward, inverse


def buffer_trail(
    geometry: dict[str, Any] | None,
    distance_m: float = BUFFER_DISTANCE_M,
) -> BaseGeometry:
    """Build the tolerance polygon around a trail line.

    The line is projected into a local azimuthal equidistant CRS so the
    distance is applied in meters, then the polygon is projected back to
    lon/lat.

    Args:
        geometry: GeoJSON LineString or MultiLineString mapping.
        distance_m: Buffer distance in meters.

    Returns:
        Buffer polygon in EPSG:4326.

    Raises:
        TrailBufferError: If the geometry is missing or empty, cannot be
            projected (e.g. coordinates out of range), or buffering produced
            an empty polygon.
    """
    if not geometry:
        raise TrailBufferError("trail has no geometry")
    try:
        line = shape(geometry)
    except (ShapelyError, ValueError, TypeError, KeyError, IndexError) as exc:
        raise TrailBufferError(f"invalid trail geometry: {exc}") from exc
    if line.is_empty:
        raise TrailBufferError("trail geometry is empty")

    try:
        forward, inverse = _local_transformers(line)
        projected = shapely_transform(forward.transform, line)
        polygon = shapely_transform(inverse.transform, projected.buffer(distance_m))
    except (ProjError, ShapelyError) as exc:
        raise TrailBufferError(f"cannot project trail geometry: {exc}") from exc
    if polygon.is_empty or not polygon.is_valid:
        raise TrailBufferError("buffer produced an empty or invalid polygon")
    return polygon


def points_in_polygon(
    index: SpatialIndex,
    positions: list[int],
    polygon: BaseGeometry,
) -> list[Observation]:
    """Exact containment test restricted to *positions*.

    Points on the polygon boundary count as inside.
    """
    if not positions:
        return []
    candidates = index.points.iloc[positions]
    inside = candidates.intersects(polygon).to_numpy()
    return [
        index.observations[pos]
        for pos, hit in zip(positions, inside)
        if hit
    ]


def observations_near_trail(
    index: SpatialIndex,
    trail: Trail,
    distance_m: float = BUFFER_DISTANCE_M,
) -> list[Observation]:
    """Observations inside the trail's buffer.

    With an empty index the trail is never buffered, so a degenerate
    geometry in a region without observations yields no error.

    Raises:
        TrailBufferError: Propagated from :func:`buffer_trail`.
    """
    if len(index) == 0:
        return []
    polygon = buffer_trail(trail.geometry, distance_m)
    positions = index.candidates(polygon.bounds)
    if not positions:
        return []
    return points_in_polygon(index, positions, polygon)


# ---------------------------------------------------------------------------
# Aggregation
# ---------------------------------------------------------------------------


def species_breakdown(matches: Iterable[Observation]) -> tuple[SpeciesCount, ...]:
    """Group matches by species name, keeping first-seen order.

    Missing species names fall back to ``"Unknown"``. The taxon id is the
    first non-null id seen for that name and never splits a group.
    """
    counts: dict[str, int] = {}
    taxa: dict[str, int | None] = {}
    for obs in matches:
        name = obs.species or UNKNOWN_SPECIES
        counts[name] = counts.get(name, 0) + 1
        if taxa.get(name) is None:
            taxa[name] = obs.taxon_id
    return tuple(
        SpeciesCount(species=name, count=count, taxon_id=taxa[name])
        for name, count in counts.items()
    )


def aggregate_trail(
    region: str,
    trail_name: str,
    matches: list[Observation],
    updated_at: datetime | None = None,
) -> TrailObservationCount:
    """Reduce a trail's matched observations to its summary row."""
    return TrailObservationCount(
        region=region,
        trail_name=trail_name,
        observation_count=len(matches),
        species_breakdown=species_breakdown(matches),
        updated_at=updated_at,
    )


def calculate_trail_density(
    region: str,
    trails: list[Trail],
    index: SpatialIndex,
    *,
    buffer_distance_m: float = BUFFER_DISTANCE_M,
    updated_at: datetime | None = None,
) -> list[TrailObservationCount]:
    """Compute one summary row per trail, including zero-count trails.

    A trail whose buffer cannot be built is logged and returned as a zero
    row with ``error`` set; the remaining trails are unaffected.

    Args:
        region: Region code written on every row.
        trails: All trails of the region.
        index: Spatial index over the region's in-window observations.
        buffer_distance_m: Buffer distance in meters.
        updated_at: Timestamp stamped on every row.

    Returns:
        Rows in trail order.
    """
    rows: list[TrailObservationCount] = []
    for trail in trails:
        try:
            matches = observations_near_trail(index, trail, buffer_distance_m)
        except (TrailBufferError, ShapelyError, ValueError) as exc:
            logger.warning(
                "[%s] Could not buffer trail %r: %s", region, trail.name, exc,
            )
            rows.append(TrailObservationCount(
                region=region, trail_name=trail.name, observation_count=0,
                updated_at=updated_at, error=str(exc),
            ))
            continue
        rows.append(aggregate_trail(region, trail.name, matches, updated_at))
    return rows


# ---------------------------------------------------------------------------
# Summaries
# ---------------------------------------------------------------------------


def summarize_counts(
    rows: list[TrailObservationCount],
    buffer_distance_m: float = BUFFER_DISTANCE_M,
) -> dict[str, Any]:
    """Headline statistics for a region's rows."""
    total_trails = len(rows)
    counts = [r.observation_count for r in rows]
    total = sum(counts)
    return {
        "total_trails": total_trails,
        "trails_with_observations": sum(1 for c in counts if c > 0),
        "total_observations_near_trails": total,
        "max_count": max(counts, default=0),
        "avg_count": round(total / total_trails, 1) if total_trails else 0.0,
        "buffer_distance_m": buffer_distance_m,
    }


def top_species(
    rows: list[TrailObservationCount],
    limit: int = 10,
) -> list[SpeciesCount]:
    """Species totals across rows, largest first (ties keep first-seen order)."""
    totals: dict[str, int] = {}
    for row in rows:
        for entry in row.species_breakdown:
            totals[entry.species] = totals.get(entry.species, 0) + entry.count
    ranked = sorted(totals.items(), key=lambda item: -item[1])
    return [SpeciesCount(species=s, count=c) for s, c in ranked[:limit]]
