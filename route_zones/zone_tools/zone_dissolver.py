"""Dissolve route-labelled area units into one zone polygon per route.

The dissolve is the expensive step at county scale, so its result can be
stored as a GeoPackage checkpoint and read back on later runs.

Zones carry only the route id, a member count and the sorted member unit
ids. A route whose units are not adjacent yields a MultiPolygon.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Final, Literal

import geopandas as gpd
import numpy as np
import pandas as pd

# =============================================================================
# CONFIGURATION
# =============================================================================

CHECKPOINT_LAYER: Final[str] = "zones"
UNIT_ID_SEPARATOR: Final[str] = ";"
REL_TOLERANCE: Final[float] = 1e-7  # area tolerance as a share of total unit area

DissolveMethod = Literal["unary", "coverage"]

LOGGER = logging.getLogger(__name__)

# =============================================================================
# DATA STRUCTURES
# =============================================================================


class PartitionError(ValueError):
    """Raised when zones do not form an exact partition of the assigned units."""


# =============================================================================
# DISSOLVE
# =============================================================================


def zone_members(assignments: pd.DataFrame) -> dict[str, tuple[str, ...]]:
    """Map each route id to the sorted ids of its member units."""
    return {
        route: tuple(sorted(str(uid) for uid in ids))
        for route, ids in assignments.groupby("route_id", sort=True)["unit_id"]
    }


def _union_groups(
    assignments: gpd.GeoDataFrame, method: DissolveMethod, workers: int
) -> gpd.GeoSeries:
    """Union each route's member geometries, optionally across a thread pool."""
    groups = [(route, grp.geometry) for route, grp in assignments.groupby("route_id", sort=True)]

    def _union(geoms: gpd.GeoSeries):
        return geoms.union_all(method=method)

    with ThreadPoolExecutor(max_workers=workers) as pool:
        merged = list(pool.map(_union, [geoms for _, geoms in groups]))

    return gpd.GeoSeries(
        merged,
        index=pd.Index([route for route, _ in groups], name="route_id"),
        crs=assignments.crs,
    )


def dissolve_zones(
    assignments: gpd.GeoDataFrame,
    workers: int = 1,
    method: DissolveMethod = "unary",
) -> gpd.GeoDataFrame:
    """Merge units sharing a ``route_id`` into one zone per route.

    Args:
        assignments: Output of ``assign_units_to_routes``.
        workers:     Threads for per-route unions; 1 uses ``GeoDataFrame.dissolve``.
        method:      ``"unary"`` or ``"coverage"`` (faster, edge-matched input only).

    Returns:
        GeoDataFrame with ``route_id``, ``unit_count``, ``unit_ids`` and
        geometry, sorted by ``route_id``.
    """
    missing = [c for c in ("unit_id", "route_id") if c not in assignments.columns]
    if missing:
        raise KeyError(f"Missing required columns in assignments: {missing}")
    if assignments["route_id"].isna().any():
        raise ValueError("Assignments contain units without a route_id")
    if assignments.empty:
        raise ValueError("No assignments to dissolve")

    LOGGER.info(
        "Dissolving %d unit(s) into %d route zone(s)…",
        len(assignments),
        assignments["route_id"].nunique(),
    )

    if workers > 1:
        geometry = _union_groups(assignments, method, workers)
    else:
        geometry = (
            assignments[["route_id", "geometry"]]
            .dissolve(by="route_id", method=method, sort=True)
            .geometry
        )

    members = zone_members(assignments)
    routes = list(members)

    zones = gpd.GeoDataFrame(
        {
            "route_id": routes,
            "unit_count": [len(ids) for ids in members.values()],
            "unit_ids": list(members.values()),
            "geometry": geometry.loc[routes].values,
        },
        geometry="geometry",
        crs=assignments.crs,
    )

    multipart = int((zones.geometry.geom_type == "MultiPolygon").sum())
    if multipart:
        LOGGER.info("%d zone(s) are multi-part.", multipart)
    return zones[["route_id", "unit_count", "unit_ids", "geometry"]]


# =============================================================================
# VALIDATION
# =============================================================================


def validate_partition(
    zones: gpd.GeoDataFrame,
    assignments: gpd.GeoDataFrame,
    rel_tolerance: float = REL_TOLERANCE,
) -> None:
    """Check that *zones* partition *assignments* exactly.

    Raises:
        PartitionError: On duplicated or dropped members, members filed under
            the wrong route, a zone union that differs from the unit union, or
            two zones overlapping in area.
    """
    member_ids = [uid for ids in zones["unit_ids"] for uid in ids]
    if len(member_ids) != len(set(member_ids)):
        counts = pd.Series(member_ids).value_counts()
        shared = counts[counts > 1].index[:10].tolist()
        raise PartitionError(f"Units in more than one zone: {shared}")

    expected = set(assignments["unit_id"])
    if set(member_ids) != expected:
        dropped = sorted(expected - set(member_ids))
        extra = sorted(set(member_ids) - expected)
        raise PartitionError(
            f"Zone membership mismatch: dropped={dropped[:10]} extra={extra[:10]}"
        )

    expected_members = zone_members(assignments)
    for route, ids in zip(zones["route_id"], zones["unit_ids"]):
        if tuple(sorted(ids)) != expected_members.get(route, ()):
            raise PartitionError(
                f"Zone {route!r} members do not match the units assigned to that route"
            )

    unit_union = assignments.geometry.union_all()
    tolerance = rel_tolerance * unit_union.area

    gap = zones.geometry.union_all().symmetric_difference(unit_union).area
    if gap > tolerance:
        raise PartitionError(f"Zone union differs from unit union by area {gap:.6g}")

    left, right = zones.sindex.query(zones.geometry, predicate="intersects")
    pairs = left < right
    for i, j in zip(left[pairs], right[pairs]):
        overlap = zones.geometry.iloc[i].intersection(zones.geometry.iloc[j]).area
        if overlap > tolerance:
            raise PartitionError(
                f"Zones {zones['route_id'].iloc[i]!r} and {zones['route_id'].iloc[j]!r} "
                f"overlap by area {overlap:.6g}"
            )

    LOGGER.info("Partition check passed for %d zone(s).", len(zones))


# =============================================================================
# CHECKPOINT
# =============================================================================


def save_zone_checkpoint(zones: gpd.GeoDataFrame, path: str | Path) -> Path:
    """Write *zones* to a GeoPackage checkpoint, replacing any existing file."""
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    if path.exists():
        path.unlink()

    out = zones.copy()
    out["unit_ids"] = [UNIT_ID_SEPARATOR.join(ids) for ids in out["unit_ids"]]
    out.to_file(path, layer=CHECKPOINT_LAYER, driver="GPKG")
    LOGGER.info("Wrote zone checkpoint → %s", path)
    return path


def load_zone_checkpoint(path: str | Path) -> gpd.GeoDataFrame:
    """Read a checkpoint written by :func:`save_zone_checkpoint`."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Zone checkpoint not found: {path}")

    zones = gpd.read_file(path, layer=CHECKPOINT_LAYER)
    missing = [c for c in ("route_id", "unit_count", "unit_ids") if c not in zones.columns]
    if missing:
        raise KeyError(f"Checkpoint {path} is missing columns: {missing}")

    zones["route_id"] = zones["route_id"].astype(str)
    zones["unit_count"] = zones["unit_count"].astype(np.int64)
    zones["unit_ids"] = [
        tuple(s.split(UNIT_ID_SEPARATOR)) if s else () for s in zones["unit_ids"].fillna("")
    ]
    LOGGER.info("Loaded %d zone(s) from checkpoint %s", len(zones), path)
    return zones[["route_id", "unit_count", "unit_ids", "geometry"]]
