"""Assign every fine area unit in the study area to its nearest stop's route.

Blocks are matched to the study area through their identifier: a 2020 block
GEOID (15 digits) starts with its 11-digit tract GEOID.

The nearest-stop lookup is not limited by the study-area threshold, so every
block in a selected tract receives a route. When two or more stops are
equally near, the smallest route id wins, then the smallest stop id.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Final, Iterable

import geopandas as gpd
import pandas as pd

from route_zones.zone_tools.study_area_filter import check_projected_crs

# =============================================================================
# CONFIGURATION
# =============================================================================

UNIT_KEY: Final[str] = "GEOID20"
TRACT_KEY_LENGTH: Final[int] = 11
CHUNK_SIZE: Final[int] = 5_000

OUTPUT_COLUMNS: Final[list[str]] = ["unit_id", "route_id", "stop_id", "stop_distance", "geometry"]

LOGGER = logging.getLogger(__name__)

# =============================================================================
# HELPERS
# =============================================================================


def ancestor_keys(keys: pd.Series, length: int = TRACT_KEY_LENGTH) -> pd.Series:
    """Truncate fine-unit identifiers to their coarse-unit prefix."""
    return keys.astype(str).str[:length]


def filter_units_to_study_area(
    units: gpd.GeoDataFrame,
    study_keys: Iterable[str],
    unit_key: str = UNIT_KEY,
    length: int = TRACT_KEY_LENGTH,
) -> gpd.GeoDataFrame:
    """Keep the fine units whose coarse ancestor is in *study_keys*.

    Raises:
        KeyError:   *unit_key* missing from *units*.
        ValueError: A study-area key matches no fine unit.
    """
    if unit_key not in units.columns:
        raise KeyError(f"'{unit_key}' not found in fine area units")

    keys = pd.Index([str(k) for k in study_keys])
    mask = ancestor_keys(units[unit_key], length).isin(keys)
    kept = units.loc[mask].reset_index(drop=True)

    found = set(ancestor_keys(kept[unit_key], length))
    empty = sorted(set(keys) - found)
    if empty:
        raise ValueError(
            f"{len(empty)} study-area unit(s) match no fine unit on a {length}-character "
            f"prefix of '{unit_key}': {empty[:10]}"
        )

    LOGGER.info("Kept %d of %d fine unit(s) inside the study area.", len(kept), len(units))
    return kept


def _nearest_chunk(units: gpd.GeoDataFrame, stops: gpd.GeoDataFrame) -> pd.DataFrame:
    """Nearest stop per unit for one chunk; ties broken on route id then stop id."""
    joined = gpd.sjoin_nearest(
        units,
        stops,
        how="left",
        distance_col="stop_distance",
    )
    joined = joined.sort_values(
        ["unit_id", "stop_distance", "route_id", "stop_id"],
        kind="mergesort",
        na_position="last",
    )
    return joined.drop_duplicates(subset="unit_id", keep="first")


# =============================================================================
# CORE STEPS
# =============================================================================


def assign_units_to_routes(
    units: gpd.GeoDataFrame,
    stops: gpd.GeoDataFrame,
    unit_key: str = UNIT_KEY,
    workers: int = 1,
    chunk_size: int = CHUNK_SIZE,
) -> gpd.GeoDataFrame:
    """Copy the route of each unit's nearest stop onto the unit.

    Args:
        units:      Fine polygons already restricted to the study area.
        stops:      Resolved stops with ``stop_id`` and ``route_id``.
        unit_key:   Identifier column in *units*.
        workers:    Threads used for the nearest lookup; chunks are independent.
        chunk_size: Units per chunk when ``workers > 1``.

    Returns:
        GeoDataFrame with ``unit_id``, ``route_id``, ``stop_id``,
        ``stop_distance`` and the unit geometry, one row per input unit in
        input order.

    Raises:
        KeyError:   Missing identifier or stop columns.
        ValueError: Duplicate unit ids, CRS problems, or units without a stop.
    """
    if unit_key not in units.columns:
        raise KeyError(f"'{unit_key}' not found in fine area units")
    missing = [c for c in ("stop_id", "route_id") if c not in stops.columns]
    if missing:
        raise KeyError(f"Missing required columns in stops: {missing}")
    check_projected_crs(units, stops)

    left = gpd.GeoDataFrame(
        {"unit_id": units[unit_key].astype(str).to_numpy()},
        geometry=units.geometry.to_numpy(),
        crs=units.crs,
    )
    dupes = left["unit_id"][left["unit_id"].duplicated()].unique().tolist()
    if dupes:
        raise ValueError(f"Duplicate unit ids: {dupes[:10]}")
    if left.empty:
        raise ValueError("No fine units to assign; check the study area and unit layer.")
    if stops.empty:
        raise ValueError(f"{len(left)} unit(s) have no reachable stop: the stop layer is empty.")

    right = stops[["stop_id", "route_id", "geometry"]].reset_index(drop=True)
    right = right.assign(
        stop_id=right["stop_id"].astype(str), route_id=right["route_id"].astype(str)
    )

    if workers > 1 and len(left) > chunk_size:
        chunks = [left.iloc[i : i + chunk_size] for i in range(0, len(left), chunk_size)]
        LOGGER.info("Nearest-stop lookup: %d chunk(s) on %d worker(s).", len(chunks), workers)
        right.sindex  # built once, shared read-only by the workers
        with ThreadPoolExecutor(max_workers=workers) as pool:
            parts = list(pool.map(lambda chunk: _nearest_chunk(chunk, right), chunks))
        nearest = pd.concat(parts)
    else:
        nearest = _nearest_chunk(left, right)

    unassigned = nearest.loc[nearest["route_id"].isna(), "unit_id"]
    if not unassigned.empty or len(nearest) != len(left):
        raise ValueError(
            f"{max(len(unassigned), len(left) - len(nearest))} unit(s) have no reachable "
            f"stop: {unassigned.head(10).tolist()}"
        )

    out = nearest.set_index("unit_id").loc[left["unit_id"]].reset_index()
    out = gpd.GeoDataFrame(out[OUTPUT_COLUMNS], geometry="geometry", crs=units.crs)
    LOGGER.info(
        "Assigned %d unit(s) to %d route(s); max stop distance %.1f.",
        len(out),
        out["route_id"].nunique(),
        float(out["stop_distance"].max()),
    )
    return out


def assignment_table(assignments: gpd.GeoDataFrame) -> pd.DataFrame:
    """Return the ``unit_id``/``route_id`` pairs without geometry."""
    return pd.DataFrame(assignments[["unit_id", "route_id"]]).reset_index(drop=True)
