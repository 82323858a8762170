"""Resolve each stop in a wide ridership table to its dominant route.

The ridership export carries one row per stop with a location and a set of
parallel slots (``ROUTE_1``/``ACTIVITY_1`` ... ``ROUTE_18``/``ACTIVITY_18``).
Each route slot holds a composite label such as ``"12 - Northbound"``; the
matching activity slot holds combined boardings plus alightings as text.

Steps:
    1. Discover the slot columns by pattern (no fixed slot count).
    2. Reshape the slots to a long table, dropping empty slots and activity
       values that cannot be parsed.
    3. Keep the entry with the highest activity per stop.

Tie policy:
    When several entries share the maximum activity, the smallest route id
    (string order) wins, then the lowest slot number.

A stop with no valid entry cannot be given a route and raises
``UnresolvedStopError``.
"""

from __future__ import annotations

import logging
import re
from pathlib import Path
from typing import Final, Iterable, NamedTuple, Sequence

import geopandas as gpd
import numpy as np
import pandas as pd

# =============================================================================
# CONFIGURATION
# =============================================================================

STOP_ID_FIELD: Final[str] = "STOP_ID"
LAT_FIELD: Final[str] = "LATITUDE"
LON_FIELD: Final[str] = "LONGITUDE"

# Slot columns are paired on the captured number
ROUTE_SLOT_PATTERN: Final[str] = r"^ROUTE_(\d+)$"
ACTIVITY_SLOT_PATTERN: Final[str] = r"^ACTIVITY_(\d+)$"

ROUTE_LABEL_DELIMITER: Final[str] = "-"

INPUT_CRS: Final[str] = "EPSG:4326"

LOGGER = logging.getLogger(__name__)

# =============================================================================
# DATA STRUCTURES
# =============================================================================


class RouteLabel(NamedTuple):
    """Structured form of a composite route label."""

    route_id: str
    direction: str


class UnresolvedStopError(ValueError):
    """Raised when one or more stops carry no usable route/activity entry."""

    def __init__(self, stop_ids: Sequence[str]) -> None:
        self.stop_ids = list(stop_ids)
        preview = ", ".join(self.stop_ids[:10])
        more = f" (+{len(self.stop_ids) - 10} more)" if len(self.stop_ids) > 10 else ""
        super().__init__(
            f"{len(self.stop_ids)} stop(s) have no valid route activity: {preview}{more}"
        )


# =============================================================================
# HELPERS
# =============================================================================


def parse_route_label(raw: str, delimiter: str = ROUTE_LABEL_DELIMITER) -> RouteLabel:
    """Split ``raw`` once on ``delimiter`` into route id and direction.

    >>> parse_route_label("12 - Northbound")
    RouteLabel(route_id='12', direction='Northbound')
    """
    if raw is None:
        raise ValueError("Route label is missing")
    head, _, tail = str(raw).partition(delimiter)
    route_id = head.strip()
    if not route_id:
        raise ValueError(f"Route label has no route id: {raw!r}")
    return RouteLabel(route_id=route_id, direction=tail.strip())


def coerce_numeric(series: pd.Series) -> pd.Series:
    """Coerce string-like numbers with thousands separators to float (NaN if unparseable)."""
    cleaned = series.astype(str).str.replace(",", "", regex=False).str.strip()
    return pd.to_numeric(cleaned, errors="coerce").astype(float)


def _is_blank(series: pd.Series) -> pd.Series:
    """Return True where a value is missing or whitespace only."""
    return series.isna() | series.astype(str).str.strip().eq("")


def _require_columns(df: pd.DataFrame, required: Iterable[str], context: str) -> None:
    """Raise a clear error if required columns are missing."""
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise KeyError(f"Missing required columns in {context}: {missing}")


def read_ridership_table(path: Path) -> pd.DataFrame:
    """Read the stop ridership export (CSV or Excel) with every column as text.

    Only empty cells are missing; tokens such as ``n/a`` or ``NULL`` stay as
    text so they are reported as unparseable activity.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Ridership file not found: {path}")

    if path.suffix.lower() in {".xlsx", ".xls"}:
        df = pd.read_excel(path, dtype=str, keep_default_na=False, na_values=[""])
    else:
        df = pd.read_csv(
            path, dtype=str, encoding="utf-8-sig", keep_default_na=False, na_values=[""]
        )

    LOGGER.info("Loaded ridership table with %d rows: %s", len(df), path)
    return df


# =============================================================================
# CORE STEPS
# =============================================================================


def find_route_slots(
    columns: Iterable[str],
    route_pattern: str = ROUTE_SLOT_PATTERN,
    activity_pattern: str = ACTIVITY_SLOT_PATTERN,
) -> list[tuple[int, str, str]]:
    """Pair route and activity slot columns by slot number.

    Returns:
        ``(slot, route_column, activity_column)`` tuples ordered by slot.

    Raises:
        KeyError: If no slots are found or a slot is missing its partner.
    """
    route_rx = re.compile(route_pattern)
    activity_rx = re.compile(activity_pattern)

    route_cols: dict[int, str] = {}
    activity_cols: dict[int, str] = {}
    for col in columns:
        col = str(col)
        if m := route_rx.match(col):
            route_cols[int(m.group(1))] = col
        elif m := activity_rx.match(col):
            activity_cols[int(m.group(1))] = col

    if not route_cols:
        raise KeyError(f"No route slot columns match pattern {route_pattern!r}")

    unpaired = sorted(set(route_cols) ^ set(activity_cols))
    if unpaired:
        raise KeyError(f"Route/activity slots without a partner column: {unpaired}")

    return [(n, route_cols[n], activity_cols[n]) for n in sorted(route_cols)]


def melt_route_slots(
    df: pd.DataFrame,
    stop_id_field: str = STOP_ID_FIELD,
    route_pattern: str = ROUTE_SLOT_PATTERN,
    activity_pattern: str = ACTIVITY_SLOT_PATTERN,
    delimiter: str = ROUTE_LABEL_DELIMITER,
) -> pd.DataFrame:
    """Reshape wide route/activity slots into one row per used slot.

    Empty slots are skipped. Non-empty activity values that do not parse as
    numbers, and route labels with no route id (e.g. ``" - NB"``), are dropped
    and reported.

    Returns:
        DataFrame with columns ``stop_id``, ``slot``, ``route_label_raw`` and
        ``activity``.
    """
    _require_columns(df, [stop_id_field], context="ridership table")
    slots = find_route_slots(df.columns, route_pattern, activity_pattern)
    LOGGER.debug("Found %d route/activity slot pair(s).", len(slots))

    frames: list[pd.DataFrame] = []
    for slot, route_col, activity_col in slots:
        frames.append(
            pd.DataFrame(
                {
                    "stop_id": df[stop_id_field].astype("string").str.strip(),
                    "slot": slot,
                    "route_label_raw": df[route_col],
                    "activity_raw": df[activity_col],
                }
            )
        )
    long = pd.concat(frames, ignore_index=True)

    used = ~_is_blank(long["route_label_raw"]) & ~_is_blank(long["activity_raw"])
    long = long.loc[used].copy()

    long["activity"] = coerce_numeric(long["activity_raw"])
    bad = long["activity"].isna()
    if bad.any():
        LOGGER.warning(
            "Discarded %d slot(s) with unparseable activity values (e.g. %s).",
            int(bad.sum()),
            long.loc[bad, "activity_raw"].head(3).tolist(),
        )
        long = long.loc[~bad].copy()

    long["route_label_raw"] = long["route_label_raw"].astype(str).str.strip()
    heads = long["route_label_raw"].str.split(delimiter, n=1, regex=False).str[0]
    no_route = heads.str.strip().eq("")
    if no_route.any():
        LOGGER.warning(
            "Discarded %d slot(s) with unparseable route labels (e.g. %s).",
            int(no_route.sum()),
            long.loc[no_route, "route_label_raw"].head(3).tolist(),
        )
        long = long.loc[~no_route]

    out = long[["stop_id", "slot", "route_label_raw", "activity"]].reset_index(drop=True)
    LOGGER.info("Route slots in use: %d across %d stop(s).", len(out), out["stop_id"].nunique())
    return out


def resolve_stop_routes(
    slots: pd.DataFrame,
    stop_ids: Iterable[str] | None = None,
    delimiter: str = ROUTE_LABEL_DELIMITER,
) -> pd.DataFrame:
    """Pick the highest-activity route for every stop.

    Args:
        slots:     Long slot table from :func:`melt_route_slots`.
        stop_ids:  Every stop that must receive a route. Defaults to the stops
                   present in ``slots``.
        delimiter: Route label delimiter.

    Returns:
        DataFrame with ``stop_id``, ``route_id``, ``direction`` and
        ``activity``, one row per stop, ordered by ``stop_id``.

    Raises:
        UnresolvedStopError: If a required stop has no valid entry.
    """
    work = slots.copy()
    labels = [parse_route_label(raw, delimiter) for raw in work["route_label_raw"]]
    work["route_id"] = [label.route_id for label in labels]
    work["direction"] = [label.direction for label in labels]

    work = work.sort_values(
        ["stop_id", "activity", "route_id", "slot"],
        ascending=[True, False, True, True],
        kind="mergesort",
    )
    resolved = (
        work.drop_duplicates(subset="stop_id", keep="first")[
            ["stop_id", "route_id", "direction", "activity"]
        ]
        .reset_index(drop=True)
    )

    expected = pd.Index(stop_ids if stop_ids is not None else resolved["stop_id"]).astype(str)
    missing = expected.difference(pd.Index(resolved["stop_id"].astype(str)))
    if len(missing):
        raise UnresolvedStopError(sorted(missing))

    resolved = resolved[resolved["stop_id"].isin(expected)].reset_index(drop=True)
    LOGGER.info(
        "Resolved %d stop(s) to %d distinct route(s).",
        len(resolved),
        resolved["route_id"].nunique(),
    )
    return resolved


def build_resolved_stops(
    df: pd.DataFrame,
    projected_crs: str,
    *,
    stop_id_field: str = STOP_ID_FIELD,
    lat_field: str = LAT_FIELD,
    lon_field: str = LON_FIELD,
    input_crs: str = INPUT_CRS,
    route_pattern: str = ROUTE_SLOT_PATTERN,
    activity_pattern: str = ACTIVITY_SLOT_PATTERN,
    delimiter: str = ROUTE_LABEL_DELIMITER,
) -> gpd.GeoDataFrame:
    """Turn the wide ridership table into resolved stop points.

    Returns:
        GeoDataFrame (``projected_crs``) with ``stop_id``, ``route_id``,
        ``direction``, ``activity`` and point geometry.

    Raises:
        KeyError:            Missing id/coordinate/slot columns.
        ValueError:          Duplicate stop ids or unusable coordinates.
        UnresolvedStopError: A stop with no valid route activity.
    """
    _require_columns(df, [stop_id_field, lat_field, lon_field], context="ridership table")

    stops = pd.DataFrame(
        {
            "stop_id": df[stop_id_field].astype("string").str.strip(),
            "lat": coerce_numeric(df[lat_field]),
            "lon": coerce_numeric(df[lon_field]),
        }
    )
    if _is_blank(stops["stop_id"]).any():
        raise ValueError("Ridership table contains rows without a stop id")

    dupes = stops["stop_id"][stops["stop_id"].duplicated()].unique().tolist()
    if dupes:
        raise ValueError(f"Duplicate stop ids in ridership table: {dupes[:10]}")

    bad_xy = stops[stops[["lat", "lon"]].isna().any(axis=1)]
    if not bad_xy.empty:
        raise ValueError(
            f"{len(bad_xy)} stop(s) have missing or invalid coordinates: "
            f"{bad_xy['stop_id'].head(10).tolist()}"
        )

    slots = melt_route_slots(df, stop_id_field, route_pattern, activity_pattern, delimiter)
    resolved = resolve_stop_routes(slots, stop_ids=stops["stop_id"], delimiter=delimiter)

    merged = stops.merge(resolved, on="stop_id", how="inner", validate="one_to_one")
    gdf = gpd.GeoDataFrame(
        merged[["stop_id", "route_id", "direction", "activity"]],
        geometry=gpd.points_from_xy(merged["lon"], merged["lat"]),
        crs=input_crs,
    )
    gdf["stop_id"] = gdf["stop_id"].astype(str)
    gdf["activity"] = gdf["activity"].astype(np.float64)
    return gdf.to_crs(projected_crs)
