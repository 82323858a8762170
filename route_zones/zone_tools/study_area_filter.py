"""Select the coarse area units (tracts) that lie near any stop.

A unit is part of the study area when its polygon comes within
``BUFFER_DISTANCE`` (CRS units, meters by default) of at least one stop. The
lookup runs against the GeoPandas spatial index with a ``dwithin`` predicate,
so no stop buffers are built.

Coverage statistics (population and land-area share of the selection) are
informational and do not affect the selection.
"""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass
from typing import Final, Iterable, Optional, Sequence

import geopandas as gpd
import numpy as np
import pandas as pd

# =============================================================================
# CONFIGURATION
# =============================================================================

BUFFER_DISTANCE: Final[float] = 500.0
UNIT_KEY: Final[str] = "GEOID"
POPULATION_FIELD: Final[str] = "population"
LAND_AREA_FIELDS: Final[tuple[str, ...]] = ("ALAND", "ALAND20")

LOGGER = logging.getLogger(__name__)

# =============================================================================
# DATA STRUCTURES
# =============================================================================


@dataclass(frozen=True)
class StudyAreaCoverage:
    """Share of the full extent captured by the study area."""

    units_selected: int
    units_total: int
    population_share: float
    land_area_share: float


# =============================================================================
# HELPERS
# =============================================================================


def check_projected_crs(*layers: gpd.GeoDataFrame) -> None:
    """Raise if the layers lack a CRS, disagree on it, or use a geographic one."""
    crs_set = {str(layer.crs) for layer in layers}
    if any(layer.crs is None for layer in layers):
        raise ValueError("Input layer has no CRS; define it before running.")
    if len(crs_set) != 1:
        raise ValueError(f"CRS mismatch between input layers: {', '.join(sorted(crs_set))}")
    if layers[0].crs.is_geographic:
        raise ValueError(
            f"Layers use a geographic CRS ({layers[0].crs}); reproject to a projected CRS "
            "so distances are linear units."
        )


def _share(part: float, whole: float) -> float:
    return float(part / whole) if whole else math.nan


# =============================================================================
# CORE STEPS
# =============================================================================


def select_study_area(
    units: gpd.GeoDataFrame,
    stops: gpd.GeoDataFrame,
    distance: float = BUFFER_DISTANCE,
    unit_key: str = UNIT_KEY,
) -> gpd.GeoDataFrame:
    """Return the units within *distance* of at least one stop.

    Args:
        units:    Coarse polygons (full extent).
        stops:    Resolved stop points.
        distance: Inclusive threshold in CRS units.
        unit_key: Identifier column in *units*.

    Returns:
        Subset of *units* sorted by *unit_key*.

    Raises:
        KeyError:   If *unit_key* is missing.
        ValueError: On negative distance, an empty stop layer or CRS problems.
    """
    if unit_key not in units.columns:
        raise KeyError(f"'{unit_key}' not found in area units")
    if distance < 0:
        raise ValueError(f"Distance must be non-negative, got {distance}")
    if stops.empty:
        raise ValueError("No stops supplied; the study area would be empty.")
    check_projected_crs(units, stops)

    # query() returns [stop positions, unit positions]
    _, unit_pos = units.sindex.query(stops.geometry, predicate="dwithin", distance=distance)
    hit = np.unique(unit_pos)

    selected = units.iloc[hit].sort_values(unit_key).reset_index(drop=True)
    LOGGER.info(
        "Selected %d of %d unit(s) within %s of %d stop(s).",
        len(selected),
        len(units),
        distance,
        len(stops),
    )
    return selected


def summarize_coverage(
    units: gpd.GeoDataFrame,
    selected_keys: Iterable[str],
    unit_key: str = UNIT_KEY,
    population_field: str = POPULATION_FIELD,
    land_area_fields: Sequence[str] = LAND_AREA_FIELDS,
) -> StudyAreaCoverage:
    """Compute the population and land-area share covered by *selected_keys*.

    Population share is ``nan`` when *population_field* is absent. Land area
    comes from the first Census ``ALAND`` style field present, falling back
    to projected polygon area.
    """
    mask = units[unit_key].isin(pd.Index(list(selected_keys)))

    pop_share = math.nan
    if population_field in units.columns:
        pop = pd.to_numeric(units[population_field], errors="coerce").fillna(0.0)
        pop_share = _share(pop[mask].sum(), pop.sum())

    land_field: Optional[str] = next((f for f in land_area_fields if f in units.columns), None)
    if land_field is not None:
        land = pd.to_numeric(units[land_field], errors="coerce").fillna(0.0)
    else:
        land = units.geometry.area
    land_share = _share(land[mask].sum(), land.sum())

    coverage = StudyAreaCoverage(
        units_selected=int(mask.sum()),
        units_total=len(units),
        population_share=pop_share,
        land_area_share=land_share,
    )
    LOGGER.info(
        "Study area covers %.1f%% of population and %.1f%% of land area.",
        coverage.population_share * 100,
        coverage.land_area_share * 100,
    )
    return coverage
