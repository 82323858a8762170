"""Load Census boundary layers and join a population table onto them.

This module assumes you already have:

    1. TIGER tract and block geometry (shapefile, GeoPackage, GeoJSON ...); and
    2. a population-by-area CSV keyed by a Census ``GEO_ID``.

Census ``GEO_ID`` values carry a summary-level prefix
(``1400000US51059415100``); only the trailing FIPS digits are used as the key.
"""

from __future__ import annotations

import logging
from pathlib import Path
from typing import Final

import geopandas as gpd
import pandas as pd
from geopandas import GeoDataFrame
from pandas import DataFrame

# =============================================================================
# CONFIGURATION
# =============================================================================

TRACT_KEY: Final[str] = "GEOID"  # 11-digit tract FIPS in TIGER tract layers
BLOCK_KEY: Final[str] = "GEOID20"  # 15-digit block FIPS in TABBLOCK20 layers
TABLE_KEY: Final[str] = "GEO_ID"  # key column in the population CSV
TABLE_POP_FIELD: Final[str] = "P1_001N"  # 2020 decennial total population

TRACT_KEY_LENGTH: Final[int] = 11
POPULATION_FIELD: Final[str] = "population"

LOGGER: Final[logging.Logger] = logging.getLogger(__name__)

# =============================================================================
# FUNCTIONS
# =============================================================================


def load_area_units(
    path: str | Path,
    key: str,
    projected_crs: str | None = None,
) -> GeoDataFrame:
    """Read polygon area units from *path*.

    Args:
        path:          Path to any vector file GeoPandas can read.
        key:           Column expected to hold the unit identifier.
        projected_crs: Reproject to this CRS when given.

    Returns:
    -------
        GeoDataFrame with *key* coerced to ``str``.

    Raises:
    ------
    FileNotFoundError
        If *path* does not exist.
    KeyError
        If *key* is missing from the file.
    ValueError
        If the layer has no CRS or contains duplicate keys.
    """
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"Boundary layer not found: {path}")

    LOGGER.info("Reading geometry: %s", path)
    gdf: GeoDataFrame = gpd.read_file(path)
    if key not in gdf.columns:
        raise KeyError(f"'{key}' not found in {path}")
    if gdf.crs is None:
        raise ValueError(f"Layer has no CRS; define it before running: {path}")

    gdf[key] = gdf[key].astype(str)
    dupes = gdf[key][gdf[key].duplicated()].unique().tolist()
    if dupes:
        raise ValueError(f"Duplicate '{key}' values in {path}: {dupes[:10]}")

    if projected_crs is not None and gdf.crs != projected_crs:
        gdf = gdf.to_crs(projected_crs)

    LOGGER.info("Loaded %d unit(s) from %s", len(gdf), path.name)
    return gdf


def normalize_geoid(values: pd.Series, key_length: int) -> pd.Series:
    """Keep the trailing *key_length* characters of each identifier."""
    return values.astype(str).str.strip().str[-key_length:]


def load_population_table(
    csv_path: str | Path,
    key: str = TABLE_KEY,
    pop_field: str = TABLE_POP_FIELD,
    key_length: int = TRACT_KEY_LENGTH,
) -> DataFrame:
    """Read the population table and return ``[key, population]``.

    Census API downloads carry a second descriptive header row; rows whose
    population does not parse as a number are dropped with a warning.
    """
    csv_path = Path(csv_path)
    if not csv_path.exists():
        raise FileNotFoundError(f"Population table not found: {csv_path}")

    df = pd.read_csv(csv_path, dtype=str, encoding="utf-8-sig")
    missing = [c for c in (key, pop_field) if c not in df.columns]
    if missing:
        raise KeyError(f"Missing required columns in {csv_path}: {missing}")

    out = pd.DataFrame(
        {
            key: normalize_geoid(df[key], key_length),
            POPULATION_FIELD: pd.to_numeric(
                df[pop_field].str.replace(",", "", regex=False), errors="coerce"
            ),
        }
    )
    bad = out[POPULATION_FIELD].isna()
    if bad.any():
        LOGGER.warning("Dropped %d population row(s) without a numeric value.", int(bad.sum()))
        out = out.loc[~bad]

    dupes = out[key][out[key].duplicated()].unique().tolist()
    if dupes:
        raise ValueError(f"Duplicate keys in population table {csv_path}: {dupes[:10]}")

    LOGGER.info("Loaded population for %d area(s).", len(out))
    return out.reset_index(drop=True)


def join_population(
    units: GeoDataFrame,
    population: DataFrame,
    unit_key: str = TRACT_KEY,
    table_key: str = TABLE_KEY,
) -> GeoDataFrame:
    """Attach ``population`` to every unit on the specified keys.

    Table rows outside the units' extent are ignored, but every unit must
    find a population row.

    Raises:
    ------
    ValueError
        If any unit has no matching population row, or keys are not 1 : 1.
    """
    LOGGER.info("Merging geometry (%d) with table (%d)…", len(units), len(population))
    table = population[[table_key, POPULATION_FIELD]]
    merged: GeoDataFrame = units.drop(columns=[POPULATION_FIELD], errors="ignore").merge(
        table,
        left_on=unit_key,
        right_on=table_key,
        how="left",
        validate="1:1",
    )
    if table_key != unit_key:
        merged = merged.drop(columns=[table_key])

    unmatched = merged.loc[merged[POPULATION_FIELD].isna(), unit_key]
    if not unmatched.empty:
        raise ValueError(
            f"{len(unmatched)} unit(s) have no population row: {unmatched.head(10).tolist()}"
        )

    LOGGER.info("Merged result → %d rows, %d columns", *merged.shape)
    return merged
