from __future__ import annotations

import math

import geopandas as gpd
import pandas as pd
import pytest
from shapely.geometry import Point, box

from route_zones.zone_tools.study_area_filter import (
    StudyAreaCoverage,
    select_study_area,
    summarize_coverage,
)

CRS = "EPSG:5070"


@pytest.fixture
def tracts() -> gpd.GeoDataFrame:
    """Five 1 km tracts in a row; the stop sits inside the first one."""
    return gpd.GeoDataFrame(
        {
            "GEOID": [f"510590{i:03d}00" for i in range(1, 6)],
            "population": [1000, 2000, 3000, 4000, 0],
            "ALAND": [1_000_000, 1_000_000, 1_000_000, 1_000_000, 6_000_000],
        },
        geometry=[box(i * 1000, 0, (i + 1) * 1000, 1000) for i in range(5)],
        crs=CRS,
    )


@pytest.fixture
def stops() -> gpd.GeoDataFrame:
    # 499 m from tract 2, 1499 m from tract 3
    return gpd.GeoDataFrame(
        {"stop_id": ["S1"], "route_id": ["1"]},
        geometry=[Point(501, 500)],
        crs=CRS,
    )


def test_select_study_area_uses_distance_threshold(tracts, stops) -> None:
    """Test that only tracts within the distance of a stop are selected."""
    selected = select_study_area(tracts, stops, distance=500.0)
    assert selected["GEOID"].tolist() == ["51059000100", "51059000200"]


def test_select_study_area_any_stop_counts(tracts, stops) -> None:
    """Test that proximity to any one stop is enough."""
    far_stop = gpd.GeoDataFrame(
        {"stop_id": ["S2"], "route_id": ["2"]}, geometry=[Point(4500, 1200)], crs=CRS
    )
    both = gpd.GeoDataFrame(
        pd.concat([stops, far_stop], ignore_index=True), geometry="geometry", crs=CRS
    )
    selected = select_study_area(tracts, both, distance=500.0)
    assert selected["GEOID"].tolist() == ["51059000100", "51059000200", "51059000500"]


def test_select_study_area_is_monotonic_in_distance(tracts, stops) -> None:
    """Test that a larger distance never selects fewer tracts."""
    previous: set[str] = set()
    for distance in (0.0, 100.0, 499.0, 500.0, 1500.0, 2500.0, 10_000.0):
        current = set(select_study_area(tracts, stops, distance=distance)["GEOID"])
        assert previous <= current
        previous = current
    assert len(previous) == len(tracts)


def test_select_study_area_does_not_mutate_inputs(tracts, stops) -> None:
    """Test that selection leaves both layers untouched."""
    before = tracts.copy()
    select_study_area(tracts, stops)
    assert tracts.equals(before)


def test_select_study_area_geographic_crs_raises(tracts, stops) -> None:
    """Test that a geographic CRS is rejected."""
    with pytest.raises(ValueError) as excinfo:
        select_study_area(tracts.to_crs("EPSG:4326"), stops.to_crs("EPSG:4326"))
    assert "geographic" in str(excinfo.value)


def test_select_study_area_crs_mismatch_raises(tracts, stops) -> None:
    """Test that layers in different CRSs are rejected."""
    with pytest.raises(ValueError) as excinfo:
        select_study_area(tracts, stops.to_crs("EPSG:3857"))
    assert "mismatch" in str(excinfo.value)


def test_select_study_area_empty_stops_raises(tracts, stops) -> None:
    """Test that an empty stop layer is rejected."""
    with pytest.raises(ValueError):
        select_study_area(tracts, stops.iloc[0:0])


def test_select_study_area_missing_key_raises(tracts, stops) -> None:
    """Test that a missing tract key column is reported."""
    with pytest.raises(KeyError):
        select_study_area(tracts, stops, unit_key="GEOID20")


def test_summarize_coverage_uses_population_and_aland(tracts) -> None:
    """Test coverage shares from population and ALAND."""
    coverage = summarize_coverage(tracts, ["51059000100", "51059000200"])
    assert isinstance(coverage, StudyAreaCoverage)
    assert coverage.units_selected == 2
    assert coverage.units_total == 5
    assert coverage.population_share == pytest.approx(0.3)
    assert coverage.land_area_share == pytest.approx(0.2)


def test_summarize_coverage_falls_back_to_geometry_area(tracts) -> None:
    """Test land share from polygon area when ALAND is absent."""
    bare = tracts.drop(columns=["population", "ALAND"])
    coverage = summarize_coverage(bare, ["51059000100"])
    assert math.isnan(coverage.population_share)
    assert coverage.land_area_share == pytest.approx(0.2)
