from __future__ import annotations

import geopandas as gpd
import numpy as np
import pandas as pd
import pytest
from shapely.geometry import Point, box

from route_zones.zone_tools.unit_zone_assigner import (
    ancestor_keys,
    assign_units_to_routes,
    assignment_table,
    filter_units_to_study_area,
)

CRS = "EPSG:5070"


def _stops(rows: list[tuple[str, str, float, float]]) -> gpd.GeoDataFrame:
    """Build stops from (stop_id, route_id, x, y) tuples."""
    return gpd.GeoDataFrame(
        {"stop_id": [r[0] for r in rows], "route_id": [r[1] for r in rows]},
        geometry=[Point(r[2], r[3]) for r in rows],
        crs=CRS,
    )


@pytest.fixture
def grid_blocks() -> gpd.GeoDataFrame:
    """A 6 x 4 grid of 100 m blocks split over two tracts."""
    geoids, geoms = [], []
    for row in range(4):
        for col in range(6):
            tract = "51059000100" if col < 3 else "51059000200"
            geoids.append(f"{tract}{row}{col:03d}")
            geoms.append(box(col * 100, row * 100, (col + 1) * 100, (row + 1) * 100))
    return gpd.GeoDataFrame({"GEOID20": geoids}, geometry=geoms, crs=CRS)


@pytest.fixture
def scattered_stops() -> gpd.GeoDataFrame:
    rng = np.random.default_rng(2020)
    xy = rng.uniform(-50, 650, size=(9, 2))
    rows = [(f"S{i}", f"R{i % 4}", float(x), float(y)) for i, (x, y) in enumerate(xy)]
    return _stops(rows)


def test_ancestor_keys_truncates() -> None:
    """Test that block ids truncate to their tract prefix."""
    keys = pd.Series(["510590001001000", "510590002002011"])
    assert ancestor_keys(keys).tolist() == ["51059000100", "51059000200"]
    assert ancestor_keys(keys, length=5).tolist() == ["51059", "51059"]


def test_filter_units_to_study_area(grid_blocks) -> None:
    """Test that only blocks of study-area tracts are kept."""
    kept = filter_units_to_study_area(grid_blocks, ["51059000200"])

    assert len(kept) == 12
    assert kept["GEOID20"].str.startswith("51059000200").all()


def test_filter_units_study_key_without_blocks_raises(grid_blocks) -> None:
    """Test that a study-area tract with no blocks aborts with the tract id."""
    with pytest.raises(ValueError) as excinfo:
        filter_units_to_study_area(grid_blocks, ["51059000100", "51059000999"])
    assert "51059000999" in str(excinfo.value)
    assert "51059000100" not in str(excinfo.value)


def test_filter_units_missing_key_column_raises(grid_blocks) -> None:
    """Test that a missing block id column is reported."""
    with pytest.raises(KeyError):
        filter_units_to_study_area(grid_blocks, ["51059000100"], unit_key="GEOID")


def test_every_unit_gets_route_of_nearest_stop(grid_blocks, scattered_stops) -> None:
    """Test that each block takes the route of a nearest stop."""
    out = assign_units_to_routes(grid_blocks, scattered_stops)

    assert len(out) == len(grid_blocks)
    assert out["unit_id"].tolist() == grid_blocks["GEOID20"].tolist()
    assert out["route_id"].notna().all()

    for _, unit in out.iterrows():
        distances = scattered_stops.distance(unit.geometry)
        nearest = distances.min()
        assert unit["stop_distance"] == pytest.approx(nearest)
        candidates = scattered_stops.loc[np.isclose(distances, nearest), "route_id"]
        assert unit["route_id"] in set(candidates)


def test_equidistant_stops_resolve_to_smallest_route(grid_blocks) -> None:
    """Test that equidistant stops go to the smallest route id in any input order."""
    unit = grid_blocks.iloc[[0]]  # box(0, 0, 100, 100)
    stops = _stops([("S9", "B", 50.0, 150.0), ("S1", "A", 150.0, 50.0)])

    first = assign_units_to_routes(unit, stops)
    second = assign_units_to_routes(unit, stops.iloc[::-1])

    assert first.loc[0, "route_id"] == "A"
    assert first.loc[0, "stop_id"] == "S1"
    assert second.loc[0, "route_id"] == "A"


def test_equidistant_same_route_resolves_to_smallest_stop(grid_blocks) -> None:
    """Test that equidistant stops on one route go to the smallest stop id."""
    unit = grid_blocks.iloc[[0]]
    stops = _stops([("S9", "A", 50.0, 150.0), ("S1", "A", 150.0, 50.0)])
    out = assign_units_to_routes(unit, stops)
    assert out.loc[0, "stop_id"] == "S1"


def test_assignment_ignores_study_area_threshold(grid_blocks) -> None:
    """Test that a far-away stop still claims blocks when it is the nearest."""
    stops = _stops([("S1", "7", 50_000.0, 50_000.0)])
    out = assign_units_to_routes(grid_blocks, stops)
    assert (out["route_id"] == "7").all()
    assert out["stop_distance"].min() > 40_000


def test_threaded_chunks_match_single_pass(grid_blocks, scattered_stops) -> None:
    """Test that chunked threaded lookups equal the single-pass result."""
    single = assign_units_to_routes(grid_blocks, scattered_stops)
    threaded = assign_units_to_routes(grid_blocks, scattered_stops, workers=3, chunk_size=5)
    pd.testing.assert_frame_equal(
        pd.DataFrame(single.drop(columns="geometry")),
        pd.DataFrame(threaded.drop(columns="geometry")),
    )
    assert single.geometry.geom_equals(threaded.geometry).all()


def test_no_stops_raises(grid_blocks, scattered_stops) -> None:
    """Test that an empty stop layer leaves units unassigned and raises."""
    with pytest.raises(ValueError) as excinfo:
        assign_units_to_routes(grid_blocks, scattered_stops.iloc[0:0])
    assert "no reachable stop" in str(excinfo.value)


def test_no_units_raises(grid_blocks, scattered_stops) -> None:
    """Test that an empty unit layer is rejected."""
    with pytest.raises(ValueError):
        assign_units_to_routes(grid_blocks.iloc[0:0], scattered_stops)


def test_duplicate_unit_ids_raise(grid_blocks, scattered_stops) -> None:
    """Test that duplicate block ids are rejected with the offending id."""
    doubled = pd.concat([grid_blocks, grid_blocks.iloc[[0]]], ignore_index=True)
    with pytest.raises(ValueError) as excinfo:
        assign_units_to_routes(doubled, scattered_stops)
    assert grid_blocks.loc[0, "GEOID20"] in str(excinfo.value)


def test_missing_stop_columns_raise(grid_blocks, scattered_stops) -> None:
    """Test that stops without a route column are rejected."""
    with pytest.raises(KeyError):
        assign_units_to_routes(grid_blocks, scattered_stops.drop(columns="route_id"))


def test_assignment_table_drops_geometry(grid_blocks, scattered_stops) -> None:
    """Test that the assignment table is plain unit/route pairs."""
    table = assignment_table(assign_units_to_routes(grid_blocks, scattered_stops))
    assert list(table.columns) == ["unit_id", "route_id"]
    assert not isinstance(table, gpd.GeoDataFrame)
    assert len(table) == len(grid_blocks)
