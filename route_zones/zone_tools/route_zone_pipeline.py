"""Build one service zone per transit route from stop ridership and Census geography.

The pipeline runs four steps in order:
    1. Resolve every stop to its highest-activity route.
    2. Keep the tracts within BUFFER_DISTANCE of any stop (the study area).
    3. Give every block inside the study area the route of its nearest stop.
    4. Dissolve blocks by route into one zone polygon per route.

Typical inputs:
    - Stop ridership export (CSV or Excel) with STOP_ID, LATITUDE, LONGITUDE
      and ROUTE_<n>/ACTIVITY_<n> slot columns.
    - TIGER tract layer (GEOID) and TABBLOCK20 block layer (GEOID20).
    - Optional population CSV keyed by Census GEO_ID.

Outputs (in OUTPUT_DIR):
    - study_area_units.csv        tract ids inside the study area
    - unit_route_assignment.csv   block id → route id
    - route_zones.geojson         one polygon per route (or .gpkg / .shp)
    - zones_checkpoint.gpkg       dissolve checkpoint reused on later runs
    - route_zones.png             optional static preview

The dissolve checkpoint is only rebuilt when --rebuild-zones is passed.
"""

from __future__ import annotations

import argparse
import logging
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Final, List, Optional

import geopandas as gpd

from route_zones.census_tools.population_table_join import (
    BLOCK_KEY,
    TRACT_KEY,
    join_population,
    load_area_units,
    load_population_table,
)
from route_zones.ridership_tools.stop_route_resolver import (
    build_resolved_stops,
    read_ridership_table,
)
from route_zones.utils.logging_helper import setup_logging
from route_zones.zone_tools.study_area_filter import (
    BUFFER_DISTANCE,
    StudyAreaCoverage,
    select_study_area,
    summarize_coverage,
)
from route_zones.zone_tools.unit_zone_assigner import (
    TRACT_KEY_LENGTH,
    assign_units_to_routes,
    assignment_table,
    filter_units_to_study_area,
)
from route_zones.zone_tools.zone_dissolver import (
    dissolve_zones,
    load_zone_checkpoint,
    save_zone_checkpoint,
    validate_partition,
    zone_members,
)

# =============================================================================
# CONFIGURATION
# =============================================================================

DEFAULT_RIDERSHIP_PATH: Final[str] = r"C:\Path\To\stop_ridership_by_route.csv"
DEFAULT_TRACTS_PATH: Final[str] = r"C:\Path\To\tl_2020_51_tract.shp"
DEFAULT_BLOCKS_PATH: Final[str] = r"C:\Path\To\tl_2020_51_tabblock20.shp"
DEFAULT_POPULATION_PATH: Final[str] = ""  # empty string = no population join
DEFAULT_OUTPUT_DIR: Final[str] = r"C:\Path\To\Output"

DEFAULT_INPUT_CRS: Final[str] = "EPSG:4326"  # ridership LATITUDE/LONGITUDE
DEFAULT_PROJECTED_CRS: Final[str] = "EPSG:5070"  # CONUS Albers, meters
OUTPUT_CRS_GEOJSON: Final[str] = "EPSG:4326"

ZONE_FORMATS: Final[tuple[str, ...]] = ("geojson", "gpkg", "shp")
DISSOLVE_METHODS: Final[tuple[str, ...]] = ("unary", "coverage")

STUDY_AREA_FILENAME: Final[str] = "study_area_units.csv"
ASSIGNMENT_FILENAME: Final[str] = "unit_route_assignment.csv"
ZONES_BASENAME: Final[str] = "route_zones"
CHECKPOINT_FILENAME: Final[str] = "zones_checkpoint.gpkg"
PLOT_FILENAME: Final[str] = "route_zones.png"

LOGGER = logging.getLogger(__name__)

# =============================================================================
# DATA STRUCTURES
# =============================================================================


@dataclass(frozen=True)
class PipelineConfig:
    """Runtime configuration."""

    ridership_path: Path
    tracts_path: Path
    blocks_path: Path
    population_path: Optional[Path]
    output_dir: Path
    input_crs: str = DEFAULT_INPUT_CRS
    projected_crs: str = DEFAULT_PROJECTED_CRS
    buffer_distance: float = BUFFER_DISTANCE
    tract_key_length: int = TRACT_KEY_LENGTH
    zone_format: str = "geojson"
    dissolve_method: str = "unary"
    workers: int = 1
    rebuild_zones: bool = False
    validate: bool = False
    plot: bool = False


@dataclass(frozen=True)
class PipelineResult:
    """Artifacts produced by one run."""

    stops: gpd.GeoDataFrame
    study_area: gpd.GeoDataFrame
    coverage: StudyAreaCoverage
    assignments: gpd.GeoDataFrame
    zones: gpd.GeoDataFrame


# =============================================================================
# HELPERS
# =============================================================================


def zones_output_path(output_dir: Path, zone_format: str) -> Path:
    """Return the zone output path for *zone_format*."""
    if zone_format not in ZONE_FORMATS:
        raise ValueError(f"Unsupported zone format {zone_format!r}; choose from {ZONE_FORMATS}")
    return output_dir / f"{ZONES_BASENAME}.{zone_format}"


def write_vector(gdf: gpd.GeoDataFrame, path: Path, layer: Optional[str] = None) -> None:
    """Write a GeoDataFrame to disk as GeoJSON, GPKG or SHP."""
    path.parent.mkdir(parents=True, exist_ok=True)
    suffix = path.suffix.lower()
    if suffix == ".geojson":
        gdf.to_crs(OUTPUT_CRS_GEOJSON).to_file(path, driver="GeoJSON")
    elif suffix == ".gpkg":
        gdf.to_file(path, layer=layer or "data", driver="GPKG")
    elif suffix == ".shp":
        gdf.to_file(path, driver="ESRI Shapefile")
    else:
        raise ValueError(f"Unsupported output format: {path.suffix}")
    LOGGER.info("Wrote %s", path)


def _check_checkpoint(zones: gpd.GeoDataFrame, assignments: gpd.GeoDataFrame) -> None:
    """Raise if a loaded checkpoint does not describe the current assignments."""
    current = zone_members(assignments)
    stored = {
        route: tuple(sorted(ids)) for route, ids in zip(zones["route_id"], zones["unit_ids"])
    }
    if current != stored:
        raise ValueError(
            "Zone checkpoint does not match the current assignments; "
            "rerun with --rebuild-zones to recompute it."
        )


def plot_zones(zones: gpd.GeoDataFrame, stops: gpd.GeoDataFrame, out_path: Path) -> None:
    """Save a static preview of the zones with stops on top."""
    import matplotlib

    matplotlib.use("Agg")
    import matplotlib.pyplot as plt

    fig, ax = plt.subplots(figsize=(10, 10))
    zones.plot(
        ax=ax,
        column="route_id",
        categorical=True,
        cmap="tab20",
        edgecolor="white",
        linewidth=0.3,
    )
    stops.plot(ax=ax, color="black", markersize=2)
    ax.set_title(f"Route service zones ({len(zones)} routes)")
    ax.set_axis_off()
    fig.tight_layout()
    out_path.parent.mkdir(parents=True, exist_ok=True)
    fig.savefig(out_path, dpi=200)
    plt.close(fig)
    LOGGER.info("Wrote %s", out_path)


# =============================================================================
# PIPELINE
# =============================================================================


def build_route_zones(
    stops: gpd.GeoDataFrame,
    tracts: gpd.GeoDataFrame,
    blocks: gpd.GeoDataFrame,
    *,
    buffer_distance: float = BUFFER_DISTANCE,
    tract_key: str = TRACT_KEY,
    block_key: str = BLOCK_KEY,
    tract_key_length: int = TRACT_KEY_LENGTH,
    workers: int = 1,
    dissolve_method: str = "unary",
    checkpoint_path: Optional[Path] = None,
    rebuild_zones: bool = False,
    validate: bool = False,
) -> PipelineResult:
    """Run the study-area, assignment and dissolve steps on loaded layers.

    *stops* must already be resolved (one ``route_id`` per stop) and all three
    layers must share a projected CRS. When *checkpoint_path* exists and
    *rebuild_zones* is False the zones are read from it instead of dissolved.
    """
    study_area = select_study_area(tracts, stops, buffer_distance, tract_key)
    coverage = summarize_coverage(tracts, study_area[tract_key], tract_key)

    study_blocks = filter_units_to_study_area(
        blocks, study_area[tract_key], block_key, tract_key_length
    )
    assignments = assign_units_to_routes(study_blocks, stops, block_key, workers=workers)

    if checkpoint_path is not None and checkpoint_path.exists() and not rebuild_zones:
        LOGGER.info("Reusing zone checkpoint %s", checkpoint_path)
        zones = load_zone_checkpoint(checkpoint_path)
        _check_checkpoint(zones, assignments)
        zones = zones.to_crs(assignments.crs)
    else:
        zones = dissolve_zones(assignments, workers=workers, method=dissolve_method)
        if checkpoint_path is not None:
            save_zone_checkpoint(zones, checkpoint_path)

    if validate:
        validate_partition(zones, assignments)

    return PipelineResult(
        stops=stops,
        study_area=study_area,
        coverage=coverage,
        assignments=assignments,
        zones=zones,
    )


def write_outputs(
    result: PipelineResult,
    output_dir: Path,
    zone_format: str = "geojson",
    tract_key: str = TRACT_KEY,
) -> None:
    """Write the study-area list, assignment table and zone boundaries."""
    output_dir.mkdir(parents=True, exist_ok=True)

    study_csv = output_dir / STUDY_AREA_FILENAME
    result.study_area[[tract_key]].to_csv(study_csv, index=False)
    LOGGER.info("Wrote %s", study_csv)

    assignment_csv = output_dir / ASSIGNMENT_FILENAME
    assignment_table(result.assignments).to_csv(assignment_csv, index=False)
    LOGGER.info("Wrote %s", assignment_csv)

    zones_path = zones_output_path(output_dir, zone_format)
    write_vector(result.zones[["route_id", "unit_count", "geometry"]], zones_path, layer="zones")


def run_pipeline(config: PipelineConfig) -> PipelineResult:
    """Load inputs, build the zones and write every output."""
    for label, path in (
        ("Ridership file", config.ridership_path),
        ("Tract layer", config.tracts_path),
        ("Block layer", config.blocks_path),
    ):
        if not path.exists():
            raise FileNotFoundError(f"{label} not found: {path}")

    ridership = read_ridership_table(config.ridership_path)
    stops = build_resolved_stops(ridership, config.projected_crs, input_crs=config.input_crs)

    tracts = load_area_units(config.tracts_path, TRACT_KEY, config.projected_crs)
    if config.population_path is not None:
        population = load_population_table(
            config.population_path, key_length=config.tract_key_length
        )
        tracts = join_population(tracts, population, unit_key=TRACT_KEY)

    blocks = load_area_units(config.blocks_path, BLOCK_KEY, config.projected_crs)

    result = build_route_zones(
        stops,
        tracts,
        blocks,
        buffer_distance=config.buffer_distance,
        tract_key_length=config.tract_key_length,
        workers=config.workers,
        dissolve_method=config.dissolve_method,
        checkpoint_path=config.output_dir / CHECKPOINT_FILENAME,
        rebuild_zones=config.rebuild_zones,
        validate=config.validate,
    )
    write_outputs(result, config.output_dir, config.zone_format)

    if config.plot:
        plot_zones(result.zones, result.stops, config.output_dir / PLOT_FILENAME)

    return result


# =============================================================================
# CLI
# =============================================================================


def build_arg_parser() -> argparse.ArgumentParser:
    """Create the CLI argument parser."""
    p = argparse.ArgumentParser(description="Partition a study area into one zone per route.")
    p.add_argument("--ridership", default=DEFAULT_RIDERSHIP_PATH, help="Stop ridership CSV/XLSX.")
    p.add_argument("--tracts", default=DEFAULT_TRACTS_PATH, help="Tract boundary layer.")
    p.add_argument("--blocks", default=DEFAULT_BLOCKS_PATH, help="Block boundary layer.")
    p.add_argument(
        "--population",
        default=DEFAULT_POPULATION_PATH,
        help="Population CSV keyed by GEO_ID (optional).",
    )
    p.add_argument("--output-dir", default=DEFAULT_OUTPUT_DIR, help="Directory for outputs.")
    p.add_argument("--input-crs", default=DEFAULT_INPUT_CRS, help="CRS of stop coordinates.")
    p.add_argument(
        "--projected-crs",
        default=DEFAULT_PROJECTED_CRS,
        help="Projected CRS used for distances and areas.",
    )
    p.add_argument(
        "--buffer-distance",
        type=float,
        default=BUFFER_DISTANCE,
        help="Study-area distance from any stop, in projected CRS units.",
    )
    p.add_argument(
        "--tract-key-length",
        type=int,
        default=TRACT_KEY_LENGTH,
        help="Leading characters of a block id that identify its tract.",
    )
    p.add_argument("--zone-format", choices=ZONE_FORMATS, default="geojson")
    p.add_argument("--dissolve-method", choices=DISSOLVE_METHODS, default="unary")
    p.add_argument("--workers", type=int, default=1, help="Threads for lookups and unions.")
    p.add_argument(
        "--rebuild-zones",
        action="store_true",
        help="Ignore an existing zone checkpoint and dissolve again.",
    )
    p.add_argument("--validate", action="store_true", help="Verify the zone partition.")
    p.add_argument("--plot", action="store_true", help="Write a PNG preview of the zones.")
    p.add_argument("--log-level", default="INFO", choices=("DEBUG", "INFO", "WARNING"))
    return p


def config_from_args(args: argparse.Namespace) -> PipelineConfig:
    """Build a PipelineConfig from parsed CLI arguments."""
    if args.workers < 1:
        raise ValueError(f"--workers must be at least 1, got {args.workers}")
    return PipelineConfig(
        ridership_path=Path(args.ridership).expanduser(),
        tracts_path=Path(args.tracts).expanduser(),
        blocks_path=Path(args.blocks).expanduser(),
        population_path=Path(args.population).expanduser() if args.population else None,
        output_dir=Path(args.output_dir).expanduser(),
        input_crs=args.input_crs,
        projected_crs=args.projected_crs,
        buffer_distance=args.buffer_distance,
        tract_key_length=args.tract_key_length,
        zone_format=args.zone_format,
        dissolve_method=args.dissolve_method,
        workers=args.workers,
        rebuild_zones=args.rebuild_zones,
        validate=args.validate,
        plot=args.plot,
    )


def main(argv: List[str] | None = None) -> None:
    """Entrypoint.

    Args:
        argv: Optional explicit argv list (e.g., [] for notebooks). If None, uses sys.argv.
    """
    parser = build_arg_parser()
    # Accept unknown args to be notebook/IPython friendly (swallows "-f <kernel.json>").
    args, unknown = parser.parse_known_args(argv)
    setup_logging(args.log_level)
    if unknown:
        LOGGER.warning("Ignoring unknown CLI args (likely from IPython): %s", unknown)

    try:
        config = config_from_args(args)
        result = run_pipeline(config)
    except Exception:  # noqa: BLE001
        LOGGER.exception("Processing failed")
        sys.exit(1)

    LOGGER.info(
        "Finished: %d stop(s), %d tract(s), %d block(s), %d zone(s).",
        len(result.stops),
        len(result.study_area),
        len(result.assignments),
        len(result.zones),
    )


if __name__ == "__main__":
    main()
