#!/usr/bin/env python3
"""
Health Outcomes and ACS Context: end-to-end map generation

Wires the pipeline together with plain function calls:

1. Fetch ACS estimates for the configured geography/state/year (tabular only)
2. Load the cartographic boundaries for the same units and join them by GEOID
3. Derive proportions (e.g. share of adults without a high school diploma)
4. Load the CDC PLACES measure with a normalized GEOID
5. Left-join onto the ACS units and reshape the selected metrics to long form
6. Render the faceted choropleth and export the joined GeoJSON

Usage:
    python analysis/health_outcomes_pipeline.py
    python ops/run_pipeline.py run --config census.year=2021
"""

import json
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional

import geopandas as gpd
import matplotlib.pyplot as plt
import requests
from loguru import logger

sys.path.append(str(Path(__file__).parent.parent))
from analysis.map_health_outcomes import render_choropleth
from ops.config_loader import Config
from processing.derived_metrics import add_proportions, select_estimates
from processing.errors import PipelineError
from processing.fetch_acs import get_acs, get_acs_geometry
from processing.join_reshape import join_external, to_long
from processing.load_places import load_places


@dataclass
class PipelineResult:
    joined: gpd.GeoDataFrame
    long: gpd.GeoDataFrame
    map_path: Optional[Path]
    geojson_path: Optional[Path]


def export_joined_geojson(
    gdf: gpd.GeoDataFrame,
    output_path: Path,
    config: Config,
    metrics: List[str],
) -> Path:
    """
    Export the joined units as GeoJSON with a metadata block.

    Args:
        gdf: Joined GeoDataFrame
        output_path: Output file path
        config: Configuration instance
        metrics: Metric columns described in the metadata

    Returns:
        The written path
    """
    logger.info(f"💾 Exporting joined GeoJSON: {output_path}")

    output_crs = config.get_system_setting("output_crs")
    gdf_export = gdf.to_crs(output_crs) if gdf.crs is not None else gdf.set_crs(output_crs)

    output_path.parent.mkdir(parents=True, exist_ok=True)
    gdf_export.to_file(output_path, driver="GeoJSON")

    with open(output_path, "r") as f:
        geojson_data = json.load(f)

    geojson_data["metadata"] = {
        "title": config.get("project_name"),
        "description": config.get("description"),
        "source": config.get_metadata("data_source"),
        "created": time.strftime("%Y-%m-%d"),
        "crs": output_crs,
        "features_count": len(gdf_export),
        "metrics": metrics,
        "fields": [col for col in gdf_export.columns if col != gdf_export.geometry.name],
        "missing_values": {
            metric: int(gdf_export[metric].isna().sum())
            for metric in metrics
            if metric in gdf_export.columns
        },
    }

    with open(output_path, "w") as f:
        json.dump(geojson_data, f, separators=(",", ":"))

    logger.success(f"  ✅ Exported {len(gdf_export):,} features")
    return output_path


def run_pipeline(
    config: Config,
    session: Optional[requests.Session] = None,
    write_outputs: bool = True,
) -> PipelineResult:
    """
    Run the full fetch → derive → load → join → reshape → render sequence.

    Args:
        config: Configuration instance
        session: Optional requests session shared by the Census calls
        write_outputs: Save the map PNG and joined GeoJSON

    Returns:
        PipelineResult with the joined and long-form frames
    """
    year = int(config.get_census_setting("year"))
    dataset = config.get_census_setting("dataset")
    geography = config.get_census_setting("geography")
    state = config.get_census_setting("state")
    variables = config.get_variable_spec()
    derived = config.get_derived_metrics()
    api_key = config.get_api_key()

    fetch_kwargs = dict(
        geography=geography,
        state=state,
        variables=variables,
        year=year,
        dataset=dataset,
        api_key=api_key,
        session=session,
        base_url=config.get_census_setting("base_url"),
        timeout=config.get_census_setting("timeout"),
    )

    # 1. Tabular estimates
    logger.info("📊 Step 1: Fetching ACS estimates...")
    table = get_acs(**fetch_kwargs)
    if table.empty:
        logger.warning("⚠️ ACS returned no units; nothing to map")

    # 2. Boundaries for the same geography, joined by GEOID
    logger.info("🗺️ Step 2: Fetching unit boundaries...")
    boundaries = get_acs_geometry(geography, state, year)
    units = gpd.GeoDataFrame(
        table.merge(boundaries, on="GEOID", how="left"), geometry="geometry", crs=boundaries.crs
    )
    missing_geometry = int(units.geometry.isna().sum())
    if missing_geometry:
        logger.warning(f"  ⚠️ {missing_geometry:,} units have no boundary polygon")

    # 3. Proportions and aliases
    logger.info("➗ Step 3: Deriving proportions...")
    units = add_proportions(units, derived)
    units = select_estimates(units, list(variables) + [output for output, _, _ in derived])

    # 4. PLACES measure
    logger.info("🏥 Step 4: Loading CDC PLACES measure...")
    metric_name = config.get_places_setting("metric_name")
    places = load_places(
        config.get_input_path("places_csv"),
        unit_id_column=config.get_places_setting("unit_id_column"),
        value_column=config.get_places_setting("value_column"),
        metric_name=metric_name,
        filters=config.get_places_setting("filters"),
        geography=geography,
    )

    # 5. Join and reshape
    logger.info("🔗 Step 5: Joining and reshaping...")
    joined = join_external(
        units, places, on="GEOID", min_match_rate=float(config.get("join.min_match_rate"))
    )
    metrics = list(config.get_visualization_setting("metrics") or [metric_name])
    long_gdf = to_long(joined, metrics, id_columns=["GEOID", "NAME"])

    # 6. Render and export
    logger.info("🎨 Step 6: Rendering maps...")
    map_path = None
    geojson_path = None
    if write_outputs:
        stem = f"{config.get_census_setting('state')}_{geography.replace(' ', '_')}_{year}".lower()
        map_path = config.get_output_dir("maps") / f"{stem}_{'_'.join(metrics)}.png"
        geojson_path = config.get_output_dir("geospatial") / f"{stem}_joined.geojson"

    fig = render_choropleth(
        long_gdf,
        column="value",
        facet="variable_name",
        ncol=int(config.get_visualization_setting("facet_columns")),
        low_color=config.get_visualization_setting("low_color"),
        high_color=config.get_visualization_setting("high_color"),
        missing_color=config.get_visualization_setting("missing_color"),
        title=config.get_visualization_setting("title") or config.get("project_name", ""),
        panel_titles=config.get_visualization_setting("panel_titles"),
        north_arrow=config.get_visualization_setting("north_arrow"),
        scale_units=config.get_visualization_setting("scale_units"),
        scale_bar_location=config.get_visualization_setting("scale_bar_location"),
        panel_size=float(config.get_visualization_setting("panel_size")),
        dpi=int(config.get_visualization_setting("map_dpi")),
        fname=map_path,
    )
    plt.close(fig)

    if geojson_path is not None:
        export_joined_geojson(joined, geojson_path, config, metrics)

    logger.success("🎉 Pipeline complete")
    return PipelineResult(joined=joined, long=long_gdf, map_path=map_path, geojson_path=geojson_path)


def main() -> None:
    """Main execution function with comprehensive error handling."""
    logger.info("🏥 Health Outcomes and ACS Context Maps")
    logger.info("=" * 65)

    try:
        config = Config()
        logger.info(f"📋 Project: {config.get('project_name')}")
        logger.info(f"📋 Description: {config.get('description')}")
    except Exception as e:
        logger.critical(f"❌ Configuration error: {e}")
        logger.info("💡 Make sure config.yaml exists in the ops directory")
        sys.exit(1)

    try:
        run_pipeline(config)
    except (PipelineError, FileNotFoundError, KeyError, ValueError) as e:
        logger.critical(f"❌ Pipeline failed: {e}")
        sys.exit(1)


if __name__ == "__main__":
    main()
