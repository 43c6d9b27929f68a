"""
load_places.py - CDC PLACES health-outcome loader

Reads a CDC PLACES extract (the long-format CSV, or a GIS-friendly spatial
export) and projects it to one row per geographic unit:

    GEOID        chd
    36001000100  7.1

The GEOID is normalized to the same zero-padded string the ACS fetcher
produces. A mismatch here (e.g. integer tract IDs on one side, strings on the
other) silently produces an all-missing join, so every loaded key goes
through normalize_unit_id.

Usage:
    chd = load_places(
        "data/health/PLACES_tract_2021.csv",
        unit_id_column="LocationName",
        value_column="Data_Value",
        metric_name="chd",
        filters={"MeasureId": "CHD", "StateAbbr": "NY"},
    )
"""

from pathlib import Path
from typing import Any, Dict, Optional, Union

import geopandas as gpd
import pandas as pd
from loguru import logger

from .data_utils import clean_numeric, find_column_by_pattern, normalize_unit_id
from .geography import GEOID_WIDTHS, validate_geography

SPATIAL_SUFFIXES = {".shp", ".geojson", ".json", ".gpkg", ".zip"}


def _resolve_column(df: pd.DataFrame, name: str, description: str) -> str:
    if name in df.columns:
        return name
    column = find_column_by_pattern(df, [name], description)
    if column is None:
        raise KeyError(f"Column '{name}' not found. Available columns: {list(df.columns)}")
    return column


def apply_filters(df: pd.DataFrame, filters: Optional[Dict[str, Any]]) -> pd.DataFrame:
    """
    Keep rows matching every filter.

    Args:
        df: Source rows
        filters: {column: value} for equality or {column: [values]} for membership

    Returns:
        Filtered copy of df
    """
    if not filters:
        return df.copy()

    mask = pd.Series(True, index=df.index)
    for name, expected in filters.items():
        column = _resolve_column(df, name, f"filter '{name}'")
        values = df[column].astype(str).str.strip()
        if isinstance(expected, (list, tuple, set)):
            mask &= values.isin([str(v) for v in expected])
        else:
            mask &= values == str(expected)
        logger.debug(f"  🔎 {column} filter {expected!r}: {int(mask.sum()):,} rows remain")

    return df[mask].copy()


def read_places_source(path: Union[str, Path]) -> Union[pd.DataFrame, gpd.GeoDataFrame]:
    """Read a PLACES extract; spatial formats come back as GeoDataFrames."""
    path = Path(path)
    if not path.exists():
        raise FileNotFoundError(f"PLACES file not found: {path}")

    if path.suffix.lower() in SPATIAL_SUFFIXES:
        logger.info(f"🗺️ Loading PLACES features from {path}")
        return gpd.read_file(path)

    logger.info(f"📄 Loading PLACES table from {path}")
    # Keys stay strings so leading zeros survive the read
    return pd.read_csv(path, dtype=str, low_memory=False)


def load_places(
    path: Union[str, Path],
    unit_id_column: str = "LocationName",
    value_column: str = "Data_Value",
    metric_name: Optional[str] = None,
    filters: Optional[Dict[str, Any]] = None,
    geography: str = "tract",
) -> Union[pd.DataFrame, gpd.GeoDataFrame]:
    """
    Load one health-outcome measure keyed by a normalized GEOID.

    Args:
        path: CSV or spatial file (.shp, .geojson, .gpkg, .zip)
        unit_id_column: Column holding the geographic identifier
        value_column: Column holding the prevalence value
        metric_name: Output column name (defaults to value_column)
        filters: Row filters applied before projection,
                 e.g. {"MeasureId": "CHD", "StateAbbr": "NY"}
        geography: Geography level of the identifiers, sets the GEOID width

    Returns:
        DataFrame with GEOID and the metric column, or a GeoDataFrame with
        geometry as well when the source is spatial
    """
    level = validate_geography(geography)
    metric = metric_name or value_column

    source = read_places_source(path)
    logger.success(f"  ✅ Read {len(source):,} rows")

    filtered = apply_filters(source, filters)
    if filters:
        logger.info(f"  🎯 {len(filtered):,} rows after filters {filters}")

    id_col = _resolve_column(filtered, unit_id_column, "unit id")
    value_col = _resolve_column(filtered, value_column, "value")

    result = pd.DataFrame(
        {
            "GEOID": normalize_unit_id(filtered[id_col], GEOID_WIDTHS[level]),
            metric: clean_numeric(filtered[value_col]),
        },
        index=filtered.index,
    )

    if isinstance(filtered, gpd.GeoDataFrame):
        result = gpd.GeoDataFrame(result, geometry=filtered.geometry, crs=filtered.crs)

    result = result[result["GEOID"].notna()]

    duplicated = result["GEOID"].duplicated(keep="first")
    if duplicated.any():
        logger.warning(
            f"  ⚠️ {int(duplicated.sum()):,} duplicate GEOIDs after filtering, keeping first occurrence"
        )
        logger.debug(f"     Example duplicates: {result.loc[duplicated, 'GEOID'].head().tolist()}")
        result = result[~duplicated]

    wrong_width = result["GEOID"].str.len() != GEOID_WIDTHS[level]
    if wrong_width.any():
        logger.warning(
            f"  ⚠️ {int(wrong_width.sum()):,} GEOIDs are not {GEOID_WIDTHS[level]} characters wide"
        )

    logger.success(f"  ✅ Loaded {metric} for {len(result):,} {level} units")
    return result.reset_index(drop=True)
