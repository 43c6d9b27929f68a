"""
Join & reshape engine.

join_external left-joins an external measure onto the fetched ACS units, and
to_long reshapes selected metric columns into (GEOID, variable_name, value)
rows for faceted maps.
"""

from typing import List, Optional, Sequence

import geopandas as gpd
import numpy as np
import pandas as pd
from loguru import logger

from .errors import KeyTypeMismatch


def match_rate(base: pd.DataFrame, external: pd.DataFrame, on: str = "GEOID") -> float:
    """Share of base units whose key appears in external (0.0 for an empty base)."""
    if len(base) == 0:
        return 0.0
    return float(base[on].isin(set(external[on].dropna())).mean())


def join_external(
    base: pd.DataFrame,
    external: pd.DataFrame,
    on: str = "GEOID",
    min_match_rate: float = 0.0,
) -> pd.DataFrame:
    """
    Left-join external metrics onto base units.

    Every base unit is kept (in its original order); units without an
    external row get missing values. External rows without a base unit are
    discarded. When external carries its own geometry it is dropped so the
    base geometry wins.

    Args:
        base: Fetched ACS units (usually a GeoDataFrame)
        external: Loaded external measure keyed by ``on``
        on: Join key column
        min_match_rate: Log a warning when fewer base units than this share match

    Returns:
        Joined frame of the same type as base with len(base) rows

    Raises:
        KeyTypeMismatch: both sides are non-empty but no key matches
    """
    logger.info(f"🔗 Joining {len(external):,} external rows onto {len(base):,} units by {on}...")

    for name, frame in (("base", base), ("external", external)):
        if on not in frame.columns:
            raise KeyError(f"Join key '{on}' missing from {name} columns: {list(frame.columns)}")

    external_cols = [col for col in external.columns if col != on]
    if isinstance(external, gpd.GeoDataFrame):
        external_cols = [col for col in external_cols if col != external.geometry.name]
    external = pd.DataFrame(external[[on] + external_cols])

    duplicated = external[on].duplicated(keep="first")
    if duplicated.any():
        logger.warning(f"  ⚠️ Dropping {int(duplicated.sum()):,} duplicate external keys")
        external = external[~duplicated]

    rate = match_rate(base, external, on)
    matched = int(round(rate * len(base)))
    logger.debug(f"     Matched units: {matched:,}/{len(base):,} ({rate:.1%})")

    if len(base) and len(external) and matched == 0:
        raise KeyTypeMismatch(
            on,
            base[on].head(3).tolist(),
            external[on].head(3).tolist(),
        )

    if rate < min_match_rate:
        logger.warning(
            f"  ⚠️ Only {rate:.1%} of units matched (expected at least {min_match_rate:.0%})"
        )

    joined = base.merge(external, on=on, how="left", validate="one_to_one")

    logger.success(
        f"  ✅ Joined data for {len(joined):,} units ({len(base) - matched:,} without external data)"
    )
    return joined


def to_long(
    df: pd.DataFrame,
    metrics: Sequence[str],
    id_columns: Optional[Sequence[str]] = None,
    variable_column: str = "variable_name",
    value_column: str = "value",
) -> pd.DataFrame:
    """
    Reshape metric columns into one row per (unit, metric).

    Rows come out grouped by unit in input order, then by metric in the order
    given. Columns that are not metrics (GEOID, NAME, geometry, ...) are
    repeated on each row.

    Args:
        df: Wide table (DataFrame or GeoDataFrame)
        metrics: Metric columns to reshape
        id_columns: Non-metric columns to carry (default: every non-metric column)
        variable_column: Name of the metric-name column
        value_column: Name of the value column

    Returns:
        Long frame with len(df) * len(metrics) rows; a GeoDataFrame when df is one
    """
    metric_list: List[str] = list(metrics)
    if not metric_list:
        raise ValueError("Select at least one metric to reshape")
    if len(set(metric_list)) != len(metric_list):
        raise ValueError(f"Duplicate metric names: {metric_list}")
    missing = [m for m in metric_list if m not in df.columns]
    if missing:
        raise ValueError(f"Metrics not found in data: {missing}")

    is_geo = isinstance(df, gpd.GeoDataFrame)
    if id_columns is None:
        carried = [col for col in df.columns if col not in metric_list]
    else:
        carried = list(id_columns)
        if is_geo and df.geometry.name not in carried:
            carried.append(df.geometry.name)

    n_units, n_metrics = len(df), len(metric_list)
    positions = np.repeat(np.arange(n_units), n_metrics)

    long_df = df[carried].iloc[positions].reset_index(drop=True)
    long_df[variable_column] = np.tile(np.array(metric_list, dtype=object), n_units)
    values = np.column_stack(
        [
            pd.to_numeric(df[m], errors="coerce").to_numpy(dtype=float, na_value=np.nan)
            for m in metric_list
        ]
    )
    long_df[value_column] = values.reshape(-1)

    logger.debug(
        f"  🔄 Reshaped {n_units:,} units × {n_metrics} metrics into {len(long_df):,} rows"
    )

    if is_geo:
        return gpd.GeoDataFrame(long_df, geometry=df.geometry.name, crs=df.crs)
    return long_df
