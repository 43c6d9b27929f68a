"""
Derived metrics for ACS tables.

Turns raw counts into proportions (count / total) and renames estimate
columns to their semantic aliases. A proportion with a missing or zero
denominator is NaN for that unit; nothing here raises for per-row data.
"""

from typing import Iterable, List, Sequence, Tuple

import geopandas as gpd
import numpy as np
import pandas as pd
from loguru import logger

ProportionSpec = Tuple[str, str, str]

IDENTIFIER_COLUMNS = ["GEOID", "NAME"]


def resolve_metric_column(df: pd.DataFrame, alias: str) -> str:
    """Return the column holding ``alias``: the alias itself or its ``{alias}E`` estimate."""
    if alias in df.columns:
        return alias
    if f"{alias}E" in df.columns:
        return f"{alias}E"
    raise KeyError(f"No column for metric '{alias}' (looked for '{alias}' and '{alias}E')")


def safe_proportion(numerator: pd.Series, denominator: pd.Series) -> pd.Series:
    """Element-wise numerator / denominator with NaN wherever the denominator is missing or zero."""
    num = pd.to_numeric(numerator, errors="coerce").astype(float)
    den = pd.to_numeric(denominator, errors="coerce").astype(float)
    valid = den.notna() & (den != 0) & num.notna()
    with np.errstate(divide="ignore", invalid="ignore"):
        ratio = num / den
    return ratio.where(valid, np.nan)


def add_proportions(df: pd.DataFrame, proportions: Iterable[ProportionSpec]) -> pd.DataFrame:
    """
    Add proportion columns to a copy of ``df``.

    Args:
        df: Wide ACS table (DataFrame or GeoDataFrame)
        proportions: (output_alias, numerator_alias, denominator_alias) triples,
                     e.g. ("perc_lessthanhs", "education_lessthanhs", "total_education")

    Returns:
        Copy of df with one float column per triple; rows, index and
        identifying columns are untouched
    """
    result = df.copy()
    for output_alias, numerator_alias, denominator_alias in proportions:
        num_col = resolve_metric_column(result, numerator_alias)
        den_col = resolve_metric_column(result, denominator_alias)

        result[output_alias] = safe_proportion(result[num_col], result[den_col])

        undefined = int(result[output_alias].isna().sum())
        logger.debug(
            f"  ➗ {output_alias} = {num_col} / {den_col} ({undefined} units without a valid denominator)"
        )
        if undefined and undefined == len(result):
            logger.warning(f"  ⚠️ {output_alias} is missing for every unit")

    return result


def select_estimates(
    df: pd.DataFrame, aliases: Sequence[str], keep_moe: bool = False
) -> pd.DataFrame:
    """
    Keep identifying columns and the named metrics, renamed to their aliases.

    ``{alias}E`` becomes ``alias`` (and ``{alias}M`` becomes ``{alias}_moe``
    when ``keep_moe`` is set). Aliases that already exist as plain columns,
    such as derived proportions, are kept as they are.
    """
    columns: List[str] = [col for col in IDENTIFIER_COLUMNS if col in df.columns]
    renames = {}

    for alias in aliases:
        source = resolve_metric_column(df, alias)
        columns.append(source)
        renames[source] = alias
        if keep_moe and source == f"{alias}E" and f"{alias}M" in df.columns:
            columns.append(f"{alias}M")
            renames[f"{alias}M"] = f"{alias}_moe"

    if isinstance(df, gpd.GeoDataFrame) and df.geometry.name in df.columns:
        columns.append(df.geometry.name)

    return df[columns].rename(columns=renames)
