#!/usr/bin/env python3
"""
data_utils.py - Shared Data Processing Utilities

Key normalization and numeric cleaning shared by the fetcher, the PLACES
loader and the join step. Every dataset that is joined on GEOID goes through
normalize_unit_id so both sides use the same zero-padded string form.
"""

import re
from typing import Iterable, List, Optional

import numpy as np
import pandas as pd
from loguru import logger

# Census "no data" annotations returned in place of estimates/MOEs
CENSUS_SENTINELS = [
    -111111111,
    -222222222,
    -333333333,
    -555555555,
    -666666666,
    -888888888,
    -999999999,
]

_FLOAT_ARTIFACT = re.compile(r"^(\d+)\.0*$")
_SCIENTIFIC = re.compile(r"^\d+(\.\d+)?[eE]\+?\d+$")


def clean_numeric(series: pd.Series) -> pd.Series:
    """
    Cleans a pandas Series to numeric type, handling commas and percent signs.

    Args:
        series: The pandas Series to clean.

    Returns:
        A float Series; unparseable values become NaN.
    """
    if pd.api.types.is_numeric_dtype(series):
        return series.astype(float)

    s = (
        series.astype(str)
        .str.replace(",", "", regex=False)
        .str.replace("%", "", regex=False)
        .str.strip()
    )
    return pd.to_numeric(s, errors="coerce").astype(float)


def replace_census_sentinels(series: pd.Series) -> pd.Series:
    """Map Census annotation values (e.g. -666666666) to NaN."""
    return series.where(~series.isin(CENSUS_SENTINELS), np.nan)


def _normalize_one(value: object, width: Optional[int]) -> Optional[str]:
    if value is None or value is pd.NA:
        return None

    if isinstance(value, (int, np.integer)):
        text = str(int(value))
    elif isinstance(value, (float, np.floating)):
        if np.isnan(value):
            return None
        if not float(value).is_integer():
            return str(value)
        text = str(int(value))
    else:
        text = str(value).strip()
        if not text or text.lower() == "nan":
            return None
        match = _FLOAT_ARTIFACT.match(text)
        if match:
            text = match.group(1)
        elif _SCIENTIFIC.match(text):
            text = str(int(float(text)))

    if width is not None and text.isdigit():
        text = text.zfill(width)
    return text


def normalize_unit_id(values: pd.Series, width: Optional[int] = None) -> pd.Series:
    """
    Normalize geographic identifiers to zero-padded strings.

    Handles the representations GEOIDs pick up on the way through CSV files
    and spreadsheets: integers (36001000100), floats (36001000100.0),
    stringified floats ("36001000100.0"), surrounding whitespace and lost
    leading zeros ("6001400100" for a California tract). Already-normalized
    values come back unchanged.

    Args:
        values: Series of identifiers in any representation
        width: Target width (e.g. 11 for tracts); None leaves the width alone

    Returns:
        Series of strings (missing identifiers stay missing)
    """
    return values.map(lambda v: _normalize_one(v, width)).astype(object)


def find_column_by_pattern(
    df: pd.DataFrame, patterns: List[str], description: str = "column"
) -> Optional[str]:
    """Find a column by matching patterns (case-insensitive).

    Exact (case-insensitive) matches win over substring matches.

    Args:
        df: DataFrame to search
        patterns: List of patterns to match (e.g., ["locationname", "geoid"])
        description: Description for logging

    Returns:
        Column name if found, None if not found
    """
    for pattern in patterns:
        exact = [col for col in df.columns if str(col).lower() == pattern.lower()]
        if exact:
            logger.debug(f"  📍 Found {description} column: {exact[0]}")
            return exact[0]

    for pattern in patterns:
        matching_cols = [col for col in df.columns if pattern.lower() in str(col).lower()]
        if matching_cols:
            logger.debug(
                f"  📍 Found {description} column: {matching_cols[0]} (pattern: {pattern})"
            )
            return matching_cols[0]

    logger.warning(f"  ⚠️ No {description} column found for patterns: {patterns}")
    return None


def validate_required_columns(df: pd.DataFrame, required: Iterable[str]) -> bool:
    """Validate that required columns exist in DataFrame.

    Args:
        df: DataFrame to validate
        required: Column names that must be present

    Returns:
        True if all required columns found, False otherwise
    """
    missing_columns = [col for col in required if col not in df.columns]

    if missing_columns:
        logger.error(f"❌ Missing required columns: {missing_columns}")
        logger.info(f"Available columns: {list(df.columns)}")
        return False

    return True
