"""
Processing package for the ACS / CDC PLACES maps pipeline

This package contains the data acquisition and transformation steps:
Census variable catalog, ACS fetch, derived proportions, PLACES loading,
and the join / long-form reshape.
"""

__version__ = "0.1.0"

# Import key utilities for easy access
from .census_catalog import load_variables, search_variables
from .data_utils import (
    find_column_by_pattern,
    normalize_unit_id,
    validate_required_columns,
)
from .derived_metrics import add_proportions, safe_proportion, select_estimates
from .fetch_acs import get_acs, get_acs_geometry
from .join_reshape import join_external, match_rate, to_long
from .load_places import load_places

__all__ = [
    "load_variables",
    "search_variables",
    "get_acs",
    "get_acs_geometry",
    "add_proportions",
    "safe_proportion",
    "select_estimates",
    "load_places",
    "join_external",
    "match_rate",
    "to_long",
    "normalize_unit_id",
    "find_column_by_pattern",
    "validate_required_columns",
]
