"""Census geography levels, GEOID widths and state FIPS lookups."""

from typing import Dict, List

from pygris.helpers import validate_state

# GEOID component columns returned by the Census API for each level, in order.
GEOGRAPHY_COMPONENTS: Dict[str, List[str]] = {
    "state": ["state"],
    "county": ["state", "county"],
    "tract": ["state", "county", "tract"],
    "block group": ["state", "county", "tract", "block group"],
}

GEOID_WIDTHS: Dict[str, int] = {
    "state": 2,
    "county": 5,
    "tract": 11,
    "block group": 12,
}


def validate_geography(geography: str) -> str:
    """Return the canonical geography level name or raise ValueError."""
    level = geography.strip().lower().replace("_", " ")
    if level not in GEOID_WIDTHS:
        raise ValueError(
            f"Unsupported geography '{geography}'. Expected one of {list(GEOID_WIDTHS)}"
        )
    return level


def state_to_fips(state: str) -> str:
    """
    Resolve a state FIPS code, USPS abbreviation or full name to a 2-digit FIPS code.

    Examples:
        state_to_fips("NY") -> "36"
        state_to_fips("new york") -> "36"
    """
    try:
        fips = validate_state(str(state).strip())
    except (ValueError, KeyError, IndexError) as e:
        raise ValueError(f"Unknown state: {state}") from e
    if not fips:
        raise ValueError(f"Unknown state: {state}")
    return str(fips).zfill(2)
