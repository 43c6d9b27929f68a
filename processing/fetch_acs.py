"""
fetch_acs.py - American Community Survey fetcher

Retrieves ACS estimates and margins of error from the Census Data API for one
geography level within a state, keyed by a standardized GEOID, and optionally
attaches polygon boundaries from the Census cartographic boundary files
(loaded with pygris).

Tabular and geometry requests are separate calls that share the same
parameters: fetch the lightweight table first, and ask for geometry only when
a map is actually needed. Both outputs join on GEOID.

Key Functionality:
1. Request building:
   - Variables are passed as {alias: code} pairs (e.g. {"hhincome": "B06011_001"})
   - Long variable lists are split into API-sized chunks and merged on GEOID
2. Response processing:
   - GEOID built from the state/county/tract/block group components
   - Estimates ({alias}E) and margins of error ({alias}M) coerced to floats
   - Census annotation sentinels (-666666666, ...) mapped to NaN
3. Output shapes:
   - "wide": GEOID, NAME, {alias}E, {alias}M, ...
   - "tidy": GEOID, NAME, variable, estimate, moe

Example:
    tracts = get_acs(
        geography="tract",
        state="NY",
        variables={"hhincome": "B06011_001"},
        year=2019,
        geometry=True,
    )
"""

import re
from typing import Dict, Iterable, List, Mapping, Optional, Union

import geopandas as gpd
import pandas as pd
import pygris
import requests
from loguru import logger

from .census_api import CENSUS_API_BASE_URL, DEFAULT_TIMEOUT, census_get, dataset_url
from .data_utils import (
    clean_numeric,
    normalize_unit_id,
    replace_census_sentinels,
    validate_required_columns,
)
from .errors import CensusRequestError, UnknownVariableCode
from .geography import GEOGRAPHY_COMPONENTS, GEOID_WIDTHS, state_to_fips, validate_geography

# pygris loader for the cartographic boundaries of each level
BOUNDARY_LOADERS: Dict[str, str] = {
    "state": "states",
    "county": "counties",
    "tract": "tracts",
    "block group": "block_groups",
}
BOUNDARIES_CRS = "EPSG:4269"

# The API accepts at most 50 "get" fields; NAME plus an E/M pair per code.
MAX_CODES_PER_REQUEST = 24

VariableSpec = Union[Mapping[str, str], Iterable[str]]

_UNKNOWN_VARIABLE = re.compile(r"unknown variable '([^']+)'", re.IGNORECASE)
_CODE_SUFFIX = re.compile(r"(E|M)$")


def normalize_variable_spec(variables: VariableSpec) -> Dict[str, str]:
    """
    Return an ordered {alias: base code} mapping.

    A plain list of codes uses each code as its own alias. Trailing estimate
    suffixes are dropped so "B06011_001E" and "B06011_001" are equivalent.
    """
    if isinstance(variables, Mapping):
        pairs = [(str(alias), code) for alias, code in variables.items()]
    else:
        pairs = [(None, code) for code in variables]

    if not pairs:
        raise ValueError("At least one variable is required")

    spec: Dict[str, str] = {}
    for alias, code in pairs:
        base = str(code).strip().upper()
        if re.search(r"_\d+E$", base):
            base = base[:-1]
        spec[alias or base] = base
    return spec


def _geography_params(level: str, state_fips: str) -> Dict[str, Union[str, List[str]]]:
    if level == "state":
        return {"for": f"state:{state_fips}"}
    if level == "block group":
        return {"for": "block group:*", "in": [f"state:{state_fips}", "county:*"]}
    return {"for": f"{level}:*", "in": f"state:{state_fips}"}


def _raise_for_census_error(
    error: requests.exceptions.RequestException, year: int, dataset: str, state: str
) -> None:
    response = getattr(error, "response", None)
    body = response.text if response is not None else ""
    match = _UNKNOWN_VARIABLE.search(body or "")
    if match:
        code = _CODE_SUFFIX.sub("", match.group(1))
        raise UnknownVariableCode(code, year, dataset, state) from error
    raise CensusRequestError(f"Census API request failed: {error}", year, dataset, state) from error


def _request_chunk(
    url: str,
    codes: List[str],
    level: str,
    state_fips: str,
    year: int,
    dataset: str,
    api_key: Optional[str],
    session: Optional[requests.Session],
    timeout: float,
) -> pd.DataFrame:
    fields = ["NAME"] + [f"{code}{suffix}" for code in codes for suffix in ("E", "M")]
    params: Dict[str, Union[str, List[str]]] = {"get": ",".join(fields)}
    params.update(_geography_params(level, state_fips))
    if api_key:
        params["key"] = api_key

    logger.debug(f"  🌐 GET {url} ({len(codes)} variables, {level} in state {state_fips})")
    try:
        response = census_get(url, params=params, session=session, timeout=timeout)
    except requests.exceptions.RequestException as e:
        _raise_for_census_error(e, year, dataset, state_fips)

    if response.status_code == 204 or not response.content:
        return pd.DataFrame(columns=fields + GEOGRAPHY_COMPONENTS[level])

    try:
        payload = response.json()
    except ValueError as e:
        raise CensusRequestError(
            f"Census API returned a non-JSON response: {response.text[:200]!r}",
            year,
            dataset,
            state_fips,
        ) from e

    if not isinstance(payload, list) or len(payload) < 1:
        raise CensusRequestError("Unexpected Census API response shape", year, dataset, state_fips)

    header, rows = payload[0], payload[1:]
    return pd.DataFrame(rows, columns=header)


def get_acs(
    geography: str,
    state: str,
    variables: VariableSpec,
    year: int,
    dataset: str = "acs/acs5",
    output: str = "wide",
    geometry: bool = False,
    api_key: Optional[str] = None,
    session: Optional[requests.Session] = None,
    base_url: str = CENSUS_API_BASE_URL,
    timeout: float = DEFAULT_TIMEOUT,
) -> Union[pd.DataFrame, gpd.GeoDataFrame]:
    """
    Fetch ACS estimates for every unit of a geography level within a state.

    Args:
        geography: "state", "county", "tract" or "block group"
        state: State FIPS code, USPS abbreviation or name
        variables: {alias: code} mapping (or list of codes)
        year: ACS vintage (end year for 5-year data)
        dataset: Census dataset path
        output: "wide" or "tidy"
        geometry: Attach cartographic boundary polygons
        api_key: Census API key (optional for small request volumes)
        session: Optional requests session
        base_url: Census API base URL
        timeout: Request timeout in seconds

    Returns:
        DataFrame (or GeoDataFrame when geometry=True) with one row per unit
        ("wide") or per unit and variable ("tidy"). An empty result is an
        empty frame, not an error.

    Raises:
        UnknownVariableCode: the API rejected one of the requested codes
        CensusRequestError: any other request failure
    """
    level = validate_geography(geography)
    if output not in ("wide", "tidy"):
        raise ValueError(f"output must be 'wide' or 'tidy', got {output!r}")

    state_fips = state_to_fips(state)
    spec = normalize_variable_spec(variables)
    url = dataset_url(year, dataset, base_url)
    unique_codes = list(dict.fromkeys(spec.values()))

    logger.info(
        f"📊 Fetching {len(spec)} ACS variables for {level} in state {state_fips} ({year} {dataset})"
    )

    components = GEOGRAPHY_COMPONENTS[level]
    chunks = []
    for start in range(0, len(unique_codes), MAX_CODES_PER_REQUEST):
        codes = unique_codes[start : start + MAX_CODES_PER_REQUEST]
        chunk = _request_chunk(
            url, codes, level, state_fips, year, dataset, api_key, session, timeout
        )
        chunk["GEOID"] = normalize_unit_id(
            chunk[components].astype(str).agg("".join, axis=1)
            if len(chunk)
            else pd.Series([], dtype=object),
            GEOID_WIDTHS[level],
        )
        chunks.append(chunk)

    merged = chunks[0]
    for chunk in chunks[1:]:
        merged = merged.merge(chunk.drop(columns=["NAME"] + components), on="GEOID", how="left")

    expected = ["NAME"] + [f"{code}{suffix}" for code in unique_codes for suffix in ("E", "M")]
    if not validate_required_columns(merged, expected):
        raise CensusRequestError(
            "Census API response is missing requested fields", year, dataset, state_fips
        )
    table = _shape_wide(merged, spec)

    if table.empty:
        logger.warning(f"  ⚠️ No {level} records returned for state {state_fips} in {year}")
    else:
        logger.success(f"  ✅ Retrieved {len(table):,} {level} records")

    if geometry:
        table = _attach_geometry(table, level, state_fips, year)

    if output == "tidy":
        return _to_tidy(table, spec)
    return table


def _shape_wide(raw: pd.DataFrame, spec: Dict[str, str]) -> pd.DataFrame:
    table = pd.DataFrame({"GEOID": raw["GEOID"], "NAME": raw["NAME"]})
    for alias, code in spec.items():
        for suffix in ("E", "M"):
            table[f"{alias}{suffix}"] = replace_census_sentinels(clean_numeric(raw[f"{code}{suffix}"]))
    return table.reset_index(drop=True)


def _to_tidy(table: pd.DataFrame, spec: Dict[str, str]) -> pd.DataFrame:
    id_columns = [col for col in table.columns if col in ("GEOID", "NAME", "geometry")]
    pieces = []
    for alias in spec:
        piece = table[id_columns].copy()
        piece["variable"] = alias
        piece["estimate"] = table[f"{alias}E"]
        piece["moe"] = table[f"{alias}M"]
        piece["_unit_order"] = range(len(table))
        pieces.append(piece)

    tidy = pd.concat(pieces, ignore_index=True)
    tidy = tidy.sort_values("_unit_order", kind="mergesort").drop(columns="_unit_order")
    tidy = tidy.reset_index(drop=True)
    if isinstance(table, gpd.GeoDataFrame):
        return gpd.GeoDataFrame(tidy, geometry="geometry", crs=table.crs)
    return tidy


def get_acs_geometry(geography: str, state: str, year: int) -> gpd.GeoDataFrame:
    """
    Load cartographic boundary polygons for every unit of a level within a state.

    Boundaries come from the generalized (cb=True) Census TIGER/Line files via
    pygris. The state file is national and is filtered to the requested state.

    Returns:
        GeoDataFrame with GEOID and geometry, in the CRS of the boundary file
    """
    level = validate_geography(geography)
    state_fips = state_to_fips(state)
    loader = getattr(pygris, BOUNDARY_LOADERS[level])
    logger.info(f"🗺️ Loading {year} {level} boundaries for state {state_fips} with pygris")

    try:
        if level == "state":
            boundaries = loader(cb=True, year=year)
        else:
            boundaries = loader(state=state_fips, cb=True, year=year)
    except Exception as e:
        raise CensusRequestError(
            f"Could not load {level} boundaries: {e}", year, None, state_fips
        ) from e

    if "STATEFP" in boundaries.columns:
        boundaries = boundaries[boundaries["STATEFP"].astype(str).str.zfill(2) == state_fips]

    if not validate_required_columns(boundaries, ["GEOID", "geometry"]):
        raise CensusRequestError(
            f"Boundary file has no GEOID column: {list(boundaries.columns)}", year, None, state_fips
        )

    boundaries = boundaries[["GEOID", "geometry"]].copy()
    boundaries["GEOID"] = normalize_unit_id(boundaries["GEOID"], GEOID_WIDTHS[level])
    if boundaries.crs is None:
        logger.warning(f"  ⚠️ Boundary file has no CRS, assuming {BOUNDARIES_CRS}")
        boundaries = boundaries.set_crs(BOUNDARIES_CRS)

    logger.success(f"  ✅ Loaded {len(boundaries):,} {level} boundaries (CRS: {boundaries.crs})")
    return boundaries.reset_index(drop=True)


def _attach_geometry(
    table: pd.DataFrame, level: str, state_fips: str, year: int
) -> gpd.GeoDataFrame:
    if table.empty:
        return gpd.GeoDataFrame(table.assign(geometry=None), geometry="geometry", crs=BOUNDARIES_CRS)

    boundaries = get_acs_geometry(level, state_fips, year)
    merged = table.merge(boundaries, on="GEOID", how="left")

    missing = merged["geometry"].isna().sum()
    if missing:
        logger.warning(f"  ⚠️ {missing:,} units have no boundary polygon")

    return gpd.GeoDataFrame(merged, geometry="geometry", crs=boundaries.crs)
