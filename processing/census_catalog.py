"""
census_catalog.py - Census variable catalog lookup

Downloads the variable dictionary (``variables.json``) for a dataset vintage
and returns it as a tidy DataFrame with one row per variable code:

    name        label                      concept                     geography
    B06011_001  Estimate!!Median income... MEDIAN INCOME IN THE PAST... tract

``variables.json`` does not say where a table is published, so the smallest
geography of each table is read from the data API itself: the first variable
of every table is requested for a small reference area (the District of
Columbia), level by level from block group up to state, and the first level
that returns a value is the table's smallest geography. Tables with no value
at any level get an empty geography.

Lookups are cached per (year, dataset) for the lifetime of the process, so
repeated searches during a session only hit the API once.

Usage:
    catalog = load_variables(2019, "acs/acs5", geography="tract")
    search_variables(catalog, "median income")
"""

import re
import threading
from dataclasses import asdict, dataclass, replace
from typing import Dict, List, Optional, Sequence, Set, Tuple, Union

import pandas as pd
import requests
from loguru import logger

from .census_api import CENSUS_API_BASE_URL, DEFAULT_TIMEOUT, census_get, dataset_url
from .data_utils import clean_numeric, replace_census_sentinels
from .errors import CatalogUnavailable
from .geography import validate_geography

CATALOG_COLUMNS = ["name", "label", "concept", "geography"]

# Reference area for availability checks, smallest level first.
# 1-year tables are never published below county.
AVAILABILITY_QUERIES: List[Tuple[str, Dict[str, Union[str, List[str]]]]] = [
    ("block group", {"for": "block group:*", "in": ["state:11", "county:001"]}),
    ("tract", {"for": "tract:*", "in": "state:11"}),
    ("county", {"for": "county:001", "in": "state:11"}),
    ("state", {"for": "state:11"}),
]

# The API accepts at most 50 "get" fields per request
MAX_FIELDS_PER_CHECK = 49

# B01001_001E, B19013A_001E, DP02_0001E, S1701_C01_001E, P1_001N
_VARIABLE_CODE = re.compile(r"^(?P<table>[A-Z]+\d*[A-Z]*)_(?:C\d+_)?\d+[A-Z]*$")
_ACS_ESTIMATE = re.compile(r"^(?P<code>[A-Z]+\d*[A-Z]*_(?:C\d+_)?\d+)E$")


@dataclass(frozen=True)
class CatalogRecord:
    name: str
    label: str
    concept: str
    geography: str


_CATALOG_CACHE: Dict[Tuple[int, str], Tuple[CatalogRecord, ...]] = {}
_CACHE_LOCK = threading.Lock()


def _table_id(name: str) -> str:
    match = _VARIABLE_CODE.match(name)
    return match.group("table") if match else ""


def _parse_variables(payload: Dict, dataset: str) -> Tuple[CatalogRecord, ...]:
    """Catalog records sorted by name, geography not yet resolved."""
    variables = payload.get("variables")
    if not isinstance(variables, dict):
        raise ValueError("response has no 'variables' mapping")

    is_acs = dataset.startswith("acs")
    records = []
    for raw_name, meta in variables.items():
        if is_acs:
            match = _ACS_ESTIMATE.match(raw_name)
            if not match:
                # margins of error and annotation variables are implied by the estimate
                continue
            name = match.group("code")
        else:
            name = raw_name

        if not _table_id(name):
            continue

        records.append(
            CatalogRecord(
                name=name,
                label=str(meta.get("label", "")),
                concept=str(meta.get("concept", "")),
                geography="",
            )
        )

    return tuple(sorted(records, key=lambda r: r.name))


def _check_fields(
    url: str,
    fields: List[str],
    query: Dict[str, Union[str, List[str]]],
    api_key: Optional[str],
    session: Optional[requests.Session],
    timeout: float,
) -> Set[str]:
    """Return the fields that have at least one value for the queried area."""
    params: Dict[str, Union[str, List[str]]] = dict(query, get=",".join(fields))
    if api_key:
        params["key"] = api_key

    try:
        response = census_get(url, params=params, session=session, timeout=timeout)
    except requests.exceptions.HTTPError as e:
        status = e.response.status_code if e.response is not None else None
        if status is None or status >= 500:
            raise
        # One field the API will not serve at this level spoils the whole request
        if len(fields) == 1:
            return set()
        middle = len(fields) // 2
        return _check_fields(url, fields[:middle], query, api_key, session, timeout) | _check_fields(
            url, fields[middle:], query, api_key, session, timeout
        )

    if response.status_code == 204 or not response.content:
        return set()

    payload = response.json()
    if not isinstance(payload, list) or len(payload) < 2:
        return set()

    frame = pd.DataFrame(payload[1:], columns=payload[0])
    return {
        field
        for field in fields
        if field in frame.columns
        and replace_census_sentinels(clean_numeric(frame[field])).notna().any()
    }


def _resolve_geographies(
    records: Tuple[CatalogRecord, ...],
    url: str,
    dataset: str,
    api_key: Optional[str],
    session: Optional[requests.Session],
    timeout: float,
) -> Tuple[CatalogRecord, ...]:
    suffix = "E" if dataset.startswith("acs") else ""
    pending: Dict[str, str] = {}
    for record in records:
        pending.setdefault(_table_id(record.name), f"{record.name}{suffix}")

    queries = AVAILABILITY_QUERIES
    if dataset.startswith("acs/acs1"):
        queries = [(level, query) for level, query in queries if level in ("county", "state")]

    smallest: Dict[str, str] = {}
    for level, query in queries:
        if not pending:
            break
        fields = list(pending.values())
        available: Set[str] = set()
        for start in range(0, len(fields), MAX_FIELDS_PER_CHECK):
            chunk = fields[start : start + MAX_FIELDS_PER_CHECK]
            available |= _check_fields(url, chunk, query, api_key, session, timeout)

        for table, field in list(pending.items()):
            if field in available:
                smallest[table] = level
                del pending[table]
        logger.debug(f"  🔎 {len(available):,} tables published at {level} level")

    if pending:
        logger.warning(f"  ⚠️ {len(pending):,} tables returned no values at any level")

    return tuple(replace(r, geography=smallest.get(_table_id(r.name), "")) for r in records)


def fetch_catalog(
    year: int,
    dataset: str = "acs/acs5",
    api_key: Optional[str] = None,
    session: Optional[requests.Session] = None,
    base_url: str = CENSUS_API_BASE_URL,
    timeout: float = DEFAULT_TIMEOUT,
) -> Tuple[CatalogRecord, ...]:
    """
    Return the catalog records for (year, dataset), using the process cache.

    Raises:
        CatalogUnavailable: if the catalog or the table geographies cannot be
            downloaded or parsed
    """
    key = (int(year), dataset)
    cached = _CATALOG_CACHE.get(key)
    if cached is not None:
        logger.debug(f"  📋 Using cached variable catalog for {year} {dataset}")
        return cached

    url = dataset_url(year, dataset, base_url)
    logger.info(f"📚 Loading variable catalog for {year} {dataset}")

    try:
        response = census_get(f"{url}/variables.json", session=session, timeout=timeout)
        records = _parse_variables(response.json(), dataset)
    except requests.exceptions.RequestException as e:
        raise CatalogUnavailable(year, dataset, str(e)) from e
    except ValueError as e:
        raise CatalogUnavailable(year, dataset, f"unreadable catalog: {e}") from e

    try:
        records = _resolve_geographies(records, url, dataset, api_key, session, timeout)
    except requests.exceptions.RequestException as e:
        raise CatalogUnavailable(year, dataset, f"geography check failed: {e}") from e
    except ValueError as e:
        raise CatalogUnavailable(year, dataset, f"unreadable geography check: {e}") from e

    with _CACHE_LOCK:
        _CATALOG_CACHE[key] = records

    logger.success(f"  ✅ Loaded {len(records):,} variables")
    return records


def clear_catalog_cache() -> None:
    """Forget every cached catalog."""
    with _CACHE_LOCK:
        _CATALOG_CACHE.clear()


def load_variables(
    year: int,
    dataset: str = "acs/acs5",
    geography: Optional[str] = None,
    api_key: Optional[str] = None,
    session: Optional[requests.Session] = None,
    base_url: str = CENSUS_API_BASE_URL,
    timeout: float = DEFAULT_TIMEOUT,
) -> pd.DataFrame:
    """
    Load the variable catalog as a DataFrame.

    Args:
        year: Dataset vintage (e.g. 2019)
        dataset: Dataset path (e.g. "acs/acs5")
        geography: Keep only variables whose smallest published geography
                   equals this level (e.g. "tract" or "block_group"); None
                   keeps everything
        api_key: Census API key used for the geography checks
        session: Optional requests session
        base_url: Census API base URL
        timeout: Request timeout in seconds

    Returns:
        DataFrame with columns name, label, concept, geography
    """
    level = validate_geography(geography) if geography is not None else None
    records = fetch_catalog(
        year, dataset, api_key=api_key, session=session, base_url=base_url, timeout=timeout
    )
    catalog = pd.DataFrame([asdict(r) for r in records], columns=CATALOG_COLUMNS)

    if level is not None:
        catalog = catalog[catalog["geography"] == level]
        logger.debug(f"  🎯 {len(catalog):,} variables available at {level} level")

    return catalog.reset_index(drop=True)


def search_variables(
    catalog: pd.DataFrame, text: str, fields: Sequence[str] = ("concept",)
) -> pd.DataFrame:
    """
    Case-insensitive search over catalog descriptions.

    Every whitespace-separated term in ``text`` must appear in at least one of
    ``fields``, so "median income" matches "MEDIAN HOUSEHOLD INCOME".
    """
    terms = [term for term in text.lower().split() if term]
    if not terms or catalog.empty:
        return catalog.copy()

    haystack = catalog[list(fields)].fillna("").astype(str).agg(" ".join, axis=1).str.lower()
    mask = pd.Series(True, index=catalog.index)
    for term in terms:
        mask &= haystack.str.contains(term, regex=False)

    return catalog[mask].reset_index(drop=True)
