"""Thin HTTP layer over the Census Data API shared by the catalog and the fetcher."""

import time
from typing import Any, Dict, Optional

import requests
from loguru import logger

CENSUS_API_BASE_URL = "https://api.census.gov/data"
DEFAULT_TIMEOUT = 60
RETRY_DELAY_SECONDS = 2.0


def dataset_url(year: int, dataset: str, base_url: str = CENSUS_API_BASE_URL) -> str:
    """Build the endpoint URL for a dataset vintage, e.g. .../data/2019/acs/acs5."""
    return f"{base_url.rstrip('/')}/{int(year)}/{dataset.strip('/')}"


def _is_transient(error: requests.exceptions.RequestException) -> bool:
    if isinstance(error, (requests.exceptions.ConnectionError, requests.exceptions.Timeout)):
        return True
    response = getattr(error, "response", None)
    return response is not None and response.status_code >= 500


def census_get(
    url: str,
    params: Optional[Dict[str, Any]] = None,
    session: Optional[requests.Session] = None,
    timeout: float = DEFAULT_TIMEOUT,
    retries: int = 1,
) -> requests.Response:
    """
    Issue a GET against the Census API and raise for HTTP errors.

    Connection errors, timeouts and 5xx responses are retried up to
    ``retries`` times; 4xx responses are raised immediately so callers can
    inspect the error body.
    """
    http = session or requests.Session()
    attempt = 0

    while True:
        try:
            response = http.get(url, params=params, timeout=timeout)
            response.raise_for_status()
            return response
        except requests.exceptions.RequestException as e:
            if attempt < retries and _is_transient(e):
                attempt += 1
                logger.warning(f"  ⚠️ Transient Census API error ({e}), retrying {url}")
                time.sleep(RETRY_DELAY_SECONDS)
                continue
            logger.error(f"❌ Census API request failed: GET {url}: {e}")
            raise
