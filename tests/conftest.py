"""Shared fixtures: fake Census API sessions, tract polygons and a small config tree."""

import json
import sys
from pathlib import Path

import matplotlib

matplotlib.use("Agg")

import geopandas as gpd
import matplotlib.pyplot as plt
import pandas as pd
import pytest
import requests
import yaml
from shapely.geometry import box

sys.path.append(str(Path(__file__).parent.parent))
from processing import census_api
from processing.census_catalog import clear_catalog_cache

TRACT_IDS = ["36001000100", "36001000200", "36001000300"]

ACS_HEADER = [
    "NAME",
    "B06011_001E",
    "B06011_001M",
    "B06009_001E",
    "B06009_001M",
    "B06009_002E",
    "B06009_002M",
    "state",
    "county",
    "tract",
]

# Third tract has no adults in the education universe, so its proportion is undefined
ACS_ROWS = [
    ["Census Tract 1, Albany County, New York", "31250", "4120", "1200", "150", "300", "60", "36", "001", "000100"],
    ["Census Tract 2, Albany County, New York", "42100", "-666666666", "800", "90", "40", "20", "36", "001", "000200"],
    ["Census Tract 3, Albany County, New York", "-666666666", "-222222222", "0", "11", "0", "11", "36", "001", "000300"],
]


class FakeResponse:
    """Just enough of requests.Response for the Census client."""

    def __init__(self, payload=None, status_code=200, text=None):
        self.status_code = status_code
        if text is None:
            text = "" if payload is None else json.dumps(payload)
        self.text = text
        self.content = text.encode()

    def json(self):
        return json.loads(self.text)

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"{self.status_code} Error", response=self)


class FakeSession:
    """Returns queued responses in order and records every request."""

    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def get(self, url, params=None, timeout=None):
        self.calls.append({"url": url, "params": params, "timeout": timeout})
        if not self.responses:
            raise AssertionError(f"Unexpected request: {url}")
        response = self.responses.pop(0)
        if isinstance(response, Exception):
            raise response
        return response


@pytest.fixture(autouse=True)
def no_retry_delay(monkeypatch):
    monkeypatch.setattr(census_api, "RETRY_DELAY_SECONDS", 0)


@pytest.fixture(autouse=True)
def fresh_catalog_cache():
    clear_catalog_cache()
    yield
    clear_catalog_cache()


@pytest.fixture(autouse=True)
def close_figures():
    yield
    plt.close("all")


@pytest.fixture
def acs_payload():
    return [ACS_HEADER] + [list(row) for row in ACS_ROWS]


@pytest.fixture
def acs_session(acs_payload):
    return FakeSession([FakeResponse(acs_payload)])


@pytest.fixture
def variable_spec():
    return {
        "hhincome": "B06011_001",
        "total_education": "B06009_001",
        "education_lessthanhs": "B06009_002",
    }


@pytest.fixture
def tract_polygons():
    """Three adjacent ~1 km squares near Albany, in the NAD83 CRS of the boundary files."""
    return gpd.GeoDataFrame(
        {"GEOID": TRACT_IDS},
        geometry=[box(-73.80 + i * 0.012, 42.65, -73.788 + i * 0.012, 42.659) for i in range(3)],
        crs="EPSG:4269",
    )


@pytest.fixture
def places_frame():
    return pd.DataFrame(
        {
            "Year": ["2019"] * 5,
            "StateAbbr": ["NY", "NY", "NY", "NJ", "NY"],
            "LocationName": ["36001000100", "36001000200", "36001000100", "34001000100", "36005000100"],
            "MeasureId": ["CHD", "CHD", "CASTHMA", "CHD", "CHD"],
            "Data_Value": ["6.1", "7.4", "9.9", "5.0", "8.8"],
        }
    )


@pytest.fixture
def places_csv(tmp_path, places_frame):
    path = tmp_path / "data" / "health" / "places.csv"
    path.parent.mkdir(parents=True)
    places_frame.to_csv(path, index=False)
    return path


@pytest.fixture
def config_file(tmp_path, places_csv, variable_spec):
    data = {
        "project_name": "Test Maps",
        "description": "Tracts in Albany County",
        "metadata": {"data_source": "Test fixtures"},
        "directories": {
            "data": "data",
            "health": "data/health",
            "census": "data/census",
            "geospatial": "data/geospatial",
            "maps": "maps",
        },
        "input_files": {"places_csv": "data/health/places.csv"},
        "census": {
            "year": 2019,
            "dataset": "acs/acs5",
            "geography": "tract",
            "state": "NY",
            "api_key_env": "TEST_CENSUS_API_KEY",
            "variables": variable_spec,
        },
        "derived": [
            {
                "output": "perc_lessthanhs",
                "numerator": "education_lessthanhs",
                "denominator": "total_education",
            }
        ],
        "places": {
            "unit_id_column": "LocationName",
            "value_column": "Data_Value",
            "metric_name": "chd",
            "filters": {"MeasureId": "CHD", "StateAbbr": "NY"},
        },
        "join": {"min_match_rate": 0.5},
        "visualization": {
            "metrics": ["perc_lessthanhs", "chd"],
            "facet_columns": 2,
            "map_dpi": 40,
            "panel_size": 2,
        },
    }
    path = tmp_path / "config.yaml"
    with open(path, "w") as f:
        yaml.safe_dump(data, f, sort_keys=False)
    return path
