import geopandas as gpd
import numpy as np
import pandas as pd
import pytest
from shapely.geometry import box

from conftest import TRACT_IDS, FakeResponse, FakeSession
from processing import fetch_acs
from processing.errors import CensusRequestError, UnknownVariableCode
from processing.fetch_acs import get_acs, get_acs_geometry, normalize_variable_spec


def test_normalize_variable_spec():
    assert normalize_variable_spec({"hhincome": "B06011_001E"}) == {"hhincome": "B06011_001"}
    assert normalize_variable_spec(["b06011_001", "B06009_002E"]) == {
        "B06011_001": "B06011_001",
        "B06009_002": "B06009_002",
    }
    with pytest.raises(ValueError):
        normalize_variable_spec({})


def test_get_acs_wide(acs_session, variable_spec):
    table = get_acs("tract", "NY", variable_spec, 2019, session=acs_session)

    assert list(table.columns) == [
        "GEOID",
        "NAME",
        "hhincomeE",
        "hhincomeM",
        "total_educationE",
        "total_educationM",
        "education_lessthanhsE",
        "education_lessthanhsM",
    ]
    assert table["GEOID"].tolist() == TRACT_IDS
    assert table.loc[0, "hhincomeE"] == 31250.0
    assert table.loc[0, "education_lessthanhsM"] == 60.0


def test_get_acs_request_parameters(acs_session, variable_spec):
    get_acs("tract", "New York", variable_spec, 2019, api_key="secret", session=acs_session)

    call = acs_session.calls[0]
    assert call["url"] == "https://api.census.gov/data/2019/acs/acs5"
    assert call["params"]["get"] == (
        "NAME,B06011_001E,B06011_001M,B06009_001E,B06009_001M,B06009_002E,B06009_002M"
    )
    assert call["params"]["for"] == "tract:*"
    assert call["params"]["in"] == "state:36"
    assert call["params"]["key"] == "secret"


def test_get_acs_maps_sentinels_to_missing(acs_session, variable_spec):
    table = get_acs("tract", "NY", variable_spec, 2019, session=acs_session)

    assert np.isnan(table.loc[1, "hhincomeM"])
    assert np.isnan(table.loc[2, "hhincomeE"])
    assert table.loc[2, "total_educationE"] == 0.0


def test_get_acs_tidy_groups_rows_by_unit(acs_session, variable_spec):
    tidy = get_acs("tract", "NY", variable_spec, 2019, output="tidy", session=acs_session)

    assert list(tidy.columns) == ["GEOID", "NAME", "variable", "estimate", "moe"]
    assert len(tidy) == 9
    assert tidy["GEOID"].tolist()[:3] == [TRACT_IDS[0]] * 3
    assert tidy["variable"].tolist()[:3] == ["hhincome", "total_education", "education_lessthanhs"]
    first = tidy.iloc[0]
    assert (first["estimate"], first["moe"]) == (31250.0, 4120.0)


def test_get_acs_block_group_parameters():
    payload = [
        ["NAME", "B01003_001E", "B01003_001M", "state", "county", "tract", "block group"],
        ["Block Group 1", "950", "120", "36", "001", "000100", "1"],
    ]
    session = FakeSession([FakeResponse(payload)])
    table = get_acs("block group", "NY", {"pop": "B01003_001"}, 2019, session=session)

    assert session.calls[0]["params"]["for"] == "block group:*"
    assert session.calls[0]["params"]["in"] == ["state:36", "county:*"]
    assert table["GEOID"].tolist() == ["360010001001"]


def test_get_acs_splits_long_variable_lists(monkeypatch):
    monkeypatch.setattr(fetch_acs, "MAX_CODES_PER_REQUEST", 1)
    session = FakeSession(
        [
            FakeResponse(
                [
                    ["NAME", "B01003_001E", "B01003_001M", "state", "county"],
                    ["Albany County", "305000", "-555555555", "36", "001"],
                    ["Bronx County", "1420000", "-555555555", "36", "005"],
                ]
            ),
            FakeResponse(
                [
                    ["NAME", "B19013_001E", "B19013_001M", "state", "county"],
                    ["Bronx County", "38085", "590", "36", "005"],
                    ["Albany County", "64535", "1245", "36", "001"],
                ]
            ),
        ]
    )
    table = get_acs(
        "county", "NY", {"pop": "B01003_001", "income": "B19013_001"}, 2019, session=session
    )

    assert len(session.calls) == 2
    assert table["GEOID"].tolist() == ["36001", "36005"]
    assert table["incomeE"].tolist() == [64535.0, 38085.0]


def test_get_acs_unknown_variable_code(variable_spec):
    session = FakeSession(
        [FakeResponse(status_code=400, text="error: unknown variable 'B99999_999E'")]
    )
    with pytest.raises(UnknownVariableCode) as excinfo:
        get_acs("tract", "NY", {"bogus": "B99999_999"}, 2019, session=session)

    assert excinfo.value.code == "B99999_999"
    assert excinfo.value.year == 2019
    assert excinfo.value.state == "36"


def test_get_acs_other_request_failure(variable_spec):
    session = FakeSession([FakeResponse(status_code=400, text="error: invalid 'for' argument")])
    with pytest.raises(CensusRequestError) as excinfo:
        get_acs("tract", "NY", variable_spec, 2019, session=session)
    assert not isinstance(excinfo.value, UnknownVariableCode)


def test_get_acs_empty_result_is_an_empty_frame(variable_spec):
    session = FakeSession([FakeResponse(status_code=204, text="")])
    table = get_acs("tract", "NY", variable_spec, 2019, session=session)

    assert table.empty
    assert "GEOID" in table.columns
    assert "hhincomeE" in table.columns


def test_get_acs_rejects_unknown_output(acs_session, variable_spec):
    with pytest.raises(ValueError, match="output"):
        get_acs("tract", "NY", variable_spec, 2019, output="long", session=acs_session)


def test_get_acs_response_missing_requested_field(acs_payload, variable_spec):
    dropped = acs_payload[0].index("B06009_002M")
    payload = [[value for i, value in enumerate(row) if i != dropped] for row in acs_payload]
    session = FakeSession([FakeResponse(payload)])

    with pytest.raises(CensusRequestError, match="missing requested fields"):
        get_acs("tract", "NY", variable_spec, 2019, session=session)


@pytest.fixture
def boundary_loaders(monkeypatch, tract_polygons):
    """Replace the pygris loaders with in-memory frames that include a neighboring state."""
    requested = []
    neighbor = gpd.GeoDataFrame(
        {"GEOID": ["34001000100"]}, geometry=[box(-74.5, 39.4, -74.4, 39.5)], crs="EPSG:4269"
    )
    tracts = pd.concat([tract_polygons.iloc[:2], neighbor], ignore_index=True)
    tracts["STATEFP"] = tracts["GEOID"].str[:2]
    counties = gpd.GeoDataFrame(
        {"GEOID": ["36001", "34001"], "STATEFP": ["36", "34"]},
        geometry=[box(-74.3, 42.4, -73.6, 42.8), box(-74.9, 39.3, -74.3, 39.7)],
        crs="EPSG:4269",
    )
    states = gpd.GeoDataFrame(
        {"GEOID": ["36", "34"], "STATEFP": ["36", "34"]},
        geometry=[box(-79.8, 40.5, -71.8, 45.0), box(-75.6, 38.9, -73.9, 41.4)],
        crs="EPSG:4269",
    )

    def loader(name, frame):
        def load(**kwargs):
            requested.append((name, kwargs))
            return gpd.GeoDataFrame(frame, geometry="geometry", crs="EPSG:4269")

        return load

    for name, frame in [("tracts", tracts), ("counties", counties), ("states", states)]:
        monkeypatch.setattr(fetch_acs.pygris, name, loader(name, frame))
    return requested


def test_get_acs_geometry_loads_cartographic_tracts_for_the_state(boundary_loaders):
    boundaries = get_acs_geometry("tract", "NY", 2019)

    assert boundary_loaders == [("tracts", {"state": "36", "cb": True, "year": 2019})]
    assert list(boundaries.columns) == ["GEOID", "geometry"]
    assert boundaries["GEOID"].tolist() == TRACT_IDS[:2]


def test_get_acs_geometry_counties(boundary_loaders):
    boundaries = get_acs_geometry("county", "NY", 2020)

    assert boundary_loaders == [("counties", {"state": "36", "cb": True, "year": 2020})]
    assert boundaries["GEOID"].tolist() == ["36001"]


def test_get_acs_geometry_filters_national_state_file(boundary_loaders):
    boundaries = get_acs_geometry("state", "NY", 2020)

    assert boundary_loaders == [("states", {"cb": True, "year": 2020})]
    assert boundaries["GEOID"].tolist() == ["36"]


def test_get_acs_with_geometry(acs_session, variable_spec, boundary_loaders):
    table = get_acs("tract", "NY", variable_spec, 2019, geometry=True, session=acs_session)

    assert isinstance(table, gpd.GeoDataFrame)
    assert table.crs.to_epsg() == 4269
    assert len(table) == 3
    # third tract has no polygon in the boundary file
    assert table.geometry.isna().tolist() == [False, False, True]


def test_get_acs_geometry_download_failure(monkeypatch):
    def broken_tracts(**kwargs):
        raise OSError("HTTP 404")

    monkeypatch.setattr(fetch_acs.pygris, "tracts", broken_tracts)
    with pytest.raises(CensusRequestError, match="Could not load tract boundaries"):
        get_acs_geometry("tract", "NY", 1990)


def test_get_acs_geometry_without_geoid(monkeypatch, tract_polygons):
    monkeypatch.setattr(
        fetch_acs.pygris, "tracts", lambda **kwargs: tract_polygons.rename(columns={"GEOID": "TRACTCE"})
    )
    with pytest.raises(CensusRequestError, match="no GEOID"):
        get_acs_geometry("tract", "NY", 2019)
