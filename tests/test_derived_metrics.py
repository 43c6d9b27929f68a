import geopandas as gpd
import numpy as np
import pandas as pd
import pytest

from processing.derived_metrics import add_proportions, safe_proportion, select_estimates


@pytest.fixture
def wide():
    return pd.DataFrame(
        {
            "GEOID": ["36001000100", "36001000200", "36001000300", "36001000400"],
            "NAME": ["Tract 1", "Tract 2", "Tract 3", "Tract 4"],
            "total_educationE": [1200.0, 800.0, 0.0, np.nan],
            "total_educationM": [150.0, 90.0, 11.0, np.nan],
            "education_lessthanhsE": [300.0, 40.0, 0.0, 12.0],
            "education_lessthanhsM": [60.0, 20.0, 11.0, 5.0],
        }
    )


def test_safe_proportion_undefined_denominators():
    result = safe_proportion(pd.Series([1.0, 2.0, np.nan, 3.0]), pd.Series([2.0, 0.0, 4.0, np.nan]))
    assert result.iloc[0] == 0.5
    assert result.iloc[1:].isna().all()


def test_add_proportions(wide):
    result = add_proportions(
        wide, [("perc_lessthanhs", "education_lessthanhs", "total_education")]
    )

    assert result["perc_lessthanhs"].iloc[0] == pytest.approx(0.25)
    assert result["perc_lessthanhs"].iloc[1] == pytest.approx(0.05)
    # zero and missing denominators
    assert result["perc_lessthanhs"].iloc[2:].isna().all()
    assert result["GEOID"].tolist() == wide["GEOID"].tolist()


def test_add_proportions_leaves_input_untouched(wide):
    add_proportions(wide, [("perc_lessthanhs", "education_lessthanhs", "total_education")])
    assert "perc_lessthanhs" not in wide.columns


def test_add_proportions_unknown_alias(wide):
    with pytest.raises(KeyError, match="hhincome"):
        add_proportions(wide, [("ratio", "hhincome", "total_education")])


def test_select_estimates_renames_to_aliases(wide):
    derived = add_proportions(wide, [("perc", "education_lessthanhs", "total_education")])
    result = select_estimates(derived, ["total_education", "perc"])

    assert list(result.columns) == ["GEOID", "NAME", "total_education", "perc"]
    assert result["total_education"].tolist()[:2] == [1200.0, 800.0]


def test_select_estimates_keeps_moe_and_geometry(wide, tract_polygons):
    gdf = gpd.GeoDataFrame(
        wide.iloc[:3].reset_index(drop=True),
        geometry=tract_polygons.geometry.values,
        crs=tract_polygons.crs,
    )
    result = select_estimates(gdf, ["education_lessthanhs"], keep_moe=True)

    assert isinstance(result, gpd.GeoDataFrame)
    assert list(result.columns) == [
        "GEOID",
        "NAME",
        "education_lessthanhs",
        "education_lessthanhs_moe",
        "geometry",
    ]
    assert result.crs == tract_polygons.crs


def test_proportion_of_counts():
    df = pd.DataFrame({"GEOID": ["a", "b"], "numE": [45.0, 45.0], "denE": [180.0, 0.0]})
    result = add_proportions(df, [("share", "num", "den")])
    assert result["share"].iloc[0] == 0.25
    assert result["share"].isna().tolist() == [False, True]
    assert not np.isinf(result["share"]).any()
