import sys

import pandas as pd
import pytest
from click.testing import CliRunner
from loguru import logger

from analysis import health_outcomes_pipeline
from analysis.health_outcomes_pipeline import PipelineResult
from ops import run_pipeline as cli_module
from processing.errors import CatalogUnavailable, KeyTypeMismatch


@pytest.fixture(autouse=True)
def restore_logger():
    yield
    logger.remove()
    logger.add(sys.stderr)


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def catalog():
    return pd.DataFrame(
        {
            "name": ["B06011_001", "B19013_001", "C17002_001"],
            "label": ["Estimate!!Median income", "Estimate!!Median household income", "Estimate!!Total:"],
            "concept": [
                "MEDIAN INCOME BY PLACE OF BIRTH",
                "MEDIAN HOUSEHOLD INCOME",
                "RATIO OF INCOME TO POVERTY LEVEL",
            ],
            "geography": ["tract", "block group", "tract"],
        }
    )


def test_variables_command_searches_catalog(runner, monkeypatch, catalog):
    calls = []

    def fake_load_variables(year, dataset, geography=None):
        calls.append((year, dataset, geography))
        return catalog

    monkeypatch.setattr(cli_module, "load_variables", fake_load_variables)
    result = runner.invoke(cli_module.cli, ["variables", "2019", "--search", "median income"])

    assert result.exit_code == 0, result.output
    assert calls == [(2019, "acs/acs5", None)]
    assert "B06011_001" in result.output
    assert "B19013_001" in result.output
    assert "C17002_001" not in result.output


def test_variables_command_limit(runner, monkeypatch, catalog):
    monkeypatch.setattr(cli_module, "load_variables", lambda *args, **kwargs: catalog)
    result = runner.invoke(cli_module.cli, ["variables", "2019", "--limit", "1"])

    assert result.exit_code == 0, result.output
    assert len([line for line in result.output.splitlines() if "\t" in line]) == 1


def test_variables_command_catalog_unavailable(runner, monkeypatch):
    def unavailable(*args, **kwargs):
        raise CatalogUnavailable(1999, "acs/acs5", "404")

    monkeypatch.setattr(cli_module, "load_variables", unavailable)
    result = runner.invoke(cli_module.cli, ["variables", "1999"])
    assert result.exit_code == 1


def test_fetch_command_writes_csv(runner, monkeypatch, config_file, tmp_path):
    captured = {}

    def fake_get_acs(**kwargs):
        captured.update(kwargs)
        return pd.DataFrame({"GEOID": ["36001000100"], "NAME": ["Tract 1"], "hhincomeE": [31250.0]})

    monkeypatch.setattr(cli_module, "get_acs", fake_get_acs)
    output = tmp_path / "out" / "tracts.csv"
    result = runner.invoke(
        cli_module.cli,
        [
            "--config-file",
            str(config_file),
            "--config",
            "census.year=2021",
            "fetch",
            "--output",
            str(output),
        ],
    )

    assert result.exit_code == 0, result.output
    assert captured["year"] == 2021
    assert captured["state"] == "NY"
    assert captured["output"] == "wide"
    written = pd.read_csv(output, dtype={"GEOID": str})
    assert written["GEOID"].tolist() == ["36001000100"]


def test_run_command(runner, monkeypatch, config_file, tmp_path):
    calls = []

    def fake_run_pipeline(config, write_outputs=True):
        calls.append((config.get_census_setting("state"), write_outputs))
        return PipelineResult(joined=None, long=None, map_path=tmp_path / "map.png", geojson_path=None)

    monkeypatch.setattr(health_outcomes_pipeline, "run_pipeline", fake_run_pipeline)
    result = runner.invoke(
        cli_module.cli,
        ["--config-file", str(config_file), "--config", "census.state=NJ", "run", "--no-output"],
    )

    assert result.exit_code == 0, result.output
    assert calls == [("NJ", False)]


def test_run_is_the_default_command(runner, monkeypatch, config_file):
    calls = []

    def fake_run_pipeline(config, write_outputs=True):
        calls.append(write_outputs)
        return PipelineResult(joined=None, long=None, map_path=None, geojson_path=None)

    monkeypatch.setattr(health_outcomes_pipeline, "run_pipeline", fake_run_pipeline)
    result = runner.invoke(cli_module.cli, ["--config-file", str(config_file)])

    assert result.exit_code == 0, result.output
    assert calls == [True]


def test_run_command_pipeline_failure(runner, monkeypatch, config_file):
    def failing_run_pipeline(config, write_outputs=True):
        raise KeyTypeMismatch("GEOID", ["36001000100"], [36001000100])

    monkeypatch.setattr(health_outcomes_pipeline, "run_pipeline", failing_run_pipeline)
    result = runner.invoke(cli_module.cli, ["--config-file", str(config_file), "run"])
    assert result.exit_code == 1


def test_config_override_requires_key_value(runner):
    result = runner.invoke(cli_module.cli, ["--config", "census.year", "variables", "2019"])
    assert result.exit_code == 2
    assert "KEY=VALUE" in result.output


@pytest.mark.parametrize(
    "raw, expected",
    [
        ("census.year=2021", ("census.year", 2021)),
        ("join.min_match_rate=0.75", ("join.min_match_rate", 0.75)),
        ("system.debug=true", ("system.debug", True)),
        ("census.state=NJ", ("census.state", "NJ")),
    ],
)
def test_config_override_parses_values(raw, expected):
    assert cli_module.ConfigOverride().convert(raw, None, None) == expected


def test_log_file_option(runner, monkeypatch, catalog, tmp_path):
    monkeypatch.setattr(cli_module, "load_variables", lambda *args, **kwargs: catalog)
    log_file = tmp_path / "pipeline.log"
    result = runner.invoke(cli_module.cli, ["--log-file", str(log_file), "variables", "2019"])

    assert result.exit_code == 0, result.output
    logger.remove()
    assert "matching variables" in log_file.read_text()
