#!/usr/bin/env python3
"""
ACS / CDC PLACES Mapping Pipeline with Click CLI

Runs the map workflow with the ability to override configuration values via
command line arguments, and exposes the Census variable catalog for
discovering variable codes.

Usage:
    python ops/run_pipeline.py [OPTIONS] [COMMAND]

    # Full pipeline (default command):
    python ops/run_pipeline.py
    python ops/run_pipeline.py run

    # Override config for a different vintage or state:
    python ops/run_pipeline.py --config census.year=2021 --config census.state=NJ run

    # Find variable codes:
    python ops/run_pipeline.py variables 2019 --geography tract --search "median income"

    # Tabular-only fetch of the configured variables:
    python ops/run_pipeline.py fetch --output data/census/ny_tracts.csv

    # Verbose logging:
    python ops/run_pipeline.py --verbose
"""

import os
import sys
import time
from pathlib import Path
from typing import Any, Dict, Optional, Tuple

import click
from loguru import logger

# Add project root to Python path for this orchestrator script
sys.path.insert(0, str(Path(__file__).parent.parent))

from ops.config_loader import Config
from processing.census_catalog import load_variables, search_variables
from processing.errors import PipelineError
from processing.fetch_acs import get_acs

SCRIPT_DIR = Path(__file__).parent


class ConfigContext:
    """Click context object for config management."""

    def __init__(self, config_file: Optional[str] = None):
        self.overrides: Dict[str, Any] = {}
        self.config_file = config_file
        self._config: Optional[Config] = None

    def add_override(self, key: str, value: Any) -> None:
        """Add config override using dot notation."""
        self.overrides[key] = value
        logger.debug(f"Added override: {key} = {value}")

    def get_config(self) -> Config:
        """Get config with overrides applied."""
        if self._config is None:
            config_file = self.config_file
            if config_file is None and not os.environ.get("PIPELINE_CONFIG_PATH"):
                default_config = SCRIPT_DIR / "config.yaml"
                if default_config.exists():
                    config_file = str(default_config)
            self._config = Config(config_file)
            if self.overrides:
                self._config.apply_overrides(self.overrides)
        return self._config


# Custom Click types for better validation
class ConfigOverride(click.ParamType):
    """Custom parameter type for config overrides."""

    name = "config_override"

    def convert(self, value, param, ctx) -> Tuple[str, Any]:
        if "=" not in value:
            self.fail(f"Invalid format: {value}. Use KEY=VALUE", param, ctx)

        key, val = value.split("=", 1)

        # Auto-parse value type
        if val.lower() in ("true", "false"):
            parsed_val: Any = val.lower() == "true"
        elif val.isdigit():
            parsed_val = int(val)
        elif "." in val and val.replace(".", "", 1).isdigit():
            parsed_val = float(val)
        else:
            parsed_val = val

        return key, parsed_val


# Main CLI group
@click.group(invoke_without_command=True)
@click.option(
    "--config",
    "config_overrides",
    multiple=True,
    type=ConfigOverride(),
    help="Set config values using dot notation (e.g., census.year=2021)",
)
@click.option(
    "--config-file",
    type=click.Path(exists=True, dir_okay=False),
    help="Use this config.yaml instead of ops/config.yaml",
)
@click.option("-v", "--verbose", is_flag=True, help="Enable DEBUG level logging")
@click.option(
    "--trace", is_flag=True, help="Enable TRACE level logging for deep debugging (maximum detail)"
)
@click.option("--log-file", type=str, help="Also log to specified file")
@click.pass_context
def cli(ctx, **kwargs):
    """
    ACS and CDC PLACES choropleth pipeline

    \b
    Examples:
      python run_pipeline.py                                   # Run the full pipeline
      python run_pipeline.py --config census.state=NJ run      # Different state
      python run_pipeline.py variables 2019 --search poverty   # Find variable codes
      python run_pipeline.py fetch -o tracts.csv               # Tabular-only download
    """
    setup_logging(verbose=kwargs.get("verbose", False), enable_trace=kwargs.get("trace", False))

    if kwargs.get("log_file"):
        log_file = kwargs["log_file"]
        log_level = (
            "TRACE" if kwargs.get("trace") else ("DEBUG" if kwargs.get("verbose") else "INFO")
        )
        logger.add(
            log_file,
            level=log_level,
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} | {message}",
            rotation="10 MB",  # Rotate when file gets large
            retention="7 days",  # Keep logs for a week
        )
        logger.info(f"📄 Also logging to file: {log_file}")

    logger.debug(f"🔧 CLI arguments received: {kwargs}")

    config_ctx = ConfigContext(kwargs.get("config_file"))
    for key, value in kwargs["config_overrides"]:
        config_ctx.add_override(key, value)
    ctx.obj = config_ctx

    if ctx.invoked_subcommand is None:
        ctx.invoke(run)


@cli.command()
@click.option("--no-output", is_flag=True, help="Run without writing the map and GeoJSON")
@click.pass_context
def run(ctx, no_output):
    """Fetch, derive, join, reshape and render the configured maps."""
    from analysis.health_outcomes_pipeline import run_pipeline

    logger.info("🗺️ ACS / CDC PLACES Mapping Pipeline")
    start_time = time.time()

    try:
        config = ctx.obj.get_config()
        logger.info(f"📋 Project: {config.get('project_name')}")
        logger.info(f"📋 Description: {config.get('description')}")
        config.print_config_summary()
    except Exception as e:
        logger.critical(f"Configuration error: {e}")
        logger.info("💡 Make sure config.yaml exists and is valid")
        ctx.exit(1)

    try:
        result = run_pipeline(config, write_outputs=not no_output)
    except (PipelineError, FileNotFoundError, KeyError, ValueError) as e:
        handle_critical_error(e, "pipeline run")
        ctx.exit(1)

    elapsed = time.time() - start_time
    logger.success(f"🎉 Pipeline completed in {elapsed:.1f} seconds")
    if result.map_path:
        logger.info(f"   🖼️ Map: {result.map_path}")
    if result.geojson_path:
        logger.info(f"   🌐 GeoJSON: {result.geojson_path}")


@cli.command()
@click.argument("year", type=int)
@click.option("--dataset", default="acs/acs5", show_default=True, help="Census dataset path")
@click.option("--geography", help="Only variables whose smallest geography is this level")
@click.option("--search", "search_text", help="Case-insensitive text to look for in concepts")
@click.option("--limit", default=25, show_default=True, help="Maximum rows to print")
def variables(year, dataset, geography, search_text, limit):
    """List Census variables for a dataset vintage."""
    try:
        catalog = load_variables(year, dataset, geography=geography)
    except (PipelineError, ValueError) as e:
        handle_critical_error(e, "variable catalog lookup")
        raise SystemExit(1)

    if search_text:
        catalog = search_variables(catalog, search_text)

    logger.info(f"📚 {len(catalog):,} matching variables")
    for row in catalog.head(limit).itertuples(index=False):
        click.echo(f"{row.name}\t{row.geography}\t{row.concept}\t{row.label}")


@cli.command()
@click.option(
    "-o",
    "--output",
    "output_path",
    type=click.Path(dir_okay=False),
    help="CSV destination (default: data/census/<state>_<geography>_<year>.csv)",
)
@click.option("--tidy", is_flag=True, help="One row per unit and variable")
@click.pass_context
def fetch(ctx, output_path, tidy):
    """Download the configured ACS variables (no geometry) to CSV."""
    config = ctx.obj.get_config()
    year = int(config.get_census_setting("year"))
    geography = config.get_census_setting("geography")
    state = config.get_census_setting("state")

    try:
        table = get_acs(
            geography=geography,
            state=state,
            variables=config.get_variable_spec(),
            year=year,
            dataset=config.get_census_setting("dataset"),
            output="tidy" if tidy else "wide",
            api_key=config.get_api_key(),
            base_url=config.get_census_setting("base_url"),
            timeout=config.get_census_setting("timeout"),
        )
    except (PipelineError, ValueError) as e:
        handle_critical_error(e, "ACS fetch")
        ctx.exit(1)

    if output_path is None:
        filename = f"{state}_{geography.replace(' ', '_')}_{year}.csv".lower()
        path = config.get_output_dir("census") / filename
    else:
        path = Path(output_path)
        path.parent.mkdir(parents=True, exist_ok=True)

    table.to_csv(path, index=False)
    logger.success(f"✅ Wrote {len(table):,} rows to {path}")


def setup_logging(verbose: bool = False, enable_trace: bool = False) -> None:
    """
    Configure loguru logging with appropriate levels.

    Args:
        verbose: If True, set log level to DEBUG
        enable_trace: If True, enable TRACE level logging for deep debugging
    """
    # Remove default logger
    logger.remove()

    if enable_trace:
        log_level = "TRACE"
        log_format = "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | <level>{message}</level>"
    elif verbose:
        log_level = "DEBUG"
        log_format = "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | <level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> | <level>{message}</level>"
    else:
        log_level = "INFO"
        log_format = (
            "<green>{time:HH:mm:ss}</green> | <level>{level: <8}</level> | <level>{message}</level>"
        )

    logger.add(
        sys.stderr,
        format=log_format,
        level=log_level,
        colorize=True,
        backtrace=enable_trace,  # Enable backtrace for trace mode
        diagnose=enable_trace,  # Enable detailed diagnosis for trace mode
    )

    os.environ["LOGURU_LEVEL"] = log_level

    if verbose:
        logger.debug("🔧 Verbose logging enabled (DEBUG level)")
    if enable_trace:
        logger.trace("🔍 Trace logging enabled - maximum detail mode")


def handle_critical_error(error: Exception, context: str = "") -> None:
    """
    Handle critical errors with optional trace logging.

    Args:
        error: The exception that occurred
        context: Additional context about where the error occurred
    """
    enable_trace = os.environ.get("LOGURU_LEVEL", "INFO") == "TRACE"

    if enable_trace:
        logger.trace("💥 TRACE MODE: Analyzing critical error with full context")
        logger.trace(f"Error context: {context}")
        logger.trace(f"Error type: {type(error).__name__}")
        logger.trace(f"Error args: {error.args}")

        import traceback

        logger.trace("Full traceback:")
        logger.trace(traceback.format_exc())

    logger.critical(f"💥 CRITICAL ERROR: {context}")
    logger.critical(f"Exception: {type(error).__name__}: {error}")

    if not enable_trace:
        logger.info("💡 For detailed debugging, run with --trace flag")


if __name__ == "__main__":
    cli()
