"""
Configuration Loader for the ACS / PLACES mapping pipeline

This module provides a centralized way to load and access configuration
settings from the config.yaml file. Pipeline components themselves take
literal parameters; only the driver and the CLI read configuration.

Usage:
    from ops.config_loader import Config

    config = Config()
    variables = config.get_variable_spec()
    places_csv = config.get_input_path("places_csv")
    maps_dir = config.get_output_dir("maps")
"""

import copy
import os
import pathlib
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml  # type: ignore[import-untyped]
from loguru import logger


class Config:
    """Configuration manager for the mapping pipeline."""

    # Default values that can be overridden in config
    DEFAULTS: Dict[str, Any] = {
        "census": {
            "year": 2019,
            "dataset": "acs/acs5",
            "geography": "tract",
            "state": "NY",
            "api_key_env": "CENSUS_API_KEY",
            "base_url": "https://api.census.gov/data",
            "timeout": 60,
        },
        "places": {
            "unit_id_column": "LocationName",
            "value_column": "Data_Value",
            "metric_name": "chd",
            "filters": {},
        },
        "join": {"min_match_rate": 0.9},
        "visualization": {
            "map_dpi": 300,
            "panel_size": 5,
            "facet_columns": 2,
            "low_color": "#fff7ec",
            "high_color": "#b30000",
            "missing_color": "#f0f0f0",
            "north_arrow": "tr",
            "scale_units": "imperial",
            "scale_bar_location": "bl",
        },
        "system": {
            "output_crs": "EPSG:4326",
        },
    }

    def __init__(
        self,
        config_file: Optional[str] = None,
        project_root_override: Optional[Union[str, Path]] = None,
    ):
        """
        Initialize configuration manager.

        Args:
            config_file: Path to config file. If None, looks for:
                        1. Environment variable PIPELINE_CONFIG_PATH
                        2. config.yaml in current directory
                        3. ../ops/config.yaml (if running from analysis/)
                        4. ops/config.yaml (if running from the project root)
            project_root_override: Override project root detection (useful for temp configs)
        """
        if config_file is None:
            # Check environment variable first (for CLI overrides)
            env_config = os.environ.get("PIPELINE_CONFIG_PATH")
            if env_config and Path(env_config).exists():
                config_file = env_config
                logger.debug(f"Using config from environment: {config_file}")
            elif Path("config.yaml").exists():
                config_file = "config.yaml"
            elif Path("../ops/config.yaml").exists():
                config_file = "../ops/config.yaml"
                logger.debug("Using ops/config.yaml from analysis directory")
            elif Path("ops/config.yaml").exists():
                config_file = "ops/config.yaml"
            else:
                raise FileNotFoundError(
                    "No config.yaml found. Check current directory or set PIPELINE_CONFIG_PATH"
                )

        self.config_path = Path(config_file).resolve()
        self.config_dir = self.config_path.parent

        # Use project root override if provided (for temp configs)
        if project_root_override:
            self.project_root = Path(project_root_override).resolve()
            logger.debug(f"Using project root override: {self.project_root}")
        else:
            self.project_root = self._find_project_root()

        logger.debug(f"Loading config from: {self.config_path}")
        logger.debug(f"Project root: {self.project_root}")

        with open(self.config_path, "r") as f:
            self.data = yaml.safe_load(f) or {}

        self._setup_paths()

    def _setup_paths(self) -> None:
        """Setup base directory paths relative to project root."""
        dirs = self.data.get("directories", {})

        self.data_dir = self.project_root / dirs.get("data", "data")
        self.health_dir = self.project_root / dirs.get("health", "data/health")
        self.census_dir = self.project_root / dirs.get("census", "data/census")
        self.maps_dir = self.project_root / dirs.get("maps", "maps")
        self.geospatial_dir = self.project_root / dirs.get("geospatial", "data/geospatial")

    def get_input_path(self, filename_key: str) -> pathlib.Path:
        """
        Get full path to an input file. The path is taken directly from config.yaml
        and joined with the project root.

        Args:
            filename_key: Key for the filename in input_files

        Returns:
            Full absolute path to the input file
        """
        relative_path_str = self.data.get("input_files", {}).get(filename_key)
        if not relative_path_str:
            raise ValueError(
                f"Input filename key '{filename_key}' not found in config: input_files"
            )
        return self.project_root / relative_path_str

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        Get configuration value using dot notation with intelligent defaults.

        Args:
            key_path: Dot-separated path to the configuration value
            default: Default value if key not found

        Returns:
            Configuration value
        """
        keys = key_path.split(".")

        # Try to get from config first
        value: Any = self.data
        for key in keys:
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                value = None
                break

        # If not found in config, try defaults
        if value is None:
            value = self.DEFAULTS
            for key in keys:
                if isinstance(value, dict) and key in value:
                    value = value[key]
                else:
                    return default

        return value

    def get_output_dir(self, dir_key: str) -> pathlib.Path:
        """
        Get full path to an output directory, creating it if needed.

        Args:
            dir_key: Directory key ('maps', 'geospatial', 'census', 'health', 'data')

        Returns:
            Full path to the directory
        """
        directories = {
            "data": self.data_dir,
            "health": self.health_dir,
            "census": self.census_dir,
            "maps": self.maps_dir,
            "geospatial": self.geospatial_dir,
        }
        if dir_key not in directories:
            raise ValueError(f"Unknown directory key: {dir_key}")

        directory = pathlib.Path(directories[dir_key])
        directory.mkdir(parents=True, exist_ok=True)
        return directory

    def get_census_setting(self, setting_key: str) -> Any:
        """Get Census API setting with intelligent defaults."""
        return self.get(f"census.{setting_key}")

    def get_places_setting(self, setting_key: str) -> Any:
        """Get CDC PLACES loader setting with intelligent defaults."""
        return self.get(f"places.{setting_key}")

    def get_visualization_setting(self, setting_key: str) -> Any:
        """Get visualization setting with intelligent defaults."""
        return self.get(f"visualization.{setting_key}")

    def get_system_setting(self, setting_key: str) -> Any:
        """Get system setting with intelligent defaults."""
        return self.get(f"system.{setting_key}")

    def get_metadata(self, key: str) -> str:
        """Get metadata value."""
        result = self.get(f"metadata.{key}", "")
        if isinstance(result, str):
            return result
        return str(result)

    def get_api_key(self) -> Optional[str]:
        """Census API key from the environment variable named in census.api_key_env."""
        env_name = self.get_census_setting("api_key_env")
        key = os.environ.get(env_name) if env_name else None
        if not key:
            logger.debug(f"No Census API key in ${env_name}; using unauthenticated requests")
        return key or None

    def get_variable_spec(self) -> Dict[str, str]:
        """ACS variables as an ordered {alias: code} mapping."""
        variables = self.get_census_setting("variables") or {}
        if not isinstance(variables, dict) or not variables:
            raise ValueError("census.variables must map aliases to ACS variable codes")
        return {str(alias): str(code) for alias, code in variables.items()}

    def get_derived_metrics(self) -> List[Tuple[str, str, str]]:
        """Proportions as (output, numerator, denominator) triples."""
        triples = []
        for entry in self.get("derived", []) or []:
            try:
                triples.append((entry["output"], entry["numerator"], entry["denominator"]))
            except (KeyError, TypeError) as e:
                raise ValueError(f"Invalid derived metric entry {entry!r}: missing {e}") from e
        return triples

    def apply_overrides(self, overrides: Dict[str, Any]) -> None:
        """
        Apply dot-notation overrides in place.

        Args:
            overrides: e.g. {"census.year": 2021, "visualization.facet_columns": 1}
        """
        for key_path, value in overrides.items():
            keys = key_path.split(".")
            current = self.data
            for key in keys[:-1]:
                if not isinstance(current.get(key), dict):
                    current[key] = {}
                current = current[key]
            current[keys[-1]] = copy.deepcopy(value)
            logger.debug(f"Applied override: {key_path} = {value}")
        self._setup_paths()

    def print_config_summary(self) -> None:
        """Print a summary of the current configuration."""
        logger.debug("📋 Configuration Summary")
        logger.debug("=" * 50)
        logger.debug(f"Project: {self.get('project_name', 'Unknown')}")
        logger.debug(f"Description: {self.get('description', 'No description')}")
        logger.debug(f"Config file: {self.config_path}")
        logger.debug(
            f"Census: {self.get_census_setting('year')} {self.get_census_setting('dataset')} "
            f"{self.get_census_setting('geography')} in {self.get_census_setting('state')}"
        )

        logger.debug("📊 Input Files:")
        for file_key, relative in (self.data.get("input_files") or {}).items():
            status = "✅" if (self.project_root / relative).exists() else "❌"
            logger.debug(f"  {status} {file_key}: {relative}")

    def _find_project_root(self) -> Path:
        """Find the project root directory by looking for characteristic files/directories."""
        current = self.config_path.parent

        project_markers = ["analysis", "data", "ops", "processing", "pyproject.toml", ".git"]

        # Walk up the directory tree
        for _ in range(5):  # Limit to 5 levels up
            markers_found = sum(1 for marker in project_markers if (current / marker).exists())

            # If we find multiple markers, this is likely the project root
            if markers_found >= 2:
                return current

            parent = current.parent
            if parent == current:
                break
            current = parent

        # Fallback: if config is in ops/, project root is parent
        if self.config_path.parent.name == "ops":
            return self.config_path.parent.parent

        logger.warning(
            f"Could not reliably detect project root, using config directory: {self.config_path.parent}"
        )
        return self.config_path.parent
