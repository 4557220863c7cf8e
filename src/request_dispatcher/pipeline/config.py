"""
Configuration Loader Module

This module handles loading the YAML configuration file and turning its
``dispatch`` section, merged with command-line overrides, into a validated
``DispatchConfig`` for a run.
"""

import os
import yaml
from pathlib import Path
from typing import Any, Dict, Mapping, Optional, Union
import logging

from pydantic import BaseModel, ConfigDict, Field, ValidationError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = "config/config.yaml"
API_HOST_ENV_VAR = "API_HOST"

DISPATCH_DEFAULTS: Dict[str, Any] = {
    "concurrency_limit": 10,
    "batch_size": 10,
    "total_requests": 1000,
    "cooldown_ms": 1000,
}

TRANSPORT_DEFAULTS: Dict[str, Any] = {
    "api_host": None,
    "path": "api",
    "timeout_seconds": 10.0,
    "headers": {},
}

LOGGING_DEFAULTS: Dict[str, Any] = {
    "level": "INFO",
    "log_dir": "var/logs",
    "log_to_file": True,
}

RUN_SUMMARY_DEFAULTS: Dict[str, Any] = {
    "enabled": True,
    "base_dir": "var/logs/runs",
}


class DispatchError(Exception):
    """Base class for errors that prevent a dispatch run."""
    pass


class ConfigError(DispatchError):
    """Raised when a dispatch configuration is invalid."""
    pass


class DispatchConfig(BaseModel):
    """Validated, immutable parameters of one dispatch run."""

    model_config = ConfigDict(frozen=True, extra="forbid", revalidate_instances="always")

    concurrency_limit: int = Field(..., gt=0, description="Maximum calls in flight at once")
    batch_size: int = Field(..., gt=0, description="Dispatched calls between cooldowns")
    total_requests: int = Field(default=1000, gt=0, description="Calls issued per run")
    cooldown_ms: int = Field(default=1000, ge=0, description="Pause after each full batch")


def build_dispatch_config(
    config: Union[DispatchConfig, Mapping[str, Any], None] = None, **values: Any
) -> DispatchConfig:
    """
    Validate dispatch parameters.

    Args:
        config: An existing DispatchConfig (revalidated) or a mapping of fields
        **values: Field values, overriding entries of ``config``

    Returns:
        DispatchConfig: Validated configuration

    Raises:
        ConfigError: If any field is missing, of the wrong type, or out of range
    """
    if isinstance(config, DispatchConfig) and not values:
        data: Any = config
    else:
        data = dict(config.model_dump() if isinstance(config, DispatchConfig) else (config or {}))
        data.update(values)

    try:
        return DispatchConfig.model_validate(data)
    except ValidationError as e:
        problems = "; ".join(
            f"{'.'.join(str(part) for part in err['loc']) or 'config'}: {err['msg']}"
            for err in e.errors()
        )
        raise ConfigError(f"Invalid dispatch configuration: {problems}") from e


class ConfigLoader:
    """Handles loading and managing the YAML configuration file."""

    def __init__(self, config_file_path: str = DEFAULT_CONFIG_PATH):
        """
        Initialize the configuration loader.

        Args:
            config_file_path: Path to the YAML configuration file
        """
        self.config_file_path = Path(config_file_path)
        self.config_data: Dict[str, Any] = {}
        self._load_config()

    def _load_config(self) -> None:
        """Load configuration from YAML file."""
        try:
            if not self.config_file_path.exists():
                logger.warning(
                    f"Configuration file not found: {self.config_file_path}, using defaults"
                )
                self.config_data = {}
                return

            with open(self.config_file_path, "r", encoding="utf-8") as f:
                self.config_data = yaml.safe_load(f) or {}

            if not isinstance(self.config_data, dict):
                logger.error(f"Configuration root must be a mapping: {self.config_file_path}")
                self.config_data = {}
                return

            logger.info(f"Successfully loaded configuration from {self.config_file_path}")

        except yaml.YAMLError as e:
            logger.error(f"YAML parsing error in {self.config_file_path}: {str(e)}")
            self.config_data = {}
        except OSError as e:
            logger.error(f"Error loading configuration file: {str(e)}")
            self.config_data = {}

    def reload_config(self) -> bool:
        """
        Reload configuration from file.

        Returns:
            bool: True if the file produced a non-empty configuration
        """
        self._load_config()
        return bool(self.config_data)

    def _section(self, name: str, defaults: Dict[str, Any]) -> Dict[str, Any]:
        section = self.config_data.get(name) or {}
        if not isinstance(section, dict):
            logger.warning(f"Configuration section '{name}' should be a mapping, ignoring it")
            section = {}
        return {**defaults, **section}

    def get_dispatch_config(self, overrides: Optional[Dict[str, Any]] = None) -> DispatchConfig:
        """
        Build the dispatch configuration for a run.

        Args:
            overrides: Values taking precedence over the file (``None`` entries are ignored)

        Returns:
            DispatchConfig: Validated configuration

        Raises:
            ConfigError: If the merged values are invalid
        """
        merged = self._section("dispatch", DISPATCH_DEFAULTS)
        for key, value in (overrides or {}).items():
            if value is not None:
                merged[key] = value
        return build_dispatch_config(merged)

    def get_transport_config(self) -> Dict[str, Any]:
        """
        Get HTTP transport configuration.

        The API host falls back to the ``API_HOST`` environment variable when
        the file does not set one.

        Returns:
            Dict[str, Any]: Transport configuration
        """
        transport = self._section("transport", TRANSPORT_DEFAULTS)
        if not transport.get("api_host"):
            transport["api_host"] = os.getenv(API_HOST_ENV_VAR)
        transport["headers"] = dict(transport.get("headers") or {})
        return transport

    def get_logging_config(self) -> Dict[str, Any]:
        return self._section("logging", LOGGING_DEFAULTS)

    def get_run_summary_config(self) -> Dict[str, Any]:
        return self._section("run_summary", RUN_SUMMARY_DEFAULTS)

    def get_config_value(self, key_path: str, default: Any = None) -> Any:
        """
        Get a configuration value using dot notation.

        Args:
            key_path: Dot-separated path to the value (e.g., 'dispatch.batch_size')
            default: Default value if key not found

        Returns:
            Any: Configuration value or default
        """
        value: Any = self.config_data
        for key in key_path.split("."):
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default
        return value

    def validate_configuration(self) -> Dict[str, Any]:
        """
        Validate the configuration and return a report.

        Returns:
            Dict[str, Any]: Validation report
        """
        report = {"valid": True, "issues": [], "warnings": [], "statistics": {}}

        if not self.config_data:
            report["warnings"].append(
                f"No configuration loaded from {self.config_file_path}, defaults in effect"
            )

        try:
            dispatch = self.get_dispatch_config()
            report["statistics"]["total_requests"] = dispatch.total_requests
            report["statistics"]["expected_cooldowns"] = (
                dispatch.total_requests // dispatch.batch_size
            )
            if dispatch.cooldown_ms == 0:
                report["warnings"].append("cooldown_ms is 0, batches will not be throttled")
        except ConfigError as e:
            report["issues"].append(str(e))

        transport = self.get_transport_config()
        if not transport.get("api_host"):
            report["issues"].append(
                f"No API host configured (set transport.api_host or {API_HOST_ENV_VAR})"
            )
        try:
            if float(transport.get("timeout_seconds")) <= 0:
                report["issues"].append("transport.timeout_seconds must be positive")
        except (TypeError, ValueError):
            report["issues"].append("transport.timeout_seconds must be a number")

        level = str(self.get_logging_config().get("level", "INFO")).upper()
        if level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
            report["warnings"].append(f"Unknown logging level '{level}', INFO will be used")

        if report["issues"]:
            report["valid"] = False

        logger.info(
            f"Configuration validation complete: {len(report['issues'])} issues, {len(report['warnings'])} warnings"
        )
        return report


def create_config_loader(config_file_path: Optional[str] = None) -> ConfigLoader:
    """
    Factory function to create a ConfigLoader instance.

    Args:
        config_file_path: Optional custom path to configuration file

    Returns:
        ConfigLoader: Configured loader instance
    """
    if config_file_path is None:
        config_file_path = DEFAULT_CONFIG_PATH

    return ConfigLoader(config_file_path)
