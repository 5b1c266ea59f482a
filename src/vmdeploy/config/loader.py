"""Configuration loader for vmdeploy pipelines.

This module provides the ConfigLoader class for loading, parsing, and validating
pipeline configuration from YAML files.
"""

import os
from pathlib import Path
from typing import Any

import yaml
from pydantic import ValidationError as PydanticValidationError

from vmdeploy.config.defaults import ENV_VAR_MAP
from vmdeploy.config.env_loader import load_project_env, substitute_env_vars
from vmdeploy.config.validator import flatten_pydantic_errors
from vmdeploy.lib.errors import ConfigError, FileNotFoundError
from vmdeploy.lib.logging_config import get_logger
from vmdeploy.models.pipeline import PipelineConfig

logger = get_logger(__name__)

# Environment overrides that land inside the ``timeouts`` section
_TIMEOUT_OVERRIDES = {
    "command_timeout": "command",
    "readiness_timeout": "readiness",
}


def _parse_env_value(field_name: str, value: str) -> Any:
    """Parse environment variable value to appropriate type.

    Args:
        field_name: Name of the field (used to determine type)
        value: String value from environment variable

    Returns:
        Parsed value in correct type (float, bool, or str)

    Raises:
        ValueError: If value cannot be parsed
    """
    if field_name in _TIMEOUT_OVERRIDES:
        return float(value)
    elif field_name in ("verbose", "quiet"):
        return value.lower() in ("true", "1", "yes", "on")
    else:
        return value


def _get_env_value(
    field_name: str, env_vars: os._Environ[str] | dict[str, str]
) -> Any | None:
    """Get environment variable value for a field.

    Args:
        field_name: Name of field to get
        env_vars: Environment variables mapping

    Returns:
        Parsed value or None if not found or invalid
    """
    env_var_name = ENV_VAR_MAP.get(field_name)
    if not env_var_name or env_var_name not in env_vars:
        return None

    try:
        return _parse_env_value(field_name, env_vars[env_var_name])
    except (ValueError, KeyError):
        logger.warning(
            f"Ignoring {env_var_name}={env_vars.get(env_var_name)!r}: not a valid value"
        )
        return None


def _read_yaml_with_env_substitution(path: Path) -> dict[str, Any] | None:
    """Read a YAML file with environment variable substitution.

    Args:
        path: Path to YAML file

    Returns:
        Parsed dictionary or None if empty

    Raises:
        OSError: If file cannot be read
        yaml.YAMLError: If YAML parsing fails
        ConfigError: If env var substitution fails
    """
    raw_text = path.read_text(encoding="utf-8")
    substituted = substitute_env_vars(raw_text)
    content = yaml.safe_load(substituted)
    return content if content else None


class ConfigLoader:
    """Loads and validates pipeline configuration from YAML files.

    This class handles:
    - Loading ``.env`` next to the configuration file
    - Environment variable substitution
    - Applying VMDEPLOY_* environment overrides
    - Converting validation errors into human-readable messages
    """

    def __init__(self, env: dict[str, str] | None = None) -> None:
        """Initialize the loader.

        Args:
            env: Environment mapping for overrides (defaults to os.environ)
        """
        self._env = env

    @property
    def env(self) -> os._Environ[str] | dict[str, str]:
        """Environment mapping consulted for overrides."""
        return self._env if self._env is not None else os.environ

    def parse_yaml(self, file_path: str) -> dict[str, Any]:
        """Parse a YAML file with env substitution and return its contents.

        Args:
            file_path: Path to the YAML file to parse

        Returns:
            Dictionary containing parsed YAML content ({} if empty)

        Raises:
            FileNotFoundError: If the file does not exist
            ConfigError: If YAML parsing or substitution fails
        """
        path = Path(file_path)
        try:
            content = _read_yaml_with_env_substitution(path)
        except OSError as e:
            raise FileNotFoundError(
                file_path,
                f"Configuration file not found at {file_path}. "
                f"Please ensure the file exists at this path.",
            ) from e
        except yaml.YAMLError as e:
            raise ConfigError(
                "yaml_parse",
                f"Failed to parse YAML file {file_path}: {str(e)}",
            ) from e

        if content is None:
            return {}
        if not isinstance(content, dict):
            raise ConfigError(
                "yaml_parse",
                f"Top level of {file_path} must be a mapping, "
                f"got {type(content).__name__}",
            )
        return content

    def load_pipeline_yaml(self, file_path: str) -> PipelineConfig:
        """Load and validate a pipeline configuration from YAML.

        This method:
        1. Loads ``.env`` from the configuration directory (existing env wins)
        2. Parses the YAML file with env var substitution
        3. Applies VMDEPLOY_* timeout overrides
        4. Validates against the PipelineConfig schema

        Args:
            file_path: Path to vmdeploy.yaml

        Returns:
            Validated PipelineConfig instance

        Raises:
            FileNotFoundError: If file doesn't exist
            ConfigError: If YAML parsing or validation fails
        """
        path = Path(file_path)
        if path.parent.is_dir() and load_project_env(path.parent):
            logger.debug(f"Loaded environment from {path.parent / '.env'}")

        config_dict = self.parse_yaml(file_path)
        self.apply_env_overrides(config_dict)

        try:
            return PipelineConfig(**config_dict)
        except PydanticValidationError as e:
            error_messages = flatten_pydantic_errors(e)
            error_text = "\n".join(error_messages)
            raise ConfigError(
                "pipeline_validation",
                f"Invalid pipeline configuration in {file_path}:\n{error_text}",
            ) from e

    def apply_env_overrides(self, config_dict: dict[str, Any]) -> None:
        """Apply environment overrides to a raw config dict (in-place).

        Environment variables take precedence over values in the file.
        """
        for field_name, timeout_key in _TIMEOUT_OVERRIDES.items():
            value = _get_env_value(field_name, self.env)
            if value is None:
                continue
            timeouts = config_dict.setdefault("timeouts", {})
            if not isinstance(timeouts, dict):
                raise ConfigError("timeouts", "'timeouts' must be a mapping")
            timeouts[timeout_key] = value
            logger.debug(f"timeouts.{timeout_key} overridden from environment")

    def runtime_flags(self) -> dict[str, bool]:
        """Return verbose/quiet flags requested through the environment."""
        flags: dict[str, bool] = {}
        for name in ("verbose", "quiet"):
            value = _get_env_value(name, self.env)
            if value is not None:
                flags[name] = bool(value)
        return flags
