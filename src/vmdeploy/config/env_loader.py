"""Environment variable helpers for configuration files."""

from __future__ import annotations

import os
import re
from pathlib import Path

from dotenv import dotenv_values, load_dotenv

from vmdeploy.lib.errors import ConfigError

# ${VAR} or ${VAR:-default}
ENV_VAR_PATTERN = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)(?::-([^}]*))?\}")


def substitute_env_vars(text: str) -> str:
    """Replace ``${VAR}`` and ``${VAR:-default}`` references in text.

    Args:
        text: Raw configuration text

    Returns:
        Text with every reference replaced by its value

    Raises:
        ConfigError: If a referenced variable is unset and has no default
    """

    def _replace(match: re.Match[str]) -> str:
        name, default = match.group(1), match.group(2)
        value = os.environ.get(name)
        if value is not None:
            return value
        if default is not None:
            return default
        raise ConfigError(
            name,
            f"Environment variable '{name}' is not set and has no default. "
            f"Set it or use ${{{name}:-default}}.",
        )

    return ENV_VAR_PATTERN.sub(_replace, text)


def get_env_var(name: str, default: str | None = None) -> str | None:
    """Return an environment variable, treating empty values as unset."""
    value = os.environ.get(name)
    if value is None or value == "":
        return default
    return value


def load_env_file(path: str | Path) -> dict[str, str]:
    """Read a .env file into a dictionary without touching os.environ.

    Args:
        path: Path to the .env file

    Returns:
        Mapping of variable names to values (unset values dropped)

    Raises:
        ConfigError: If the file does not exist
    """
    env_path = Path(path)
    if not env_path.is_file():
        raise ConfigError("env_file", f"Environment file not found: {env_path}")
    return {k: v for k, v in dotenv_values(env_path).items() if v is not None}


def load_project_env(project_dir: str | Path) -> bool:
    """Load ``.env`` from the project directory into os.environ.

    Variables already present in the environment win.

    Returns:
        True if a .env file was found and loaded
    """
    env_path = Path(project_dir) / ".env"
    if not env_path.is_file():
        return False
    return load_dotenv(env_path, override=False)
