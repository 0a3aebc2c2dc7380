"""Configuration loader with YAML parsing and environment variable substitution."""

import os
import re
from pathlib import Path
from typing import Any, Dict, List, Optional

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from dirsync.clients.exceptions import ConfigurationError
from dirsync.config.models import SyncClientConfig

CONFIG_ENV_VAR = "DIRSYNC_CONFIG"


class EnvironmentVariableError(ConfigurationError):
    """Raised when environment variable substitution fails."""
    pass


class ConfigLoader:
    """Configuration loader with environment variable substitution."""

    # Pattern for environment variable substitution: ${VAR_NAME} or ${VAR_NAME:default_value}
    ENV_VAR_PATTERN = re.compile(r'\$\{([A-Za-z_][A-Za-z0-9_]*?)(?::([^}]*))?\}')

    def __init__(self, require_env_vars: bool = True, load_env_file: bool = True) -> None:
        """Initialize the configuration loader.

        Args:
            require_env_vars: Whether to require all environment variables to exist
                            (if False, missing vars without defaults will be left as-is)
            load_env_file: Whether to load a .env file from the working directory
        """
        self.require_env_vars = require_env_vars
        if load_env_file:
            load_dotenv()

    def load_config(self, config_path: Path) -> SyncClientConfig:
        """Load and validate configuration from YAML file.

        Args:
            config_path: Path to the YAML configuration file

        Returns:
            Validated SyncClientConfig instance

        Raises:
            ConfigurationError: If loading or validation fails
        """
        if not config_path.exists():
            raise ConfigurationError(f"Configuration file not found: {config_path}")

        with open(config_path, 'r', encoding='utf-8') as f:
            raw_content = f.read()

        substituted_content = self._substitute_env_vars(raw_content)

        try:
            config_data = yaml.safe_load(substituted_content)
        except yaml.YAMLError as e:
            raise ConfigurationError(f"Invalid YAML syntax: {e}") from e

        if not isinstance(config_data, dict):
            raise ConfigurationError("Configuration file must contain a YAML object")

        return load_config_from_dict(config_data)

    def _substitute_env_vars(self, content: str) -> str:
        """Substitute environment variables in the content.

        Supports patterns like:
        - ${VAR_NAME} - Required environment variable
        - ${VAR_NAME:default} - Environment variable with default value

        Raises:
            EnvironmentVariableError: If required environment variable is missing
        """
        missing_vars: List[str] = []

        def replace_env_var(match: re.Match[str]) -> str:
            var_name = match.group(1)
            default_value = match.group(2)

            env_value = os.getenv(var_name)
            if env_value is not None:
                return env_value.strip()
            if default_value is not None:
                return default_value
            if self.require_env_vars:
                missing_vars.append(var_name)
            return match.group(0)

        result = self.ENV_VAR_PATTERN.sub(replace_env_var, content)

        if missing_vars:
            if len(missing_vars) == 1:
                raise EnvironmentVariableError(
                    f"Required environment variable '{missing_vars[0]}' is not set"
                )
            raise EnvironmentVariableError(
                f"Required environment variables are not set: {', '.join(sorted(set(missing_vars)))}"
            )

        return result

    def get_missing_env_vars(self, config_path: Path) -> List[str]:
        """Get list of missing environment variables from config file."""
        if not config_path.exists():
            return []

        with open(config_path, 'r', encoding='utf-8') as f:
            content = f.read()

        missing_vars = set()
        for match in self.ENV_VAR_PATTERN.finditer(content):
            var_name = match.group(1)
            default_value = match.group(2)
            if default_value is None and os.getenv(var_name) is None:
                missing_vars.add(var_name)

        return sorted(missing_vars)


def load_config_from_dict(config_data: Dict[str, Any]) -> SyncClientConfig:
    """Load configuration from dictionary.

    Raises:
        ConfigurationError: If validation fails
    """
    try:
        return SyncClientConfig.model_validate(config_data)
    except ValidationError as e:
        raise ConfigurationError(f"Configuration validation failed: {e}") from e


def find_config_file(start_path: Optional[Path] = None) -> Optional[Path]:
    """Find configuration file.

    Honors the DIRSYNC_CONFIG environment variable, then searches up the
    directory tree for dirsync.yaml, dirsync.yml, config/dirsync.yaml.

    Args:
        start_path: Directory to start search from (defaults to current directory)

    Returns:
        Path to configuration file if found, None otherwise
    """
    env_path = os.getenv(CONFIG_ENV_VAR)
    if env_path:
        path = Path(env_path)
        return path if path.exists() else None

    if start_path is None:
        start_path = Path.cwd()

    config_filenames = [
        "dirsync.yaml",
        "dirsync.yml",
        "config/dirsync.yaml",
    ]

    current_path = start_path.resolve()

    while True:
        for filename in config_filenames:
            config_path = current_path / filename
            if config_path.exists():
                return config_path

        parent = current_path.parent
        if parent == current_path:  # Reached root
            break
        current_path = parent

    return None
