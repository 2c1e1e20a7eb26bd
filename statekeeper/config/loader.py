"""
Configuration loader for the state engine.

Handles loading from multiple sources with proper priority:
CLI Args > Environment Variables > Config File > Defaults
"""

import os
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from ..exceptions import ConfigError
from .models import EngineSettings

# Environment variables understood by the scripts that drive the engine
ALIAS_ENV_VARS: Dict[str, str] = {
    "BACKUP_ROOT": "state_dir",
    "MACHINE_NAME": "machine_name",
    "REGISTRY_ROOT": "registry__root",
}


class ConfigLoader:
    """
    Loads and merges configuration from multiple sources.

    Priority order (highest to lowest):
    1. CLI arguments (passed to ``merge_cli_args``)
    2. Environment variables (STATEKEEPER_*, then BACKUP_ROOT/MACHINE_NAME/REGISTRY_ROOT)
    3. Configuration file
    4. Default values
    """

    DEFAULT_CONFIG_DIR = Path.home() / ".config" / "statekeeper"
    DEFAULT_CONFIG_FILE = DEFAULT_CONFIG_DIR / "settings.yaml"
    ENV_PREFIX = "STATEKEEPER_"
    # STATEKEEPER_* variables that are not engine settings
    RESERVED_ENV_KEYS = {"config_path", "log_level", "log_format", "log_file", "log_json"}

    def __init__(
        self,
        config_path: Optional[Path] = None,
        environ: Optional[Mapping[str, str]] = None,
        load_env_file: bool = True,
    ):
        """
        Initialize configuration loader.

        Args:
            config_path: Path to configuration file. If None, uses default location.
            environ: Environment to read (defaults to ``os.environ``)
            load_env_file: Load a ``.env`` file into the process environment first
        """
        if load_env_file and environ is None:
            load_dotenv(override=False)
        self.environ = environ if environ is not None else os.environ
        self.config_path = Path(config_path) if config_path else self._get_config_path_from_env()

    def _get_config_path_from_env(self) -> Path:
        """Get configuration path from environment variable or default."""
        env_path = self.environ.get("STATEKEEPER_CONFIG_PATH")
        if env_path:
            return Path(env_path).expanduser()
        return self.DEFAULT_CONFIG_FILE

    def load(self) -> EngineSettings:
        """
        Load configuration from all sources and merge.

        Returns:
            Validated EngineSettings object

        Raises:
            ConfigError: If configuration is invalid
        """
        config_dict: Dict[str, Any] = {}

        if self.config_path.exists():
            config_dict = self._deep_merge(config_dict, self._load_file(self.config_path))

        config_dict = self._deep_merge(config_dict, self._load_from_env())

        try:
            return EngineSettings.model_validate(config_dict)
        except ValidationError as e:
            raise ConfigError(
                f"Configuration validation failed: {e}",
                context={"config_path": str(self.config_path)},
                cause=e,
            ) from e

    def _load_file(self, path: Path) -> Dict[str, Any]:
        """
        Load configuration from YAML file.

        Raises:
            ConfigError: If file cannot be read or parsed
        """
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ConfigError(f"Invalid YAML in {path}: {e}", cause=e) from e
        except OSError as e:
            raise ConfigError(f"Cannot read config file {path}: {e}", cause=e) from e
        if data is None:
            return {}
        if not isinstance(data, dict):
            raise ConfigError(f"Config file {path} must contain a mapping")
        return data

    def _load_from_env(self) -> Dict[str, Any]:
        """
        Load configuration from environment variables.

        Environment variable format:
        - STATEKEEPER_TEMPLATES_DIR
        - STATEKEEPER_REGISTRY__ROOT
        - STATEKEEPER_ENCRYPTION__PASSPHRASE

        Double underscore (__) separates nested keys. Values stay strings;
        pydantic converts them to the declared types.
        """
        config: Dict[str, Any] = {}

        for alias, key in ALIAS_ENV_VARS.items():
            value = self.environ.get(alias)
            if value:
                self._set_nested(config, key, value)

        for key, value in self.environ.items():
            if not key.startswith(self.ENV_PREFIX):
                continue
            config_key = key[len(self.ENV_PREFIX) :].lower()
            if config_key in self.RESERVED_ENV_KEYS:
                continue
            self._set_nested(config, config_key, value)

        return config

    @staticmethod
    def _set_nested(config: Dict[str, Any], dotted: str, value: Any) -> None:
        parts = dotted.split("__")
        current = config
        for part in parts[:-1]:
            if not isinstance(current.get(part), dict):
                current[part] = {}
            current = current[part]
        current[parts[-1]] = value

    def _deep_merge(self, base: Dict[str, Any], update: Dict[str, Any]) -> Dict[str, Any]:
        """
        Deep merge two dictionaries.

        Returns:
            Merged dictionary (base is not modified)
        """
        result = base.copy()

        for key, value in update.items():
            if key in result and isinstance(result[key], dict) and isinstance(value, dict):
                result[key] = self._deep_merge(result[key], value)
            else:
                result[key] = value

        return result

    def merge_cli_args(self, config: EngineSettings, cli_args: Dict[str, Any]) -> EngineSettings:
        """
        Merge CLI arguments into configuration.

        CLI arguments have highest priority and override all other sources.

        Args:
            config: Base configuration
            cli_args: CLI arguments to merge (None values are ignored)

        Returns:
            New EngineSettings with CLI args applied
        """
        filtered_args = self._filter_none_values(cli_args)
        if not filtered_args:
            return config

        config_dict = config.model_dump()
        passphrase = config.encryption.passphrase
        if passphrase is not None:
            config_dict["encryption"]["passphrase"] = passphrase.get_secret_value()
        config_dict = self._deep_merge(config_dict, filtered_args)

        try:
            return EngineSettings.model_validate(config_dict)
        except ValidationError as e:
            raise ConfigError(f"Invalid command line settings: {e}", cause=e) from e

    def _filter_none_values(self, data: Dict[str, Any]) -> Dict[str, Any]:
        """Recursively filter out None values from a dictionary."""
        result = {}
        for key, value in data.items():
            if value is None:
                continue
            elif isinstance(value, dict):
                filtered = self._filter_none_values(value)
                if filtered:
                    result[key] = filtered
            else:
                result[key] = value
        return result

    def create_default_config(self, force: bool = False) -> Path:
        """
        Create default configuration file with comments.

        Args:
            force: Overwrite existing file if True

        Returns:
            Path to created configuration file

        Raises:
            ConfigError: If file exists and force=False
        """
        if self.config_path.exists() and not force:
            raise ConfigError(
                f"Configuration file already exists at {self.config_path}",
                recovery_suggestion="Use force=True (--force) to overwrite",
            )

        self.config_path.parent.mkdir(parents=True, exist_ok=True)

        try:
            with open(self.config_path, "w", encoding="utf-8") as f:
                f.write(self._get_default_config_yaml())
        except OSError as e:
            raise ConfigError(f"Cannot write config file {self.config_path}: {e}", cause=e) from e

        return self.config_path

    def _get_default_config_yaml(self) -> str:
        """Get default configuration as commented YAML."""
        return """\
# statekeeper - engine settings
# =============================

# Directory searched for template documents
templates_dir: templates

# Default directory for state records (or set BACKUP_ROOT)
# state_dir: /path/to/backups/MACHINE

# Machine name stamped into state records (or set MACHINE_NAME)
# machine_name: WORKSTATION-01

registry:
  # auto: live registry on Windows, directory-backed registry elsewhere
  backend: auto

  # Directory of the file-backed registry (or set REGISTRY_ROOT)
  # root: /path/to/registry

encryption:
  # Passphrase for encrypted fields; a machine-bound key is used when unset.
  # Prefer STATEKEEPER_ENCRYPTION__PASSPHRASE over storing it here.
  # passphrase: change-me

  # Key derivation parameters. Changing them makes existing snapshots unreadable.
  salt: statekeeper-field-encryption-v1
  iterations: 390000

commands:
  # Seconds before a host command (discovery, install, schtasks) is killed
  timeout_seconds: 300

  # Shell for script commands: powershell, pwsh, cmd, sh or bash
  # default_shell: powershell

locators:
  # Mapped drives, rewritten to their UNC share so both spellings match
  drive_map: {}
  #   "Z:": "\\\\\\\\fileserver\\\\team"

  # Expand %VAR%, $env:VAR and ~ in template addresses
  expand_environment: true

# Filesystem roots that require elevation (built-in list when unset)
# protected_roots:
#   - C:\\Windows
#   - /etc
"""


def load_config(
    config_path: Optional[Path] = None,
    cli_args: Optional[Dict[str, Any]] = None,
    environ: Optional[Mapping[str, str]] = None,
) -> EngineSettings:
    """
    Convenience function to load configuration.

    Args:
        config_path: Path to configuration file
        cli_args: CLI arguments to merge (highest priority)
        environ: Environment to read instead of ``os.environ``

    Raises:
        ConfigError: If configuration is invalid
    """
    loader = ConfigLoader(config_path, environ=environ)
    config = loader.load()

    if cli_args:
        config = loader.merge_cli_args(config, cli_args)

    return config


def create_default_config(config_path: Optional[Path] = None, force: bool = False) -> Path:
    """
    Create default configuration file.

    Raises:
        ConfigError: If file exists and force=False
    """
    loader = ConfigLoader(config_path)
    return loader.create_default_config(force=force)
