"""
Tests for configuration loading and logging settings.
"""

import logging
from pathlib import Path

import pytest
import yaml

from statekeeper.config import (
    ConfigLoader,
    EngineSettings,
    RegistryBackendKind,
    load_config,
)
from statekeeper.config_manager import LoggingConfig, setup_logging
from statekeeper.exceptions import ConfigError


@pytest.fixture
def config_file(tmp_path):
    path = tmp_path / "settings.yaml"
    path.write_text(
        yaml.safe_dump(
            {
                "templates_dir": "/srv/templates",
                "registry": {"backend": "file", "root": "/srv/registry"},
                "commands": {"timeout_seconds": 60},
            }
        ),
        encoding="utf-8",
    )
    return path


class TestEngineSettings:
    """Test cases for the settings model."""

    def test_defaults(self):
        settings = EngineSettings()
        assert settings.templates_dir == Path("templates")
        assert settings.registry.backend is RegistryBackendKind.AUTO
        assert settings.encryption.passphrase is None
        assert settings.encryption.iterations == 390_000

    def test_unknown_key_rejected(self):
        with pytest.raises(ValueError):
            EngineSettings.model_validate({"templates": "x"})

    def test_blank_machine_name_rejected(self):
        with pytest.raises(ValueError, match="machine_name cannot be blank"):
            EngineSettings(machine_name="  ")

    def test_low_iteration_count_rejected(self):
        with pytest.raises(ValueError):
            EngineSettings.model_validate({"encryption": {"iterations": 10}})


class TestConfigLoader:
    """Test cases for ConfigLoader."""

    def test_missing_file_gives_defaults(self, tmp_path):
        settings = ConfigLoader(tmp_path / "none.yaml", environ={}).load()
        assert settings.model_dump() == EngineSettings().model_dump()

    def test_file_values(self, config_file):
        settings = ConfigLoader(config_file, environ={}).load()

        assert settings.templates_dir == Path("/srv/templates")
        assert settings.registry.backend is RegistryBackendKind.FILE
        assert settings.commands.timeout_seconds == 60

    def test_env_overrides_file(self, config_file):
        environ = {
            "STATEKEEPER_COMMANDS__TIMEOUT_SECONDS": "15",
            "STATEKEEPER_ENCRYPTION__PASSPHRASE": "s3cret",
            "STATEKEEPER_LOG_LEVEL": "DEBUG",
        }

        settings = ConfigLoader(config_file, environ=environ).load()

        assert settings.commands.timeout_seconds == 15.0
        assert settings.registry.root == Path("/srv/registry")
        assert settings.encryption.passphrase.get_secret_value() == "s3cret"

    def test_script_aliases(self, tmp_path):
        environ = {
            "BACKUP_ROOT": "/backups/WS01",
            "MACHINE_NAME": "WS01",
            "REGISTRY_ROOT": "/srv/registry",
        }

        settings = ConfigLoader(tmp_path / "none.yaml", environ=environ).load()

        assert settings.state_dir == Path("/backups/WS01")
        assert settings.machine_name == "WS01"
        assert settings.registry.root == Path("/srv/registry")

    def test_prefixed_variable_beats_alias(self, tmp_path):
        environ = {"BACKUP_ROOT": "/alias", "STATEKEEPER_STATE_DIR": "/prefixed"}

        settings = ConfigLoader(tmp_path / "none.yaml", environ=environ).load()

        assert settings.state_dir == Path("/prefixed")

    def test_config_path_from_env(self, config_file):
        loader = ConfigLoader(environ={"STATEKEEPER_CONFIG_PATH": str(config_file)})
        assert loader.config_path == config_file

    def test_unknown_env_setting(self, tmp_path):
        with pytest.raises(ConfigError, match="validation failed"):
            ConfigLoader(tmp_path / "none.yaml", environ={"STATEKEEPER_COLOUR": "blue"}).load()

    def test_invalid_yaml(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text("registry: [unclosed", encoding="utf-8")

        with pytest.raises(ConfigError, match="Invalid YAML"):
            ConfigLoader(path, environ={}).load()

    def test_file_must_be_mapping(self, tmp_path):
        path = tmp_path / "settings.yaml"
        path.write_text("- a\n- b\n", encoding="utf-8")

        with pytest.raises(ConfigError, match="must contain a mapping"):
            ConfigLoader(path, environ={}).load()

    def test_cli_args_win_and_keep_secret(self, tmp_path):
        environ = {"STATEKEEPER_ENCRYPTION__PASSPHRASE": "s3cret", "STATEKEEPER_TEMPLATES_DIR": "/env"}

        settings = load_config(
            tmp_path / "none.yaml",
            cli_args={"templates_dir": "/cli", "state_dir": None},
            environ=environ,
        )

        assert settings.templates_dir == Path("/cli")
        assert settings.state_dir is None
        assert settings.encryption.passphrase.get_secret_value() == "s3cret"

    def test_invalid_cli_args(self, tmp_path):
        loader = ConfigLoader(tmp_path / "none.yaml", environ={})
        with pytest.raises(ConfigError, match="Invalid command line settings"):
            loader.merge_cli_args(loader.load(), {"commands": {"timeout_seconds": -1}})


class TestDefaultConfig:
    """Test cases for writing the default settings file."""

    def test_default_config_loads(self, tmp_path):
        loader = ConfigLoader(tmp_path / "config" / "settings.yaml", environ={})

        path = loader.create_default_config()

        assert path.exists()
        assert loader.load().model_dump() == EngineSettings().model_dump()

    def test_refuses_to_overwrite(self, config_file):
        loader = ConfigLoader(config_file, environ={})

        with pytest.raises(ConfigError, match="already exists"):
            loader.create_default_config()

        assert "/srv/templates" in config_file.read_text(encoding="utf-8")

    def test_force_overwrites(self, config_file):
        ConfigLoader(config_file, environ={}).create_default_config(force=True)
        assert "templates_dir: templates" in config_file.read_text(encoding="utf-8")


class TestLoggingConfig:
    """Test cases for LoggingConfig."""

    def test_level_is_normalized(self):
        config = LoggingConfig(level="debug")
        assert config.level == "DEBUG"
        assert config.get_log_level() == logging.DEBUG

    def test_invalid_level(self):
        with pytest.raises(ValueError, match="Log level must be one of"):
            LoggingConfig(level="verbose")

    def test_file_output(self, tmp_path):
        log_file = tmp_path / "statekeeper.log"
        root = logging.getLogger()
        saved_handlers, saved_level = root.handlers[:], root.level
        try:
            setup_logging(LoggingConfig(level="INFO", file_output=str(log_file)))
            logging.getLogger("statekeeper.test").info("hello from the test")
            for handler in root.handlers:
                handler.flush()
        finally:
            for handler in root.handlers:
                if handler not in saved_handlers:
                    handler.close()
            root.handlers[:] = saved_handlers
            root.setLevel(saved_level)

        assert "hello from the test" in log_file.read_text(encoding="utf-8")
