"""
Tests for the template executor and the engine entry points.
"""

import sys

import pytest

from statekeeper.command_runner import CommandResult, CommandRunner
from statekeeper.exceptions import ConfigError
from statekeeper.executor import (
    Action,
    CancellationToken,
    ExecutorState,
    ResourceStatus,
)
from statekeeper.locator import REGISTRY, normalize_locator
from statekeeper.providers.registry_backend import RegistryValue
from statekeeper.providers.registry_provider import RegistryProvider
from statekeeper.state_store import StateStore
from tests.helpers import FakeRunner

DESKTOP = "HKCU:\\Control Panel\\Desktop"
EXPLORER = "HKCU:\\Software\\Microsoft\\Windows\\CurrentVersion\\Explorer"
THEMES = "HKCU:\\Software\\Microsoft\\Windows\\CurrentVersion\\Themes"


def _template(name="desktop", registry=None, files=None, prerequisites=None):
    document = {"metadata": {"name": name}, "resources": {}}
    if registry:
        document["resources"]["registry"] = registry
    if files:
        document["resources"]["files"] = files
    if prerequisites:
        document["prerequisites"] = prerequisites
    return document


def _seed(backend, path, **values):
    locator = normalize_locator(path, REGISTRY)
    backend.create_key(locator)
    for name, data in values.items():
        backend.write_value(locator, RegistryValue.of(name, data))
    return locator


class TestBackupAndRestore:
    """Test cases for full template runs."""

    def test_backup_then_restore(self, make_engine, template_source, registry_backend, tmp_path, state_dir):
        desktop = _seed(registry_backend, DESKTOP, Wallpaper="C:\\wall.jpg")
        settings = tmp_path / "settings.json"
        settings.write_text('{"theme": "dark"}', encoding="utf-8")
        template_source.add(
            "desktop",
            _template(registry=[{"path": DESKTOP}], files=[{"path": str(settings)}]),
        )
        engine = make_engine()

        backup = engine.backup("desktop", state_dir)
        registry_backend.write_value(desktop, RegistryValue.of("Wallpaper", "C:\\other.jpg"))
        settings.write_text("{}", encoding="utf-8")
        restore = engine.restore("desktop", state_dir)

        assert backup.success and backup.state is ExecutorState.COMPLETED
        assert [r.status for r in backup.per_resource] == [ResourceStatus.CAPTURED] * 2
        assert restore.success
        assert [r.kind for r in restore.per_resource] == ["registry", "file"]
        assert registry_backend.read_values(desktop)["Wallpaper"].data == "C:\\wall.jpg"
        assert settings.read_text(encoding="utf-8") == '{"theme": "dark"}'

    def test_failure_is_recorded_and_run_continues(self, make_engine, template_source, registry_backend, state_dir):
        _seed(registry_backend, DESKTOP, Wallpaper="C:\\wall.jpg")
        _seed(registry_backend, EXPLORER, ShowFrequent="yes")
        _seed(registry_backend, THEMES, CurrentTheme="aero")
        template_source.add(
            "desktop",
            _template(
                registry=[
                    {"path": DESKTOP},
                    {"path": EXPLORER, "fields": {"ShowFrequent": "integer"}},
                    {"path": THEMES},
                ]
            ),
        )

        result = make_engine().backup("desktop", state_dir)

        assert len(result.per_resource) == 3
        assert [r.ok for r in result.per_resource] == [True, False, True]
        assert result.per_resource[1].error_code == "CAPTURE_FAILED"
        assert result.state is ExecutorState.COMPLETED_WITH_ERRORS
        assert result.success is False
        assert result.stopped_early is False

    def test_required_failure_stops_run(self, make_engine, template_source, registry_backend, state_dir):
        _seed(registry_backend, THEMES, CurrentTheme="aero")
        template_source.add(
            "desktop",
            _template(registry=[{"path": DESKTOP, "required": True}, {"path": THEMES}]),
        )

        result = make_engine().backup("desktop", state_dir)

        assert result.stopped_early is True
        assert len(result.per_resource) == 1
        assert result.per_resource[0].error_code == "RESOURCE_MISSING"
        assert result.success is False

    def test_restore_without_records_skips(self, make_engine, template_source, state_dir):
        template_source.add("desktop", _template(registry=[{"path": DESKTOP}]))

        result = make_engine().restore("desktop", state_dir)

        assert result.success is True
        assert result.per_resource[0].status is ResourceStatus.SKIPPED
        assert result.per_resource[0].message == "no state record"

    def test_reboot_is_aggregated(self, make_engine, template_source, registry_backend, state_dir):
        desktop = _seed(registry_backend, DESKTOP, Wallpaper="C:\\wall.jpg")
        _seed(registry_backend, THEMES, CurrentTheme="aero")
        template_source.add(
            "desktop",
            _template(registry=[{"path": DESKTOP, "requires_reboot": True}, {"path": THEMES}]),
        )
        engine = make_engine()
        engine.backup("desktop", state_dir)
        registry_backend.write_value(desktop, RegistryValue.of("Wallpaper", "C:\\other.jpg"))

        result = engine.restore("desktop", state_dir)

        assert result.requires_reboot is True
        assert [r.requires_reboot for r in result.per_resource] == [True, False]

    def test_loaded_template_object_is_accepted(self, make_engine, template_source, registry_backend, state_dir):
        _seed(registry_backend, DESKTOP, Wallpaper="C:\\wall.jpg")
        template_source.add("desktop", _template(registry=[{"path": DESKTOP}]))
        engine = make_engine()
        template = engine.load_template("desktop")

        result = engine.invoke(template, "BACKUP", state_dir)

        assert result.success is True
        assert result.template == "desktop"
        assert result.action is Action.BACKUP


class TestLoadFailures:
    """Test cases for templates that cannot be loaded."""

    def test_unknown_template(self, make_engine, state_dir):
        result = make_engine().backup("missing", state_dir)

        assert result.state is ExecutorState.LOAD_FAILED
        assert result.error_code == "TEMPLATE_NOT_FOUND"
        assert result.per_resource == []
        assert result.success is False

    def test_invalid_template(self, make_engine, template_source, state_dir):
        template_source.add("broken", {"metadata": {"name": "broken"}, "resources": {"printers": []}})

        result = make_engine().backup("broken", state_dir)

        assert result.load_failed is True
        assert result.error_code == "TEMPLATE_LOAD_FAILED"

    def test_unknown_action(self, make_engine, state_dir):
        with pytest.raises(ValueError, match="Unknown action"):
            make_engine().invoke("desktop", "sync", state_dir)

    def test_state_dir_required(self, make_engine, template_source):
        template_source.add("desktop", _template(registry=[{"path": DESKTOP}]))

        with pytest.raises(ConfigError, match="No state directory"):
            make_engine().backup("desktop")


class TestCancellation:
    """Test cases for cooperative cancellation."""

    def test_cancelled_before_first_descriptor(self, make_engine, template_source, state_dir):
        template_source.add("desktop", _template(registry=[{"path": DESKTOP}, {"path": THEMES}]))
        token = CancellationToken()
        token.cancel()

        result = make_engine().invoke("desktop", Action.BACKUP, state_dir, cancel_token=token)

        assert result.cancelled is True
        assert result.per_resource == []
        assert result.state is ExecutorState.COMPLETED_WITH_ERRORS
        assert result.success is False


class TestPrerequisites:
    """Test cases for prerequisite checks."""

    def _engine(self, make_engine, template_source, on_missing, responder):
        template_source.add(
            "desktop",
            _template(
                registry=[{"path": DESKTOP}],
                prerequisites=[
                    {
                        "name": "explorer running",
                        "command": "tasklist",
                        "expected_output": "explorer\\.exe",
                        "on_missing": on_missing,
                    }
                ],
            ),
        )
        return make_engine(runner=FakeRunner(responder))

    def test_passing_prerequisite(self, make_engine, template_source, state_dir):
        engine = self._engine(make_engine, template_source, "fail", lambda c: "explorer.exe 1234")

        result = engine.backup("desktop", state_dir)

        assert result.prerequisites[0].passed is True
        assert len(result.per_resource) == 1

    def test_fail_stops_before_resources(self, make_engine, template_source, state_dir):
        engine = self._engine(make_engine, template_source, "fail", lambda c: "svchost.exe")

        result = engine.backup("desktop", state_dir)

        assert result.error_code == "PREREQUISITE_FAILED"
        assert result.stopped_early is True
        assert result.per_resource == []
        assert result.state is ExecutorState.COMPLETED_WITH_ERRORS

    def test_skip_ends_cleanly(self, make_engine, template_source, state_dir):
        engine = self._engine(make_engine, template_source, "skip", lambda c: 1)

        result = engine.backup("desktop", state_dir)

        assert result.skipped is True
        assert result.success is True
        assert result.per_resource == []

    def test_warn_continues(self, make_engine, template_source, state_dir):
        engine = self._engine(make_engine, template_source, "warn", lambda c: "svchost.exe")

        result = engine.backup("desktop", state_dir)

        assert result.prerequisites[0].passed is False
        assert "did not match" in result.prerequisites[0].message
        assert len(result.per_resource) == 1


class TestPrivilegeWarning:
    """Test cases for the privilege analysis attached to a run."""

    def test_machine_wide_key_requires_admin(self, make_engine, template_source, state_dir):
        template_source.add("system", _template(name="system", registry=[{"path": "HKLM:\\SOFTWARE\\Foo"}]))

        result = make_engine(elevated=False).backup("system", state_dir)

        assert result.privileges.requires_admin is True
        assert result.to_dict()["privileges"]["requires_admin"] is True


class BrokenRegistryProvider(RegistryProvider):
    """Raises ``error`` when reading the desktop key."""

    def __init__(self, backend, error):
        super().__init__(backend, machine_name="test-host")
        self.error = error

    def read_live(self, descriptor, locator):
        if "desktop" in str(locator).casefold():
            raise self.error
        return super().read_live(descriptor, locator)


class TestUnexpectedErrors:
    """Test cases for errors outside the provider exception hierarchy."""

    def _backup_with(self, make_engine, template_source, registry_backend, state_dir, error):
        _seed(registry_backend, DESKTOP, Wallpaper="C:\\wall.jpg")
        _seed(registry_backend, THEMES, CurrentTheme="aero")
        template_source.add("desktop", _template(registry=[{"path": DESKTOP}, {"path": THEMES}]))
        engine = make_engine()
        engine.providers.register(BrokenRegistryProvider(registry_backend, error))
        return engine.backup("desktop", state_dir)

    def test_value_error_becomes_capture_failure(self, make_engine, template_source, registry_backend, state_dir):
        result = self._backup_with(
            make_engine, template_source, registry_backend, state_dir, ValueError("bad data")
        )

        assert [r.ok for r in result.per_resource] == [False, True]
        assert result.per_resource[0].error_code == "CAPTURE_FAILED"
        assert "bad data" in result.per_resource[0].error

    def test_unknown_error_is_recorded_and_run_continues(
        self, make_engine, template_source, registry_backend, state_dir
    ):
        result = self._backup_with(
            make_engine, template_source, registry_backend, state_dir, RuntimeError("provider bug")
        )

        assert [r.ok for r in result.per_resource] == [False, True]
        assert result.per_resource[0].error_code == "UNEXPECTED_ERROR"
        assert "RuntimeError: provider bug" in result.per_resource[0].error
        assert result.state is ExecutorState.COMPLETED_WITH_ERRORS

    def test_undecodable_discovery_output(self, make_engine, template_source, state_dir):
        command = [sys.executable, "-c", "import sys; sys.stdout.buffer.write(b'\\xff\\xfe app\\n')"]
        template_source.add(
            "apps",
            {
                "metadata": {"name": "apps"},
                "resources": {
                    "application": [{"name": "tools", "discovery_command": command, "parse": "lines"}]
                },
            },
        )

        result = make_engine(runner=CommandRunner()).backup("apps", state_dir)

        assert result.success is True
        assert result.per_resource[0].status is ResourceStatus.CAPTURED

    def test_corrupt_record_fails_only_its_resource(
        self, make_engine, template_source, registry_backend, state_dir
    ):
        desktop = _seed(registry_backend, DESKTOP, Wallpaper="C:\\wall.jpg")
        _seed(registry_backend, THEMES, CurrentTheme="aero")
        template_source.add("desktop", _template(registry=[{"path": DESKTOP}, {"path": THEMES}]))
        engine = make_engine()
        engine.backup("desktop", state_dir)
        StateStore(state_dir).path_for(desktop).write_text("{not json", encoding="utf-8")

        result = engine.restore("desktop", state_dir)

        assert result.per_resource[0].error_code == "STATE_RECORD_CORRUPT"
        assert result.per_resource[1].ok is True
        assert result.success is False


class TestKindOrder:
    """Test cases for the fixed order in which resource kinds run."""

    def test_kinds_run_in_fixed_order(self, make_engine, template_source, registry_backend, tmp_path, state_dir):
        _seed(registry_backend, DESKTOP, Wallpaper="C:\\wall.jpg")
        template_source.add(
            "workstation",
            {
                "metadata": {"name": "workstation"},
                "resources": {
                    "scheduled_task": [{"path": "\\StateKeeper\\Nightly"}],
                    "application": [{"name": "winget", "discovery_command": "winget export"}],
                    "files": [{"path": str(tmp_path / "missing.txt")}],
                    "registry": [{"path": DESKTOP}],
                },
            },
        )

        def host(command):
            if isinstance(command, list) and command[0] == "schtasks":
                return CommandResult(
                    args=command, returncode=1, stderr="ERROR: The system cannot find the file specified."
                )
            return "[]"

        engine = make_engine(runner=FakeRunner(host))
        backup = engine.backup("workstation", state_dir)
        restore = engine.restore("workstation", state_dir)

        expected = ["registry", "file", "application", "scheduled_task"]
        assert [r.kind for r in backup.per_resource] == expected
        assert [r.kind for r in restore.per_resource] == expected
        assert backup.success is True
