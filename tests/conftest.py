"""Shared fixtures: fake host commands, file-backed registry, fast encryption."""

from pathlib import Path
from typing import Optional

import pytest

from statekeeper.command_runner import CommandRunner
from statekeeper.encryption import EncryptionService
from statekeeper.engine import StateEngine
from statekeeper.locator import LocatorNormalizer
from statekeeper.providers.registry import create_default_registry
from statekeeper.providers.registry_backend import FileRegistryBackend
from statekeeper.templates.loader import InMemoryTemplateSource, TemplateLoader
from tests.helpers import FakeRunner, make_encryption


@pytest.fixture
def fake_runner() -> FakeRunner:
    return FakeRunner()


@pytest.fixture
def encryption() -> EncryptionService:
    return make_encryption()


@pytest.fixture
def registry_backend(tmp_path: Path) -> FileRegistryBackend:
    return FileRegistryBackend(tmp_path / "registry")


@pytest.fixture
def state_dir(tmp_path: Path) -> Path:
    return tmp_path / "state"


@pytest.fixture
def normalizer() -> LocatorNormalizer:
    return LocatorNormalizer(environ={"USERPROFILE": "C:\\Users\\alice", "HOME": "/home/alice"})


@pytest.fixture
def template_source() -> InMemoryTemplateSource:
    return InMemoryTemplateSource()


@pytest.fixture
def make_engine(registry_backend, encryption, template_source):
    """Build a StateEngine over the in-memory source and file registry."""

    def _make(runner: Optional[CommandRunner] = None, elevated: bool = False) -> StateEngine:
        runner = runner or FakeRunner()
        providers = create_default_registry(
            registry_backend,
            encryption=encryption,
            runner=runner,
            machine_name="test-host",
        )
        loader = TemplateLoader(template_source)
        return StateEngine(loader, providers, runner=runner, elevated=lambda: elevated)

    return _make
