"""Resource state providers, one per resource kind."""

from .application_provider import ApplicationProvider
from .base import ApplyOutcome, ApplyStatus, LiveState, Provider
from .file_provider import FileProvider
from .registry import ProviderRegistry, create_default_registry
from .registry_backend import (
    FileRegistryBackend,
    RegistryBackend,
    RegistryValue,
    RegistryValueType,
    WindowsRegistryBackend,
    create_backend,
)
from .registry_provider import RegistryProvider
from .scheduled_task_provider import ScheduledTaskProvider

__all__ = [
    "ApplicationProvider",
    "ApplyOutcome",
    "ApplyStatus",
    "FileProvider",
    "FileRegistryBackend",
    "LiveState",
    "Provider",
    "ProviderRegistry",
    "RegistryBackend",
    "RegistryProvider",
    "RegistryValue",
    "RegistryValueType",
    "ScheduledTaskProvider",
    "WindowsRegistryBackend",
    "create_backend",
    "create_default_registry",
]
