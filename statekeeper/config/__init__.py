"""
Configuration management for the state engine.

Provides type-safe settings loading and validation with support for
multiple configuration sources and priority-based merging.
"""

from .loader import ConfigLoader, create_default_config, load_config
from .models import (
    CommandSettings,
    EncryptionSettings,
    EngineSettings,
    LocatorSettings,
    RegistryBackendKind,
    RegistrySettings,
)

__all__ = [
    "CommandSettings",
    "ConfigLoader",
    "EncryptionSettings",
    "EngineSettings",
    "LocatorSettings",
    "RegistryBackendKind",
    "RegistrySettings",
    "create_default_config",
    "load_config",
]
