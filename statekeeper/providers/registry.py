"""Static kind -> Provider mapping consulted by the executor."""

import logging
from typing import Dict, List, Optional

from ..command_runner import CommandRunner
from ..encryption import EncryptionService
from ..exceptions import UnsupportedResourceKindError
from ..locator import LocatorNormalizer
from .application_provider import ApplicationProvider
from .base import Provider
from .file_provider import FileProvider
from .registry_backend import RegistryBackend
from .registry_provider import RegistryProvider
from .scheduled_task_provider import ScheduledTaskProvider

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Registry of provider instances, one per resource kind."""

    def __init__(self):
        self._providers: Dict[str, Provider] = {}

    def register(self, provider: Provider) -> None:
        """Register ``provider`` for its kind, replacing any earlier one.

        Args:
            provider: Provider instance with a non-empty ``kind``
        """
        if not provider.kind:
            raise ValueError(f"{type(provider).__name__} does not declare a kind")
        if provider.kind in self._providers:
            logger.debug(f"Replacing provider for kind '{provider.kind}'")
        self._providers[provider.kind] = provider

    def get_provider(self, kind: str) -> Provider:
        """Get the provider for ``kind``.

        Raises:
            UnsupportedResourceKindError: If no provider handles the kind
        """
        provider = self._providers.get(kind)
        if provider is None:
            raise UnsupportedResourceKindError(kind)
        return provider

    def kinds(self) -> List[str]:
        return list(self._providers)

    def __contains__(self, kind: object) -> bool:
        return kind in self._providers


def create_default_registry(
    registry_backend: RegistryBackend,
    encryption: Optional[EncryptionService] = None,
    runner: Optional[CommandRunner] = None,
    normalizer: Optional[LocatorNormalizer] = None,
    machine_name: Optional[str] = None,
) -> ProviderRegistry:
    """Build a registry with the built-in provider for every resource kind."""
    runner = runner or CommandRunner()
    shared = {"encryption": encryption, "normalizer": normalizer, "machine_name": machine_name}
    registry = ProviderRegistry()
    registry.register(RegistryProvider(registry_backend, **shared))
    registry.register(FileProvider(**shared))
    registry.register(ApplicationProvider(runner=runner, **shared))
    registry.register(ScheduledTaskProvider(runner=runner, **shared))
    return registry
