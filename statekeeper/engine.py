"""Engine entry points consumed by the CLI and surrounding tooling.

Public API:
    StateEngine: load_template, analyze_privileges, invoke (plus backup/restore)
    build_engine: Construct an engine from EngineSettings
"""

import logging
import socket
from pathlib import Path
from typing import Callable, Optional, Union

from .command_runner import CommandRunner
from .config.models import EngineSettings
from .encryption import EncryptionContext, EncryptionService, MachineKeySource, PassphraseKeySource
from .exceptions import ConfigError
from .executor import Action, CancellationToken, ExecutionResult, TemplateExecutor
from .locator import LocatorNormalizer
from .privileges import PrivilegeAnalyzer, PrivilegeRequirement, is_elevated
from .providers.registry import ProviderRegistry, create_default_registry
from .providers.registry_backend import RegistryBackend, create_backend
from .templates.loader import DirectoryTemplateSource, TemplateLoader, TemplateSource
from .templates.models import Template

logger = logging.getLogger(__name__)


class StateEngine:
    """Loads templates, classifies privileges and runs Backup/Restore."""

    def __init__(
        self,
        loader: TemplateLoader,
        providers: ProviderRegistry,
        analyzer: Optional[PrivilegeAnalyzer] = None,
        runner: Optional[CommandRunner] = None,
        default_state_dir: Optional[Path] = None,
        elevated: Callable[[], bool] = is_elevated,
    ):
        self.loader = loader
        self.providers = providers
        self.analyzer = analyzer or PrivilegeAnalyzer(normalizer=loader.normalizer)
        self.default_state_dir = default_state_dir
        self.executor = TemplateExecutor(
            loader, providers, analyzer=self.analyzer, runner=runner, elevated=elevated
        )

    def load_template(self, name: str) -> Template:
        """Load and fully resolve the template called ``name``."""
        return self.loader.load(name)

    def analyze_privileges(self, template: Union[str, Template]) -> PrivilegeRequirement:
        if isinstance(template, str):
            template = self.load_template(template)
        return self.analyzer.analyze(template)

    def invoke(
        self,
        template: Union[str, Template],
        action: Union[str, Action],
        state_dir: Optional[Path] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ExecutionResult:
        """
        Run ``action`` for ``template`` against ``state_dir``.

        Raises:
            ConfigError: If no state directory is given or configured
        """
        directory = state_dir or self.default_state_dir
        if directory is None:
            raise ConfigError(
                "No state directory given",
                recovery_suggestion="Pass --state-dir or set BACKUP_ROOT",
            )
        return self.executor.invoke(template, action, Path(directory), cancel_token=cancel_token)

    def backup(self, template: Union[str, Template], state_dir: Optional[Path] = None) -> ExecutionResult:
        return self.invoke(template, Action.BACKUP, state_dir)

    def restore(self, template: Union[str, Template], state_dir: Optional[Path] = None) -> ExecutionResult:
        return self.invoke(template, Action.RESTORE, state_dir)


def build_encryption(settings: EngineSettings) -> EncryptionService:
    passphrase = settings.encryption.passphrase
    key_source = (
        PassphraseKeySource(passphrase.get_secret_value()) if passphrase else MachineKeySource()
    )
    context = EncryptionContext(
        key_source, salt=settings.encryption.salt, iterations=settings.encryption.iterations
    )
    return EncryptionService(context)


def build_engine(
    settings: EngineSettings,
    source: Optional[TemplateSource] = None,
    runner: Optional[CommandRunner] = None,
    registry_backend: Optional[RegistryBackend] = None,
    encryption: Optional[EncryptionService] = None,
    elevated: Callable[[], bool] = is_elevated,
) -> StateEngine:
    """
    Construct a StateEngine from settings.

    Every collaborator can be injected; the rest are built from ``settings``.

    Raises:
        ConfigError: If the registry backend cannot be created
    """
    normalizer = LocatorNormalizer(
        drive_map=settings.locators.drive_map,
        expand_environment=settings.locators.expand_environment,
    )
    runner = runner or CommandRunner(
        timeout=settings.commands.timeout_seconds, shell=settings.commands.default_shell
    )
    if registry_backend is None:
        registry_backend = create_backend(settings.registry.backend.value, settings.registry.root)
    providers = create_default_registry(
        registry_backend,
        encryption=encryption or build_encryption(settings),
        runner=runner,
        normalizer=normalizer,
        machine_name=settings.machine_name or socket.gethostname(),
    )
    loader = TemplateLoader(source or DirectoryTemplateSource(settings.templates_dir), normalizer)
    analyzer = PrivilegeAnalyzer(settings.protected_roots, normalizer=normalizer)
    logger.debug(f"Engine ready: templates={settings.templates_dir}, registry={type(registry_backend).__name__}")
    return StateEngine(
        loader,
        providers,
        analyzer=analyzer,
        runner=runner,
        default_state_dir=settings.state_dir,
        elevated=elevated,
    )
