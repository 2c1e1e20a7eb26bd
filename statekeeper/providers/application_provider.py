"""Application-inventory provider.

Capture runs the descriptor's ``discovery_command`` and parses its output
into the ``inventory`` list (JSON array or one item per line). A
``parse_script`` may sit in between: it receives the raw discovery output on
stdin and prints the inventory. Apply either hands the whole recorded
inventory to ``install_script`` as JSON on stdin, or re-discovers the current
inventory and runs ``install_command`` for every recorded item that is no
longer present.

PowerShell scripts also receive their stdin as the first ``param()``
argument, so ``param($DiscoveryOutput)`` and ``param($StateJson)`` blocks work
unchanged.

Installs cannot be undone, so an install failure stops the descriptor and
reports which items were already installed.
"""

import json
import logging
from typing import Any, Dict, List, Optional

from ..command_runner import CommandResult, CommandRunner, default_shell
from ..exceptions import ApplyFailedError, CaptureFailedError, CommandExecutionError
from ..locator import APPLICATION, Locator
from ..state_store import StateRecord
from ..templates.models import ApplicationDescriptor, FieldType, ResourceDescriptor
from .base import ApplyOutcome, LiveState, Provider

logger = logging.getLogger(__name__)

INVENTORY_FIELD = "inventory"
_POWERSHELLS = ("powershell", "pwsh")


def _lookup(item: Dict[str, Any], key: str) -> Optional[Any]:
    if key in item:
        return item[key]
    folded = key.casefold()
    for candidate, value in item.items():
        if isinstance(candidate, str) and candidate.casefold() == folded:
            return value
    return None


def item_identity(item: Any, id_field: str) -> str:
    """Key used to compare inventory items across snapshots."""
    if isinstance(item, dict):
        value = _lookup(item, id_field)
        if value is None:
            value = _lookup(item, "name")
        if value is not None:
            return str(value).casefold()
        return json.dumps(item, sort_keys=True)
    return str(item).strip().casefold()


def item_variables(item: Any, id_field: str) -> Dict[str, str]:
    """Placeholders available to ``install_command`` for one item."""
    if isinstance(item, dict):
        identity = _lookup(item, id_field)
        name = _lookup(item, "name")
        return {
            "id": str(identity if identity is not None else name or ""),
            "name": str(name if name is not None else identity or ""),
            "version": str(_lookup(item, "version") or ""),
        }
    text = str(item).strip()
    return {"id": text, "name": text, "version": ""}


class ApplicationProvider(Provider):
    """Provider for ``application`` inventories discovered through host commands."""

    kind = APPLICATION
    SUPPORTED_FIELDS = frozenset({INVENTORY_FIELD})

    def __init__(self, runner: Optional[CommandRunner] = None, **kwargs):
        super().__init__(**kwargs)
        self.runner = runner or CommandRunner()

    def discover(self, descriptor: ApplicationDescriptor, locator: Locator) -> List[Any]:
        """
        Run the discovery command, then the parse script if any, and parse
        the inventory.

        Raises:
            CaptureFailedError: If a command fails or prints unparseable output
        """
        if descriptor.discovery_command is None:
            raise CaptureFailedError(
                f"Application resource {locator} has no discovery_command",
                kind=self.kind,
                locator=str(locator),
            )
        output = self._run_step(descriptor, locator, "Discovery command", descriptor.discovery_command)
        if descriptor.parse_script is not None:
            output = self._run_step(
                descriptor, locator, "Parse script", descriptor.parse_script, input_text=output
            )
        return self._parse(descriptor, locator, output)

    def _run_step(
        self,
        descriptor: ApplicationDescriptor,
        locator: Locator,
        label: str,
        command: Any,
        input_text: Optional[str] = None,
    ) -> str:
        try:
            result = self._run_script(descriptor, command, input_text)
        except CommandExecutionError as e:
            raise CaptureFailedError(
                f"{label} for {locator} could not run: {e.message}",
                kind=self.kind,
                locator=str(locator),
                cause=e,
            ) from e
        if not result.ok:
            raise CaptureFailedError(
                f"{label} for {locator} failed: {result.summary()}",
                kind=self.kind,
                locator=str(locator),
            )
        return result.stdout

    def _run_script(
        self, descriptor: ApplicationDescriptor, command: Any, input_text: Optional[str] = None
    ) -> CommandResult:
        shell = descriptor.shell or self.runner.shell or default_shell()
        if input_text is not None and isinstance(command, str) and shell.lower() in _POWERSHELLS:
            command = "& {\n" + command + "\n} ([Console]::In.ReadToEnd())"
        return self.runner.run(command, shell=descriptor.shell, input_text=input_text)

    def _parse(self, descriptor: ApplicationDescriptor, locator: Locator, output: str) -> List[Any]:
        if descriptor.parse == "lines":
            return [line.strip() for line in output.splitlines() if line.strip()]
        if not output.strip():
            return []
        try:
            data = json.loads(output)
        except ValueError as e:
            raise CaptureFailedError(
                f"Discovery output for {locator} is not valid JSON: {e}",
                kind=self.kind,
                locator=str(locator),
                cause=e,
            ) from e
        if isinstance(data, dict):
            return [data]
        if not isinstance(data, list):
            raise CaptureFailedError(
                f"Discovery output for {locator} must be a JSON array",
                kind=self.kind,
                locator=str(locator),
            )
        return data

    def read_live(self, descriptor: ResourceDescriptor, locator: Locator) -> Optional[LiveState]:
        inventory = self.discover(descriptor, locator)
        logger.debug(f"Discovered {len(inventory)} item(s) for {locator}")
        return LiveState(
            values={INVENTORY_FIELD: inventory},
            field_types={INVENTORY_FIELD: FieldType.LIST},
        )

    def write_live(
        self,
        descriptor: ResourceDescriptor,
        locator: Locator,
        values: Dict[str, Any],
        record: StateRecord,
    ) -> ApplyOutcome:
        recorded = values.get(INVENTORY_FIELD)
        if not recorded:
            return ApplyOutcome(changed=False, message="no recorded inventory")

        if descriptor.install_script is not None:
            return self._run_install_script(descriptor, locator, recorded)

        try:
            current = self.discover(descriptor, locator)
        except CaptureFailedError as e:
            raise ApplyFailedError(
                f"Cannot read current inventory of {locator}; nothing installed",
                kind=self.kind,
                locator=str(locator),
                cause=e,
            ) from e

        present = {item_identity(item, descriptor.id_field) for item in current}
        missing = [item for item in recorded if item_identity(item, descriptor.id_field) not in present]
        if not missing:
            return ApplyOutcome(changed=False)
        if not descriptor.install_command:
            logger.warning(f"{len(missing)} item(s) of {locator} missing and no install_command")
            return ApplyOutcome(
                changed=False, message=f"{len(missing)} item(s) missing; no install_command"
            )

        installed: List[str] = []
        for item in missing:
            variables = item_variables(item, descriptor.id_field)
            self._install(descriptor, locator, variables, installed)
            installed.append(variables["id"])
        logger.info(f"Installed {len(installed)} item(s) for {locator}")
        return ApplyOutcome(changed=True, message=f"installed {len(installed)} item(s)")

    def _install(
        self,
        descriptor: ApplicationDescriptor,
        locator: Locator,
        variables: Dict[str, str],
        installed: List[str],
    ) -> None:
        context = {"installed": ", ".join(installed) or "none"}
        try:
            command = self._format(descriptor.install_command, variables)
            result = self.runner.run(command, shell=descriptor.shell)
        except (KeyError, IndexError, ValueError, CommandExecutionError) as e:
            raise ApplyFailedError(
                f"Installing '{variables['id']}' for {locator} failed: {e}",
                kind=self.kind,
                locator=str(locator),
                cause=e,
                context=context,
            ) from e
        if not result.ok:
            raise ApplyFailedError(
                f"Installing '{variables['id']}' for {locator} failed: {result.summary()}",
                kind=self.kind,
                locator=str(locator),
                context=context,
            )

    @staticmethod
    def _format(command: Any, variables: Dict[str, str]) -> Any:
        if isinstance(command, str):
            return command.format(**variables)
        return [arg.format(**variables) for arg in command]

    def _run_install_script(
        self, descriptor: ApplicationDescriptor, locator: Locator, recorded: List[Any]
    ) -> ApplyOutcome:
        payload = json.dumps(recorded, indent=2)
        try:
            result = self._run_script(descriptor, descriptor.install_script, input_text=payload)
        except CommandExecutionError as e:
            raise ApplyFailedError(
                f"Install script for {locator} could not run: {e.message}",
                kind=self.kind,
                locator=str(locator),
                cause=e,
            ) from e
        if not result.ok:
            raise ApplyFailedError(
                f"Install script for {locator} failed: {result.summary()}",
                kind=self.kind,
                locator=str(locator),
            )
        logger.info(f"Install script restored {len(recorded)} item(s) for {locator}")
        return ApplyOutcome(changed=True, message=f"install script ran for {len(recorded)} item(s)")
