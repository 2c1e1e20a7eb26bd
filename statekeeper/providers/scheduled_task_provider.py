"""Scheduled-task provider.

Captures a task's XML definition and its enabled flag through ``schtasks``.
Apply re-creates the task from the recorded XML and then toggles it; if the
toggle fails the previous definition is re-created (or the new task deleted)
so the task ends up either fully restored or as it was.
"""

import logging
import os
import tempfile
import xml.etree.ElementTree as ET
from typing import Any, Dict, Optional

from ..command_runner import CommandResult, CommandRunner
from ..exceptions import ApplyFailedError, CaptureFailedError, CommandExecutionError
from ..locator import SCHEDULED_TASK, Locator
from ..state_store import StateRecord
from ..templates.models import FieldType, ResourceDescriptor
from .base import ApplyOutcome, LiveState, Provider

logger = logging.getLogger(__name__)

DEFINITION_FIELD = "definition"
ENABLED_FIELD = "enabled"
TASK_NAMESPACE = "http://schemas.microsoft.com/windows/2004/02/mit/task"
SCHTASKS = "schtasks"
_NOT_FOUND_MARKERS = ("cannot find", "does not exist")


def parse_enabled(definition: str) -> bool:
    """Read ``Settings/Enabled`` from a task XML definition (default true).

    Raises:
        ValueError: If the definition is not well-formed XML.
    """
    try:
        root = ET.fromstring(_strip_declaration(definition))
    except ET.ParseError as e:
        raise ValueError(f"task definition is not valid XML: {e}") from e
    node = root.find(f"{{{TASK_NAMESPACE}}}Settings/{{{TASK_NAMESPACE}}}Enabled")
    if node is None:
        node = root.find("Settings/Enabled")
    if node is None or node.text is None:
        return True
    return node.text.strip().lower() == "true"


def _strip_declaration(definition: str) -> str:
    # schtasks prints a UTF-16 declaration; the text we hold is already decoded
    text = definition.lstrip("\ufeff").lstrip()
    if text.startswith("<?xml"):
        end = text.find("?>")
        if end != -1:
            text = text[end + 2 :].lstrip()
    return text


class ScheduledTaskProvider(Provider):
    """Provider for ``scheduled_task`` resources managed through schtasks."""

    kind = SCHEDULED_TASK
    SUPPORTED_FIELDS = frozenset({DEFINITION_FIELD, ENABLED_FIELD})

    def __init__(self, runner: Optional[CommandRunner] = None, **kwargs):
        super().__init__(**kwargs)
        self.runner = runner or CommandRunner()

    def _schtasks(self, *args: str) -> CommandResult:
        return self.runner.run([SCHTASKS, *args])

    def query(self, locator: Locator) -> Optional[str]:
        """Return the XML definition of the task, or None if it does not exist."""
        try:
            result = self._schtasks("/Query", "/TN", locator.native_path(), "/XML")
        except CommandExecutionError as e:
            raise CaptureFailedError(
                f"Cannot query scheduled task {locator}: {e.message}",
                kind=self.kind,
                locator=str(locator),
                cause=e,
            ) from e
        if result.ok:
            return result.stdout
        output = f"{result.stderr}\n{result.stdout}".lower()
        if any(marker in output for marker in _NOT_FOUND_MARKERS):
            return None
        raise CaptureFailedError(
            f"Querying scheduled task {locator} failed: {result.summary()}",
            kind=self.kind,
            locator=str(locator),
        )

    def read_live(self, descriptor: ResourceDescriptor, locator: Locator) -> Optional[LiveState]:
        definition = self.query(locator)
        if definition is None:
            return None
        try:
            enabled = parse_enabled(definition)
        except ValueError as e:
            raise CaptureFailedError(
                f"Scheduled task {locator}: {e}", kind=self.kind, locator=str(locator), cause=e
            ) from e

        wanted = set(descriptor.effective_fields())
        values: Dict[str, Any] = {}
        field_types = {}
        if DEFINITION_FIELD in wanted:
            values[DEFINITION_FIELD] = definition
            field_types[DEFINITION_FIELD] = FieldType.STRING
        if ENABLED_FIELD in wanted:
            values[ENABLED_FIELD] = enabled
            field_types[ENABLED_FIELD] = FieldType.BOOLEAN
        return LiveState(values=values, field_types=field_types)

    def write_live(
        self,
        descriptor: ResourceDescriptor,
        locator: Locator,
        values: Dict[str, Any],
        record: StateRecord,
    ) -> ApplyOutcome:
        try:
            previous = self.query(locator)
        except CaptureFailedError as e:
            raise ApplyFailedError(
                f"Cannot read current state of scheduled task {locator}",
                kind=self.kind,
                locator=str(locator),
                cause=e,
            ) from e

        definition = values.get(DEFINITION_FIELD)
        enabled = values.get(ENABLED_FIELD)
        if previous is None and definition is None:
            raise ApplyFailedError(
                f"Scheduled task {locator} does not exist and no definition is available",
                kind=self.kind,
                locator=str(locator),
            )

        changed = False
        recreated = False
        if definition is not None and (
            previous is None or _strip_declaration(previous) != _strip_declaration(definition)
        ):
            self._create(locator, definition)
            changed = recreated = True

        if enabled is not None:
            try:
                current_enabled: Optional[bool] = parse_enabled(definition if recreated else previous)
            except ValueError:
                current_enabled = None
            if current_enabled != enabled:
                try:
                    self._set_enabled(locator, enabled)
                except ApplyFailedError:
                    if recreated:
                        try:
                            self._restore(locator, previous)
                        except (ApplyFailedError, OSError) as rollback_error:
                            logger.error(
                                f"Rollback of scheduled task {locator} failed: {rollback_error}"
                            )
                    raise
                changed = True

        return ApplyOutcome(changed=changed)

    def _create(self, locator: Locator, definition: str) -> None:
        fd, xml_path = tempfile.mkstemp(prefix="statekeeper-task-", suffix=".xml")
        try:
            with os.fdopen(fd, "w", encoding="utf-16") as handle:
                handle.write(_strip_declaration(definition))
            result = self._run_apply(
                locator, "/Create", "/TN", locator.native_path(), "/XML", xml_path, "/F"
            )
        finally:
            os.unlink(xml_path)
        if not result.ok:
            raise ApplyFailedError(
                f"Creating scheduled task {locator} failed: {result.summary()}",
                kind=self.kind,
                locator=str(locator),
            )

    def _set_enabled(self, locator: Locator, enabled: bool) -> None:
        flag = "/ENABLE" if enabled else "/DISABLE"
        result = self._run_apply(locator, "/Change", "/TN", locator.native_path(), flag)
        if not result.ok:
            raise ApplyFailedError(
                f"Changing scheduled task {locator} to {flag[1:].lower()} failed: {result.summary()}",
                kind=self.kind,
                locator=str(locator),
            )

    def _restore(self, locator: Locator, previous: Optional[str]) -> None:
        logger.warning(f"Rolling back scheduled task {locator}")
        if previous is None:
            self._run_apply(locator, "/Delete", "/TN", locator.native_path(), "/F")
        else:
            self._create(locator, previous)

    def _run_apply(self, locator: Locator, *args: str) -> CommandResult:
        try:
            return self._schtasks(*args)
        except CommandExecutionError as e:
            raise ApplyFailedError(
                f"schtasks could not run for {locator}: {e.message}",
                kind=self.kind,
                locator=str(locator),
                cause=e,
            ) from e
