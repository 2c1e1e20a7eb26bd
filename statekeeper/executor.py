"""Template executor.

Orchestrates Backup and Restore across every resource kind of a template:

    Idle -> Loading -> {LoadFailed | Resolved} -> Running -> {Completed | CompletedWithErrors}

Kinds run in a fixed order (registry, file, application, scheduled_task),
one descriptor at a time. Per-descriptor failures are recorded and the run
continues, unless the descriptor is required, in which case the run stops
early. ``invoke`` always returns an ExecutionResult; template and provider
problems never escape as exceptions.

Public API:
    Action: Backup or Restore
    ExecutorState: States of one invocation
    CancellationToken: Coarse cancellation checked between descriptors
    ResourceResult: Outcome for one descriptor
    ExecutionResult: Aggregated outcome of one invocation
    TemplateExecutor: The orchestrator
"""

import re
import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import structlog

from .command_runner import CommandRunner
from .exceptions import CommandExecutionError, StateKeeperError
from .privileges import PrivilegeAnalyzer, PrivilegeRequirement, is_elevated
from .providers.base import ApplyStatus
from .providers.registry import ProviderRegistry
from .templates.loader import TemplateLoader
from .templates.models import Prerequisite, ResourceDescriptor, Template

logger = structlog.get_logger(__name__)


class Action(str, Enum):
    """The two symmetric executor actions."""

    BACKUP = "backup"
    RESTORE = "restore"

    @classmethod
    def parse(cls, value: Union[str, "Action"]) -> "Action":
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(f"Unknown action {value!r} (expected backup or restore)") from None


class ExecutorState(str, Enum):
    IDLE = "idle"
    LOADING = "loading"
    LOAD_FAILED = "load_failed"
    RESOLVED = "resolved"
    RUNNING = "running"
    COMPLETED = "completed"
    COMPLETED_WITH_ERRORS = "completed_with_errors"


class ResourceStatus(str, Enum):
    CAPTURED = "captured"
    APPLIED = "applied"
    SKIPPED = "skipped"
    FAILED = "failed"


class CancellationToken:
    """Thread-safe cancellation flag checked between descriptors."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class ResourceResult:
    """Outcome of capturing or applying one descriptor."""

    kind: str
    locator: str
    ok: bool
    status: ResourceStatus
    name: Optional[str] = None
    required: bool = False
    error: Optional[str] = None
    error_code: Optional[str] = None
    field_errors: Dict[str, str] = field(default_factory=dict)
    requires_reboot: bool = False
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "kind": self.kind,
            "locator": self.locator,
            "name": self.name,
            "ok": self.ok,
            "status": self.status.value,
            "required": self.required,
            "error": self.error,
            "error_code": self.error_code,
            "field_errors": dict(self.field_errors),
            "requires_reboot": self.requires_reboot,
            "message": self.message,
        }


@dataclass
class PrerequisiteResult:
    name: str
    passed: bool
    on_missing: str
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "passed": self.passed,
            "on_missing": self.on_missing,
            "message": self.message,
        }


@dataclass
class ExecutionResult:
    """Aggregated result of one ``invoke``; built fresh and never persisted."""

    action: Action
    template: Optional[str] = None
    state: ExecutorState = ExecutorState.IDLE
    success: bool = False
    requires_reboot: bool = False
    per_resource: List[ResourceResult] = field(default_factory=list)
    prerequisites: List[PrerequisiteResult] = field(default_factory=list)
    privileges: Optional[PrivilegeRequirement] = None
    error: Optional[str] = None
    error_code: Optional[str] = None
    stopped_early: bool = False
    cancelled: bool = False
    skipped: bool = False
    started_at: str = field(default_factory=_now)
    finished_at: Optional[str] = None

    @property
    def failed(self) -> List[ResourceResult]:
        return [r for r in self.per_resource if not r.ok]

    @property
    def load_failed(self) -> bool:
        return self.state is ExecutorState.LOAD_FAILED

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "template": self.template,
            "action": self.action.value,
            "state": self.state.value,
            "success": self.success,
            "requires_reboot": self.requires_reboot,
            "per_resource": [r.to_dict() for r in self.per_resource],
            "prerequisites": [p.to_dict() for p in self.prerequisites],
            "privileges": self.privileges.to_dict() if self.privileges else None,
            "error": self.error,
            "error_code": self.error_code,
            "stopped_early": self.stopped_early,
            "cancelled": self.cancelled,
            "skipped": self.skipped,
            "started_at": self.started_at,
            "finished_at": self.finished_at,
        }


class TemplateExecutor:
    """Runs Backup/Restore for templates against a state directory.

    Args:
        loader: Loads and resolves templates by name
        providers: Kind -> Provider mapping
        analyzer: Privilege analyzer used for the pre-run warning
        runner: Runs prerequisite checks
        elevated: Returns True when the process has admin rights
    """

    def __init__(
        self,
        loader: TemplateLoader,
        providers: ProviderRegistry,
        analyzer: Optional[PrivilegeAnalyzer] = None,
        runner: Optional[CommandRunner] = None,
        elevated: Callable[[], bool] = is_elevated,
    ):
        self.loader = loader
        self.providers = providers
        self.analyzer = analyzer or PrivilegeAnalyzer(normalizer=loader.normalizer)
        self.runner = runner or CommandRunner()
        self.elevated = elevated
        self.state = ExecutorState.IDLE

    def invoke(
        self,
        template: Union[str, Template],
        action: Union[str, Action],
        state_dir: Path,
        cancel_token: Optional[CancellationToken] = None,
    ) -> ExecutionResult:
        """
        Run ``action`` for every descriptor of ``template``.

        Args:
            template: Template name, or an already loaded Template
            action: ``backup`` or ``restore``
            state_dir: Directory holding the StateRecords
            cancel_token: Checked before each descriptor

        Returns:
            ExecutionResult; never raises for template or provider errors

        Raises:
            ValueError: If ``action`` is not a known action
        """
        action = Action.parse(action)
        result = ExecutionResult(action=action)
        state_dir = Path(state_dir)
        self.state = ExecutorState.IDLE

        resolved = self._load(template, result)
        if resolved is None:
            return self._finish(result)

        log = logger.bind(template=resolved.name, action=action.value)
        result.privileges = self.analyzer.analyze(resolved)
        if result.privileges.requires_admin and not self.elevated():
            log.warning(
                "elevation_recommended",
                access_classes=sorted(result.privileges.access_classes),
            )

        if not self._check_prerequisites(resolved, result, log):
            return self._finish(result)

        self._transition(result, ExecutorState.RUNNING)
        log.info("run_started", resources=len(resolved.resources), state_dir=str(state_dir))
        for descriptor in resolved.descriptors():
            if cancel_token is not None and cancel_token.cancelled:
                result.cancelled = True
                log.warning("run_cancelled", completed=len(result.per_resource))
                break
            entry = self._run_one(descriptor, action, state_dir)
            result.per_resource.append(entry)
            if not entry.ok and descriptor.required:
                result.stopped_early = True
                log.error("required_resource_failed", kind=entry.kind, locator=entry.locator)
                break

        return self._finish(result)

    def _load(self, template: Union[str, Template], result: ExecutionResult) -> Optional[Template]:
        self._transition(result, ExecutorState.LOADING)
        result.template = template if isinstance(template, str) else template.name
        try:
            if isinstance(template, str):
                resolved = self.loader.load(template)
            elif template.is_resolved:
                resolved = template
            else:
                resolved = self.loader.load_document(template.to_document(), template.name)
        except StateKeeperError as e:
            result.error = str(e.message)
            result.error_code = e.error_code
            self._transition(result, ExecutorState.LOAD_FAILED)
            logger.error("template_load_failed", template=result.template, error=e.message)
            return None
        result.template = resolved.name
        self._transition(result, ExecutorState.RESOLVED)
        return resolved

    def _check_prerequisites(self, template: Template, result: ExecutionResult, log: Any) -> bool:
        """Evaluate prerequisites; False means the run must not touch resources."""
        for prerequisite in template.prerequisites:
            check = self._evaluate(prerequisite)
            result.prerequisites.append(check)
            if check.passed:
                continue
            log.warning(
                "prerequisite_not_met",
                prerequisite=prerequisite.name,
                on_missing=prerequisite.on_missing,
                reason=check.message,
            )
            if prerequisite.on_missing == "fail":
                result.stopped_early = True
                result.error = f"Prerequisite '{prerequisite.name}' not met: {check.message}"
                result.error_code = "PREREQUISITE_FAILED"
                self._transition(result, ExecutorState.COMPLETED_WITH_ERRORS)
                return False
            if prerequisite.on_missing == "skip":
                result.skipped = True
                self._transition(result, ExecutorState.COMPLETED)
                return False
        return True

    def _evaluate(self, prerequisite: Prerequisite) -> PrerequisiteResult:
        try:
            run = self.runner.run(prerequisite.command, shell=prerequisite.shell)
        except CommandExecutionError as e:
            return PrerequisiteResult(prerequisite.name, False, prerequisite.on_missing, e.message)
        if not run.ok:
            return PrerequisiteResult(
                prerequisite.name, False, prerequisite.on_missing, run.summary()
            )
        if prerequisite.expected_output:
            try:
                matched = re.search(prerequisite.expected_output, run.stdout) is not None
            except re.error:
                matched = prerequisite.expected_output in run.stdout
            if not matched:
                return PrerequisiteResult(
                    prerequisite.name,
                    False,
                    prerequisite.on_missing,
                    f"output did not match {prerequisite.expected_output!r}",
                )
        return PrerequisiteResult(prerequisite.name, True, prerequisite.on_missing)

    def _run_one(
        self, descriptor: ResourceDescriptor, action: Action, state_dir: Path
    ) -> ResourceResult:
        locator = str(descriptor.locator) if descriptor.locator is not None else descriptor.path
        entry = ResourceResult(
            kind=descriptor.kind,
            locator=locator,
            ok=True,
            status=ResourceStatus.SKIPPED,
            name=descriptor.name,
            required=descriptor.required,
        )
        log = logger.bind(kind=descriptor.kind, locator=locator, action=action.value)
        try:
            provider = self.providers.get_provider(descriptor.kind)
            if action is Action.BACKUP:
                record = provider.capture(descriptor, state_dir)
                entry.status = ResourceStatus.CAPTURED
                if not record.present:
                    entry.message = "resource absent"
            else:
                outcome = provider.apply(descriptor, state_dir)
                entry.status = (
                    ResourceStatus.SKIPPED
                    if outcome.status is ApplyStatus.SKIPPED
                    else ResourceStatus.APPLIED
                )
                entry.requires_reboot = outcome.requires_reboot
                entry.message = outcome.message
                if outcome.field_errors:
                    entry.ok = False
                    entry.status = ResourceStatus.FAILED
                    entry.field_errors = dict(outcome.field_errors)
                    entry.error = f"{len(outcome.field_errors)} field(s) could not be applied"
                    entry.error_code = "FIELD_ERRORS"
        except StateKeeperError as e:
            entry.ok = False
            entry.status = ResourceStatus.FAILED
            entry.error = e.message
            entry.error_code = e.error_code
        except OSError as e:
            entry.ok = False
            entry.status = ResourceStatus.FAILED
            entry.error = f"I/O error: {e}"
            entry.error_code = "IO_ERROR"
        except Exception as e:
            # A broken provider fails its own descriptor, not the run
            log.error("resource_unexpected_error", exc_info=True)
            entry.ok = False
            entry.status = ResourceStatus.FAILED
            entry.error = f"Unexpected error: {type(e).__name__}: {e}"
            entry.error_code = "UNEXPECTED_ERROR"

        if entry.ok:
            log.info("resource_done", status=entry.status.value)
        else:
            log.warning("resource_failed", error=entry.error, error_code=entry.error_code)
        return entry

    def _transition(self, result: ExecutionResult, state: ExecutorState) -> None:
        self.state = state
        result.state = state

    def _finish(self, result: ExecutionResult) -> ExecutionResult:
        if result.state is ExecutorState.RUNNING:
            clean = not result.failed and not result.cancelled
            self._transition(
                result, ExecutorState.COMPLETED if clean else ExecutorState.COMPLETED_WITH_ERRORS
            )
        result.requires_reboot = any(r.requires_reboot for r in result.per_resource)
        result.success = result.state is ExecutorState.COMPLETED and not result.failed
        result.finished_at = _now()
        logger.info(
            "run_finished",
            template=result.template,
            action=result.action.value,
            state=result.state.value,
            success=result.success,
            failed=len(result.failed),
        )
        return result
