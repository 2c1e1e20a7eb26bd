"""Execution plans.

A plan is an ordered list of steps. Template steps run Backup or Restore
through the engine; action steps shell out to external scripts (installers,
feature toggles). Action steps get no engine state beyond ``BACKUP_ROOT``
and ``MACHINE_NAME`` and report a plain ``{success, message}``; their
results are kept next to the template results, never merged into them.

Example plan::

    name: workstation-restore
    steps:
      - template: display
        action: restore
      - name: install-winget-apps
        command: winget import -i "$env:BACKUP_ROOT/winget.json"
        shell: powershell
        continue_on_failure: true
"""

import os
import socket
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Literal, Optional, Union

import structlog
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .command_runner import CommandRunner
from .engine import StateEngine
from .exceptions import CommandExecutionError, PlanError
from .executor import Action, CancellationToken, ExecutionResult
from .templates.models import CommandSpec

logger = structlog.get_logger(__name__)

# Host variables a shell needs to start at all
_PASSTHROUGH_ENV = ("PATH", "SYSTEMROOT", "WINDIR", "COMSPEC", "PATHEXT", "TEMP", "TMP")


class TemplateStep(BaseModel):
    """Run Backup or Restore for one template."""

    template: str
    action: Literal["backup", "restore"]
    continue_on_failure: bool = False

    model_config = ConfigDict(extra="forbid")

    @property
    def label(self) -> str:
        return f"{self.action} {self.template}"


class ActionStep(BaseModel):
    """Run one external script."""

    name: str
    command: CommandSpec
    shell: Optional[str] = None
    continue_on_failure: bool = False
    timeout_seconds: Optional[float] = Field(default=None, gt=0)

    model_config = ConfigDict(extra="forbid")

    @property
    def label(self) -> str:
        return self.name


PlanStep = Union[TemplateStep, ActionStep]


class ExecutionPlan(BaseModel):
    name: str
    description: Optional[str] = None
    steps: List[PlanStep] = Field(default_factory=list)

    model_config = ConfigDict(extra="forbid")

    @classmethod
    def from_dict(cls, data: Any) -> "ExecutionPlan":
        """
        Build a plan from a parsed document.

        Raises:
            PlanError: If the document is not a valid plan
        """
        if not isinstance(data, dict):
            raise PlanError("Plan document must be a mapping")
        steps = data.get("steps") or []
        if not isinstance(steps, list):
            raise PlanError("Plan 'steps' must be a list")
        parsed: List[PlanStep] = []
        try:
            for index, step in enumerate(steps):
                if not isinstance(step, dict):
                    raise PlanError(f"Plan step {index} must be a mapping")
                if "template" in step:
                    parsed.append(TemplateStep.model_validate(step))
                elif "command" in step:
                    parsed.append(ActionStep.model_validate(step))
                else:
                    raise PlanError(
                        f"Plan step {index} needs either 'template' or 'command'",
                        context={"step": index},
                    )
            return cls.model_validate({**data, "steps": parsed})
        except ValidationError as e:
            raise PlanError(f"Invalid plan: {e}", cause=e) from e

    @classmethod
    def from_file(cls, path: Path) -> "ExecutionPlan":
        """
        Load a plan from a YAML file.

        Raises:
            PlanError: If the file cannot be read or is not a valid plan
        """
        try:
            with open(path, encoding="utf-8") as f:
                data = yaml.safe_load(f)
        except (OSError, yaml.YAMLError) as e:
            raise PlanError(f"Cannot read plan {path}: {e}", cause=e) from e
        return cls.from_dict(data)


@dataclass
class ActionResult:
    """Outcome of one action step."""

    name: str
    success: bool
    message: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {"name": self.name, "success": self.success, "message": self.message}


@dataclass
class PlanResult:
    """Template results and action results of one plan run, side by side."""

    plan: str
    template_results: List[ExecutionResult] = field(default_factory=list)
    action_results: List[ActionResult] = field(default_factory=list)
    stopped_early: bool = False
    cancelled: bool = False

    @property
    def success(self) -> bool:
        return (
            not self.stopped_early
            and not self.cancelled
            and all(r.success for r in self.template_results)
            and all(r.success for r in self.action_results)
        )

    @property
    def requires_reboot(self) -> bool:
        return any(r.requires_reboot for r in self.template_results)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "plan": self.plan,
            "success": self.success,
            "requires_reboot": self.requires_reboot,
            "stopped_early": self.stopped_early,
            "cancelled": self.cancelled,
            "template_results": [r.to_dict() for r in self.template_results],
            "action_results": [r.to_dict() for r in self.action_results],
        }


class PlanRunner:
    """Runs the steps of an ExecutionPlan in order."""

    def __init__(
        self,
        engine: StateEngine,
        runner: Optional[CommandRunner] = None,
        machine_name: Optional[str] = None,
    ):
        self.engine = engine
        self.runner = runner or CommandRunner()
        self.machine_name = machine_name or socket.gethostname()

    def action_environment(self, state_dir: Path) -> Dict[str, str]:
        env = {k: os.environ[k] for k in _PASSTHROUGH_ENV if k in os.environ}
        env["BACKUP_ROOT"] = str(state_dir)
        env["MACHINE_NAME"] = self.machine_name
        return env

    def run(
        self,
        plan: ExecutionPlan,
        state_dir: Path,
        cancel_token: Optional[CancellationToken] = None,
    ) -> PlanResult:
        """
        Run every step of ``plan``.

        A failed step stops the plan unless it sets ``continue_on_failure``.
        """
        result = PlanResult(plan=plan.name)
        log = logger.bind(plan=plan.name)
        for step in plan.steps:
            if cancel_token is not None and cancel_token.cancelled:
                result.cancelled = True
                log.warning("plan_cancelled", step=step.label)
                break
            log.info("plan_step_started", step=step.label)
            if isinstance(step, TemplateStep):
                execution = self.engine.invoke(
                    step.template, Action(step.action), state_dir, cancel_token=cancel_token
                )
                result.template_results.append(execution)
                ok = execution.success
            else:
                outcome = self.run_action(step, state_dir)
                result.action_results.append(outcome)
                ok = outcome.success
            if not ok:
                log.warning("plan_step_failed", step=step.label)
                if not step.continue_on_failure:
                    result.stopped_early = True
                    break
        log.info("plan_finished", success=result.success)
        return result

    def run_action(self, step: ActionStep, state_dir: Path) -> ActionResult:
        try:
            run = self.runner.run(
                step.command,
                shell=step.shell,
                env=self.action_environment(state_dir),
                timeout=step.timeout_seconds,
            )
        except CommandExecutionError as e:
            return ActionResult(step.name, False, e.message)
        if run.ok:
            return ActionResult(step.name, True, run.stdout.strip().splitlines()[-1] if run.stdout.strip() else "")
        return ActionResult(step.name, False, run.summary())
