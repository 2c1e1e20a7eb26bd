"""
Host command execution used by providers, prerequisites and plan actions.

Commands are either argument lists, executed directly, or script strings,
executed through a named shell (``powershell``, ``pwsh``, ``cmd``, ``sh``,
``bash``). Providers depend on the ``CommandRunner`` interface only, so tests
substitute a fake runner and never touch host tools.
"""

import logging
import os
import subprocess
from dataclasses import dataclass
from typing import List, Mapping, Optional, Sequence, Union

from .exceptions import CommandExecutionError

logger = logging.getLogger(__name__)

Command = Union[str, Sequence[str]]

DEFAULT_TIMEOUT_SECONDS = 300.0

_SHELL_ARGS = {
    "powershell": ["powershell", "-NoProfile", "-NonInteractive", "-Command"],
    "pwsh": ["pwsh", "-NoProfile", "-NonInteractive", "-Command"],
    "cmd": ["cmd", "/d", "/c"],
    "sh": ["sh", "-c"],
    "bash": ["bash", "-c"],
}


def default_shell() -> str:
    return "powershell" if os.name == "nt" else "sh"


@dataclass
class CommandResult:
    """Outcome of one host command."""

    args: List[str]
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def summary(self) -> str:
        text = (self.stderr or self.stdout).strip()
        return text.splitlines()[-1] if text else f"exit code {self.returncode}"


def build_argv(command: Command, shell: Optional[str] = None) -> List[str]:
    """Turn a command spec into an argument vector.

    Raises:
        CommandExecutionError: For an empty command or an unknown shell.
    """
    if isinstance(command, str):
        if not command.strip():
            raise CommandExecutionError("Command is empty")
        name = (shell or default_shell()).lower()
        if name not in _SHELL_ARGS:
            raise CommandExecutionError(
                f"Unknown shell '{shell}'",
                recovery_suggestion=f"Use one of: {', '.join(sorted(_SHELL_ARGS))}",
            )
        return _SHELL_ARGS[name] + [command]
    argv = [str(arg) for arg in command]
    if not argv:
        raise CommandExecutionError("Command is empty")
    return argv


class CommandRunner:
    """Runs host commands synchronously with a timeout."""

    def __init__(
        self,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        shell: Optional[str] = None,
    ):
        self.timeout = timeout
        self.shell = shell

    def run(
        self,
        command: Command,
        shell: Optional[str] = None,
        env: Optional[Mapping[str, str]] = None,
        input_text: Optional[str] = None,
        timeout: Optional[float] = None,
    ) -> CommandResult:
        """
        Run ``command`` and capture its output.

        A non-zero exit status is reported in the result, not raised. Output is
        decoded as UTF-8; undecodable bytes become U+FFFD.

        Args:
            command: Argument list or script string
            shell: Shell for script strings (defaults to the runner's shell)
            env: Complete environment for the child process; inherits ours if None
            input_text: Text written to the child's stdin
            timeout: Seconds before the command is killed

        Raises:
            CommandExecutionError: If the command cannot start or times out
        """
        argv = build_argv(command, shell or self.shell)
        limit = timeout if timeout is not None else self.timeout
        logger.debug(f"Running command: {argv[0]} ({len(argv) - 1} argument(s))")
        try:
            completed = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                encoding="utf-8",
                errors="replace",
                timeout=limit,
                env=dict(env) if env is not None else None,
                input=input_text,
            )
        except subprocess.TimeoutExpired as e:
            raise CommandExecutionError(
                f"Command timed out after {limit:g}s", command=argv, cause=e
            ) from e
        except OSError as e:
            raise CommandExecutionError(
                f"Command could not be started: {e}",
                command=argv,
                cause=e,
                recovery_suggestion=f"Check that '{argv[0]}' is installed and on PATH",
            ) from e
        return CommandResult(
            args=argv,
            returncode=completed.returncode,
            stdout=completed.stdout or "",
            stderr=completed.stderr or "",
        )
