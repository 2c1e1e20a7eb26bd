"""Test doubles shared across test modules."""

from typing import Any, Callable, Dict, List, Optional

from statekeeper.command_runner import CommandResult, CommandRunner
from statekeeper.encryption import EncryptionContext, EncryptionService, PassphraseKeySource
from statekeeper.exceptions import CommandExecutionError

# Low iteration count keeps key derivation fast in tests
TEST_ITERATIONS = 1000


class FakeRunner(CommandRunner):
    """CommandRunner that records calls and answers from a responder.

    The responder receives the command and returns a CommandResult, a string
    (stdout of a successful run), an int (exit code) or a
    CommandExecutionError to raise.
    """

    def __init__(self, responder: Optional[Callable[[Any], Any]] = None):
        super().__init__()
        self.responder = responder
        self.calls: List[Dict[str, Any]] = []

    def run(self, command, shell=None, env=None, input_text=None, timeout=None) -> CommandResult:
        self.calls.append(
            {"command": command, "shell": shell, "env": env, "input_text": input_text, "timeout": timeout}
        )
        args = [command] if isinstance(command, str) else list(command)
        answer = self.responder(command) if self.responder else ""
        if isinstance(answer, CommandExecutionError):
            raise answer
        if isinstance(answer, CommandResult):
            return answer
        if isinstance(answer, int):
            return CommandResult(args=args, returncode=answer, stderr=f"exit {answer}")
        return CommandResult(args=args, returncode=0, stdout=answer or "")

    @property
    def commands(self) -> List[Any]:
        return [call["command"] for call in self.calls]


def make_encryption(passphrase: str = "correct horse battery staple") -> EncryptionService:
    context = EncryptionContext(PassphraseKeySource(passphrase), iterations=TEST_ITERATIONS)
    return EncryptionService(context)
