"""
statekeeper: template-driven backup and restore of machine state.

Templates describe registry keys, files, installed applications and
scheduled tasks; the engine captures them into StateRecords and applies
them back.
"""

from .engine import StateEngine, build_engine
from .exceptions import StateKeeperError
from .executor import Action, CancellationToken, ExecutionResult, ExecutorState
from .locator import Locator, LocatorNormalizer, normalize_locator
from .privileges import PrivilegeAnalyzer, PrivilegeRequirement
from .state_store import StateRecord, StateStore

__version__ = "0.1.0"

__all__ = [
    "Action",
    "CancellationToken",
    "ExecutionResult",
    "ExecutorState",
    "Locator",
    "LocatorNormalizer",
    "PrivilegeAnalyzer",
    "PrivilegeRequirement",
    "StateEngine",
    "StateKeeperError",
    "StateRecord",
    "StateStore",
    "__version__",
    "build_engine",
    "normalize_locator",
]
