"""
Privilege analysis for resolved templates.

Classifies the elevation and access requirements of applying a template
without touching the system, so callers can warn users before a run starts.

- registry locators rooted at a machine-scope hive (HKLM, HKU, HKCR, HKCC)
  require admin and add the hive name as an access class
- file locators under a protected system root require admin and add that
  root as an access class
- scheduled tasks under the built-in ``\\Microsoft\\Windows`` folder require
  admin and add ``TaskScheduler`` as an access class
"""

import logging
import os
from dataclasses import dataclass
from typing import Any, Dict, FrozenSet, Iterable, List, Optional, Tuple

from .locator import FILE, REGISTRY, SCHEDULED_TASK, Locator, LocatorNormalizer
from .templates.models import ResourceDescriptor, Template

logger = logging.getLogger(__name__)

MACHINE_HIVES: FrozenSet[str] = frozenset({"HKLM", "HKU", "HKCR", "HKCC"})

DEFAULT_PROTECTED_ROOTS: Tuple[str, ...] = (
    "C:\\Windows",
    "C:\\Program Files",
    "C:\\Program Files (x86)",
    "C:\\ProgramData",
    "/etc",
    "/usr",
    "/bin",
    "/sbin",
    "/boot",
    "/lib",
    "/opt",
    "/var/lib",
)

SYSTEM_TASK_FOLDER = "Microsoft/Windows"
TASK_SCHEDULER_CLASS = "TaskScheduler"


@dataclass(frozen=True)
class PrivilegeRequirement:
    """Elevation/access requirements derived from a resolved template."""

    requires_admin: bool
    access_classes: FrozenSet[str]
    reasons: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "requires_admin": self.requires_admin,
            "access_classes": sorted(self.access_classes),
            "reasons": list(self.reasons),
        }


class PrivilegeAnalyzer:
    """Pure classifier; safe to call repeatedly and speculatively."""

    def __init__(
        self,
        protected_roots: Optional[Iterable[str]] = None,
        normalizer: Optional[LocatorNormalizer] = None,
    ):
        self.normalizer = normalizer or LocatorNormalizer(expand_environment=False)
        roots = DEFAULT_PROTECTED_ROOTS if protected_roots is None else tuple(protected_roots)
        self.protected_roots: List[Tuple[str, Locator]] = [
            (root, self.normalizer.normalize(root, FILE)) for root in roots
        ]
        self._system_tasks = self.normalizer.normalize(SYSTEM_TASK_FOLDER, SCHEDULED_TASK)

    def analyze(self, template: Template) -> PrivilegeRequirement:
        """
        Classify the access requirements of applying ``template``.

        Args:
            template: Resolved template

        Returns:
            PrivilegeRequirement with the union over all descriptors
        """
        classes = set()
        reasons = []
        for descriptor in template.descriptors():
            access_class = self.classify(descriptor)
            if access_class:
                classes.add(access_class)
                reasons.append(f"{descriptor.kind} {descriptor.label} requires {access_class}")
        return PrivilegeRequirement(
            requires_admin=bool(classes),
            access_classes=frozenset(classes),
            reasons=tuple(reasons),
        )

    def classify(self, descriptor: ResourceDescriptor) -> Optional[str]:
        """Return the access class ``descriptor`` needs, or None for user scope."""
        locator = descriptor.locator or self.normalizer.normalize(descriptor.path, descriptor.kind)
        if locator.kind == REGISTRY:
            return locator.hive if locator.hive in MACHINE_HIVES else None
        if locator.kind == FILE:
            for label, root in self.protected_roots:
                if locator.is_within(root):
                    return label
            return None
        if locator.kind == SCHEDULED_TASK and locator.is_within(self._system_tasks):
            return TASK_SCHEDULER_CLASS
        return None


def is_elevated() -> bool:
    """True if the current process runs with administrative rights."""
    if os.name == "nt":
        import ctypes

        try:
            return bool(ctypes.windll.shell32.IsUserAnAdmin())
        except (AttributeError, OSError):
            return False
    return hasattr(os, "geteuid") and os.geteuid() == 0
