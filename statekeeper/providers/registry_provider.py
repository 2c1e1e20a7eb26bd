"""Registry-key provider.

A registry descriptor addresses one key. With no declared fields every value
of the key is captured; declared fields name individual values. Subkeys are
not descended into. Original value types are recorded in
``attributes_snapshot["value_types"]`` and reused on apply. Applying a
capture-all record also deletes values that were not present at capture.
"""

import logging
from typing import Any, Dict, List, Optional, Tuple

from ..exceptions import ApplyFailedError
from ..locator import REGISTRY, Locator
from ..state_store import StateRecord
from ..templates.models import ResourceDescriptor
from .base import ApplyOutcome, LiveState, Provider
from .registry_backend import (
    FIELD_TYPE_FOR_VALUE_TYPE,
    RegistryBackend,
    RegistryValue,
    find_value,
)

logger = logging.getLogger(__name__)

# Keys whose changes only take effect after a restart
REBOOT_SENSITIVE_KEYS = (
    "HKLM\\SYSTEM\\CurrentControlSet\\Control\\Session Manager",
    "HKLM\\SYSTEM\\CurrentControlSet\\Control\\Terminal Server",
    "HKLM\\SYSTEM\\CurrentControlSet\\Control\\Lsa",
)


class RegistryProvider(Provider):
    """Provider for ``registry`` resources backed by a RegistryBackend."""

    kind = REGISTRY

    def __init__(self, backend: RegistryBackend, **kwargs):
        super().__init__(**kwargs)
        self.backend = backend
        self._reboot_keys = [self.normalizer.normalize(k, REGISTRY) for k in REBOOT_SENSITIVE_KEYS]

    def read_live(self, descriptor: ResourceDescriptor, locator: Locator) -> Optional[LiveState]:
        live = self.backend.read_values(locator)
        if live is None:
            return None

        values: Dict[str, Any] = {}
        field_types = {}
        value_types: Dict[str, str] = {}
        declared = self.declared_types(descriptor)
        if declared:
            for name, field_type in declared.items():
                value = find_value(live, name)
                values[name] = value.data if value is not None else None
                field_types[name] = field_type
                if value is not None:
                    value_types[name] = value.type.value
        else:
            for name, value in live.items():
                values[name] = value.data
                field_types[name] = FIELD_TYPE_FOR_VALUE_TYPE[value.type]
                value_types[name] = value.type.value

        return LiveState(values=values, field_types=field_types, attributes={"value_types": value_types})

    def write_live(
        self,
        descriptor: ResourceDescriptor,
        locator: Locator,
        values: Dict[str, Any],
        record: StateRecord,
    ) -> ApplyOutcome:
        recorded_types = (record.attributes_snapshot or {}).get("value_types", {})
        # Every value is built before the first write so a bad record touches nothing
        desired: Dict[str, Optional[RegistryValue]] = {}
        for name, data in values.items():
            if data is None:
                desired[name] = None
                continue
            try:
                desired[name] = RegistryValue.of(name, data, recorded_types.get(name))
            except (ValueError, TypeError) as e:
                raise ApplyFailedError(
                    f"Recorded value '{name}' of {locator} is invalid: {e}",
                    kind=self.kind,
                    locator=str(locator),
                    context={"field": name},
                    cause=e,
                ) from e

        current = self.backend.read_values(locator)
        created = False
        if current is None:
            created = self.backend.create_key(locator)
            current = {}

        # With no declared fields the record is the whole key; other live values are removed
        stale: List[RegistryValue] = []
        if not descriptor.fields:
            recorded = {name.casefold() for name in record.fields}
            stale = [value for name, value in current.items() if name.casefold() not in recorded]

        # (name, previous value or None) for every write, in order
        undo: List[Tuple[str, Optional[RegistryValue]]] = []
        try:
            for previous in stale:
                self.backend.delete_value(locator, previous.name)
                undo.append((previous.name, previous))
            for name, value in desired.items():
                previous = find_value(current, name)
                if value is None:
                    if previous is not None:
                        self.backend.delete_value(locator, previous.name)
                        undo.append((previous.name, previous))
                    continue
                if previous is not None and previous.type == value.type and previous.data == value.data:
                    continue
                self.backend.write_value(locator, value)
                undo.append((name, previous))
        except Exception as e:
            rolled_back = len(undo)
            self._rollback(locator, undo, created)
            raise ApplyFailedError(
                f"Failed to write registry key {locator}; {rolled_back} change(s) rolled back: {e}",
                kind=self.kind,
                locator=str(locator),
                cause=e,
            ) from e

        changed = bool(undo) or created
        return ApplyOutcome(
            changed=changed,
            requires_reboot=changed and self._needs_reboot(descriptor, locator),
        )

    def _rollback(
        self, locator: Locator, undo: List[Tuple[str, Optional[RegistryValue]]], created: bool
    ) -> None:
        try:
            for name, previous in reversed(undo):
                if previous is None:
                    self.backend.delete_value(locator, name)
                else:
                    self.backend.write_value(locator, previous)
            if created:
                self.backend.delete_key(locator)
        except OSError as e:
            logger.error(f"Rollback of registry key {locator} failed: {e}")

    def _needs_reboot(self, descriptor: ResourceDescriptor, locator: Locator) -> bool:
        if descriptor.policy.requires_reboot:
            return True
        return any(locator.is_within(key) for key in self._reboot_keys)
