"""Base class for resource state providers.

A provider owns one resource kind and implements two symmetric operations:

1. ``capture``: read the live resource, protect encrypted fields and write
   one StateRecord into the state directory
2. ``apply``: read the matching StateRecord, unprotect encrypted fields and
   write the values back onto the live resource

The shared bookkeeping (absent resources, required descriptors, field typing,
encryption, record persistence) lives here; subclasses only implement
``read_live`` and ``write_live`` for their kind.
"""

import logging
import socket
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, ClassVar, Dict, FrozenSet, Optional

from ..encryption import EncryptionService
from ..exceptions import (
    ApplyFailedError,
    CaptureFailedError,
    DecryptionError,
    ResourceMissingError,
    StateRecordNotFoundError,
    UnsupportedFieldError,
    wrap_os_error,
)
from ..locator import Locator, LocatorNormalizer
from ..state_store import StateRecord, StateStore
from ..templates.models import (
    FieldType,
    ResourceDescriptor,
    coerce_field_value,
    decode_field_value,
    encode_field_value,
)

logger = logging.getLogger(__name__)


class ApplyStatus(str, Enum):
    """What apply did with one descriptor."""

    APPLIED = "applied"
    SKIPPED = "skipped"


@dataclass
class LiveState:
    """Typed values read from a live resource."""

    values: Dict[str, Any]
    field_types: Dict[str, FieldType]
    attributes: Optional[Dict[str, Any]] = None


@dataclass
class ApplyOutcome:
    """Result of applying one StateRecord to its live resource."""

    status: ApplyStatus = ApplyStatus.APPLIED
    changed: bool = False
    requires_reboot: bool = False
    field_errors: Dict[str, str] = field(default_factory=dict)
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return not self.field_errors

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "changed": self.changed,
            "requires_reboot": self.requires_reboot,
            "field_errors": dict(self.field_errors),
            "message": self.message,
        }


class Provider(ABC):
    """Abstract base class for per-kind capture/apply providers.

    Args:
        encryption: Service used for fields flagged ``encrypt``
        normalizer: Used when a descriptor has not been resolved yet
        machine_name: Stamped into every StateRecord
    """

    kind: ClassVar[str] = ""
    # None means any field name is accepted
    SUPPORTED_FIELDS: ClassVar[Optional[FrozenSet[str]]] = None

    def __init__(
        self,
        encryption: Optional[EncryptionService] = None,
        normalizer: Optional[LocatorNormalizer] = None,
        machine_name: Optional[str] = None,
    ):
        self._encryption = encryption
        self.normalizer = normalizer or LocatorNormalizer()
        self.machine_name = machine_name or socket.gethostname()

    @property
    def encryption(self) -> EncryptionService:
        # Created on first use so providers without encrypted fields never derive a key
        if self._encryption is None:
            self._encryption = EncryptionService()
        return self._encryption

    @abstractmethod
    def read_live(self, descriptor: ResourceDescriptor, locator: Locator) -> Optional[LiveState]:
        """Read the live resource.

        Returns:
            LiveState, or None if the resource does not exist

        Raises:
            ProviderError: If the resource exists but cannot be read
            OSError: Wrapped into CaptureFailedError by ``capture``
            ValueError, TypeError, KeyError: Likewise wrapped by ``capture``
        """
        pass

    @abstractmethod
    def write_live(
        self,
        descriptor: ResourceDescriptor,
        locator: Locator,
        values: Dict[str, Any],
        record: StateRecord,
    ) -> ApplyOutcome:
        """Write decoded ``values`` onto the live resource, all or nothing.

        ``values`` holds only the fields that decoded successfully.

        Raises:
            ProviderError: If the resource could not be updated
            OSError: Wrapped into ApplyFailedError by ``apply``
            ValueError, TypeError, KeyError: Likewise wrapped by ``apply``
        """
        pass

    def locator_of(self, descriptor: ResourceDescriptor) -> Locator:
        if descriptor.locator is not None:
            return descriptor.locator
        return self.normalizer.normalize(descriptor.path, self.kind)

    def declared_types(self, descriptor: ResourceDescriptor) -> Dict[str, FieldType]:
        return {name: spec.type for name, spec in descriptor.effective_fields().items()}

    def check_fields(self, descriptor: ResourceDescriptor, locator: Locator) -> None:
        if self.SUPPORTED_FIELDS is None:
            return
        for name in descriptor.fields:
            if name not in self.SUPPORTED_FIELDS:
                allowed = ", ".join(sorted(self.SUPPORTED_FIELDS))
                raise UnsupportedFieldError(
                    f"{self.kind} resources do not support field '{name}' (supported: {allowed})",
                    field=name,
                    kind=self.kind,
                    locator=str(locator),
                )

    # -- capture ----------------------------------------------------------

    def capture(self, descriptor: ResourceDescriptor, state_dir: Path) -> StateRecord:
        """
        Capture the live resource of ``descriptor`` into ``state_dir``.

        Returns:
            The StateRecord that was written

        Raises:
            ResourceMissingError: If the resource is absent and required
            ProviderError: If the resource cannot be read
        """
        locator = self.locator_of(descriptor)
        self.check_fields(descriptor, locator)
        try:
            live = self.read_live(descriptor, locator)
        except OSError as e:
            raise wrap_os_error(e, self.kind, str(locator)) from e
        except (ValueError, TypeError, KeyError) as e:
            raise CaptureFailedError(
                f"Unexpected data while reading {locator}: {e}",
                kind=self.kind,
                locator=str(locator),
                cause=e,
            ) from e

        if live is None:
            if descriptor.required:
                raise ResourceMissingError(
                    f"Required {self.kind} resource does not exist: {locator}",
                    kind=self.kind,
                    locator=str(locator),
                )
            logger.info(f"{self.kind} resource {locator} is absent; recording absence")
            record = StateRecord.absent(locator, machine_name=self.machine_name)
        else:
            record = self._build_record(descriptor, locator, live)

        StateStore(state_dir).write(record, locator)
        return record

    def _build_record(
        self, descriptor: ResourceDescriptor, locator: Locator, live: LiveState
    ) -> StateRecord:
        record = StateRecord(
            kind=self.kind,
            locator=str(locator),
            locator_key=locator.key,
            attributes_snapshot=live.attributes,
            machine_name=self.machine_name,
        )
        for name, value in live.values.items():
            field_type = live.field_types[name]
            if value is not None:
                try:
                    value = coerce_field_value(value, field_type)
                except TypeError as e:
                    raise CaptureFailedError(
                        f"Field '{name}' of {locator}: {e}",
                        kind=self.kind,
                        locator=str(locator),
                        context={"field": name},
                    ) from e
            encrypted = value is not None and descriptor.is_encrypted(name)
            if encrypted:
                record.fields[name] = self.encryption.protect(value)
            else:
                record.fields[name] = encode_field_value(value, field_type)
            record.field_types[name] = field_type.value
            record.field_is_encrypted[name] = encrypted
        return record

    # -- apply ------------------------------------------------------------

    def apply(self, descriptor: ResourceDescriptor, state_dir: Path) -> ApplyOutcome:
        """
        Apply the StateRecord of ``descriptor`` from ``state_dir``.

        Fields that fail to decrypt are reported in ``field_errors``; the
        remaining fields are still applied.

        Raises:
            StateRecordNotFoundError: If there is no record and the
                descriptor is required
            ProviderError: If the live resource could not be updated
        """
        locator = self.locator_of(descriptor)
        self.check_fields(descriptor, locator)
        record = StateStore(state_dir).read(locator)

        if record is None:
            if descriptor.required:
                raise StateRecordNotFoundError(
                    f"No state record for required {self.kind} resource {locator}",
                    kind=self.kind,
                    locator=str(locator),
                )
            return ApplyOutcome(status=ApplyStatus.SKIPPED, message="no state record")
        if not record.present:
            return ApplyOutcome(
                status=ApplyStatus.SKIPPED, message="resource was absent at capture time"
            )

        values, field_errors = self._decode_record(record)
        try:
            outcome = self.write_live(descriptor, locator, values, record)
        except OSError as e:
            raise wrap_os_error(e, self.kind, str(locator), applying=True) from e
        except (ValueError, TypeError, KeyError) as e:
            raise ApplyFailedError(
                f"Unexpected data while applying {locator}: {e}",
                kind=self.kind,
                locator=str(locator),
                cause=e,
            ) from e
        outcome.field_errors.update(field_errors)
        return outcome

    def _decode_record(self, record: StateRecord):
        values: Dict[str, Any] = {}
        errors: Dict[str, str] = {}
        for name, stored in record.fields.items():
            try:
                field_type = FieldType(record.field_types.get(name, FieldType.STRING.value))
                if record.field_is_encrypted.get(name):
                    values[name] = coerce_field_value(
                        self.encryption.unprotect(stored, field=name), field_type
                    )
                else:
                    values[name] = decode_field_value(stored, field_type)
            except DecryptionError as e:
                logger.warning(f"Cannot decrypt field '{name}' of {record.locator}: {e.message}")
                errors[name] = e.message
            except (TypeError, ValueError) as e:
                errors[name] = f"invalid recorded value: {e}"
        return values, errors
