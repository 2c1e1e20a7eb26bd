"""Snapshot records and the directory that stores them.

Philosophy:
- One JSON document per (kind, locator digest), named deterministically
- Complete-or-absent writes: temp file in the same directory, fsync, rename
- Records are never modified by apply, so restores are repeatable

Public API:
    StateRecord: Persisted snapshot of one resource descriptor
    StateStore: Reads and writes records under a state directory
"""

import json
import logging
import os
import socket
import tempfile
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Iterator, List, Optional

from .exceptions import ProviderError
from .locator import Locator

logger = logging.getLogger(__name__)

FORMAT_VERSION = 1
RECORD_SUFFIX = ".json"


def utc_now() -> str:
    return datetime.now(timezone.utc).isoformat()


def record_file_name(locator: Locator) -> str:
    return f"{locator.kind}-{locator.digest}{RECORD_SUFFIX}"


@dataclass
class StateRecord:
    """Captured values of one descriptor at one point in time.

    ``fields`` holds JSON-safe values: binary values are base64 text and
    encrypted values are ciphertext blobs (see ``field_is_encrypted``).
    """

    kind: str
    locator: str
    locator_key: str
    fields: Dict[str, Any] = field(default_factory=dict)
    field_types: Dict[str, str] = field(default_factory=dict)
    field_is_encrypted: Dict[str, bool] = field(default_factory=dict)
    attributes_snapshot: Optional[Dict[str, Any]] = None
    present: bool = True
    captured_at: str = field(default_factory=utc_now)
    machine_name: str = field(default_factory=socket.gethostname)
    format_version: int = FORMAT_VERSION

    @classmethod
    def absent(cls, locator: Locator, machine_name: Optional[str] = None) -> "StateRecord":
        """Record for a live resource that did not exist at capture time."""
        record = cls(kind=locator.kind, locator=str(locator), locator_key=locator.key, present=False)
        if machine_name:
            record.machine_name = machine_name
        return record

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for serialization."""
        return {
            "format_version": self.format_version,
            "kind": self.kind,
            "locator": self.locator,
            "locator_key": self.locator_key,
            "captured_at": self.captured_at,
            "machine_name": self.machine_name,
            "present": self.present,
            "fields": self.fields,
            "field_types": self.field_types,
            "field_is_encrypted": self.field_is_encrypted,
            "attributes_snapshot": self.attributes_snapshot,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "StateRecord":
        if not isinstance(data, dict):
            raise ValueError("state record must be a JSON object")
        version = data.get("format_version", FORMAT_VERSION)
        if version != FORMAT_VERSION:
            raise ValueError(f"unsupported state record format_version {version!r}")
        return cls(
            kind=data["kind"],
            locator=data["locator"],
            locator_key=data["locator_key"],
            fields=dict(data.get("fields") or {}),
            field_types=dict(data.get("field_types") or {}),
            field_is_encrypted=dict(data.get("field_is_encrypted") or {}),
            attributes_snapshot=data.get("attributes_snapshot"),
            present=bool(data.get("present", True)),
            captured_at=data.get("captured_at") or utc_now(),
            machine_name=data.get("machine_name") or "",
            format_version=version,
        )


class StateStore:
    """State records below one state directory."""

    def __init__(self, directory: Path):
        self.directory = Path(directory)

    def path_for(self, locator: Locator) -> Path:
        return self.directory / record_file_name(locator)

    def exists(self, locator: Locator) -> bool:
        return self.path_for(locator).is_file()

    def write(self, record: StateRecord, locator: Locator) -> Path:
        """
        Persist ``record`` atomically.

        Returns:
            Path of the written record
        """
        target = self.path_for(locator)
        self.directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(
            prefix=f".{target.stem}.", suffix=".tmp", dir=str(self.directory)
        )
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(record.to_dict(), handle, indent=2, sort_keys=True)
                handle.flush()
                os.fsync(handle.fileno())
            os.replace(tmp_name, target)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise
        logger.debug(f"Wrote state record {target.name} for {record.locator}")
        return target

    def read(self, locator: Locator) -> Optional[StateRecord]:
        """Return the record for ``locator``, or None if none was captured.

        Raises:
            ProviderError: If the record exists but cannot be parsed
        """
        path = self.path_for(locator)
        if not path.is_file():
            return None
        return self._load(path, locator.kind, str(locator))

    def list_records(self) -> List[StateRecord]:
        return list(self.iter_records())

    def iter_records(self) -> Iterator[StateRecord]:
        if not self.directory.is_dir():
            return
        for path in sorted(self.directory.glob(f"*{RECORD_SUFFIX}")):
            try:
                yield self._load(path)
            except ProviderError as e:
                logger.warning(f"Skipping unreadable state record {path.name}: {e.message}")

    @staticmethod
    def _load(path: Path, kind: Optional[str] = None, locator: Optional[str] = None) -> StateRecord:
        try:
            with open(path, encoding="utf-8") as handle:
                return StateRecord.from_dict(json.load(handle))
        except (OSError, ValueError, KeyError, TypeError) as e:
            raise ProviderError(
                f"Cannot read state record {path.name}: {e}",
                kind=kind,
                locator=locator,
                cause=e,
                error_code="STATE_RECORD_CORRUPT",
            ) from e
