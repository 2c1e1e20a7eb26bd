"""Registry storage backends.

``WindowsRegistryBackend`` talks to the live registry through ``winreg``.
``FileRegistryBackend`` keeps the same hierarchy in a directory tree (one
``values.json`` per key), which is what non-Windows hosts and the test
suite use. Both expose the same small key/value interface to the registry
provider.
"""

import base64
import json
import logging
import os
import tempfile
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any, Dict, Optional

from ..exceptions import ConfigError
from ..locator import Locator
from ..templates.models import FieldType

logger = logging.getLogger(__name__)

VALUES_FILE = "values.json"


class RegistryValueType(str, Enum):
    """Registry value data types."""

    REG_SZ = "REG_SZ"
    REG_EXPAND_SZ = "REG_EXPAND_SZ"
    REG_DWORD = "REG_DWORD"
    REG_QWORD = "REG_QWORD"
    REG_BINARY = "REG_BINARY"
    REG_MULTI_SZ = "REG_MULTI_SZ"


FIELD_TYPE_FOR_VALUE_TYPE: Dict[RegistryValueType, FieldType] = {
    RegistryValueType.REG_SZ: FieldType.STRING,
    RegistryValueType.REG_EXPAND_SZ: FieldType.STRING,
    RegistryValueType.REG_DWORD: FieldType.INTEGER,
    RegistryValueType.REG_QWORD: FieldType.INTEGER,
    RegistryValueType.REG_BINARY: FieldType.BINARY,
    RegistryValueType.REG_MULTI_SZ: FieldType.LIST,
}


def value_type_for(value: Any, recorded: Optional[str] = None) -> RegistryValueType:
    """Pick the registry type for ``value``, preferring the recorded one."""
    if recorded:
        return RegistryValueType(recorded)
    if isinstance(value, bool):
        return RegistryValueType.REG_DWORD
    if isinstance(value, int):
        return RegistryValueType.REG_DWORD if 0 <= value <= 0xFFFFFFFF else RegistryValueType.REG_QWORD
    if isinstance(value, (bytes, bytearray)):
        return RegistryValueType.REG_BINARY
    if isinstance(value, (list, tuple)):
        return RegistryValueType.REG_MULTI_SZ
    return RegistryValueType.REG_SZ


@dataclass(frozen=True)
class RegistryValue:
    """One named value of a registry key."""

    name: str
    data: Any
    type: RegistryValueType

    @classmethod
    def of(cls, name: str, data: Any, recorded_type: Optional[str] = None) -> "RegistryValue":
        value_type = value_type_for(data, recorded_type)
        if isinstance(data, bool):
            data = int(data)
        if value_type is RegistryValueType.REG_MULTI_SZ:
            data = [str(item) for item in data]
        return cls(name=name, data=data, type=value_type)


class RegistryBackend(ABC):
    """Key/value access to a registry hierarchy addressed by locators."""

    @abstractmethod
    def read_values(self, key: Locator) -> Optional[Dict[str, RegistryValue]]:
        """Return every value of ``key``, or None if the key does not exist."""
        pass

    @abstractmethod
    def create_key(self, key: Locator) -> bool:
        """Create ``key`` and missing parents. Returns True if it was created."""
        pass

    @abstractmethod
    def delete_key(self, key: Locator) -> None:
        """Delete an empty key created by ``create_key``."""
        pass

    @abstractmethod
    def write_value(self, key: Locator, value: RegistryValue) -> None:
        pass

    @abstractmethod
    def delete_value(self, key: Locator, name: str) -> None:
        pass


def find_value(values: Dict[str, RegistryValue], name: str) -> Optional[RegistryValue]:
    """Case-insensitive value lookup, as the registry itself does."""
    if name in values:
        return values[name]
    folded = name.casefold()
    for candidate, value in values.items():
        if candidate.casefold() == folded:
            return value
    return None


class FileRegistryBackend(RegistryBackend):
    """Registry hierarchy stored under a directory.

    ``HKCU\\Software\\Foo`` lives in ``<root>/hkcu/software/foo/values.json``;
    directory names are case-folded so lookups are case-insensitive.
    """

    def __init__(self, root: Path):
        self.root = Path(root)

    def _key_dir(self, key: Locator) -> Path:
        return self.root.joinpath(*(segment.casefold() for segment in key.segments))

    def _values_path(self, key: Locator) -> Path:
        return self._key_dir(key) / VALUES_FILE

    def read_values(self, key: Locator) -> Optional[Dict[str, RegistryValue]]:
        directory = self._key_dir(key)
        if not directory.is_dir():
            return None
        path = directory / VALUES_FILE
        if not path.is_file():
            return {}
        with open(path, encoding="utf-8") as handle:
            raw = json.load(handle)
        values = {}
        for name, entry in raw.items():
            value_type = RegistryValueType(entry["type"])
            data = entry["data"]
            if value_type is RegistryValueType.REG_BINARY:
                data = base64.b64decode(data)
            values[name] = RegistryValue(name=name, data=data, type=value_type)
        return values

    def _write_all(self, key: Locator, values: Dict[str, RegistryValue]) -> None:
        directory = self._key_dir(key)
        directory.mkdir(parents=True, exist_ok=True)
        payload = {}
        for name, value in values.items():
            data = value.data
            if value.type is RegistryValueType.REG_BINARY:
                data = base64.b64encode(data).decode("ascii")
            payload[name] = {"type": value.type.value, "data": data}
        fd, tmp_name = tempfile.mkstemp(prefix=".values.", suffix=".tmp", dir=str(directory))
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                json.dump(payload, handle, indent=2, sort_keys=True)
            os.replace(tmp_name, directory / VALUES_FILE)
        except BaseException:
            if os.path.exists(tmp_name):
                os.unlink(tmp_name)
            raise

    def create_key(self, key: Locator) -> bool:
        directory = self._key_dir(key)
        if directory.is_dir():
            return False
        directory.mkdir(parents=True)
        return True

    def delete_key(self, key: Locator) -> None:
        directory = self._key_dir(key)
        values = directory / VALUES_FILE
        if values.is_file():
            values.unlink()
        directory.rmdir()

    def write_value(self, key: Locator, value: RegistryValue) -> None:
        values = self.read_values(key) or {}
        existing = find_value(values, value.name)
        if existing is not None:
            del values[existing.name]
        values[value.name] = value
        self._write_all(key, values)

    def delete_value(self, key: Locator, name: str) -> None:
        values = self.read_values(key) or {}
        existing = find_value(values, name)
        if existing is None:
            return
        del values[existing.name]
        self._write_all(key, values)


class WindowsRegistryBackend(RegistryBackend):
    """Live registry access through the standard library ``winreg`` module."""

    def __init__(self):
        import winreg

        self._winreg = winreg
        self._hives = {
            "HKLM": winreg.HKEY_LOCAL_MACHINE,
            "HKCU": winreg.HKEY_CURRENT_USER,
            "HKCR": winreg.HKEY_CLASSES_ROOT,
            "HKU": winreg.HKEY_USERS,
            "HKCC": winreg.HKEY_CURRENT_CONFIG,
        }
        self._types = {
            RegistryValueType.REG_SZ: winreg.REG_SZ,
            RegistryValueType.REG_EXPAND_SZ: winreg.REG_EXPAND_SZ,
            RegistryValueType.REG_DWORD: winreg.REG_DWORD,
            RegistryValueType.REG_QWORD: winreg.REG_QWORD,
            RegistryValueType.REG_BINARY: winreg.REG_BINARY,
            RegistryValueType.REG_MULTI_SZ: winreg.REG_MULTI_SZ,
        }
        self._names = {code: name for name, code in self._types.items()}

    def _split(self, key: Locator):
        return self._hives[key.hive], "\\".join(key.segments[1:])

    def read_values(self, key: Locator) -> Optional[Dict[str, RegistryValue]]:
        hive, subkey = self._split(key)
        try:
            handle = self._winreg.OpenKey(hive, subkey, 0, self._winreg.KEY_READ)
        except FileNotFoundError:
            return None
        values: Dict[str, RegistryValue] = {}
        with handle:
            index = 0
            while True:
                try:
                    name, data, code = self._winreg.EnumValue(handle, index)
                except OSError:
                    break
                index += 1
                value_type = self._names.get(code)
                if value_type is None:
                    logger.debug(f"Skipping value '{name}' of {key} with unsupported type {code}")
                    continue
                values[name] = RegistryValue(name=name, data=data, type=value_type)
        return values

    def create_key(self, key: Locator) -> bool:
        if self.read_values(key) is not None:
            return False
        hive, subkey = self._split(key)
        self._winreg.CreateKeyEx(hive, subkey, 0, self._winreg.KEY_WRITE).Close()
        return True

    def delete_key(self, key: Locator) -> None:
        hive, subkey = self._split(key)
        self._winreg.DeleteKey(hive, subkey)

    def write_value(self, key: Locator, value: RegistryValue) -> None:
        hive, subkey = self._split(key)
        with self._winreg.CreateKeyEx(hive, subkey, 0, self._winreg.KEY_SET_VALUE) as handle:
            self._winreg.SetValueEx(handle, value.name, 0, self._types[value.type], value.data)

    def delete_value(self, key: Locator, name: str) -> None:
        hive, subkey = self._split(key)
        with self._winreg.OpenKey(hive, subkey, 0, self._winreg.KEY_SET_VALUE) as handle:
            try:
                self._winreg.DeleteValue(handle, name)
            except FileNotFoundError:
                pass


def create_backend(backend: str = "auto", root: Optional[Path] = None) -> RegistryBackend:
    """
    Build the registry backend named in settings.

    Args:
        backend: ``auto``, ``windows`` or ``file``
        root: Directory for the file backend

    Raises:
        ConfigError: For an unknown backend, ``windows`` off Windows, or a
            file backend without a root
    """
    if backend == "auto":
        backend = "windows" if os.name == "nt" and root is None else "file"
    if backend == "windows":
        if os.name != "nt":
            raise ConfigError(
                "The windows registry backend is only available on Windows",
                recovery_suggestion="Set registry.backend to 'file' and registry.root",
            )
        return WindowsRegistryBackend()
    if backend == "file":
        if root is None:
            raise ConfigError(
                "The file registry backend needs a root directory",
                recovery_suggestion="Set REGISTRY_ROOT or registry.root in the settings file",
            )
        return FileRegistryBackend(Path(root))
    raise ConfigError(f"Unknown registry backend '{backend}'")
