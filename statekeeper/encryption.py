"""Field encryption for snapshot records.

Philosophy:
- Key material is derived lazily, once per context, and cached in memory
- Key sources are pluggable (passphrase, machine-bound secret)
- Every field type round-trips exactly: strings, integers, booleans,
  binary blobs and lists
- Foreign, tampered or non-ciphertext input always raises DecryptionError

Public API:
    KeySource / PassphraseKeySource / MachineKeySource: secret providers
    EncryptionContext: lazily materialized, lock-guarded key cache
    EncryptionService: protect/unprotect/clear_cache
    get_default_context: process-wide context for callers that do not inject one
"""

import base64
import getpass
import json
import logging
import os
import platform
import threading
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any, Optional

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from .exceptions import DecryptionError, EncryptionError

logger = logging.getLogger(__name__)

CIPHERTEXT_PREFIX = "statekeeper:v1:"
DEFAULT_SALT = "statekeeper-field-encryption-v1"
DEFAULT_ITERATIONS = 390_000


class KeySource(ABC):
    """Supplies the secret that key material is derived from."""

    @abstractmethod
    def secret(self) -> bytes:
        pass

    @property
    def description(self) -> str:
        return self.__class__.__name__


class PassphraseKeySource(KeySource):
    """Derives keys from a passphrase supplied at startup."""

    def __init__(self, passphrase: str):
        if not passphrase:
            raise EncryptionError("Encryption passphrase cannot be empty")
        self._passphrase = passphrase

    def secret(self) -> bytes:
        return self._passphrase.encode("utf-8")

    def __repr__(self) -> str:
        return "PassphraseKeySource(passphrase='***REDACTED***')"


class MachineKeySource(KeySource):
    """Derives keys from identifiers bound to this machine and user.

    Snapshots protected with this source can only be restored on the same
    machine by the same user.
    """

    def secret(self) -> bytes:
        parts = [platform.node(), _current_user(), _machine_id()]
        return "|".join(parts).encode("utf-8")


def _current_user() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return str(os.getuid()) if hasattr(os, "getuid") else "unknown"


def _machine_id() -> str:
    if os.name == "nt":
        import winreg

        try:
            with winreg.OpenKey(
                winreg.HKEY_LOCAL_MACHINE, r"SOFTWARE\Microsoft\Cryptography"
            ) as key:
                value, _ = winreg.QueryValueEx(key, "MachineGuid")
                return str(value)
        except OSError:
            return ""
    for candidate in ("/etc/machine-id", "/var/lib/dbus/machine-id"):
        path = Path(candidate)
        if path.exists():
            try:
                return path.read_text(encoding="utf-8").strip()
            except OSError:
                continue
    return ""


class EncryptionContext:
    """Process-wide key cache with lazy, mutex-guarded materialization.

    The first ``fernet()`` call derives the key; later calls read the cached
    value without locking. ``clear()`` wipes the cached key so the next use
    derives it again.
    """

    def __init__(
        self,
        key_source: Optional[KeySource] = None,
        salt: str = DEFAULT_SALT,
        iterations: int = DEFAULT_ITERATIONS,
    ):
        if iterations < 1:
            raise EncryptionError("Key derivation iterations must be at least 1")
        self.key_source = key_source or MachineKeySource()
        self.salt = salt.encode("utf-8")
        self.iterations = iterations
        self._lock = threading.Lock()
        self._key: Optional[bytearray] = None
        self._fernet: Optional[Fernet] = None

    @property
    def is_materialized(self) -> bool:
        return self._fernet is not None

    def fernet(self) -> Fernet:
        cached = self._fernet
        if cached is not None:
            return cached
        with self._lock:
            if self._fernet is None:
                self._key = bytearray(self._derive())
                self._fernet = Fernet(base64.urlsafe_b64encode(bytes(self._key)))
                logger.debug(
                    f"Derived field encryption key from {self.key_source.description}"
                )
            return self._fernet

    def clear(self) -> None:
        with self._lock:
            if self._key is not None:
                for i in range(len(self._key)):
                    self._key[i] = 0
            self._key = None
            self._fernet = None

    def _derive(self) -> bytes:
        try:
            secret = self.key_source.secret()
        except OSError as e:
            raise EncryptionError(f"Cannot read key source: {e}", cause=e) from e
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=self.salt,
            iterations=self.iterations,
        )
        return kdf.derive(secret)


_default_context: Optional[EncryptionContext] = None
_default_lock = threading.Lock()


def get_default_context() -> EncryptionContext:
    global _default_context
    with _default_lock:
        if _default_context is None:
            _default_context = EncryptionContext()
        return _default_context


def set_default_context(context: Optional[EncryptionContext]) -> None:
    global _default_context
    with _default_lock:
        _default_context = context


def _encode_value(value: Any) -> Any:
    if isinstance(value, (bytes, bytearray)):
        return {"__bytes__": base64.b64encode(bytes(value)).decode("ascii")}
    if isinstance(value, (list, tuple)):
        return [_encode_value(v) for v in value]
    if isinstance(value, dict):
        return {"__map__": {str(k): _encode_value(v) for k, v in value.items()}}
    if value is None or isinstance(value, (str, int, float, bool)):
        return value
    raise EncryptionError(f"Cannot protect value of type {type(value).__name__}")


def _decode_value(value: Any) -> Any:
    if isinstance(value, dict) and set(value) == {"__bytes__"}:
        return base64.b64decode(value["__bytes__"])
    if isinstance(value, dict) and set(value) == {"__map__"}:
        return {k: _decode_value(v) for k, v in value["__map__"].items()}
    if isinstance(value, list):
        return [_decode_value(v) for v in value]
    return value


class EncryptionService:
    """Protects and unprotects individual field values."""

    def __init__(self, context: Optional[EncryptionContext] = None):
        self.context = context or get_default_context()

    @staticmethod
    def is_protected(blob: Any) -> bool:
        return isinstance(blob, str) and blob.startswith(CIPHERTEXT_PREFIX)

    def protect(self, value: Any) -> str:
        """Encrypt ``value`` and return a text ciphertext blob."""
        payload = json.dumps({"v": _encode_value(value)}, separators=(",", ":"))
        token = self.context.fernet().encrypt(payload.encode("utf-8"))
        return CIPHERTEXT_PREFIX + token.decode("ascii")

    def unprotect(self, blob: Any, field: Optional[str] = None) -> Any:
        """Decrypt a blob produced by ``protect``.

        Raises:
            DecryptionError: If the blob is not ciphertext, was tampered with,
                or was produced with different key material.
        """
        if not self.is_protected(blob):
            raise DecryptionError("Value is not a statekeeper ciphertext blob", field=field)
        token = blob[len(CIPHERTEXT_PREFIX) :].encode("ascii", errors="replace")
        try:
            payload = self.context.fernet().decrypt(token)
        except InvalidToken as e:
            raise DecryptionError(
                "Ciphertext was tampered with or produced by a different key",
                field=field,
                cause=e,
            ) from e
        try:
            data = json.loads(payload.decode("utf-8"))
            return _decode_value(data["v"])
        except (ValueError, KeyError, TypeError) as e:
            raise DecryptionError("Decrypted payload is malformed", field=field, cause=e) from e

    def clear_cache(self) -> None:
        self.context.clear()
