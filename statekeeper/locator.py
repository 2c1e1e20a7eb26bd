"""
Locator normalization for resource addresses.

Canonicalizes heterogeneous resource addresses into one internal form:

- Filesystem paths: drive-letter paths, UNC paths (``\\\\host\\share\\...``),
  extended-length paths (``\\\\?\\C:\\...``, ``\\\\?\\UNC\\...``), POSIX paths,
  with environment variables expanded and ``.``/``..`` resolved lexically.
- Registry keys: ``HKCU:\\...``, ``HKEY_CURRENT_USER\\...``,
  ``Registry::HKEY_LOCAL_MACHINE\\...`` with either slash direction.
- Application inventories and scheduled tasks: slash separated names.

Two addresses that denote the same resource produce equal locators with the
same ``key`` and ``digest``, so state records stay stable across spellings.

Public API:
    Locator: Canonical, hashable resource address
    LocatorNormalizer: Configurable normalizer (drive map, env expansion)
    normalize_locator: Convenience function using a default normalizer
    register_kind: Add a normalizer for a new resource kind
"""

import hashlib
import os
import re
from dataclasses import dataclass
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from .exceptions import InvalidLocatorError

FILE = "file"
REGISTRY = "registry"
APPLICATION = "application"
SCHEDULED_TASK = "scheduled_task"

# Canonical short names for registry hives
HIVE_ALIASES: Dict[str, str] = {
    "HKLM": "HKLM",
    "HKEY_LOCAL_MACHINE": "HKLM",
    "HKCU": "HKCU",
    "HKEY_CURRENT_USER": "HKCU",
    "HKCR": "HKCR",
    "HKEY_CLASSES_ROOT": "HKCR",
    "HKU": "HKU",
    "HKEY_USERS": "HKU",
    "HKCC": "HKCC",
    "HKEY_CURRENT_CONFIG": "HKCC",
}

_INVALID_WINDOWS_CHARS = re.compile(r'[<>:"|?*\x00-\x1f]')
_DRIVE_RE = re.compile(r"^([A-Za-z]):(\\|$)")
_PERCENT_VAR = re.compile(r"%([A-Za-z_][A-Za-z0-9_()]*)%")
_PS_ENV_VAR = re.compile(r"\$env:([A-Za-z_][A-Za-z0-9_()]*)", re.IGNORECASE)
_BRACED_VAR = re.compile(r"\$\{([A-Za-z_][A-Za-z0-9_]*)\}")
_BARE_VAR = re.compile(r"\$([A-Za-z_][A-Za-z0-9_]*)")


@dataclass(frozen=True, eq=False)
class Locator:
    """Canonical address of a single resource instance within its kind.

    ``segments[0]`` is the root for file locators (``C:``, ``\\\\host\\share``
    or ``/``) and the hive for registry locators. Equality and hashing use
    ``key``, so case-folded locators compare equal regardless of the case
    they were written in.
    """

    kind: str
    segments: Tuple[str, ...]
    case_fold: bool

    @property
    def key(self) -> str:
        text = self._join("/")
        if self.case_fold:
            text = text.casefold()
        return f"{self.kind}:{text}"

    @property
    def digest(self) -> str:
        """Stable short hash of ``key`` used to name state records."""
        return hashlib.sha256(self.key.encode("utf-8")).hexdigest()[:24]

    @property
    def root(self) -> str:
        return self.segments[0] if self.segments else ""

    @property
    def hive(self) -> Optional[str]:
        return self.root if self.kind == REGISTRY else None

    @property
    def name(self) -> str:
        return self.segments[-1] if self.segments else ""

    def native_path(self) -> str:
        """Return the address in the native spelling of its kind."""
        if self.kind == REGISTRY:
            return "\\".join(self.segments)
        if self.kind == SCHEDULED_TASK:
            return "\\" + "\\".join(self.segments)
        if self.kind == FILE:
            if self.root == "/":
                return self._join("/")
            return self._join("\\")
        return "/".join(self.segments)

    def is_within(self, other: "Locator") -> bool:
        """True if this locator equals ``other`` or lies beneath it."""
        if self.kind != other.kind or len(other.segments) > len(self.segments):
            return False
        fold = self.case_fold or other.case_fold
        for mine, theirs in zip(self.segments, other.segments):
            if fold:
                mine, theirs = mine.casefold(), theirs.casefold()
            if mine != theirs:
                return False
        return True

    def _join(self, sep: str) -> str:
        if not self.segments:
            return ""
        root, rest = self.segments[0], self.segments[1:]
        if self.kind == FILE:
            if root == "/":
                return "/" + "/".join(rest)
            root = root.replace("\\", sep)
            return root + sep + sep.join(rest)
        return sep.join(self.segments)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Locator):
            return NotImplemented
        return self.key == other.key

    def __hash__(self) -> int:
        return hash(self.key)

    def __str__(self) -> str:
        if self.kind == REGISTRY:
            return self.root + ":\\" + "\\".join(self.segments[1:])
        return self.native_path()

    def __repr__(self) -> str:
        return f"Locator({self.kind}, {str(self)!r})"


KindNormalizer = Callable[["LocatorNormalizer", str], Locator]
_KIND_NORMALIZERS: Dict[str, KindNormalizer] = {}


def register_kind(kind: str, normalizer: KindNormalizer) -> None:
    """Register the normalizer used for addresses of ``kind``."""
    _KIND_NORMALIZERS[kind] = normalizer


def registered_kinds() -> List[str]:
    return list(_KIND_NORMALIZERS)


class LocatorNormalizer:
    """Normalizes raw address strings into ``Locator`` objects.

    Args:
        drive_map: Mapping of drive letters to the UNC share they are mapped
            to, e.g. ``{"Z:": "\\\\\\\\fileserver\\\\team"}``. Paths on a mapped
            drive are rewritten to the UNC form.
        expand_environment: Expand ``%VAR%``, ``$env:VAR``, ``$VAR`` and ``~``.
        environ: Environment used for expansion (defaults to ``os.environ``).
    """

    def __init__(
        self,
        drive_map: Optional[Mapping[str, str]] = None,
        expand_environment: bool = True,
        environ: Optional[Mapping[str, str]] = None,
    ):
        self.expand_environment = expand_environment
        self._environ = environ
        self.drive_map: Dict[str, str] = {}
        for drive, target in (drive_map or {}).items():
            letter = drive.strip().rstrip(":\\/").upper()
            if len(letter) != 1 or not letter.isalpha():
                raise InvalidLocatorError(
                    f"Invalid drive mapping key: {drive!r}", address=drive, kind=FILE
                )
            self.drive_map[letter] = target

    def normalize(self, address: str, kind: str) -> Locator:
        """Normalize ``address`` as a locator of ``kind``.

        Raises:
            InvalidLocatorError: If the address is empty or malformed, or the
                kind has no registered normalizer.
        """
        if not isinstance(address, str) or not address.strip():
            raise InvalidLocatorError("Locator address is empty", address=address, kind=kind)
        if "\x00" in address:
            raise InvalidLocatorError(
                "Locator address contains a NUL character", address=address, kind=kind
            )
        normalizer = _KIND_NORMALIZERS.get(kind)
        if normalizer is None:
            raise InvalidLocatorError(
                f"Unknown resource kind '{kind}'", address=address, kind=kind
            )
        return normalizer(self, address.strip())

    def expand(self, address: str) -> str:
        """Expand environment variable references in ``address``."""
        if not self.expand_environment:
            return address
        env = self._environ if self._environ is not None else os.environ
        folded = {k.upper(): v for k, v in env.items()}

        def lookup(match: "re.Match[str]") -> str:
            return folded.get(match.group(1).upper(), match.group(0))

        def lookup_exact(match: "re.Match[str]") -> str:
            return env.get(match.group(1), match.group(0))

        expanded = _PERCENT_VAR.sub(lookup, address)
        expanded = _PS_ENV_VAR.sub(lookup, expanded)
        expanded = _BRACED_VAR.sub(lookup_exact, expanded)
        expanded = _BARE_VAR.sub(lookup_exact, expanded)
        if expanded == "~" or expanded.startswith(("~/", "~\\")):
            home = env.get("USERPROFILE") or env.get("HOME") or os.path.expanduser("~")
            expanded = home + expanded[1:]
        return expanded

    # -- file paths -------------------------------------------------------

    def _normalize_file(self, address: str) -> Locator:
        text = self.expand(address)
        backslashed = text.replace("/", "\\")

        if backslashed.lower().startswith("\\\\?\\unc\\"):
            return self._unc(backslashed[8:], address)
        if backslashed.startswith(("\\\\?\\", "\\\\.\\")):
            backslashed = backslashed[4:]
            text = backslashed
        elif backslashed.startswith("\\\\"):
            return self._unc(backslashed[2:], address)

        drive = _DRIVE_RE.match(backslashed)
        if drive:
            letter = drive.group(1).upper()
            rest = backslashed[2:]
            if letter in self.drive_map:
                target = self.drive_map[letter].replace("/", "\\").rstrip("\\")
                if not target.startswith("\\\\"):
                    raise InvalidLocatorError(
                        f"Drive mapping for {letter}: is not a UNC path",
                        address=address,
                        kind=FILE,
                    )
                return self._unc(target[2:] + rest, address)
            parts = self._resolve(rest.split("\\"), address, windows=True)
            return Locator(FILE, (f"{letter}:",) + parts, case_fold=True)

        if text.startswith("/"):
            parts = self._resolve(text.split("/"), address, windows=False)
            return Locator(FILE, ("/",) + parts, case_fold=False)

        if re.match(r"^[A-Za-z]:", backslashed):
            raise InvalidLocatorError(
                "Drive-relative paths are not supported", address=address, kind=FILE
            )
        raise InvalidLocatorError(
            "File locators must be absolute paths", address=address, kind=FILE
        )

    def _unc(self, remainder: str, address: str) -> Locator:
        parts = [p for p in remainder.split("\\") if p]
        if len(parts) < 2:
            raise InvalidLocatorError(
                "UNC paths need both a host and a share", address=address, kind=FILE
            )
        host, share = parts[0], parts[1]
        for piece in (host, share):
            if _INVALID_WINDOWS_CHARS.search(piece):
                raise InvalidLocatorError(
                    f"Invalid character in UNC component {piece!r}",
                    address=address,
                    kind=FILE,
                )
        rest = self._resolve(parts[2:], address, windows=True)
        return Locator(FILE, (f"\\\\{host}\\{share}",) + rest, case_fold=True)

    @staticmethod
    def _resolve(parts: List[str], address: str, windows: bool) -> Tuple[str, ...]:
        resolved: List[str] = []
        for part in parts:
            if part in ("", "."):
                continue
            if part == "..":
                if not resolved:
                    raise InvalidLocatorError(
                        "Path escapes its root", address=address, kind=FILE
                    )
                resolved.pop()
                continue
            if windows:
                if _INVALID_WINDOWS_CHARS.search(part):
                    raise InvalidLocatorError(
                        f"Invalid character in path component {part!r}",
                        address=address,
                        kind=FILE,
                    )
                # Windows ignores trailing dots and spaces in names
                part = part.rstrip(" .")
                if not part:
                    raise InvalidLocatorError(
                        "Path component consists only of dots or spaces",
                        address=address,
                        kind=FILE,
                    )
            resolved.append(part)
        return tuple(resolved)

    # -- registry keys ----------------------------------------------------

    def _normalize_registry(self, address: str) -> Locator:
        text = address
        if text.lower().startswith("registry::"):
            text = text[len("registry::") :]
        parts = [p.strip() for p in text.replace("/", "\\").split("\\")]
        parts = [p for p in parts if p]
        if not parts:
            raise InvalidLocatorError("Registry key is empty", address=address, kind=REGISTRY)
        hive = HIVE_ALIASES.get(parts[0].rstrip(":").upper())
        if hive is None:
            raise InvalidLocatorError(
                f"Unknown registry hive {parts[0]!r}", address=address, kind=REGISTRY
            )
        return Locator(REGISTRY, (hive,) + tuple(parts[1:]), case_fold=True)

    # -- named resources --------------------------------------------------

    def _normalize_named(self, address: str, kind: str) -> Locator:
        parts = [p.strip() for p in address.replace("\\", "/").split("/")]
        parts = [p for p in parts if p]
        if not parts:
            raise InvalidLocatorError("Locator name is empty", address=address, kind=kind)
        return Locator(kind, tuple(parts), case_fold=True)


register_kind(FILE, LocatorNormalizer._normalize_file)
register_kind(REGISTRY, LocatorNormalizer._normalize_registry)
register_kind(APPLICATION, lambda n, a: n._normalize_named(a, APPLICATION))
register_kind(SCHEDULED_TASK, lambda n, a: n._normalize_named(a, SCHEDULED_TASK))

_default_normalizer = LocatorNormalizer()


def normalize_locator(
    address: str, kind: str, normalizer: Optional[LocatorNormalizer] = None
) -> Locator:
    """Normalize ``address`` with ``normalizer`` or the default normalizer."""
    return (normalizer or _default_normalizer).normalize(address, kind)
