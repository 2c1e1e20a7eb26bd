"""File and directory provider.

Captures file content as a binary field, or a whole directory as a gzip tar
archive that leaves out entries matching the descriptor's ``exclude_patterns``.
Depending on the policy it also records access/modification times, mode and
ownership, and symlink targets. Excluded entries of a live directory survive
a restore.

Apply never writes into the target in place: new content is staged beside
the target, gets its attributes set, and is renamed over it. Directories are
swapped with a rollback copy that is restored if the swap fails.
"""

import fnmatch
import io
import logging
import os
import shutil
import stat
import tarfile
import tempfile
from pathlib import Path
from typing import Any, Dict, Optional, Sequence

from ..exceptions import ApplyFailedError, CaptureFailedError
from ..locator import FILE, Locator
from ..state_store import StateRecord
from ..templates.models import FieldType, FileDescriptor, ResourceDescriptor
from .base import ApplyOutcome, LiveState, Provider

logger = logging.getLogger(__name__)

CONTENT_FIELD = "content"


def is_excluded(relative: str, patterns: Sequence[str]) -> bool:
    """True if ``relative`` or its base name matches one of ``patterns``.

    Matching is case-insensitive and treats backslashes as slashes.
    """
    name = relative.replace("\\", "/").casefold()
    base = name.rsplit("/", 1)[-1]
    for pattern in patterns:
        folded = pattern.replace("\\", "/").casefold()
        if fnmatch.fnmatchcase(name, folded) or fnmatch.fnmatchcase(base, folded):
            return True
    return False


def archive_directory(path: Path, exclude_patterns: Sequence[str] = ()) -> bytes:
    """Pack the contents of ``path`` into a gzip tar archive.

    Entries matching ``exclude_patterns`` are left out, together with
    everything below an excluded directory.
    """

    def keep(info: tarfile.TarInfo) -> Optional[tarfile.TarInfo]:
        return None if is_excluded(info.name, exclude_patterns) else info

    buffer = io.BytesIO()
    with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
        for child in sorted(path.iterdir()):
            archive.add(str(child), arcname=child.name, filter=keep)
    return buffer.getvalue()


def carry_excluded(current: Path, staged: Path, exclude_patterns: Sequence[str]) -> None:
    """Copy excluded entries of ``current`` into ``staged`` where it has none."""
    for root, dirs, files in os.walk(current):
        relative_root = Path(root).relative_to(current)
        for name in list(dirs) + files:
            relative = (relative_root / name).as_posix()
            if not is_excluded(relative, exclude_patterns):
                continue
            if name in dirs:
                dirs.remove(name)
            target = staged / relative
            if os.path.lexists(target):
                continue
            target.parent.mkdir(parents=True, exist_ok=True)
            source = Path(root) / name
            if source.is_dir() and not source.is_symlink():
                shutil.copytree(source, target, symlinks=True)
            else:
                shutil.copy2(source, target, follow_symlinks=False)


def extract_archive(data: bytes, destination: Path) -> None:
    """Unpack an archive made by ``archive_directory`` into ``destination``.

    Raises:
        ValueError: If a member would land outside ``destination``.
    """
    with tarfile.open(fileobj=io.BytesIO(data), mode="r:gz") as archive:
        members = archive.getmembers()
        for member in members:
            name = member.name.replace("\\", "/")
            if name.startswith("/") or ".." in name.split("/"):
                raise ValueError(f"archive member escapes the target directory: {member.name}")
        if hasattr(tarfile, "data_filter"):
            archive.extractall(str(destination), members=members, filter="tar")
        else:
            archive.extractall(str(destination), members=members)


class FileProvider(Provider):
    """Provider for ``file`` resources (files and directories)."""

    kind = FILE
    SUPPORTED_FIELDS = frozenset({CONTENT_FIELD})

    def read_live(self, descriptor: ResourceDescriptor, locator: Locator) -> Optional[LiveState]:
        path = Path(locator.native_path())
        if not os.path.lexists(path):
            return None

        policy = descriptor.policy
        attributes: Dict[str, Any] = {}
        content: Optional[bytes] = None

        if policy.preserve_links and path.is_symlink():
            attributes["link_target"] = os.readlink(path)
            info = path.lstat()
        else:
            info = path.stat()
            is_directory = stat.S_ISDIR(info.st_mode)
            expected = descriptor.type if isinstance(descriptor, FileDescriptor) else "file"
            if is_directory != (expected == "directory"):
                found = "directory" if is_directory else "file"
                raise CaptureFailedError(
                    f"Expected a {expected} at {locator}, found a {found}",
                    kind=self.kind,
                    locator=str(locator),
                )
            if is_directory:
                excluded = descriptor.exclude_patterns if isinstance(descriptor, FileDescriptor) else []
                content = archive_directory(path, excluded)
            else:
                content = path.read_bytes()

        if policy.preserve_attributes:
            attributes["atime"] = info.st_atime
            attributes["mtime"] = info.st_mtime
        if policy.preserve_permissions:
            attributes["mode"] = stat.S_IMODE(info.st_mode)
            attributes["uid"] = getattr(info, "st_uid", None)
            attributes["gid"] = getattr(info, "st_gid", None)

        return LiveState(
            values={CONTENT_FIELD: content},
            field_types={CONTENT_FIELD: FieldType.BINARY},
            attributes=attributes or None,
        )

    def write_live(
        self,
        descriptor: ResourceDescriptor,
        locator: Locator,
        values: Dict[str, Any],
        record: StateRecord,
    ) -> ApplyOutcome:
        path = Path(locator.native_path())
        attributes = record.attributes_snapshot or {}
        policy = descriptor.policy

        if policy.preserve_links and "link_target" in attributes:
            return self._apply_link(path, attributes["link_target"])

        content = values.get(CONTENT_FIELD)
        if content is None:
            return ApplyOutcome(changed=False, message="no content to apply")

        path.parent.mkdir(parents=True, exist_ok=True)
        if isinstance(descriptor, FileDescriptor) and descriptor.type == "directory":
            self._apply_directory(path, content, attributes, descriptor, locator)
            return ApplyOutcome(changed=True)

        changed = not path.is_file() or path.read_bytes() != content
        self._apply_file(path, content, attributes, descriptor)
        return ApplyOutcome(changed=changed)

    def _apply_file(
        self, path: Path, content: bytes, attributes: Dict[str, Any], descriptor: ResourceDescriptor
    ) -> None:
        fd, staged = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".staged", dir=str(path.parent))
        try:
            with os.fdopen(fd, "wb") as handle:
                handle.write(content)
                handle.flush()
                os.fsync(handle.fileno())
            self._restore_metadata(Path(staged), path, attributes, descriptor)
            os.replace(staged, path)
        except BaseException:
            if os.path.exists(staged):
                os.unlink(staged)
            raise

    def _apply_directory(
        self,
        path: Path,
        content: bytes,
        attributes: Dict[str, Any],
        descriptor: ResourceDescriptor,
        locator: Locator,
    ) -> None:
        staged = Path(tempfile.mkdtemp(prefix=f".{path.name}.", suffix=".staged", dir=str(path.parent)))
        rollback: Optional[Path] = None
        try:
            try:
                extract_archive(content, staged)
            except (tarfile.TarError, ValueError) as e:
                raise ApplyFailedError(
                    f"Recorded directory archive for {locator} is unusable: {e}",
                    kind=self.kind,
                    locator=str(locator),
                    cause=e,
                ) from e
            if isinstance(descriptor, FileDescriptor) and descriptor.exclude_patterns and path.is_dir():
                carry_excluded(path, staged, descriptor.exclude_patterns)
            self._restore_metadata(staged, path, attributes, descriptor)

            if os.path.lexists(path):
                rollback = path.parent / f".{path.name}.rollback-{os.getpid()}"
                os.rename(path, rollback)
            try:
                os.rename(staged, path)
            except OSError:
                if rollback is not None:
                    os.rename(rollback, path)
                    rollback = None
                raise
        finally:
            if staged.exists():
                shutil.rmtree(staged, ignore_errors=True)
        if rollback is not None:
            if rollback.is_dir() and not rollback.is_symlink():
                shutil.rmtree(rollback)
            else:
                rollback.unlink()

    @staticmethod
    def _apply_link(path: Path, target: str) -> ApplyOutcome:
        if path.is_symlink() and os.readlink(path) == target:
            return ApplyOutcome(changed=False)
        path.parent.mkdir(parents=True, exist_ok=True)
        staged = path.parent / f".{path.name}.link-{os.getpid()}"
        if os.path.lexists(staged):
            staged.unlink()
        os.symlink(target, staged)
        try:
            os.replace(staged, path)
        except OSError:
            staged.unlink()
            raise
        return ApplyOutcome(changed=True)

    @staticmethod
    def _restore_metadata(
        staged: Path, target: Path, attributes: Dict[str, Any], descriptor: ResourceDescriptor
    ) -> None:
        policy = descriptor.policy
        # Staging files are created private; keep the mode of what we replace
        if target.exists():
            os.chmod(staged, stat.S_IMODE(target.stat().st_mode))
        else:
            os.chmod(staged, 0o755 if staged.is_dir() else 0o644)
        if policy.preserve_permissions and attributes.get("mode") is not None:
            os.chmod(staged, attributes["mode"])
            uid, gid = attributes.get("uid"), attributes.get("gid")
            if uid is not None and gid is not None and hasattr(os, "chown"):
                if os.geteuid() == 0:
                    os.chown(staged, uid, gid)
                elif uid != os.geteuid():
                    logger.warning(
                        f"Not restoring ownership {uid}:{gid} of {staged.name} without root"
                    )
        if policy.preserve_attributes and attributes.get("mtime") is not None:
            os.utime(staged, (attributes.get("atime", attributes["mtime"]), attributes["mtime"]))
