"""
Tests for the file and directory provider.
"""

import base64
import io
import os
import stat
import tarfile

import pytest

from statekeeper.exceptions import (
    CaptureFailedError,
    ResourceMissingError,
    StateRecordNotFoundError,
    UnsupportedFieldError,
)
from statekeeper.providers.base import ApplyStatus
from statekeeper.providers.file_provider import (
    FileProvider,
    archive_directory,
    extract_archive,
    is_excluded,
)
from statekeeper.state_store import StateStore
from statekeeper.templates.models import FileDescriptor
from tests.helpers import make_encryption

posix_only = pytest.mark.skipif(os.name == "nt", reason="POSIX permissions and symlinks")


def _descriptor(path, **extra):
    return FileDescriptor.model_validate({"path": str(path), **extra})


@pytest.fixture
def provider(encryption):
    return FileProvider(encryption=encryption, machine_name="test-host")


class TestFileCapture:
    """Test cases for capturing files."""

    def test_capture_records_content(self, provider, tmp_path, state_dir):
        target = tmp_path / "settings.ini"
        target.write_bytes(b"[main]\nkey=value\n")

        record = provider.capture(_descriptor(target), state_dir)

        assert record.present is True
        assert record.field_types == {"content": "binary"}
        assert record.field_is_encrypted == {"content": False}
        assert record.machine_name == "test-host"
        stored = StateStore(state_dir).read(provider.locator_of(_descriptor(target)))
        assert stored.fields == record.fields

    def test_absent_file_recorded_as_absent(self, provider, tmp_path, state_dir):
        record = provider.capture(_descriptor(tmp_path / "missing.txt"), state_dir)
        assert record.present is False

    def test_absent_required_file_fails(self, provider, tmp_path, state_dir):
        with pytest.raises(ResourceMissingError):
            provider.capture(_descriptor(tmp_path / "missing.txt", required=True), state_dir)

    def test_directory_where_file_expected(self, provider, tmp_path, state_dir):
        (tmp_path / "folder").mkdir()
        with pytest.raises(CaptureFailedError, match="Expected a file"):
            provider.capture(_descriptor(tmp_path / "folder"), state_dir)

    def test_unsupported_field(self, provider, tmp_path, state_dir):
        descriptor = _descriptor(tmp_path / "x", fields={"owner": "string"})
        with pytest.raises(UnsupportedFieldError) as exc_info:
            provider.capture(descriptor, state_dir)
        assert exc_info.value.context["field"] == "owner"

    def test_encrypted_content_not_stored_in_clear(self, provider, tmp_path, state_dir):
        target = tmp_path / "token.txt"
        target.write_bytes(b"super-secret-token")

        record = provider.capture(_descriptor(target, encrypt=True), state_dir)

        assert record.field_is_encrypted == {"content": True}
        path = StateStore(state_dir).path_for(provider.locator_of(_descriptor(target)))
        assert b"super-secret-token" not in path.read_bytes()


class TestFileRestore:
    """Test cases for applying recorded files."""

    def test_restore_overwrites_changed_content(self, provider, tmp_path, state_dir):
        target = tmp_path / "settings.ini"
        target.write_bytes(b"original")
        descriptor = _descriptor(target)
        provider.capture(descriptor, state_dir)
        target.write_bytes(b"changed")

        outcome = provider.apply(descriptor, state_dir)

        assert outcome.status is ApplyStatus.APPLIED
        assert outcome.changed is True
        assert target.read_bytes() == b"original"
        assert sorted(p.name for p in tmp_path.iterdir()) == ["settings.ini", "state"]

    def test_restore_is_repeatable(self, provider, tmp_path, state_dir):
        target = tmp_path / "settings.ini"
        target.write_bytes(b"original")
        descriptor = _descriptor(target)
        provider.capture(descriptor, state_dir)

        provider.apply(descriptor, state_dir)
        second = provider.apply(descriptor, state_dir)

        assert second.changed is False
        assert target.read_bytes() == b"original"

    def test_restore_recreates_deleted_file(self, provider, tmp_path, state_dir):
        target = tmp_path / "nested" / "notes.txt"
        target.parent.mkdir()
        target.write_bytes(b"notes")
        descriptor = _descriptor(target)
        provider.capture(descriptor, state_dir)
        target.unlink()
        target.parent.rmdir()

        provider.apply(descriptor, state_dir)

        assert target.read_bytes() == b"notes"

    def test_absent_at_capture_is_skipped(self, provider, tmp_path, state_dir):
        target = tmp_path / "later.txt"
        descriptor = _descriptor(target)
        provider.capture(descriptor, state_dir)
        target.write_bytes(b"created after backup")

        outcome = provider.apply(descriptor, state_dir)

        assert outcome.status is ApplyStatus.SKIPPED
        assert target.read_bytes() == b"created after backup"

    def test_no_record(self, provider, tmp_path, state_dir):
        outcome = provider.apply(_descriptor(tmp_path / "x"), state_dir)
        assert outcome.status is ApplyStatus.SKIPPED
        assert outcome.message == "no state record"

    def test_no_record_for_required_descriptor(self, provider, tmp_path, state_dir):
        with pytest.raises(StateRecordNotFoundError):
            provider.apply(_descriptor(tmp_path / "x", required=True), state_dir)

    def test_encrypted_round_trip(self, provider, tmp_path, state_dir):
        target = tmp_path / "token.txt"
        target.write_bytes(b"secret")
        descriptor = _descriptor(target, fields={"content": {"type": "binary", "encrypt": True}})
        provider.capture(descriptor, state_dir)
        target.write_bytes(b"other")

        outcome = provider.apply(descriptor, state_dir)

        assert outcome.ok
        assert target.read_bytes() == b"secret"

    def test_wrong_key_reports_field_error(self, provider, tmp_path, state_dir):
        target = tmp_path / "token.txt"
        target.write_bytes(b"secret")
        descriptor = _descriptor(target, encrypt=True)
        provider.capture(descriptor, state_dir)
        target.write_bytes(b"current")
        stranger = FileProvider(encryption=make_encryption("someone else"))

        outcome = stranger.apply(descriptor, state_dir)

        assert not outcome.ok
        assert set(outcome.field_errors) == {"content"}
        assert target.read_bytes() == b"current"

    @posix_only
    def test_existing_mode_kept_without_permission_policy(self, provider, tmp_path, state_dir):
        target = tmp_path / "script.sh"
        target.write_bytes(b"#!/bin/sh\n")
        descriptor = _descriptor(target)
        provider.capture(descriptor, state_dir)
        target.write_bytes(b"changed")
        os.chmod(target, 0o750)

        provider.apply(descriptor, state_dir)

        assert stat.S_IMODE(target.stat().st_mode) == 0o750

    @posix_only
    def test_preserved_permissions_restored(self, provider, tmp_path, state_dir):
        target = tmp_path / "id_ed25519"
        target.write_bytes(b"key")
        os.chmod(target, 0o600)
        descriptor = _descriptor(target, policy={"preserve_permissions": True})
        provider.capture(descriptor, state_dir)
        os.chmod(target, 0o644)

        provider.apply(descriptor, state_dir)

        assert stat.S_IMODE(target.stat().st_mode) == 0o600

    def test_preserved_timestamps_restored(self, provider, tmp_path, state_dir):
        target = tmp_path / "old.txt"
        target.write_bytes(b"old")
        os.utime(target, (1_600_000_000, 1_600_000_000))
        descriptor = _descriptor(target, policy={"preserve_attributes": True})
        provider.capture(descriptor, state_dir)
        target.write_bytes(b"new")

        provider.apply(descriptor, state_dir)

        assert target.stat().st_mtime == pytest.approx(1_600_000_000)

    @posix_only
    def test_symlink_target_restored(self, provider, tmp_path, state_dir):
        (tmp_path / "real.conf").write_bytes(b"x")
        link = tmp_path / "current.conf"
        link.symlink_to("real.conf")
        descriptor = _descriptor(link, policy={"preserve_links": True})
        record = provider.capture(descriptor, state_dir)
        link.unlink()
        link.write_bytes(b"plain file now")

        provider.apply(descriptor, state_dir)

        assert record.attributes_snapshot["link_target"] == "real.conf"
        assert link.is_symlink()
        assert os.readlink(link) == "real.conf"


class TestDirectoryResources:
    """Test cases for directory capture and restore."""

    def test_directory_round_trip(self, provider, tmp_path, state_dir):
        root = tmp_path / "profile"
        (root / "sub").mkdir(parents=True)
        (root / "a.txt").write_bytes(b"a")
        (root / "sub" / "b.txt").write_bytes(b"b")
        descriptor = _descriptor(root, type="directory")
        provider.capture(descriptor, state_dir)

        (root / "a.txt").write_bytes(b"modified")
        (root / "extra.txt").write_bytes(b"extra")
        (root / "sub" / "b.txt").unlink()

        outcome = provider.apply(descriptor, state_dir)

        assert outcome.changed is True
        assert (root / "a.txt").read_bytes() == b"a"
        assert (root / "sub" / "b.txt").read_bytes() == b"b"
        assert not (root / "extra.txt").exists()
        assert sorted(p.name for p in tmp_path.iterdir()) == ["profile", "state"]

    def test_excluded_entries_not_captured_and_kept_on_restore(self, provider, tmp_path, state_dir):
        root = tmp_path / "onenote"
        (root / "cache").mkdir(parents=True)
        (root / "settings.xml").write_bytes(b"<settings/>")
        (root / "Notes.ONE").write_bytes(b"notebook")
        (root / "cache" / "blob.bin").write_bytes(b"cached")
        descriptor = _descriptor(root, type="directory", exclude_patterns=["*.one", "cache\\*"])
        record = provider.capture(descriptor, state_dir)

        (root / "settings.xml").write_bytes(b"<changed/>")
        (root / "Notes.ONE").write_bytes(b"newer notebook")
        provider.apply(descriptor, state_dir)

        extracted = tmp_path / "extracted"
        extracted.mkdir()
        extract_archive(base64.b64decode(record.fields["content"]), extracted)
        assert not (extracted / "Notes.ONE").exists()
        assert list((extracted / "cache").iterdir()) == []
        assert (root / "settings.xml").read_bytes() == b"<settings/>"
        assert (root / "Notes.ONE").read_bytes() == b"newer notebook"
        assert (root / "cache" / "blob.bin").read_bytes() == b"cached"

    def test_file_where_directory_expected(self, provider, tmp_path, state_dir):
        (tmp_path / "plain").write_bytes(b"x")
        with pytest.raises(CaptureFailedError, match="Expected a directory"):
            provider.capture(_descriptor(tmp_path / "plain", type="directory"), state_dir)


class TestArchives:
    """Test cases for the directory archive helpers."""

    def test_archive_and_extract(self, tmp_path):
        source = tmp_path / "src"
        source.mkdir()
        (source / "f.txt").write_text("hello")
        destination = tmp_path / "dst"
        destination.mkdir()

        extract_archive(archive_directory(source), destination)

        assert (destination / "f.txt").read_text() == "hello"

    def test_member_escaping_destination_rejected(self, tmp_path):
        buffer = io.BytesIO()
        with tarfile.open(fileobj=buffer, mode="w:gz") as archive:
            payload = b"evil"
            info = tarfile.TarInfo("../evil.txt")
            info.size = len(payload)
            archive.addfile(info, io.BytesIO(payload))

        with pytest.raises(ValueError, match="escapes"):
            extract_archive(buffer.getvalue(), tmp_path / "dst")
        assert not (tmp_path / "evil.txt").exists()

    def test_excluded_directory_is_skipped_whole(self, tmp_path):
        source = tmp_path / "src"
        (source / "logs" / "old").mkdir(parents=True)
        (source / "logs" / "old" / "a.log").write_text("x")
        (source / "keep.txt").write_text("keep")
        destination = tmp_path / "dst"
        destination.mkdir()

        extract_archive(archive_directory(source, ["logs"]), destination)

        assert sorted(p.name for p in destination.iterdir()) == ["keep.txt"]

    def test_exclusion_matching(self):
        assert is_excluded("cache/x.bin", ["cache\\*"])
        assert is_excluded("sub/Book.ONE", ["*.one"])
        assert not is_excluded("notes.txt", ["*.one", "cache/*"])
