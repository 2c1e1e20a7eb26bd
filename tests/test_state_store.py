"""
Tests for StateRecord persistence.
"""

import json

import pytest

from statekeeper.exceptions import ProviderError
from statekeeper.locator import FILE, REGISTRY, normalize_locator
from statekeeper.state_store import FORMAT_VERSION, StateRecord, StateStore, record_file_name


def _record(locator, **fields):
    return StateRecord(
        kind=locator.kind,
        locator=str(locator),
        locator_key=locator.key,
        fields=dict(fields),
        field_types={name: "string" for name in fields},
        field_is_encrypted={name: False for name in fields},
        machine_name="test-host",
    )


class TestStateStore:
    """Test cases for StateStore."""

    def test_write_then_read(self, state_dir):
        locator = normalize_locator("HKCU:\\Software\\Foo", REGISTRY)
        store = StateStore(state_dir)

        path = store.write(_record(locator, Theme="dark"), locator)
        loaded = store.read(locator)

        assert path.name == record_file_name(locator)
        assert path.name.startswith("registry-")
        assert loaded.fields == {"Theme": "dark"}
        assert loaded.machine_name == "test-host"
        assert loaded.format_version == FORMAT_VERSION

    def test_equivalent_spellings_share_a_record(self, state_dir):
        store = StateStore(state_dir)
        written = normalize_locator("HKCU:\\Software\\Foo", REGISTRY)
        store.write(_record(written, a="1"), written)

        assert store.exists(normalize_locator("HKEY_CURRENT_USER/software/FOO", REGISTRY))

    def test_read_missing_returns_none(self, state_dir):
        locator = normalize_locator("/etc/hosts", FILE)
        assert StateStore(state_dir).read(locator) is None

    def test_rewrite_replaces_record_without_temp_files(self, state_dir):
        locator = normalize_locator("/etc/hosts", FILE)
        store = StateStore(state_dir)
        store.write(_record(locator, v="one"), locator)
        store.write(_record(locator, v="two"), locator)

        assert store.read(locator).fields == {"v": "two"}
        assert [p.name for p in state_dir.iterdir()] == [record_file_name(locator)]

    def test_corrupt_record_raises(self, state_dir):
        locator = normalize_locator("/etc/hosts", FILE)
        store = StateStore(state_dir)
        state_dir.mkdir(parents=True)
        store.path_for(locator).write_text("{not json", encoding="utf-8")

        with pytest.raises(ProviderError) as exc_info:
            store.read(locator)

        assert exc_info.value.error_code == "STATE_RECORD_CORRUPT"

    def test_unknown_format_version_rejected(self, state_dir):
        locator = normalize_locator("/etc/hosts", FILE)
        store = StateStore(state_dir)
        data = _record(locator, v="x").to_dict()
        data["format_version"] = 99
        state_dir.mkdir(parents=True)
        store.path_for(locator).write_text(json.dumps(data), encoding="utf-8")

        with pytest.raises(ProviderError, match="format_version"):
            store.read(locator)

    def test_list_records_skips_unreadable(self, state_dir):
        store = StateStore(state_dir)
        good = normalize_locator("/etc/hosts", FILE)
        store.write(_record(good, v="x"), good)
        (state_dir / "file-broken.json").write_text("[]", encoding="utf-8")

        records = store.list_records()

        assert [r.locator for r in records] == ["/etc/hosts"]

    def test_list_records_of_missing_directory(self, tmp_path):
        assert StateStore(tmp_path / "missing").list_records() == []


class TestStateRecord:
    """Test cases for StateRecord."""

    def test_absent_record(self):
        locator = normalize_locator("/etc/hosts", FILE)
        record = StateRecord.absent(locator, machine_name="box")

        assert record.present is False
        assert record.fields == {}
        assert record.machine_name == "box"
        assert record.locator_key == locator.key

    def test_dict_round_trip_keeps_flags(self):
        locator = normalize_locator("HKCU:\\Software\\Foo", REGISTRY)
        record = _record(locator, secret="statekeeper:v1:abc")
        record.field_is_encrypted["secret"] = True
        record.attributes_snapshot = {"value_types": {"secret": "REG_SZ"}}

        restored = StateRecord.from_dict(json.loads(json.dumps(record.to_dict())))

        assert restored == record
