"""
Tests for field encryption.
"""

import threading

import pytest

from statekeeper.encryption import (
    CIPHERTEXT_PREFIX,
    EncryptionContext,
    EncryptionService,
    KeySource,
    PassphraseKeySource,
)
from statekeeper.exceptions import DecryptionError, EncryptionError

from tests.helpers import TEST_ITERATIONS, make_encryption


class CountingKeySource(KeySource):
    def __init__(self):
        self.calls = 0

    def secret(self) -> bytes:
        self.calls += 1
        return b"counting-secret"


class TestEncryptionService:
    """Test cases for protect/unprotect."""

    @pytest.mark.parametrize(
        "value",
        ["hunter2", "", 42, True, False, b"\x00\xffbinary", ["a", "b"], [{"id": "Git.Git"}]],
    )
    def test_values_survive_protection(self, encryption, value):
        blob = encryption.protect(value)
        assert blob.startswith(CIPHERTEXT_PREFIX)
        assert encryption.unprotect(blob) == value

    def test_ciphertext_hides_plaintext(self, encryption):
        blob = encryption.protect("very-secret-password")
        assert "very-secret-password" not in blob

    def test_tampered_ciphertext_rejected(self, encryption):
        blob = encryption.protect("secret")
        tampered = blob[:-6] + ("A" if blob[-6] != "A" else "B") + blob[-5:]
        with pytest.raises(DecryptionError):
            encryption.unprotect(tampered, field="password")

    def test_foreign_key_rejected(self, encryption):
        blob = encryption.protect("secret")
        other = make_encryption("a different passphrase")
        with pytest.raises(DecryptionError, match="different key"):
            other.unprotect(blob)

    def test_plain_text_rejected(self, encryption):
        with pytest.raises(DecryptionError, match="not a statekeeper ciphertext"):
            encryption.unprotect("just text")

    def test_decryption_error_names_field(self, encryption):
        with pytest.raises(DecryptionError) as exc_info:
            encryption.unprotect(12345, field="token")
        assert exc_info.value.context["field"] == "token"

    def test_unsupported_value_type(self, encryption):
        with pytest.raises(EncryptionError):
            encryption.protect(object())

    def test_is_protected(self, encryption):
        assert encryption.is_protected(encryption.protect(1))
        assert not encryption.is_protected("plain")
        assert not encryption.is_protected(None)


class TestEncryptionContext:
    """Test cases for lazy key materialization."""

    def test_key_derived_lazily_and_once(self):
        source = CountingKeySource()
        context = EncryptionContext(source, iterations=TEST_ITERATIONS)
        assert not context.is_materialized
        service = EncryptionService(context)
        service.protect("a")
        service.protect("b")
        assert context.is_materialized
        assert source.calls == 1

    def test_concurrent_first_use_derives_once(self):
        source = CountingKeySource()
        context = EncryptionContext(source, iterations=TEST_ITERATIONS)
        threads = [threading.Thread(target=context.fernet) for _ in range(8)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert source.calls == 1

    def test_clear_cache_forces_new_derivation(self):
        source = CountingKeySource()
        service = EncryptionService(EncryptionContext(source, iterations=TEST_ITERATIONS))
        blob = service.protect("value")
        service.clear_cache()
        assert not service.context.is_materialized
        assert service.unprotect(blob) == "value"
        assert source.calls == 2

    def test_empty_passphrase_rejected(self):
        with pytest.raises(EncryptionError):
            PassphraseKeySource("")

    def test_passphrase_not_in_repr(self):
        assert "hunter2" not in repr(PassphraseKeySource("hunter2"))

    def test_invalid_iterations(self):
        with pytest.raises(EncryptionError):
            EncryptionContext(PassphraseKeySource("x"), iterations=0)
