"""
Tests for per-organization AES-256-GCM encryption.
"""

import pytest

from grooshub.core.encryption import (
    DecryptionError,
    EncryptionNotConfiguredError,
    InvalidCiphertextError,
    decrypt_from_storage,
    decrypt_json,
    decrypt_json_from_storage,
    decrypt_message,
    encrypt_for_storage,
    encrypt_json,
    encrypt_json_for_storage,
    encrypt_message,
    is_encryption_configured,
)


@pytest.mark.usefixtures("encryption_on")
class TestWithMasterKey:
    """Master key configured."""

    def test_configured(self):
        assert is_encryption_configured() is True

    def test_roundtrip(self):
        ct = encrypt_message("Mijn budget is €2,5 miljoen", "org-1")
        assert decrypt_message(ct, "org-1") == "Mijn budget is €2,5 miljoen"

    def test_wire_format(self):
        salt, iv, body, tag = encrypt_message("hello", "org-1").split(":")
        assert len(salt) == 64  # 32 bytes
        assert len(iv) == 32    # 16 bytes
        assert len(tag) == 32   # 16 bytes
        assert len(body) == 10  # same length as plaintext
        assert all(c in "0123456789abcdef" for c in salt + iv + body + tag)

    def test_fresh_salt_and_iv_each_time(self):
        assert encrypt_message("same", "org-1") != encrypt_message("same", "org-1")

    def test_wrong_organization_fails(self):
        ct = encrypt_message("secret", "org-1")
        with pytest.raises(DecryptionError):
            decrypt_message(ct, "org-2")

    def test_tampered_ciphertext_fails(self):
        salt, iv, body, tag = encrypt_message("secret", "org-1").split(":")
        flipped = format(int(body[:2], 16) ^ 0x01, "02x") + body[2:]
        with pytest.raises(DecryptionError):
            decrypt_message(":".join([salt, iv, flipped, tag]), "org-1")

    def test_wrong_part_count(self):
        with pytest.raises(InvalidCiphertextError):
            decrypt_message("abc:def", "org-1")

    def test_bad_hex(self):
        with pytest.raises(InvalidCiphertextError):
            decrypt_message("zz:zz:zz:zz", "org-1")

    def test_json_roundtrip(self):
        ct = encrypt_json(["punt 1", "punt 2"], "org-1")
        assert decrypt_json(ct, "org-1") == ["punt 1", "punt 2"]

    def test_storage_helpers_encrypt(self):
        value, flag = encrypt_for_storage("tekst", "org-1")
        assert flag is True
        assert value != "tekst"
        assert decrypt_from_storage(value, flag, "org-1") == "tekst"

        value, flag = encrypt_json_for_storage({"a": 1}, "org-1")
        assert flag is True
        assert decrypt_json_from_storage(value, flag, "org-1") == {"a": 1}

    def test_unflagged_value_passes_through(self):
        assert decrypt_from_storage("plain", False, "org-1") == "plain"


@pytest.mark.usefixtures("encryption_off")
class TestWithoutMasterKey:
    """No master key: graceful plaintext on write, hard failure on flagged reads."""

    def test_not_configured(self):
        assert is_encryption_configured() is False

    def test_storage_is_plaintext(self):
        assert encrypt_for_storage("tekst", "org-1") == ("tekst", False)

    def test_json_storage_is_json_text(self):
        value, flag = encrypt_json_for_storage(["a", "b"], "org-1")
        assert flag is False
        assert value == '["a", "b"]'
        assert decrypt_json_from_storage(value, flag, "org-1") == ["a", "b"]

    def test_direct_encrypt_raises(self):
        with pytest.raises(EncryptionNotConfiguredError):
            encrypt_message("x", "org-1")

    def test_flagged_value_is_hard_failure(self):
        with pytest.raises(EncryptionNotConfiguredError):
            decrypt_from_storage("aa:bb:cc:dd", True, "org-1")

    def test_flagged_json_is_hard_failure(self):
        with pytest.raises(EncryptionNotConfiguredError):
            decrypt_json_from_storage("aa:bb:cc:dd", True, "org-1")


def test_key_rotation_breaks_old_ciphertext(monkeypatch, encryption_on):
    from grooshub.core.config import get_settings

    ct = encrypt_message("secret", "org-1")
    monkeypatch.setenv("ENCRYPTION_MASTER_KEY", "another-key")
    get_settings.cache_clear()
    with pytest.raises(DecryptionError):
        decrypt_message(ct, "org-1")
