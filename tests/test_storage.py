"""Tests for durable storage backends and the device keyring."""

import os
import stat

import pytest

from sessionguard.config import Settings, StorageBackend
from sessionguard.storage.backends import FileBackend, MemoryBackend, build_backend
from sessionguard.storage.keyring import (
    DEVICE_KEY_NAME,
    DeviceKeyring,
    KdfParams,
    derive_keys,
    new_salt,
)

from conftest import TEST_KDF


class TestFileBackend:
    def test_round_trip_and_delete(self, tmp_path):
        backend = FileBackend(tmp_path / "state")

        backend.set("sessionguard.tokens", '{"a": 1}')

        assert backend.get("sessionguard.tokens") == '{"a": 1}'
        backend.delete("sessionguard.tokens")
        assert backend.get("sessionguard.tokens") is None

    def test_files_are_private(self, tmp_path):
        backend = FileBackend(tmp_path / "state")
        backend.set("secret", "value")

        mode = stat.S_IMODE(os.stat(tmp_path / "state" / "secret.json").st_mode)
        assert mode == 0o600

    def test_no_temp_files_left_behind(self, tmp_path):
        backend = FileBackend(tmp_path / "state")
        backend.set("k", "1")
        backend.set("k", "2")

        assert sorted(p.name for p in (tmp_path / "state").iterdir()) == ["k.json"]

    def test_delete_missing_key_is_safe(self, tmp_path):
        FileBackend(tmp_path).delete("missing")

    @pytest.mark.parametrize("key", ["", "../escape", "a/b", "with space"])
    def test_invalid_keys_rejected(self, tmp_path, key):
        with pytest.raises(ValueError):
            FileBackend(tmp_path).get(key)


class TestBuildBackend:
    def test_memory_backend_selected(self):
        backend = build_backend(Settings(storage_backend=StorageBackend.MEMORY))

        assert isinstance(backend, MemoryBackend)

    def test_file_backend_selected(self, tmp_path):
        backend = build_backend(Settings(storage_backend="file", state_dir=str(tmp_path)))

        assert isinstance(backend, FileBackend)


class TestKeyring:
    def test_secret_generated_once_and_persisted(self, backend):
        keyring = DeviceKeyring(backend)

        assert keyring.load() is None
        secret = keyring.ensure()
        assert keyring.ensure() == secret
        assert DeviceKeyring(backend).load() == secret

    def test_explicit_secret_wins(self, backend):
        keyring = DeviceKeyring(backend, explicit_secret="configured-secret")

        assert keyring.ensure() == b"configured-secret"
        assert backend.get(DEVICE_KEY_NAME) is None

    def test_corrupt_secret_reads_as_missing(self, backend):
        backend.set(DEVICE_KEY_NAME, "c2hvcnQ=")  # decodes to 5 bytes

        assert DeviceKeyring(backend).load() is None

    def test_discard_forgets_secret(self, backend):
        keyring = DeviceKeyring(backend)
        keyring.ensure()

        keyring.discard()

        assert keyring.load() is None

    def test_derived_halves_are_independent(self):
        salt = new_salt()
        keys = derive_keys(b"s" * 32, salt, TEST_KDF)

        assert len(keys.mac_key) == 32
        assert keys.cipher_key != keys.mac_key
        assert derive_keys(b"s" * 32, salt, TEST_KDF) == keys
        assert derive_keys(b"s" * 32, new_salt(), TEST_KDF) != keys

    def test_default_kdf_params(self):
        assert KdfParams() == KdfParams(time_cost=2, memory_cost=19456, parallelism=1)
