"""
Tests for the encrypted API key store.
"""

import json
import os
import stat

import pytest

from mimir.core.exceptions import ConfigurationError
from mimir.security.key_store import KeyStore


@pytest.fixture
def keys_path(tmp_path):
    return tmp_path / "keys" / "keys.json"


class TestKeyStore:
    """Test encryption at rest and key lifecycle."""

    def test_round_trip(self, keys_path):
        store = KeyStore(keys_path, master_key="master")
        store.set_key("openai", "sk-openai")
        store.set_key("anthropic", "sk-ant")

        reloaded = KeyStore(keys_path, master_key="master")

        assert reloaded.load_keys() == {"openai": "sk-openai", "anthropic": "sk-ant"}
        assert reloaded.get_key("openai") == "sk-openai"

    def test_keys_encrypted_on_disk(self, keys_path):
        KeyStore(keys_path, master_key="master").set_key("openai", "sk-plaintext")

        raw = keys_path.read_text()
        data = json.loads(raw)

        assert "sk-plaintext" not in raw
        assert set(data) == {"salt", "keys"}
        assert stat.S_IMODE(os.stat(keys_path).st_mode) == 0o600

    def test_wrong_master_key_skips_entries(self, keys_path):
        KeyStore(keys_path, master_key="right").set_key("openai", "sk-openai")

        assert KeyStore(keys_path, master_key="wrong").load_keys() == {}

    def test_wrong_master_key_does_not_destroy_entries(self, keys_path):
        KeyStore(keys_path, master_key="right").set_key("openai", "sk-openai")

        other = KeyStore(keys_path, master_key="wrong")
        assert other.load_keys() == {}
        other.set_key("anthropic", "sk-ant")

        assert KeyStore(keys_path, master_key="right").load_keys() == {"openai": "sk-openai"}
        assert KeyStore(keys_path, master_key="wrong").load_keys() == {"anthropic": "sk-ant"}

    def test_undecryptable_entry_can_be_replaced_or_deleted(self, keys_path):
        KeyStore(keys_path, master_key="right").set_key("openai", "sk-old")
        KeyStore(keys_path, master_key="right").set_key("google", "g-key")

        other = KeyStore(keys_path, master_key="wrong")
        other.load_keys()
        other.set_key("openai", "sk-new")
        assert other.delete_key("google") is True

        assert KeyStore(keys_path, master_key="wrong").load_keys() == {"openai": "sk-new"}
        assert set(json.loads(keys_path.read_text())["keys"]) == {"openai"}

    def test_set_key_keeps_existing_entries(self, keys_path):
        KeyStore(keys_path, master_key="master").set_key("openai", "sk-openai")

        second = KeyStore(keys_path, master_key="master")
        second.set_key("google", "g-key")

        assert KeyStore(keys_path, master_key="master").load_keys() == {
            "openai": "sk-openai",
            "google": "g-key",
        }

    def test_master_key_required(self, keys_path):
        store = KeyStore(keys_path)

        assert store.enabled is False
        assert store.load_keys() == {}
        with pytest.raises(ConfigurationError, match="master key is required"):
            store.set_key("openai", "sk")

    def test_delete_key(self, keys_path):
        store = KeyStore(keys_path, master_key="master")
        store.set_key("openai", "sk-openai")

        assert store.delete_key("openai") is True
        assert store.delete_key("openai") is False
        assert KeyStore(keys_path, master_key="master").load_keys() == {}

    def test_corrupt_file_treated_as_empty(self, keys_path):
        keys_path.parent.mkdir(parents=True)
        keys_path.write_text("{broken")

        assert KeyStore(keys_path, master_key="master").load_keys() == {}
