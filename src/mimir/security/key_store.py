"""
Encrypted storage for provider API keys.
"""

import base64
import json
import logging
import os
from pathlib import Path

from cryptography.fernet import Fernet, InvalidToken
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.kdf.pbkdf2 import PBKDF2HMAC

from ..core.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

KDF_ITERATIONS = 100000
SALT_BYTES = 16


class KeyStore:
    """
    Provider API keys encrypted at rest with Fernet.

    The file is a JSON object holding a base64 salt and one Fernet token per
    provider. The encryption key is derived from the master key with
    PBKDF2-HMAC-SHA256 and the stored salt.
    """

    def __init__(self, path: str | Path, master_key: str | None = None):
        self.path = Path(path).expanduser()
        self._master_key = master_key
        self._keys: dict[str, str] = {}
        self._sealed: dict[str, str] = {}
        self._salt: bytes | None = None
        self._fernet: Fernet | None = None

    @property
    def enabled(self) -> bool:
        return bool(self._master_key)

    def _derive_key(self, master_key: str, salt: bytes) -> bytes:
        """Derive the Fernet key from the master key and salt."""
        kdf = PBKDF2HMAC(
            algorithm=hashes.SHA256(),
            length=32,
            salt=salt,
            iterations=KDF_ITERATIONS,
        )
        return base64.urlsafe_b64encode(kdf.derive(master_key.encode()))

    def _get_fernet(self) -> Fernet:
        if not self._master_key:
            raise ConfigurationError("A master key is required to store API keys")
        if self._fernet is None:
            if self._salt is None:
                self._salt = os.urandom(SALT_BYTES)
            self._fernet = Fernet(self._derive_key(self._master_key, self._salt))
        return self._fernet

    def _read_file(self) -> dict:
        if not self.path.exists():
            return {}
        try:
            with open(self.path, encoding="utf-8") as f:
                data = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error(f"Failed to read key store {self.path}: {e}")
            return {}
        return data if isinstance(data, dict) else {}

    def _write_file(self) -> None:
        fernet = self._get_fernet()
        payload = {
            "salt": base64.b64encode(self._salt).decode("utf-8"),
            "keys": {
                **self._sealed,
                **{
                    provider: fernet.encrypt(key.encode("utf-8")).decode("utf-8")
                    for provider, key in self._keys.items()
                },
            },
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(".tmp")
        with open(tmp_path, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2)
        os.chmod(tmp_path, 0o600)
        tmp_path.replace(self.path)

    def load_keys(self) -> dict[str, str]:
        """
        Load and decrypt every stored key.

        Entries that cannot be decrypted, e.g. after the master key changed,
        are logged and left out of the result. Their tokens are kept as they
        are and written back on the next save, so a wrong master key never
        destroys them.

        Returns:
            Mapping of provider type to API key
        """
        self._keys = {}
        self._sealed = {}
        if not self._master_key:
            return {}

        data = self._read_file()
        salt = data.get("salt")
        if salt:
            self._salt = base64.b64decode(salt)
            self._fernet = None
        fernet = self._get_fernet()

        for provider, token in data.get("keys", {}).items():
            try:
                self._keys[provider] = fernet.decrypt(token.encode("utf-8")).decode("utf-8")
            except (InvalidToken, AttributeError) as e:
                logger.warning(f"Skipping undecryptable key for {provider}: {e!r}")
                if isinstance(token, str):
                    self._sealed[provider] = token

        logger.info(f"Loaded {len(self._keys)} stored API keys")
        return dict(self._keys)

    def get_key(self, provider: str) -> str | None:
        return self._keys.get(provider)

    def set_key(self, provider: str, api_key: str) -> None:
        """
        Store a provider's API key.

        Raises:
            ConfigurationError: If no master key is configured
        """
        if self._salt is None and self.path.exists():
            self.load_keys()
        self._get_fernet()
        self._keys[provider] = api_key
        self._sealed.pop(provider, None)
        self._write_file()
        logger.info(f"Stored API key for {provider}")

    def delete_key(self, provider: str) -> bool:
        if provider not in self._keys and provider not in self._sealed:
            return False
        self._keys.pop(provider, None)
        self._sealed.pop(provider, None)
        self._write_file()
        logger.info(f"Deleted API key for {provider}")
        return True
