"""
Vault-backed settings
=====================
Reads secrets and tunables from HashiCorp Vault, falling back to the
process environment.

Usage:
    from utils.vault import secrets

    db_url = secrets.get("postgres_url", default="")
    ceiling = secrets.get_int("evidence_char_ceiling", 120_000)
"""

import os
import logging
from typing import Any, Dict, Optional

import hvac

logger = logging.getLogger("BidLevelBE")

_TRUE = {"1", "true", "yes", "on"}


class VaultClient:
    """
    Vault client for fetching secrets.

    Secrets path structure: secret/bidlevel/{region}/{env}
    All secrets for a region/env are stored in a single path.
    """

    def __init__(self):
        self.vault_addr = (os.getenv("VAULT_ADDR") or "").strip()
        self.region = os.getenv("BIDLEVEL_REGION", "us")
        self.env = os.getenv("BIDLEVEL_ENV", "dev")

        self._client: Optional[hvac.Client] = None
        self._cache: Dict[str, Any] = {}
        self._connection_attempted = False

    def _get_client(self) -> Optional[hvac.Client]:
        """Lazy initialization of Vault client with authentication."""
        if not self.vault_addr:
            return None
        if self._client is not None or self._connection_attempted:
            return self._client

        self._connection_attempted = True
        role_id = os.getenv("VAULT_ROLE_ID")
        secret_id = os.getenv("VAULT_SECRET_ID")
        token = os.getenv("VAULT_TOKEN")

        try:
            client = hvac.Client(url=self.vault_addr)
            if role_id and secret_id:
                client.auth.approle.login(role_id=role_id, secret_id=secret_id)
                logger.info(
                    f"Authenticated to Vault via AppRole for {self.region}/{self.env}"
                )
            elif token:
                client.token = token
                logger.info(
                    f"Authenticated to Vault via token for {self.region}/{self.env}"
                )
            else:
                logger.warning("No Vault credentials configured")
                return None
            self._client = client
        except Exception as e:
            logger.warning(f"Could not connect to Vault: {e}")
            self._client = None

        return self._client

    def _secret_path(self) -> str:
        return f"bidlevel/{self.region}/{self.env}"

    def _fetch_from_vault(self) -> Dict[str, Any]:
        client = self._get_client()
        if client is None:
            return {}

        try:
            path = self._secret_path()
            response = client.secrets.kv.v2.read_secret_version(
                path=path, mount_point="secret"
            )
            data = response["data"]["data"]
            logger.debug(f"Fetched {len(data)} secrets from Vault ({path})")
            return data
        except Exception as e:
            logger.warning(f"Could not fetch secrets from Vault: {e}")
            return {}

    def _load_secrets(self) -> None:
        if not self._cache:
            self._cache = self._fetch_from_vault()

    @staticmethod
    def _env_fallback(key: str) -> Optional[str]:
        for candidate in (key, key.upper(), key.lower()):
            v = os.getenv(candidate)
            if v is not None and v != "":
                return v
        return None

    def get(self, key: str, default: Optional[str] = None) -> str:
        """
        Get a secret value from Vault, or from process environment if not in Vault.

        Raises:
            KeyError: If secret not found and no default provided.
        """
        self._load_secrets()

        key_lower = key.lower()
        for k, v in self._cache.items():
            if k.lower() == key_lower:
                return v

        env_val = self._env_fallback(key)
        if env_val is not None:
            return env_val

        if default is not None:
            return default
        raise KeyError(f"Secret '{key}' not found (Vault or env)")

    def get_int(self, key: str, default: int) -> int:
        raw = self.get(key, default="")
        try:
            return int(str(raw).strip()) if str(raw).strip() else default
        except ValueError:
            logger.warning(f"Setting {key}={raw!r} is not an integer; using {default}")
            return default

    def get_float(self, key: str, default: float) -> float:
        raw = self.get(key, default="")
        try:
            return float(str(raw).strip()) if str(raw).strip() else default
        except ValueError:
            logger.warning(f"Setting {key}={raw!r} is not a number; using {default}")
            return default

    def get_bool(self, key: str, default: bool = False) -> bool:
        raw = str(self.get(key, default="")).strip().lower()
        if not raw:
            return default
        return raw in _TRUE

    def refresh(self) -> None:
        """Force refresh all secrets from Vault."""
        self._cache = self._fetch_from_vault()
        logger.info(f"Secrets refreshed for {self.region}/{self.env}")


# Global singleton instance
secrets = VaultClient()
