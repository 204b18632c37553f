"""Encrypted local storage for refreshed Bitrix24 OAuth tokens."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

import orjson
from cryptography.fernet import Fernet, InvalidToken

from bitrix24_bridge.api.models import RefreshedTokens

logger = logging.getLogger(__name__)

DEFAULT_STORE_DIR = Path.home() / ".bitrix24-bridge"
DEFAULT_STORE_PATH = DEFAULT_STORE_DIR / "tokens.enc"
DEFAULT_KEY_PATH = DEFAULT_STORE_DIR / ".key"


class TokenStoreError(Exception):
    """The token file exists but cannot be decrypted with the current key."""


class TokenStore:
    """Per-account OAuth tokens, Fernet-encrypted on disk.

    Layout of the decrypted file: ``{"accounts": {account_id: tokens}}``.
    The key lives in a separate file; both files are mode 0600.
    """

    def __init__(
        self,
        store_path: Path | None = None,
        key_path: Path | None = None,
    ) -> None:
        self.store_path = store_path or DEFAULT_STORE_PATH
        self.key_path = key_path or DEFAULT_KEY_PATH
        self.store_path.parent.mkdir(parents=True, exist_ok=True)
        self._fernet = Fernet(self._read_key())

    def _read_key(self) -> bytes:
        if self.key_path.exists():
            return self.key_path.read_bytes().strip()
        self.key_path.parent.mkdir(parents=True, exist_ok=True)
        key = Fernet.generate_key()
        self._write_private(self.key_path, key)
        logger.info("Generated new encryption key at %s", self.key_path)
        return key

    @staticmethod
    def _write_private(path: Path, data: bytes) -> None:
        # Atomic replace
        tmp = path.with_name(f"{path.name}.tmp")
        tmp.write_bytes(data)
        os.chmod(tmp, 0o600)
        os.replace(tmp, path)

    def _accounts(self) -> dict[str, Any]:
        if not self.store_path.exists():
            return {}
        try:
            decrypted = self._fernet.decrypt(self.store_path.read_bytes())
        except InvalidToken as exc:
            raise TokenStoreError(
                f"Cannot decrypt {self.store_path}; was {self.key_path} replaced?"
            ) from exc
        return orjson.loads(decrypted).get("accounts", {})

    def _write_accounts(self, accounts: dict[str, Any]) -> None:
        payload = orjson.dumps({"accounts": accounts})
        self._write_private(self.store_path, self._fernet.encrypt(payload))

    def load_tokens(self, account_id: str) -> RefreshedTokens | None:
        """Last refreshed tokens for an account, if any were saved."""
        entry = self._accounts().get(account_id)
        return RefreshedTokens.model_validate(entry) if entry else None

    def save_tokens(self, account_id: str, tokens: RefreshedTokens) -> None:
        """Persist refreshed tokens. Used as the client's refresh callback."""
        accounts = self._accounts()
        accounts[account_id] = tokens.model_dump()
        self._write_accounts(accounts)
        logger.info("Stored refreshed tokens for account %s", account_id)

    def delete_tokens(self, account_id: str) -> None:
        accounts = self._accounts()
        if accounts.pop(account_id, None) is not None:
            self._write_accounts(accounts)
