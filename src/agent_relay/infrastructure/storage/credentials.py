"""Encrypted provider and bot credentials (Fernet)."""

from __future__ import annotations

import logging
import os
import secrets
from pathlib import Path
from typing import Optional

from cryptography.fernet import Fernet, InvalidToken

from agent_relay.domain import Credential, NotFoundError, ValidationError

from .json_store import JsonCollection

logger = logging.getLogger(__name__)

_KEY_FILE = "secret.key"


def load_or_create_key(data_dir: str, secret: Optional[str] = None) -> bytes:
    """Return the Fernet key: ``secret`` if given, else ``{data_dir}/secret.key``.

    The key file is generated on first use and made owner-readable only.
    """
    if secret:
        return secret.encode()
    path = Path(data_dir) / _KEY_FILE
    if path.exists():
        return path.read_bytes().strip()
    path.parent.mkdir(parents=True, exist_ok=True)
    key = Fernet.generate_key()
    path.write_bytes(key)
    try:
        os.chmod(path, 0o600)
    except OSError as exc:
        logger.debug("Could not restrict permissions on %s: %s", path, exc)
    logger.info("Generated credential key at %s", path)
    return key


class CredentialVault:
    """Stores credentials encrypted at rest and decrypts them on demand."""

    def __init__(self, store: JsonCollection[Credential], key: bytes) -> None:
        self._store = store
        self._fernet = Fernet(key)

    def encrypt(self, plaintext: str) -> str:
        return self._fernet.encrypt(plaintext.encode()).decode()

    def add(self, provider: str, name: str, api_key: str) -> Credential:
        if not api_key or not api_key.strip():
            raise ValidationError("api_key is required")
        credential = Credential(
            id=secrets.token_hex(6),
            provider=provider,
            name=name,
            encrypted_key=self.encrypt(api_key.strip()),
        )
        return self._store.put(credential)

    def decrypt(self, credential_id: str) -> str:
        credential = self._store.get(credential_id)
        if credential is None:
            raise NotFoundError(f"API key not found: {credential_id}")
        try:
            return self._fernet.decrypt(credential.encrypted_key.encode()).decode()
        except InvalidToken:
            raise ValidationError(f"Could not decrypt credential {credential_id}") from None
