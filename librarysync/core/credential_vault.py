"""AES-256-GCM encryption of stored OAuth credentials."""

from __future__ import annotations

import asyncio
import base64
import binascii
from dataclasses import dataclass
from datetime import datetime
import os

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from sqlalchemy.orm import Session

from librarysync.config import ENCRYPTION_KEY_BYTES, VaultConfig
from librarysync.db import joined_scope
from librarysync.errors import ConfigurationError
from librarysync.logging import get_logger
from librarysync.logging_events import log_event
from librarysync.models import OAuthToken
from librarysync.utils.time import utcnow

logger = get_logger(__name__)

_IV_BYTES = 12
_TAG_BYTES = 16


@dataclass(slots=True, frozen=True)
class StoredCredential:
    user_id: str
    refresh_token: str
    access_token: str | None
    access_expires_at: datetime | None
    scope: str | None


class CredentialVault:
    """Encrypts credentials at rest; blobs are ``base64(iv | tag | ciphertext)``.

    Ciphertext written under a different key version, or that fails
    authentication, decrypts to ``None`` and is treated as a missing credential.
    """

    def __init__(self, key: bytes, *, key_version: int = 1) -> None:
        if len(key) != ENCRYPTION_KEY_BYTES:
            raise ConfigurationError(f"encryption key must be {ENCRYPTION_KEY_BYTES} bytes")
        self._aead = AESGCM(key)
        self._key_version = int(key_version)

    @classmethod
    def from_config(cls, config: VaultConfig) -> CredentialVault:
        return cls(config.key, key_version=config.key_version)

    @property
    def key_version(self) -> int:
        return self._key_version

    def encrypt(self, plaintext: str) -> str:
        iv = os.urandom(_IV_BYTES)
        sealed = self._aead.encrypt(iv, plaintext.encode("utf-8"), None)
        ciphertext, tag = sealed[:-_TAG_BYTES], sealed[-_TAG_BYTES:]
        return base64.b64encode(iv + tag + ciphertext).decode("ascii")

    def decrypt(self, blob: str | None, *, key_version: int) -> str | None:
        if not blob or int(key_version) != self._key_version:
            return None
        try:
            raw = base64.b64decode(blob, validate=True)
        except (binascii.Error, ValueError):
            return None
        if len(raw) < _IV_BYTES + _TAG_BYTES:
            return None
        iv = raw[:_IV_BYTES]
        tag = raw[_IV_BYTES : _IV_BYTES + _TAG_BYTES]
        ciphertext = raw[_IV_BYTES + _TAG_BYTES :]
        try:
            plaintext = self._aead.decrypt(iv, ciphertext + tag, None)
        except InvalidTag:
            return None
        return plaintext.decode("utf-8")

    def get(self, user_id: str, *, session: Session | None = None) -> StoredCredential | None:
        """Return the decrypted credential for ``user_id`` or ``None``."""

        with joined_scope(session) as active:
            record = active.get(OAuthToken, user_id)
            if record is None:
                return None
            version = int(record.enc_key_version or 0)
            refresh_token = self.decrypt(record.refresh_token_enc, key_version=version)
            if refresh_token is None:
                log_event(
                    logger,
                    "vault.decrypt_failed",
                    component="credential_vault",
                    user_id=user_id,
                    key_version=version,
                )
                return None
            return StoredCredential(
                user_id=user_id,
                refresh_token=refresh_token,
                access_token=self.decrypt(record.access_token_enc, key_version=version),
                access_expires_at=record.access_expires_at,
                scope=record.scope,
            )

    def set(
        self,
        user_id: str,
        refresh_token: str,
        *,
        scope: str | None = None,
        session: Session | None = None,
    ) -> None:
        """Store a new refresh credential, dropping any cached access credential."""

        with joined_scope(session) as active:
            record = active.get(OAuthToken, user_id)
            if record is None:
                record = OAuthToken(user_id=user_id)
                active.add(record)
            record.refresh_token_enc = self.encrypt(refresh_token)
            record.enc_key_version = self._key_version
            record.access_token_enc = None
            record.access_expires_at = None
            if scope is not None:
                record.scope = scope
            record.updated_at = utcnow()

    def store_exchange(
        self,
        user_id: str,
        *,
        access_token: str,
        expires_at: datetime,
        refresh_token: str | None = None,
        scope: str | None = None,
        session: Session | None = None,
    ) -> None:
        """Persist the result of a refresh exchange, rotating the refresh credential if given."""

        with joined_scope(session) as active:
            record = active.get(OAuthToken, user_id)
            if record is None:
                if refresh_token is None:
                    return
                record = OAuthToken(user_id=user_id)
                active.add(record)
            if refresh_token is not None:
                record.refresh_token_enc = self.encrypt(refresh_token)
                record.enc_key_version = self._key_version
            record.access_token_enc = self.encrypt(access_token)
            record.access_expires_at = expires_at
            if scope is not None:
                record.scope = scope
            record.updated_at = utcnow()

    async def get_async(self, user_id: str) -> StoredCredential | None:
        return await asyncio.to_thread(self.get, user_id)


__all__ = ["CredentialVault", "StoredCredential"]
