import base64

import pytest

from librarysync.core.credential_vault import CredentialVault
from librarysync.db import session_scope
from librarysync.errors import ConfigurationError
from librarysync.models import OAuthToken
from librarysync.utils.time import utcnow
from tests.support.factories import create_user

KEY = b"k" * 32


def test_encrypt_produces_iv_tag_ciphertext_blob() -> None:
    vault = CredentialVault(KEY)

    first = vault.encrypt("refresh-secret")
    second = vault.encrypt("refresh-secret")

    assert first != second
    assert len(base64.b64decode(first)) == 12 + 16 + len("refresh-secret")
    assert vault.decrypt(first, key_version=1) == "refresh-secret"


def test_decrypt_fails_closed() -> None:
    vault = CredentialVault(KEY)
    blob = vault.encrypt("refresh-secret")
    raw = bytearray(base64.b64decode(blob))
    raw[-1] ^= 0x01
    tampered = base64.b64encode(bytes(raw)).decode("ascii")

    assert vault.decrypt(blob, key_version=2) is None
    assert vault.decrypt(tampered, key_version=1) is None
    assert vault.decrypt("%%%", key_version=1) is None
    assert vault.decrypt(None, key_version=1) is None
    assert CredentialVault(b"z" * 32).decrypt(blob, key_version=1) is None


def test_key_length_is_enforced() -> None:
    with pytest.raises(ConfigurationError):
        CredentialVault(b"short")


def test_set_and_get_round_trip_without_plaintext_at_rest() -> None:
    vault = CredentialVault(KEY)
    create_user("u1")

    vault.set("u1", "refresh-secret", scope="user-library-read")

    with session_scope() as session:
        record = session.get(OAuthToken, "u1")
        assert record is not None
        assert "refresh-secret" not in record.refresh_token_enc
        assert record.enc_key_version == 1

    credential = vault.get("u1")
    assert credential is not None
    assert credential.refresh_token == "refresh-secret"
    assert credential.access_token is None
    assert credential.scope == "user-library-read"


def test_store_exchange_rotates_and_set_clears_access_token() -> None:
    vault = CredentialVault(KEY)
    create_user("u1")
    vault.set("u1", "refresh-1")
    expires = utcnow().replace(microsecond=0)

    vault.store_exchange("u1", access_token="access-1", expires_at=expires, refresh_token="refresh-2")

    credential = vault.get("u1")
    assert credential is not None
    assert credential.refresh_token == "refresh-2"
    assert credential.access_token == "access-1"
    assert credential.access_expires_at == expires

    vault.set("u1", "refresh-3")
    credential = vault.get("u1")
    assert credential is not None
    assert credential.refresh_token == "refresh-3"
    assert credential.access_token is None


def test_credential_under_other_key_version_reads_as_missing() -> None:
    create_user("u1")
    CredentialVault(KEY, key_version=1).set("u1", "refresh-secret")

    assert CredentialVault(KEY, key_version=2).get("u1") is None
    assert CredentialVault(KEY).get("missing") is None
