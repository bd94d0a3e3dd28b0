"""Tests for session credential persistence."""

import pytest

from app.core.encryption import CredentialCipher, EncryptionError, generate_encryption_key
from app.domain.errors import CredentialStoreError
from app.infrastructure.credential_store import DatabaseCredentialStore, FileCredentialStore

CREDS = {"me": {"id": "12817882316:3@s.whatsapp.net"}, "registration_id": 1234}


@pytest.fixture
def cipher():
    return CredentialCipher(generate_encryption_key())


def test_cipher_round_trip_and_plaintext_fallback(cipher):
    stored = cipher.encrypt_json(CREDS)
    assert stored.startswith("enc:")
    assert "registration_id" not in stored
    assert cipher.decrypt_json(stored) == CREDS
    # Written before a key was configured
    assert cipher.decrypt_json('{"a": 1}') == {"a": 1}


def test_cipher_without_key_cannot_read_encrypted_values(cipher):
    with pytest.raises(EncryptionError):
        CredentialCipher(None).decrypt_json(cipher.encrypt_json(CREDS))


@pytest.mark.asyncio
async def test_file_store_save_load_clear(tmp_path, cipher):
    store = FileCredentialStore(tmp_path, cipher)

    assert await store.load(1) == {}
    await store.save(1, {"creds": CREDS, "app-state-sync-key/AAAA": {"k": "v"}})
    await store.save(2, {"creds": {"other": True}})

    assert await store.load(1) == {"creds": CREDS, "app-state-sync-key/AAAA": {"k": "v"}}
    files = sorted(p.name for p in (tmp_path / "1").iterdir())
    assert files == ["app-state-sync-key_AAAA.json", "creds.json"]
    assert (tmp_path / "1" / "creds.json").read_text().startswith("enc:")

    await store.save(1, {"app-state-sync-key/AAAA": None})
    assert await store.load(1) == {"creds": CREDS}

    await store.clear(1)
    assert await store.load(1) == {}
    assert not (tmp_path / "1").exists()
    assert await store.load(2) == {"creds": {"other": True}}


@pytest.mark.asyncio
async def test_file_store_wraps_decryption_failures(tmp_path, cipher):
    await FileCredentialStore(tmp_path, cipher).save(1, {"creds": CREDS})
    other_key = CredentialCipher(generate_encryption_key())

    with pytest.raises(CredentialStoreError):
        await FileCredentialStore(tmp_path, other_key).load(1)


@pytest.mark.asyncio
async def test_database_store_save_load_clear(session_factory, tenant, cipher):
    store = DatabaseCredentialStore(session_factory, cipher)

    await store.save(tenant.id, {"creds": CREDS, "pre-key-1": {"k": 1}})
    await store.save(tenant.id, {"pre-key-1": {"k": 2}, "pre-key-2": None})
    assert await store.load(tenant.id) == {"creds": CREDS, "pre-key-1": {"k": 2}}

    await store.save(tenant.id, {"pre-key-1": None})
    assert await store.load(tenant.id) == {"creds": CREDS}

    await store.clear(tenant.id)
    assert await store.load(tenant.id) == {}
