"""Persistence of protocol session credentials.

The connection manager only sees ``CredentialStore``; deployments choose the
file backend (one JSON file per entry under ``session_path/<tenant_id>/``) or
the database backend (``session_credentials`` table).
"""

import asyncio
import logging
import re
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from app.core.encryption import CredentialCipher, EncryptionError
from app.domain.errors import CredentialStoreError
from app.persistence.repositories.session_credential_repository import SessionCredentialRepository
from app.settings import settings

logger = logging.getLogger(__name__)

_UNSAFE_FILENAME_CHARS = re.compile(r"[^A-Za-z0-9._-]")


class CredentialStore(ABC):
    """Load/save/clear auth material per tenant."""

    @abstractmethod
    async def load(self, tenant_id: int) -> dict[str, Any]:
        """Load every stored entry for a tenant (empty when none)."""
        pass

    @abstractmethod
    async def save(self, tenant_id: int, entries: dict[str, Any]) -> None:
        """Persist changed entries; a ``None`` value removes the entry."""
        pass

    @abstractmethod
    async def clear(self, tenant_id: int) -> None:
        """Remove all stored material for a tenant."""
        pass


class FileCredentialStore(CredentialStore):
    """Credential store backed by JSON files on disk."""

    def __init__(self, base_path: str | Path, cipher: CredentialCipher | None = None) -> None:
        self.base_path = Path(base_path)
        self.cipher = cipher or CredentialCipher(settings.field_encryption_key)

    def tenant_dir(self, tenant_id: int) -> Path:
        return self.base_path / str(tenant_id)

    def _file_for(self, tenant_id: int, key_name: str) -> Path:
        return self.tenant_dir(tenant_id) / f"{_UNSAFE_FILENAME_CHARS.sub('_', key_name)}.json"

    def _load_sync(self, tenant_id: int) -> dict[str, Any]:
        directory = self.tenant_dir(tenant_id)
        if not directory.is_dir():
            return {}
        entries: dict[str, Any] = {}
        for path in sorted(directory.glob("*.json")):
            stored = self.cipher.decrypt_json(path.read_text(encoding="utf-8"))
            # Files hold {"key": ..., "value": ...} so the original key survives sanitizing
            entries[stored["key"]] = stored["value"]
        return entries

    def _save_sync(self, tenant_id: int, entries: dict[str, Any]) -> None:
        directory = self.tenant_dir(tenant_id)
        directory.mkdir(parents=True, exist_ok=True)
        for key_name, value in entries.items():
            path = self._file_for(tenant_id, key_name)
            if value is None:
                path.unlink(missing_ok=True)
                continue
            tmp_path = path.with_suffix(".tmp")
            tmp_path.write_text(self.cipher.encrypt_json({"key": key_name, "value": value}), encoding="utf-8")
            tmp_path.replace(path)

    def _clear_sync(self, tenant_id: int) -> None:
        directory = self.tenant_dir(tenant_id)
        if directory.exists():
            shutil.rmtree(directory)

    async def load(self, tenant_id: int) -> dict[str, Any]:
        try:
            return await asyncio.to_thread(self._load_sync, tenant_id)
        except (OSError, ValueError, KeyError, EncryptionError) as e:
            raise CredentialStoreError(f"Failed to load credentials for tenant {tenant_id}: {e}") from e

    async def save(self, tenant_id: int, entries: dict[str, Any]) -> None:
        try:
            await asyncio.to_thread(self._save_sync, tenant_id, entries)
        except (OSError, TypeError, EncryptionError) as e:
            raise CredentialStoreError(f"Failed to save credentials for tenant {tenant_id}: {e}") from e

    async def clear(self, tenant_id: int) -> None:
        try:
            await asyncio.to_thread(self._clear_sync, tenant_id)
        except OSError as e:
            raise CredentialStoreError(f"Failed to clear credentials for tenant {tenant_id}: {e}") from e
        logger.info(f"Cleared session files for tenant {tenant_id}")


class DatabaseCredentialStore(CredentialStore):
    """Credential store backed by the ``session_credentials`` table."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        cipher: CredentialCipher | None = None,
    ) -> None:
        self.session_factory = session_factory
        self.cipher = cipher or CredentialCipher(settings.field_encryption_key)

    async def load(self, tenant_id: int) -> dict[str, Any]:
        try:
            async with self.session_factory() as session:
                rows = await SessionCredentialRepository(session).get_all(tenant_id)
            return {key_name: self.cipher.decrypt_json(data) for key_name, data in rows.items()}
        except Exception as e:
            raise CredentialStoreError(f"Failed to load credentials for tenant {tenant_id}: {e}") from e

    async def save(self, tenant_id: int, entries: dict[str, Any]) -> None:
        upserts = {key: self.cipher.encrypt_json(value) for key, value in entries.items() if value is not None}
        removals = [key for key, value in entries.items() if value is None]
        try:
            async with self.session_factory() as session:
                repo = SessionCredentialRepository(session)
                await repo.upsert_many(tenant_id, upserts)
                await repo.delete_keys(tenant_id, removals)
        except Exception as e:
            raise CredentialStoreError(f"Failed to save credentials for tenant {tenant_id}: {e}") from e

    async def clear(self, tenant_id: int) -> None:
        try:
            async with self.session_factory() as session:
                deleted = await SessionCredentialRepository(session).delete_all(tenant_id)
        except Exception as e:
            raise CredentialStoreError(f"Failed to clear credentials for tenant {tenant_id}: {e}") from e
        logger.info(f"Cleared {deleted} stored credential entries for tenant {tenant_id}")


def create_credential_store(session_factory: async_sessionmaker[AsyncSession]) -> CredentialStore:
    """Build the credential store selected by ``credential_store_backend``."""
    backend = settings.credential_store_backend.lower()
    if backend == "database":
        return DatabaseCredentialStore(session_factory)
    if backend == "file":
        return FileCredentialStore(settings.session_path)
    raise ValueError(f"Unknown credential store backend: {settings.credential_store_backend}")
