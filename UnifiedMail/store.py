from __future__ import annotations

import asyncio
import json
import logging
import os
from abc import ABC, abstractmethod
from dataclasses import asdict, replace
from typing import Dict, List, Optional

from .config import Config
from .models import AccountRecord

logger = logging.getLogger(__name__)


class CredentialStore(ABC):
    """
    Where account credential records live.

    The store is owned by the surrounding application (a database table in
    production). This layer only reads records and writes back refreshed
    tokens; it never creates accounts on its own.
    """

    @abstractmethod
    async def get(self, account_id: str) -> Optional[AccountRecord]: ...

    @abstractmethod
    async def list_accounts(self) -> List[AccountRecord]: ...

    @abstractmethod
    async def upsert(self, record: AccountRecord) -> AccountRecord: ...

    @abstractmethod
    async def update_tokens(
            self,
            account_id: str,
            *,
            access_token: str,
            expires_at: int,
            refresh_token: Optional[str] = None,
    ) -> AccountRecord:
        """Persist refreshed tokens; ``refresh_token=None`` keeps the stored one."""


class InMemoryCredentialStore(CredentialStore):
    def __init__(self, records: Optional[List[AccountRecord]] = None) -> None:
        self._records: Dict[str, AccountRecord] = {r.id: r for r in records or []}

    async def get(self, account_id: str) -> Optional[AccountRecord]:
        record = self._records.get(account_id)
        return replace(record) if record else None

    async def list_accounts(self) -> List[AccountRecord]:
        return [replace(r) for r in self._records.values()]

    async def upsert(self, record: AccountRecord) -> AccountRecord:
        self._records[record.id] = replace(record)
        return replace(record)

    async def update_tokens(
            self,
            account_id: str,
            *,
            access_token: str,
            expires_at: int,
            refresh_token: Optional[str] = None,
    ) -> AccountRecord:
        current = self._records.get(account_id)
        if current is None:
            raise KeyError(account_id)
        updated = replace(
            current,
            access_token=access_token,
            expires_at=expires_at,
            refresh_token=refresh_token or current.refresh_token,
        )
        self._records[account_id] = updated
        return replace(updated)


class JsonFileCredentialStore(CredentialStore):
    """Accounts persisted as a JSON list.

    Location: ``Config.EMAIL_ACCOUNTS_PATH/email_accounts.json`` or, when
    unset, ``email_accounts.json`` next to this package. The file is only
    created on the first write.
    """

    FILENAME = "email_accounts.json"

    def __init__(self, path: Optional[str] = None) -> None:
        if path:
            self._accounts_file = path
        elif Config.EMAIL_ACCOUNTS_PATH:
            self._accounts_file = os.path.join(Config.EMAIL_ACCOUNTS_PATH, self.FILENAME)
        else:
            self._accounts_file = os.path.join(os.path.dirname(__file__), self.FILENAME)
        self._lock = asyncio.Lock()

    @property
    def path(self) -> str:
        return self._accounts_file

    # ------------------------------------------------------------------
    # Persistence helpers
    # ------------------------------------------------------------------
    def _load(self) -> Dict[str, AccountRecord]:
        if not os.path.exists(self._accounts_file):
            return {}
        with open(self._accounts_file, "r", encoding="utf-8") as f:
            entries = json.load(f) or []
        if not isinstance(entries, list):
            raise ValueError(f"Accounts file {self._accounts_file} is not a JSON list")
        records: Dict[str, AccountRecord] = {}
        for entry in entries:
            if not (entry.get("id") and entry.get("provider")):
                logger.warning("Skipping account entry without id/provider in %s", self._accounts_file)
                continue
            records[entry["id"]] = AccountRecord(
                id=entry["id"],
                provider=entry["provider"],
                access_token=entry.get("access_token"),
                refresh_token=entry.get("refresh_token"),
                expires_at=entry.get("expires_at"),
                email=entry.get("email"),
            )
        return records

    def _persist(self, records: Dict[str, AccountRecord]) -> None:
        directory = os.path.dirname(self._accounts_file)
        if directory:
            os.makedirs(directory, exist_ok=True)
        tmp = self._accounts_file + ".tmp"
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump([asdict(r) for r in records.values()], f, indent=2)
        os.replace(tmp, self._accounts_file)
        logger.debug("Persisted %d account(s) to %s", len(records), self._accounts_file)

    # ------------------------------------------------------------------
    # CredentialStore
    # ------------------------------------------------------------------
    async def get(self, account_id: str) -> Optional[AccountRecord]:
        async with self._lock:
            return (await asyncio.to_thread(self._load)).get(account_id)

    async def list_accounts(self) -> List[AccountRecord]:
        async with self._lock:
            return list((await asyncio.to_thread(self._load)).values())

    async def upsert(self, record: AccountRecord) -> AccountRecord:
        async with self._lock:
            records = await asyncio.to_thread(self._load)
            records[record.id] = record
            await asyncio.to_thread(self._persist, records)
            return record

    async def update_tokens(
            self,
            account_id: str,
            *,
            access_token: str,
            expires_at: int,
            refresh_token: Optional[str] = None,
    ) -> AccountRecord:
        async with self._lock:
            records = await asyncio.to_thread(self._load)
            current = records.get(account_id)
            if current is None:
                raise KeyError(account_id)
            updated = replace(
                current,
                access_token=access_token,
                expires_at=expires_at,
                refresh_token=refresh_token or current.refresh_token,
            )
            records[account_id] = updated
            await asyncio.to_thread(self._persist, records)
            return updated
