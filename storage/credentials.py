"""
CredentialStore — per-owner OAuth credentials.

One record per owner under ``credential:{owner_id}``.  Access and refresh
tokens are encrypted with ``TokenCipher`` before they reach the store.  The
store holds no business logic; the authentication manager is its only writer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import FrozenSet, Optional

from pydantic import BaseModel, Field, field_serializer

from storage.base import KeyValueStore
from storage.encryption import TokenCipher

logger = logging.getLogger(__name__)


class Credential(BaseModel):
    owner_id: str
    access_token: str
    refresh_token: Optional[str] = None
    token_type: str = "Bearer"
    scopes: FrozenSet[str] = Field(default_factory=frozenset)
    expires_at: datetime

    model_config = {"frozen": True}

    @field_serializer("scopes")
    def _sorted_scopes(self, scopes: FrozenSet[str]) -> list:
        return sorted(scopes)

    def expires_within(self, window: timedelta, now: datetime) -> bool:
        return self.expires_at <= now + window

    def is_expired(self, now: datetime) -> bool:
        return self.expires_at <= now

    @property
    def is_refreshable(self) -> bool:
        return bool(self.refresh_token)


@dataclass(frozen=True)
class StoredCredential:
    credential: Credential
    version: int


class CredentialStore:
    def __init__(self, store: KeyValueStore, cipher: TokenCipher) -> None:
        self._store = store
        self._cipher = cipher

    @staticmethod
    def key_for(owner_id: str) -> str:
        return f"credential:{owner_id}"

    async def get(self, owner_id: str) -> Optional[StoredCredential]:
        record = await self._store.get(self.key_for(owner_id))
        if record is None:
            return None
        data = dict(record.value)
        data["access_token"] = self._cipher.decrypt(data["access_token"])
        if data.get("refresh_token"):
            data["refresh_token"] = self._cipher.decrypt(data["refresh_token"])
        return StoredCredential(credential=Credential.model_validate(data), version=record.version)

    async def save(self, credential: Credential, *, expected_version: Optional[int] = None) -> int:
        data = credential.model_dump(mode="json")
        data["access_token"] = self._cipher.encrypt(credential.access_token)
        if credential.refresh_token:
            data["refresh_token"] = self._cipher.encrypt(credential.refresh_token)
        return await self._store.set(
            self.key_for(credential.owner_id), data, expected_version=expected_version
        )

    async def delete(self, owner_id: str, *, expected_version: Optional[int] = None) -> bool:
        return await self._store.delete(self.key_for(owner_id), expected_version=expected_version)
