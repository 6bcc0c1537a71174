"""
SQLKeyValueStore — KeyValueStore over the ``sitekit_options`` table.

Versioned writes are performed as ``UPDATE ... WHERE version = :current`` so
two writers racing on the same key cannot both succeed; new keys race on the
primary key.  Deletes leave a tombstone row (``deleted = true``) holding the
retired version, and a later write to the key resumes numbering from it.
Any driver or connection failure is surfaced as ``StoreUnavailableError``.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from typing import Any, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from database.models import OptionRecord
from storage.base import KeyValueStore, VersionedValue
from storage.errors import StoreConflictError, StoreUnavailableError

logger = logging.getLogger(__name__)

# Unconditional writes retry this many times when they lose a race.
_UNCONDITIONAL_ATTEMPTS = 3


class SQLKeyValueStore(KeyValueStore):
    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self._session_factory = session_factory

    async def get(self, key: str) -> Optional[VersionedValue]:
        try:
            async with self._session_factory() as session:
                result = await session.execute(
                    select(OptionRecord.value, OptionRecord.version).where(
                        OptionRecord.key == key, OptionRecord.deleted.is_(False)
                    )
                )
                row = result.one_or_none()
        except SQLAlchemyError as exc:
            logger.error("Store read failed for %s: %s", key, exc)
            raise StoreUnavailableError(str(exc)) from exc
        if row is None:
            return None
        return VersionedValue(value=row.value, version=row.version)

    async def set(
        self,
        key: str,
        value: Any,
        *,
        expected_version: Optional[int] = None,
    ) -> int:
        attempts = 1 if expected_version is not None else _UNCONDITIONAL_ATTEMPTS
        for attempt in range(attempts):
            try:
                return await self._write(key, value, expected_version)
            except StoreConflictError:
                if attempt + 1 >= attempts:
                    raise
                logger.debug("Retrying unconditional write to %s after conflict", key)
        raise AssertionError("unreachable")

    async def _write(self, key: str, value: Any, expected_version: Optional[int]) -> int:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        select(OptionRecord.version, OptionRecord.deleted).where(OptionRecord.key == key)
                    )
                    row = result.one_or_none()
                    stored = row.version if row is not None else 0
                    live = 0 if row is None or row.deleted else stored
                    if expected_version is not None and expected_version != live:
                        raise StoreConflictError(key, expected_version, live)

                    now = datetime.now(timezone.utc)
                    if row is None:
                        session.add(
                            OptionRecord(key=key, value=value, version=1, deleted=False, updated_at=now)
                        )
                        return 1

                    updated = await session.execute(
                        update(OptionRecord)
                        .where(OptionRecord.key == key, OptionRecord.version == stored)
                        .values(value=value, version=stored + 1, deleted=False, updated_at=now)
                        .execution_options(synchronize_session=False)
                    )
                    if updated.rowcount == 0:
                        raise StoreConflictError(key, live, -1)
                    return stored + 1
        except IntegrityError as exc:
            # Another writer inserted the key first.
            raise StoreConflictError(key, expected_version or 0, -1) from exc
        except SQLAlchemyError as exc:
            logger.error("Store write failed for %s: %s", key, exc)
            raise StoreUnavailableError(str(exc)) from exc

    async def delete(self, key: str, *, expected_version: Optional[int] = None) -> bool:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        select(OptionRecord.version).where(
                            OptionRecord.key == key, OptionRecord.deleted.is_(False)
                        )
                    )
                    live = result.scalar_one_or_none() or 0
                    if live == 0:
                        if expected_version:
                            raise StoreConflictError(key, expected_version, 0)
                        return False
                    if expected_version is not None and expected_version != live:
                        raise StoreConflictError(key, expected_version, live)

                    retired = await session.execute(
                        update(OptionRecord)
                        .where(
                            OptionRecord.key == key,
                            OptionRecord.version == live,
                            OptionRecord.deleted.is_(False),
                        )
                        .values(value=None, deleted=True, updated_at=datetime.now(timezone.utc))
                        .execution_options(synchronize_session=False)
                    )
                    if retired.rowcount == 0:
                        raise StoreConflictError(key, live, -1)
                    return True
        except SQLAlchemyError as exc:
            logger.error("Store delete failed for %s: %s", key, exc)
            raise StoreUnavailableError(str(exc)) from exc

    async def delete_prefix(self, prefix: str) -> int:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(
                        update(OptionRecord)
                        .where(
                            OptionRecord.key.startswith(prefix, autoescape=True),
                            OptionRecord.deleted.is_(False),
                        )
                        .values(value=None, deleted=True, updated_at=datetime.now(timezone.utc))
                        .execution_options(synchronize_session=False)
                    )
                    return result.rowcount or 0
        except SQLAlchemyError as exc:
            logger.error("Store prefix delete failed for %s: %s", prefix, exc)
            raise StoreUnavailableError(str(exc)) from exc
