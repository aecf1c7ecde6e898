"""Namespaced async key/value storage primitives.

Both the expiring cache and the vector index sit on top of these backends.
Backends raise :class:`StorageError` only, tagged with a
:class:`StorageErrorKind` so callers never have to inspect backend-specific
error strings.
"""

from __future__ import annotations

import logging
from datetime import datetime
from enum import Enum
from typing import Iterable

from sqlalchemy import delete, select
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from .db_models import KeyValueRecord

logger = logging.getLogger(__name__)

QUOTA_MARKERS: tuple[str, ...] = (
    "quota",
    "quota_exceeded",
    "disk is full",
    "database or disk is full",
    "sqlite_full",
    "no space left on device",
    "enospc",
)
UNAVAILABLE_MARKERS: tuple[str, ...] = (
    "database is locked",
    "unable to open database",
    "readonly database",
)


class StorageErrorKind(str, Enum):
    """Classification of storage failures."""

    QUOTA = "quota"
    UNAVAILABLE = "unavailable"
    UNKNOWN = "unknown"


class StorageError(Exception):
    """Raised by storage backends when an operation cannot be completed."""

    def __init__(
        self,
        message: str,
        kind: StorageErrorKind = StorageErrorKind.UNKNOWN,
        *,
        key: str | None = None,
    ):
        super().__init__(message)
        self.kind = kind
        self.key = key


def classify_storage_error(exc: BaseException) -> StorageErrorKind:
    """Map an arbitrary backend exception onto a :class:`StorageErrorKind`."""

    if isinstance(exc, StorageError):
        return exc.kind
    if isinstance(exc, OSError) and exc.errno == 28:
        return StorageErrorKind.QUOTA

    fragments = [str(exc)]
    code = getattr(exc, "code", None)
    if code:
        fragments.append(str(code))
    original = getattr(exc, "orig", None)
    if original is not None:
        fragments.append(str(original))
        original_code = getattr(original, "sqlite_errorname", None)
        if original_code:
            fragments.append(str(original_code))
    haystack = " ".join(fragments).casefold()

    if any(marker in haystack for marker in QUOTA_MARKERS):
        return StorageErrorKind.QUOTA
    if any(marker in haystack for marker in UNAVAILABLE_MARKERS):
        return StorageErrorKind.UNAVAILABLE
    return StorageErrorKind.UNKNOWN


def is_quota_error(exc: BaseException) -> bool:
    """Return ``True`` when ``exc`` signals exhausted storage capacity."""

    return classify_storage_error(exc) is StorageErrorKind.QUOTA


class KeyValueStorage:
    """Interface shared by the storage backends."""

    async def get_item(self, key: str) -> str | None:
        raise NotImplementedError

    async def set_item(self, key: str, value: str) -> None:
        raise NotImplementedError

    async def remove_item(self, key: str) -> None:
        raise NotImplementedError

    async def remove_items(self, keys: Iterable[str]) -> None:
        for key in list(keys):
            await self.remove_item(key)

    async def list_keys(self, prefix: str | None = None) -> list[str]:
        raise NotImplementedError


class InMemoryStorage(KeyValueStorage):
    """Process-local storage with an optional byte quota."""

    def __init__(self, max_bytes: int | None = None):
        self._data: dict[str, str] = {}
        self._max_bytes = max_bytes

    @property
    def size_bytes(self) -> int:
        return sum(
            len(key.encode("utf-8")) + len(value.encode("utf-8"))
            for key, value in self._data.items()
        )

    async def get_item(self, key: str) -> str | None:
        return self._data.get(key)

    async def set_item(self, key: str, value: str) -> None:
        if self._max_bytes is not None:
            current = self.size_bytes
            previous = self._data.get(key)
            if previous is not None:
                current -= len(key.encode("utf-8")) + len(previous.encode("utf-8"))
            required = len(key.encode("utf-8")) + len(value.encode("utf-8"))
            if current + required > self._max_bytes:
                raise StorageError(
                    f"Storage quota exceeded writing {key}",
                    StorageErrorKind.QUOTA,
                    key=key,
                )
        self._data[key] = value

    async def remove_item(self, key: str) -> None:
        self._data.pop(key, None)

    async def list_keys(self, prefix: str | None = None) -> list[str]:
        if prefix is None:
            return list(self._data)
        return [key for key in self._data if key.startswith(prefix)]


class SQLKeyValueStorage(KeyValueStorage):
    """Storage backend persisting values in the ``kv_store`` table."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def get_item(self, key: str) -> str | None:
        try:
            async with self._session_factory() as session:
                record = await session.get(KeyValueRecord, key)
                return record.value if record is not None else None
        except SQLAlchemyError as exc:
            raise self._wrap(exc, "read", key) from exc

    async def set_item(self, key: str, value: str) -> None:
        now = datetime.utcnow()
        statement = (
            sqlite_insert(KeyValueRecord)
            .values(key=key, value=value, updated_at=now)
            .on_conflict_do_update(
                index_elements=[KeyValueRecord.key],
                set_={"value": value, "updated_at": now},
            )
        )
        try:
            async with self._session_factory() as session:
                await session.execute(statement)
                await session.commit()
        except SQLAlchemyError as exc:
            raise self._wrap(exc, "write", key) from exc

    async def remove_item(self, key: str) -> None:
        await self.remove_items([key])

    async def remove_items(self, keys: Iterable[str]) -> None:
        key_list = list(keys)
        if not key_list:
            return
        try:
            async with self._session_factory() as session:
                await session.execute(
                    delete(KeyValueRecord).where(KeyValueRecord.key.in_(key_list))
                )
                await session.commit()
        except SQLAlchemyError as exc:
            raise self._wrap(exc, "delete", key_list[0]) from exc

    async def list_keys(self, prefix: str | None = None) -> list[str]:
        statement = select(KeyValueRecord.key)
        if prefix:
            statement = statement.where(
                KeyValueRecord.key.startswith(prefix, autoescape=True)
            )
        try:
            async with self._session_factory() as session:
                result = await session.execute(statement)
                return list(result.scalars())
        except SQLAlchemyError as exc:
            raise self._wrap(exc, "list", prefix) from exc

    @staticmethod
    def _wrap(exc: SQLAlchemyError, operation: str, key: str | None) -> StorageError:
        kind = classify_storage_error(exc)
        logger.debug("Storage %s failed for %s (%s): %s", operation, key, kind.value, exc)
        return StorageError(f"Storage {operation} failed: {exc}", kind, key=key)
