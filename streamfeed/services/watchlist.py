"""Persisted watchlist acting as the user's watch history."""

from __future__ import annotations

import logging
from collections import Counter
from typing import Any, Awaitable, Callable, Mapping

from pydantic import ValidationError

from ..models import (
    ContentType,
    Rating,
    WatchStatus,
    Watchlist,
    WatchlistItem,
    WatchlistMetadata,
)
from ..storage import KeyValueStorage, StorageError
from ..utils import Clock, system_clock

logger = logging.getLogger(__name__)

WATCHLIST_KEY = "@app_watchlist"
VALID_STATUSES: tuple[str, ...] = ("want_to_watch", "watched")
VALID_RATINGS: tuple[int | None, ...] = (-1, 0, 1, None)

ChangeListener = Callable[[], Awaitable[None]]


class WatchlistStore:
    """CRUD access to the watchlist; every change notifies ``on_change``."""

    def __init__(
        self,
        storage: KeyValueStorage,
        *,
        clock: Clock = system_clock,
        on_change: ChangeListener | None = None,
    ):
        self._storage = storage
        self._clock = clock
        self._on_change = on_change

    def set_change_listener(self, listener: ChangeListener | None) -> None:
        self._on_change = listener

    async def load(self) -> Watchlist:
        try:
            raw = await self._storage.get_item(WATCHLIST_KEY)
        except StorageError as exc:
            logger.warning("Could not read watchlist: %s", exc)
            return Watchlist()
        if not raw:
            return Watchlist()
        try:
            return Watchlist.model_validate_json(raw)
        except ValidationError as exc:
            logger.warning("Watchlist record is corrupt, treating as empty: %s", exc)
            return Watchlist()

    async def list_all(self) -> list[WatchlistItem]:
        """Return every watch-history entry."""

        return (await self.load()).items

    async def get_item(
        self, external_id: int, content_type: ContentType
    ) -> WatchlistItem | None:
        for item in await self.list_all():
            if item.external_id == external_id and item.type == content_type:
                return item
        return None

    async def contains(self, external_id: int, content_type: ContentType) -> bool:
        return await self.get_item(external_id, content_type) is not None

    async def add(
        self,
        external_id: int,
        content_type: ContentType,
        metadata: WatchlistMetadata | Mapping[str, Any] | None = None,
        status: WatchStatus = "want_to_watch",
    ) -> WatchlistItem:
        """Add an item, or update it in place when it is already present."""

        self._check_status(status)
        if metadata is not None and not isinstance(metadata, WatchlistMetadata):
            metadata = WatchlistMetadata.model_validate(metadata)

        if await self.contains(external_id, content_type):
            updates: dict[str, Any] = {"status": status}
            if metadata is not None:
                updates["metadata"] = metadata
            updated = await self.update(external_id, content_type, updates)
            if updated is not None:
                return updated

        now = self._clock()
        item = WatchlistItem(
            external_id=external_id,
            type=content_type,
            status=status,
            metadata=metadata or WatchlistMetadata(),
            added_at=now,
            updated_at=now,
            watched_at=now if status == "watched" else None,
        )
        watchlist = await self.load()
        watchlist.items.append(item)
        await self._save(watchlist)
        logger.info("Added %s to watchlist", item.key)
        return item

    async def update(
        self,
        external_id: int,
        content_type: ContentType,
        updates: Mapping[str, Any],
    ) -> WatchlistItem | None:
        """Apply ``updates`` to an existing item; returns ``None`` when it is absent."""

        watchlist = await self.load()
        for index, existing in enumerate(watchlist.items):
            if existing.external_id == external_id and existing.type == content_type:
                break
        else:
            logger.debug("Watchlist update skipped, %s-%s missing", content_type, external_id)
            return None

        now = self._clock()
        changes = dict(updates)
        status = changes.get("status")
        if status is not None:
            self._check_status(status)
            if status == "watched" and existing.status != "watched":
                changes["watched_at"] = now
            elif status == "want_to_watch":
                changes["watched_at"] = None
        if "rating" in changes:
            self._check_rating(changes["rating"])
        changes["updated_at"] = now

        updated = WatchlistItem.model_validate(
            {**existing.model_dump(), **changes}
        )
        watchlist.items[index] = updated
        await self._save(watchlist)
        return updated

    async def remove(self, external_id: int, content_type: ContentType) -> bool:
        watchlist = await self.load()
        remaining = [
            item
            for item in watchlist.items
            if not (item.external_id == external_id and item.type == content_type)
        ]
        if len(remaining) == len(watchlist.items):
            return False
        watchlist.items = remaining
        await self._save(watchlist)
        logger.info("Removed %s-%s from watchlist", content_type, external_id)
        return True

    async def set_status(
        self, external_id: int, content_type: ContentType, status: WatchStatus
    ) -> WatchlistItem | None:
        self._check_status(status)
        return await self.update(external_id, content_type, {"status": status})

    async def set_rating(
        self, external_id: int, content_type: ContentType, rating: Rating | None
    ) -> WatchlistItem | None:
        self._check_rating(rating)
        return await self.update(external_id, content_type, {"rating": rating})

    async def by_status(self, status: WatchStatus) -> list[WatchlistItem]:
        return [item for item in await self.list_all() if item.status == status]

    async def watched_with_rating(self, rating: Rating) -> list[WatchlistItem]:
        return [
            item
            for item in await self.list_all()
            if item.status == "watched" and item.rating == rating
        ]

    async def stats(self) -> dict[str, int]:
        items = await self.list_all()
        statuses = Counter(item.status for item in items)
        ratings = Counter(item.rating for item in items if item.status == "watched")
        return {
            "total": len(items),
            "want_to_watch": statuses["want_to_watch"],
            "watched": statuses["watched"],
            "liked": ratings[1],
            "disliked": ratings[-1],
        }

    async def clear(self) -> None:
        await self._storage.remove_item(WATCHLIST_KEY)
        await self._notify()

    async def _save(self, watchlist: Watchlist) -> None:
        """Persist the watchlist; storage errors propagate to the caller."""

        watchlist.last_modified = self._clock()
        await self._storage.set_item(WATCHLIST_KEY, watchlist.to_json())
        await self._notify()

    async def _notify(self) -> None:
        if self._on_change is None:
            return
        try:
            await self._on_change()
        except Exception:  # pragma: no cover
            logger.exception("Watchlist change listener failed")

    @staticmethod
    def _check_status(status: object) -> None:
        if status not in VALID_STATUSES:
            raise ValueError('status must be "want_to_watch" or "watched"')

    @staticmethod
    def _check_rating(rating: object) -> None:
        if rating not in VALID_RATINGS:
            raise ValueError("rating must be -1, 0, 1 or None")
