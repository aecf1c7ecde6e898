"""Persistence of recommendation snapshots and dismissed items."""

from __future__ import annotations

import logging
from typing import Sequence

from pydantic import ValidationError

from ..models import (
    BasedOn,
    ContentType,
    DismissalRecord,
    DismissalSet,
    RecommendationItem,
    RecommendationSnapshot,
)
from ..storage import KeyValueStorage, StorageError
from ..utils import Clock, content_key, system_clock

logger = logging.getLogger(__name__)

RECOMMENDATIONS_KEY = "@app_recommendations"
DISMISSED_KEY = "@app_dismissed_recommendations"

RECOMMENDATION_CACHE_TTL_MS = 6 * 60 * 60 * 1000
DISMISSED_TTL_MS = 30 * 24 * 60 * 60 * 1000


class RecommendationStore:
    """Stores the latest snapshot with a freshness window and a dismissal list."""

    def __init__(
        self,
        storage: KeyValueStorage,
        *,
        clock: Clock = system_clock,
        freshness_window_ms: int = RECOMMENDATION_CACHE_TTL_MS,
        dismissed_ttl_ms: int = DISMISSED_TTL_MS,
    ):
        self._storage = storage
        self._clock = clock
        self.freshness_window_ms = freshness_window_ms
        self.dismissed_ttl_ms = dismissed_ttl_ms

    async def get_snapshot(self) -> RecommendationSnapshot:
        """Return the persisted snapshot, or an empty one when missing or unreadable."""

        try:
            raw = await self._storage.get_item(RECOMMENDATIONS_KEY)
        except StorageError as exc:
            logger.warning("Could not read recommendations: %s", exc)
            return RecommendationSnapshot()
        if not raw:
            return RecommendationSnapshot()
        try:
            return RecommendationSnapshot.model_validate_json(raw)
        except ValidationError:
            logger.warning("Discarding corrupt recommendation snapshot")
            await self._remove(RECOMMENDATIONS_KEY)
            return RecommendationSnapshot()

    def is_valid(self, snapshot: RecommendationSnapshot) -> bool:
        return snapshot.is_fresh(self._clock())

    async def save_snapshot(
        self,
        recommendations: Sequence[RecommendationItem],
        based_on: BasedOn | None = None,
    ) -> RecommendationSnapshot:
        """Persist a new snapshot expiring one freshness window from now."""

        now = self._clock()
        snapshot = RecommendationSnapshot(
            recommendations=list(recommendations),
            generated_at=now,
            expires_at=now + self.freshness_window_ms,
            based_on=based_on or BasedOn(),
        )
        await self._write(RECOMMENDATIONS_KEY, snapshot.to_json())
        logger.info(
            "Saved %s recommendations, expiring at %s",
            len(snapshot.recommendations),
            snapshot.expires_at,
        )
        return snapshot

    async def clear_snapshot(self) -> None:
        await self._remove(RECOMMENDATIONS_KEY)

    async def invalidate(self) -> None:
        """Mark the current snapshot expired while keeping its contents."""

        snapshot = await self.get_snapshot()
        if not snapshot.recommendations:
            return
        snapshot.expires_at = 0
        await self._write(RECOMMENDATIONS_KEY, snapshot.to_json())
        logger.info("Recommendation snapshot invalidated")

    async def get_dismissals(self) -> DismissalSet:
        try:
            raw = await self._storage.get_item(DISMISSED_KEY)
        except StorageError as exc:
            logger.warning("Could not read dismissed recommendations: %s", exc)
            return DismissalSet()
        if not raw:
            return DismissalSet()
        try:
            return DismissalSet.model_validate_json(raw)
        except ValidationError:
            logger.warning("Discarding corrupt dismissal list")
            await self._remove(DISMISSED_KEY)
            return DismissalSet()

    async def dismiss(self, external_id: int, content_type: ContentType) -> None:
        """Hide an item from future recommendations for the dismissal lifetime."""

        dismissals = await self.get_dismissals()
        now = self._clock()
        for record in dismissals.items:
            if record.external_id == external_id and record.type == content_type:
                if self._is_active(record, now):
                    logger.debug("%s already dismissed", record.key)
                    return
                record.dismissed_at = now
                break
        else:
            dismissals.items.append(
                DismissalRecord(
                    external_id=external_id, type=content_type, dismissed_at=now
                )
            )
        await self._write(DISMISSED_KEY, dismissals.to_json())
        logger.info("Dismissed %s", content_key(content_type, external_id))

    async def is_dismissed(self, external_id: int, content_type: ContentType) -> bool:
        return content_key(content_type, external_id) in await self.dismissed_keys()

    async def dismissed_keys(self) -> set[str]:
        """Return ``<type>-<externalId>`` keys of every active dismissal."""

        dismissals = await self.get_dismissals()
        now = self._clock()
        return {
            record.key for record in dismissals.items if self._is_active(record, now)
        }

    async def clean_expired_dismissals(self) -> int:
        """Drop dismissals older than the dismissal lifetime; returns how many went."""

        dismissals = await self.get_dismissals()
        now = self._clock()
        active = [record for record in dismissals.items if self._is_active(record, now)]
        removed = len(dismissals.items) - len(active)
        if removed:
            dismissals.items = active
            await self._write(DISMISSED_KEY, dismissals.to_json())
            logger.info("Cleaned %s expired dismissals", removed)
        return removed

    async def clear_dismissals(self) -> None:
        await self._remove(DISMISSED_KEY)

    def _is_active(self, record: DismissalRecord, now: int) -> bool:
        return now - record.dismissed_at < self.dismissed_ttl_ms

    async def _write(self, key: str, value: str) -> None:
        try:
            await self._storage.set_item(key, value)
        except StorageError as exc:
            logger.warning("Could not write %s: %s", key, exc)

    async def _remove(self, key: str) -> None:
        try:
            await self._storage.remove_item(key)
        except StorageError as exc:
            logger.warning("Could not remove %s: %s", key, exc)
