"""Personalised recommendation engine.

Watch history is turned into per-genre affinities, which drive two candidate
sources fetched concurrently: catalog discovery filtered by the user's top
genres, and "similar titles" for their most recently liked items. Candidates
are scored (70% genre affinity, 30% similarity), filtered against the watch
history and the dismissal list, diversified, and persisted as a snapshot with
a freshness window.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Iterable, Mapping, Sequence

from ..genres import genre_name
from ..models import (
    BasedOn,
    CatalogResponse,
    ContentItem,
    ContentType,
    RecommendationItem,
    RecommendationMetadata,
    RecommendationSnapshot,
    RecommendationSource,
    WatchlistItem,
)
from ..utils import Clock, content_key, system_clock
from ..vector_index import VectorIndex
from .recommendation_store import RecommendationStore
from .tmdb import TMDBClient
from .watchlist import WatchlistStore

logger = logging.getLogger(__name__)

GENRE_AFFINITY_WEIGHT = 0.70
SIMILAR_CONTENT_WEIGHT = 0.30
SIMILAR_BASE_SCORE = 50

WATCHED_LIKED = 3
WATCHED_NEUTRAL = 1
WATCHED_DISLIKED = -1
WANT_TO_WATCH = 1

TOP_GENRE_COUNT = 3
TOP_LIKED_COUNT = 3
CONTENT_TYPES: tuple[ContentType, ...] = ("movie", "tv")

POPULAR_REASON = "Popular in your region"
LIKED_FALLBACK_TITLE = "a title you liked"


@dataclass(slots=True)
class Candidate:
    """A catalog item proposed for recommendation, before ranking."""

    item: ContentItem
    source: RecommendationSource
    genre_match: list[int] = field(default_factory=list)
    similar_to: str | None = None
    score: float = 0.0

    @property
    def key(self) -> str:
        return content_key(self.item.type or "movie", self.item.id)

    @property
    def primary_genre(self) -> int | None:
        return self.item.genre_ids[0] if self.item.genre_ids else None


def affinity_multiplier(item: WatchlistItem) -> int:
    if item.status == "watched":
        if item.rating == 1:
            return WATCHED_LIKED
        if item.rating == -1:
            return WATCHED_DISLIKED
        return WATCHED_NEUTRAL
    return WANT_TO_WATCH


def calculate_genre_affinities(items: Iterable[WatchlistItem]) -> dict[int, int]:
    """Sum each item's status/rating multiplier into every genre it belongs to."""

    affinities: dict[int, int] = {}
    for item in items:
        multiplier = affinity_multiplier(item)
        for genre_id in item.metadata.genre_ids:
            affinities[genre_id] = affinities.get(genre_id, 0) + multiplier
    return affinities


def top_genres(
    affinities: Mapping[int, int], count: int = TOP_GENRE_COUNT
) -> list[tuple[int, int]]:
    """Return up to ``count`` ``(genre_id, score)`` pairs with positive affinity."""

    positive = [(genre_id, score) for genre_id, score in affinities.items() if score > 0]
    positive.sort(key=lambda pair: pair[1], reverse=True)
    return positive[:count]


def top_liked_items(
    items: Iterable[WatchlistItem], count: int = TOP_LIKED_COUNT
) -> list[WatchlistItem]:
    """Return the most recently added watched items rated thumbs-up."""

    liked = [item for item in items if item.status == "watched" and item.rating == 1]
    liked.sort(key=lambda item: item.added_at, reverse=True)
    return liked[:count]


def genre_component(genre_ids: Sequence[int], affinities: Mapping[int, int]) -> float:
    """Return the item's genre affinity on a 0-100 scale (capped at a raw sum of 10)."""

    raw = sum(affinities.get(genre_id, 0) for genre_id in genre_ids)
    return min(raw / 10, 1) * 100


def score_candidate(candidate: Candidate, affinities: Mapping[int, int]) -> float:
    item = candidate.item
    genre_score = genre_component(item.genre_ids, affinities)

    score = 0.0
    if candidate.source == "genre":
        score += genre_score * GENRE_AFFINITY_WEIGHT
    elif candidate.source == "similar":
        score += SIMILAR_BASE_SCORE * SIMILAR_CONTENT_WEIGHT
        score += genre_score * GENRE_AFFINITY_WEIGHT * 0.5

    score += min(item.popularity / 100, 1) * 10
    score += max(0.0, item.vote_average - 7) * 3
    return round(score, 2)


def apply_diversity_filter(
    ranked: Iterable[Candidate],
    *,
    max_per_genre: int = 3,
    target_count: int = 20,
    window: int = 10,
) -> list[Candidate]:
    """Pick up to ``target_count`` candidates, capping each primary genre in the first ``window``."""

    accepted: list[Candidate] = []
    genre_counts: dict[int, int] = {}
    seen: set[str] = set()

    for candidate in ranked:
        if len(accepted) >= target_count:
            break
        if candidate.key in seen:
            continue

        primary = candidate.primary_genre
        if (
            len(accepted) < window
            and primary is not None
            and genre_counts.get(primary, 0) >= max_per_genre
        ):
            continue

        accepted.append(candidate)
        seen.add(candidate.key)
        if primary is not None:
            genre_counts[primary] = genre_counts.get(primary, 0) + 1

    return accepted


def reason_text(candidate: Candidate, affinities: Mapping[int, int]) -> str:
    if candidate.source == "similar" and candidate.similar_to:
        return f"Similar to {candidate.similar_to}"

    best_genre: int | None = None
    best_score = 0
    for genre_id in candidate.genre_match or candidate.item.genre_ids:
        score = affinities.get(genre_id, 0)
        if score > best_score:
            best_genre, best_score = genre_id, score

    name = genre_name(best_genre) if best_genre is not None else None
    if name:
        return f"Because you like {name}"
    return POPULAR_REASON


class RecommendationEngine:
    """Builds, caches and serves the personalised recommendation feed."""

    def __init__(
        self,
        catalog: TMDBClient,
        watchlist: WatchlistStore,
        store: RecommendationStore,
        *,
        vector_index: VectorIndex | None = None,
        clock: Clock = system_clock,
        region: str = "GB",
        target_count: int = 20,
        max_per_genre: int = 3,
        diversity_window: int = 10,
    ):
        self._catalog = catalog
        self._watchlist = watchlist
        self._store = store
        self._vector_index = vector_index
        self._clock = clock
        self._region = region
        self._target_count = target_count
        self._max_per_genre = max_per_genre
        self._diversity_window = diversity_window

    async def generate(self) -> RecommendationSnapshot:
        """Return the cached snapshot while fresh, otherwise build a new one."""

        await self._store.clean_expired_dismissals()

        cached = await self._store.get_snapshot()
        if cached.is_fresh(self._clock()):
            logger.debug("Using cached recommendations")
            return cached

        try:
            return await self._generate_fresh()
        except Exception:
            logger.exception("Recommendation generation failed")
            return cached

    async def refresh(self) -> RecommendationSnapshot:
        """Force a regeneration regardless of the snapshot's freshness."""

        await self._store.invalidate()
        return await self.generate()

    async def invalidate(self) -> None:
        await self._store.invalidate()

    async def dismiss(self, external_id: int, content_type: ContentType) -> None:
        await self._store.dismiss(external_id, content_type)

    async def is_dismissed(self, external_id: int, content_type: ContentType) -> bool:
        return await self._store.is_dismissed(external_id, content_type)

    async def _generate_fresh(self) -> RecommendationSnapshot:
        logger.info("Generating fresh recommendations")
        history = await self._watchlist.list_all()

        affinities = calculate_genre_affinities(history)
        genres = top_genres(affinities)
        liked = top_liked_items(history)
        logger.debug("Top genres %s, %s liked items", genres, len(liked))

        genre_candidates, similar_candidates = await asyncio.gather(
            self._fetch_genre_candidates([genre_id for genre_id, _ in genres]),
            self._fetch_similar_candidates(liked),
        )
        logger.debug(
            "Fetched %s genre and %s similar candidates",
            len(genre_candidates),
            len(similar_candidates),
        )

        candidates = genre_candidates + similar_candidates
        for candidate in candidates:
            candidate.score = score_candidate(candidate, affinities)
        candidates.sort(key=lambda candidate: candidate.score, reverse=True)

        history_keys = {item.key for item in history}
        dismissed_keys = await self._store.dismissed_keys()
        eligible = [
            candidate
            for candidate in candidates
            if candidate.key not in history_keys and candidate.key not in dismissed_keys
        ]

        selected = apply_diversity_filter(
            eligible,
            max_per_genre=self._max_per_genre,
            target_count=self._target_count,
            window=self._diversity_window,
        )
        recommendations = [
            self._to_recommendation(candidate, affinities) for candidate in selected
        ]

        snapshot = await self._store.save_snapshot(
            recommendations,
            BasedOn(
                genre_affinities=affinities,
                liked_item_ids=[item.external_id for item in liked],
            ),
        )
        if self._vector_index is not None and selected:
            await self._vector_index.index_items(candidate.item for candidate in selected)

        logger.info("Generated %s recommendations", len(recommendations))
        return snapshot

    async def _fetch_genre_candidates(self, genre_ids: list[int]) -> list[Candidate]:
        if not genre_ids:
            logger.debug("No positive genre affinity, falling back to popular titles")
            filters: dict[str, object] = {"page": 1, "watch_region": self._region}
            source: RecommendationSource = "popular"
        else:
            filters = {
                "with_genres": "|".join(str(genre_id) for genre_id in genre_ids),
                "page": 1,
                "watch_region": self._region,
                "sort_by": "popularity.desc",
            }
            source = "genre"

        pages = await asyncio.gather(
            *(
                self._collect(
                    self._catalog.discover(content_type, filters),
                    content_type,
                    f"discover {content_type}",
                )
                for content_type in CONTENT_TYPES
            )
        )

        candidates: list[Candidate] = []
        for items in pages:
            for item in items:
                match = [genre_id for genre_id in genre_ids if genre_id in item.genre_ids]
                candidates.append(Candidate(item=item, source=source, genre_match=match))
        return candidates

    async def _fetch_similar_candidates(
        self, liked: Sequence[WatchlistItem]
    ) -> list[Candidate]:
        if not liked:
            return []

        pages = await asyncio.gather(
            *(
                self._collect(
                    self._catalog.get_similar(item.external_id, item.type),
                    item.type,
                    f"similar to {item.key}",
                )
                for item in liked
            )
        )

        candidates: list[Candidate] = []
        for source_item, items in zip(liked, pages):
            title = source_item.metadata.title or LIKED_FALLBACK_TITLE
            for item in items:
                candidates.append(
                    Candidate(
                        item=item,
                        source="similar",
                        similar_to=title,
                    )
                )
        return candidates

    @staticmethod
    async def _collect(
        request: Awaitable[CatalogResponse],
        content_type: ContentType,
        description: str,
    ) -> list[ContentItem]:
        """Await one catalog call, degrading any failure to an empty contribution."""

        try:
            response = await request
        except Exception:
            logger.exception("Candidate fetch (%s) raised", description)
            return []
        if not response.success:
            logger.warning("Candidate fetch (%s) failed: %s", description, response.error)
            return []
        return [
            item if item.type else item.model_copy(update={"type": content_type})
            for item in response.results
        ]

    @staticmethod
    def _to_recommendation(
        candidate: Candidate, affinities: Mapping[int, int]
    ) -> RecommendationItem:
        item = candidate.item
        return RecommendationItem(
            external_id=item.id,
            type=item.type or "movie",
            score=candidate.score,
            reason=reason_text(candidate, affinities),
            source=candidate.source,
            metadata=RecommendationMetadata(
                title=item.title,
                poster_path=item.poster_path,
                backdrop_path=item.backdrop_path,
                overview=item.overview,
                release_date=item.release_date,
                vote_average=item.vote_average,
                genre_ids=list(item.genre_ids),
                popularity=item.popularity,
            ),
        )
