"""Fixed-length content embeddings for similarity search.

Each item becomes a 32-dimensional, L2-normalised vector::

    0-17   genres (weighted by position in the catalog's genre list)
    18-21  popularity bucket
    22-25  rating bucket
    26-29  recency bucket
    30-31  content type (movie, tv)
"""

from __future__ import annotations

import logging
from datetime import date, datetime, timezone
from typing import Iterable, Literal, Sequence

import numpy as np

from .genres import GENRE_INDEX_MAP
from .models import ContentItem
from .utils import Clock, system_clock

logger = logging.getLogger(__name__)

VECTOR_DIMENSIONS = 32

GENRE_WEIGHTS: tuple[float, float, float] = (1.0, 0.6, 0.3)

POPULARITY_SLOTS = {"viral": 18, "popular": 19, "moderate": 20, "niche": 21}
RATING_SLOTS = {"excellent": 22, "good": 23, "average": 24, "below": 25}
RECENCY_SLOTS = {"new": 26, "recent": 27, "classic": 28, "vintage": 29}
CONTENT_TYPE_SLOTS = {"movie": 30, "tv": 31}

PopularityBucket = Literal["viral", "popular", "moderate", "niche"]
RatingBucket = Literal["excellent", "good", "average", "below"]
RecencyBucket = Literal["new", "recent", "classic", "vintage"]


def cosine_similarity(a: Sequence[float] | np.ndarray, b: Sequence[float] | np.ndarray) -> float:
    """Return the cosine of the angle between ``a`` and ``b``.

    Zero-magnitude and mismatched-length vectors score ``0.0`` rather than NaN.
    """

    left = np.asarray(a, dtype=float)
    right = np.asarray(b, dtype=float)
    if left.shape != right.shape:
        return 0.0
    left_norm = float(np.linalg.norm(left))
    right_norm = float(np.linalg.norm(right))
    if left_norm == 0.0 or right_norm == 0.0:
        return 0.0
    return float(np.dot(left, right) / (left_norm * right_norm))


def normalize(vector: np.ndarray) -> np.ndarray:
    magnitude = float(np.linalg.norm(vector))
    if magnitude == 0.0:
        return vector
    return vector / magnitude


def popularity_bucket(popularity: float) -> PopularityBucket:
    if popularity > 100:
        return "viral"
    if popularity > 50:
        return "popular"
    if popularity > 20:
        return "moderate"
    return "niche"


def rating_bucket(rating: float) -> RatingBucket:
    if rating >= 8.0:
        return "excellent"
    if rating >= 6.5:
        return "good"
    if rating >= 5.0:
        return "average"
    return "below"


def recency_bucket(age_days: int | None) -> RecencyBucket:
    if age_days is None:
        return "vintage"
    if age_days <= 90:
        return "new"
    if age_days <= 365:
        return "recent"
    if age_days <= 1825:
        return "classic"
    return "vintage"


def _parse_release_date(value: str | None) -> date | None:
    if not value:
        return None
    try:
        return date.fromisoformat(value[:10])
    except ValueError:
        logger.debug("Unparseable release date %r", value)
        return None


class ContentEmbedder:
    """Turns catalog items and query criteria into comparable vectors."""

    dimensions = VECTOR_DIMENSIONS

    def __init__(self, clock: Clock = system_clock):
        self._clock = clock

    def embed(self, item: ContentItem) -> np.ndarray:
        """Return the normalised embedding of ``item``."""

        vector = np.zeros(VECTOR_DIMENSIONS, dtype=float)
        self._encode_genres(vector, item.genre_ids)
        vector[POPULARITY_SLOTS[popularity_bucket(item.popularity)]] = 1.0
        vector[RATING_SLOTS[rating_bucket(item.vote_average)]] = 1.0
        vector[RECENCY_SLOTS[recency_bucket(self._age_days(item.release_date))]] = 1.0
        if item.type in CONTENT_TYPE_SLOTS:
            vector[CONTENT_TYPE_SLOTS[item.type]] = 1.0
        return normalize(vector)

    def genre_query_vector(self, genre_id: int) -> np.ndarray:
        """Return a unit vector pointing purely at ``genre_id``."""

        vector = np.zeros(VECTOR_DIMENSIONS, dtype=float)
        slot = GENRE_INDEX_MAP.get(genre_id)
        if slot is not None:
            vector[slot] = 1.0
        return normalize(vector)

    def query_vector(
        self,
        *,
        genres: Iterable[int] = (),
        popularity: PopularityBucket | None = None,
        rating: RatingBucket | None = None,
        recency: RecencyBucket | None = None,
        content_type: str | None = None,
    ) -> np.ndarray:
        """Compose a query vector from any combination of criteria."""

        vector = np.zeros(VECTOR_DIMENSIONS, dtype=float)
        self._encode_genres(vector, list(genres))
        if popularity in POPULARITY_SLOTS:
            vector[POPULARITY_SLOTS[popularity]] = 1.0
        if rating in RATING_SLOTS:
            vector[RATING_SLOTS[rating]] = 1.0
        if recency in RECENCY_SLOTS:
            vector[RECENCY_SLOTS[recency]] = 1.0
        if content_type in CONTENT_TYPE_SLOTS:
            vector[CONTENT_TYPE_SLOTS[content_type]] = 1.0
        return normalize(vector)

    @staticmethod
    def _encode_genres(vector: np.ndarray, genre_ids: Sequence[int]) -> None:
        for position, genre_id in enumerate(genre_ids):
            slot = GENRE_INDEX_MAP.get(genre_id)
            if slot is None:
                continue
            vector[slot] = GENRE_WEIGHTS[min(position, len(GENRE_WEIGHTS) - 1)]

    def _age_days(self, release_date: str | None) -> int | None:
        released = _parse_release_date(release_date)
        if released is None:
            return None
        today = datetime.fromtimestamp(self._clock() / 1000, tz=timezone.utc).date()
        return (today - released).days
