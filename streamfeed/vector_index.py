"""In-memory vector similarity index with persisted state.

The index maps ``"<type>-<externalId>"`` identifiers to an embedding and the
metadata needed to render a result. It is bounded: once it grows past its
capacity the earliest inserted entry is evicted (FIFO, not LRU). Lookups are
a brute-force cosine scan, which is fine for a few thousand items.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Iterable

import numpy as np

from .embeddings import ContentEmbedder, cosine_similarity
from .models import ContentItem, VectorMetadata
from .storage import KeyValueStorage, StorageError
from .utils import content_key

logger = logging.getLogger(__name__)

VECTOR_STORAGE_KEY = "@vector_index"
MAX_INDEX_SIZE = 5_000


@dataclass(slots=True)
class VectorRecord:
    vector: np.ndarray
    metadata: VectorMetadata


@dataclass(slots=True)
class SimilarityMatch:
    id: str
    score: float
    metadata: VectorMetadata


class VectorIndex:
    """Bounded cosine-similarity index over catalog items."""

    def __init__(
        self,
        storage: KeyValueStorage,
        embedder: ContentEmbedder,
        *,
        max_size: int = MAX_INDEX_SIZE,
        storage_key: str = VECTOR_STORAGE_KEY,
    ):
        if max_size < 1:
            raise ValueError("max_size must be positive")
        self._storage = storage
        self._embedder = embedder
        self._max_size = max_size
        self._storage_key = storage_key
        self._records: dict[str, VectorRecord] = {}
        self._loaded = False
        self._load_task: asyncio.Task[None] | None = None

    @property
    def max_size(self) -> int:
        return self._max_size

    async def initialize(self) -> None:
        """Load persisted vectors once; concurrent callers share the same load."""

        if self._loaded:
            return
        if self._load_task is None:
            self._load_task = asyncio.ensure_future(self._load())
        await self._load_task

    async def _load(self) -> None:
        try:
            raw = await self._storage.get_item(self._storage_key)
        except StorageError as exc:
            logger.warning("Could not read persisted vector index: %s", exc)
            raw = None

        records: dict[str, VectorRecord] = {}
        if raw:
            try:
                payload = json.loads(raw)
                for record_id, entry in payload.items():
                    records[record_id] = VectorRecord(
                        vector=np.asarray(entry["vector"], dtype=float),
                        metadata=VectorMetadata.model_validate(entry["metadata"]),
                    )
            except (KeyError, TypeError, AttributeError, ValueError) as exc:
                logger.warning("Discarding corrupt vector index: %s", exc)
                records = {}

        self._records = records
        while len(self._records) > self._max_size:
            self._evict_oldest()
        self._loaded = True
        logger.info("Loaded %s vectors from storage", len(self._records))

    async def index_item(self, item: ContentItem) -> str:
        """Embed and upsert ``item``; returns its index identifier."""

        await self.initialize()
        return self._insert(item)

    async def index_items(self, items: Iterable[ContentItem]) -> int:
        """Index a batch and persist the whole index once."""

        await self.initialize()
        count = 0
        for item in items:
            self._insert(item)
            count += 1
        await self.persist()
        logger.debug("Indexed %s items, total %s", count, len(self._records))
        return count

    def _insert(self, item: ContentItem) -> str:
        if item.type is None:
            item = item.model_copy(update={"type": "movie"})
        record_id = content_key(item.type, item.id)
        self._records[record_id] = VectorRecord(
            vector=self._embedder.embed(item),
            metadata=VectorMetadata.from_content(item),
        )
        if len(self._records) > self._max_size:
            self._evict_oldest()
        return record_id

    def _evict_oldest(self) -> None:
        oldest = next(iter(self._records))
        del self._records[oldest]
        logger.debug("Evicted %s from the vector index", oldest)

    async def find_similar(
        self,
        query_vector: np.ndarray,
        top_k: int = 20,
        exclude_ids: Iterable[str] | None = None,
    ) -> list[SimilarityMatch]:
        """Return the ``top_k`` items most similar to ``query_vector``."""

        await self.initialize()
        excluded = set(exclude_ids or ())
        matches = [
            SimilarityMatch(
                id=record_id,
                score=cosine_similarity(query_vector, record.vector),
                metadata=record.metadata,
            )
            for record_id, record in self._records.items()
            if record_id not in excluded
        ]
        # sorted() is stable, so equal scores keep insertion order.
        matches = sorted(matches, key=lambda match: match.score, reverse=True)
        return matches[: max(top_k, 0)]

    async def find_by_genre(
        self,
        genre_id: int,
        min_similarity: float = 0.3,
        top_k: int = 30,
        exclude_ids: Iterable[str] | None = None,
    ) -> list[VectorMetadata]:
        """Return metadata of items matching ``genre_id`` with their ``match_score``."""

        query = self._embedder.genre_query_vector(genre_id)
        candidates = await self.find_similar(query, top_k * 2, exclude_ids)
        return [
            match.metadata.model_copy(update={"match_score": match.score})
            for match in candidates
            if match.score >= min_similarity
        ][:top_k]

    async def find_similar_to(
        self, record_id: str, top_k: int = 20
    ) -> list[SimilarityMatch]:
        """Return neighbours of an already indexed item, excluding the item itself."""

        vector = await self.get_vector(record_id)
        if vector is None:
            return []
        return await self.find_similar(vector, top_k, {record_id})

    async def get_vector(self, record_id: str) -> np.ndarray | None:
        await self.initialize()
        record = self._records.get(record_id)
        return record.vector if record is not None else None

    async def has(self, record_id: str) -> bool:
        await self.initialize()
        return record_id in self._records

    async def size(self) -> int:
        await self.initialize()
        return len(self._records)

    async def persist(self) -> None:
        """Write the full index to storage as a flat record map."""

        payload = {
            record_id: {
                "vector": record.vector.tolist(),
                "metadata": record.metadata.to_record(exclude={"match_score"}),
            }
            for record_id, record in self._records.items()
        }
        try:
            await self._storage.set_item(self._storage_key, json.dumps(payload))
        except StorageError as exc:
            logger.warning("Could not persist vector index: %s", exc)
            return
        logger.debug("Persisted %s vectors", len(payload))

    async def clear(self) -> None:
        """Empty the index and delete its persisted record."""

        if self._load_task is not None and not self._load_task.done():
            await self._load_task
        self._records = {}
        self._loaded = True
        try:
            await self._storage.remove_item(self._storage_key)
        except StorageError as exc:
            logger.warning("Could not delete persisted vector index: %s", exc)
        logger.info("Vector index cleared")
