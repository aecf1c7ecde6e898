"""Composition root wiring storage, catalog, index and engine together."""

from __future__ import annotations

import logging
from contextlib import AsyncExitStack, asynccontextmanager
from dataclasses import dataclass
from typing import AsyncIterator

import httpx

from .cache import ExpiringCache
from .config import Settings, settings as default_settings
from .database import Database
from .embeddings import ContentEmbedder
from .storage import KeyValueStorage, SQLKeyValueStorage
from .services.recommendation_store import RecommendationStore
from .services.recommendations import RecommendationEngine
from .services.tmdb import TMDBClient
from .services.watchlist import WatchlistStore
from .utils import Clock, system_clock
from .vector_index import VectorIndex

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Services:
    database: Database | None
    storage: KeyValueStorage
    cache: ExpiringCache
    catalog: TMDBClient
    embedder: ContentEmbedder
    vector_index: VectorIndex
    watchlist: WatchlistStore
    recommendation_store: RecommendationStore
    engine: RecommendationEngine


@asynccontextmanager
async def create_services(
    settings: Settings | None = None,
    *,
    storage: KeyValueStorage | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
    clock: Clock = system_clock,
) -> AsyncIterator[Services]:
    """Build every collaborator once and tear them down on exit.

    ``storage`` and ``transport`` let callers swap the SQL backend and the
    network for in-memory fakes.
    """

    settings = settings or default_settings
    exit_stack = AsyncExitStack()
    try:
        database: Database | None = None
        if storage is None:
            database = Database(settings.database_url)
            exit_stack.push_async_callback(database.dispose)
            await database.create_all()
            storage = SQLKeyValueStorage(database.session_factory)

        client_kwargs: dict[str, object] = {
            "base_url": str(settings.tmdb_api_url),
            "timeout": httpx.Timeout(settings.tmdb_timeout_seconds, connect=5.0),
        }
        if transport is not None:
            client_kwargs["transport"] = transport
        http_client = await exit_stack.enter_async_context(
            httpx.AsyncClient(**client_kwargs)
        )

        cache = ExpiringCache(storage, ttls=settings.cache_ttls, clock=clock)
        embedder = ContentEmbedder(clock)
        vector_index = VectorIndex(
            storage, embedder, max_size=settings.vector_index_max_size
        )
        catalog = TMDBClient(settings, http_client, cache, vector_index)
        recommendation_store = RecommendationStore(
            storage,
            clock=clock,
            freshness_window_ms=settings.recommendation_ttl_ms,
            dismissed_ttl_ms=settings.dismissed_ttl_ms,
        )
        watchlist = WatchlistStore(storage, clock=clock)
        engine = RecommendationEngine(
            catalog,
            watchlist,
            recommendation_store,
            vector_index=vector_index,
            clock=clock,
            region=settings.default_region,
            target_count=settings.recommendation_count,
            max_per_genre=settings.diversity_max_per_genre,
            diversity_window=settings.diversity_window,
        )
        watchlist.set_change_listener(engine.invalidate)

        removed = await cache.maintain(settings.cache_max_entries)
        if removed:
            logger.info("Cache maintenance removed %s entries", removed)

        yield Services(
            database=database,
            storage=storage,
            cache=cache,
            catalog=catalog,
            embedder=embedder,
            vector_index=vector_index,
            watchlist=watchlist,
            recommendation_store=recommendation_store,
            engine=engine,
        )
    finally:
        await exit_stack.aclose()
