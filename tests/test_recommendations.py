"""Tests for affinity scoring, diversification and the recommendation engine."""

from __future__ import annotations

from typing import Any

import pytest

from streamfeed.embeddings import ContentEmbedder
from streamfeed.models import (
    CatalogPage,
    CatalogResponse,
    ContentItem,
    WatchlistItem,
    WatchlistMetadata,
)
from streamfeed.services.recommendation_store import (
    DISMISSED_TTL_MS,
    RecommendationStore,
)
from streamfeed.services.recommendations import (
    POPULAR_REASON,
    Candidate,
    RecommendationEngine,
    apply_diversity_filter,
    calculate_genre_affinities,
    reason_text,
    score_candidate,
    top_genres,
    top_liked_items,
)
from streamfeed.services.watchlist import WatchlistStore
from streamfeed.vector_index import VectorIndex


class FakeCatalog:
    """Catalog stub returning canned pages, failures or exceptions."""

    def __init__(
        self,
        discover: dict[str, Any] | None = None,
        similar: dict[tuple[str, int], Any] | None = None,
    ):
        self.discover_results = discover or {}
        self.similar_results = similar or {}
        self.discover_calls: list[tuple[str, dict[str, Any]]] = []
        self.similar_calls: list[tuple[int, str]] = []

    async def discover(self, content_type, filters=None) -> CatalogResponse:
        self.discover_calls.append((content_type, dict(filters or {})))
        return self._respond(self.discover_results.get(content_type, []))

    async def get_similar(self, external_id, content_type) -> CatalogResponse:
        self.similar_calls.append((external_id, content_type))
        return self._respond(self.similar_results.get((content_type, external_id), []))

    @staticmethod
    def _respond(result: Any) -> CatalogResponse:
        if isinstance(result, Exception):
            raise result
        if isinstance(result, str):
            return CatalogResponse.failure(result)
        return CatalogResponse.ok(
            CatalogPage(results=[ContentItem.model_validate(entry) for entry in result])
        )


def history_item(
    external_id: int,
    genres: list[int],
    *,
    status: str = "watched",
    rating: int | None = None,
    added_at: int = 0,
) -> WatchlistItem:
    return WatchlistItem(
        external_id=external_id,
        type="movie",
        status=status,
        rating=rating,
        metadata=WatchlistMetadata(genre_ids=genres),
        added_at=added_at,
    )


def candidate(item_id: int, genres: list[int], **kwargs: Any) -> Candidate:
    return Candidate(
        item=ContentItem(id=item_id, type="movie", genre_ids=genres),
        source=kwargs.pop("source", "genre"),
        **kwargs,
    )


def build_engine(storage, clock, catalog, **kwargs: Any):
    watchlist = WatchlistStore(storage, clock=clock)
    store = RecommendationStore(storage, clock=clock)
    engine = RecommendationEngine(catalog, watchlist, store, clock=clock, **kwargs)
    return engine, watchlist, store


async def add_liked(watchlist: WatchlistStore, external_id: int, title: str, genres: list[int]) -> None:
    await watchlist.add(
        external_id, "movie", {"title": title, "genreIds": genres}, status="watched"
    )
    await watchlist.set_rating(external_id, "movie", 1)


def test_genre_affinities_from_history() -> None:
    """Liked watches count 3, want-to-watch 1, in every genre of the item."""

    history = [
        history_item(1, [28], rating=1),
        history_item(2, [28, 35], status="want_to_watch"),
    ]

    assert calculate_genre_affinities(history) == {28: 4, 35: 1}


def test_disliked_and_neutral_affinities() -> None:
    history = [
        history_item(1, [27], rating=-1),
        history_item(2, [27, 18], rating=0),
        history_item(3, [18]),
    ]

    assert calculate_genre_affinities(history) == {27: 0, 18: 2}


def test_top_genres_keeps_positive_scores_only() -> None:
    affinities = {27: -2, 28: 4, 35: 1, 18: 4, 99: 0, 80: 2}

    assert top_genres(affinities) == [(28, 4), (18, 4), (80, 2)]
    assert top_genres({27: -1}) == []


def test_top_liked_items_prefers_recent_additions() -> None:
    history = [
        history_item(1, [28], rating=1, added_at=10),
        history_item(2, [28], rating=1, added_at=30),
        history_item(3, [28], rating=0, added_at=40),
        history_item(4, [28], status="want_to_watch", added_at=50),
        history_item(5, [28], rating=1, added_at=20),
        history_item(6, [28], rating=1, added_at=5),
    ]

    assert [item.external_id for item in top_liked_items(history)] == [2, 5, 1]


def test_score_candidate_components() -> None:
    affinities = {28: 4}
    item = ContentItem(id=1, type="movie", genre_ids=[28], popularity=50, vote_average=8)

    genre_score = score_candidate(Candidate(item=item, source="genre"), affinities)
    similar_score = score_candidate(Candidate(item=item, source="similar"), affinities)
    popular_score = score_candidate(Candidate(item=item, source="popular"), {})

    assert genre_score == 36.0
    assert similar_score == 37.0
    assert popular_score == 8.0


def test_score_caps_genre_and_popularity() -> None:
    item = ContentItem(id=1, type="movie", genre_ids=[28, 35], popularity=500, vote_average=6)

    assert score_candidate(Candidate(item=item, source="genre"), {28: 9, 35: 9}) == 80.0


def test_diversity_cap_applies_to_first_window() -> None:
    """Only three items per primary genre in the first ten; the rest is uncapped."""

    others = [candidate(100 + index, [genre]) for index, genre in enumerate([12, 16, 35, 80, 99, 18, 14])]
    action = [candidate(index, [28, 12]) for index in range(1, 16)]

    selected = apply_diversity_filter(others + action)

    assert len(selected) == 20
    first_window = [item.primary_genre for item in selected[:10]]
    assert first_window.count(28) == 3
    assert all(item.primary_genre == 28 for item in selected[10:])


def test_diversity_cap_with_single_genre() -> None:
    selected = apply_diversity_filter([candidate(index, [28]) for index in range(15)])

    assert [item.item.id for item in selected] == [0, 1, 2]


def test_diversity_skips_duplicates_and_uncapped_genreless_items() -> None:
    ranked = [candidate(1, [28]), candidate(1, [28])] + [candidate(10 + i, []) for i in range(5)]

    selected = apply_diversity_filter(ranked, max_per_genre=1, target_count=4)

    assert [item.item.id for item in selected] == [1, 10, 11, 12]


def test_reason_text_variants() -> None:
    affinities = {28: 4, 35: 6}

    assert reason_text(candidate(1, [28], source="similar", similar_to="Heat"), affinities) == "Similar to Heat"
    assert reason_text(candidate(1, [28, 35], genre_match=[28, 35]), affinities) == "Because you like Comedy"
    assert reason_text(candidate(1, [28]), affinities) == "Because you like Action"
    assert reason_text(candidate(1, [99]), affinities) == POPULAR_REASON
    assert reason_text(candidate(1, [12345]), {12345: 3}) == POPULAR_REASON


@pytest.mark.anyio("asyncio")
async def test_empty_history_falls_back_to_popular(storage, clock) -> None:
    catalog = FakeCatalog(
        discover={
            "movie": [{"id": 1, "title": "A", "genre_ids": [28]}],
            "tv": [{"id": 2, "name": "B", "genre_ids": [18]}],
        }
    )
    engine, _, _ = build_engine(storage, clock, catalog)

    snapshot = await engine.generate()

    assert {item.key for item in snapshot.recommendations} == {"movie-1", "tv-2"}
    assert {item.source for item in snapshot.recommendations} == {"popular"}
    assert {item.reason for item in snapshot.recommendations} == {POPULAR_REASON}
    assert catalog.similar_calls == []
    assert all("with_genres" not in filters for _, filters in catalog.discover_calls)
    assert {content_type for content_type, _ in catalog.discover_calls} == {"movie", "tv"}


@pytest.mark.anyio("asyncio")
async def test_generate_scores_filters_and_explains(storage, clock) -> None:
    catalog = FakeCatalog(
        discover={
            "movie": [
                {"id": 100, "title": "Heat", "genre_ids": [28]},
                {"id": 1, "title": "Ronin", "genre_ids": [28]},
                {"id": 3, "title": "Docs", "genre_ids": [99]},
            ],
            "tv": [{"id": 1, "name": "The Wire", "genre_ids": [80]}],
        },
        similar={("movie", 100): [{"id": 200, "title": "Collateral", "genre_ids": [80]}]},
    )
    engine, watchlist, _ = build_engine(storage, clock, catalog, region="US")
    await add_liked(watchlist, 100, "Heat", [28, 80])

    snapshot = await engine.generate()

    assert [(item.key, item.score, item.source, item.reason) for item in snapshot.recommendations] == [
        ("movie-200", 25.5, "similar", "Similar to Heat"),
        ("movie-1", 21.0, "genre", "Because you like Action"),
        ("tv-1", 21.0, "genre", "Because you like Crime"),
        ("movie-3", 0.0, "genre", POPULAR_REASON),
    ]
    assert snapshot.based_on.genre_affinities == {28: 3, 80: 3}
    assert snapshot.based_on.liked_item_ids == [100]
    assert snapshot.recommendations[0].metadata.title == "Collateral"

    _, filters = catalog.discover_calls[0]
    assert filters["with_genres"] == "28|80"
    assert filters["watch_region"] == "US"
    assert filters["sort_by"] == "popularity.desc"
    assert catalog.similar_calls == [(100, "movie")]


@pytest.mark.anyio("asyncio")
async def test_partial_fetch_failures_degrade_to_empty(storage, clock) -> None:
    catalog = FakeCatalog(
        discover={"movie": RuntimeError("boom"), "tv": "Network error: ConnectError"},
        similar={("movie", 100): [{"id": 200, "title": "Collateral", "genre_ids": [80]}]},
    )
    engine, watchlist, _ = build_engine(storage, clock, catalog)
    await add_liked(watchlist, 100, "Heat", [28])

    snapshot = await engine.generate()

    assert [item.key for item in snapshot.recommendations] == ["movie-200"]


@pytest.mark.anyio("asyncio")
async def test_total_failure_yields_empty_snapshot(storage, clock) -> None:
    catalog = FakeCatalog(discover={"movie": RuntimeError("boom"), "tv": RuntimeError("boom")})
    engine, _, _ = build_engine(storage, clock, catalog)

    snapshot = await engine.generate()

    assert snapshot.recommendations == []


@pytest.mark.anyio("asyncio")
async def test_unexpected_errors_return_previous_snapshot(storage, clock) -> None:
    class BrokenWatchlist:
        async def list_all(self):
            raise RuntimeError("history unavailable")

    store = RecommendationStore(storage, clock=clock)
    engine = RecommendationEngine(FakeCatalog(), BrokenWatchlist(), store, clock=clock)  # type: ignore[arg-type]

    snapshot = await engine.generate()

    assert snapshot.recommendations == []


@pytest.mark.anyio("asyncio")
async def test_fresh_snapshot_is_reused_until_invalidated(storage, clock) -> None:
    catalog = FakeCatalog(discover={"movie": [{"id": 1, "title": "A", "genre_ids": [28]}]})
    engine, watchlist, _ = build_engine(storage, clock, catalog)
    watchlist.set_change_listener(engine.invalidate)

    first = await engine.generate()
    second = await engine.generate()

    assert second == first
    assert len(catalog.discover_calls) == 2

    await watchlist.add(5, "movie", {"genreIds": [28]})
    await engine.generate()
    assert len(catalog.discover_calls) == 4

    await engine.refresh()
    assert len(catalog.discover_calls) == 6


@pytest.mark.anyio("asyncio")
async def test_dismissed_items_reappear_after_ttl(storage, clock) -> None:
    catalog = FakeCatalog(
        discover={
            "movie": [
                {"id": 1, "title": "A", "genre_ids": [28]},
                {"id": 2, "title": "B", "genre_ids": [35]},
            ]
        }
    )
    engine, _, _ = build_engine(storage, clock, catalog)
    await engine.dismiss(1, "movie")

    hidden = await engine.generate()
    assert [item.key for item in hidden.recommendations] == ["movie-2"]
    assert await engine.is_dismissed(1, "movie")

    clock.advance(DISMISSED_TTL_MS + 1)
    assert not await engine.is_dismissed(1, "movie")

    shown = await engine.generate()
    assert {item.key for item in shown.recommendations} == {"movie-1", "movie-2"}


@pytest.mark.anyio("asyncio")
async def test_generated_items_are_indexed(storage, clock) -> None:
    catalog = FakeCatalog(discover={"tv": [{"id": 7, "name": "Show", "genre_ids": [18]}]})
    index = VectorIndex(storage, ContentEmbedder(clock))
    engine, _, _ = build_engine(storage, clock, catalog, vector_index=index)

    await engine.generate()

    assert await index.has("tv-7")


@pytest.mark.anyio("asyncio")
async def test_target_count_limits_results(storage, clock) -> None:
    catalog = FakeCatalog(
        discover={"movie": [{"id": index, "genre_ids": [index]} for index in range(1, 30)]}
    )
    engine, _, _ = build_engine(storage, clock, catalog, target_count=5, diversity_window=5)

    snapshot = await engine.generate()

    assert len(snapshot.recommendations) == 5
