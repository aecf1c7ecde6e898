"""Pydantic models describing catalog payloads and persisted records."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from .utils import content_key

ContentType = Literal["movie", "tv"]
WatchStatus = Literal["want_to_watch", "watched"]
Rating = Literal[-1, 0, 1]
RecommendationSource = Literal["genre", "similar", "popular"]

SCHEMA_VERSION = 1


class RecordModel(BaseModel):
    """Base for records persisted as camelCase JSON."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_record(self, **kwargs: Any) -> dict[str, Any]:
        """Return the JSON-compatible persisted representation."""

        return self.model_dump(mode="json", by_alias=True, **kwargs)

    def to_json(self, **kwargs: Any) -> str:
        return self.model_dump_json(by_alias=True, **kwargs)


class CacheEntry(RecordModel):
    """A cached payload and the moment it was written."""

    payload: Any = None
    stored_at: int


class ContentItem(BaseModel):
    """A single movie or TV entry as returned by the catalog."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: int
    type: ContentType | None = None
    title: str | None = Field(
        default=None, validation_alias=AliasChoices("title", "name")
    )
    overview: str | None = None
    genre_ids: list[int] = Field(default_factory=list)
    popularity: float = 0.0
    vote_average: float = 0.0
    poster_path: str | None = None
    backdrop_path: str | None = None
    release_date: str | None = Field(
        default=None,
        validation_alias=AliasChoices("release_date", "first_air_date"),
    )

    @field_validator("popularity", "vote_average", mode="before")
    @classmethod
    def _default_numbers(cls, value: object) -> object:
        return 0.0 if value is None else value

    @field_validator("genre_ids", mode="before")
    @classmethod
    def _default_genres(cls, value: object) -> object:
        return [] if value is None else value

    @field_validator("release_date", mode="before")
    @classmethod
    def _blank_dates(cls, value: object) -> object:
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def key(self) -> str:
        return content_key(self.type or "movie", self.id)


class CatalogPage(BaseModel):
    """One page of catalog results."""

    model_config = ConfigDict(extra="ignore")

    page: int = 1
    results: list[ContentItem] = Field(default_factory=list)
    total_pages: int | None = None
    total_results: int | None = None


class CatalogResponse(BaseModel):
    """Uniform success/data/error envelope returned by catalog queries."""

    success: bool
    data: CatalogPage = Field(default_factory=CatalogPage)
    error: str | None = None

    @classmethod
    def ok(cls, page: CatalogPage) -> "CatalogResponse":
        return cls(success=True, data=page)

    @classmethod
    def failure(cls, error: str) -> "CatalogResponse":
        return cls(success=False, error=error)

    @property
    def results(self) -> list[ContentItem]:
        return self.data.results if self.success else []


class VectorMetadata(RecordModel):
    """Denormalised metadata stored beside each indexed vector."""

    external_id: int
    type: ContentType
    title: str | None = None
    genre_ids: list[int] = Field(default_factory=list)
    popularity: float = 0.0
    vote_average: float = 0.0
    poster_path: str | None = None
    match_score: float | None = None

    @classmethod
    def from_content(cls, item: ContentItem) -> "VectorMetadata":
        return cls(
            external_id=item.id,
            type=item.type or "movie",
            title=item.title,
            genre_ids=list(item.genre_ids),
            popularity=item.popularity,
            vote_average=item.vote_average,
            poster_path=item.poster_path,
        )


class WatchlistMetadata(RecordModel):
    """Catalog details captured when an item is added to the watchlist."""

    model_config = ConfigDict(extra="allow")

    title: str | None = None
    genre_ids: list[int] = Field(default_factory=list)
    poster_path: str | None = None
    overview: str | None = None
    release_date: str | None = None


class WatchlistItem(RecordModel):
    """A single entry of the user's watch history."""

    external_id: int
    type: ContentType
    status: WatchStatus = "want_to_watch"
    rating: Rating | None = None
    metadata: WatchlistMetadata = Field(default_factory=WatchlistMetadata)
    added_at: int = 0
    updated_at: int = 0
    watched_at: int | None = None

    @property
    def key(self) -> str:
        return content_key(self.type, self.external_id)


class Watchlist(RecordModel):
    items: list[WatchlistItem] = Field(default_factory=list)
    last_modified: int = 0
    schema_version: int = SCHEMA_VERSION


class RecommendationMetadata(RecordModel):
    title: str | None = None
    poster_path: str | None = None
    backdrop_path: str | None = None
    overview: str | None = None
    release_date: str | None = None
    vote_average: float | None = None
    genre_ids: list[int] = Field(default_factory=list)
    popularity: float | None = None


class RecommendationItem(RecordModel):
    """A scored recommendation with the reason it was chosen."""

    external_id: int
    type: ContentType
    score: float
    reason: str
    source: RecommendationSource
    metadata: RecommendationMetadata = Field(default_factory=RecommendationMetadata)

    @property
    def key(self) -> str:
        return content_key(self.type, self.external_id)


class BasedOn(RecordModel):
    """Inputs a snapshot was derived from, kept for auditing."""

    genre_affinities: dict[int, int] = Field(default_factory=dict)
    liked_item_ids: list[int] = Field(default_factory=list)


class RecommendationSnapshot(RecordModel):
    """The persisted result of one recommendation run."""

    recommendations: list[RecommendationItem] = Field(default_factory=list)
    generated_at: int = 0
    expires_at: int = 0
    based_on: BasedOn = Field(default_factory=BasedOn)
    schema_version: int = SCHEMA_VERSION

    def is_fresh(self, now: int) -> bool:
        """Return whether the snapshot may be served without regenerating."""

        return bool(self.recommendations) and now < self.expires_at


class DismissalRecord(RecordModel):
    external_id: int
    type: ContentType
    dismissed_at: int

    @property
    def key(self) -> str:
        return content_key(self.type, self.external_id)


class DismissalSet(RecordModel):
    items: list[DismissalRecord] = Field(default_factory=list)
    schema_version: int = SCHEMA_VERSION
