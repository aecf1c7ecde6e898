"""Cache-backed client for The Movie Database (TMDB) catalog."""

from __future__ import annotations

import logging
from typing import Any, Mapping

import httpx
from pydantic import ValidationError

from ..cache import ExpiringCache, make_cache_key
from ..config import Settings
from ..models import CatalogPage, CatalogResponse, ContentType
from ..vector_index import VectorIndex

logger = logging.getLogger(__name__)


class TMDBClient:
    """Catalog query collaborator returning uniform success/data/error envelopes."""

    def __init__(
        self,
        settings: Settings,
        http_client: httpx.AsyncClient,
        cache: ExpiringCache | None = None,
        vector_index: VectorIndex | None = None,
        *,
        index_results: bool = True,
    ):
        self._settings = settings
        self._client = http_client
        self._cache = cache
        self._vector_index = vector_index
        self._index_results = index_results

    async def discover(
        self,
        content_type: ContentType,
        filters: Mapping[str, Any] | None = None,
    ) -> CatalogResponse:
        """Return one page of ``/discover`` results for ``content_type``."""

        params: dict[str, Any] = {
            "watch_region": self._settings.default_region,
            "include_adult": "false",
            "sort_by": "popularity.desc",
        }
        params.update(filters or {})
        return await self._fetch(
            f"/discover/{content_type}",
            params,
            cache_endpoint=f"discover_{content_type}",
            content_type=content_type,
        )

    async def get_similar(
        self, external_id: int, content_type: ContentType
    ) -> CatalogResponse:
        """Return catalog items TMDB considers similar to ``external_id``."""

        return await self._fetch(
            f"/{content_type}/{external_id}/similar",
            {"page": 1},
            cache_endpoint=f"similar_{content_type}_{external_id}",
            content_type=content_type,
        )

    async def _fetch(
        self,
        path: str,
        params: dict[str, Any],
        *,
        cache_endpoint: str,
        content_type: ContentType,
    ) -> CatalogResponse:
        cache_key = make_cache_key(cache_endpoint, params)
        if self._cache is not None:
            cached = await self._cache.get(cache_key)
            if cached is not None:
                page = self._parse_page(cached, content_type)
                if page is not None:
                    return CatalogResponse.ok(page)

        if not self._settings.tmdb_api_key:
            logger.info("TMDB API key missing, skipping %s", path)
            return CatalogResponse.failure("TMDB API key is not configured")

        try:
            response = await self._client.get(
                path,
                params={**params, "api_key": self._settings.tmdb_api_key},
            )
        except httpx.HTTPError as exc:
            logger.warning("TMDB request %s failed: %s", path, exc)
            return CatalogResponse.failure(f"Network error: {exc.__class__.__name__}")

        if response.status_code >= 400:
            message = self._error_message(response)
            logger.warning(
                "TMDB request %s returned %s: %s", path, response.status_code, message
            )
            return CatalogResponse.failure(message)

        try:
            data = response.json()
        except ValueError:
            logger.warning("Unexpected non-JSON TMDB response for %s", path)
            return CatalogResponse.failure("Invalid response from TMDB")

        page = self._parse_page(data, content_type)
        if page is None:
            return CatalogResponse.failure("Unexpected TMDB response structure")

        if self._cache is not None:
            await self._cache.set(cache_key, data)
        if self._vector_index is not None and self._index_results and page.results:
            await self._vector_index.index_items(page.results)

        return CatalogResponse.ok(page)

    @staticmethod
    def _parse_page(data: object, content_type: ContentType) -> CatalogPage | None:
        if not isinstance(data, dict):
            return None
        raw_results = data.get("results") or []
        if not isinstance(raw_results, list):
            return None
        tagged = [
            {**entry, "type": content_type}
            for entry in raw_results
            if isinstance(entry, dict)
        ]
        try:
            return CatalogPage.model_validate({**data, "results": tagged})
        except ValidationError as exc:
            logger.warning("Discarding malformed TMDB page: %s", exc)
            return None

    @staticmethod
    def _error_message(response: httpx.Response) -> str:
        status = response.status_code
        if status == 401:
            return "Invalid API key. Please check your TMDB API key configuration."
        if status == 404:
            return "Resource not found."
        if status == 429:
            return "Too many requests. Please try again later."
        try:
            payload = response.json()
        except ValueError:
            payload = {}
        detail = payload.get("status_message") if isinstance(payload, dict) else None
        return f"TMDB API error: {detail or status}"

