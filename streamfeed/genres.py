"""Genre identifiers shared by the catalog, embeddings and reason text."""

from __future__ import annotations

GENRE_NAMES: dict[int, str] = {
    28: "Action",
    12: "Adventure",
    16: "Animation",
    35: "Comedy",
    80: "Crime",
    99: "Documentary",
    18: "Drama",
    10751: "Family",
    14: "Fantasy",
    36: "History",
    27: "Horror",
    10402: "Music",
    9648: "Mystery",
    10749: "Romance",
    878: "Science Fiction",
    10770: "TV Movie",
    53: "Thriller",
    10752: "War",
    37: "Western",
    10759: "Action & Adventure",
    10762: "Kids",
    10763: "News",
    10764: "Reality",
    10765: "Sci-Fi & Fantasy",
    10766: "Soap",
    10767: "Talk",
    10768: "War & Politics",
}

# Embedding slots 0-17; TV-only genres have no slot of their own.
GENRE_INDEX_MAP: dict[int, int] = {
    28: 0,
    12: 1,
    16: 2,
    35: 3,
    80: 4,
    99: 5,
    18: 6,
    10751: 7,
    14: 8,
    36: 9,
    27: 10,
    10402: 11,
    9648: 12,
    10749: 13,
    878: 14,
    53: 15,
    10752: 16,
    37: 17,
}


def genre_name(genre_id: int) -> str | None:
    """Return the display name for ``genre_id`` if it is known."""

    return GENRE_NAMES.get(genre_id)
