import os
import time
from typing import Optional

import httpx

from oyadeki.config import settings
from oyadeki.logging_config import get_logger, log_timing
from oyadeki.schemas.dialogue import MediaCandidate

logger = get_logger("enrichment_service")

ENRICH_TIMEOUT_SECONDS = float(os.environ.get("ENRICH_TIMEOUT_SECONDS", "5"))
SYNOPSIS_MAX_CHARS = 200

JIKAN_SEARCH_URL = "https://api.jikan.moe/v4/anime"
TMDB_API_BASE = "https://api.themoviedb.org/3"
TMDB_IMAGE_BASE = "https://image.tmdb.org/t/p/w500"
ITUNES_SEARCH_URL = "https://itunes.apple.com/search"


def _get_json(url: str, params: dict, headers: Optional[dict] = None) -> Optional[dict]:
    with httpx.Client(timeout=ENRICH_TIMEOUT_SECONDS) as client:
        response = client.get(url, params=params, headers=headers)
    if response.status_code != 200:
        logger.info(f"Catalog lookup non-200: url={url} status={response.status_code}")
        return None
    return response.json()


def _year_from_date(value: Optional[str]) -> Optional[int]:
    if not value or len(value) < 4 or not value[:4].isdigit():
        return None
    return int(value[:4])


def _trim(value: Optional[str], max_chars: int = SYNOPSIS_MAX_CHARS) -> Optional[str]:
    if not value:
        return None
    return value[:max_chars]


def enrich_from_jikan(media: MediaCandidate) -> MediaCandidate:
    """MyAnimeList via the Jikan API (no auth)."""
    data = _get_json(JIKAN_SEARCH_URL, {"q": media.title, "limit": 3})
    results = (data or {}).get("data") or []
    if not results:
        return media

    best = results[0]
    images = (best.get("images") or {}).get("jpg") or {}
    studios = ", ".join(s.get("name", "") for s in best.get("studios") or [] if s.get("name"))
    return media.model_copy(
        update={
            "title": best.get("title_japanese") or best.get("title") or media.title,
            "year": best.get("year") or media.year,
            "artist_or_cast": media.artist_or_cast or studios or None,
            "poster_url": images.get("large_image_url") or images.get("image_url") or media.poster_url,
            "synopsis": _trim(best.get("synopsis")) or media.synopsis,
            "score": best.get("score") if best.get("score") is not None else media.score,
            "genres": [g["name"] for g in best.get("genres") or [] if g.get("name")] or media.genres,
            "external_url": best.get("url") or media.external_url,
            "external_source": "MyAnimeList",
        }
    )


def enrich_from_tmdb(media: MediaCandidate, search_type: str) -> MediaCandidate:
    """TMDB search. search_type is movie, tv or multi."""
    token = settings.tmdb_api_token
    if not token:
        return media

    endpoint = "search/multi" if search_type == "multi" else f"search/{search_type}"
    data = _get_json(
        f"{TMDB_API_BASE}/{endpoint}",
        {"query": media.title, "language": "ja-JP", "include_adult": "false"},
        headers={"Authorization": f"Bearer {token}", "Accept": "application/json"},
    )
    results = (data or {}).get("results") or []
    if not results:
        return media

    best = results[0]
    media_type = media.media_type
    if search_type == "multi":
        media_type = {"tv": "tv_show", "movie": "movie"}.get(best.get("media_type"), media.media_type)
    path_type = (best.get("media_type") or "movie") if search_type == "multi" else search_type
    poster_path = best.get("poster_path")

    return media.model_copy(
        update={
            "title": best.get("title") or best.get("name") or media.title,
            "media_type": media_type,
            "year": _year_from_date(best.get("release_date") or best.get("first_air_date")) or media.year,
            "poster_url": f"{TMDB_IMAGE_BASE}{poster_path}" if poster_path else media.poster_url,
            "synopsis": _trim(best.get("overview")) or media.synopsis,
            "score": best.get("vote_average") if best.get("vote_average") is not None else media.score,
            "external_url": f"https://www.themoviedb.org/{path_type}/{best.get('id')}",
            "external_source": "TMDB",
        }
    )


def enrich_from_itunes(media: MediaCandidate) -> MediaCandidate:
    """iTunes Search API (no auth). Title plus artist makes the query."""
    term = media.title if not media.artist_or_cast else f"{media.title} {media.artist_or_cast}"
    data = _get_json(ITUNES_SEARCH_URL, {"term": term, "country": "JP", "media": "music", "limit": 3, "lang": "ja_jp"})
    results = (data or {}).get("results") or []
    if not results:
        return media

    best = results[0]
    artwork = best.get("artworkUrl100")
    genre = best.get("primaryGenreName")
    return media.model_copy(
        update={
            "title": best.get("trackName") or media.title,
            "artist_or_cast": best.get("artistName") or media.artist_or_cast,
            "subtitle": best.get("collectionName") or media.subtitle,
            "year": _year_from_date(best.get("releaseDate")) or media.year,
            "poster_url": artwork.replace("100x100", "600x600") if artwork else media.poster_url,
            "genres": [genre] if genre else media.genres,
            "external_url": best.get("trackViewUrl") or media.external_url,
            "external_source": "iTunes",
        }
    )


def enrich_media(media: MediaCandidate) -> MediaCandidate:
    """Best-effort catalog lookup. Never raises; returns the input unchanged on any failure."""
    start = time.monotonic()
    try:
        if media.media_type == "anime":
            enriched = enrich_from_jikan(media)
        elif media.media_type == "movie":
            enriched = enrich_from_tmdb(media, "movie")
        elif media.media_type == "tv_show":
            enriched = enrich_from_tmdb(media, "tv")
        elif media.media_type == "music":
            enriched = enrich_from_itunes(media)
        else:
            enriched = enrich_from_tmdb(media, "multi")
    except Exception as e:
        logger.warning(
            "Enrichment failed, keeping original candidate",
            extra={"context": {"title": media.title, "media_type": media.media_type, "error": str(e)}},
        )
        return media

    log_timing(
        logger,
        "enrich_media_ms",
        (time.monotonic() - start) * 1000,
        media_type=media.media_type,
        source=enriched.external_source,
    )
    return enriched
