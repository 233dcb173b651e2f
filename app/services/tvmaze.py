"""Utilities for communicating with the TVmaze catalog API."""

from __future__ import annotations

import asyncio
import logging
import math
from typing import Any

import httpx
from pydantic import ValidationError

from ..config import Settings
from ..errors import (
    CatalogNotFoundError,
    NetworkError,
    ParseError,
    RateLimitedError,
)
from ..models import CastMember, Episode, Season, SeriesRecord, SeriesSummary
from ..utils import parse_date, parse_datetime, strip_html, utcnow

logger = logging.getLogger(__name__)


class TVMazeClient:
    """Thin wrapper around the TVmaze HTTP API.

    TVmaze rate limits bursts with HTTP 429; those and 5xx responses are
    retried with a capped backoff before the failure is surfaced as a
    :class:`FetchError`.
    """

    _SHOW_EMBEDS = ("seasons", "episodes", "cast")
    # Upper bound on how long one Retry-After hint may stall a request.
    MAX_RETRY_AFTER_SECONDS = 30.0

    def __init__(self, settings: Settings, http_client: httpx.AsyncClient):
        self._settings = settings
        self._client = http_client
        self._max_retries = settings.fetch_retry_limit

    def _headers(self) -> dict[str, str]:
        return {
            "Accept": "application/json",
            "User-Agent": f"{self._settings.app_name} (troxide)",
        }

    async def fetch_series(self, series_id: str) -> SeriesRecord:
        """Fetch a series with its seasons, episodes and cast."""

        params = [("embed[]", embed) for embed in self._SHOW_EMBEDS]
        payload = await self._get_json(
            f"/shows/{series_id}", params=params, series_id=series_id
        )
        if not isinstance(payload, dict):
            raise ParseError(
                f"Unexpected TVmaze show payload for {series_id}", series_id=series_id
            )
        try:
            return self.parse_show(payload)
        except (ValidationError, KeyError, TypeError, ValueError) as exc:
            raise ParseError(
                f"Could not parse TVmaze show {series_id}: {exc}", series_id=series_id
            ) from exc

    async def search(self, query: str) -> list[SeriesSummary]:
        """Return catalog matches for ``query`` in the order TVmaze ranks them."""

        normalized = (query or "").strip()
        if not normalized:
            return []
        payload = await self._get_json("/search/shows", params={"q": normalized})
        if not isinstance(payload, list):
            raise ParseError("Unexpected TVmaze search payload")

        results: list[SeriesSummary] = []
        for entry in payload:
            show = entry.get("show") if isinstance(entry, dict) else None
            if not isinstance(show, dict):
                continue
            try:
                results.append(self.parse_summary(show))
            except (ValidationError, KeyError, TypeError, ValueError):
                logger.debug("Skipping malformed TVmaze search entry: %s", show.get("id"))
        return results

    async def _get_json(
        self,
        path: str,
        *,
        params: Any = None,
        series_id: str | None = None,
    ) -> Any:
        attempt = 0
        while True:
            try:
                response = await self._client.get(
                    path, params=params, headers=self._headers()
                )
            except httpx.HTTPError as exc:
                attempt += 1
                if attempt <= self._max_retries:
                    backoff = self._backoff(attempt)
                    logger.info(
                        "Transient error talking to TVmaze (%s). Retrying %s in %.1fs",
                        exc.__class__.__name__,
                        path,
                        backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                raise NetworkError(
                    f"TVmaze request {path} failed: {exc}", series_id=series_id
                ) from exc

            if response.status_code == 429 or 500 <= response.status_code < 600:
                attempt += 1
                retry_after = self._retry_after(response)
                if attempt <= self._max_retries:
                    backoff = self._retry_delay(attempt, retry_after)
                    logger.info(
                        "TVmaze responded %s for %s. Retrying in %.1fs",
                        response.status_code,
                        path,
                        backoff,
                    )
                    await asyncio.sleep(backoff)
                    continue
                if response.status_code == 429:
                    raise RateLimitedError(
                        f"TVmaze rate limit exceeded for {path}",
                        series_id=series_id,
                        retry_after=retry_after,
                    )
                raise NetworkError(
                    f"TVmaze responded {response.status_code} for {path}",
                    series_id=series_id,
                )
            break

        if response.status_code == 404:
            raise CatalogNotFoundError(f"TVmaze has no entry at {path}", series_id=series_id)
        if response.status_code >= 400:
            raise NetworkError(
                f"TVmaze responded {response.status_code} for {path}: {response.text}",
                series_id=series_id,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ParseError(
                f"Unexpected non-JSON TVmaze response for {path}", series_id=series_id
            ) from exc

    @staticmethod
    def _backoff(attempt: int) -> float:
        return min(2 ** (attempt - 1), 10) + (0.1 * attempt)

    @classmethod
    def _retry_delay(cls, attempt: int, retry_after: float | None) -> float:
        """Seconds to wait before the next attempt; server hints are capped."""

        if retry_after is None:
            return cls._backoff(attempt)
        return min(retry_after, cls.MAX_RETRY_AFTER_SECONDS)

    @staticmethod
    def _retry_after(response: httpx.Response) -> float | None:
        header = response.headers.get("retry-after")
        if not header:
            return None
        try:
            value = float(header)
        except ValueError:
            return None
        if not math.isfinite(value):
            return None
        return max(value, 0.0)

    @classmethod
    def parse_summary(cls, show: dict[str, Any]) -> SeriesSummary:
        """Normalise a TVmaze show object into a :class:`SeriesSummary`."""

        return SeriesSummary(**cls._summary_fields(show))

    @classmethod
    def parse_show(cls, show: dict[str, Any]) -> SeriesRecord:
        """Normalise a TVmaze show with embedded seasons/episodes/cast."""

        embedded = show.get("_embedded") or {}
        if "episodes" not in embedded:
            raise ValueError("show payload is missing the embedded episode list")

        seasons: dict[int, Season] = {}
        for raw in embedded.get("seasons") or []:
            if not isinstance(raw, dict) or raw.get("number") is None:
                continue
            season = Season(
                number=int(raw["number"]),
                name=raw.get("name") or None,
                episode_order=raw.get("episodeOrder"),
                premiere_date=parse_date(raw.get("premiereDate")),
                end_date=parse_date(raw.get("endDate")),
            )
            seasons[season.number] = season

        episodes: dict[tuple[int, int], Episode] = {}
        for raw in embedded.get("episodes") or []:
            if not isinstance(raw, dict):
                continue
            # Specials carry no episode number and cannot be addressed.
            if raw.get("season") is None or raw.get("number") is None:
                continue
            episode = Episode(
                season=int(raw["season"]),
                number=int(raw["number"]),
                name=raw.get("name"),
                summary=strip_html(raw.get("summary")),
                airstamp=parse_datetime(raw.get("airstamp")),
                runtime_minutes=raw.get("runtime"),
            )
            episodes[episode.key] = episode

        cast: list[CastMember] = []
        for raw in embedded.get("cast") or []:
            person = raw.get("person") if isinstance(raw, dict) else None
            if not isinstance(person, dict) or not person.get("name"):
                continue
            character = raw.get("character") or {}
            cast.append(
                CastMember(
                    person_id=person.get("id"),
                    name=person["name"],
                    character=character.get("name") if isinstance(character, dict) else None,
                )
            )

        return SeriesRecord(
            **cls._summary_fields(show),
            cast=cast,
            seasons=list(seasons.values()),
            episodes=list(episodes.values()),
            last_fetched_at=utcnow(),
            episodes_fetched=True,
        )

    @staticmethod
    def _summary_fields(show: dict[str, Any]) -> dict[str, Any]:
        image = show.get("image") or {}
        return {
            "id": str(show["id"]),
            "name": show.get("name") or f"Series {show['id']}",
            "summary": strip_html(show.get("summary")),
            "status": show.get("status"),
            "genres": [genre for genre in show.get("genres") or [] if isinstance(genre, str)],
            "language": show.get("language"),
            "premiered": parse_date(show.get("premiered")),
            "ended": parse_date(show.get("ended")),
            "average_runtime": show.get("averageRuntime") or show.get("runtime"),
            "image_url": (image.get("original") or image.get("medium"))
            if isinstance(image, dict)
            else None,
        }

