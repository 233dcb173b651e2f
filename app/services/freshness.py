"""Staleness rules for cached series records."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum

from ..config import Settings
from ..models import SeriesRecord, SeriesStatus


class Freshness(str, Enum):
    FRESH = "fresh"
    STALE = "stale"


@dataclass(frozen=True, slots=True)
class FreshnessPolicy:
    """Decide whether a cached record may be used without refetching.

    Running series expire after ``running_ttl``. Ended series never expire
    once their full episode list has been fetched unless ``ended_ttl`` is
    set. Series whose status is still undetermined are always stale.
    """

    running_ttl: timedelta
    ended_ttl: timedelta | None = None

    @classmethod
    def from_settings(cls, settings: Settings) -> "FreshnessPolicy":
        ended = settings.ended_stale_seconds
        return cls(
            running_ttl=timedelta(seconds=settings.running_stale_seconds),
            ended_ttl=timedelta(seconds=ended) if ended is not None else None,
        )

    def evaluate(
        self,
        status: SeriesStatus,
        last_fetched_at: datetime | None,
        now: datetime,
        *,
        fully_fetched: bool = True,
    ) -> Freshness:
        if last_fetched_at is None or not fully_fetched:
            return Freshness.STALE
        if status is SeriesStatus.TO_BE_DETERMINED:
            return Freshness.STALE
        age = now - last_fetched_at
        if status is SeriesStatus.ENDED:
            if self.ended_ttl is None or age <= self.ended_ttl:
                return Freshness.FRESH
            return Freshness.STALE
        return Freshness.FRESH if age <= self.running_ttl else Freshness.STALE

    def is_stale(self, record: SeriesRecord, now: datetime) -> bool:
        freshness = self.evaluate(
            record.status,
            record.last_fetched_at,
            now,
            fully_fetched=record.episodes_fetched,
        )
        return freshness is Freshness.STALE
