"""Privacy-first analytics beacon ingestion.

Beacons are batches of ``{"event": ..., "props": {...}}`` objects sent by the
public site. Only a fixed set of event names and property keys is accepted;
no PII is stored. Artist profile views and social link clicks are folded into
per-band, per-day counters.
"""

from __future__ import annotations

import logging
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from typing import Any, Callable, Iterable

logger = logging.getLogger(__name__)

ALLOWED_EVENTS = frozenset(
    {
        "page_view",
        "event_view",
        "artist_profile_view",
        "social_link_click",
        "share_event",
        "filter_use",
    }
)

SAFE_PROP_KEYS = ("band_profile_id", "event_id", "link_type", "page")

MAX_EVENTS_PER_BATCH = 50
ASCII_DIGITS = "0123456789"


@dataclass(frozen=True)
class MetricEvent:
    event: str
    props: dict[str, Any] = field(default_factory=dict)


@dataclass
class ArtistDailyStats:
    page_views: int = 0
    social_clicks: int = 0


def sanitize_event(raw: Any) -> MetricEvent | None:
    """Return the allow-listed view of ``raw``, or None to drop it."""

    if not isinstance(raw, dict):
        return None
    name = raw.get("event")
    if not isinstance(name, str) or name not in ALLOWED_EVENTS:
        return None

    props: dict[str, Any] = {}
    raw_props = raw.get("props")
    if isinstance(raw_props, dict):
        for key in SAFE_PROP_KEYS:
            if raw_props.get(key) is not None:
                props[key] = raw_props[key]

    return MetricEvent(event=name, props=props)


def parse_band_id(value: Any) -> int | None:
    """Parse a positive integer id the way ``parseInt`` would, else None."""

    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None

    text = str(value).strip()
    digits = ""
    for i, char in enumerate(text):
        if char in ASCII_DIGITS or (i == 0 and char in "+-"):
            digits += char
        else:
            break
    try:
        parsed = int(digits)
    except ValueError:
        return None
    return parsed if parsed > 0 else None


def sanitize_batch(payload: Any) -> list[MetricEvent]:
    """Extract at most ``MAX_EVENTS_PER_BATCH`` valid events from a beacon."""

    raw_events = payload.get("events") if isinstance(payload, dict) else None
    if not isinstance(raw_events, list):
        return []

    events = [event for event in map(sanitize_event, raw_events) if event is not None]
    return events[:MAX_EVENTS_PER_BATCH]


class ArtistStatsRecorder:
    """Thread-safe per-band, per-day counters."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._stats: dict[tuple[int, date], ArtistDailyStats] = defaultdict(ArtistDailyStats)

    def record(
        self,
        day: date,
        *,
        page_views: dict[int, int] | None = None,
        social_clicks: dict[int, int] | None = None,
    ) -> None:
        with self._lock:
            for band_id, count in (page_views or {}).items():
                self._stats[(band_id, day)].page_views += count
            for band_id, count in (social_clicks or {}).items():
                self._stats[(band_id, day)].social_clicks += count

    def get(self, band_id: int, day: date) -> ArtistDailyStats:
        with self._lock:
            stats = self._stats.get((band_id, day))
            if stats is None:
                return ArtistDailyStats()
            return ArtistDailyStats(stats.page_views, stats.social_clicks)


def _count_by_band(events: Iterable[MetricEvent], name: str) -> dict[int, int]:
    counts: dict[int, int] = defaultdict(int)
    for event in events:
        if event.event != name:
            continue
        band_id = parse_band_id(event.props.get("band_profile_id"))
        if band_id:
            counts[band_id] += 1
    return dict(counts)


def _utc_today() -> date:
    return datetime.now(timezone.utc).date()


class MetricsService:
    """Sanitizes beacon batches and aggregates artist counters."""

    def __init__(
        self,
        recorder: ArtistStatsRecorder,
        *,
        today: Callable[[], date] = _utc_today,
    ) -> None:
        self.recorder = recorder
        self._today = today

    def ingest(self, payload: Any) -> int:
        """Ingest one beacon payload.

        Args:
            payload: Decoded JSON body (any shape; invalid shapes are empty).

        Returns:
            Number of accepted events.
        """
        events = sanitize_batch(payload)
        if not events:
            return 0

        page_views = _count_by_band(events, "artist_profile_view")
        social_clicks = _count_by_band(events, "social_link_click")
        if page_views or social_clicks:
            self.recorder.record(
                self._today(),
                page_views=page_views,
                social_clicks=social_clicks,
            )

        logger.debug(
            "metrics.ingested",
            extra={
                "accepted": len(events),
                "bands_viewed": len(page_views),
                "bands_clicked": len(social_clicks),
            },
        )
        return len(events)
