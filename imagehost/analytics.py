"""Per-asset visit counters.

Recording a visit must never get in the way of serving the image, so every failure in
here is logged and dropped.
"""

from __future__ import annotations

import hashlib
import logging
import re
from collections import Counter
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from threading import Lock
from urllib.parse import urlsplit

from imagehost.events import core_event
from imagehost.metrics import visits_recorded_total

_MOBILE_PATTERN = re.compile(r"mobile|android|iphone|ipad|phone", re.IGNORECASE)
_DESKTOP_PATTERN = re.compile(r"windows|macintosh|linux", re.IGNORECASE)


@dataclass(frozen=True)
class VisitContext:
    user_agent: str = ""
    referrer: str | None = None
    remote_ip: str | None = None


@dataclass
class VisitStats:
    short_code: str
    total_visits: int = 0
    unique_visitors: int = 0
    referrers: Counter = field(default_factory=Counter)
    devices: Counter = field(default_factory=Counter)
    countries: Counter = field(default_factory=Counter)
    daily: Counter = field(default_factory=Counter)
    last_visit: datetime | None = None
    visitor_hashes: set[str] = field(default_factory=set, repr=False)

    def snapshot(self) -> VisitStats:
        return replace(
            self,
            referrers=Counter(self.referrers),
            devices=Counter(self.devices),
            countries=Counter(self.countries),
            daily=Counter(self.daily),
            visitor_hashes=set(),
        )


def classify_device(user_agent: str | None) -> str:
    if not user_agent:
        return "unknown"
    if _MOBILE_PATTERN.search(user_agent):
        return "mobile"
    if _DESKTOP_PATTERN.search(user_agent):
        return "desktop"
    return "unknown"


def referrer_domain(referrer: str | None) -> str:
    if not referrer:
        return "direct"
    try:
        host = urlsplit(referrer.strip()).hostname
    except ValueError:
        return "direct"
    return host or "direct"


class NullCountryResolver:
    def __call__(self, ip: str) -> str | None:
        return None


class GeoIPCountryResolver:
    """Looks up ISO country codes in a MaxMind GeoLite2/GeoIP2 country database."""

    def __init__(self, database_path: str) -> None:
        import geoip2.database
        import geoip2.errors

        self._reader = geoip2.database.Reader(database_path)
        self._not_found = geoip2.errors.AddressNotFoundError

    def __call__(self, ip: str) -> str | None:
        try:
            return self._reader.country(ip).country.iso_code
        except (self._not_found, ValueError):
            return None

    def close(self) -> None:
        self._reader.close()


def build_country_resolver(database_path: str) -> Callable[[str], str | None]:
    if not database_path:
        return NullCountryResolver()
    return GeoIPCountryResolver(database_path)


class VisitAnalyticsAggregator:
    def __init__(
        self,
        asset_exists: Callable[[str], bool],
        country_resolver: Callable[[str], str | None] | None = None,
        clock: Callable[[], datetime] = lambda: datetime.now(timezone.utc),
    ) -> None:
        self.asset_exists = asset_exists
        self.country_resolver = country_resolver or NullCountryResolver()
        self.clock = clock
        self._stats: dict[str, VisitStats] = {}
        self._lock = Lock()

    def record_visit(self, short_code: str, context: VisitContext) -> VisitStats | None:
        try:
            if not self.asset_exists(short_code):
                core_event({"event": "visit_dropped", "short_code": short_code, "reason": "unknown_asset"})
                return None

            device = classify_device(context.user_agent)
            domain = referrer_domain(context.referrer)
            country = self.country_resolver(context.remote_ip) if context.remote_ip else None
            now = self.clock()
            visitor = hashlib.sha256(context.remote_ip.encode("utf-8")).hexdigest() if context.remote_ip else None

            with self._lock:
                stats = self._stats.setdefault(short_code, VisitStats(short_code=short_code))
                stats.total_visits += 1
                stats.referrers[domain] += 1
                stats.devices[device] += 1
                if country:
                    stats.countries[country] += 1
                stats.daily[now.date().isoformat()] += 1
                if visitor and visitor not in stats.visitor_hashes:
                    stats.visitor_hashes.add(visitor)
                    stats.unique_visitors += 1
                stats.last_visit = now
                snapshot = stats.snapshot()
            visits_recorded_total.inc()
            return snapshot
        except Exception as exc:
            core_event(
                {
                    "event": "visit_dropped",
                    "short_code": short_code,
                    "reason": "analytics_error",
                    "detail": str(exc),
                },
                level=logging.WARNING,
            )
            return None

    def get_stats(self, short_code: str) -> VisitStats:
        with self._lock:
            stats = self._stats.get(short_code)
            if stats is None:
                return VisitStats(short_code=short_code)
            return stats.snapshot()

    def forget(self, short_code: str) -> None:
        with self._lock:
            self._stats.pop(short_code, None)

    def close(self) -> None:
        resolver, self.country_resolver = self.country_resolver, NullCountryResolver()
        close = getattr(resolver, "close", None)
        if close is not None:
            close()
