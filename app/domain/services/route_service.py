"""
Route link parsing - distance and duration from known route providers.

Known providers: Strava (routes and activities), RideWithGPS (routes) and
Komoot (tours). Other valid URLs are accepted as plain links. A failure to
fetch or parse a page is never an error for the user: the link is kept and
the fields are simply not prefilled.
"""
import re
from dataclasses import dataclass
from typing import Optional

import httpx

from app.core.config import settings
from app.core.logging import get_logger
from app.core.validation import is_valid_url

logger = get_logger(__name__)

ROUTE_PROVIDERS: dict[str, list[re.Pattern]] = {
    "strava": [
        re.compile(r"https?://(?:www\.)?strava\.com/routes/\d+"),
        re.compile(r"https?://(?:www\.)?strava\.com/activities/\d+"),
    ],
    "ridewithgps": [
        re.compile(r"https?://(?:www\.)?ridewithgps\.com/routes/\d+"),
    ],
    "komoot": [
        re.compile(r"https?://(?:www\.)?komoot\.com/(?:[a-z]{2}-[a-z]{2}/)?tour/\d+"),
    ],
}

# מהירות ממוצעת להערכת משך מסלול Strava (לדף מסלול אין זמן)
STRAVA_ROUTE_ESTIMATED_SPEED_KMH = 20

_TAG_RE = re.compile(r"<[^>]+>")
_DISTANCE_RE = re.compile(r"(\d+(?:[.,]\d+)?)\s*km\b")
_DURATION_RE = re.compile(
    r"(?:(\d+)\s*h(?:ours?|rs?)?(?![a-z]))?\s*"
    r"(?:(\d+)\s*m(?:in(?:ute)?s?)?(?![a-z]))?\s*"
    r"(?:(\d+)\s*s(?:ec(?:ond)?s?)?(?![a-z]))?"
)
_CLOCK_RE = re.compile(r"\b(\d{1,2}):(\d{2})(?::(\d{2}))?\b")


@dataclass
class RouteInfo:
    distance: Optional[float] = None  # km
    duration: Optional[int] = None  # minutes


def _text_after(html: str, marker: str, scope: Optional[str] = None, window: int = 800) -> Optional[str]:
    """הטקסט הגלוי שמופיע אחרי סמן ב-HTML (ללא תגיות), בתוך מיכל scope אם ניתן"""
    start = 0
    if scope is not None:
        start = html.find(scope)
        if start < 0:
            return None
    index = html.find(marker, start)
    if index < 0:
        return None
    fragment = html[index + len(marker):index + len(marker) + window]
    # חיתוך שארית התגית הפתוחה של הסמן
    if ">" in fragment:
        fragment = fragment[fragment.index(">") + 1:]
    return re.sub(r"\s+", " ", _TAG_RE.sub(" ", fragment)).strip()


def _parse_distance(text: Optional[str]) -> Optional[float]:
    if not text:
        return None
    match = _DISTANCE_RE.search(text)
    return float(match.group(1).replace(",", ".")) if match else None


def _parse_duration(text: Optional[str]) -> Optional[int]:
    """Minutes from "1h 32m 10s" or "1:32:10"; the earliest match in the text wins"""
    if not text:
        return None

    candidates = []
    clock = _CLOCK_RE.search(text)
    if clock:
        candidates.append((clock.start(), clock.groups()))
    for match in _DURATION_RE.finditer(text):
        if match.group(1) or match.group(2):
            candidates.append((match.start(), match.groups()))
            break
    if not candidates:
        return None

    _, (hours, minutes, seconds) = min(candidates, key=lambda item: item[0])
    total = int(hours or 0) * 60 + int(minutes or 0)
    # עיגול לדקה הקרובה
    if seconds and int(seconds) >= 30:
        total += 1
    return total


class RouteParser:
    """Recognizes route links and extracts distance/duration from provider pages"""

    def __init__(self, timeout_seconds: Optional[float] = None, client: Optional[httpx.AsyncClient] = None):
        self.timeout_seconds = timeout_seconds or settings.ROUTE_FETCH_TIMEOUT_SECONDS
        self._client = client

    @staticmethod
    def is_valid_url(url: str) -> bool:
        return is_valid_url(url)

    @staticmethod
    def get_provider(url: str) -> Optional[str]:
        for name, patterns in ROUTE_PROVIDERS.items():
            if any(pattern.search(url or "") for pattern in patterns):
                return name
        return None

    @classmethod
    def is_known_provider(cls, url: str) -> bool:
        return cls.get_provider(url) is not None

    async def _fetch(self, url: str) -> Optional[str]:
        try:
            if self._client is not None:
                response = await self._client.get(url, timeout=self.timeout_seconds, follow_redirects=True)
            else:
                async with httpx.AsyncClient(timeout=self.timeout_seconds, follow_redirects=True) as client:
                    response = await client.get(url)
        except httpx.HTTPError as e:
            logger.warning("Route page fetch failed", extra_data={"url": url, "error": str(e)})
            return None

        if response.status_code != 200:
            logger.warning(
                "Route page returned non-200",
                extra_data={"url": url, "status_code": response.status_code},
            )
            return None
        return response.text

    async def parse(self, url: str) -> Optional[RouteInfo]:
        """Fetch a known provider's page; None when unknown or nothing could be parsed"""
        provider = self.get_provider(url)
        if provider is None:
            return None

        html = await self._fetch(url)
        if html is None:
            return None

        info = self.parse_page(provider, url, html)
        if info is None:
            logger.warning("Could not parse route data", extra_data={"url": url, "provider": provider})
        return info

    @staticmethod
    def parse_page(provider: str, url: str, html: str) -> Optional[RouteInfo]:
        if provider == "strava":
            if "/activities/" in url:
                distance = _parse_distance(_text_after(html, 'data-cy="summary-distance"'))
                duration = _parse_duration(_text_after(html, 'data-cy="summary-time"'))
            else:
                distance = _parse_distance(_text_after(html, "Detail_routeStat"))
                duration = (
                    round(distance / STRAVA_ROUTE_ESTIMATED_SPEED_KMH * 60) if distance else None
                )
                if distance:
                    distance = float(round(distance))
        elif provider == "ridewithgps":
            distance = _parse_distance(_text_after(html, 'class="distance"', scope="route-stats"))
            duration = _parse_duration(_text_after(html, 'class="time"', scope="route-stats"))
        elif provider == "komoot":
            distance = _parse_distance(_text_after(html, 'class="distance"', scope="tour-stats"))
            duration = _parse_duration(_text_after(html, 'class="duration"', scope="tour-stats"))
        else:
            return None

        if not distance and not duration:
            return None
        return RouteInfo(distance=distance or None, duration=duration or None)
