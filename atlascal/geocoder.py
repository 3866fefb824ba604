from __future__ import annotations

import logging
import re
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable

import requests

from atlascal.models import GeocoderConfig, Place

logger = logging.getLogger(__name__)

GeocodeFn = Callable[[str], "Place | None"]


def normalize_place_name(value: str) -> str:
    return re.sub(r"\s+", " ", str(value or "").strip()).casefold()


class NominatimGeocoder:
    def __init__(self, config: GeocoderConfig) -> None:
        self.config = config

    def __call__(self, name: str) -> Place | None:
        return self.geocode(name)

    def geocode(self, name: str) -> Place | None:
        query = str(name or "").strip()
        if not query:
            return None
        response = requests.get(
            f"{self.config.base_url.rstrip('/')}/search",
            params={"q": query, "format": "json", "limit": 1},
            headers={"User-Agent": self.config.user_agent},
            timeout=self.config.timeout_seconds,
        )
        response.raise_for_status()
        results = response.json()
        if not isinstance(results, list) or not results:
            return None
        first = results[0] or {}
        try:
            return Place(
                name=str(first.get("display_name") or query),
                lat=float(first["lat"]),
                lng=float(first["lon"]),
            )
        except (KeyError, TypeError, ValueError):
            return None


class BatchGeocoder:
    """Resolves each distinct place name once per planning batch.

    Lookups run in parallel; any failure counts as "not found" and the batch
    carries on.
    """

    def __init__(self, geocode: GeocodeFn, max_workers: int = 4) -> None:
        self._geocode = geocode
        self._max_workers = max(1, max_workers)
        self._cache: dict[str, Place | None] = {}

    def _lookup(self, name: str) -> Place | None:
        try:
            return self._geocode(name)
        except Exception as exc:
            logger.warning("Geocoding failed for %r: %s", name, exc)
            return None

    def prefetch(self, names: Iterable[str]) -> None:
        pending: dict[str, str] = {}
        for name in names:
            key = normalize_place_name(name)
            if not key or key in self._cache or key in pending:
                continue
            pending[key] = str(name).strip()
        if not pending:
            return
        if len(pending) == 1 or self._max_workers == 1:
            for key, name in pending.items():
                self._cache[key] = self._lookup(name)
            return
        with ThreadPoolExecutor(max_workers=min(self._max_workers, len(pending))) as pool:
            results = pool.map(self._lookup, pending.values())
            for key, place in zip(pending.keys(), results):
                self._cache[key] = place

    def resolve(self, name: str) -> Place | None:
        key = normalize_place_name(name)
        if not key:
            return None
        if key not in self._cache:
            self._cache[key] = self._lookup(str(name).strip())
        return self._cache[key]
