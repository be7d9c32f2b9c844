"""
Forward and reverse geocoding against a Nominatim-compatible service.
"""

import logging
from dataclasses import dataclass
from typing import List, Optional

import httpx

from safereach.app.core.exceptions import GeocodingError
from safereach.app.services.geo import Coordinates

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class GeocodedPlace:
    coordinates: Coordinates
    display_name: str


class NominatimGeocoder:
    """
    Address search client.

    ``GET /search?q=<address>&limit=1`` answers with ``[{lat, lon, display_name}]``
    and ``GET /reverse?lat=&lon=`` with ``{display_name}``.
    """

    def __init__(self, client: httpx.AsyncClient, base_url: str, user_agent: str):
        self.client = client
        self.base_url = base_url.rstrip("/")
        # Nominatim's usage policy requires an identifying agent
        self.headers = {"User-Agent": user_agent, "Accept": "application/json"}

    async def _get(self, path: str, params: dict):
        try:
            response = await self.client.get(f"{self.base_url}{path}", params=params, headers=self.headers)
            response.raise_for_status()
            return response.json()
        except (httpx.HTTPError, ValueError) as e:
            raise GeocodingError(f"Geocoding request to {path} failed: {e}") from e

    async def suggest(self, query: str, limit: int = 5) -> List[GeocodedPlace]:
        """Return up to ``limit`` places matching ``query``, most relevant first."""
        data = await self._get("/search", {"q": query, "format": "json", "limit": limit})
        places = []
        for item in data or []:
            try:
                places.append(GeocodedPlace(
                    coordinates=Coordinates(float(item["lat"]), float(item["lon"])),
                    display_name=item.get("display_name", query),
                ))
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping malformed geocoding result for %r", query)
        return places

    async def search(self, query: str) -> Optional[GeocodedPlace]:
        """Resolve ``query`` to its highest-relevance place, or ``None``."""
        places = await self.suggest(query, limit=1)
        return places[0] if places else None

    async def reverse(self, lat: float, lng: float) -> Optional[str]:
        """Return a display name for the coordinates, or ``None``."""
        data = await self._get("/reverse", {"lat": lat, "lon": lng, "format": "json"})
        if not isinstance(data, dict):
            return None
        return data.get("display_name")
