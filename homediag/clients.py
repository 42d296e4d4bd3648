"""
HTTP clients for the collaborators the session talks to.

All of them take an optional shared ``httpx.AsyncClient``; without one a
short-lived client is opened per call.
"""

import json
import logging
from typing import Any, AsyncIterator, Dict, List, Optional, Tuple

import httpx

from .config import DIAGNOSE_API_URL, GEOCODE_API_URL, PROVIDERS_API_URL, SIDE_HTTP_TIMEOUT
from .errors import LocationUnavailable, StreamError
from .models import GeocodeResponse, Location, Provider, ProviderSearchResponse

logger = logging.getLogger(__name__)


def _error_message(status_code: int, raw: bytes) -> str:
    text = raw.decode("utf-8", "ignore").strip()
    if not text:
        return f"HTTP {status_code}"
    try:
        payload = json.loads(text)
    except ValueError:
        return f"HTTP {status_code}: {text[:200]}"
    if isinstance(payload, dict):
        detail = payload.get("error") or payload.get("detail") or payload.get("message")
        if detail:
            return str(detail)
    return f"HTTP {status_code}"


class DiagnoseClient:
    """Streams the model's raw text for one turn."""

    def __init__(self, url: str = DIAGNOSE_API_URL, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self._client = client

    async def stream(self, payload: Dict[str, Any]) -> AsyncIterator[str]:
        client = self._client or httpx.AsyncClient(timeout=None)
        try:
            async with client.stream("POST", self.url, json=payload, timeout=None) as resp:
                if resp.status_code >= 400:
                    raw = await resp.aread()
                    raise StreamError(_error_message(resp.status_code, raw), status_code=resp.status_code)
                received = False
                async for text in resp.aiter_text():
                    if not text:
                        continue
                    received = True
                    yield text
                if not received:
                    raise StreamError("Empty response from diagnosis service", status_code=resp.status_code)
        except httpx.HTTPError as e:
            raise StreamError(f"{type(e).__name__}: {e}") from e
        finally:
            if self._client is None:
                await client.aclose()


class ProviderSearchClient:
    def __init__(self, url: str = PROVIDERS_API_URL, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self._client = client

    async def search(self, lat: float, lng: float, trade: str) -> List[Provider]:
        body = {"lat": lat, "lng": lng, "trade": trade}
        if self._client is not None:
            resp = await self._client.post(self.url, json=body)
        else:
            async with httpx.AsyncClient(timeout=SIDE_HTTP_TIMEOUT) as client:
                resp = await client.post(self.url, json=body)
        if resp.status_code >= 400:
            raise httpx.HTTPStatusError(
                _error_message(resp.status_code, resp.content), request=resp.request, response=resp
            )
        return ProviderSearchResponse.model_validate(resp.json()).providers


class GeocodeClient:
    def __init__(self, url: str = GEOCODE_API_URL, client: Optional[httpx.AsyncClient] = None):
        self.url = url
        self._client = client

    async def _post(self, body: dict) -> GeocodeResponse:
        if self._client is not None:
            resp = await self._client.post(self.url, json=body)
        else:
            async with httpx.AsyncClient(timeout=SIDE_HTTP_TIMEOUT) as client:
                resp = await client.post(self.url, json=body)
        if resp.status_code >= 400:
            raise httpx.HTTPStatusError(
                _error_message(resp.status_code, resp.content), request=resp.request, response=resp
            )
        return GeocodeResponse.model_validate(resp.json())

    async def reverse(self, lat: float, lng: float) -> str:
        return (await self._post({"lat": lat, "lng": lng})).address

    async def forward(self, address: str) -> Location:
        geo = await self._post({"address": address})
        return Location(lat=geo.lat, lng=geo.lng, address=geo.address)


# ---------------- Geolocation providers ----------------
class StaticGeolocator:
    """A fixed position, e.g. from CLI flags or a device fix taken elsewhere."""

    def __init__(self, lat: float, lng: float):
        self.lat = lat
        self.lng = lng

    async def get_position(self) -> Tuple[float, float]:
        return self.lat, self.lng


class AddressGeolocator:
    """Resolves a typed address through the geocode endpoint."""

    def __init__(self, address: str, geocoder: GeocodeClient):
        self.address = address
        self.geocoder = geocoder

    async def get_position(self) -> Tuple[float, float]:
        if not self.address:
            raise LocationUnavailable("No address given")
        try:
            loc = await self.geocoder.forward(self.address)
        except httpx.HTTPError as e:
            raise LocationUnavailable(f"Could not locate {self.address!r}: {e}") from e
        return loc.lat, loc.lng


class NoGeolocator:
    """Stands in when the user has not shared a location."""

    async def get_position(self) -> Tuple[float, float]:
        raise LocationUnavailable("Location access denied")
