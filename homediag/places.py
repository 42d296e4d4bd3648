"""Google Geocoding / Places helpers used by the API routes."""

import asyncio
import logging
import math
from typing import Dict, List, Optional

import httpx

from .config import GOOGLE_MAPS_API_KEY, PROVIDER_CONCURRENCY, PROVIDER_MAX_RESULTS, PROVIDER_SEARCH_RADIUS_M
from .models import GeocodeResponse, Provider, Service

logger = logging.getLogger(__name__)

GEOCODE_URL = "https://maps.googleapis.com/maps/api/geocode/json"
NEARBY_URL = "https://maps.googleapis.com/maps/api/place/nearbysearch/json"
DETAILS_URL = "https://maps.googleapis.com/maps/api/place/details/json"
DETAILS_FIELDS = "formatted_phone_number,website,formatted_address,editorial_summary"
MAX_PLACES_RADIUS_M = 50000
MIN_RATING = 4.0
MIN_REVIEWS = 5

# Ordered: first substring hit wins, so specific trades go before generic ones
TRADE_KEYWORDS = [
    ("gate", "Gate Repair Service"),
    ("garage door", "Garage Door Company"),
    ("plumb", "Plumber"),
    ("drain", "Drainage Contractor"),
    ("electric", "Electrician"),
    ("hvac", "HVAC Technician"),
    ("air con", "Air Conditioning Contractor"),
    ("heating", "Heating & Cooling Contractor"),
    ("roof", "Roofing Contractor"),
    ("gutter", "Gutter Contractor"),
    ("damp", "Damp Proofing Specialist"),
    ("mould", "Mold Remediation"),
    ("mold", "Mold Remediation"),
    ("waterproof", "Waterproofing Contractor"),
    ("pest", "Pest Control"),
    ("window", "Window Contractor"),
    ("glaz", "Glazier"),
    ("carpent", "Carpenter"),
    ("paint", "Painting Contractor"),
    ("plaster", "Plasterer"),
    ("drywall", "Drywall Contractor"),
    ("tile", "Tile Setter"),
    ("floor", "Flooring Contractor"),
    ("mason", "Masonry Contractor"),
    ("concrete", "Concrete Contractor"),
    ("chimney", "Chimney Sweep/Service"),
    ("appliance", "Appliance Technician"),
    ("landscap", "Landscaper"),
    ("septic", "Septic Service"),
    ("builder", "General Contractor"),
    ("handyman", "Handyman"),
]

_GENERIC_PLACE_TYPES = {"point_of_interest", "establishment", "premise", "map", "store", "home_goods_store"}


def trade_keyword(trade: str) -> str:
    """Map a free-text trade to a Places search keyword."""
    t = (trade or "").strip()
    low = t.lower()
    for needle, keyword in TRADE_KEYWORDS:
        if needle in low:
            return keyword
    return f"{t} service provider" if t else "Handyman"


def provider_score(rating: float, reviews: int, prior_mean: float = 4.3, prior_weight: int = 20) -> float:
    if rating <= 0 or reviews < 0:
        return 0.0
    return (rating * reviews + prior_mean * prior_weight) / (reviews + prior_weight)


def distance_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    r = 6371.0
    p1, p2 = math.radians(lat1), math.radians(lat2)
    dp = p2 - p1
    dl = math.radians(lng2 - lng1)
    a = math.sin(dp / 2) ** 2 + math.cos(p1) * math.cos(p2) * math.sin(dl / 2) ** 2
    return 2 * r * math.asin(math.sqrt(a))


def _services_from_types(types: List[str]) -> List[Service]:
    out = []
    for t in types or []:
        if t in _GENERIC_PLACE_TYPES:
            continue
        full = t.replace("_", " ").title()
        out.append(Service(short=full.split(" ")[0], full=full))
        if len(out) == 3:
            break
    return out


# ---------------- Geocoding ----------------
async def _geocode(client: httpx.AsyncClient, params: Dict[str, str]) -> Optional[GeocodeResponse]:
    if not GOOGLE_MAPS_API_KEY:
        return None
    try:
        resp = await client.get(GEOCODE_URL, params={**params, "key": GOOGLE_MAPS_API_KEY})
        data = resp.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.warning("places: geocode request failed: %s", e)
        return None
    if data.get("status") != "OK" or not data.get("results"):
        logger.debug("places: geocode status %s", data.get("status"))
        return None
    result = data["results"][0]
    loc = result["geometry"]["location"]
    return GeocodeResponse(lat=loc["lat"], lng=loc["lng"], address=result.get("formatted_address", ""))


async def geocode_address(client: httpx.AsyncClient, address: str) -> Optional[GeocodeResponse]:
    if not address:
        return None
    return await _geocode(client, {"address": address})


async def reverse_geocode(client: httpx.AsyncClient, lat: float, lng: float) -> Optional[GeocodeResponse]:
    return await _geocode(client, {"latlng": f"{lat},{lng}"})


# ---------------- Places ----------------
async def _places_nearby(client: httpx.AsyncClient, lat: float, lng: float, keyword: str, radius_m: int) -> list:
    if not GOOGLE_MAPS_API_KEY:
        return []
    try:
        resp = await client.get(
            NEARBY_URL,
            params={"key": GOOGLE_MAPS_API_KEY, "location": f"{lat},{lng}", "radius": radius_m, "keyword": keyword},
        )
        data = resp.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.warning("places: nearby search failed: %s", e)
        return []
    return data.get("results", []) or []


async def _place_details(client: httpx.AsyncClient, place_id: str) -> dict:
    if not GOOGLE_MAPS_API_KEY or not place_id:
        return {}
    try:
        resp = await client.get(
            DETAILS_URL,
            params={"key": GOOGLE_MAPS_API_KEY, "place_id": place_id, "fields": DETAILS_FIELDS},
        )
        data = resp.json()
    except (httpx.HTTPError, ValueError) as e:
        logger.warning("places: details for %s failed: %s", place_id, e)
        return {}
    return data.get("result", {}) or {}


async def find_providers(
    client: httpx.AsyncClient,
    trade: str,
    keyword: str,
    lat: float,
    lng: float,
    radius_m: int = PROVIDER_SEARCH_RADIUS_M,
    max_results: int = PROVIDER_MAX_RESULTS,
    details_concurrency: int = PROVIDER_CONCURRENCY,
) -> List[Provider]:
    radii = sorted({min(MAX_PLACES_RADIUS_M, radius_m * k) for k in (1, 2)})
    seen = set()
    candidates = []

    for r_m in radii:
        results = await _places_nearby(client, lat, lng, keyword, r_m)
        for r in results:
            pid = r.get("place_id")
            if not pid or pid in seen:
                continue
            seen.add(pid)
            rating = float(r.get("rating", 0.0))
            reviews = int(r.get("user_ratings_total", 0))
            if rating < MIN_RATING or reviews < MIN_REVIEWS:
                continue
            geo = (r.get("geometry") or {}).get("location") or {}
            candidates.append({
                "place_id": pid,
                "name": r.get("name") or "Unknown Provider",
                "rating": rating,
                "rating_count": reviews,
                "address": r.get("vicinity") or "Address not available",
                "latitude": geo.get("lat"),
                "longitude": geo.get("lng"),
                "is_open": (r.get("opening_hours") or {}).get("open_now"),
                "types": r.get("types") or [],
                "score": provider_score(rating, reviews),
            })
        if len(candidates) >= max_results * 2:
            break

    candidates.sort(key=lambda x: (x["score"], x["rating_count"]), reverse=True)
    top = candidates[:max_results]
    detail_sem = asyncio.Semaphore(max(1, details_concurrency))

    async def enrich(c: dict) -> Provider:
        async with detail_sem:
            details = await _place_details(client, c["place_id"])
        summary = ((details.get("editorial_summary") or {}).get("overview")) or f"Local {trade} professional."
        distance = None
        if c["latitude"] is not None and c["longitude"] is not None:
            distance = f"{distance_km(lat, lng, c['latitude'], c['longitude']):.1f} km"
        return Provider(
            place_id=c["place_id"],
            name=c["name"],
            address=details.get("formatted_address") or c["address"],
            rating=c["rating"],
            rating_count=c["rating_count"],
            phone=details.get("formatted_phone_number"),
            website=details.get("website"),
            latitude=c["latitude"],
            longitude=c["longitude"],
            summary=summary,
            services=_services_from_types(c["types"]),
            distance_text=distance,
            is_open=c["is_open"],
            score=c["score"],
        )

    return list(await asyncio.gather(*(enrich(c) for c in top)))
