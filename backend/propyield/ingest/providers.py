"""
Listing provider adapters.

Each scraping actor returns its own JSON shape. An adapter knows which
actor to start for a provider, how to build its input, and how to map one
dataset item onto the common ``ListingRecord``.
"""

from __future__ import annotations

import hashlib
import logging
import math
import re
from dataclasses import asdict, dataclass, field
from typing import Any
from urllib.parse import urlparse

from ..underwriting import calculate_kpis, investment_grade

logger = logging.getLogger(__name__)

MAX_VALID_PRICE = 100_000_000
PLACEHOLDER_ADDRESSES = {
    "",
    "unknown",
    "unknown address",
    "address not available",
    "address on request",
    "n/a",
    "tbc",
}
_POSTCODE_RE = re.compile(r"^[A-Z]{1,2}\d[A-Z\d]?(\s*\d[A-Z]{2})?$", re.IGNORECASE)


@dataclass
class ListingRecord:
    source: str
    source_listing_id: str
    property_address: str
    price: float
    currency: str = "GBP"
    region: str = "UK"
    postcode: str | None = None
    city: str | None = None
    property_type: str = "unknown"
    bedrooms: int | None = None
    bathrooms: int | None = None
    images: list[str] = field(default_factory=list)
    image_url: str | None = None
    listing_url: str | None = None
    location_lat: float | None = None
    location_lng: float | None = None
    estimated_rent: float = 0.0
    yield_percentage: float = 0.0
    roi_percentage: float = 0.0
    cash_flow_monthly: float = 0.0
    investment_score: str = "E"
    user_id: str | None = None

    def to_row(self) -> dict[str, Any]:
        return asdict(self)


# ── Field helpers ─────────────────────────────────────────────────────────


def parse_price(value: Any) -> float:
    """
    Price from a number, a currency string (``"£350,000"``, ``"$1.2M"``)
    or an object carrying ``amount``/``value``. Unparseable input gives 0.
    """
    if value is None or isinstance(value, bool):
        return 0.0
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else 0.0
    if isinstance(value, dict):
        for key in ("amount", "value", "price"):
            if key in value:
                return parse_price(value[key])
        return 0.0
    text = str(value).strip().lower().replace(",", "")
    match = re.search(r"(\d+(?:\.\d+)?)\s*([km])?\b", text)
    if not match:
        return 0.0
    number = float(match.group(1))
    suffix = match.group(2)
    if suffix == "k":
        number *= 1_000
    elif suffix == "m":
        number *= 1_000_000
    return number


def parse_int(value: Any) -> int | None:
    if value is None or isinstance(value, (bool, dict, list)):
        return None
    if isinstance(value, (int, float)):
        return int(value) if math.isfinite(value) else None
    match = re.search(r"\d+", str(value))
    return int(match.group()) if match else None


def parse_float(value: Any) -> float | None:
    try:
        number = float(value) if value not in (None, "") else None
    except (TypeError, ValueError):
        return None
    return number if number is not None and math.isfinite(number) else None


def _obj(value: Any) -> dict[str, Any]:
    return value if isinstance(value, dict) else {}


def _text(value: Any) -> str | None:
    """Scalar as a stripped string; nested or empty values give None."""
    if value is None or isinstance(value, (dict, list, bool)):
        return None
    text = str(value).strip()
    return text or None


def _image_urls(*candidates: Any) -> list[str]:
    urls: list[str] = []
    for candidate in candidates:
        if not candidate:
            continue
        items = candidate if isinstance(candidate, list) else [candidate]
        for item in items:
            if isinstance(item, str):
                urls.append(item)
            elif isinstance(item, dict):
                url = item.get("url") or item.get("srcUrl") or item.get("href") or item.get("src")
                if isinstance(url, str) and url:
                    urls.append(url)
        if urls:
            break
    return urls


def extract_city(address: str, *candidates: Any) -> str | None:
    """First explicit city candidate, else the last non-postcode part of the address."""
    for candidate in candidates:
        if isinstance(candidate, str) and candidate.strip():
            return candidate.strip()
    parts = [p.strip() for p in address.split(",") if p.strip()]
    for part in reversed(parts[1:]):
        if not _POSTCODE_RE.match(part):
            return part
    return None


def _first(item: dict[str, Any], *keys: str) -> Any:
    for key in keys:
        value = item.get(key)
        if value not in (None, ""):
            return value
    return None


def fallback_listing_id(url: str | None, address: str, price: float) -> str:
    seed = url or f"{address.lower()}|{price:.0f}"
    return hashlib.sha1(seed.encode()).hexdigest()[:16]


def is_valid(record: ListingRecord) -> tuple[bool, str | None]:
    """Price in (0, 100m] and a real address of at least three characters."""
    if not 0 < record.price <= MAX_VALID_PRICE:
        return False, "Invalid price"
    address = (record.property_address or "").strip()
    if len(address) < 3 or address.lower() in PLACEHOLDER_ADDRESSES:
        return False, "Invalid address"
    return True, None


def matches_location(record: ListingRecord, location: str | None) -> bool:
    if not location:
        return True
    needle = location.strip().lower()
    haystack = " ".join(
        filter(None, [record.property_address, record.city, record.postcode])
    ).lower()
    return needle in haystack


# ── Adapters ──────────────────────────────────────────────────────────────


class ProviderAdapter:
    """Base adapter. Subclasses describe one listing site."""

    id: str = ""
    region: str = "UK"
    currency: str = "GBP"
    actor_id: str = ""
    domains: tuple[str, ...] = ()
    rent_to_price: float = 0.004

    def handles(self, url: str) -> bool:
        host = urlparse(url).netloc.lower()
        return any(host == d or host.endswith("." + d) for d in self.domains)

    def build_input(self, url: str | None, max_items: int, basic_mode: bool = False) -> dict[str, Any]:
        payload: dict[str, Any] = {"maxItems": max_items}
        if url:
            payload["startUrls"] = [{"url": url}]
        return payload

    def extract(self, item: dict[str, Any]) -> dict[str, Any]:
        raise NotImplementedError

    def estimate_rent(self, price: float, item: dict[str, Any]) -> float:
        return float(round(price * self.rent_to_price))

    def normalize(self, item: dict[str, Any], user_id: str | None = None) -> ListingRecord:
        raw = self.extract(item)
        address = _text(raw.get("address")) or ""
        price = parse_price(raw.get("price"))
        url = _text(raw.get("url"))
        images = raw.get("images") or []
        rent = self.estimate_rent(price, item) if price > 0 else 0.0

        record = ListingRecord(
            source=self.id,
            source_listing_id=_text(raw.get("id")) or fallback_listing_id(url, address, price),
            property_address=address,
            price=price,
            currency=self.currency,
            region=self.region,
            postcode=_text(raw.get("postcode")),
            city=extract_city(address, _text(raw.get("city"))),
            property_type=(_text(raw.get("property_type")) or "unknown").lower(),
            bedrooms=parse_int(raw.get("bedrooms")),
            bathrooms=parse_int(raw.get("bathrooms")),
            images=images,
            image_url=images[0] if images else None,
            listing_url=url,
            location_lat=parse_float(raw.get("lat")),
            location_lng=parse_float(raw.get("lng")),
            estimated_rent=rent,
            user_id=user_id,
        )
        if price > 0:
            kpis = calculate_kpis(price, rent)
            record.yield_percentage = round(kpis.gross_yield_pct, 2)
            record.roi_percentage = round(kpis.roi_pct, 2)
            record.cash_flow_monthly = round(kpis.cashflow_monthly, 2)
            record.investment_score = investment_grade(kpis.gross_yield_pct)
        return record


class RightmoveAdapter(ProviderAdapter):
    id = "rightmove"
    actor_id = "dhrumil~rightmove-scraper"
    domains = ("rightmove.co.uk",)

    def build_input(self, url, max_items, basic_mode=False):
        payload = super().build_input(url, max_items, basic_mode)
        payload["fullPropertyDetails"] = not basic_mode
        payload["monitoringMode"] = False
        return payload

    def extract(self, item):
        address = _obj(item.get("address"))
        location = _obj(item.get("location"))
        return {
            "id": _first(item, "id", "propertyId"),
            "address": address.get("displayAddress")
            or _first(item, "displayAddress", "propertyAddress", "title"),
            "postcode": address.get("postcode") or address.get("outcode"),
            "city": address.get("town") or address.get("city"),
            "price": item.get("price"),
            "bedrooms": item.get("bedrooms"),
            "bathrooms": item.get("bathrooms"),
            "property_type": _first(item, "propertySubType", "propertyType"),
            "images": _image_urls(item.get("propertyImages"), item.get("images")),
            "url": _first(item, "propertyUrl", "url"),
            "lat": location.get("latitude"),
            "lng": location.get("longitude"),
        }


class ZooplaAdapter(ProviderAdapter):
    id = "zoopla"
    actor_id = "dhrumil~zoopla-scraper"
    domains = ("zoopla.co.uk",)

    def build_input(self, url, max_items, basic_mode=False):
        payload = super().build_input(url, max_items, basic_mode)
        payload["fullScrape"] = not basic_mode
        return payload

    def extract(self, item):
        address = item.get("address")
        if isinstance(address, dict):
            address = address.get("full") or address.get("displayAddress")
        return {
            "id": _first(item, "listingId", "listing_id", "id"),
            "address": address or _first(item, "displayAddress", "title"),
            "postcode": _first(item, "postcode", "outcode"),
            "city": _first(item, "city", "town", "county"),
            "price": item.get("price"),
            "bedrooms": _first(item, "bedrooms", "beds"),
            "bathrooms": _first(item, "bathrooms", "baths"),
            "property_type": item.get("propertyType"),
            "images": _image_urls(item.get("images"), item.get("image")),
            "url": _first(item, "url", "listingUrl"),
            "lat": item.get("latitude"),
            "lng": item.get("longitude"),
        }


class ZillowAdapter(ProviderAdapter):
    id = "zillow"
    region = "US"
    currency = "USD"
    actor_id = "maxcopell~zillow-scraper"
    domains = ("zillow.com",)
    rent_to_price = 0.007

    def build_input(self, url, max_items, basic_mode=False):
        return {
            "searchUrls": [{"url": url}] if url else [],
            "maxItems": max_items,
            "extractionMethod": "PAGINATION_WITHOUT_ZOOM" if basic_mode else "MAP_MARKERS",
        }

    def estimate_rent(self, price, item):
        zestimate = parse_price(item.get("rentZestimate"))
        return zestimate if zestimate > 0 else super().estimate_rent(price, item)

    def extract(self, item):
        address = item.get("address")
        if isinstance(address, dict):
            parts = [address.get("streetAddress"), address.get("city"), address.get("state")]
            address = ", ".join(str(p) for p in parts if p)
        lat_long = _obj(item.get("latLong"))
        return {
            "id": item.get("zpid"),
            "address": address or item.get("streetAddress"),
            "postcode": _first(item, "zipcode", "addressZipcode"),
            "city": _first(item, "city", "addressCity"),
            "price": _first(item, "unformattedPrice", "price"),
            "bedrooms": _first(item, "beds", "bedrooms"),
            "bathrooms": _first(item, "baths", "bathrooms"),
            "property_type": _first(item, "homeType", "statusType"),
            "images": _image_urls(item.get("imgSrc"), item.get("photos")),
            "url": _first(item, "detailUrl", "url"),
            "lat": lat_long.get("latitude", item.get("latitude")),
            "lng": lat_long.get("longitude", item.get("longitude")),
        }


class RealtorAdapter(ProviderAdapter):
    id = "realtor"
    region = "US"
    currency = "USD"
    actor_id = "epctex~realtor-scraper"
    domains = ("realtor.com",)
    rent_to_price = 0.007

    def extract(self, item):
        addr = _obj(_obj(item.get("location")).get("address"))
        coordinate = _obj(addr.get("coordinate"))
        description = _obj(item.get("description"))
        address = item.get("address")
        if not isinstance(address, str):
            parts = [addr.get("line"), addr.get("city"), addr.get("state_code")]
            address = ", ".join(str(p) for p in parts if p)
        return {
            "id": _first(item, "property_id", "listing_id"),
            "address": address,
            "postcode": addr.get("postal_code"),
            "city": addr.get("city"),
            "price": _first(item, "list_price", "price"),
            "bedrooms": description.get("beds", item.get("beds")),
            "bathrooms": description.get("baths", item.get("baths")),
            "property_type": description.get("type", item.get("type")),
            "images": _image_urls(item.get("photos"), item.get("primary_photo")),
            "url": _first(item, "href", "permalink", "url"),
            "lat": coordinate.get("lat"),
            "lng": coordinate.get("lon"),
        }


class IdealistaAdapter(ProviderAdapter):
    id = "idealista"
    region = "ES"
    currency = "EUR"
    actor_id = "igolaizola~idealista-scraper"
    domains = ("idealista.com",)
    rent_to_price = 0.0045

    def extract(self, item):
        return {
            "id": item.get("propertyCode"),
            "address": _first(item, "address", "title"),
            "postcode": item.get("postalCode"),
            "city": _first(item, "municipality", "province"),
            "price": item.get("price"),
            "bedrooms": item.get("rooms"),
            "bathrooms": item.get("bathrooms"),
            "property_type": item.get("propertyType"),
            "images": _image_urls(item.get("thumbnail"), item.get("multimedia")),
            "url": item.get("url"),
            "lat": item.get("latitude"),
            "lng": item.get("longitude"),
        }


PROVIDERS: dict[str, ProviderAdapter] = {
    adapter.id: adapter
    for adapter in (
        RightmoveAdapter(),
        ZooplaAdapter(),
        ZillowAdapter(),
        RealtorAdapter(),
        IdealistaAdapter(),
    )
}


def get_provider(name: str) -> ProviderAdapter:
    """Adapter by id; accepts ``apify-rightmove`` style source names too."""
    key = name.strip().lower().removeprefix("apify-")
    if key not in PROVIDERS:
        raise KeyError(name)
    return PROVIDERS[key]


def detect_provider(url: str) -> ProviderAdapter | None:
    for adapter in PROVIDERS.values():
        if adapter.handles(url):
            return adapter
    return None
