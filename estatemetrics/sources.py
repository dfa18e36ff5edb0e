# estatemetrics/sources.py
"""Upstream listing feeds.

Each feed is a `ListingSource`: a name plus fetchers that turn a stored
request template (url, cookies, payload) into listings in the common shape.
Fetching goes through Playwright's request context so cookies and browser
headers travel the same way a page visit would send them.
"""
import copy
import json
import re
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Mapping, Optional
from urllib.parse import urljoin

from playwright.sync_api import Error as PlaywrightError, sync_playwright

from . import config
from .errors import UpstreamResponseError
from .normalize import address_fingerprint, normalize_address, to_int, to_number
from .utils import logger, parse_timestamp, retry, timestamp, utcnow

REDFIN_ROOT = "https://www.redfin.com"
ZILLOW_ROOT = "https://www.zillow.com"
ZILLOW_API = "https://www.zillow.com/async-create-search-page-state"

Fetcher = Callable[[Mapping[str, Any]], List[Dict[str, Any]]]


@dataclass(frozen=True)
class ListingSource:
    name: str
    fetch_rentals: Fetcher
    fetch_properties: Fetcher
    property_config: Callable[[Mapping[str, Any]], Dict[str, Any]] = lambda cfg: copy.deepcopy(dict(cfg))


def parse_json_body(body: str) -> Any:
    # redfin prefixes its JSON with an anti-hijacking guard
    body = body.strip()
    if body.startswith("{}&&"):
        body = body[4:]
    return json.loads(body)


@retry(PlaywrightError, tries=3, delay=2, backoff=2)
def request_json(
    url: str,
    method: str = "GET",
    cookies: Optional[str] = None,
    payload: Optional[Mapping[str, Any]] = None,
    referer: Optional[str] = None,
) -> Any:
    headers = {
        "Accept": "application/json, text/plain, */*",
        "Accept-Language": "en-US,en;q=0.9",
    }
    if cookies:
        headers["Cookie"] = cookies
    if referer:
        headers["Referer"] = referer
    with sync_playwright() as p:
        context = p.request.new_context(user_agent=config.SCRAPE_USER_AGENT, extra_http_headers=headers)
        try:
            response = context.fetch(url, method=method, data=payload, timeout=config.SCRAPE_TIMEOUT_MS)
            if not response.ok:
                raise UpstreamResponseError(url, response.status)
            body = response.text()
        finally:
            context.dispose()
    logger.debug("%s %s returned %d bytes", method, url, len(body))
    return parse_json_body(body)


def _labeled(value):
    return value.get("value") if isinstance(value, dict) else value


def _money(value) -> Optional[int]:
    number = to_number(value)
    return None if number is None else int(round(number))


def _exact(range_: Optional[Mapping[str, Any]]):
    # a range only identifies one value when both ends agree
    if not isinstance(range_, Mapping):
        return None
    low, high = range_.get("min"), range_.get("max")
    return low if low == high else None


def _listing(source: str, address: str, now: datetime, **fields) -> Dict[str, Any]:
    fp = address_fingerprint(address)
    seen = timestamp(now)
    listing = {
        "id": fp,
        "fingerprint": fp,
        "source": source,
        "address": address,
        "normalizedAddress": normalize_address(address),
        "firstSeen": seen,
        "lastSeen": seen,
    }
    listing.update(fields)
    return listing


def _join_address(*parts) -> str:
    return ", ".join(str(p).strip() for p in parts if p not in (None, ""))


def redfin_properties(response: Mapping[str, Any], now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    now = now or utcnow()
    homes = ((response or {}).get("payload") or {}).get("homes") or []
    listings = []
    for home in homes:
        street = _labeled(home.get("streetLine"))
        if not street:
            continue
        address = _join_address(street, home.get("city"), home.get("state"), home.get("zip"))
        lat_long = _labeled(home.get("latLong")) or {}
        on_redfin = to_number(_labeled(home.get("timeOnRedfin"))) or 0
        listings.append(_listing(
            "redfin", address, now,
            price=_money(_labeled(home.get("price"))),
            beds=to_int(home.get("beds")),
            baths=to_number(home.get("baths")),
            area=to_number(_labeled(home.get("sqFt"))),
            hoa=to_number(_labeled(home.get("hoa"))) or 0,
            yearBuilt=to_int(_labeled(home.get("yearBuilt"))),
            latLong={"lat": lat_long.get("latitude"), "lon": lat_long.get("longitude")},
            url=urljoin(REDFIN_ROOT, home.get("url") or ""),
            description=home.get("listingRemarks"),
            firstListed=timestamp(now - timedelta(milliseconds=on_redfin)),
            redfinRaw=home,
        ))
    return listings


def redfin_rentals(response: Mapping[str, Any], now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    now = now or utcnow()
    listings = []
    for home in (response or {}).get("homes") or []:
        merged = {**(home.get("homeData") or {}), **(home.get("rentalExtension") or {})}
        info = merged.get("addressInfo") or {}
        if not info.get("formattedStreetLine"):
            continue
        address = _join_address(info.get("formattedStreetLine"), info.get("city"), info.get("state"), info.get("zip"))
        centroid = info.get("centroid") or {}
        centroid = centroid.get("centroid", centroid)
        listed = parse_timestamp(merged.get("lastUpdated"))
        listings.append(_listing(
            "redfin", address, now,
            price=_money(_exact(merged.get("rentPriceRange"))),
            beds=to_int(_exact(merged.get("bedRange"))),
            baths=to_number(_exact(merged.get("bathRange"))),
            area=to_number(_exact(merged.get("sqftRange"))),
            latLong={"lat": centroid.get("latitude"), "lon": centroid.get("longitude")},
            url=urljoin(REDFIN_ROOT, merged.get("url") or ""),
            description=merged.get("description"),
            firstListed=timestamp(listed) if listed else None,
            redfinRaw=merged,
        ))
    return listings


def zillow_listings(response: Mapping[str, Any], now: Optional[datetime] = None) -> List[Dict[str, Any]]:
    now = now or utcnow()
    results = ((response or {}).get("cat1") or {}).get("searchResults") or {}
    listings = []
    for result in results.get("mapResults") or results.get("listResults") or []:
        home = ((result.get("hdpData") or {}).get("homeInfo")) or {}
        address = result.get("address") or _join_address(
            home.get("streetAddress"), home.get("city"), home.get("state"), home.get("zipcode")
        )
        if not address:
            continue
        lat_long = result.get("latLong") or {}
        days = to_number(home.get("daysOnZillow"))
        listings.append(_listing(
            "zillow", address, now,
            price=_money(result.get("unformattedPrice") or result.get("price") or home.get("price")),
            beds=to_int(result.get("beds") if result.get("beds") is not None else home.get("bedrooms")),
            baths=to_number(result.get("baths") if result.get("baths") is not None else home.get("bathrooms")),
            area=to_number(result.get("area") or home.get("livingArea")),
            latLong={"lat": lat_long.get("latitude"), "lon": lat_long.get("longitude")},
            url=urljoin(ZILLOW_ROOT, result.get("detailUrl") or ""),
            firstListed=timestamp(now - timedelta(days=days)) if days is not None else None,
            zillowRaw=result,
        ))
    return listings


def redfin_property_config(rentals: Mapping[str, Any]) -> Dict[str, Any]:
    """Turn a redfin rentals search template into the for-sale search over the same polygon."""
    cfg = copy.deepcopy(dict(rentals))
    url = cfg.get("url") or ""
    market = re.search(r"[?&]market=([^&]+)", url)
    url = url.replace("v1/search/rentals", "gis")
    url = re.sub(
        r"includeKeyFacts.*poly=",
        "include_nearby_homes=true&market=%s&mpt=99&num_homes=350&ord=redfin-recommended-asc&page_number=1&poly="
        % (market.group(1) if market else "austin"),
        url,
    )
    cfg["url"] = url
    return cfg


def zillow_property_config(rentals: Mapping[str, Any]) -> Dict[str, Any]:
    """Turn a zillow rentals search template into the for-sale search over the same map bounds."""
    cfg = copy.deepcopy(dict(rentals))
    url = (cfg.get("url") or "").replace("for_rent", "for_sale")
    cfg["url"] = re.sub(
        r'("filterState").*',
        '"filterState":{"ah":{"value":true},"sort":{"value":"globalrelevanceex"}},"isListVisible":true}',
        url,
    )
    payload = cfg.get("payload") or {}
    state = payload.setdefault("searchQueryState", {})
    state["filterState"] = {
        "sortSelection": {"value": "globalrelevanceex"},
        "isAllHomes": {"value": True},
    }
    wants = payload.setdefault("wants", {})
    wants["cat2"] = ["total"]
    cfg["payload"] = payload
    return cfg


def fetch_redfin_rentals(cfg: Mapping[str, Any]) -> List[Dict[str, Any]]:
    return redfin_rentals(request_json(cfg["url"], cookies=cfg.get("cookies")))


def fetch_redfin_properties(cfg: Mapping[str, Any]) -> List[Dict[str, Any]]:
    return redfin_properties(request_json(cfg["url"], cookies=cfg.get("cookies")))


def fetch_zillow(cfg: Mapping[str, Any]) -> List[Dict[str, Any]]:
    response = request_json(
        cfg.get("api") or ZILLOW_API,
        method="PUT",
        cookies=cfg.get("cookies"),
        payload=cfg.get("payload") or {},
        referer=cfg.get("url"),
    )
    return zillow_listings(response)


REDFIN = ListingSource("redfin", fetch_redfin_rentals, fetch_redfin_properties, redfin_property_config)
ZILLOW = ListingSource("zillow", fetch_zillow, fetch_zillow, zillow_property_config)
