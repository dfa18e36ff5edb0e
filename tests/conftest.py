# tests/conftest.py
import pytest

from estatemetrics.db import StorageConnection
from estatemetrics.errors import ProcessStartError
from estatemetrics.normalize import address_fingerprint, normalize_address
from estatemetrics.region import RegionPipeline
from estatemetrics.sources import ListingSource
from estatemetrics.store import DocumentStore

SEEN = "2024-05-01T00:00:00+00:00"


def make_listing(address, price, beds=2, area=900, source="redfin", **extra):
    fp = address_fingerprint(address)
    listing = {
        "id": fp,
        "fingerprint": fp,
        "source": source,
        "address": address,
        "normalizedAddress": normalize_address(address),
        "price": price,
        "beds": beds,
        "baths": 1,
        "area": area,
        "latLong": {"lat": 30.27, "lon": -97.74},
        "url": f"https://example.com/{source}/{fp[:8]}",
        "firstListed": SEEN,
        "firstSeen": SEEN,
        "lastSeen": SEEN,
    }
    listing.update(extra)
    return listing


class FakeProcess:
    """Stands in for the docker container; fails the first `failures` starts."""

    def __init__(self, failures=0):
        self.failures = failures
        self.starts = 0
        self.stops = 0

    def start(self):
        self.starts += 1
        if self.starts <= self.failures:
            raise ProcessStartError(f"start {self.starts} failed")

    def stop(self):
        self.stops += 1


class FakeFeed:
    """Serves canned listings per (source, kind); any url containing 'broken' raises."""

    def __init__(self, rentals, properties):
        self.rentals = rentals
        self.properties = properties
        self.calls = []

    def fetcher(self, name, kind):
        def fetch(cfg):
            self.calls.append((name, kind, cfg.get("url")))
            if "broken" in (cfg.get("url") or ""):
                raise RuntimeError(f"{name} returned HTTP 403")
            listings = getattr(self, kind)
            return [dict(l, source=name) for l in listings]
        return fetch

    def source(self, name):
        return ListingSource(name, self.fetcher(name, "rentals"), self.fetcher(name, "properties"))


def region_options(url="https://example.com/search"):
    return {"redfin": {"url": f"{url}/redfin"}, "zillow": {"url": f"{url}/zillow"}}


@pytest.fixture
def listing():
    return make_listing


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite:///{tmp_path / 'estatemetrics.db'}"


@pytest.fixture
def connection(database_url):
    conn = StorageConnection(database_url, idle_timeout=60, poll_interval=0.01)
    yield conn
    conn.close()


@pytest.fixture
def store(connection):
    return DocumentStore(connection, batch_size=2)


@pytest.fixture
def feed():
    rentals = [make_listing(f"{100 + i} Maple Ave, Austin, TX", 1000 + i * 100) for i in range(6)]
    rentals += [make_listing("9 Oak St, Austin, TX", 800, beds=1)]
    properties = [
        make_listing("12 Cedar Ln, Austin, TX", 300000, hoa=50),
        make_listing("14 Cedar Ln, Austin, TX", 250000, beds=3),
        make_listing("16 Cedar Ln, Austin, TX", None),
    ]
    return FakeFeed(rentals, properties)


@pytest.fixture
def pipeline(store, feed):
    return RegionPipeline(
        store,
        base=feed.source("redfin"),
        enrich=feed.source("zillow"),
        dev_mode=False,
        delay_range=(0, 0),
    )
