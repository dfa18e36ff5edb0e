# estatemetrics/export.py
"""Flat relational copies of the region collections for BI tools.

Each combined rentals, decorated properties and rental report collection is
projected into a `flat_<collection>` table with a fixed column set. Tables
are dropped and rebuilt on every sync.
"""
from typing import Any, Dict, List, Mapping, Optional

from sqlalchemy import Column, DateTime, Float, Integer, MetaData, Table, Text
from sqlalchemy.exc import SQLAlchemyError

from .report import listing_area
from .store import DocumentStore
from .utils import logger, parse_timestamp

FLAT_PREFIX = "flat_"
COST_KEYS = ("tax", "maintenance", "insurance", "hoa", "total", "monthlyTotal")
RETURN_KEYS = (
    "rent", "net", "gross", "roi", "capRate", "cashFlow", "breakEvenYears",
    "monthlyNet", "monthlyGross", "monthlyCashFlow",
)


def _listing_columns() -> List[Column]:
    return [
        Column("id", Text, primary_key=True),
        Column("beds", Float),
        Column("baths", Float),
        Column("description", Text),
        Column("first_listed", DateTime(timezone=True)),
        Column("first_seen", DateTime(timezone=True)),
        Column("last_seen", DateTime(timezone=True)),
        Column("lat", Float),
        Column("lon", Float),
        Column("sqft", Float),
        Column("price", Float),
        Column("address", Text),
        Column("url", Text),
    ]


def rental_columns() -> List[Column]:
    return _listing_columns()


def property_columns() -> List[Column]:
    columns = _listing_columns() + [Column("median_rent", Float), Column("avg_rent", Float)]
    columns += [Column(f"costs_{k}", Float) for k in COST_KEYS]
    for kind in ("avg", "median"):
        columns += [Column(f"returns_{kind}_{k.lower()}", Float) for k in RETURN_KEYS]
    return columns


def report_columns() -> List[Column]:
    return [
        Column("index", Text),
        Column("date", DateTime(timezone=True)),
        Column("key", Text),
        Column("beds", Float),
        Column("count", Integer),
        Column("avg_area", Float),
        Column("avg_rent", Float),
        Column("median_rent", Float),
        Column("avg_rent_per_area", Float),
        Column("median_rent_per_area", Float),
        Column("type", Text),
        Column("description", Text),
        Column("rent_percentile_25", Float),
        Column("rent_percentile_50", Float),
        Column("rent_percentile_90", Float),
    ]


def flatten_rental(doc: Mapping[str, Any]) -> Dict[str, Any]:
    lat_long = doc.get("latLong") or {}
    return {
        "id": doc.get("id"),
        "beds": doc.get("beds"),
        "baths": doc.get("baths"),
        "description": doc.get("description"),
        "first_listed": parse_timestamp(doc.get("firstListed")),
        "first_seen": parse_timestamp(doc.get("firstSeen")),
        "last_seen": parse_timestamp(doc.get("lastSeen")),
        "lat": lat_long.get("lat"),
        "lon": lat_long.get("lon"),
        "sqft": listing_area(doc),
        "price": doc.get("price"),
        "address": doc.get("address"),
        "url": doc.get("url"),
    }


def flatten_property(doc: Mapping[str, Any]) -> Dict[str, Any]:
    row = flatten_rental(doc)
    row["median_rent"] = doc.get("medianRent")
    row["avg_rent"] = doc.get("avgRent")
    costs = doc.get("costs") or {}
    for key in COST_KEYS:
        row[f"costs_{key}"] = costs.get(key)
    returns = doc.get("returns") or {}
    for kind in ("avg", "median"):
        projection = returns.get(kind) or {}
        for key in RETURN_KEYS:
            row[f"returns_{kind}_{key.lower()}"] = projection.get(key)
    return row


def flatten_report(doc: Mapping[str, Any]) -> Dict[str, Any]:
    percentiles = doc.get("rentPercentiles") or {}
    return {
        "index": doc.get("index"),
        "date": parse_timestamp(doc.get("date")),
        "key": doc.get("key"),
        "beds": doc.get("beds"),
        "count": doc.get("count"),
        "avg_area": doc.get("avgArea"),
        "avg_rent": doc.get("avgRent"),
        "median_rent": doc.get("medianRent"),
        "avg_rent_per_area": doc.get("avgRentPerArea"),
        "median_rent_per_area": doc.get("medianRentPerArea"),
        "type": doc.get("type"),
        "description": doc.get("description"),
        "rent_percentile_25": percentiles.get("25th"),
        "rent_percentile_50": percentiles.get("50th"),
        "rent_percentile_90": percentiles.get("90th"),
    }


# collection suffix -> (column factory, row transformer)
LAYOUTS: Dict[str, tuple] = {
    "_report": (report_columns, flatten_report),
    "_rentals": (rental_columns, flatten_rental),
    "_properties": (property_columns, flatten_property),
}


def layout_for(name: str) -> Optional[tuple]:
    for suffix, layout in LAYOUTS.items():
        if name.endswith(suffix):
            return layout
    return None


class ReportingExporter:
    def __init__(self, store: DocumentStore, prefix: str = FLAT_PREFIX):
        self.store = store
        self.prefix = prefix

    def sync(self) -> Dict[str, int]:
        """Rebuild every flat table; returns rows written per table."""
        written = {}
        names = [n for n in sorted(self.store.list_indices()) if layout_for(n)]
        logger.info("Export: %d collections to flatten", len(names))
        for name in names:
            columns, transform = layout_for(name)
            records = self.store.get(name, size=None)["records"]
            table_name = f"{self.prefix}{name}"
            try:
                written[table_name] = self._replace(table_name, columns(), [transform(r) for r in records])
            except SQLAlchemyError as e:
                logger.error("Export: error writing table %s: %s", table_name, e)
        logger.info("Export: finished, %d tables written", len(written))
        return written

    def _replace(self, table_name: str, columns: List[Column], rows: List[Dict[str, Any]]) -> int:
        if columns[0].primary_key:
            # keep the last row per id
            rows = list({row["id"]: row for row in rows}.values())
        table = Table(table_name, MetaData(), *columns)
        with self.store.connection.lease() as engine, engine.begin() as conn:
            table.drop(conn, checkfirst=True)
            table.create(conn)
            if rows:
                conn.execute(table.insert(), rows)
        logger.debug("Export: %s rebuilt with %d rows", table_name, len(rows))
        return len(rows)
