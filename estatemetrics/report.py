# estatemetrics/report.py
"""Rental market report grouped by bedroom count."""
import math
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .normalize import decimals, mean, median, percentile, to_int, to_number
from .schemas import MarketReport, Percentiles, Statistic
from .utils import logger, timestamp

MIN_BUCKET_SIZE = 5
TOTAL = "total"

Sample = Tuple[float, Optional[float]]


def listing_area(listing: Mapping[str, Any]) -> Optional[float]:
    for key in ("area", "sqft", "sqFt"):
        area = to_number(listing.get(key))
        if area is not None:
            return area
    return None


def _percentiles(values: List[float], winsorize: bool) -> Percentiles:
    if not values:
        return Percentiles()
    return Percentiles(
        p25=decimals(percentile(values, 25, winsorize)),
        p50=decimals(percentile(values, 50, winsorize)),
        p90=decimals(percentile(values, 90, winsorize)),
    )


def _describe(key: str, beds: Optional[int]) -> Tuple[str, str]:
    if key == TOTAL:
        return TOTAL, "All properties over the given timespan, regardless of bedroom count"
    if beds == 0:
        return "studio", "Studio properties"
    return f"{beds}-bedroom", f"{beds} bedroom properties"


def _bucket_order(stat: Statistic):
    return (-stat.count, stat.key != TOTAL, stat.beds if stat.beds is not None else -1)


class MarketStatisticsEngine:
    """Average, median and percentile rents per bedroom bucket.

    Listings without a usable price are ignored. Every priced listing counts
    toward the synthetic "total" bucket; those with a bedroom count also
    count toward their own bucket. Buckets smaller than `min_count` are
    dropped rather than reported with meaningless figures.
    """

    def __init__(self, min_count: int = MIN_BUCKET_SIZE, winsorize: bool = True):
        self.min_count = min_count
        self.winsorize = winsorize

    def analyze(self, listings: Iterable[Mapping[str, Any]], index: str = "", date: Optional[str] = None) -> MarketReport:
        date = date or timestamp()
        groups: Dict[str, List[Sample]] = {TOTAL: []}
        skipped = 0
        for listing in listings:
            rent = to_number(listing.get("price"))
            if rent is None:
                skipped += 1
                continue
            sample = (rent, listing_area(listing))
            groups[TOTAL].append(sample)
            beds = to_int(listing.get("beds"))
            if beds is not None and beds >= 0:
                groups.setdefault(str(beds), []).append(sample)

        stats = [
            self._statistic(key, samples, index, date)
            for key, samples in groups.items()
            if len(samples) >= self.min_count
        ]
        stats.sort(key=_bucket_order)
        if skipped:
            logger.debug("Report %s: skipped %d listings without a price", index, skipped)
        logger.info("Report %s: %d buckets from %d listings", index, len(stats), len(groups[TOTAL]))
        return MarketReport(index=index, date=date, buckets={s.key: s for s in stats})

    def _statistic(self, key: str, samples: List[Sample], index: str, date: str) -> Statistic:
        rents = [rent for rent, _ in samples]
        areas = [area for _, area in samples if area is not None and area > 0]
        per_area = []
        for rent, area in samples:
            if area is None or area <= 0:
                continue
            ratio = rent / area
            if math.isfinite(ratio):
                per_area.append(ratio)

        beds = None if key == TOTAL else int(key)
        kind, description = _describe(key, beds)
        return Statistic(
            index=index,
            date=date,
            key=key,
            beds=beds,
            type=kind,
            description=description,
            count=len(samples),
            avg_rent=decimals(mean(rents)),
            median_rent=decimals(median(rents)),
            avg_area=decimals(mean(areas)) if areas else None,
            avg_rent_per_area=decimals(mean(per_area)) if per_area else None,
            median_rent_per_area=decimals(median(per_area)) if per_area else None,
            rent_percentiles=_percentiles(rents, self.winsorize),
            rent_per_area_percentiles=_percentiles(per_area, self.winsorize),
        )


def generate_rental_report(index: str, listings: Iterable[Mapping[str, Any]], date: Optional[str] = None) -> MarketReport:
    return MarketStatisticsEngine().analyze(listings, index=index, date=date)
