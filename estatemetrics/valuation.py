# estatemetrics/valuation.py
"""Annual cost model and return projections for properties for sale."""
import math
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .normalize import decimals, to_int, to_number
from .schemas import CostBreakdown, MarketReport, ReturnProjection, Returns, Statistic
from .utils import logger

MONTHS_IN_YEAR = 12
YEARLY_TAX_RATE = 0.02
YEARLY_MAINTENANCE_RATE = 0.01
YEARLY_PROPERTY_INSURANCE_RATE = 0.0057
FALLBACK_BUCKETS = (4, 3, 2)


def _ratio(numerator: float, denominator: float) -> float:
    if denominator == 0:
        return math.inf if numerator >= 0 else -math.inf
    return numerator / denominator


class ValuationDecorator:
    """Attach costs and avg/median rent returns to each property.

    The rent figures come from the report bucket for the property's bedroom
    count. A missing bucket falls back to the first populated bucket in
    `fallback_buckets`; a property with no usable bucket, or without a
    positive price, is left out.
    Results are ordered by average cap rate, best first.
    """

    def __init__(
        self,
        tax_rate: float = YEARLY_TAX_RATE,
        maintenance_rate: float = YEARLY_MAINTENANCE_RATE,
        insurance_rate: float = YEARLY_PROPERTY_INSURANCE_RATE,
        fallback_buckets: Sequence[int] = FALLBACK_BUCKETS,
    ):
        self.tax_rate = tax_rate
        self.maintenance_rate = maintenance_rate
        self.insurance_rate = insurance_rate
        self.fallback_buckets = tuple(fallback_buckets)

    def bucket_for(self, beds: Optional[int], report: MarketReport) -> Optional[Statistic]:
        stat = report.bucket(beds) if beds is not None else None
        if stat is not None:
            return stat
        for candidate in self.fallback_buckets:
            if report.bucket(candidate) is not None:
                return report.bucket(candidate)
        return None

    def costs(self, price: float, hoa_monthly: float = 0) -> CostBreakdown:
        tax = price * self.tax_rate
        maintenance = price * self.maintenance_rate
        insurance = price * self.insurance_rate
        hoa = hoa_monthly * MONTHS_IN_YEAR
        total = tax + maintenance + insurance + hoa
        return CostBreakdown(
            tax=decimals(tax),
            maintenance=decimals(maintenance),
            insurance=decimals(insurance),
            hoa=decimals(hoa),
            total=decimals(total),
            monthly_total=decimals(total / MONTHS_IN_YEAR),
        )

    def projection(self, price: float, monthly_rent: float, costs: CostBreakdown) -> ReturnProjection:
        net = monthly_rent * MONTHS_IN_YEAR
        gross = net - costs.total
        roi = _ratio(gross, price)
        return ReturnProjection(
            rent=decimals(monthly_rent),
            net=decimals(net),
            gross=decimals(gross),
            roi=decimals(roi, 4),
            cap_rate=decimals(roi, 4),
            cash_flow=decimals(gross),
            break_even_years=decimals(_ratio(price, gross)),
            monthly_net=decimals(monthly_rent),
            monthly_gross=decimals(gross / MONTHS_IN_YEAR),
            monthly_cash_flow=decimals(gross / MONTHS_IN_YEAR),
        )

    def decorate_one(self, prop: Mapping[str, Any], report: MarketReport) -> Optional[Dict[str, Any]]:
        price = to_number(prop.get("price"))
        if price is None or price <= 0:
            return None
        stat = self.bucket_for(to_int(prop.get("beds")), report)
        if stat is None:
            return None
        costs = self.costs(price, to_number(prop.get("hoa")) or 0)
        returns = Returns(
            avg=self.projection(price, stat.avg_rent, costs),
            median=self.projection(price, stat.median_rent, costs),
        )
        return {
            **prop,
            "avgRent": stat.avg_rent,
            "medianRent": stat.median_rent,
            "reportBucket": stat.key,
            "costs": costs.document(),
            "returns": returns.document(),
        }

    def decorate(self, properties: Iterable[Mapping[str, Any]], report: MarketReport) -> List[Dict[str, Any]]:
        decorated = []
        dropped = 0
        for prop in properties:
            result = self.decorate_one(prop, report)
            if result is None:
                dropped += 1
            else:
                decorated.append(result)
        decorated.sort(key=lambda p: p["returns"]["avg"]["capRate"], reverse=True)
        if dropped:
            logger.info("Valuation: %d properties without a price or matching report bucket were left out", dropped)
        return decorated


def decorate_properties(properties, report: MarketReport) -> List[Dict[str, Any]]:
    return ValuationDecorator().decorate(properties, report)
