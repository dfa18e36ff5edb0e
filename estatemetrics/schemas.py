# estatemetrics/schemas.py
"""Typed records produced by the report and valuation steps, plus API payloads.

Stored documents use camelCase keys (`avgRent`, `breakEvenYears`), matching
the upstream listing feeds; Python code uses the snake_case attributes.
"""
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def document(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True)


class Percentiles(CamelModel):
    p25: Optional[float] = Field(None, alias="25th")
    p50: Optional[float] = Field(None, alias="50th")
    p90: Optional[float] = Field(None, alias="90th")


class Statistic(CamelModel):
    index: str
    date: str
    key: str
    beds: Optional[int] = None
    type: str
    description: str
    count: int
    avg_rent: float
    median_rent: float
    avg_area: Optional[float] = None
    avg_rent_per_area: Optional[float] = None
    median_rent_per_area: Optional[float] = None
    rent_percentiles: Percentiles
    rent_per_area_percentiles: Percentiles


class MarketReport(CamelModel):
    index: str
    date: str
    # bucket key ("total", "0", "1", ...) -> statistic, ordered by descending count
    buckets: Dict[str, Statistic] = Field(default_factory=dict)

    def bucket(self, beds) -> Optional[Statistic]:
        return self.buckets.get(str(beds))

    def records(self) -> List[Dict[str, Any]]:
        return [stat.document() for stat in self.buckets.values()]


class CostBreakdown(CamelModel):
    tax: float
    maintenance: float
    insurance: float
    hoa: float
    total: float
    monthly_total: float


class ReturnProjection(CamelModel):
    rent: float
    net: float
    gross: float
    roi: float
    cap_rate: float
    cash_flow: float
    break_even_years: float
    monthly_net: float
    monthly_gross: float
    monthly_cash_flow: float


class Returns(CamelModel):
    avg: ReturnProjection
    median: ReturnProjection


class SourceConfig(BaseModel):
    """Request template for one upstream feed; unknown keys are kept verbatim."""
    model_config = ConfigDict(extra="allow")

    url: str
    cookies: Optional[str] = None
    payload: Optional[Dict[str, Any]] = None


class RegionSources(BaseModel):
    rentals: SourceConfig
    properties: Optional[SourceConfig] = None
