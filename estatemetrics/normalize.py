# estatemetrics/normalize.py
"""Pure helpers for listing identity and robust statistics.

Address normalisation and fingerprinting give every physical unit one
identity regardless of which upstream source reported it. The numeric
helpers are order-independent: every function sorts its own copy.
"""
import hashlib
import math
import re
from decimal import Decimal, ROUND_HALF_UP, InvalidOperation
from typing import Iterable, List, Optional

# every value here must map to itself, which keeps normalisation idempotent
ADDRESS_TOKENS = {
    "street": "st", "str": "st",
    "avenue": "ave", "av": "ave",
    "boulevard": "blvd", "blv": "blvd",
    "drive": "dr", "drv": "dr",
    "road": "rd",
    "lane": "ln",
    "court": "ct",
    "place": "pl",
    "parkway": "pkwy", "pky": "pkwy",
    "highway": "hwy",
    "circle": "cir",
    "terrace": "ter",
    "trail": "trl",
    "square": "sq",
    "cove": "cv",
    "north": "n", "south": "s", "east": "e", "west": "w",
    "northeast": "ne", "northwest": "nw", "southeast": "se", "southwest": "sw",
    "apartment": "unit", "apt": "unit", "suite": "unit", "ste": "unit", "no": "unit",
}

_NON_ALNUM = re.compile(r"[^a-z0-9\s]")


def normalize_address(raw: Optional[str]) -> str:
    """Lowercase, canonicalise street/unit words, drop punctuation, squeeze spaces."""
    if not raw:
        return ""
    text = str(raw).lower().replace("#", " unit ")
    text = _NON_ALNUM.sub(" ", text)
    tokens: List[str] = []
    for token in text.split():
        token = ADDRESS_TOKENS.get(token, token)
        if token == "unit" and tokens and tokens[-1] == "unit":
            continue
        tokens.append(token)
    return " ".join(tokens)


def fingerprint(normalized_address: str) -> str:
    return hashlib.sha256(normalized_address.encode("utf-8")).hexdigest()


def address_fingerprint(raw: Optional[str]) -> str:
    return fingerprint(normalize_address(raw))


def to_number(value) -> Optional[float]:
    """Coerce prices like '$1,850/mo' or '2,400+' to a float; None if unusable."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return float(value) if math.isfinite(value) else None
    if isinstance(value, dict) and "value" in value:
        return to_number(value["value"])
    if isinstance(value, str):
        cleaned = re.sub(r"[^0-9.\-]", "", value.split("/")[0])
        if cleaned in ("", "-", ".", "-."):
            return None
        try:
            number = float(cleaned)
        except ValueError:
            return None
        return number if math.isfinite(number) else None
    return None


def to_int(value) -> Optional[int]:
    number = to_number(value)
    return None if number is None else int(math.floor(number))


def mean(numbers: Iterable[float]) -> float:
    data = list(numbers)
    if not data:
        return math.nan
    return math.fsum(data) / len(data)


def median(numbers: Iterable[float]) -> float:
    """Middle value of a sorted copy; NaN for empty input, so callers must guard."""
    data = sorted(numbers)
    if not data:
        return math.nan
    middle = len(data) // 2
    if len(data) % 2 == 0:
        return (data[middle - 1] + data[middle]) / 2
    return data[middle]


def _interpolate(data: List[float], p: float) -> float:
    position = p / 100 * (len(data) - 1)
    lower = int(math.floor(position))
    upper = min(lower + 1, len(data) - 1)
    weight = position - lower
    return data[lower] + (data[upper] - data[lower]) * weight


def _clamp(data: List[float], lower: float, upper: float) -> List[float]:
    low, high = _interpolate(data, lower), _interpolate(data, upper)
    return [min(max(v, low), high) for v in data]


def winsorize(numbers: Iterable[float], lower: float = 5, upper: float = 95) -> List[float]:
    """Clamp every value into the [lower, upper] percentile range of the sample."""
    data = sorted(numbers)
    if not data:
        return []
    return _clamp(data, lower, upper)


def percentile(numbers: Iterable[float], p: float, winsorize: bool = True) -> float:
    """Linear interpolation at rank p/100 * (n - 1), optionally on a winsorized sample."""
    if not 0 <= p <= 100:
        raise ValueError(f"percentile must be within [0, 100], got {p}")
    data = sorted(numbers)
    if not data:
        return math.nan
    if winsorize:
        data = _clamp(data, 5, 95)
    return _interpolate(data, p)


def decimals(n, places: int = 2):
    """Round half-up to a fixed number of places; non-finite values pass through."""
    if n is None:
        return None
    if isinstance(n, float) and not math.isfinite(n):
        return n
    try:
        quantum = Decimal(1).scaleb(-places)
        return float(Decimal(str(n)).quantize(quantum, rounding=ROUND_HALF_UP))
    except InvalidOperation:
        return n
