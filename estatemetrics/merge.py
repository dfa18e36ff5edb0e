# estatemetrics/merge.py
"""Reconcile two listing feeds into one record per physical unit."""
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from .utils import logger

BASE_FIELDS = ("url", "description", "address", "price", "beds", "baths", "firstListed", "lastSeen", "firstSeen")


def record_key(record: Mapping[str, Any]) -> Optional[str]:
    key = record.get("fingerprint") or record.get("id")
    return str(key) if key not in (None, "") else None


def prefixed(prefix: str, field_name: str) -> str:
    return f"{prefix}{field_name[:1].upper()}{field_name[1:]}"


def collapse(records: Iterable[Mapping[str, Any]]) -> Tuple[Dict[str, Dict[str, Any]], List[Dict[str, Any]]]:
    """Fold records sharing a key into one. Later values win, earlier ones fill gaps."""
    keyed: Dict[str, Dict[str, Any]] = {}
    unkeyed: List[Dict[str, Any]] = []
    for record in records:
        key = record_key(record)
        if key is None:
            unkeyed.append(dict(record))
        elif key in keyed:
            keyed[key] = {**keyed[key], **record}
        else:
            keyed[key] = dict(record)
    return keyed, unkeyed


class RecordMerger:
    """Joins base and enrichment listings on fingerprint (or id).

    A matched pair becomes the enrichment record plus the base record's
    `base_fields` under `<base_prefix><Field>` names. Base-only keys fill
    gaps in the merged record; for keys both sides carry, `precedence`
    decides which value wins ("enrich" by default).
    """

    def __init__(self, base_prefix: str = "redfin", base_fields: Sequence[str] = BASE_FIELDS, precedence: str = "enrich"):
        if precedence not in ("enrich", "base"):
            raise ValueError("precedence must be 'enrich' or 'base'")
        self.base_prefix = base_prefix
        self.base_fields = tuple(base_fields)
        self.precedence = precedence

    def merge(self, base_records: Iterable[Mapping[str, Any]], enrich_records: Iterable[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        pending, unkeyed = collapse(base_records)
        enriched, enrich_unkeyed = collapse(enrich_records)

        merged: List[Dict[str, Any]] = []
        matches = 0
        for key, record in enriched.items():
            base = pending.pop(key, None)
            if base is None:
                merged.append(record)
                continue
            matches += 1
            merged.append(self.combine(base, record))

        merged.extend(pending.values())
        merged.extend(enrich_unkeyed)
        merged.extend(unkeyed)
        logger.debug("Merged records: %d matched, %d total", matches, len(merged))
        return sorted(merged, key=lambda r: str(r.get("address") or "").lower())

    def combine(self, base: Mapping[str, Any], enrich: Mapping[str, Any]) -> Dict[str, Any]:
        if self.precedence == "enrich":
            combined = {**base, **enrich}
        else:
            combined = {**enrich, **base}
        for field_name in self.base_fields:
            if field_name in base:
                combined[prefixed(self.base_prefix, field_name)] = base[field_name]
        combined["mergedRecords"] = True
        return combined


def merge_records(base_records, enrich_records, base_prefix: str = "redfin", precedence: str = "enrich") -> List[Dict[str, Any]]:
    return RecordMerger(base_prefix=base_prefix, precedence=precedence).merge(base_records, enrich_records)
