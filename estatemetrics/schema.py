# estatemetrics/schema.py
"""Field-type inference from sample records.

Types form a small lattice: equal types join to themselves, integer and
float join to float, and any other disagreement joins to text. Missing and
null values carry no type information and are skipped.
"""
import re
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional


class FieldType(str, Enum):
    INTEGER = "integer"
    FLOAT = "float"
    BOOLEAN = "boolean"
    DATE = "date"
    TEXT = "text"
    OBJECT = "object"
    ARRAY = "array"


_ISO_DATE = re.compile(
    r"^\d{4}-\d{2}-\d{2}([T ]\d{2}:\d{2}(:\d{2}(\.\d+)?)?(Z|[+-]\d{2}:?\d{2})?)?$"
)


def infer_type(value: Any) -> Optional[FieldType]:
    if value is None:
        return None
    if isinstance(value, bool):
        return FieldType.BOOLEAN
    if isinstance(value, int):
        return FieldType.INTEGER
    if isinstance(value, float):
        return FieldType.FLOAT
    if isinstance(value, (datetime, date)):
        return FieldType.DATE
    if isinstance(value, Mapping):
        return FieldType.OBJECT
    if isinstance(value, (list, tuple)):
        return FieldType.ARRAY
    if isinstance(value, str) and _ISO_DATE.match(value.strip()):
        return FieldType.DATE
    return FieldType.TEXT


def join(a: Optional[FieldType], b: Optional[FieldType]) -> Optional[FieldType]:
    if a is None:
        return b
    if b is None or a == b:
        return a
    if {a, b} == {FieldType.INTEGER, FieldType.FLOAT}:
        return FieldType.FLOAT
    return FieldType.TEXT


def infer_schema(records: Iterable[Mapping[str, Any]]) -> Dict[str, FieldType]:
    """Map each top-level field seen in `records` to the join of its observed types."""
    schema: Dict[str, Optional[FieldType]] = {}
    for record in records:
        for field, value in record.items():
            schema[field] = join(schema.get(field), infer_type(value))
    return {field: kind for field, kind in schema.items() if kind is not None}
