# estatemetrics/models.py
"""SQLAlchemy tables backing the document store.

`_collections` is the catalogue: one row per named collection holding its
metadata and inferred schema. Each collection itself is a table built at
runtime by `collection_table` from that schema.
"""
import math
from typing import Any, Dict, Mapping

from sqlalchemy import (
    JSON, BigInteger, Boolean, Column, DateTime, Float, MetaData, Table, Text, func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import declarative_base

from .schema import FieldType
from .utils import parse_timestamp

Base = declarative_base()

JSONType = JSON().with_variant(JSONB(), "postgresql")

RESERVED_COLUMNS = ("id", "doc", "created_at", "updated_at")
MAX_IDENTIFIER_LENGTH = 63
BIGINT_RANGE = (-(2 ** 63), 2 ** 63 - 1)

COLUMN_TYPES = {
    FieldType.INTEGER: BigInteger,
    FieldType.FLOAT: Float,
    FieldType.BOOLEAN: Boolean,
    FieldType.DATE: lambda: DateTime(timezone=True),
    FieldType.TEXT: Text,
    FieldType.OBJECT: lambda: JSONType,
    FieldType.ARRAY: lambda: JSONType,
}


class CollectionMeta(Base):
    __tablename__ = "_collections"
    name = Column(Text, primary_key=True)
    meta = Column(JSONType, nullable=False, default=dict)
    schema = Column(JSONType, nullable=False, default=dict)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), server_default=func.now(), onupdate=func.now())


def typed_fields(schema: Mapping[str, str]) -> Dict[str, FieldType]:
    """Fields from a stored schema that can be projected into their own column."""
    fields = {}
    for name, kind in schema.items():
        if name in RESERVED_COLUMNS or len(name) > MAX_IDENTIFIER_LENGTH:
            continue
        fields[name] = FieldType(kind)
    return fields


def collection_table(metadata: MetaData, name: str, schema: Mapping[str, str]) -> Table:
    columns = [
        Column("id", Text, primary_key=True),
        Column("doc", JSONType, nullable=False),
        Column("created_at", DateTime(timezone=True), server_default=func.now()),
        Column("updated_at", DateTime(timezone=True), server_default=func.now()),
    ]
    for field, kind in typed_fields(schema).items():
        columns.append(Column(field, COLUMN_TYPES[kind](), nullable=True))
    return Table(name, metadata, *columns, extend_existing=True)


def coerce_column_value(value: Any, kind: FieldType) -> Any:
    """Project a document value into its typed column; None when it doesn't fit."""
    if value is None:
        return None
    if kind is FieldType.INTEGER:
        if isinstance(value, bool):
            return None
        if isinstance(value, float) and value.is_integer():
            value = int(value)
        if isinstance(value, int) and BIGINT_RANGE[0] <= value <= BIGINT_RANGE[1]:
            return value
        return None
    if kind is FieldType.FLOAT:
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return None
        return float(value) if math.isfinite(value) else None
    if kind is FieldType.BOOLEAN:
        return value if isinstance(value, bool) else None
    if kind is FieldType.DATE:
        return parse_timestamp(value)
    if kind is FieldType.TEXT:
        return value if isinstance(value, str) else str(value)
    if kind is FieldType.OBJECT:
        return value if isinstance(value, dict) else None
    if kind is FieldType.ARRAY:
        return list(value) if isinstance(value, (list, tuple)) else None
    return None
