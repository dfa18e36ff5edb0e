# estatemetrics/store.py
"""Named-collection document store on top of `StorageConnection`.

Every public operation leases the shared connection for its own duration.
Collections are created on first write, with typed columns inferred from
the first records written; the full record always lives in `doc`.
"""
import math
import re
import threading
import uuid
from collections import defaultdict
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from sqlalchemy import DateTime, MetaData, Table, Text, and_, cast, delete, func, inspect, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from . import config
from .db import StorageConnection
from .errors import IndexNotFound, InvalidDataset, PartialBatchFailure
from .models import Base, CollectionMeta, coerce_column_value, collection_table, typed_fields
from .schema import infer_schema
from .utils import logger, parse_timestamp, timestamp

Query = Union[None, str, Mapping[str, Any]]

_INDEX_NAME = re.compile(r"^[a-z0-9][a-z0-9_\-]{0,62}$")
_OPERATORS = ("gt", "gte", "lt", "lte", "ne", "in")


@dataclass
class BatchError:
    batch: int
    status: str
    reason: str
    ids: List[str] = field(default_factory=list)


@dataclass
class BatchResult:
    index: str
    total: int = 0
    written: int = 0
    batches: int = 0
    errors: List[BatchError] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return not self.errors

    def raise_for_errors(self) -> "BatchResult":
        if self.errors:
            raise PartialBatchFailure(self)
        return self


def json_safe(value: Any) -> Any:
    """Convert a record into something every JSON column accepts."""
    if isinstance(value, Mapping):
        return {str(k): json_safe(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [json_safe(v) for v in value]
    if isinstance(value, float):
        return value if math.isfinite(value) else None
    if isinstance(value, Decimal):
        return json_safe(float(value))
    if isinstance(value, datetime):
        return timestamp(value)
    if isinstance(value, date):
        return value.isoformat()
    return value


def validate_index_name(name: str) -> str:
    if not isinstance(name, str) or not _INDEX_NAME.match(name):
        raise InvalidDataset(f"invalid index name {name!r}")
    return name


def chunked(items: Sequence, size: int) -> Iterable[Sequence]:
    for start in range(0, len(items), size):
        yield items[start:start + size]


class DocumentStore:
    def __init__(self, connection: StorageConnection, batch_size: int = config.UPSERT_BATCH_SIZE):
        if batch_size < 1:
            raise ValueError("batch_size must be positive")
        self.connection = connection
        self.batch_size = batch_size
        self._metadata = MetaData()
        self._tables: Dict[str, Table] = {}
        self._prepared_engine = None
        self._guard = threading.Lock()
        self._collection_locks = defaultdict(threading.RLock)

    # -- collections ---------------------------------------------------------

    def create_index(self, name: str, sample_records: Optional[List[Mapping[str, Any]]] = None) -> None:
        """Create the collection if it is missing; a no-op otherwise."""
        validate_index_name(name)
        with self._lock_for(name), self.connection.session() as db:
            self._prepare(db)
            if db.get(CollectionMeta, name) is not None:
                logger.debug("Index %s already exists", name)
                return
            schema = {k: v.value for k, v in infer_schema(json_safe(r) for r in sample_records or []).items()}
            with self._guard:
                table = collection_table(self._metadata, name, schema)
            table.create(bind=db.connection(), checkfirst=True)
            db.add(CollectionMeta(name=name, meta={}, schema=schema))
            db.commit()
            with self._guard:
                self._tables[name] = table
            logger.debug("Index %s: created with %d typed fields", name, len(typed_fields(schema)))

    def delete_index(self, name: str) -> None:
        validate_index_name(name)
        with self._lock_for(name), self.connection.session() as db:
            self._prepare(db)
            with self._guard:
                table = self._tables.pop(name, None)
            if table is None:
                table = Table(name, MetaData())
            table.drop(bind=db.connection(), checkfirst=True)
            db.execute(delete(CollectionMeta).where(CollectionMeta.name == name))
            db.commit()
            with self._guard:
                if name in self._metadata.tables:
                    self._metadata.remove(self._metadata.tables[name])
            logger.debug("Index deleted: %s", name)

    def exists(self, name: str) -> bool:
        with self.connection.session() as db:
            self._prepare(db)
            return db.get(CollectionMeta, name) is not None

    def schema(self, name: str) -> Dict[str, str]:
        with self.connection.session() as db:
            self._prepare(db)
            row = db.get(CollectionMeta, name)
            if row is None:
                raise IndexNotFound(name)
            return dict(row.schema or {})

    def list_indices(self) -> Dict[str, Dict[str, Any]]:
        with self.connection.session() as db:
            self._prepare(db)
            rows = db.execute(select(CollectionMeta).order_by(CollectionMeta.name)).scalars()
            return {row.name: dict(row.meta or {}) for row in rows if not row.name.startswith("_")}

    # -- metadata ------------------------------------------------------------

    def metadata(self, name: str) -> Dict[str, Any]:
        """Stored metadata, or {} when the collection is missing or unreadable.

        Database errors are logged and swallowed; `ConnectionUnavailable` and
        `OperationCancelled` from acquiring the connection still propagate.
        """
        try:
            with self.connection.session() as db:
                self._prepare(db)
                row = db.get(CollectionMeta, name)
                return dict(row.meta or {}) if row is not None else {}
        except SQLAlchemyError as e:
            logger.error("Index %s: error reading metadata: %s", name, e)
            return {}

    def update_metadata(self, name: str, meta: Mapping[str, Any]) -> Dict[str, Any]:
        """Shallow-merge `meta` into the collection metadata, creating the collection if needed."""
        self.create_index(name)
        with self._lock_for(name), self.connection.session() as db:
            row = db.get(CollectionMeta, name)
            merged = {**(row.meta or {}), **json_safe(dict(meta))}
            row.meta = merged
            db.commit()
            logger.debug("Index %s: metadata updated (%s)", name, ", ".join(sorted(meta)))
            return merged

    # -- writes --------------------------------------------------------------

    def upsert(self, name: str, dataset: Mapping[str, Any]) -> BatchResult:
        """Write `dataset['records']` in batches, merging `dataset['meta']` if given.

        Records with an `id` replace the stored document with that id; records
        without one are inserted under a fresh id. A failing batch is reported
        in the result and the remaining batches are still written.
        """
        records, meta = self._validate(name, dataset)
        result = BatchResult(index=name, total=len(records))
        with self._lock_for(name):
            self.create_index(name, records)
            if meta:
                self.update_metadata(name, meta)
            if not records:
                return result

            with self.connection.session() as db:
                table = self._table(db, name)
                columns = typed_fields(self._schema_of(db, name))
                for number, chunk in enumerate(chunked(records, self.batch_size)):
                    rows = self._rows(chunk, columns)
                    result.batches += 1
                    try:
                        db.execute(self._upsert_statement(db, table, rows))
                        db.commit()
                        result.written += len(rows)
                    except SQLAlchemyError as e:
                        db.rollback()
                        reason = str(getattr(e, "orig", None) or e).strip()
                        result.errors.append(
                            BatchError(batch=number, status="failed", reason=reason, ids=[r["id"] for r in rows])
                        )
                        logger.error("Index %s: batch %d failed (%d documents): %s", name, number, len(rows), reason)
        if result.ok:
            logger.debug("Index %s: upserted %d documents in %d batches", name, result.written, result.batches)
        return result

    def delete(self, name: str, record_id: str) -> bool:
        with self.connection.session() as db:
            table = self._table(db, name)
            deleted = db.execute(delete(table).where(table.c.id == str(record_id))).rowcount
            db.commit()
        logger.debug("Index %s: document %s deleted=%s", name, record_id, bool(deleted))
        return bool(deleted)

    def dedupe(self, name: str, field_name: str) -> int:
        """Keep the earliest document per value of `field_name`; return how many were removed."""
        with self._lock_for(name), self.connection.session() as db:
            table = self._table(db, name)
            seen = set()
            doomed = []
            for record_id, doc in db.execute(select(table.c.id, table.c.doc).order_by(table.c.created_at, table.c.id)):
                key = repr(doc.get(field_name))
                if key in seen:
                    doomed.append(record_id)
                else:
                    seen.add(key)
            for chunk in chunked(doomed, self.batch_size):
                db.execute(delete(table).where(table.c.id.in_(chunk)))
            db.commit()
        if doomed:
            logger.debug("Index %s: removed %d duplicates by %s", name, len(doomed), field_name)
        return len(doomed)

    # -- reads ---------------------------------------------------------------

    def get(
        self,
        name: str,
        query: Query = None,
        size: Optional[int] = 1000,
        sort: Optional[Sequence[str]] = None,
    ) -> Dict[str, Any]:
        """Return `{'records': [...], 'meta': {...}}`; raises IndexNotFound for a missing collection."""
        with self.connection.session() as db:
            table = self._table(db, name)
            records = self._select(db, table, query, size, sort)
            row = db.get(CollectionMeta, name)
            return {"records": records, "meta": dict(row.meta or {})}

    def find_one(self, name: str, query: Query = None) -> Optional[Dict[str, Any]]:
        records = self.get(name, query, size=1)["records"]
        return records[0] if records else None

    def search(self, names: Union[str, Sequence[str]], text: str, size: int = 1000) -> List[Dict[str, Any]]:
        """Free-text search across collections; missing collections are skipped."""
        names = [names] if isinstance(names, str) else list(names)
        results: List[Dict[str, Any]] = []
        for name in names:
            try:
                results.extend(self.get(name, text, size)["records"])
            except IndexNotFound:
                logger.debug("Search skipped missing index %s", name)
        return results

    # -- internals -----------------------------------------------------------

    def _lock_for(self, name: str) -> threading.RLock:
        with self._guard:
            return self._collection_locks[name]

    def _prepare(self, db: Session) -> None:
        engine = db.get_bind()
        with self._guard:
            if self._prepared_engine is not engine:
                Base.metadata.create_all(bind=engine)
                self._prepared_engine = engine

    def _schema_of(self, db: Session, name: str) -> Dict[str, str]:
        row = db.get(CollectionMeta, name)
        if row is None:
            raise IndexNotFound(name)
        return dict(row.schema or {})

    def _table(self, db: Session, name: str) -> Table:
        self._prepare(db)
        schema = self._schema_of(db, name)
        with self._guard:
            table = self._tables.get(name)
        if table is None:
            if not inspect(db.connection()).has_table(name):
                raise IndexNotFound(name)
            with self._guard:
                table = self._tables.get(name)
                if table is None:
                    table = collection_table(self._metadata, name, schema)
                    self._tables[name] = table
        return table

    @staticmethod
    def _validate(name: str, dataset: Mapping[str, Any]):
        validate_index_name(name)
        if not isinstance(dataset, Mapping):
            raise InvalidDataset("A dataset must be a mapping with a 'records' list.")
        records = dataset.get("records")
        if not isinstance(records, list):
            raise InvalidDataset("Invalid dataset. A dataset must be at minimum an object with a records field that is an array.")
        for position, record in enumerate(records):
            if not isinstance(record, Mapping):
                raise InvalidDataset(f"record {position} is {type(record).__name__}, expected a mapping")
        meta = dataset.get("meta")
        if meta is not None and not isinstance(meta, Mapping):
            raise InvalidDataset("dataset 'meta' must be a mapping")
        return records, meta

    @staticmethod
    def _rows(chunk: Sequence[Mapping[str, Any]], columns) -> List[Dict[str, Any]]:
        rows: Dict[str, Dict[str, Any]] = {}
        for record in chunk:
            doc = json_safe(dict(record))
            record_id = doc.get("id")
            record_id = str(record_id) if record_id not in (None, "") else uuid.uuid4().hex
            doc["id"] = record_id
            row = {"id": record_id, "doc": doc}
            for column, kind in columns.items():
                row[column] = coerce_column_value(doc.get(column), kind)
            # duplicate ids within one statement collapse to the last record
            rows.pop(record_id, None)
            rows[record_id] = row
        return list(rows.values())

    @staticmethod
    def _upsert_statement(db: Session, table: Table, rows: List[Dict[str, Any]]):
        dialect = db.get_bind().dialect.name
        insert = pg_insert if dialect == "postgresql" else sqlite_insert
        stmt = insert(table).values(rows)
        excluded = {c.name: stmt.excluded[c.name] for c in table.columns if c.name not in ("id", "created_at")}
        excluded["updated_at"] = func.now()
        return stmt.on_conflict_do_update(index_elements=["id"], set_=excluded)

    def _select(self, db: Session, table: Table, query: Query, size: Optional[int], sort: Optional[Sequence[str]]):
        stmt = select(table.c.doc)
        if isinstance(query, str) and query.strip():
            stmt = stmt.where(cast(table.c.doc, Text).ilike(f"%{query.strip()}%"))
        elif isinstance(query, Mapping) and query:
            stmt = stmt.where(and_(*(self._clause(table, f, v) for f, v in query.items())))
        elif query not in (None, "") and not isinstance(query, Mapping):
            raise InvalidDataset(f"unsupported query type {type(query).__name__}")
        order = [self._order(table, s) for s in sort or []]
        stmt = stmt.order_by(*order, table.c.created_at, table.c.id)
        if size is not None:
            stmt = stmt.limit(size)
        return [dict(doc) for doc in db.execute(stmt).scalars()]

    @staticmethod
    def _accessor(table: Table, field_name: str, sample: Any):
        if field_name in table.c and field_name not in ("doc", "created_at", "updated_at"):
            return table.c[field_name]
        element = table.c.doc[field_name]
        if isinstance(sample, bool):
            return element.as_boolean()
        if isinstance(sample, int):
            return element.as_integer()
        if isinstance(sample, float):
            return element.as_float()
        return element.as_string()

    def _clause(self, table: Table, field_name: str, value: Any):
        if isinstance(value, Mapping) and value and set(value) <= set(_OPERATORS):
            clauses = []
            for op, operand in value.items():
                sample = operand[0] if op == "in" and operand else operand
                column = self._accessor(table, field_name, sample)
                operand = self._operand(column, operand)
                if op == "gt":
                    clauses.append(column > operand)
                elif op == "gte":
                    clauses.append(column >= operand)
                elif op == "lt":
                    clauses.append(column < operand)
                elif op == "lte":
                    clauses.append(column <= operand)
                elif op == "ne":
                    clauses.append(column != operand)
                else:
                    clauses.append(column.in_(list(operand)))
            return and_(*clauses)
        column = self._accessor(table, field_name, value)
        if value is None:
            return column.is_(None)
        return column == self._operand(column, value)

    @staticmethod
    def _operand(column, value):
        # typed date columns compare against datetimes, not their ISO strings
        if isinstance(column.type, DateTime) and isinstance(value, str):
            return parse_timestamp(value)
        return value

    def _order(self, table: Table, key: str):
        descending = key.startswith("-")
        column = self._accessor(table, key.lstrip("-"), "")
        return column.desc() if descending else column.asc()
