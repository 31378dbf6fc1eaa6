from __future__ import annotations

import json
import logging
import math
import operator
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable

from sqlalchemy import ColumnElement, and_, case, func, not_, or_, true
from sqlalchemy.orm import Session

from db.database import SessionLocal
from db.models import StoredDocument
from utils.datetime_utils import to_instant, to_timestamp

logger = logging.getLogger(__name__)

MAX_BATCH_OPERATIONS = 500

_OPERATORS: dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}

_SQL_OPERATORS: dict[str, Callable[[Any, Any], Any]] = {
    "==": operator.eq,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
}


@dataclass(frozen=True)
class FieldFilter:
    path: str
    op: str
    value: Any

    def __post_init__(self) -> None:
        if self.op not in _OPERATORS and self.op != "in":
            raise ValueError(f"Unsupported filter operator: {self.op}")


@dataclass
class DocumentSnapshot:
    id: str
    data: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class _SetOperation:
    collection: str
    doc_id: str
    data: dict[str, Any]
    merge: bool = False


def _encode(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_timestamp(value)
    if isinstance(value, dict):
        return {str(k): _encode(v) for k, v in value.items()}
    if isinstance(value, (list, tuple, set)):
        return [_encode(v) for v in value]
    return value


def _deep_merge(base: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


_MISSING = object()


def _resolve_path(data: dict[str, Any], path: str) -> Any:
    current: Any = data
    for part in path.split("."):
        if not isinstance(current, dict) or part not in current:
            return _MISSING
        current = current[part]
    return current


def _matches(data: dict[str, Any], flt: FieldFilter) -> bool:
    raw = _resolve_path(data, flt.path)
    if raw is _MISSING:
        return False

    if flt.op == "in":
        return raw in list(flt.value or [])

    expected = flt.value
    if isinstance(expected, datetime):
        actual = to_instant(raw, None)
        if actual is None:
            return False
    else:
        actual = raw
    try:
        return bool(_OPERATORS[flt.op](actual, expected))
    except TypeError:
        return False


def _json_path(path: str) -> str | None:
    parts = path.split(".")
    if any(not part or '"' in part for part in parts):
        return None
    return "$" + "".join(f'."{part}"' for part in parts)


def _is_scalar(value: Any) -> bool:
    return isinstance(value, (str, int, float)) and not (isinstance(value, float) and math.isnan(value))


def _sql_condition(flt: FieldFilter) -> ColumnElement | None:
    """
    Narrow a filter to a SQLite JSON expression.

    The expression may admit extra rows; ``_matches`` still decides. None
    means the filter is evaluated in Python only.
    """
    json_path = _json_path(flt.path)
    if json_path is None or flt.op == "!=":
        return None
    column = StoredDocument.data_json

    if isinstance(flt.value, datetime):
        if flt.op == "in":
            return None
        seconds_path = json_path + '."seconds"'
        seconds = func.json_extract(column, seconds_path)
        bound = to_timestamp(flt.value)["seconds"]
        if flt.op in (">", ">="):
            compared = seconds >= bound
        elif flt.op in ("<", "<="):
            compared = seconds <= bound
        else:
            compared = seconds == bound
        # Non-numeric or legacy timestamp shapes are left to Python.
        numeric = func.coalesce(func.json_type(column, seconds_path), "null").in_(("integer", "real"))
        return or_(not_(numeric), compared)

    value = func.json_extract(column, json_path)
    if flt.op == "in":
        values = list(flt.value or [])
        if not all(_is_scalar(v) for v in values):
            return None
        return value.in_([int(v) if isinstance(v, bool) else v for v in values])
    if not _is_scalar(flt.value):
        return None
    expected = int(flt.value) if isinstance(flt.value, bool) else flt.value
    return _SQL_OPERATORS[flt.op](value, expected)


def _decode(raw: str | None) -> dict[str, Any]:
    return json.loads(raw or "{}")


class WriteBatch:
    """Set operations applied together in a single transaction on commit."""

    def __init__(self, store: DocumentStore):
        self._store = store
        self._ops: list[_SetOperation] = []

    def __len__(self) -> int:
        return len(self._ops)

    def set(self, collection: str, doc_id: str, data: dict[str, Any], merge: bool = False) -> None:
        if len(self._ops) >= MAX_BATCH_OPERATIONS:
            raise ValueError(f"A write batch holds at most {MAX_BATCH_OPERATIONS} operations")
        self._ops.append(_SetOperation(collection, doc_id, _encode(data), merge))

    async def commit(self) -> int:
        return self._store.apply(self._ops)


class DocumentStore:
    """Collection/document facade over the ``stored_documents`` table."""

    def __init__(self, session_factory: Callable[[], Session] = SessionLocal):
        self._session_factory = session_factory

    @staticmethod
    def new_id() -> str:
        return uuid.uuid4().hex[:20]

    def batch(self) -> WriteBatch:
        return WriteBatch(self)

    async def get(self, collection: str, doc_id: str) -> DocumentSnapshot | None:
        db = self._session_factory()
        try:
            row = (
                db.query(StoredDocument)
                .filter(StoredDocument.collection == collection, StoredDocument.doc_id == doc_id)
                .first()
            )
            if not row:
                return None
            return DocumentSnapshot(id=row.doc_id, data=_decode(row.data_json))
        finally:
            db.close()

    async def get_all(self, collection: str, doc_ids: list[str]) -> list[DocumentSnapshot]:
        if not doc_ids:
            return []
        db = self._session_factory()
        try:
            rows = (
                db.query(StoredDocument)
                .filter(StoredDocument.collection == collection, StoredDocument.doc_id.in_(list(doc_ids)))
                .order_by(StoredDocument.id.asc())
                .all()
            )
            return [DocumentSnapshot(id=row.doc_id, data=_decode(row.data_json)) for row in rows]
        finally:
            db.close()

    async def where(self, collection: str, *filters: FieldFilter) -> list[DocumentSnapshot]:
        db = self._session_factory()
        try:
            query = db.query(StoredDocument).filter(StoredDocument.collection == collection)
            conditions = [cond for cond in (_sql_condition(flt) for flt in filters) if cond is not None]
            if conditions and db.get_bind().dialect.name == "sqlite":
                # Rows SQLite cannot parse as JSON fall through to the Python pass.
                query = query.filter(
                    case((func.json_valid(StoredDocument.data_json) == 1, and_(*conditions)), else_=true())
                )
            rows = query.order_by(StoredDocument.id.asc()).all()
        finally:
            db.close()

        out: list[DocumentSnapshot] = []
        for row in rows:
            try:
                data = _decode(row.data_json)
            except json.JSONDecodeError:
                logger.warning("Skipping undecodable document %s/%s", collection, row.doc_id)
                continue
            if all(_matches(data, flt) for flt in filters):
                out.append(DocumentSnapshot(id=row.doc_id, data=data))
        return out

    async def add(self, collection: str, data: dict[str, Any], doc_id: str | None = None) -> str:
        doc_id = doc_id or self.new_id()
        self.apply([_SetOperation(collection, doc_id, _encode(data))])
        return doc_id

    def apply(self, ops: list[_SetOperation]) -> int:
        if not ops:
            return 0
        db = self._session_factory()
        try:
            for op in ops:
                row = (
                    db.query(StoredDocument)
                    .filter(StoredDocument.collection == op.collection, StoredDocument.doc_id == op.doc_id)
                    .first()
                )
                if row is None:
                    db.add(
                        StoredDocument(
                            collection=op.collection,
                            doc_id=op.doc_id,
                            data_json=json.dumps(op.data, ensure_ascii=True),
                        )
                    )
                    # Later ops in the same batch may target this document.
                    db.flush()
                    continue
                current = _decode(row.data_json)
                data = _deep_merge(current, op.data) if op.merge else op.data
                row.data_json = json.dumps(data, ensure_ascii=True)
            db.commit()
            return len(ops)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
