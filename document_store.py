"""
Document-store interface over SQLAlchemy.

The lifecycle coordinator and the migration engine only talk to storage
through `DocumentStore`: get, query, create, update (with explicit field
removal) and an all-or-nothing batch commit. Writes can be made conditional
on the version that was read, which is how concurrent transitions are
detected.
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.exc import StaleDataError

from errors import ConflictError, NotFoundError, ValidationError
from models import Document

logger = logging.getLogger(__name__)

# Collection names
QUOTE_REQUESTS = "quoteRequests"
OFFERS = "quotes"
BOOKINGS = "bookings"
INVOICES = "invoices"
PAYMENTS = "payments"
USERS = "users"

_MISSING = object()


# ==================== PATH HELPERS ====================

def get_path(data: Dict[str, Any], path: str, default: Any = None) -> Any:
    """Read a dotted path ("payment.amountPaid") from nested dicts."""
    node: Any = data
    for part in path.split("."):
        if not isinstance(node, dict) or part not in node:
            return default
        node = node[part]
    return node


def has_path(data: Dict[str, Any], path: str) -> bool:
    return get_path(data, path, _MISSING) is not _MISSING


def _set_path(data: Dict[str, Any], path: str, value: Any) -> None:
    parts = path.split(".")
    node = data
    for part in parts[:-1]:
        child = node.get(part)
        if not isinstance(child, dict):
            child = {}
            node[part] = child
        node = child
    node[parts[-1]] = copy.deepcopy(value)


def _delete_path(data: Dict[str, Any], path: str) -> None:
    parts = path.split(".")
    node = data
    for part in parts[:-1]:
        node = node.get(part)
        if not isinstance(node, dict):
            return
    node.pop(parts[-1], None)


def apply_patch(data: Dict[str, Any], patch: Optional[Dict[str, Any]] = None,
                delete_fields: Iterable[str] = ()) -> Dict[str, Any]:
    """
    Return a new dict with `delete_fields` removed, then `patch` applied.
    Keys in both may be dotted paths. A None value in `patch` stores null;
    removal only happens through `delete_fields`.
    """
    result = copy.deepcopy(data or {})
    for path in delete_fields or ():
        _delete_path(result, path)
    for path, value in (patch or {}).items():
        _set_path(result, path, value)
    return result


# ==================== VALUE TYPES ====================

@dataclass
class Snapshot:
    """A document as read at a specific version."""
    collection: str
    id: str
    data: Dict[str, Any]
    version: int

    def get(self, path: str, default: Any = None) -> Any:
        return get_path(self.data, path, default)

    def to_dict(self) -> dict:
        payload = dict(self.data)
        payload["id"] = self.id
        return payload


@dataclass
class BatchOperation:
    """
    One write inside `commit_batch`.

    create=True inserts a new document (fails if the id exists); otherwise the
    document must exist and, when expected_version is set, still be at that
    version.
    """
    collection: str
    id: str
    patch: Dict[str, Any] = field(default_factory=dict)
    delete_fields: Sequence[str] = ()
    expected_version: Optional[int] = None
    create: bool = False


FILTER_OPERATORS = ("==", "!=", "in", "not-in", "<", "<=", ">", ">=", "exists", "missing")


def _matches(data: Dict[str, Any], flt: Tuple) -> bool:
    if len(flt) == 2:
        path, op = flt
        value = None
    else:
        path, op, value = flt
    actual = get_path(data, path, _MISSING)

    if op == "exists":
        return actual is not _MISSING
    if op == "missing":
        return actual is _MISSING
    if actual is _MISSING:
        return op in ("!=", "not-in")
    if op == "==":
        return actual == value
    if op == "!=":
        return actual != value
    if op == "in":
        return actual in value
    if op == "not-in":
        return actual not in value
    try:
        if op == "<":
            return actual < value
        if op == "<=":
            return actual <= value
        if op == ">":
            return actual > value
        if op == ">=":
            return actual >= value
    except TypeError:
        return False
    raise ValidationError(f"Unsupported filter operator: {op!r}")


def _sort_key(snapshot: Snapshot, path: str):
    value = snapshot.get(path)
    # Documents without the field sort last
    return (value is None, value if value is not None else 0, snapshot.id)


class DocumentStore:
    """Document reads and writes backed by the `documents` table."""

    def __init__(self, session_factory):
        self.session_factory = session_factory

    # ---------- reads ----------

    def get_document(self, collection: str, doc_id: str) -> Optional[Snapshot]:
        session = self.session_factory()
        try:
            row = session.get(Document, (collection, doc_id), populate_existing=True)
            return self._snapshot(row) if row else None
        finally:
            session.close()

    def require_document(self, collection: str, doc_id: str, label: Optional[str] = None) -> Snapshot:
        snapshot = self.get_document(collection, doc_id)
        if snapshot is None:
            raise NotFoundError(f"{label or collection} not found: {doc_id}",
                                {"collection": collection, "id": doc_id})
        return snapshot

    def query_documents(self, collection: str, filters: Optional[Sequence[Tuple]] = None,
                        order_by: Optional[str] = None, limit: Optional[int] = None,
                        start_after: Optional[str] = None) -> List[Snapshot]:
        """
        Filter documents of a collection.

        filters: (path, op, value) tuples, ANDed. ops: see FILTER_OPERATORS.
        order_by: dotted path, prefix with '-' for descending. Defaults to id.
        start_after: document id for keyset paging (ids are scanned in order).
        """
        for flt in filters or ():
            if flt[1] not in FILTER_OPERATORS:
                raise ValidationError(f"Unsupported filter operator: {flt[1]!r}")

        stmt = select(Document).where(Document.collection == collection).order_by(Document.id)
        if start_after is not None:
            stmt = stmt.where(Document.id > start_after)

        session = self.session_factory()
        try:
            results = []
            for row in session.scalars(stmt.execution_options(populate_existing=True)):
                if all(_matches(row.data or {}, flt) for flt in filters or ()):
                    results.append(self._snapshot(row))
                    if limit is not None and order_by is None and len(results) >= limit:
                        break
        finally:
            session.close()

        if order_by:
            reverse = order_by.startswith("-")
            path = order_by.lstrip("-")
            results.sort(key=lambda s: _sort_key(s, path), reverse=reverse)
            if limit is not None:
                results = results[:limit]
        return results

    # ---------- writes ----------

    def create_document(self, collection: str, doc_id: str, data: Dict[str, Any]) -> Snapshot:
        op = BatchOperation(collection, doc_id, patch=data, create=True)
        return self.commit_batch([op])[0]

    def update_document(self, collection: str, doc_id: str, patch: Optional[Dict[str, Any]] = None,
                        delete_fields: Optional[Sequence[str]] = None,
                        expected_version: Optional[int] = None) -> Snapshot:
        op = BatchOperation(collection, doc_id, patch=patch or {},
                            delete_fields=tuple(delete_fields or ()),
                            expected_version=expected_version)
        return self.commit_batch([op])[0]

    def commit_batch(self, operations: Sequence[BatchOperation]) -> List[Snapshot]:
        """Apply every operation in one transaction, or none of them."""
        if not operations:
            return []

        session = self.session_factory()
        try:
            rows = []
            for op in operations:
                if op.create:
                    row = Document(collection=op.collection, id=op.id,
                                   data=apply_patch({}, op.patch))
                    session.add(row)
                else:
                    row = session.get(Document, (op.collection, op.id), populate_existing=True)
                    if row is None:
                        raise NotFoundError(f"{op.collection} not found: {op.id}",
                                            {"collection": op.collection, "id": op.id})
                    if op.expected_version is not None and row.version != op.expected_version:
                        raise ConflictError(
                            f"{op.collection}/{op.id} changed since it was read",
                            {"collection": op.collection, "id": op.id,
                             "expected": op.expected_version, "actual": row.version},
                        )
                    row.data = apply_patch(row.data, op.patch, op.delete_fields)
                rows.append(row)
            session.flush()
            snapshots = [self._snapshot(row) for row in rows]
            session.commit()
            return snapshots
        except (StaleDataError, IntegrityError) as exc:
            session.rollback()
            logger.warning("Batch of %d operations lost a concurrent write: %s", len(operations), exc)
            raise ConflictError("Concurrent modification detected; re-read and retry",
                                {"operations": len(operations)}) from exc
        except Exception:
            session.rollback()
            raise
        finally:
            session.close()

    @staticmethod
    def _snapshot(row: Document) -> Snapshot:
        return Snapshot(row.collection, row.id, copy.deepcopy(row.data or {}), row.version)
