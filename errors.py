"""
Error types raised by the commerce lifecycle engine.
Every error carries a human message and optional structured details so the
HTTP layer can render it without knowing the concrete type.
"""

from __future__ import annotations

from typing import Any, Dict, Optional


class CommerceError(Exception):
    """Base class for all engine errors."""

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> dict:
        payload = {"error": self.message, "type": type(self).__name__}
        payload.update(self.details)
        return payload


class NotFoundError(CommerceError):
    """Referenced entity does not exist."""


class InvalidStateError(CommerceError):
    """Operation not permitted in the entity's current status."""


class TransitionRejected(InvalidStateError):
    """No transition exists for (kind, current status, event)."""

    def __init__(self, kind: str, current: str, event: str, reason: Optional[str] = None):
        message = f"{kind}: cannot apply '{event}' in status '{current}'"
        if reason:
            message = f"{message} ({reason})"
        super().__init__(message, {"kind": kind, "current": current, "event": event})
        self.kind = kind
        self.current = current
        self.event = event


class ConflictError(CommerceError):
    """Optimistic concurrency loss; re-read and retry."""


class ValidationError(CommerceError):
    """Malformed input."""


class UnknownStatusError(ValidationError):
    """A stored status value that no legacy map recognises."""

    def __init__(self, kind: str, value: Any):
        super().__init__(f"Unknown {kind} status: {value!r}", {"kind": kind, "value": value})
        self.kind = kind
        self.value = value


class MalformedIdentifierError(CommerceError):
    """Identifier does not match the grammar for its kind."""


class MigrationFailure(CommerceError):
    """A single document could not be migrated. Never fatal to a batch."""

    def __init__(self, collection: str, doc_id: str, reason: str):
        super().__init__(f"{collection}/{doc_id}: {reason}", {"collection": collection, "id": doc_id})
        self.collection = collection
        self.doc_id = doc_id
        self.reason = reason
