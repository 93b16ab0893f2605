"""
Status state machines for quote requests, offers, bookings, invoices and payments.

`next_status` is pure: it only looks at the entity kind, its current status,
the event and an optional context mapping (balances, passenger counts,
checklist flags). Loading and storing documents is the caller's job.
"""

from __future__ import annotations

import enum
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union

from errors import TransitionRejected, UnknownStatusError, ValidationError


class EntityKind(str, enum.Enum):
    QUOTE_REQUEST = "quoteRequest"
    OFFER = "offer"
    BOOKING = "booking"
    INVOICE = "invoice"
    PAYMENT = "payment"


class QuoteRequestStatus(str, enum.Enum):
    SUBMITTED = "submitted"
    QUOTE_RECEIVED = "quote-received"
    QUOTES_VIEWED = "quotes-viewed"
    ACCEPTED = "accepted"
    REJECTED = "rejected"
    EXPIRED = "expired"


class OfferStatus(str, enum.Enum):
    AWAITING_ACKNOWLEDGEMENT = "awaiting-acknowledgement"
    PENDING_CLIENT_ACCEPTANCE = "pending-client-acceptance"
    ACCEPTED_BY_CLIENT = "accepted-by-client"
    REJECTED_BY_CLIENT = "rejected-by-client"
    EXPIRED = "expired"


class BookingStatus(str, enum.Enum):
    PENDING_PAYMENT = "pending-payment"
    DEPOSIT_PAID = "deposit-paid"
    CONFIRMED = "confirmed"
    CLIENT_READY = "client-ready"
    FLIGHT_READY = "flight-ready"
    ARCHIVED = "archived"
    CANCELLED = "cancelled"
    CREDITED = "credited"
    REFUNDED = "refunded"


class InvoiceStatus(str, enum.Enum):
    OPEN = "open"
    BALANCE_DUE = "balance-due"
    PAID = "paid"


class PaymentStatus(str, enum.Enum):
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"


class Event(str, enum.Enum):
    # quote request
    OFFER_SUBMITTED = "offer-submitted"
    QUOTES_VIEWED = "quotes-viewed"
    OFFER_ACCEPTED = "offer-accepted"
    DECLINE = "decline"
    # shared by requests and offers
    EXPIRE = "expire"
    # offer
    ACKNOWLEDGE = "acknowledge"
    ACCEPT = "accept"
    REJECT = "reject"
    # booking and invoice
    PAYMENT_APPLIED = "payment-applied"
    MARK_CLIENT_READY = "mark-client-ready"
    MARK_FLIGHT_READY = "mark-flight-ready"
    ARCHIVE = "archive"
    CANCEL = "cancel"
    CREDIT = "credit"
    REFUND = "refund"
    # payment
    COMPLETE = "complete"
    FAIL = "fail"


STATUS_ENUMS = {
    EntityKind.QUOTE_REQUEST: QuoteRequestStatus,
    EntityKind.OFFER: OfferStatus,
    EntityKind.BOOKING: BookingStatus,
    EntityKind.INVOICE: InvoiceStatus,
    EntityKind.PAYMENT: PaymentStatus,
}

CHECKLIST_FLAGS = ("operatorChecklist", "clientChecklist", "documentChecklist", "paymentChecklist")

# A guard takes the caller's context and returns (target, None) or (None, reason)
Guard = Callable[[Mapping[str, Any]], Tuple[Optional[enum.Enum], Optional[str]]]
Target = Union[enum.Enum, Guard]


# ==================== GUARDS ====================

def _pending(context: Mapping[str, Any]) -> Optional[float]:
    value = context.get("amountPending")
    return None if value is None else float(value)


def _booking_payment_applied(context):
    pending = _pending(context)
    if pending is None:
        return None, "amountPending is required"
    if pending <= 0:
        return BookingStatus.CONFIRMED, None
    return BookingStatus.DEPOSIT_PAID, None


def _booking_still_confirmed(context):
    pending = _pending(context)
    if pending is not None and pending > 0:
        return None, "confirmed booking cannot carry an outstanding balance"
    return BookingStatus.CONFIRMED, None


def _invoice_payment_applied(context):
    pending = _pending(context)
    if pending is None:
        return None, "amountPending is required"
    if pending <= 0:
        return InvoiceStatus.PAID, None
    return InvoiceStatus.BALANCE_DUE, None


def _client_ready(context):
    pending = _pending(context)
    if pending is None or pending > 0:
        return None, "booking is not fully paid"
    passengers = int(context.get("passengers") or 0)
    required = int(context.get("passengerCount") or 0)
    if required <= 0 or passengers < required:
        return None, f"passenger manifest incomplete ({passengers}/{required})"
    return BookingStatus.CLIENT_READY, None


def _flight_ready(context):
    target, reason = _client_ready(context)
    if target is None:
        return None, reason
    checklist = context.get("checklist") or {}
    missing = [flag for flag in CHECKLIST_FLAGS if not checklist.get(flag)]
    if missing:
        return None, "incomplete checklist: " + ", ".join(missing)
    return BookingStatus.FLIGHT_READY, None


# ==================== TRANSITION TABLES ====================

R = QuoteRequestStatus
O = OfferStatus
B = BookingStatus
I = InvoiceStatus
P = PaymentStatus

_REQUEST_OPEN = (R.SUBMITTED, R.QUOTE_RECEIVED, R.QUOTES_VIEWED)
_OFFER_OPEN = (O.AWAITING_ACKNOWLEDGEMENT, O.PENDING_CLIENT_ACCEPTANCE)
_BOOKING_CANCELLABLE = (B.PENDING_PAYMENT, B.DEPOSIT_PAID, B.CONFIRMED, B.CLIENT_READY, B.FLIGHT_READY)

TRANSITIONS: Dict[EntityKind, Dict[Tuple[enum.Enum, Event], Target]] = {
    EntityKind.QUOTE_REQUEST: {
        (R.SUBMITTED, Event.OFFER_SUBMITTED): R.QUOTE_RECEIVED,
        (R.QUOTE_RECEIVED, Event.OFFER_SUBMITTED): R.QUOTE_RECEIVED,
        # Further offers never send a viewed request back to unread
        (R.QUOTES_VIEWED, Event.OFFER_SUBMITTED): R.QUOTES_VIEWED,
        (R.QUOTE_RECEIVED, Event.QUOTES_VIEWED): R.QUOTES_VIEWED,
        (R.QUOTES_VIEWED, Event.QUOTES_VIEWED): R.QUOTES_VIEWED,
        (R.QUOTE_RECEIVED, Event.OFFER_ACCEPTED): R.ACCEPTED,
        (R.QUOTES_VIEWED, Event.OFFER_ACCEPTED): R.ACCEPTED,
        **{(s, Event.DECLINE): R.REJECTED for s in _REQUEST_OPEN},
        **{(s, Event.EXPIRE): R.EXPIRED for s in _REQUEST_OPEN},
    },
    EntityKind.OFFER: {
        (O.AWAITING_ACKNOWLEDGEMENT, Event.ACKNOWLEDGE): O.PENDING_CLIENT_ACCEPTANCE,
        (O.PENDING_CLIENT_ACCEPTANCE, Event.ACKNOWLEDGE): O.PENDING_CLIENT_ACCEPTANCE,
        (O.PENDING_CLIENT_ACCEPTANCE, Event.ACCEPT): O.ACCEPTED_BY_CLIENT,
        # At-least-once delivery of client actions
        (O.ACCEPTED_BY_CLIENT, Event.ACCEPT): O.ACCEPTED_BY_CLIENT,
        (O.PENDING_CLIENT_ACCEPTANCE, Event.REJECT): O.REJECTED_BY_CLIENT,
        (O.REJECTED_BY_CLIENT, Event.REJECT): O.REJECTED_BY_CLIENT,
        **{(s, Event.EXPIRE): O.EXPIRED for s in _OFFER_OPEN},
    },
    EntityKind.BOOKING: {
        (B.PENDING_PAYMENT, Event.PAYMENT_APPLIED): _booking_payment_applied,
        (B.DEPOSIT_PAID, Event.PAYMENT_APPLIED): _booking_payment_applied,
        (B.CONFIRMED, Event.PAYMENT_APPLIED): _booking_still_confirmed,
        (B.CONFIRMED, Event.MARK_CLIENT_READY): _client_ready,
        (B.CLIENT_READY, Event.MARK_FLIGHT_READY): _flight_ready,
        (B.FLIGHT_READY, Event.ARCHIVE): B.ARCHIVED,
        **{(s, Event.CANCEL): B.CANCELLED for s in _BOOKING_CANCELLABLE},
        (B.CANCELLED, Event.CREDIT): B.CREDITED,
        (B.CANCELLED, Event.REFUND): B.REFUNDED,
    },
    EntityKind.INVOICE: {
        (I.OPEN, Event.PAYMENT_APPLIED): _invoice_payment_applied,
        (I.BALANCE_DUE, Event.PAYMENT_APPLIED): _invoice_payment_applied,
    },
    EntityKind.PAYMENT: {
        (P.PENDING, Event.COMPLETE): P.COMPLETED,
        (P.PENDING, Event.FAIL): P.FAILED,
    },
}

TERMINAL_STATUSES = {
    EntityKind.QUOTE_REQUEST: frozenset({R.ACCEPTED, R.REJECTED, R.EXPIRED}),
    EntityKind.OFFER: frozenset({O.ACCEPTED_BY_CLIENT, O.REJECTED_BY_CLIENT, O.EXPIRED}),
    EntityKind.BOOKING: frozenset({B.ARCHIVED, B.CREDITED, B.REFUNDED}),
    EntityKind.INVOICE: frozenset({I.PAID}),
    EntityKind.PAYMENT: frozenset({P.COMPLETED, P.FAILED}),
}


# ==================== LEGACY NORMALIZATION ====================

LEGACY_STATUS_MAPS: Dict[EntityKind, Dict[str, enum.Enum]] = {
    EntityKind.QUOTE_REQUEST: {
        "pending": R.SUBMITTED,
        "draft": R.SUBMITTED,
        "under-operator-review": R.QUOTE_RECEIVED,
        "under-offer": R.QUOTE_RECEIVED,
        "quoted": R.QUOTE_RECEIVED,
        "booked": R.ACCEPTED,
        "cancelled": R.REJECTED,
    },
    EntityKind.OFFER: {
        "pending": O.PENDING_CLIENT_ACCEPTANCE,
        "accepted": O.ACCEPTED_BY_CLIENT,
        "rejected": O.REJECTED_BY_CLIENT,
    },
    EntityKind.BOOKING: {
        "pending": B.PENDING_PAYMENT,
        "confirmed": B.CONFIRMED,
        "completed": B.ARCHIVED,
        "cancelled": B.CANCELLED,
    },
    EntityKind.INVOICE: {},
    EntityKind.PAYMENT: {
        "processing": P.PENDING,
        "paid": P.COMPLETED,
        "overdue": P.PENDING,
        # "refunded" has no current equivalent and must be resolved by hand
    },
}


def _check_legacy_maps():
    for kind, mapping in LEGACY_STATUS_MAPS.items():
        enum_cls = STATUS_ENUMS[kind]
        for legacy, target in mapping.items():
            if not isinstance(target, enum_cls):
                raise RuntimeError(f"{kind.value} legacy status {legacy!r} maps outside {enum_cls.__name__}")


_check_legacy_maps()


# ==================== PUBLIC API ====================

def as_kind(kind) -> EntityKind:
    if isinstance(kind, EntityKind):
        return kind
    try:
        return EntityKind(kind)
    except ValueError:
        raise ValidationError(f"Unknown entity kind: {kind!r}")


def coerce_status(kind, value) -> Optional[enum.Enum]:
    """Current-status enum member for `value`, or None if it is not current."""
    enum_cls = STATUS_ENUMS[as_kind(kind)]
    if isinstance(value, enum_cls):
        return value
    try:
        return enum_cls(value)
    except ValueError:
        return None


def is_current_status(kind, value) -> bool:
    return coerce_status(kind, value) is not None


def is_terminal(kind, status) -> bool:
    kind = as_kind(kind)
    return coerce_status(kind, status) in TERMINAL_STATUSES[kind]


def next_status(kind, current, event, context: Optional[Mapping[str, Any]] = None) -> enum.Enum:
    """
    Resolve the status `current` moves to on `event`.

    Raises TransitionRejected when the table has no entry, or when a guarded
    transition's preconditions are not met by `context`.
    """
    kind = as_kind(kind)
    try:
        event = Event(event)
    except ValueError:
        raise TransitionRejected(kind.value, str(current), str(event), "unknown event")

    status = coerce_status(kind, current)
    if status is None:
        raise TransitionRejected(kind.value, str(current), event.value, "unknown status")

    target = TRANSITIONS[kind].get((status, event))
    if target is None:
        raise TransitionRejected(kind.value, status.value, event.value)
    if isinstance(target, enum.Enum):
        return target

    resolved, reason = target(context or {})
    if resolved is None:
        raise TransitionRejected(kind.value, status.value, event.value, reason)
    return resolved


def normalize_legacy_status(kind, value) -> enum.Enum:
    """
    Map a stored status (current or legacy) onto the current enumeration.

    Unknown values raise UnknownStatusError instead of falling back to a
    default.
    """
    kind = as_kind(kind)
    current = coerce_status(kind, value)
    if current is not None:
        return current
    mapped = LEGACY_STATUS_MAPS[kind].get(value) if isinstance(value, str) else None
    if mapped is None:
        raise UnknownStatusError(kind.value, value)
    return mapped
