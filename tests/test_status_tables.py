import enum

import pytest

from errors import InvalidStateError, TransitionRejected, UnknownStatusError
from status_tables import (
    LEGACY_STATUS_MAPS, STATUS_ENUMS, TERMINAL_STATUSES, TRANSITIONS,
    BookingStatus, EntityKind, Event, InvoiceStatus, OfferStatus, PaymentStatus,
    QuoteRequestStatus, is_current_status, is_terminal, next_status, normalize_legacy_status,
)


def test_every_legacy_value_maps_to_a_current_status():
    for kind, mapping in LEGACY_STATUS_MAPS.items():
        for legacy_value in mapping:
            normalized = normalize_legacy_status(kind, legacy_value)
            assert isinstance(normalized, STATUS_ENUMS[kind])
            assert is_current_status(kind, normalized.value)


@pytest.mark.parametrize("legacy,expected", [
    ("pending", "submitted"),
    ("draft", "submitted"),
    ("under-operator-review", "quote-received"),
    ("under-offer", "quote-received"),
    ("quoted", "quote-received"),
    ("booked", "accepted"),
    ("cancelled", "rejected"),
])
def test_quote_request_legacy_map(legacy, expected):
    assert normalize_legacy_status(EntityKind.QUOTE_REQUEST, legacy).value == expected


@pytest.mark.parametrize("legacy,expected", [
    ("pending", "pending-payment"),
    ("confirmed", "confirmed"),
    ("completed", "archived"),
    ("cancelled", "cancelled"),
])
def test_booking_legacy_map(legacy, expected):
    assert normalize_legacy_status(EntityKind.BOOKING, legacy).value == expected


def test_current_values_normalize_to_themselves():
    for kind, enum_cls in STATUS_ENUMS.items():
        for member in enum_cls:
            assert normalize_legacy_status(kind, member.value) is member


@pytest.mark.parametrize("kind,value", [
    (EntityKind.QUOTE_REQUEST, "archived"),
    (EntityKind.BOOKING, "paid"),
    (EntityKind.PAYMENT, "refunded"),
    (EntityKind.INVOICE, "overdue"),
    (EntityKind.OFFER, None),
])
def test_unknown_legacy_values_are_rejected(kind, value):
    with pytest.raises(UnknownStatusError):
        normalize_legacy_status(kind, value)


def test_request_happy_path():
    status = QuoteRequestStatus.SUBMITTED
    status = next_status(EntityKind.QUOTE_REQUEST, status, Event.OFFER_SUBMITTED)
    assert status == QuoteRequestStatus.QUOTE_RECEIVED
    status = next_status(EntityKind.QUOTE_REQUEST, status, Event.QUOTES_VIEWED)
    assert status == QuoteRequestStatus.QUOTES_VIEWED
    status = next_status(EntityKind.QUOTE_REQUEST, status, Event.OFFER_ACCEPTED)
    assert status == QuoteRequestStatus.ACCEPTED


def test_new_offer_does_not_unread_a_viewed_request():
    status = next_status(EntityKind.QUOTE_REQUEST, "quotes-viewed", "offer-submitted")
    assert status == QuoteRequestStatus.QUOTES_VIEWED


def test_request_cannot_accept_without_an_offer():
    with pytest.raises(TransitionRejected):
        next_status(EntityKind.QUOTE_REQUEST, "submitted", Event.OFFER_ACCEPTED)


@pytest.mark.parametrize("kind,status", [
    (EntityKind.QUOTE_REQUEST, "submitted"),
    (EntityKind.QUOTE_REQUEST, "quote-received"),
    (EntityKind.QUOTE_REQUEST, "quotes-viewed"),
    (EntityKind.OFFER, "awaiting-acknowledgement"),
    (EntityKind.OFFER, "pending-client-acceptance"),
])
def test_expire_from_open_states(kind, status):
    assert next_status(kind, status, Event.EXPIRE).value == "expired"


def test_terminal_states_reject_further_events():
    for kind, terminals in TERMINAL_STATUSES.items():
        for status in terminals:
            assert is_terminal(kind, status.value)
            with pytest.raises(InvalidStateError):
                next_status(kind, status, Event.EXPIRE)


def test_accept_is_idempotent_on_accepted_offer():
    assert next_status(EntityKind.OFFER, "pending-client-acceptance", "accept") == OfferStatus.ACCEPTED_BY_CLIENT
    assert next_status(EntityKind.OFFER, "accepted-by-client", "accept") == OfferStatus.ACCEPTED_BY_CLIENT


def test_offer_must_be_acknowledged_before_acceptance():
    with pytest.raises(TransitionRejected):
        next_status(EntityKind.OFFER, "awaiting-acknowledgement", Event.ACCEPT)
    assert next_status(EntityKind.OFFER, "awaiting-acknowledgement", Event.ACKNOWLEDGE) == \
        OfferStatus.PENDING_CLIENT_ACCEPTANCE


def test_rejected_offer_cannot_be_accepted():
    with pytest.raises(TransitionRejected) as exc:
        next_status(EntityKind.OFFER, "rejected-by-client", Event.ACCEPT)
    assert exc.value.current == "rejected-by-client"
    assert exc.value.event == "accept"


def test_booking_payment_applied_depends_on_balance():
    assert next_status(EntityKind.BOOKING, "pending-payment", Event.PAYMENT_APPLIED,
                       {"amountPending": 5000}) == BookingStatus.DEPOSIT_PAID
    assert next_status(EntityKind.BOOKING, "deposit-paid", Event.PAYMENT_APPLIED,
                       {"amountPending": 0}) == BookingStatus.CONFIRMED
    with pytest.raises(TransitionRejected):
        next_status(EntityKind.BOOKING, "pending-payment", Event.PAYMENT_APPLIED)


def test_invoice_payment_applied_depends_on_balance():
    assert next_status(EntityKind.INVOICE, "open", Event.PAYMENT_APPLIED,
                       {"amountPending": 1}) == InvoiceStatus.BALANCE_DUE
    assert next_status(EntityKind.INVOICE, "balance-due", Event.PAYMENT_APPLIED,
                       {"amountPending": 0}) == InvoiceStatus.PAID
    with pytest.raises(TransitionRejected):
        next_status(EntityKind.INVOICE, "paid", Event.PAYMENT_APPLIED, {"amountPending": 0})


def test_client_ready_needs_payment_and_manifest():
    ready = {"amountPending": 0, "passengers": 2, "passengerCount": 2}
    assert next_status(EntityKind.BOOKING, "confirmed", Event.MARK_CLIENT_READY, ready) == \
        BookingStatus.CLIENT_READY

    with pytest.raises(TransitionRejected, match="manifest"):
        next_status(EntityKind.BOOKING, "confirmed", Event.MARK_CLIENT_READY, {**ready, "passengers": 1})
    with pytest.raises(TransitionRejected, match="not fully paid"):
        next_status(EntityKind.BOOKING, "confirmed", Event.MARK_CLIENT_READY, {**ready, "amountPending": 10})


def test_flight_ready_needs_all_checklist_flags():
    context = {
        "amountPending": 0, "passengers": 1, "passengerCount": 1,
        "checklist": {"operatorChecklist": True, "clientChecklist": True,
                      "documentChecklist": True, "paymentChecklist": False},
    }
    with pytest.raises(TransitionRejected, match="paymentChecklist"):
        next_status(EntityKind.BOOKING, "client-ready", Event.MARK_FLIGHT_READY, context)

    context["checklist"]["paymentChecklist"] = True
    assert next_status(EntityKind.BOOKING, "client-ready", Event.MARK_FLIGHT_READY, context) == \
        BookingStatus.FLIGHT_READY


@pytest.mark.parametrize("status", ["pending-payment", "deposit-paid", "confirmed", "client-ready", "flight-ready"])
def test_cancel_from_any_pre_archived_state(status):
    assert next_status(EntityKind.BOOKING, status, Event.CANCEL) == BookingStatus.CANCELLED


def test_credit_and_refund_only_after_cancellation():
    assert next_status(EntityKind.BOOKING, "cancelled", Event.CREDIT) == BookingStatus.CREDITED
    assert next_status(EntityKind.BOOKING, "cancelled", Event.REFUND) == BookingStatus.REFUNDED
    with pytest.raises(TransitionRejected):
        next_status(EntityKind.BOOKING, "confirmed", Event.REFUND)
    with pytest.raises(TransitionRejected):
        next_status(EntityKind.BOOKING, "archived", Event.CANCEL)


def test_payment_settles_once():
    assert next_status(EntityKind.PAYMENT, "pending", Event.COMPLETE) == PaymentStatus.COMPLETED
    assert next_status(EntityKind.PAYMENT, "pending", Event.FAIL) == PaymentStatus.FAILED
    for terminal in ("completed", "failed"):
        for event in (Event.COMPLETE, Event.FAIL):
            with pytest.raises(TransitionRejected):
                next_status(EntityKind.PAYMENT, terminal, event)


def test_unknown_event_or_status_is_rejected():
    with pytest.raises(TransitionRejected):
        next_status(EntityKind.OFFER, "pending-client-acceptance", "teleport")
    with pytest.raises(TransitionRejected):
        next_status(EntityKind.OFFER, "pending", Event.ACCEPT)


def test_transition_targets_belong_to_their_kind():
    for kind, table in TRANSITIONS.items():
        enum_cls = STATUS_ENUMS[kind]
        for (status, _event), target in table.items():
            assert isinstance(status, enum_cls)
            if isinstance(target, enum.Enum):
                assert isinstance(target, enum_cls)
