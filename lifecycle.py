"""
Lifecycle Coordinator: quote request -> offer -> booking + invoice -> payment.

Every operation reads the documents it needs, asks the status tables whether
the transition is allowed, and writes back only if the documents are still at
the version that was read. Writes that touch more than one document go
through a single `commit_batch`, so a booking never exists without its
invoice and a completed payment is credited to the invoice and booking
together or not at all.
"""

from __future__ import annotations

import logging
import re
from datetime import timedelta
from typing import Any, Dict, Iterable, List, Mapping, Optional

import config
import notifications
from clock import SystemClock, from_iso, to_iso
from document_store import (
    BOOKINGS, INVOICES, OFFERS, PAYMENTS, QUOTE_REQUESTS, USERS,
    BatchOperation, DocumentStore, Snapshot,
)
from errors import ConflictError, InvalidStateError, ValidationError
from identifiers import IdKind, IdentifierRegistry
from mappings import is_icao_code, get_airport_name, get_airport_timezone, local_time
from models import generate_uuid
from shapes import (
    accepted_quote_snapshot, aircraft_summary, apply_to_balance, checklist,
    compute_pricing, operator_summary, original_request_snapshot,
    payment_summary, round_money,
)
from status_tables import (
    CHECKLIST_FLAGS, BookingStatus, EntityKind, Event, OfferStatus,
    PaymentStatus, QuoteRequestStatus, InvoiceStatus, is_terminal, next_status,
)

logger = logging.getLogger(__name__)

OPEN_OFFER_STATUSES = (OfferStatus.AWAITING_ACKNOWLEDGEMENT.value, OfferStatus.PENDING_CLIENT_ACCEPTANCE.value)
OPEN_REQUEST_STATUSES = (
    QuoteRequestStatus.SUBMITTED.value,
    QuoteRequestStatus.QUOTE_RECEIVED.value,
    QuoteRequestStatus.QUOTES_VIEWED.value,
)

BOOKING_EVENTS = (
    Event.MARK_CLIENT_READY, Event.MARK_FLIGHT_READY, Event.ARCHIVE,
    Event.CANCEL, Event.CREDIT, Event.REFUND,
)
CLOSED_BOOKING_STATUSES = (
    BookingStatus.ARCHIVED.value, BookingStatus.CANCELLED.value,
    BookingStatus.CREDITED.value, BookingStatus.REFUNDED.value,
)

_DOC_TYPE = re.compile(r"^[A-Za-z][A-Za-z0-9_]*$")
TRIP_TYPES = ("oneWay", "return", "multiCity")


def _field(data: Mapping[str, Any], *names, default=None):
    for name in names:
        if data.get(name) not in (None, ""):
            return data[name]
    return default


def _positive_amount(value, label: str) -> float:
    try:
        amount = round_money(value)
    except (ArithmeticError, TypeError, ValueError):
        raise ValidationError(f"{label} must be a number", {"field": label})
    if amount <= 0:
        raise ValidationError(f"{label} must be greater than zero", {"field": label})
    return amount


class LifecycleCoordinator:
    """Orchestrates the commerce chain on top of a DocumentStore."""

    def __init__(self, store: DocumentStore, ids: Optional[IdentifierRegistry] = None,
                 clock=None, notifier: Optional[notifications.Notifier] = None):
        self.store = store
        self.clock = clock or SystemClock()
        self.ids = ids or IdentifierRegistry(self.clock)
        self.notifier = notifier or notifications.LogNotifier()

    # ==================== HELPERS ====================

    def _now(self):
        return self.clock.now()

    def _stamp(self) -> str:
        return to_iso(self._now())

    def _exists(self, collection: str):
        return lambda code: self.store.get_document(collection, code) is not None

    def _is_past(self, value) -> bool:
        return bool(value) and from_iso(value) <= self._now()

    def _notify(self, recipient_id, event_type, payload):
        if recipient_id:
            self.notifier.notify(recipient_id, event_type, payload)

    @staticmethod
    def _update(snapshot: Snapshot, patch: Dict[str, Any], delete_fields: Iterable[str] = ()) -> BatchOperation:
        return BatchOperation(snapshot.collection, snapshot.id, patch=patch,
                              delete_fields=tuple(delete_fields), expected_version=snapshot.version)

    def _require_open_request(self, request: Snapshot):
        status = request.get("status")
        if is_terminal(EntityKind.QUOTE_REQUEST, status):
            raise InvalidStateError(f"Quote request {request.id} is {status}",
                                    {"requestId": request.id, "status": status})
        if self._is_past(request.get("expiresAt")):
            raise InvalidStateError(f"Quote request {request.id} has expired",
                                    {"requestId": request.id, "expiresAt": request.get("expiresAt")})

    # ==================== QUOTE REQUESTS ====================

    def submit_quote_request(self, client_id: str, routing: Mapping[str, Any], passenger_count: int = 1,
                             special_requirements: Optional[str] = None,
                             cabin_class: Optional[str] = None) -> dict:
        """Open a new quote request in `submitted`, expiring after the configured TTL."""
        if not client_id:
            raise ValidationError("clientId is required", {"field": "clientId"})
        routing = routing or {}
        if not isinstance(routing, Mapping):
            raise ValidationError("routing must be an object", {"field": "routing"})

        departure = str(_field(routing, "departureAirport", "departure", default="")).strip().upper()
        arrival = str(_field(routing, "arrivalAirport", "arrival", default="")).strip().upper()
        for label, code in (("departureAirport", departure), ("arrivalAirport", arrival)):
            if not is_icao_code(code):
                raise ValidationError(f"{label} must be a 4-letter ICAO code", {"field": label, "value": code})
        if departure == arrival:
            raise ValidationError("Departure and arrival airports must differ",
                                  {"departureAirport": departure, "arrivalAirport": arrival})

        raw_date = _field(routing, "departureDate", "date")
        if raw_date is None:
            raise ValidationError("departureDate is required", {"field": "departureDate"})
        try:
            departure_date = from_iso(raw_date)
        except (TypeError, ValueError):
            raise ValidationError(f"Invalid departureDate: {raw_date!r}", {"field": "departureDate"})
        now = self._now()
        if departure_date <= now:
            raise ValidationError("Departure date must be in the future",
                                  {"field": "departureDate", "value": to_iso(departure_date)})

        trip_type = _field(routing, "tripType", default="oneWay")
        if trip_type not in TRIP_TYPES:
            raise ValidationError(f"Unknown tripType: {trip_type!r}",
                                  {"field": "tripType", "allowed": list(TRIP_TYPES)})
        return_date = None
        raw_return = _field(routing, "returnDate")
        if raw_return is not None:
            try:
                return_date = from_iso(raw_return)
            except (TypeError, ValueError):
                raise ValidationError(f"Invalid returnDate: {raw_return!r}", {"field": "returnDate"})
            if return_date <= departure_date:
                raise ValidationError("Return date must be after the departure date",
                                      {"field": "returnDate", "value": to_iso(return_date)})

        try:
            passenger_count = int(passenger_count)
        except (TypeError, ValueError):
            raise ValidationError("passengerCount must be an integer", {"field": "passengerCount"})
        if passenger_count < 1:
            raise ValidationError("passengerCount must be at least 1", {"field": "passengerCount"})

        request_id = generate_uuid()
        request_code = self.ids.generate(IdKind.QUOTE_REQUEST, client_id)
        stamp = to_iso(now)
        data = {
            "requestCode": request_code,
            "clientId": client_id,
            "routing": {
                "departureAirport": departure,
                "arrivalAirport": arrival,
                "departureDate": to_iso(departure_date),
                "flexibleDates": bool(routing.get("flexibleDates", False)),
                "tripType": trip_type,
                "returnDate": to_iso(return_date) if return_date else None,
            },
            "passengerCount": passenger_count,
            "cabinClass": cabin_class,
            "specialRequirements": special_requirements,
            "status": QuoteRequestStatus.SUBMITTED.value,
            "operatorUserCodesWhoHaveQuoted": [],
            "offerCount": 0,
            "createdAt": stamp,
            "updatedAt": stamp,
            "expiresAt": to_iso(now + timedelta(hours=config.QUOTE_REQUEST_TTL_HOURS)),
        }
        snapshot = self.store.create_document(QUOTE_REQUESTS, request_id, data)
        logger.info(f"Quote request {request_code} submitted by {client_id}")
        return snapshot.to_dict()

    def mark_quotes_viewed(self, request_id: str) -> dict:
        request = self.store.require_document(QUOTE_REQUESTS, request_id, "Quote request")
        target = next_status(EntityKind.QUOTE_REQUEST, request.get("status"), Event.QUOTES_VIEWED)
        if target.value == request.get("status"):
            return request.to_dict()
        updated = self.store.update_document(
            QUOTE_REQUESTS, request_id,
            {"status": target.value, "quotesViewedAt": self._stamp(), "updatedAt": self._stamp()},
            expected_version=request.version,
        )
        return updated.to_dict()

    def decline_quote_request(self, request_id: str, reason: Optional[str] = None) -> dict:
        """Client withdraws the request; every open offer on it is rejected with it."""
        request = self.store.require_document(QUOTE_REQUESTS, request_id, "Quote request")
        target = next_status(EntityKind.QUOTE_REQUEST, request.get("status"), Event.DECLINE)
        stamp = self._stamp()

        ops = [self._update(request, {"status": target.value, "declineReason": reason, "updatedAt": stamp})]
        for offer in self.store.query_documents(OFFERS, [("requestId", "==", request_id),
                                                          ("status", "in", OPEN_OFFER_STATUSES)]):
            offer_target = next_status(EntityKind.OFFER, offer.get("status"), Event.REJECT)
            ops.append(self._update(offer, {"status": offer_target.value, "updatedAt": stamp}))

        snapshots = self.store.commit_batch(ops)
        logger.info(f"Quote request {request.get('requestCode')} declined ({len(ops) - 1} offers rejected)")
        return snapshots[0].to_dict()

    def expire_stale(self) -> Dict[str, int]:
        """Expire open requests past their expiresAt, together with their open offers."""
        summary = {"requests": 0, "offers": 0, "conflicts": 0}
        candidates = self.store.query_documents(QUOTE_REQUESTS, [("status", "in", OPEN_REQUEST_STATUSES)])
        for request in candidates:
            if not self._is_past(request.get("expiresAt")):
                continue
            stamp = self._stamp()
            target = next_status(EntityKind.QUOTE_REQUEST, request.get("status"), Event.EXPIRE)
            ops = [self._update(request, {"status": target.value, "expiredAt": stamp, "updatedAt": stamp})]
            for offer in self.store.query_documents(OFFERS, [("requestId", "==", request.id),
                                                              ("status", "in", OPEN_OFFER_STATUSES)]):
                offer_target = next_status(EntityKind.OFFER, offer.get("status"), Event.EXPIRE)
                ops.append(self._update(offer, {"status": offer_target.value, "updatedAt": stamp}))
            try:
                self.store.commit_batch(ops)
            except ConflictError:
                # Someone acted on the request since the scan; the next sweep re-checks it
                summary["conflicts"] += 1
                logger.warning(f"Expiry of quote request {request.id} lost a concurrent update")
                continue
            summary["requests"] += 1
            summary["offers"] += len(ops) - 1
        if summary["requests"]:
            logger.info(f"Expired {summary['requests']} quote requests and {summary['offers']} offers")
        return summary

    # ==================== OFFERS ====================

    def submit_offer(self, request_id: str, operator_id: str, price, currency: Optional[str] = None,
                     notes: Optional[str] = None, aircraft: Optional[Dict[str, Any]] = None,
                     await_acknowledgement: bool = False) -> dict:
        """An operator prices an open quote request."""
        if not operator_id:
            raise ValidationError("operatorId is required", {"field": "operatorId"})
        request = self.store.require_document(QUOTE_REQUESTS, request_id, "Quote request")
        self._require_open_request(request)

        quoted = list(request.get("operatorUserCodesWhoHaveQuoted") or [])
        if operator_id in quoted:
            raise ConflictError(f"Operator {operator_id} has already quoted on this request",
                                {"requestId": request_id, "operatorUserCode": operator_id})

        pricing = compute_pricing(_positive_amount(price, "price"))
        request_target = next_status(EntityKind.QUOTE_REQUEST, request.get("status"), Event.OFFER_SUBMITTED)

        now = self._now()
        stamp = to_iso(now)
        created = request.get("createdAt")
        response_minutes = int((now - from_iso(created)).total_seconds() // 60) if created else None

        offer_id = self.ids.generate(IdKind.OFFER, operator_id, link_to=request_id)
        status = OfferStatus.AWAITING_ACKNOWLEDGEMENT if await_acknowledgement else OfferStatus.PENDING_CLIENT_ACCEPTANCE
        offer = {
            "offerId": offer_id,
            "requestId": request_id,
            "requestCode": request.get("requestCode"),
            "clientId": request.get("clientId"),
            "operatorUserCode": operator_id,
            **pricing,
            "currency": (currency or config.DEFAULT_CURRENCY).upper(),
            "notes": notes,
            "aircraft": aircraft,
            "status": status.value,
            "responseTimeMinutes": response_minutes,
            "createdAt": stamp,
            "updatedAt": stamp,
        }
        ops = [
            BatchOperation(OFFERS, offer_id, patch=offer, create=True),
            self._update(request, {
                "status": request_target.value,
                "operatorUserCodesWhoHaveQuoted": quoted + [operator_id],
                "offerCount": int(request.get("offerCount") or 0) + 1,
                "updatedAt": stamp,
            }),
        ]
        created_offer = self.store.commit_batch(ops)[0]
        logger.info(f"Offer {offer_id} submitted on {request.get('requestCode')}: "
                    f"{pricing['totalPrice']} {offer['currency']}")

        self._notify(request.get("clientId"), notifications.OFFER_SUBMITTED, {
            "requestId": request_id,
            "offerId": offer_id,
            "operatorUserCode": operator_id,
            "totalPrice": pricing["totalPrice"],
            "currency": offer["currency"],
        })
        return created_offer.to_dict()

    def list_offers(self, request_id: str) -> List[dict]:
        self.store.require_document(QUOTE_REQUESTS, request_id, "Quote request")
        offers = self.store.query_documents(OFFERS, [("requestId", "==", request_id)], order_by="createdAt")
        return [o.to_dict() for o in offers]

    def acknowledge_offer(self, offer_id: str) -> dict:
        offer = self.store.require_document(OFFERS, offer_id, "Offer")
        target = next_status(EntityKind.OFFER, offer.get("status"), Event.ACKNOWLEDGE)
        if target.value == offer.get("status"):
            return offer.to_dict()
        updated = self.store.update_document(OFFERS, offer_id, {"status": target.value, "updatedAt": self._stamp()},
                                             expected_version=offer.version)
        return updated.to_dict()

    def reject_offer(self, offer_id: str, reason: Optional[str] = None) -> dict:
        """Client turns down one offer. The request stays open for others."""
        offer = self.store.require_document(OFFERS, offer_id, "Offer")
        target = next_status(EntityKind.OFFER, offer.get("status"), Event.REJECT)
        if target.value == offer.get("status"):
            return offer.to_dict()
        stamp = self._stamp()
        updated = self.store.update_document(
            OFFERS, offer_id,
            {"status": target.value, "rejectionReason": reason, "rejectedAt": stamp, "updatedAt": stamp},
            expected_version=offer.version,
        )
        logger.info(f"Offer {offer_id} rejected by client")
        return updated.to_dict()

    def accept_offer(self, offer_id: str) -> dict:
        """
        Accept an offer and create its booking and invoice in one batch.

        Accepting an already accepted offer returns the booking created the
        first time.
        """
        offer = self.store.require_document(OFFERS, offer_id, "Offer")
        if offer.get("status") == OfferStatus.ACCEPTED_BY_CLIENT.value:
            return self._existing_booking(offer)

        offer_target = next_status(EntityKind.OFFER, offer.get("status"), Event.ACCEPT)
        request = self.store.require_document(QUOTE_REQUESTS, offer.get("requestId"), "Quote request")
        self._require_open_request(request)
        request_target = next_status(EntityKind.QUOTE_REQUEST, request.get("status"), Event.OFFER_ACCEPTED)

        operator_code = offer.get("operatorUserCode")
        profile = self.store.get_document(USERS, operator_code) if operator_code else None
        booking_id = self.ids.generate_unique(IdKind.BOOKING, operator_code, self._exists(BOOKINGS))
        invoice_id = self.ids.generate_unique(IdKind.INVOICE, offer_id, self._exists(INVOICES))

        stamp = self._stamp()
        currency = offer.get("currency") or config.DEFAULT_CURRENCY
        payment = payment_summary(offer.get("price"), offer.get("commission"), offer.get("totalPrice"),
                                  0, currency)
        booking = {
            "bookingId": booking_id,
            "requestId": request.id,
            "offerId": offer_id,
            "clientId": request.get("clientId"),
            "status": BookingStatus.PENDING_PAYMENT.value,
            "routing": request.get("routing"),
            "passengerCount": request.get("passengerCount"),
            "operator": operator_summary(operator_code, profile.data if profile else None),
            "aircraft": aircraft_summary(offer.get("aircraft"), max_passengers=request.get("passengerCount")),
            "clientPreferences": {
                "specialRequirements": request.get("specialRequirements"),
                "preferredCabinClass": request.get("cabinClass"),
            },
            "passengers": [],
            "payment": payment,
            "flightDetails": self._flight_details(request.get("routing") or {}),
            "documents": {"invoiceId": invoice_id},
            "originalRequest": original_request_snapshot(request.data, request.id),
            "acceptedQuote": accepted_quote_snapshot(offer.data, offer_id),
            "checklistsCompleted": checklist(),
            "createdAt": stamp,
            "updatedAt": stamp,
        }
        invoice = {
            "invoiceId": invoice_id,
            "bookingId": booking_id,
            "clientId": request.get("clientId"),
            "operatorUserCode": operator_code,
            "amount": payment["totalAmount"],
            "currency": currency,
            "status": InvoiceStatus.OPEN.value,
            "amountPaid": 0.0,
            "amountPending": payment["totalAmount"],
            "payments": [],
            "description": f"Charter {request.get('routing', {}).get('departureAirport')}"
                           f"-{request.get('routing', {}).get('arrivalAirport')} ({offer_id})",
            "createdAt": stamp,
            "updatedAt": stamp,
        }
        ops = [
            BatchOperation(BOOKINGS, booking_id, patch=booking, create=True),
            BatchOperation(INVOICES, invoice_id, patch=invoice, create=True),
            self._update(offer, {"status": offer_target.value, "bookingId": booking_id,
                                 "acceptedAt": stamp, "updatedAt": stamp}),
            self._update(request, {"status": request_target.value, "acceptedOfferId": offer_id,
                                   "acceptedOperatorUserCode": operator_code, "updatedAt": stamp}),
        ]
        try:
            created = self.store.commit_batch(ops)[0]
        except ConflictError:
            # A concurrent accept of the same offer may have won; hand back its booking
            current = self.store.require_document(OFFERS, offer_id, "Offer")
            if current.get("status") == OfferStatus.ACCEPTED_BY_CLIENT.value:
                return self._existing_booking(current)
            raise

        logger.info(f"Offer {offer_id} accepted: booking {booking_id}, invoice {invoice_id}")
        self._notify(operator_code, notifications.OFFER_ACCEPTED, {
            "offerId": offer_id,
            "bookingId": booking_id,
            "invoiceId": invoice_id,
            "totalAmount": payment["totalAmount"],
        })
        return created.to_dict()

    @staticmethod
    def _flight_details(routing: Mapping[str, Any]) -> Dict[str, Any]:
        departure = routing.get("departureAirport")
        arrival = routing.get("arrivalAirport")
        details: Dict[str, Any] = {
            "flightNumber": None,
            "departureAirportName": get_airport_name(departure) if departure else None,
            "arrivalAirportName": get_airport_name(arrival) if arrival else None,
        }
        if departure and routing.get("departureDate"):
            details["departureTimezone"] = get_airport_timezone(departure)
            details["localDepartureTime"] = local_time(departure, from_iso(routing["departureDate"])).isoformat()
        return details

    def _existing_booking(self, offer: Snapshot) -> dict:
        booking_id = offer.get("bookingId")
        if booking_id:
            booking = self.store.get_document(BOOKINGS, booking_id)
        else:
            matches = self.store.query_documents(BOOKINGS, [("offerId", "==", offer.id)], limit=1)
            booking = matches[0] if matches else None
        if booking is None:
            raise InvalidStateError(f"Offer {offer.id} is accepted but has no booking", {"offerId": offer.id})
        return booking.to_dict()

    # ==================== PAYMENTS ====================

    def record_payment(self, invoice_id: str, amount, method: str, reference: Optional[str] = None,
                       notes: Optional[str] = None, payment_date: Optional[str] = None) -> dict:
        """Register a payment against an invoice in `pending`. Balances move only on settlement."""
        invoice = self.store.require_document(INVOICES, invoice_id, "Invoice")
        if invoice.get("status") == InvoiceStatus.PAID.value:
            raise InvalidStateError(f"Invoice {invoice_id} is already paid", {"invoiceId": invoice_id})
        if not method:
            raise ValidationError("paymentMethod is required", {"field": "paymentMethod"})

        amount = _positive_amount(amount, "amount")
        pending = round_money(invoice.get("amountPending", invoice.get("amount")))
        if amount > pending:
            raise ValidationError(f"Payment of {amount} exceeds outstanding balance {pending}",
                                  {"amount": amount, "amountPending": pending})

        invoice_code = invoice.get("invoiceId") or invoice.id
        payment_id = self.ids.generate_unique(IdKind.PAYMENT, invoice_code, self._exists(PAYMENTS))
        stamp = self._stamp()
        payment = {
            "paymentId": payment_id,
            "invoiceId": invoice.id,
            "bookingId": invoice.get("bookingId"),
            "clientId": invoice.get("clientId"),
            "amount": amount,
            "currency": invoice.get("currency") or config.DEFAULT_CURRENCY,
            "status": PaymentStatus.PENDING.value,
            "paymentMethod": method,
            "paymentReference": reference,
            "notes": notes,
            "paymentDate": payment_date or stamp,
            "processedDate": None,
            "processedBy": None,
            "createdAt": stamp,
            "updatedAt": stamp,
        }
        ops = [
            BatchOperation(PAYMENTS, payment_id, patch=payment, create=True),
            self._update(invoice, {"payments": list(invoice.get("payments") or []) + [payment_id],
                                   "updatedAt": stamp}),
        ]
        created = self.store.commit_batch(ops)[0]
        logger.info(f"Payment {payment_id} of {amount} recorded against {invoice_code}")
        return created.to_dict()

    def settle_payment(self, payment_id: str, outcome, processed_by: Optional[str] = None,
                       notes: Optional[str] = None) -> dict:
        """
        Complete or fail a pending payment.

        Completion is the only path that moves invoice and booking balances;
        the payment, invoice and booking are written in one batch guarded by
        the versions that were read.
        """
        try:
            outcome = PaymentStatus(outcome)
        except ValueError:
            raise ValidationError(f"Unknown payment outcome: {outcome!r}", {"field": "outcome"})
        event = {PaymentStatus.COMPLETED: Event.COMPLETE, PaymentStatus.FAILED: Event.FAIL}.get(outcome)
        if event is None:
            raise ValidationError("Outcome must be 'completed' or 'failed'", {"field": "outcome"})

        payment = self.store.require_document(PAYMENTS, payment_id, "Payment")
        target = next_status(EntityKind.PAYMENT, payment.get("status"), event)

        stamp = self._stamp()
        payment_patch = {
            "status": target.value,
            "processedDate": stamp,
            "processedBy": processed_by,
            "updatedAt": stamp,
        }
        if notes is not None:
            payment_patch["notes"] = notes

        if target == PaymentStatus.FAILED:
            updated = self.store.update_document(PAYMENTS, payment_id, payment_patch,
                                                 expected_version=payment.version)
            logger.info(f"Payment {payment_id} failed")
            return updated.to_dict()

        invoice = self.store.require_document(INVOICES, payment.get("invoiceId"), "Invoice")
        booking = self.store.require_document(BOOKINGS, payment.get("bookingId") or invoice.get("bookingId"),
                                              "Booking")
        amount = round_money(payment.get("amount"))

        invoice_balance = apply_to_balance(invoice.get("amount"), invoice.get("amountPaid"), amount)
        if invoice_balance["amountPending"] < 0:
            raise InvalidStateError(
                f"Payment {payment_id} would overpay invoice {invoice.id}",
                {"amount": amount, "amountPending": invoice.get("amountPending")},
            )
        invoice_target = next_status(EntityKind.INVOICE, invoice.get("status"), Event.PAYMENT_APPLIED,
                                     {"amountPending": invoice_balance["amountPending"]})

        booking_payment = booking.get("payment") or {}
        booking_balance = apply_to_balance(booking_payment.get("totalAmount"),
                                           booking_payment.get("amountPaid"), amount)
        booking_target = next_status(EntityKind.BOOKING, booking.get("status"), Event.PAYMENT_APPLIED,
                                     {"amountPending": booking_balance["amountPending"]})

        ops = [
            self._update(payment, payment_patch),
            self._update(invoice, {**invoice_balance, "status": invoice_target.value, "updatedAt": stamp}),
            self._update(booking, {
                "payment.amountPaid": booking_balance["amountPaid"],
                "payment.amountPending": booking_balance["amountPending"],
                "checklistsCompleted.paymentChecklist": booking_balance["amountPending"] <= 0,
                "status": booking_target.value,
                "updatedAt": stamp,
            }),
        ]
        updated = self.store.commit_batch(ops)[0]
        logger.info(f"Payment {payment_id} completed: invoice {invoice.id} {invoice_target.value}, "
                    f"booking {booking.id} {booking_target.value}")

        self._notify(payment.get("clientId") or booking.get("clientId"), notifications.PAYMENT_COMPLETED, {
            "paymentId": payment_id,
            "invoiceId": invoice.id,
            "bookingId": booking.id,
            "amount": amount,
            "amountPending": booking_balance["amountPending"],
        })
        return updated.to_dict()

    def mark_operator_paid(self, payment_id: str, admin_code: str, notes: Optional[str] = None) -> dict:
        """Record that the operator has been paid out for a completed payment. Repeat calls keep the first stamp."""
        if not admin_code:
            raise ValidationError("adminCode is required", {"field": "adminCode"})
        payment = self.store.require_document(PAYMENTS, payment_id, "Payment")
        if payment.get("status") != PaymentStatus.COMPLETED.value:
            raise InvalidStateError(
                f"Payment {payment_id} is {payment.get('status')}, operator payout needs a completed payment",
                {"paymentId": payment_id, "current": payment.get("status")},
            )
        if payment.get("operatorPaid"):
            logger.info(f"Payment {payment_id} operator payout already recorded by {payment.get('operatorPaidBy')}")
            return payment.to_dict()

        stamp = self._stamp()
        updated = self.store.update_document(PAYMENTS, payment_id, {
            "operatorPaid": True,
            "operatorPaidDate": stamp,
            "operatorPaidBy": admin_code,
            "operatorPaymentNotes": notes or "Operator paid by admin.",
            "updatedAt": stamp,
        }, expected_version=payment.version)
        logger.info(f"Payment {payment_id} operator payout recorded by {admin_code}")
        return updated.to_dict()

    # ==================== BOOKINGS ====================

    def _require_active_booking(self, booking_id: str) -> Snapshot:
        booking = self.store.require_document(BOOKINGS, booking_id, "Booking")
        if booking.get("status") in CLOSED_BOOKING_STATUSES:
            raise InvalidStateError(f"Booking {booking_id} is {booking.get('status')}",
                                    {"bookingId": booking_id, "status": booking.get("status")})
        return booking

    def add_passengers(self, booking_id: str, passengers: List[Dict[str, Any]]) -> dict:
        """Append passengers to the manifest, each with its own PAX code."""
        booking = self._require_active_booking(booking_id)
        if not passengers:
            raise ValidationError("At least one passenger is required", {"field": "passengers"})

        manifest = list(booking.get("passengers") or [])
        capacity = int(booking.get("passengerCount") or 0)
        if capacity and len(manifest) + len(passengers) > capacity:
            raise ValidationError(f"Booking {booking_id} is for {capacity} passengers",
                                  {"passengerCount": capacity, "requested": len(manifest) + len(passengers)})

        owner = booking.get("clientId") or booking_id
        existing = {p.get("passengerId") for p in manifest}
        for entry in passengers:
            if not isinstance(entry, Mapping):
                raise ValidationError("Each passenger must be an object", {"field": "passengers"})
            if not entry.get("firstName") or not entry.get("lastName"):
                raise ValidationError("Passengers need firstName and lastName", {"field": "passengers"})
            passenger_id = self.ids.generate(IdKind.PASSENGER, owner)
            while passenger_id in existing:
                passenger_id = self.ids.generate(IdKind.PASSENGER, owner)
            existing.add(passenger_id)
            manifest.append({**entry, "passengerId": passenger_id})

        updated = self.store.update_document(BOOKINGS, booking_id,
                                             {"passengers": manifest, "updatedAt": self._stamp()},
                                             expected_version=booking.version)
        return updated.to_dict()

    def update_checklist(self, booking_id: str, flags: Mapping[str, Any]) -> dict:
        booking = self._require_active_booking(booking_id)
        unknown = [name for name in flags if name not in CHECKLIST_FLAGS]
        if unknown:
            raise ValidationError(f"Unknown checklist flags: {', '.join(unknown)}", {"allowed": list(CHECKLIST_FLAGS)})
        patch = {f"checklistsCompleted.{name}": bool(value) for name, value in flags.items()}
        patch["updatedAt"] = self._stamp()
        updated = self.store.update_document(BOOKINGS, booking_id, patch, expected_version=booking.version)
        return updated.to_dict()

    def advance_booking(self, booking_id: str, event) -> dict:
        """Apply a workflow event (client-ready, flight-ready, archive, cancel, credit, refund)."""
        try:
            event = Event(event)
        except ValueError:
            raise ValidationError(f"Unknown booking event: {event!r}", {"field": "event"})
        if event not in BOOKING_EVENTS:
            raise ValidationError(f"Event {event.value} cannot be applied directly to a booking",
                                  {"allowed": [e.value for e in BOOKING_EVENTS]})

        booking = self.store.require_document(BOOKINGS, booking_id, "Booking")
        passengers = list(booking.get("passengers") or [])
        context = {
            "amountPending": booking.get("payment.amountPending"),
            "passengers": len(passengers),
            "passengerCount": booking.get("passengerCount"),
            "checklist": booking.get("checklistsCompleted") or {},
        }
        target = next_status(EntityKind.BOOKING, booking.get("status"), event, context)

        stamp = self._stamp()
        patch: Dict[str, Any] = {"status": target.value, "updatedAt": stamp}
        if target == BookingStatus.CLIENT_READY:
            booking_code = booking.get("bookingId") or booking_id
            patch["passengers"] = [
                p if p.get("eTicketNumber") else {**p, "eTicketNumber": self.ids.generate(IdKind.E_TICKET, booking_code)}
                for p in passengers
            ]
        elif target == BookingStatus.CANCELLED:
            patch["cancelledAt"] = stamp

        updated = self.store.update_document(BOOKINGS, booking_id, patch, expected_version=booking.version)
        logger.info(f"Booking {booking_id}: {booking.get('status')} -> {target.value}")
        return updated.to_dict()

    def attach_document(self, booking_id: str, doc_type: str, url: str, owner_code: Optional[str] = None) -> dict:
        """Reference an uploaded document (contract, manifest, ...) under a DOC code."""
        if not doc_type or not _DOC_TYPE.match(doc_type):
            raise ValidationError(f"Invalid document type: {doc_type!r}", {"field": "type"})
        if not url:
            raise ValidationError("Document url is required", {"field": "url"})
        booking = self.store.require_document(BOOKINGS, booking_id, "Booking")
        document_id = self.ids.generate(IdKind.DOCUMENT, owner_code or booking.get("clientId") or booking_id)
        stamp = self._stamp()
        updated = self.store.update_document(
            BOOKINGS, booking_id,
            {f"documents.{doc_type}": {"documentId": document_id, "url": url, "uploadedAt": stamp},
             "updatedAt": stamp},
            expected_version=booking.version,
        )
        return updated.to_dict()

    # ==================== READS ====================

    def get_quote_request(self, request_id: str) -> dict:
        return self.store.require_document(QUOTE_REQUESTS, request_id, "Quote request").to_dict()

    def get_offer(self, offer_id: str) -> dict:
        return self.store.require_document(OFFERS, offer_id, "Offer").to_dict()

    def get_booking(self, booking_id: str) -> dict:
        return self.store.require_document(BOOKINGS, booking_id, "Booking").to_dict()

    def get_invoice(self, invoice_id: str) -> dict:
        return self.store.require_document(INVOICES, invoice_id, "Invoice").to_dict()

    def get_payment(self, payment_id: str) -> dict:
        return self.store.require_document(PAYMENTS, payment_id, "Payment").to_dict()
