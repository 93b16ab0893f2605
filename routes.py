"""
Charter Commerce Engine - API Routes
REST endpoints for quote requests, offers, bookings, invoices, payments and
migration maintenance.
"""

from flask import Blueprint, current_app, jsonify, request

import identifiers
from errors import (
    CommerceError, ConflictError, InvalidStateError, MalformedIdentifierError,
    MigrationFailure, NotFoundError, ValidationError,
)
from mappings import search_airport_code, search_by_name
from migration import STRATEGIES

# Create blueprint
api = Blueprint('api', __name__, url_prefix='/api/v1')

ERROR_STATUS = (
    (NotFoundError, 404),
    (InvalidStateError, 409),
    (ConflictError, 409),
    (ValidationError, 400),
    (MalformedIdentifierError, 400),
    (MigrationFailure, 422),
)


# ==================== HELPER FUNCTIONS ====================

def services():
    return current_app.extensions['commerce']


def coordinator():
    return services()['coordinator']


def migrations():
    return services()['migrations']


def json_body():
    """Request JSON as a dict (empty when no body was sent)."""
    data = request.get_json(silent=True)
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


def require(data, *fields):
    missing = [f for f in fields if data.get(f) in (None, "")]
    if missing:
        raise ValidationError(f"Missing required fields: {', '.join(missing)}", {"missing": missing})


@api.errorhandler(CommerceError)
def handle_commerce_error(error):
    for error_type, status in ERROR_STATUS:
        if isinstance(error, error_type):
            return jsonify(error.to_dict()), status
    return jsonify(error.to_dict()), 500


# ==================== QUOTE REQUEST ROUTES ====================

@api.route('/quote-requests', methods=['POST'])
def create_quote_request():
    """Submit a new quote request."""
    data = json_body()
    require(data, 'clientId', 'routing')
    quote_request = coordinator().submit_quote_request(
        data['clientId'],
        data['routing'],
        passenger_count=data.get('passengerCount', 1),
        special_requirements=data.get('specialRequirements'),
        cabin_class=data.get('cabinClass'),
    )
    return jsonify(quote_request), 201


@api.route('/quote-requests/<request_id>', methods=['GET'])
def get_quote_request(request_id):
    """Get a quote request with its offers."""
    quote_request = coordinator().get_quote_request(request_id)
    quote_request['offers'] = coordinator().list_offers(request_id)
    return jsonify(quote_request)


@api.route('/quote-requests/<request_id>/viewed', methods=['POST'])
def quote_request_viewed(request_id):
    return jsonify(coordinator().mark_quotes_viewed(request_id))


@api.route('/quote-requests/<request_id>/decline', methods=['POST'])
def decline_quote_request(request_id):
    data = json_body()
    return jsonify(coordinator().decline_quote_request(request_id, reason=data.get('reason')))


@api.route('/quote-requests/<request_id>/offers', methods=['POST'])
def create_offer(request_id):
    """Operator submits a priced offer."""
    data = json_body()
    require(data, 'operatorId', 'price')
    offer = coordinator().submit_offer(
        request_id,
        data['operatorId'],
        data['price'],
        currency=data.get('currency'),
        notes=data.get('notes'),
        aircraft=data.get('aircraft'),
        await_acknowledgement=bool(data.get('awaitAcknowledgement', False)),
    )
    return jsonify(offer), 201


# ==================== OFFER ROUTES ====================

@api.route('/offers/<offer_id>', methods=['GET'])
def get_offer(offer_id):
    return jsonify(coordinator().get_offer(offer_id))


@api.route('/offers/<offer_id>/acknowledge', methods=['POST'])
def acknowledge_offer(offer_id):
    return jsonify(coordinator().acknowledge_offer(offer_id))


@api.route('/offers/<offer_id>/accept', methods=['POST'])
def accept_offer(offer_id):
    """Accept an offer; returns the booking (the same one on repeated calls)."""
    return jsonify(coordinator().accept_offer(offer_id))


@api.route('/offers/<offer_id>/reject', methods=['POST'])
def reject_offer(offer_id):
    data = json_body()
    return jsonify(coordinator().reject_offer(offer_id, reason=data.get('reason')))


# ==================== BOOKING ROUTES ====================

@api.route('/bookings/<booking_id>', methods=['GET'])
def get_booking(booking_id):
    return jsonify(coordinator().get_booking(booking_id))


@api.route('/bookings/<booking_id>/passengers', methods=['POST'])
def add_passengers(booking_id):
    data = json_body()
    passengers = data.get('passengers')
    if not isinstance(passengers, list):
        raise ValidationError("passengers must be a list", {"field": "passengers"})
    return jsonify(coordinator().add_passengers(booking_id, passengers))


@api.route('/bookings/<booking_id>/checklist', methods=['POST'])
def update_checklist(booking_id):
    return jsonify(coordinator().update_checklist(booking_id, json_body()))


@api.route('/bookings/<booking_id>/events/<event>', methods=['POST'])
def booking_event(booking_id, event):
    return jsonify(coordinator().advance_booking(booking_id, event))


@api.route('/bookings/<booking_id>/documents', methods=['POST'])
def attach_document(booking_id):
    data = json_body()
    require(data, 'type', 'url')
    booking = coordinator().attach_document(booking_id, data['type'], data['url'],
                                            owner_code=data.get('ownerCode'))
    return jsonify(booking), 201


# ==================== INVOICE & PAYMENT ROUTES ====================

@api.route('/invoices/<invoice_id>', methods=['GET'])
def get_invoice(invoice_id):
    return jsonify(coordinator().get_invoice(invoice_id))


@api.route('/invoices/<invoice_id>/payments', methods=['POST'])
def record_payment(invoice_id):
    data = json_body()
    require(data, 'amount', 'paymentMethod')
    payment = coordinator().record_payment(
        invoice_id,
        data['amount'],
        data['paymentMethod'],
        reference=data.get('paymentReference'),
        notes=data.get('notes'),
        payment_date=data.get('paymentDate'),
    )
    return jsonify(payment), 201


@api.route('/payments/<payment_id>', methods=['GET'])
def get_payment(payment_id):
    return jsonify(coordinator().get_payment(payment_id))


@api.route('/payments/<payment_id>/settle', methods=['POST'])
def settle_payment(payment_id):
    data = json_body()
    require(data, 'outcome')
    payment = coordinator().settle_payment(
        payment_id,
        data['outcome'],
        processed_by=data.get('processedBy'),
        notes=data.get('notes'),
    )
    return jsonify(payment)


@api.route('/payments/<payment_id>/operator-paid', methods=['POST'])
def mark_operator_paid(payment_id):
    data = json_body()
    require(data, 'adminCode')
    payment = coordinator().mark_operator_paid(payment_id, data['adminCode'], notes=data.get('notes'))
    return jsonify(payment)


# ==================== MAINTENANCE ROUTES ====================

@api.route('/maintenance/expire', methods=['POST'])
def expire_stale():
    return jsonify(coordinator().expire_stale())


@api.route('/migrations/<kind>/report', methods=['GET'])
def migration_report(kind):
    return jsonify(migrations().report(kind))


@api.route('/migrations/<kind>/run', methods=['POST'])
def run_migration(kind):
    data = json_body()
    batch_size = data.get('batchSize')
    if batch_size is not None:
        try:
            batch_size = int(batch_size)
        except (TypeError, ValueError):
            raise ValidationError("batchSize must be an integer", {"field": "batchSize"})
    return jsonify(migrations().migrate_all(kind, batch_size=batch_size).to_dict())


@api.route('/migrations/<kind>/<doc_id>', methods=['POST'])
def migrate_document(kind, doc_id):
    migrated = migrations().migrate_one(kind, doc_id)
    return jsonify({"kind": kind, "id": doc_id, "migrated": migrated})


@api.route('/migrations', methods=['GET'])
def migration_kinds():
    return jsonify({"kinds": sorted(STRATEGIES)})


# ==================== REFERENCE DATA ROUTES ====================

@api.route('/airports/<code>', methods=['GET'])
def get_airport(code):
    result = search_airport_code(code)
    if not result['exists']:
        raise NotFoundError(result['error'], {"code": result['code']})
    return jsonify(result)


@api.route('/airports', methods=['GET'])
def find_airports():
    term = request.args.get('q', '').strip()
    if len(term) < 2:
        raise ValidationError("Query parameter q needs at least 2 characters", {"field": "q"})
    return jsonify({"results": search_by_name(term)})


# ==================== IDENTIFIER ROUTES ====================

@api.route('/identifiers/<kind>/<code>', methods=['GET'])
def parse_identifier(kind, code):
    """Parse an identifier into its fields."""
    parsed = identifiers.parse(kind, code)
    return jsonify({
        "kind": parsed.kind.value,
        "prefix": parsed.prefix,
        "context": parsed.context,
        "date": parsed.date.isoformat() if parsed.date else None,
        "suffix": parsed.suffix,
        "legacy": parsed.legacy,
    })
