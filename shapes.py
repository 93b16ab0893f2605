"""
Builders for the comprehensive document shape shared by the lifecycle
coordinator (new records) and the migration engine (upgraded records).
"""

from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, Optional

import config

LEGACY_OPERATOR_NAME = "Legacy Operator"
LEGACY_AIRCRAFT_ID = "legacy-unknown"
PLACEHOLDER = "TBD"


# ==================== MONEY ====================

def round_money(value) -> float:
    """Round to cents, half away from zero."""
    return float(Decimal(str(value or 0)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def compute_pricing(price) -> Dict[str, float]:
    """Commission is a fixed share of the operator's base price."""
    base = round_money(price)
    commission = round_money(base * config.COMMISSION_RATE)
    return {
        "price": base,
        "commission": commission,
        "totalPrice": round_money(base + commission),
    }


def payment_summary(subtotal, commission, total, amount_paid=0, currency: Optional[str] = None) -> Dict[str, Any]:
    total = round_money(total)
    paid = round_money(amount_paid)
    return {
        "subtotal": round_money(subtotal),
        "commission": round_money(commission),
        "totalAmount": total,
        "amountPaid": paid,
        "amountPending": round_money(total - paid),
        "currency": currency or config.DEFAULT_CURRENCY,
    }


def apply_to_balance(total, amount_paid, amount) -> Dict[str, float]:
    """New (amountPaid, amountPending) after crediting `amount`."""
    paid = round_money(round_money(amount_paid) + round_money(amount))
    return {"amountPaid": paid, "amountPending": round_money(round_money(total) - paid)}


# ==================== EMBEDDED DETAILS ====================

def operator_summary(operator_code: Optional[str], profile: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
    """Operator block embedded in bookings, filled from the operator's user profile when known."""
    if not operator_code:
        return {"operatorUserCode": "unknown", "operatorName": LEGACY_OPERATOR_NAME}
    if profile is None:
        return {"operatorUserCode": operator_code, "operatorName": operator_code}

    full_name = " ".join(p for p in (profile.get("firstName"), profile.get("lastName")) if p)
    summary = {
        "operatorUserCode": operator_code,
        "operatorName": profile.get("company") or full_name or operator_code,
    }
    if full_name:
        summary["contactPerson"] = full_name
    if profile.get("email"):
        summary["contactEmail"] = profile["email"]
    return summary


def aircraft_summary(aircraft: Optional[Dict[str, Any]] = None, registration: Optional[str] = None,
                     max_passengers: Optional[int] = None) -> Dict[str, Any]:
    """Aircraft block; unknown fields stay as placeholders until the operator assigns a tail."""
    aircraft = aircraft or {}
    return {
        "id": aircraft.get("id") or LEGACY_AIRCRAFT_ID,
        "registration": aircraft.get("registration") or registration or PLACEHOLDER,
        "make": aircraft.get("make") or PLACEHOLDER,
        "model": aircraft.get("model") or PLACEHOLDER,
        "category": aircraft.get("category") or PLACEHOLDER,
        "maxPassengers": aircraft.get("maxPassengers") or max_passengers,
    }


def checklist(payment_done: bool = False) -> Dict[str, bool]:
    return {
        "operatorChecklist": False,
        "clientChecklist": False,
        "documentChecklist": False,
        "paymentChecklist": bool(payment_done),
    }


def original_request_snapshot(request: Optional[Dict[str, Any]], request_id: Optional[str] = None,
                              request_code: Optional[str] = None,
                              submitted_at: Optional[str] = None) -> Dict[str, Any]:
    """Frozen copy of the request as it was when the offer was accepted."""
    request = request or {}
    routing = request.get("routing") or {}
    return {
        "requestCode": request_code or request.get("requestCode") or f"LEGACY-{request_id}",
        "submittedAt": request.get("createdAt") or submitted_at,
        "routing": routing or None,
        "passengerCount": request.get("passengerCount"),
        "specialRequirements": request.get("specialRequirements"),
        "flexibleDates": bool(routing.get("flexibleDates", False)),
    }


def accepted_quote_snapshot(offer: Dict[str, Any], offer_id: Optional[str] = None) -> Dict[str, Any]:
    return {
        "offerId": offer_id or offer.get("offerId"),
        "operatorUserCode": offer.get("operatorUserCode"),
        "price": offer.get("price"),
        "commission": offer.get("commission"),
        "totalPrice": offer.get("totalPrice"),
        "currency": offer.get("currency"),
        "submittedAt": offer.get("createdAt"),
    }
