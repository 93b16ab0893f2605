import pytest

from document_store import BOOKINGS, INVOICES, OFFERS, QUOTE_REQUESTS
from errors import MigrationFailure, NotFoundError, ValidationError
from migration import MigrationEngine, MigrationReport

from conftest import OPERATOR, CLIENT


def legacy_booking(**overrides):
    data = {
        "requestCode": "QR-PA-SMIT-ABCD-20240110-K2P9",
        "requestId": "req-legacy-1",
        "quoteId": "QT-OP-JETS-7K2P-20240110-P9AA",
        "operatorUserCode": OPERATOR,
        "clientId": CLIENT,
        "price": 25000,
        "totalPrice": 25750,
        "isPaid": True,
        "status": "confirmed",
        "passengerCount": 4,
        "createdAt": "2024-01-10T08:00:00+00:00",
    }
    data.update(overrides)
    return data


def comprehensive_booking():
    return {
        "operator": {"operatorUserCode": OPERATOR, "operatorName": "Jetstream"},
        "aircraft": {"id": "ac-1"},
        "payment": {"totalAmount": 100, "amountPaid": 0, "amountPending": 100},
        "status": "pending-payment",
    }


# ==================== BOOKINGS ====================

def test_legacy_booking_is_upgraded(migrations, store):
    store.create_document(BOOKINGS, "BK-L1", legacy_booking())
    assert migrations.is_legacy("bookings", store.get_document(BOOKINGS, "BK-L1").data)

    assert migrations.migrate_one("bookings", "BK-L1") is True

    migrated = store.get_document(BOOKINGS, "BK-L1").data
    assert migrated["operator"]["operatorUserCode"] == OPERATOR
    assert migrated["payment"]["amountPaid"] == migrated["payment"]["totalAmount"] == 25750
    assert migrated["payment"]["amountPending"] == 0
    assert migrated["payment"]["commission"] == 750
    assert migrated["status"] == "confirmed"
    assert "statusMigratedFrom" not in migrated
    for deprecated in ("requestCode", "operatorUserCode", "price", "totalPrice", "isPaid", "quoteId"):
        assert deprecated not in migrated
    assert migrated["offerId"] == "QT-OP-JETS-7K2P-20240110-P9AA"
    assert migrated["originalRequest"]["requestCode"] == "QR-PA-SMIT-ABCD-20240110-K2P9"
    assert migrated["aircraft"]["registration"] == "TBD"
    assert migrated["aircraft"]["maxPassengers"] == 4
    assert migrated["checklistsCompleted"]["paymentChecklist"] is True
    assert migrated["clientId"] == CLIENT


def test_migrate_one_is_idempotent(migrations, store):
    store.create_document(BOOKINGS, "BK-L1", legacy_booking())
    migrations.migrate_one("bookings", "BK-L1")
    version = store.get_document(BOOKINGS, "BK-L1").version

    assert migrations.migrate_one("bookings", "BK-L1") is False
    assert store.get_document(BOOKINGS, "BK-L1").version == version


def test_booking_backfill_uses_related_documents(migrations, store):
    store.create_document("users", OPERATOR, {"company": "Jetstream Charters", "email": "ops@jetstream.example"})
    store.create_document(QUOTE_REQUESTS, "req-legacy-1", {
        "requestCode": "QR-PA-SMIT-ABCD-20240110-K2P9",
        "createdAt": "2024-01-09T12:00:00+00:00",
        "specialRequirements": "Pets on board",
        "routing": {"departureAirport": "FAJS", "arrivalAirport": "FALE"},
        "passengerCount": 4,
    })
    store.create_document(BOOKINGS, "BK-L1", legacy_booking(isPaid=False, status="pending"))

    migrations.migrate_one("bookings", "BK-L1")

    migrated = store.get_document(BOOKINGS, "BK-L1").data
    assert migrated["operator"]["operatorName"] == "Jetstream Charters"
    assert migrated["operator"]["contactEmail"] == "ops@jetstream.example"
    assert migrated["originalRequest"]["submittedAt"] == "2024-01-09T12:00:00+00:00"
    assert migrated["originalRequest"]["routing"]["arrivalAirport"] == "FALE"
    assert migrated["clientPreferences"]["specialRequirements"] == "Pets on board"
    assert migrated["payment"]["amountPaid"] == 0
    assert migrated["payment"]["amountPending"] == 25750
    assert migrated["status"] == "pending-payment"
    assert migrated["statusMigratedFrom"] == "pending"


def test_completed_booking_is_archived(migrations, store):
    store.create_document(BOOKINGS, "BK-L1", legacy_booking(status="completed"))
    migrations.migrate_one("bookings", "BK-L1")
    assert store.get_document(BOOKINGS, "BK-L1").get("status") == "archived"


@pytest.mark.parametrize("status", ["mystery", None])
def test_unusable_status_fails_the_document(migrations, store, status):
    store.create_document(BOOKINGS, "BK-L1", legacy_booking(status=status))

    with pytest.raises(MigrationFailure):
        migrations.migrate_one("bookings", "BK-L1")
    assert store.get_document(BOOKINGS, "BK-L1").get("requestCode") is not None


def test_new_records_are_not_legacy(migrations, store, booking):
    checks = [
        ("bookings", BOOKINGS, booking["id"]),
        ("invoices", INVOICES, booking["documents"]["invoiceId"]),
        ("offers", OFFERS, booking["offerId"]),
        ("quoteRequests", QUOTE_REQUESTS, booking["requestId"]),
    ]
    for kind, collection, doc_id in checks:
        assert not migrations.is_legacy(kind, store.get_document(collection, doc_id).data), kind


# ==================== SWEEPS ====================

def test_migrate_all_pages_with_cooldown(migrations, store, clock):
    for i in range(1, 6):
        status = "mystery" if i == 3 else "confirmed"
        store.create_document(BOOKINGS, f"BK-L{i}", legacy_booking(status=status))

    report = migrations.migrate_all("bookings")

    assert report.processed == 5
    assert report.migrated == 4
    assert report.failed == 1
    assert report.batches == 3
    assert report.failures[0]["id"] == "BK-L3"
    assert "mystery" in report.failures[0]["reason"]
    assert clock.sleeps == [1.0, 1.0]

    again = migrations.migrate_all("bookings")
    assert again.migrated == 0
    assert again.skipped == 4
    assert again.failed == 1


def test_no_cooldown_after_the_last_page(migrations, store, clock):
    for i in range(4):
        store.create_document(BOOKINGS, f"BK-L{i}", legacy_booking())

    report = migrations.migrate_all("bookings")

    assert report.batches == 2
    assert clock.sleeps == [1.0]


def test_batch_size_override(migrations, store, clock):
    for i in range(5):
        store.create_document(BOOKINGS, f"BK-L{i}", legacy_booking())

    report = migrations.migrate_all("bookings", batch_size=10)

    assert report.batches == 1
    assert report.migrated == 5
    assert clock.sleeps == []


def test_parallel_transform(store, clock):
    engine = MigrationEngine(store, clock, batch_size=10, cooldown_seconds=0, workers=4)
    for i in range(6):
        store.create_document(QUOTE_REQUESTS, f"req-{i}", {"status": "quoted", "createdAt": "2024-02-01T00:00:00Z"})

    report = engine.migrate_all("quoteRequests")

    assert report.migrated == 6
    assert {s.get("status") for s in store.query_documents(QUOTE_REQUESTS)} == {"quote-received"}


def test_report_progress(migrations, store):
    assert migrations.report("bookings") == {
        "kind": "bookings", "total": 0, "legacy": 0, "comprehensive": 0, "migrationProgressPercent": 0,
    }

    for i in range(3):
        store.create_document(BOOKINGS, f"BK-L{i}", legacy_booking())
    store.create_document(BOOKINGS, "BK-NEW", comprehensive_booking())

    report = migrations.report("bookings")
    assert report["total"] == 4
    assert report["legacy"] == 3
    assert report["comprehensive"] == 1
    assert report["migrationProgressPercent"] == 25.0

    migrations.migrate_all("bookings")
    assert migrations.report("bookings")["migrationProgressPercent"] == 100.0


def test_conflicting_page_falls_back_to_single_commits(migrations, store):
    for doc_id in ("req-a", "req-b"):
        store.create_document(QUOTE_REQUESTS, doc_id, {"status": "draft", "createdAt": "2024-02-01T00:00:00Z"})
    strategy = migrations.strategy("quoteRequests")
    planned = [(s, strategy.plan(s)) for s in store.query_documents(QUOTE_REQUESTS)]

    store.update_document(QUOTE_REQUESTS, "req-b", {"status": "booked"})
    report = MigrationReport("quoteRequests")
    migrations._commit_page(strategy, planned, report)

    assert report.migrated == 1
    assert report.failed == 1
    assert report.failures[0]["id"] == "req-b"
    assert store.get_document(QUOTE_REQUESTS, "req-a").get("status") == "submitted"
    assert store.get_document(QUOTE_REQUESTS, "req-b").get("status") == "booked"


def test_unknown_kind_and_missing_document(migrations):
    with pytest.raises(ValidationError):
        migrations.migrate_all("flights")
    with pytest.raises(NotFoundError):
        migrations.migrate_one("bookings", "BK-NOPE")


# ==================== OTHER COLLECTIONS ====================

def test_invoice_paid_when_booking_is_paid(migrations, store):
    store.create_document(BOOKINGS, "BK-1", {
        "operator": {"operatorUserCode": OPERATOR},
        "payment": {"totalAmount": 25750, "amountPending": 0, "currency": "ZAR"},
    })
    store.create_document(INVOICES, "INV-L1", {"bookingId": "BK-1", "amount": 25750})

    assert migrations.migrate_one("invoices", "INV-L1")

    invoice = store.get_document(INVOICES, "INV-L1").data
    assert invoice["operatorUserCode"] == OPERATOR
    assert invoice["currency"] == "ZAR"
    assert invoice["amountPaid"] == 25750
    assert invoice["amountPending"] == 0
    assert invoice["status"] == "paid"
    assert invoice["payments"] == []
    assert invoice["description"] == "Legacy flight service for booking BK-1"


def test_invoice_without_booking_is_open(migrations, store):
    store.create_document(INVOICES, "INV-L2", {"bookingId": "BK-GONE", "amount": 1200, "description": "Positioning"})

    migrations.migrate_one("invoices", "INV-L2")

    invoice = store.get_document(INVOICES, "INV-L2").data
    assert invoice["status"] == "open"
    assert invoice["amountPending"] == 1200
    assert invoice["operatorUserCode"] == "LEGACY-UNKNOWN"
    assert invoice["currency"] == "USD"
    assert invoice["description"] == "Positioning"


def test_invoice_partial_payment_is_balance_due(migrations, store):
    store.create_document(INVOICES, "INV-L3", {"amount": 1000, "amountPaid": 400})
    migrations.migrate_one("invoices", "INV-L3")
    assert store.get_document(INVOICES, "INV-L3").get("status") == "balance-due"


def test_invoice_without_amount_fails(migrations, store):
    store.create_document(INVOICES, "INV-L4", {"bookingId": "BK-1"})
    report = migrations.migrate_all("invoices")
    assert report.failed == 1
    assert report.failures[0]["reason"] == "invoice has no amount"


def test_quote_request_backfills_expiry(migrations, store):
    store.create_document(QUOTE_REQUESTS, "req-1", {
        "status": "pending", "createdAt": "2024-01-01T00:00:00Z", "clientUserCode": CLIENT,
    })

    migrations.migrate_one("quoteRequests", "req-1")

    request = store.get_document(QUOTE_REQUESTS, "req-1").data
    assert request["status"] == "submitted"
    assert request["statusMigratedFrom"] == "pending"
    assert request["expiresAt"] == "2024-01-02T00:00:00+00:00"
    assert request["clientId"] == CLIENT
    assert request["operatorUserCodesWhoHaveQuoted"] == []


def test_offer_deprecated_fields_are_folded_in(migrations, store):
    store.create_document(OFFERS, "QT-L1", {
        "offerStatus": "accepted",
        "price": 10000,
        "attachmentUrl": "https://files.example/quotes/quote.pdf",
        "aircraftDetails": {"registration": "ZS-ABC"},
    })

    migrations.migrate_one("offers", "QT-L1")

    offer = store.get_document(OFFERS, "QT-L1").data
    assert offer["status"] == "accepted-by-client"
    assert offer["commission"] == 300
    assert offer["totalPrice"] == 10300
    assert offer["attachments"][0]["fileName"] == "quote.pdf"
    assert offer["aircraft"] == {"registration": "ZS-ABC"}
    assert offer["currency"] == "USD"
    for deprecated in ("offerStatus", "attachmentUrl", "aircraftDetails"):
        assert deprecated not in offer
    assert not migrations.is_legacy("offers", offer)
