import pytest

from document_store import BatchOperation, apply_patch, get_path
from errors import ConflictError, NotFoundError, ValidationError


def test_apply_patch_sets_nested_paths_and_removes_fields():
    original = {"price": 100, "payment": {"amountPaid": 0}, "requestCode": "QR-X"}

    result = apply_patch(original, {"payment.amountPaid": 50, "operator.operatorUserCode": "OP-A"},
                         delete_fields=["requestCode", "missing.field"])

    assert result == {"price": 100, "payment": {"amountPaid": 50}, "operator": {"operatorUserCode": "OP-A"}}
    assert original["requestCode"] == "QR-X"


def test_null_is_stored_not_removed():
    result = apply_patch({"notes": "x"}, {"notes": None})
    assert "notes" in result and result["notes"] is None


def test_create_get_and_versioning(store):
    created = store.create_document("bookings", "BK-1", {"status": "pending-payment"})
    assert created.version == 1

    updated = store.update_document("bookings", "BK-1", {"status": "confirmed"}, expected_version=1)
    assert updated.version == 2
    assert store.get_document("bookings", "BK-1").get("status") == "confirmed"
    assert store.get_document("bookings", "missing") is None


def test_stale_expected_version_is_a_conflict(store):
    store.create_document("quotes", "QT-1", {"status": "pending-client-acceptance"})
    first_read = store.get_document("quotes", "QT-1")

    store.update_document("quotes", "QT-1", {"status": "rejected-by-client"}, expected_version=first_read.version)

    with pytest.raises(ConflictError):
        store.update_document("quotes", "QT-1", {"status": "accepted-by-client"},
                              expected_version=first_read.version)
    assert store.get_document("quotes", "QT-1").get("status") == "rejected-by-client"


def test_duplicate_create_is_a_conflict(store):
    store.create_document("invoices", "INV-1", {"amount": 1})
    with pytest.raises(ConflictError):
        store.create_document("invoices", "INV-1", {"amount": 2})


def test_batch_is_all_or_nothing(store):
    store.create_document("invoices", "INV-1", {"amountPaid": 0})

    with pytest.raises(NotFoundError):
        store.commit_batch([
            BatchOperation("bookings", "BK-NEW", patch={"status": "pending-payment"}, create=True),
            BatchOperation("invoices", "INV-1", patch={"amountPaid": 10}),
            BatchOperation("payments", "PMT-MISSING", patch={"status": "completed"}),
        ])

    assert store.get_document("bookings", "BK-NEW") is None
    assert store.get_document("invoices", "INV-1").get("amountPaid") == 0


def test_batch_with_stale_version_writes_nothing(store):
    store.create_document("invoices", "INV-1", {"amountPaid": 0})
    store.create_document("bookings", "BK-1", {"payment": {"amountPaid": 0}})
    invoice = store.get_document("invoices", "INV-1")
    store.update_document("bookings", "BK-1", {"status": "cancelled"})

    with pytest.raises(ConflictError):
        store.commit_batch([
            BatchOperation("invoices", "INV-1", patch={"amountPaid": 10}, expected_version=invoice.version),
            BatchOperation("bookings", "BK-1", patch={"payment.amountPaid": 10}, expected_version=1),
        ])

    assert store.get_document("invoices", "INV-1").get("amountPaid") == 0
    assert get_path(store.get_document("bookings", "BK-1").data, "payment.amountPaid") == 0


def test_query_filters_ordering_and_paging(store):
    for i, (status, amount) in enumerate([("open", 300), ("paid", 100), ("open", 200), ("balance-due", 50)]):
        store.create_document("invoices", f"INV-{i}", {"status": status, "amount": amount})
    store.create_document("invoices", "INV-9", {"amount": 10})

    open_ids = [s.id for s in store.query_documents("invoices", [("status", "==", "open")])]
    assert open_ids == ["INV-0", "INV-2"]

    by_amount = store.query_documents("invoices", [("status", "in", ["open", "paid"])], order_by="-amount")
    assert [s.get("amount") for s in by_amount] == [300, 200, 100]

    assert [s.id for s in store.query_documents("invoices", [("status", "missing")])] == ["INV-9"]
    assert [s.id for s in store.query_documents("invoices", [("amount", ">=", 200)])] == ["INV-0", "INV-2"]

    page = store.query_documents("invoices", limit=2, start_after="INV-1")
    assert [s.id for s in page] == ["INV-2", "INV-3"]

    with pytest.raises(ValidationError):
        store.query_documents("invoices", [("amount", "~", 1)])


def test_collections_are_separate(store):
    store.create_document("bookings", "X-1", {"kind": "booking"})
    store.create_document("invoices", "X-1", {"kind": "invoice"})

    assert store.get_document("bookings", "X-1").get("kind") == "booking"
    assert [s.id for s in store.query_documents("invoices")] == ["X-1"]
