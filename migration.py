"""
Legacy-to-comprehensive migration engine.

Older documents predate the embedded operator/aircraft/payment blocks and the
current status names. Each migratable collection has a strategy that decides
whether a document is legacy (by field presence) and plans the patch that
upgrades it. `migrate_all` runs the strategies as a paged pipeline:

    fetch page -> transform page -> commit page -> cooldown

Pages are committed as one batch guarded by the versions that were read.
Everything is idempotent: a migrated document is no longer legacy, so
re-running a sweep after an interruption only touches what is left.
"""

from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import timedelta
from typing import Any, Dict, List, Optional, Sequence, Tuple

import config
from clock import SystemClock, from_iso, to_iso
from document_store import (
    BOOKINGS, INVOICES, OFFERS, QUOTE_REQUESTS, USERS,
    BatchOperation, DocumentStore, Snapshot, get_path, has_path,
)
from errors import CommerceError, ConflictError, MigrationFailure, NotFoundError, UnknownStatusError, ValidationError
from shapes import (
    aircraft_summary, checklist, compute_pricing, operator_summary,
    original_request_snapshot, payment_summary, round_money,
)
from status_tables import EntityKind, InvoiceStatus, is_current_status, normalize_legacy_status

logger = logging.getLogger(__name__)

Plan = Tuple[Dict[str, Any], Tuple[str, ...]]


@dataclass
class MigrationReport:
    kind: str
    processed: int = 0
    migrated: int = 0
    skipped: int = 0
    failed: int = 0
    batches: int = 0
    failures: List[Dict[str, str]] = field(default_factory=list)

    def record_failure(self, doc_id: str, reason: str) -> None:
        self.failed += 1
        self.failures.append({"id": doc_id, "reason": reason})

    def to_dict(self) -> dict:
        return {
            "kind": self.kind,
            "processed": self.processed,
            "migrated": self.migrated,
            "skipped": self.skipped,
            "failed": self.failed,
            "batches": self.batches,
            "failures": list(self.failures),
        }


# ==================== STRATEGIES ====================

class MigrationStrategy:
    """Legacy detection and upgrade plan for one collection."""

    collection: str = ""
    entity_kind: EntityKind = None

    def __init__(self, store: DocumentStore, clock):
        self.store = store
        self.clock = clock

    def is_legacy(self, data: Dict[str, Any]) -> bool:
        raise NotImplementedError

    def plan(self, snapshot: Snapshot) -> Plan:
        raise NotImplementedError

    # ---------- shared helpers ----------

    def _fail(self, snapshot: Snapshot, reason: str):
        raise MigrationFailure(self.collection, snapshot.id, reason)

    def _remap_status(self, snapshot: Snapshot, raw, patch: Dict[str, Any]) -> None:
        """Write the current status and, when it changed, where it came from."""
        if raw is None:
            self._fail(snapshot, "document has no status")
        try:
            status = normalize_legacy_status(self.entity_kind, raw)
        except UnknownStatusError as e:
            raise MigrationFailure(self.collection, snapshot.id, e.message) from e
        if status.value != raw or "status" not in snapshot.data:
            patch["status"] = status.value
        if status.value != raw:
            patch["statusMigratedFrom"] = raw
        patch["statusMigratedAt"] = to_iso(self.clock.now())

    def _lookup(self, collection: str, doc_id) -> Optional[Dict[str, Any]]:
        if not doc_id:
            return None
        found = self.store.get_document(collection, str(doc_id))
        return found.data if found else None


class BookingMigration(MigrationStrategy):
    collection = BOOKINGS
    entity_kind = EntityKind.BOOKING

    DEPRECATED_FIELDS = ("requestCode", "operatorUserCode", "price", "totalPrice",
                         "isPaid", "operatorName", "flightNumber")

    def is_legacy(self, data):
        return (
            "requestCode" in data
            or "operatorUserCode" in data
            or not has_path(data, "operator.operatorUserCode")
            or "aircraft" not in data
            or "payment" not in data
            or not is_current_status(self.entity_kind, data.get("status"))
        )

    def plan(self, snapshot):
        data = snapshot.data
        patch: Dict[str, Any] = {}
        self._remap_status(snapshot, data.get("status"), patch)

        if not has_path(data, "operator.operatorUserCode"):
            code = data.get("operatorUserCode")
            patch["operator"] = operator_summary(code, self._lookup(USERS, code))

        if "aircraft" not in data:
            patch["aircraft"] = aircraft_summary(registration=data.get("flightNumber"),
                                                 max_passengers=data.get("passengerCount"))

        is_paid = bool(data.get("isPaid"))
        if "payment" not in data:
            subtotal = data.get("price") or 0
            total = data.get("totalPrice") or 0
            patch["payment"] = payment_summary(subtotal, round_money(total) - round_money(subtotal), total,
                                               total if is_paid else 0)

        request = self._lookup(QUOTE_REQUESTS, data.get("requestId"))
        if "originalRequest" not in data:
            patch["originalRequest"] = original_request_snapshot(
                request, data.get("requestId"),
                request_code=data.get("requestCode"), submitted_at=data.get("createdAt"),
            )
        if "clientPreferences" not in data:
            patch["clientPreferences"] = {
                "specialRequirements": (request or {}).get("specialRequirements"),
                "twinEngineMin": (request or {}).get("twinEngineMin"),
                "preferredCabinClass": data.get("cabinClass"),
            }

        offer_id = data.get("offerId") or data.get("quoteId")
        if "acceptedQuote" not in data:
            patch["acceptedQuote"] = {"offerId": offer_id, "submittedAt": data.get("createdAt")}
        if "offerId" not in data and offer_id:
            patch["offerId"] = offer_id

        if "passengers" not in data:
            patch["passengers"] = []
        if "flightDetails" not in data:
            patch["flightDetails"] = {"flightNumber": data.get("flightNumber")}
        if "documents" not in data:
            patch["documents"] = {}
        if "checklistsCompleted" not in data:
            patch["checklistsCompleted"] = checklist(payment_done=is_paid)

        patch["updatedAt"] = to_iso(self.clock.now())
        deletes = tuple(f for f in self.DEPRECATED_FIELDS + ("quoteId",) if f in data)
        return patch, deletes


class InvoiceMigration(MigrationStrategy):
    collection = INVOICES
    entity_kind = EntityKind.INVOICE

    REQUIRED_FIELDS = ("operatorUserCode", "status", "amountPaid", "payments", "currency")

    def is_legacy(self, data):
        if any(name not in data for name in self.REQUIRED_FIELDS):
            return True
        return not is_current_status(self.entity_kind, data.get("status"))

    def plan(self, snapshot):
        data = snapshot.data
        if data.get("amount") is None:
            self._fail(snapshot, "invoice has no amount")
        amount = round_money(data["amount"])
        booking = self._lookup(BOOKINGS, data.get("bookingId")) or {}

        patch: Dict[str, Any] = {}
        if "operatorUserCode" not in data:
            patch["operatorUserCode"] = (get_path(booking, "operator.operatorUserCode")
                                         or booking.get("operatorUserCode")
                                         or "LEGACY-UNKNOWN")
        if "currency" not in data:
            patch["currency"] = get_path(booking, "payment.currency") or config.DEFAULT_CURRENCY

        if "amountPaid" in data:
            paid = round_money(data["amountPaid"])
        elif booking.get("isPaid") or (get_path(booking, "payment.totalAmount")
                                       and get_path(booking, "payment.amountPending") == 0):
            paid = amount
        else:
            paid = 0.0
        patch["amountPaid"] = paid
        patch["amountPending"] = round_money(amount - paid)

        if "status" in data:
            self._remap_status(snapshot, data["status"], patch)
        else:
            if paid > 0 and amount - paid <= 0:
                derived = InvoiceStatus.PAID
            elif paid > 0:
                derived = InvoiceStatus.BALANCE_DUE
            else:
                derived = InvoiceStatus.OPEN
            patch["status"] = derived.value
            patch["statusMigratedAt"] = to_iso(self.clock.now())

        if "payments" not in data:
            patch["payments"] = []
        if not data.get("description"):
            patch["description"] = f"Legacy flight service for booking {data.get('bookingId')}"
        patch["updatedAt"] = to_iso(self.clock.now())
        return patch, ()


class QuoteRequestMigration(MigrationStrategy):
    collection = QUOTE_REQUESTS
    entity_kind = EntityKind.QUOTE_REQUEST

    def is_legacy(self, data):
        return "expiresAt" not in data or not is_current_status(self.entity_kind, data.get("status"))

    def plan(self, snapshot):
        data = snapshot.data
        patch: Dict[str, Any] = {}
        if not is_current_status(self.entity_kind, data.get("status")):
            self._remap_status(snapshot, data.get("status"), patch)
        if "expiresAt" not in data:
            created = data.get("createdAt")
            try:
                base = from_iso(created) if created else self.clock.now()
            except (TypeError, ValueError):
                self._fail(snapshot, f"unreadable createdAt {created!r}")
            patch["expiresAt"] = to_iso(base + timedelta(hours=config.QUOTE_REQUEST_TTL_HOURS))
        if "operatorUserCodesWhoHaveQuoted" not in data:
            patch["operatorUserCodesWhoHaveQuoted"] = []
        if "clientId" not in data and data.get("clientUserCode"):
            patch["clientId"] = data["clientUserCode"]
        patch["updatedAt"] = to_iso(self.clock.now())
        return patch, ()


class OfferMigration(MigrationStrategy):
    collection = OFFERS
    entity_kind = EntityKind.OFFER

    DEPRECATED_FIELDS = ("offerStatus", "attachmentUrl", "attachmentFileName", "aircraftDetails")

    def is_legacy(self, data):
        return (
            any(name in data for name in self.DEPRECATED_FIELDS)
            or "commission" not in data
            or "totalPrice" not in data
            or not is_current_status(self.entity_kind, data.get("status"))
        )

    def plan(self, snapshot):
        data = snapshot.data
        patch: Dict[str, Any] = {}

        raw = data.get("status", data.get("offerStatus"))
        self._remap_status(snapshot, raw, patch)

        if "commission" not in data or "totalPrice" not in data:
            if data.get("price") is None:
                self._fail(snapshot, "offer has no price")
            pricing = compute_pricing(data["price"])
            patch["commission"] = data.get("commission", pricing["commission"])
            patch["totalPrice"] = data.get("totalPrice", round_money(round_money(data["price"]) + patch["commission"]))

        if data.get("attachmentUrl"):
            attachments = list(data.get("attachments") or [])
            attachments.append({
                "url": data["attachmentUrl"],
                "fileName": data.get("attachmentFileName") or data["attachmentUrl"].rsplit("/", 1)[-1],
                "uploadedAt": data.get("updatedAt") or data.get("createdAt"),
            })
            patch["attachments"] = attachments

        if "aircraft" not in data and data.get("aircraftDetails"):
            patch["aircraft"] = data["aircraftDetails"]
        if "clientId" not in data and data.get("clientUserCode"):
            patch["clientId"] = data["clientUserCode"]
        if not data.get("currency"):
            patch["currency"] = config.DEFAULT_CURRENCY

        patch["updatedAt"] = to_iso(self.clock.now())
        deletes = tuple(f for f in self.DEPRECATED_FIELDS if f in data)
        return patch, deletes


STRATEGIES = {
    "bookings": BookingMigration,
    "invoices": InvoiceMigration,
    "quoteRequests": QuoteRequestMigration,
    "offers": OfferMigration,
}


# ==================== ENGINE ====================

class MigrationEngine:
    """Runs migration strategies one document at a time or as a paged sweep."""

    def __init__(self, store: DocumentStore, clock=None, batch_size: Optional[int] = None,
                 cooldown_seconds: Optional[float] = None, workers: Optional[int] = None):
        self.store = store
        self.clock = clock or SystemClock()
        self.batch_size = batch_size or config.MIGRATION_BATCH_SIZE
        self.cooldown_seconds = config.MIGRATION_COOLDOWN_SECONDS if cooldown_seconds is None else cooldown_seconds
        self.workers = workers or config.MIGRATION_WORKERS
        self.strategies = {name: cls(store, self.clock) for name, cls in STRATEGIES.items()}

    def strategy(self, kind: str) -> MigrationStrategy:
        try:
            return self.strategies[kind]
        except KeyError:
            raise ValidationError(f"Unknown migration kind: {kind!r}", {"allowed": sorted(self.strategies)})

    def is_legacy(self, kind: str, document: Dict[str, Any]) -> bool:
        return self.strategy(kind).is_legacy(document or {})

    def migrate_one(self, kind: str, doc_id: str) -> bool:
        """Upgrade one document. Returns False if it was already comprehensive."""
        strategy = self.strategy(kind)
        snapshot = self.store.require_document(strategy.collection, doc_id)
        if not strategy.is_legacy(snapshot.data):
            return False
        patch, deletes = strategy.plan(snapshot)
        self.store.update_document(strategy.collection, doc_id, patch, deletes,
                                   expected_version=snapshot.version)
        logger.info(f"Migrated {strategy.collection}/{doc_id}")
        return True

    def migrate_all(self, kind: str, batch_size: Optional[int] = None) -> MigrationReport:
        strategy = self.strategy(kind)
        size = batch_size or self.batch_size
        if size < 1:
            raise ValidationError("batch_size must be at least 1", {"field": "batchSize"})

        report = MigrationReport(kind)
        logger.info(f"Starting {kind} migration (batch size {size})")

        page = self._fetch_page(strategy, None, size)
        while page:
            report.batches += 1
            planned = self._transform_page(strategy, page, report)
            self._commit_page(strategy, planned, report)
            logger.info(f"{kind} batch {report.batches}: {len(page)} read, "
                        f"{report.migrated} migrated, {report.failed} failed so far")

            next_page = self._fetch_page(strategy, page[-1].id, size) if len(page) == size else []
            if next_page:
                self._cooldown()
            page = next_page

        logger.info(f"{kind} migration finished: {report.migrated} migrated, "
                    f"{report.skipped} skipped, {report.failed} failed")
        return report

    def report(self, kind: str) -> Dict[str, Any]:
        """Classify every document of the collection. Read-only."""
        strategy = self.strategy(kind)
        documents = self.store.query_documents(strategy.collection)
        total = len(documents)
        legacy = sum(1 for d in documents if strategy.is_legacy(d.data))
        comprehensive = total - legacy
        return {
            "kind": kind,
            "total": total,
            "legacy": legacy,
            "comprehensive": comprehensive,
            "migrationProgressPercent": round(comprehensive / total * 100, 2) if total else 0,
        }

    # ---------- pipeline stages ----------

    def _fetch_page(self, strategy: MigrationStrategy, start_after: Optional[str], size: int) -> List[Snapshot]:
        return self.store.query_documents(strategy.collection, limit=size, start_after=start_after)

    def _plan_one(self, strategy: MigrationStrategy, snapshot: Snapshot):
        if not strategy.is_legacy(snapshot.data):
            return snapshot, None, None
        try:
            return snapshot, strategy.plan(snapshot), None
        except MigrationFailure as e:
            return snapshot, None, e.reason
        except (CommerceError, KeyError, TypeError, ValueError, ArithmeticError) as e:
            return snapshot, None, f"{type(e).__name__}: {e}"

    def _transform_page(self, strategy: MigrationStrategy, page: Sequence[Snapshot],
                        report: MigrationReport) -> List[Tuple[Snapshot, Plan]]:
        if self.workers > 1 and len(page) > 1:
            with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="migrate") as pool:
                results = list(pool.map(lambda s: self._plan_one(strategy, s), page))
        else:
            results = [self._plan_one(strategy, s) for s in page]

        planned = []
        for snapshot, plan, error in results:
            report.processed += 1
            if error is not None:
                report.record_failure(snapshot.id, error)
                logger.warning(f"Could not migrate {strategy.collection}/{snapshot.id}: {error}")
            elif plan is None:
                report.skipped += 1
            else:
                planned.append((snapshot, plan))
        return planned

    def _commit_page(self, strategy: MigrationStrategy, planned: Sequence[Tuple[Snapshot, Plan]],
                     report: MigrationReport) -> None:
        ops = [
            BatchOperation(strategy.collection, snapshot.id, patch=patch, delete_fields=deletes,
                           expected_version=snapshot.version)
            for snapshot, (patch, deletes) in planned
        ]
        if not ops:
            return
        try:
            self.store.commit_batch(ops)
            report.migrated += len(ops)
            return
        except ConflictError:
            logger.warning(f"{strategy.collection} batch hit a concurrent update; committing documents one by one")

        for op in ops:
            try:
                self.store.commit_batch([op])
                report.migrated += 1
            except (ConflictError, NotFoundError) as e:
                report.record_failure(op.id, e.message)
                logger.warning(f"Could not migrate {strategy.collection}/{op.id}: {e.message}")

    def _cooldown(self) -> None:
        if self.cooldown_seconds > 0:
            self.clock.sleep(self.cooldown_seconds)
