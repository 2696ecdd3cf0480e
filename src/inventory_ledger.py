"""Inventory ledger: the single writer of batches, transactions and villages.

Every public operation validates its input, works on a copy of the batch
list, swaps the copy in, appends the audit record(s) and flushes the touched
collections to the store in one call. Domain failures come back as an
``OperationResult`` with ``success=False``; nothing is raised to the caller.
"""
from __future__ import annotations

import copy
import functools
import logging
import threading
from dataclasses import replace
from datetime import datetime
from typing import Callable, Iterable, Optional

from pydantic import ValidationError as FormError

from drug_forms import (
    AdjustStockRequest,
    BatchDetailsUpdate,
    DispenseRequest,
    NewBatch,
    RestockRequest,
    VillageForm,
    check_date_order,
    describe_errors,
)
from drug_groups import (
    batch_identity,
    batches_for_dispense,
    display_name,
    group_key,
    project_groups,
    select_dispense_order,
)
from drug_models import (
    DETAIL_FIELDS,
    DrugBatch,
    FieldChange,
    LineSummary,
    OperationResult,
    Transaction,
    TransactionLine,
    UpdateDetails,
    Village,
    new_id,
    parse_iso_date,
)
from txn_log import TransactionLog

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    kind = "error"


class ValidationError(LedgerError):
    kind = "validation"


class NotFoundError(LedgerError):
    kind = "not_found"


class ConflictError(LedgerError):
    kind = "conflict"


def _parse(form_cls, data):
    try:
        return form_cls.model_validate(data)
    except FormError as e:
        raise ValidationError(describe_errors(e)) from e


def ledger_operation(method):
    """Report a LedgerError raised inside an operation as a failed result."""

    @functools.wraps(method)
    def wrapper(self, *args, **kwargs):
        # copy, swap, append and flush run as one step per ledger
        with self._lock:
            try:
                return method(self, *args, **kwargs)
            except LedgerError as e:
                logger.info("%s rejected (%s): %s", method.__name__, e.kind, e)
                return OperationResult.failed(e.kind, str(e))

    return wrapper


class InventoryLedger:
    def __init__(
        self,
        store,
        seed_batches: Optional[Iterable[DrugBatch]] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self._store = store
        self._lock = threading.RLock()
        self._seed = [replace(b) for b in seed_batches or ()]
        self._clock = clock
        self._batches: list[DrugBatch] = []
        self._villages: list[Village] = []
        self._log = TransactionLog(clock=clock)
        self.load()

    # loading / flushing

    def load(self) -> None:
        """(Re)read all collections from the store."""
        with self._lock:
            self._load()

    def _load(self) -> None:
        self._batches = self._load_collection("batches", DrugBatch.from_dict, default=self._seed_copy)
        self._log = TransactionLog(self._load_collection("transactions", Transaction.from_dict), clock=self._clock)
        self._villages = sorted(
            self._load_collection("villages", Village.from_dict),
            key=lambda v: v.name.casefold(),
        )
        logger.debug(
            "Loaded %d batches, %d transactions, %d villages",
            len(self._batches), len(self._log), len(self._villages),
        )

    def _seed_copy(self) -> list[DrugBatch]:
        return [replace(b) for b in self._seed]

    def _load_collection(self, key: str, parse, default=list) -> list:
        rows = self._store.load(key)
        if rows is None:
            return default()
        try:
            return [parse(row) for row in rows]
        except (KeyError, TypeError, ValueError) as e:
            logger.warning("Discarding malformed %s collection: %s", key, e)
            return []

    def _flush(self, *keys: str) -> None:
        payload = {}
        if "batches" in keys:
            payload["batches"] = [b.to_dict() for b in self._batches]
        if "transactions" in keys:
            payload["transactions"] = [t.to_dict() for t in self._log]
        if "villages" in keys:
            payload["villages"] = [v.to_dict() for v in self._villages]
        if not self._store.save_many(payload):
            logger.warning("Flush of %s failed; changes are held in memory only", ", ".join(keys))

    # read accessors

    @property
    def batches(self) -> list[DrugBatch]:
        return [replace(b) for b in self._batches]

    @property
    def transactions(self) -> tuple:
        """Newest first."""
        return self._log.records()

    @property
    def villages(self) -> list[Village]:
        return list(self._villages)

    def list_villages(self) -> list[Village]:
        return list(self._villages)

    def get_batch_by_id(self, batch_id: str) -> Optional[DrugBatch]:
        batch = self._find(self._batches, batch_id)
        return replace(batch) if batch else None

    def get_groups_for_display(self):
        return project_groups(self.batches)

    def get_batches_for_dispense(self):
        return batches_for_dispense(self._batches)

    def transactions_between(self, start, end) -> list[Transaction]:
        return self._log.in_range(start, end)

    def history(self, batch_id: str) -> list[Transaction]:
        """Transactions touching one batch, newest first."""
        return self._log.for_batch(batch_id)

    def transactions_oldest_first(self) -> list[Transaction]:
        return self._log.chronological()

    # helpers

    @staticmethod
    def _find(batches: list[DrugBatch], batch_id: str) -> Optional[DrugBatch]:
        for b in batches:
            if b.id == batch_id:
                return b
        return None

    def _require(self, batches: list[DrugBatch], batch_id: str) -> DrugBatch:
        batch = self._find(batches, batch_id)
        if batch is None:
            raise NotFoundError(f"Drug batch {batch_id!r} not found.")
        return batch

    @staticmethod
    def _check_unique(batches: list[DrugBatch], identity: tuple, exclude_id: Optional[str] = None) -> None:
        for b in batches:
            if b.id == exclude_id:
                continue
            if batch_identity(b.generic_name, b.brand_name, b.dosage, b.batch_number) == identity:
                raise ConflictError(f"A batch {b.label} already exists.")

    # operations

    @ledger_operation
    def dispense(self, patient, lines) -> OperationResult:
        """Hand out drugs by identity group, earliest expiry first.

        A line that cannot be fully covered dispenses what is on hand and is
        reported; other lines still go ahead. One ``dispense`` transaction is
        written if anything at all left the shelf.
        """
        request = _parse(DispenseRequest, {"patient": patient, "lines": lines})

        working = copy.deepcopy(self._batches)
        entries: list[TransactionLine] = []
        issues: list[str] = []
        fully_satisfied = True

        for line in request.lines:
            members = [b for b in working if group_key(b) == line.group_key]
            if not members:
                fully_satisfied = False
                issues.append(f"No batches found for drug {line.group_key!r}.")
                continue

            name = display_name(members[0])
            available = [b for b in select_dispense_order(members) if b.stock > 0]
            on_hand = sum(b.stock for b in available)
            if on_hand == 0:
                fully_satisfied = False
                issues.append(f"No stock available for {name}.")
                continue
            if on_hand < line.quantity:
                fully_satisfied = False
                issues.append(
                    f"Not enough stock for {name}. Available: {on_hand}, "
                    f"Requested: {line.quantity}. Dispensing available."
                )

            remaining = line.quantity
            for batch in available:
                if remaining == 0:
                    break
                take = min(batch.stock, remaining)
                previous = batch.stock
                batch.stock -= take
                remaining -= take
                entries.append(TransactionLine.snapshot(batch, previous))

        if not entries:
            return OperationResult(success=False, message=" ".join(issues) or "No drugs were dispensed.")

        patient = request.patient
        self._batches = working
        txn = self._log.append(
            "dispense",
            drugs=entries,
            patient_name=patient.patient_name,
            id_last_four=patient.id_last_four,
            age=patient.age,
            sex=patient.sex,
            village_name=patient.village_name,
            notes=" ".join(issues) or "Dispense operation completed.",
        )
        self._flush("batches", "transactions")
        logger.info("Dispensed %d units over %d batches (%s)", -sum(e.quantity for e in entries), len(entries), txn.id)

        return OperationResult(
            success=fully_satisfied,
            message=" ".join(issues) if issues else "Dispense successful.",
            items=[LineSummary.from_line(e) for e in entries],
            transactions=[txn],
        )

    @ledger_operation
    def restock(self, source, lines) -> OperationResult:
        """Receive stock into new or existing batches.

        Any unknown batch id or duplicate new batch rejects the whole call.
        A changed purchase price on an existing batch is logged as its own
        ``update`` transaction after the ``restock`` one.
        """
        request = _parse(RestockRequest, {"source": source, "lines": lines})

        working = copy.deepcopy(self._batches)
        entries: list[TransactionLine] = []
        price_changes: list[tuple] = []

        for line in request.lines:
            if isinstance(line, NewBatch):
                d = line.details
                self._check_unique(working, batch_identity(d.generic_name, d.brand_name, d.dosage, d.batch_number))
                batch = DrugBatch(
                    id=new_id("drug"),
                    generic_name=d.generic_name,
                    brand_name=d.brand_name,
                    dosage=d.dosage,
                    batch_number=d.batch_number,
                    manufacture_date=d.manufacture_date.isoformat() if d.manufacture_date else None,
                    expiry_date=d.expiry_date.isoformat() if d.expiry_date else None,
                    purchase_price_per_unit=d.purchase_price_per_unit,
                    low_stock_threshold=d.low_stock_threshold,
                    initial_source=request.source,
                    stock=0,
                )
                working.append(batch)
            else:
                batch = self._require(working, line.batch_id)
                if line.price_override is not None and line.price_override != batch.purchase_price_per_unit:
                    price_changes.append((batch, FieldChange(batch.purchase_price_per_unit, line.price_override)))
                    batch.purchase_price_per_unit = line.price_override

            previous = batch.stock
            batch.stock += line.quantity
            entries.append(TransactionLine.snapshot(batch, previous))

        self._batches = working
        txns = [
            self._log.append(
                "restock",
                drugs=entries,
                source=request.source,
                notes=f"Restocked from {request.source}.",
            )
        ]
        for batch, change in price_changes:
            txns.append(
                self._log.append(
                    "update",
                    notes=f"Purchase price updated for {batch.label} to {change.new:.2f}.",
                    update_details=UpdateDetails(
                        batch_id=batch.id,
                        drug_name=batch.generic_name,
                        changes={"purchase_price_per_unit": change},
                    ),
                )
            )
        self._flush("batches", "transactions")
        logger.info("Restocked %d batches from %s (%s)", len(entries), request.source, txns[0].id)

        return OperationResult(
            success=True,
            message="Stock updated successfully.",
            items=[LineSummary.from_line(e) for e in entries],
            transactions=txns,
        )

    @ledger_operation
    def adjust_stock(self, batch_id, new_stock, reason) -> OperationResult:
        """Set a batch's stock to an absolute count after a recount."""
        req = _parse(AdjustStockRequest, {"batch_id": batch_id, "new_stock": new_stock, "reason": reason})
        working = copy.deepcopy(self._batches)
        batch = self._require(working, req.batch_id)

        previous = batch.stock
        batch.stock = req.new_stock
        self._batches = working
        txn = self._log.append(
            "adjustment",
            drugs=[TransactionLine.snapshot(batch, previous)],
            reason=req.reason,
            notes=f"Stock adjusted from {previous} to {batch.stock}. Reason: {req.reason}",
        )
        self._flush("batches", "transactions")
        logger.info("Adjusted %s: %d -> %d (%s)", batch.id, previous, batch.stock, txn.id)

        return OperationResult(
            success=True,
            message=f"Stock for {batch.label} set to {batch.stock}.",
            batch=replace(batch),
            transactions=[txn],
        )

    @ledger_operation
    def update_batch_details(self, batch_id, fields) -> OperationResult:
        """Apply a partial metadata edit; only changed fields are logged."""
        update = _parse(BatchDetailsUpdate, fields)
        batch = self._require(self._batches, batch_id)

        proposed = replace(batch, **update.as_batch_fields())
        try:
            check_date_order(parse_iso_date(proposed.manufacture_date), parse_iso_date(proposed.expiry_date))
        except ValueError as e:
            raise ValidationError(str(e)) from e
        identity = batch_identity(proposed.generic_name, proposed.brand_name, proposed.dosage, proposed.batch_number)
        # only an identity change can introduce a clash
        if identity != batch_identity(batch.generic_name, batch.brand_name, batch.dosage, batch.batch_number):
            self._check_unique(self._batches, identity, exclude_id=batch.id)

        changes = {
            name: FieldChange(getattr(batch, name), getattr(proposed, name))
            for name in DETAIL_FIELDS
            if getattr(batch, name) != getattr(proposed, name)
        }
        if not changes:
            return OperationResult(success=True, message="No changes to save.", batch=replace(batch))

        self._batches = [proposed if b is batch else b for b in self._batches]
        txn = self._log.append(
            "update",
            notes=f"Details updated for batch: {proposed.label}.",
            update_details=UpdateDetails(batch_id=proposed.id, drug_name=proposed.generic_name, changes=changes),
        )
        self._flush("batches", "transactions")
        logger.info("Updated %s fields on %s (%s)", ", ".join(changes), batch.id, txn.id)

        return OperationResult(
            success=True,
            message="Drug details updated successfully.",
            batch=replace(proposed),
            transactions=[txn],
        )

    @ledger_operation
    def delete_batch(self, batch_id) -> OperationResult:
        batch = self._require(self._batches, batch_id)

        self._batches = [b for b in self._batches if b is not batch]
        expiry = parse_iso_date(batch.expiry_date)
        removed = {
            name: FieldChange(getattr(batch, name), None)
            for name in DETAIL_FIELDS + ("stock",)
            if getattr(batch, name) is not None
        }
        txn = self._log.append(
            "update",
            notes=(
                f"DELETED BATCH: {batch.label}. Stock at deletion: {batch.stock}. "
                f"Price/unit: {batch.purchase_price_per_unit:.2f}. "
                f"Exp: {expiry.isoformat() if expiry else batch.expiry_date or 'N/A'}."
            ),
            update_details=UpdateDetails(batch_id=batch.id, drug_name=batch.generic_name, changes=removed, deleted=True),
        )
        self._flush("batches", "transactions")
        logger.info("Deleted batch %s (%s)", batch.id, txn.id)

        return OperationResult(
            success=True,
            message=f"Drug batch {batch.label} deleted successfully.",
            batch=batch,
            transactions=[txn],
        )

    @ledger_operation
    def add_village(self, name) -> OperationResult:
        form = _parse(VillageForm, {"name": name})
        if any(v.name.casefold() == form.name.casefold() for v in self._villages):
            raise ConflictError(f'Village "{form.name}" already exists.')

        village = Village(id=new_id("village"), name=form.name)
        self._villages = sorted([*self._villages, village], key=lambda v: v.name.casefold())
        self._flush("villages")
        logger.info("Added village %s", village.name)
        return OperationResult(success=True, message=f'Village "{village.name}" added.', village=village)

    def reset_all(self) -> OperationResult:
        """Wipe everything back to the seed state. Irreversible."""
        with self._lock:
            self._batches = self._seed_copy()
            self._log.clear()
            self._villages = []
            self._store.clear()
            self._flush("batches", "transactions", "villages")
        logger.warning("Inventory data reset: %d seed batches, log and villages cleared", len(self._batches))
        return OperationResult(success=True, message="All inventory, transactions and villages have been reset.")
