from datetime import datetime, timedelta, timezone

import pytest

from inventory_ledger import InventoryLedger
from inventory_store import MemoryStore


class StepClock:
    """Each call moves one minute forward, so every record gets a distinct instant."""

    def __init__(self, start=datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self):
        self.now += timedelta(minutes=1)
        return self.now


PATIENT = {
    "patient_name": "Asha Devi",
    "id_last_four": "1234",
    "age": 34,
    "sex": "Female",
    "village_name": "Rampur",
}


def new_batch(generic, quantity, brand=None, dosage=None, batch="B1", expiry=None, price=2.0, threshold=5):
    details = {
        "generic_name": generic,
        "brand_name": brand,
        "dosage": dosage,
        "batch_number": batch,
        "purchase_price_per_unit": price,
        "low_stock_threshold": threshold,
    }
    if expiry:
        details["expiry_date"] = expiry
    return {"kind": "new", "details": details, "quantity": quantity}


@pytest.fixture
def clock():
    return StepClock()


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def ledger(store, clock):
    return InventoryLedger(store, clock=clock)


@pytest.fixture
def stocked(ledger):
    """Paracetamol in two dated batches plus an undated one, and one Amlodipine batch."""
    result = ledger.restock("District store", [
        new_batch("Paracetamol", 5, dosage="500mg", batch="P-JAN", expiry="2024-01-31"),
        new_batch("Paracetamol", 20, dosage="500mg", batch="P-MAR", expiry="2024-03-31"),
        new_batch("Paracetamol", 7, dosage="500mg", batch="P-NONE"),
        new_batch("Amlodipine", 50, brand="Amlong", dosage="5mg", batch="A002", expiry="2025-03-01", threshold=10),
    ])
    assert result.success, result.message
    return ledger


def by_batch_number(ledger, number):
    return next(b for b in ledger.batches if b.batch_number == number)
