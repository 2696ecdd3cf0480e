import sqlite3

import pytest

from conftest import PATIENT, StepClock, new_batch
from drug_groups import identity_key
from drug_models import Transaction
from inventory_ledger import InventoryLedger
from inventory_store import MemoryStore, SqliteStore


@pytest.fixture
def db_path(tmp_path):
    return tmp_path / "db" / "inventory.sqlite"


def test_memory_store_returns_copies():
    store = MemoryStore()
    rows = [{"id": "v1", "name": "Rampur"}]
    store.save("villages", rows)
    rows[0]["name"] = "changed"

    loaded = store.load("villages")
    loaded[0]["name"] = "also changed"

    assert store.load("villages") == [{"id": "v1", "name": "Rampur"}]
    assert store.load("batches") is None


def test_unknown_collection_is_a_programming_error(db_path):
    with pytest.raises(KeyError):
        MemoryStore().load("patients")
    with pytest.raises(KeyError):
        SqliteStore(db_path).save("patients", [])


def test_sqlite_store_distinguishes_never_saved_from_empty(db_path):
    store = SqliteStore(db_path)
    assert store.load("batches") is None

    assert store.save("batches", [])
    assert store.load("batches") == []


def test_sqlite_round_trip_through_ledger(db_path):
    ledger = InventoryLedger(SqliteStore(db_path), clock=StepClock())
    ledger.restock("District store", [
        new_batch("Paracetamol", 5, dosage="500mg", batch="B1", expiry="2024-01-01"),
        new_batch("Paracetamol", 20, dosage="500mg", batch="B2", expiry="2024-06-01"),
    ])
    ledger.dispense(PATIENT, [{"group_key": identity_key("Paracetamol", None, "500mg"), "quantity": 10}])
    b2 = next(b for b in ledger.batches if b.batch_number == "B2")
    ledger.restock("NGO", [{"kind": "existing", "batch_id": b2.id, "quantity": 1, "price_override": 2.75}])
    ledger.add_village("Sonpur")
    ledger.add_village("Rampur")

    reloaded = InventoryLedger(SqliteStore(db_path), clock=StepClock())

    assert reloaded.batches == ledger.batches
    assert reloaded.transactions == ledger.transactions
    assert [v.name for v in reloaded.list_villages()] == ["Rampur", "Sonpur"]
    dispense = next(t for t in reloaded.transactions if t.type == "dispense")
    assert [d.quantity for d in dispense.drugs] == [-5, -5]
    assert dispense.age == 34


def test_save_many_is_all_or_nothing(db_path):
    store = SqliteStore(db_path)
    store.save("villages", [{"id": "v1", "name": "Rampur"}])

    ok = store.save_many({
        "batches": [{"id": "b1", "generic_name": "Paracetamol", "stock": 1,
                     "purchase_price_per_unit": 1.0, "low_stock_threshold": 5}],
        "villages": [{"id": "v2", "name": "Sonpur"}, {"id": "v3", "name": "SONPUR"}],
    })

    assert not ok
    assert store.load("batches") is None
    assert store.load("villages") == [{"id": "v1", "name": "Rampur"}]


def test_check_constraints_reject_negative_stock(db_path):
    store = SqliteStore(db_path)

    ok = store.save("batches", [{"id": "b1", "generic_name": "Paracetamol", "stock": -1,
                                 "purchase_price_per_unit": 1.0, "low_stock_threshold": 5}])

    assert not ok
    assert store.load("batches") is None


def test_corrupt_file_loads_as_empty(db_path, caplog):
    db_path.parent.mkdir(parents=True)
    db_path.write_bytes(b"this is not a sqlite database" * 100)

    store = SqliteStore(db_path)
    ledger = InventoryLedger(store, clock=StepClock())

    assert ledger.batches == []
    assert ledger.transactions == ()
    assert "Could not" in caplog.text
    result = ledger.add_village("Rampur")
    assert result.success


def test_malformed_update_details_json(db_path):
    store = SqliteStore(db_path)
    txn = Transaction(id="t1", timestamp="2024-03-01T10:00:00+00:00", type="update", notes="x")
    store.save("transactions", [txn.to_dict()])
    with sqlite3.connect(db_path) as conn:
        conn.execute("UPDATE transactions SET update_details = '{broken'")
    conn.close()

    assert store.load("transactions") is None


@pytest.mark.parametrize("details", ['"oops"', "[1, 2]", '{"batch_id": "b1", "drug_name": "P", "changes": "x"}'])
def test_wrongly_shaped_update_details_json(db_path, details):
    store = SqliteStore(db_path)
    txn = Transaction(id="t1", timestamp="2024-03-01T10:00:00+00:00", type="update", notes="x")
    store.save("transactions", [txn.to_dict()])
    with sqlite3.connect(db_path) as conn:
        conn.execute("UPDATE transactions SET update_details = ?", (details,))
    conn.close()

    ledger = InventoryLedger(store, clock=StepClock())

    assert ledger.transactions == ()
    assert ledger.add_village("Rampur").success


def test_clear_forgets_collections(db_path):
    store = SqliteStore(db_path)
    store.save("villages", [{"id": "v1", "name": "Rampur"}])

    store.clear()

    assert store.load("villages") is None
