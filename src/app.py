import io
import logging
from datetime import date, timedelta

import pandas as pd
import streamlit as st

from drug_groups import expiring_batches, low_stock_groups
from drug_models import sample_batches
from export_report import build_report_tables, default_export_name, to_frames
from inventory_ledger import InventoryLedger
from inventory_store import SqliteStore
from settings import DB_PATH, EXPIRY_WINDOW_DAYS, LOG_LEVEL, RESET_PASSWORD, SEED_SAMPLE_DATA, SEX_CHOICES

logging.basicConfig(level=LOG_LEVEL, format="%(levelname)s %(name)s: %(message)s")


@st.cache_resource
def get_ledger() -> InventoryLedger:
    # one ledger per server process; every session shares it
    return InventoryLedger(SqliteStore(DB_PATH), seed_batches=sample_batches() if SEED_SAMPLE_DATA else None)


def show_result(result):
    if result.success:
        st.success(result.message)
    elif result.partial:
        st.warning(result.message)
    else:
        st.error(result.message)
    for item in result.items:
        st.write(f"- {item.drug_name} {item.brand_name or ''} {item.dosage or ''} "
                 f"(Batch: {item.batch_number or 'N/A'}): {item.quantity}")


def batches_frame(batches) -> pd.DataFrame:
    return pd.DataFrame([b.to_dict() for b in batches])


def transactions_frame(transactions) -> pd.DataFrame:
    rows = []
    for t in transactions:
        rows.append({
            "timestamp": t.timestamp,
            "type": t.type,
            "patient": t.patient_name or "",
            "village": t.village_name or "",
            "source": t.source or "",
            "drugs": "; ".join(
                f"{d.brand_name or d.drug_name} {d.dosage or ''} [{d.batch_number or 'N/A'}] "
                f"{d.quantity:+d} ({d.previous_stock}->{d.new_stock})"
                for d in t.drugs
            ),
            "notes": t.notes or "",
        })
    return pd.DataFrame(rows)


# page layout & structure
st.set_page_config(page_title="Camp Pharmacy", layout="wide")
st.title("Camp Pharmacy Inventory")
st.caption(f"DB: {DB_PATH}")

ledger = get_ledger()

tab_overview, tab_dispense, tab_restock, tab_batches, tab_moves, tab_camps, tab_settings = st.tabs(
    ["Overview", "Dispense", "Restock", "Batches", "Transactions", "Camps", "Settings"]
)

# Overview
with tab_overview:
    groups = ledger.get_groups_for_display()
    batches = ledger.batches
    c1, c2, c3, c4 = st.columns(4)
    c1.metric("Drugs", len(groups))
    c2.metric("Batches", len(batches))
    c3.metric("Units in stock", sum(b.stock for b in batches))
    c4.metric("Stock value (INR)", f"{sum(b.stock * b.purchase_price_per_unit for b in batches):,.2f}")

    st.subheader("Stock by drug")
    st.dataframe(pd.DataFrame([
        {"drug": g.display_name, "total_stock": g.total_stock, "threshold": g.low_stock_threshold,
         "low": g.is_low_stock, "batches": len(g.batches), "next_expiry": g.next_expiry or ""}
        for g in groups
    ]), use_container_width=True)

    st.subheader("Low stock")
    low = low_stock_groups(groups)
    st.dataframe(pd.DataFrame([
        {"drug": g.display_name, "total_stock": g.total_stock, "threshold": g.low_stock_threshold} for g in low
    ]), use_container_width=True)

    st.subheader(f"Expiring within {EXPIRY_WINDOW_DAYS} days")
    st.dataframe(batches_frame(expiring_batches(batches, EXPIRY_WINDOW_DAYS)), use_container_width=True)

# Dispense
with tab_dispense:
    groups = [g for g in ledger.get_groups_for_display() if g.total_stock > 0]
    labels = {g.group_key: f"{g.display_name} (Stock: {g.total_stock})" for g in groups}
    chosen = st.multiselect("Drugs", options=list(labels), format_func=lambda k: labels[k])
    village_names = [""] + [v.name for v in ledger.list_villages()]
    with st.form("dispense_form", clear_on_submit=True):
        c1, c2, c3, c4, c5 = st.columns(5)
        patient_name = c1.text_input("Patient name")
        id_last_four = c2.text_input("ID (last 4 digits)", max_chars=4)
        age = c3.number_input("Age", min_value=0, value=0, step=1)
        sex = c4.selectbox("Sex", SEX_CHOICES)
        village = c5.selectbox("Village", village_names)
        quantities = {key: st.number_input(labels[key], min_value=1, value=1, step=1, key=f"qty-{key}") for key in chosen}
        if st.form_submit_button("Dispense"):
            result = ledger.dispense(
                {"patient_name": patient_name, "id_last_four": id_last_four, "age": int(age),
                 "sex": sex, "village_name": village or None},
                [{"group_key": k, "quantity": int(q)} for k, q in quantities.items()],
            )
            show_result(result)

    with st.expander("Batches on the shelf"):
        st.dataframe(pd.DataFrame(
            [{"batch": o.display_name, "stock": o.stock} for o in ledger.get_batches_for_dispense()]
        ), use_container_width=True)

# Restock
with tab_restock:
    st.subheader("Top up an existing batch")
    batch_list = ledger.batches
    if batch_list:
        with st.form("restock_existing", clear_on_submit=True):
            by_id = {b.id: b for b in batch_list}
            sel = st.selectbox("Batch", options=list(by_id), format_func=lambda x: f"{by_id[x].label} (now {by_id[x].stock})")
            c1, c2, c3 = st.columns(3)
            source = c1.text_input("Source")
            qty = c2.number_input("Quantity (+)", min_value=1, value=1, step=1)
            price = c3.text_input("New price per unit (optional)")
            if st.form_submit_button("Receive"):
                line = {"kind": "existing", "batch_id": sel, "quantity": int(qty)}
                if price.strip():
                    line["price_override"] = price.strip()
                show_result(ledger.restock(source, [line]))
    else:
        st.info("No batches yet.")

    st.divider()
    st.subheader("Add a new batch")
    with st.form("restock_new", clear_on_submit=True):
        c1, c2, c3, c4 = st.columns(4)
        generic = c1.text_input("Generic name")
        brand = c2.text_input("Brand name")
        dosage = c3.text_input("Dosage")
        batch_no = c4.text_input("Batch number")
        c5, c6, c7, c8 = st.columns(4)
        mfg = c5.text_input("Manufacture date (YYYY-MM-DD)")
        exp = c6.text_input("Expiry date (YYYY-MM-DD)")
        price = c7.number_input("Price per unit", min_value=0.0, value=1.0, step=0.5)
        threshold = c8.number_input("Low stock threshold", min_value=0, value=5, step=1)
        c9, c10 = st.columns(2)
        source = c9.text_input("Source", key="new_source")
        qty = c10.number_input("Quantity", min_value=1, value=1, step=1, key="new_qty")
        if st.form_submit_button("Add batch"):
            details = {"generic_name": generic, "brand_name": brand, "dosage": dosage, "batch_number": batch_no,
                       "manufacture_date": mfg, "expiry_date": exp,
                       "purchase_price_per_unit": float(price), "low_stock_threshold": int(threshold)}
            show_result(ledger.restock(source, [{"kind": "new", "details": details, "quantity": int(qty)}]))

# Batches
with tab_batches:
    st.subheader("Batches in FEFO order")
    only_in_stock = st.checkbox("Only show batches with stock > 0", value=True)
    rows = [b for g in ledger.get_groups_for_display() for b in g.batches if b.stock > 0 or not only_in_stock]
    st.dataframe(batches_frame(rows), use_container_width=True)

    batch_list = ledger.batches
    if batch_list:
        by_id = {b.id: b for b in batch_list}
        sel = st.selectbox("Pick batch", options=list(by_id), format_func=lambda x: f"{by_id[x].label} (now {by_id[x].stock})")
        current = by_id[sel]

        st.markdown("**Adjust to exact quantity**")
        new_qty = st.number_input("Set quantity to", min_value=0, value=int(current.stock), step=1)
        reason = st.text_input("Reason")
        if st.button("Apply adjustment"):
            show_result(ledger.adjust_stock(sel, int(new_qty), reason))

        st.markdown("**Edit details**")
        with st.form("edit_batch"):
            c1, c2, c3, c4 = st.columns(4)
            fields = {
                "generic_name": c1.text_input("Generic name", value=current.generic_name),
                "brand_name": c2.text_input("Brand name", value=current.brand_name or ""),
                "dosage": c3.text_input("Dosage", value=current.dosage or ""),
            }
            batch_no = c4.text_input("Batch number", value=current.batch_number or "")
            # unnumbered batches stay editable; a number cannot be cleared
            if batch_no.strip():
                fields["batch_number"] = batch_no
            c5, c6, c7, c8 = st.columns(4)
            fields["manufacture_date"] = c5.text_input("Manufacture date", value=current.manufacture_date or "")
            fields["expiry_date"] = c6.text_input("Expiry date", value=current.expiry_date or "")
            fields["purchase_price_per_unit"] = c7.number_input(
                "Price per unit", min_value=0.0, value=float(current.purchase_price_per_unit), step=0.5)
            fields["low_stock_threshold"] = int(c8.number_input(
                "Low stock threshold", min_value=0, value=int(current.low_stock_threshold), step=1))
            fields["initial_source"] = st.text_input("Initial source", value=current.initial_source or "")
            if st.form_submit_button("Save"):
                show_result(ledger.update_batch_details(sel, fields))

        if st.button("Delete batch", type="secondary"):
            show_result(ledger.delete_batch(sel))

        st.markdown("**History**")
        st.dataframe(transactions_frame(ledger.history(sel)), use_container_width=True)

# Transactions
with tab_moves:
    st.subheader("Transactions")
    kind = st.selectbox("Type", ["(all)", "dispense", "restock", "update", "adjustment"])
    oldest_first = st.checkbox("Oldest first")
    records = ledger.transactions_oldest_first() if oldest_first else ledger.transactions
    txns = [t for t in records if kind == "(all)" or t.type == kind]
    st.dataframe(transactions_frame(txns[:500]), use_container_width=True)

# Camps
with tab_camps:
    st.subheader("Villages / camps")
    with st.form("village_form", clear_on_submit=True):
        name = st.text_input("Village name")
        if st.form_submit_button("Add village"):
            show_result(ledger.add_village(name))
    st.dataframe(pd.DataFrame([v.to_dict() for v in ledger.list_villages()]), use_container_width=True)

# Settings
with tab_settings:
    st.subheader("Export")
    c1, c2 = st.columns(2)
    start = c1.date_input("From", value=date.today() - timedelta(days=30), format="YYYY-MM-DD")
    end = c2.date_input("To", value=date.today(), format="YYYY-MM-DD")
    if end < start:
        st.error("End date cannot be before start date.")
    else:
        buf = io.BytesIO()
        tables = build_report_tables(ledger.batches, ledger.transactions, start, end)
        with pd.ExcelWriter(buf, engine="openpyxl") as writer:
            for sheet, df in to_frames(tables).items():
                df.to_excel(writer, sheet_name=sheet, index=False)
        st.download_button("Download XLSX", buf.getvalue(), file_name=f"{default_export_name()}.xlsx")

    st.divider()
    st.subheader("Reset all data")
    pw = st.text_input("Password", type="password")
    if st.button("Reset inventory, transactions and villages"):
        if not RESET_PASSWORD:
            st.error("Reset is disabled: set CAMP_RESET_PASSWORD to enable it.")
        elif pw != RESET_PASSWORD:
            st.error("Wrong password")
        else:
            show_result(ledger.reset_all())
