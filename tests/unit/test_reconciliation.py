"""Unit tests for racereg.reconciliation against an in-memory store."""

from datetime import datetime, timezone

import pytest

from racereg.reconciliation import (
    ColumnMapping,
    CsvImportError,
    ImportResult,
    ORDER_ID_ALIASES,
    ORDER_STATUS_ALIASES,
    REGISTRATION_ID_ALIASES,
    REGISTRATION_STATUS_ALIASES,
    decode_payload,
    import_payments,
    normalize_order_payment_status,
    normalize_registration_payment_status,
    resolve_mapping,
)
from racereg.csv_io import split_lines

NOW = datetime(2026, 4, 1, 9, 0, tzinfo=timezone.utc)


class MemoryStore:
    def __init__(self, *references, reject=(), explode=()):
        self.targets = {ref: {"reference": ref, "payment_status": "UNPAID", "reconciled_at": None} for ref in references}
        self.reject = set(reject)
        self.explode = set(explode)
        self.lookups = []

    async def find_by_reference(self, reference):
        self.lookups.append(reference)
        return self.targets.get(reference)

    async def update(self, target, fields):
        if target["reference"] in self.explode:
            raise RuntimeError("database is locked")
        if target["reference"] in self.reject:
            return False
        target.update(fields)
        return True


# ---------------------------------------------------------------------------
# import_payments
# ---------------------------------------------------------------------------

@pytest.mark.anyio
async def test_three_line_scenario():
    store = MemoryStore("REF1", "REF3")
    result = await import_payments("REF1,PAID\nREF2,PENDING\nREF3,PAID", ",", ColumnMapping(), store, now=NOW)

    assert result.matched_count == 2
    assert result.unmatched_references == ["REF2"]
    assert result.errors == []
    assert store.targets["REF1"]["payment_status"] == "PAID"
    assert store.targets["REF3"]["payment_status"] == "PAID"
    assert store.targets["REF1"]["reconciled_at"] == NOW


@pytest.mark.anyio
async def test_missing_target_does_not_abort_later_rows():
    refs = [f"REG-{i}" for i in range(1, 6)]
    store = MemoryStore(*[r for r in refs if r != "REG-2"])
    text = "\n".join(f"{r};PAID" for r in refs)

    result = await import_payments(text, ";", ColumnMapping(), store, now=NOW)

    assert result.matched_count == 4
    assert result.unmatched_references == ["REG-2"]
    assert store.lookups == refs
    assert all(store.targets[r]["payment_status"] == "PAID" for r in refs if r != "REG-2")


@pytest.mark.anyio
async def test_row_errors_are_collected():
    store = MemoryStore("A", "B", "C", reject={"B"}, explode={"C"})
    text = "A;PAID\nshort\n;PAID\nB;PAID\nC;PAID"

    result = await import_payments(text, ";", ColumnMapping(), store, now=NOW)

    assert result.matched_count == 1
    assert result.processed_rows == 5
    assert result.errors == [
        "row 2: expected at least 2 columns, found 1",
        "row 3: missing reference",
        "row 4 (B): update rejected",
        "row 5 (C): database is locked",
    ]


@pytest.mark.anyio
async def test_unrecognised_status_is_skipped():
    store = MemoryStore("A", "B")
    mapping = ColumnMapping(normalize_status=normalize_registration_payment_status)

    result = await import_payments("A,paid\nB,chargeback", ",", mapping, store, now=NOW)

    assert result.matched_count == 1
    assert result.skipped_references == ["B"]
    assert store.targets["B"]["payment_status"] == "UNPAID"


@pytest.mark.anyio
async def test_header_is_skipped_and_columns_mapped():
    store = MemoryStore("REG-1")
    text = 'Name;Payment Status;Registration Number\n"Doe, Jane";PAID;REG-1'
    mapping = ColumnMapping(id_column=2, status_column=1, skip_header=True)

    result = await import_payments(text, ";", mapping, store, now=NOW)

    assert result.matched_count == 1
    assert store.targets["REG-1"]["payment_status"] == "PAID"


@pytest.mark.anyio
async def test_missing_status_column_reads_every_row_as_blank():
    store = MemoryStore("ORD-1", "ORD-2")
    mapping = ColumnMapping(id_column=0, status_column=None, skip_header=True, normalize_status=normalize_order_payment_status)

    result = await import_payments("Order Number\nORD-1\nORD-2", ";", mapping, store, now=NOW)

    assert result.matched_count == 2
    assert store.targets["ORD-1"]["payment_status"] == "PAID"


@pytest.mark.anyio
async def test_empty_payload_is_a_no_op():
    result = await import_payments("", ",", ColumnMapping(), MemoryStore(), now=NOW)
    assert result == ImportResult()


def test_summary_and_dict():
    result = ImportResult(matched_count=2, unmatched_references=["X"], errors=["row 3: missing reference"])
    assert result.summary() == "2 payment(s) updated, 1 not found, 1 error(s)"
    assert result.to_dict()["unmatched_references"] == ["X"]


# ---------------------------------------------------------------------------
# Header-driven mapping
# ---------------------------------------------------------------------------

class TestResolveMapping:
    def test_registration_export_header(self):
        lines = split_lines("Registration Number;Name;Status;Payment Status\nREG-1;Jane;PENDING;PAID")
        delimiter, mapping = resolve_mapping(lines, REGISTRATION_ID_ALIASES, REGISTRATION_STATUS_ALIASES)
        assert delimiter == ";"
        assert (mapping.id_column, mapping.status_column, mapping.skip_header) == (0, 3, True)

    def test_order_header_with_commas(self):
        lines = split_lines("Date,Order Number,Status\n2026-04-01,ORD-1,PAID")
        delimiter, mapping = resolve_mapping(lines, ORDER_ID_ALIASES, ORDER_STATUS_ALIASES)
        assert delimiter == ","
        assert (mapping.id_column, mapping.status_column) == (1, 2)

    def test_order_file_without_status_column(self):
        lines = split_lines("Order Number;Customer\nORD-2026-00001;Jane")
        delimiter, mapping = resolve_mapping(
            lines, ORDER_ID_ALIASES, ORDER_STATUS_ALIASES, normalize_order_payment_status, require_status=False
        )
        assert delimiter == ";"
        assert (mapping.id_column, mapping.status_column) == (0, None)

    def test_status_column_still_required_by_default(self):
        with pytest.raises(CsvImportError, match="status column"):
            resolve_mapping(["Order Number;Customer", "ORD-1;Jane"], ORDER_ID_ALIASES, ORDER_STATUS_ALIASES)

    def test_hungarian_bank_headers(self):
        lines = split_lines("Azonosító;Név;Fizetési Státusz\nREG-1;Kiss Anna;FIZETVE")
        delimiter, mapping = resolve_mapping(lines, REGISTRATION_ID_ALIASES, REGISTRATION_STATUS_ALIASES)
        assert delimiter == ";"
        assert (mapping.id_column, mapping.status_column) == (0, 2)

    def test_hungarian_order_headers(self):
        lines = split_lines("Rendelésszám,Állapot\nORD-1,teljesítve")
        _, mapping = resolve_mapping(lines, ORDER_ID_ALIASES, ORDER_STATUS_ALIASES, require_status=False)
        assert (mapping.id_column, mapping.status_column) == (0, 1)

    def test_header_only_is_rejected(self):
        with pytest.raises(CsvImportError):
            resolve_mapping(["id;status"], REGISTRATION_ID_ALIASES, REGISTRATION_STATUS_ALIASES)

    def test_unknown_header_is_rejected(self):
        with pytest.raises(CsvImportError, match="Could not recognise"):
            resolve_mapping(["foo;bar", "1;2"], REGISTRATION_ID_ALIASES, REGISTRATION_STATUS_ALIASES)


# ---------------------------------------------------------------------------
# Status normalisation / decoding
# ---------------------------------------------------------------------------

@pytest.mark.parametrize(
    "raw, expected",
    [
        ("PAID", "PAID"),
        (" paid ", "PAID"),
        ("Pending", "UNPAID"),
        ("partially paid", "PARTIALLY_PAID"),
        ("REFUNDED", "REFUNDED"),
        ("FIZETVE", "PAID"),
        ("fizetendő", "UNPAID"),
        ("NINCS_FIZETVE", "UNPAID"),
        ("RESZBEN_FIZETVE", "PARTIALLY_PAID"),
        ("Részben_Fizetve", "PARTIALLY_PAID"),
        ("VISSZATERITVE", "REFUNDED"),
        ("", None),
        ("chargeback", None),
    ],
)
def test_registration_status_normalisation(raw, expected):
    assert normalize_registration_payment_status(raw) == expected


def test_order_status_only_confirms_payment():
    assert normalize_order_payment_status("completed") == "PAID"
    assert normalize_order_payment_status("Fizetve") == "PAID"
    assert normalize_order_payment_status("sikeres") == "PAID"
    assert normalize_order_payment_status("PENDING") is None


def test_blank_order_status_counts_as_paid():
    assert normalize_order_payment_status("") == "PAID"
    assert normalize_order_payment_status("   ") == "PAID"


def test_decode_payload_strips_bom():
    assert decode_payload("\ufeffid;status".encode("utf-8")) == "id;status"


def test_decode_payload_rejects_non_utf8():
    with pytest.raises(CsvImportError):
        decode_payload(b"\xff\xfe\x00i\x00d")
