"""Payment reconciliation from CSV files.

A CSV export from the bank or the payment provider lists a reference
(registration or order number) and a status per line. Each line is matched
against an existing record through a ``PaymentStore`` and the record's
payment status is updated. Lines are processed one at a time, in file order;
a line that fails is reported and never stops the rest of the file.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional, Protocol, Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from . import models
from .csv_io import detect_delimiter, find_column, parse_line, split_lines
from .models import utcnow

log = logging.getLogger(__name__)

StatusNormalizer = Callable[[str], Optional[str]]


class CsvImportError(ValueError):
    """The payload as a whole cannot be imported."""


class PaymentStore(Protocol):
    async def find_by_reference(self, reference: str) -> Optional[Any]:
        ...

    async def update(self, target: Any, fields: dict[str, Any]) -> bool:
        ...


def _keep_status(raw: str) -> Optional[str]:
    return raw or None


@dataclass(frozen=True)
class ColumnMapping:
    id_column: int = 0
    # None: the file has no status column and every row is read as an empty status
    status_column: Optional[int] = 1
    skip_header: bool = False
    normalize_status: StatusNormalizer = _keep_status


@dataclass
class ImportResult:
    matched_count: int = 0
    unmatched_references: list[str] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    skipped_references: list[str] = field(default_factory=list)
    processed_rows: int = 0

    def summary(self) -> str:
        msg = f"{self.matched_count} payment(s) updated"
        if self.unmatched_references:
            msg += f", {len(self.unmatched_references)} not found"
        if self.skipped_references:
            msg += f", {len(self.skipped_references)} skipped"
        if self.errors:
            msg += f", {len(self.errors)} error(s)"
        return msg

    def to_dict(self) -> dict[str, Any]:
        return {
            "matched_count": self.matched_count,
            "unmatched_references": list(self.unmatched_references),
            "skipped_references": list(self.skipped_references),
            "errors": list(self.errors),
            "processed_rows": self.processed_rows,
            "message": self.summary(),
        }


def decode_payload(raw: bytes) -> str:
    try:
        return raw.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise CsvImportError("File is not valid UTF-8 text") from exc


async def import_payments(
    csv_text: str,
    delimiter: str,
    mapping: ColumnMapping,
    store: PaymentStore,
    *,
    now: Optional[datetime] = None,
) -> ImportResult:
    result = ImportResult()
    lines = split_lines(csv_text)
    start = 1 if mapping.skip_header else 0
    stamp = now or utcnow()
    needed = max(mapping.id_column, mapping.status_column if mapping.status_column is not None else 0)

    for idx in range(start, len(lines)):
        row_no = idx + 1
        cols = parse_line(lines[idx].strip(), delimiter)
        result.processed_rows += 1

        if len(cols) <= needed:
            result.errors.append(
                f"row {row_no}: expected at least {needed + 1} columns, found {len(cols)}"
            )
            log.warning("Skipping row %d: too few columns", row_no)
            continue

        reference = cols[mapping.id_column].strip()
        if not reference:
            result.errors.append(f"row {row_no}: missing reference")
            continue

        try:
            target = await store.find_by_reference(reference)
            if target is None:
                result.unmatched_references.append(reference)
                continue

            raw_status = cols[mapping.status_column].strip() if mapping.status_column is not None else ""
            status = mapping.normalize_status(raw_status)
            if status is None:
                log.warning("Row %d (%s): unrecognised status %r", row_no, reference, raw_status)
                result.skipped_references.append(reference)
                continue

            if await store.update(target, {"payment_status": status, "reconciled_at": stamp}):
                result.matched_count += 1
            else:
                result.errors.append(f"row {row_no} ({reference}): update rejected")
        except Exception as exc:
            log.warning("Row %d (%s) failed: %s", row_no, reference, exc)
            result.errors.append(f"row {row_no} ({reference}): {exc}")

    log.info("Payment import finished: %s", result.summary())
    return result


# ---------------------------
# Header-driven mapping
# ---------------------------

REGISTRATION_ID_ALIASES = ("id", "azonosító", "registration number", "registration_number", "reference")
REGISTRATION_STATUS_ALIASES = (
    "paymentstatus",
    "payment status",
    "payment_status",
    "fizetési státusz",
    "fizetesi statusz",
    "status",
)
ORDER_ID_ALIASES = ("order number", "order_number", "rendelésszám", "order", "reference")
ORDER_STATUS_ALIASES = ("status", "payment status", "payment_status", "státusz", "állapot")


def resolve_mapping(
    lines: Sequence[str],
    id_aliases: Sequence[str],
    status_aliases: Sequence[str],
    normalize_status: StatusNormalizer = _keep_status,
    *,
    require_status: bool = True,
) -> tuple[str, ColumnMapping]:
    """Detect delimiter and column positions from the header line.

    With ``require_status=False`` only the reference column must be present;
    a missing status column maps to ``status_column=None``.
    """
    if len(lines) < 2:
        raise CsvImportError("Empty or invalid CSV file")
    required = [id_aliases, status_aliases] if require_status else [id_aliases]
    delimiter = detect_delimiter(lines[0], required)
    if delimiter is None:
        wanted = f"a reference column ({', '.join(id_aliases)})"
        if require_status:
            wanted += f" and a status column ({', '.join(status_aliases)})"
        raise CsvImportError(
            f"Could not recognise the CSV format: the header needs {wanted}, "
            "separated by ';', ',', tab or '|'"
        )
    headers = parse_line(lines[0], delimiter)
    status_column = find_column(headers, status_aliases)
    mapping = ColumnMapping(
        id_column=find_column(headers, id_aliases),
        status_column=status_column if status_column != -1 else None,
        skip_header=True,
        normalize_status=normalize_status,
    )
    return delimiter, mapping


_REGISTRATION_STATUS_ALIASES = {
    "PAID": "PAID",
    "FIZETVE": "PAID",
    "UNPAID": "UNPAID",
    "PENDING": "UNPAID",
    "DUE": "UNPAID",
    "NINCS_FIZETVE": "UNPAID",
    "FIZETENDŐ": "UNPAID",
    "FIZETENDO": "UNPAID",
    "PARTIALLY_PAID": "PARTIALLY_PAID",
    "PARTIALLY PAID": "PARTIALLY_PAID",
    "PARTIAL": "PARTIALLY_PAID",
    "RÉSZBEN_FIZETVE": "PARTIALLY_PAID",
    "RESZBEN_FIZETVE": "PARTIALLY_PAID",
    "REFUNDED": "REFUNDED",
    "VISSZATÉRÍTVE": "REFUNDED",
    "VISSZATERITVE": "REFUNDED",
}

_ORDER_PAID_ALIASES = {"PAID", "COMPLETED", "SUCCESS", "SUCCESSFUL", "FIZETVE", "TELJESÍTVE", "SIKERES"}


def normalize_registration_payment_status(raw: str) -> Optional[str]:
    return _REGISTRATION_STATUS_ALIASES.get(raw.strip().upper())


def normalize_order_payment_status(raw: str) -> Optional[str]:
    # an order file lists payments received, so a blank status counts as paid
    value = raw.strip().upper()
    if not value or value in _ORDER_PAID_ALIASES:
        return "PAID"
    return None


# ---------------------------
# SQLAlchemy stores
# ---------------------------

class _SessionStore:
    """Runs the blocking session calls in the threadpool so every row suspends."""

    model: Any
    reference_column: str

    def __init__(self, session: Session) -> None:
        self._session = session

    async def find_by_reference(self, reference: str) -> Optional[Any]:
        return await run_in_threadpool(self._find, reference)

    async def update(self, target: Any, fields: dict[str, Any]) -> bool:
        return await run_in_threadpool(self._commit_update, target, fields)

    def _find(self, reference: str) -> Optional[Any]:
        column = getattr(self.model, self.reference_column)
        return self._session.execute(select(self.model).where(column == reference)).scalar_one_or_none()

    def _commit_update(self, target: Any, fields: dict[str, Any]) -> bool:
        try:
            if not self._apply(target, fields):
                return False
            self._session.commit()
        except Exception:
            self._session.rollback()
            raise
        return True

    def _apply(self, target: Any, fields: dict[str, Any]) -> bool:
        raise NotImplementedError


class RegistrationPaymentStore(_SessionStore):
    """Registrations looked up by ``registration_number``; one commit per row."""

    model = models.Registration
    reference_column = "registration_number"

    def _apply(self, target: models.Registration, fields: dict[str, Any]) -> bool:
        target.payment_status = fields["payment_status"]
        target.reconciled_at = fields["reconciled_at"]
        if target.payment_status == "PAID" and target.registration_status == "PENDING":
            target.registration_status = "CONFIRMED"
        return True


class OrderPaymentStore(_SessionStore):
    """Orders looked up by ``order_number``. Cancelled orders are never reopened."""

    model = models.Order
    reference_column = "order_number"

    def _apply(self, target: models.Order, fields: dict[str, Any]) -> bool:
        if target.status == "CANCELLED":
            return False
        if target.status == "PENDING":
            target.status = fields["payment_status"]
        target.reconciled_at = fields["reconciled_at"]
        return True
