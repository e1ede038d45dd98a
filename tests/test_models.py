"""Tests for data models."""
import json
import sqlite3
from datetime import date
from decimal import Decimal

import pytest
from pydantic import ValidationError

from invoice_ledger.core.exceptions import BlockedProviderError, DuplicateInvoiceError, ErrorKind, ParsingError
from invoice_ledger.core.models import (
    BatchErrorDetail,
    BatchItem,
    BatchJob,
    BatchProgressInfo,
    BatchStatus,
    DocumentOutcome,
    ExtractedInvoice,
    ExtractedItem,
    UploadResult,
    quantize_money,
)
from invoice_ledger.core.rate_limit import RetryError


@pytest.fixture
def sample_invoice_data():
    """Sample extraction payload as stored on a batch item."""
    return {
        "invoice_code": "A-2024-0042",
        "issue_date": "2024-03-05",
        "total_amount": "1210.456",
        "provider": {"name": "Ferreteria Centro SL", "cif": "B12345678"},
        "client": {"name": "Obras Norte SL", "cif": "B11111111"},
        "items": [
            {"material_name": "Tornillo 6x40", "quantity": "100", "unit_price": "0.12", "total_price": "12.00"},
            {"material_name": "Porte", "is_material": False, "total_price": "15", "item_date": "2024-03-04"},
        ],
    }


def test_extracted_invoice_creation(sample_invoice_data):
    invoice = ExtractedInvoice(**sample_invoice_data)

    assert invoice.issue_date == date(2024, 3, 5)
    assert invoice.total_amount == Decimal("1210.46")
    assert invoice.provider.cif == "B12345678"
    assert invoice.items[1].is_material is False
    assert not invoice.is_empty


def test_effective_date_prefers_line_date(sample_invoice_data):
    invoice = ExtractedInvoice(**sample_invoice_data)
    assert invoice.effective_date(invoice.items[0]) == date(2024, 3, 5)
    assert invoice.effective_date(invoice.items[1]) == date(2024, 3, 4)


def test_empty_invoice():
    assert ExtractedInvoice().is_empty
    assert ExtractedInvoice(invoice_code="  ").is_empty
    assert not ExtractedInvoice(items=[ExtractedItem(material_name="Arena")]).is_empty


def test_payload_json_roundtrip(sample_invoice_data):
    """Payloads survive being stored as JSON text on a batch item."""
    invoice = ExtractedInvoice(**sample_invoice_data)
    item = BatchItem(id="i1", batch_id="b1", document_key="doc", extracted_payload=invoice.model_dump_json())
    assert item.extracted_payload == invoice


@pytest.mark.parametrize("raw,expected", [
    ("12.345", Decimal("12.35")),
    (3, Decimal("3.00")),
    (None, Decimal("0.00")),
    ("n/a", Decimal("0.00")),
])
def test_quantize_money(raw, expected):
    assert quantize_money(raw) == expected


def test_error_detail_from_exception():
    blocked = BatchErrorDetail.from_exception(BlockedProviderError("Vetado SL"), "a.pdf", "F-1")
    assert blocked.kind == ErrorKind.BLOCKED_PROVIDER
    assert blocked.file_name == "a.pdf"
    assert blocked.invoice_code == "F-1"

    wrapped = RetryError("extract a.pdf", ParsingError("doc", ["totalAmount"]), 3)
    assert BatchErrorDetail.from_exception(wrapped).kind == ErrorKind.PARSING_ERROR

    database = BatchErrorDetail.from_exception(sqlite3.OperationalError("disk I/O error"))
    assert database.kind == ErrorKind.DATABASE_ERROR

    duplicate = BatchErrorDetail.from_exception(DuplicateInvoiceError("F-9", "Garcia SL", "inv-1"), "b.pdf", "F-9")
    assert duplicate.kind == ErrorKind.DUPLICATE_INVOICE
    assert "already exists" in duplicate.message

    unknown = BatchErrorDetail.from_exception(RuntimeError())
    assert unknown.kind == ErrorKind.UNKNOWN
    assert unknown.message == "RuntimeError"


def test_batch_job_errors_from_json():
    stored = json.dumps([{"kind": "PARSING_ERROR", "message": "missing total", "file_name": "a.pdf"}])
    job = BatchJob(id="b1", user_id="u1", errors=stored)
    assert job.errors[0].kind == ErrorKind.PARSING_ERROR
    assert BatchJob(id="b2", user_id="u1", errors=None).errors == []


def test_terminal_statuses():
    assert not BatchStatus.PENDING.is_terminal
    assert not BatchStatus.PROCESSING.is_terminal
    for status in (BatchStatus.COMPLETED, BatchStatus.FAILED, BatchStatus.CANCELLED, BatchStatus.EXPIRED):
        assert status.is_terminal


def test_progress_projection():
    job = BatchJob(id="b1", user_id="u1", status=BatchStatus.PROCESSING, total_files=4, processed_files=2,
                   successful_files=1, failed_files=1)
    info = BatchProgressInfo.from_batch_job(job)
    assert info.id == "b1"
    assert (info.total_files, info.processed_files, info.successful_files) == (4, 2, 1)


def test_upload_result_counters():
    results = [
        DocumentOutcome(file_name="a.pdf", document_key="a", success=True),
        DocumentOutcome(file_name="b.pdf", document_key="b", success=True, duplicate=True),
        DocumentOutcome(file_name="c.pdf", document_key="c", success=False),
        DocumentOutcome(file_name="d.pdf", document_key="d", success=False, blocked=True),
    ]
    upload = UploadResult(results=results)
    assert (upload.successful, upload.failed, upload.blocked) == (2, 1, 1)


def test_validation_errors():
    with pytest.raises(ValidationError):
        BatchJob(id="b1", user_id="u1", status="SOMEWHERE")
    with pytest.raises(ValidationError):
        ExtractedInvoice(issue_date="not a date")
