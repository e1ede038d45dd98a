"""Shared fixtures: temporary ledger, settings and an in-memory extraction service."""
import json
from datetime import date
from decimal import Decimal
from pathlib import Path
from typing import Optional

import pytest
import pytest_asyncio

from invoice_ledger.config import Settings
from invoice_ledger.core.aggregator import BatchResultAggregator
from invoice_ledger.core.batches import BatchLifecycleManager
from invoice_ledger.core.extraction import RemoteJob
from invoice_ledger.core.ingestion import IngestionEngine
from invoice_ledger.core.models import (
    Document,
    ExtractedClient,
    ExtractedInvoice,
    ExtractedItem,
    ExtractedProvider,
)
from invoice_ledger.core.resolver import EntityResolver
from invoice_ledger.notifications import Notifier
from invoice_ledger.storage.documents import document_from_bytes
from invoice_ledger.storage.ledger import Ledger
from invoice_ledger.storage.scratch import ScratchArea

USER_ID = "user-1"
ACCOUNT_CIF = "B11111111"
BLOCKED_PROVIDER = "Proveedor Vetado SL"


def make_item(
    name: str = "Cemento gris 25kg",
    unit_price: str = "100.00",
    quantity: str = "1",
    code: Optional[str] = None,
    is_material: bool = True,
    item_date: Optional[date] = None,
    line_number: Optional[int] = None,
) -> ExtractedItem:
    qty = Decimal(quantity)
    price = Decimal(unit_price)
    return ExtractedItem(
        material_name=name,
        material_code=code,
        is_material=is_material,
        quantity=qty,
        unit_price=price,
        total_price=(qty * price).quantize(Decimal("0.01")),
        item_date=item_date,
        line_number=line_number,
    )


def make_invoice(
    code: str = "F-001",
    issue_date: date = date(2024, 1, 10),
    provider_name: str = "Suministros Garcia SL",
    provider_cif: Optional[str] = "B87654321",
    items: Optional[list[ExtractedItem]] = None,
    client_cif: Optional[str] = ACCOUNT_CIF,
    total: str = "100.00",
) -> ExtractedInvoice:
    return ExtractedInvoice(
        invoice_code=code,
        issue_date=issue_date,
        total_amount=Decimal(total),
        provider=ExtractedProvider(name=provider_name, cif=provider_cif),
        client=ExtractedClient(name="Obras Norte SL", cif=client_cif) if client_cif else None,
        items=items if items is not None else [make_item()],
    )


def line_response(
    code: str = "F-001",
    issue_date: str = "2024-01-10",
    total: str = "100.00",
    provider_name: str = "Suministros Garcia SL",
    provider_cif: str = "B87654321",
    items: Optional[list[str]] = None,
) -> str:
    """A line-protocol answer as the extraction service would send it."""
    lines = [
        f"HEADER|{code}|{issue_date}|{total}",
        f"PROVIDER|{provider_name}|{provider_cif}|~|~|~",
        f"CLIENT|Obras Norte SL|{ACCOUNT_CIF}",
    ]
    if items is None:
        items = ["ITEM|Cemento gris 25kg|~|1|1|100.00|100.00|~|~|~|1"]
    return "\n".join(lines + items)


def batch_record(key: str, text: Optional[str], finish_reason: str = "STOP", error: Optional[str] = None) -> dict:
    """One line of a batch output file."""
    if error is not None:
        return {"key": key, "error": error}
    return {
        "key": key,
        "response": {
            "candidates": [{"content": {"role": "model", "parts": [{"text": text}]}, "finishReason": finish_reason}]
        },
    }


def make_document(name: str = "factura.pdf", content: Optional[bytes] = None) -> Document:
    return document_from_bytes(name, content or f"%PDF-1.4 {name}".encode())


class RecordingNotifier(Notifier):
    def __init__(self):
        self.sent = []

    async def notify(self, user_id, message, kind, related_id=None):
        self.sent.append((user_id, message, kind, related_id))

    def kinds(self):
        return [kind for _, _, kind, _ in self.sent]


class FakeExtractionService:
    """Stands in for ExtractionService; remote jobs live in memory."""

    def __init__(self):
        self.extract_results = {}
        self.extract_calls = []
        self.uploaded = {}
        self.jobs = {}
        self.outputs = {}
        self.cancelled = []
        self.deleted = []
        self.create_errors = []
        self.job_inputs = {}
        self._counter = 0

    async def extract(self, document: Document):
        self.extract_calls.append(document.key)
        result = self.extract_results[document.key]
        if isinstance(result, BaseException):
            raise result
        return result

    async def upload_jsonl(self, path, display_name):
        lines = Path(path).read_text(encoding="utf-8").splitlines()
        file_name = f"files/{display_name}"
        self.uploaded[file_name] = [json.loads(line) for line in lines]
        return file_name

    async def create_batch_job(self, src_file_name, display_name, model=None):
        if self.create_errors:
            raise self.create_errors.pop(0)
        self._counter += 1
        name = f"batches/job-{self._counter}"
        self.job_inputs[name] = src_file_name
        self.jobs[name] = RemoteJob(name=name, state="JOB_STATE_PENDING")
        return self.jobs[name]

    async def get_batch_job(self, name):
        return self.jobs[name]

    async def cancel_batch_job(self, name):
        self.cancelled.append(name)
        self.jobs[name] = self.jobs[name].model_copy(update={"state": "JOB_STATE_CANCELLED"})

    async def download_output(self, file_name, target_path):
        target = Path(target_path)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(self.outputs[file_name])
        return target

    async def delete_file(self, name):
        self.deleted.append(name)

    # Test helpers

    def submitted_keys(self, job_name: str) -> list[str]:
        return [line["key"] for line in self.uploaded[self.job_inputs[job_name]]]

    def set_state(self, job_name: str, state: str, error: Optional[str] = None):
        self.jobs[job_name] = self.jobs[job_name].model_copy(update={"state": state, "error": error})

    def complete(self, job_name: str, records: list[dict]):
        file_name = f"files/output-{job_name.rsplit('/', 1)[-1]}"
        self.outputs[file_name] = "\n".join(json.dumps(r) for r in records).encode("utf-8")
        self.jobs[job_name] = RemoteJob(name=job_name, state="JOB_STATE_SUCCEEDED", dest_file_name=file_name)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        gemini_api_key="test-key",
        ledger_path=tmp_path / "ledger.db",
        scratch_directory=tmp_path / "scratch",
        logs_directory=tmp_path / "logs",
        validate_extractions=False,
        batch_stagger_seconds=0,
        account_stagger_seconds=0,
        output_stable_checks=1,
        output_stable_interval=0,
        retry_max_attempts=2,
        retry_base_delay=0,
        retry_max_delay=0,
        retry_jitter_range=0,
        transient_retry_delay=0,
        blocked_providers=[BLOCKED_PROVIDER],
    )


@pytest_asyncio.fixture
async def ledger(tmp_path):
    async with Ledger(tmp_path / "ledger.db") as store:
        yield store


@pytest_asyncio.fixture
async def account(ledger):
    return await ledger.create_account(USER_ID, "Obras Norte SL", ACCOUNT_CIF)


@pytest.fixture
def resolver(ledger, settings):
    return EntityResolver(ledger, settings.blocked_providers)


@pytest.fixture
def ingestion(ledger, resolver):
    return IngestionEngine(ledger, resolver)


@pytest.fixture
def fake_extraction():
    return FakeExtractionService()


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def scratch(settings):
    return ScratchArea(settings.scratch_directory)


@pytest.fixture
def aggregator(ledger, fake_extraction, ingestion, scratch, settings, notifier):
    return BatchResultAggregator(ledger, fake_extraction, ingestion, scratch, settings, notifier)


@pytest.fixture
def manager(ledger, fake_extraction, aggregator, scratch, settings, notifier):
    return BatchLifecycleManager(ledger, fake_extraction, aggregator, scratch, settings, notifier)
