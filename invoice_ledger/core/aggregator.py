"""
Batch result aggregation.

Reads the output of one completed remote job, decodes every line, ingests
the results serially in issue-date order and rolls per-document outcomes
up into the batch counters and structured error list.
"""

import logging
from datetime import date
from pathlib import Path
from typing import Any, Optional

from ..notifications import NotificationKind, Notifier, safe_notify
from ..storage.scratch import ScratchArea, iter_jsonl, wait_for_stable_size
from .codec import decode_batch_response, decode_validation, response_text
from .exceptions import (
    BlockedProviderError,
    DuplicateInvoiceError,
    ErrorKind,
    ExtractionError,
    InvoiceLedgerError,
    ParsingError,
)
from .extraction import ExtractionService, RemoteJob
from .ingestion import IngestionEngine
from .models import (
    AggregateResult,
    BatchErrorDetail,
    BatchItem,
    BatchJob,
    BatchPurpose,
    ExtractedInvoice,
    ValidationVerdict,
)
from .resolver import ResolutionCache

logger = logging.getLogger(__name__)

MISSING_RESULT_MESSAGE = "No result (missing in batch response)"


class _Tally:
    """Mutable per-batch counters."""

    def __init__(self):
        self.result = AggregateResult()

    def success(self):
        self.result.success_count += 1

    def duplicate(self, error: DuplicateInvoiceError, file_name=None):
        self.result.success_count += 1
        self.result.duplicate_count += 1
        self.result.errors.append(BatchErrorDetail.from_exception(error, file_name, error.invoice_code))

    def failure(self, error: BaseException, file_name=None, invoice_code=None) -> BatchErrorDetail:
        detail = BatchErrorDetail.from_exception(error, file_name, invoice_code)
        if isinstance(error, BlockedProviderError):
            self.result.blocked_count += 1
        else:
            self.result.failed_count += 1
        self.result.errors.append(detail)
        return detail


class BatchResultAggregator:
    """Turns a completed remote job into ledger rows and batch statistics."""

    def __init__(
        self,
        ledger,
        extraction: ExtractionService,
        ingestion: IngestionEngine,
        scratch: ScratchArea,
        settings,
        notifier: Optional[Notifier] = None
    ):
        self.ledger = ledger
        self.extraction = extraction
        self.ingestion = ingestion
        self.scratch = scratch
        self.settings = settings
        self.notifier = notifier

    # Reading output

    async def _read_output_file(self, batch_job: BatchJob, remote_job: RemoteJob) -> tuple[list[dict[str, Any]], Path]:
        remote_name = remote_job.dest_file_name
        local_name = Path(remote_name).name
        if not local_name.endswith(".jsonl"):
            local_name += ".jsonl"

        await self.ledger.set_batch_output(batch_job.id, remote_name)
        await self.extraction.download_output(remote_name, self.scratch.path_for(local_name))
        path = self.scratch.locate_output(local_name, self.settings.output_recent_window_seconds)
        await wait_for_stable_size(path, self.settings.output_stable_checks, self.settings.output_stable_interval)
        return list(iter_jsonl(path)), path

    @staticmethod
    def _inline_records(remote_job: RemoteJob, items: list[BatchItem]) -> list[dict[str, Any]]:
        """Inline responses carry no key; they follow submission order."""
        responses = remote_job.inlined_responses or []
        if len(responses) != len(items):
            logger.warning(
                f"[AGGREGATE] {remote_job.name} - {len(responses)} inline responses for {len(items)} items"
            )
        return [
            {"key": item.document_key, **entry}
            for item, entry in zip(items, responses)
        ]

    # Aggregation

    async def aggregate(self, batch_job: BatchJob, remote_job: RemoteJob) -> AggregateResult:
        """
        Process a completed job's output exactly once per item.

        Raises:
            OutputFileError: If the output file cannot be located unambiguously
        """
        items = await self.ledger.list_batch_items(batch_job.id)
        by_key = {item.document_key: item for item in items}

        output_path: Optional[Path] = None
        if remote_job.dest_file_name:
            records, output_path = await self._read_output_file(batch_job, remote_job)
        elif remote_job.inlined_responses:
            records = self._inline_records(remote_job, items)
        else:
            logger.warning(f"[AGGREGATE] {batch_job.id} - Job reported no output")
            records = []

        tally = _Tally()
        seen: set[str] = set()
        decoded: list[tuple[BatchItem, dict[str, Any]]] = []
        for record in records:
            key = record.get("key")
            item = by_key.get(key) if isinstance(key, str) else None
            if item is None or key in seen:
                logger.warning(f"[AGGREGATE] {batch_job.id} - Skipping unknown or repeated key {key!r}")
                continue
            seen.add(key)
            if item.processed:
                continue
            decoded.append((item, record))

        try:
            if batch_job.purpose == BatchPurpose.VALIDATION:
                await self._aggregate_validation(batch_job, decoded, tally)
            else:
                await self._aggregate_extraction(batch_job, decoded, tally)

            # Items the job never answered for
            for item in await self.ledger.list_batch_items(batch_job.id, unprocessed_only=True):
                if await self.ledger.mark_item_processed(item.id, MISSING_RESULT_MESSAGE):
                    tally.failure(ExtractionError(item.document_key, MISSING_RESULT_MESSAGE), item.file_name)
                    await self._clear_after_failure(batch_job, item)
        finally:
            # Items settled so far are counted even if the sweep is cut short
            result = tally.result
            await self.ledger.record_batch_outcomes(
                batch_job.id,
                successful=result.success_count,
                failed=result.failed_count,
                blocked=result.blocked_count,
                errors=result.errors,
            )

        if output_path is not None:
            if result.failed_count == 0:
                self.scratch.remove(output_path)
            else:
                logger.info(f"[AGGREGATE] Keeping {output_path.name} for inspection ({result.failed_count} failures)")

        logger.info(
            f"[AGGREGATE] {batch_job.id} - {result.success_count} ok ({result.duplicate_count} duplicates), "
            f"{result.failed_count} failed, {result.blocked_count} blocked"
        )
        return result

    async def _aggregate_extraction(
        self,
        batch_job: BatchJob,
        decoded: list[tuple[BatchItem, dict[str, Any]]],
        tally: _Tally
    ) -> None:
        extracted: list[tuple[BatchItem, ExtractedInvoice]] = []
        for item, record in decoded:
            try:
                if record.get("error"):
                    raise ExtractionError(item.document_key, str(record["error"]))
                extracted.append((item, decode_batch_response(record.get("response"), item.document_key)))
            except InvoiceLedgerError as e:
                await self._fail_item(batch_job, item, e, tally)
            except Exception as e:
                # One unreadable record fails its own document only
                logger.warning(f"[AGGREGATE] {item.document_key} - Unreadable output record: {e!r}", exc_info=True)
                await self._fail_item(batch_job, item, ParsingError(item.document_key, ["a readable record"]), tally)

        # Chronological order keeps previous-price lookups meaningful
        extracted.sort(key=lambda pair: pair[1].issue_date or date.max)

        cache = ResolutionCache()
        for item, invoice in extracted:
            if self.settings.validate_extractions:
                await self._queue_for_validation(batch_job, item, invoice, tally)
            else:
                await self._ingest_item(batch_job, item, item, invoice, None, cache, tally)

    async def _queue_for_validation(
        self, batch_job: BatchJob, item: BatchItem, invoice: ExtractedInvoice, tally: _Tally
    ) -> None:
        if self.ingestion.resolver.is_blocked(invoice.provider.name):
            await self._fail_item(batch_job, item, BlockedProviderError(invoice.provider.name), tally, invoice.invoice_code)
            return
        if await self.ledger.mark_item_processed(item.id, None, payload=invoice):
            tally.success()
            tally.result.validation_queue.append(item.document_key)

    async def _aggregate_validation(
        self,
        batch_job: BatchJob,
        decoded: list[tuple[BatchItem, dict[str, Any]]],
        tally: _Tally
    ) -> None:
        parents = {link.document_key: link.parent_batch_id for link in await self.ledger.links_for_child(batch_job.id)}

        pending: list[tuple[BatchItem, BatchItem, ExtractedInvoice, ValidationVerdict]] = []
        for item, record in decoded:
            parent_id = parents.get(item.document_key)
            parent_item = await self.ledger.get_batch_item(parent_id, item.document_key) if parent_id else None
            payload = parent_item.extracted_payload if parent_item else None
            if payload is None:
                await self._fail_item(
                    batch_job, item,
                    ExtractionError(item.document_key, "extraction payload no longer available"), tally
                )
                continue

            if record.get("error"):
                verdict = ValidationVerdict(is_valid=True, notes=f"Validation unavailable: {record['error']}")
            else:
                verdict = decode_validation(response_text(record.get("response")))
            pending.append((item, parent_item, payload, verdict))

        pending.sort(key=lambda entry: entry[2].issue_date or date.max)
        cache = ResolutionCache()
        for item, parent_item, payload, verdict in pending:
            await self._ingest_item(batch_job, item, parent_item, payload, verdict, cache, tally)

    async def _ingest_item(
        self,
        batch_job: BatchJob,
        item: BatchItem,
        source_item: BatchItem,
        invoice: ExtractedInvoice,
        verdict: Optional[ValidationVerdict],
        cache: ResolutionCache,
        tally: _Tally
    ) -> None:
        """Ingest one decoded document and settle its batch item."""
        placeholder = await self.ledger.get_pending_invoice(item.document_key)
        try:
            result = await self.ingestion.ingest_document(
                invoice,
                batch_job.user_id,
                item.document_key,
                file_name=item.file_name,
                fallback_account_id=placeholder.account_id if placeholder else None,
                cache=cache,
                validation=verdict,
            )
        except InvoiceLedgerError as e:
            await self._fail_item(batch_job, item, e, tally, invoice.invoice_code)
            return
        except Exception as e:
            logger.error(f"[AGGREGATE] {item.document_key} - Unexpected ingestion error", exc_info=True)
            await self._fail_item(batch_job, item, e, tally, invoice.invoice_code)
            return

        if not await self.ledger.mark_item_processed(item.id):
            return
        if source_item.id != item.id:
            await self.ledger.clear_item_payload(source_item.id)
        await self.ledger.clear_pending_invoices([item.document_key])

        if result.duplicate:
            tally.duplicate(
                DuplicateInvoiceError(invoice.invoice_code, invoice.provider.name, result.invoice_id), item.file_name
            )
            await safe_notify(
                self.notifier, batch_job.user_id,
                f"Invoice {invoice.invoice_code} was already registered",
                NotificationKind.DUPLICATE_INVOICE, result.invoice_id,
            )
        else:
            tally.success()

    async def _fail_item(
        self,
        batch_job: BatchJob,
        item: BatchItem,
        error: BaseException,
        tally: _Tally,
        invoice_code: Optional[str] = None
    ) -> None:
        message = getattr(error, "message", None) or str(error)
        if not await self.ledger.mark_item_processed(item.id, message):
            return
        detail = tally.failure(error, item.file_name, invoice_code)
        await self._clear_after_failure(batch_job, item)

        kind = (
            NotificationKind.BLOCKED_PROVIDER if detail.kind == ErrorKind.BLOCKED_PROVIDER
            else NotificationKind.EXTRACTION_FAILED
        )
        await safe_notify(self.notifier, batch_job.user_id, f"{item.file_name or item.document_key}: {message}", kind, batch_job.id)

    async def _clear_after_failure(self, batch_job: BatchJob, item: BatchItem) -> None:
        """A failed document leaves no placeholder or held payload behind."""
        await self.ledger.clear_pending_invoices([item.document_key])
        if batch_job.purpose == BatchPurpose.VALIDATION:
            for link in await self.ledger.links_for_child(batch_job.id):
                if link.document_key == item.document_key:
                    parent_item = await self.ledger.get_batch_item(link.parent_batch_id, item.document_key)
                    if parent_item is not None:
                        await self.ledger.clear_item_payload(parent_item.id)
