"""
Synchronous upload sessions.

Documents are extracted concurrently with single calls, then ingested one
at a time in issue-date order. A circuit breaker stops the session after a
run of consecutive non-blocked failures.
"""

import asyncio
import logging
from datetime import date
from typing import Optional

from tqdm import tqdm

from ..notifications import NotificationKind, Notifier, safe_notify
from .exceptions import BlockedProviderError, CircuitOpenError, InvoiceLedgerError
from .extraction import ExtractionService
from .ingestion import IngestionEngine
from .models import (
    BatchErrorDetail,
    Document,
    DocumentOutcome,
    ExtractedInvoice,
    UploadResult,
)
from .rate_limit import AdaptiveCapacityLimiter, CircuitBreaker
from .resolver import ResolutionCache

logger = logging.getLogger(__name__)


class UploadSession:
    """Extract and ingest a set of documents while the caller waits."""

    def __init__(
        self,
        extraction: ExtractionService,
        ingestion: IngestionEngine,
        settings,
        notifier: Optional[Notifier] = None,
        show_progress: bool = True
    ):
        self.extraction = extraction
        self.ingestion = ingestion
        self.settings = settings
        self.notifier = notifier
        self.show_progress = show_progress

    def _failure(
        self, document: Document, error: BaseException, invoice_code: Optional[str] = None
    ) -> DocumentOutcome:
        return DocumentOutcome(
            file_name=document.file_name,
            document_key=document.key,
            success=False,
            blocked=isinstance(error, BlockedProviderError),
            invoice_code=invoice_code,
            error=BatchErrorDetail.from_exception(error, document.file_name, invoice_code),
        )

    async def _extract_all(
        self,
        documents: list[Document],
        limiter: AdaptiveCapacityLimiter,
        breaker: CircuitBreaker
    ) -> list:
        async def run(document: Document, pbar: tqdm):
            try:
                async with limiter:
                    if breaker.is_open:
                        raise CircuitOpenError(breaker.consecutive_failures)
                    try:
                        invoice = await self.extraction.extract(document)
                    except Exception as e:
                        breaker.record_failure()
                        logger.error(f"[EXTRACT] {document.file_name} - Error: {str(e)[:150]}")
                        raise
                    breaker.record_success()
                    pbar.set_postfix_str(f"{document.file_name} ({len(invoice.items)} items)")
                    return invoice
            finally:
                pbar.update(1)

        desc = f"Extracting {len(documents)} files"
        with tqdm(total=len(documents), desc=desc, unit="file", disable=not self.show_progress) as pbar:
            tasks = [asyncio.create_task(run(document, pbar)) for document in documents]
            return await asyncio.gather(*tasks, return_exceptions=True)

    async def submit_documents_sync(
        self,
        documents: list[Document],
        user_id: str,
        account_id: Optional[str] = None
    ) -> UploadResult:
        """
        Extract and ingest documents immediately.

        Per-document failures are reported in the result, never raised.
        """
        if not documents:
            return UploadResult()

        breaker = CircuitBreaker(self.settings.circuit_breaker_threshold, name="upload")
        # Larger uploads start at half the quota and ramp up while memory allows
        limiter = AdaptiveCapacityLimiter.from_settings(
            self.settings, initial_tokens=max(1, self.settings.quota_limit // 2)
        )
        if len(documents) <= self.settings.small_batch_size:
            limiter.widen()

        logger.info(f"[UPLOAD] Processing {len(documents)} documents (concurrency {limiter.total_tokens})")
        extracted = await self._extract_all(documents, limiter, breaker)

        outcomes: dict[str, DocumentOutcome] = {}
        ready: list[tuple[Document, ExtractedInvoice]] = []
        for document, result in zip(documents, extracted):
            if isinstance(result, BaseException):
                if isinstance(result, (KeyboardInterrupt, SystemExit, asyncio.CancelledError)):
                    raise result
                outcomes[document.key] = self._failure(document, result)
            else:
                ready.append((document, result))

        # Chronological order keeps previous-price lookups meaningful
        ready.sort(key=lambda pair: pair[1].issue_date or date.max)

        cache = ResolutionCache()
        for document, invoice in ready:
            if breaker.is_open:
                outcomes[document.key] = self._failure(
                    document, CircuitOpenError(breaker.consecutive_failures), invoice.invoice_code
                )
                continue
            outcomes[document.key] = await self._ingest(document, invoice, user_id, account_id, cache, breaker)

        results = [outcomes[document.key] for document in documents]
        for outcome in results:
            await self._notify(user_id, outcome)

        upload = UploadResult(results=results, circuit_breaker_tripped=breaker.is_open)
        logger.info(
            f"[UPLOAD] Done: {upload.successful} ok, {upload.failed} failed, {upload.blocked} blocked"
            + (" (circuit breaker tripped)" if upload.circuit_breaker_tripped else "")
        )
        return upload

    async def _ingest(
        self,
        document: Document,
        invoice: ExtractedInvoice,
        user_id: str,
        account_id: Optional[str],
        cache: ResolutionCache,
        breaker: CircuitBreaker
    ) -> DocumentOutcome:
        try:
            result = await self.ingestion.ingest_document(
                invoice,
                user_id,
                document.key,
                file_name=document.file_name,
                fallback_account_id=account_id,
                cache=cache,
            )
        except BlockedProviderError as e:
            return self._failure(document, e, invoice.invoice_code)
        except InvoiceLedgerError as e:
            breaker.record_failure()
            logger.error(f"[UPLOAD] {document.file_name} - {e.message}")
            return self._failure(document, e, invoice.invoice_code)
        except Exception as e:
            breaker.record_failure()
            logger.error(f"[UPLOAD] {document.file_name} - Unexpected ingestion error", exc_info=True)
            return self._failure(document, e, invoice.invoice_code)

        breaker.record_success()
        return DocumentOutcome(
            file_name=document.file_name,
            document_key=document.key,
            success=True,
            duplicate=result.duplicate,
            invoice_id=result.invoice_id,
            invoice_code=invoice.invoice_code,
            alerts_created=result.alerts_created,
        )

    async def _notify(self, user_id: str, outcome: DocumentOutcome) -> None:
        if outcome.duplicate:
            await safe_notify(
                self.notifier, user_id, f"Invoice {outcome.invoice_code} was already registered",
                NotificationKind.DUPLICATE_INVOICE, outcome.invoice_id,
            )
        elif outcome.blocked:
            await safe_notify(
                self.notifier, user_id, f"{outcome.file_name}: {outcome.error.message}",
                NotificationKind.BLOCKED_PROVIDER, outcome.document_key,
            )
        elif not outcome.success:
            await safe_notify(
                self.notifier, user_id, f"{outcome.file_name}: {outcome.error.message}",
                NotificationKind.EXTRACTION_FAILED, outcome.document_key,
            )
