"""
Batch job lifecycle: submission, reconciliation, validation fan-out and rollup.

Local batch status only moves when the remote job reports a new state.
Completion is claimed with a conditional update before aggregation so a
second poller observing the same completed job never ingests it twice.
"""

import asyncio
import logging
import uuid
from collections import OrderedDict
from datetime import datetime, timedelta
from typing import Iterable, Optional

from ..notifications import NotificationKind, Notifier, safe_notify
from ..storage.ledger import new_id
from ..storage.scratch import ScratchArea, chunk_by_bytes
from .aggregator import BatchResultAggregator
from .codec import ExtractionContext, encode_request, encode_validation_request
from .exceptions import BatchSubmissionError, ErrorKind, ExtractionError
from .extraction import ExtractionService, RemoteJob
from .models import (
    BatchErrorDetail,
    BatchItem,
    BatchJob,
    BatchLink,
    BatchProgressInfo,
    BatchPurpose,
    BatchStatus,
    Document,
    ExtractionStrategy,
    PendingInvoice,
    SubmissionResult,
)

logger = logging.getLogger(__name__)

LOCAL_BATCH_PREFIX = "local-"


def rollup_status(child_statuses: Iterable[BatchStatus]) -> BatchStatus:
    """Parent status from its finished validation children."""
    statuses = set(child_statuses)
    if BatchStatus.COMPLETED in statuses:
        return BatchStatus.COMPLETED
    if BatchStatus.CANCELLED in statuses:
        return BatchStatus.CANCELLED
    if BatchStatus.EXPIRED in statuses and BatchStatus.FAILED not in statuses:
        return BatchStatus.EXPIRED
    return BatchStatus.FAILED


def group_batches_by_time_window(
    batches: list[BatchJob],
    window_seconds: float = 300.0,
    max_groups: int = 10
) -> list[BatchProgressInfo]:
    """Fold batches created close together into one session each, newest first."""
    window = timedelta(seconds=window_seconds)
    now = datetime.now()
    ordered = sorted(batches, key=lambda b: b.created_at or now, reverse=True)

    sessions: list[BatchProgressInfo] = []
    for batch in ordered:
        created_at = batch.created_at or now
        existing = next((s for s in sessions if abs(s.created_at - created_at) <= window), None)
        if existing is None:
            session = BatchProgressInfo.from_batch_job(batch)
            session.id = f"session-{int(created_at.timestamp() * 1000)}"
            session.created_at = created_at
            sessions.append(session)
            continue

        existing.total_files += batch.total_files
        existing.processed_files += batch.processed_files
        existing.successful_files += batch.successful_files
        existing.failed_files += batch.failed_files
        existing.blocked_files += batch.blocked_files

        if batch.status in (BatchStatus.PROCESSING, BatchStatus.PENDING):
            existing.status = BatchStatus.PROCESSING
        elif batch.status == BatchStatus.FAILED and existing.status != BatchStatus.PROCESSING:
            existing.status = BatchStatus.FAILED
        elif batch.status == BatchStatus.COMPLETED and existing.status not in (BatchStatus.PROCESSING, BatchStatus.FAILED):
            existing.status = BatchStatus.COMPLETED

        if existing.started_at is None or (batch.started_at and batch.started_at < existing.started_at):
            existing.started_at = batch.started_at
        if existing.completed_at is None or (batch.completed_at and batch.completed_at > existing.completed_at):
            existing.completed_at = batch.completed_at
        existing.errors.extend(batch.errors)

    return sessions[:max_groups]


class BatchLifecycleManager:
    """Owns batch jobs from submission to their final status."""

    def __init__(
        self,
        ledger,
        extraction: ExtractionService,
        aggregator: BatchResultAggregator,
        scratch: ScratchArea,
        settings,
        notifier: Optional[Notifier] = None
    ):
        self.ledger = ledger
        self.extraction = extraction
        self.aggregator = aggregator
        self.scratch = scratch
        self.settings = settings
        self.notifier = notifier
        self._background: set[asyncio.Task] = set()

    # Submission

    def _chunk_documents(self, documents: list[Document]) -> list[list[tuple[Document, str]]]:
        context = ExtractionContext.from_settings(self.settings, strategy=ExtractionStrategy.LINES)
        lines = [encode_request(doc, context).to_jsonl() for doc in documents]
        chunks = []
        offset = 0
        for chunk in chunk_by_bytes(lines, self.settings.max_chunk_bytes):
            chunks.append(list(zip(documents[offset:offset + len(chunk)], chunk)))
            offset += len(chunk)
        return chunks

    async def _submit_chunk(self, lines: list[str], display_name: str, model: str) -> tuple[RemoteJob, str]:
        """Write, upload and start one remote job; the local payload is removed afterwards."""
        path = self.scratch.write_jsonl(f"{display_name}.jsonl", lines)
        try:
            file_name = await self.extraction.upload_jsonl(path, display_name)
            remote = await self.extraction.create_batch_job(file_name, display_name, model)
        finally:
            self.scratch.remove(path)
        return remote, file_name

    async def _record_job(
        self,
        batch_id: str,
        user_id: str,
        entries: list[tuple[str, Optional[str]]],
        purpose: BatchPurpose,
        input_file: Optional[str]
    ) -> BatchJob:
        job = await self.ledger.insert_batch_job(BatchJob(
            id=batch_id,
            user_id=user_id,
            status=BatchStatus.PENDING,
            purpose=purpose,
            total_files=len(entries),
            input_file=input_file,
        ))
        await self.ledger.insert_batch_items([
            BatchItem(id=new_id(), batch_id=batch_id, document_key=key, file_name=file_name)
            for key, file_name in entries
        ])
        return job

    async def _record_failed_submission(
        self, user_id: str, documents: list[Document], error: BaseException
    ) -> str:
        """Keep a FAILED local job so the failure shows up in history."""
        batch_id = f"{LOCAL_BATCH_PREFIX}{uuid.uuid4().hex}"
        now = datetime.now()
        message = f"Batch submission failed: {getattr(error, 'message', None) or error}"
        errors = [
            BatchErrorDetail(kind=ErrorKind.EXTRACTION_ERROR, message=message, file_name=doc.file_name)
            for doc in documents
        ]
        await self.ledger.insert_batch_job(BatchJob(
            id=batch_id,
            user_id=user_id,
            status=BatchStatus.FAILED,
            purpose=BatchPurpose.EXTRACTION,
            total_files=len(documents),
            processed_files=len(documents),
            failed_files=len(documents),
            errors=errors,
            started_at=now,
            completed_at=now,
        ))
        await self.ledger.insert_batch_items([
            BatchItem(
                id=new_id(), batch_id=batch_id, document_key=doc.key, file_name=doc.file_name,
                processed=True, error_message=message, processed_at=now,
            )
            for doc in documents
        ])
        await safe_notify(self.notifier, user_id, message, NotificationKind.BATCH_FAILED, batch_id)
        return batch_id

    async def _submit_extraction_chunk(
        self,
        chunk: list[tuple[Document, str]],
        user_id: str,
        account_id: Optional[str],
        display_name: str
    ) -> BatchJob:
        remote, file_name = await self._submit_chunk(
            [line for _, line in chunk], display_name, self.settings.extraction_model
        )
        job = await self._record_job(
            remote.name, user_id, [(doc.key, doc.file_name) for doc, _ in chunk],
            BatchPurpose.EXTRACTION, file_name,
        )
        await self.ledger.add_pending_invoices([
            PendingInvoice(document_key=doc.key, batch_id=job.id, account_id=account_id, file_name=doc.file_name)
            for doc, _ in chunk
        ])
        logger.info(f"[BATCH] Submitted {job.id} with {len(chunk)} documents")
        return job

    async def submit_documents(
        self,
        documents: list[Document],
        user_id: str,
        account_id: Optional[str] = None
    ) -> SubmissionResult:
        """
        Submit documents as one or more remote batch jobs.

        The first chunk is submitted before returning; later chunks are
        submitted in the background.

        Raises:
            BatchSubmissionError: If the first chunk cannot be submitted
        """
        if not documents:
            raise ValueError("No documents to submit")

        chunks = self._chunk_documents(documents)
        session = uuid.uuid4().hex[:8]
        logger.info(f"[BATCH] Submitting {len(documents)} documents in {len(chunks)} chunks (session {session})")

        try:
            first = await self._submit_extraction_chunk(chunks[0], user_id, account_id, f"extract-{session}-1")
        except Exception as e:
            logger.error(f"[BATCH] First chunk submission failed: {str(e)[:150]}")
            batch_id = await self._record_failed_submission(user_id, documents, e)
            raise BatchSubmissionError(batch_id, e) from e

        if len(chunks) > 1:
            task = asyncio.create_task(self._submit_remaining(chunks[1:], user_id, account_id, session))
            self._background.add(task)
            task.add_done_callback(self._background.discard)

        return SubmissionResult(batch_id=first.id, batch_ids=[first.id])

    async def _submit_remaining(
        self,
        chunks: list[list[tuple[Document, str]]],
        user_id: str,
        account_id: Optional[str],
        session: str
    ) -> list[str]:
        batch_ids = []
        for index, chunk in enumerate(chunks, start=2):
            await asyncio.sleep(self.settings.batch_stagger_seconds)
            try:
                job = await self._submit_extraction_chunk(chunk, user_id, account_id, f"extract-{session}-{index}")
                batch_ids.append(job.id)
            except Exception as e:
                logger.error(f"[BATCH] Chunk {index} submission failed: {str(e)[:150]}")
                batch_ids.append(await self._record_failed_submission(user_id, [doc for doc, _ in chunk], e))
        return batch_ids

    async def drain(self) -> None:
        """Wait for background submissions to finish."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)

    # Reconciliation

    async def reconcile(self) -> list[BatchProgressInfo]:
        """One sweep over every active, unclaimed batch, staggered per user."""
        active = await self.ledger.list_active_batches(unclaimed_only=True)
        by_user: "OrderedDict[str, list[BatchJob]]" = OrderedDict()
        for job in active:
            by_user.setdefault(job.user_id, []).append(job)

        progress = []
        for user_index, (user_id, jobs) in enumerate(by_user.items()):
            if user_index > 0:
                await asyncio.sleep(self.settings.account_stagger_seconds)
            for job_index, job in enumerate(jobs):
                if job_index > 0:
                    await asyncio.sleep(self.settings.batch_stagger_seconds)
                try:
                    progress.append(await self.reconcile_batch(job))
                except Exception as e:
                    logger.error(f"[BATCH] {job.id} - Reconciliation failed: {str(e)[:150]}", exc_info=True)
        return progress

    async def reconcile_batch(self, job: BatchJob) -> BatchProgressInfo:
        """Poll one job and act on its remote state."""
        remote = await self.extraction.get_batch_job(job.id)
        status = remote.status
        logger.debug(f"[BATCH] {job.id} - Remote state {remote.state}")

        if status is None:
            logger.warning(f"[BATCH] {job.id} - Unrecognized remote state {remote.state}, keeping {job.status.value}")
        elif status == BatchStatus.PROCESSING and job.status != BatchStatus.PROCESSING:
            await self.ledger.set_batch_status(job.id, BatchStatus.PROCESSING, started_at=datetime.now())
        elif status == BatchStatus.COMPLETED:
            await self._complete(job, remote)
        elif status.is_terminal:
            await self._finish_unsuccessfully(job, status, remote.error)

        return BatchProgressInfo.from_batch_job(await self.ledger.get_batch_job(job.id))

    async def _complete(self, job: BatchJob, remote: RemoteJob) -> None:
        if not await self.ledger.claim_completion(job.id):
            logger.info(f"[BATCH] {job.id} - Completion already claimed, skipping")
            return
        await self.ledger.set_batch_status(job.id, BatchStatus.PROCESSING, started_at=datetime.now())

        try:
            result = await self.aggregator.aggregate(job, remote)
        except Exception as e:
            logger.error(f"[BATCH] {job.id} - Aggregation failed: {str(e)[:150]}", exc_info=True)
            await self._fail_remaining(job, f"Could not read batch output: {getattr(e, 'message', None) or e}")
            await self.ledger.set_batch_status(job.id, BatchStatus.FAILED)
            await safe_notify(self.notifier, job.user_id, f"Batch {job.id} failed", NotificationKind.BATCH_FAILED, job.id)
            if job.purpose == BatchPurpose.VALIDATION:
                await self._rollup_parents_of(job.id)
            return

        await self._delete_input_file(job)

        if job.purpose == BatchPurpose.VALIDATION:
            await self.ledger.set_batch_status(job.id, BatchStatus.COMPLETED)
            await self._rollup_parents_of(job.id)
            return

        children = []
        if result.validation_queue:
            children = await self.spawn_validation_jobs(job, result.validation_queue)

        refreshed = await self.ledger.get_batch_job(job.id)
        if refreshed.successful_files == 0:
            final = BatchStatus.FAILED
        elif children:
            final = BatchStatus.PROCESSING
        else:
            final = BatchStatus.COMPLETED
        await self.ledger.set_batch_status(job.id, final)

        if final == BatchStatus.FAILED:
            await safe_notify(
                self.notifier, job.user_id, f"No document of batch {job.id} could be processed",
                NotificationKind.BATCH_FAILED, job.id,
            )
        elif final == BatchStatus.COMPLETED:
            await safe_notify(
                self.notifier, job.user_id, f"Batch {job.id} processed: {refreshed.successful_files} invoices",
                NotificationKind.BATCH_COMPLETED, job.id,
            )

    async def _delete_input_file(self, job: BatchJob) -> None:
        if not job.input_file:
            return
        try:
            await self.extraction.delete_file(job.input_file)
        except Exception as e:
            logger.warning(f"[BATCH] {job.id} - Could not delete remote input {job.input_file}: {str(e)[:150]}")

    async def _fail_remaining(self, job: BatchJob, message: str) -> list[BatchItem]:
        """Settle every unprocessed item as failed and clear what it held."""
        items = await self.ledger.mark_unprocessed_items(job.id, message)
        errors = [
            BatchErrorDetail.from_exception(ExtractionError(item.document_key, message), item.file_name)
            for item in items
        ]
        await self.ledger.record_batch_outcomes(job.id, failed=len(items), errors=errors)
        await self.ledger.clear_pending_invoices(item.document_key for item in items)

        if job.purpose == BatchPurpose.VALIDATION:
            keys = {item.document_key for item in items}
            for link in await self.ledger.links_for_child(job.id):
                if link.document_key in keys:
                    parent_item = await self.ledger.get_batch_item(link.parent_batch_id, link.document_key)
                    if parent_item is not None:
                        await self.ledger.clear_item_payload(parent_item.id, message)
        return items

    async def _finish_unsuccessfully(self, job: BatchJob, status: BatchStatus, remote_error: Optional[str] = None) -> None:
        """FAILED, EXPIRED or CANCELLED: settle items and propagate to parents."""
        if not await self.ledger.claim_completion(job.id):
            logger.info(f"[BATCH] {job.id} - Already finalized, skipping {status.value}")
            return
        message = f"Batch {status.value}"
        if remote_error:
            message += f": {remote_error}"
        items = await self._fail_remaining(job, message)
        await self.ledger.set_batch_status(job.id, status, completed_at=datetime.now())
        logger.warning(f"[BATCH] {job.id} - {message} ({len(items)} documents)")

        if status != BatchStatus.CANCELLED:
            await safe_notify(self.notifier, job.user_id, message, NotificationKind.BATCH_FAILED, job.id)
        if job.purpose == BatchPurpose.VALIDATION:
            await self._rollup_parents_of(job.id)

    # Validation fan-out

    async def spawn_validation_jobs(self, parent: BatchJob, document_keys: list[str]) -> list[str]:
        """Create validation jobs for successfully extracted documents; returns child ids."""
        size = max(1, self.settings.validation_chunk_size)
        child_ids = []
        for index, start in enumerate(range(0, len(document_keys), size), start=1):
            if index > 1:
                await asyncio.sleep(self.settings.batch_stagger_seconds)
            keys = document_keys[start:start + size]
            items = [await self.ledger.get_batch_item(parent.id, key) for key in keys]
            items = [item for item in items if item is not None and item.extracted_payload is not None]
            if not items:
                continue

            lines = [
                encode_validation_request(item.document_key, item.extracted_payload, self.settings.validation_model).to_jsonl()
                for item in items
            ]
            display_name = f"validate-{parent.id.rsplit('/', 1)[-1][:24]}-{index}"
            try:
                remote, file_name = await self._submit_chunk(lines, display_name, self.settings.validation_model)
                await self._record_job(
                    remote.name, parent.user_id, [(item.document_key, item.file_name) for item in items],
                    BatchPurpose.VALIDATION, file_name,
                )
                await self.ledger.add_batch_links([
                    BatchLink(parent_batch_id=parent.id, child_batch_id=remote.name, document_key=item.document_key)
                    for item in items
                ])
                child_ids.append(remote.name)
                logger.info(f"[BATCH] {parent.id} - Validation job {remote.name} for {len(items)} documents")
            except Exception as e:
                logger.error(f"[BATCH] {parent.id} - Validation job {index} could not be created: {str(e)[:150]}")
                message = f"Validation could not be started: {getattr(e, 'message', None) or e}"
                errors = [
                    BatchErrorDetail(
                        kind=ErrorKind.EXTRACTION_ERROR, message=message, file_name=item.file_name,
                        invoice_code=item.extracted_payload.invoice_code,
                    )
                    for item in items
                ]
                await self.ledger.reclassify_successes_as_failures(parent.id, len(items), errors)
                for item in items:
                    await self.ledger.clear_item_payload(item.id, message)
                await self.ledger.clear_pending_invoices(item.document_key for item in items)
        return child_ids

    async def _rollup_parents_of(self, child_id: str) -> None:
        parent_ids = dict.fromkeys(link.parent_batch_id for link in await self.ledger.links_for_child(child_id))
        for parent_id in parent_ids:
            await self.rollup_parent(parent_id)

    async def rollup_parent(self, parent_id: str) -> Optional[BatchStatus]:
        """Settle an extraction job once all of its validation jobs are finished."""
        child_ids = dict.fromkeys(link.child_batch_id for link in await self.ledger.links_for_parent(parent_id))
        children = [await self.ledger.get_batch_job(child_id) for child_id in child_ids]
        children = [child for child in children if child is not None]
        if not children or any(not child.is_terminal for child in children):
            return None

        parent = await self.ledger.get_batch_job(parent_id)
        if parent is None:
            return None
        if parent.is_terminal:
            return parent.status

        final = rollup_status(child.status for child in children)
        await self.ledger.set_batch_status(parent_id, final, completed_at=datetime.now())
        logger.info(f"[BATCH] {parent_id} - Validation finished, parent {final.value}")
        if final == BatchStatus.FAILED:
            await safe_notify(self.notifier, parent.user_id, f"Validation of batch {parent_id} failed",
                              NotificationKind.BATCH_FAILED, parent_id)
        return final

    # Cancellation and queries

    async def cancel_batch(self, batch_id: str) -> BatchProgressInfo:
        """Cancel remotely, then settle the local job as CANCELLED."""
        job = await self.ledger.get_batch_job(batch_id)
        if job is None:
            raise ValueError(f"Unknown batch {batch_id}")
        if not job.is_terminal and job.completed_at is not None:
            # Output already ingested; only the validation jobs are still running
            for child_id in dict.fromkeys(link.child_batch_id for link in await self.ledger.links_for_parent(batch_id)):
                child = await self.ledger.get_batch_job(child_id)
                if child is not None and not child.is_terminal:
                    await self.cancel_batch(child_id)
        elif not job.is_terminal:
            if not batch_id.startswith(LOCAL_BATCH_PREFIX):
                await self.extraction.cancel_batch_job(batch_id)
            await self._finish_unsuccessfully(job, BatchStatus.CANCELLED)
        return BatchProgressInfo.from_batch_job(await self.ledger.get_batch_job(batch_id))

    async def get_active_batches(self, user_id: str) -> list[BatchProgressInfo]:
        return [BatchProgressInfo.from_batch_job(job) for job in await self.ledger.list_active_batches(user_id)]

    async def get_batch_history(self, user_id: str) -> list[BatchProgressInfo]:
        """Extraction batches grouped into upload sessions, newest first."""
        batches = [
            job for job in await self.ledger.list_batches(user_id, limit=500)
            if job.purpose == BatchPurpose.EXTRACTION
        ]
        return group_batches_by_time_window(
            batches, self.settings.history_window_seconds, self.settings.history_max_groups
        )

    async def watch(self, stop: Optional[asyncio.Event] = None) -> None:
        """Reconcile periodically until stopped."""
        stop = stop or asyncio.Event()
        while not stop.is_set():
            await self.reconcile()
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.settings.poll_interval_seconds)
            except asyncio.TimeoutError:
                pass
