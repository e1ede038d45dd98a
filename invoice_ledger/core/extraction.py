"""
Gemini client wrapper for single-document extraction and batch jobs.

Every remote call (generate, upload, create, poll, cancel, download) runs
through the shared RetryPolicy so rate limits and transient failures are
handled the same way at each call site.
"""

import logging
from pathlib import Path
from typing import Any, Optional

from google import genai
from google.genai import types
from pydantic import BaseModel

from .codec import (
    ExtractionContext,
    decode_json_response,
    encode_request,
    merge_continuation,
    parse_response,
)
from .exceptions import EmptyExtractionError, ExtractionError, ParsingError, TruncatedResponseError
from .models import BatchStatus, Document, ExtractedInvoice, ExtractionStrategy
from .rate_limit import RetryPolicy

logger = logging.getLogger(__name__)

REMOTE_STATE_MAP = {
    "PENDING": BatchStatus.PENDING,
    "QUEUED": BatchStatus.PENDING,
    "RUNNING": BatchStatus.PROCESSING,
    "SUCCEEDED": BatchStatus.COMPLETED,
    "FAILED": BatchStatus.FAILED,
    "EXPIRED": BatchStatus.EXPIRED,
    "CANCELLED": BatchStatus.CANCELLED,
}


def map_remote_state(state: Any) -> Optional[BatchStatus]:
    """Local status for a remote job state; None for states with no local meaning."""
    if state is None:
        return None
    name = getattr(state, "name", None) or str(state)
    name = name.rsplit(".", 1)[-1].upper()
    for prefix in ("JOB_STATE_", "BATCH_STATE_"):
        if name.startswith(prefix):
            name = name[len(prefix):]
    return REMOTE_STATE_MAP.get(name)


class RemoteJob(BaseModel):
    """What the extraction service reports about a batch job."""
    name: str
    state: Optional[str] = None
    dest_file_name: Optional[str] = None
    inlined_responses: Optional[list[dict[str, Any]]] = None
    error: Optional[str] = None

    @property
    def status(self) -> Optional[BatchStatus]:
        return map_remote_state(self.state)

    @classmethod
    def from_sdk(cls, job: Any) -> "RemoteJob":
        state = getattr(job, "state", None)
        dest = getattr(job, "dest", None)
        inlined = None
        if dest is not None and getattr(dest, "inlined_responses", None):
            inlined = []
            for entry in dest.inlined_responses:
                response = getattr(entry, "response", None)
                error = getattr(entry, "error", None)
                inlined.append({
                    "response": response.model_dump(mode="json", exclude_none=True) if response is not None else None,
                    "error": str(getattr(error, "message", None) or error) if error is not None else None,
                })
        job_error = getattr(job, "error", None)
        return cls(
            name=job.name,
            state=getattr(state, "name", None) or (str(state) if state is not None else None),
            dest_file_name=getattr(dest, "file_name", None) if dest is not None else None,
            inlined_responses=inlined,
            error=str(getattr(job_error, "message", None) or job_error) if job_error else None,
        )


class SingleCallResult(BaseModel):
    """Text and finish reason of one generate_content call."""
    text: Optional[str] = None
    finish_reason: Optional[str] = None

    @property
    def truncated(self) -> bool:
        return self.finish_reason == "MAX_TOKENS"


def _finish_reason(response: Any) -> Optional[str]:
    candidates = getattr(response, "candidates", None) or []
    if not candidates:
        return None
    reason = getattr(candidates[0], "finish_reason", None)
    if reason is None:
        return None
    return getattr(reason, "name", None) or str(reason).rsplit(".", 1)[-1]


def create_client(settings) -> genai.Client:
    """Client for the Gemini API or Vertex AI, as configured."""
    return genai.Client(**settings.api_client_kwargs)


class ExtractionService:
    """Calls the extraction service for single documents and batch jobs."""

    def __init__(self, client: genai.Client, settings, retry_policy: Optional[RetryPolicy] = None):
        self.client = client
        self.settings = settings
        self.retry = retry_policy or RetryPolicy.from_settings(settings)
        self._responses_dir = Path(settings.logs_directory) / "responses"

    # Single-document calls

    async def _generate(self, document: Document, context: ExtractionContext) -> SingleCallResult:
        request = encode_request(document, context)
        kwargs = request.to_generate_kwargs()

        async def call():
            return await self.client.aio.models.generate_content(**kwargs)

        response = await self.retry.run(call, f"extract {document.file_name}")
        result = SingleCallResult(text=response.text, finish_reason=_finish_reason(response))
        if self.settings.debug_responses:
            self._save_response(document, result.text, context)
        return result

    def _save_response(self, document: Document, text: Optional[str], context: ExtractionContext) -> None:
        suffix = f"continuation_{context.continuation_from}" if context.continuation_from else "extraction"
        self._responses_dir.mkdir(parents=True, exist_ok=True)
        path = self._responses_dir / f"{Path(document.key).stem}_{suffix}.txt"
        with open(path, "w", encoding="utf-8") as f:
            f.write(text or "")

    async def extract(self, document: Document) -> ExtractedInvoice:
        """
        Extract one document with a single call.

        A length-truncated line-protocol answer gets one continuation request
        resuming after the last item received; a continuation that is itself
        truncated is rejected.

        Raises:
            TruncatedResponseError: If the answer cannot be completed
            EmptyExtractionError: If neither invoice code nor items came back
            ParsingError: If load-bearing fields are missing
            RetryError: If the service keeps failing
        """
        context = ExtractionContext.from_settings(self.settings)
        logger.info(f"[EXTRACT] {document.file_name} - Requesting extraction ({context.strategy.value})")
        result = await self._generate(document, context)

        if context.strategy == ExtractionStrategy.JSON:
            if result.truncated:
                raise TruncatedResponseError(document.key)
            invoice = decode_json_response(result.text)
            if invoice is None:
                raise ParsingError(document.key, ["json"], result.text or "")
            if invoice.is_empty:
                raise EmptyExtractionError(document.key)
            return invoice

        parsed = parse_response(result.text)
        if result.truncated:
            last = parsed.last_ordinal
            logger.warning(
                f"[EXTRACT] {document.file_name} - Response truncated after item {last}, requesting continuation"
            )
            continuation = await self._generate(
                document, context.model_copy(update={"continuation_from": last})
            )
            parsed = merge_continuation(parsed, parse_response(continuation.text, first_ordinal=last + 1))
            if continuation.truncated:
                raise TruncatedResponseError(document.key, len(parsed.items))

        if parsed.is_empty:
            raise EmptyExtractionError(document.key)
        invoice = parsed.to_invoice()
        if invoice is None:
            raise ParsingError(document.key, parsed.missing_fields(), result.text or "")

        logger.info(f"[EXTRACT] {document.file_name} - Success ({len(invoice.items)} items)")
        return invoice

    # Batch jobs

    async def upload_jsonl(self, path: Path | str, display_name: str) -> str:
        """Upload a JSONL payload; returns the remote file name."""
        path = Path(path)

        async def call():
            return await self.client.aio.files.upload(
                file=str(path),
                config=types.UploadFileConfig(display_name=display_name, mime_type="jsonl"),
            )

        uploaded = await self.retry.run(call, f"upload {path.name}")
        logger.info(f"[BATCH] Uploaded {path.name} as {uploaded.name}")
        return uploaded.name

    async def create_batch_job(self, src_file_name: str, display_name: str, model: Optional[str] = None) -> RemoteJob:
        async def call():
            return await self.client.aio.batches.create(
                model=model or self.settings.extraction_model,
                src=src_file_name,
                config=types.CreateBatchJobConfig(display_name=display_name),
            )

        job = await self.retry.run(call, f"create batch {display_name}")
        logger.info(f"[BATCH] Created remote job {job.name} from {src_file_name}")
        return RemoteJob.from_sdk(job)

    async def get_batch_job(self, name: str) -> RemoteJob:
        async def call():
            return await self.client.aio.batches.get(name=name)

        return RemoteJob.from_sdk(await self.retry.run(call, f"poll batch {name}"))

    async def cancel_batch_job(self, name: str) -> None:
        async def call():
            return await self.client.aio.batches.cancel(name=name)

        await self.retry.run(call, f"cancel batch {name}")
        logger.info(f"[BATCH] Requested cancellation of {name}")

    async def download_output(self, file_name: str, target_path: Path | str) -> Path:
        """Download a job's output file into the scratch area."""
        target = Path(target_path)

        async def call():
            return await self.client.aio.files.download(file=file_name)

        data = await self.retry.run(call, f"download {file_name}")
        if not isinstance(data, (bytes, bytearray)):
            raise ExtractionError(file_name, f"unexpected download payload {type(data).__name__}")
        target.parent.mkdir(parents=True, exist_ok=True)
        with open(target, "wb") as f:
            f.write(data)
        logger.info(f"[BATCH] Downloaded {file_name} ({len(data)} bytes)")
        return target

    async def delete_file(self, name: str) -> None:
        async def call():
            return await self.client.aio.files.delete(name=name)

        await self.retry.run(call, f"delete {name}")
