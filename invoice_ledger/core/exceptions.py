"""Exception hierarchy for invoice ledger processing."""

from enum import Enum
from pathlib import Path
from typing import Any, Optional


class ErrorKind(str, Enum):
    """User-visible error taxonomy recorded on batch jobs."""
    EXTRACTION_ERROR = "EXTRACTION_ERROR"
    PARSING_ERROR = "PARSING_ERROR"
    DUPLICATE_INVOICE = "DUPLICATE_INVOICE"
    BLOCKED_PROVIDER = "BLOCKED_PROVIDER"
    DATABASE_ERROR = "DATABASE_ERROR"
    UNKNOWN = "UNKNOWN"


class InvoiceLedgerError(Exception):
    """Base exception for all invoice ledger errors."""

    kind = ErrorKind.UNKNOWN

    def __init__(self, message: str, details: Optional[dict[str, Any]] = None) -> None:
        self.message = message
        self.details = details or {}
        super().__init__(message)


class DocumentError(InvoiceLedgerError):
    """Raised when an input document cannot be loaded or is unsafe to send."""

    kind = ErrorKind.EXTRACTION_ERROR

    def __init__(
        self,
        file_path: Path | str,
        message: str,
        original_error: Optional[Exception] = None
    ) -> None:
        self.file_path = Path(file_path)
        self.original_error = original_error

        full_message = f"Document {self.file_path.name}: {message}"
        if original_error:
            full_message += f" (Original error: {original_error})"

        super().__init__(full_message, {"file_path": str(self.file_path)})


class DocumentTooLargeError(DocumentError):
    """Raised when a document exceeds the maximum allowed size."""

    def __init__(self, file_path: Path | str, file_size_mb: float, max_size_mb: float) -> None:
        super().__init__(
            file_path,
            f"size ({file_size_mb:.1f}MB) exceeds maximum allowed size ({max_size_mb}MB)"
        )
        self.details.update({"file_size_mb": file_size_mb, "max_size_mb": max_size_mb})


class ExtractionError(InvoiceLedgerError):
    """Raised when the extraction service fails before a candidate invoice exists."""

    kind = ErrorKind.EXTRACTION_ERROR

    def __init__(
        self,
        document_key: str,
        message: str,
        model_used: Optional[str] = None,
        original_error: Optional[Exception] = None
    ) -> None:
        self.document_key = document_key
        self.model_used = model_used
        self.original_error = original_error

        full_message = f"Extraction failed for {document_key}: {message}"
        if model_used:
            full_message += f" (Model: {model_used})"
        if original_error:
            full_message += f" (Original error: {original_error})"

        details = {"document_key": document_key}
        if model_used:
            details["model_used"] = model_used

        super().__init__(full_message, details)


class TruncatedResponseError(ExtractionError):
    """Raised when a response hit the output token limit and cannot be continued."""

    def __init__(self, document_key: str, items_received: int = 0) -> None:
        super().__init__(
            document_key,
            f"response truncated after {items_received} items, needs manual processing"
        )
        self.items_received = items_received


class EmptyExtractionError(ExtractionError):
    """Raised when the extraction carries neither an invoice number nor any line."""

    def __init__(self, document_key: str) -> None:
        super().__init__(document_key, "empty extraction (no invoice number and no lines)")


class ParsingError(InvoiceLedgerError):
    """Raised when a response was received but lacks load-bearing fields."""

    kind = ErrorKind.PARSING_ERROR

    def __init__(self, document_key: str, missing: list[str], response_text: str = "") -> None:
        self.document_key = document_key
        self.missing = missing
        self.response_text = response_text
        message = f"Could not decode response for {document_key}: missing {', '.join(missing)}"
        super().__init__(message, {"document_key": document_key, "missing": missing})


class BlockedProviderError(InvoiceLedgerError):
    """Raised when a provider is on the denylist. Never retried."""

    kind = ErrorKind.BLOCKED_PROVIDER

    def __init__(self, provider_name: str) -> None:
        self.provider_name = provider_name
        super().__init__(f"Provider '{provider_name}' is blocked", {"provider_name": provider_name})


class DuplicateInvoiceError(InvoiceLedgerError):
    """Recorded for visibility when an invoice already exists for the provider."""

    kind = ErrorKind.DUPLICATE_INVOICE

    def __init__(self, invoice_code: str, provider_name: str, invoice_id: Optional[str] = None) -> None:
        self.invoice_code = invoice_code
        self.provider_name = provider_name
        self.invoice_id = invoice_id
        super().__init__(
            f"Invoice {invoice_code} from {provider_name} already exists",
            {"invoice_code": invoice_code, "invoice_id": invoice_id}
        )


class LedgerError(InvoiceLedgerError):
    """Raised when the ledger store fails after retries are exhausted."""

    kind = ErrorKind.DATABASE_ERROR

    def __init__(self, operation: str, original_error: Optional[Exception] = None) -> None:
        self.operation = operation
        self.original_error = original_error
        message = f"Ledger operation '{operation}' failed"
        if original_error:
            message += f": {original_error}"
        super().__init__(message, {"operation": operation})


class OutputFileError(InvoiceLedgerError):
    """Raised when a batch output file cannot be located in the scratch area."""

    kind = ErrorKind.EXTRACTION_ERROR

    def __init__(self, expected_name: str, message: str, candidates: Optional[list[str]] = None) -> None:
        self.expected_name = expected_name
        self.candidates = candidates or []
        super().__init__(
            f"Output file {expected_name}: {message}",
            {"expected_name": expected_name, "candidates": self.candidates}
        )


class AmbiguousOutputError(OutputFileError):
    """Raised when more than one candidate output file could belong to a job."""

    def __init__(self, expected_name: str, candidates: list[str]) -> None:
        super().__init__(expected_name, f"{len(candidates)} candidate files, refusing to guess", candidates)


class BatchSubmissionError(InvoiceLedgerError):
    """Raised when a remote batch job cannot be created at all."""

    kind = ErrorKind.EXTRACTION_ERROR

    def __init__(self, batch_id: str, original_error: Optional[Exception] = None) -> None:
        self.batch_id = batch_id
        self.original_error = original_error
        message = f"Could not submit batch {batch_id}"
        if original_error:
            message += f": {original_error}"
        super().__init__(message, {"batch_id": batch_id})


class CircuitOpenError(InvoiceLedgerError):
    """Raised for documents skipped after the circuit breaker tripped."""

    kind = ErrorKind.EXTRACTION_ERROR

    def __init__(self, consecutive_failures: int) -> None:
        self.consecutive_failures = consecutive_failures
        super().__init__(
            f"Skipped by circuit breaker after {consecutive_failures} consecutive failures",
            {"consecutive_failures": consecutive_failures}
        )


class ConfigurationError(InvoiceLedgerError):
    """Raised when configuration is invalid or missing."""

    def __init__(self, setting_name: str, issue: str) -> None:
        message = f"Configuration error for '{setting_name}': {issue}"
        super().__init__(message, {"setting_name": setting_name, "issue": issue})
        self.setting_name = setting_name
        self.issue = issue


def classify_error(error: BaseException) -> ErrorKind:
    """Map any exception to the user-visible error kind."""
    if isinstance(error, InvoiceLedgerError):
        return error.kind
    # Retry wrappers keep the original failure
    last = getattr(error, "last_exception", None)
    if isinstance(last, BaseException):
        return classify_error(last)
    if error.__class__.__module__.startswith(("sqlite3", "aiosqlite")):
        return ErrorKind.DATABASE_ERROR
    return ErrorKind.UNKNOWN


__all__ = [
    "ErrorKind",
    "InvoiceLedgerError",
    "DocumentError",
    "DocumentTooLargeError",
    "ExtractionError",
    "TruncatedResponseError",
    "EmptyExtractionError",
    "ParsingError",
    "BlockedProviderError",
    "DuplicateInvoiceError",
    "LedgerError",
    "OutputFileError",
    "AmbiguousOutputError",
    "BatchSubmissionError",
    "CircuitOpenError",
    "ConfigurationError",
    "classify_error",
]
