"""Canonical data models for invoice ledger processing."""
import json
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, Field, field_validator

from .exceptions import ErrorKind, classify_error

TWO_PLACES = Decimal("0.01")


def quantize_money(value: Any) -> Decimal:
    """Coerce a number to a 2-decimal fixed-point value, defaulting to 0."""
    if value is None:
        return Decimal("0.00")
    try:
        return Decimal(str(value)).quantize(TWO_PLACES, rounding=ROUND_HALF_UP)
    except (InvalidOperation, ValueError):
        return Decimal("0.00")


class ProviderType(str, Enum):
    """Provider categories; material category derives from these."""
    MATERIAL_SUPPLIER = "MATERIAL_SUPPLIER"
    MACHINERY_RENTAL = "MACHINERY_RENTAL"


MATERIAL_CATEGORY_BY_PROVIDER_TYPE = {
    ProviderType.MATERIAL_SUPPLIER: "Materiales",
    ProviderType.MACHINERY_RENTAL: "Alquiler de maquinaria",
}


class InvoiceStatus(str, Enum):
    """Invoice states."""
    PROCESSED = "PROCESSED"
    NEEDS_REVIEW = "NEEDS_REVIEW"


class AlertStatus(str, Enum):
    """Price alert review states."""
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class BatchStatus(str, Enum):
    """Local batch job states."""
    PENDING = "PENDING"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_BATCH_STATUSES


TERMINAL_BATCH_STATUSES = frozenset({
    BatchStatus.COMPLETED,
    BatchStatus.FAILED,
    BatchStatus.CANCELLED,
    BatchStatus.EXPIRED,
})


class BatchPurpose(str, Enum):
    """What a batch job asks the extraction service to do."""
    EXTRACTION = "EXTRACTION"
    VALIDATION = "VALIDATION"


class ExtractionStrategy(str, Enum):
    """Encoding used for single-document extraction calls."""
    LINES = "lines"
    JSON = "json"


# Extracted data (codec output)

class ExtractedProvider(BaseModel):
    """Provider block of an extraction."""
    name: str = Field(..., description="Provider legal or trade name")
    cif: Optional[str] = Field(None, description="Tax id as printed")
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None


class ExtractedClient(BaseModel):
    """Client (buyer) block of an extraction."""
    name: Optional[str] = None
    cif: Optional[str] = None


class ExtractedItem(BaseModel):
    """One invoice line as extracted."""
    material_name: Optional[str] = Field(None, description="Material or concept name")
    material_code: Optional[str] = Field(None, description="Reference code as printed")
    is_material: bool = Field(default=True, description="False for services and fees")
    quantity: Optional[Decimal] = Field(default=Decimal("1.00"))
    unit_price: Decimal = Field(default=Decimal("0.00"))
    total_price: Decimal = Field(default=Decimal("0.00"))
    item_date: Optional[date] = None
    work_order: Optional[str] = None
    description: Optional[str] = None
    line_number: Optional[int] = Field(None, description="Ordinal position on the invoice")


class ExtractedInvoice(BaseModel):
    """Structured invoice decoded from an extraction response."""
    invoice_code: Optional[str] = Field(None, description="Invoice number")
    issue_date: Optional[date] = Field(None, description="Invoice issue date")
    total_amount: Optional[Decimal] = Field(None, description="Invoice total")
    provider: Optional[ExtractedProvider] = None
    client: Optional[ExtractedClient] = None
    items: List[ExtractedItem] = Field(default_factory=list)

    @field_validator("total_amount")
    @classmethod
    def quantize_total(cls, v):
        """Keep totals at 2-decimal scale."""
        if v is None:
            return v
        return quantize_money(v)

    @property
    def is_empty(self) -> bool:
        """No invoice number and no lines."""
        return not (self.invoice_code or "").strip() and not self.items

    def effective_date(self, item: ExtractedItem) -> Optional[date]:
        """Date used for price-history ordering."""
        return item.item_date or self.issue_date


class ValidationVerdict(BaseModel):
    """Outcome of a validation round-trip over already-extracted data."""
    is_valid: bool = True
    notes: str = ""


# Ledger entities

class Account(BaseModel):
    """Owning account scope for providers, materials and invoices."""
    id: str
    user_id: str
    name: str
    cif: Optional[str] = None
    created_at: Optional[datetime] = None


class Provider(BaseModel):
    """Supplier record."""
    id: str
    account_id: str
    cif: str
    name: str
    email: Optional[str] = None
    phone: Optional[str] = None
    address: Optional[str] = None
    type: ProviderType = ProviderType.MATERIAL_SUPPLIER
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Material(BaseModel):
    """Material record."""
    id: str
    account_id: str
    code: str
    reference_code: Optional[str] = None
    name: str
    category: str
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class Invoice(BaseModel):
    """Invoice header record."""
    id: str
    account_id: str
    invoice_code: str
    provider_id: str
    issue_date: date
    total_amount: Decimal
    status: InvoiceStatus = InvoiceStatus.PROCESSED
    document_key: Optional[str] = None
    validation_notes: Optional[str] = None
    created_at: Optional[datetime] = None


class InvoiceItem(BaseModel):
    """Invoice line record."""
    id: str
    invoice_id: str
    material_id: str
    quantity: Decimal
    unit_price: Decimal
    total_price: Decimal
    item_date: date
    work_order: Optional[str] = None
    description: Optional[str] = None
    line_number: Optional[int] = None
    is_material: bool = True


class MaterialProvider(BaseModel):
    """Most recent observed price for a (material, provider) pair."""
    material_id: str
    provider_id: str
    last_price: Decimal
    last_price_date: date


class PriceAlert(BaseModel):
    """Price change between two observations of the same pair."""
    id: str
    material_id: str
    provider_id: str
    invoice_id: str
    old_price: Decimal
    new_price: Decimal
    percentage: Decimal
    effective_date: date
    status: AlertStatus = AlertStatus.PENDING
    created_at: Optional[datetime] = None


class UnassignedInvoice(BaseModel):
    """Extraction that could not be matched to any account."""
    id: str
    user_id: str
    document_key: str
    file_name: Optional[str] = None
    payload: ExtractedInvoice
    created_at: Optional[datetime] = None

    @field_validator("payload", mode="before")
    @classmethod
    def parse_payload(cls, v):
        if isinstance(v, str):
            return json.loads(v)
        return v


class PendingInvoice(BaseModel):
    """Placeholder shown while a submitted document is in flight."""
    document_key: str
    batch_id: str
    account_id: Optional[str] = None
    file_name: Optional[str] = None
    created_at: Optional[datetime] = None


# Batch tracking

class BatchErrorDetail(BaseModel):
    """Structured, user-visible error entry."""
    kind: ErrorKind
    message: str
    file_name: Optional[str] = None
    invoice_code: Optional[str] = None
    timestamp: datetime = Field(default_factory=datetime.now, description="When error occurred")

    @classmethod
    def from_exception(
        cls,
        error: BaseException,
        file_name: Optional[str] = None,
        invoice_code: Optional[str] = None
    ) -> "BatchErrorDetail":
        message = getattr(error, "message", None) or str(error) or error.__class__.__name__
        return cls(kind=classify_error(error), message=message, file_name=file_name, invoice_code=invoice_code)


class BatchJob(BaseModel):
    """Local record of one asynchronous extraction or validation job."""
    id: str
    user_id: str
    status: BatchStatus = BatchStatus.PENDING
    purpose: BatchPurpose = BatchPurpose.EXTRACTION
    total_files: int = 0
    processed_files: int = 0
    successful_files: int = 0
    failed_files: int = 0
    blocked_files: int = 0
    errors: List[BatchErrorDetail] = Field(default_factory=list)
    input_file: Optional[str] = None
    output_file: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @field_validator("errors", mode="before")
    @classmethod
    def parse_errors(cls, v):
        """Errors are stored as a JSON array."""
        if v is None:
            return []
        if isinstance(v, str):
            return json.loads(v) if v else []
        return v

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal


class BatchItem(BaseModel):
    """One document inside a batch job."""
    id: str
    batch_id: str
    document_key: str
    file_name: Optional[str] = None
    processed: bool = False
    extracted_payload: Optional[ExtractedInvoice] = None
    error_message: Optional[str] = None
    processed_at: Optional[datetime] = None

    @field_validator("extracted_payload", mode="before")
    @classmethod
    def parse_payload(cls, v):
        if isinstance(v, str):
            return json.loads(v) if v else None
        return v


class BatchLink(BaseModel):
    """Parent extraction batch to child validation batch, per document."""
    parent_batch_id: str
    child_batch_id: str
    document_key: str


class BatchProgressInfo(BaseModel):
    """Read-only projection of batch progress for dashboards."""
    id: str
    status: BatchStatus
    purpose: BatchPurpose = BatchPurpose.EXTRACTION
    total_files: int = 0
    processed_files: int = 0
    successful_files: int = 0
    failed_files: int = 0
    blocked_files: int = 0
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    errors: List[BatchErrorDetail] = Field(default_factory=list)

    @classmethod
    def from_batch_job(cls, job: BatchJob) -> "BatchProgressInfo":
        return cls(
            id=job.id,
            status=job.status,
            purpose=job.purpose,
            total_files=job.total_files,
            processed_files=job.processed_files,
            successful_files=job.successful_files,
            failed_files=job.failed_files,
            blocked_files=job.blocked_files,
            started_at=job.started_at,
            completed_at=job.completed_at,
            created_at=job.created_at,
            errors=list(job.errors),
        )


# Operation results

class IngestionResult(BaseModel):
    """Outcome of ingesting one extracted invoice."""
    created: bool = False
    duplicate: bool = False
    unassigned: bool = False
    invoice_id: Optional[str] = None
    alerts_created: int = 0
    items_skipped: int = 0


class DocumentOutcome(BaseModel):
    """Per-file result returned by synchronous uploads."""
    file_name: str
    document_key: str
    success: bool
    duplicate: bool = False
    blocked: bool = False
    invoice_id: Optional[str] = None
    invoice_code: Optional[str] = None
    alerts_created: int = 0
    error: Optional[BatchErrorDetail] = None


class UploadResult(BaseModel):
    """Result of a synchronous upload session."""
    results: List[DocumentOutcome] = Field(default_factory=list)
    circuit_breaker_tripped: bool = False

    @property
    def successful(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success and not r.blocked)

    @property
    def blocked(self) -> int:
        return sum(1 for r in self.results if r.blocked)


class SubmissionResult(BaseModel):
    """Identifiers of the batch jobs created by one submission."""
    batch_id: str
    batch_ids: List[str] = Field(default_factory=list)


class AggregateResult(BaseModel):
    """Per-batch statistics computed by the aggregator."""
    success_count: int = 0
    failed_count: int = 0
    blocked_count: int = 0
    duplicate_count: int = 0
    validation_queue: List[str] = Field(default_factory=list)
    errors: List[BatchErrorDetail] = Field(default_factory=list)


class Document(BaseModel):
    """A submitted file, identified by its document key."""
    key: str = Field(..., description="Stable key linking the file across batches")
    file_name: str
    data: bytes = Field(..., repr=False)
    mime_type: str = "application/pdf"

    @property
    def size(self) -> int:
        return len(self.data)
