"""
Extraction protocol codec.

Requests are encoded either as batch JSONL lines or as ``generate_content``
arguments. Responses use a compact pipe-delimited line protocol:

    HEADER|invoiceCode|issueDate|totalAmount
    PROVIDER|name|cif|email|phone|address
    CLIENT|name|cif
    ITEM|materialName|materialCode|isMaterial|quantity|unitPrice|totalPrice|itemDate|workOrder|description|lineNumber

``~`` stands for a missing value and never leaves this module: decoded
models carry ``None`` instead. A structured-JSON decode path is kept for
single-document calls made with the JSON strategy.
"""

import base64
import json
import logging
import re
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, List, Optional

from google.genai import types
from pydantic import BaseModel, Field, ValidationError

from ..prompts import (
    CONTINUATION_PROMPT,
    EXTRACTION_JSON_PROMPT,
    EXTRACTION_LINES_PROMPT,
    VALIDATION_PROMPT,
)
from .exceptions import EmptyExtractionError, ParsingError, TruncatedResponseError
from .json_utils import try_parse_or_repair_json
from .models import (
    Document,
    ExtractedClient,
    ExtractedInvoice,
    ExtractedItem,
    ExtractedProvider,
    ExtractionStrategy,
    ValidationVerdict,
    quantize_money,
)

logger = logging.getLogger(__name__)

NULL_SENTINEL = "~"
FIELD_SEPARATOR = "|"
FIELD_COUNTS = {
    "HEADER": 4,
    "PROVIDER": 6,
    "CLIENT": 3,
    "ITEM": 11,
    "VALIDATION": 3,
}
TRUNCATED_FINISH_REASON = "MAX_TOKENS"
MAX_STORED_INT = 2 ** 63 - 1

_TRUE_VALUES = {"1", "true", "si", "sí", "s", "yes", "y"}
_FALSE_VALUES = {"0", "false", "no", "n"}
_DMY_DATE = re.compile(r"^(\d{1,2})[/\-.](\d{1,2})[/\-.](\d{4})$")

INVOICE_RESPONSE_SCHEMA = {
    "type": "OBJECT",
    "properties": {
        "invoice_code": {"type": "STRING", "nullable": True},
        "issue_date": {"type": "STRING", "nullable": True},
        "total_amount": {"type": "NUMBER", "nullable": True},
        "provider": {
            "type": "OBJECT",
            "nullable": True,
            "properties": {
                "name": {"type": "STRING"},
                "cif": {"type": "STRING", "nullable": True},
                "email": {"type": "STRING", "nullable": True},
                "phone": {"type": "STRING", "nullable": True},
                "address": {"type": "STRING", "nullable": True},
            },
            "required": ["name"],
        },
        "client": {
            "type": "OBJECT",
            "nullable": True,
            "properties": {
                "name": {"type": "STRING", "nullable": True},
                "cif": {"type": "STRING", "nullable": True},
            },
        },
        "items": {
            "type": "ARRAY",
            "items": {
                "type": "OBJECT",
                "properties": {
                    "material_name": {"type": "STRING", "nullable": True},
                    "material_code": {"type": "STRING", "nullable": True},
                    "is_material": {"type": "BOOLEAN", "nullable": True},
                    "quantity": {"type": "NUMBER", "nullable": True},
                    "unit_price": {"type": "NUMBER", "nullable": True},
                    "total_price": {"type": "NUMBER", "nullable": True},
                    "item_date": {"type": "STRING", "nullable": True},
                    "work_order": {"type": "STRING", "nullable": True},
                    "description": {"type": "STRING", "nullable": True},
                    "line_number": {"type": "INTEGER", "nullable": True},
                },
            },
        },
    },
    "required": ["invoice_code", "issue_date", "total_amount", "provider", "items"],
}


# Requests

class ExtractionContext(BaseModel):
    """How a document should be asked for."""
    model: str
    strategy: ExtractionStrategy = ExtractionStrategy.LINES
    max_output_tokens: int = 8192
    temperature: float = 0.2
    continuation_from: Optional[int] = Field(None, description="Last item ordinal already received")

    @classmethod
    def from_settings(cls, settings, **overrides) -> "ExtractionContext":
        values = {
            "model": settings.extraction_model,
            "strategy": settings.extraction_strategy,
            "max_output_tokens": settings.max_output_tokens,
            "temperature": settings.temperature,
        }
        values.update(overrides)
        return cls(**values)


class ExtractionRequest(BaseModel):
    """One request to the extraction service, usable inline or in a batch file."""
    key: str
    model: str
    prompt: str
    system_instruction: Optional[str] = None
    document_data: Optional[bytes] = Field(None, repr=False)
    mime_type: Optional[str] = None
    max_output_tokens: int = 8192
    temperature: float = 0.2
    response_schema: Optional[dict] = None

    def _generation_config(self) -> dict:
        config = {"maxOutputTokens": self.max_output_tokens, "temperature": self.temperature}
        if self.response_schema is not None:
            config["responseMimeType"] = "application/json"
            config["responseSchema"] = self.response_schema
        return config

    def to_batch_line(self) -> dict:
        """JSONL record for a batch input file."""
        parts: list[dict] = []
        if self.document_data is not None:
            parts.append({
                "inlineData": {
                    "mimeType": self.mime_type or "application/pdf",
                    "data": base64.b64encode(self.document_data).decode("ascii"),
                }
            })
        parts.append({"text": self.prompt})

        request: dict[str, Any] = {
            "contents": [{"role": "user", "parts": parts}],
            "generationConfig": self._generation_config(),
        }
        if self.system_instruction:
            request["systemInstruction"] = {"parts": [{"text": self.system_instruction}]}
        return {"key": self.key, "request": request}

    def to_jsonl(self) -> str:
        return json.dumps(self.to_batch_line(), ensure_ascii=False)

    def to_generate_kwargs(self) -> dict:
        """Arguments for ``client.aio.models.generate_content``."""
        contents: list[Any] = []
        if self.document_data is not None:
            contents.append(types.Part.from_bytes(data=self.document_data, mime_type=self.mime_type or "application/pdf"))
        contents.append(self.prompt)

        config_kwargs: dict[str, Any] = {
            "max_output_tokens": self.max_output_tokens,
            "temperature": self.temperature,
        }
        if self.system_instruction:
            config_kwargs["system_instruction"] = self.system_instruction
        if self.response_schema is not None:
            config_kwargs["response_mime_type"] = "application/json"
            config_kwargs["response_schema"] = self.response_schema

        return {
            "model": self.model,
            "contents": contents,
            "config": types.GenerateContentConfig(**config_kwargs),
        }


def encode_request(document: Document, context: ExtractionContext) -> ExtractionRequest:
    """Build the extraction (or continuation) request for one document."""
    if context.strategy == ExtractionStrategy.JSON:
        return ExtractionRequest(
            key=document.key,
            model=context.model,
            prompt=f"Extract the invoice in {document.file_name} as JSON.",
            system_instruction=EXTRACTION_JSON_PROMPT,
            document_data=document.data,
            mime_type=document.mime_type,
            max_output_tokens=context.max_output_tokens,
            temperature=context.temperature,
            response_schema=INVOICE_RESPONSE_SCHEMA,
        )

    if context.continuation_from is not None:
        prompt = CONTINUATION_PROMPT.format(
            last_ordinal=context.continuation_from, next_ordinal=context.continuation_from + 1
        )
    else:
        prompt = f"Extract the invoice in {document.file_name}."

    return ExtractionRequest(
        key=document.key,
        model=context.model,
        prompt=prompt,
        system_instruction=EXTRACTION_LINES_PROMPT,
        document_data=document.data,
        mime_type=document.mime_type,
        max_output_tokens=context.max_output_tokens,
        temperature=context.temperature,
    )


def encode_validation_request(key: str, invoice: ExtractedInvoice, model: str) -> ExtractionRequest:
    """Ask the service to sanity-check an already extracted invoice."""
    return ExtractionRequest(
        key=key,
        model=model,
        prompt=VALIDATION_PROMPT.format(encoded_invoice=encode_invoice(invoice)),
        max_output_tokens=1024,
        temperature=0.0,
    )


# Field conversion

def _value(raw: Optional[str]) -> Optional[str]:
    """Sentinel to None; everything else trimmed (empty string stays empty)."""
    if raw is None:
        return None
    stripped = raw.strip()
    return None if stripped == NULL_SENTINEL else stripped


def _text(raw: Optional[str]) -> Optional[str]:
    return _value(raw)


def parse_decimal(raw: Any) -> Optional[Decimal]:
    """Parse an amount written with either decimal convention."""
    if raw is None:
        return None
    if isinstance(raw, (int, float, Decimal)):
        text = str(raw)
    else:
        text = _value(str(raw))
        if not text:
            return None
    text = text.replace("€", "").replace("EUR", "").replace(" ", "").replace(" ", "")
    if "," in text and "." in text:
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif "," in text:
        text = text.replace(",", ".")
    try:
        value = Decimal(text)
    except InvalidOperation:
        return None
    return value if value.is_finite() else None


def parse_date(raw: Any) -> Optional[date]:
    """ISO dates, with a DD/MM/YYYY fallback."""
    if raw is None:
        return None
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    text = _value(str(raw))
    if not text:
        return None
    try:
        return date.fromisoformat(text[:10])
    except ValueError:
        pass
    match = _DMY_DATE.match(text)
    if match:
        day, month, year = (int(g) for g in match.groups())
        try:
            return date(year, month, day)
        except ValueError:
            return None
    return None


def _parse_bool(raw: Any, default: bool = True) -> bool:
    if isinstance(raw, bool):
        return raw
    text = _value(str(raw)) if raw is not None else None
    if not text:
        return default
    lowered = text.lower()
    if lowered in _TRUE_VALUES:
        return True
    if lowered in _FALSE_VALUES:
        return False
    return default


def _parse_int(raw: Any) -> Optional[int]:
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw if abs(raw) <= MAX_STORED_INT else None
    text = _value(str(raw))
    if not text:
        return None
    try:
        value = Decimal(text)
    except InvalidOperation:
        return None
    # Non-finite or out of SQLite INTEGER range
    if not value.is_finite() or abs(value) > MAX_STORED_INT:
        return None
    try:
        return int(value)
    except (ValueError, OverflowError):
        return None


def complete_item_amounts(
    quantity: Optional[Decimal],
    unit_price: Optional[Decimal],
    total_price: Optional[Decimal]
) -> tuple[Decimal, Decimal, Decimal]:
    """Default quantity to 1 and back-compute whichever price is missing."""
    if quantity is None:
        quantity = Decimal("1")
    if unit_price is None and total_price is not None and quantity != 0:
        unit_price = total_price / quantity
    elif total_price is None and unit_price is not None:
        total_price = unit_price * quantity
    return quantize_money(quantity), quantize_money(unit_price), quantize_money(total_price)


# Line protocol decoding

class ParsedResponse(BaseModel):
    """Whatever could be read from a response, complete or not."""
    invoice_code: Optional[str] = None
    issue_date: Optional[date] = None
    total_amount: Optional[Decimal] = None
    provider: Optional[ExtractedProvider] = None
    client: Optional[ExtractedClient] = None
    items: List[ExtractedItem] = Field(default_factory=list)
    dropped_lines: int = 0

    @property
    def last_ordinal(self) -> int:
        """Ordinal of the last item received (0 when none)."""
        return max((item.line_number or 0 for item in self.items), default=0)

    @property
    def is_empty(self) -> bool:
        return not (self.invoice_code or "").strip() and not self.items

    def missing_fields(self) -> list[str]:
        missing = []
        if not self.invoice_code:
            missing.append("invoiceCode")
        if self.provider is None:
            missing.append("provider")
        if self.issue_date is None:
            missing.append("issueDate")
        if self.total_amount is None:
            missing.append("totalAmount")
        if not self.items:
            missing.append("items")
        return missing

    def to_invoice(self) -> Optional[ExtractedInvoice]:
        if self.missing_fields():
            return None
        return ExtractedInvoice(
            invoice_code=self.invoice_code,
            issue_date=self.issue_date,
            total_amount=self.total_amount,
            provider=self.provider,
            client=self.client,
            items=list(self.items),
        )


def _parse_item(fields: list[str], ordinal: int) -> ExtractedItem:
    quantity, unit_price, total_price = complete_item_amounts(
        parse_decimal(fields[4]), parse_decimal(fields[5]), parse_decimal(fields[6])
    )
    return ExtractedItem(
        material_name=_text(fields[1]),
        material_code=_text(fields[2]) or None,
        is_material=_parse_bool(fields[3]),
        quantity=quantity,
        unit_price=unit_price,
        total_price=total_price,
        item_date=parse_date(fields[7]),
        work_order=_text(fields[8]) or None,
        description=_text(fields[9]) or None,
        line_number=_parse_int(fields[10]) or ordinal,
    )


def parse_response(text: Optional[str], first_ordinal: int = 1) -> ParsedResponse:
    """
    Leniently read a line-protocol response.

    Lines with an unexpected field count are dropped and logged. Items
    without a line number get their position, counted from first_ordinal.
    """
    parsed = ParsedResponse()
    if not text:
        return parsed

    next_ordinal = first_ordinal
    for line_no, raw_line in enumerate(text.splitlines(), start=1):
        line = raw_line.strip()
        if not line or line.startswith("```"):
            continue

        fields = line.split(FIELD_SEPARATOR)
        tag = fields[0].strip().upper()
        expected = FIELD_COUNTS.get(tag)
        if expected is None:
            logger.debug(f"[CODEC] Ignoring line {line_no} with unknown tag: {line[:60]}")
            continue
        if len(fields) != expected:
            parsed.dropped_lines += 1
            logger.warning(
                f"[CODEC] Dropping {tag} line {line_no}: expected {expected} fields, got {len(fields)}"
            )
            continue

        if tag == "HEADER":
            if parsed.invoice_code is not None:
                continue
            parsed.invoice_code = _text(fields[1]) or None
            parsed.issue_date = parse_date(fields[2])
            parsed.total_amount = parse_decimal(fields[3])
            if parsed.total_amount is not None:
                parsed.total_amount = quantize_money(parsed.total_amount)
        elif tag == "PROVIDER":
            if parsed.provider is not None:
                continue
            name = _text(fields[1]) or None
            cif = _text(fields[2]) or None
            if name or cif:
                parsed.provider = ExtractedProvider(
                    name=name or cif,
                    cif=cif,
                    email=_text(fields[3]) or None,
                    phone=_text(fields[4]) or None,
                    address=_text(fields[5]) or None,
                )
        elif tag == "CLIENT":
            parsed.client = ExtractedClient(name=_text(fields[1]) or None, cif=_text(fields[2]) or None)
        elif tag == "ITEM":
            parsed.items.append(_parse_item(fields, next_ordinal))
            next_ordinal += 1

    return parsed


def decode_response(text: Optional[str]) -> Optional[ExtractedInvoice]:
    """Decode a response; None unless every load-bearing field is present."""
    return parse_response(text).to_invoice()


def decode_or_raise(text: Optional[str], document_key: str) -> ExtractedInvoice:
    """Decode a response, raising the error kind that explains a failure."""
    parsed = parse_response(text)
    if parsed.is_empty:
        raise EmptyExtractionError(document_key)
    invoice = parsed.to_invoice()
    if invoice is None:
        raise ParsingError(document_key, parsed.missing_fields(), text or "")
    return invoice


def merge_continuation(original: ParsedResponse, continuation: ParsedResponse) -> ParsedResponse:
    """Append continuation items, keeping the first item seen per ordinal."""
    seen = {item.line_number for item in original.items}
    merged = list(original.items)
    for item in continuation.items:
        if item.line_number in seen:
            continue
        seen.add(item.line_number)
        merged.append(item)
    merged.sort(key=lambda item: item.line_number or 0)
    return original.model_copy(update={
        "items": merged,
        "dropped_lines": original.dropped_lines + continuation.dropped_lines,
    })


# Line protocol encoding

def _encode_value(value: Any) -> str:
    if value is None:
        return NULL_SENTINEL
    if isinstance(value, bool):
        return "1" if value else "0"
    if isinstance(value, Decimal):
        return str(quantize_money(value))
    if isinstance(value, date):
        return value.isoformat()
    text = str(value).replace(FIELD_SEPARATOR, "/").replace("\r", " ").replace("\n", " ")
    return text


def _encode_line(tag: str, *values: Any) -> str:
    return FIELD_SEPARATOR.join([tag, *(_encode_value(v) for v in values)])


def encode_invoice(invoice: ExtractedInvoice) -> str:
    """Write an extracted invoice back in the line protocol."""
    lines = [_encode_line("HEADER", invoice.invoice_code, invoice.issue_date, invoice.total_amount)]
    if invoice.provider is not None:
        p = invoice.provider
        lines.append(_encode_line("PROVIDER", p.name, p.cif, p.email, p.phone, p.address))
    if invoice.client is not None:
        lines.append(_encode_line("CLIENT", invoice.client.name, invoice.client.cif))
    for item in invoice.items:
        lines.append(_encode_line(
            "ITEM", item.material_name, item.material_code, item.is_material, item.quantity,
            item.unit_price, item.total_price, item.item_date, item.work_order, item.description,
            item.line_number,
        ))
    return "\n".join(lines)


# Validation verdicts

def decode_validation(text: Optional[str]) -> ValidationVerdict:
    """Read a VALIDATION line; an unreadable answer does not block ingestion."""
    for raw_line in (text or "").splitlines():
        fields = raw_line.strip().split(FIELD_SEPARATOR)
        if fields[0].strip().upper() != "VALIDATION":
            continue
        if len(fields) != FIELD_COUNTS["VALIDATION"]:
            logger.warning(f"[CODEC] Malformed VALIDATION line: {raw_line[:80]}")
            break
        return ValidationVerdict(is_valid=_parse_bool(fields[1]), notes=_text(fields[2]) or "")
    return ValidationVerdict(is_valid=True, notes="Validation answer could not be read")


# Legacy JSON path

def decode_json_response(text: Optional[str]) -> Optional[ExtractedInvoice]:
    """Decode a structured-JSON response into the same contract as the line protocol."""
    if not text:
        return None
    try:
        data = try_parse_or_repair_json(text)
    except json.JSONDecodeError as exc:
        logger.warning(f"[CODEC] JSON response could not be repaired: {exc}")
        return None

    raw_items = data.get("items") or []
    items = []
    for ordinal, raw in enumerate(raw_items, start=1):
        if not isinstance(raw, dict):
            continue
        quantity, unit_price, total_price = complete_item_amounts(
            parse_decimal(raw.get("quantity")),
            parse_decimal(raw.get("unit_price")),
            parse_decimal(raw.get("total_price")),
        )
        items.append({
            "material_name": raw.get("material_name"),
            "material_code": raw.get("material_code") or None,
            "is_material": _parse_bool(raw.get("is_material")),
            "quantity": quantity,
            "unit_price": unit_price,
            "total_price": total_price,
            "item_date": parse_date(raw.get("item_date")),
            "work_order": raw.get("work_order") or None,
            "description": raw.get("description") or None,
            "line_number": _parse_int(raw.get("line_number")) or ordinal,
        })

    candidate = {
        "invoice_code": data.get("invoice_code") or None,
        "issue_date": parse_date(data.get("issue_date")),
        "total_amount": parse_decimal(data.get("total_amount")),
        "provider": data.get("provider") or None,
        "client": data.get("client") or None,
        "items": items,
    }
    try:
        parsed = ParsedResponse.model_validate(candidate)
    except ValidationError as exc:
        logger.warning(f"[CODEC] JSON response failed schema validation: {exc.error_count()} errors")
        return None
    return parsed.to_invoice()


# Batch output records

def _candidate(response: Optional[dict]) -> Optional[dict]:
    if not isinstance(response, dict):
        return None
    candidates = response.get("candidates")
    if not isinstance(candidates, list) or not candidates:
        return None
    return candidates[0] if isinstance(candidates[0], dict) else None


def response_text(response: Optional[dict]) -> Optional[str]:
    """Concatenated text parts of the first candidate."""
    candidate = _candidate(response)
    if candidate is None:
        return None
    content = candidate.get("content")
    parts = content.get("parts") if isinstance(content, dict) else None
    if not isinstance(parts, list):
        return None
    text = "".join(
        part["text"] for part in parts
        if isinstance(part, dict) and isinstance(part.get("text"), str) and not part.get("thought")
    )
    return text or None


def finish_reason(response: Optional[dict]) -> Optional[str]:
    candidate = _candidate(response)
    if candidate is None:
        return None
    reason = candidate.get("finishReason") or candidate.get("finish_reason")
    return str(reason).rsplit(".", 1)[-1] if reason else None


def is_truncated(response: Optional[dict]) -> bool:
    return finish_reason(response) == TRUNCATED_FINISH_REASON


def decode_batch_response(response: Optional[dict], document_key: str) -> ExtractedInvoice:
    """
    Decode one batch output record.

    Batch mode cannot issue a continuation, so a truncated answer is
    rejected rather than ingested incomplete.
    """
    text = response_text(response)
    if is_truncated(response):
        raise TruncatedResponseError(document_key, len(parse_response(text).items))
    return decode_or_raise(text, document_key)
