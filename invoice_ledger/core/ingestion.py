"""
Transactional ingestion of extracted invoices into the ledger.

One document is one transaction: provider resolution, duplicate check,
invoice and item creation, price alerts and the latest-price cache either
all land or none do.
"""

import logging
import sqlite3
from datetime import date
from decimal import Decimal
from typing import Optional

from .exceptions import EmptyExtractionError, LedgerError, ParsingError
from .models import (
    ExtractedInvoice,
    IngestionResult,
    Invoice,
    InvoiceItem,
    InvoiceStatus,
    MaterialProvider,
    PriceAlert,
    ValidationVerdict,
    quantize_money,
)
from .rate_limit import RetryError, RetryPolicy
from .resolver import EntityResolver, ResolutionCache, infer_provider_type
from ..storage.ledger import new_id

logger = logging.getLogger(__name__)

# Percentage recorded when the previous price was zero
ZERO_PRICE_PERCENTAGE_SENTINEL = Decimal("9999")


def price_change_percentage(old_price: Decimal, new_price: Decimal) -> Decimal:
    """(new - old) / old * 100 at 2 decimals, saturating when old is zero."""
    if old_price == 0:
        return ZERO_PRICE_PERCENTAGE_SENTINEL if new_price > 0 else -ZERO_PRICE_PERCENTAGE_SENTINEL
    return quantize_money((new_price - old_price) / old_price * 100)


class IngestionEngine:
    """Writes extracted invoices, their lines and price alerts."""

    def __init__(self, ledger, resolver: EntityResolver, retry_policy: Optional[RetryPolicy] = None):
        self.ledger = ledger
        self.resolver = resolver
        self.retry = retry_policy or RetryPolicy(
            max_attempts=3, base_delay=0.5, max_delay=2.0, jitter_range=0.5, transient_delay=0.5
        )

    async def ingest_document(
        self,
        extracted: ExtractedInvoice,
        user_id: str,
        document_key: str,
        file_name: Optional[str] = None,
        fallback_account_id: Optional[str] = None,
        cache: Optional[ResolutionCache] = None,
        validation: Optional[ValidationVerdict] = None
    ) -> IngestionResult:
        """Assign an account scope, then ingest; unmatched documents are kept as unassigned."""
        self._check_complete(extracted, document_key)
        self.resolver.ensure_not_blocked(extracted.provider.name)

        account = await self.resolver.resolve_account(extracted, user_id, fallback_account_id)
        if account is None:
            return await self.ingest_unassigned(extracted, user_id, document_key, file_name)
        return await self.ingest(extracted, document_key, account.id, cache, validation)

    async def ingest(
        self,
        extracted: ExtractedInvoice,
        document_key: str,
        account_id: str,
        cache: Optional[ResolutionCache] = None,
        validation: Optional[ValidationVerdict] = None
    ) -> IngestionResult:
        """
        Ingest one extracted invoice in a single transaction.

        Raises:
            EmptyExtractionError: No invoice code and no lines
            ParsingError: Load-bearing fields missing
            BlockedProviderError: Provider on the deny list (nothing written)
            LedgerError: Store failure after retries are exhausted
        """
        self._check_complete(extracted, document_key)
        self.resolver.ensure_not_blocked(extracted.provider.name)

        async def unit_of_work():
            async with self.ledger.transaction():
                return await self._ingest(extracted, document_key, account_id, cache, validation)

        try:
            result = await self.retry.run(unit_of_work, f"ingest {document_key}")
        except RetryError as e:
            raise LedgerError("ingest", e.last_exception) from e
        except sqlite3.Error as e:
            raise LedgerError("ingest", e) from e

        if result.duplicate:
            logger.info(f"[INGEST] {document_key} - Duplicate invoice {extracted.invoice_code}")
        else:
            logger.info(
                f"[INGEST] {document_key} - Created invoice {extracted.invoice_code} "
                f"({len(extracted.items) - result.items_skipped} items, {result.alerts_created} alerts)"
            )
        return result

    async def ingest_unassigned(
        self,
        extracted: ExtractedInvoice,
        user_id: str,
        document_key: str,
        file_name: Optional[str] = None
    ) -> IngestionResult:
        """Keep an extraction that matched no account for manual reconciliation."""
        if extracted.is_empty:
            raise EmptyExtractionError(document_key)
        try:
            await self.ledger.insert_unassigned(user_id, document_key, file_name, extracted)
        except sqlite3.Error as e:
            raise LedgerError("ingest_unassigned", e) from e
        logger.warning(f"[INGEST] {document_key} - No account matched, stored as unassigned")
        return IngestionResult(unassigned=True)

    @staticmethod
    def _check_complete(extracted: ExtractedInvoice, document_key: str) -> None:
        if extracted.is_empty:
            raise EmptyExtractionError(document_key)
        missing = []
        if not extracted.invoice_code:
            missing.append("invoiceCode")
        if extracted.provider is None:
            missing.append("provider")
        if extracted.issue_date is None:
            missing.append("issueDate")
        if extracted.total_amount is None:
            missing.append("totalAmount")
        if missing:
            raise ParsingError(document_key, missing)

    async def _record_alert(
        self,
        material_id: str,
        provider_id: str,
        invoice_id: str,
        old_price: Decimal,
        new_price: Decimal,
        effective_date: date
    ) -> bool:
        alert = PriceAlert(
            id=new_id(),
            material_id=material_id,
            provider_id=provider_id,
            invoice_id=invoice_id,
            old_price=old_price,
            new_price=new_price,
            percentage=price_change_percentage(old_price, new_price),
            effective_date=effective_date,
        )
        created = await self.ledger.insert_price_alert(alert)
        if created:
            logger.info(
                f"[INGEST] Price alert {material_id[:8]}: {old_price} -> {new_price} "
                f"({alert.percentage}%) on {effective_date}"
            )
        else:
            logger.debug(f"[INGEST] Alert for {material_id[:8]} on {effective_date} already recorded")
        return created

    async def _ingest(
        self,
        extracted: ExtractedInvoice,
        document_key: str,
        account_id: str,
        cache: Optional[ResolutionCache],
        validation: Optional[ValidationVerdict]
    ) -> IngestionResult:
        provider_type = infer_provider_type(extracted.provider.name, extracted.items)
        provider = await self.resolver.resolve_provider(extracted.provider, account_id, cache, provider_type)

        existing = await self.ledger.find_invoice(extracted.invoice_code, provider.id)
        if existing is not None:
            return IngestionResult(duplicate=True, invoice_id=existing.id)

        flagged = validation is not None and not validation.is_valid
        invoice = Invoice(
            id=new_id(),
            account_id=account_id,
            invoice_code=extracted.invoice_code,
            provider_id=provider.id,
            issue_date=extracted.issue_date,
            total_amount=extracted.total_amount,
            status=InvoiceStatus.NEEDS_REVIEW if flagged else InvoiceStatus.PROCESSED,
            document_key=document_key,
            validation_notes=validation.notes if validation and validation.notes else None,
        )
        try:
            invoice = await self.ledger.insert_invoice(invoice)
        except sqlite3.IntegrityError:
            # A concurrent writer got there first
            existing = await self.ledger.find_invoice(extracted.invoice_code, provider.id)
            if existing is None:
                raise
            return IngestionResult(duplicate=True, invoice_id=existing.id)

        alerts_created = 0
        items_skipped = 0
        last_seen: dict[str, tuple[Decimal, date]] = {}

        for item in extracted.items:
            name = (item.material_name or "").strip()
            if not name or item.quantity is None:
                items_skipped += 1
                logger.warning(
                    f"[INGEST] {document_key} - Skipping line {item.line_number}: missing name or quantity"
                )
                continue
            if item.unit_price == 0 and item.total_price == 0:
                logger.warning(f"[INGEST] {document_key} - Line {item.line_number} '{name}' has no price, stored as 0")

            unit_price = quantize_money(item.unit_price)
            effective = extracted.effective_date(item)
            material = await self.resolver.resolve_material(
                name, item.material_code, provider.type, account_id, cache, item.description
            )

            await self.ledger.insert_invoice_item(InvoiceItem(
                id=new_id(),
                invoice_id=invoice.id,
                material_id=material.id,
                quantity=quantize_money(item.quantity),
                unit_price=unit_price,
                total_price=quantize_money(item.total_price),
                item_date=effective,
                work_order=item.work_order,
                description=item.description,
                line_number=item.line_number,
                is_material=item.is_material,
            ))

            if not item.is_material:
                continue

            previous = await self.ledger.previous_price(material.id, provider.id, effective)
            if previous is not None and previous != unit_price:
                if await self._record_alert(material.id, provider.id, invoice.id, previous, unit_price, effective):
                    alerts_created += 1

            seen = last_seen.get(material.id)
            if seen is None or effective >= seen[1]:
                if seen is not None and seen[0] != unit_price:
                    if await self._record_alert(material.id, provider.id, invoice.id, seen[0], unit_price, effective):
                        alerts_created += 1
                last_seen[material.id] = (unit_price, effective)

            await self.ledger.upsert_material_provider(MaterialProvider(
                material_id=material.id,
                provider_id=provider.id,
                last_price=unit_price,
                last_price_date=effective,
            ))

        return IngestionResult(
            created=True,
            invoice_id=invoice.id,
            alerts_created=alerts_created,
            items_skipped=items_skipped,
        )
