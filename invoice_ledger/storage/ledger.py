"""
SQLite ledger for providers, materials, invoices, price alerts and batch jobs.

All access goes through one aiosqlite connection in autocommit mode;
multi-statement units of work use ``Ledger.transaction()``, which holds an
asyncio lock for its duration so that statements from other coroutines
never interleave with an open transaction.
"""

import asyncio
import contextvars
import json
import logging
import uuid
from contextlib import asynccontextmanager
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

import aiosqlite
from pydantic import BaseModel

from ..core.exceptions import LedgerError
from ..core.models import (
    Account,
    BatchErrorDetail,
    BatchItem,
    BatchJob,
    BatchLink,
    BatchStatus,
    ExtractedInvoice,
    Invoice,
    InvoiceItem,
    Material,
    MaterialProvider,
    PendingInvoice,
    PriceAlert,
    Provider,
    ProviderType,
    TERMINAL_BATCH_STATUSES,
    UnassignedInvoice,
    quantize_money,
)
from ..core.normalize import build_cif_variants, normalize_cif, normalize_provider_name
from ..core.rate_limit import RetryPolicy

logger = logging.getLogger(__name__)

_in_transaction: contextvars.ContextVar[bool] = contextvars.ContextVar("ledger_in_transaction", default=False)

SCHEMA = """
CREATE TABLE IF NOT EXISTS accounts (
    id          TEXT PRIMARY KEY,
    user_id     TEXT NOT NULL,
    name        TEXT NOT NULL,
    cif         TEXT,
    created_at  TEXT NOT NULL,
    UNIQUE (user_id, cif)
);

CREATE TABLE IF NOT EXISTS providers (
    id          TEXT PRIMARY KEY,
    account_id  TEXT NOT NULL REFERENCES accounts(id),
    cif         TEXT NOT NULL,
    name        TEXT NOT NULL,
    email       TEXT,
    phone       TEXT,
    address     TEXT,
    type        TEXT NOT NULL DEFAULT 'MATERIAL_SUPPLIER',
    created_at  TEXT NOT NULL,
    updated_at  TEXT NOT NULL,
    UNIQUE (account_id, cif)
);

CREATE TABLE IF NOT EXISTS provider_aliases (
    account_id  TEXT NOT NULL,
    alias       TEXT NOT NULL,
    provider_id TEXT NOT NULL REFERENCES providers(id),
    PRIMARY KEY (account_id, alias)
);

CREATE TABLE IF NOT EXISTS materials (
    id              TEXT PRIMARY KEY,
    account_id      TEXT NOT NULL REFERENCES accounts(id),
    code            TEXT NOT NULL,
    reference_code  TEXT,
    name            TEXT NOT NULL,
    category        TEXT NOT NULL,
    created_at      TEXT NOT NULL,
    updated_at      TEXT NOT NULL,
    UNIQUE (account_id, code)
);

CREATE TABLE IF NOT EXISTS invoices (
    id                TEXT PRIMARY KEY,
    account_id        TEXT NOT NULL REFERENCES accounts(id),
    invoice_code      TEXT NOT NULL,
    provider_id       TEXT NOT NULL REFERENCES providers(id),
    issue_date        TEXT NOT NULL,
    total_amount      TEXT NOT NULL,
    status            TEXT NOT NULL DEFAULT 'PROCESSED',
    document_key      TEXT,
    validation_notes  TEXT,
    created_at        TEXT NOT NULL,
    UNIQUE (invoice_code, provider_id)
);

CREATE TABLE IF NOT EXISTS invoice_items (
    id           TEXT PRIMARY KEY,
    invoice_id   TEXT NOT NULL REFERENCES invoices(id) ON DELETE CASCADE,
    material_id  TEXT NOT NULL REFERENCES materials(id),
    quantity     TEXT NOT NULL,
    unit_price   TEXT NOT NULL,
    total_price  TEXT NOT NULL,
    item_date    TEXT NOT NULL,
    work_order   TEXT,
    description  TEXT,
    line_number  INTEGER,
    is_material  INTEGER NOT NULL DEFAULT 1
);
CREATE INDEX IF NOT EXISTS idx_items_material ON invoice_items (material_id, item_date);

CREATE TABLE IF NOT EXISTS material_providers (
    material_id      TEXT NOT NULL REFERENCES materials(id),
    provider_id      TEXT NOT NULL REFERENCES providers(id),
    last_price       TEXT NOT NULL,
    last_price_date  TEXT NOT NULL,
    PRIMARY KEY (material_id, provider_id)
);

CREATE TABLE IF NOT EXISTS price_alerts (
    id              TEXT PRIMARY KEY,
    material_id     TEXT NOT NULL REFERENCES materials(id),
    provider_id     TEXT NOT NULL REFERENCES providers(id),
    invoice_id      TEXT NOT NULL REFERENCES invoices(id),
    old_price       TEXT NOT NULL,
    new_price       TEXT NOT NULL,
    percentage      TEXT NOT NULL,
    effective_date  TEXT NOT NULL,
    status          TEXT NOT NULL DEFAULT 'PENDING',
    created_at      TEXT NOT NULL,
    UNIQUE (material_id, provider_id, effective_date)
);

CREATE TABLE IF NOT EXISTS unassigned_invoices (
    id            TEXT PRIMARY KEY,
    user_id       TEXT NOT NULL,
    document_key  TEXT NOT NULL,
    file_name     TEXT,
    payload       TEXT NOT NULL,
    created_at    TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS pending_invoices (
    document_key  TEXT PRIMARY KEY,
    batch_id      TEXT NOT NULL,
    account_id    TEXT,
    file_name     TEXT,
    created_at    TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS batch_jobs (
    id                TEXT PRIMARY KEY,
    user_id           TEXT NOT NULL,
    status            TEXT NOT NULL,
    purpose           TEXT NOT NULL,
    total_files       INTEGER NOT NULL DEFAULT 0,
    processed_files   INTEGER NOT NULL DEFAULT 0,
    successful_files  INTEGER NOT NULL DEFAULT 0,
    failed_files      INTEGER NOT NULL DEFAULT 0,
    blocked_files     INTEGER NOT NULL DEFAULT 0,
    errors            TEXT NOT NULL DEFAULT '[]',
    input_file        TEXT,
    output_file       TEXT,
    started_at        TEXT,
    completed_at      TEXT,
    created_at        TEXT NOT NULL,
    updated_at        TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_batch_jobs_user ON batch_jobs (user_id, created_at);

CREATE TABLE IF NOT EXISTS batch_items (
    id                 TEXT PRIMARY KEY,
    batch_id           TEXT NOT NULL REFERENCES batch_jobs(id) ON DELETE CASCADE,
    document_key       TEXT NOT NULL,
    file_name          TEXT,
    processed          INTEGER NOT NULL DEFAULT 0,
    extracted_payload  TEXT,
    error_message      TEXT,
    processed_at       TEXT,
    UNIQUE (batch_id, document_key)
);

CREATE TABLE IF NOT EXISTS batch_links (
    parent_batch_id  TEXT NOT NULL,
    child_batch_id   TEXT NOT NULL,
    document_key     TEXT NOT NULL,
    PRIMARY KEY (parent_batch_id, child_batch_id, document_key)
);
CREATE INDEX IF NOT EXISTS idx_batch_links_child ON batch_links (child_batch_id);
"""


def new_id() -> str:
    return uuid.uuid4().hex


def _param(value: Any) -> Any:
    """Convert a Python value to its stored representation."""
    if value is None:
        return None
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, Decimal):
        return str(quantize_money(value))
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, BaseModel):
        return value.model_dump_json()
    return value


def _params(values: Iterable[Any]) -> tuple:
    return tuple(_param(v) for v in values)


def _row(model, row) -> Any:
    return model(**dict(row)) if row is not None else None


class Ledger:
    """Async SQLite store backing the extraction pipeline."""

    def __init__(self, db_path: str | Path = "ledger.db", retry_policy: Optional[RetryPolicy] = None):
        self.db_path = str(db_path)
        self._conn: Optional[aiosqlite.Connection] = None
        self._lock = asyncio.Lock()
        self._retry = retry_policy or RetryPolicy(
            max_attempts=3, base_delay=0.1, max_delay=1.0, jitter_range=0.0, transient_delay=0.1
        )

    async def __aenter__(self):
        await self.connect()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        await self.close()

    async def connect(self) -> aiosqlite.Connection:
        """Open the connection (WAL mode) and create the schema."""
        if self._conn is None:
            self._conn = await aiosqlite.connect(self.db_path, isolation_level=None, timeout=30.0)
            self._conn.row_factory = aiosqlite.Row

            if self.db_path != ":memory:":
                await self._conn.execute("PRAGMA journal_mode=WAL")
            await self._conn.execute("PRAGMA synchronous=NORMAL")
            await self._conn.execute("PRAGMA foreign_keys=ON")
            await self._conn.execute("PRAGMA temp_store=memory")
            await self._conn.executescript(SCHEMA)
            logger.debug(f"[LEDGER] Connected to {self.db_path}")
        return self._conn

    async def close(self) -> None:
        """Close database connection."""
        if self._conn:
            try:
                await self._conn.close()
            except Exception as e:
                logger.warning(f"Error closing ledger connection: {e}")
            finally:
                self._conn = None

    @property
    def conn(self) -> aiosqlite.Connection:
        if self._conn is None:
            raise LedgerError("connect", RuntimeError("ledger is not connected"))
        return self._conn

    @asynccontextmanager
    async def transaction(self):
        """Serialize a unit of work; nested calls join the outer transaction."""
        if _in_transaction.get():
            yield self
            return
        async with self._lock:
            token = _in_transaction.set(True)
            try:
                await self.conn.execute("BEGIN IMMEDIATE")
                try:
                    yield self
                except BaseException:
                    await self.conn.execute("ROLLBACK")
                    raise
                else:
                    await self.conn.execute("COMMIT")
            finally:
                _in_transaction.reset(token)

    async def _write(self, sql: str, params: Sequence[Any] = ()) -> int:
        """Run one write statement, retried while the database is locked."""
        async def operation():
            async with self.transaction():
                cursor = await self.conn.execute(sql, _params(params))
                return cursor.rowcount

        if _in_transaction.get():
            cursor = await self.conn.execute(sql, _params(params))
            return cursor.rowcount
        return await self._retry.run(operation, "ledger write")

    async def _fetchone(self, sql: str, params: Sequence[Any] = ()):
        async with self.conn.execute(sql, _params(params)) as cursor:
            return await cursor.fetchone()

    async def _fetchall(self, sql: str, params: Sequence[Any] = ()) -> list:
        return list(await self.conn.execute_fetchall(sql, _params(params)))

    # Accounts

    async def create_account(self, user_id: str, name: str, cif: Optional[str] = None) -> Account:
        account = Account(
            id=new_id(), user_id=user_id, name=name, cif=normalize_cif(cif), created_at=datetime.now()
        )
        await self._write(
            "INSERT INTO accounts (id, user_id, name, cif, created_at) VALUES (?, ?, ?, ?, ?)",
            (account.id, account.user_id, account.name, account.cif, account.created_at)
        )
        return account

    async def get_account(self, account_id: str) -> Optional[Account]:
        return _row(Account, await self._fetchone("SELECT * FROM accounts WHERE id = ?", (account_id,)))

    async def list_accounts(self, user_id: str) -> list[Account]:
        rows = await self._fetchall("SELECT * FROM accounts WHERE user_id = ? ORDER BY created_at", (user_id,))
        return [_row(Account, r) for r in rows]

    async def find_account_by_cif(self, user_id: str, cif: Optional[str]) -> Optional[Account]:
        variants = build_cif_variants(cif)
        if not variants:
            return None
        placeholders = ",".join("?" * len(variants))
        row = await self._fetchone(
            f"SELECT * FROM accounts WHERE user_id = ? AND cif IN ({placeholders}) LIMIT 1",
            (user_id, *variants)
        )
        return _row(Account, row)

    # Providers

    async def get_provider(self, provider_id: str) -> Optional[Provider]:
        return _row(Provider, await self._fetchone("SELECT * FROM providers WHERE id = ?", (provider_id,)))

    async def list_providers(self, account_id: str) -> list[Provider]:
        rows = await self._fetchall("SELECT * FROM providers WHERE account_id = ? ORDER BY created_at", (account_id,))
        return [_row(Provider, r) for r in rows]

    async def find_provider_by_cif(self, account_id: str, cif: Optional[str]) -> Optional[Provider]:
        """Exact or variant match on the tax id."""
        variants = build_cif_variants(cif)
        if not variants:
            return None
        placeholders = ",".join("?" * len(variants))
        row = await self._fetchone(
            f"SELECT * FROM providers WHERE account_id = ? AND cif IN ({placeholders}) LIMIT 1",
            (account_id, *variants)
        )
        return _row(Provider, row)

    async def find_provider_by_alias(self, account_id: str, alias: str) -> Optional[Provider]:
        row = await self._fetchone(
            """
            SELECT p.* FROM provider_aliases a
            JOIN providers p ON p.id = a.provider_id
            WHERE a.account_id = ? AND a.alias = ?
            """,
            (account_id, alias)
        )
        return _row(Provider, row)

    async def insert_provider(self, provider: Provider) -> Provider:
        """Insert a provider; raises sqlite3.IntegrityError on a CIF collision."""
        now = datetime.now()
        provider = provider.model_copy(update={"created_at": now, "updated_at": now})
        await self._write(
            """
            INSERT INTO providers (id, account_id, cif, name, email, phone, address, type, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (provider.id, provider.account_id, provider.cif, provider.name, provider.email,
             provider.phone, provider.address, provider.type, now, now)
        )
        return provider

    async def update_provider_contact(
        self,
        provider_id: str,
        name: str,
        email: Optional[str],
        phone: Optional[str],
        address: Optional[str],
        provider_type: ProviderType
    ) -> None:
        await self._write(
            """
            UPDATE providers
            SET name = ?, email = ?, phone = ?, address = ?, type = ?, updated_at = ?
            WHERE id = ?
            """,
            (name, email, phone, address, provider_type, datetime.now(), provider_id)
        )

    async def add_provider_alias(self, account_id: str, alias: str, provider_id: str) -> None:
        if not alias:
            return
        await self._write(
            "INSERT OR REPLACE INTO provider_aliases (account_id, alias, provider_id) VALUES (?, ?, ?)",
            (account_id, alias, provider_id)
        )

    async def merge_providers(self, survivor_id: str, merged_ids: list[str]) -> Provider:
        """
        Fold duplicate providers into one survivor.

        Invoices, alerts, price caches and aliases move to the survivor; the
        merged names and tax ids become aliases. Fails without changes if two
        providers carry the same invoice code.
        """
        async with self.transaction():
            survivor = await self.get_provider(survivor_id)
            if survivor is None:
                raise LedgerError("merge_providers", ValueError(f"unknown provider {survivor_id}"))

            for merged_id in merged_ids:
                if merged_id == survivor_id:
                    continue
                merged = await self.get_provider(merged_id)
                if merged is None or merged.account_id != survivor.account_id:
                    raise LedgerError("merge_providers", ValueError(f"provider {merged_id} not mergeable"))

                await self._write(
                    "UPDATE OR IGNORE invoices SET provider_id = ? WHERE provider_id = ?",
                    (survivor_id, merged_id)
                )
                leftover = await self._fetchone(
                    "SELECT invoice_code FROM invoices WHERE provider_id = ? LIMIT 1", (merged_id,)
                )
                if leftover is not None:
                    raise LedgerError(
                        "merge_providers",
                        ValueError(f"invoice {leftover['invoice_code']} exists for both providers")
                    )

                await self._write(
                    "UPDATE OR IGNORE price_alerts SET provider_id = ? WHERE provider_id = ?",
                    (survivor_id, merged_id)
                )
                await self._write("DELETE FROM price_alerts WHERE provider_id = ?", (merged_id,))

                rows = await self._fetchall("SELECT * FROM material_providers WHERE provider_id = ?", (merged_id,))
                for row in rows:
                    cached = _row(MaterialProvider, row)
                    await self.upsert_material_provider(
                        cached.model_copy(update={"provider_id": survivor_id})
                    )
                await self._write("DELETE FROM material_providers WHERE provider_id = ?", (merged_id,))

                await self._write(
                    "UPDATE OR IGNORE provider_aliases SET provider_id = ? WHERE provider_id = ?",
                    (survivor_id, merged_id)
                )
                await self._write("DELETE FROM provider_aliases WHERE provider_id = ?", (merged_id,))
                await self._write("DELETE FROM providers WHERE id = ?", (merged_id,))

                await self.add_provider_alias(survivor.account_id, normalize_provider_name(merged.name), survivor_id)
                await self.add_provider_alias(survivor.account_id, merged.cif, survivor_id)
                logger.info(f"[LEDGER] Merged provider {merged.name} into {survivor.name}")

        return await self.get_provider(survivor_id)

    # Materials

    async def get_material(self, material_id: str) -> Optional[Material]:
        return _row(Material, await self._fetchone("SELECT * FROM materials WHERE id = ?", (material_id,)))

    async def list_materials(self, account_id: str) -> list[Material]:
        rows = await self._fetchall("SELECT * FROM materials WHERE account_id = ? ORDER BY created_at", (account_id,))
        return [_row(Material, r) for r in rows]

    async def find_material_by_code(self, account_id: str, code: str) -> Optional[Material]:
        row = await self._fetchone(
            "SELECT * FROM materials WHERE account_id = ? AND code = ?", (account_id, code)
        )
        return _row(Material, row)

    async def find_material_by_reference(self, account_id: str, reference_code: str) -> Optional[Material]:
        row = await self._fetchone(
            "SELECT * FROM materials WHERE account_id = ? AND reference_code = ? LIMIT 1",
            (account_id, reference_code)
        )
        return _row(Material, row)

    async def insert_material(self, material: Material) -> Material:
        """Insert a material; raises sqlite3.IntegrityError on a code collision."""
        now = datetime.now()
        material = material.model_copy(update={"created_at": now, "updated_at": now})
        await self._write(
            """
            INSERT INTO materials (id, account_id, code, reference_code, name, category, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (material.id, material.account_id, material.code, material.reference_code,
             material.name, material.category, now, now)
        )
        return material

    async def update_material_code(self, material_id: str, code: str, reference_code: Optional[str]) -> None:
        await self._write(
            "UPDATE materials SET code = ?, reference_code = ?, updated_at = ? WHERE id = ?",
            (code, reference_code, datetime.now(), material_id)
        )

    # Invoices

    async def get_invoice(self, invoice_id: str) -> Optional[Invoice]:
        return _row(Invoice, await self._fetchone("SELECT * FROM invoices WHERE id = ?", (invoice_id,)))

    async def find_invoice(self, invoice_code: str, provider_id: str) -> Optional[Invoice]:
        row = await self._fetchone(
            "SELECT * FROM invoices WHERE invoice_code = ? AND provider_id = ?", (invoice_code, provider_id)
        )
        return _row(Invoice, row)

    async def list_invoices(self, account_id: Optional[str] = None) -> list[Invoice]:
        if account_id:
            rows = await self._fetchall("SELECT * FROM invoices WHERE account_id = ? ORDER BY issue_date", (account_id,))
        else:
            rows = await self._fetchall("SELECT * FROM invoices ORDER BY issue_date")
        return [_row(Invoice, r) for r in rows]

    async def insert_invoice(self, invoice: Invoice) -> Invoice:
        invoice = invoice.model_copy(update={"created_at": datetime.now()})
        await self._write(
            """
            INSERT INTO invoices (id, account_id, invoice_code, provider_id, issue_date, total_amount,
                                  status, document_key, validation_notes, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (invoice.id, invoice.account_id, invoice.invoice_code, invoice.provider_id, invoice.issue_date,
             invoice.total_amount, invoice.status, invoice.document_key, invoice.validation_notes,
             invoice.created_at)
        )
        return invoice

    async def insert_invoice_item(self, item: InvoiceItem) -> InvoiceItem:
        await self._write(
            """
            INSERT INTO invoice_items (id, invoice_id, material_id, quantity, unit_price, total_price,
                                       item_date, work_order, description, line_number, is_material)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (item.id, item.invoice_id, item.material_id, item.quantity, item.unit_price, item.total_price,
             item.item_date, item.work_order, item.description, item.line_number, item.is_material)
        )
        return item

    async def list_invoice_items(self, invoice_id: str) -> list[InvoiceItem]:
        rows = await self._fetchall(
            "SELECT * FROM invoice_items WHERE invoice_id = ? ORDER BY line_number", (invoice_id,)
        )
        return [_row(InvoiceItem, r) for r in rows]

    async def count_rows(self, table: str) -> int:
        if table not in {"invoices", "invoice_items", "price_alerts", "providers", "materials", "unassigned_invoices"}:
            raise ValueError(f"Unknown table: {table}")
        row = await self._fetchone(f"SELECT COUNT(*) AS n FROM {table}")
        return row["n"]

    # Prices

    async def previous_price(self, material_id: str, provider_id: str, before: date) -> Optional[Decimal]:
        """Unit price of the latest observation strictly before a date."""
        row = await self._fetchone(
            """
            SELECT ii.unit_price FROM invoice_items ii
            JOIN invoices i ON i.id = ii.invoice_id
            WHERE ii.material_id = ? AND i.provider_id = ? AND ii.item_date < ? AND ii.is_material = 1
            ORDER BY ii.item_date DESC, i.created_at DESC
            LIMIT 1
            """,
            (material_id, provider_id, before)
        )
        return Decimal(row["unit_price"]) if row else None

    async def get_material_provider(self, material_id: str, provider_id: str) -> Optional[MaterialProvider]:
        row = await self._fetchone(
            "SELECT * FROM material_providers WHERE material_id = ? AND provider_id = ?",
            (material_id, provider_id)
        )
        return _row(MaterialProvider, row)

    async def upsert_material_provider(self, cached: MaterialProvider) -> bool:
        """Store the observation if it is newer than the cached one."""
        rowcount = await self._write(
            """
            INSERT INTO material_providers (material_id, provider_id, last_price, last_price_date)
            VALUES (?, ?, ?, ?)
            ON CONFLICT (material_id, provider_id) DO UPDATE
            SET last_price = excluded.last_price, last_price_date = excluded.last_price_date
            WHERE excluded.last_price_date > material_providers.last_price_date
            """,
            (cached.material_id, cached.provider_id, cached.last_price, cached.last_price_date)
        )
        return rowcount > 0

    async def insert_price_alert(self, alert: PriceAlert) -> bool:
        """Insert an alert; False when one already exists for that date."""
        rowcount = await self._write(
            """
            INSERT OR IGNORE INTO price_alerts (id, material_id, provider_id, invoice_id, old_price, new_price,
                                                percentage, effective_date, status, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (alert.id, alert.material_id, alert.provider_id, alert.invoice_id, alert.old_price,
             alert.new_price, alert.percentage, alert.effective_date, alert.status, datetime.now())
        )
        return rowcount > 0

    async def list_price_alerts(
        self, provider_id: Optional[str] = None, material_id: Optional[str] = None
    ) -> list[PriceAlert]:
        clauses, params = [], []
        if provider_id:
            clauses.append("provider_id = ?")
            params.append(provider_id)
        if material_id:
            clauses.append("material_id = ?")
            params.append(material_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = await self._fetchall(f"SELECT * FROM price_alerts {where} ORDER BY effective_date", params)
        return [_row(PriceAlert, r) for r in rows]

    # Unassigned and pending invoices

    async def insert_unassigned(
        self, user_id: str, document_key: str, file_name: Optional[str], payload: ExtractedInvoice
    ) -> UnassignedInvoice:
        unassigned = UnassignedInvoice(
            id=new_id(), user_id=user_id, document_key=document_key, file_name=file_name,
            payload=payload, created_at=datetime.now()
        )
        await self._write(
            """
            INSERT INTO unassigned_invoices (id, user_id, document_key, file_name, payload, created_at)
            VALUES (?, ?, ?, ?, ?, ?)
            """,
            (unassigned.id, user_id, document_key, file_name, payload, unassigned.created_at)
        )
        return unassigned

    async def list_unassigned(self, user_id: str) -> list[UnassignedInvoice]:
        rows = await self._fetchall(
            "SELECT * FROM unassigned_invoices WHERE user_id = ? ORDER BY created_at", (user_id,)
        )
        return [_row(UnassignedInvoice, r) for r in rows]

    async def add_pending_invoices(self, pending: list[PendingInvoice]) -> None:
        async with self.transaction():
            for placeholder in pending:
                await self._write(
                    """
                    INSERT OR REPLACE INTO pending_invoices (document_key, batch_id, account_id, file_name, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (placeholder.document_key, placeholder.batch_id, placeholder.account_id,
                     placeholder.file_name, placeholder.created_at or datetime.now())
                )

    async def get_pending_invoice(self, document_key: str) -> Optional[PendingInvoice]:
        row = await self._fetchone("SELECT * FROM pending_invoices WHERE document_key = ?", (document_key,))
        return _row(PendingInvoice, row)

    async def list_pending_invoices(self, batch_id: str) -> list[PendingInvoice]:
        rows = await self._fetchall("SELECT * FROM pending_invoices WHERE batch_id = ?", (batch_id,))
        return [_row(PendingInvoice, r) for r in rows]

    async def clear_pending_invoices(self, document_keys: Iterable[str]) -> int:
        cleared = 0
        async with self.transaction():
            for key in document_keys:
                cleared += await self._write("DELETE FROM pending_invoices WHERE document_key = ?", (key,))
        return cleared

    # Batch jobs

    async def insert_batch_job(self, job: BatchJob) -> BatchJob:
        now = datetime.now()
        job = job.model_copy(update={"created_at": job.created_at or now, "updated_at": now})
        await self._write(
            """
            INSERT INTO batch_jobs (id, user_id, status, purpose, total_files, processed_files, successful_files,
                                    failed_files, blocked_files, errors, input_file, output_file, started_at,
                                    completed_at, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (job.id, job.user_id, job.status, job.purpose, job.total_files, job.processed_files,
             job.successful_files, job.failed_files, job.blocked_files, self._dump_errors(job.errors),
             job.input_file, job.output_file, job.started_at, job.completed_at, job.created_at, job.updated_at)
        )
        return job

    async def get_batch_job(self, batch_id: str) -> Optional[BatchJob]:
        return _row(BatchJob, await self._fetchone("SELECT * FROM batch_jobs WHERE id = ?", (batch_id,)))

    async def list_active_batches(self, user_id: Optional[str] = None, unclaimed_only: bool = False) -> list[BatchJob]:
        """PENDING or PROCESSING jobs, oldest first."""
        sql = "SELECT * FROM batch_jobs WHERE status IN ('PENDING', 'PROCESSING')"
        params: list[Any] = []
        if user_id:
            sql += " AND user_id = ?"
            params.append(user_id)
        if unclaimed_only:
            sql += " AND completed_at IS NULL"
        sql += " ORDER BY created_at"
        return [_row(BatchJob, r) for r in await self._fetchall(sql, params)]

    async def list_batches(self, user_id: str, limit: int = 100) -> list[BatchJob]:
        rows = await self._fetchall(
            "SELECT * FROM batch_jobs WHERE user_id = ? ORDER BY created_at DESC LIMIT ?", (user_id, limit)
        )
        return [_row(BatchJob, r) for r in rows]

    async def set_batch_status(
        self,
        batch_id: str,
        status: BatchStatus,
        completed_at: Optional[datetime] = None,
        started_at: Optional[datetime] = None
    ) -> bool:
        """Move a non-terminal job to a new status."""
        terminal = ",".join(f"'{s.value}'" for s in TERMINAL_BATCH_STATUSES)
        rowcount = await self._write(
            f"""
            UPDATE batch_jobs
            SET status = ?, completed_at = COALESCE(?, completed_at), started_at = COALESCE(started_at, ?),
                updated_at = ?
            WHERE id = ? AND status NOT IN ({terminal})
            """,
            (status, completed_at, started_at, datetime.now(), batch_id)
        )
        return rowcount > 0

    async def claim_completion(self, batch_id: str, when: Optional[datetime] = None) -> bool:
        """Set completed_at once; only the first caller gets True."""
        rowcount = await self._write(
            "UPDATE batch_jobs SET completed_at = ?, updated_at = ? WHERE id = ? AND completed_at IS NULL",
            (when or datetime.now(), datetime.now(), batch_id)
        )
        return rowcount > 0

    async def set_batch_output(self, batch_id: str, output_file: Optional[str]) -> None:
        await self._write(
            "UPDATE batch_jobs SET output_file = ?, updated_at = ? WHERE id = ?",
            (output_file, datetime.now(), batch_id)
        )

    async def record_batch_outcomes(
        self,
        batch_id: str,
        successful: int = 0,
        failed: int = 0,
        blocked: int = 0,
        errors: Optional[list[BatchErrorDetail]] = None
    ) -> None:
        """Add to the counters and append structured errors."""
        async with self.transaction():
            await self._write(
                """
                UPDATE batch_jobs
                SET processed_files = processed_files + ?, successful_files = successful_files + ?,
                    failed_files = failed_files + ?, blocked_files = blocked_files + ?, updated_at = ?
                WHERE id = ?
                """,
                (successful + failed + blocked, successful, failed, blocked, datetime.now(), batch_id)
            )
            if errors:
                await self.append_batch_errors(batch_id, errors)

    async def reclassify_successes_as_failures(
        self, batch_id: str, count: int, errors: list[BatchErrorDetail]
    ) -> None:
        """Move documents already counted as successful to failed."""
        async with self.transaction():
            await self._write(
                """
                UPDATE batch_jobs
                SET successful_files = successful_files - ?, failed_files = failed_files + ?, updated_at = ?
                WHERE id = ?
                """,
                (count, count, datetime.now(), batch_id)
            )
            await self.append_batch_errors(batch_id, errors)

    async def append_batch_errors(self, batch_id: str, errors: list[BatchErrorDetail]) -> None:
        async with self.transaction():
            row = await self._fetchone("SELECT errors FROM batch_jobs WHERE id = ?", (batch_id,))
            if row is None:
                return
            existing = json.loads(row["errors"] or "[]")
            existing.extend(e.model_dump(mode="json") for e in errors)
            await self._write("UPDATE batch_jobs SET errors = ? WHERE id = ?", (json.dumps(existing), batch_id))

    @staticmethod
    def _dump_errors(errors: list[BatchErrorDetail]) -> str:
        return json.dumps([e.model_dump(mode="json") for e in errors])

    # Batch items

    async def insert_batch_items(self, items: list[BatchItem]) -> None:
        async with self.transaction():
            for item in items:
                await self._write(
                    """
                    INSERT INTO batch_items (id, batch_id, document_key, file_name, processed, extracted_payload,
                                             error_message, processed_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (item.id, item.batch_id, item.document_key, item.file_name, item.processed,
                     item.extracted_payload, item.error_message, item.processed_at)
                )

    async def list_batch_items(self, batch_id: str, unprocessed_only: bool = False) -> list[BatchItem]:
        sql = "SELECT * FROM batch_items WHERE batch_id = ?"
        if unprocessed_only:
            sql += " AND processed = 0"
        rows = await self._fetchall(sql + " ORDER BY rowid", (batch_id,))
        return [_row(BatchItem, r) for r in rows]

    async def get_batch_item(self, batch_id: str, document_key: str) -> Optional[BatchItem]:
        row = await self._fetchone(
            "SELECT * FROM batch_items WHERE batch_id = ? AND document_key = ?", (batch_id, document_key)
        )
        return _row(BatchItem, row)

    async def mark_item_processed(
        self,
        item_id: str,
        error_message: Optional[str] = None,
        payload: Optional[ExtractedInvoice] = None
    ) -> bool:
        """Mark an item processed; False if it already was."""
        rowcount = await self._write(
            """
            UPDATE batch_items
            SET processed = 1, error_message = ?, extracted_payload = ?, processed_at = ?
            WHERE id = ? AND processed = 0
            """,
            (error_message, payload, datetime.now(), item_id)
        )
        return rowcount > 0

    async def clear_item_payload(self, item_id: str, error_message: Optional[str] = None) -> None:
        await self._write(
            "UPDATE batch_items SET extracted_payload = NULL, error_message = COALESCE(?, error_message) WHERE id = ?",
            (error_message, item_id)
        )

    async def mark_unprocessed_items(self, batch_id: str, error_message: str) -> list[BatchItem]:
        """Mark every remaining item processed with an error; returns them."""
        async with self.transaction():
            pending = await self.list_batch_items(batch_id, unprocessed_only=True)
            for item in pending:
                await self.mark_item_processed(item.id, error_message)
        return pending

    # Batch links

    async def add_batch_links(self, links: list[BatchLink]) -> None:
        async with self.transaction():
            for link in links:
                await self._write(
                    "INSERT OR IGNORE INTO batch_links (parent_batch_id, child_batch_id, document_key) VALUES (?, ?, ?)",
                    (link.parent_batch_id, link.child_batch_id, link.document_key)
                )

    async def links_for_child(self, child_batch_id: str) -> list[BatchLink]:
        rows = await self._fetchall("SELECT * FROM batch_links WHERE child_batch_id = ?", (child_batch_id,))
        return [_row(BatchLink, r) for r in rows]

    async def links_for_parent(self, parent_batch_id: str) -> list[BatchLink]:
        rows = await self._fetchall("SELECT * FROM batch_links WHERE parent_batch_id = ?", (parent_batch_id,))
        return [_row(BatchLink, r) for r in rows]


__all__ = ["Ledger", "new_id", "SCHEMA"]
