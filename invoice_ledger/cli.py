"""Command line entry point for the invoice ledger pipeline."""
import argparse
import asyncio
import logging
import sys
import time
from contextlib import asynccontextmanager
from pathlib import Path

from dotenv import load_dotenv
from rich import box
from rich.console import Console
from rich.table import Table

from .config import Settings, load_settings
from .core.aggregator import BatchResultAggregator
from .core.batches import BatchLifecycleManager
from .core.exceptions import InvoiceLedgerError
from .core.extraction import ExtractionService, create_client
from .core.ingestion import IngestionEngine
from .core.models import BatchProgressInfo, BatchStatus
from .core.rate_limit import RetryPolicy
from .core.resolver import EntityResolver
from .core.uploads import UploadSession
from .logging_config import setup_logging
from .notifications import LoggingNotifier
from .storage.documents import collect_documents, load_document
from .storage.ledger import Ledger
from .storage.scratch import ScratchArea

logger = logging.getLogger("invoice_ledger.cli")
console = Console()


class Services:
    """Wired pipeline components sharing one ledger connection."""

    def __init__(self, settings: Settings, ledger: Ledger):
        self.settings = settings
        self.ledger = ledger
        retry = RetryPolicy.from_settings(settings)
        notifier = LoggingNotifier()

        self.extraction = ExtractionService(create_client(settings), settings, retry)
        self.resolver = EntityResolver(ledger, settings.blocked_providers)
        self.ingestion = IngestionEngine(ledger, self.resolver)
        self.scratch = ScratchArea(settings.scratch_directory)
        self.aggregator = BatchResultAggregator(
            ledger, self.extraction, self.ingestion, self.scratch, settings, notifier
        )
        self.batches = BatchLifecycleManager(
            ledger, self.extraction, self.aggregator, self.scratch, settings, notifier
        )
        self.uploads = UploadSession(self.extraction, self.ingestion, settings, notifier)


@asynccontextmanager
async def open_services(settings: Settings):
    async with Ledger(settings.ledger_path) as ledger:
        yield Services(settings, ledger)


def _load_documents(paths: list[str], settings: Settings) -> list:
    documents = []
    for path in collect_documents(Path(p) for p in paths):
        try:
            documents.append(load_document(path, settings.max_document_mb))
        except InvoiceLedgerError as e:
            logger.error(f"[LOAD] {e.message}")
    return documents


STATUS_COLORS = {
    BatchStatus.PENDING: "yellow",
    BatchStatus.PROCESSING: "cyan",
    BatchStatus.COMPLETED: "green",
    BatchStatus.FAILED: "red",
    BatchStatus.CANCELLED: "magenta",
    BatchStatus.EXPIRED: "red",
}


def progress_table(batches: list[BatchProgressInfo], title: str = "Batches") -> Table:
    """Render batch progress as a rich table."""
    table = Table(title=title, box=box.SIMPLE_HEAVY)
    table.add_column("Batch", style="cyan", no_wrap=True)
    table.add_column("Status")
    table.add_column("Purpose", style="magenta")
    table.add_column("Processed", justify="right")
    table.add_column("OK", justify="right", style="green")
    table.add_column("Failed", justify="right", style="red")
    table.add_column("Blocked", justify="right", style="yellow")
    table.add_column("Created")

    for info in batches:
        color = STATUS_COLORS.get(info.status, "white")
        table.add_row(
            info.id,
            f"[{color}]{info.status.value}[/{color}]",
            info.purpose.value,
            f"{info.processed_files:,} / {info.total_files:,}",
            f"{info.successful_files:,}",
            f"{info.failed_files:,}",
            f"{info.blocked_files:,}",
            info.created_at.strftime("%Y-%m-%d %H:%M") if info.created_at else "-",
        )
    return table


def _print_progress(batches: list[BatchProgressInfo], title: str = "Batches") -> None:
    if not batches:
        console.print("[dim]No batches.[/dim]")
        return
    console.print(progress_table(batches, title))
    for info in batches:
        for error in info.errors[-5:]:
            console.print(
                f"  [red]{error.kind.value}[/red] {info.id[:24]} "
                f"{error.file_name or error.invoice_code or '-'}: {error.message}"
            )


async def cmd_submit(args, settings: Settings) -> int:
    documents = _load_documents(args.paths, settings)
    if not documents:
        console.print("No documents found.")
        return 1
    async with open_services(settings) as services:
        services.scratch.cleanup_stale()
        result = await services.batches.submit_documents(documents, args.user, args.account)
        await services.batches.drain()
    console.print(f"Submitted {len(documents)} documents, first batch {result.batch_id}")
    return 0


async def cmd_upload(args, settings: Settings) -> int:
    documents = _load_documents(args.paths, settings)
    if not documents:
        console.print("No documents found.")
        return 1
    async with open_services(settings) as services:
        result = await services.uploads.submit_documents_sync(documents, args.user, args.account)
    for outcome in result.results:
        if outcome.success:
            note = " (duplicate)" if outcome.duplicate else f" ({outcome.alerts_created} alerts)"
            console.print(f"[green]OK[/green]       {outcome.file_name}: {outcome.invoice_code}{note}")
        else:
            label = "BLOCKED" if outcome.blocked else "FAILED"
            console.print(f"[red]{label:<8}[/red] {outcome.file_name}: {outcome.error.message}")
    console.print(f"{result.successful} ok, {result.failed} failed, {result.blocked} blocked")
    return 0 if result.failed == 0 else 2


async def cmd_reconcile(args, settings: Settings) -> int:
    async with open_services(settings) as services:
        if args.watch:
            try:
                await services.batches.watch()
            except asyncio.CancelledError:
                pass
            return 0
        progress = await services.batches.reconcile()
    _print_progress(progress)
    return 0


async def cmd_status(args, settings: Settings) -> int:
    async with open_services(settings) as services:
        active = await services.batches.get_active_batches(args.user)
        _print_progress(active, "Active batches")
        for info in active:
            pending = await services.ledger.list_pending_invoices(info.id)
            if pending:
                console.print(f"  [dim]{info.id[:24]}: {len(pending)} invoices in flight[/dim]")
    return 0


async def cmd_history(args, settings: Settings) -> int:
    async with open_services(settings) as services:
        _print_progress(await services.batches.get_batch_history(args.user), "Upload sessions")
    return 0


async def cmd_cancel(args, settings: Settings) -> int:
    async with open_services(settings) as services:
        _print_progress([await services.batches.cancel_batch(args.batch_id)])
    return 0


async def cmd_add_account(args, settings: Settings) -> int:
    async with Ledger(settings.ledger_path) as ledger:
        account = await ledger.create_account(args.user, args.name, args.cif)
    console.print(f"Created account {account.id} ({account.name})")
    return 0


async def cmd_accounts(args, settings: Settings) -> int:
    async with Ledger(settings.ledger_path) as ledger:
        accounts = await ledger.list_accounts(args.user)
    if not accounts:
        console.print("[dim]No accounts.[/dim]")
        return 0
    table = Table(title="Accounts", box=box.SIMPLE_HEAVY)
    table.add_column("Id", style="cyan", no_wrap=True)
    table.add_column("Name")
    table.add_column("CIF", style="magenta")
    for account in accounts:
        table.add_row(account.id, account.name, account.cif or "-")
    console.print(table)
    return 0


async def cmd_merge_providers(args, settings: Settings) -> int:
    async with Ledger(settings.ledger_path) as ledger:
        provider = await ledger.merge_providers(args.survivor, args.merged)
    console.print(f"Merged into {provider.id} ({provider.name})")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="invoice-ledger",
        description="Invoice extraction, batch reconciliation and price tracking"
    )
    parser.add_argument('--logs', default=None, help='Logs folder (default: settings.logs_directory)')
    parser.add_argument('--log-level', default="INFO", help='Console log level (default: INFO)')
    sub = parser.add_subparsers(dest="command", required=True)

    submit = sub.add_parser("submit", help="Submit documents as remote batch jobs")
    submit.add_argument("paths", nargs="+", help="Files or folders of PDF/image invoices")
    submit.add_argument("--user", required=True, help="Owning user id")
    submit.add_argument("--account", default=None, help="Account used when the invoice names none")
    submit.set_defaults(handler=cmd_submit)

    upload = sub.add_parser("upload", help="Extract and ingest documents immediately")
    upload.add_argument("paths", nargs="+", help="Files or folders of PDF/image invoices")
    upload.add_argument("--user", required=True, help="Owning user id")
    upload.add_argument("--account", default=None, help="Account used when the invoice names none")
    upload.set_defaults(handler=cmd_upload)

    reconcile = sub.add_parser("reconcile", help="Poll active batch jobs and ingest finished ones")
    reconcile.add_argument("--watch", action="store_true", help="Keep polling every poll interval")
    reconcile.set_defaults(handler=cmd_reconcile)

    status = sub.add_parser("status", help="Show active batches")
    status.add_argument("--user", required=True)
    status.set_defaults(handler=cmd_status)

    history = sub.add_parser("history", help="Show recent upload sessions")
    history.add_argument("--user", required=True)
    history.set_defaults(handler=cmd_history)

    cancel = sub.add_parser("cancel", help="Cancel a batch job")
    cancel.add_argument("batch_id")
    cancel.set_defaults(handler=cmd_cancel)

    accounts = sub.add_parser("accounts", help="List account scopes")
    accounts.add_argument("--user", required=True)
    accounts.set_defaults(handler=cmd_accounts)

    account = sub.add_parser("add-account", help="Register an account scope")
    account.add_argument("--user", required=True)
    account.add_argument("--name", required=True)
    account.add_argument("--cif", default=None, help="Account tax id")
    account.set_defaults(handler=cmd_add_account)

    merge = sub.add_parser("merge-providers", help="Fold duplicate providers into one")
    merge.add_argument("survivor", help="Provider id to keep")
    merge.add_argument("merged", nargs="+", help="Provider ids to merge away")
    merge.set_defaults(handler=cmd_merge_providers)

    return parser


def main(argv=None) -> int:
    load_dotenv()
    args = build_parser().parse_args(argv)
    try:
        settings = load_settings()
    except InvoiceLedgerError as e:
        print(f"Error: {e.message}", file=sys.stderr)
        return 2
    setup_logging(Path(args.logs) if args.logs else settings.logs_directory, level=args.log_level)

    if settings.use_vertex_ai:
        logger.info(f"Using Vertex AI - Project: {settings.google_cloud_project}, Location: {settings.google_cloud_location}")

    start_time = time.time()
    try:
        code = asyncio.run(args.handler(args, settings))
    except KeyboardInterrupt:
        logger.warning("Interrupted")
        return 130
    except InvoiceLedgerError as e:
        logger.error(e.message)
        return 1
    except ValueError as e:
        logger.error(str(e))
        return 1
    logger.debug(f"{args.command} finished in {time.time() - start_time:.2f} seconds")
    return code


if __name__ == "__main__":
    sys.exit(main())
