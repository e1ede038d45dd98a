"""Tests for the Gemini extraction service wrapper, with a mocked client."""
from types import SimpleNamespace
from unittest.mock import AsyncMock, MagicMock, patch

import pytest

from invoice_ledger.core.exceptions import EmptyExtractionError, ParsingError, TruncatedResponseError
from invoice_ledger.core.extraction import ExtractionService, RemoteJob, map_remote_state
from invoice_ledger.core.models import BatchStatus, ExtractionStrategy

from conftest import line_response, make_document


def gemini_response(text, finish_reason="STOP"):
    return SimpleNamespace(
        text=text,
        candidates=[SimpleNamespace(finish_reason=SimpleNamespace(name=finish_reason))],
    )


def items(first, last):
    return [f"ITEM|Material {n}|~|1|1|{n}.00|{n}.00|~|~|~|{n}" for n in range(first, last + 1)]


@pytest.fixture
def mock_client():
    client = MagicMock()
    client.aio.models.generate_content = AsyncMock()
    client.aio.files.upload = AsyncMock()
    client.aio.files.download = AsyncMock()
    client.aio.files.delete = AsyncMock()
    client.aio.batches.create = AsyncMock()
    client.aio.batches.get = AsyncMock()
    client.aio.batches.cancel = AsyncMock()
    return client


@pytest.fixture
def service(mock_client, settings):
    return ExtractionService(mock_client, settings)


class TestSingleExtraction:
    """Test ExtractionService.extract."""

    @pytest.mark.asyncio
    async def test_successful_extraction(self, service, mock_client):
        mock_client.aio.models.generate_content.return_value = gemini_response(line_response())

        invoice = await service.extract(make_document())

        assert invoice.invoice_code == "F-001"
        assert len(invoice.items) == 1
        kwargs = mock_client.aio.models.generate_content.call_args.kwargs
        assert kwargs["model"] == "gemini-2.5-flash"
        assert kwargs["config"].max_output_tokens == 8192

    @pytest.mark.asyncio
    async def test_truncated_answer_is_continued(self, service, mock_client):
        """Test that a MAX_TOKENS answer gets one continuation and merges by ordinal."""
        mock_client.aio.models.generate_content.side_effect = [
            gemini_response(line_response(items=items(1, 3)), "MAX_TOKENS"),
            gemini_response("\n".join(items(3, 5))),
        ]

        invoice = await service.extract(make_document())

        assert [item.line_number for item in invoice.items] == [1, 2, 3, 4, 5]
        assert mock_client.aio.models.generate_content.call_count == 2
        continuation_prompt = mock_client.aio.models.generate_content.call_args.kwargs["contents"][-1]
        assert "after ITEM line 3" in continuation_prompt

    @pytest.mark.asyncio
    async def test_truncated_continuation_is_rejected(self, service, mock_client):
        mock_client.aio.models.generate_content.side_effect = [
            gemini_response(line_response(items=items(1, 2)), "MAX_TOKENS"),
            gemini_response("\n".join(items(3, 4)), "MAX_TOKENS"),
        ]

        with pytest.raises(TruncatedResponseError) as exc_info:
            await service.extract(make_document())
        assert exc_info.value.items_received == 4

    @pytest.mark.asyncio
    async def test_empty_answer(self, service, mock_client):
        mock_client.aio.models.generate_content.return_value = gemini_response("")
        with pytest.raises(EmptyExtractionError):
            await service.extract(make_document())

    @pytest.mark.asyncio
    async def test_answer_without_header(self, service, mock_client):
        mock_client.aio.models.generate_content.return_value = gemini_response("\n".join(items(1, 2)))
        with pytest.raises(ParsingError) as exc_info:
            await service.extract(make_document())
        assert "invoiceCode" in exc_info.value.missing

    @pytest.mark.asyncio
    async def test_rate_limit_is_retried(self, service, mock_client):
        class Throttled(Exception):
            code = 429

        mock_client.aio.models.generate_content.side_effect = [
            Throttled("quota"),
            gemini_response(line_response()),
        ]
        with patch('asyncio.sleep', new_callable=AsyncMock):
            invoice = await service.extract(make_document())
        assert invoice.invoice_code == "F-001"

    @pytest.mark.asyncio
    async def test_json_strategy(self, mock_client, settings):
        settings = settings.model_copy(update={"extraction_strategy": ExtractionStrategy.JSON})
        service = ExtractionService(mock_client, settings)
        mock_client.aio.models.generate_content.return_value = gemini_response(
            '{"invoice_code": "J-1", "issue_date": "2024-05-01", "total_amount": 10,'
            ' "provider": {"name": "Acme"}, "items": [{"material_name": "Arena", "total_price": 10}]}'
        )

        invoice = await service.extract(make_document())

        assert invoice.invoice_code == "J-1"
        config = mock_client.aio.models.generate_content.call_args.kwargs["config"]
        assert config.response_mime_type == "application/json"

    @pytest.mark.asyncio
    async def test_debug_responses_are_saved(self, mock_client, settings):
        settings = settings.model_copy(update={"debug_responses": True})
        service = ExtractionService(mock_client, settings)
        mock_client.aio.models.generate_content.return_value = gemini_response(line_response())

        document = make_document()
        await service.extract(document)

        saved = list((settings.logs_directory / "responses").iterdir())
        assert [p.name for p in saved] == [f"{document.key}_extraction.txt"]


class TestBatchCalls:
    """Test the batch job wrappers."""

    @pytest.mark.asyncio
    async def test_upload_and_create(self, service, mock_client, tmp_path):
        payload = tmp_path / "chunk.jsonl"
        payload.write_text("{}\n", encoding="utf-8")
        mock_client.aio.files.upload.return_value = SimpleNamespace(name="files/abc")
        mock_client.aio.batches.create.return_value = SimpleNamespace(
            name="batches/1", state=SimpleNamespace(name="JOB_STATE_PENDING"), dest=None, error=None
        )

        file_name = await service.upload_jsonl(payload, "invoices-1")
        job = await service.create_batch_job(file_name, "invoices-1")

        assert file_name == "files/abc"
        assert job.name == "batches/1"
        assert job.status == BatchStatus.PENDING
        assert mock_client.aio.batches.create.call_args.kwargs["src"] == "files/abc"

    @pytest.mark.asyncio
    async def test_poll_reports_output_file(self, service, mock_client):
        mock_client.aio.batches.get.return_value = SimpleNamespace(
            name="batches/1",
            state=SimpleNamespace(name="JOB_STATE_SUCCEEDED"),
            dest=SimpleNamespace(file_name="files/out", inlined_responses=None),
            error=None,
        )
        job = await service.get_batch_job("batches/1")
        assert job.status == BatchStatus.COMPLETED
        assert job.dest_file_name == "files/out"

    @pytest.mark.asyncio
    async def test_download_output(self, service, mock_client, tmp_path):
        mock_client.aio.files.download.return_value = b'{"key": "a"}\n'
        target = await service.download_output("files/out", tmp_path / "scratch" / "out.jsonl")
        assert target.read_bytes() == b'{"key": "a"}\n'


@pytest.mark.parametrize("state,expected", [
    ("JOB_STATE_PENDING", BatchStatus.PENDING),
    ("JOB_STATE_QUEUED", BatchStatus.PENDING),
    ("JOB_STATE_RUNNING", BatchStatus.PROCESSING),
    ("JOB_STATE_SUCCEEDED", BatchStatus.COMPLETED),
    ("JOB_STATE_FAILED", BatchStatus.FAILED),
    ("JOB_STATE_EXPIRED", BatchStatus.EXPIRED),
    ("JOB_STATE_CANCELLED", BatchStatus.CANCELLED),
    ("BATCH_STATE_RUNNING", BatchStatus.PROCESSING),
    ("JobState.JOB_STATE_SUCCEEDED", BatchStatus.COMPLETED),
    ("JOB_STATE_PAUSED", None),
    (None, None),
])
def test_map_remote_state(state, expected):
    assert map_remote_state(state) == expected


def test_remote_job_status():
    assert RemoteJob(name="batches/1", state="JOB_STATE_FAILED").status == BatchStatus.FAILED
