"""Tests for the extraction protocol codec."""
import base64
from datetime import date
from decimal import Decimal

import pytest

from invoice_ledger.core.codec import (
    NULL_SENTINEL,
    ExtractionContext,
    complete_item_amounts,
    decode_batch_response,
    decode_json_response,
    decode_or_raise,
    decode_response,
    decode_validation,
    encode_invoice,
    encode_request,
    encode_validation_request,
    is_truncated,
    merge_continuation,
    parse_date,
    parse_decimal,
    parse_response,
    response_text,
)
from invoice_ledger.core.exceptions import EmptyExtractionError, ParsingError, TruncatedResponseError
from invoice_ledger.core.models import ExtractionStrategy

from conftest import batch_record, line_response, make_document, make_invoice, make_item


class TestDecodeResponse:
    """Line protocol decoding."""

    def test_full_response(self):
        text = line_response(items=[
            "ITEM|Cemento gris 25kg|CEM-25|1|10|5.50|55.00|2024-01-08|OB-12|Palet|1",
            "ITEM|Transporte|~|0|1|30|30|~|~|~|2",
        ])
        invoice = decode_response(text)

        assert invoice.invoice_code == "F-001"
        assert invoice.issue_date == date(2024, 1, 10)
        assert invoice.total_amount == Decimal("100.00")
        assert invoice.provider.name == "Suministros Garcia SL"
        assert invoice.provider.cif == "B87654321"
        assert invoice.provider.email is None
        assert invoice.client.cif == "B11111111"

        cement, transport = invoice.items
        assert cement.material_code == "CEM-25"
        assert cement.quantity == Decimal("10.00")
        assert cement.unit_price == Decimal("5.50")
        assert cement.item_date == date(2024, 1, 8)
        assert cement.work_order == "OB-12"
        assert cement.is_material is True
        assert transport.is_material is False
        assert transport.line_number == 2

    def test_sentinel_never_leaves_codec(self):
        text = line_response(items=["ITEM|Arena|~|1|2|10|20|~|~|~|1"])
        invoice = decode_response(text)
        item = invoice.items[0]
        for value in (item.material_code, item.item_date, item.work_order, item.description):
            assert value is None
        assert NULL_SENTINEL not in invoice.model_dump_json()

    def test_malformed_item_line_is_dropped(self):
        text = line_response(items=[
            "ITEM|Cemento|~|1|1|10|10|~|~|~|1",
            "ITEM|Arena|~|1|1|20|20|~|~|2",
            "ITEM|Grava|~|1|1|30|30|~|~|~|3",
        ])
        parsed = parse_response(text)
        assert parsed.dropped_lines == 1
        assert [item.material_name for item in parsed.items] == ["Cemento", "Grava"]

        invoice = parsed.to_invoice()
        assert invoice.invoice_code == "F-001"
        assert invoice.provider.name == "Suministros Garcia SL"

    def test_malformed_header_fails_decoding(self):
        text = "HEADER|F-001|2024-01-10\nPROVIDER|Acme|B1|~|~|~\nITEM|Arena|~|1|1|1|1|~|~|~|1"
        assert decode_response(text) is None
        with pytest.raises(ParsingError) as exc_info:
            decode_or_raise(text, "doc-1")
        assert "invoiceCode" in exc_info.value.missing

    def test_missing_items_fails_decoding(self):
        assert decode_response(line_response(items=[])) is None

    def test_empty_response_is_empty_extraction(self):
        with pytest.raises(EmptyExtractionError):
            decode_or_raise("", "doc-1")

    def test_unknown_lines_and_fences_are_ignored(self):
        text = "```\nSure, here you go:\n" + line_response() + "\n```"
        invoice = decode_response(text)
        assert invoice is not None
        assert len(invoice.items) == 1

    def test_items_without_ordinal_get_position(self):
        parsed = parse_response(
            "ITEM|A|~|1|1|1|1|~|~|~|~\nITEM|B|~|1|1|1|1|~|~|~|~", first_ordinal=7
        )
        assert [item.line_number for item in parsed.items] == [7, 8]

    @pytest.mark.parametrize("ordinal", ["Infinity", "-inf", "NaN", "1e999999"])
    def test_unusable_ordinal_falls_back_to_position(self, ordinal):
        parsed = parse_response(f"ITEM|A|~|1|1|1|1|~|~|~|{ordinal}\nITEM|B|~|1|1|1|1|~|~|~|~")
        assert [item.line_number for item in parsed.items] == [1, 2]


class TestNumericFields:
    """Amount parsing and defaults."""

    @pytest.mark.parametrize("raw,expected", [
        ("1234.56", Decimal("1234.56")),
        ("1.234,56", Decimal("1234.56")),
        ("1,234.56", Decimal("1234.56")),
        ("12,5", Decimal("12.5")),
        ("45 €", Decimal("45")),
        ("~", None),
        ("abc", None),
    ])
    def test_parse_decimal(self, raw, expected):
        assert parse_decimal(raw) == expected

    def test_parse_date_formats(self):
        assert parse_date("2024-03-05") == date(2024, 3, 5)
        assert parse_date("05/03/2024") == date(2024, 3, 5)
        assert parse_date("31/02/2024") is None
        assert parse_date("~") is None

    def test_missing_quantity_defaults_to_one(self):
        assert complete_item_amounts(None, Decimal("12"), None) == (
            Decimal("1.00"), Decimal("12.00"), Decimal("12.00")
        )

    def test_unit_price_back_computed_from_total(self):
        quantity, unit_price, total = complete_item_amounts(Decimal("4"), None, Decimal("50"))
        assert unit_price == Decimal("12.50")
        assert total == Decimal("50.00")

    def test_total_computed_from_unit_price(self):
        assert complete_item_amounts(Decimal("3"), Decimal("10"), None)[2] == Decimal("30.00")

    def test_unresolved_prices_default_to_zero(self):
        parsed = parse_response("ITEM|Arena|~|1|~|~|~|~|~|~|1")
        item = parsed.items[0]
        assert item.quantity == Decimal("1.00")
        assert item.unit_price == Decimal("0.00")
        assert item.total_price == Decimal("0.00")


class TestRoundTrip:
    """Encoding an extraction back to lines keeps the load-bearing values."""

    def test_reencode_keeps_codes_and_prices(self):
        original = make_invoice(
            total="1234.57",
            items=[
                make_item("Cemento | gris", "5.505", "3", code="CEM25", line_number=1),
                make_item("Arena", "0.10", "250", line_number=2),
            ],
        )
        decoded = decode_response(encode_invoice(original))

        assert decoded.invoice_code == original.invoice_code
        assert decoded.total_amount == Decimal("1234.57")
        assert [i.unit_price for i in decoded.items] == [Decimal("5.51"), Decimal("0.10")]
        assert [i.total_price for i in decoded.items] == [i.total_price for i in original.items]
        assert decoded.items[0].material_name == "Cemento / gris"


class TestContinuation:
    """Merging a truncated answer with its continuation."""

    def test_merge_deduplicates_by_ordinal(self):
        original = parse_response(line_response(items=[
            "ITEM|A|~|1|1|1.00|1.00|~|~|~|1",
            "ITEM|B|~|1|1|2.00|2.00|~|~|~|2",
            "ITEM|C|~|1|1|3.00|3.00|~|~|~|3",
        ]))
        continuation = parse_response(
            "ITEM|C again|~|1|1|9.99|9.99|~|~|~|3\n"
            "ITEM|D|~|1|1|4.00|4.00|~|~|~|4\n"
            "ITEM|E|~|1|1|5.00|5.00|~|~|~|5",
            first_ordinal=original.last_ordinal + 1,
        )
        merged = merge_continuation(original, continuation)

        assert [item.line_number for item in merged.items] == [1, 2, 3, 4, 5]
        assert merged.items[2].material_name == "C"
        assert merged.to_invoice().invoice_code == "F-001"

    def test_last_ordinal_of_empty_response(self):
        assert parse_response("").last_ordinal == 0


class TestRequests:
    """Request encoding."""

    def test_batch_line_carries_document_and_prompt(self):
        document = make_document("albaran.pdf", b"%PDF-1.4 data")
        context = ExtractionContext(model="gemini-2.5-flash", max_output_tokens=4096)
        line = encode_request(document, context).to_batch_line()

        assert line["key"] == document.key
        request = line["request"]
        inline = request["contents"][0]["parts"][0]["inlineData"]
        assert inline["mimeType"] == "application/pdf"
        assert base64.b64decode(inline["data"]) == b"%PDF-1.4 data"
        assert request["generationConfig"]["maxOutputTokens"] == 4096
        assert "HEADER|invoiceCode" in request["systemInstruction"]["parts"][0]["text"]

    def test_continuation_prompt_resumes_after_last_item(self):
        context = ExtractionContext(model="m", continuation_from=12)
        request = encode_request(make_document(), context)
        assert "after ITEM line 12" in request.prompt
        assert "starting at line 13" in request.prompt

    def test_json_strategy_uses_schema(self):
        context = ExtractionContext(model="m", strategy=ExtractionStrategy.JSON)
        kwargs = encode_request(make_document(), context).to_generate_kwargs()
        assert kwargs["model"] == "m"
        assert kwargs["config"].response_mime_type == "application/json"

    def test_validation_request_embeds_encoded_invoice(self):
        request = encode_validation_request("doc-1", make_invoice(code="F-777"), "gemini-2.5-flash")
        assert request.document_data is None
        assert "HEADER|F-777|2024-01-10|100.00" in request.prompt


class TestBatchRecords:
    """Decoding batch output records."""

    def test_response_text_skips_thoughts(self):
        response = {"candidates": [{"content": {"parts": [
            {"text": "thinking...", "thought": True},
            {"text": "HEADER|A|2024-01-01|1"},
        ]}}]}
        assert response_text(response) == "HEADER|A|2024-01-01|1"

    @pytest.mark.parametrize("response", [
        {"candidates": "oops"},
        {"candidates": [{"content": "oops"}]},
        {"candidates": [{"content": {"parts": {"text": "HEADER"}}}]},
        {"candidates": [{"content": {"parts": [{"text": 42}]}}]},
        ["not", "a", "dict"],
    ])
    def test_response_text_of_malformed_record(self, response):
        assert response_text(response) is None

    def test_truncated_batch_response_is_rejected(self):
        record = batch_record("doc-1", line_response(), finish_reason="MAX_TOKENS")
        assert is_truncated(record["response"])
        with pytest.raises(TruncatedResponseError) as exc_info:
            decode_batch_response(record["response"], "doc-1")
        assert exc_info.value.items_received == 1
        assert "manual processing" in exc_info.value.message

    def test_complete_batch_response(self):
        record = batch_record("doc-1", line_response())
        assert decode_batch_response(record["response"], "doc-1").invoice_code == "F-001"


class TestValidationVerdict:
    """VALIDATION line decoding."""

    def test_rejection_with_notes(self):
        verdict = decode_validation("VALIDATION|0|Line 2 total does not match")
        assert verdict.is_valid is False
        assert verdict.notes == "Line 2 total does not match"

    def test_acceptance(self):
        verdict = decode_validation("VALIDATION|1|~")
        assert verdict.is_valid is True
        assert verdict.notes == ""

    def test_unreadable_answer_does_not_block(self):
        verdict = decode_validation("I think it is fine")
        assert verdict.is_valid is True
        assert verdict.notes


class TestJsonPath:
    """Legacy structured JSON decoding."""

    def test_repairs_and_decodes(self):
        text = (
            '```json\n{"invoice_code": "A1", "issue_date": "2024-02-01", "total_amount": 12.5,'
            ' "provider": {"name": "Ferreteria Sol"},'
            ' "items": [{"material_name": "Tubo", "quantity": 2, "total_price": 12.5},]}\n```'
        )
        invoice = decode_json_response(text)
        assert invoice.invoice_code == "A1"
        assert invoice.total_amount == Decimal("12.50")
        assert invoice.items[0].unit_price == Decimal("6.25")
        assert invoice.items[0].line_number == 1

    def test_missing_provider_is_rejected(self):
        text = '{"invoice_code": "A1", "issue_date": "2024-02-01", "total_amount": 1, "items": [{"material_name": "X"}]}'
        assert decode_json_response(text) is None

    def test_garbage_is_rejected(self):
        assert decode_json_response("no json here") is None
