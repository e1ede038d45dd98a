"""Test document loading and filename safety."""

import pytest

from invoice_ledger.core.exceptions import DocumentError, DocumentTooLargeError
from invoice_ledger.storage.documents import (
    collect_documents,
    document_from_bytes,
    document_key_for,
    load_document,
    sanitize_filename,
)


def test_filename_sanitization():
    """Test filename sanitization for document keys."""
    dangerous_filenames = {
        'file<>:"|?*.pdf': "file_______.pdf",
        "invoice\x00null.pdf": "invoice_null.pdf",
        "../../traverse.pdf": "_._traverse.pdf",  # Leading dots get replaced
        "CON.pdf": "safe_CON.pdf",  # Windows reserved name
        "file" + "x" * 300 + ".pdf": True,  # Long filename (check truncation)
        "...dangerous.pdf": "dangerous.pdf"
    }

    for dangerous, expected in dangerous_filenames.items():
        sanitized = sanitize_filename(dangerous)

        if expected is True:
            assert len(sanitized) <= 120
            assert sanitized.endswith(".pdf")
        else:
            assert sanitized == expected

        assert "/" not in sanitized
        assert "|" not in sanitized


@pytest.mark.parametrize("name", ["", "   ", "..."])
def test_unusable_filenames(name):
    with pytest.raises(DocumentError):
        sanitize_filename(name)


def test_document_key_is_stable():
    data = b"%PDF-1.4 invoice"
    assert document_key_for("Factura 12.pdf", data) == document_key_for("Factura 12.pdf", data)
    assert document_key_for("Factura 12.pdf", data).startswith("Factura_12-")
    assert document_key_for("Factura 12.pdf", data) != document_key_for("Factura 12.pdf", data + b" ")


def test_document_from_bytes():
    document = document_from_bytes("scans/albaran.JPG", b"\xff\xd8\xff")
    assert document.file_name == "albaran.JPG"
    assert document.mime_type == "image/jpeg"
    assert document.size == 3

    with pytest.raises(DocumentError) as exc_info:
        document_from_bytes("notes.txt", b"hello")
    assert "unsupported file type" in str(exc_info.value)

    with pytest.raises(DocumentError):
        document_from_bytes("empty.pdf", b"")


def test_document_size_validation(tmp_path):
    """Test size limits when reading from disk."""
    path = tmp_path / "big.pdf"
    path.write_bytes(b"%PDF-1.4\n" + b"X" * 1000)

    assert load_document(path, max_size_mb=1.0).file_name == "big.pdf"

    with pytest.raises(DocumentTooLargeError) as exc_info:
        load_document(path, max_size_mb=0.0001)
    assert "exceeds maximum allowed size" in str(exc_info.value)
    assert exc_info.value.file_path == path


def test_missing_document(tmp_path):
    with pytest.raises(DocumentError) as exc_info:
        load_document(tmp_path / "gone.pdf")
    assert "file not found" in exc_info.value.message


def test_collect_documents(tmp_path):
    folder = tmp_path / "inbox"
    folder.mkdir()
    for name in ("b.pdf", "a.png", "readme.txt"):
        (folder / name).write_bytes(b"x")
    single = tmp_path / "single.pdf"

    collected = collect_documents([folder, single])
    assert [p.name for p in collected] == ["a.png", "b.pdf", "single.pdf"]
