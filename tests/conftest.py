"""Test fixtures and utilities."""

import threading
import time
from email.message import EmailMessage
from pathlib import Path

import pytest

from receipt_recon.capability import (
    ClassificationResult,
    DocumentCapability,
    ExtractedReceipt,
)
from receipt_recon.schemas import DocumentJob

# Minimal PDF-looking payload; the capability is faked so content is opaque
SAMPLE_PDF_BYTES = b"%PDF-1.4\n1 0 obj << /Type /Catalog >> endobj\ntrailer << >>\n%%EOF\n"

SAMPLE_STATEMENT = """Date,Description,Amount,Reference
2024-03-01,COFFEE SHOP 123,-4.50,TX-1
2024-03-02,SALARY ACME,"2,500.00",TX-2
2024-03-04,HARDWARE STORE,($89.99),TX-3
02/30/2024,BROKEN ROW,-10.00,TX-4
2024-03-06,BOOKSHOP,-23.10,
"""


class FakeCapability(DocumentCapability):
    """Deterministic capability with optional failures and delay.

    Tracks concurrent calls per document so tests can assert that two
    attempts for the same fingerprint never overlap.
    """

    def __init__(
        self,
        is_receipt: bool = True,
        confidence: int = 92,
        merchant_name: str = "Coffee Shop",
        total_amount: str = "4.50",
        transaction_date: str = "2024-03-01",
        classify_error: Exception | None = None,
        extract_error: Exception | None = None,
        delay: float = 0.0,
    ):
        self.is_receipt = is_receipt
        self.confidence = confidence
        self.merchant_name = merchant_name
        self.total_amount = total_amount
        self.transaction_date = transaction_date
        self.classify_error = classify_error
        self.extract_error = extract_error
        self.delay = delay

        self.calls: list[tuple[str, bytes]] = []
        self._lock = threading.Lock()
        self._active: dict[bytes, int] = {}
        self.max_active_per_document = 0

    @property
    def name(self) -> str:
        return "fake"

    def _enter(self, operation: str, document_bytes: bytes) -> None:
        with self._lock:
            self.calls.append((operation, document_bytes))
            self._active[document_bytes] = self._active.get(document_bytes, 0) + 1
            self.max_active_per_document = max(
                self.max_active_per_document, self._active[document_bytes]
            )
        if self.delay:
            time.sleep(self.delay)

    def _exit(self, document_bytes: bytes) -> None:
        with self._lock:
            self._active[document_bytes] -= 1

    def classify(self, document_bytes: bytes, mime_type: str) -> ClassificationResult:
        self._enter("classify", document_bytes)
        try:
            if self.classify_error is not None:
                raise self.classify_error
            return ClassificationResult(
                is_receipt=self.is_receipt,
                confidence=self.confidence,
                document_type="receipt" if self.is_receipt else "newsletter",
            )
        finally:
            self._exit(document_bytes)

    def extract(self, document_bytes: bytes, mime_type: str) -> ExtractedReceipt:
        self._enter("extract", document_bytes)
        try:
            if self.extract_error is not None:
                raise self.extract_error
            return ExtractedReceipt.from_payload(
                {
                    "merchant_name": self.merchant_name,
                    "total_amount": self.total_amount,
                    "transaction_date": self.transaction_date,
                }
            )
        finally:
            self._exit(document_bytes)

    def operations(self) -> list[str]:
        return [operation for operation, _ in self.calls]


def build_email(
    message_id: str = "<msg-001@example.com>",
    attachments: list[tuple[str, str, bytes]] | None = None,
    date_header: str = "Fri, 01 Mar 2024 10:15:00 +0000",
) -> EmailMessage:
    """Build an email with (filename, mime type, payload) attachments."""
    message = EmailMessage()
    message["From"] = "shop@example.com"
    message["To"] = "me@example.com"
    message["Subject"] = "Your receipt"
    if message_id:
        message["Message-ID"] = message_id
    if date_header:
        message["Date"] = date_header
    message.set_content("Thanks for your purchase.")

    if attachments is None:
        attachments = [("receipt.pdf", "application/pdf", SAMPLE_PDF_BYTES)]
    for filename, mime_type, payload in attachments:
        maintype, subtype = mime_type.split("/", 1)
        message.add_attachment(payload, maintype=maintype, subtype=subtype, filename=filename)
    return message


def make_job(
    email_id: str = "msg-001@example.com",
    filename: str = "receipt.pdf",
    content: bytes | None = None,
) -> DocumentJob:
    """DocumentJob with content unique to its fingerprint."""
    return DocumentJob(
        email_id=email_id,
        filename=filename,
        content_bytes=content if content is not None else f"%PDF {email_id}/{filename}".encode(),
        received_at="2024-03-01T10:15:00Z",
    )


@pytest.fixture
def temp_db(tmp_path) -> Path:
    """Temporary database path for testing."""
    return tmp_path / "test_state.db"


@pytest.fixture
def fake_capability() -> FakeCapability:
    return FakeCapability()


@pytest.fixture
def sample_statement() -> str:
    """Statement with a header, a credit, a parenthesized debit and one bad row."""
    return SAMPLE_STATEMENT


@pytest.fixture
def sample_email() -> EmailMessage:
    return build_email()
