"""Tests for the capability result types and the HTTP client."""

from __future__ import annotations

import base64
import json
from decimal import Decimal
from unittest.mock import MagicMock, patch

import httpx
import pytest

from receipt_recon.capability import (
    ClassificationResult,
    ExtractedReceipt,
    HttpDocumentCapability,
    parse_json_response,
)
from receipt_recon.config import CapabilityConfig
from receipt_recon.errors import CapabilityError, CapabilityTimeoutError


class TestParseJsonResponse:
    """Tests for tolerant JSON parsing."""

    def test_plain_json(self) -> None:
        assert parse_json_response('{"is_receipt": true}') == {"is_receipt": True}

    def test_fenced_code_block(self) -> None:
        content = '```json\n{"is_receipt": false, "confidence": 80}\n```'
        assert parse_json_response(content) == {"is_receipt": False, "confidence": 80}

    def test_json_inside_prose(self) -> None:
        content = 'Here is the result: {"is_receipt": true, "confidence": 91} Hope it helps!'
        assert parse_json_response(content)["confidence"] == 91

    def test_trailing_comma(self) -> None:
        content = 'Result: {"is_receipt": true, "confidence": 91,}'
        assert parse_json_response(content)["is_receipt"] is True

    def test_garbage_raises(self) -> None:
        with pytest.raises(json.JSONDecodeError):
            parse_json_response("no json here")

    def test_empty_raises(self) -> None:
        with pytest.raises(json.JSONDecodeError):
            parse_json_response("")


class TestClassificationResult:
    """Tests for classification payload validation."""

    def test_snake_and_camel_case(self) -> None:
        snake = ClassificationResult.from_payload(
            {"is_receipt": True, "confidence": 87.6, "document_type": "Receipt"}
        )
        camel = ClassificationResult.from_payload(
            {"isReceipt": True, "confidence": "88", "documentType": "receipt"}
        )

        assert snake.confidence == 88
        assert snake.document_type == "receipt"
        assert camel.is_receipt is True
        assert camel.confidence == 88

    def test_missing_is_receipt(self) -> None:
        with pytest.raises(CapabilityError):
            ClassificationResult.from_payload({"confidence": 90})

    def test_confidence_out_of_range(self) -> None:
        with pytest.raises(CapabilityError):
            ClassificationResult.from_payload({"is_receipt": True, "confidence": 140})

    def test_not_an_object(self) -> None:
        with pytest.raises(CapabilityError):
            ClassificationResult.from_payload("receipt")


class TestExtractedReceipt:
    """Tests for extraction payload validation."""

    def test_valid_payload_normalized(self) -> None:
        result = ExtractedReceipt.from_payload(
            {
                "merchantName": "  Corner Cafe ",
                "totalAmount": 12.345,
                "transactionDate": "2024-03-01T09:30:00",
                "confidence": 77,
            }
        )

        assert result.merchant_name == "Corner Cafe"
        assert result.total_amount == Decimal("12.35")
        assert result.transaction_date == "2024-03-01"
        assert result.confidence == 77

    @pytest.mark.parametrize(
        "payload",
        [
            {"total_amount": "1.00", "transaction_date": "2024-03-01"},
            {"merchant_name": "", "total_amount": "1.00", "transaction_date": "2024-03-01"},
            {"merchant_name": "X", "total_amount": "abc", "transaction_date": "2024-03-01"},
            {"merchant_name": "X", "total_amount": "NaN", "transaction_date": "2024-03-01"},
            {"merchant_name": "X", "total_amount": "-5.00", "transaction_date": "2024-03-01"},
            {"merchant_name": "X", "total_amount": "1.00", "transaction_date": "03/01/2024"},
            {"merchant_name": "X", "total_amount": "1.00", "transaction_date": "2024-02-30"},
        ],
    )
    def test_invalid_payloads(self, payload: dict) -> None:
        with pytest.raises(CapabilityError):
            ExtractedReceipt.from_payload(payload)


class TestHttpDocumentCapability:
    """Tests for the HTTP capability client."""

    @pytest.fixture
    def config(self) -> CapabilityConfig:
        return CapabilityConfig(
            base_url="http://classifier.local/",
            auth_header="Bearer secret",
            timeout_seconds=7,
        )

    @staticmethod
    def _response(content: str) -> MagicMock:
        response = MagicMock()
        response.text = content
        response.raise_for_status.return_value = None
        return response

    @patch("receipt_recon.capability.http_client.httpx.Client")
    def test_client_configuration(self, mock_client_class: MagicMock, config) -> None:
        HttpDocumentCapability(config)

        kwargs = mock_client_class.call_args.kwargs
        assert kwargs["headers"] == {"Authorization": "Bearer secret"}
        assert kwargs["timeout"].read == 7.0

    @patch("receipt_recon.capability.http_client.httpx.Client")
    def test_custom_auth_header(self, mock_client_class: MagicMock) -> None:
        HttpDocumentCapability(CapabilityConfig(base_url="http://x", auth_header="X-Api-Key: k1"))
        assert mock_client_class.call_args.kwargs["headers"] == {"X-Api-Key": "k1"}

    @patch("receipt_recon.capability.http_client.httpx.Client")
    def test_classify_posts_base64_document(self, mock_client_class: MagicMock, config) -> None:
        mock_client = MagicMock()
        mock_client.post.return_value = self._response(
            '```json\n{"is_receipt": true, "confidence": 93, "document_type": "receipt"}\n```'
        )
        mock_client_class.return_value = mock_client

        capability = HttpDocumentCapability(config)
        result = capability.classify(b"%PDF-1.4", "application/pdf")

        assert result.is_receipt is True
        assert result.confidence == 93
        url = mock_client.post.call_args.args[0]
        body = mock_client.post.call_args.kwargs["json"]
        assert url == "http://classifier.local/classify"
        assert base64.b64decode(body["document"]) == b"%PDF-1.4"
        assert body["mime_type"] == "application/pdf"
        assert capability.active_requests == 0

    @patch("receipt_recon.capability.http_client.httpx.Client")
    def test_extract(self, mock_client_class: MagicMock, config) -> None:
        mock_client = MagicMock()
        mock_client.post.return_value = self._response(
            json.dumps(
                {"merchant_name": "Cafe", "total_amount": "4.5", "transaction_date": "2024-03-01"}
            )
        )
        mock_client_class.return_value = mock_client

        result = HttpDocumentCapability(config).extract(b"%PDF", "application/pdf")

        assert result.total_amount == Decimal("4.50")
        assert mock_client.post.call_args.args[0] == "http://classifier.local/extract"

    @patch("receipt_recon.capability.http_client.httpx.Client")
    def test_timeout_maps_to_capability_timeout(
        self, mock_client_class: MagicMock, config
    ) -> None:
        mock_client = MagicMock()
        mock_client.post.side_effect = httpx.ReadTimeout("too slow")
        mock_client_class.return_value = mock_client

        capability = HttpDocumentCapability(config)
        with pytest.raises(CapabilityTimeoutError):
            capability.classify(b"%PDF", "application/pdf")
        assert capability.active_requests == 0

    @patch("receipt_recon.capability.http_client.httpx.Client")
    def test_http_error_maps_to_capability_error(
        self, mock_client_class: MagicMock, config
    ) -> None:
        request = httpx.Request("POST", "http://classifier.local/classify")
        response = httpx.Response(503, request=request)
        failing = MagicMock()
        failing.raise_for_status.side_effect = httpx.HTTPStatusError(
            "unavailable", request=request, response=response
        )
        mock_client = MagicMock()
        mock_client.post.return_value = failing
        mock_client_class.return_value = mock_client

        with pytest.raises(CapabilityError, match="503"):
            HttpDocumentCapability(config).classify(b"%PDF", "application/pdf")

    @patch("receipt_recon.capability.http_client.httpx.Client")
    def test_connection_error(self, mock_client_class: MagicMock, config) -> None:
        mock_client = MagicMock()
        mock_client.post.side_effect = httpx.ConnectError("refused")
        mock_client_class.return_value = mock_client

        with pytest.raises(CapabilityError):
            HttpDocumentCapability(config).classify(b"%PDF", "application/pdf")

    @patch("receipt_recon.capability.http_client.httpx.Client")
    def test_malformed_json(self, mock_client_class: MagicMock, config) -> None:
        mock_client = MagicMock()
        mock_client.post.return_value = self._response("I think this is a receipt")
        mock_client_class.return_value = mock_client

        with pytest.raises(CapabilityError):
            HttpDocumentCapability(config).classify(b"%PDF", "application/pdf")
