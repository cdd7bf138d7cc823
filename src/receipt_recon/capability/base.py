"""
Classifier/extractor capability interface and result types.

The concrete model behind the capability is external. The pipeline only
relies on this interface, so tests plug in deterministic fakes.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Any, Optional

from ..errors import CapabilityError
from ..schemas import normalize_amount


def _pick(data: dict, *keys: str) -> Any:
    """First present key, accepting both snake_case and camelCase spellings."""
    for key in keys:
        if key in data and data[key] is not None:
            return data[key]
    return None


def _parse_confidence(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, (int, float, str)):
        raise CapabilityError(f"confidence must be a number, got {value!r}")
    try:
        confidence = round(float(value))
    except ValueError as e:
        raise CapabilityError(f"confidence must be a number, got {value!r}") from e
    if not 0 <= confidence <= 100:
        raise CapabilityError(f"confidence must be within 0..100, got {value!r}")
    return confidence


@dataclass
class ClassificationResult:
    """Result of classifying one document."""

    is_receipt: bool
    confidence: int  # 0..100
    document_type: str = "other"
    reasoning: str = ""

    @classmethod
    def from_payload(cls, data: Any) -> "ClassificationResult":
        """
        Validate a raw capability response.

        Raises:
            CapabilityError: If required keys are missing or malformed
        """
        if isinstance(data, list) and data:
            data = data[0]
        if not isinstance(data, dict):
            raise CapabilityError("Classification response is not a JSON object")

        is_receipt = _pick(data, "is_receipt", "isReceipt")
        if not isinstance(is_receipt, bool):
            raise CapabilityError(f"is_receipt must be a boolean, got {is_receipt!r}")

        raw_confidence = _pick(data, "confidence")
        if raw_confidence is None:
            raise CapabilityError("Classification response has no confidence")

        document_type = _pick(data, "document_type", "documentType") or "other"

        return cls(
            is_receipt=is_receipt,
            confidence=_parse_confidence(raw_confidence),
            document_type=str(document_type).lower(),
            reasoning=str(_pick(data, "reasoning") or ""),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "is_receipt": self.is_receipt,
            "confidence": self.confidence,
            "document_type": self.document_type,
            "reasoning": self.reasoning,
        }


@dataclass
class ExtractedReceipt:
    """Structured fields extracted from a receipt."""

    merchant_name: str
    total_amount: Decimal  # unsigned, 2 decimals
    transaction_date: str  # YYYY-MM-DD
    confidence: Optional[int] = None

    @classmethod
    def from_payload(cls, data: Any) -> "ExtractedReceipt":
        """
        Validate a raw capability response.

        Raises:
            CapabilityError: If merchant, amount or date is missing or invalid
        """
        if isinstance(data, list) and data:
            data = data[0]
        if not isinstance(data, dict):
            raise CapabilityError("Extraction response is not a JSON object")

        merchant = _pick(data, "merchant_name", "merchantName")
        if not isinstance(merchant, str) or not merchant.strip():
            raise CapabilityError("Extraction response has no merchant_name")

        raw_amount = _pick(data, "total_amount", "totalAmount")
        if raw_amount is None or isinstance(raw_amount, bool):
            raise CapabilityError("Extraction response has no total_amount")
        try:
            amount = normalize_amount(raw_amount)
        except (ValueError, ArithmeticError) as e:
            raise CapabilityError(f"total_amount is not a valid decimal: {raw_amount!r}") from e
        if amount < 0:
            raise CapabilityError(f"total_amount must not be negative, got {amount}")

        raw_date = _pick(data, "transaction_date", "transactionDate")
        if not isinstance(raw_date, str):
            raise CapabilityError("Extraction response has no transaction_date")
        try:
            parsed_date = date.fromisoformat(raw_date.strip()[:10])
        except ValueError as e:
            raise CapabilityError(f"transaction_date is not an ISO date: {raw_date!r}") from e

        raw_confidence = _pick(data, "confidence")
        return cls(
            merchant_name=merchant.strip(),
            total_amount=amount,
            transaction_date=parsed_date.isoformat(),
            confidence=_parse_confidence(raw_confidence) if raw_confidence is not None else None,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "merchant_name": self.merchant_name,
            "total_amount": str(self.total_amount),
            "transaction_date": self.transaction_date,
            "confidence": self.confidence,
        }


class DocumentCapability(ABC):
    """
    Black-box classifier/extractor.

    Implementations raise CapabilityError (or any exception, which the
    pipeline treats the same way) on failure. They must not swallow errors
    and return placeholder results.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """Capability name for logging and provenance."""
        pass

    @abstractmethod
    def classify(self, document_bytes: bytes, mime_type: str) -> ClassificationResult:
        """
        Decide whether a document is a receipt.

        Args:
            document_bytes: Raw document content
            mime_type: Content type of the document

        Returns:
            ClassificationResult
        """
        pass

    @abstractmethod
    def extract(self, document_bytes: bytes, mime_type: str) -> ExtractedReceipt:
        """
        Extract receipt fields from a document already classified as receipt.

        Args:
            document_bytes: Raw document content
            mime_type: Content type of the document

        Returns:
            ExtractedReceipt
        """
        pass

    def close(self) -> None:
        """Release resources held by the capability (connections, pools)."""
