"""
Classifier/extractor capability.

Provides:
- DocumentCapability: interface the pipeline depends on
- ClassificationResult / ExtractedReceipt: validated capability output
- HttpDocumentCapability: client for an external JSON classification service
"""

from .base import ClassificationResult, DocumentCapability, ExtractedReceipt
from .http_client import ConcurrencyLimiter, HttpDocumentCapability, parse_json_response

__all__ = [
    "DocumentCapability",
    "ClassificationResult",
    "ExtractedReceipt",
    "HttpDocumentCapability",
    "ConcurrencyLimiter",
    "parse_json_response",
]
