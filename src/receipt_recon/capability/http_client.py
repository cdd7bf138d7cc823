"""HTTP client for an external classifier/extractor service.

The service exposes two JSON endpoints:
- POST {base_url}/classify
- POST {base_url}/extract

Both take {"document": <base64>, "mime_type": <str>} and answer with a JSON
object (model-backed services sometimes wrap it in prose or a fenced code
block, which is tolerated). Every failure surfaces as CapabilityError.
"""

from __future__ import annotations

import base64
import json
import logging
import re
import threading
from typing import TYPE_CHECKING, Any

import httpx

from ..errors import CapabilityError, CapabilityTimeoutError
from .base import ClassificationResult, DocumentCapability, ExtractedReceipt

if TYPE_CHECKING:
    from ..config import CapabilityConfig

logger = logging.getLogger(__name__)


class ConcurrencyLimiter:
    """Semaphore-based concurrency limiter for capability requests.

    Prevents overwhelming the model server with too many concurrent requests.
    Thread-safe for synchronous usage.
    """

    def __init__(self, max_concurrent: int = 2) -> None:
        self._semaphore = threading.Semaphore(max_concurrent)
        self._active_count = 0
        self._lock = threading.Lock()

    def acquire(self, timeout: float | None = None) -> bool:
        """Acquire a slot for a request.

        Args:
            timeout: Maximum time to wait (None = blocking)

        Returns:
            True if acquired, False if timeout
        """
        acquired = self._semaphore.acquire(blocking=True, timeout=timeout)
        if acquired:
            with self._lock:
                self._active_count += 1
        return acquired

    def release(self) -> None:
        """Release a slot after request completes."""
        with self._lock:
            self._active_count -= 1
        self._semaphore.release()

    @property
    def active_requests(self) -> int:
        """Current number of active requests."""
        with self._lock:
            return self._active_count


def parse_json_response(content: str) -> Any:
    """Parse JSON from a model response with tolerant handling.

    Handles:
    - Markdown code blocks (```json ... ```)
    - Leading/trailing whitespace
    - A JSON object embedded in surrounding prose
    - Trailing commas

    Raises:
        json.JSONDecodeError: If no JSON object can be recovered.
    """
    if not content:
        raise json.JSONDecodeError("Empty response", "", 0)

    content = content.strip()

    # Remove markdown code blocks
    if content.startswith("```json"):
        content = content[7:]
    elif content.startswith("```"):
        content = content[3:]
    if content.endswith("```"):
        content = content[:-3]
    content = content.strip()

    try:
        return json.loads(content)
    except json.JSONDecodeError:
        pass

    # Outermost { ... } block, one level of nesting
    json_match = re.search(r"\{[^{}]*(?:\{[^{}]*\}[^{}]*)*\}", content, re.DOTALL)
    if json_match:
        candidate = json_match.group()
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            # Trailing commas before } or ]
            cleaned = re.sub(r",\s*([}\]])", r"\1", candidate)
            try:
                return json.loads(cleaned)
            except json.JSONDecodeError:
                pass

    raise json.JSONDecodeError(
        f"Could not parse JSON from response: {content[:200]}...", content, 0
    )


class HttpDocumentCapability(DocumentCapability):
    """Capability backed by a JSON HTTP service."""

    def __init__(self, config: CapabilityConfig, max_concurrent: int = 4) -> None:
        """Initialize the client.

        Args:
            config: Capability endpoint configuration.
            max_concurrent: Maximum in-flight requests to the service.
        """
        self.config = config

        headers = {}
        if config.auth_header:
            # Support formats: "Bearer token" or "Custom-Header: value"
            if ":" in config.auth_header:
                key, value = config.auth_header.split(":", 1)
                headers[key.strip()] = value.strip()
            else:
                headers["Authorization"] = config.auth_header

        self._client = httpx.Client(
            timeout=httpx.Timeout(
                connect=10.0,
                read=float(config.timeout_seconds),
                write=30.0,
                pool=10.0,
            ),
            headers=headers,
        )
        self._limiter = ConcurrencyLimiter(max_concurrent=max_concurrent)

    @property
    def name(self) -> str:
        return "http"

    @property
    def active_requests(self) -> int:
        return self._limiter.active_requests

    def classify(self, document_bytes: bytes, mime_type: str) -> ClassificationResult:
        data = self._post("classify", document_bytes, mime_type)
        return ClassificationResult.from_payload(data)

    def extract(self, document_bytes: bytes, mime_type: str) -> ExtractedReceipt:
        data = self._post("extract", document_bytes, mime_type)
        return ExtractedReceipt.from_payload(data)

    def close(self) -> None:
        self._client.close()

    def _post(self, operation: str, document_bytes: bytes, mime_type: str) -> Any:
        """POST a document to the service and return the decoded JSON body.

        Never logs document content (privacy constraint).
        """
        if not self._limiter.acquire(timeout=self.config.timeout_seconds):
            raise CapabilityTimeoutError(
                f"{operation} (waiting for request slot)", float(self.config.timeout_seconds)
            )

        try:
            url = f"{self.config.base_url.rstrip('/')}/{operation}"
            payload = {
                "document": base64.b64encode(document_bytes).decode("ascii"),
                "mime_type": mime_type,
            }
            logger.debug("Calling capability %s (%d bytes)", url, len(document_bytes))

            response = self._client.post(url, json=payload)
            response.raise_for_status()

            content = response.text
            logger.debug("Capability %s returned %d chars", operation, len(content))
            return parse_json_response(content)

        except httpx.TimeoutException as e:
            logger.warning(
                "Capability %s timed out after %ds", operation, self.config.timeout_seconds
            )
            raise CapabilityTimeoutError(operation, float(self.config.timeout_seconds)) from e
        except httpx.HTTPStatusError as e:
            logger.error(
                "Capability API error %s for %s at %s",
                e.response.status_code,
                operation,
                self.config.base_url,
            )
            raise CapabilityError(
                f"{operation} failed with HTTP {e.response.status_code}"
            ) from e
        except httpx.RequestError as e:
            logger.error("Capability request failed: %s (URL: %s)", e, self.config.base_url)
            raise CapabilityError(f"{operation} request failed: {e}") from e
        except json.JSONDecodeError as e:
            raise CapabilityError(f"{operation} returned malformed JSON") from e
        finally:
            # Always release the concurrency slot
            self._limiter.release()
