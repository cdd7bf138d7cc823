"""
Stage pipeline engine.

Runs classify -> extract -> persist for one document at a time, writing one
StageLog row per attempted stage. Every stage failure ends the attempt with
a terminal status instead of raising:

- classify failed                   -> UNKNOWN
- classified, not a receipt         -> NOT_RECEIPT (short circuit)
- extract or persist failed         -> CLASSIFIED_ONLY
- persisted                         -> COMPLETED

Attempts for the same (email_id, filename) never interleave within one
process; the skip check for already completed documents runs under the
same lock.
"""

from __future__ import annotations

import logging
import threading
import time
import uuid
from collections.abc import Callable, Iterable
from concurrent.futures import Future, ThreadPoolExecutor, as_completed
from concurrent.futures import TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional, Protocol, TypeVar

from ..capability import ClassificationResult, DocumentCapability, ExtractedReceipt
from ..config import PipelineConfig
from ..errors import CapabilityTimeoutError, PersistenceError, ReceiptReconError
from ..schemas import DocumentJob, ProcessingStatus, Stage, StageLog
from .locks import KeyedLock

if TYPE_CHECKING:
    from ..state_store import StateStore

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _now() -> str:
    return datetime.now(timezone.utc).isoformat().replace("+00:00", "Z")


def _elapsed_ms(started: float) -> int:
    return int((time.monotonic() - started) * 1000)


def _describe(error: BaseException) -> str:
    message = str(error)
    if isinstance(error, ReceiptReconError):
        return message or type(error).__name__
    return f"{type(error).__name__}: {message}" if message else type(error).__name__


def call_with_timeout(
    fn: Callable[..., T],
    timeout: float,
    operation: str,
    *args: Any,
) -> T:
    """
    Run fn on its own daemon thread and wait at most timeout seconds.

    The clock starts when the call starts, never behind other calls. A call
    that overruns is abandoned: its thread runs to completion in the
    background and its result is discarded.

    Raises:
        CapabilityTimeoutError: If the call did not finish in time
    """
    future: Future = Future()

    def run() -> None:
        try:
            result = fn(*args)
        except BaseException as e:
            future.set_exception(e)
        else:
            future.set_result(result)

    threading.Thread(target=run, name=f"capability-{operation}", daemon=True).start()
    try:
        return future.result(timeout=timeout)
    except FuturesTimeoutError as e:
        logger.warning(f"{operation} abandoned after {timeout:g}s, left running in background")
        raise CapabilityTimeoutError(operation, timeout) from e


class DocumentSource(Protocol):
    """Where reprocessing gets document bytes from."""

    def fetch(self, email_id: str, filename: str) -> Optional[DocumentJob]:
        """Return the document, or None (or raise LookupError) if it is gone."""
        ...


@dataclass
class ProcessingOutcome:
    """Result of one process() call."""

    email_id: str
    filename: str
    status: ProcessingStatus
    attempt_id: Optional[str] = None
    skipped: bool = False
    stage_logs: list[StageLog] = field(default_factory=list)
    receipt_id: Optional[int] = None

    @property
    def error_message(self) -> Optional[str]:
        for log in self.stage_logs:
            if not log.success:
                return log.error_message
        return None

    def to_dict(self) -> dict[str, Any]:
        return {
            "email_id": self.email_id,
            "filename": self.filename,
            "attempt_id": self.attempt_id,
            "status": self.status.value,
            "skipped": self.skipped,
            "receipt_id": self.receipt_id,
            "error_message": self.error_message,
            "stages": [log.to_dict() for log in self.stage_logs],
        }


@dataclass
class BatchItem:
    """Per-document entry of a batch: an outcome, or the error that prevented one."""

    email_id: str
    filename: str
    outcome: Optional[ProcessingOutcome] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome is not None

    def to_dict(self) -> dict[str, Any]:
        return {
            "email_id": self.email_id,
            "filename": self.filename,
            "outcome": self.outcome.to_dict() if self.outcome else None,
            "error": self.error,
        }


@dataclass
class BatchResult:
    """Outcome of a batch, items in input order."""

    items: list[BatchItem] = field(default_factory=list)

    @property
    def failed(self) -> list[BatchItem]:
        return [item for item in self.items if not item.ok]

    @property
    def skipped(self) -> list[BatchItem]:
        return [item for item in self.items if item.ok and item.outcome.skipped]

    def status_counts(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        for item in self.items:
            if item.outcome is not None:
                key = item.outcome.status.value
                counts[key] = counts.get(key, 0) + 1
        return counts

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": len(self.items),
            "failed": len(self.failed),
            "skipped": len(self.skipped),
            "statuses": self.status_counts(),
            "items": [item.to_dict() for item in self.items],
        }


class StagePipelineEngine:
    """
    Drives documents through classify, extract and persist.

    Thread-safe: process() may be called from many threads; process_batch()
    does so with its own worker pool.

    Attempts are serialized per fingerprint by this engine's KeyedLock,
    which lives in process memory. Engines in different processes (two CLI
    runs on the same state_db_path) do not see each other's locks and can
    interleave attempts for one document. Run one process per database and
    pass the same KeyedLock to engines that share it within a process.
    """

    def __init__(
        self,
        store: StateStore,
        capability: DocumentCapability,
        config: PipelineConfig | None = None,
        locks: KeyedLock | None = None,
    ):
        """
        Initialize the engine.

        Args:
            store: Processing store for stage logs and receipts
            capability: Classifier/extractor
            config: Pipeline settings (defaults if omitted)
            locks: Fingerprint locks to share with other engines of this
                process (a private set if omitted)
        """
        self.store = store
        self.capability = capability
        self.config = config or PipelineConfig()
        self.locks = locks if locks is not None else KeyedLock()

    # Single document

    def process(self, job: DocumentJob, force_reprocess: bool = False) -> ProcessingOutcome:
        """
        Run one processing attempt for a document.

        A document whose latest attempt completed is skipped (no rows
        written) unless force_reprocess is set.

        Raises:
            FingerprintBusyError: If the document is in flight elsewhere and
                the configured lock timeout expired
            PersistenceError: If a stage log row could not be written
        """
        with self.locks.hold(job.id, timeout=self.config.lock_timeout_seconds):
            if not force_reprocess:
                view = self.store.read_latest_attempt(job.email_id, job.filename)
                if view is not None and view.processing_status == ProcessingStatus.COMPLETED:
                    logger.info(f"[{job.id}] Already completed, skipping")
                    return ProcessingOutcome(
                        email_id=job.email_id,
                        filename=job.filename,
                        status=ProcessingStatus.COMPLETED,
                        attempt_id=view.attempt_id,
                        skipped=True,
                    )

            return self._run_attempt(job)

    def _run_attempt(self, job: DocumentJob) -> ProcessingOutcome:
        outcome = ProcessingOutcome(
            email_id=job.email_id,
            filename=job.filename,
            status=ProcessingStatus.UNKNOWN,
            attempt_id=uuid.uuid4().hex,
        )
        logger.debug(f"[{job.id}] Starting attempt {outcome.attempt_id} ({job.size} bytes)")

        # Stage 1: classify
        started = time.monotonic()
        try:
            classification = ClassificationResult.from_payload(
                self._as_payload(self._call_capability("classify", job))
            )
        except Exception as e:
            logger.warning(f"[{job.id}] Classification failed: {_describe(e)}")
            self._log(job, outcome, Stage.CLASSIFY, started, error=e)
            return self._finish(job, outcome, ProcessingStatus.UNKNOWN)

        self._log(job, outcome, Stage.CLASSIFY, started, details=classification.to_dict())
        if not classification.is_receipt:
            return self._finish(job, outcome, ProcessingStatus.NOT_RECEIPT)

        # Stage 2: extract
        started = time.monotonic()
        try:
            extracted = ExtractedReceipt.from_payload(
                self._as_payload(self._call_capability("extract", job))
            )
        except Exception as e:
            logger.warning(f"[{job.id}] Extraction failed: {_describe(e)}")
            self._log(job, outcome, Stage.EXTRACT, started, error=e)
            return self._finish(job, outcome, ProcessingStatus.CLASSIFIED_ONLY)

        self._log(job, outcome, Stage.EXTRACT, started, details=extracted.to_dict())

        # Stage 3: persist
        started = time.monotonic()
        try:
            receipt_id = self.store.save_receipt(
                outcome.attempt_id, job.email_id, job.filename, extracted
            )
        except PersistenceError as e:
            logger.warning(f"[{job.id}] Persisting receipt failed: {e}")
            self._log(job, outcome, Stage.PERSIST, started, error=e)
            return self._finish(job, outcome, ProcessingStatus.CLASSIFIED_ONLY)

        outcome.receipt_id = receipt_id
        self._log(job, outcome, Stage.PERSIST, started, details={"receipt_id": receipt_id})
        return self._finish(job, outcome, ProcessingStatus.COMPLETED)

    def _call_capability(self, operation: str, job: DocumentJob) -> Any:
        fn = getattr(self.capability, operation)
        return call_with_timeout(
            fn,
            self.config.capability_timeout_seconds,
            operation,
            job.content_bytes,
            job.mime_type,
        )

    @staticmethod
    def _as_payload(result: Any) -> Any:
        # Capability results are re-validated whatever their origin
        if isinstance(result, (ClassificationResult, ExtractedReceipt)):
            return result.to_dict()
        return result

    def _log(
        self,
        job: DocumentJob,
        outcome: ProcessingOutcome,
        stage: Stage,
        started: float,
        details: dict[str, Any] | None = None,
        error: BaseException | None = None,
    ) -> None:
        entry = StageLog(
            email_id=job.email_id,
            filename=job.filename,
            stage=stage,
            success=error is None,
            attempt_id=outcome.attempt_id,
            processed_at=_now(),
            duration_ms=_elapsed_ms(started),
            error_message=_describe(error) if error is not None else None,
            details=details or {},
        )
        self.store.append_stage_log(entry)
        outcome.stage_logs.append(entry)

    @staticmethod
    def _finish(
        job: DocumentJob, outcome: ProcessingOutcome, status: ProcessingStatus
    ) -> ProcessingOutcome:
        outcome.status = status
        logger.info(
            f"[{job.id}] Attempt {outcome.attempt_id} finished: {status.value} "
            f"({sum(1 for log in outcome.stage_logs if log.success)} successful stage(s))"
        )
        return outcome

    # Batches

    def process_batch(
        self, jobs: Iterable[DocumentJob], force_reprocess: bool = False
    ) -> BatchResult:
        """
        Process many documents concurrently.

        A failure of one document (even an unexpected exception) is
        recorded on its item and never stops the others.
        """
        jobs = list(jobs)
        items: list[BatchItem] = [BatchItem(job.email_id, job.filename) for job in jobs]
        if not jobs:
            return BatchResult(items)

        workers = min(self.config.max_workers, len(jobs))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="pipeline") as pool:
            futures = {
                pool.submit(self.process, job, force_reprocess): index
                for index, job in enumerate(jobs)
            }
            for future in as_completed(futures):
                index = futures[future]
                try:
                    items[index].outcome = future.result()
                except Exception as e:
                    logger.exception(f"[{jobs[index].id}] Processing aborted")
                    items[index].error = _describe(e)

        result = BatchResult(items)
        logger.info(
            f"Batch of {len(items)} document(s) done: {result.status_counts()}, "
            f"{len(result.failed)} failed"
        )
        return result

    def reprocess(
        self,
        fingerprints: Iterable[tuple[str, str]],
        force_reprocess: bool,
        source: DocumentSource,
    ) -> BatchResult:
        """
        Reprocess documents identified by (email_id, filename).

        Bytes come from source. Documents the source can't provide are
        reported on their batch item.
        """
        items: list[BatchItem] = []
        jobs: list[DocumentJob] = []
        positions: list[int] = []

        for email_id, filename in fingerprints:
            item = BatchItem(email_id, filename)
            items.append(item)
            try:
                job = source.fetch(email_id, filename)
            except LookupError as e:
                logger.warning(f"[{email_id}:{filename}] Not available for reprocessing: {e}")
                item.error = f"Document not found: {e}"
                continue
            if job is None:
                logger.warning(f"[{email_id}:{filename}] Not available for reprocessing")
                item.error = "Document not found"
                continue
            jobs.append(job)
            positions.append(len(items) - 1)

        batch = self.process_batch(jobs, force_reprocess=force_reprocess)
        for position, processed in zip(positions, batch.items):
            items[position].outcome = processed.outcome
            items[position].error = processed.error

        return BatchResult(items)
