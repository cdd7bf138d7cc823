"""Tests for the stage pipeline engine."""

import threading
import time
from collections import Counter
from decimal import Decimal

import pytest
from conftest import FakeCapability, make_job

from receipt_recon.config import PipelineConfig
from receipt_recon.errors import (
    CapabilityError,
    CapabilityTimeoutError,
    FingerprintBusyError,
    PersistenceError,
)
from receipt_recon.pipeline import KeyedLock, StagePipelineEngine, call_with_timeout
from receipt_recon.schemas import ProcessingStatus, Stage
from receipt_recon.state_store import StateStore


@pytest.fixture
def store(temp_db):
    return StateStore(temp_db)


@pytest.fixture
def make_engine(store):
    def factory(capability=None, locks=None, **config_overrides):
        config = PipelineConfig(**{"capability_timeout_seconds": 5.0, **config_overrides})
        return StagePipelineEngine(store, capability or FakeCapability(), config, locks=locks)

    return factory


class SelectiveCapability(FakeCapability):
    """Fails classification for documents whose bytes contain a marker."""

    def classify(self, document_bytes, mime_type):
        if b"boom" in document_bytes:
            raise CapabilityError("classifier rejected document")
        return super().classify(document_bytes, mime_type)


class DictSource:
    def __init__(self, jobs):
        self.jobs = {job.fingerprint: job for job in jobs}

    def fetch(self, email_id, filename):
        return self.jobs.get((email_id, filename))


class TestStateMachine:
    """Each path through the stages ends in its terminal status."""

    def test_completed(self, make_engine, store):
        capability = FakeCapability()
        engine = make_engine(capability)
        job = make_job()

        outcome = engine.process(job)

        assert outcome.status == ProcessingStatus.COMPLETED
        assert outcome.skipped is False
        assert outcome.receipt_id is not None
        assert [log.stage for log in outcome.stage_logs] == [
            Stage.CLASSIFY,
            Stage.EXTRACT,
            Stage.PERSIST,
        ]
        assert all(log.success for log in outcome.stage_logs)
        assert capability.operations() == ["classify", "extract"]

        view = store.read_latest_attempt(job.email_id, job.filename)
        assert view.processing_status == ProcessingStatus.COMPLETED
        assert view.successful_stages == 3
        assert view.merchant_name == "Coffee Shop"
        assert len(store.list_receipt_records()) == 1

    def test_not_receipt_short_circuits(self, make_engine, store):
        capability = FakeCapability(is_receipt=False)
        engine = make_engine(capability)

        outcome = engine.process(make_job())

        assert outcome.status == ProcessingStatus.NOT_RECEIPT
        assert len(outcome.stage_logs) == 1
        assert outcome.stage_logs[0].success is True
        assert outcome.error_message is None
        assert capability.operations() == ["classify"]
        assert store.list_receipt_records() == []

    def test_classify_failure_is_unknown(self, make_engine):
        engine = make_engine(FakeCapability(classify_error=CapabilityError("model offline")))

        outcome = engine.process(make_job())

        assert outcome.status == ProcessingStatus.UNKNOWN
        assert len(outcome.stage_logs) == 1
        assert outcome.stage_logs[0].stage == Stage.CLASSIFY
        assert outcome.stage_logs[0].success is False
        assert outcome.error_message == "model offline"

    def test_unexpected_capability_exception_is_recorded(self, make_engine):
        engine = make_engine(FakeCapability(classify_error=RuntimeError("segfault-ish")))

        outcome = engine.process(make_job())

        assert outcome.status == ProcessingStatus.UNKNOWN
        assert outcome.error_message == "RuntimeError: segfault-ish"

    def test_extract_failure_is_classified_only(self, make_engine, store):
        engine = make_engine(FakeCapability(extract_error=CapabilityError("unreadable")))
        job = make_job()

        outcome = engine.process(job)

        assert outcome.status == ProcessingStatus.CLASSIFIED_ONLY
        assert [(log.stage, log.success) for log in outcome.stage_logs] == [
            (Stage.CLASSIFY, True),
            (Stage.EXTRACT, False),
        ]
        view = store.read_latest_attempt(job.email_id, job.filename)
        assert view.processing_status == ProcessingStatus.CLASSIFIED_ONLY
        assert view.successful_stages == 1

    def test_invalid_extraction_is_extract_failure(self, make_engine):
        engine = make_engine(FakeCapability(total_amount="-3.00"))

        outcome = engine.process(make_job())

        assert outcome.status == ProcessingStatus.CLASSIFIED_ONLY
        assert outcome.stage_logs[-1].stage == Stage.EXTRACT

    def test_persist_failure_is_classified_only(self, make_engine, store, monkeypatch):
        def broken_save(*args, **kwargs):
            raise PersistenceError("disk full")

        monkeypatch.setattr(store, "save_receipt", broken_save)
        engine = make_engine()

        outcome = engine.process(make_job())

        assert outcome.status == ProcessingStatus.CLASSIFIED_ONLY
        assert [(log.stage, log.success) for log in outcome.stage_logs] == [
            (Stage.CLASSIFY, True),
            (Stage.EXTRACT, True),
            (Stage.PERSIST, False),
        ]
        assert outcome.error_message == "disk full"

    def test_capability_timeout(self, make_engine, store):
        engine = make_engine(FakeCapability(delay=1.0), capability_timeout_seconds=0.05)
        job = make_job()

        outcome = engine.process(job)

        assert outcome.status == ProcessingStatus.UNKNOWN
        assert "timed out" in outcome.error_message
        assert len(store.get_stage_logs(job.email_id, job.filename)) == 1


class TestIdempotency:
    """Tests for skip and force reprocessing."""

    def test_completed_document_skipped(self, make_engine, store):
        capability = FakeCapability()
        engine = make_engine(capability)
        job = make_job()

        first = engine.process(job)
        second = engine.process(job)

        assert second.skipped is True
        assert second.status == ProcessingStatus.COMPLETED
        assert second.attempt_id == first.attempt_id
        assert second.stage_logs == []
        assert len(store.get_stage_logs(job.email_id, job.filename)) == 3
        assert capability.operations() == ["classify", "extract"]

    def test_force_appends_new_attempt(self, make_engine, store):
        engine = make_engine()
        job = make_job()

        first = engine.process(job)
        before = [log.to_dict() for log in store.get_stage_logs(job.email_id, job.filename)]

        second = engine.process(job, force_reprocess=True)
        after = store.get_stage_logs(job.email_id, job.filename)

        assert second.skipped is False
        assert second.attempt_id != first.attempt_id
        assert len(after) == 6
        assert [log.to_dict() for log in after[:3]] == before
        assert {log.attempt_id for log in after[3:]} == {second.attempt_id}

    def test_unfinished_document_runs_again(self, make_engine, store):
        job = make_job()
        make_engine(FakeCapability(extract_error=CapabilityError("blurry"))).process(job)

        outcome = make_engine().process(job)

        assert outcome.skipped is False
        assert outcome.status == ProcessingStatus.COMPLETED
        assert len(store.get_stage_logs(job.email_id, job.filename)) == 5

    def test_latest_attempt_decides_view(self, make_engine, store):
        job = make_job()
        make_engine().process(job)

        make_engine(FakeCapability(is_receipt=False)).process(job, force_reprocess=True)

        view = store.read_latest_attempt(job.email_id, job.filename)
        assert view.processing_status == ProcessingStatus.NOT_RECEIPT
        assert view.successful_stages == 1

    def test_reclassified_document_leaves_reconciliation(self, make_engine, store):
        job = make_job()
        make_engine().process(job)
        assert len(store.list_receipt_records()) == 1

        make_engine(FakeCapability(is_receipt=False)).process(job, force_reprocess=True)

        assert store.list_receipt_records() == []

    def test_failed_reprocess_hides_earlier_receipt(self, make_engine, store):
        job = make_job()
        make_engine().process(job)

        make_engine(FakeCapability(extract_error=CapabilityError("blurry"))).process(
            job, force_reprocess=True
        )

        view = store.read_latest_attempt(job.email_id, job.filename)
        assert view.processing_status == ProcessingStatus.CLASSIFIED_ONLY
        assert store.list_receipt_records() == []

    def test_reprocessed_receipt_replaces_earlier_one(self, make_engine, store):
        job = make_job()
        make_engine().process(job)

        outcome = make_engine(FakeCapability(total_amount="5.25")).process(
            job, force_reprocess=True
        )

        records = store.list_receipt_records()
        assert [(r.receipt_id, r.total_amount) for r in records] == [
            (outcome.receipt_id, Decimal("5.25"))
        ]


class TestConcurrency:
    """Attempts for one fingerprint never interleave."""

    def _run_parallel(self, engine, job, count, force):
        barrier = threading.Barrier(count)
        outcomes = []
        guard = threading.Lock()

        def worker():
            barrier.wait()
            outcome = engine.process(job, force_reprocess=force)
            with guard:
                outcomes.append(outcome)

        threads = [threading.Thread(target=worker) for _ in range(count)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        return outcomes

    def test_forced_attempts_are_serialized(self, make_engine, store):
        capability = FakeCapability(delay=0.02)
        engine = make_engine(capability)
        job = make_job()

        outcomes = self._run_parallel(engine, job, count=5, force=True)

        assert capability.max_active_per_document == 1
        rows = store.get_stage_logs(job.email_id, job.filename)
        assert len(rows) == 15
        # Rows of each attempt are contiguous
        attempt_sequence = [row.attempt_id for row in rows]
        for i in range(0, 15, 3):
            assert len(set(attempt_sequence[i : i + 3])) == 1
        assert len({o.attempt_id for o in outcomes}) == 5

    def test_concurrent_duplicates_process_once(self, make_engine, store):
        capability = FakeCapability(delay=0.02)
        engine = make_engine(capability)
        job = make_job()

        outcomes = self._run_parallel(engine, job, count=5, force=False)

        assert sum(1 for o in outcomes if not o.skipped) == 1
        assert len(store.get_stage_logs(job.email_id, job.filename)) == 3
        assert capability.operations() == ["classify", "extract"]

    def test_busy_fingerprint_with_lock_timeout(self, make_engine):
        engine = make_engine(lock_timeout_seconds=0.01)
        job = make_job()

        with engine.locks.hold(job.id):
            with pytest.raises(FingerprintBusyError):
                engine.process(job)

    def test_shared_locks_span_engines(self, make_engine):
        locks = KeyedLock()
        first = make_engine(locks=locks)
        second = make_engine(locks=locks, lock_timeout_seconds=0.01)
        job = make_job()

        with first.locks.hold(job.id):
            with pytest.raises(FingerprintBusyError):
                second.process(job)

    def test_private_locks_by_default(self, make_engine):
        first = make_engine()
        second = make_engine(lock_timeout_seconds=0.01)
        job = make_job()

        with first.locks.hold(job.id):
            outcome = second.process(job)

        assert outcome.status == ProcessingStatus.COMPLETED


class HangingCapability(FakeCapability):
    """Hangs on the first few classify calls, then answers at once."""

    def __init__(self, hang_calls: int, hang_seconds: float, **kwargs):
        super().__init__(**kwargs)
        self.hang_calls = hang_calls
        self.hang_seconds = hang_seconds
        self.classified: list[bytes] = []
        self._count_lock = threading.Lock()

    def classify(self, document_bytes, mime_type):
        with self._count_lock:
            self.classified.append(document_bytes)
            hang = len(self.classified) <= self.hang_calls
        if hang:
            time.sleep(self.hang_seconds)
        return super().classify(document_bytes, mime_type)


class TestTimeouts:
    """Abandoned capability calls never hold up later documents."""

    def test_hung_calls_do_not_starve_later_documents(self, make_engine):
        capability = HangingCapability(hang_calls=2, hang_seconds=1.0)
        engine = make_engine(capability, max_workers=1, capability_timeout_seconds=0.2)
        jobs = [make_job(email_id=f"m{i}") for i in range(3)]

        result = engine.process_batch(jobs)

        statuses = [item.outcome.status for item in result.items]
        assert statuses == [
            ProcessingStatus.UNKNOWN,
            ProcessingStatus.UNKNOWN,
            ProcessingStatus.COMPLETED,
        ]
        assert "classify timed out after 0.2s" in result.items[0].outcome.error_message
        assert jobs[2].content_bytes in capability.classified

    def test_call_with_timeout_after_many_abandoned_calls(self):
        release = threading.Event()
        for _ in range(10):
            with pytest.raises(CapabilityTimeoutError):
                call_with_timeout(release.wait, 0.01, "classify", 5.0)

        started = time.monotonic()
        assert call_with_timeout(lambda x: x * 2, 1.0, "extract", 21) == 42
        assert time.monotonic() - started < 1.0
        release.set()

    def test_call_with_timeout_propagates_errors(self):
        def fail():
            raise CapabilityError("bad gateway")

        with pytest.raises(CapabilityError, match="bad gateway"):
            call_with_timeout(fail, 1.0, "classify")


class TestBatch:
    """Tests for process_batch and reprocess."""

    def test_batch_isolation(self, make_engine):
        engine = make_engine(SelectiveCapability(), max_workers=3)
        jobs = [
            make_job(email_id="m1"),
            make_job(email_id="m2", content=b"%PDF boom"),
            make_job(email_id="m3"),
        ]

        result = engine.process_batch(jobs)

        assert [item.email_id for item in result.items] == ["m1", "m2", "m3"]
        assert [item.outcome.status for item in result.items] == [
            ProcessingStatus.COMPLETED,
            ProcessingStatus.UNKNOWN,
            ProcessingStatus.COMPLETED,
        ]
        assert result.failed == []
        assert result.status_counts() == {"completed": 2, "unknown": 1}

    def test_store_outage_fails_only_that_document(self, make_engine, store, monkeypatch):
        original = store.append_stage_log

        def flaky_append(entry):
            if entry.email_id == "m2":
                raise PersistenceError("database is locked")
            return original(entry)

        monkeypatch.setattr(store, "append_stage_log", flaky_append)
        engine = make_engine(max_workers=2)

        result = engine.process_batch([make_job(email_id=f"m{i}") for i in (1, 2, 3)])

        assert [item.ok for item in result.items] == [True, False, True]
        assert "database is locked" in result.items[1].error
        assert result.to_dict()["failed"] == 1

    def test_empty_batch(self, make_engine):
        assert make_engine().process_batch([]).items == []

    def test_reprocess_reports_missing_documents(self, make_engine, store):
        engine = make_engine()
        present = make_job(email_id="m1")
        engine.process(present)

        result = engine.reprocess(
            [("m1", "receipt.pdf"), ("gone", "receipt.pdf")],
            force_reprocess=True,
            source=DictSource([present]),
        )

        assert result.items[0].outcome.status == ProcessingStatus.COMPLETED
        assert result.items[0].outcome.skipped is False
        assert result.items[1].outcome is None
        assert "not found" in result.items[1].error
        attempts = Counter(log.attempt_id for log in store.get_stage_logs("m1", "receipt.pdf"))
        assert len(attempts) == 2

    def test_reprocess_without_force_skips_completed(self, make_engine):
        engine = make_engine()
        job = make_job()
        engine.process(job)

        result = engine.reprocess([job.fingerprint], False, DictSource([job]))

        assert result.items[0].outcome.skipped is True
