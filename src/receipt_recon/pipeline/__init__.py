"""
Stage pipeline.

Provides:
- StagePipelineEngine: classify -> extract -> persist with an append-only log
- KeyedLock: per-fingerprint mutual exclusion
- project_latest_attempt / terminal_status: pure status derivation
"""

from .engine import (
    BatchItem,
    BatchResult,
    DocumentSource,
    ProcessingOutcome,
    StagePipelineEngine,
    call_with_timeout,
)
from .locks import KeyedLock
from .projection import latest_attempt_rows, project_latest_attempt, terminal_status

__all__ = [
    "StagePipelineEngine",
    "ProcessingOutcome",
    "BatchItem",
    "BatchResult",
    "DocumentSource",
    "call_with_timeout",
    "KeyedLock",
    "project_latest_attempt",
    "latest_attempt_rows",
    "terminal_status",
]
