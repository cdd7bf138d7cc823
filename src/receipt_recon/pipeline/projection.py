"""
Projection of StageLog rows into a ProcessedFileView.

Pure functions, no I/O. The view is never stored: it is recomputed from
the append-only log whenever it is needed, so it can't drift from the rows.

Terminal state by ordered outcome of one attempt:
- no successful classify                 -> UNKNOWN
- classify ok, not a receipt             -> NOT_RECEIPT
- classify ok, receipt, persist ok       -> COMPLETED
- classify ok, receipt, anything else    -> CLASSIFIED_ONLY
"""

from collections.abc import Iterable
from decimal import Decimal, InvalidOperation
from typing import Optional

from ..schemas import ProcessedFileView, ProcessingStatus, Stage, StageLog


def _row_order(row: StageLog) -> tuple:
    return (row.stage.order, row.id if row.id is not None else 0)


def latest_attempt_rows(rows: Iterable[StageLog]) -> list[StageLog]:
    """
    Rows of the most recent attempt, in stage order.

    The latest attempt is the attempt of the row with the highest id. Rows
    without an id (not yet stored) count in the order they were given.
    """
    rows = list(rows)
    if not rows:
        return []

    latest_attempt = None
    latest_rank = None
    for position, row in enumerate(rows):
        rank = (row.id if row.id is not None else -1, position)
        if latest_rank is None or rank > latest_rank:
            latest_rank = rank
            latest_attempt = row.attempt_id

    return sorted((r for r in rows if r.attempt_id == latest_attempt), key=_row_order)


def _stage_row(rows: list[StageLog], stage: Stage) -> Optional[StageLog]:
    # Last row wins if a stage was somehow logged twice in one attempt
    found = None
    for row in rows:
        if row.stage == stage:
            found = row
    return found


def terminal_status(attempt_rows: Iterable[StageLog]) -> ProcessingStatus:
    """Derive the terminal status from the rows of a single attempt."""
    rows = list(attempt_rows)

    classify = _stage_row(rows, Stage.CLASSIFY)
    if classify is None or not classify.success:
        return ProcessingStatus.UNKNOWN

    if not classify.details.get("is_receipt", False):
        return ProcessingStatus.NOT_RECEIPT

    persist = _stage_row(rows, Stage.PERSIST)
    if persist is not None and persist.success:
        return ProcessingStatus.COMPLETED

    return ProcessingStatus.CLASSIFIED_ONLY


def _to_decimal(value) -> Optional[Decimal]:
    if value is None:
        return None
    try:
        return Decimal(str(value))
    except InvalidOperation:
        return None


def project_latest_attempt(rows: Iterable[StageLog]) -> Optional[ProcessedFileView]:
    """
    Build the ProcessedFileView of a document from all of its StageLog rows.

    Args:
        rows: Every stored row for one (email_id, filename), any order

    Returns:
        View of the latest attempt, or None if there are no rows
    """
    attempt = latest_attempt_rows(rows)
    if not attempt:
        return None

    first = attempt[0]
    classify = _stage_row(attempt, Stage.CLASSIFY)
    extract = _stage_row(attempt, Stage.EXTRACT)

    classified = classify is not None and classify.success
    classification = classify.details if classified else {}
    extracted = extract.details if extract is not None and extract.success else {}

    return ProcessedFileView(
        email_id=first.email_id,
        filename=first.filename,
        attempt_id=first.attempt_id,
        processing_status=terminal_status(attempt),
        successful_stages=sum(1 for r in attempt if r.success),
        processed_at=max(r.processed_at for r in attempt),
        is_receipt=bool(classification.get("is_receipt", False)),
        confidence=int(classification.get("confidence", 0) or 0),
        document_type=classification.get("document_type"),
        merchant_name=extracted.get("merchant_name"),
        total_amount=_to_decimal(extracted.get("total_amount")),
        transaction_date=extracted.get("transaction_date"),
    )
