"""
Fingerprint and normalization helpers (SSOT).

This module defines THE document fingerprint used for duplicate
suppression and per-document locking, and THE amount normalization used
by both the statement parser and the matcher.

Fingerprint: (email_id, filename)
- Stable across reprocessing attempts of the same logical document
- Rendered as "{email_id}:{filename}" wherever a single key is needed
"""

import hashlib
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

# Separator between email_id and filename in a fingerprint key
FINGERPRINT_SEPARATOR = ":"

# Two-decimal quantum for all normalized amounts
AMOUNT_QUANTUM = Decimal("0.01")


def fingerprint_key(email_id: str, filename: str) -> str:
    """
    Build the single-string fingerprint key for a document.

    Args:
        email_id: Source email identifier
        filename: Attachment filename inside that email

    Returns:
        "{email_id}:{filename}"

    Raises:
        ValueError: If either component is empty
    """
    if not email_id:
        raise ValueError("email_id must not be empty")
    if not filename:
        raise ValueError("filename must not be empty")
    return f"{email_id}{FINGERPRINT_SEPARATOR}{filename}"


def compute_content_hash(content: bytes) -> str:
    """
    Compute SHA256 hash of document bytes.

    Returns:
        64-character lowercase hex string
    """
    return hashlib.sha256(content).hexdigest()


def normalize_amount(amount: Decimal | str | int | float) -> Decimal:
    """
    Normalize an amount to a two-decimal Decimal (ROUND_HALF_UP).

    Floats go through str() first so 0.1 stays 0.10 instead of
    0.1000000000000000055511151231257827.

    Raises:
        ValueError: If the value is not a finite number
    """
    if isinstance(amount, float):
        amount = Decimal(str(amount))
    elif isinstance(amount, (str, int)):
        try:
            amount = Decimal(str(amount).strip())
        except InvalidOperation as e:
            raise ValueError(f"amount is not a number: {amount!r}") from e
    elif not isinstance(amount, Decimal):
        raise ValueError(f"amount must be Decimal, str, int or float, got: {type(amount)}")

    if not amount.is_finite():
        raise ValueError(f"amount must be finite, got: {amount}")

    return amount.quantize(AMOUNT_QUANTUM, rounding=ROUND_HALF_UP)
