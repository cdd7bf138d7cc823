"""
Document ingest adapter.

Provides:
- Email (with attachments) → DocumentJob normalization
- Stable email identifiers and receive timestamps
- MIME filtering of attachments
- A directory of .eml files as a document source for reprocessing
"""

from .email_adapter import (
    EmailDirectorySource,
    jobs_from_bytes,
    jobs_from_email,
    jobs_from_file,
    resolve_email_id,
    resolve_received_at,
)

__all__ = [
    "jobs_from_email",
    "jobs_from_bytes",
    "jobs_from_file",
    "resolve_email_id",
    "resolve_received_at",
    "EmailDirectorySource",
]
