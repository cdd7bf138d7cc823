"""
Email → DocumentJob normalization.

One DocumentJob per accepted attachment. The fingerprint of each job is
(email_id, filename), so filenames must be unique inside one email.
"""

import email
import hashlib
import logging
import mimetypes
from datetime import datetime, timezone
from email.message import Message
from email.policy import default as default_policy
from email.utils import parsedate_to_datetime
from pathlib import Path
from typing import Iterable, Optional

from ..config import DEFAULT_ACCEPTED_MIME_TYPES
from ..schemas import DocumentJob

logger = logging.getLogger(__name__)


def _utc_iso(value: datetime) -> str:
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat().replace("+00:00", "Z")


def resolve_email_id(message: Message) -> str:
    """
    Get a stable identifier for an email.

    Uses the Message-ID header without angle brackets. Messages without
    one get a content hash so the same message always maps to the same id.
    """
    message_id = (message.get("Message-ID") or "").strip().strip("<>").strip()
    if message_id:
        return message_id
    digest = hashlib.sha256(message.as_bytes()).hexdigest()[:16]
    logger.debug("Message has no Message-ID, using content hash %s", digest)
    return f"sha256-{digest}"


def resolve_received_at(message: Message) -> str:
    """Date header as UTC ISO timestamp, falling back to now."""
    raw_date = message.get("Date")
    if raw_date:
        try:
            return _utc_iso(parsedate_to_datetime(str(raw_date)))
        except (TypeError, ValueError):
            logger.warning("Unparseable Date header %r, using current time", raw_date)
    return _utc_iso(datetime.now(timezone.utc))


def _attachment_mime_type(
    declared: str, filename: str, accepted: Iterable[str]
) -> Optional[str]:
    """Return the effective MIME type if the attachment is accepted, else None."""
    accepted = {m.lower() for m in accepted}
    declared = (declared or "").lower()
    if declared in accepted:
        return declared
    # Mail clients often send PDFs as application/octet-stream
    guessed, _ = mimetypes.guess_type(filename)
    if guessed and guessed.lower() in accepted:
        return guessed.lower()
    return None


def jobs_from_email(
    message: Message,
    email_id: Optional[str] = None,
    received_at: Optional[str] = None,
    accepted_mime_types: Iterable[str] = DEFAULT_ACCEPTED_MIME_TYPES,
) -> list[DocumentJob]:
    """
    Normalize an email into DocumentJobs.

    Args:
        message: Parsed email message
        email_id: Override for the email identifier (default: Message-ID)
        received_at: Override for the receive timestamp (default: Date header)
        accepted_mime_types: Attachment types that become jobs

    Returns:
        One DocumentJob per accepted, non-empty attachment
    """
    accepted_mime_types = tuple(accepted_mime_types)
    email_id = email_id or resolve_email_id(message)
    received_at = received_at or resolve_received_at(message)

    jobs: list[DocumentJob] = []
    seen: set[str] = set()

    for part in message.walk():
        if part.is_multipart():
            continue

        filename = part.get_filename()
        if not filename:
            continue

        mime_type = _attachment_mime_type(part.get_content_type(), filename, accepted_mime_types)
        if mime_type is None:
            logger.debug("[%s] Skipping attachment %s (%s)", email_id, filename, part.get_content_type())
            continue

        payload = part.get_payload(decode=True)
        if not payload:
            logger.warning("[%s] Attachment %s is empty, skipping", email_id, filename)
            continue

        if filename in seen:
            logger.warning(
                "[%s] Duplicate attachment filename %s, keeping the first one", email_id, filename
            )
            continue
        seen.add(filename)

        jobs.append(
            DocumentJob(
                email_id=email_id,
                filename=filename,
                content_bytes=payload,
                mime_type=mime_type,
                received_at=received_at,
            )
        )

    logger.info("[%s] Normalized %d attachment(s) into document jobs", email_id, len(jobs))
    return jobs


def jobs_from_bytes(raw: bytes, **kwargs) -> list[DocumentJob]:
    """Parse raw RFC 822 bytes and normalize them into DocumentJobs."""
    message = email.message_from_bytes(raw, policy=default_policy)
    return jobs_from_email(message, **kwargs)


def jobs_from_file(path: Path, **kwargs) -> list[DocumentJob]:
    """Read an .eml file and normalize it into DocumentJobs."""
    return jobs_from_bytes(Path(path).read_bytes(), **kwargs)


class EmailDirectorySource:
    """
    Document source over a directory of .eml files.

    Used for reprocessing: documents are looked up by (email_id, filename)
    after indexing every message in the directory once.
    """

    def __init__(
        self,
        directory: Path,
        accepted_mime_types: Iterable[str] = DEFAULT_ACCEPTED_MIME_TYPES,
    ):
        self.directory = Path(directory)
        self.accepted_mime_types = tuple(accepted_mime_types)
        self._index: Optional[dict[tuple[str, str], DocumentJob]] = None

    def _build_index(self) -> dict[tuple[str, str], DocumentJob]:
        index: dict[tuple[str, str], DocumentJob] = {}
        for path in sorted(self.directory.glob("*.eml")):
            for job in jobs_from_file(path, accepted_mime_types=self.accepted_mime_types):
                index.setdefault(job.fingerprint, job)
        logger.info("Indexed %d document(s) from %s", len(index), self.directory)
        return index

    def fetch(self, email_id: str, filename: str) -> Optional[DocumentJob]:
        if self._index is None:
            self._index = self._build_index()
        return self._index.get((email_id, filename))
