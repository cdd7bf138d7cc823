"""
Error taxonomy.

Stage-level errors (capability, persistence) are recovered inside the
pipeline and surfaced as StageLog rows. Statement row errors are collected
per row. Only ConfigurationError is meant to stop the process.
"""


class ReceiptReconError(Exception):
    """Base exception for all receipt-recon errors."""

    pass


class CapabilityError(ReceiptReconError):
    """Classifier/extractor capability failed or returned a malformed response."""

    pass


class CapabilityTimeoutError(CapabilityError):
    """Capability call did not finish within the configured timeout."""

    def __init__(self, operation: str, timeout_seconds: float):
        self.operation = operation
        self.timeout_seconds = timeout_seconds
        super().__init__(f"{operation} timed out after {timeout_seconds:g}s")


class PersistenceError(ReceiptReconError):
    """Processing store read or write failed."""

    pass


class ParseError(ReceiptReconError):
    """A single statement row (or value) could not be parsed."""

    pass


class ConfigurationError(ReceiptReconError):
    """Required configuration is missing or invalid. Fatal at startup."""

    def __init__(self, errors: list[str]):
        self.errors = errors
        super().__init__("Invalid configuration: " + "; ".join(errors))


class FingerprintBusyError(ReceiptReconError):
    """Another processing attempt for the same (email_id, filename) is in flight."""

    def __init__(self, key: str):
        self.key = key
        super().__init__(f"Document {key} is already being processed, retry later")
