"""
Inbound receipts → Stage pipeline → Bank statement reconciliation

Classifies and extracts receipt data from emailed documents with an
append-only per-stage audit log, then reconciles the extracted receipts
against bank statement exports under date/amount tolerance.
"""

__version__ = "0.1.0"
