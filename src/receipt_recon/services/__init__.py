"""Services for statement import and reconciliation."""

from receipt_recon.services.reconciliation import ReconciliationService, StatementImportResult

__all__ = ["ReconciliationService", "StatementImportResult"]
