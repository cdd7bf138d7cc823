"""Tests for the reconciliation service."""

from datetime import date
from decimal import Decimal

import pytest
from conftest import FakeCapability, make_job

from receipt_recon.config import Config, PipelineConfig
from receipt_recon.pipeline import StagePipelineEngine
from receipt_recon.schemas import BankTransaction
from receipt_recon.services import ReconciliationService
from receipt_recon.state_store import StateStore


@pytest.fixture
def store(temp_db):
    return StateStore(temp_db)


@pytest.fixture
def service(store):
    return ReconciliationService(store, Config(state_db_path=store.db_path))


@pytest.fixture
def receipts(store):
    """Three completed receipts and one document that is not a receipt."""
    documents = [
        ("m1", FakeCapability(merchant_name="Coffee Shop", total_amount="4.50",
                              transaction_date="2024-03-01")),
        ("m2", FakeCapability(merchant_name="Hardware Store", total_amount="89.99",
                              transaction_date="2024-03-03")),
        ("m3", FakeCapability(merchant_name="Bookshop", total_amount="30.00",
                              transaction_date="2024-03-06")),
        ("m4", FakeCapability(is_receipt=False)),
    ]
    for email_id, capability in documents:
        engine = StagePipelineEngine(store, capability, PipelineConfig())
        engine.process(make_job(email_id=email_id))


class TestImportStatement:
    """Tests for import_statement."""

    def test_import_text(self, service, store, sample_statement):
        result = service.import_statement(sample_statement, filename="march.csv")

        assert result.transaction_count == 4
        assert result.error_count == 1
        upload = store.get_statement_upload(result.statement_id)
        assert upload.filename == "march.csv"
        assert upload.total_rows == 5
        assert upload.errors[0].row_index == 5
        assert len(store.list_bank_transactions(result.statement_id)) == 4
        assert result.to_dict()["transactions"] == 4

    def test_import_file_uses_file_name(self, service, tmp_path, sample_statement):
        path = tmp_path / "bank-2024-03.csv"
        path.write_text(sample_statement, encoding="utf-8")

        result = service.import_statement(path)

        assert result.filename == "bank-2024-03.csv"

    def test_import_file_with_undecodable_line(self, service, store, tmp_path):
        path = tmp_path / "export.csv"
        path.write_bytes(
            b"Date,Description,Amount\n"
            b"2024-03-01,Caf\xe9 Central,-3.50\n"
            b"2024-03-02,BOOKSHOP,-23.10\n"
        )

        result = service.import_statement(path)

        assert result.transaction_count == 1
        assert [e.row_index for e in result.parse_result.errors] == [2]
        upload = store.get_statement_upload(result.statement_id)
        assert upload.error_count == 1
        assert "not valid UTF-8" in upload.errors[0].reason

    def test_same_content_same_hash(self, service, store, sample_statement):
        first = service.import_statement(sample_statement)
        second = service.import_statement(sample_statement)

        assert first.statement_id != second.statement_id
        assert (
            store.get_statement_upload(first.statement_id).content_hash
            == store.get_statement_upload(second.statement_id).content_hash
        )


class TestReconcile:
    """Tests for reconcile."""

    @pytest.mark.usefixtures("receipts")
    def test_reconcile_statement_text(self, service, sample_statement):
        report = service.reconcile(sample_statement)

        pairs = {(m.receipt.merchant_name, m.transaction.description) for m in report.matches}
        assert pairs == {
            ("Coffee Shop", "COFFEE SHOP 123"),
            ("Hardware Store", "HARDWARE STORE"),
        }
        assert [r.merchant_name for r in report.unmatched_receipts] == ["Bookshop"]
        assert [t.description for t in report.unmatched_bank_transactions] == ["BOOKSHOP"]
        assert [t.description for t in report.ignored_credits] == ["SALARY ACME"]
        assert [e.row_index for e in report.parse_errors] == [5]
        assert report.reconciliation_rate == pytest.approx(50.0)

    @pytest.mark.usefixtures("receipts")
    def test_reconcile_file(self, service, tmp_path, sample_statement):
        path = tmp_path / "statement.csv"
        path.write_text(sample_statement, encoding="utf-8")

        assert service.reconcile(path).matched_count == 2

    @pytest.mark.usefixtures("receipts")
    def test_reconcile_transactions(self, service):
        report = service.reconcile(
            [BankTransaction(date(2024, 3, 7), "BOOKSHOP", Decimal("-30.00"))]
        )

        assert [m.receipt.merchant_name for m in report.matches] == ["Bookshop"]
        assert report.parse_errors == []

    @pytest.mark.usefixtures("receipts")
    def test_period_filter(self, service, sample_statement):
        report = service.reconcile(
            sample_statement, start_date=date(2024, 3, 2), end_date=date(2024, 3, 31)
        )

        assert [m.receipt.merchant_name for m in report.matches] == ["Hardware Store"]
        assert [r.merchant_name for r in report.unmatched_receipts] == ["Bookshop"]
        assert report.reconciliation_rate == pytest.approx(100 / 3)

    @pytest.mark.usefixtures("receipts")
    def test_reconcile_stored_statement(self, service, sample_statement):
        imported = service.import_statement(sample_statement)

        report = service.reconcile(statement_id=imported.statement_id, persist=True)

        assert report.matched_count == 2
        assert [e.row_index for e in report.parse_errors] == [5]
        runs = service.recent_runs()
        assert len(runs) == 1
        assert runs[0]["statement_id"] == imported.statement_id
        assert runs[0]["matched_count"] == 2

    def test_not_persisted_by_default(self, service, sample_statement):
        service.reconcile(sample_statement)
        assert service.recent_runs() == []

    def test_no_receipts(self, service, sample_statement):
        report = service.reconcile(sample_statement)

        assert report.matched_count == 0
        assert report.unmatched_transaction_count == 3
        assert report.reconciliation_rate == 0.0

    def test_statement_required(self, service):
        with pytest.raises(ValueError):
            service.reconcile()

    def test_unknown_statement_id(self, service):
        with pytest.raises(ValueError):
            service.reconcile(statement_id=42)

    @pytest.mark.usefixtures("receipts")
    def test_tolerance_from_config(self, store, sample_statement):
        config = Config(state_db_path=store.db_path)
        config.reconciliation.date_tolerance_days = 0
        service = ReconciliationService(store, config)

        report = service.reconcile(sample_statement)

        # Hardware posted a day after the receipt date
        assert [m.receipt.merchant_name for m in report.matches] == ["Coffee Shop"]


class TestManualMatches:
    """Tests for manual matches and their effect on reconcile."""

    @pytest.fixture
    def statement_id(self, service, sample_statement, receipts):
        return service.import_statement(sample_statement).statement_id

    @staticmethod
    def receipt_id(store, merchant_name):
        return {r.merchant_name: r for r in store.list_receipt_records()}[
            merchant_name
        ].receipt_id

    @staticmethod
    def transaction_id(store, statement_id, description):
        return {t.description: t for t in store.list_bank_transactions(statement_id)}[
            description
        ].transaction_id

    def test_pinned_pair_is_reported_as_manual(self, service, store, statement_id):
        service.create_manual_match(
            self.receipt_id(store, "Bookshop"),
            self.transaction_id(store, statement_id, "BOOKSHOP"),
            notes="store credit applied",
        )

        report = service.reconcile(statement_id=statement_id)

        assert report.matched_count == 3
        assert report.manual_count == 1
        [manual] = [m for m in report.matches if m.manual]
        assert manual.receipt.merchant_name == "Bookshop"
        assert manual.transaction.description == "BOOKSHOP"
        assert manual.amount_delta == Decimal("6.90")
        assert report.unmatched_receipts == []
        assert report.unmatched_bank_transactions == []
        assert report.reconciliation_rate == pytest.approx(100.0)
        assert report.summary()["manual_matches"] == 1

    def test_pinned_records_leave_automatic_matching(self, service, store, statement_id):
        service.create_manual_match(
            self.receipt_id(store, "Coffee Shop"),
            self.transaction_id(store, statement_id, "BOOKSHOP"),
        )

        report = service.reconcile(statement_id=statement_id)

        pairs = {
            (m.receipt.merchant_name, m.transaction.description, m.manual)
            for m in report.matches
        }
        assert pairs == {
            ("Coffee Shop", "BOOKSHOP", True),
            ("Hardware Store", "HARDWARE STORE", False),
        }
        assert [r.merchant_name for r in report.unmatched_receipts] == ["Bookshop"]
        assert [t.description for t in report.unmatched_bank_transactions] == [
            "COFFEE SHOP 123"
        ]

    def test_removed_match_no_longer_applies(self, service, store, statement_id):
        match_id = service.create_manual_match(
            self.receipt_id(store, "Coffee Shop"),
            self.transaction_id(store, statement_id, "BOOKSHOP"),
        )

        assert service.remove_manual_match(match_id) is True
        assert service.remove_manual_match(match_id) is False
        assert service.list_manual_matches() == []

        report = service.reconcile(statement_id=statement_id)
        assert report.manual_count == 0
        assert report.matched_count == 2

    def test_pinned_receipt_held_back_from_other_statements(
        self, service, store, statement_id, sample_statement
    ):
        service.create_manual_match(
            self.receipt_id(store, "Bookshop"),
            self.transaction_id(store, statement_id, "BOOKSHOP"),
        )

        # Statement text has no stored rows, so the pinned side is absent
        report = service.reconcile(sample_statement)

        assert report.manual_count == 0
        assert report.unmatched_receipts == []
        assert [t.description for t in report.unmatched_bank_transactions] == ["BOOKSHOP"]

    def test_superseded_receipt_pin_is_ignored(self, service, store, statement_id):
        old_receipt_id = self.receipt_id(store, "Bookshop")
        service.create_manual_match(
            old_receipt_id, self.transaction_id(store, statement_id, "BOOKSHOP")
        )

        capability = FakeCapability(
            merchant_name="Bookshop", total_amount="30.00", transaction_date="2024-03-06"
        )
        engine = StagePipelineEngine(store, capability, PipelineConfig())
        engine.process(make_job(email_id="m3"), force_reprocess=True)

        report = service.reconcile(statement_id=statement_id)

        assert report.manual_count == 0
        assert [r.merchant_name for r in report.unmatched_receipts] == ["Bookshop"]
        assert [t.description for t in report.unmatched_bank_transactions] == ["BOOKSHOP"]

        with pytest.raises(ValueError, match="superseded"):
            service.create_manual_match(
                old_receipt_id, self.transaction_id(store, statement_id, "HARDWARE STORE")
            )

    def test_unknown_receipt_rejected(self, service, store, statement_id):
        with pytest.raises(ValueError, match="does not exist"):
            service.create_manual_match(
                999, self.transaction_id(store, statement_id, "BOOKSHOP")
            )
