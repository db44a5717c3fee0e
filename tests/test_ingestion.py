"""
Tests for bulk CSV ingestion.
"""

import os
import shutil
import sqlite3
import tempfile
import threading
from unittest.mock import MagicMock

import pytest

from usage_analytics.errors import StoreUnavailable
from usage_analytics.ingestion.importer import DataImporter, ImportResult
from usage_analytics.storage.models import User
from usage_analytics.storage.repository import (
    InsertManyResult,
    TransactionRepository,
    UserRepository,
    initialize_schema,
)

USERS_CSV = (
    "User_ID,User_Name,Region,Is_Active_Sub,Signup_Date,Department,Company_Name\n"
    " u1 , Ada ,EU,TRUE,2023-01-01,R&D,Acme\n"
    "u2,Grace,US,no,2023-02-01,Sales,Globex\n"
    ",Nobody,EU,yes,2023-03-01,R&D,Acme\n"
    "u3,Linus,US,1,,R&D,Initech\n"
)

TX_HEADER = (
    "RowId,User_ID,Model_Name,Conversation_ID,Token_Type,"
    "Token_Count,Rate_Per_1k,Calculated_Cost,Timestamp\n"
)


def tx_row(row_id, user_id="u1", tokens="100", cost="0.5", timestamp="2024-01-05T10:00:00Z",
           model="gpt-4", token_type="prompt"):
    return f"{row_id},{user_id},{model},c-{row_id},{token_type},{tokens},0.03,{cost},{timestamp}\n"


class ImportTestCase:
    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "test.db")
        initialize_schema(self.db_path)
        self.users = UserRepository(self.db_path)
        self.transactions = TransactionRepository(self.db_path)
        self.importer = DataImporter(self.users, self.transactions)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)


class TestImportUsers(ImportTestCase):
    """Test user CSV import."""

    def test_import_counts(self):
        """Rows without User_ID are errors, the rest are upserted."""
        result = self.importer.import_users(USERS_CSV.encode("utf-8"))
        assert result == ImportResult(imported=3, errors=1)
        assert self.users.count() == 3

    def test_fields_normalized(self):
        self.importer.import_users(USERS_CSV.encode("utf-8"))
        ada = self.users.find_by_user_id("u1")
        assert ada.user_name == "Ada"
        assert ada.is_active_sub is True
        assert ada.company_name == "Acme"
        assert self.users.find_by_user_id("u2").is_active_sub is False
        assert self.users.find_by_user_id("u3").is_active_sub is True
        assert self.users.find_by_user_id("u3").signup_date == ""

    def test_reimport_is_idempotent(self):
        """Importing the same CSV twice leaves the store unchanged."""
        self.importer.import_users(USERS_CSV.encode("utf-8"))
        before = self.users.find_all()
        result = self.importer.import_users(USERS_CSV.encode("utf-8"))
        assert result.imported == 3
        assert self.users.find_all() == before

    def test_reimport_overwrites(self):
        self.importer.import_users(USERS_CSV.encode("utf-8"))
        self.importer.import_users(b"User_ID,Region\nu1,APAC\n")
        ada = self.users.find_by_user_id("u1")
        assert ada.region == "APAC"
        assert ada.user_name is None
        assert ada.is_active_sub is False

    def test_missing_id_recorded_in_issue_log(self):
        self.importer.import_users(USERS_CSV.encode("utf-8"))
        assert self.importer.issues.counts.get("IngestionRowFailure") == 1

    def test_store_failure_counts_as_error(self):
        """One failing upsert doesn't stop the others."""
        users = MagicMock()
        users.upsert.side_effect = [None, StoreUnavailable("locked"), None]
        importer = DataImporter(users, MagicMock())
        result = importer.import_users(USERS_CSV.encode("utf-8"))
        assert result == ImportResult(imported=2, errors=2)
        assert users.upsert.call_count == 3

    def test_parallel_upserts(self):
        importer = DataImporter(self.users, self.transactions, max_workers=4)
        result = importer.import_users(USERS_CSV.encode("utf-8"))
        assert result == ImportResult(imported=3, errors=1)


class TestImportTransactions(ImportTestCase):
    """Test transaction CSV import."""

    def test_row_without_row_id_is_dropped(self):
        """An empty RowId counts as neither imported nor error."""
        csv_text = TX_HEADER + tx_row("r1") + tx_row("") + tx_row("r2") + tx_row("r3", user_id="")
        result = self.importer.import_transactions(csv_text.encode("utf-8"))
        assert result == ImportResult(imported=2, errors=0)
        assert self.transactions.count() == 2

    def test_store_rejections_counted_as_errors(self):
        """Negative counts pass parsing but violate the table constraint."""
        csv_text = TX_HEADER + tx_row("r1") + tx_row("r2", tokens="-10") + tx_row("r3")
        result = self.importer.import_transactions(csv_text.encode("utf-8"))
        assert result == ImportResult(imported=2, errors=1)
        assert self.transactions.find_by_row_id("r2") is None

    def test_malformed_cells_default(self):
        csv_text = TX_HEADER + tx_row("r1", tokens="lots", cost="n/a", timestamp="someday")
        result = self.importer.import_transactions(csv_text.encode("utf-8"))
        assert result.imported == 1

        stored = self.transactions.find_by_row_id("r1")
        assert stored.token_count == 0
        assert stored.calculated_cost == 0.0
        assert stored.timestamp is not None
        counts = self.importer.issues.counts
        assert counts["Token_Count"] == 1
        assert counts["Calculated_Cost"] == 1
        assert counts["Timestamp"] == 1

    def test_duplicates_not_deduplicated(self):
        csv_text = TX_HEADER + tx_row("r1") + tx_row("r1")
        result = self.importer.import_transactions(csv_text.encode("utf-8"))
        assert result.imported == 2

    def test_batches(self):
        """Each batch goes through insert_many once."""
        transactions = MagicMock()
        transactions.insert_many.side_effect = lambda batch: InsertManyResult(accepted=list(batch))
        importer = DataImporter(MagicMock(), transactions, batch_size=2)
        csv_text = TX_HEADER + "".join(tx_row(f"r{i}") for i in range(5))

        result = importer.import_transactions(csv_text.encode("utf-8"))

        assert result.imported == 5
        assert [len(call.args[0]) for call in transactions.insert_many.call_args_list] == [2, 2, 1]

    def test_default_batch_size_is_100(self):
        csv_text = TX_HEADER + "".join(tx_row(f"r{i}") for i in range(250))
        transactions = MagicMock()
        transactions.insert_many.side_effect = lambda batch: InsertManyResult(accepted=list(batch))
        result = DataImporter(MagicMock(), transactions).import_transactions(csv_text.encode("utf-8"))
        assert result.imported == 250
        assert transactions.insert_many.call_count == 3

    def test_failed_batch_counts_every_row(self):
        transactions = MagicMock()
        transactions.insert_many.side_effect = [
            StoreUnavailable("locked"),
            InsertManyResult(accepted=[MagicMock()]),
        ]
        importer = DataImporter(MagicMock(), transactions, batch_size=2)
        csv_text = TX_HEADER + "".join(tx_row(f"r{i}") for i in range(3))

        result = importer.import_transactions(csv_text.encode("utf-8"))

        assert result == ImportResult(imported=1, errors=2)

    def test_parallel_batches(self):
        importer = DataImporter(self.users, self.transactions, batch_size=3, max_workers=3)
        csv_text = TX_HEADER + "".join(tx_row(f"r{i}") for i in range(10)) + tx_row("bad", tokens="-1")
        result = importer.import_transactions(csv_text.encode("utf-8"))
        assert result == ImportResult(imported=10, errors=1)
        assert self.transactions.count() == 10

    def test_locked_store_counts_every_row_of_the_batch(self):
        """A batch that cannot reach the store counts all its rows as errors."""
        locker = sqlite3.connect(self.db_path, isolation_level=None)
        try:
            locker.execute("BEGIN EXCLUSIVE")
            importer = DataImporter(
                self.users, TransactionRepository(self.db_path, timeout=0.1), batch_size=2
            )
            csv_text = TX_HEADER + "".join(tx_row(f"r{i}") for i in range(3))

            result = importer.import_transactions(csv_text.encode("utf-8"))

            assert result == ImportResult(imported=0, errors=3)
            assert importer.issues.counts["StoreUnavailable"] == 2
        finally:
            locker.close()
        assert self.transactions.count() == 0

    def test_missing_schema_counts_as_errors(self):
        fresh_path = os.path.join(self.temp_dir, "fresh.db")
        importer = DataImporter(UserRepository(fresh_path), TransactionRepository(fresh_path))
        csv_text = TX_HEADER + tx_row("r1") + tx_row("r2")
        assert importer.import_transactions(csv_text.encode("utf-8")) == ImportResult(imported=0, errors=2)

    def test_cancellation_keeps_committed_batches(self):
        """Batches after cancellation are not started."""
        cancel = threading.Event()
        transactions = MagicMock()

        def insert(batch):
            cancel.set()
            return InsertManyResult(accepted=list(batch))

        transactions.insert_many.side_effect = insert
        importer = DataImporter(MagicMock(), transactions, batch_size=2)
        csv_text = TX_HEADER + "".join(tx_row(f"r{i}") for i in range(6))

        result = importer.import_transactions(csv_text.encode("utf-8"), cancel=cancel)

        assert result == ImportResult(imported=2, errors=0, cancelled=True)
        assert transactions.insert_many.call_count == 1

    def test_cancelled_before_start(self):
        cancel = threading.Event()
        cancel.set()
        importer = DataImporter(self.users, self.transactions, max_workers=2)
        csv_text = TX_HEADER + tx_row("r1")
        result = importer.import_transactions(csv_text.encode("utf-8"), cancel=cancel)
        assert result.cancelled
        assert result.imported == 0
        assert self.transactions.count() == 0


class TestImportAll(ImportTestCase):
    def test_users_then_transactions(self):
        """Transactions load even when their user is unknown."""
        csv_text = TX_HEADER + tx_row("r1", user_id="u1") + tx_row("r2", user_id="ghost")
        result = self.importer.import_all(USERS_CSV.encode("utf-8"), csv_text.encode("utf-8"))
        assert result.users == ImportResult(imported=3, errors=1)
        assert result.transactions == ImportResult(imported=2, errors=0)
        assert result.to_dict() == {
            "users": {"imported": 3, "errors": 1},
            "transactions": {"imported": 2, "errors": 0},
        }

    def test_from_files(self):
        users_path = os.path.join(self.temp_dir, "users.csv")
        tx_path = os.path.join(self.temp_dir, "transactions.csv")
        with open(users_path, "w", encoding="utf-8") as f:
            f.write(USERS_CSV)
        with open(tx_path, "w", encoding="utf-8") as f:
            f.write(TX_HEADER + tx_row("r1"))
        result = self.importer.import_all(users_path, tx_path)
        assert result.transactions.imported == 1


class TestImporterSettings:
    def test_rejects_bad_batch_size(self):
        with pytest.raises(ValueError):
            DataImporter(MagicMock(), MagicMock(), batch_size=0)

    def test_rejects_bad_workers(self):
        with pytest.raises(ValueError):
            DataImporter(MagicMock(), MagicMock(), max_workers=0)

    def test_build_user_needs_id(self):
        importer = DataImporter(MagicMock(), MagicMock())
        assert importer.build_user(2, {"User_ID": " u9 "}) == User(
            user_id="u9", is_active_sub=False, signup_date=""
        )
