"""
Tests for the CLI interface.
"""
import json
import os
import shutil
import tempfile

import pytest
import structlog
import yaml
from typer.testing import CliRunner

from usage_analytics.cli.main import app, EXIT_CODE_OK, EXIT_CODE_FAIL
from usage_analytics.storage.repository import TransactionRepository

runner = CliRunner()

USERS_CSV = (
    "User_ID,User_Name,Company_Name,Department,Region,Is_Active_Sub,Signup_Date\n"
    "u1,Ada,Acme,R&D,EU,true,2023-01-01\n"
    "u2,Grace,Globex,Sales,US,false,2023-02-01\n"
    ",Nobody,Acme,R&D,EU,true,2023-03-01\n"
)

TRANSACTIONS_CSV = (
    "RowId,User_ID,Conversation_ID,Model_Name,Token_Type,Token_Count,Rate_Per_1k,Calculated_Cost,Timestamp\n"
    "r1,u1,c1,gpt-4,prompt,100,0.03,1.005,2024-01-05T10:00:00Z\n"
    "r2,u1,c1,gpt-4,completion,200,0.06,2.004,2024-01-05T10:01:00Z\n"
    "r3,u2,c2,claude,prompt,50,0.08,4.0,2024-01-06T09:00:00Z\n"
)


@pytest.fixture(autouse=True)
def reset_logging():
    """Each invocation binds structlog to the runner's streams."""
    yield
    structlog.reset_defaults()


class TestCLI:
    """Test CLI commands."""

    def setup_method(self):
        self.temp_dir = tempfile.mkdtemp()
        self.db_path = os.path.join(self.temp_dir, "usage.db")
        self.config_path = os.path.join(self.temp_dir, "config.yaml")
        with open(self.config_path, 'w', encoding='utf-8') as f:
            yaml.dump({"logging": {"level": "ERROR"}, "ingestion": {"batch_size": 2}}, f)

    def teardown_method(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def _write(self, name: str, content: str) -> str:
        path = os.path.join(self.temp_dir, name)
        with open(path, 'w', encoding='utf-8') as f:
            f.write(content)
        return path

    def _invoke(self, *args: str):
        return runner.invoke(app, ["--config", self.config_path, "--db", self.db_path, *args])

    def _import_sample(self):
        users_path = self._write("users.csv", USERS_CSV)
        transactions_path = self._write("transactions.csv", TRANSACTIONS_CSV)
        return self._invoke("import-all", users_path, transactions_path)

    def test_init_creates_database(self):
        """Test that init creates the schema."""
        result = self._invoke("init")

        assert result.exit_code == EXIT_CODE_OK
        assert "Database initialized successfully" in result.output
        assert os.path.exists(self.db_path)

    def test_import_all(self):
        """Test importing users then transactions."""
        result = self._import_sample()

        assert result.exit_code == EXIT_CODE_OK
        assert "Users: 2 imported, 1 errors" in result.output
        assert "Transactions: 3 imported, 0 errors" in result.output
        assert TransactionRepository(self.db_path).count() == 3

    def test_import_missing_file_fails(self):
        result = self._invoke("import-users", os.path.join(self.temp_dir, "missing.csv"))

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Import failed" in result.output

    def test_import_transactions(self):
        path = self._write("transactions.csv", TRANSACTIONS_CSV)
        result = self._invoke("import-transactions", path)

        assert result.exit_code == EXIT_CODE_OK
        assert "Transactions: 3 imported, 0 errors" in result.output

    def test_summary_json(self):
        """Test that the JSON summary carries the camelCase shape."""
        self._import_sample()

        result = self._invoke("report", "summary", "--json")

        assert result.exit_code == EXIT_CODE_OK
        data = json.loads(result.output)
        assert data["totalTransactions"] == 3
        assert data["totalCost"] == 7.01
        assert data["totalUsers"] == 2
        assert data["proUsers"] == 1
        assert data["totalConversations"] == 2

    def test_report_filters(self):
        self._import_sample()

        result = self._invoke(
            "report", "models", "--start", "2024-01-06", "--end", "2024-01-06", "--json"
        )

        assert result.exit_code == EXIT_CODE_OK
        assert json.loads(result.output) == [
            {"model": "claude", "cost": 4.0, "tokens": 50, "transactions": 1}
        ]

    def test_top_users_limit(self):
        self._import_sample()

        result = self._invoke("report", "top-users", "--limit", "1", "--json")

        assert result.exit_code == EXIT_CODE_OK
        rows = json.loads(result.output)
        assert [row["userId"] for row in rows] == ["u2"]

    def test_report_table(self):
        self._import_sample()

        result = self._invoke("report", "regions")

        assert result.exit_code == EXIT_CODE_OK
        assert "Usage by Region" in result.output

    def test_report_on_empty_database(self):
        result = self._invoke("report", "daily")

        assert result.exit_code == EXIT_CODE_OK
        assert "No data for Daily Trend" in result.output

    def test_bad_date_fails(self):
        """Test that a malformed date exits non-zero."""
        result = self._invoke("report", "summary", "--start", "01/05/2024")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "start_date must be YYYY-MM-DD" in result.output

    def test_unknown_report_kind(self):
        result = self._invoke("report", "weekly")

        assert result.exit_code != EXIT_CODE_OK

    def test_regions(self):
        self._import_sample()

        result = self._invoke("regions")

        assert result.exit_code == EXIT_CODE_OK
        assert result.output.split() == ["EU", "US"]

    def test_date_range(self):
        self._import_sample()

        result = self._invoke("date-range")

        assert result.exit_code == EXIT_CODE_OK
        assert "2024-01-05" in result.output
        assert "2024-01-06" in result.output

    def test_invalid_config_fails(self):
        """Test that a broken settings file stops the CLI."""
        with open(self.config_path, 'w', encoding='utf-8') as f:
            yaml.dump({"ingestion": {"batch_size": 0}}, f)

        result = self._invoke("init")

        assert result.exit_code == EXIT_CODE_FAIL
        assert "Invalid configuration" in result.output

    def test_missing_config_fails(self):
        result = runner.invoke(app, ["--config", os.path.join(self.temp_dir, "nope.yaml"), "init"])

        assert result.exit_code == EXIT_CODE_FAIL
