"""
Bulk CSV import of users and transactions.

Users are upserted one row at a time. Transactions are loaded in fixed-size
batches that tolerate partial failure. Row-level problems are counted,
never raised.
"""

import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Sequence, Tuple, TypeVar

import structlog

from usage_analytics.errors import IngestionRowFailure, UsageAnalyticsError
from usage_analytics.storage.models import Transaction, User, utc_now
from usage_analytics.storage.repository import TransactionRepository, UserRepository

from .parsing import (
    CSVSource,
    IngestionIssueLog,
    parse_boolean,
    parse_integer,
    parse_number,
    parse_text,
    parse_timestamp,
    read_csv_rows,
)

logger = structlog.get_logger(__name__)

J = TypeVar("J")

DEFAULT_BATCH_SIZE = 100

Row = Dict[str, Optional[str]]


@dataclass(frozen=True)
class ImportResult:
    """Counts for one import run.

    cancelled is set when the run stopped early; the counts then cover
    only the work committed before cancellation.
    """
    imported: int = 0
    errors: int = 0
    cancelled: bool = False

    def to_dict(self) -> Dict[str, int]:
        return {"imported": self.imported, "errors": self.errors}


@dataclass(frozen=True)
class ImportAllResult:
    users: ImportResult
    transactions: ImportResult

    def to_dict(self) -> Dict[str, Dict[str, int]]:
        return {"users": self.users.to_dict(), "transactions": self.transactions.to_dict()}


@dataclass(frozen=True)
class _Outcome:
    imported: int
    errors: int


def _collect(outcomes: Iterable[Optional[_Outcome]], total_jobs: int) -> ImportResult:
    """Sum per-job outcomes. None marks a job skipped by cancellation."""
    imported = errors = done = 0
    for outcome in outcomes:
        if outcome is None:
            continue
        imported += outcome.imported
        errors += outcome.errors
        done += 1
    return ImportResult(imported=imported, errors=errors, cancelled=done < total_jobs)


class DataImporter:
    """Loads user and transaction CSV data into the stores."""

    def __init__(
        self,
        users: UserRepository,
        transactions: TransactionRepository,
        batch_size: int = DEFAULT_BATCH_SIZE,
        max_workers: int = 1,
    ):
        if batch_size <= 0:
            raise ValueError("batch_size must be > 0")
        if max_workers <= 0:
            raise ValueError("max_workers must be > 0")
        self.users = users
        self.transactions = transactions
        self.batch_size = batch_size
        self.max_workers = max_workers
        self.issues = IngestionIssueLog()

    # Row assembly

    def build_user(self, line: int, row: Row) -> User:
        """Turn a users.csv row into a User.

        Raises:
            IngestionRowFailure: If User_ID is missing or blank
        """
        user_id = parse_text(row.get("User_ID"))
        if not user_id:
            raise IngestionRowFailure(line, "User_ID")

        active = parse_boolean(row.get("Is_Active_Sub"), "Is_Active_Sub")
        if active.issue:
            self.issues.record(line, active.issue)

        return User(
            user_id=user_id,
            user_name=parse_text(row.get("User_Name")),
            company_name=parse_text(row.get("Company_Name")),
            department=parse_text(row.get("Department")),
            region=parse_text(row.get("Region")),
            is_active_sub=active.value,
            signup_date=parse_text(row.get("Signup_Date")) or "",
        )

    def build_transaction(self, line: int, row: Row, now: datetime) -> Transaction:
        """Turn a transactions.csv row into a Transaction.

        Bad numbers become 0 and a bad timestamp becomes ``now``; each such
        fallback is written to the issue log.

        Raises:
            IngestionRowFailure: If RowId or User_ID is missing or blank
        """
        row_id = parse_text(row.get("RowId"))
        if not row_id:
            raise IngestionRowFailure(line, "RowId")
        user_id = parse_text(row.get("User_ID"))
        if not user_id:
            raise IngestionRowFailure(line, "User_ID")

        token_count = parse_integer(row.get("Token_Count"), "Token_Count")
        rate = parse_number(row.get("Rate_Per_1k"), "Rate_Per_1k")
        cost = parse_number(row.get("Calculated_Cost"), "Calculated_Cost")
        timestamp = parse_timestamp(row.get("Timestamp"), "Timestamp", now=now)
        for result in (token_count, rate, cost, timestamp):
            if result.issue:
                self.issues.record(line, result.issue)

        return Transaction(
            row_id=row_id,
            user_id=user_id,
            conversation_id=parse_text(row.get("Conversation_ID")),
            model_name=parse_text(row.get("Model_Name")),
            token_type=parse_text(row.get("Token_Type")),
            token_count=token_count.value,
            rate_per_1k=rate.value,
            calculated_cost=cost.value,
            timestamp=timestamp.value,
        )

    # Imports

    def import_users(
        self,
        source: CSVSource,
        cancel: Optional[threading.Event] = None,
    ) -> ImportResult:
        """Upsert every user row of a CSV.

        Rows without User_ID and rows the store fails on count as errors.
        Each upsert is independent, so one failure never blocks the others.

        Args:
            source: Path, bytes or open file holding users.csv content
            cancel: Optional event; once set no further rows are upserted

        Returns:
            ImportResult with imported and errors counts
        """
        rows = read_csv_rows(source)
        logger.info("user_import_started", rows=len(rows))
        result = _collect(self._run(rows, self._upsert_user_row, cancel), len(rows))
        self._log_finished("user_import_finished", result)
        return result

    def _upsert_user_row(self, job: Tuple[int, Row]) -> _Outcome:
        line, row = job
        try:
            user = self.build_user(line, row)
        except IngestionRowFailure as e:
            self.issues.record_failure(e)
            return _Outcome(imported=0, errors=1)
        try:
            self.users.upsert(user)
        except (sqlite3.Error, UsageAnalyticsError) as e:
            logger.warning("user_upsert_failed", user_id=user.user_id, line=line, error=str(e))
            self.issues.record_failure(e)
            return _Outcome(imported=0, errors=1)
        return _Outcome(imported=1, errors=0)

    def import_transactions(
        self,
        source: CSVSource,
        cancel: Optional[threading.Event] = None,
    ) -> ImportResult:
        """Insert every transaction row of a CSV in batches.

        Rows without RowId or User_ID are dropped before batching and count
        towards neither imported nor errors. Within a batch, rows the store
        rejects count as errors and the remainder as imported.

        Args:
            source: Path, bytes or open file holding transactions.csv content
            cancel: Optional event; once set no further batches are started

        Returns:
            ImportResult with imported and errors counts
        """
        rows = read_csv_rows(source)
        now = utc_now()
        records: List[Transaction] = []
        for line, row in rows:
            try:
                records.append(self.build_transaction(line, row, now))
            except IngestionRowFailure as e:
                self.issues.record_failure(e)

        dropped = len(rows) - len(records)
        batches = [
            records[start:start + self.batch_size]
            for start in range(0, len(records), self.batch_size)
        ]
        logger.info(
            "transaction_import_started",
            rows=len(rows),
            dropped=dropped,
            batches=len(batches),
        )
        result = _collect(self._run(batches, self._insert_batch, cancel), len(batches))
        self._log_finished("transaction_import_finished", result, dropped=dropped)
        return result

    def _insert_batch(self, batch: Sequence[Transaction]) -> _Outcome:
        try:
            outcome = self.transactions.insert_many(batch)
        except (sqlite3.Error, UsageAnalyticsError) as e:
            logger.warning("transaction_batch_failed", size=len(batch), error=str(e))
            self.issues.record_failure(e)
            return _Outcome(imported=0, errors=len(batch))
        for rejection in outcome.rejected:
            self.issues.record_failure(rejection)
        if outcome.rejected:
            logger.warning(
                "transaction_batch_partial",
                accepted=len(outcome.accepted),
                rejected=len(outcome.rejected),
            )
        return _Outcome(imported=len(outcome.accepted), errors=len(outcome.rejected))

    def import_all(
        self,
        users_source: CSVSource,
        transactions_source: CSVSource,
        cancel: Optional[threading.Event] = None,
    ) -> ImportAllResult:
        """Import users, then transactions. Transactions never wait on users."""
        users = self.import_users(users_source, cancel)
        transactions = self.import_transactions(transactions_source, cancel)
        return ImportAllResult(users=users, transactions=transactions)

    # Scheduling

    def _run(
        self,
        jobs: Sequence[J],
        work: Callable[[J], _Outcome],
        cancel: Optional[threading.Event],
    ) -> List[Optional[_Outcome]]:
        """Run jobs sequentially or on a bounded pool.

        Jobs not started because of cancellation yield None.
        """
        def guarded(job: J) -> Optional[_Outcome]:
            if cancel is not None and cancel.is_set():
                return None
            return work(job)

        if self.max_workers == 1 or len(jobs) <= 1:
            outcomes: List[Optional[_Outcome]] = []
            for job in jobs:
                outcome = guarded(job)
                if outcome is None:
                    break
                outcomes.append(outcome)
            return outcomes

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            return list(pool.map(guarded, jobs))

    def _log_finished(self, event: str, result: ImportResult, **extra) -> None:
        if result.cancelled:
            logger.warning("import_cancelled", imported=result.imported, errors=result.errors)
        logger.info(
            event,
            imported=result.imported,
            errors=result.errors,
            issues=self.issues.total,
            **extra,
        )
