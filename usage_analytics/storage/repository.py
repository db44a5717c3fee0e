"""
Repository pattern for data access.

Handles the users (dimension) and transactions (fact) tables.
"""

import sqlite3
from dataclasses import dataclass, field
from datetime import datetime, time, timezone
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

import structlog

from usage_analytics.errors import IngestionStoreFailure, ValidationFailure

from .db import DEFAULT_DB_PATH, DEFAULT_TIMEOUT_SECONDS, connection
from .models import (
    Transaction,
    TransactionFilter,
    User,
    UserFilter,
    format_timestamp,
    parse_timestamp,
    utc_now,
)

logger = structlog.get_logger(__name__)

# Stay well below SQLITE_MAX_VARIABLE_NUMBER on older builds
_LOOKUP_CHUNK_SIZE = 500

_USER_COLUMNS = (
    "id, user_id, user_name, company_name, department, region, "
    "is_active_sub, signup_date, created_at, updated_at"
)
_TRANSACTION_COLUMNS = (
    "id, row_id, user_id, conversation_id, model_name, token_type, "
    "token_count, rate_per_1k, calculated_cost, timestamp, created_at, updated_at"
)

USER_DISTINCT_FIELDS = {"region", "department", "company_name"}
TRANSACTION_DISTINCT_FIELDS = {"model_name", "token_type", "conversation_id", "user_id"}


def initialize_schema(
    db_path: str = DEFAULT_DB_PATH,
    timeout: float = DEFAULT_TIMEOUT_SECONDS,
) -> None:
    """Create the users and transactions tables if they don't exist.

    row_id carries an index but no UNIQUE constraint: bulk loads are not
    deduplicated, only the single-record path checks for duplicates.

    Args:
        db_path: Path to SQLite database file
        timeout: Seconds to wait on a locked database
    """
    with connection(db_path, timeout) as conn:
        conn.executescript("""
            CREATE TABLE IF NOT EXISTS users (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                user_id TEXT NOT NULL UNIQUE,
                user_name TEXT,
                company_name TEXT,
                department TEXT,
                region TEXT,
                is_active_sub INTEGER NOT NULL DEFAULT 0,
                signup_date TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_users_region ON users (region);
            CREATE INDEX IF NOT EXISTS idx_users_department ON users (department);

            CREATE TABLE IF NOT EXISTS transactions (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                row_id TEXT NOT NULL,
                user_id TEXT NOT NULL,
                conversation_id TEXT,
                model_name TEXT,
                token_type TEXT,
                token_count INTEGER NOT NULL DEFAULT 0 CHECK (token_count >= 0),
                rate_per_1k REAL NOT NULL DEFAULT 0 CHECK (rate_per_1k >= 0),
                calculated_cost REAL NOT NULL DEFAULT 0 CHECK (calculated_cost >= 0),
                timestamp TEXT,
                created_at TEXT NOT NULL,
                updated_at TEXT NOT NULL
            );
            CREATE INDEX IF NOT EXISTS idx_transactions_row_id ON transactions (row_id);
            CREATE INDEX IF NOT EXISTS idx_transactions_user_id ON transactions (user_id);
            CREATE INDEX IF NOT EXISTS idx_transactions_timestamp ON transactions (timestamp);
        """)
        conn.commit()
    logger.info("schema_initialized", db_path=db_path)


@dataclass
class InsertManyResult:
    """Outcome of a batch insert: every input lands in exactly one list."""
    accepted: List[Transaction] = field(default_factory=list)
    rejected: List[IngestionStoreFailure] = field(default_factory=list)

    @property
    def attempted(self) -> int:
        return len(self.accepted) + len(self.rejected)


def _paginate(query: str, params: List[Any], limit: Optional[int], skip: Optional[int]) -> str:
    if limit is not None or skip:
        query += " LIMIT ? OFFSET ?"
        params.append(limit if limit is not None else -1)
        params.append(skip or 0)
    return query


def _where(conditions: List[str]) -> str:
    return " WHERE " + " AND ".join(conditions) if conditions else ""


def _chunks(values: Sequence[str], size: int) -> Iterable[Sequence[str]]:
    for start in range(0, len(values), size):
        yield values[start:start + size]


def _row_to_user(row: sqlite3.Row) -> User:
    return User(
        id=row["id"],
        user_id=row["user_id"],
        user_name=row["user_name"],
        company_name=row["company_name"],
        department=row["department"],
        region=row["region"],
        is_active_sub=bool(row["is_active_sub"]),
        signup_date=row["signup_date"],
        created_at=parse_timestamp(row["created_at"]),
        updated_at=parse_timestamp(row["updated_at"]),
    )


def _row_to_transaction(row: sqlite3.Row) -> Transaction:
    return Transaction(
        id=row["id"],
        row_id=row["row_id"],
        user_id=row["user_id"],
        conversation_id=row["conversation_id"],
        model_name=row["model_name"],
        token_type=row["token_type"],
        token_count=row["token_count"],
        rate_per_1k=row["rate_per_1k"],
        calculated_cost=row["calculated_cost"],
        timestamp=parse_timestamp(row["timestamp"]),
        created_at=parse_timestamp(row["created_at"]),
        updated_at=parse_timestamp(row["updated_at"]),
    )


def _to_column_value(value: Any) -> Any:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, datetime):
        return format_timestamp(value)
    return value


class UserRepository:
    """Repository for the user dimension table."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH, timeout: float = DEFAULT_TIMEOUT_SECONDS):
        """Initialize the repository with a database path.

        Args:
            db_path: Path to SQLite database file
            timeout: Seconds to wait on a locked database
        """
        self.db_path = db_path
        self.timeout = timeout

    def _connect(self):
        return connection(self.db_path, self.timeout)

    def create(self, user: User) -> User:
        """Insert a new user.

        Raises:
            ValidationFailure: If a user with the same user_id exists
        """
        now = format_timestamp(utc_now())
        with self._connect() as conn:
            try:
                cursor = conn.execute("""
                    INSERT INTO users
                    (user_id, user_name, company_name, department, region,
                     is_active_sub, signup_date, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """, (
                    user.user_id,
                    user.user_name,
                    user.company_name,
                    user.department,
                    user.region,
                    int(user.is_active_sub),
                    user.signup_date,
                    now,
                    now,
                ))
                conn.commit()
            except sqlite3.IntegrityError as e:
                raise ValidationFailure(f"User already exists: {user.user_id}") from e
            new_id = cursor.lastrowid
        return self.find_by_id(new_id)

    def upsert(self, user: User) -> None:
        """Insert the user or replace every mutable field of the existing one.

        The row is left untouched, updated_at included, when nothing changed,
        so re-importing the same data is a no-op.
        """
        now = format_timestamp(utc_now())
        with self._connect() as conn:
            conn.execute("""
                INSERT INTO users
                (user_id, user_name, company_name, department, region,
                 is_active_sub, signup_date, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT (user_id) DO UPDATE SET
                    user_name = excluded.user_name,
                    company_name = excluded.company_name,
                    department = excluded.department,
                    region = excluded.region,
                    is_active_sub = excluded.is_active_sub,
                    signup_date = excluded.signup_date,
                    updated_at = excluded.updated_at
                WHERE user_name IS NOT excluded.user_name
                   OR company_name IS NOT excluded.company_name
                   OR department IS NOT excluded.department
                   OR region IS NOT excluded.region
                   OR is_active_sub IS NOT excluded.is_active_sub
                   OR signup_date IS NOT excluded.signup_date
            """, (
                user.user_id,
                user.user_name,
                user.company_name,
                user.department,
                user.region,
                int(user.is_active_sub),
                user.signup_date,
                now,
                now,
            ))
            conn.commit()

    def find_by_id(self, id: int) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE id = ?", (id,)
            ).fetchone()
        return _row_to_user(row) if row else None

    def find_by_user_id(self, user_id: str) -> Optional[User]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_USER_COLUMNS} FROM users WHERE user_id = ?", (str(user_id),)
            ).fetchone()
        return _row_to_user(row) if row else None

    def find_by_user_ids(self, user_ids: Iterable[str]) -> Dict[str, User]:
        """Resolve many business keys at once.

        Unknown ids are simply absent from the returned mapping.
        """
        ids = sorted({str(user_id) for user_id in user_ids})
        users: Dict[str, User] = {}
        if not ids:
            return users
        with self._connect() as conn:
            for chunk in _chunks(ids, _LOOKUP_CHUNK_SIZE):
                placeholders = ", ".join("?" for _ in chunk)
                cursor = conn.execute(
                    f"SELECT {_USER_COLUMNS} FROM users WHERE user_id IN ({placeholders})",
                    list(chunk),
                )
                for row in cursor.fetchall():
                    user = _row_to_user(row)
                    users[user.user_id] = user
        return users

    def _filter_conditions(self, query: UserFilter) -> Tuple[List[str], List[Any]]:
        conditions: List[str] = []
        params: List[Any] = []
        if query.region:
            conditions.append("region = ?")
            params.append(query.region)
        if query.department:
            conditions.append("department = ?")
            params.append(query.department)
        if query.is_active_sub is not None:
            conditions.append("is_active_sub = ?")
            params.append(int(query.is_active_sub))
        return conditions, params

    def find_all(self, query: Optional[UserFilter] = None) -> List[User]:
        """Get users matching the filter, ordered by storage id."""
        query = query or UserFilter()
        conditions, params = self._filter_conditions(query)
        sql = f"SELECT {_USER_COLUMNS} FROM users" + _where(conditions) + " ORDER BY id"
        sql = _paginate(sql, params, query.limit, query.skip)
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_user(row) for row in rows]

    def count(self, query: Optional[UserFilter] = None) -> int:
        query = query or UserFilter()
        conditions, params = self._filter_conditions(query)
        with self._connect() as conn:
            row = conn.execute("SELECT COUNT(*) FROM users" + _where(conditions), params).fetchone()
        return row[0]

    def update(self, id: int, changes: Dict[str, Any]) -> Optional[User]:
        """Apply already-validated field changes. Returns None if id is unknown."""
        if changes:
            assignments = ", ".join(f"{name} = ?" for name in changes)
            params = [_to_column_value(value) for value in changes.values()]
            params.extend([format_timestamp(utc_now()), id])
            with self._connect() as conn:
                conn.execute(
                    f"UPDATE users SET {assignments}, updated_at = ? WHERE id = ?", params
                )
                conn.commit()
        return self.find_by_id(id)

    def delete(self, id: int) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM users WHERE id = ?", (id,))
            conn.commit()
        return cursor.rowcount > 0

    def distinct_values(self, field_name: str) -> List[str]:
        """Distinct non-null values of a user attribute, sorted."""
        if field_name not in USER_DISTINCT_FIELDS:
            raise ValueError(f"Unsupported distinct field: {field_name}")
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT DISTINCT {field_name} FROM users "
                f"WHERE {field_name} IS NOT NULL ORDER BY {field_name}"
            ).fetchall()
        return [row[0] for row in rows]


class TransactionRepository:
    """Repository for the transaction fact table."""

    def __init__(self, db_path: str = DEFAULT_DB_PATH, timeout: float = DEFAULT_TIMEOUT_SECONDS):
        self.db_path = db_path
        self.timeout = timeout

    def _connect(self):
        return connection(self.db_path, self.timeout)

    @staticmethod
    def _insert_params(transaction: Transaction, now: str) -> Tuple:
        return (
            transaction.row_id,
            transaction.user_id,
            transaction.conversation_id,
            transaction.model_name,
            transaction.token_type,
            transaction.token_count,
            transaction.rate_per_1k,
            transaction.calculated_cost,
            format_timestamp(transaction.timestamp) if transaction.timestamp else None,
            now,
            now,
        )

    _INSERT_SQL = """
        INSERT INTO transactions
        (row_id, user_id, conversation_id, model_name, token_type, token_count,
         rate_per_1k, calculated_cost, timestamp, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
    """

    def create(self, transaction: Transaction) -> Transaction:
        """Insert one transaction. Duplicate checks belong to the caller.

        Raises:
            ValidationFailure: If the record violates a table constraint
        """
        now = format_timestamp(utc_now())
        with self._connect() as conn:
            try:
                cursor = conn.execute(self._INSERT_SQL, self._insert_params(transaction, now))
                conn.commit()
            except sqlite3.IntegrityError as e:
                raise ValidationFailure(f"Invalid transaction {transaction.row_id}: {e}") from e
            new_id = cursor.lastrowid
        return self.find_by_id(new_id)

    def insert_many(self, transactions: Sequence[Transaction]) -> InsertManyResult:
        """Insert a batch, tolerating per-record constraint violations.

        Every record is attempted inside one transaction. A rejected record
        only rolls back its own statement, the rest of the batch commits.

        Args:
            transactions: Records to insert

        Returns:
            InsertManyResult partitioning the input into accepted and rejected
        """
        result = InsertManyResult()
        if not transactions:
            return result

        now = format_timestamp(utc_now())
        with self._connect() as conn:
            try:
                conn.execute("BEGIN TRANSACTION")
                for index, transaction in enumerate(transactions):
                    try:
                        conn.execute(self._INSERT_SQL, self._insert_params(transaction, now))
                    except sqlite3.IntegrityError as e:
                        result.rejected.append(
                            IngestionStoreFailure(index, str(e), transaction.row_id)
                        )
                    else:
                        result.accepted.append(transaction)
                conn.commit()
            except Exception:
                conn.rollback()
                raise
        return result

    def find_by_id(self, id: int) -> Optional[Transaction]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_TRANSACTION_COLUMNS} FROM transactions WHERE id = ?", (id,)
            ).fetchone()
        return _row_to_transaction(row) if row else None

    def find_by_row_id(self, row_id: str) -> Optional[Transaction]:
        """First stored transaction with this business key, if any."""
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_TRANSACTION_COLUMNS} FROM transactions "
                "WHERE row_id = ? ORDER BY id LIMIT 1",
                (row_id,),
            ).fetchone()
        return _row_to_transaction(row) if row else None

    def _filter_conditions(self, query: TransactionFilter) -> Tuple[List[str], List[Any]]:
        conditions: List[str] = []
        params: List[Any] = []
        for column in ("user_id", "conversation_id", "model_name", "token_type"):
            value = getattr(query, column)
            if value:
                conditions.append(f"{column} = ?")
                params.append(value)
        if query.start_date:
            start = datetime.combine(query.start_date, time.min, tzinfo=timezone.utc)
            conditions.append("timestamp >= ?")
            params.append(format_timestamp(start))
        if query.end_date:
            end = datetime.combine(query.end_date, time(23, 59, 59), tzinfo=timezone.utc)
            conditions.append("timestamp <= ?")
            params.append(format_timestamp(end))
        if query.region:
            conditions.append("user_id IN (SELECT user_id FROM users WHERE region = ?)")
            params.append(query.region)
        return conditions, params

    def find_all(self, query: Optional[TransactionFilter] = None) -> List[Transaction]:
        """Get transactions matching the filter, newest first.

        Ties on timestamp are broken by storage id so scans are repeatable.
        """
        query = query or TransactionFilter()
        conditions, params = self._filter_conditions(query)
        sql = (
            f"SELECT {_TRANSACTION_COLUMNS} FROM transactions"
            + _where(conditions)
            + " ORDER BY timestamp DESC, id ASC"
        )
        sql = _paginate(sql, params, query.limit, query.skip)
        with self._connect() as conn:
            rows = conn.execute(sql, params).fetchall()
        return [_row_to_transaction(row) for row in rows]

    def count(self, query: Optional[TransactionFilter] = None) -> int:
        query = query or TransactionFilter()
        conditions, params = self._filter_conditions(query)
        with self._connect() as conn:
            row = conn.execute(
                "SELECT COUNT(*) FROM transactions" + _where(conditions), params
            ).fetchone()
        return row[0]

    def update(self, id: int, changes: Dict[str, Any]) -> Optional[Transaction]:
        """Apply already-validated field changes. Returns None if id is unknown.

        Raises:
            ValidationFailure: If the change violates a table constraint
        """
        if changes:
            assignments = ", ".join(f"{name} = ?" for name in changes)
            params = [_to_column_value(value) for value in changes.values()]
            params.extend([format_timestamp(utc_now()), id])
            with self._connect() as conn:
                try:
                    conn.execute(
                        f"UPDATE transactions SET {assignments}, updated_at = ? WHERE id = ?",
                        params,
                    )
                    conn.commit()
                except sqlite3.IntegrityError as e:
                    raise ValidationFailure(f"Invalid update for transaction {id}: {e}") from e
        return self.find_by_id(id)

    def delete(self, id: int) -> bool:
        with self._connect() as conn:
            cursor = conn.execute("DELETE FROM transactions WHERE id = ?", (id,))
            conn.commit()
        return cursor.rowcount > 0

    def distinct_values(self, field_name: str) -> List[str]:
        if field_name not in TRANSACTION_DISTINCT_FIELDS:
            raise ValueError(f"Unsupported distinct field: {field_name}")
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT DISTINCT {field_name} FROM transactions "
                f"WHERE {field_name} IS NOT NULL ORDER BY {field_name}"
            ).fetchall()
        return [row[0] for row in rows]

    def min_max_timestamp(self) -> Tuple[Optional[datetime], Optional[datetime]]:
        """Earliest and latest stored timestamp, (None, None) when empty."""
        with self._connect() as conn:
            row = conn.execute(
                "SELECT MIN(timestamp), MAX(timestamp) FROM transactions"
            ).fetchone()
        return parse_timestamp(row[0]), parse_timestamp(row[1])
