"""
Data models for storage layer.

Defines the user dimension, the transaction fact and their query filters.
"""

from dataclasses import dataclass
from datetime import date, datetime, timezone
from typing import Optional

TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"

# Region value callers use to mean "no region constraint"
ALL_REGIONS = "all"


@dataclass(frozen=True)
class User:
    """A user dimension record, keyed by the business identifier user_id."""
    user_id: str
    user_name: Optional[str] = None
    company_name: Optional[str] = None
    department: Optional[str] = None
    region: Optional[str] = None
    is_active_sub: bool = False
    signup_date: Optional[str] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class Transaction:
    """A single cost/token event attributed to a user.

    calculated_cost is trusted as supplied and never re-derived from
    token_count and rate_per_1k. timestamp is None only when the stored
    value is missing or unreadable.
    """
    row_id: str
    user_id: str
    conversation_id: Optional[str] = None
    model_name: Optional[str] = None
    token_type: Optional[str] = None
    token_count: int = 0
    rate_per_1k: float = 0.0
    calculated_cost: float = 0.0
    timestamp: Optional[datetime] = None
    id: Optional[int] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


@dataclass(frozen=True)
class UserFilter:
    """Exact-match filter for user queries. None means unconstrained."""
    region: Optional[str] = None
    department: Optional[str] = None
    is_active_sub: Optional[bool] = None
    limit: Optional[int] = None
    skip: Optional[int] = None


@dataclass(frozen=True)
class TransactionFilter:
    """Filter for transaction queries.

    start_date and end_date bound the timestamp inclusively in UTC, from
    start_date 00:00:00 to end_date 23:59:59. region restricts to
    transactions whose user belongs to that region.
    """
    user_id: Optional[str] = None
    conversation_id: Optional[str] = None
    model_name: Optional[str] = None
    token_type: Optional[str] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    region: Optional[str] = None
    limit: Optional[int] = None
    skip: Optional[int] = None


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def format_timestamp(value: datetime) -> str:
    """Serialize a datetime as a sortable UTC string.

    Naive datetimes are taken to be UTC already.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).strftime(TIMESTAMP_FORMAT)


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Read a stored timestamp back. Returns None if missing or unreadable."""
    if not value:
        return None
    try:
        return datetime.strptime(value, TIMESTAMP_FORMAT).replace(tzinfo=timezone.utc)
    except ValueError:
        return None
