"""
Report parameter and result types.

Results are plain frozen dataclasses; to_dict() gives the camelCase shape
the dashboard API has always returned.
"""

from dataclasses import asdict, dataclass
from datetime import date
from typing import Any, Dict, Optional

from usage_analytics.errors import ValidationFailure
from usage_analytics.storage.models import ALL_REGIONS, TransactionFilter


def _camel(name: str) -> str:
    head, *rest = name.split("_")
    return head + "".join(part.capitalize() for part in rest)


class _Report:
    def to_dict(self) -> Dict[str, Any]:
        return {_camel(key): value for key, value in asdict(self).items()}


def _parse_date(value: Optional[str], name: str) -> Optional[date]:
    if not value:
        return None
    try:
        return date.fromisoformat(value.strip())
    except ValueError as e:
        raise ValidationFailure(f"{name} must be YYYY-MM-DD, got {value!r}") from e


@dataclass(frozen=True)
class ReportQuery:
    """Filter shared by every report.

    start_date and end_date are YYYY-MM-DD strings, both inclusive. A
    region of None, empty or "all" means every region.
    """
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    region: Optional[str] = None
    limit: Optional[int] = None

    @property
    def effective_region(self) -> Optional[str]:
        if not self.region or self.region.strip().lower() == ALL_REGIONS:
            return None
        return self.region.strip()

    def to_filter(self, with_region: bool = True) -> TransactionFilter:
        """Translate to a store filter.

        Raises:
            ValidationFailure: If a date is not YYYY-MM-DD
        """
        return TransactionFilter(
            start_date=_parse_date(self.start_date, "start_date"),
            end_date=_parse_date(self.end_date, "end_date"),
            region=self.effective_region if with_region else None,
        )


@dataclass(frozen=True)
class Summary(_Report):
    total_transactions: int
    total_tokens: int
    total_cost: float
    active_users: int
    total_users: int
    pro_users: int
    total_conversations: int
    avg_cost_per_conversation: float


@dataclass(frozen=True)
class ModelCost(_Report):
    model: str
    cost: float
    tokens: int
    transactions: int


@dataclass(frozen=True)
class RegionUsage(_Report):
    region: str
    cost: float
    tokens: int
    users: int
    transactions: int


@dataclass(frozen=True)
class DepartmentUsage(_Report):
    department: str
    cost: float
    tokens: int
    users: int
    transactions: int


@dataclass(frozen=True)
class CompanyUsage(_Report):
    company: str
    cost: float
    tokens: int
    users: int
    transactions: int


@dataclass(frozen=True)
class DailyTrend(_Report):
    date: str
    cost: float
    tokens: int
    users: int
    transactions: int


@dataclass(frozen=True)
class MonthlyTrend(_Report):
    month: str
    cost: float
    tokens: int
    users: int
    transactions: int


@dataclass(frozen=True)
class TokenShare(_Report):
    type: str
    tokens: int
    cost: float


@dataclass(frozen=True)
class TopUser(_Report):
    user_id: str
    user_name: str
    company: str
    department: str
    region: str
    is_pro_user: bool
    cost: float
    tokens: int
    transactions: int


@dataclass(frozen=True)
class DateRange(_Report):
    min_date: str = ""
    max_date: str = ""
