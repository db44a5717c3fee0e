"""
Aggregation engine for usage and cost reports.

Reads filtered transactions, joins them in memory against the user
dimension where a report needs user attributes, then groups and reduces.

Timestamp handling differs between the two trend reports on purpose:
daily trends skip transactions without a timestamp while monthly trends
place them in the current month. Both behaviors are kept until product
decides on one.
"""

from datetime import datetime
from decimal import Decimal
from typing import Callable, Dict, Iterable, List, Optional

import structlog

from usage_analytics.errors import ValidationFailure
from usage_analytics.storage.models import Transaction, User, UserFilter, utc_now
from usage_analytics.storage.repository import TransactionRepository, UserRepository

from .grouping import (
    RATIO_PLACES,
    UsageTotals,
    accumulate,
    by_cost_desc,
    group_by,
    round_amount,
    to_decimal,
)
from .reports import (
    CompanyUsage,
    DailyTrend,
    DateRange,
    DepartmentUsage,
    ModelCost,
    MonthlyTrend,
    RegionUsage,
    ReportQuery,
    Summary,
    TokenShare,
    TopUser,
)

logger = structlog.get_logger(__name__)

UNKNOWN = "Unknown"
DEFAULT_TOP_USERS_LIMIT = 10


def _label(value: Optional[str]) -> str:
    return value if value else UNKNOWN


def placeholder_name(user_id: str) -> str:
    return f"User {user_id[:8]}..."


class AggregationEngine:
    """Computes every report shape from the two stores.

    Each call reads the stores afresh; nothing is cached between calls.
    """

    def __init__(
        self,
        users: UserRepository,
        transactions: TransactionRepository,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.users = users
        self.transactions = transactions
        self.clock = clock

    def fetch(self, query: ReportQuery) -> List[Transaction]:
        transactions = self.transactions.find_all(query.to_filter())
        logger.debug(
            "transactions_fetched",
            count=len(transactions),
            start_date=query.start_date,
            end_date=query.end_date,
            region=query.effective_region,
        )
        return transactions

    def resolve_dimensions(self, transactions: Iterable[Transaction]) -> Dict[str, User]:
        """Look up the users referenced by the given transactions.

        Users that don't exist are absent from the result.
        """
        user_ids = {t.user_id for t in transactions if t.user_id}
        return self.users.find_by_user_ids(user_ids)

    def _group_by_user_attribute(
        self,
        query: ReportQuery,
        attribute: Callable[[User], Optional[str]],
    ):
        transactions = self.fetch(query)
        users = self.resolve_dimensions(transactions)

        def key(t: Transaction) -> Optional[str]:
            user = users.get(t.user_id)
            return _label(attribute(user)) if user else None

        groups = group_by(transactions, key, UsageTotals, accumulate)
        return by_cost_desc(groups)

    def summary(self, query: ReportQuery) -> Summary:
        """Headline totals for the filtered window.

        total_users and pro_users count the user store filtered by region
        only; the date range narrows transactions but not the population.
        """
        transactions = self.fetch(query)
        total_cost = sum((to_decimal(t.calculated_cost) for t in transactions), Decimal(0))
        conversations = {t.conversation_id for t in transactions if t.conversation_id}
        active_users = {t.user_id for t in transactions if t.user_id}

        region = query.effective_region
        total_users = self.users.count(UserFilter(region=region))
        pro_users = self.users.count(UserFilter(region=region, is_active_sub=True))

        avg = (
            round_amount(total_cost / len(conversations), RATIO_PLACES)
            if conversations else 0
        )
        logger.debug("summary_computed", transactions=len(transactions))
        return Summary(
            total_transactions=len(transactions),
            total_tokens=sum(t.token_count or 0 for t in transactions),
            total_cost=round_amount(total_cost),
            active_users=len(active_users),
            total_users=total_users,
            pro_users=pro_users,
            total_conversations=len(conversations),
            avg_cost_per_conversation=avg,
        )

    def cost_by_model(self, query: ReportQuery) -> List[ModelCost]:
        groups = group_by(
            self.fetch(query), lambda t: _label(t.model_name), UsageTotals, accumulate
        )
        return [
            ModelCost(
                model=model,
                cost=round_amount(totals.cost),
                tokens=totals.tokens,
                transactions=totals.transactions,
            )
            for model, totals in by_cost_desc(groups)
        ]

    def usage_by_region(self, query: ReportQuery) -> List[RegionUsage]:
        return [
            RegionUsage(
                region=region,
                cost=round_amount(totals.cost),
                tokens=totals.tokens,
                users=totals.users,
                transactions=totals.transactions,
            )
            for region, totals in self._group_by_user_attribute(query, lambda u: u.region)
        ]

    def usage_by_department(self, query: ReportQuery) -> List[DepartmentUsage]:
        return [
            DepartmentUsage(
                department=department,
                cost=round_amount(totals.cost),
                tokens=totals.tokens,
                users=totals.users,
                transactions=totals.transactions,
            )
            for department, totals in self._group_by_user_attribute(query, lambda u: u.department)
        ]

    def usage_by_company(self, query: ReportQuery) -> List[CompanyUsage]:
        return [
            CompanyUsage(
                company=company,
                cost=round_amount(totals.cost),
                tokens=totals.tokens,
                users=totals.users,
                transactions=totals.transactions,
            )
            for company, totals in self._group_by_user_attribute(query, lambda u: u.company_name)
        ]

    def daily_trends(self, query: ReportQuery) -> List[DailyTrend]:
        """Per UTC calendar day. Transactions without a timestamp are skipped."""
        def day(t: Transaction) -> Optional[str]:
            return t.timestamp.date().isoformat() if t.timestamp else None

        groups = group_by(self.fetch(query), day, UsageTotals, accumulate)
        return [
            DailyTrend(
                date=key,
                cost=round_amount(totals.cost),
                tokens=totals.tokens,
                users=totals.users,
                transactions=totals.transactions,
            )
            for key, totals in sorted(groups.items())
        ]

    def monthly_trends(self, query: ReportQuery) -> List[MonthlyTrend]:
        """Per YYYY-MM. A missing timestamp counts as the current month."""
        now = self.clock()

        def month(t: Transaction) -> str:
            return (t.timestamp or now).strftime("%Y-%m")

        groups = group_by(self.fetch(query), month, UsageTotals, accumulate)
        return [
            MonthlyTrend(
                month=key,
                cost=round_amount(totals.cost),
                tokens=totals.tokens,
                users=totals.users,
                transactions=totals.transactions,
            )
            for key, totals in sorted(groups.items())
        ]

    def token_distribution(self, query: ReportQuery) -> List[TokenShare]:
        """Per token type, in the order types first appear in the scan."""
        groups = group_by(
            self.fetch(query), lambda t: _label(t.token_type), UsageTotals, accumulate
        )
        return [
            TokenShare(type=token_type, tokens=totals.tokens, cost=round_amount(totals.cost))
            for token_type, totals in groups.items()
        ]

    def top_users(self, query: ReportQuery, limit: int = DEFAULT_TOP_USERS_LIMIT) -> List[TopUser]:
        """Highest-spending users, costliest first.

        Users missing from the dimension store still rank, shown with a
        placeholder name and Unknown attributes.

        Raises:
            ValidationFailure: If limit is negative
        """
        if limit < 0:
            raise ValidationFailure("limit must be >= 0")
        groups = group_by(self.fetch(query), lambda t: t.user_id, UsageTotals, accumulate)
        ranked = by_cost_desc(groups)[:limit]
        users = self.users.find_by_user_ids(user_id for user_id, _ in ranked)

        result = []
        for user_id, totals in ranked:
            user = users.get(user_id)
            result.append(TopUser(
                user_id=user_id,
                user_name=(user.user_name if user and user.user_name else placeholder_name(user_id)),
                company=_label(user.company_name if user else None),
                department=_label(user.department if user else None),
                region=_label(user.region if user else None),
                is_pro_user=bool(user and user.is_active_sub),
                cost=round_amount(totals.cost),
                tokens=totals.tokens,
                transactions=totals.transactions,
            ))
        return result

    def regions(self) -> List[str]:
        return self.users.distinct_values("region")

    def date_range(self) -> DateRange:
        """UTC dates of the earliest and latest transaction, "" when empty."""
        earliest, latest = self.transactions.min_max_timestamp()
        return DateRange(
            min_date=earliest.date().isoformat() if earliest else "",
            max_date=latest.date().isoformat() if latest else "",
        )
