"""
Reporting facade: one call per report shape.

This is the surface an HTTP layer or the CLI talks to. It carries no
transport concerns; callers map exceptions to status codes themselves.
"""

from typing import List, Optional

from usage_analytics.config.loader import Settings
from usage_analytics.storage.repository import TransactionRepository, UserRepository

from .engine import DEFAULT_TOP_USERS_LIMIT, AggregationEngine
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


class ReportingService:
    """Facade over the aggregation engine."""

    def __init__(self, engine: AggregationEngine, top_users_limit: int = DEFAULT_TOP_USERS_LIMIT):
        self.engine = engine
        self.top_users_limit = top_users_limit

    @classmethod
    def from_settings(cls, settings: Settings) -> "ReportingService":
        db = settings.database
        engine = AggregationEngine(
            users=UserRepository(db.path, db.timeout_seconds),
            transactions=TransactionRepository(db.path, db.timeout_seconds),
        )
        return cls(engine, top_users_limit=settings.reports.top_users_limit)

    def get_summary(self, query: Optional[ReportQuery] = None) -> Summary:
        return self.engine.summary(query or ReportQuery())

    def get_cost_by_model(self, query: Optional[ReportQuery] = None) -> List[ModelCost]:
        return self.engine.cost_by_model(query or ReportQuery())

    def get_usage_by_region(self, query: Optional[ReportQuery] = None) -> List[RegionUsage]:
        return self.engine.usage_by_region(query or ReportQuery())

    def get_usage_by_department(self, query: Optional[ReportQuery] = None) -> List[DepartmentUsage]:
        return self.engine.usage_by_department(query or ReportQuery())

    def get_usage_by_company(self, query: Optional[ReportQuery] = None) -> List[CompanyUsage]:
        return self.engine.usage_by_company(query or ReportQuery())

    def get_daily_trends(self, query: Optional[ReportQuery] = None) -> List[DailyTrend]:
        return self.engine.daily_trends(query or ReportQuery())

    def get_monthly_trends(self, query: Optional[ReportQuery] = None) -> List[MonthlyTrend]:
        return self.engine.monthly_trends(query or ReportQuery())

    def get_token_distribution(self, query: Optional[ReportQuery] = None) -> List[TokenShare]:
        return self.engine.token_distribution(query or ReportQuery())

    def get_top_users(self, query: Optional[ReportQuery] = None) -> List[TopUser]:
        """Top spenders; query.limit overrides the configured default."""
        query = query or ReportQuery()
        limit = query.limit if query.limit is not None else self.top_users_limit
        return self.engine.top_users(query, limit)

    def get_regions(self) -> List[str]:
        return self.engine.regions()

    def get_date_range(self) -> DateRange:
        return self.engine.date_range()
