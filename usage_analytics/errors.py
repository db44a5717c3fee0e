"""
Error types raised by the analytics engine.

Single-record operations raise these to the caller. Ingestion records
row-level failures instead of raising them, see ``ingestion.importer``.
"""

from typing import Optional


class UsageAnalyticsError(Exception):
    """Base class for all usage analytics failures."""


class ValidationFailure(UsageAnalyticsError):
    """Input rejected: duplicate business key, bad update payload, bad date."""


class NotFound(UsageAnalyticsError):
    """A record required by the operation does not exist."""


class StoreUnavailable(UsageAnalyticsError):
    """The database could not be reached within the configured wait."""


class IngestionError(UsageAnalyticsError):
    """The import source itself could not be read or decoded."""


class IngestionRowFailure(UsageAnalyticsError):
    """A CSV row is missing a required field and was not loaded."""

    def __init__(self, line: int, field: str):
        super().__init__(f"line {line}: missing required field {field}")
        self.line = line
        self.field = field


class IngestionStoreFailure(UsageAnalyticsError):
    """The store rejected a row during a batch insert."""

    def __init__(self, index: int, reason: str, row_id: Optional[str] = None):
        super().__init__(f"record {index} ({row_id}) rejected: {reason}")
        self.index = index
        self.reason = reason
        self.row_id = row_id
