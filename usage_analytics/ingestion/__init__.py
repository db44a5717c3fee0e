"""
CSV ingestion for Usage Analytics.

Loads user and transaction exports into the stores.
"""

from .importer import DataImporter, ImportAllResult, ImportResult

__all__ = ["DataImporter", "ImportAllResult", "ImportResult"]
