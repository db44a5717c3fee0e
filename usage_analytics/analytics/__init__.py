"""
Analytics modules for Usage Analytics.

This package contains the grouping helpers, the aggregation engine and
the reporting facade built on top of it.
"""
