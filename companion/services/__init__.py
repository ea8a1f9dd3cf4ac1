"""Service layer modules for the companion backend."""

from .context import ContextManager, SmartContext, SummaryResult
from .dashboard import DashboardQueries
from .metrics import MetricsAggregator

__all__ = ["ContextManager", "DashboardQueries", "MetricsAggregator", "SmartContext", "SummaryResult"]
