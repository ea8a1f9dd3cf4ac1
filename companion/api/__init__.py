"""API package that assembles FastAPI routers."""

from .dashboard import build_dashboard_router

__all__ = ["build_dashboard_router"]
