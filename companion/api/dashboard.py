from __future__ import annotations

from typing import Any, Dict, List, Optional

from fastapi import APIRouter, HTTPException, Query
from pydantic import BaseModel, Field

from companion.core.session_store import SessionKey
from companion.services.dashboard import DashboardQueries
from companion.services.metrics import FeedbackRecord


class FeedbackBatch(BaseModel):
    feedback: List[FeedbackRecord] = Field(default_factory=list)


class SessionRef(BaseModel):
    user_id: str
    session_id: str


class DecliningRequest(BaseModel):
    sessions: Optional[List[SessionRef]] = Field(
        default=None, description="Sessions to check; all known sessions when omitted."
    )


def build_dashboard_router(dashboard: DashboardQueries) -> APIRouter:
    router = APIRouter(prefix="/api/dashboard", tags=["dashboard"])

    @router.get("/high_risk_users")
    def high_risk_users() -> dict:
        users = dashboard.high_risk_users()
        return {"count": len(users), "users": users}

    @router.get("/classification_accuracy")
    def classification_accuracy() -> dict:
        return dashboard.classification_accuracy()

    @router.post("/classification_accuracy")
    def classification_accuracy_from_labels(batch: FeedbackBatch) -> dict:
        return dashboard.classification_accuracy(batch.feedback)

    @router.post("/declining_users")
    def declining_users(payload: DecliningRequest) -> dict:
        try:
            keys = None
            if payload.sessions is not None:
                keys = [SessionKey(s.user_id, s.session_id) for s in payload.sessions]
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        users = dashboard.declining_users(keys)
        return {"count": len(users), "users": users}

    @router.get("/top_issues")
    def top_issues(limit: int = Query(10, ge=1, le=100)) -> List[Dict[str, Any]]:
        return dashboard.top_issues(limit)

    @router.get("/cost")
    def cost_analysis(window_days: Optional[float] = Query(None, gt=0)) -> dict:
        return dashboard.cost_analysis(window_days)

    @router.get("/confidence_distribution")
    def confidence_distribution() -> dict:
        return dashboard.confidence_distribution()

    @router.get("/ambiguous_phrases")
    def ambiguous_phrases() -> List[Dict[str, Any]]:
        return dashboard.ambiguous_phrase_stats()

    @router.get("/risk/{user_id}/{session_id}")
    def assess_user_risk(user_id: str, session_id: str) -> dict:
        try:
            key = SessionKey(user_id, session_id)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return dashboard.assess_user_risk(key)

    @router.get("/safety_alerts")
    def safety_alerts(limit: int = Query(100, ge=1, le=500)) -> dict:
        alerts = dashboard.safety_alerts(limit)
        return {"count": len(alerts), "alerts": alerts}

    @router.get("/engagement")
    def engagement_insights() -> dict:
        return dashboard.engagement_insights()

    return router
