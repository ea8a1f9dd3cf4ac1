from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from dataclasses import asdict
from datetime import datetime
from typing import Any, Dict, Literal, Optional

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import PlainTextResponse
from pydantic import BaseModel, Field

from companion.api import build_dashboard_router
from companion.core.config import Settings, settings
from companion.core.llm import LLMConfig, make_summarizer
from companion.core.session_store import Classification, ConversationStore, SessionKey
from companion.event_log import EventLog
from companion.services import ContextManager, DashboardQueries, MetricsAggregator
from companion.services.metrics import ClassificationEvent

logger = logging.getLogger(__name__)


class ClassificationIn(BaseModel):
    category: str = Field(..., min_length=1)
    subcategory: Optional[str] = None
    confidence: float = Field(1.0, ge=0.0, le=1.0)
    method: Literal["rule", "model"] = "rule"
    ambiguous_phrase: Optional[str] = None
    latency_ms: float = Field(0.0, ge=0)
    meets_threshold: bool = True


class TurnIn(BaseModel):
    role: Literal["user", "assistant"]
    content: str
    timestamp: Optional[datetime] = None
    classification: Optional[ClassificationIn] = None
    emotional_intensity: Optional[float] = Field(None, ge=1, le=10)
    record_metrics: bool = Field(
        True, description="Also count the classification in the metrics aggregator."
    )


class WindowUpdate(BaseModel):
    short_term: Optional[int] = None
    medium_term: Optional[int] = None
    long_term: Optional[int] = None
    summarization_threshold: Optional[int] = None


def _key(user_id: str, session_id: str) -> SessionKey:
    try:
        return SessionKey(user_id, session_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


def create_app(
    context: Optional[ContextManager] = None,
    metrics: Optional[MetricsAggregator] = None,
    events: Optional[EventLog] = None,
    cfg: Settings = settings,
) -> FastAPI:
    events = events or EventLog(max_len=cfg.event_log_limit)
    if context is None:
        context = ContextManager(
            store=ConversationStore(cfg.window),
            summarizer=make_summarizer(LLMConfig.from_env()),
            summary_timeout=cfg.summary_timeout,
            events=events,
        )
    metrics = metrics or MetricsAggregator(
        events=events,
        model_call_cost=cfg.model_call_cost,
        moderation_buffer=cfg.moderation_buffer,
        feedback_buffer=cfg.feedback_buffer,
    )
    dashboard = DashboardQueries(context, metrics, events)

    @asynccontextmanager
    async def lifespan(_: FastAPI):
        yield
        context.shutdown()

    app = FastAPI(title=cfg.app_name, lifespan=lifespan)
    app.state.context = context
    app.state.metrics = metrics
    app.state.events = events
    app.state.dashboard = dashboard
    app.include_router(build_dashboard_router(dashboard))

    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(cfg.allow_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.get("/api/health")
    def health() -> dict:
        return {"ok": True}

    @app.post("/api/sessions/{user_id}/{session_id}/turns")
    def append_turn(user_id: str, session_id: str, turn: TurnIn) -> dict:
        key = _key(user_id, session_id)
        classification = None
        event = None
        try:
            if turn.classification is not None:
                c = turn.classification
                classification = Classification(
                    category=c.category, confidence=c.confidence, subcategory=c.subcategory
                )
                if turn.record_metrics:
                    event = ClassificationEvent(
                        user_id=user_id,
                        session_id=session_id,
                        category=c.category,
                        subcategory=c.subcategory,
                        confidence=c.confidence,
                        method=c.method,
                        ambiguous_phrase=c.ambiguous_phrase,
                        emotional_intensity=turn.emotional_intensity,
                        latency_ms=c.latency_ms,
                        meets_threshold=c.meets_threshold,
                    )
            stored = context.append_turn(
                key,
                turn.role,
                turn.content,
                classification=classification,
                emotional_intensity=turn.emotional_intensity,
                timestamp=turn.timestamp,
            )
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

        if event is not None:
            metrics.record_classification(event)
        events.add_event(
            "turn",
            {"session": str(key), "role": stored.role, "turn_count": context.store.count(key)},
        )
        return {
            "turn": stored.to_dict(),
            "turn_count": context.store.count(key),
            "needs_summarization": context.needs_summarization(key),
        }

    @app.get("/api/sessions/{user_id}")
    def user_sessions(user_id: str) -> dict:
        sessions = context.get_user_sessions(user_id)
        return {
            "user_id": user_id,
            "sessions": [{**s, "last_activity": s["last_activity"].isoformat()} for s in sessions],
        }

    @app.get("/api/sessions/{user_id}/{session_id}/context")
    def get_context(user_id: str, session_id: str, tier: str = "short") -> dict:
        key = _key(user_id, session_id)
        try:
            turns = context.get_context(key, tier)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"tier": tier, "count": len(turns), "turns": [t.to_dict() for t in turns]}

    @app.get("/api/sessions/{user_id}/{session_id}/smart_context")
    def get_smart_context(user_id: str, session_id: str, max_pairs: int = Query(10, ge=1, le=100)) -> dict:
        smart = context.get_smart_context(_key(user_id, session_id), max_pairs)
        return {
            "turns": [t.to_dict() for t in smart.turns],
            "summary": smart.summary.to_dict() if smart.summary else None,
        }

    @app.get("/api/sessions/{user_id}/{session_id}/summary")
    def get_summary(user_id: str, session_id: str, force: bool = False) -> dict:
        return context.get_summary(_key(user_id, session_id), force_recompute=force).to_dict()

    @app.get("/api/sessions/{user_id}/{session_id}/insights")
    def session_insights(user_id: str, session_id: str) -> dict:
        key = _key(user_id, session_id)
        return {
            "user_id": user_id,
            "session_id": session_id,
            **context.get_conversation_summary(key),
            "is_response_to_question": context.is_response_to_question(key),
            "estimated_tokens": context.estimate_token_count(key),
            "needs_summarization": context.needs_summarization(key),
        }

    @app.delete("/api/sessions/{user_id}/{session_id}")
    def clear_session(user_id: str, session_id: str) -> dict:
        context.clear_conversation(_key(user_id, session_id))
        return {"ok": True}

    @app.get("/api/config/window")
    def get_window() -> dict:
        return asdict(context.get_window_config())

    @app.put("/api/config/window")
    def set_window(update: WindowUpdate) -> dict:
        changes = {k: v for k, v in update.model_dump().items() if v is not None}
        try:
            window = context.set_window_config(**changes)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        events.add_event("config.window", changes)
        return asdict(window)

    @app.post("/api/events/{kind}")
    def record_event(kind: str, payload: Dict[str, Any]) -> dict:
        try:
            metrics.record_event(kind, payload)
        except ValueError as exc:
            logger.info("Rejected %s event: %s", kind, exc)
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        return {"ok": True, "kind": kind}

    @app.get("/api/metrics")
    def get_snapshot() -> dict:
        return metrics.get_snapshot()

    @app.get("/api/metrics/summary", response_class=PlainTextResponse)
    def metrics_summary() -> str:
        return metrics.format_summary() + "\n" + metrics.format_moderation_summary()

    @app.get("/api/metrics/cost")
    def get_cost_estimate(window_days: Optional[float] = Query(None, gt=0)) -> dict:
        return metrics.get_cost_estimate(window_days)

    @app.get("/api/metrics/moderation")
    def get_moderation_summary() -> dict:
        return metrics.get_moderation_summary()

    @app.post("/api/metrics/reset")
    def reset_metrics() -> dict:
        metrics.reset()
        events.add_event("metrics.reset", {})
        return {"ok": True}

    @app.get("/logs")
    def get_logs(limit: int = 100) -> dict:
        safe_limit = max(1, min(limit, 500))
        entries = events.get_events(safe_limit)
        return {"count": len(entries), "logs": entries}

    return app


app = create_app()
