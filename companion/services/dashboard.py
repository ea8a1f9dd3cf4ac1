"""Read-only dashboard queries over conversation context and metrics.

Nothing here mutates the context manager or the aggregator; every query is
computed synchronously from the state they currently hold.
"""
from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from companion.core.session_store import SessionKey
from companion.event_log import EventLog
from companion.services.context import TREND_DECLINING, TREND_UNKNOWN, ContextManager
from companion.services.metrics import FeedbackRecord, MetricsAggregator, feedback_accuracy

HIGH_DISTRESS = 8
MEDIUM_DISTRESS = 6
_EPOCH = datetime.min.replace(tzinfo=timezone.utc)


class DashboardQueries:
    def __init__(
        self,
        context: ContextManager,
        metrics: MetricsAggregator,
        events: Optional[EventLog] = None,
    ) -> None:
        self._context = context
        self._metrics = metrics
        self._events = events

    def _session_views(self) -> List[Dict[str, Any]]:
        accumulators = self._metrics.session_stats()
        views: Dict[tuple, Dict[str, Any]] = {}

        for key in self._context.store.keys():
            turns = self._context.store.turns(key)
            categories: List[str] = []
            for t in self._context.get_medium_term_context(key):
                if t.category and t.category not in categories:
                    categories.append(t.category)
            views[(key.user_id, key.session_id)] = {
                "user_id": key.user_id,
                "session_id": key.session_id,
                "trend": self._context.get_emotional_trend(key),
                "current_intensity": self._context.get_current_intensity(key),
                "categories": categories,
                "last_activity": turns[-1].timestamp if turns else self._context.store.created_at(key),
            }

        for (user_id, session_id), acc in accumulators.items():
            view = views.get((user_id, session_id))
            if view is None:
                views[(user_id, session_id)] = {
                    "user_id": user_id,
                    "session_id": session_id,
                    "trend": TREND_UNKNOWN,
                    "current_intensity": acc.current_intensity,
                    "categories": sorted(acc.categories),
                    "last_activity": acc.last_activity,
                }
            elif view["current_intensity"] is None:
                view["current_intensity"] = acc.current_intensity

        return list(views.values())

    def high_risk_users(self) -> List[Dict[str, Any]]:
        """Users with distress >= 8 or a declining trend in any session."""
        by_user: Dict[str, List[Dict[str, Any]]] = defaultdict(list)
        for view in self._session_views():
            by_user[view["user_id"]].append(view)

        flagged = []
        for user_id, views in by_user.items():
            intensities = [v["current_intensity"] for v in views if v["current_intensity"] is not None]
            distress = max(intensities) if intensities else None
            declining = any(v["trend"] == TREND_DECLINING for v in views)
            if not declining and (distress is None or distress < HIGH_DISTRESS):
                continue

            latest = max(views, key=lambda v: v["last_activity"] or _EPOCH)
            categories: List[str] = []
            for v in views:
                categories.extend(c for c in v["categories"] if c not in categories)
            flagged.append(
                {
                    "user_id": user_id,
                    "current_distress": distress,
                    "trend": TREND_DECLINING if declining else latest["trend"],
                    "recent_categories": categories,
                    "last_activity": latest["last_activity"],
                    "session_count": len(views),
                    "needs_intervention": True,
                }
            )
        return sorted(flagged, key=lambda u: u["current_distress"] or 0, reverse=True)

    def classification_accuracy(
        self, feedback: Optional[Iterable[Union[FeedbackRecord, Mapping[str, Any]]]] = None
    ) -> Dict[str, Any]:
        if feedback is None:
            records = self._metrics.feedback()
        else:
            records = [f if isinstance(f, FeedbackRecord) else FeedbackRecord(**f) for f in feedback]
        return feedback_accuracy(records)

    def declining_users(self, keys: Optional[Sequence[SessionKey]] = None) -> List[Dict[str, Any]]:
        declining = []
        for key in self._context.store.keys() if keys is None else keys:
            trend = self._context.get_emotional_trend(key)
            if trend != TREND_DECLINING:
                continue
            declining.append(
                {
                    "user_id": key.user_id,
                    "session_id": key.session_id,
                    "trend": trend,
                    "current_intensity": self._context.get_current_intensity(key),
                }
            )
        return sorted(declining, key=lambda d: d["current_intensity"] or 0, reverse=True)

    def top_issues(self, limit: int = 10) -> List[Dict[str, Any]]:
        counts = self._metrics.category_counts()
        total = sum(counts.values())
        ranked = sorted(counts.items(), key=lambda item: item[1], reverse=True)[: max(0, limit)]
        return [
            {"category": cat, "count": n, "percentage": round(n / total * 100) if total else 0}
            for cat, n in ranked
        ]

    def cost_analysis(self, window_days: Optional[float] = None) -> Dict[str, Any]:
        cost = self._metrics.get_cost_estimate(window_days)
        processed = cost["model_calls"] + cost["rule_calls"]
        model_pct = cost["model_calls"] / processed * 100 if processed else 0.0
        daily = cost["daily_rate"]
        return {
            "current_period": {
                "total_cost": cost["total_cost"],
                "model_cost": cost["model_cost"],
                "rule_cost": cost["rule_cost"],
                "messages_processed": processed,
            },
            "projections": {
                "daily": daily,
                "weekly": round(daily * 7, 6),
                "monthly": cost["projected_monthly"],
            },
            "efficiency": {
                "model_percentage": round(model_pct),
                "rule_percentage": round(100 - model_pct) if processed else 0,
                "avg_cost_per_message": cost["cost_per_message"],
            },
        }

    def confidence_distribution(self) -> Dict[str, float]:
        buckets = self._metrics.confidence_buckets()
        total = sum(buckets.values())
        return {name: round(n / total * 100, 1) if total else 0.0 for name, n in buckets.items()}

    def ambiguous_phrase_stats(self) -> List[Dict[str, Any]]:
        stats = []
        for phrase, s in self._metrics.ambiguous_phrases().items():
            success = s["resolved"] / s["disambiguated"] if s["disambiguated"] else 0.0
            stats.append(
                {
                    "phrase": phrase,
                    "count": s["count"],
                    "disambiguated": s["disambiguated"],
                    "disambiguation_success": round(success, 2),
                }
            )
        return sorted(stats, key=lambda s: s["count"], reverse=True)

    def assess_user_risk(self, key: SessionKey) -> Dict[str, Any]:
        summary = self._context.get_conversation_summary(key)
        intensity = summary["avg_emotional_intensity"]
        if intensity is None:
            level = "UNKNOWN"
        elif intensity >= HIGH_DISTRESS:
            level = "HIGH"
        elif intensity >= MEDIUM_DISTRESS:
            level = "MEDIUM"
        else:
            level = "LOW"
        return {
            "user_id": key.user_id,
            "session_id": key.session_id,
            "risk_level": level,
            "emotional_intensity": intensity,
            "trend": summary["emotional_trend"],
            "main_topics": summary["main_topics"],
            "recommendation": "Consider professional referral" if level == "HIGH" else "Continue monitoring",
        }

    def safety_alerts(self, limit: int = 100) -> List[Dict[str, Any]]:
        alerts: List[Dict[str, Any]] = []
        if self._events is not None:
            for entry in self._events.get_events(kind_prefix="safety."):
                kind = entry["kind"].split(".", 1)[1]
                if kind not in ("crisis", "missed_crisis"):
                    continue
                payload = entry["payload"]
                alerts.append(
                    {
                        "priority": "critical",
                        "user_id": payload.get("user_id"),
                        "session_id": payload.get("session_id"),
                        "reason": "Missed crisis" if kind == "missed_crisis" else "Crisis detected",
                        "suggested_action": "Contact the user and share crisis resources now",
                        "ts": entry["ts"],
                    }
                )

        for view in self._session_views():
            intensity = view["current_intensity"]
            if intensity is not None and intensity >= HIGH_DISTRESS:
                alerts.append(
                    {
                        "priority": "high",
                        "user_id": view["user_id"],
                        "session_id": view["session_id"],
                        "reason": f"Distress level {intensity:g}/10",
                        "suggested_action": "Review the conversation and offer a human check-in",
                    }
                )
            elif view["trend"] == TREND_DECLINING:
                alerts.append(
                    {
                        "priority": "medium",
                        "user_id": view["user_id"],
                        "session_id": view["session_id"],
                        "reason": "Emotional state declining",
                        "suggested_action": "Keep monitoring; suggest coping resources",
                    }
                )
        return alerts[:limit]

    def engagement_insights(self) -> Dict[str, Any]:
        engagement = self._metrics.get_snapshot()["engagement"]
        sessions = self._metrics.session_stats().values()
        started = engagement["conversations_started"]
        ended = [s for s in sessions if s.ended]
        return {
            "active_users": started,
            "avg_session_minutes": engagement["average_session_minutes"],
            "completion_rate": round(engagement["conversations_completed"] / started, 2) if started else 0.0,
            "return_user_rate": engagement["return_user_rate"],
            "dropoff_points": [
                {"stage": "After greeting", "count": sum(1 for s in ended if s.message_count <= 1)},
                {"stage": "After 3 messages", "count": sum(1 for s in ended if 1 < s.message_count <= 3)},
                {"stage": "After 10 messages", "count": sum(1 for s in ended if 3 < s.message_count <= 10)},
            ],
        }
