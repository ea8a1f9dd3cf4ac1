from __future__ import annotations

import json
import logging
from collections import Counter, deque
from dataclasses import dataclass, field
from datetime import datetime
from threading import Lock
from typing import Annotated, Any, Callable, Deque, Dict, Iterable, List, Literal, Mapping, Optional, Set

from pydantic import BaseModel, Field

from companion.core.session_store import utcnow
from companion.event_log import PRIORITY_HIGH, EventLog

logger = logging.getLogger(__name__)

MODEL_CALL_COST = 0.002  # USD per expensive-model classification
MODERATION_BUFFER = 1000
FEEDBACK_BUFFER = 5000
HIGH_CONFIDENCE = 0.9
TOP_ISSUES = 5

NonEmptyStr = Annotated[str, Field(min_length=1, pattern=r"\S")]


class ClassificationEvent(BaseModel):
    user_id: NonEmptyStr
    session_id: NonEmptyStr
    category: NonEmptyStr
    subcategory: Optional[str] = None
    confidence: float = Field(..., ge=0.0, le=1.0)
    method: Literal["rule", "model"] = "rule"
    ambiguous_phrase: Optional[str] = None
    emotional_intensity: Optional[float] = Field(None, ge=1, le=10)
    latency_ms: float = Field(0.0, ge=0)
    meets_threshold: bool = True

    @property
    def is_crisis(self) -> bool:
        return self.category.strip().lower() == "crisis"


class SafetyEvent(BaseModel):
    type: Literal["crisis", "escalation", "false_positive", "missed_crisis"]
    user_id: NonEmptyStr
    session_id: NonEmptyStr
    details: Optional[str] = None


class EngagementEvent(BaseModel):
    type: Literal["session_start", "session_end", "resource_click", "return_visit"]
    user_id: NonEmptyStr
    session_id: NonEmptyStr
    metadata: Dict[str, Any] = Field(default_factory=dict)


class ModerationAction(BaseModel):
    action_id: NonEmptyStr
    action_type: Literal["flag", "remove", "warn", "ban", "approve"]
    was_correct: bool
    false_positive: bool = False
    false_negative: bool = False
    timestamp: datetime = Field(default_factory=utcnow)


class FeedbackRecord(BaseModel):
    message_id: NonEmptyStr
    category: NonEmptyStr
    user_feedback: Literal["helpful", "not_helpful", "neutral"]
    confidence: float = Field(..., ge=0.0, le=1.0)


@dataclass
class SessionAccumulator:
    start_time: datetime
    last_activity: datetime
    message_count: int = 0
    initial_intensity: Optional[float] = None
    current_intensity: Optional[float] = None
    categories: Set[str] = field(default_factory=set)
    ended: bool = False

    def touch(self, when: datetime) -> None:
        if when > self.last_activity:
            self.last_activity = when

    @property
    def intensity_delta(self) -> Optional[float]:
        if self.initial_intensity is None or self.current_intensity is None:
            return None
        return self.current_intensity - self.initial_intensity


def _confidence_bucket(confidence: float) -> str:
    if confidence >= 0.9:
        return "very_high"
    if confidence >= 0.8:
        return "high"
    if confidence >= 0.7:
        return "medium"
    return "low"


def _mean(total: float, count: int) -> float:
    return total / count if count else 0.0


def _pct(part: int, whole: int) -> float:
    return round(part / whole * 100, 1) if whole else 0.0


def feedback_accuracy(records: Iterable[FeedbackRecord]) -> dict:
    """Accuracy of classifications judged by user feedback.

    ``confidence_correlation`` is the accuracy within the high-confidence
    (>= 0.9) subset; a well calibrated classifier scores at or above the
    overall accuracy there.
    """
    records = list(records)
    if not records:
        return {
            "overall_accuracy": 0.0,
            "by_category_accuracy": {},
            "total_feedback": 0,
            "helpful_count": 0,
            "unhelpful_count": 0,
            "confidence_correlation": 0.0,
        }

    helpful = [r for r in records if r.user_feedback == "helpful"]
    unhelpful = [r for r in records if r.user_feedback == "not_helpful"]

    by_category: Dict[str, List[int]] = {}
    for r in records:
        stats = by_category.setdefault(r.category, [0, 0])
        stats[1] += 1
        if r.user_feedback == "helpful":
            stats[0] += 1

    high = [r for r in records if r.confidence >= HIGH_CONFIDENCE]
    high_accuracy = sum(1 for r in high if r.user_feedback == "helpful") / len(high) if high else 0.0

    return {
        "overall_accuracy": round(len(helpful) / len(records), 2),
        "by_category_accuracy": {cat: round(ok / total, 2) for cat, (ok, total) in by_category.items()},
        "total_feedback": len(records),
        "helpful_count": len(helpful),
        "unhelpful_count": len(unhelpful),
        "confidence_correlation": round(high_accuracy, 2),
    }


class MetricsAggregator:
    """Running counters for classification, safety, engagement, moderation and feedback.

    All mutation happens under one lock. Recording never raises for a valid
    payload; an invalid payload raises ``ValueError`` (pydantic's
    ``ValidationError``) before anything is counted.
    """

    def __init__(
        self,
        events: Optional[EventLog] = None,
        model_call_cost: float = MODEL_CALL_COST,
        moderation_buffer: int = MODERATION_BUFFER,
        feedback_buffer: int = FEEDBACK_BUFFER,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._events = events
        self._model_call_cost = model_call_cost
        self._moderation_buffer = moderation_buffer
        self._feedback_buffer = feedback_buffer
        self._clock = clock
        self._lock = Lock()
        self._reset_state()

    def _reset_state(self) -> None:
        self._started_at = self._clock()
        self._classifications = 0
        self._model_calls = 0
        self._rule_calls = 0
        self._confidence_sum = 0.0
        self._ambiguous = 0
        self._below_threshold = 0
        self._category_counts: Counter[str] = Counter()
        self._confidence_buckets: Counter[str] = Counter()
        self._phrases: Dict[str, Dict[str, int]] = {}
        self._latency_sum = 0.0
        self._crisis_detections = 0
        self._crisis_latency_sum = 0.0
        self._safety_counts: Counter[str] = Counter()
        self._sessions: Dict[tuple, SessionAccumulator] = {}
        self._users: Set[str] = set()
        self._returning_users: Set[str] = set()
        self._resource_clicks = 0
        self._moderation: Deque[ModerationAction] = deque(maxlen=self._moderation_buffer)
        self._feedback: Deque[FeedbackRecord] = deque(maxlen=self._feedback_buffer)

    def reset(self) -> None:
        with self._lock:
            self._reset_state()
        logger.info("Metrics reset")

    def _session(self, user_id: str, session_id: str, now: datetime) -> SessionAccumulator:
        key = (user_id, session_id)
        acc = self._sessions.get(key)
        if acc is None:
            acc = SessionAccumulator(start_time=now, last_activity=now)
            self._sessions[key] = acc
        self._users.add(user_id)
        return acc

    def record_event(self, kind: str, payload: Mapping[str, Any]) -> None:
        handlers = {
            "classification": (ClassificationEvent, self.record_classification),
            "safety": (SafetyEvent, self.record_safety_event),
            "engagement": (EngagementEvent, self.record_engagement),
            "moderation": (ModerationAction, self.record_moderation_action),
            "feedback": (FeedbackRecord, self.record_feedback),
        }
        if kind not in handlers:
            raise ValueError(f"unknown event kind {kind!r}; expected one of {sorted(handlers)}")
        if not isinstance(payload, Mapping):
            raise ValueError("event payload must be a mapping")
        model, handler = handlers[kind]
        handler(model(**payload))

    def record_classification(self, event: ClassificationEvent) -> None:
        now = self._clock()
        with self._lock:
            self._classifications += 1
            self._confidence_sum += event.confidence
            if event.method == "model":
                self._model_calls += 1
            else:
                self._rule_calls += 1
            self._category_counts[event.category] += 1
            self._confidence_buckets[_confidence_bucket(event.confidence)] += 1
            if not event.meets_threshold:
                self._below_threshold += 1
            if event.ambiguous_phrase:
                self._ambiguous += 1
                stats = self._phrases.setdefault(
                    event.ambiguous_phrase.strip().lower(), {"count": 0, "disambiguated": 0, "resolved": 0}
                )
                stats["count"] += 1
                if event.method == "model":
                    stats["disambiguated"] += 1
                    if event.meets_threshold:
                        stats["resolved"] += 1
            self._latency_sum += event.latency_ms
            if event.is_crisis:
                self._crisis_detections += 1
                self._crisis_latency_sum += event.latency_ms

            acc = self._session(event.user_id, event.session_id, now)
            acc.message_count += 1
            acc.categories.add(event.category)
            acc.touch(now)
            if event.emotional_intensity is not None:
                if acc.initial_intensity is None:
                    acc.initial_intensity = event.emotional_intensity
                acc.current_intensity = event.emotional_intensity

    def record_safety_event(self, event: SafetyEvent) -> None:
        with self._lock:
            self._safety_counts[event.type] += 1
        logger.warning(
            "SAFETY EVENT %s user=%s session=%s details=%s",
            event.type,
            event.user_id,
            event.session_id,
            event.details,
        )
        if self._events is not None:
            self._events.add_event(f"safety.{event.type}", event.model_dump(), priority=PRIORITY_HIGH)

    def record_engagement(self, event: EngagementEvent) -> None:
        now = self._clock()
        with self._lock:
            acc = self._session(event.user_id, event.session_id, now)
            acc.touch(now)
            if event.type == "session_end":
                acc.ended = True
            elif event.type == "resource_click":
                self._resource_clicks += 1
            elif event.type == "return_visit":
                self._returning_users.add(event.user_id)

    def record_moderation_action(self, action: ModerationAction) -> None:
        with self._lock:
            self._moderation.append(action)

    def record_feedback(self, record: FeedbackRecord) -> None:
        with self._lock:
            self._feedback.append(record)

    def feedback(self) -> List[FeedbackRecord]:
        with self._lock:
            return list(self._feedback)

    def category_counts(self) -> Dict[str, int]:
        with self._lock:
            return dict(self._category_counts)

    def confidence_buckets(self) -> Dict[str, int]:
        with self._lock:
            return {b: self._confidence_buckets.get(b, 0) for b in ("very_high", "high", "medium", "low")}

    def ambiguous_phrases(self) -> Dict[str, Dict[str, int]]:
        with self._lock:
            return {phrase: dict(stats) for phrase, stats in self._phrases.items()}

    def session_stats(self) -> Dict[tuple, SessionAccumulator]:
        with self._lock:
            return {
                key: SessionAccumulator(
                    start_time=acc.start_time,
                    last_activity=acc.last_activity,
                    message_count=acc.message_count,
                    initial_intensity=acc.initial_intensity,
                    current_intensity=acc.current_intensity,
                    categories=set(acc.categories),
                    ended=acc.ended,
                )
                for key, acc in self._sessions.items()
            }

    def get_snapshot(self) -> Dict[str, Any]:
        with self._lock:
            sessions = list(self._sessions.values())
            classifications = self._classifications
            classification = {
                "total": classifications,
                "accuracy_rate": feedback_accuracy(self._feedback)["overall_accuracy"] if self._feedback else None,
                "ambiguous_phrases_handled": self._ambiguous,
                "model_disambiguations": self._model_calls,
                "rule_classifications": self._rule_calls,
                "average_confidence": round(_mean(self._confidence_sum, classifications), 2),
                "by_category": dict(self._category_counts),
                "below_threshold": self._below_threshold,
            }
            safety = {
                "crisis_detections": self._crisis_detections,
                "crisis_events": self._safety_counts["crisis"],
                "escalations_to_human": self._safety_counts["escalation"],
                "false_positives": self._safety_counts["false_positive"],
                "missed_crises": self._safety_counts["missed_crisis"],
                "average_response_seconds": round(_mean(self._latency_sum, classifications) / 1000, 2),
                "crisis_response_seconds": round(
                    _mean(self._crisis_latency_sum, self._crisis_detections) / 1000, 2
                ),
            }
            users = len(self._users)
            returning = len(self._returning_users & self._users)
            clicks = self._resource_clicks
            top_issues = [
                {"category": cat, "count": n} for cat, n in self._category_counts.most_common(TOP_ISSUES)
            ]

        durations = [(s.last_activity - s.start_time).total_seconds() / 60 for s in sessions]
        engagement = {
            "conversations_started": len(sessions),
            "conversations_completed": sum(1 for s in sessions if s.ended),
            "messages_per_session": round(_mean(sum(s.message_count for s in sessions), len(sessions)), 1),
            "average_session_minutes": round(_mean(sum(durations), len(durations)), 1),
            "return_user_rate": round(returning / users, 2) if users else 0.0,
            "resource_clickthrough": round(clicks / len(sessions), 2) if sessions else 0.0,
        }

        rated = [s for s in sessions if s.intensity_delta is not None]
        improving = sum(1 for s in rated if s.intensity_delta < 0)
        escalating = sum(1 for s in rated if s.intensity_delta > 2)
        stable = len(rated) - improving - escalating
        sentiment = {
            "average_distress": round(_mean(sum(s.current_intensity for s in rated), len(rated)), 1),
            "improving_pct": _pct(improving, len(rated)),
            "escalating_pct": _pct(escalating, len(rated)),
            "stable_pct": _pct(stable, len(rated)),
            "improving_cases": improving,
            "escalating_cases": escalating,
            "stable_cases": stable,
            "top_issues": top_issues,
        }

        return {
            "classification": classification,
            "safety": safety,
            "engagement": engagement,
            "sentiment": sentiment,
            "generated_at": self._clock().isoformat(),
        }

    def get_cost_estimate(self, window_days: Optional[float] = None) -> Dict[str, Any]:
        """Cost of model calls so far, projected over 30 days at the current daily rate.

        ``window_days`` defaults to the time since start (or the last reset),
        never less than one day.
        """
        if window_days is not None and window_days <= 0:
            raise ValueError("window_days must be positive")
        with self._lock:
            model_calls = self._model_calls
            rule_calls = self._rule_calls
            classifications = self._classifications
            started_at = self._started_at

        if window_days is None:
            elapsed = (self._clock() - started_at).total_seconds() / 86400
            window_days = max(elapsed, 1.0)

        model_cost = model_calls * self._model_call_cost
        total = model_cost
        per_message = total / classifications if classifications else 0.0
        daily = total / window_days
        return {
            "model_calls": model_calls,
            "rule_calls": rule_calls,
            "model_cost": round(model_cost, 4),
            "rule_cost": 0.0,
            "total_cost": round(total, 4),
            "cost_per_message": round(per_message, 6),
            "window_days": window_days,
            "daily_rate": round(daily, 6),
            "projected_monthly": round(daily * 30, 4),
        }

    def get_moderation_summary(self) -> Dict[str, Any]:
        with self._lock:
            actions = list(self._moderation)

        total = len(actions)
        correct = sum(1 for a in actions if a.was_correct)
        by_type: Dict[str, Dict[str, float]] = {}
        for a in actions:
            stats = by_type.setdefault(a.action_type, {"total": 0, "correct": 0, "accuracy": 0.0})
            stats["total"] += 1
            if a.was_correct:
                stats["correct"] += 1
        for stats in by_type.values():
            stats["accuracy"] = round(stats["correct"] / stats["total"] * 100, 2)

        return {
            "total_actions": total,
            "correct_actions": correct,
            "false_positives": sum(1 for a in actions if a.false_positive),
            "false_negatives": sum(1 for a in actions if a.false_negative),
            "success_rate": round(correct / total * 100, 2) if total else 0.0,
            "accuracy_by_type": by_type,
        }

    def format_summary(self) -> str:
        m = self.get_snapshot()
        c, s, e, t = m["classification"], m["safety"], m["engagement"], m["sentiment"]
        accuracy = "n/a" if c["accuracy_rate"] is None else f"{c['accuracy_rate'] * 100:.1f}%"
        issues = "\n".join(f"  - {i['category']}: {i['count']}" for i in t["top_issues"]) or "  (none)"
        return f"""CLASSIFICATION
  Accuracy rate: {accuracy}
  Ambiguous phrases handled: {c['ambiguous_phrases_handled']}
  Model disambiguations: {c['model_disambiguations']}
  Rule classifications: {c['rule_classifications']}
  Average confidence: {c['average_confidence']}
  Below threshold: {c['below_threshold']}

SAFETY
  Crisis detections: {s['crisis_detections']}
  Escalations to human: {s['escalations_to_human']}
  False positives: {s['false_positives']}
  Missed crises: {s['missed_crises']}
  Avg response time: {s['average_response_seconds']:.1f}s
  Crisis response time: {s['crisis_response_seconds']:.1f}s

ENGAGEMENT
  Conversations started: {e['conversations_started']}
  Conversations completed: {e['conversations_completed']}
  Messages per session: {e['messages_per_session']}
  Avg session length: {e['average_session_minutes']} minutes
  Return user rate: {e['return_user_rate'] * 100:.0f}%

SENTIMENT
  Avg distress level: {t['average_distress']}/10
  Improving: {t['improving_pct']}%
  Escalating: {t['escalating_pct']}%
  Stable: {t['stable_pct']}%

TOP ISSUES
{issues}
"""

    def format_moderation_summary(self) -> str:
        stats = self.get_moderation_summary()
        if stats["total_actions"] == 0:
            return "No moderation actions tracked yet."
        by_type = "\n".join(
            f"  - {kind}: {data['accuracy']:.1f}% ({data['correct']}/{data['total']})"
            for kind, data in stats["accuracy_by_type"].items()
        )
        return f"""MODERATION
  Total actions: {stats['total_actions']}
  Correct actions: {stats['correct_actions']}
  Success rate: {stats['success_rate']:.1f}%
  False positives: {stats['false_positives']}
  False negatives: {stats['false_negatives']}

ACCURACY BY ACTION TYPE
{by_type}
"""

    def export_json(self) -> str:
        return json.dumps(self.get_snapshot(), indent=2)
