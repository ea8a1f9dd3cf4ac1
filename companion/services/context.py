"""Tiered conversation context with summarization.

The manager keeps three nested retrieval windows over each session's turns
(short, medium, long), derives recurring topics and an emotional trend from
the medium window, and builds a "smart context" in which older turns are
replaced by a cached summary once a session grows past the summarization
threshold.

Summaries come from an optional external summarizer (see
:func:`companion.core.llm.make_summarizer`). The call runs on a worker
thread with a deadline and never holds a session lock; any failure or
timeout falls back to :func:`local_summarize`.
"""
from __future__ import annotations

import logging
import math
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from dataclasses import dataclass, field, replace
from datetime import datetime
from threading import Lock
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from companion.core.config import WindowConfig
from companion.core.llm import Summarizer
from companion.core.session_store import Classification, ConversationStore, SessionKey, Turn, utcnow
from companion.event_log import EventLog

logger = logging.getLogger(__name__)

SOURCE_EXTERNAL = "external"
SOURCE_LOCAL = "local"

TREND_IMPROVING = "improving"
TREND_STABLE = "stable"
TREND_DECLINING = "declining"
TREND_UNKNOWN = "unknown"

RECURRING_MIN = 3
TREND_SAMPLES = 3
CHARS_PER_TOKEN = 4

Fingerprint = Optional[Tuple[int, int, int]]


@dataclass(frozen=True)
class SummaryResult:
    text: str
    source: str
    covered_turns: int = 0

    def to_dict(self) -> dict:
        return {"text": self.text, "source": self.source, "covered_turns": self.covered_turns}


@dataclass
class SmartContext:
    turns: List[Turn] = field(default_factory=list)
    summary: Optional[SummaryResult] = None

    @property
    def summarized(self) -> bool:
        return self.summary is not None


def recurring_categories(turns: Sequence[Turn], minimum: int = RECURRING_MIN) -> List[str]:
    counts = Counter(t.category for t in turns if t.category)
    return [cat for cat, n in counts.items() if n >= minimum]


def emotional_trend(turns: Sequence[Turn]) -> str:
    """Compare the first and last three user intensity samples.

    Intensity falling by more than one point means the user is improving;
    rising by more than one point means declining.
    """
    samples = [t.emotional_intensity for t in turns if t.role == "user" and t.emotional_intensity is not None]
    if len(samples) < TREND_SAMPLES:
        return TREND_UNKNOWN
    earlier = sum(samples[:TREND_SAMPLES]) / TREND_SAMPLES
    recent = sum(samples[-TREND_SAMPLES:]) / TREND_SAMPLES
    if recent < earlier - 1:
        return TREND_IMPROVING
    if recent > earlier + 1:
        return TREND_DECLINING
    return TREND_STABLE


def local_summarize(turns: Sequence[Turn]) -> str:
    if not turns:
        return "No previous conversation."

    pairs = math.ceil(len(turns) / 2)
    parts = [f"Discussed {pairs} exchange{'s' if pairs != 1 else ''}"]

    topics = recurring_categories(turns)
    if topics:
        parts.append("including " + ", ".join(topics).lower())

    if any(t.classification is not None and t.classification.is_crisis for t in turns):
        parts.append("(previous crisis discussion)")

    intensities = [t.emotional_intensity for t in turns if t.emotional_intensity is not None]
    if len(intensities) >= 2:
        first, last = intensities[0], intensities[-1]
        if last < first - 2:
            parts.append("- user improved")
        elif last > first + 2:
            parts.append("- user declined")

    return " ".join(parts)


def _check_pairs(max_pairs: int) -> None:
    if not isinstance(max_pairs, int) or isinstance(max_pairs, bool) or max_pairs <= 0:
        raise ValueError(f"max_pairs must be a positive integer, got {max_pairs!r}")


def _fingerprint(entries: Sequence[Tuple[int, Turn]]) -> Fingerprint:
    if not entries:
        return None
    return (entries[0][0], entries[-1][0], len(entries))


class ContextManager:
    def __init__(
        self,
        store: Optional[ConversationStore] = None,
        summarizer: Optional[Summarizer] = None,
        summary_timeout: float = 5.0,
        events: Optional[EventLog] = None,
        max_workers: int = 4,
    ) -> None:
        self.store = store or ConversationStore()
        self._summarizer = summarizer
        self._summary_timeout = summary_timeout
        self._events = events
        self._max_workers = max_workers
        self._pool: Optional[ThreadPoolExecutor] = None
        self._pool_lock = Lock()
        self._summaries: Dict[SessionKey, Tuple[Fingerprint, SummaryResult]] = {}
        self._summary_lock = Lock()

    def append(self, key: SessionKey, turn: Turn) -> Turn:
        if not isinstance(key, SessionKey):
            raise ValueError("key must be a SessionKey")
        if turn.synthetic:
            raise ValueError("synthetic turns cannot be stored")
        self.store.append(key, turn)
        return turn

    def append_turn(
        self,
        key: SessionKey,
        role: str,
        content: str,
        classification: Optional[Classification] = None,
        emotional_intensity: Optional[float] = None,
        timestamp: Optional[datetime] = None,
    ) -> Turn:
        turn = Turn(
            role=role,
            content=content,
            timestamp=timestamp or utcnow(),
            classification=classification,
            emotional_intensity=emotional_intensity,
        )
        return self.append(key, turn)

    def clear_conversation(self, key: SessionKey) -> None:
        self.store.clear(key)
        self.clear_summary(key)

    def clear_summary(self, key: SessionKey) -> None:
        with self._summary_lock:
            self._summaries.pop(key, None)

    def get_window_config(self) -> WindowConfig:
        return self.store.window_config

    def set_window_config(self, **changes: int) -> WindowConfig:
        try:
            window = replace(self.store.window_config, **changes)
        except TypeError as exc:
            raise ValueError(str(exc)) from exc
        self.store.set_window_config(window)
        logger.info("Context window updated: %s", window)
        return window

    def get_context(self, key: SessionKey, tier: str = "short") -> List[Turn]:
        return self.store.window(key, tier)

    def get_short_term_context(self, key: SessionKey) -> List[Turn]:
        return self.store.window(key, "short")

    def get_medium_term_context(self, key: SessionKey) -> List[Turn]:
        return self.store.window(key, "medium")

    def get_long_term_context(self, key: SessionKey) -> List[Turn]:
        return self.store.window(key, "long")

    def get_last_user_turn(self, key: SessionKey) -> Optional[Turn]:
        return self.store.last_by_role(key, "user")

    def get_last_assistant_turn(self, key: SessionKey) -> Optional[Turn]:
        return self.store.last_by_role(key, "assistant")

    def get_recurring_topics(self, key: SessionKey) -> List[str]:
        return recurring_categories(self.get_medium_term_context(key))

    def get_emotional_trend(self, key: SessionKey) -> str:
        return emotional_trend(self.get_medium_term_context(key))

    def is_response_to_question(self, key: SessionKey) -> bool:
        last = self.get_last_assistant_turn(key)
        return last is not None and "?" in last.content

    def get_current_intensity(self, key: SessionKey) -> Optional[float]:
        for turn in reversed(self.store.turns(key)):
            if turn.role == "user" and turn.emotional_intensity is not None:
                return turn.emotional_intensity
        return None

    def estimate_token_count(self, key: SessionKey) -> int:
        chars = sum(len(t.content) for t in self.store.turns(key))
        return math.ceil(chars / CHARS_PER_TOKEN)

    def needs_summarization(self, key: SessionKey) -> bool:
        return self.store.count(key) > self.store.window_config.summarization_threshold

    def get_conversation_summary(self, key: SessionKey) -> dict:
        turns = self.store.turns(key)
        if not turns:
            return {
                "message_count": 0,
                "duration_minutes": 0,
                "main_topics": [],
                "emotional_trend": TREND_UNKNOWN,
                "avg_emotional_intensity": None,
                "current_intensity": None,
            }
        samples = [t.emotional_intensity for t in turns if t.role == "user" and t.emotional_intensity is not None]
        duration = (turns[-1].timestamp - turns[0].timestamp).total_seconds() / 60
        return {
            "message_count": len(turns) // 2,
            "duration_minutes": round(duration),
            "main_topics": self.get_recurring_topics(key),
            "emotional_trend": self.get_emotional_trend(key),
            "avg_emotional_intensity": round(sum(samples) / len(samples), 1) if samples else None,
            "current_intensity": samples[-1] if samples else None,
        }

    def get_user_sessions(self, user_id: str) -> List[dict]:
        return self.store.sessions_for_user(user_id)

    def _split(self, key: SessionKey, max_pairs: int) -> Tuple[List[Tuple[int, Turn]], List[Tuple[int, Turn]]]:
        entries = self.store.snapshot(key)
        recent_count = max_pairs * 2
        return entries[:-recent_count], entries[-recent_count:]

    def _summary_partition(self, key: SessionKey, max_pairs: int) -> List[Tuple[int, Turn]]:
        old, recent = self._split(key, max_pairs)
        if len(old) + len(recent) <= self.store.window_config.summarization_threshold:
            return []
        return old or recent

    def get_smart_context(self, key: SessionKey, max_pairs: int = 10) -> SmartContext:
        """Return recent turns verbatim, prefixed by a summary of older ones when needed."""
        _check_pairs(max_pairs)
        threshold = self.store.window_config.summarization_threshold
        old, recent = self._split(key, max_pairs)
        recent_turns = [t for _, t in recent]
        if len(old) + len(recent) <= threshold or not old:
            return SmartContext(turns=recent_turns)

        summary = self._summary_for(key, old, lambda: self._split(key, max_pairs)[0])
        note = Turn(
            role="assistant",
            content=f"[Previous conversation summary: {summary.text}]",
            timestamp=old[-1][1].timestamp,
            synthetic=True,
        )
        return SmartContext(turns=[note, *recent_turns], summary=summary)

    def get_summary(self, key: SessionKey, force_recompute: bool = False, max_pairs: int = 10) -> SummaryResult:
        """Summary of the turns smart context would replace.

        At or below the summarization threshold nothing is summarized and the
        result is empty. Above it, with fewer than ``max_pairs`` pairs stored,
        the whole stored sequence is summarized.
        """
        _check_pairs(max_pairs)
        entries = self._summary_partition(key, max_pairs)
        if not entries:
            return SummaryResult(text="", source=SOURCE_LOCAL, covered_turns=0)
        return self._summary_for(
            key, entries, lambda: self._summary_partition(key, max_pairs), force=force_recompute
        )

    def _summary_for(
        self,
        key: SessionKey,
        entries: List[Tuple[int, Turn]],
        reread: Callable[[], List[Tuple[int, Turn]]],
        force: bool = False,
    ) -> SummaryResult:
        fp = _fingerprint(entries)
        if not force:
            with self._summary_lock:
                cached = self._summaries.get(key)
            if cached is not None and cached[0] == fp:
                return cached[1]

        result = self._summarize(key, [t for _, t in entries])

        # install only if the covered turns are still the same
        if _fingerprint(reread()) == fp:
            with self._summary_lock:
                self._summaries[key] = (fp, result)
        else:
            logger.debug("Discarding summary for %s: conversation changed while summarizing", key)
        return result

    def _executor(self) -> ThreadPoolExecutor:
        with self._pool_lock:
            if self._pool is None:
                self._pool = ThreadPoolExecutor(max_workers=self._max_workers, thread_name_prefix="summarizer")
            return self._pool

    def _summarize(self, key: SessionKey, turns: List[Turn]) -> SummaryResult:
        local = SummaryResult(text=local_summarize(turns), source=SOURCE_LOCAL, covered_turns=len(turns))
        if not turns or self._summarizer is None:
            return local

        try:
            future = self._executor().submit(self._summarizer, turns)
            text = future.result(timeout=self._summary_timeout)
        except FutureTimeout:
            future.cancel()
            self._note_fallback(key, f"summarizer timed out after {self._summary_timeout}s")
            return local
        except Exception as exc:
            self._note_fallback(key, f"summarizer failed: {exc}")
            return local

        text = (text or "").strip() if isinstance(text, str) else ""
        if not text:
            self._note_fallback(key, "summarizer returned no text")
            return local
        return SummaryResult(text=text, source=SOURCE_EXTERNAL, covered_turns=len(turns))

    def _note_fallback(self, key: SessionKey, reason: str) -> None:
        logger.warning("Falling back to local summary for %s: %s", key, reason)
        if self._events is not None:
            self._events.add_event("summary.fallback", {"session": str(key), "reason": reason})

    def shutdown(self) -> None:
        with self._pool_lock:
            if self._pool is not None:
                self._pool.shutdown(wait=False, cancel_futures=True)
                self._pool = None
