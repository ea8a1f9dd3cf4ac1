"""In-memory conversation store.

A session groups conversation turns under a ``SessionKey`` (user id and
session id). Each session keeps at most ``2 * long_term`` turns; the oldest
are dropped on append. Every session has its own lock, so appends and reads
on one session never wait on another.

In production, back this with a database-backed store.
"""
from __future__ import annotations

import threading
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from companion.core.config import WindowConfig

ROLES = ("user", "assistant")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class SessionKey:
    user_id: str
    session_id: str

    def __post_init__(self) -> None:
        for name in ("user_id", "session_id"):
            value = getattr(self, name)
            if not isinstance(value, str) or not value.strip():
                raise ValueError(f"{name} must be a non-empty string")

    def __str__(self) -> str:
        return f"{self.user_id}/{self.session_id}"


@dataclass(frozen=True)
class Classification:
    category: str
    confidence: float = 1.0
    subcategory: Optional[str] = None

    def __post_init__(self) -> None:
        if not isinstance(self.category, str) or not self.category.strip():
            raise ValueError("classification category must be a non-empty string")
        if not 0.0 <= float(self.confidence) <= 1.0:
            raise ValueError(f"confidence must be within [0, 1], got {self.confidence!r}")

    @property
    def is_crisis(self) -> bool:
        return self.category.strip().lower() == "crisis"


@dataclass(frozen=True)
class Turn:
    role: str
    content: str
    timestamp: datetime = field(default_factory=utcnow)
    classification: Optional[Classification] = None
    emotional_intensity: Optional[float] = None
    synthetic: bool = False

    def __post_init__(self) -> None:
        if self.role not in ROLES:
            raise ValueError(f"role must be one of {ROLES}, got {self.role!r}")
        if not isinstance(self.content, str):
            raise ValueError("content must be a string")
        if not isinstance(self.timestamp, datetime):
            raise ValueError(f"timestamp must be a datetime, got {self.timestamp!r}")
        if self.timestamp.tzinfo is None:
            # naive timestamps are UTC
            object.__setattr__(self, "timestamp", self.timestamp.replace(tzinfo=timezone.utc))
        if self.emotional_intensity is not None and not 1 <= self.emotional_intensity <= 10:
            raise ValueError(f"emotional_intensity must be within [1, 10], got {self.emotional_intensity!r}")

    @property
    def category(self) -> Optional[str]:
        return self.classification.category if self.classification else None

    def to_dict(self) -> dict:
        payload = {
            "role": self.role,
            "content": self.content,
            "timestamp": self.timestamp.isoformat(),
            "emotional_intensity": self.emotional_intensity,
            "synthetic": self.synthetic,
            "classification": None,
        }
        if self.classification is not None:
            payload["classification"] = {
                "category": self.classification.category,
                "subcategory": self.classification.subcategory,
                "confidence": self.classification.confidence,
            }
        return payload


@dataclass
class _Session:
    key: SessionKey
    created_at: datetime
    lock: threading.Lock = field(default_factory=threading.Lock)
    turns: List[Turn] = field(default_factory=list)
    seqs: List[int] = field(default_factory=list)
    next_seq: int = 0
    closed: bool = False


class ConversationStore:
    def __init__(self, window: Optional[WindowConfig] = None) -> None:
        self._window = window or WindowConfig()
        self._sessions: Dict[SessionKey, _Session] = {}
        self._registry_lock = threading.Lock()

    @property
    def window_config(self) -> WindowConfig:
        return self._window

    def set_window_config(self, window: WindowConfig) -> None:
        self._window = window
        keep = window.max_turns
        with self._registry_lock:
            sessions = list(self._sessions.values())
        for sess in sessions:
            with sess.lock:
                if len(sess.turns) > keep:
                    del sess.turns[:-keep]
                    del sess.seqs[:-keep]

    def _ensure(self, key: SessionKey) -> _Session:
        sess = self._sessions.get(key)
        if sess is not None:
            return sess
        with self._registry_lock:
            if key not in self._sessions:
                self._sessions[key] = _Session(key=key, created_at=utcnow())
            return self._sessions[key]

    def append(self, key: SessionKey, turn: Turn) -> int:
        """Append ``turn`` and return its sequence number within the session."""
        while True:
            sess = self._ensure(key)
            with sess.lock:
                if sess.closed:
                    # cleared since lookup; retry on its replacement
                    continue
                keep = self._window.max_turns
                seq = sess.next_seq
                sess.next_seq += 1
                sess.turns.append(turn)
                sess.seqs.append(seq)
                if len(sess.turns) > keep:
                    del sess.turns[:-keep]
                    del sess.seqs[:-keep]
                return seq

    def clear(self, key: SessionKey) -> bool:
        with self._registry_lock:
            sess = self._sessions.pop(key, None)
        if sess is None:
            return False
        with sess.lock:
            sess.closed = True
        return True

    def turns(self, key: SessionKey) -> List[Turn]:
        sess = self._sessions.get(key)
        if sess is None:
            return []
        with sess.lock:
            return list(sess.turns)

    def snapshot(self, key: SessionKey) -> List[Tuple[int, Turn]]:
        """Return ``(sequence, turn)`` pairs taken under the session lock."""
        sess = self._sessions.get(key)
        if sess is None:
            return []
        with sess.lock:
            return list(zip(sess.seqs, sess.turns))

    def count(self, key: SessionKey) -> int:
        sess = self._sessions.get(key)
        if sess is None:
            return 0
        with sess.lock:
            return len(sess.turns)

    def window(self, key: SessionKey, tier: str) -> List[Turn]:
        n = self._window.tier_count(tier) * 2
        return self.turns(key)[-n:]

    def last_by_role(self, key: SessionKey, role: str) -> Optional[Turn]:
        for turn in reversed(self.turns(key)):
            if turn.role == role:
                return turn
        return None

    def created_at(self, key: SessionKey) -> Optional[datetime]:
        sess = self._sessions.get(key)
        return sess.created_at if sess else None

    def keys(self) -> List[SessionKey]:
        with self._registry_lock:
            return list(self._sessions)

    def sessions_for_user(self, user_id: str) -> List[dict]:
        out = []
        for key in self.keys():
            if key.user_id != user_id:
                continue
            turns = self.turns(key)
            out.append(
                {
                    "session_id": key.session_id,
                    "message_count": len(turns) // 2,
                    "last_activity": turns[-1].timestamp if turns else self.created_at(key),
                }
            )
        return out
