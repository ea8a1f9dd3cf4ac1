# companion/core/llm.py
from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Callable, Optional, Sequence

from companion.core.session_store import Turn

# turns in, short natural-language summary out
Summarizer = Callable[[Sequence[Turn]], str]


@dataclass
class LLMConfig:
    provider: str = "none"  # "none" | "ollama" | "cloud"
    model: str = "llama3.1:8b-instruct"  # for ollama
    api_key: Optional[str] = None
    endpoint: Optional[str] = None
    temperature: float = 0.2
    max_tokens: int = 160
    timeout: float = 5.0

    @classmethod
    def from_env(cls) -> "LLMConfig":
        return cls(
            provider=os.getenv("LLM_PROVIDER", "none"),
            model=os.getenv("LLM_MODEL", "llama3.1:8b-instruct"),
            api_key=os.getenv("LLM_API_KEY"),
            endpoint=os.getenv("LLM_ENDPOINT"),
            temperature=float(os.getenv("LLM_TEMPERATURE", "0.2")),
            max_tokens=int(os.getenv("LLM_MAX_TOKENS", "160")),
            timeout=float(os.getenv("SUMMARY_TIMEOUT_SECONDS", "5.0")),
        )


SYSTEM_PROMPT = """You summarize earlier parts of a supportive chat between a user
and a wellbeing companion. Goals: (1) keep the topics the user raised, (2) note
any safety concerns, (3) note whether the user seemed to feel better or worse.
Style: neutral, factual, third person, no advice, no quotes. Two sentences at most."""


def build_prompt(turns: Sequence[Turn]) -> str:
    lines = []
    for t in turns:
        speaker = "User" if t.role == "user" else "Companion"
        tag = f" [{t.category}]" if t.category else ""
        lines.append(f"{speaker}{tag}: {t.content}")
    transcript = "\n".join(lines) or "(empty conversation)"
    return f"""CONVERSATION:
{transcript}

Summarize the conversation above for the companion's own memory."""


def make_summarizer(cfg: LLMConfig) -> Optional[Summarizer]:
    """Return a summarizer for ``cfg.provider``, or None when none is configured."""
    from companion.core import llm_cloud, llm_ollama

    if cfg.provider == "ollama":
        return lambda turns: llm_ollama.summarize_with_ollama(cfg, turns)
    if cfg.provider == "cloud":
        return lambda turns: llm_cloud.summarize_with_cloud(cfg, turns)
    return None
