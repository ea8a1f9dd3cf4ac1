# companion/core/llm_ollama.py
import os
from typing import Sequence

import requests

from companion.core.session_store import Turn
from .llm import LLMConfig, SYSTEM_PROMPT, build_prompt


def summarize_with_ollama(cfg: LLMConfig, turns: Sequence[Turn]) -> str:
    prompt = build_prompt(turns)
    body = {
        "model": cfg.model,
        "prompt": f"{SYSTEM_PROMPT}\n\n{prompt}",
        "options": {"temperature": cfg.temperature, "num_predict": cfg.max_tokens},
        "stream": False,
    }
    url = os.getenv("OLLAMA_URL", "http://localhost:11434/api/generate")
    r = requests.post(url, json=body, timeout=cfg.timeout)
    r.raise_for_status()
    data = r.json()
    summary = (data.get("response") or "").strip()
    if not summary:
        raise RuntimeError("Ollama returned an empty summary")
    return summary
