# companion/core/llm_cloud.py
from typing import Sequence

import requests

from companion.core.session_store import Turn
from .llm import LLMConfig, SYSTEM_PROMPT, build_prompt


# Any OpenAI-compatible chat completions endpoint, e.g.
# https://api.openai.com/v1/chat/completions
def summarize_with_cloud(cfg: LLMConfig, turns: Sequence[Turn]) -> str:
    if not cfg.api_key or not cfg.endpoint:
        raise RuntimeError("cloud summarizer requires LLM_API_KEY and LLM_ENDPOINT")
    body = {
        "model": cfg.model,
        "messages": [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": build_prompt(turns)},
        ],
        "temperature": cfg.temperature,
        "max_tokens": cfg.max_tokens,
    }
    headers = {"Authorization": f"Bearer {cfg.api_key}"}
    r = requests.post(cfg.endpoint, json=body, headers=headers, timeout=cfg.timeout)
    r.raise_for_status()
    data = r.json()
    try:
        summary = data["choices"][0]["message"]["content"].strip()
    except (KeyError, IndexError, TypeError, AttributeError) as exc:
        raise RuntimeError(f"unexpected chat completion payload: {exc}") from exc
    if not summary:
        raise RuntimeError("cloud provider returned an empty summary")
    return summary
