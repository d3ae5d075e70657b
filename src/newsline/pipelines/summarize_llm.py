from __future__ import annotations

import logging
from typing import Any

from ..config import LlmConfig
from ..llm import chat_completion
from ..utils import log_event

MAX_INPUT_CHARS = 12000


def summarize_with_llm(
    config: LlmConfig,
    *,
    title: str | None,
    source: str | None,
    url: str,
    content: str,
    logger: logging.Logger,
) -> dict[str, Any]:
    system = (
        "You summarize news articles. "
        "Be concise, factual, and avoid speculation. "
        "Reply with three to five sentences of plain text."
    )
    user = (
        f"Title: {title or 'unknown'}\n"
        f"Source: {source or 'unknown'}\n"
        f"URL: {url}\n\n"
        f"Content:\n{content[:MAX_INPUT_CHARS]}"
    )
    try:
        summary = chat_completion(
            config,
            [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            max_tokens=400,
        )
    except Exception as exc:  # noqa: BLE001
        log_event(logger, logging.WARNING, "llm_call_failed", stage="summarize", error=str(exc))
        raise
    summary = summary.strip()
    if not summary:
        raise ValueError("llm_empty_summary")
    return {"summary": summary, "model": config.model}
