from __future__ import annotations

import json
import logging
import os
import time
import urllib.error
import urllib.request
from typing import Any, Callable, TypeVar

from ..config import LlmConfig
from ..utils import log_event

T = TypeVar("T")

logger = logging.getLogger("newsline.llm")


class LLMError(RuntimeError):
    pass


def chat_completion(
    config: LlmConfig,
    messages: list[dict[str, str]],
    *,
    temperature: float = 0.2,
    max_tokens: int = 512,
) -> str:
    payload = {
        "model": config.model,
        "messages": messages,
        "temperature": temperature,
        "max_tokens": max_tokens,
    }

    def _call() -> str:
        response = _post_json(config, "/chat/completions", payload)
        choices = response.get("choices") or []
        if not choices:
            raise LLMError("llm_missing_choices")
        return str(choices[0]["message"]["content"])

    return with_backoff(_call, config.max_retries, config.backoff_seconds, "chat_completion")


def embed_texts(config: LlmConfig, texts: list[str]) -> list[list[float]]:
    if not texts:
        return []
    payload = {"model": config.embedding_model, "input": texts}

    def _call() -> list[list[float]]:
        response = _post_json(config, "/embeddings", payload)
        items = response.get("data") or []
        if len(items) != len(texts):
            raise LLMError(f"llm_embedding_count_mismatch expected={len(texts)} got={len(items)}")
        ordered = sorted(items, key=lambda item: item.get("index", 0))
        return [[float(value) for value in item["embedding"]] for item in ordered]

    return with_backoff(_call, config.max_retries, config.backoff_seconds, "embeddings")


def with_backoff(
    func: Callable[[], T],
    max_retries: int,
    backoff_seconds: float,
    operation: str,
    sleep: Callable[[float], None] = time.sleep,
) -> T:
    """Run ``func`` with exponential backoff; the last error propagates."""
    attempt = 0
    while True:
        try:
            return func()
        except (LLMError, OSError, ValueError) as exc:
            attempt += 1
            if attempt > max_retries:
                raise
            delay = backoff_seconds * (2 ** (attempt - 1))
            log_event(
                logger,
                logging.WARNING,
                "llm_call_retry",
                operation=operation,
                attempt=attempt,
                delay=delay,
                error=str(exc),
            )
            sleep(delay)


def _post_json(config: LlmConfig, path: str, payload: dict[str, Any]) -> dict[str, Any]:
    base_url = config.base_url.strip()
    if not base_url:
        raise LLMError("llm_base_url_not_set")
    api_key = os.environ.get("NL_LLM_API_KEY", "").strip()
    data = json.dumps(payload).encode("utf-8")
    request = urllib.request.Request(base_url.rstrip("/") + path, data=data, method="POST")
    request.add_header("Content-Type", "application/json")
    if api_key:
        request.add_header("Authorization", f"Bearer {api_key}")
    try:
        with urllib.request.urlopen(request, timeout=config.timeout_seconds) as response:
            raw = response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        raw = exc.read().decode("utf-8", errors="ignore")
        raise LLMError(f"http_error {exc.code}: {raw[:500]}") from exc
    except urllib.error.URLError as exc:
        raise LLMError(f"network_error: {exc}") from exc
    try:
        return json.loads(raw)
    except json.JSONDecodeError as exc:
        raise LLMError(f"invalid_json: {raw[:200]}") from exc


def parse_json_content(text: str) -> Any:
    """Decode a JSON reply, tolerating a surrounding markdown code fence."""
    cleaned = text.strip()
    if cleaned.startswith("```"):
        cleaned = cleaned.strip("`")
        if cleaned.lower().startswith("json"):
            cleaned = cleaned[4:]
    try:
        return json.loads(cleaned)
    except json.JSONDecodeError as exc:
        raise LLMError("llm_invalid_json_reply") from exc
