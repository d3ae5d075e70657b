from __future__ import annotations

import logging
from typing import Any

import jsonschema

from ..config import LlmConfig
from ..llm import LLMError, chat_completion, parse_json_content
from ..utils import log_event

MAX_INPUT_CHARS = 8000
ENGLISH_CONFIDENCE = 0.7

DETECTION_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["language", "confidence"],
    "properties": {
        "language": {"type": "string", "minLength": 2},
        "confidence": {"type": "number", "minimum": 0, "maximum": 1},
    },
}

TRANSLATION_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["translation"],
    "properties": {
        "translation": {"type": "string", "minLength": 1},
    },
}


def detect_language(config: LlmConfig, text: str) -> dict[str, Any]:
    reply = chat_completion(
        config,
        [
            {
                "role": "user",
                "content": (
                    "Detect the language of this text and respond with JSON: "
                    '{"language": "<iso code>", "confidence": 0.0}. '
                    f"Text: {text[:500]!r}"
                ),
            }
        ],
        temperature=0.0,
        max_tokens=50,
    )
    parsed = _validated(parse_json_content(reply), DETECTION_SCHEMA)
    return {
        "language": str(parsed["language"]).lower(),
        "confidence": float(parsed["confidence"]),
    }


def translate_with_llm(
    config: LlmConfig,
    *,
    title: str | None,
    content: str,
    force: bool,
    logger: logging.Logger,
) -> dict[str, Any]:
    """Detect the article language and translate it unless it is already English.

    Returns ``translation=None`` when the text is English with enough
    confidence and ``force`` is false.
    """
    detection = detect_language(config, content)
    target = config.target_language
    if (
        detection["language"] == target
        and detection["confidence"] > ENGLISH_CONFIDENCE
        and not force
    ):
        log_event(
            logger,
            logging.INFO,
            "translation_not_needed",
            language=detection["language"],
            confidence=detection["confidence"],
        )
        return {**detection, "translation": None, "translated_title": None}
    reply = chat_completion(
        config,
        [
            {
                "role": "system",
                "content": (
                    f"Translate news articles into {target}. Keep names and numbers intact. "
                    'Respond with JSON: {"title": "...", "translation": "..."}.'
                ),
            },
            {
                "role": "user",
                "content": f"Title: {title or ''}\n\n{content[:MAX_INPUT_CHARS]}",
            },
        ],
        max_tokens=2000,
    )
    parsed = _validated(parse_json_content(reply), TRANSLATION_SCHEMA)
    return {
        **detection,
        "translation": parsed["translation"],
        "translated_title": parsed.get("title"),
    }


def _validated(payload: Any, schema: dict[str, Any]) -> dict[str, Any]:
    try:
        jsonschema.validate(payload, schema)
    except jsonschema.ValidationError as exc:
        raise LLMError(f"llm_schema_error: {exc.message}") from exc
    return payload
