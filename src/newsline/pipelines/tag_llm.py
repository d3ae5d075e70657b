from __future__ import annotations

import logging
from typing import Any

import jsonschema

from ..config import LlmConfig
from ..llm import LLMError, chat_completion, parse_json_content
from ..tagger import normalize_tags
from ..utils import log_event

MAX_TAGS = 8

TAGS_SCHEMA: dict[str, Any] = {
    "type": "object",
    "required": ["tags"],
    "properties": {
        "tags": {
            "type": "array",
            "items": {"type": "string"},
            "maxItems": 20,
        },
    },
}


def tag_with_llm(
    config: LlmConfig,
    *,
    title: str | None,
    summary: str | None,
    content: str,
    logger: logging.Logger,
) -> list[str]:
    text = summary or content[:2000]
    reply = chat_completion(
        config,
        [
            {
                "role": "system",
                "content": (
                    "You assign topic tags to news articles. "
                    f"Return at most {MAX_TAGS} short lowercase tags as JSON: "
                    '{"tags": ["..."]}.'
                ),
            },
            {"role": "user", "content": f"Title: {title or ''}\n\n{text}"},
        ],
        temperature=0.0,
        max_tokens=200,
    )
    payload = parse_json_content(reply)
    try:
        jsonschema.validate(payload, TAGS_SCHEMA)
    except jsonschema.ValidationError as exc:
        raise LLMError(f"llm_schema_error: {exc.message}") from exc
    tags = normalize_tags(payload["tags"])[:MAX_TAGS]
    log_event(logger, logging.DEBUG, "tags_generated", count=len(tags))
    return tags
