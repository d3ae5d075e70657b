from __future__ import annotations

import re
from typing import Iterable


def normalize_tag(tag: str) -> str:
    cleaned = tag.strip().lower()
    cleaned = re.sub(r"\s+", "-", cleaned)
    cleaned = re.sub(r"[^a-z0-9\-]", "-", cleaned)
    cleaned = re.sub(r"-+", "-", cleaned).strip("-")
    return cleaned


def normalize_tags(tags: Iterable[str]) -> list[str]:
    """Normalize and de-duplicate tags, keeping first-seen order."""
    normalized: list[str] = []
    for tag in tags:
        if not tag:
            continue
        value = normalize_tag(str(tag))
        if not value or value in normalized:
            continue
        normalized.append(value)
    return normalized
