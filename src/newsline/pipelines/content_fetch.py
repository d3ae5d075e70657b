from __future__ import annotations

import logging
import re
import urllib.request
from typing import Any

from bs4 import BeautifulSoup

from ..utils import log_event


def fetch_article_content(
    url: str,
    *,
    timeout_seconds: int,
    user_agent: str,
    logger: logging.Logger,
) -> dict[str, Any]:
    request = urllib.request.Request(url, headers={"User-Agent": user_agent})
    try:
        with urllib.request.urlopen(request, timeout=timeout_seconds) as response:
            raw = response.read()
    except Exception as exc:  # noqa: BLE001
        log_event(logger, logging.WARNING, "content_fetch_failed", url=url, error=str(exc))
        raise
    html = raw.decode("utf-8", errors="replace")
    return {"title": extract_title(html), "content": extract_readable_text(html)}


def extract_title(html: str) -> str | None:
    soup = BeautifulSoup(html, "html.parser")
    for attrs in ({"property": "og:title"}, {"name": "twitter:title"}):
        meta = soup.find("meta", attrs=attrs)
        if meta and meta.get("content"):
            return _normalize_text(str(meta["content"]))
    heading = soup.find("h1")
    if heading:
        text = _normalize_text(heading.get_text(" ", strip=True))
        if text:
            return text
    if soup.title and soup.title.string:
        return _normalize_text(soup.title.string)
    return None


def extract_readable_text(html: str) -> str:
    soup = BeautifulSoup(html, "html.parser")
    for tag in soup(["script", "style", "nav", "footer", "header", "aside", "form"]):
        tag.decompose()
    article = soup.find("article")
    if article:
        return _normalize_text(article.get_text(" ", strip=True))
    main = soup.find("main")
    if main:
        return _normalize_text(main.get_text(" ", strip=True))
    best = None
    best_len = 0
    for div in soup.find_all("div"):
        text = div.get_text(" ", strip=True)
        if len(text) > best_len:
            best_len = len(text)
            best = text
    if best:
        return _normalize_text(best)
    return _normalize_text(soup.get_text(" ", strip=True))


def _normalize_text(text: str) -> str:
    return re.sub(r"\s+", " ", text).strip()
