from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Any
from urllib.error import HTTPError, URLError
from urllib.request import Request, urlopen

import feedparser
import yaml

from . import jobqueue, storage
from .config import Config
from .models import ExtractPayload
from .utils import log_event
from .worker import build_payload, ready_articles

logger = logging.getLogger("newsline.ingest")


@dataclass(frozen=True)
class FeedSpec:
    url: str
    source: str


@dataclass(frozen=True)
class FeedResult:
    feed_url: str
    source: str
    status: str
    found_count: int
    registered_count: int
    duplicate_count: int
    skipped_missing_url: int
    error: str | None


def register_article(
    conn,
    url: str,
    source: str | None,
    title: str | None = None,
    enqueue: bool = True,
    config: Config | None = None,
) -> tuple[int, str | None, bool]:
    """Insert an article and queue its extraction.

    Returns ``(article_id, job_id, created)``. A URL that is already known
    keeps its row and gets no new job.
    """
    article_id, created = storage.insert_article(conn, url, source=source, title=title)
    job_id = None
    if created and enqueue:
        priority = config.pipeline.priorities.get("extract") if config else None
        max_attempts = config.queue.default_max_attempts if config else None
        job_id = jobqueue.create_job(
            conn,
            "extract",
            ExtractPayload(article_id=article_id, url=url, source=source),
            priority=priority,
            max_attempts=max_attempts,
        )
    log_event(
        logger,
        logging.INFO,
        "article_registered",
        article_id=article_id,
        created=created,
        job_id=job_id,
        source=source,
    )
    return article_id, job_id, created


def enqueue_pending_extractions(conn, limit: int = 10, config: Config | None = None) -> int:
    """Queue extraction for pending articles that have no open extract job."""
    created = 0
    priority = config.pipeline.priorities.get("extract") if config else None
    max_attempts = config.queue.default_max_attempts if config else None
    for article in ready_articles(conn, "extract", limit):
        jobqueue.create_job(
            conn,
            "extract",
            build_payload("extract", article),
            priority=priority,
            max_attempts=max_attempts,
        )
        created += 1
    if created:
        log_event(logger, logging.INFO, "extractions_enqueued", count=created)
    return created


def load_feeds_file(path: str) -> list[FeedSpec]:
    with open(path, "r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or []
    if isinstance(data, dict):
        data = data.get("feeds") or []
    if not isinstance(data, list):
        raise ValueError(f"{path} must contain a list of feeds")
    feeds: list[FeedSpec] = []
    for index, item in enumerate(data):
        if not isinstance(item, dict) or not item.get("url"):
            raise ValueError(f"{path}: feed #{index} requires url")
        feeds.append(FeedSpec(url=str(item["url"]), source=str(item.get("source") or item["url"])))
    return feeds


def collect_feed(
    conn,
    feed_url: str,
    source: str,
    limit: int = 50,
    config: Config | None = None,
    content: bytes | None = None,
) -> FeedResult:
    """Register every entry link of one feed; ``content`` skips the download."""
    if content is None:
        timeout = config.http.timeout_seconds if config else 30
        user_agent = config.http.user_agent if config else "newsline"
        status, content, error = _fetch_url(feed_url, {"User-Agent": user_agent}, timeout)
        if error or not content:
            log_event(
                logger,
                logging.WARNING,
                "feed_fetch_failed",
                feed_url=feed_url,
                http_status=status,
                error=error,
            )
            return FeedResult(
                feed_url=feed_url,
                source=source,
                status="error",
                found_count=0,
                registered_count=0,
                duplicate_count=0,
                skipped_missing_url=0,
                error=error or "empty response",
            )

    parsed = feedparser.parse(content)
    entries = parsed.entries or []
    if parsed.bozo:
        log_event(
            logger,
            logging.WARNING,
            "feed_parse_warning",
            feed_url=feed_url,
            error=str(parsed.bozo_exception),
        )
    registered = 0
    duplicates = 0
    missing_url = 0
    for entry in entries[:limit]:
        link = _entry_link(entry)
        if not link:
            missing_url += 1
            continue
        _, _, created = register_article(
            conn, link, source, title=entry.get("title"), config=config
        )
        if created:
            registered += 1
        else:
            duplicates += 1
    log_event(
        logger,
        logging.INFO,
        "feed_collected",
        feed_url=feed_url,
        found_count=len(entries),
        registered_count=registered,
    )
    return FeedResult(
        feed_url=feed_url,
        source=source,
        status="ok",
        found_count=len(entries),
        registered_count=registered,
        duplicate_count=duplicates,
        skipped_missing_url=missing_url,
        error=None,
    )


def _entry_link(entry: Any) -> str | None:
    link = entry.get("link")
    if link:
        return str(link).strip() or None
    for item in entry.get("links") or []:
        href = item.get("href")
        if href:
            return str(href).strip()
    return None


def _fetch_url(
    url: str,
    headers: dict[str, str],
    timeout: int,
    max_retries: int = 2,
    backoff_seconds: int = 2,
) -> tuple[int | None, bytes | None, str | None]:
    attempt = 0
    while attempt <= max_retries:
        try:
            request = Request(url, headers=headers)
            with urlopen(request, timeout=timeout) as response:
                status = response.getcode()
                content = response.read()
            return status, content, None
        except HTTPError as exc:
            return exc.code, exc.read(), str(exc)
        except URLError as exc:
            if attempt >= max_retries:
                return None, None, str(exc)
            time.sleep(backoff_seconds * (attempt + 1))
            attempt += 1
        except Exception as exc:  # noqa: BLE001
            return None, None, str(exc)
    return None, None, "max_retries_exceeded"
