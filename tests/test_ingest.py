import pytest

from newsline import jobqueue, storage
from newsline.config import load_runtime_config
from newsline.ingest import (
    collect_feed,
    enqueue_pending_extractions,
    load_feeds_file,
    register_article,
)

RSS = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0">
  <channel>
    <title>Example Wire</title>
    <link>https://wire.example.com/</link>
    <description>Test feed</description>
    <item>
      <title>First story</title>
      <link>https://wire.example.com/first</link>
    </item>
    <item>
      <title>Second story</title>
      <link>https://wire.example.com/second</link>
    </item>
    <item>
      <title>No link here</title>
    </item>
  </channel>
</rss>
"""


def test_register_article_is_idempotent_per_url(conn):
    config = load_runtime_config(conn)
    article_id, job_id, created = register_article(
        conn, "https://example.com/a", "example", title="A", config=config
    )
    assert created is True
    job = jobqueue.get_job(conn, job_id)
    assert job.job_type == "extract"
    assert job.max_attempts == config.queue.default_max_attempts

    same_id, second_job, created_again = register_article(conn, "https://example.com/a", "example")
    assert same_id == article_id
    assert second_job is None
    assert created_again is False
    assert len(jobqueue.list_jobs(conn)) == 1

    article = storage.get_article(conn, article_id)
    assert article.status == "pending"
    assert article.translation_status == "pending"
    assert article.tag_status == "pending"


def test_enqueue_pending_extractions_skips_open_jobs(conn):
    register_article(conn, "https://example.com/a", "example")
    storage.insert_article(conn, "https://example.com/b", "example")
    storage.insert_article(conn, "https://example.com/c", "example")

    assert enqueue_pending_extractions(conn, limit=10) == 2
    assert enqueue_pending_extractions(conn, limit=10) == 0
    assert len(jobqueue.list_jobs(conn, job_type="extract")) == 3


def test_collect_feed_registers_entries(conn):
    result = collect_feed(conn, "https://wire.example.com/rss", "wire", content=RSS)

    assert result.status == "ok"
    assert result.found_count == 3
    assert result.registered_count == 2
    assert result.skipped_missing_url == 1
    article = storage.get_article_by_url(conn, "https://wire.example.com/first")
    assert article.title == "First story"
    assert article.source == "wire"

    again = collect_feed(conn, "https://wire.example.com/rss", "wire", content=RSS)
    assert again.registered_count == 0
    assert again.duplicate_count == 2


def test_load_feeds_file(tmp_path):
    path = tmp_path / "feeds.yml"
    path.write_text(
        "feeds:\n"
        "  - url: https://wire.example.com/rss\n"
        "    source: wire\n"
        "  - url: https://other.example.com/atom\n",
        encoding="utf-8",
    )
    feeds = load_feeds_file(str(path))
    assert [(feed.url, feed.source) for feed in feeds] == [
        ("https://wire.example.com/rss", "wire"),
        ("https://other.example.com/atom", "https://other.example.com/atom"),
    ]


def test_load_feeds_file_requires_urls(tmp_path):
    path = tmp_path / "feeds.yml"
    path.write_text("- source: wire\n", encoding="utf-8")
    with pytest.raises(ValueError):
        load_feeds_file(str(path))
