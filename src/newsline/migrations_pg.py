from __future__ import annotations

import logging

from .utils import utc_now_iso


def apply_migrations_pg(conn) -> None:
    logger = logging.getLogger("newsline.migrations")
    conn.execute("BEGIN")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS schema_migrations (
            version TEXT PRIMARY KEY,
            applied_at TEXT NOT NULL
        )
        """
    )
    applied = {
        row[0]
        for row in conn.execute("SELECT version FROM schema_migrations").fetchall()
    }
    if "pg_bootstrap_001" in applied:
        conn.commit()
        return
    _bootstrap_schema(conn)
    conn.execute(
        "INSERT INTO schema_migrations (version, applied_at) VALUES (?, ?)",
        ("pg_bootstrap_001", utc_now_iso()),
    )
    conn.commit()
    logger.info("migration_applied version=pg_bootstrap_001")


def _bootstrap_schema(conn) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS settings (
            key TEXT PRIMARY KEY,
            value TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS articles (
            id BIGSERIAL PRIMARY KEY,
            url TEXT NOT NULL UNIQUE,
            source TEXT NULL,
            title TEXT NULL,
            status TEXT NULL,
            status_job_id TEXT NULL,
            translation_status TEXT NULL,
            translation_job_id TEXT NULL,
            translated_content_key TEXT NULL,
            detected_language TEXT NULL,
            tag_status TEXT NULL,
            tag_job_id TEXT NULL,
            content_key TEXT NULL,
            error TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_articles_status ON articles(status)")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS jobs (
            id TEXT PRIMARY KEY,
            job_type TEXT NOT NULL,
            payload_json TEXT NOT NULL,
            article_id BIGINT NULL,
            status TEXT NOT NULL,
            attempts INTEGER NOT NULL DEFAULT 0,
            max_attempts INTEGER NOT NULL DEFAULT 3,
            priority INTEGER NOT NULL DEFAULT 1,
            created_at TEXT NOT NULL,
            started_at TEXT NULL,
            completed_at TEXT NULL,
            assigned_worker TEXT NULL,
            error TEXT NULL,
            updated_at TEXT NOT NULL,
            CHECK (attempts >= 0 AND attempts <= max_attempts)
        )
        """
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_jobs_claim ON jobs(job_type, status, priority, created_at)"
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_lease ON jobs(status, started_at)")
    conn.execute("CREATE INDEX IF NOT EXISTS idx_jobs_article ON jobs(article_id, job_type)")
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS article_vectors (
            article_id BIGINT NOT NULL REFERENCES articles(id),
            chunk_index INTEGER NOT NULL,
            embedding_id TEXT NOT NULL,
            content_chunk TEXT NOT NULL,
            created_at TEXT NOT NULL,
            PRIMARY KEY (article_id, chunk_index)
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS article_summaries (
            article_id BIGINT PRIMARY KEY REFERENCES articles(id),
            summary TEXT NOT NULL,
            model TEXT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS article_tags (
            article_id BIGINT NOT NULL REFERENCES articles(id),
            tag TEXT NOT NULL,
            PRIMARY KEY (article_id, tag)
        )
        """
    )
