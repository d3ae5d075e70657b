from __future__ import annotations

import logging
import sqlite3
from typing import Callable

from .utils import utc_now_iso

Migration = Callable[[sqlite3.Connection], None]


def apply_migrations(conn: sqlite3.Connection) -> None:
    # Schema changes go through new numbered migrations only.
    logger = logging.getLogger("newsline.migrations")
    conn.execute("BEGIN IMMEDIATE")
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
    try:
        for version, migration in _get_migrations():
            if version in applied:
                logger.debug("migration_skipped version=%s", version)
                continue
            migration(conn)
            conn.execute(
                "INSERT OR IGNORE INTO schema_migrations (version, applied_at) VALUES (?, ?)",
                (version, utc_now_iso()),
            )
            logger.info("migration_applied version=%s", version)
        conn.commit()
    except Exception:
        conn.rollback()
        raise


def _migration_initial_schema(conn: sqlite3.Connection) -> None:
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
            id INTEGER PRIMARY KEY AUTOINCREMENT,
            url TEXT NOT NULL UNIQUE,
            source TEXT NULL,
            title TEXT NULL,
            status TEXT NULL,
            status_job_id TEXT NULL,
            content_key TEXT NULL,
            error TEXT NULL,
            created_at TEXT NOT NULL,
            updated_at TEXT NOT NULL
        )
        """
    )
    conn.execute("CREATE INDEX IF NOT EXISTS idx_articles_status ON articles(status)")


def _migration_jobs_table(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS jobs (
            id TEXT PRIMARY KEY,
            job_type TEXT NOT NULL,
            payload_json TEXT NOT NULL,
            article_id INTEGER NULL,
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
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_jobs_lease ON jobs(status, started_at)"
    )
    conn.execute(
        "CREATE INDEX IF NOT EXISTS idx_jobs_article ON jobs(article_id, job_type)"
    )


def _migration_stage_outputs(conn: sqlite3.Connection) -> None:
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS article_vectors (
            article_id INTEGER NOT NULL REFERENCES articles(id),
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
            article_id INTEGER PRIMARY KEY REFERENCES articles(id),
            summary TEXT NOT NULL,
            model TEXT NULL,
            created_at TEXT NOT NULL
        )
        """
    )
    conn.execute(
        """
        CREATE TABLE IF NOT EXISTS article_tags (
            article_id INTEGER NOT NULL REFERENCES articles(id),
            tag TEXT NOT NULL,
            PRIMARY KEY (article_id, tag)
        )
        """
    )


def _migration_article_lanes(conn: sqlite3.Connection) -> None:
    columns = _table_columns(conn, "articles")
    additions = [
        ("translation_status", "TEXT NULL"),
        ("translation_job_id", "TEXT NULL"),
        ("translated_content_key", "TEXT NULL"),
        ("detected_language", "TEXT NULL"),
        ("tag_status", "TEXT NULL"),
        ("tag_job_id", "TEXT NULL"),
    ]
    for name, ddl in additions:
        if name in columns:
            continue
        conn.execute(f"ALTER TABLE articles ADD COLUMN {name} {ddl}")


def _table_columns(conn: sqlite3.Connection, table: str) -> set[str]:
    return {row[1] for row in conn.execute(f"PRAGMA table_info({table})").fetchall()}


def _get_migrations() -> list[tuple[str, Migration]]:
    return [
        ("001_initial_schema", _migration_initial_schema),
        ("002_jobs_table", _migration_jobs_table),
        ("003_stage_outputs", _migration_stage_outputs),
        ("004_article_lanes", _migration_article_lanes),
    ]
