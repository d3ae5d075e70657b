from __future__ import annotations

import json
from typing import Any, Iterable

from .db import connect_db, get_state_db_path
from .models import Article
from .states import FAILED_STATUSES, LANE_COLUMNS, ArticleStatus, Lane, coerce_status
from .utils import json_dumps, utc_now_iso

_ARTICLE_COLUMNS = """
    id, url, source, title, status, status_job_id, translation_status,
    translation_job_id, tag_status, tag_job_id, content_key,
    translated_content_key, detected_language, error, created_at, updated_at
"""


def init_db(path: str | None = None):
    return connect_db(path or get_state_db_path())


def get_setting(conn: Any, key: str, default: object) -> object:
    cursor = conn.execute("SELECT value FROM settings WHERE key = ?", (key,))
    row = cursor.fetchone()
    if not row:
        return default
    try:
        return json.loads(row[0])
    except json.JSONDecodeError:
        return default


def set_setting(conn: Any, key: str, value: object) -> None:
    payload = json_dumps(value)
    now = utc_now_iso()
    conn.execute(
        """
        INSERT INTO settings (key, value, updated_at)
        VALUES (?, ?, ?)
        ON CONFLICT(key) DO UPDATE SET value = excluded.value, updated_at = excluded.updated_at
        """,
        (key, payload, now),
    )
    conn.commit()


def insert_article(
    conn: Any, url: str, source: str | None = None, title: str | None = None
) -> tuple[int, bool]:
    """Insert an article keyed by URL; returns ``(article_id, created)``."""
    now = utc_now_iso()
    cursor = conn.execute(
        """
        INSERT INTO articles
            (url, source, title, status, translation_status, tag_status, created_at, updated_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        ON CONFLICT(url) DO NOTHING
        RETURNING id
        """,
        (
            url,
            source,
            title,
            ArticleStatus.PENDING.value,
            ArticleStatus.PENDING.value,
            ArticleStatus.PENDING.value,
            now,
            now,
        ),
    )
    rows = cursor.fetchall()
    conn.commit()
    if rows:
        return int(rows[0][0]), True
    existing = conn.execute("SELECT id FROM articles WHERE url = ?", (url,)).fetchone()
    if not existing:
        raise RuntimeError(f"article insert for {url} returned no id")
    return int(existing[0]), False


def get_article(conn: Any, article_id: int) -> Article | None:
    row = conn.execute(
        f"SELECT {_ARTICLE_COLUMNS} FROM articles WHERE id = ?",
        (article_id,),
    ).fetchone()
    return _row_to_article(row) if row else None


def get_article_by_url(conn: Any, url: str) -> Article | None:
    row = conn.execute(
        f"SELECT {_ARTICLE_COLUMNS} FROM articles WHERE url = ?",
        (url,),
    ).fetchone()
    return _row_to_article(row) if row else None


def list_articles(conn: Any, status: str | None = None, limit: int = 50) -> list[Article]:
    if status:
        cursor = conn.execute(
            f"""
            SELECT {_ARTICLE_COLUMNS} FROM articles
            WHERE status = ?
            ORDER BY id DESC
            LIMIT ?
            """,
            (status, limit),
        )
    else:
        cursor = conn.execute(
            f"SELECT {_ARTICLE_COLUMNS} FROM articles ORDER BY id DESC LIMIT ?",
            (limit,),
        )
    return [_row_to_article(row) for row in cursor.fetchall()]


def list_articles_in_lane(
    conn: Any,
    lane: Lane,
    statuses: Iterable[ArticleStatus],
    limit: int,
    main_statuses: Iterable[ArticleStatus] | None = None,
    exclude_job_type: str | None = None,
    exclude_job_statuses: Iterable[str] | None = ("pending", "processing"),
) -> list[Article]:
    """Oldest-first articles whose lane status is one of ``statuses``.

    ``pending`` also matches a NULL lane column. ``exclude_job_type`` drops
    articles that already have a job of that type in one of
    ``exclude_job_statuses`` (any status when that is None).
    """
    column, _ = LANE_COLUMNS[lane]
    wanted = [coerce_status(status).value for status in statuses]
    clauses = [_status_in_clause(column, wanted)]
    params: list[Any] = list(wanted)
    if main_statuses is not None:
        main_wanted = [coerce_status(status).value for status in main_statuses]
        clauses.append(_status_in_clause("status", main_wanted))
        params.extend(main_wanted)
    if exclude_job_type:
        job_status_clause = ""
        job_params: list[Any] = [exclude_job_type]
        if exclude_job_statuses is not None:
            job_statuses = list(exclude_job_statuses)
            job_status_clause = (
                f" AND jobs.status IN ({', '.join('?' for _ in job_statuses)})"
            )
            job_params.extend(job_statuses)
        clauses.append(
            f"""
            NOT EXISTS (
                SELECT 1 FROM jobs
                WHERE jobs.article_id = articles.id
                  AND jobs.job_type = ?{job_status_clause}
            )
            """
        )
        params.extend(job_params)
    params.append(limit)
    cursor = conn.execute(
        f"""
        SELECT {_ARTICLE_COLUMNS} FROM articles
        WHERE {" AND ".join(clauses)}
        ORDER BY id ASC
        LIMIT ?
        """,
        tuple(params),
    )
    return [_row_to_article(row) for row in cursor.fetchall()]


def _status_in_clause(column: str, values: list[str]) -> str:
    placeholders = ", ".join("?" for _ in values)
    clause = f"{column} IN ({placeholders})"
    if ArticleStatus.PENDING.value in values:
        clause = f"({clause} OR {column} IS NULL)"
    return clause


def transition_article_status(
    conn: Any,
    article_id: int,
    lane: Lane,
    expected: ArticleStatus | Iterable[ArticleStatus] | None,
    target: ArticleStatus,
    job_id: str | None = None,
    error: str | None = None,
    expected_job_id: str | None = None,
    expected_updated_at: str | None = None,
) -> bool:
    """Compare-and-swap a lane status; returns False when the row moved on.

    ``expected`` may be a single status or a collection; ``pending`` (or
    None) also matches a NULL column. ``expected_job_id`` additionally
    requires the lane holder to match, ``expected_updated_at`` the row
    version.

    The shared ``error`` column is written when ``error`` is given. Otherwise
    it is cleared unless another lane still sits in a failed status.
    """
    status_column, holder_column = LANE_COLUMNS[lane]
    if expected is None or isinstance(expected, (str, ArticleStatus)):
        expected_values = [coerce_status(expected).value]
    else:
        expected_values = [coerce_status(status).value for status in expected]

    assignments = [f"{status_column} = ?", f"{holder_column} = ?"]
    params: list[Any] = [coerce_status(target).value, job_id]
    if error is not None:
        assignments.append("error = ?")
        params.append(error)
    else:
        failed = sorted(status.value for status in FAILED_STATUSES)
        placeholders = ", ".join("?" for _ in failed)
        other_columns = [LANE_COLUMNS[other][0] for other in Lane if other is not lane]
        still_failed = " OR ".join(f"{column} IN ({placeholders})" for column in other_columns)
        assignments.append(f"error = CASE WHEN {still_failed} THEN error ELSE NULL END")
        for _ in other_columns:
            params.extend(failed)
    assignments.append("updated_at = ?")
    params.extend([utc_now_iso(), article_id])

    where = [_status_in_clause(status_column, expected_values)]
    params.extend(expected_values)
    if expected_job_id is not None:
        where.append(f"{holder_column} = ?")
        params.append(expected_job_id)
    if expected_updated_at is not None:
        where.append("updated_at = ?")
        params.append(expected_updated_at)
    cursor = conn.execute(
        f"""
        UPDATE articles
        SET {", ".join(assignments)}
        WHERE id = ? AND {" AND ".join(where)}
        """,
        tuple(params),
    )
    conn.commit()
    return cursor.rowcount == 1


def set_article_content(
    conn: Any, article_id: int, content_key: str, title: str | None = None
) -> None:
    conn.execute(
        """
        UPDATE articles
        SET content_key = ?, title = COALESCE(?, title), updated_at = ?
        WHERE id = ?
        """,
        (content_key, title, utc_now_iso(), article_id),
    )
    conn.commit()


def set_article_translation(
    conn: Any,
    article_id: int,
    detected_language: str | None,
    translated_content_key: str | None,
) -> None:
    conn.execute(
        """
        UPDATE articles
        SET detected_language = ?, translated_content_key = ?, updated_at = ?
        WHERE id = ?
        """,
        (detected_language, translated_content_key, utc_now_iso(), article_id),
    )
    conn.commit()


def replace_article_vectors(
    conn: Any, article_id: int, chunks: Iterable[tuple[str, str]]
) -> int:
    """Replace stored chunks with ``(embedding_id, content_chunk)`` pairs."""
    now = utc_now_iso()
    rows = [
        (article_id, index, embedding_id, chunk, now)
        for index, (embedding_id, chunk) in enumerate(chunks)
    ]
    conn.execute("DELETE FROM article_vectors WHERE article_id = ?", (article_id,))
    if rows:
        conn.executemany(
            """
            INSERT INTO article_vectors
                (article_id, chunk_index, embedding_id, content_chunk, created_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            rows,
        )
    conn.commit()
    return len(rows)


def count_article_vectors(conn: Any, article_id: int) -> int:
    row = conn.execute(
        "SELECT COUNT(*) FROM article_vectors WHERE article_id = ?",
        (article_id,),
    ).fetchone()
    return int(row[0]) if row else 0


def upsert_article_summary(
    conn: Any, article_id: int, summary: str, model: str | None = None
) -> None:
    conn.execute(
        """
        INSERT INTO article_summaries (article_id, summary, model, created_at)
        VALUES (?, ?, ?, ?)
        ON CONFLICT(article_id) DO UPDATE SET
            summary = excluded.summary,
            model = excluded.model,
            created_at = excluded.created_at
        """,
        (article_id, summary, model, utc_now_iso()),
    )
    conn.commit()


def get_article_summary(conn: Any, article_id: int) -> str | None:
    row = conn.execute(
        "SELECT summary FROM article_summaries WHERE article_id = ?",
        (article_id,),
    ).fetchone()
    return row[0] if row else None


def replace_article_tags(conn: Any, article_id: int, tags: Iterable[str]) -> list[str]:
    unique = sorted({tag for tag in tags if tag})
    conn.execute("DELETE FROM article_tags WHERE article_id = ?", (article_id,))
    if unique:
        conn.executemany(
            "INSERT INTO article_tags (article_id, tag) VALUES (?, ?)",
            [(article_id, tag) for tag in unique],
        )
    conn.commit()
    return unique


def get_article_tags(conn: Any, article_id: int) -> list[str]:
    rows = conn.execute(
        "SELECT tag FROM article_tags WHERE article_id = ? ORDER BY tag",
        (article_id,),
    ).fetchall()
    return [row[0] for row in rows]


def count_articles_by_status(conn: Any, lane: Lane = Lane.MAIN) -> dict[str, int]:
    column, _ = LANE_COLUMNS[lane]
    rows = conn.execute(
        f"""
        SELECT COALESCE({column}, 'pending') AS lane_status, COUNT(*)
        FROM articles
        GROUP BY COALESCE({column}, 'pending')
        """
    ).fetchall()
    return {row[0]: int(row[1]) for row in rows}


def _row_to_article(row: tuple) -> Article:
    (
        article_id,
        url,
        source,
        title,
        status,
        status_job_id,
        translation_status,
        translation_job_id,
        tag_status,
        tag_job_id,
        content_key,
        translated_content_key,
        detected_language,
        error,
        created_at,
        updated_at,
    ) = row
    return Article(
        id=int(article_id),
        url=url,
        source=source,
        title=title,
        status=status,
        status_job_id=status_job_id,
        translation_status=translation_status,
        translation_job_id=translation_job_id,
        tag_status=tag_status,
        tag_job_id=tag_job_id,
        content_key=content_key,
        translated_content_key=translated_content_key,
        detected_language=detected_language,
        error=error,
        created_at=created_at,
        updated_at=updated_at,
    )
