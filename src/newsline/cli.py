from __future__ import annotations

import argparse
import json
import logging

import uvicorn

from . import jobqueue
from .config import (
    ConfigError,
    bootstrap_runtime_config,
    get_runtime_config,
    load_runtime_config,
    update_runtime_config,
)
from .ingest import collect_feed, enqueue_pending_extractions, load_feeds_file, register_article
from .models import JOB_STATUSES, JOB_TYPES, PayloadError
from .states import Lane
from .storage import count_articles_by_status, init_db, list_articles
from .utils import configure_logging, log_event


def _setup_logging() -> logging.Logger:
    return configure_logging("newsline")


def _open(logger: logging.Logger):
    conn = init_db()
    try:
        bootstrap_runtime_config(conn)
        config = load_runtime_config(conn)
    except ConfigError as exc:
        conn.close()
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return None, None
    return conn, config


def _cmd_db_migrate(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(logger)
    if conn is None:
        return 1
    conn.close()
    log_event(logger, logging.INFO, "db_migrated", path=config.paths.state_db)
    return 0


def _cmd_articles_add(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(logger)
    if conn is None:
        return 1
    try:
        article_id, job_id, created = register_article(
            conn,
            args.url,
            args.source,
            title=args.title,
            enqueue=not args.no_enqueue,
            config=config,
        )
    finally:
        conn.close()
    print(json.dumps({"article_id": article_id, "job_id": job_id, "created": created}))
    return 0


def _cmd_articles_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open(logger)
    if conn is None:
        return 1
    try:
        articles = list_articles(conn, limit=args.limit)
    finally:
        conn.close()
    for article in articles:
        log_event(
            logger,
            logging.INFO,
            "article",
            article_id=article.id,
            url=article.url,
            status=article.status,
            translation_status=article.translation_status,
            tag_status=article.tag_status,
            error=article.error,
        )
    return 0


def _cmd_articles_stats(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open(logger)
    if conn is None:
        return 1
    try:
        counts = {lane.value: count_articles_by_status(conn, lane) for lane in Lane}
    finally:
        conn.close()
    print(json.dumps(counts, indent=2, sort_keys=True))
    return 0


def _cmd_feeds_collect(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        feeds = load_feeds_file(args.path)
    except (OSError, ValueError) as exc:
        log_event(logger, logging.ERROR, "feeds_file_error", path=args.path, error=str(exc))
        return 1
    conn, config = _open(logger)
    if conn is None:
        return 1
    failures = 0
    try:
        for feed in feeds:
            result = collect_feed(conn, feed.url, feed.source, limit=args.limit, config=config)
            if result.status != "ok":
                failures += 1
    finally:
        conn.close()
    return 1 if failures else 0


def _cmd_jobs_enqueue(args: argparse.Namespace, logger: logging.Logger) -> int:
    try:
        payload = json.loads(args.payload)
    except json.JSONDecodeError as exc:
        log_event(logger, logging.ERROR, "payload_invalid", error=str(exc))
        return 1
    conn, config = _open(logger)
    if conn is None:
        return 1
    try:
        priority = args.priority
        if priority is None:
            priority = config.pipeline.priorities.get(args.job_type)
        job_id = jobqueue.create_job(
            conn,
            args.job_type,
            payload,
            priority=priority,
            max_attempts=args.max_attempts or config.queue.default_max_attempts,
        )
    except PayloadError as exc:
        log_event(logger, logging.ERROR, "payload_invalid", error=str(exc))
        return 1
    finally:
        conn.close()
    log_event(logger, logging.INFO, "job_enqueued", job_id=job_id, job_type=args.job_type)
    return 0


def _cmd_jobs_enqueue_extractions(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(logger)
    if conn is None:
        return 1
    try:
        created = enqueue_pending_extractions(conn, limit=args.limit, config=config)
    finally:
        conn.close()
    print(json.dumps({"created": created}))
    return 0


def _cmd_jobs_list(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open(logger)
    if conn is None:
        return 1
    try:
        jobs = jobqueue.list_jobs(conn, status=args.status, job_type=args.job_type, limit=args.limit)
    finally:
        conn.close()
    for job in jobs:
        log_event(
            logger,
            logging.INFO,
            "job",
            job_id=job.id,
            job_type=job.job_type,
            status=job.status,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            created_at=job.created_at,
            started_at=job.started_at,
            completed_at=job.completed_at,
            error=job.error,
        )
    return 0


def _cmd_jobs_retry(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open(logger)
    if conn is None:
        return 1
    try:
        ok = jobqueue.retry_job(conn, args.job_id)
    finally:
        conn.close()
    if not ok:
        log_event(logger, logging.ERROR, "job_not_found", job_id=args.job_id)
        return 1
    log_event(logger, logging.INFO, "job_retried", job_id=args.job_id)
    return 0


def _cmd_jobs_cleanup(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, config = _open(logger)
    if conn is None:
        return 1
    try:
        reset = jobqueue.cleanup_stale_jobs(conn, config.queue.lease_seconds)
    finally:
        conn.close()
    log_event(logger, logging.INFO, "jobs_cleanup", reset=reset)
    return 0


def _cmd_jobs_stats(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn, _ = _open(logger)
    if conn is None:
        return 1
    try:
        stats = jobqueue.get_queue_stats(conn)
    finally:
        conn.close()
    print(json.dumps(stats, indent=2, sort_keys=True))
    return 0


def _cmd_config_show(args: argparse.Namespace, logger: logging.Logger) -> int:
    conn = init_db()
    try:
        cfg = get_runtime_config(conn)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    finally:
        conn.close()
    print(json.dumps(cfg, indent=2, sort_keys=True))
    return 0


def _cmd_config_set(args: argparse.Namespace, logger: logging.Logger) -> int:
    section, _, key = args.key.partition(".")
    if not key:
        log_event(logger, logging.ERROR, "config_key_invalid", key=args.key)
        return 1
    try:
        value = json.loads(args.value)
    except json.JSONDecodeError:
        value = args.value
    conn = init_db()
    try:
        update_runtime_config(conn, section, **{key: value})
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    finally:
        conn.close()
    log_event(logger, logging.INFO, "config_updated", key=args.key)
    return 0


def _cmd_serve(args: argparse.Namespace, logger: logging.Logger) -> int:
    if args.service == "worker":
        if not args.stage:
            log_event(logger, logging.ERROR, "serve_stage_required")
            return 2
        from .worker_api import create_worker_app

        app = create_worker_app(args.stage)
    elif args.service == "queue":
        from .queue_api import app
    else:
        from .orchestrator_api import app
    log_event(logger, logging.INFO, "serve_start", service=args.service, port=args.port)
    uvicorn.run(app, host=args.host, port=args.port, proxy_headers=True, log_level="info")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="newsline")
    subparsers = parser.add_subparsers(dest="command", required=True)

    db_parser = subparsers.add_parser("db", help="Database maintenance")
    db_subparsers = db_parser.add_subparsers(dest="db_command", required=True)
    db_migrate = db_subparsers.add_parser("migrate", help="Apply migrations and seed config")
    db_migrate.set_defaults(func=_cmd_db_migrate)

    articles_parser = subparsers.add_parser("articles", help="Article commands")
    articles_subparsers = articles_parser.add_subparsers(dest="articles_command", required=True)

    articles_add = articles_subparsers.add_parser("add", help="Register an article URL")
    articles_add.add_argument("url", help="Article URL")
    articles_add.add_argument("--source", help="Source name")
    articles_add.add_argument("--title", help="Title hint")
    articles_add.add_argument(
        "--no-enqueue", action="store_true", help="Register without queueing extraction"
    )
    articles_add.set_defaults(func=_cmd_articles_add)

    articles_list = articles_subparsers.add_parser("list", help="List recent articles")
    articles_list.add_argument("--limit", type=int, default=20)
    articles_list.set_defaults(func=_cmd_articles_list)

    articles_stats = articles_subparsers.add_parser("stats", help="Article counts per lane")
    articles_stats.set_defaults(func=_cmd_articles_stats)

    feeds_parser = subparsers.add_parser("feeds", help="Feed collection")
    feeds_subparsers = feeds_parser.add_subparsers(dest="feeds_command", required=True)
    feeds_collect = feeds_subparsers.add_parser("collect", help="Register entries from feeds YAML")
    feeds_collect.add_argument("path", help="Path to feeds YAML file")
    feeds_collect.add_argument("--limit", type=int, default=50, help="Entries per feed")
    feeds_collect.set_defaults(func=_cmd_feeds_collect)

    jobs_parser = subparsers.add_parser("jobs", help="Job queue commands")
    jobs_subparsers = jobs_parser.add_subparsers(dest="jobs_command", required=True)

    jobs_enqueue = jobs_subparsers.add_parser("enqueue", help="Enqueue a job")
    jobs_enqueue.add_argument("job_type", choices=list(JOB_TYPES))
    jobs_enqueue.add_argument("payload", help="JSON payload")
    jobs_enqueue.add_argument("--priority", type=int)
    jobs_enqueue.add_argument("--max-attempts", type=int)
    jobs_enqueue.set_defaults(func=_cmd_jobs_enqueue)

    jobs_extractions = jobs_subparsers.add_parser(
        "enqueue-extractions", help="Queue extraction for pending articles"
    )
    jobs_extractions.add_argument("--limit", type=int, default=10)
    jobs_extractions.set_defaults(func=_cmd_jobs_enqueue_extractions)

    jobs_list = jobs_subparsers.add_parser("list", help="List recent jobs")
    jobs_list.add_argument("--status", choices=list(JOB_STATUSES))
    jobs_list.add_argument("--type", dest="job_type")
    jobs_list.add_argument("--limit", type=int, default=20, help="Number of jobs to show")
    jobs_list.set_defaults(func=_cmd_jobs_list)

    jobs_retry = jobs_subparsers.add_parser("retry", help="Reset a job to pending")
    jobs_retry.add_argument("job_id")
    jobs_retry.set_defaults(func=_cmd_jobs_retry)

    jobs_cleanup = jobs_subparsers.add_parser("cleanup", help="Reclaim stale processing jobs")
    jobs_cleanup.set_defaults(func=_cmd_jobs_cleanup)

    jobs_stats = jobs_subparsers.add_parser("stats", help="Queue statistics")
    jobs_stats.set_defaults(func=_cmd_jobs_stats)

    config_parser = subparsers.add_parser("config", help="Runtime config")
    config_subparsers = config_parser.add_subparsers(dest="config_command", required=True)
    config_show = config_subparsers.add_parser("show", help="Print runtime config")
    config_show.set_defaults(func=_cmd_config_show)
    config_set = config_subparsers.add_parser("set", help="Set section.key to a JSON value")
    config_set.add_argument("key", help="section.key, e.g. pipeline.chain_tag")
    config_set.add_argument("value", help="JSON value; bare strings are accepted")
    config_set.set_defaults(func=_cmd_config_set)

    serve_parser = subparsers.add_parser("serve", help="Run an HTTP service")
    serve_parser.add_argument("service", choices=["queue", "worker", "orchestrator"])
    serve_parser.add_argument("--stage", choices=list(JOB_TYPES), help="Stage for worker service")
    serve_parser.add_argument("--host", default="0.0.0.0")
    serve_parser.add_argument("--port", type=int, default=8000)
    serve_parser.set_defaults(func=_cmd_serve)

    return parser


def main(argv: list[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    logger = _setup_logging()
    return args.func(args, logger)
