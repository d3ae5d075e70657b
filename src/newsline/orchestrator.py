from __future__ import annotations

import argparse
import json
import logging
import os
import urllib.error
import urllib.request
from typing import Any, Callable, Iterable

from . import jobqueue, storage
from .config import Config, ConfigError, load_runtime_config
from .content_store import FileContentStore
from .fsinit import prepare_content_store
from .ingest import enqueue_pending_extractions
from .models import JOB_TYPES
from .queue_client import LocalQueue
from .states import LANE_RANKS, Lane
from .utils import configure_logging, error_summary, log_event, utc_now_iso, utc_today
from .worker import StageWorker, build_payload, ready_articles, successors

PIPELINE_STEPS = ("cleanup", "extract", "vectorize", "summarize", "translate", "tag", "retry", "repair")

WorkerFactory = Callable[[str], StageWorker]

logger = logging.getLogger("newsline.orchestrator")


def local_worker_factory(
    conn,
    config: Config,
    content_store: FileContentStore | None = None,
) -> WorkerFactory:
    """Build in-process stage workers that share ``conn`` and one queue."""
    store = content_store or prepare_content_store(
        config.paths.data_dir, config.paths.content_dir
    )
    queue = LocalQueue(conn, config)
    workers: dict[str, StageWorker] = {}

    def factory(stage: str) -> StageWorker:
        if stage not in workers:
            workers[stage] = StageWorker(stage, queue, conn, store, config)
        return workers[stage]

    return factory


def sweep_failed_jobs(
    conn,
    config: Config | None = None,
    worker_factory: WorkerFactory | None = None,
) -> dict[str, int]:
    """Give recently failed jobs that still have attempts left another run.

    Each job is moved ``failed -> processing`` with a conditional update and
    re-run in-process, so its attempts advance through the normal
    complete/fail path. No new job is created.
    """
    config = config or load_runtime_config(conn)
    factory = worker_factory or local_worker_factory(conn, config)
    jobs = jobqueue.list_sweepable_failed_jobs(
        conn, config.retry_sweep.window_hours, config.retry_sweep.limit
    )
    swept = 0
    succeeded = 0
    failed = 0
    for job in jobs:
        worker = factory(job.job_type)
        claimed = jobqueue.claim_failed_job(conn, job.id, worker.worker_id)
        if claimed is None:
            continue
        swept += 1
        log_event(
            logger,
            logging.INFO,
            "sweep_retry",
            job_id=job.id,
            job_type=job.job_type,
            attempts=claimed.attempts,
        )
        if worker.run_job(claimed):
            succeeded += 1
        else:
            failed += 1
    return {"swept": swept, "succeeded": succeeded, "failed": failed}


def repair_chain(conn, config: Config | None = None, queue=None, limit: int = 100) -> dict[str, Any]:
    """Create successor jobs that a finished stage failed to emit."""
    config = config or load_runtime_config(conn)
    queue = queue or LocalQueue(conn, config)
    created: list[str] = []
    for stage in JOB_TYPES:
        for next_stage in successors(stage, config.pipeline):
            articles = ready_articles(conn, next_stage, limit, exclude_job_statuses=None)
            for article in articles:
                job_id = queue.create(
                    next_stage,
                    build_payload(next_stage, article),
                    priority=config.pipeline.priorities.get(next_stage),
                )
                created.append(job_id)
                log_event(
                    logger,
                    logging.INFO,
                    "chain_repaired",
                    stage=stage,
                    next_stage=next_stage,
                    article_id=article.id,
                    job_id=job_id,
                )
    return {"created": len(created), "job_ids": created}


def run_pipeline(
    conn,
    steps: str | Iterable[str] = "all",
    config: Config | None = None,
    worker_factory: WorkerFactory | None = None,
) -> dict[str, Any]:
    config = config or load_runtime_config(conn)
    selected = _select_steps(steps)
    factory = worker_factory
    result: dict[str, Any] = {
        "timestamp": utc_now_iso(),
        "steps_executed": [],
        "errors": [],
        "summary": {},
    }
    for step in selected:
        try:
            if step == "cleanup":
                outcome: Any = {"reset": jobqueue.cleanup_stale_jobs(conn, config.queue.lease_seconds)}
            elif step == "retry":
                factory = factory or local_worker_factory(conn, config)
                outcome = sweep_failed_jobs(conn, config, factory)
            elif step == "repair":
                outcome = repair_chain(conn, config)
            else:
                if step == "extract":
                    result["summary"]["extract_enqueued"] = enqueue_pending_extractions(
                        conn, config.workers.direct_scan_limit, config=config
                    )
                url = config.workers.urls.get(step)
                if url:
                    outcome = _post_process(url, config.http.timeout_seconds)
                else:
                    factory = factory or local_worker_factory(conn, config)
                    outcome = factory(step).process()
        except Exception as exc:  # noqa: BLE001
            error = error_summary(exc)
            log_event(logger, logging.ERROR, "pipeline_step_failed", step=step, error=error)
            result["errors"].append({"step": step, "error": error})
            continue
        result["steps_executed"].append(step)
        result["summary"][step] = outcome
    log_event(
        logger,
        logging.INFO,
        "pipeline_run",
        steps=len(result["steps_executed"]),
        errors=len(result["errors"]),
    )
    return result


def pipeline_status(conn) -> dict[str, Any]:
    counts = storage.count_articles_by_status(conn, Lane.MAIN)
    total = sum(counts.values())
    ranks = LANE_RANKS[Lane.MAIN]

    def reached(status: str) -> int:
        floor = ranks[status]
        return sum(count for name, count in counts.items() if ranks.get(name, -1) >= floor)

    extracted = reached("extracted")
    vectorized = reached("vectorized")
    summarized = reached("summarized")
    today = utc_today()
    rows = conn.execute(
        """
        SELECT job_type, status, COUNT(*) FROM jobs
        WHERE substr(created_at, 1, 10) = ?
        GROUP BY job_type, status
        """,
        (today,),
    ).fetchall()
    return {
        "timestamp": utc_now_iso(),
        "pipeline_health": {
            "total_articles": total,
            "extracted_articles": extracted,
            "vectorized_articles": vectorized,
            "summarized_articles": summarized,
            "by_status": counts,
            "translation": storage.count_articles_by_status(conn, Lane.TRANSLATION),
            "tagging": storage.count_articles_by_status(conn, Lane.TAGGING),
        },
        "completion_rates": {
            "extraction_rate": _rate(extracted, total),
            "vectorization_rate": _rate(vectorized, extracted),
            "summarization_rate": _rate(summarized, vectorized),
        },
        "queue_status": [
            {"type": row[0], "status": row[1], "count": int(row[2])} for row in rows
        ],
    }


def _rate(part: int, whole: int) -> str:
    if whole <= 0:
        return "0%"
    return f"{part / whole * 100:.1f}%"


def _select_steps(steps: str | Iterable[str]) -> list[str]:
    if isinstance(steps, str):
        if steps.strip() in ("", "all"):
            return list(PIPELINE_STEPS)
        wanted = {item.strip() for item in steps.split(",") if item.strip()}
    else:
        wanted = {str(item).strip() for item in steps}
    unknown = wanted - set(PIPELINE_STEPS)
    if unknown:
        raise ValueError(f"unknown pipeline steps: {', '.join(sorted(unknown))}")
    return [step for step in PIPELINE_STEPS if step in wanted]


def _post_process(base_url: str, timeout_seconds: int) -> dict[str, Any]:
    request = urllib.request.Request(
        base_url.rstrip("/") + "/process", data=b"{}", method="POST"
    )
    request.add_header("Content-Type", "application/json")
    token = os.environ.get("NL_API_TOKEN")
    if token:
        request.add_header("X-Api-Token", token)
    try:
        with urllib.request.urlopen(request, timeout=timeout_seconds) as response:
            raw = response.read().decode("utf-8")
    except urllib.error.HTTPError as exc:
        raw = exc.read().decode("utf-8", errors="ignore")
        raise RuntimeError(f"http_error {exc.code}: {raw[:500]}") from exc
    except urllib.error.URLError as exc:
        raise RuntimeError(f"network_error: {exc}") from exc
    return json.loads(raw)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="newsline-orchestrator")
    sub = parser.add_subparsers(dest="command", required=True)

    run_parser = sub.add_parser("run", help="Run the pipeline once")
    run_parser.add_argument("--steps", default="all", help="Comma separated steps or 'all'")

    sub.add_parser("sweep", help="Retry recently failed jobs")
    sub.add_parser("repair", help="Create missing successor jobs")
    sub.add_parser("status", help="Show pipeline status")
    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    log = configure_logging("newsline.orchestrator")
    conn = storage.init_db()
    try:
        config = load_runtime_config(conn)
    except ConfigError as exc:
        log_event(log, logging.ERROR, "config_error", error=str(exc))
        return 1
    try:
        if args.command == "run":
            try:
                result = run_pipeline(conn, args.steps, config=config)
            except ValueError as exc:
                log_event(log, logging.ERROR, "pipeline_steps_invalid", error=str(exc))
                return 1
            print(json.dumps(result, indent=2, sort_keys=True))
            return 1 if result["errors"] else 0
        if args.command == "sweep":
            print(json.dumps(sweep_failed_jobs(conn, config), sort_keys=True))
            return 0
        if args.command == "repair":
            print(json.dumps(repair_chain(conn, config), sort_keys=True))
            return 0
        if args.command == "status":
            print(json.dumps(pipeline_status(conn), indent=2, sort_keys=True))
            return 0
    finally:
        conn.close()
    return 1
