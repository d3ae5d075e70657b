from __future__ import annotations

import argparse
import logging
import os
import time
from concurrent.futures import FIRST_COMPLETED, ThreadPoolExecutor, wait
from dataclasses import dataclass
from typing import Any, Callable

from . import storage
from .config import Config, ConfigError, PipelineConfig, load_runtime_config
from .content_store import (
    ContentMissingError,
    FileContentStore,
    content_key,
    summary_key,
    tags_key,
    translation_key,
    vectors_key,
)
from .fsinit import prepare_content_store
from .jobqueue import new_worker_id
from .models import (
    JOB_TYPES,
    Article,
    ExtractPayload,
    Job,
    JobPayload,
    PayloadError,
    SummarizePayload,
    TagPayload,
    TranslatePayload,
    VectorizePayload,
    parse_payload,
)
from .pipelines.content_fetch import fetch_article_content
from .pipelines.summarize_llm import summarize_with_llm
from .pipelines.tag_llm import tag_with_llm
from .pipelines.translate_llm import translate_with_llm
from .pipelines.vectorize import vectorize_content
from .queue_client import build_queue
from .states import (
    LANE_RANKS,
    STAGE_STATES,
    Decision,
    InvalidTransition,
    Lane,
    decide,
    lane_holder,
    lane_status,
    rank,
    validate_transition,
)
from .tagger import normalize_tags
from .utils import configure_logging, error_summary, log_event, utc_now_iso, utc_now_iso_offset


class PermanentStageError(RuntimeError):
    """Failure that retrying the same input cannot fix."""


class ArticleNotFoundError(ValueError):
    def __init__(self, article_id: int) -> None:
        super().__init__("article_not_found")
        self.article_id = article_id


class StageNotReadyError(RuntimeError):
    pass


PERMANENT_ERRORS = (PermanentStageError, PayloadError, ArticleNotFoundError, InvalidTransition)


@dataclass(frozen=True)
class StageRequest:
    article: Article
    payload: JobPayload
    document: dict[str, Any] | None
    summary: str | None
    config: Config
    logger: logging.Logger

    @property
    def text(self) -> str:
        if not self.document:
            return ""
        return str(self.document.get("content") or "")


StageBody = Callable[[StageRequest], dict[str, Any]]


def successors(stage: str, pipeline: PipelineConfig) -> list[str]:
    """Job types emitted after ``stage`` finishes."""
    if stage == "extract":
        following = ["vectorize"]
        if pipeline.chain_translate:
            following.append("translate")
        return following
    if stage == "vectorize":
        return ["summarize"]
    if stage == "summarize" and pipeline.chain_tag:
        return ["tag"]
    return []


def ready_articles(
    conn,
    stage: str,
    limit: int,
    exclude_job_statuses: tuple[str, ...] | None = ("pending", "processing"),
) -> list[Article]:
    """Articles whose lanes allow ``stage`` to start, failed ones excluded."""
    states = STAGE_STATES[stage]
    main_statuses = None
    if states.requires_main is not None:
        floor = rank(Lane.MAIN, states.requires_main)
        main_statuses = [
            status for status, value in LANE_RANKS[Lane.MAIN].items() if value >= floor
        ]
    return storage.list_articles_in_lane(
        conn,
        states.lane,
        states.ready_from,
        limit,
        main_statuses=main_statuses,
        exclude_job_type=stage,
        exclude_job_statuses=exclude_job_statuses,
    )


def build_payload(job_type: str, article: Article) -> JobPayload:
    if job_type == "extract":
        return ExtractPayload(article_id=article.id, url=article.url, source=article.source)
    key = article.content_key or content_key(article.id)
    if job_type == "vectorize":
        return VectorizePayload(article_id=article.id, content_key=key)
    if job_type == "summarize":
        return SummarizePayload(article_id=article.id, content_key=key)
    if job_type == "translate":
        return TranslatePayload(article_id=article.id, content_key=key)
    if job_type == "tag":
        return TagPayload(article_id=article.id, content_key=key)
    raise PayloadError(f"unknown job type {job_type!r}")


class StageWorker:
    def __init__(
        self,
        stage: str,
        queue,
        conn,
        content_store: FileContentStore,
        config: Config,
        logger: logging.Logger | None = None,
        body: StageBody | None = None,
    ) -> None:
        if stage not in STAGE_STATES:
            raise ValueError(f"unknown stage {stage!r}")
        self.stage = stage
        self.states = STAGE_STATES[stage]
        self.queue = queue
        self.conn = conn
        self.store = content_store
        self.config = config
        self.logger = logger or logging.getLogger(f"newsline.worker.{stage}")
        self.body = body or DEFAULT_BODIES[stage]
        self.worker_id = new_worker_id(stage)

    def poll(self, limit: int | None = None) -> list[Job]:
        return self.queue.claim(self.stage, limit or self.config.workers.batch_limit, self.worker_id)

    def process(self) -> dict[str, int]:
        jobs = self.poll()
        processed = 0
        failed = 0
        for job in jobs:
            if self.run_job(job):
                processed += 1
            else:
                failed += 1
        direct_processed = 0
        if not jobs:
            direct_processed, direct_failed = self.direct_scan()
            processed += direct_processed
            failed += direct_failed
        return {
            "processed_jobs": processed,
            "total_jobs": len(jobs),
            "direct_processed": direct_processed,
            "failed_jobs": failed,
        }

    def run_job(self, job: Job) -> bool:
        """Run one claimed job and report the outcome to the queue; never raises."""
        try:
            if job.job_type != self.stage:
                raise PayloadError(f"{self.stage} worker cannot run {job.job_type} jobs")
            payload = job.typed_payload()
            self._run_stage(payload, job.id)
        except Exception as exc:  # noqa: BLE001
            permanent = isinstance(exc, PERMANENT_ERRORS)
            error = error_summary(exc)
            log_event(
                self.logger,
                logging.ERROR,
                "job_failed",
                job_id=job.id,
                job_type=job.job_type,
                article_id=job.article_id,
                permanent=permanent,
                error=error,
            )
            try:
                self.queue.fail(job.id, error, permanent=permanent)
            except Exception as report_exc:  # noqa: BLE001
                log_event(
                    self.logger,
                    logging.ERROR,
                    "job_fail_report_failed",
                    job_id=job.id,
                    error=str(report_exc),
                )
            return False
        try:
            self.queue.complete(job.id)
        except Exception as exc:  # noqa: BLE001
            log_event(
                self.logger,
                logging.ERROR,
                "job_complete_failed",
                job_id=job.id,
                error=str(exc),
            )
            return False
        return True

    def direct_scan(self, limit: int | None = None) -> tuple[int, int]:
        """Process articles that are ready for this stage but have no open job.

        Each article gets a synthetic job that is claimed right away, so the
        work is accounted for exactly like queued work. Returns
        ``(processed, failed)``.
        """
        workers_cfg = self.config.workers
        if not workers_cfg.direct_scan_enabled:
            return 0, 0
        limit = workers_cfg.direct_scan_limit if limit is None else limit
        if limit <= 0:
            return 0, 0
        candidates = ready_articles(self.conn, self.stage, limit)
        if candidates:
            log_event(
                self.logger,
                logging.INFO,
                "direct_scan",
                stage=self.stage,
                candidates=len(candidates),
            )
        processed = 0
        failed = 0
        for article in candidates:
            try:
                job_id = self.queue.create(
                    self.stage,
                    build_payload(self.stage, article),
                    priority=self.config.pipeline.priorities.get(self.stage),
                )
            except Exception as exc:  # noqa: BLE001
                log_event(
                    self.logger,
                    logging.ERROR,
                    "direct_scan_enqueue_failed",
                    stage=self.stage,
                    article_id=article.id,
                    error=str(exc),
                )
                failed += 1
                continue
            job = self.queue.claim_job(job_id, self.worker_id)
            if job is None:
                continue
            if self.run_job(job):
                processed += 1
            else:
                failed += 1
        return processed, failed

    def invoke(self, data: dict[str, Any]) -> dict[str, Any]:
        """Run the stage for one payload without a job; errors propagate."""
        payload = parse_payload(self.stage, data)
        return self._run_stage(payload, None)

    def _run_stage(self, payload: JobPayload, job_id: str | None) -> dict[str, Any]:
        states = self.states
        article = storage.get_article(self.conn, payload.article_id)
        if article is None:
            raise ArticleNotFoundError(payload.article_id)
        holder = job_id or f"direct:{self.worker_id}"
        result: dict[str, Any] = {"article_id": article.id, "stage": self.stage}
        decision = decide(states, article, job_id)
        takeover = decision is Decision.SKIP_BUSY and self._holder_expired(article)
        if takeover:
            log_event(
                self.logger,
                logging.WARNING,
                "stage_takeover",
                stage=self.stage,
                article_id=article.id,
                job_id=holder,
                previous_holder=lane_holder(article, states.lane),
                updated_at=article.updated_at,
            )
            decision = Decision.RUN
        if decision is Decision.NOT_READY:
            raise StageNotReadyError(
                f"article {article.id} not ready for {self.stage} "
                f"(status={article.status})"
            )
        if decision is not Decision.RUN:
            return self._skipped(result, decision, job_id)

        current = lane_status(article, states.lane)
        resuming = current == states.running and not takeover
        validate_transition(current, states.running)
        claimed = storage.transition_article_status(
            self.conn,
            article.id,
            states.lane,
            current,
            states.running,
            job_id=holder,
            expected_job_id=job_id if resuming else None,
            expected_updated_at=article.updated_at if takeover else None,
        )
        if not claimed:
            return self._skipped(result, Decision.SKIP_BUSY, job_id)

        try:
            output = self._execute(article, payload)
        except Exception as exc:
            failed_status = states.failed if isinstance(exc, PERMANENT_ERRORS) else states.exception
            storage.transition_article_status(
                self.conn,
                article.id,
                states.lane,
                states.running,
                failed_status,
                job_id=holder,
                error=error_summary(exc),
                expected_job_id=holder,
            )
            log_event(
                self.logger,
                logging.WARNING,
                "stage_failed",
                stage=self.stage,
                article_id=article.id,
                job_id=holder,
                status=failed_status.value,
                error=error_summary(exc),
            )
            raise

        result.update(output)
        advanced = storage.transition_article_status(
            self.conn,
            article.id,
            states.lane,
            states.running,
            states.done,
            job_id=holder,
            expected_job_id=holder,
        )
        if not advanced:
            # another holder owns the lane now and chains on its own
            log_event(
                self.logger,
                logging.WARNING,
                "stage_status_lost",
                stage=self.stage,
                article_id=article.id,
                job_id=holder,
            )
            return self._skipped(result, Decision.SKIP_BUSY, job_id)
        log_event(
            self.logger,
            logging.INFO,
            "stage_completed",
            stage=self.stage,
            article_id=article.id,
            job_id=holder,
            status=states.done.value,
        )
        result["decision"] = Decision.RUN.value
        result["chained"] = self._chain(article.id)
        return result

    def _holder_expired(self, article: Article) -> bool:
        """True when a running status has not moved for a whole lease."""
        cutoff = utc_now_iso_offset(seconds=-self.config.queue.lease_seconds)
        return bool(article.updated_at) and article.updated_at < cutoff

    def _skipped(
        self, result: dict[str, Any], decision: Decision, job_id: str | None
    ) -> dict[str, Any]:
        log_event(
            self.logger,
            logging.INFO,
            "stage_skipped",
            stage=self.stage,
            article_id=result["article_id"],
            job_id=job_id,
            reason=decision.value,
        )
        result["decision"] = decision.value
        result["chained"] = []
        return result

    def _execute(self, article: Article, payload: JobPayload) -> dict[str, Any]:
        document = None
        summary = None
        if self.stage != "extract":
            document = self._load_document(payload.content_key)
        if self.stage == "tag":
            summary = storage.get_article_summary(self.conn, article.id)
        request = StageRequest(
            article=article,
            payload=payload,
            document=document,
            summary=summary,
            config=self.config,
            logger=self.logger,
        )
        output = self.body(request)
        return HANDLERS[self.stage](self, request, output)

    def _load_document(self, key: str) -> dict[str, Any]:
        try:
            document = self.store.get_json(key)
        except ContentMissingError as exc:
            raise PermanentStageError(f"content_missing: {key}") from exc
        if not isinstance(document, dict) or not str(document.get("content") or "").strip():
            raise PermanentStageError(f"content_empty: {key}")
        return document

    def _chain(self, article_id: int) -> list[str]:
        created: list[str] = []
        article = storage.get_article(self.conn, article_id)
        if article is None:
            return created
        for job_type in successors(self.stage, self.config.pipeline):
            try:
                job_id = self.queue.create(
                    job_type,
                    build_payload(job_type, article),
                    priority=self.config.pipeline.priorities.get(job_type),
                )
            except Exception as exc:  # noqa: BLE001
                log_event(
                    self.logger,
                    logging.ERROR,
                    "chain_enqueue_failed",
                    stage=self.stage,
                    next_stage=job_type,
                    article_id=article_id,
                    error=str(exc),
                )
                continue
            created.append(job_id)
        return created


def _store_extract(worker: StageWorker, request: StageRequest, output: dict[str, Any]) -> dict[str, Any]:
    content = str(output.get("content") or "").strip()
    minimum = worker.config.workers.min_content_chars
    if len(content) < minimum:
        raise PermanentStageError(f"content_too_short: {len(content)} < {minimum}")
    article = request.article
    title = output.get("title") or article.title
    key = content_key(article.id)
    worker.store.put_json(
        key,
        {
            "article_id": article.id,
            "url": article.url,
            "title": title,
            "content": content,
            "word_count": len(content.split()),
            "extracted_at": utc_now_iso(),
            "source": article.source,
        },
    )
    storage.set_article_content(worker.conn, article.id, key, title=title)
    return {"content_key": key, "content_length": len(content)}


def _store_vectors(worker: StageWorker, request: StageRequest, output: dict[str, Any]) -> dict[str, Any]:
    vectors = list(output.get("vectors") or [])
    if not vectors:
        raise PermanentStageError("no_chunks_produced")
    article_id = request.article.id
    worker.store.put_json(
        vectors_key(article_id),
        {"article_id": article_id, "vectors": vectors, "created_at": utc_now_iso()},
    )
    count = storage.replace_article_vectors(
        worker.conn,
        article_id,
        [(str(item["embedding_id"]), str(item["content_chunk"])) for item in vectors],
    )
    return {"vectors": count}


def _store_summary(worker: StageWorker, request: StageRequest, output: dict[str, Any]) -> dict[str, Any]:
    summary = str(output.get("summary") or "").strip()
    if not summary:
        raise ValueError("empty_summary")
    article_id = request.article.id
    model = output.get("model")
    worker.store.put_json(
        summary_key(article_id),
        {
            "article_id": article_id,
            "summary": summary,
            "model": model,
            "created_at": utc_now_iso(),
        },
    )
    storage.upsert_article_summary(worker.conn, article_id, summary, model)
    return {"summary_length": len(summary)}


def _store_translation(
    worker: StageWorker, request: StageRequest, output: dict[str, Any]
) -> dict[str, Any]:
    article_id = request.article.id
    language = output.get("language")
    translation = output.get("translation")
    key = None
    if translation:
        key = translation_key(article_id)
        worker.store.put_json(
            key,
            {
                "article_id": article_id,
                "language": language,
                "confidence": output.get("confidence"),
                "title": output.get("translated_title"),
                "content": translation,
                "translated_at": utc_now_iso(),
            },
        )
    storage.set_article_translation(worker.conn, article_id, language, key)
    return {"language": language, "translated": key is not None}


def _store_tags(worker: StageWorker, request: StageRequest, output: dict[str, Any]) -> dict[str, Any]:
    article_id = request.article.id
    tags = normalize_tags(output.get("tags") or [])
    worker.store.put_json(tags_key(article_id), {"article_id": article_id, "tags": tags})
    stored = storage.replace_article_tags(worker.conn, article_id, tags)
    return {"tags": stored}


HANDLERS: dict[str, Callable[[StageWorker, StageRequest, dict[str, Any]], dict[str, Any]]] = {
    "extract": _store_extract,
    "vectorize": _store_vectors,
    "summarize": _store_summary,
    "translate": _store_translation,
    "tag": _store_tags,
}


def _extract_body(request: StageRequest) -> dict[str, Any]:
    return fetch_article_content(
        request.payload.url,
        timeout_seconds=request.config.http.timeout_seconds,
        user_agent=request.config.http.user_agent,
        logger=request.logger,
    )


def _vectorize_body(request: StageRequest) -> dict[str, Any]:
    return {"vectors": vectorize_content(request.config.llm, request.article.id, request.text)}


def _summarize_body(request: StageRequest) -> dict[str, Any]:
    return summarize_with_llm(
        request.config.llm,
        title=request.article.title,
        source=request.article.source,
        url=request.article.url,
        content=request.text,
        logger=request.logger,
    )


def _translate_body(request: StageRequest) -> dict[str, Any]:
    return translate_with_llm(
        request.config.llm,
        title=request.article.title,
        content=request.text,
        force=bool(getattr(request.payload, "force_translate", False)),
        logger=request.logger,
    )


def _tag_body(request: StageRequest) -> dict[str, Any]:
    tags = tag_with_llm(
        request.config.llm,
        title=request.article.title,
        summary=request.summary,
        content=request.text,
        logger=request.logger,
    )
    return {"tags": tags}


DEFAULT_BODIES: dict[str, StageBody] = {
    "extract": _extract_body,
    "vectorize": _vectorize_body,
    "summarize": _summarize_body,
    "translate": _translate_body,
    "tag": _tag_body,
}


def build_worker(
    conn,
    stage: str,
    config: Config | None = None,
    logger: logging.Logger | None = None,
    body: StageBody | None = None,
) -> StageWorker:
    config = config or load_runtime_config(conn)
    store = prepare_content_store(config.paths.data_dir, config.paths.content_dir)
    return StageWorker(
        stage,
        build_queue(conn, config),
        conn,
        store,
        config,
        logger=logger,
        body=body,
    )


def _setup_logging(stage: str) -> logging.Logger:
    return configure_logging(f"newsline.worker.{stage}")


def run_once(stage: str) -> int:
    logger = _setup_logging(stage)
    try:
        conn = storage.init_db()
        worker = build_worker(conn, stage, logger=logger)
    except ConfigError as exc:
        log_event(logger, logging.ERROR, "config_error", error=str(exc))
        return 1
    try:
        result = worker.process()
    finally:
        conn.close()
    log_event(logger, logging.INFO, "worker_pass", stage=stage, **result)
    return 1 if result["failed_jobs"] else 0


def _run_claimed_job_thread(stage: str, job: Job) -> bool:
    logger = _setup_logging(stage)
    conn = storage.init_db()
    try:
        worker = build_worker(conn, stage, logger=logger)
        return worker.run_job(job)
    finally:
        conn.close()


def run_loop(stage: str, sleep_seconds: int, concurrency: int = 1) -> int:
    if concurrency <= 1:
        while True:
            run_once(stage)
            time.sleep(sleep_seconds)

    logger = _setup_logging(stage)
    max_workers = max(1, concurrency)
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        futures = set()
        while True:
            try:
                conn = storage.init_db()
                worker = build_worker(conn, stage, logger=logger)
            except ConfigError as exc:
                log_event(logger, logging.ERROR, "config_error", error=str(exc))
                time.sleep(sleep_seconds)
                continue
            try:
                free = max_workers - len(futures)
                jobs = worker.poll(free) if free > 0 else []
                if not jobs and not futures:
                    worker.direct_scan()
            finally:
                conn.close()
            for job in jobs:
                futures.add(executor.submit(_run_claimed_job_thread, stage, job))
            if futures:
                done, futures = wait(futures, timeout=sleep_seconds, return_when=FIRST_COMPLETED)
                for future in done:
                    try:
                        future.result()
                    except Exception as exc:  # noqa: BLE001
                        log_event(logger, logging.ERROR, "job_thread_error", error=str(exc))
            else:
                time.sleep(sleep_seconds)


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="newsline-worker")
    parser.add_argument("stage", choices=list(JOB_TYPES), help="Stage to work on")
    parser.add_argument("--once", action="store_true", help="Run a single pass and exit")
    parser.add_argument("--sleep", type=int, default=10, help="Sleep seconds between polls")
    parser.add_argument(
        "--concurrency",
        type=int,
        default=int(os.environ.get("NL_WORKER_CONCURRENCY", "1")),
    )
    return parser


def main() -> int:
    parser = build_parser()
    args = parser.parse_args()
    if args.once:
        return run_once(args.stage)
    return run_loop(args.stage, args.sleep, args.concurrency)
