import pytest

from conftest import ARTICLE_TEXT, fake_extract, make_worker
from newsline import jobqueue, storage
from newsline.config import load_runtime_config, update_runtime_config
from newsline.content_store import FileContentStore, content_key
from newsline.ingest import register_article
from newsline.queue_client import LocalQueue, QueueClientError
from newsline.states import ArticleStatus, Lane
from newsline.worker import ArticleNotFoundError, StageNotReadyError, successors


class FailingChainQueue(LocalQueue):
    def create(self, job_type, payload, priority=None):
        if job_type == "vectorize":
            raise QueueClientError("queue unavailable")
        return super().create(job_type, payload, priority)


def _store(conn) -> FileContentStore:
    return FileContentStore(load_runtime_config(conn).paths.content_dir)


def test_process_runs_queued_job_and_chains(conn):
    article_id, job_id, created = register_article(conn, "https://example.com/a", "example")
    assert created and job_id

    result = make_worker(conn, "extract").process()

    assert result == {
        "processed_jobs": 1,
        "total_jobs": 1,
        "direct_processed": 0,
        "failed_jobs": 0,
    }
    article = storage.get_article(conn, article_id)
    assert article.status == "extracted"
    assert article.status_job_id == job_id
    assert article.title == "Transit plan announced"
    assert article.content_key == content_key(article_id)
    document = _store(conn).get_json(article.content_key)
    assert document["content"] == ARTICLE_TEXT
    assert jobqueue.get_job(conn, job_id).status == "completed"

    follow_up = jobqueue.list_jobs_for_article(conn, article_id, "vectorize")
    assert len(follow_up) == 1
    assert follow_up[0].status == "pending"
    assert follow_up[0].priority == 2
    assert follow_up[0].payload == {"article_id": article_id, "content_key": content_key(article_id)}


def test_direct_scan_processes_articles_without_jobs(conn):
    article_id, _ = storage.insert_article(conn, "https://example.com/b", "example")

    result = make_worker(conn, "extract").process()

    assert result["total_jobs"] == 0
    assert result["direct_processed"] == 1
    assert result["processed_jobs"] == 1
    assert storage.get_article(conn, article_id).status == "extracted"
    jobs = jobqueue.list_jobs_for_article(conn, article_id, "extract")
    assert [job.status for job in jobs] == ["completed"]


def test_direct_scan_skips_failed_articles(conn):
    article_id, _ = storage.insert_article(conn, "https://example.com/c", "example")
    storage.transition_article_status(
        conn, article_id, Lane.MAIN, ArticleStatus.PENDING, ArticleStatus.EXTRACTION_FAILED
    )

    result = make_worker(conn, "extract").process()

    assert result["direct_processed"] == 0
    assert storage.get_article(conn, article_id).status == "extraction_failed"


def test_direct_scan_can_be_disabled(conn):
    storage.insert_article(conn, "https://example.com/d", "example")
    update_runtime_config(conn, "workers", direct_scan_enabled=False)

    result = make_worker(conn, "extract").process()

    assert result["direct_processed"] == 0
    assert jobqueue.list_jobs(conn) == []


def test_short_content_is_a_permanent_failure(conn):
    article_id, job_id, _ = register_article(conn, "https://example.com/e", "example")

    def short_body(request):
        return {"title": "Stub", "content": "Too short."}

    result = make_worker(conn, "extract", body=short_body).process()

    assert result["failed_jobs"] == 1
    job = jobqueue.get_job(conn, job_id)
    assert job.status == "failed"
    assert job.attempts == 1
    assert "content_too_short" in job.error
    article = storage.get_article(conn, article_id)
    assert article.status == "extraction_failed"
    assert "content_too_short" in article.error
    assert jobqueue.list_jobs_for_article(conn, article_id, "vectorize") == []


def test_transient_failure_is_retried(conn):
    article_id, job_id, _ = register_article(conn, "https://example.com/f", "example")

    def broken_body(request):
        raise RuntimeError("network down")

    make_worker(conn, "extract", body=broken_body).process()

    job = jobqueue.get_job(conn, job_id)
    assert job.status == "pending"
    assert job.attempts == 1
    assert storage.get_article(conn, article_id).status == "extraction_exception"

    result = make_worker(conn, "extract").process()

    assert result["processed_jobs"] == 1
    assert jobqueue.get_job(conn, job_id).status == "completed"
    article = storage.get_article(conn, article_id)
    assert article.status == "extracted"
    assert article.error is None


def test_missing_content_fails_permanently(conn):
    article_id, _ = storage.insert_article(conn, "https://example.com/g", "example")
    storage.transition_article_status(
        conn, article_id, Lane.MAIN, ArticleStatus.PENDING, ArticleStatus.EXTRACTED
    )
    storage.set_article_content(conn, article_id, content_key(article_id))
    job_id = jobqueue.create_job(
        conn, "vectorize", {"article_id": article_id, "content_key": content_key(article_id)}
    )

    make_worker(conn, "vectorize").process()

    job = jobqueue.get_job(conn, job_id)
    assert job.status == "failed"
    assert "content_missing" in job.error
    assert storage.get_article(conn, article_id).status == "vectorization_failed"


def test_chain_enqueue_failure_does_not_fail_the_job(conn):
    article_id, job_id, _ = register_article(conn, "https://example.com/h", "example")
    config = load_runtime_config(conn)
    worker = make_worker(conn, "extract", queue=FailingChainQueue(conn, config), config=config)

    result = worker.process()

    assert result["processed_jobs"] == 1
    assert jobqueue.get_job(conn, job_id).status == "completed"
    assert storage.get_article(conn, article_id).status == "extracted"
    assert jobqueue.list_jobs_for_article(conn, article_id, "vectorize") == []


def test_reclaimed_job_resumes_its_own_running_status(conn):
    article_id, job_id, _ = register_article(conn, "https://example.com/i", "example")
    job = jobqueue.claim_job(conn, job_id, "worker-old")
    storage.transition_article_status(
        conn, article_id, Lane.MAIN, ArticleStatus.PENDING, ArticleStatus.EXTRACTING, job_id=job_id
    )

    assert make_worker(conn, "extract").run_job(job) is True
    assert storage.get_article(conn, article_id).status == "extracted"


def test_other_job_does_not_steal_running_article(conn):
    article_id, _ = storage.insert_article(conn, "https://example.com/j", "example")
    storage.transition_article_status(
        conn, article_id, Lane.MAIN, ArticleStatus.PENDING, ArticleStatus.EXTRACTING, job_id="job_owner"
    )
    job_id = jobqueue.create_job(
        conn, "extract", {"article_id": article_id, "url": "https://example.com/j"}
    )

    make_worker(conn, "extract").process()

    assert jobqueue.get_job(conn, job_id).status == "completed"
    article = storage.get_article(conn, article_id)
    assert article.status == "extracting"
    assert article.status_job_id == "job_owner"


def test_duplicate_job_for_finished_stage_is_skipped(conn):
    article_id, _, _ = register_article(conn, "https://example.com/k", "example")
    worker = make_worker(conn, "extract")
    worker.process()
    jobqueue.create_job(conn, "extract", {"article_id": article_id, "url": "https://example.com/k"})

    result = worker.process()

    assert result["processed_jobs"] == 1
    assert len(jobqueue.list_jobs_for_article(conn, article_id, "vectorize")) == 1


def test_invoke_runs_without_a_job(conn):
    article_id, _ = storage.insert_article(conn, "https://example.com/l", "example")
    worker = make_worker(conn, "extract")

    result = worker.invoke({"article_id": article_id, "url": "https://example.com/l"})

    assert result["decision"] == "run"
    assert result["content_key"] == content_key(article_id)
    assert len(result["chained"]) == 1
    article = storage.get_article(conn, article_id)
    assert article.status == "extracted"
    assert article.status_job_id == f"direct:{worker.worker_id}"

    again = worker.invoke({"article_id": article_id, "url": "https://example.com/l"})
    assert again["decision"] == "skip_done"
    assert again["chained"] == []


def test_invoke_errors(conn):
    article_id, _ = storage.insert_article(conn, "https://example.com/m", "example")
    with pytest.raises(ArticleNotFoundError):
        make_worker(conn, "extract").invoke({"article_id": 9999, "url": "https://x"})
    with pytest.raises(StageNotReadyError):
        make_worker(conn, "summarize").invoke(
            {"article_id": article_id, "content_key": content_key(article_id)}
        )


def test_wrong_job_type_fails_permanently(conn):
    article_id, job_id, _ = register_article(conn, "https://example.com/n", "example")
    job = jobqueue.claim_job(conn, job_id, "worker-a")

    assert make_worker(conn, "summarize").run_job(job) is False
    failed = jobqueue.get_job(conn, job_id)
    assert failed.status == "failed"
    assert storage.get_article(conn, article_id).status == "pending"


def test_successors_follow_pipeline_flags(conn):
    pipeline = load_runtime_config(conn).pipeline
    assert successors("extract", pipeline) == ["vectorize"]
    assert successors("vectorize", pipeline) == ["summarize"]
    assert successors("summarize", pipeline) == ["tag"]
    assert successors("tag", pipeline) == []

    update_runtime_config(conn, "pipeline", chain_translate=True, chain_tag=False)
    pipeline = load_runtime_config(conn).pipeline
    assert successors("extract", pipeline) == ["vectorize", "translate"]
    assert successors("summarize", pipeline) == []


def test_losing_the_lane_to_another_holder_does_not_chain(conn):
    article_id, job_id, _ = register_article(conn, "https://example.com/o", "example")

    def overtaken_body(request):
        storage.transition_article_status(
            conn,
            article_id,
            Lane.MAIN,
            ArticleStatus.EXTRACTING,
            ArticleStatus.EXTRACTED,
            job_id="job_other",
        )
        jobqueue.create_job(
            conn, "vectorize", {"article_id": article_id, "content_key": content_key(article_id)}
        )
        return fake_extract(request)

    result = make_worker(conn, "extract", body=overtaken_body).process()

    assert result["processed_jobs"] == 1
    assert jobqueue.get_job(conn, job_id).status == "completed"
    assert len(jobqueue.list_jobs_for_article(conn, article_id, "vectorize")) == 1
    assert storage.get_article(conn, article_id).status_job_id == "job_other"


def test_side_lane_error_survives_main_lane_progress(conn):
    article_id, _, _ = register_article(conn, "https://example.com/p", "example")
    make_worker(conn, "extract").process()
    jobqueue.create_job(
        conn, "translate", {"article_id": article_id, "content_key": content_key(article_id)}
    )

    def broken_translate(request):
        raise RuntimeError("translator down")

    make_worker(conn, "translate", body=broken_translate).process()
    article = storage.get_article(conn, article_id)
    assert article.translation_status == "translation_failed"
    assert "translator down" in article.error

    make_worker(conn, "vectorize").process()
    article = storage.get_article(conn, article_id)
    assert article.status == "vectorized"
    assert "translator down" in article.error

    make_worker(conn, "translate").process()
    article = storage.get_article(conn, article_id)
    assert article.translation_status == "translated"
    assert article.error is None


def test_invoke_takes_over_an_abandoned_running_status(conn):
    article_id, _ = storage.insert_article(conn, "https://example.com/q", "example")
    storage.transition_article_status(
        conn,
        article_id,
        Lane.MAIN,
        ArticleStatus.PENDING,
        ArticleStatus.EXTRACTING,
        job_id="direct:worker-extract-gone",
    )
    worker = make_worker(conn, "extract")
    payload = {"article_id": article_id, "url": "https://example.com/q"}

    assert worker.invoke(payload)["decision"] == "skip_busy"

    conn.execute(
        "UPDATE articles SET updated_at = ? WHERE id = ?",
        ("2020-01-01T00:00:00.000000+00:00", article_id),
    )
    conn.commit()
    result = worker.invoke(payload)

    assert result["decision"] == "run"
    article = storage.get_article(conn, article_id)
    assert article.status == "extracted"
    assert article.status_job_id == f"direct:{worker.worker_id}"
