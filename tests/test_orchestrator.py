import pytest

from conftest import fake_worker_factory, make_worker
from newsline import jobqueue, storage
from newsline.content_store import content_key
from newsline.ingest import register_article
from newsline.orchestrator import pipeline_status, repair_chain, run_pipeline, sweep_failed_jobs
from newsline.states import ArticleStatus, Lane


def _short_body(request):
    return {"title": "Stub", "content": "Too short."}


def _set_status(conn, article_id, lane, target):
    storage.transition_article_status(conn, article_id, lane, ArticleStatus.PENDING, target)


def test_sweep_reruns_failed_job_with_attempts_left(conn):
    article_id, job_id, _ = register_article(conn, "https://example.com/1", "example")
    make_worker(conn, "extract", body=_short_body).process()
    assert jobqueue.get_job(conn, job_id).status == "failed"

    result = sweep_failed_jobs(conn, worker_factory=fake_worker_factory(conn))

    assert result == {"swept": 1, "succeeded": 1, "failed": 0}
    job = jobqueue.get_job(conn, job_id)
    assert job.status == "completed"
    assert job.attempts == 1
    assert storage.get_article(conn, article_id).status == "extracted"
    assert len(jobqueue.list_jobs_for_article(conn, article_id, "extract")) == 1


def test_sweep_failure_consumes_an_attempt(conn):
    _, job_id, _ = register_article(conn, "https://example.com/2", "example")
    make_worker(conn, "extract", body=_short_body).process()

    def factory(stage):
        return make_worker(conn, stage, body=_short_body)

    result = sweep_failed_jobs(conn, worker_factory=factory)

    assert result == {"swept": 1, "succeeded": 0, "failed": 1}
    job = jobqueue.get_job(conn, job_id)
    assert job.status == "failed"
    assert job.attempts == 2


def test_sweep_ignores_exhausted_jobs(conn):
    article_id, job_id, _ = register_article(conn, "https://example.com/3", "example")
    conn.execute("UPDATE jobs SET max_attempts = 1 WHERE id = ?", (job_id,))
    conn.commit()
    make_worker(conn, "extract", body=_short_body).process()

    result = sweep_failed_jobs(conn, worker_factory=fake_worker_factory(conn))

    assert result == {"swept": 0, "succeeded": 0, "failed": 0}
    assert storage.get_article(conn, article_id).status == "extraction_failed"


def test_repair_chain_creates_missing_successors(conn):
    extracted_id, _ = storage.insert_article(conn, "https://example.com/4", "example")
    _set_status(conn, extracted_id, Lane.MAIN, ArticleStatus.EXTRACTED)
    storage.set_article_content(conn, extracted_id, content_key(extracted_id))
    summarized_id, _ = storage.insert_article(conn, "https://example.com/5", "example")
    _set_status(conn, summarized_id, Lane.MAIN, ArticleStatus.SUMMARIZED)

    result = repair_chain(conn)

    assert result["created"] == 2
    assert len(jobqueue.list_jobs_for_article(conn, extracted_id, "vectorize")) == 1
    assert len(jobqueue.list_jobs_for_article(conn, summarized_id, "tag")) == 1
    assert jobqueue.list_jobs_for_article(conn, summarized_id, "translate") == []

    assert repair_chain(conn)["created"] == 0


def test_run_pipeline_moves_articles_through_stages(conn):
    first_id, _, _ = register_article(conn, "https://example.com/6", "example")
    second_id, _ = storage.insert_article(conn, "https://example.com/7", "example")

    result = run_pipeline(
        conn,
        "cleanup,extract,vectorize,summarize",
        worker_factory=fake_worker_factory(conn),
    )

    assert result["errors"] == []
    assert result["steps_executed"] == ["cleanup", "extract", "vectorize", "summarize"]
    assert result["summary"]["cleanup"] == {"reset": 0}
    assert result["summary"]["extract_enqueued"] == 1
    assert result["summary"]["extract"]["processed_jobs"] == 2
    for article_id in (first_id, second_id):
        assert storage.get_article(conn, article_id).status == "summarized"


def test_run_pipeline_records_step_errors(conn):
    def broken_factory(stage):
        raise RuntimeError(f"{stage} worker unavailable")

    result = run_pipeline(conn, ["vectorize", "cleanup"], worker_factory=broken_factory)

    assert result["steps_executed"] == ["cleanup"]
    assert result["errors"] == [
        {"step": "vectorize", "error": "RuntimeError: vectorize worker unavailable"}
    ]


def test_run_pipeline_rejects_unknown_steps(conn):
    with pytest.raises(ValueError):
        run_pipeline(conn, "extract,publish")


def test_pipeline_status(conn):
    register_article(conn, "https://example.com/8", "example")
    storage.insert_article(conn, "https://example.com/9", "example")
    make_worker(conn, "extract").process()

    status = pipeline_status(conn)

    health = status["pipeline_health"]
    assert health["total_articles"] == 2
    assert health["extracted_articles"] == 1
    assert health["vectorized_articles"] == 0
    assert health["by_status"] == {"extracted": 1, "pending": 1}
    assert status["completion_rates"]["extraction_rate"] == "50.0%"
    assert status["completion_rates"]["vectorization_rate"] == "0.0%"
    assert status["completion_rates"]["summarization_rate"] == "0%"
    queue = {(row["type"], row["status"]): row["count"] for row in status["queue_status"]}
    assert queue[("extract", "completed")] == 1
    assert queue[("vectorize", "pending")] == 1
