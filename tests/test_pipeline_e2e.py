from conftest import make_worker
from newsline import jobqueue, storage
from newsline.config import load_runtime_config, update_runtime_config
from newsline.content_store import FileContentStore, summary_key, tags_key, translation_key
from newsline.ingest import register_article


def _drain(conn, *stages):
    for stage in stages:
        result = make_worker(conn, stage).process()
        assert result["failed_jobs"] == 0, stage


def test_article_reaches_summarized_without_tagging(conn):
    update_runtime_config(conn, "pipeline", chain_tag=False)
    article_id, _, _ = register_article(conn, "https://news.example.com/42", "example")

    _drain(conn, "extract", "vectorize", "summarize")

    article = storage.get_article(conn, article_id)
    assert article.status == "summarized"
    assert article.tag_status == "pending"
    assert storage.count_article_vectors(conn, article_id) == 1
    assert storage.get_article_summary(conn, article_id) == "A new transit plan adds bus lines."
    store = FileContentStore(load_runtime_config(conn).paths.content_dir)
    assert store.get_json(summary_key(article_id))["model"] == "fake-model"

    jobs = jobqueue.list_jobs_for_article(conn, article_id)
    assert sorted(job.job_type for job in jobs) == ["extract", "summarize", "vectorize"]
    assert {job.status for job in jobs} == {"completed"}


def test_tagging_lane_runs_after_summary(conn):
    article_id, _, _ = register_article(conn, "https://news.example.com/43", "example")

    _drain(conn, "extract", "vectorize", "summarize", "tag")

    article = storage.get_article(conn, article_id)
    assert article.status == "summarized"
    assert article.tag_status == "tagged"
    assert storage.get_article_tags(conn, article_id) == ["local-government", "transit"]
    store = FileContentStore(load_runtime_config(conn).paths.content_dir)
    assert store.get_json(tags_key(article_id))["tags"] == ["transit", "local-government"]
    tag_jobs = jobqueue.list_jobs_for_article(conn, article_id, "tag")
    assert [job.priority for job in tag_jobs] == [1]


def test_translation_lane_runs_beside_main_lane(conn):
    update_runtime_config(conn, "pipeline", chain_translate=True)
    article_id, _, _ = register_article(conn, "https://news.example.com/44", "example")

    _drain(conn, "extract", "translate")

    article = storage.get_article(conn, article_id)
    assert article.status == "extracted"
    assert article.translation_status == "translated"
    assert article.detected_language == "fr"
    assert article.translated_content_key == translation_key(article_id)
    assert len(jobqueue.list_jobs_for_article(conn, article_id, "vectorize")) == 1

    _drain(conn, "vectorize")
    assert storage.get_article(conn, article_id).translation_status == "translated"
