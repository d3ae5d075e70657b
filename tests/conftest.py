from __future__ import annotations

import pytest

from newsline.config import bootstrap_runtime_config, load_runtime_config
from newsline.fsinit import prepare_content_store
from newsline.queue_client import LocalQueue
from newsline.storage import init_db
from newsline.worker import StageWorker

ARTICLE_TEXT = (
    "Regional officials announced a new transit plan on Monday morning. "
    "The proposal adds three bus lines and extends service hours downtown. "
    "Funding comes from a mix of state grants and local transit levies. "
    "Council members expect a final vote before the end of the month."
)


def fake_extract(request):
    return {"title": "Transit plan announced", "content": ARTICLE_TEXT}


def fake_vectorize(request):
    return {
        "vectors": [
            {
                "embedding_id": f"{request.article.id}_chunk_0",
                "chunk_index": 0,
                "content_chunk": request.text[:200],
                "values": [0.1, 0.2, 0.3],
            }
        ]
    }


def fake_summarize(request):
    return {"summary": "A new transit plan adds bus lines.", "model": "fake-model"}


def fake_translate(request):
    return {
        "language": "fr",
        "confidence": 0.95,
        "translated_title": "Transit plan",
        "translation": "Translated body",
    }


def fake_tag(request):
    return {"tags": ["Transit", "Local Government", "transit"]}


FAKE_BODIES = {
    "extract": fake_extract,
    "vectorize": fake_vectorize,
    "summarize": fake_summarize,
    "translate": fake_translate,
    "tag": fake_tag,
}


@pytest.fixture(autouse=True)
def _isolated_env(tmp_path, monkeypatch):
    monkeypatch.setenv("NL_DATA_DIR", str(tmp_path / "data"))
    monkeypatch.delenv("NL_DB_URL", raising=False)
    monkeypatch.delenv("NL_API_TOKEN", raising=False)
    monkeypatch.delenv("NL_QUEUE_URL", raising=False)
    monkeypatch.delenv("NL_LLM_BASE_URL", raising=False)


@pytest.fixture
def conn():
    connection = init_db()
    bootstrap_runtime_config(connection)
    yield connection
    connection.close()


def make_worker(conn, stage, body=None, queue=None, config=None):
    config = config or load_runtime_config(conn)
    store = prepare_content_store(config.paths.data_dir, config.paths.content_dir)
    return StageWorker(
        stage,
        queue or LocalQueue(conn, config),
        conn,
        store,
        config,
        body=body or FAKE_BODIES[stage],
    )


def fake_worker_factory(conn, config=None):
    config = config or load_runtime_config(conn)
    workers = {}

    def factory(stage):
        if stage not in workers:
            workers[stage] = make_worker(conn, stage, config=config)
        return workers[stage]

    return factory
