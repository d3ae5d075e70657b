from fastapi.testclient import TestClient

from newsline.ingest import register_article
from newsline.orchestrator_api import app


def test_health():
    response = TestClient(app).get("/health")
    assert response.status_code == 200
    assert response.json()["status"] == "Orchestrator operational"


def test_run_pipeline_cleanup_step():
    client = TestClient(app)
    response = client.post("/run-pipeline", json={"steps": "cleanup"})
    assert response.status_code == 200
    payload = response.json()
    assert payload["steps_executed"] == ["cleanup"]
    assert payload["summary"]["cleanup"] == {"reset": 0}


def test_run_pipeline_rejects_unknown_step():
    response = TestClient(app).post("/run-pipeline", json={"steps": "publish"})
    assert response.status_code == 400


def test_pipeline_status_and_maintenance(conn):
    register_article(conn, "https://example.com/1", "example")
    client = TestClient(app)

    status = client.get("/pipeline-status").json()
    assert status["pipeline_health"]["total_articles"] == 1
    assert status["queue_status"] == [{"type": "extract", "status": "pending", "count": 1}]

    assert client.post("/retry-failed").json() == {"swept": 0, "succeeded": 0, "failed": 0}
    assert client.post("/repair-chain").json()["created"] == 0
