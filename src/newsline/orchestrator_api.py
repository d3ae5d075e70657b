from __future__ import annotations

from fastapi import Depends, FastAPI, HTTPException
from pydantic import BaseModel

from .api_common import api_connection, get_version, require_api_token
from .config import ConfigError, load_runtime_config
from .orchestrator import pipeline_status, repair_chain, run_pipeline, sweep_failed_jobs
from .utils import utc_now_iso

app = FastAPI(title="newsline Orchestrator")


class RunPipelineRequest(BaseModel):
    steps: str | list[str] = "all"


@app.get("/health")
def health() -> dict[str, object]:
    return {
        "status": "Orchestrator operational",
        "version": get_version(),
        "timestamp": utc_now_iso(),
    }


@app.post("/run-pipeline", dependencies=[Depends(require_api_token)])
def run_pipeline_endpoint(request: RunPipelineRequest | None = None) -> dict[str, object]:
    steps = request.steps if request is not None else "all"
    with api_connection() as conn:
        config = _load_config(conn)
        try:
            return run_pipeline(conn, steps, config=config)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/pipeline-status", dependencies=[Depends(require_api_token)])
def pipeline_status_endpoint() -> dict[str, object]:
    with api_connection() as conn:
        return pipeline_status(conn)


@app.post("/retry-failed", dependencies=[Depends(require_api_token)])
def retry_failed() -> dict[str, object]:
    with api_connection() as conn:
        return sweep_failed_jobs(conn, _load_config(conn))


@app.post("/repair-chain", dependencies=[Depends(require_api_token)])
def repair_chain_endpoint() -> dict[str, object]:
    with api_connection() as conn:
        return repair_chain(conn, _load_config(conn))


def _load_config(conn):
    try:
        return load_runtime_config(conn)
    except ConfigError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
