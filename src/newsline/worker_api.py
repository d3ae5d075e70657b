from __future__ import annotations

import logging

from fastapi import Body, Depends, FastAPI, HTTPException

from .api_common import api_connection, get_version, require_api_token
from .config import ConfigError, load_runtime_config
from .models import JOB_TYPES, PayloadError
from .utils import error_summary, log_event, utc_now_iso
from .worker import ArticleNotFoundError, StageBody, StageNotReadyError, build_worker


def create_worker_app(stage: str, body: StageBody | None = None) -> FastAPI:
    """HTTP surface for one stage worker; ``body`` overrides the stage body."""
    if stage not in JOB_TYPES:
        raise ValueError(f"unknown stage {stage!r}")
    logger = logging.getLogger(f"newsline.worker.{stage}")
    app = FastAPI(title=f"newsline {stage} worker")

    def _load_config(conn):
        try:
            return load_runtime_config(conn)
        except ConfigError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc

    @app.get("/health")
    def health() -> dict[str, object]:
        return {
            "status": f"{stage} worker operational",
            "stage": stage,
            "version": get_version(),
            "timestamp": utc_now_iso(),
        }

    @app.post("/process", dependencies=[Depends(require_api_token)])
    def process() -> dict[str, object]:
        with api_connection() as conn:
            worker = build_worker(conn, stage, config=_load_config(conn), logger=logger, body=body)
            result = worker.process()
        return {"success": True, **result}

    @app.post(f"/{stage}", dependencies=[Depends(require_api_token)])
    def invoke(payload: dict = Body(...)) -> dict[str, object]:
        with api_connection() as conn:
            worker = build_worker(conn, stage, config=_load_config(conn), logger=logger, body=body)
            try:
                result = worker.invoke(payload)
            except PayloadError as exc:
                raise HTTPException(status_code=400, detail=str(exc)) from exc
            except ArticleNotFoundError as exc:
                raise HTTPException(status_code=404, detail=str(exc)) from exc
            except StageNotReadyError as exc:
                raise HTTPException(status_code=409, detail=str(exc)) from exc
            except Exception as exc:  # noqa: BLE001
                log_event(logger, logging.ERROR, "invoke_failed", stage=stage, error=str(exc))
                raise HTTPException(status_code=500, detail=error_summary(exc)) from exc
        return {"success": True, "result": result}

    return app
