from __future__ import annotations

import os
from contextlib import contextmanager
from typing import Iterator

from fastapi import HTTPException, Request

from .config import bootstrap_runtime_config, get_state_db_path
from .db import DBConn
from .storage import init_db


def require_api_token(request: Request) -> None:
    token = os.environ.get("NL_API_TOKEN")
    if not token:
        return
    if request.headers.get("X-Api-Token") != token:
        raise HTTPException(status_code=401, detail="unauthorized")


@contextmanager
def api_connection() -> Iterator[DBConn]:
    conn = init_db(get_state_db_path())
    try:
        bootstrap_runtime_config(conn)
        yield conn
    finally:
        conn.close()


def get_version() -> str:
    try:
        from importlib.metadata import version

        return version("newsline")
    except Exception:  # noqa: BLE001
        return "unknown"
