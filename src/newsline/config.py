from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any

from .db import DEFAULT_DATA_DIR, get_state_db_path
from .storage import get_setting, set_setting

__all__ = [
    "Config",
    "ConfigError",
    "DEFAULT_CONFIG",
    "bootstrap_runtime_config",
    "get_runtime_config",
    "get_state_db_path",
    "load_runtime_config",
    "set_runtime_config",
    "validate_runtime_config",
]


class ConfigError(ValueError):
    pass


@dataclass(frozen=True)
class AppConfig:
    name: str


@dataclass(frozen=True)
class PathsConfig:
    data_dir: str
    state_db: str
    content_dir: str


@dataclass(frozen=True)
class QueueConfig:
    lease_seconds: int
    default_max_attempts: int
    default_priority: int
    poll_limit: int


@dataclass(frozen=True)
class WorkersConfig:
    batch_limit: int
    direct_scan_enabled: bool
    direct_scan_limit: int
    min_content_chars: int
    queue_url: str
    urls: dict[str, str]


@dataclass(frozen=True)
class PipelineConfig:
    chain_translate: bool
    chain_tag: bool
    priorities: dict[str, int]


@dataclass(frozen=True)
class RetrySweepConfig:
    window_hours: int
    limit: int


@dataclass(frozen=True)
class HttpConfig:
    timeout_seconds: int
    user_agent: str


@dataclass(frozen=True)
class LlmConfig:
    base_url: str
    model: str
    embedding_model: str
    max_retries: int
    backoff_seconds: float
    timeout_seconds: int
    target_language: str


@dataclass(frozen=True)
class Config:
    app: AppConfig
    paths: PathsConfig
    queue: QueueConfig
    workers: WorkersConfig
    pipeline: PipelineConfig
    retry_sweep: RetrySweepConfig
    http: HttpConfig
    llm: LlmConfig


DEFAULT_CONFIG: dict[str, Any] = {
    "app": {
        "name": "newsline",
    },
    "paths": {
        "data_dir": DEFAULT_DATA_DIR,
        "state_db": os.path.join(DEFAULT_DATA_DIR, "state.sqlite3"),
        "content_dir": os.path.join(DEFAULT_DATA_DIR, "content"),
    },
    "queue": {
        "lease_seconds": 300,
        "default_max_attempts": 3,
        "default_priority": 1,
        "poll_limit": 5,
    },
    "workers": {
        "batch_limit": 3,
        "direct_scan_enabled": True,
        "direct_scan_limit": 3,
        "min_content_chars": 100,
        "queue_url": "",
        "urls": {
            "extract": "",
            "vectorize": "",
            "summarize": "",
            "translate": "",
            "tag": "",
        },
    },
    "pipeline": {
        "chain_translate": False,
        "chain_tag": True,
        "priorities": {
            "extract": 1,
            "vectorize": 2,
            "summarize": 3,
            "translate": 2,
            "tag": 1,
        },
    },
    "retry_sweep": {
        "window_hours": 24,
        "limit": 10,
    },
    "http": {
        "timeout_seconds": 30,
        "user_agent": "newsline/0.1",
    },
    "llm": {
        "base_url": "",
        "model": "gpt-4o-mini",
        "embedding_model": "text-embedding-3-small",
        "max_retries": 3,
        "backoff_seconds": 1.0,
        "timeout_seconds": 60,
        "target_language": "en",
    },
}

CONFIG_KEY = "config.runtime"


def bootstrap_runtime_config(conn) -> dict[str, Any]:
    cfg = get_setting(conn, CONFIG_KEY, None)
    if cfg is None:
        set_setting(conn, CONFIG_KEY, _initial_config())
        cfg = get_setting(conn, CONFIG_KEY, None)
    if not isinstance(cfg, dict):
        raise ConfigError("config.runtime must be a JSON object")
    return cfg


def get_runtime_config(conn) -> dict[str, Any]:
    cfg = bootstrap_runtime_config(conn)
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    return cfg


def set_runtime_config(conn, cfg: dict[str, Any]) -> None:
    errors = validate_runtime_config(cfg)
    if errors:
        raise ConfigError("Invalid config.runtime: " + "; ".join(errors))
    set_setting(conn, CONFIG_KEY, _deep_copy(cfg))


def update_runtime_config(conn, section: str, **values: Any) -> dict[str, Any]:
    cfg = _deep_copy(get_runtime_config(conn))
    if section not in cfg:
        raise ConfigError(f"unknown config section {section}")
    cfg[section].update(values)
    set_runtime_config(conn, cfg)
    return cfg


def load_runtime_config(conn) -> Config:
    cfg = get_runtime_config(conn)
    return _build_config(cfg)


def validate_runtime_config(cfg: dict[str, Any]) -> list[str]:
    errors: list[str] = []
    _validate_dict(cfg, DEFAULT_CONFIG, "config.runtime", errors)
    if not errors:
        _validate_ranges(cfg, errors)
    return errors


def _validate_ranges(cfg: dict[str, Any], errors: list[str]) -> None:
    queue = cfg["queue"]
    if queue["lease_seconds"] <= 0:
        errors.append("config.runtime.queue.lease_seconds must be positive")
    if queue["default_max_attempts"] < 1:
        errors.append("config.runtime.queue.default_max_attempts must be at least 1")
    if queue["poll_limit"] < 1:
        errors.append("config.runtime.queue.poll_limit must be at least 1")
    workers = cfg["workers"]
    if workers["batch_limit"] < 1:
        errors.append("config.runtime.workers.batch_limit must be at least 1")
    if workers["direct_scan_limit"] < 0:
        errors.append("config.runtime.workers.direct_scan_limit must not be negative")


def _validate_dict(value: dict[str, Any], schema: dict[str, Any], path: str, errors: list[str]) -> None:
    if not isinstance(value, dict):
        errors.append(f"{path} must be an object")
        return
    for key in schema.keys():
        if key not in value:
            errors.append(f"missing {path}.{key}")
    for key in value.keys():
        if key not in schema:
            errors.append(f"unknown {path}.{key}")
    for key, default in schema.items():
        if key not in value:
            continue
        _validate_value(value[key], default, f"{path}.{key}", errors)


def _validate_value(value: Any, default: Any, path: str, errors: list[str]) -> None:
    if isinstance(default, dict):
        if not isinstance(value, dict):
            errors.append(f"{path} must be an object")
            return
        _validate_dict(value, default, path, errors)
        return
    if isinstance(default, bool):
        if not isinstance(value, bool):
            errors.append(f"{path} must be a boolean")
        return
    if isinstance(default, int):
        if not isinstance(value, int) or isinstance(value, bool):
            errors.append(f"{path} must be an integer")
        return
    if isinstance(default, float):
        if not isinstance(value, (int, float)) or isinstance(value, bool):
            errors.append(f"{path} must be a number")
        return
    if isinstance(default, str):
        if not isinstance(value, str):
            errors.append(f"{path} must be a string")
        return


def _initial_config() -> dict[str, Any]:
    cfg = _deep_copy(DEFAULT_CONFIG)
    data_dir = os.environ.get("NL_DATA_DIR")
    if data_dir:
        cfg["paths"]["data_dir"] = data_dir
        cfg["paths"]["state_db"] = get_state_db_path()
        cfg["paths"]["content_dir"] = os.path.join(data_dir, "content")
    return cfg


def _build_config(cfg: dict[str, Any]) -> Config:
    app_cfg = cfg.get("app") or {}
    paths_cfg = cfg.get("paths") or {}
    queue_cfg = cfg.get("queue") or {}
    workers_cfg = cfg.get("workers") or {}
    pipeline_cfg = cfg.get("pipeline") or {}
    sweep_cfg = cfg.get("retry_sweep") or {}
    http_cfg = cfg.get("http") or {}
    llm_cfg = cfg.get("llm") or {}

    app = AppConfig(name=str(app_cfg.get("name")))

    paths = PathsConfig(
        data_dir=str(paths_cfg.get("data_dir")),
        state_db=str(paths_cfg.get("state_db")),
        content_dir=str(paths_cfg.get("content_dir")),
    )

    queue = QueueConfig(
        lease_seconds=int(queue_cfg.get("lease_seconds")),
        default_max_attempts=int(queue_cfg.get("default_max_attempts")),
        default_priority=int(queue_cfg.get("default_priority")),
        poll_limit=int(queue_cfg.get("poll_limit")),
    )

    workers = WorkersConfig(
        batch_limit=int(workers_cfg.get("batch_limit")),
        direct_scan_enabled=bool(workers_cfg.get("direct_scan_enabled")),
        direct_scan_limit=int(workers_cfg.get("direct_scan_limit")),
        min_content_chars=int(workers_cfg.get("min_content_chars")),
        queue_url=os.environ.get("NL_QUEUE_URL") or str(workers_cfg.get("queue_url") or ""),
        urls={str(key): str(value) for key, value in (workers_cfg.get("urls") or {}).items()},
    )

    pipeline = PipelineConfig(
        chain_translate=bool(pipeline_cfg.get("chain_translate")),
        chain_tag=bool(pipeline_cfg.get("chain_tag")),
        priorities={
            str(key): int(value) for key, value in (pipeline_cfg.get("priorities") or {}).items()
        },
    )

    retry_sweep = RetrySweepConfig(
        window_hours=int(sweep_cfg.get("window_hours")),
        limit=int(sweep_cfg.get("limit")),
    )

    http = HttpConfig(
        timeout_seconds=int(http_cfg.get("timeout_seconds")),
        user_agent=str(http_cfg.get("user_agent")),
    )

    llm = LlmConfig(
        base_url=os.environ.get("NL_LLM_BASE_URL") or str(llm_cfg.get("base_url") or ""),
        model=str(llm_cfg.get("model")),
        embedding_model=str(llm_cfg.get("embedding_model")),
        max_retries=int(llm_cfg.get("max_retries")),
        backoff_seconds=float(llm_cfg.get("backoff_seconds")),
        timeout_seconds=int(llm_cfg.get("timeout_seconds")),
        target_language=str(llm_cfg.get("target_language")),
    )

    return Config(
        app=app,
        paths=paths,
        queue=queue,
        workers=workers,
        pipeline=pipeline,
        retry_sweep=retry_sweep,
        http=http,
        llm=llm,
    )


def _deep_copy(value: dict[str, Any]) -> dict[str, Any]:
    return json.loads(json.dumps(value))
