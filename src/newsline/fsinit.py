from __future__ import annotations

import os
from pathlib import Path
from typing import Iterable

from .content_store import FileContentStore


def set_umask_from_env() -> None:
    _apply_umask()


def ensure_runtime_dirs(paths: Iterable[str]) -> None:
    for path in paths:
        if not path:
            continue
        _ensure_dir(Path(path))


def build_default_paths(data_dir: str, content_dir: str) -> list[str]:
    paths = [
        data_dir,
        os.path.join(data_dir, "logs"),
        content_dir,
    ]
    for prefix in ("content", "vectors", "summaries", "translations", "tags"):
        paths.append(os.path.join(content_dir, prefix))
    return paths


def prepare_content_store(data_dir: str, content_dir: str) -> FileContentStore:
    set_umask_from_env()
    ensure_runtime_dirs(build_default_paths(data_dir, content_dir))
    return FileContentStore(content_dir)


def _apply_umask() -> None:
    umask_value = os.environ.get("NL_UMASK", "002")
    try:
        os.umask(int(umask_value, 8))
    except (ValueError, TypeError):
        os.umask(0o002)


def _ensure_dir(path: Path) -> None:
    try:
        path.mkdir(parents=True, exist_ok=True)
    except PermissionError:
        return
    _safe_chmod(path, 0o775)


def _safe_chmod(path: Path, mode: int) -> None:
    try:
        path.chmod(mode)
    except PermissionError:
        return
