from __future__ import annotations

import json
import os
import tempfile
from typing import Any

from .utils import json_dumps


class ContentMissingError(LookupError):
    pass


def content_key(article_id: int) -> str:
    return f"content/article_{article_id}.json"


def vectors_key(article_id: int) -> str:
    return f"vectors/article_{article_id}.json"


def summary_key(article_id: int) -> str:
    return f"summaries/article_{article_id}.json"


def translation_key(article_id: int) -> str:
    return f"translations/article_{article_id}.json"


def tags_key(article_id: int) -> str:
    return f"tags/article_{article_id}.json"


class FileContentStore:
    """JSON blobs on a local filesystem addressed by relative keys."""

    def __init__(self, root: str) -> None:
        self.root = os.path.abspath(root)

    def path_for(self, key: str) -> str:
        if not key or key.startswith("/") or "\\" in key:
            raise ValueError(f"invalid content key {key!r}")
        parts = key.split("/")
        if any(part in ("", ".", "..") for part in parts):
            raise ValueError(f"invalid content key {key!r}")
        return os.path.join(self.root, *parts)

    def put_json(self, key: str, obj: Any) -> str:
        path = self.path_for(key)
        directory = os.path.dirname(path)
        os.makedirs(directory, exist_ok=True)
        fd, tmp_path = tempfile.mkstemp(prefix=".tmp-", suffix=".json", dir=directory)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(json_dumps(obj))
            os.replace(tmp_path, path)
        except Exception:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise
        return key

    def get_json(self, key: str) -> Any:
        path = self.path_for(key)
        try:
            with open(path, "r", encoding="utf-8") as handle:
                return json.load(handle)
        except FileNotFoundError as exc:
            raise ContentMissingError(key) from exc

    def exists(self, key: str) -> bool:
        return os.path.isfile(self.path_for(key))

    def delete(self, key: str) -> bool:
        try:
            os.unlink(self.path_for(key))
        except FileNotFoundError:
            return False
        return True
