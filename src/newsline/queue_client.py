from __future__ import annotations

import json
import os
import urllib.error
import urllib.request
from typing import Any

from . import jobqueue
from .config import Config
from .models import Job, JobPayload, payload_to_dict


class QueueClientError(RuntimeError):
    pass


class LocalQueue:
    """Queue operations against the shared database connection."""

    def __init__(self, conn: Any, config: Config | None = None) -> None:
        self.conn = conn
        self.config = config

    def create(self, job_type: str, payload: JobPayload, priority: int | None = None) -> str:
        max_attempts = None
        if self.config is not None:
            max_attempts = self.config.queue.default_max_attempts
            if priority is None:
                priority = self.config.queue.default_priority
        return jobqueue.create_job(
            self.conn, job_type, payload, priority=priority, max_attempts=max_attempts
        )

    def claim(self, job_type: str, limit: int, worker_id: str) -> list[Job]:
        return jobqueue.claim_jobs_for_worker(self.conn, job_type, limit, worker_id)

    def claim_job(self, job_id: str, worker_id: str) -> Job | None:
        return jobqueue.claim_job(self.conn, job_id, worker_id)

    def complete(self, job_id: str) -> bool:
        return jobqueue.complete_job(self.conn, job_id)

    def fail(self, job_id: str, error: str, permanent: bool = False) -> None:
        jobqueue.fail_job(self.conn, job_id, error, permanent=permanent)


class HttpQueueClient:
    """Queue operations through a remote queue API."""

    def __init__(
        self,
        base_url: str,
        timeout_seconds: int = 30,
        api_token: str | None = None,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self.timeout_seconds = timeout_seconds
        self.api_token = api_token if api_token is not None else os.environ.get("NL_API_TOKEN")

    def create(self, job_type: str, payload: JobPayload, priority: int | None = None) -> str:
        body: dict[str, Any] = {"type": job_type, "payload": payload_to_dict(payload)}
        if priority is not None:
            body["priority"] = priority
        data = self._request("POST", "/jobs", body)
        job_id = data.get("job_id")
        if not job_id:
            raise QueueClientError("queue_missing_job_id")
        return str(job_id)

    def claim(self, job_type: str, limit: int, worker_id: str) -> list[Job]:
        data = self._request(
            "POST",
            "/workers/poll",
            {"worker_type": job_type, "limit": limit, "worker_id": worker_id},
        )
        return [_job_from_dict(item) for item in data.get("jobs") or []]

    def claim_job(self, job_id: str, worker_id: str) -> Job | None:
        data = self._request(
            "POST", f"/jobs/{job_id}/claim", {"worker_id": worker_id}
        )
        job = data.get("job")
        return _job_from_dict(job) if job else None

    def complete(self, job_id: str) -> bool:
        data = self._request("POST", f"/jobs/{job_id}/complete", None)
        return bool(data.get("success"))

    def fail(self, job_id: str, error: str, permanent: bool = False) -> None:
        self._request(
            "POST", f"/jobs/{job_id}/fail", {"error": error, "permanent": permanent}
        )

    def _request(self, method: str, path: str, payload: dict[str, Any] | None) -> dict[str, Any]:
        data = json.dumps(payload).encode("utf-8") if payload is not None else None
        request = urllib.request.Request(self.base_url + path, data=data, method=method)
        request.add_header("Content-Type", "application/json")
        if self.api_token:
            request.add_header("X-Api-Token", self.api_token)
        try:
            with urllib.request.urlopen(request, timeout=self.timeout_seconds) as response:
                raw = response.read().decode("utf-8")
        except urllib.error.HTTPError as exc:
            raw = exc.read().decode("utf-8", errors="ignore")
            raise QueueClientError(f"http_error {exc.code}: {raw[:500]}") from exc
        except urllib.error.URLError as exc:
            raise QueueClientError(f"network_error: {exc}") from exc
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise QueueClientError(f"invalid_json: {raw[:200]}") from exc


def build_queue(conn: Any, config: Config):
    if config.workers.queue_url:
        return HttpQueueClient(config.workers.queue_url, config.http.timeout_seconds)
    return LocalQueue(conn, config)


def _job_from_dict(data: dict[str, Any]) -> Job:
    max_attempts = data.get("max_attempts")
    priority = data.get("priority")
    return Job(
        id=str(data["id"]),
        job_type=str(data["job_type"]),
        status=str(data["status"]),
        payload=dict(data.get("payload") or {}),
        article_id=data.get("article_id"),
        attempts=int(data.get("attempts") or 0),
        max_attempts=jobqueue.DEFAULT_MAX_ATTEMPTS if max_attempts is None else int(max_attempts),
        priority=jobqueue.DEFAULT_PRIORITY if priority is None else int(priority),
        created_at=str(data.get("created_at") or ""),
        started_at=data.get("started_at"),
        completed_at=data.get("completed_at"),
        assigned_worker=data.get("assigned_worker"),
        error=data.get("error"),
    )
