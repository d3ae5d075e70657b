from __future__ import annotations

import dataclasses
from dataclasses import dataclass
from typing import Any, Union

JOB_STATUSES = ("pending", "processing", "completed", "failed")


class PayloadError(ValueError):
    pass


@dataclass(frozen=True)
class ExtractPayload:
    article_id: int
    url: str
    source: str | None = None


@dataclass(frozen=True)
class VectorizePayload:
    article_id: int
    content_key: str


@dataclass(frozen=True)
class SummarizePayload:
    article_id: int
    content_key: str


@dataclass(frozen=True)
class TranslatePayload:
    article_id: int
    content_key: str
    force_translate: bool = False


@dataclass(frozen=True)
class TagPayload:
    article_id: int
    content_key: str


JobPayload = Union[
    ExtractPayload, VectorizePayload, SummarizePayload, TranslatePayload, TagPayload
]

PAYLOAD_TYPES: dict[str, type] = {
    "extract": ExtractPayload,
    "vectorize": VectorizePayload,
    "summarize": SummarizePayload,
    "translate": TranslatePayload,
    "tag": TagPayload,
}

JOB_TYPES = tuple(PAYLOAD_TYPES)


def parse_payload(job_type: str, data: Any) -> JobPayload:
    """Build the typed payload for ``job_type`` from a decoded JSON object.

    Unknown keys are ignored so older producers can keep sending extra
    fields; missing or mistyped required fields raise ``PayloadError``.
    """
    payload_cls = PAYLOAD_TYPES.get(job_type)
    if payload_cls is None:
        raise PayloadError(f"unknown job type {job_type!r}")
    if dataclasses.is_dataclass(data) and not isinstance(data, type):
        if not isinstance(data, payload_cls):
            raise PayloadError(
                f"{job_type} expects {payload_cls.__name__}, got {type(data).__name__}"
            )
        return data
    if not isinstance(data, dict):
        raise PayloadError(f"{job_type} payload must be an object")
    values: dict[str, Any] = {}
    for field in dataclasses.fields(payload_cls):
        if field.name not in data or data[field.name] is None:
            if field.default is dataclasses.MISSING:
                raise PayloadError(f"{job_type} payload requires {field.name}")
            continue
        values[field.name] = _coerce(job_type, field.name, field.type, data[field.name])
    return payload_cls(**values)


def _coerce(job_type: str, name: str, annotation: Any, value: Any) -> Any:
    expected = str(annotation)
    if expected == "int":
        if isinstance(value, bool):
            raise PayloadError(f"{job_type}.{name} must be an integer")
        try:
            return int(value)
        except (TypeError, ValueError) as exc:
            raise PayloadError(f"{job_type}.{name} must be an integer") from exc
    if expected == "bool":
        if not isinstance(value, bool):
            raise PayloadError(f"{job_type}.{name} must be a boolean")
        return value
    if not isinstance(value, str) or not value.strip():
        raise PayloadError(f"{job_type}.{name} must be a non-empty string")
    return value


def payload_to_dict(payload: JobPayload) -> dict[str, Any]:
    return dataclasses.asdict(payload)


@dataclass(frozen=True)
class Job:
    id: str
    job_type: str
    status: str
    payload: dict[str, Any]
    article_id: int | None
    attempts: int
    max_attempts: int
    priority: int
    created_at: str
    started_at: str | None
    completed_at: str | None
    assigned_worker: str | None
    error: str | None

    def typed_payload(self) -> JobPayload:
        return parse_payload(self.job_type, self.payload)

    def to_dict(self) -> dict[str, Any]:
        return dataclasses.asdict(self)


@dataclass(frozen=True)
class Article:
    id: int
    url: str
    source: str | None
    title: str | None
    status: str | None
    status_job_id: str | None
    translation_status: str | None
    translation_job_id: str | None
    tag_status: str | None
    tag_job_id: str | None
    content_key: str | None
    translated_content_key: str | None
    detected_language: str | None
    error: str | None
    created_at: str
    updated_at: str
