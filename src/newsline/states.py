from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .models import Article


class InvalidTransition(ValueError):
    pass


class ArticleStatus(str, Enum):
    PENDING = "pending"
    EXTRACTING = "extracting"
    EXTRACTED = "extracted"
    EXTRACTION_FAILED = "extraction_failed"
    EXTRACTION_EXCEPTION = "extraction_exception"
    VECTORIZING = "vectorizing"
    VECTORIZED = "vectorized"
    VECTORIZATION_FAILED = "vectorization_failed"
    SUMMARIZING = "summarizing"
    SUMMARIZED = "summarized"
    SUMMARIZATION_FAILED = "summarization_failed"
    TRANSLATING = "translating"
    TRANSLATED = "translated"
    TRANSLATION_FAILED = "translation_failed"
    TAGGING = "tagging"
    TAGGED = "tagged"
    TAGGING_FAILED = "tagging_failed"


class Lane(str, Enum):
    MAIN = "main"
    TRANSLATION = "translation"
    TAGGING = "tagging"


# (status column, holder column) per lane
LANE_COLUMNS: dict[Lane, tuple[str, str]] = {
    Lane.MAIN: ("status", "status_job_id"),
    Lane.TRANSLATION: ("translation_status", "translation_job_id"),
    Lane.TAGGING: ("tag_status", "tag_job_id"),
}


class Decision(str, Enum):
    RUN = "run"
    SKIP_DONE = "skip_done"
    SKIP_BUSY = "skip_busy"
    NOT_READY = "not_ready"


S = ArticleStatus

LANE_RANKS: dict[Lane, dict[ArticleStatus, int]] = {
    Lane.MAIN: {
        S.PENDING: 0,
        S.EXTRACTING: 1,
        S.EXTRACTION_FAILED: 1,
        S.EXTRACTION_EXCEPTION: 1,
        S.EXTRACTED: 2,
        S.VECTORIZING: 3,
        S.VECTORIZATION_FAILED: 3,
        S.VECTORIZED: 4,
        S.SUMMARIZING: 5,
        S.SUMMARIZATION_FAILED: 5,
        S.SUMMARIZED: 6,
    },
    Lane.TRANSLATION: {
        S.PENDING: 0,
        S.TRANSLATING: 1,
        S.TRANSLATION_FAILED: 1,
        S.TRANSLATED: 2,
    },
    Lane.TAGGING: {
        S.PENDING: 0,
        S.TAGGING: 1,
        S.TAGGING_FAILED: 1,
        S.TAGGED: 2,
    },
}

TRANSITIONS: dict[ArticleStatus, frozenset[ArticleStatus]] = {
    S.PENDING: frozenset({S.EXTRACTING, S.TRANSLATING, S.TAGGING}),
    S.EXTRACTING: frozenset(
        {S.EXTRACTING, S.EXTRACTED, S.EXTRACTION_FAILED, S.EXTRACTION_EXCEPTION}
    ),
    S.EXTRACTION_FAILED: frozenset({S.EXTRACTING}),
    S.EXTRACTION_EXCEPTION: frozenset({S.EXTRACTING}),
    S.EXTRACTED: frozenset({S.VECTORIZING}),
    S.VECTORIZING: frozenset({S.VECTORIZING, S.VECTORIZED, S.VECTORIZATION_FAILED}),
    S.VECTORIZATION_FAILED: frozenset({S.VECTORIZING}),
    S.VECTORIZED: frozenset({S.SUMMARIZING}),
    S.SUMMARIZING: frozenset({S.SUMMARIZING, S.SUMMARIZED, S.SUMMARIZATION_FAILED}),
    S.SUMMARIZATION_FAILED: frozenset({S.SUMMARIZING}),
    S.SUMMARIZED: frozenset(),
    S.TRANSLATING: frozenset({S.TRANSLATING, S.TRANSLATED, S.TRANSLATION_FAILED}),
    S.TRANSLATION_FAILED: frozenset({S.TRANSLATING}),
    S.TRANSLATED: frozenset(),
    S.TAGGING: frozenset({S.TAGGING, S.TAGGED, S.TAGGING_FAILED}),
    S.TAGGING_FAILED: frozenset({S.TAGGING}),
    S.TAGGED: frozenset(),
}


@dataclass(frozen=True)
class StageStates:
    stage: str
    lane: Lane
    running: ArticleStatus
    done: ArticleStatus
    failed: ArticleStatus
    exception: ArticleStatus
    ready_from: frozenset[ArticleStatus]
    requires_main: ArticleStatus | None = None

    @property
    def retry_from(self) -> frozenset[ArticleStatus]:
        return frozenset({self.failed, self.exception})


STAGE_STATES: dict[str, StageStates] = {
    "extract": StageStates(
        stage="extract",
        lane=Lane.MAIN,
        running=S.EXTRACTING,
        done=S.EXTRACTED,
        failed=S.EXTRACTION_FAILED,
        exception=S.EXTRACTION_EXCEPTION,
        ready_from=frozenset({S.PENDING}),
    ),
    "vectorize": StageStates(
        stage="vectorize",
        lane=Lane.MAIN,
        running=S.VECTORIZING,
        done=S.VECTORIZED,
        failed=S.VECTORIZATION_FAILED,
        exception=S.VECTORIZATION_FAILED,
        ready_from=frozenset({S.EXTRACTED}),
    ),
    "summarize": StageStates(
        stage="summarize",
        lane=Lane.MAIN,
        running=S.SUMMARIZING,
        done=S.SUMMARIZED,
        failed=S.SUMMARIZATION_FAILED,
        exception=S.SUMMARIZATION_FAILED,
        ready_from=frozenset({S.VECTORIZED}),
    ),
    "translate": StageStates(
        stage="translate",
        lane=Lane.TRANSLATION,
        running=S.TRANSLATING,
        done=S.TRANSLATED,
        failed=S.TRANSLATION_FAILED,
        exception=S.TRANSLATION_FAILED,
        ready_from=frozenset({S.PENDING}),
        requires_main=S.EXTRACTED,
    ),
    "tag": StageStates(
        stage="tag",
        lane=Lane.TAGGING,
        running=S.TAGGING,
        done=S.TAGGED,
        failed=S.TAGGING_FAILED,
        exception=S.TAGGING_FAILED,
        ready_from=frozenset({S.PENDING}),
        requires_main=S.SUMMARIZED,
    ),
}

FAILED_STATUSES: frozenset[ArticleStatus] = frozenset(
    status for states in STAGE_STATES.values() for status in states.retry_from
)


def coerce_status(value: str | ArticleStatus | None) -> ArticleStatus:
    if value is None or value == "":
        return S.PENDING
    if isinstance(value, ArticleStatus):
        return value
    try:
        return ArticleStatus(value)
    except ValueError as exc:
        raise InvalidTransition(f"unknown article status {value!r}") from exc


def rank(lane: Lane, status: str | ArticleStatus | None) -> int:
    current = coerce_status(status)
    ranks = LANE_RANKS[lane]
    if current not in ranks:
        raise InvalidTransition(f"{current.value} is not a {lane.value} status")
    return ranks[current]


def validate_transition(
    current: str | ArticleStatus | None, target: str | ArticleStatus
) -> ArticleStatus:
    source = coerce_status(current)
    destination = coerce_status(target)
    if destination not in TRANSITIONS.get(source, frozenset()):
        raise InvalidTransition(f"{source.value} -> {destination.value} is not allowed")
    return destination


def is_done(states: StageStates, status: str | ArticleStatus | None) -> bool:
    return rank(states.lane, status) >= rank(states.lane, states.done)


def lane_status(article: Article, lane: Lane) -> ArticleStatus:
    column, _ = LANE_COLUMNS[lane]
    return coerce_status(getattr(article, column))


def lane_holder(article: Article, lane: Lane) -> str | None:
    _, column = LANE_COLUMNS[lane]
    return getattr(article, column)


def decide(states: StageStates, article: Article, job_id: str | None) -> Decision:
    """Decide what a stage should do with ``article`` right now.

    A running status held by the same job id means the job's lease expired
    and the same job was reclaimed, so it resumes. Failed statuses are
    runnable here; callers that must not revive sticky failures (direct
    scan) filter on ``ready_from`` before asking.
    """
    current = lane_status(article, states.lane)
    if is_done(states, current):
        return Decision.SKIP_DONE
    if current == states.running:
        holder = lane_holder(article, states.lane)
        if job_id is not None and holder == job_id:
            return Decision.RUN
        return Decision.SKIP_BUSY
    if states.requires_main is not None:
        if rank(Lane.MAIN, article.status) < rank(Lane.MAIN, states.requires_main):
            return Decision.NOT_READY
    if current in states.ready_from or current in states.retry_from:
        return Decision.RUN
    return Decision.NOT_READY
