import dataclasses

import pytest

from newsline.models import Article
from newsline.states import (
    STAGE_STATES,
    ArticleStatus,
    Decision,
    InvalidTransition,
    Lane,
    coerce_status,
    decide,
    rank,
    validate_transition,
)

BASE = Article(
    id=42,
    url="https://example.com/42",
    source="example",
    title=None,
    status="pending",
    status_job_id=None,
    translation_status="pending",
    translation_job_id=None,
    tag_status="pending",
    tag_job_id=None,
    content_key=None,
    translated_content_key=None,
    detected_language=None,
    error=None,
    created_at="2026-01-01T00:00:00+00:00",
    updated_at="2026-01-01T00:00:00+00:00",
)


def _article(**changes) -> Article:
    return dataclasses.replace(BASE, **changes)


def test_null_status_reads_as_pending():
    assert coerce_status(None) is ArticleStatus.PENDING
    assert coerce_status("") is ArticleStatus.PENDING
    with pytest.raises(InvalidTransition):
        coerce_status("published")


def test_main_lane_is_monotonic():
    order = ["pending", "extracting", "extracted", "vectorizing", "vectorized", "summarizing", "summarized"]
    ranks = [rank(Lane.MAIN, status) for status in order]
    assert ranks == sorted(ranks)
    assert len(set(ranks)) == len(ranks)
    assert rank(Lane.MAIN, "extraction_failed") == rank(Lane.MAIN, "extracting")


def test_allowed_transitions():
    assert validate_transition("pending", "extracting") is ArticleStatus.EXTRACTING
    assert validate_transition("extracting", "extracted") is ArticleStatus.EXTRACTED
    assert validate_transition("extraction_exception", "extracting") is ArticleStatus.EXTRACTING
    assert validate_transition("vectorization_failed", "vectorizing") is ArticleStatus.VECTORIZING
    assert validate_transition(None, "translating") is ArticleStatus.TRANSLATING


@pytest.mark.parametrize(
    "current,target",
    [
        ("summarized", "extracting"),
        ("extracted", "summarizing"),
        ("vectorized", "extracted"),
        ("pending", "extracted"),
        ("tagged", "tagging"),
    ],
)
def test_rejected_transitions(current, target):
    with pytest.raises(InvalidTransition):
        validate_transition(current, target)


def test_decide_runs_from_ready_status():
    assert decide(STAGE_STATES["extract"], _article(), "job_1") is Decision.RUN
    assert decide(STAGE_STATES["vectorize"], _article(status="extracted"), "job_1") is Decision.RUN


def test_decide_skips_finished_work():
    article = _article(status="summarized")
    assert decide(STAGE_STATES["extract"], article, "job_1") is Decision.SKIP_DONE
    assert decide(STAGE_STATES["vectorize"], article, "job_1") is Decision.SKIP_DONE
    assert decide(STAGE_STATES["summarize"], article, "job_1") is Decision.SKIP_DONE


def test_decide_busy_unless_same_job_resumes():
    article = _article(status="extracting", status_job_id="job_1")
    assert decide(STAGE_STATES["extract"], article, "job_2") is Decision.SKIP_BUSY
    assert decide(STAGE_STATES["extract"], article, None) is Decision.SKIP_BUSY
    assert decide(STAGE_STATES["extract"], article, "job_1") is Decision.RUN


def test_decide_not_ready_before_prerequisite():
    assert decide(STAGE_STATES["summarize"], _article(status="extracted"), "job_1") is Decision.NOT_READY
    assert decide(STAGE_STATES["tag"], _article(status="vectorized"), "job_1") is Decision.NOT_READY
    assert decide(STAGE_STATES["translate"], _article(status="pending"), "job_1") is Decision.NOT_READY


def test_decide_retries_failed_status():
    article = _article(status="extraction_exception")
    assert decide(STAGE_STATES["extract"], article, "job_1") is Decision.RUN
    assert decide(STAGE_STATES["vectorize"], article, "job_1") is Decision.NOT_READY


def test_side_lanes_are_independent_of_main_progress():
    article = _article(status="summarized", translation_status="translating", translation_job_id="job_t")
    assert decide(STAGE_STATES["tag"], article, "job_g") is Decision.RUN
    assert decide(STAGE_STATES["translate"], article, "job_other") is Decision.SKIP_BUSY
    tagged = _article(status="summarized", tag_status="tagged")
    assert decide(STAGE_STATES["tag"], tagged, "job_g") is Decision.SKIP_DONE
    assert decide(STAGE_STATES["translate"], tagged, "job_t") is Decision.RUN
