"""Tests for verdict classification and retry ceilings."""

import pytest

from cadence.contracts import Verdict
from cadence.errors import UnknownStageError
from cadence.governor import (
    check_threshold,
    classify_outcome,
    escalate,
    parse_verdict_tag,
    record_outcome,
)
from cadence.persistence import build_initial_state
from cadence.registry import DEFAULT_REGISTRY, StageKind


def quick_state():
    return build_initial_state("s1", "quick", ["DEV", "REVIEW", "TEST", "RETRO"], DEFAULT_REGISTRY)


def test_verdict_tag_wins_over_keywords() -> None:
    report = 'I would reject the naming.\n<!-- VERDICT: {"result": "PASS"} -->'
    outcome = classify_outcome(report, StageKind.REVIEW)
    assert outcome.verdict == Verdict.PASS
    assert outcome.source == "tag"

    outcome = classify_outcome('<!--VERDICT:{"result":"issues"}-->', StageKind.RETROSPECTIVE)
    assert outcome.verdict == Verdict.ISSUES


def test_malformed_tag_falls_back_to_heuristic() -> None:
    assert parse_verdict_tag('<!-- VERDICT: {"result": "MAYBE"} -->') is None
    assert parse_verdict_tag("<!-- VERDICT: {not json} -->") is None
    outcome = classify_outcome('<!-- VERDICT: {"result": "MAYBE"} --> tests failed', StageKind.VERIFICATION)
    assert outcome.verdict == Verdict.FAIL
    assert outcome.source == "heuristic"


@pytest.mark.parametrize(
    "report, verdict",
    [
        ("I reject this change: missing tests.", Verdict.REJECT),
        ("REJECTED", Verdict.REJECT),
        ("拒絕合併", Verdict.REJECT),
        ("No rejections, ship it.", Verdict.PASS),
        ("Not rejected. Looks good.", Verdict.PASS),
        ("No rejections from me, but security must reject the token storage.", Verdict.REJECT),
        ("LGTM", Verdict.PASS),
    ],
)
def test_review_heuristic(report, verdict) -> None:
    assert classify_outcome(report, StageKind.REVIEW).verdict == verdict


@pytest.mark.parametrize(
    "report, verdict",
    [
        ("3 tests failed", Verdict.FAIL),
        ("測試失敗", Verdict.FAIL),
        ("TypeError raised in parser", Verdict.FAIL),
        ("All 40 tests passed, 0 failures.", Verdict.PASS),
        ("Ran without failures; no errors.", Verdict.PASS),
        ("Error handling covered, error-free run.", Verdict.PASS),
        ("Documented the failure mode for timeouts.", Verdict.PASS),
        ("0 errors, but 2 assertions failed", Verdict.FAIL),
    ],
)
def test_verification_heuristic(report, verdict) -> None:
    assert classify_outcome(report, StageKind.VERIFICATION).verdict == verdict


@pytest.mark.parametrize(
    "report, verdict",
    [
        ("Found 2 issues worth a follow-up.", Verdict.ISSUES),
        ("建議優化快取策略", Verdict.ISSUES),
        ("No issues this round.", Verdict.PASS),
        ("0 issues", Verdict.PASS),
        ("No significant issues found.", Verdict.PASS),
    ],
)
def test_retrospective_heuristic(report, verdict) -> None:
    assert classify_outcome(report, StageKind.RETROSPECTIVE).verdict == verdict


@pytest.mark.parametrize("kind", [StageKind.ADVISORY, StageKind.BUILD, StageKind.PLANNING, StageKind.OTHER])
def test_kinds_without_rules_pass(kind) -> None:
    assert classify_outcome("everything failed and I reject it", kind).verdict == Verdict.PASS


def test_record_outcome_and_threshold() -> None:
    state = quick_state().model_copy(update={"fail_count": 2})
    updated = record_outcome(state, "TEST", Verdict.FAIL)
    assert updated.fail_count == 3
    assert state.fail_count == 2
    assert check_threshold(updated.fail_count, 3)
    assert not check_threshold(2, 3)


def test_record_outcome_counters_are_session_wide() -> None:
    state = quick_state()
    state = record_outcome(state, "REVIEW", Verdict.REJECT)
    state = record_outcome(state, "TEST", Verdict.FAIL)
    state = record_outcome(state, "RETRO", Verdict.ISSUES)
    state = record_outcome(state, "DEV", Verdict.PASS)
    assert (state.fail_count, state.reject_count) == (1, 1)

    with pytest.raises(UnknownStageError):
        record_outcome(state, "QA", Verdict.FAIL)


def test_escalation_is_sticky() -> None:
    state = escalate(quick_state(), "Retry limit reached")
    assert state.escalation == "Retry limit reached"
    assert escalate(state, "something else").escalation == "Retry limit reached"
