"""Classify executor reports into verdicts and enforce retry ceilings."""

from __future__ import annotations

import json
import logging
import re
from typing import Iterable, Literal, Optional, Pattern, Sequence

from pydantic import BaseModel, ValidationError, field_validator

from .contracts import SessionWorkflowState, Verdict
from .errors import UnknownStageError
from .registry import StageKind

logger = logging.getLogger(__name__)

VERDICT_TAG_RE = re.compile(r"<!--\s*VERDICT:\s*(\{[^}]+\})\s*-->")


class VerdictTag(BaseModel):
    """Structured verdict embedded in a report as an HTML comment."""

    result: Verdict

    @field_validator("result", mode="before")
    @classmethod
    def _normalise(cls, v):
        return v.strip().lower() if isinstance(v, str) else v


class Outcome(BaseModel):
    verdict: Verdict
    source: Literal["tag", "heuristic"]


class KeywordRule(BaseModel):
    """A verdict triggered by keywords that survive negation masking."""

    verdict: Verdict
    keywords: Sequence[str]
    negations: Sequence[str] = ()

    def matches(self, text: str) -> bool:
        masked = _mask(text, self.negations)
        return any(keyword in masked for keyword in self.keywords)


def _phrase_pattern(phrase: str) -> Pattern[str]:
    # Latin phrases only match from a word start; CJK phrases match anywhere.
    prefix = r"\b" if phrase[:1].isascii() and phrase[:1].isalnum() else ""
    return re.compile(prefix + r"\s+".join(re.escape(word) for word in phrase.split()))


def _mask(text: str, phrases: Iterable[str]) -> str:
    for phrase in phrases:
        text = _phrase_pattern(phrase).sub(lambda m: " " * len(m.group(0)), text)
    return text


REVIEW_RULES = (
    KeywordRule(
        verdict=Verdict.REJECT,
        keywords=("reject", "拒絕"),
        negations=("no reject", "not reject"),
    ),
)

VERIFICATION_RULES = (
    KeywordRule(
        verdict=Verdict.FAIL,
        keywords=("fail", "失敗"),
        negations=("no fail", "0 fail", "without fail", "failure mode"),
    ),
    KeywordRule(
        verdict=Verdict.FAIL,
        keywords=("error",),
        negations=(
            "0 error",
            "no error",
            "without error",
            "error handling",
            "error recovery",
            "error-free",
            "error free",
        ),
    ),
)

RETROSPECTIVE_RULES = (
    KeywordRule(
        verdict=Verdict.ISSUES,
        keywords=("issues", "改善建議", "建議優化"),
        negations=("no issues", "0 issues", "no significant issues", "without issues"),
    ),
)

HEURISTICS = {
    StageKind.REVIEW: REVIEW_RULES,
    StageKind.VERIFICATION: VERIFICATION_RULES,
    StageKind.RETROSPECTIVE: RETROSPECTIVE_RULES,
}


def parse_verdict_tag(report: str) -> Optional[Verdict]:
    """Return the verdict carried by a ``<!-- VERDICT: {...} -->`` tag, if any."""

    match = VERDICT_TAG_RE.search(report)
    if not match:
        return None
    try:
        return VerdictTag(**json.loads(match.group(1))).result
    except (json.JSONDecodeError, TypeError, ValidationError) as exc:
        logger.warning(f"Ignoring malformed verdict tag {match.group(1)!r}: {exc}")
        return None


def classify_outcome(report: str, stage_kind: StageKind) -> Outcome:
    """Classify a free-text executor report for a stage of ``stage_kind``.

    A structured verdict tag always wins. Without one, the keyword rules for
    the stage kind decide; kinds without rules (advisory, planning, build,
    documentation, other) pass.
    """

    tagged = parse_verdict_tag(report)
    if tagged is not None:
        return Outcome(verdict=tagged, source="tag")

    text = report.lower()
    for rule in HEURISTICS.get(StageKind(stage_kind), ()):
        if rule.matches(text):
            return Outcome(verdict=rule.verdict, source="heuristic")
    return Outcome(verdict=Verdict.PASS, source="heuristic")


def record_outcome(
    state: SessionWorkflowState, stage_key: str, verdict: Verdict
) -> SessionWorkflowState:
    """Bump the session-wide fail or reject counter for ``verdict``."""

    if stage_key not in state.stages:
        raise UnknownStageError(
            f"Stage {stage_key!r} is not part of session {state.session_id}"
        )
    verdict = Verdict(verdict)
    if verdict not in (Verdict.FAIL, Verdict.REJECT):
        return state
    state = state.model_copy(deep=True)
    if verdict == Verdict.FAIL:
        state.fail_count += 1
    else:
        state.reject_count += 1
    return state


def check_threshold(counter: int, max_retries: int) -> bool:
    """True once ``counter`` has reached ``max_retries``."""
    return counter >= max_retries


def escalate(state: SessionWorkflowState, reason: str) -> SessionWorkflowState:
    """Flag the session for human intervention. The first reason sticks."""

    if state.escalation:
        return state
    state = state.model_copy(deep=True)
    state.escalation = reason
    logger.error(f"Session {state.session_id} escalated: {reason}")
    return state
