"""QA judge contract: parsing and validation of judge verdicts.

A verdict is never trusted as returned. Passing verdicts must carry at least
three evidence-bearing approval reasons, failing verdicts must name failure
categories from the closed code set and explain them. Anything else is
downgraded to a failing verdict that needs a human, and output that cannot be
parsed at all is recorded as a zero-confidence failure.
"""

import json
import logging
import re
from typing import Any, Dict, List, Union

from pydantic import ValidationError

from app.errors import QAParseError
from app.schemas.qa import QA_CATEGORY_CODES, QACategory, QAVerdict, RetrySuggestion

logger = logging.getLogger(__name__)

MIN_APPROVAL_REASONS = 3
# Shorter statements cannot reference concrete evidence
MIN_REASON_LENGTH = 12

_FENCE_RE = re.compile(r"^```(?:json)?\s*|\s*```$", re.IGNORECASE)


def _strip_fences(raw: str) -> str:
    """Remove markdown code fences some models wrap JSON in."""
    return _FENCE_RE.sub("", raw.strip())


def _specific_reasons(reasons: List[str]) -> List[str]:
    return [r for r in reasons if isinstance(r, str) and len(r.strip()) >= MIN_REASON_LENGTH]


def _downgrade(verdict: QAVerdict, violation: str) -> QAVerdict:
    """Turn a contract-violating verdict into a fail that needs a human."""
    categories = [c for c in verdict.failure_categories if c in QA_CATEGORY_CODES]
    if not categories:
        categories = [QACategory.SCHEMA_INVALID.value]

    logger.warning(f"QA verdict downgraded to needs_human: {violation}")

    return verdict.model_copy(
        update={
            "passed": False,
            "failure_categories": categories,
            "failure_explanation": verdict.failure_explanation or violation,
            "recommended_action": "needs_human",
            "retry_suggestion": RetrySuggestion(type="manual_review", instruction=""),
            "contract_violations": verdict.contract_violations + [violation],
        }
    )


def enforce_contract(verdict: QAVerdict) -> QAVerdict:
    """
    Apply the approval/failure evidence rules to a parsed verdict.

    Args:
        verdict: Verdict as parsed from the judge

    Returns:
        The verdict unchanged (with a recommended action filled in), or a
        downgraded failing verdict with recommended_action='needs_human'
    """
    if verdict.passed:
        reasons = _specific_reasons(verdict.approval_reasons)
        if len(reasons) < MIN_APPROVAL_REASONS:
            return _downgrade(
                verdict,
                f"pass verdict has {len(reasons)} specific approval reasons, "
                f"at least {MIN_APPROVAL_REASONS} required",
            )
        return verdict.model_copy(update={"approval_reasons": reasons, "recommended_action": "proceed"})

    unknown = [c for c in verdict.failure_categories if c not in QA_CATEGORY_CODES]
    if not verdict.failure_categories:
        return _downgrade(verdict, "fail verdict has no failure_categories")
    if unknown:
        return _downgrade(verdict, f"fail verdict has categories outside the closed set: {unknown}")
    if not (verdict.failure_explanation or "").strip():
        return _downgrade(verdict, "fail verdict has no failure_explanation")

    if verdict.recommended_action is None:
        action = "needs_human" if verdict.retry_suggestion.type == "manual_review" else "retry"
        return verdict.model_copy(update={"recommended_action": action})
    return verdict


def parse_judge_output(data: Union[str, Dict[str, Any]]) -> QAVerdict:
    """
    Parse raw judge output (JSON text or decoded dict) into a validated verdict.

    Raises:
        QAParseError: If the output is not JSON or does not match the schema
    """
    if isinstance(data, str):
        try:
            data = json.loads(_strip_fences(data))
        except json.JSONDecodeError as e:
            raise QAParseError(f"Judge output is not valid JSON: {e.msg}")

    if not isinstance(data, dict):
        raise QAParseError("Judge output must be a JSON object")

    try:
        verdict = QAVerdict.model_validate(data)
    except ValidationError as e:
        fields = sorted({".".join(str(p) for p in err["loc"]) for err in e.errors()})
        raise QAParseError(f"Judge output does not match verdict schema: {', '.join(fields)}")

    return enforce_contract(verdict)


def verdict_for_parse_failure(reason: str) -> QAVerdict:
    """Failing, zero-confidence verdict recorded for unparseable judge output."""
    return QAVerdict(
        passed=False,
        score=0,
        confidence=0.0,
        issues=[],
        retry_suggestion=RetrySuggestion(type="manual_review", instruction=""),
        approval_reasons=[],
        failure_categories=[QACategory.SCHEMA_INVALID.value],
        failure_explanation=f"Judge output could not be parsed: {reason}",
        recommended_action="needs_human",
        contract_violations=[reason],
    )


def judge_output(data: Union[str, Dict[str, Any]]) -> QAVerdict:
    """Parse judge output, recording malformed output as a failing verdict."""
    try:
        return parse_judge_output(data)
    except QAParseError as e:
        logger.warning(f"QA parse failed: {e.message}")
        return verdict_for_parse_failure(e.message)
