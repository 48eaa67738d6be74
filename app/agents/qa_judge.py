"""QA judge agent: asks a multimodal model for a structured verdict on a candidate."""

import json
import logging
from typing import Any, Dict, List

from app.agents.base import BaseAgent
from app.config import settings
from app.schemas.agents import JudgeRequest
from app.schemas.qa import QA_CATEGORY_CODES
from app.services.qa_contract import judge_output

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are a STRICT quality assurance system for architectural visualization outputs.
QA MUST NEVER SILENTLY APPROVE.

Inspect the candidate image against its declared category and context.

OUTPUT ONLY VALID JSON (no markdown, no code blocks) with these fields:
{{
  "pass": true | false,
  "score": 0-100,
  "confidence": 0.0-1.0,
  "issues": [{{"category": "<CODE>", "severity": "low|medium|high|critical", "evidence": "<what you saw and where>"}}],
  "retry_suggestion": {{"type": "prompt_delta|settings_delta|seed_change|input_change|manual_review", "instruction": "<short>"}},
  "approval_reasons": ["MANDATORY FOR PASS: at least 3 specific visual observations with location details"],
  "failure_categories": ["MANDATORY FOR FAIL: codes from the list below"],
  "failure_explanation": "MANDATORY FOR FAIL: evidence for each failure category"
}}

Allowed category codes (use ONLY these exact strings):
{codes}

A pass without 3 specific approval reasons is INVALID and will be treated as a failure."""


class QAJudgeAgent(BaseAgent):
    """Agent for judging one candidate artifact."""

    MODEL = settings.JUDGE_MODEL

    def build_messages(self, request: JudgeRequest) -> List[Dict[str, Any]]:
        """System contract plus a user turn carrying the image reference and context."""
        system = SYSTEM_PROMPT.format(codes=", ".join(sorted(QA_CATEGORY_CODES)))

        text = f"Category: {request.category}\nContext: {json.dumps(request.context, sort_keys=True, default=str)}"
        if request.calibration_hint is not None:
            text += f"\nCalibration notes: {json.dumps(request.calibration_hint, sort_keys=True, default=str)}"

        return [
            {"role": "system", "content": system},
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": text},
                    {"type": "image_url", "image_url": {"url": request.artifact_ref}},
                ],
            },
        ]

    def _run(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Judge the candidate; malformed output becomes a failing verdict."""
        request = JudgeRequest(**payload)
        model = request.model or self.MODEL

        response = self.llm.chat_completion(
            model=model,
            messages=self.build_messages(request),
            temperature=0.0,
            max_tokens=2000,
            json_mode=True,
        )

        verdict = judge_output(response)
        logger.info(
            f"QA verdict for asset {request.asset_id}: pass={verdict.passed} "
            f"score={verdict.score} confidence={verdict.confidence}"
        )
        return {"verdict": verdict, "model": model}

    def _validate(self, result: Dict[str, Any]) -> bool:
        return result.get("verdict") is not None
