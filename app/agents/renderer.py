"""Render agent: builds the generation prompt and calls the image model."""

import logging
from typing import Any, Dict, List, Optional

from app.agents.base import BaseAgent
from app.config import settings
from app.models.asset import OPPOSITE
from app.models.run import PipelineRun
from app.models.step import StepOutput
from app.schemas.agents import GenerationRequest, GenerationResult

logger = logging.getLogger(__name__)

OPPOSITE_VIEW_CONSTRAINT = (
    "Render the same space from the opposite camera position, facing back toward the first view. "
    "Keep every wall, opening, material and furniture item consistent with the anchor image."
)


class RenderAgent(BaseAgent):
    """Agent for generating one candidate artifact."""

    MODEL = settings.GENERATION_MODEL

    def build_prompt(self, request: GenerationRequest, kind: str, adjustments: List[str]) -> str:
        """Base prompt followed by closed-vocabulary constraint sentences."""
        constraints = list(adjustments)
        if kind == OPPOSITE:
            constraints.insert(0, OPPOSITE_VIEW_CONSTRAINT)

        if not constraints:
            return request.prompt

        lines = "\n".join(f"- {c}" for c in constraints)
        return f"{request.prompt}\n\nCONSTRAINTS:\n{lines}"

    def _references(self, run_id: str, step_index: int, anchor_ref: Optional[str] = None) -> List[str]:
        """Source image, previous step's artifact and the Primary anchor, in that order."""
        refs: List[str] = []
        run = self.db.query(PipelineRun).filter(PipelineRun.run_id == run_id).first()
        if run and run.source_ref:
            refs.append(run.source_ref)

        if step_index > 0:
            previous = (
                self.db.query(StepOutput)
                .filter(
                    StepOutput.run_id == run_id,
                    StepOutput.step_index < step_index,
                    StepOutput.artifact_ref.isnot(None),
                )
                .order_by(StepOutput.step_index.desc())
                .first()
            )
            if previous:
                refs.append(previous.artifact_ref)

        if anchor_ref:
            refs.append(anchor_ref)
        return refs

    def _run(self, payload: Dict[str, Any]) -> Dict[str, Any]:
        """Generate an artifact for the asset described by payload."""
        delta = payload.get("retry_delta") or {}
        request = GenerationRequest(
            asset_id=payload["asset_id"],
            step_index=payload["step_index"],
            prompt=payload.get("base_prompt", ""),
            reference_refs=self._references(payload["run_id"], payload["step_index"], payload.get("anchor_ref")),
            seed=delta.get("new_seed"),
            settings=delta.get("settings_adjustments") or {},
            model=payload.get("model") or self.MODEL,
        )

        prompt = self.build_prompt(request, payload.get("kind"), delta.get("prompt_adjustments") or [])

        result = self.llm.generate_image(
            model=request.model,
            prompt=prompt,
            reference_refs=request.reference_refs,
            seed=request.seed,
            parameters=request.settings,
        )
        output = GenerationResult(**result)

        logger.info(f"Rendered asset {request.asset_id} with {output.model}")
        return {
            "artifact_ref": output.artifact_ref,
            "model": output.model,
            "prompt": prompt,
            "parameters": {
                "seed": request.seed,
                "settings": request.settings,
                "reference_refs": request.reference_refs,
                "anchor_ref": payload.get("anchor_ref"),
                "input_modified": bool(delta.get("input_modified")),
            },
        }

    def _validate(self, result: Dict[str, Any]) -> bool:
        return bool(result.get("artifact_ref"))
