"""
Prompt Optimizer: rewrite the agent prompt from one epoch's evidence.

A pure request/response step. It proposes a revised prompt with a list of
structured changes and a rationale; whether the revision is kept is decided
by the campaign controller, never here.
"""

from typing import List, Optional, Sequence

from pydantic import BaseModel, Field

from .errors import ProviderError
from .judges import format_transcript
from .llm_service import LLMService
from .models import (
    ChangeType, HealingSuggestion, MetricsRecord, OptimizationResult,
    PredictedImpact, PromptChange, TargetMetric, TranscriptTurn,
)

import logging
logger = logging.getLogger(__name__)


class TranscriptSample(BaseModel):
    persona_id: str
    persona_name: str
    transcript: List[TranscriptTurn] = Field(default_factory=list)
    accuracy: Optional[float] = None
    conversion_score: Optional[float] = None


class OptimizationRequest(BaseModel):
    current_prompt: str
    metrics: List[MetricsRecord] = Field(default_factory=list)
    suggestions: List[HealingSuggestion] = Field(default_factory=list)
    transcript_samples: List[TranscriptSample] = Field(default_factory=list)
    target_metric: TargetMetric = TargetMetric.accuracy
    goals: List[str] = Field(default_factory=list)


class OptimizedPrompt(BaseModel):
    """Structured output requested from the LLM."""
    improved_prompt: str = Field(..., description="The complete improved prompt with all changes applied")
    changes: List[PromptChange] = Field(
        default_factory=list,
        description="Specific changes made to the prompt with exact before/after text",
    )
    reasoning: str = Field(default="", description="Why these changes will improve performance")
    predicted_accuracy_improvement: float = Field(default=0, ge=-20, le=30, description="Percentage points")
    predicted_conversion_improvement: float = Field(default=0, ge=-20, le=30, description="Percentage points")
    applied_suggestion_ids: List[str] = Field(default_factory=list, description="IDs of healing suggestions incorporated")


def _fmt(value: Optional[float]) -> str:
    return f"{value:.1f}" if value is not None else "N/A"


def build_optimizer_prompt(request: OptimizationRequest) -> str:
    goal = "conversion rate" if request.target_metric == TargetMetric.conversion else "accuracy"

    metrics_summary = "\n".join(
        f"{m.persona_name or m.persona_id}: accuracy={_fmt(m.accuracy)}%, "
        f"conversion={_fmt(m.conversion_rate)}%, sessions={m.sessions_count}"
        for m in request.metrics
    )
    issues_summary = "\n".join(
        f"[{m.persona_name or m.persona_id}] {i.issue} ({i.count}x, {i.severity.value})"
        for m in request.metrics for i in m.issues
    )
    suggestions_summary = "\n\n".join(
        f"[{s.id}] Issue: {s.issue}\nSuggestion: {s.suggestion}\n"
        f"Severity: {s.severity.value}, Confidence: {s.confidence:.2f}"
        for s in request.suggestions
    )
    transcript_summary = "\n\n".join(
        f"--- {t.persona_name} (accuracy: {_fmt(t.accuracy)}%, conversion: {_fmt(t.conversion_score)}%) ---\n"
        f"{format_transcript(t.transcript[-6:])}"
        for t in request.transcript_samples[:3]
    )
    goals_block = ""
    if request.goals:
        goals_block = "Conversion goals to optimize for:\n" + "\n".join(f"- {g}" for g in request.goals) + "\n\n"

    return (
        "You are an expert at optimizing AI agent prompts for customer service.\n\n"
        f"Your goal is to improve the prompt to maximize {goal}.\n\n"
        f"{goals_block}"
        f"Current prompt:\n---\n{request.current_prompt}\n---\n\n"
        f"Performance metrics by personality:\n{metrics_summary or 'No metrics available'}\n\n"
        f"Issues identified:\n{issues_summary or 'No specific issues identified'}\n\n"
        f"Healing suggestions from previous analysis:\n{suggestions_summary or 'No suggestions available'}\n\n"
        f"Sample conversations:\n{transcript_summary or 'No samples available'}\n\n"
        "Improve the prompt to address the identified issues while maintaining the core functionality.\n"
        f"Focus on changes that will have the highest impact on {goal}.\n\n"
        "For each change include the exact before and after text:\n"
        "- added: only 'after'\n"
        "- modified: both 'before' and 'after'\n"
        "- removed: only 'before'\n"
        "- restructured: both, showing the reorganization"
    )


class PromptOptimizer:
    def __init__(self, llm: LLMService):
        self.llm = llm

    async def optimize(self, request: OptimizationRequest) -> OptimizationResult:
        try:
            output = await self.llm.generate_structured(
                OptimizedPrompt,
                build_optimizer_prompt(request),
                "Analyze the current prompt performance and generate an improved version. "
                "Include the IDs of any healing suggestions you incorporated.",
            )
        except ProviderError as e:
            logger.warning(f"Prompt optimization failed, using fallback: {e}")
            return self.fallback(request.current_prompt, request.suggestions)

        offered = {s.id for s in request.suggestions}
        unknown = [sid for sid in output.applied_suggestion_ids if sid not in offered]
        if unknown:
            logger.warning(f"Optimizer referenced unknown suggestion ids {unknown}; dropping them")

        return OptimizationResult(
            improved_prompt=output.improved_prompt,
            changes=output.changes,
            reasoning=output.reasoning,
            predicted_impact=PredictedImpact(
                accuracy=output.predicted_accuracy_improvement,
                conversion=output.predicted_conversion_improvement,
            ),
            applied_suggestion_ids=[sid for sid in output.applied_suggestion_ids if sid in offered],
            original_prompt=request.current_prompt,
        )

    @staticmethod
    def fallback(current_prompt: str, suggestions: Sequence[HealingSuggestion]) -> OptimizationResult:
        """Apply the highest-confidence suggestion that carries a full prompt, else change nothing."""
        candidates = [s for s in suggestions if s.suggested_prompt]
        if candidates:
            top = max(candidates, key=lambda s: s.confidence)
            return OptimizationResult(
                improved_prompt=top.suggested_prompt,
                changes=[PromptChange(
                    type=ChangeType.modified,
                    section="Full Prompt",
                    description=top.suggestion,
                    before=current_prompt[:200],
                    after=top.suggested_prompt[:200],
                )],
                reasoning=f"Fallback: applied highest-confidence healing suggestion ({top.confidence:.2f})",
                predicted_impact=PredictedImpact(accuracy=5, conversion=5),
                applied_suggestion_ids=[top.id],
                original_prompt=current_prompt,
            )

        return OptimizationResult(
            improved_prompt=current_prompt,
            reasoning="No changes could be applied automatically",
            original_prompt=current_prompt,
        )
