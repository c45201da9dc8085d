"""
LLM judges for voice call transcripts.

==============================================================================
FEATURES IMPLEMENTED IN THIS MODULE:
==============================================================================

1. TRANSCRIPT ACCURACY SCORING (Feature: accuracy-scoring)
   - analyze_transcript() scores the agent 0-100 for one persona
   - estimate_accuracy() is the deterministic heuristic used when the
     provider fails

2. CONVERSION JUDGING (Feature: conversion-analysis)
   - analyze_conversion() decides whether any conversion goal was achieved
   - estimate_conversion() is the keyword heuristic fallback

3. HEALING SUGGESTIONS (Feature: healing-suggestions)
   - generate_healing_suggestions() proposes prompt fixes for a persona
   - fallback_suggestions() yields persona-specific canned advice

Only ProviderError triggers a fallback. Anything else propagates.
==============================================================================
"""

from typing import List, Optional, Sequence

from pydantic import BaseModel, Field

from .errors import ProviderError
from .llm_service import LLMService
from .models import (
    ConversionResult, Persona, Severity, TranscriptTurn, TurnRole,
)

import logging
logger = logging.getLogger(__name__)


def format_transcript(transcript: Sequence[TranscriptTurn], numbered: bool = False) -> str:
    lines = []
    for i, turn in enumerate(transcript):
        speaker = "Customer" if turn.role == TurnRole.persona else "Agent"
        prefix = f"[Turn {i}] " if numbered else ""
        lines.append(f"{prefix}{speaker}: {turn.content}")
    return "\n".join(lines)


def _persona_profile(persona: Persona) -> str:
    return (
        f"Name: {persona.name}\n"
        f"Description: {persona.description}\n"
        f"Traits: {', '.join(persona.traits)}"
    )


# ==============================================================================
# ACCURACY (Feature: accuracy-scoring)
# ==============================================================================
class TranscriptAnalysis(BaseModel):
    accuracy: float = Field(..., ge=0, le=100, description="Overall accuracy score from 0-100")
    issues: List[str] = Field(default_factory=list, description="Specific issues found in the conversation")
    strengths: List[str] = Field(default_factory=list, description="Things the agent did well")


async def analyze_transcript(llm: LLMService, transcript: Sequence[TranscriptTurn], persona: Persona) -> TranscriptAnalysis:
    if not transcript:
        return TranscriptAnalysis(accuracy=0, issues=["No conversation to analyze"])

    system_prompt = (
        "You are an expert at evaluating customer service conversations.\n"
        "Analyze the following conversation where the customer has this personality profile:\n\n"
        f"{_persona_profile(persona)}\n\n"
        "Evaluate the agent's performance based on:\n"
        "1. Appropriateness of responses for this customer type\n"
        "2. Helpfulness and clarity\n"
        "3. Tone and empathy\n"
        "4. Resolution effectiveness\n"
        "5. Handling of customer's specific traits"
    )
    try:
        return await llm.generate_structured(
            TranscriptAnalysis, system_prompt,
            f"Analyze this conversation:\n\n{format_transcript(transcript)}",
        )
    except ProviderError as e:
        logger.warning(f"Accuracy judge failed for persona {persona.id}, using heuristic: {e}")
        return estimate_accuracy(transcript, persona)


def estimate_accuracy(transcript: Sequence[TranscriptTurn], persona: Persona) -> TranscriptAnalysis:
    """Heuristic accuracy score. Deterministic for a given transcript."""
    score = 70.0
    issues: List[str] = []
    agent_messages = [t.content.lower() for t in transcript if t.role == TurnRole.agent]

    short = [m for m in agent_messages if len(m) < 20]
    if len(short) > len(agent_messages) / 2:
        score -= 10
        issues.append("Too many short responses")

    if persona.id == "emotional":
        if not any(p in m for m in agent_messages for p in ("understand", "sorry", "frustrat", "help")):
            score -= 15
            issues.append("Lacking empathy for emotional customer")

    if persona.id == "confused":
        if not any(p in m for m in agent_messages for p in ("let me explain", "simply put", "to clarify")):
            score -= 10
            issues.append("Not adapting communication for confused customer")

    if persona.id == "technical":
        if not any(len(m) > 100 and any(c.isdigit() for c in m) for m in agent_messages):
            score -= 10
            issues.append("Lacking technical detail for technical customer")

    return TranscriptAnalysis(accuracy=max(0.0, min(100.0, score)), issues=issues)


# ==============================================================================
# CONVERSION (Feature: conversion-analysis)
# ==============================================================================
class ConversionAnalysis(BaseModel):
    conversion_achieved: bool = Field(..., description="Whether any of the conversion goals were achieved")
    conversion_score: float = Field(..., ge=0, le=100, description="Overall conversion effectiveness score (0-100)")
    missed_opportunities: List[str] = Field(default_factory=list)
    recommended_actions: List[str] = Field(default_factory=list)


_POSITIVE_INDICATORS = (
    "schedule", "book", "demo", "meeting", "call", "email", "sign up", "register",
    "subscribe", "purchase", "buy", "order", "confirm", "yes", "agree", "interested",
)
_NEGATIVE_INDICATORS = ("no thanks", "not interested", "maybe later", "think about it", "busy", "not now")
_CALL_TO_ACTION = ("would you like", "can i schedule", "shall i", "let me book", "sign up")


async def analyze_conversion(
    llm: LLMService,
    transcript: Sequence[TranscriptTurn],
    goals: Sequence[str],
    persona: Persona,
) -> ConversionResult:
    if not transcript:
        return ConversionResult(
            achieved=False, score=0,
            missed_opportunities=["No conversation to analyze"],
            recommended_actions=["Engage the customer to start a conversation"],
        )
    if not goals:
        return ConversionResult(
            achieved=False, score=50,
            recommended_actions=["Define conversion goals for meaningful analysis"],
        )

    goal_lines = "\n".join(f"{i + 1}. {g}" for i, g in enumerate(goals))
    system_prompt = (
        "You are an expert at analyzing sales and customer service conversations for conversion effectiveness.\n\n"
        f"Conversion Goals to Evaluate:\n{goal_lines}\n\n"
        f"Customer Profile:\n- Name: {persona.name}\n- Traits: {', '.join(persona.traits)}\n\n"
        "Determine whether any conversion goal was achieved, which opportunities were missed "
        "and what the agent could do differently. Be specific about turn numbers."
    )
    try:
        analysis = await llm.generate_structured(
            ConversionAnalysis, system_prompt,
            f"Analyze this conversation for conversion effectiveness:\n\n{format_transcript(transcript, numbered=True)}",
        )
    except ProviderError as e:
        logger.warning(f"Conversion judge failed for persona {persona.id}, using heuristic: {e}")
        return estimate_conversion(transcript, goals)

    return ConversionResult(
        achieved=analysis.conversion_achieved,
        score=analysis.conversion_score,
        missed_opportunities=analysis.missed_opportunities,
        recommended_actions=analysis.recommended_actions,
    )


def estimate_conversion(transcript: Sequence[TranscriptTurn], goals: Sequence[str]) -> ConversionResult:
    text = " ".join(t.content.lower() for t in transcript)
    agent_messages = [t.content.lower() for t in transcript if t.role == TurnRole.agent]

    has_positive = any(p in text for p in _POSITIVE_INDICATORS)
    has_negative = any(n in text for n in _NEGATIVE_INDICATORS)

    score = 50.0
    if has_positive and not has_negative:
        score = 75.0
    elif has_negative:
        score = 25.0

    asked_for_action = any(p in m for m in agent_messages for p in _CALL_TO_ACTION)
    if not asked_for_action:
        score = max(20.0, score - 20)

    return ConversionResult(
        achieved=has_positive and not has_negative,
        score=score,
        missed_opportunities=[] if asked_for_action else ["Agent did not ask for a specific conversion action"],
        recommended_actions=["Include clear calls to action", "Ask directly for the desired outcome"],
    )


# ==============================================================================
# HEALING SUGGESTIONS (Feature: healing-suggestions)
# ==============================================================================
class SuggestionDraft(BaseModel):
    issue: str
    suggestion: str
    suggested_prompt_addition: Optional[str] = Field(default=None, description="Text to add to the prompt to address this issue")
    confidence: float = Field(default=0.5, ge=0, le=1)
    severity: Severity = Severity.medium
    examples: List[str] = Field(default_factory=list)

    # Populated after parsing: the full prompt with the addition applied
    suggested_prompt: Optional[str] = None


class SuggestionBatch(BaseModel):
    suggestions: List[SuggestionDraft] = Field(default_factory=list)


_PERSONA_ADVICE = {
    "assertive": ("May not be direct enough for assertive customers",
                  "Add instruction to be concise and direct, get to the point quickly"),
    "confused": ("May use overly complex language",
                 "Add instruction to use simple language and offer to explain concepts"),
    "emotional": ("May lack empathy in responses",
                  "Add instruction to acknowledge feelings before providing solutions"),
    "technical": ("May lack technical depth",
                  "Add instruction to provide detailed technical information when asked"),
    "multilingual": ("May not handle code-switching well",
                     "Add instruction to be patient with mixed-language input and clarify when needed"),
    "rapid": ("May not handle multiple questions in one message",
              "Add instruction to address each point systematically when multiple questions are asked"),
}


async def generate_healing_suggestions(
    llm: LLMService,
    prompt_content: str,
    persona: Persona,
    transcripts: Sequence[Sequence[TranscriptTurn]],
    avg_accuracy: Optional[float],
) -> List[SuggestionDraft]:
    samples = "\n\n".join(
        f"--- Session {i + 1} ---\n{format_transcript(list(t)[-6:])}"
        for i, t in enumerate(transcripts)
    )
    accuracy_text = f"{avg_accuracy:.1f}%" if avg_accuracy is not None else "N/A"
    system_prompt = (
        "You are an expert at improving AI agent prompts for customer service.\n\n"
        f"Current prompt being tested:\n---\n{prompt_content}\n---\n\n"
        f"The prompt was tested against customers with this personality:\n{_persona_profile(persona)}\n\n"
        f"Average accuracy score: {accuracy_text}\n\n"
        "Analyze the sample conversations and identify specific issues with the current prompt. "
        "Provide actionable suggestions to improve the prompt for this customer type."
    )
    try:
        batch = await llm.generate_structured(
            SuggestionBatch, system_prompt,
            f"Here are sample conversations from the test:\n\n{samples}\n\nIdentify issues and provide improvement suggestions.",
        )
    except ProviderError as e:
        logger.warning(f"Healing suggestion generation failed for persona {persona.id}, using fallback: {e}")
        return fallback_suggestions(persona, avg_accuracy)

    for draft in batch.suggestions:
        if draft.suggested_prompt_addition:
            draft.suggested_prompt = f"{prompt_content}\n\n{draft.suggested_prompt_addition}"
    return batch.suggestions


def fallback_suggestions(persona: Persona, avg_accuracy: Optional[float]) -> List[SuggestionDraft]:
    drafts: List[SuggestionDraft] = []
    accuracy = avg_accuracy if avg_accuracy is not None else 0.0

    if accuracy < 70:
        drafts.append(SuggestionDraft(
            issue=f"Low performance with {persona.name} personality type",
            suggestion=f"Add specific handling instructions for {persona.name} customers",
            confidence=0.6,
            severity=Severity.critical if accuracy < 50 else Severity.high,
        ))

    advice = _PERSONA_ADVICE.get(persona.id)
    if advice:
        drafts.append(SuggestionDraft(issue=advice[0], suggestion=advice[1], confidence=0.5))
    return drafts
