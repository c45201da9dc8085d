"""
Results Analyzer: turns the completed sessions of one test run into
per-persona metrics, replay snapshots and healing suggestions.

==============================================================================
FEATURES IMPLEMENTED IN THIS MODULE:
==============================================================================

1. PER-PERSONA METRICS (Feature: epoch-metrics)
   - Completed sessions grouped by persona, null-aware accuracy / latency
   - One conversion judge call per session; conversion_rate in percent
   - Missed opportunities frequency-counted into an issue list

2. REPLAY SNAPSHOTS (Feature: replays)
   - One Snapshot per analyzed session, written whatever its score

3. HEALING SUGGESTIONS (Feature: healing-suggestions)
   - Requested only for personas under the accuracy or conversion floor
   - Evidence carries the ids of the sampled sessions
==============================================================================
"""

from collections import Counter
from typing import Dict, List, Optional, Sequence

from .errors import NotFoundError
from .judges import analyze_conversion, generate_healing_suggestions
from .llm_service import LLMService
from .models import (
    EpochAnalysis, HealingSuggestion, IssueFrequency, MetricsRecord, Persona,
    PromptVersion, SessionStatus, Severity, Snapshot, SnapshotData,
    SnapshotPersona, SuggestionEvidence, TestRun, TestSession,
)
from .sqlite_service import SQLiteService
from .test_run_dispatcher import mean_of
from . import config

import logging
logger = logging.getLogger(__name__)


def _prompt_preview(content: str, limit: int = 100) -> str:
    return content if len(content) <= limit else content[:limit] + "..."


def group_by_persona(sessions: Sequence[TestSession]) -> Dict[str, List[TestSession]]:
    """Group sessions by persona id, keeping first-seen persona order."""
    groups: Dict[str, List[TestSession]] = {}
    for session in sessions:
        groups.setdefault(session.persona_id, []).append(session)
    return groups


class ResultsAnalyzer:
    def __init__(self, db: SQLiteService, llm: LLMService):
        self.db = db
        self.llm = llm

    async def analyze(
        self,
        epoch_id: str,
        test_run: TestRun,
        prompt: PromptVersion,
        goals: Sequence[str],
        epoch_number: Optional[int] = None,
    ) -> EpochAnalysis:
        sessions = await self.db.list_sessions(test_run.id, status=SessionStatus.completed)
        if not sessions:
            logger.info(f"No completed sessions for epoch {epoch_id}")
            return EpochAnalysis(epoch_id=epoch_id)

        logger.info(f"Analyzing {len(sessions)} sessions for epoch {epoch_id}")

        metrics: List[MetricsRecord] = []
        snapshot_ids: List[str] = []
        suggestions: List[HealingSuggestion] = []

        for persona_id, group in group_by_persona(sessions).items():
            persona = await self.db.get_persona(persona_id)
            if not persona:
                raise NotFoundError("Persona", persona_id)

            record, group_snapshots = await self._analyze_persona(
                epoch_id, persona, group, prompt, goals, epoch_number
            )
            metrics.append(record)
            snapshot_ids.extend(s.id for s in group_snapshots)

            if self._needs_suggestions(record):
                suggestions.extend(
                    await self._suggest(test_run, prompt, persona, group, record.accuracy)
                )

            await self.db.create_metrics_record(record)

        analysis = EpochAnalysis(
            epoch_id=epoch_id,
            metrics=metrics,
            snapshot_ids=snapshot_ids,
            suggestions=suggestions,
            accuracy=mean_of(m.accuracy for m in metrics),
            conversion_rate=mean_of(m.conversion_rate for m in metrics),
            avg_latency=mean_of(m.avg_latency for m in metrics),
        )
        logger.info(
            f"Epoch {epoch_id} analysis complete: {len(metrics)} personas, {len(snapshot_ids)} snapshots, "
            f"{len(suggestions)} suggestions, accuracy={analysis.accuracy}, conversion={analysis.conversion_rate}"
        )
        return analysis

    async def _analyze_persona(
        self,
        epoch_id: str,
        persona: Persona,
        sessions: List[TestSession],
        prompt: PromptVersion,
        goals: Sequence[str],
        epoch_number: Optional[int],
    ):
        conversions = 0
        missed: Counter = Counter()
        snapshots: List[Snapshot] = []

        for session in sessions:
            result = await analyze_conversion(self.llm, session.transcript, goals, persona)
            if result.achieved:
                conversions += 1
            missed.update(result.missed_opportunities)

            snapshot = Snapshot(
                epoch_id=epoch_id,
                test_session_id=session.id,
                data=SnapshotData(
                    prompt_version=_prompt_preview(prompt.content),
                    persona=SnapshotPersona(
                        id=persona.id, name=persona.name,
                        description=persona.description, traits=persona.traits,
                    ),
                    transcript=session.transcript,
                    metrics={
                        "accuracy": session.accuracy,
                        "conversion_score": result.score,
                        "latency": session.avg_latency,
                    },
                    conversion_result={
                        "achieved": result.achieved,
                        "goals": list(goals),
                        "missed_opportunities": result.missed_opportunities,
                    },
                    environment={"model": config.LLM_MODEL, "epoch_number": epoch_number},
                ),
            )
            await self.db.create_snapshot(snapshot)
            snapshots.append(snapshot)

        record = MetricsRecord(
            epoch_id=epoch_id,
            persona_id=persona.id,
            persona_name=persona.name,
            accuracy=mean_of(s.accuracy for s in sessions),
            conversion_rate=conversions / len(sessions) * 100,
            avg_latency=mean_of(s.avg_latency for s in sessions),
            sessions_count=len(sessions),
            conversions=conversions,
            conversion_opportunities=len(sessions),
            issues=[
                IssueFrequency(issue=issue, count=count, severity=Severity.medium)
                for issue, count in missed.most_common()
            ],
        )
        return record, snapshots

    @staticmethod
    def _needs_suggestions(record: MetricsRecord) -> bool:
        # A persona with no scored session counts as under the floor
        accuracy = record.accuracy if record.accuracy is not None else 0.0
        return accuracy < config.ACCURACY_FLOOR or (record.conversion_rate or 0.0) < config.CONVERSION_FLOOR

    async def _suggest(
        self,
        test_run: TestRun,
        prompt: PromptVersion,
        persona: Persona,
        sessions: List[TestSession],
        accuracy: Optional[float],
    ) -> List[HealingSuggestion]:
        sample = sessions[:config.SUGGESTION_SAMPLE_SIZE]
        logger.info(f"Generating suggestions for persona {persona.name} (accuracy={accuracy})")

        drafts = await generate_healing_suggestions(
            self.llm, prompt.content, persona, [s.transcript for s in sample], accuracy
        )
        saved: List[HealingSuggestion] = []
        for draft in drafts:
            suggestion = HealingSuggestion(
                test_run_id=test_run.id,
                prompt_id=prompt.id,
                persona_id=persona.id,
                issue=draft.issue,
                suggestion=draft.suggestion,
                suggested_prompt=draft.suggested_prompt,
                confidence=draft.confidence,
                severity=draft.severity,
                evidence=SuggestionEvidence(session_ids=[s.id for s in sample], examples=draft.examples),
            )
            saved.append(await self.db.create_suggestion(suggestion))
        return saved
