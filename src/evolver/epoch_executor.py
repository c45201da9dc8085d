"""
Epoch Executor: one generation of the optimization loop.

==============================================================================
FEATURES IMPLEMENTED IN THIS MODULE:
==============================================================================

1. TEST MATRIX (Feature: epoch-test-matrix)
   - tests_per_epoch spread over personas with ceiling division
   - TestRun and every TestSession row created in one transaction before
     anything is dispatched

2. EPOCH PIPELINE (Feature: epoch-pipeline)
   - dispatch -> analyze -> optimize -> new PromptVersion
   - consumed healing suggestions marked applied to the new version

3. ATOMIC COMMIT (Feature: epoch-atomicity)
   - the epoch is only marked completed after every step succeeded; any
     exception marks it failed and propagates to the campaign controller
==============================================================================
"""

import math
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional, Sequence

from .errors import NotFoundError, ProviderError, ValidationError
from .models import (
    Epoch, EpochAnalysis, EpochOutcome, EpochRequest, EpochStatus,
    ImprovementRecord, OptimizationResult, ProgressEvent, PromptVersion,
    SessionSettings, SessionStatus, TestRun, TestRunStatus, TestSession,
    transition,
)
from .prompt_optimizer import OptimizationRequest, PromptOptimizer, TranscriptSample
from .results_analyzer import ResultsAnalyzer
from .sqlite_service import SQLiteService
from .test_run_dispatcher import TestRunDispatcher
from . import config

import logging
logger = logging.getLogger(__name__)


def plan_sessions(tests_per_epoch: int, persona_ids: Sequence[str]) -> Dict[str, int]:
    """Sessions per persona. The realized total may exceed tests_per_epoch."""
    if not persona_ids:
        raise ValidationError("At least one persona is required")
    each = math.ceil(tests_per_epoch / len(persona_ids))
    return {pid: each for pid in persona_ids}


def build_test_matrix(test_run: TestRun) -> List[TestSession]:
    return [
        TestSession(test_run_id=test_run.id, persona_id=pid, instance_number=i + 1)
        for pid, count in test_run.tests_per_persona.items()
        for i in range(count)
    ]


def _delta(current: Optional[float], previous: Optional[float]) -> Optional[float]:
    if current is None or previous is None:
        return None
    return current - previous


class EpochExecutor:
    def __init__(
        self,
        db: SQLiteService,
        dispatcher: TestRunDispatcher,
        analyzer: ResultsAnalyzer,
        optimizer: PromptOptimizer,
    ):
        self.db = db
        self.dispatcher = dispatcher
        self.analyzer = analyzer
        self.optimizer = optimizer

    async def execute(
        self,
        request: EpochRequest,
        on_progress: Optional[Callable[[ProgressEvent], None]] = None,
    ) -> EpochOutcome:
        epoch = await self.db.get_epoch(request.epoch_id)
        if not epoch:
            raise NotFoundError("Epoch", request.epoch_id)

        logger.info(f"Starting epoch {request.epoch_number} ({epoch.id}) with prompt {request.prompt_id}")
        try:
            return await self._execute(epoch, request, on_progress)
        except Exception as e:
            await self._mark_failed(epoch, e)
            raise

    async def _execute(
        self,
        epoch: Epoch,
        request: EpochRequest,
        on_progress: Optional[Callable[[ProgressEvent], None]],
    ) -> EpochOutcome:
        cfg = request.config
        prompt = await self.db.get_prompt(request.prompt_id)
        if not prompt:
            raise NotFoundError("PromptVersion", request.prompt_id)

        # ---- 1-2. Test matrix, written before dispatch ----
        tests_per_persona = plan_sessions(cfg.tests_per_epoch, cfg.persona_ids)
        test_run = TestRun(
            epoch_id=epoch.id,
            prompt_id=prompt.id,
            concurrency=cfg.concurrency,
            tests_per_persona=tests_per_persona,
            total_sessions=sum(tests_per_persona.values()),
        )
        sessions = build_test_matrix(test_run)
        await self.db.create_test_run(test_run, sessions)

        transition(epoch, EpochStatus.running)
        epoch.test_run_id = test_run.id
        epoch.started_at = datetime.now(timezone.utc)
        await self.db.update_epoch(epoch)

        # ---- 3. Dispatch ----
        settings = SessionSettings(
            voice_agent_id=request.voice_agent_id,
            max_turns=cfg.max_turns,
            max_duration_seconds=cfg.max_duration_seconds,
        )
        summary = await self.dispatcher.dispatch(test_run.id, settings, on_progress=on_progress)
        if summary.status == TestRunStatus.failed:
            raise ProviderError(
                "test_run", f"All {summary.total_sessions} sessions failed in test run {test_run.id}"
            )
        logger.info(
            f"Test run {test_run.id} done: {summary.completed_sessions} completed, "
            f"{summary.failed_sessions} failed, accuracy={summary.avg_accuracy}"
        )

        # ---- 4. Analyze ----
        test_run = await self.db.get_test_run(test_run.id)
        analysis = await self.analyzer.analyze(
            epoch.id, test_run, prompt, cfg.conversion_goals, epoch_number=request.epoch_number
        )

        # ---- 5. Optimize ----
        optimization = await self.optimizer.optimize(
            await self._optimization_request(test_run, prompt, analysis, request)
        )

        # ---- 6. New prompt version ----
        new_prompt = PromptVersion(
            name=prompt.name,
            content=optimization.improved_prompt,
            version=prompt.version + 1,
            parent_id=prompt.id,
        )
        await self.db.create_prompt(new_prompt)
        await self._mark_suggestions_applied(test_run.id, optimization.applied_suggestion_ids, new_prompt.id)

        # ---- 7. Commit ----
        await self._complete(epoch, request, analysis, optimization, new_prompt)
        logger.info(
            f"Epoch {request.epoch_number} completed: accuracy={epoch.accuracy}, "
            f"conversion={epoch.conversion_rate}, new prompt {new_prompt.id} "
            f"({len(optimization.changes)} changes)"
        )

        return EpochOutcome(
            epoch_id=epoch.id,
            test_run_id=test_run.id,
            accuracy=analysis.accuracy,
            conversion_rate=analysis.conversion_rate,
            avg_latency=analysis.avg_latency,
            resulting_prompt_id=new_prompt.id,
            optimization=optimization,
        )

    async def _optimization_request(
        self,
        test_run: TestRun,
        prompt: PromptVersion,
        analysis: EpochAnalysis,
        request: EpochRequest,
    ) -> OptimizationRequest:
        completed = await self.db.list_sessions(test_run.id, status=SessionStatus.completed)
        by_persona = {m.persona_id: m for m in analysis.metrics}
        samples = []
        for session in completed[:config.TRANSCRIPT_SAMPLE_SIZE]:
            record = by_persona.get(session.persona_id)
            samples.append(TranscriptSample(
                persona_id=session.persona_id,
                persona_name=record.persona_name if record else session.persona_id,
                transcript=session.transcript,
                accuracy=session.accuracy,
                conversion_score=record.conversion_rate if record else None,
            ))

        return OptimizationRequest(
            current_prompt=prompt.content,
            metrics=analysis.metrics,
            suggestions=await self.db.list_suggestions(test_run.id),
            transcript_samples=samples,
            target_metric=request.config.target_metric,
            goals=request.config.conversion_goals,
        )

    async def _mark_suggestions_applied(self, test_run_id: str, applied_ids: Sequence[str], prompt_id: str) -> None:
        if not applied_ids:
            return
        applied = set(applied_ids)
        now = datetime.now(timezone.utc)
        for suggestion in await self.db.list_suggestions(test_run_id):
            if suggestion.id in applied:
                suggestion.is_applied = True
                suggestion.applied_at = now
                suggestion.resulting_prompt_id = prompt_id
                await self.db.update_suggestion(suggestion)

    async def _complete(
        self,
        epoch: Epoch,
        request: EpochRequest,
        analysis: EpochAnalysis,
        optimization: OptimizationResult,
        new_prompt: PromptVersion,
    ) -> None:
        previous = await self.db.get_epoch(request.previous_epoch_id) if request.previous_epoch_id else None

        epoch.accuracy = analysis.accuracy
        epoch.conversion_rate = analysis.conversion_rate
        epoch.avg_latency = analysis.avg_latency
        epoch.accuracy_delta = _delta(analysis.accuracy, previous.accuracy if previous else None)
        epoch.conversion_delta = _delta(analysis.conversion_rate, previous.conversion_rate if previous else None)
        epoch.resulting_prompt_id = new_prompt.id
        epoch.improvement_applied = ImprovementRecord(
            suggestion_ids=optimization.applied_suggestion_ids,
            changes=optimization.changes,
            reasoning=optimization.reasoning,
            predicted_impact=optimization.predicted_impact,
            original_prompt=optimization.original_prompt,
            improved_prompt=optimization.improved_prompt,
        )
        transition(epoch, EpochStatus.completed)
        epoch.completed_at = datetime.now(timezone.utc)
        await self.db.update_epoch(epoch)

    async def _mark_failed(self, epoch: Epoch, error: Exception) -> None:
        logger.error(f"Epoch {epoch.epoch_number} ({epoch.id}) failed: {error}")
        if epoch.status in (EpochStatus.pending, EpochStatus.running):
            transition(epoch, EpochStatus.failed)
        epoch.error_message = f"{type(error).__name__}: {error}"
        epoch.completed_at = datetime.now(timezone.utc)
        await self.db.update_epoch(epoch)
