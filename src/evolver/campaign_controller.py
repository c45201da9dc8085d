"""
Campaign Controller: drives one Evaluation through its epochs.

==============================================================================
FEATURES IMPLEMENTED IN THIS MODULE:
==============================================================================

1. CAMPAIGN LIFECYCLE (Feature: campaign-lifecycle)
   - create / start / pause / resume / declare-winner, each one transition
     on the Evaluation state machine
   - pause is a request; the loop applies it at the next epoch boundary, so
     the stored status only moves running -> paused between epochs

2. EPOCH LOOP (Feature: epoch-loop)
   - epochs run strictly one after another, numbered without gaps
   - each epoch is bound to the best-so-far prompt (source prompt before any
     epoch was accepted)
   - acceptance is the threshold comparison on the target metric; the first
     measured epoch is the baseline and is accepted with improvement 0
   - a failed epoch fails the campaign, surfacing its number; never retried

3. REAL-TIME STATUS (Feature: status-updates)
   - _status_cache holds the live message for high-frequency session progress
   - significant events are persisted to status_message / status_history
     (capped at 100 entries)

4. STARTUP RECOVERY (Feature: startup-recovery)
   - running evaluations found at startup are paused so they can be resumed
   - their in-flight epochs, sessions and runs are closed as failed
==============================================================================
"""

import asyncio
from datetime import datetime, timezone
from typing import Callable, Dict, List, Optional

from .epoch_executor import EpochExecutor
from .errors import NotFoundError, ValidationError
from .models import (
    CampaignResult, Epoch, EpochOutcome, EpochRequest, EpochStatus,
    Evaluation, EvaluationCreate, EvaluationStatus, ProgressEvent,
    PromptVersion, SessionStatus, StatusHistoryEntry, TestRunStatus,
    transition,
)
from .scheduler import TaskScheduler
from .sqlite_service import SQLiteService

import logging
logger = logging.getLogger(__name__)

STATUS_HISTORY_LIMIT = 100


class CampaignController:
    def __init__(self, db: SQLiteService, executor: EpochExecutor, scheduler: TaskScheduler):
        self.db = db
        self.executor = executor
        self.scheduler = scheduler

        self._eval_locks: Dict[str, asyncio.Lock] = {}
        self._pause_requests: set = set()   # evaluation ids to pause at the next epoch boundary
        self._active_runs: set = set()      # evaluation ids with a loop in this process
        self._status_cache: Dict[str, str] = {}  # evaluation id -> live status message (in-memory)

    def _lock(self, evaluation_id: str) -> asyncio.Lock:
        lock = self._eval_locks.get(evaluation_id)
        if lock is None:
            lock = self._eval_locks[evaluation_id] = asyncio.Lock()
        return lock

    async def _get(self, evaluation_id: str) -> Evaluation:
        evaluation = await self.db.get_evaluation(evaluation_id)
        if not evaluation:
            raise NotFoundError("Evaluation", evaluation_id)
        return evaluation

    # ==========================================================================
    # STATUS MESSAGES (Feature: status-updates)
    # ==========================================================================

    def _update_status_message(self, evaluation: Evaluation, message: str, epoch_number: Optional[int] = None) -> None:
        """Record a significant status change on the (unsaved) evaluation."""
        self._status_cache[evaluation.id] = message
        evaluation.status_message = message
        evaluation.status_history.append(StatusHistoryEntry(message=message, epoch_number=epoch_number))
        if len(evaluation.status_history) > STATUS_HISTORY_LIMIT:
            evaluation.status_history = evaluation.status_history[-STATUS_HISTORY_LIMIT:]

    def get_status_message(self, evaluation_id: str) -> Optional[str]:
        return self._status_cache.get(evaluation_id)

    def _progress_callback(self, evaluation_id: str, epoch_number: int) -> Callable[[ProgressEvent], None]:
        def _on_progress(event: ProgressEvent) -> None:
            message = f"Epoch {epoch_number}: session {event.session_id} {event.state}, turn {event.turns}"
            if event.error:
                message += f" ({event.error})"
            self._status_cache[evaluation_id] = message
        return _on_progress

    # ==========================================================================
    # LIFECYCLE (Feature: campaign-lifecycle)
    # ==========================================================================

    async def create_evaluation(self, request: EvaluationCreate) -> Evaluation:
        known = {p.id for p in await self.db.list_personas()}
        unknown = [pid for pid in request.config.persona_ids if pid not in known]
        if unknown:
            raise ValidationError(f"Unknown persona ids: {', '.join(unknown)}")

        if request.source_prompt_id:
            prompt = await self.db.get_prompt(request.source_prompt_id)
            if not prompt:
                raise NotFoundError("PromptVersion", request.source_prompt_id)
        else:
            prompt = await self.db.create_prompt(PromptVersion(name=request.name, content=request.source_prompt))

        evaluation = Evaluation(
            name=request.name,
            description=request.description,
            source_prompt_id=prompt.id,
            voice_agent_id=request.voice_agent_id,
            config=request.config,
        )
        self._update_status_message(evaluation, "Created")
        await self.db.create_evaluation(evaluation)
        logger.info(f"Created evaluation {evaluation.id} ({evaluation.name}), source prompt {prompt.id}")
        return evaluation

    async def start(self, evaluation_id: str) -> Evaluation:
        async with self._lock(evaluation_id):
            evaluation = await self._get(evaluation_id)
            transition(evaluation, EvaluationStatus.running)
            if evaluation.started_at is None:
                evaluation.started_at = datetime.now(timezone.utc)
            self._pause_requests.discard(evaluation_id)
            self._update_status_message(evaluation, "Started")
            await self.db.update_evaluation(evaluation)
        logger.info(f"Evaluation {evaluation_id} started")
        return evaluation

    async def pause(self, evaluation_id: str) -> Evaluation:
        async with self._lock(evaluation_id):
            evaluation = await self._get(evaluation_id)
            if evaluation.status != EvaluationStatus.running:
                transition(evaluation, EvaluationStatus.paused)  # raises InvalidTransitionError

            if evaluation_id in self._active_runs:
                self._pause_requests.add(evaluation_id)
                self._status_cache[evaluation_id] = "Pause requested; stopping after the current epoch"
                logger.info(f"Evaluation {evaluation_id}: pause requested")
                return evaluation

            # No loop is driving this evaluation, so there is no boundary to wait for
            transition(evaluation, EvaluationStatus.paused)
            self._update_status_message(evaluation, "Paused")
            await self.db.update_evaluation(evaluation)
        logger.info(f"Evaluation {evaluation_id} paused")
        return evaluation

    async def resume(self, evaluation_id: str) -> Evaluation:
        async with self._lock(evaluation_id):
            evaluation = await self._get(evaluation_id)
            if evaluation.status == EvaluationStatus.running and evaluation_id in self._pause_requests:
                # The pause has not landed yet; withdrawing it keeps the loop going
                self._pause_requests.discard(evaluation_id)
                self._status_cache[evaluation_id] = "Pause withdrawn; continuing"
                logger.info(f"Evaluation {evaluation_id}: pause request withdrawn")
                return evaluation
            if evaluation.status != EvaluationStatus.paused:
                raise ValidationError(f"Evaluation {evaluation_id} is {evaluation.status.value}, only paused evaluations can be resumed")
            transition(evaluation, EvaluationStatus.running)
            self._pause_requests.discard(evaluation_id)
            self._update_status_message(evaluation, f"Resumed after epoch {evaluation.current_epoch_number}")
            await self.db.update_evaluation(evaluation)
        logger.info(f"Evaluation {evaluation_id} resumed")
        return evaluation

    async def declare_winner(self, evaluation_id: str, epoch_id: str) -> Evaluation:
        async with self._lock(evaluation_id):
            evaluation = await self._get(evaluation_id)
            if evaluation.status not in (EvaluationStatus.paused, EvaluationStatus.completed):
                raise ValidationError(
                    f"Evaluation {evaluation_id} is {evaluation.status.value}; "
                    "a winner can only be declared while paused or completed"
                )
            epoch = await self.db.get_epoch(epoch_id)
            if not epoch or epoch.evaluation_id != evaluation_id:
                raise NotFoundError("Epoch", epoch_id)
            if epoch.status != EpochStatus.completed or not epoch.resulting_prompt_id:
                raise ValidationError(f"Epoch {epoch.epoch_number} is {epoch.status.value}, not completed")

            evaluation.best_prompt_id = epoch.resulting_prompt_id
            evaluation.best_accuracy = epoch.accuracy
            evaluation.best_conversion_rate = epoch.conversion_rate
            if not epoch.is_accepted:
                epoch.is_accepted = True
                await self.db.update_epoch(epoch)

            if evaluation.status != EvaluationStatus.completed:
                transition(evaluation, EvaluationStatus.completed)
                evaluation.completed_at = datetime.now(timezone.utc)
            self._update_status_message(evaluation, f"Winner declared: epoch {epoch.epoch_number}", epoch.epoch_number)
            await self.db.update_evaluation(evaluation)
        logger.info(f"Evaluation {evaluation_id}: epoch {epoch.epoch_number} declared winner")
        return evaluation

    # ==========================================================================
    # EPOCH LOOP (Feature: epoch-loop)
    # ==========================================================================

    def is_looping(self, evaluation_id: str) -> bool:
        return evaluation_id in self._active_runs

    async def run(self, evaluation_id: str) -> CampaignResult:
        """Execute epochs until the budget is spent, a pause lands, or one fails."""
        if evaluation_id in self._active_runs:
            raise ValidationError(f"Evaluation {evaluation_id} is already being run")
        evaluation = await self._get(evaluation_id)
        if evaluation.status != EvaluationStatus.running:
            raise ValidationError(f"Evaluation {evaluation_id} is {evaluation.status.value}, not running")

        self._active_runs.add(evaluation_id)
        try:
            return await self._run_epochs(evaluation_id)
        finally:
            self._active_runs.discard(evaluation_id)
            self._pause_requests.discard(evaluation_id)

    async def _run_epochs(self, evaluation_id: str) -> CampaignResult:
        epochs = await self.db.list_epochs(evaluation_id)
        completed_epochs = sum(1 for e in epochs if e.status == EpochStatus.completed)
        previous = next((e for e in reversed(epochs) if e.status == EpochStatus.completed), None)
        epoch_number = (epochs[-1].epoch_number if epochs else 0) + 1

        evaluation = await self._get(evaluation_id)
        max_epochs = evaluation.config.max_epochs
        logger.info(
            f"Running evaluation {evaluation_id} from epoch {epoch_number} of {max_epochs} "
            f"(best prompt {evaluation.best_prompt_id or evaluation.source_prompt_id})"
        )

        while epoch_number <= max_epochs:
            # ---- Epoch boundary: the only place a pause takes effect ----
            async with self._lock(evaluation_id):
                evaluation = await self._get(evaluation_id)
                if evaluation_id in self._pause_requests or evaluation.status == EvaluationStatus.paused:
                    return await self._pause_at_boundary(evaluation, completed_epochs)

                epoch = Epoch(
                    evaluation_id=evaluation_id,
                    epoch_number=epoch_number,
                    prompt_id=evaluation.best_prompt_id or evaluation.source_prompt_id,
                    previous_epoch_id=previous.id if previous else None,
                )
                await self.db.create_epoch(epoch)
                evaluation.current_epoch_number = epoch_number
                self._update_status_message(evaluation, f"Running epoch {epoch_number}/{max_epochs}", epoch_number)
                await self.db.update_evaluation(evaluation)

            request = EpochRequest(
                epoch_id=epoch.id,
                evaluation_id=evaluation_id,
                epoch_number=epoch_number,
                prompt_id=epoch.prompt_id,
                voice_agent_id=evaluation.voice_agent_id,
                previous_epoch_id=epoch.previous_epoch_id,
                config=evaluation.config,
            )
            on_progress = self._progress_callback(evaluation_id, epoch_number)

            async def _epoch_task(req: EpochRequest) -> EpochOutcome:
                return await self.executor.execute(req, on_progress=on_progress)

            result = await self.scheduler.trigger_and_wait(_epoch_task, request)
            if not result.ok:
                return await self._fail(evaluation_id, epoch, result.error, completed_epochs)

            async with self._lock(evaluation_id):
                evaluation = await self._get(evaluation_id)
                epoch = await self.db.get_epoch(epoch.id)
                self._decide(evaluation, epoch)
                await self.db.update_epoch(epoch)

                completed_epochs += 1
                evaluation.total_epochs = completed_epochs
                verdict = "accepted" if epoch.is_accepted else "rejected"
                self._update_status_message(
                    evaluation,
                    f"Epoch {epoch_number} {verdict}: accuracy={_fmt(epoch.accuracy)}, "
                    f"conversion={_fmt(epoch.conversion_rate)}",
                    epoch_number,
                )
                await self.db.update_evaluation(evaluation)

            previous = epoch
            epoch_number += 1

        async with self._lock(evaluation_id):
            evaluation = await self._get(evaluation_id)
            transition(evaluation, EvaluationStatus.completed)
            evaluation.total_epochs = completed_epochs
            evaluation.completed_at = datetime.now(timezone.utc)
            self._update_status_message(evaluation, f"Completed {completed_epochs} epochs")
            await self.db.update_evaluation(evaluation)

        logger.info(
            f"Evaluation {evaluation_id} completed: best prompt {evaluation.best_prompt_id}, "
            f"accuracy={evaluation.best_accuracy}, conversion={evaluation.best_conversion_rate}"
        )
        return self._result(evaluation, completed_epochs)

    @staticmethod
    def _decide(evaluation: Evaluation, epoch: Epoch) -> None:
        """Threshold acceptance on the target metric. Mutates both models."""
        cfg = evaluation.config
        value = epoch.metric(cfg.target_metric)
        best = evaluation.best_metric(cfg.target_metric)

        if value is None:
            epoch.is_accepted = False
            epoch.improvement = None
        elif best is None:
            # Baseline: nothing measured yet to compare against
            epoch.is_accepted = True
            epoch.improvement = 0.0
        else:
            epoch.improvement = value - best
            epoch.is_accepted = epoch.improvement >= cfg.improvement_threshold

        logger.info(
            f"Epoch {epoch.epoch_number}: {cfg.target_metric.value}={value}, best={best}, "
            f"improvement={epoch.improvement}, threshold={cfg.improvement_threshold}, accepted={epoch.is_accepted}"
        )
        if epoch.is_accepted:
            evaluation.best_prompt_id = epoch.resulting_prompt_id
            evaluation.best_accuracy = epoch.accuracy
            evaluation.best_conversion_rate = epoch.conversion_rate
            evaluation.total_improvement += epoch.improvement

    async def _pause_at_boundary(self, evaluation: Evaluation, completed_epochs: int) -> CampaignResult:
        if evaluation.status == EvaluationStatus.running:
            transition(evaluation, EvaluationStatus.paused)
            self._update_status_message(
                evaluation, f"Paused after epoch {evaluation.current_epoch_number}", evaluation.current_epoch_number
            )
            await self.db.update_evaluation(evaluation)
        self._pause_requests.discard(evaluation.id)
        logger.info(f"Evaluation {evaluation.id} paused after epoch {evaluation.current_epoch_number}")
        return self._result(evaluation, completed_epochs)

    async def _fail(self, evaluation_id: str, epoch: Epoch, error: Optional[BaseException], completed_epochs: int) -> CampaignResult:
        error_text = f"{type(error).__name__}: {error}" if error else "unknown error"
        message = f"Epoch {epoch.epoch_number} failed: {error_text}"
        logger.error(f"Evaluation {evaluation_id}: {message}")

        async with self._lock(evaluation_id):
            latest = await self.db.get_epoch(epoch.id)
            if latest and latest.status in (EpochStatus.pending, EpochStatus.running):
                transition(latest, EpochStatus.failed)
                latest.error_message = error_text
                latest.completed_at = datetime.now(timezone.utc)
                await self.db.update_epoch(latest)

            evaluation = await self._get(evaluation_id)
            transition(evaluation, EvaluationStatus.failed)
            evaluation.failed_epoch_number = epoch.epoch_number
            evaluation.error_message = message
            evaluation.completed_at = datetime.now(timezone.utc)
            self._update_status_message(evaluation, message, epoch.epoch_number)
            await self.db.update_evaluation(evaluation)
        return self._result(evaluation, completed_epochs, error=message)

    @staticmethod
    def _result(evaluation: Evaluation, completed_epochs: int, error: Optional[str] = None) -> CampaignResult:
        return CampaignResult(
            evaluation_id=evaluation.id,
            status=evaluation.status,
            completed_epochs=completed_epochs,
            best_prompt_id=evaluation.best_prompt_id,
            best_accuracy=evaluation.best_accuracy,
            best_conversion_rate=evaluation.best_conversion_rate,
            failed_epoch_number=evaluation.failed_epoch_number,
            error=error,
        )

    # ==========================================================================
    # STARTUP RECOVERY (Feature: startup-recovery)
    # ==========================================================================

    async def recover_interrupted(self) -> int:
        """Pause evaluations left running by a restart and close their in-flight work.

        Returns the number of evaluations paused.
        """
        recovered = 0
        for evaluation in await self.db.list_evaluations(limit=1000, status=EvaluationStatus.running):
            if evaluation.id in self._active_runs:
                continue
            for epoch in await self.db.list_epochs(evaluation.id):
                if epoch.status not in (EpochStatus.pending, EpochStatus.running):
                    continue
                transition(epoch, EpochStatus.failed)
                epoch.error_message = "Interrupted by server restart"
                epoch.completed_at = datetime.now(timezone.utc)
                await self.db.update_epoch(epoch)

            transition(evaluation, EvaluationStatus.paused)
            self._update_status_message(evaluation, "Paused: server restarted while evaluation was running")
            await self.db.update_evaluation(evaluation)
            recovered += 1
            logger.warning(f"Recovered interrupted evaluation {evaluation.id} ({evaluation.name}) as paused")

        for run in await self.db.list_test_runs(status=TestRunStatus.running):
            sessions = await self.db.list_sessions(run.id)
            for session in sessions:
                if session.status in (SessionStatus.pending, SessionStatus.running):
                    transition(session, SessionStatus.failed)
                    session.error_message = "Interrupted by server restart"
                    session.completed_at = datetime.now(timezone.utc)
                    await self.db.update_session(session)
            await self.executor.dispatcher.finalize_run(run, sessions)
            logger.warning(f"Finalized interrupted test run {run.id}")

        if recovered:
            logger.info(f"Startup recovery paused {recovered} evaluation(s)")
        else:
            logger.info("Startup recovery: no interrupted evaluations found")
        return recovered

    # ==== READ HELPERS ====

    async def get_evaluation(self, evaluation_id: str) -> Evaluation:
        evaluation = await self._get(evaluation_id)
        live = self._status_cache.get(evaluation_id)
        if live and evaluation.status == EvaluationStatus.running:
            evaluation.status_message = live
        return evaluation

    async def list_evaluations(self, skip: int = 0, limit: int = 100) -> List[Evaluation]:
        return await self.db.list_evaluations(skip=skip, limit=limit)


def _fmt(value: Optional[float]) -> str:
    return f"{value:.1f}" if value is not None else "N/A"


# Service instance
_campaign_controller: Optional[CampaignController] = None


def get_campaign_controller(db_service: SQLiteService) -> CampaignController:
    """Get or create the campaign controller with its full pipeline."""
    global _campaign_controller
    if _campaign_controller is None:
        from .llm_service import get_llm_service
        from .prompt_optimizer import PromptOptimizer
        from .results_analyzer import ResultsAnalyzer
        from .scheduler import get_scheduler
        from .session_runner import VoiceSessionRunner
        from .test_run_dispatcher import TestRunDispatcher
        from ..voice.speech import OpenAISpeechProvider
        from ..voice.transport import LiveKitTransport

        llm = get_llm_service()
        scheduler = get_scheduler()
        runner = VoiceSessionRunner(db_service, llm, OpenAISpeechProvider(), LiveKitTransport)
        executor = EpochExecutor(
            db_service,
            TestRunDispatcher(db_service, runner, scheduler),
            ResultsAnalyzer(db_service, llm),
            PromptOptimizer(llm),
        )
        _campaign_controller = CampaignController(db_service, executor, scheduler)
    return _campaign_controller
