from typing import List, Optional
from pydantic import BaseModel
from fastapi import APIRouter, HTTPException, BackgroundTasks

import logging

logger = logging.getLogger(__name__)

from .errors import NotFoundError, ValidationError
from .models import (
    DeclareWinnerRequest,
    Epoch,
    Evaluation,
    EvaluationCreate,
    HealingSuggestion,
    MetricsRecord,
    Persona,
    PromptVersion,
    Snapshot,
    TestRun,
)
from .sqlite_service import get_db_service
from .campaign_controller import get_campaign_controller

router = APIRouter(prefix="/api")
db = get_db_service()
campaigns = get_campaign_controller(db)


class EpochDetail(BaseModel):
    epoch: Epoch
    test_run: Optional[TestRun] = None
    metrics: List[MetricsRecord] = []
    suggestions: List[HealingSuggestion] = []


def _http_error(e: Exception, action: str) -> HTTPException:
    if isinstance(e, NotFoundError):
        return HTTPException(404, str(e))
    if isinstance(e, ValidationError):
        return HTTPException(400, str(e))
    logger.error(f"Failed to {action}: {e}")
    return HTTPException(500, f"Failed to {action}: {str(e)}")


async def _run_campaign(evaluation_id: str):
    """Background entry point; the loop records its own failures on the evaluation."""
    try:
        result = await campaigns.run(evaluation_id)
        logger.info(f"Campaign {evaluation_id} finished as {result.status.value} after {result.completed_epochs} epochs")
    except Exception as e:
        logger.error(f"Campaign {evaluation_id} aborted: {e}")


async def _get_epoch_for(evaluation_id: str, epoch_id: str) -> Epoch:
    epoch = await db.get_epoch(epoch_id)
    if not epoch or epoch.evaluation_id != evaluation_id:
        raise NotFoundError("Epoch", epoch_id)
    return epoch


# Evaluations
@router.post("/evaluations", response_model=Evaluation, status_code=201)
async def create_evaluation(request: EvaluationCreate):
    """Create a pending evaluation from a stored prompt id or inline prompt text."""
    try:
        return await campaigns.create_evaluation(request)
    except HTTPException:
        raise
    except Exception as e:
        raise _http_error(e, "create evaluation")


@router.get("/evaluations", response_model=List[Evaluation])
async def list_evaluations(skip: int = 0, limit: int = 100):
    return await campaigns.list_evaluations(skip=skip, limit=limit)


@router.get("/evaluations/{evaluation_id}", response_model=Evaluation)
async def get_evaluation(evaluation_id: str):
    try:
        return await campaigns.get_evaluation(evaluation_id)
    except HTTPException:
        raise
    except Exception as e:
        raise _http_error(e, "get evaluation")


@router.post("/evaluations/{evaluation_id}/start", response_model=Evaluation)
async def start_evaluation(evaluation_id: str, background_tasks: BackgroundTasks):
    """Move the evaluation to running and run its epochs in the background."""
    try:
        evaluation = await campaigns.start(evaluation_id)
    except HTTPException:
        raise
    except Exception as e:
        raise _http_error(e, "start evaluation")
    background_tasks.add_task(_run_campaign, evaluation.id)
    return evaluation


@router.post("/evaluations/{evaluation_id}/pause", response_model=Evaluation)
async def pause_evaluation(evaluation_id: str):
    """Request a pause. It takes effect when the in-flight epoch finishes."""
    try:
        return await campaigns.pause(evaluation_id)
    except HTTPException:
        raise
    except Exception as e:
        raise _http_error(e, "pause evaluation")


@router.post("/evaluations/{evaluation_id}/resume", response_model=Evaluation)
async def resume_evaluation(evaluation_id: str, background_tasks: BackgroundTasks):
    try:
        evaluation = await campaigns.resume(evaluation_id)
    except HTTPException:
        raise
    except Exception as e:
        raise _http_error(e, "resume evaluation")
    # A withdrawn pause leaves the current loop running
    if not campaigns.is_looping(evaluation.id):
        background_tasks.add_task(_run_campaign, evaluation.id)
    return evaluation


@router.post("/evaluations/{evaluation_id}/declare-winner", response_model=Evaluation)
async def declare_winner(evaluation_id: str, request: DeclareWinnerRequest):
    try:
        return await campaigns.declare_winner(evaluation_id, request.epoch_id)
    except HTTPException:
        raise
    except Exception as e:
        raise _http_error(e, "declare winner")


# Epochs
@router.get("/evaluations/{evaluation_id}/epochs", response_model=List[Epoch])
async def list_epochs(evaluation_id: str):
    evaluation = await db.get_evaluation(evaluation_id)
    if not evaluation:
        raise HTTPException(404, f"Evaluation {evaluation_id} not found")
    return await db.list_epochs(evaluation_id)


@router.get("/evaluations/{evaluation_id}/epochs/{epoch_id}", response_model=EpochDetail)
async def get_epoch(evaluation_id: str, epoch_id: str):
    """Epoch with its test run, per-persona metrics and healing suggestions."""
    try:
        epoch = await _get_epoch_for(evaluation_id, epoch_id)
        test_run = await db.get_test_run(epoch.test_run_id) if epoch.test_run_id else None
        return EpochDetail(
            epoch=epoch,
            test_run=test_run,
            metrics=await db.list_metrics(epoch.id),
            suggestions=await db.list_suggestions(test_run.id) if test_run else [],
        )
    except HTTPException:
        raise
    except Exception as e:
        raise _http_error(e, "get epoch")


# Replays
@router.get("/evaluations/{evaluation_id}/epochs/{epoch_id}/replays", response_model=List[Snapshot])
async def list_replays(evaluation_id: str, epoch_id: str):
    try:
        epoch = await _get_epoch_for(evaluation_id, epoch_id)
        return await db.list_snapshots(epoch.id)
    except HTTPException:
        raise
    except Exception as e:
        raise _http_error(e, "list replays")


@router.get("/evaluations/{evaluation_id}/epochs/{epoch_id}/replays/{snapshot_id}", response_model=Snapshot)
async def get_replay(evaluation_id: str, epoch_id: str, snapshot_id: str):
    try:
        epoch = await _get_epoch_for(evaluation_id, epoch_id)
        snapshot = await db.get_snapshot(snapshot_id)
        if not snapshot or snapshot.epoch_id != epoch.id:
            raise NotFoundError("Snapshot", snapshot_id)
        return snapshot
    except HTTPException:
        raise
    except Exception as e:
        raise _http_error(e, "get replay")


# Personas
@router.get("/personas", response_model=List[Persona])
async def list_personas():
    return await db.list_personas()


# Prompts
@router.get("/prompts/{prompt_id}", response_model=PromptVersion)
async def get_prompt(prompt_id: str):
    prompt = await db.get_prompt(prompt_id)
    if not prompt:
        raise HTTPException(404, f"Prompt {prompt_id} not found")
    return prompt


@router.get("/prompts/{prompt_id}/lineage", response_model=List[PromptVersion])
async def get_prompt_lineage(prompt_id: str):
    """The prompt followed by its ancestors, newest first."""
    prompt = await db.get_prompt(prompt_id)
    if not prompt:
        raise HTTPException(404, f"Prompt {prompt_id} not found")

    lineage = [prompt]
    seen = {prompt.id}
    while prompt.parent_id and prompt.parent_id not in seen:
        prompt = await db.get_prompt(prompt.parent_id)
        if not prompt:
            break
        lineage.append(prompt)
        seen.add(prompt.id)
    return lineage
