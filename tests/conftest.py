"""
Pytest Configuration and Fixtures

Provides shared fixtures for both unit and integration tests.
"""

import pytest
from typing import AsyncGenerator
from unittest.mock import AsyncMock, MagicMock, patch
from fastapi.testclient import TestClient
from httpx import AsyncClient, ASGITransport

from tests.mocks.voice_fakes import FakeResponder, FakeSpeech


# ==============================================================================
# Mock Database Service
# ==============================================================================

def _copy(model):
    return model.model_copy(deep=True) if model is not None else None


@pytest.fixture
def mock_db():
    """Create a mock database service for testing without a real database.

    Stores deep copies, so callers only see changes they saved.
    """
    mock = AsyncMock()

    mock._evaluations = {}
    mock._epochs = {}
    mock._test_runs = {}
    mock._sessions = {}
    mock._prompts = {}
    mock._personas = {}
    mock._metrics = {}
    mock._suggestions = {}
    mock._snapshots = {}

    # Evaluation operations
    async def create_evaluation(evaluation):
        mock._evaluations[evaluation.id] = _copy(evaluation)
        return evaluation

    async def get_evaluation(evaluation_id):
        return _copy(mock._evaluations.get(evaluation_id))

    async def list_evaluations(skip=0, limit=100, status=None):
        evals = [e for e in mock._evaluations.values() if status is None or e.status == status]
        return [_copy(e) for e in evals[skip:skip + limit]]

    async def update_evaluation(evaluation):
        mock._evaluations[evaluation.id] = _copy(evaluation)
        return evaluation

    # Epoch operations
    async def create_epoch(epoch):
        for existing in mock._epochs.values():
            if existing.evaluation_id == epoch.evaluation_id and existing.epoch_number == epoch.epoch_number:
                raise ValueError("UNIQUE constraint failed: epochs.evaluation_id, epochs.epoch_number")
        mock._epochs[epoch.id] = _copy(epoch)
        return epoch

    async def get_epoch(epoch_id):
        return _copy(mock._epochs.get(epoch_id))

    async def list_epochs(evaluation_id):
        epochs = [e for e in mock._epochs.values() if e.evaluation_id == evaluation_id]
        return [_copy(e) for e in sorted(epochs, key=lambda e: e.epoch_number)]

    async def get_max_epoch_number(evaluation_id):
        numbers = [e.epoch_number for e in mock._epochs.values() if e.evaluation_id == evaluation_id]
        return max(numbers) if numbers else 0

    async def update_epoch(epoch):
        mock._epochs[epoch.id] = _copy(epoch)
        return epoch

    # Test run + session operations
    async def create_test_run(test_run, sessions=None):
        mock._test_runs[test_run.id] = _copy(test_run)
        for session in sessions or []:
            mock._sessions[session.id] = _copy(session)
        return test_run

    async def get_test_run(test_run_id):
        return _copy(mock._test_runs.get(test_run_id))

    async def list_test_runs(status=None):
        return [_copy(r) for r in mock._test_runs.values() if status is None or r.status == status]

    async def update_test_run(test_run):
        mock._test_runs[test_run.id] = _copy(test_run)
        return test_run

    async def get_session(session_id):
        return _copy(mock._sessions.get(session_id))

    async def list_sessions(test_run_id, status=None):
        sessions = [
            s for s in mock._sessions.values()
            if s.test_run_id == test_run_id and (status is None or s.status == status)
        ]
        return [_copy(s) for s in sorted(sessions, key=lambda s: (s.persona_id, s.instance_number))]

    async def update_session(session):
        mock._sessions[session.id] = _copy(session)
        return session

    # Prompt operations
    async def create_prompt(prompt):
        mock._prompts[prompt.id] = _copy(prompt)
        return prompt

    async def get_prompt(prompt_id):
        return _copy(mock._prompts.get(prompt_id))

    async def update_prompt_stats(prompt):
        stored = mock._prompts[prompt.id]
        stored.total_runs = prompt.total_runs
        stored.avg_accuracy = prompt.avg_accuracy
        stored.avg_latency = prompt.avg_latency
        return prompt

    # Persona operations
    async def create_persona(persona):
        mock._personas[persona.id] = _copy(persona)
        return persona

    async def get_persona(persona_id):
        return _copy(mock._personas.get(persona_id))

    async def list_personas():
        return [_copy(p) for p in sorted(mock._personas.values(), key=lambda p: p.name)]

    async def ensure_default_personas():
        from src.evolver.seed_service import default_personas
        if mock._personas:
            return 0
        for persona in default_personas():
            await create_persona(persona)
        return len(mock._personas)

    # Analysis output
    async def create_metrics_record(record):
        mock._metrics[record.id] = _copy(record)
        return record

    async def list_metrics(epoch_id):
        return [_copy(m) for m in mock._metrics.values() if m.epoch_id == epoch_id]

    async def create_suggestion(suggestion):
        mock._suggestions[suggestion.id] = _copy(suggestion)
        return suggestion

    async def list_suggestions(test_run_id):
        found = [s for s in mock._suggestions.values() if s.test_run_id == test_run_id]
        return [_copy(s) for s in sorted(found, key=lambda s: -s.confidence)]

    async def update_suggestion(suggestion):
        mock._suggestions[suggestion.id] = _copy(suggestion)
        return suggestion

    async def create_snapshot(snapshot):
        mock._snapshots[snapshot.id] = _copy(snapshot)
        return snapshot

    async def list_snapshots(epoch_id):
        return [_copy(s) for s in mock._snapshots.values() if s.epoch_id == epoch_id]

    async def get_snapshot(snapshot_id):
        return _copy(mock._snapshots.get(snapshot_id))

    # Wire up the mock methods
    mock.create_evaluation = create_evaluation
    mock.get_evaluation = get_evaluation
    mock.list_evaluations = list_evaluations
    mock.update_evaluation = update_evaluation

    mock.create_epoch = create_epoch
    mock.get_epoch = get_epoch
    mock.list_epochs = list_epochs
    mock.get_max_epoch_number = get_max_epoch_number
    mock.update_epoch = update_epoch

    mock.create_test_run = create_test_run
    mock.get_test_run = get_test_run
    mock.list_test_runs = list_test_runs
    mock.update_test_run = update_test_run
    mock.get_session = get_session
    mock.list_sessions = list_sessions
    mock.update_session = update_session

    mock.create_prompt = create_prompt
    mock.get_prompt = get_prompt
    mock.update_prompt_stats = update_prompt_stats

    mock.create_persona = create_persona
    mock.get_persona = get_persona
    mock.list_personas = list_personas
    mock.ensure_default_personas = ensure_default_personas

    mock.create_metrics_record = create_metrics_record
    mock.list_metrics = list_metrics
    mock.create_suggestion = create_suggestion
    mock.list_suggestions = list_suggestions
    mock.update_suggestion = update_suggestion
    mock.create_snapshot = create_snapshot
    mock.list_snapshots = list_snapshots
    mock.get_snapshot = get_snapshot

    return mock


@pytest.fixture
def seeded_db(mock_db):
    """mock_db with the default personas and one source prompt (id 'prompt_src')."""
    from src.evolver.models import PromptVersion
    from src.evolver.seed_service import default_personas

    for persona in default_personas():
        mock_db._personas[persona.id] = persona
    mock_db._prompts["prompt_src"] = PromptVersion(
        id="prompt_src",
        name="Sales agent",
        content="You are a friendly sales agent. Book a demo with the customer.",
    )
    return mock_db


# ==============================================================================
# Campaign Controller Fixtures
# ==============================================================================

@pytest.fixture
def mock_executor():
    """EpochExecutor stand-in; tests set execute.side_effect."""
    executor = MagicMock()
    executor.execute = AsyncMock()
    executor.dispatcher.finalize_run = AsyncMock()
    return executor


@pytest.fixture
def campaign_controller(seeded_db, mock_executor):
    from src.evolver.campaign_controller import CampaignController
    from src.evolver.scheduler import LocalTaskScheduler

    return CampaignController(seeded_db, mock_executor, LocalTaskScheduler())


# ==============================================================================
# FastAPI Test Client Fixtures
# ==============================================================================

@pytest.fixture
def app_with_mocks(seeded_db, campaign_controller):
    """Create a minimal FastAPI app with mocked dependencies for testing.

    Note: We create a simplified test app instead of importing the main app
    so the lifespan (recovery, seeding) and the /blobs mount stay out of unit tests.
    """
    from fastapi import FastAPI
    from src.evolver.controllers import router

    with patch('src.evolver.controllers.db', seeded_db), \
         patch('src.evolver.controllers.campaigns', campaign_controller), \
         patch('src.evolver.controllers._run_campaign', new_callable=AsyncMock) as mock_run_campaign:

        test_app = FastAPI(title="Test API")
        test_app.include_router(router)

        @test_app.get("/")
        async def root():
            return {"message": "Voice Prompt Evolver API", "docs": "/api/docs"}

        @test_app.get("/health")
        async def health():
            return {"status": "ok"}

        yield test_app, seeded_db, mock_run_campaign


@pytest.fixture
def test_client(app_with_mocks):
    """Synchronous test client for simple endpoint tests."""
    app, _, _ = app_with_mocks
    with TestClient(app) as client:
        yield client


@pytest.fixture
async def async_client(app_with_mocks) -> AsyncGenerator[AsyncClient, None]:
    """Async test client for async endpoint tests."""
    app, _, _ = app_with_mocks
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client


# ==============================================================================
# Voice Session Fakes
# ==============================================================================

@pytest.fixture
def fake_speech():
    return FakeSpeech()


@pytest.fixture
def fake_responder():
    return FakeResponder()


# ==============================================================================
# Sample Test Data Fixtures
# ==============================================================================

@pytest.fixture
def sample_evaluation_request():
    """Sample evaluation creation request."""
    return {
        "name": "Demo booking agent",
        "description": "Optimize the outbound demo booking prompt",
        "voice_agent_id": "agent_123",
        "source_prompt_id": "prompt_src",
        "config": {
            "max_epochs": 3,
            "tests_per_epoch": 4,
            "persona_ids": ["assertive", "emotional"],
            "concurrency": 2,
            "improvement_threshold": 2.0,
            "target_metric": "accuracy",
            "conversion_goals": ["Book a demo"],
        },
    }
