"""
Integration Tests for the Evaluation Flow

Runs whole campaigns against a real SQLite file and local blob store. Only
the remote edges are replaced: the web-call API, the LiveKit room (scripted
FakeTransport), speech, the persona model and the judge LLM.
"""

import os
import pytest
from unittest.mock import AsyncMock, MagicMock

from src.evolver.campaign_controller import CampaignController
from src.evolver.epoch_executor import EpochExecutor
from src.evolver.errors import ProviderError
from src.evolver.judges import ConversionAnalysis, SuggestionBatch, SuggestionDraft, TranscriptAnalysis
from src.evolver.models import (
    Epoch, EpochStatus, EvaluationCreate, EvaluationStatus, PromptVersion, SessionStatus,
    TestRunStatus,
)
from src.evolver.prompt_optimizer import OptimizedPrompt, PromptOptimizer
from src.evolver.results_analyzer import ResultsAnalyzer
from src.evolver.scheduler import LocalTaskScheduler
from src.evolver.session_runner import VoiceSessionRunner
from src.evolver.sqlite_service import SQLiteService
from src.evolver.test_run_dispatcher import TestRunDispatcher
from src.voice.blob_store import LocalBlobStore
from src.voice.web_call import WebCall
from tests.mocks.voice_fakes import FakeResponder, FakeSpeech, FakeTransport, instant_sleep


SESSIONS_PER_EPOCH = 4


def scripted_llm():
    """Judge LLM: epoch 1 sessions score 70, later ones 75."""
    calls = {"accuracy": 0, "optimize": 0}

    async def generate_structured(schema, system_prompt, prompt):
        if schema is TranscriptAnalysis:
            calls["accuracy"] += 1
            return TranscriptAnalysis(accuracy=70 if calls["accuracy"] <= SESSIONS_PER_EPOCH else 75)
        if schema is ConversionAnalysis:
            return ConversionAnalysis(conversion_achieved=True, conversion_score=80)
        if schema is SuggestionBatch:
            return SuggestionBatch(suggestions=[SuggestionDraft(
                issue="Answers run long", suggestion="Be brief",
                suggested_prompt_addition="Keep every answer under two sentences.", confidence=0.7,
            )])
        if schema is OptimizedPrompt:
            calls["optimize"] += 1
            return OptimizedPrompt(
                improved_prompt=f"You are a concise sales agent. Revision {calls['optimize']}.",
                reasoning="Shorter answers",
                predicted_accuracy_improvement=4,
            )
        raise AssertionError(f"unexpected schema {schema}")

    llm = MagicMock()
    llm.generate_structured = AsyncMock(side_effect=generate_structured)
    return llm


@pytest.fixture
async def stack(tmp_path):
    db = SQLiteService(db_path=str(tmp_path / "evolver.db"))
    await db.ensure_default_personas()
    await db.create_prompt(PromptVersion(id="prompt_src", name="Sales agent", content="You are a sales agent."))

    llm = scripted_llm()
    web_calls = MagicMock()
    web_calls.create_web_call = AsyncMock(return_value=WebCall(call_id="call_1", access_token="tok_1"))
    transports = []

    def transport_factory():
        transport = FakeTransport(script=[1.0, 1.0, 1.0])
        transports.append(transport)
        return transport

    scheduler = LocalTaskScheduler()
    runner = VoiceSessionRunner(
        db, llm, FakeSpeech(), transport_factory,
        web_calls=web_calls,
        blob_store=LocalBlobStore(str(tmp_path / "blobs"), "http://test/blobs"),
        responder=FakeResponder(),
        livekit_url="wss://livekit.test",
        engine_options={"silence_grace_seconds": 0, "sleep": instant_sleep},
    )
    executor = EpochExecutor(
        db,
        TestRunDispatcher(db, runner, scheduler),
        ResultsAnalyzer(db, llm),
        PromptOptimizer(llm),
    )
    controller = CampaignController(db, executor, scheduler)
    return {
        "db": db, "controller": controller, "web_calls": web_calls,
        "transports": transports, "blob_dir": tmp_path / "blobs",
    }


def evaluation_request(**config):
    values = dict(
        max_epochs=2, tests_per_epoch=SESSIONS_PER_EPOCH, persona_ids=["assertive", "emotional"],
        concurrency=2, improvement_threshold=2.0, conversion_goals=["Book a demo"], max_turns=2,
    )
    values.update(config)
    return EvaluationCreate(name="Demo booking", voice_agent_id="agent_123", source_prompt_id="prompt_src", config=values)


class TestCampaignFlow:

    @pytest.mark.asyncio
    async def test_two_epoch_campaign(self, stack):
        db, controller = stack["db"], stack["controller"]
        evaluation = await controller.create_evaluation(evaluation_request())
        await controller.start(evaluation.id)

        result = await controller.run(evaluation.id)

        assert result.status == EvaluationStatus.completed
        assert result.completed_epochs == 2

        epochs = await db.list_epochs(evaluation.id)
        assert [e.status for e in epochs] == [EpochStatus.completed, EpochStatus.completed]
        assert [e.accuracy for e in epochs] == [70.0, 75.0]
        assert [e.is_accepted for e in epochs] == [True, True]
        assert epochs[1].accuracy_delta == pytest.approx(5.0)
        assert epochs[1].prompt_id == epochs[0].resulting_prompt_id

        stored = await db.get_evaluation(evaluation.id)
        assert stored.best_prompt_id == epochs[1].resulting_prompt_id
        assert stored.best_accuracy == 75.0
        assert stored.total_improvement == pytest.approx(5.0)

        # Prompt lineage: source -> revision 1 -> revision 2
        best = await db.get_prompt(stored.best_prompt_id)
        parent = await db.get_prompt(best.parent_id)
        assert best.version == 3 and parent.version == 2
        assert parent.parent_id == "prompt_src"
        source = await db.get_prompt("prompt_src")
        assert source.total_runs == 1 and source.avg_accuracy == 70.0

    @pytest.mark.asyncio
    async def test_sessions_are_recorded(self, stack):
        db, controller = stack["db"], stack["controller"]
        evaluation = await controller.create_evaluation(evaluation_request(max_epochs=1))
        await controller.start(evaluation.id)
        await controller.run(evaluation.id)

        epoch = (await db.list_epochs(evaluation.id))[0]
        run = await db.get_test_run(epoch.test_run_id)
        assert run.status == TestRunStatus.completed
        assert run.tests_per_persona == {"assertive": 2, "emotional": 2}
        assert (run.completed_sessions, run.failed_sessions) == (4, 0)
        assert run.total_tokens_in == 4 * 2 * 10

        sessions = await db.list_sessions(run.id)
        assert [(s.persona_id, s.instance_number) for s in sessions] == [
            ("assertive", 1), ("assertive", 2), ("emotional", 1), ("emotional", 2),
        ]
        for session in sessions:
            assert session.status == SessionStatus.completed
            assert session.turns == 2
            assert len(session.transcript) == 4
            assert session.accuracy == 70.0
            assert session.progress == 100.0
            assert session.call_id == "call_1"
            assert session.audio_url == f"http://test/blobs/voice-calls/{run.id}/{session.id}.wav"
            assert os.path.exists(stack["blob_dir"] / "voice-calls" / run.id / f"{session.id}.wav")

        assert all(t.connected_with == ("wss://livekit.test", "tok_1") for t in stack["transports"])
        stack["web_calls"].create_web_call.assert_awaited_with("agent_123", "Emotional Customer")

        assert len(await db.list_snapshots(epoch.id)) == 4
        assert {m.persona_id for m in await db.list_metrics(epoch.id)} == {"assertive", "emotional"}
        suggestions = await db.list_suggestions(run.id)
        assert len(suggestions) == 2
        assert all(s.suggested_prompt.endswith("under two sentences.") for s in suggestions)

    @pytest.mark.asyncio
    async def test_unreachable_agent_fails_first_epoch(self, stack):
        db, controller = stack["db"], stack["controller"]
        stack["web_calls"].create_web_call.side_effect = ProviderError("web_call", "HTTP 503")
        evaluation = await controller.create_evaluation(evaluation_request())
        await controller.start(evaluation.id)

        result = await controller.run(evaluation.id)

        assert result.status == EvaluationStatus.failed
        assert result.failed_epoch_number == 1
        stored = await db.get_evaluation(evaluation.id)
        assert "All 4 sessions failed" in stored.error_message

        epoch = (await db.list_epochs(evaluation.id))[0]
        assert epoch.status == EpochStatus.failed
        sessions = await db.list_sessions(epoch.test_run_id)
        assert all(s.status == SessionStatus.failed for s in sessions)
        assert all("HTTP 503" in s.error_message for s in sessions)
        assert (await db.get_test_run(epoch.test_run_id)).status == TestRunStatus.failed


class TestPersistence:

    @pytest.mark.asyncio
    async def test_epoch_numbers_are_unique(self, stack):
        db = stack["db"]
        await db.create_epoch(Epoch(evaluation_id="eval_x", epoch_number=1, prompt_id="prompt_src"))

        with pytest.raises(Exception):
            await db.create_epoch(Epoch(evaluation_id="eval_x", epoch_number=1, prompt_id="prompt_src"))
        assert await db.get_max_epoch_number("eval_x") == 1

    @pytest.mark.asyncio
    async def test_default_personas_seeded_once(self, stack):
        db = stack["db"]
        assert await db.ensure_default_personas() == 0
        assert len(await db.list_personas()) == 6

    @pytest.mark.asyncio
    async def test_restart_recovery_pauses_campaign(self, stack):
        """A fresh controller on the same database pauses the orphaned campaign."""
        db, controller = stack["db"], stack["controller"]
        evaluation = await controller.create_evaluation(evaluation_request(max_epochs=1))
        await controller.start(evaluation.id)
        await db.create_epoch(Epoch(evaluation_id=evaluation.id, epoch_number=1, prompt_id="prompt_src",
                                    status=EpochStatus.running))

        restarted = CampaignController(db, controller.executor, LocalTaskScheduler())
        assert await restarted.recover_interrupted() == 1

        stored = await db.get_evaluation(evaluation.id)
        assert stored.status == EvaluationStatus.paused
        assert (await db.list_epochs(evaluation.id))[0].status == EpochStatus.failed
