"""
Unit Tests for the Results Analyzer
"""

import pytest
from unittest.mock import AsyncMock, MagicMock

from src.evolver.errors import NotFoundError
from src.evolver.judges import ConversionAnalysis, SuggestionBatch, SuggestionDraft
from src.evolver.models import (
    PromptVersion, SessionStatus, TestRun, TestSession, TranscriptTurn, TurnRole,
)
from src.evolver.results_analyzer import ResultsAnalyzer, _prompt_preview, group_by_persona


def session(run_id, persona_id, n, accuracy, text, status=SessionStatus.completed):
    s = TestSession(
        test_run_id=run_id, persona_id=persona_id, instance_number=n,
        status=status, accuracy=accuracy, avg_latency=500.0 + n,
        transcript=[
            TranscriptTurn(role=TurnRole.agent, content="Would you like to book a demo?"),
            TranscriptTurn(role=TurnRole.persona, content=text),
        ],
    )
    return s


def judge_llm():
    """Conversion is achieved when the customer says 'deal'."""
    async def generate_structured(schema, system_prompt, prompt):
        if schema is ConversionAnalysis:
            achieved = "deal" in prompt
            return ConversionAnalysis(
                conversion_achieved=achieved,
                conversion_score=90 if achieved else 30,
                missed_opportunities=[] if achieved else ["No follow-up offered"],
            )
        if schema is SuggestionBatch:
            return SuggestionBatch(suggestions=[SuggestionDraft(
                issue="Dismissive tone", suggestion="Acknowledge feelings first",
                suggested_prompt_addition="Always acknowledge the customer's feelings.",
                confidence=0.8,
            )])
        raise AssertionError(f"unexpected schema {schema}")

    llm = MagicMock()
    llm.generate_structured = AsyncMock(side_effect=generate_structured)
    return llm


@pytest.fixture
async def analyzed_run(seeded_db):
    prompt = await seeded_db.get_prompt("prompt_src")
    run = TestRun(prompt_id=prompt.id, tests_per_persona={"assertive": 2, "emotional": 3}, total_sessions=5)
    rows = [
        session(run.id, "assertive", 1, 90.0, "Fine, it's a deal."),
        session(run.id, "assertive", 2, 95.0, "Not now."),
        session(run.id, "emotional", 1, 60.0, "I'm upset."),
        session(run.id, "emotional", 2, None, "This is frustrating."),
        session(run.id, "emotional", 3, None, "", status=SessionStatus.failed),
    ]
    await seeded_db.create_test_run(run, rows)
    return seeded_db, run, prompt, rows


class TestHelpers:

    def test_prompt_preview(self):
        assert _prompt_preview("short") == "short"
        assert _prompt_preview("x" * 150) == "x" * 100 + "..."

    def test_group_by_persona_keeps_order(self):
        rows = [
            TestSession(test_run_id="r", persona_id=p, instance_number=1)
            for p in ("rapid", "assertive", "rapid")
        ]
        groups = group_by_persona(rows)
        assert list(groups) == ["rapid", "assertive"]
        assert len(groups["rapid"]) == 2


class TestAnalyze:

    @pytest.mark.asyncio
    async def test_per_persona_metrics(self, analyzed_run):
        db, run, prompt, rows = analyzed_run
        analyzer = ResultsAnalyzer(db, judge_llm())

        analysis = await analyzer.analyze("epoch_1", run, prompt, ["Book a demo"], epoch_number=1)

        by_persona = {m.persona_id: m for m in analysis.metrics}
        assert set(by_persona) == {"assertive", "emotional"}

        assertive = by_persona["assertive"]
        assert assertive.accuracy == pytest.approx(92.5)
        assert assertive.conversion_rate == 50.0
        assert (assertive.conversions, assertive.conversion_opportunities) == (1, 2)

        emotional = by_persona["emotional"]
        # The failed session is excluded and the null accuracy is skipped
        assert emotional.sessions_count == 2
        assert emotional.accuracy == 60.0
        assert emotional.conversion_rate == 0.0
        assert emotional.issues[0].issue == "No follow-up offered"
        assert emotional.issues[0].count == 2

        assert analysis.accuracy == pytest.approx(76.25)
        assert analysis.conversion_rate == pytest.approx(25.0)
        assert len(await db.list_metrics("epoch_1")) == 2

    @pytest.mark.asyncio
    async def test_snapshot_per_completed_session(self, analyzed_run):
        db, run, prompt, rows = analyzed_run

        analysis = await ResultsAnalyzer(db, judge_llm()).analyze("epoch_1", run, prompt, ["Book a demo"], epoch_number=3)

        snapshots = await db.list_snapshots("epoch_1")
        assert len(snapshots) == 4
        assert sorted(analysis.snapshot_ids) == sorted(s.id for s in snapshots)
        assert rows[4].id not in {s.test_session_id for s in snapshots}

        snap = next(s for s in snapshots if s.test_session_id == rows[0].id)
        assert snap.data.persona.name == "Assertive Executive"
        assert snap.data.metrics["accuracy"] == 90.0
        assert snap.data.conversion_result["achieved"] is True
        assert snap.data.environment["epoch_number"] == 3
        assert snap.data.prompt_version == prompt.content

    @pytest.mark.asyncio
    async def test_suggestions_only_below_floor(self, analyzed_run):
        db, run, prompt, rows = analyzed_run

        analysis = await ResultsAnalyzer(db, judge_llm()).analyze("epoch_1", run, prompt, ["Book a demo"])

        assert len(analysis.suggestions) == 1
        suggestion = analysis.suggestions[0]
        assert suggestion.persona_id == "emotional"
        assert suggestion.test_run_id == run.id
        assert suggestion.prompt_id == prompt.id
        assert suggestion.suggested_prompt.endswith("Always acknowledge the customer's feelings.")
        assert suggestion.evidence.session_ids == [rows[2].id, rows[3].id]
        assert [s.id for s in await db.list_suggestions(run.id)] == [suggestion.id]

    @pytest.mark.asyncio
    async def test_no_completed_sessions(self, seeded_db):
        run = TestRun(prompt_id="prompt_src")
        await seeded_db.create_test_run(run, [])
        llm = judge_llm()

        analysis = await ResultsAnalyzer(seeded_db, llm).analyze(
            "epoch_1", run, PromptVersion(content="p"), ["Book a demo"]
        )

        assert analysis.metrics == []
        assert analysis.accuracy is None
        llm.generate_structured.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_unknown_persona(self, seeded_db):
        run = TestRun(prompt_id="prompt_src")
        await seeded_db.create_test_run(run, [session(run.id, "ghost", 1, 80.0, "hi")])

        with pytest.raises(NotFoundError):
            await ResultsAnalyzer(seeded_db, judge_llm()).analyze(
                "epoch_1", run, PromptVersion(content="p"), ["Book a demo"]
            )
