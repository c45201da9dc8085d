"""
Unit Tests for the Voice Session Engine

Drives the turn-taking state machine with a scripted transport, canned
speech and a deterministic responder. Silence timers fire on the next loop
iteration so each test runs in milliseconds.
"""

import asyncio
import threading
import pytest
from unittest.mock import patch

from src.evolver.errors import ProviderError
from src.evolver.models import SessionStatus, TurnRole
from src.voice import session_engine
from src.voice.session_engine import (
    SESSION_STATE_TRANSITIONS, SessionState, SilenceTimer, VoiceSessionEngine, is_goodbye,
)
from tests.mocks.voice_fakes import FakeResponder, FakeSpeech, FakeTransport, instant_sleep


def make_engine(transport, speech=None, responder=None, **kwargs):
    kwargs.setdefault("max_turns", 2)
    kwargs.setdefault("silence_grace_seconds", 0)
    kwargs.setdefault("sleep", instant_sleep)
    return VoiceSessionEngine(
        transport=transport,
        speech=speech or FakeSpeech(),
        responder=responder or FakeResponder(),
        persona_prompt="You are an impatient customer.",
        session_id="sess_test",
        **kwargs,
    )


class SteppingClock:
    def __init__(self):
        self.now = 0.0

    def __call__(self):
        return self.now


class SlowResponder(FakeResponder):
    """Each reply takes `step` seconds of (fake) call time."""

    def __init__(self, clock, step):
        super().__init__()
        self.clock = clock
        self.step = step

    async def generate_text(self, system_prompt, history):
        self.clock.now += self.step
        return await super().generate_text(system_prompt, history)


async def wait_until_connected(transport):
    while transport.connected_with is None:
        await asyncio.sleep(0)


class TestGoodbyeDetection:

    @pytest.mark.parametrize("text", [
        "Thanks for calling, goodbye!",
        "Perfecto, que tengas buen día",
        "Is there anything else I can help with?",
        "ADIÓS",
    ])
    def test_goodbye_phrases(self, text):
        assert is_goodbye(text)

    def test_regular_text(self):
        assert not is_goodbye("Could you tell me more about pricing?")


class TestStateTable:

    def test_every_state_has_an_entry(self):
        assert set(SESSION_STATE_TRANSITIONS) == set(SessionState)

    def test_turn_states_can_fall_back_to_listening(self):
        for state in (SessionState.silence_detected, SessionState.transcribing,
                      SessionState.generating, SessionState.synthesizing, SessionState.publishing):
            assert SessionState.listening in SESSION_STATE_TRANSITIONS[state]
            assert SessionState.ending in SESSION_STATE_TRANSITIONS[state]


class TestSilenceTimer:

    @pytest.mark.asyncio
    async def test_fires_after_delay(self):
        fired = []
        timer = SilenceTimer(0, lambda: fired.append(True), sleep=instant_sleep)

        timer.start()
        assert timer.active
        for _ in range(3):
            await asyncio.sleep(0)

        assert fired == [True]
        assert not timer.active

    @pytest.mark.asyncio
    async def test_cancel_prevents_firing(self):
        fired = []
        timer = SilenceTimer(0, lambda: fired.append(True), sleep=instant_sleep)

        timer.start()
        timer.cancel()
        for _ in range(3):
            await asyncio.sleep(0)

        assert fired == []

    @pytest.mark.asyncio
    async def test_restart_fires_once(self):
        fired = []
        timer = SilenceTimer(0, lambda: fired.append(True), sleep=instant_sleep)

        timer.start()
        timer.start()
        for _ in range(3):
            await asyncio.sleep(0)

        assert fired == [True]


class TestProcessTurn:

    @pytest.mark.asyncio
    async def test_short_audio_is_discarded(self):
        """Audio under the minimum length returns to listening without a transcription."""
        transport = FakeTransport()
        speech = FakeSpeech()
        engine = make_engine(transport, speech)
        engine.state = SessionState.listening

        transport.agent_utterance(0.2)
        engine._silence_timer.cancel()

        assert await engine.process_turn() is None
        assert engine.state == SessionState.listening
        assert speech.transcribed == []
        assert engine.transcript == []

    @pytest.mark.asyncio
    async def test_agent_talking_again_skips_turn(self):
        transport = FakeTransport()
        engine = make_engine(transport)
        engine.state = SessionState.listening

        transport._emit_speaking(True)

        assert await engine.process_turn() is None
        assert engine.state == SessionState.listening

    @pytest.mark.asyncio
    async def test_full_turn_publishes_reply(self):
        transport = FakeTransport()
        responder = FakeResponder(tokens_in=12, tokens_out=7)
        engine = make_engine(transport, responder=responder, max_turns=5)
        engine.state = SessionState.listening

        transport.agent_utterance(1.0)
        engine._silence_timer.cancel()

        assert await engine.process_turn() is None
        assert engine.state == SessionState.listening
        assert [t.role for t in engine.transcript] == [TurnRole.agent, TurnRole.persona]
        assert engine.transcript[1].content == "Customer reply 1"
        assert (engine.tokens_in, engine.tokens_out) == (12, 7)
        # 50ms of 24kHz speech becomes five 10ms frames at 48kHz
        assert len(transport.published) == 1
        assert len(transport.published[0]) == 5

    @pytest.mark.asyncio
    async def test_reply_audio_decoded_off_the_event_loop(self):
        """Decoding and resampling the synthesized reply runs in a worker thread."""
        threads = []
        real_decode = session_engine.wav_to_pcm

        def recording_decode(wav_bytes, *args, **kwargs):
            threads.append(threading.get_ident())
            return real_decode(wav_bytes, *args, **kwargs)

        transport = FakeTransport()
        engine = make_engine(transport, max_turns=5)
        engine.state = SessionState.listening
        transport.agent_utterance(1.0)
        engine._silence_timer.cancel()

        with patch("src.voice.session_engine.wav_to_pcm", side_effect=recording_decode):
            await engine.process_turn()

        assert len(threads) == 1
        assert threads[0] != threading.get_ident()
        assert len(transport.published[0]) == 5


class TestSessionRun:

    @pytest.mark.asyncio
    async def test_max_turns_completes(self):
        transport = FakeTransport(script=[1.0, 1.0, 1.0])
        responder = FakeResponder()
        engine = make_engine(transport, responder=responder, max_turns=2)

        outcome = await asyncio.wait_for(engine.run("wss://room", "token-1"), timeout=5)

        assert outcome.status == SessionStatus.completed
        assert outcome.stop_reason == "max_turns"
        assert outcome.persona_turns == 2
        assert [t.role for t in outcome.transcript] == [
            TurnRole.agent, TurnRole.persona, TurnRole.agent, TurnRole.persona,
        ]
        assert outcome.tokens_in == 20 and outcome.tokens_out == 10
        assert outcome.audio_wav and outcome.audio_duration_seconds > 2.0
        assert transport.connected_with == ("wss://room", "token-1")
        assert transport.disconnected
        assert engine.state == SessionState.completed

    @pytest.mark.asyncio
    async def test_agent_goodbye_completes(self):
        transport = FakeTransport(script=[1.0, 1.0, 1.0])
        speech = FakeSpeech(agent_lines=["Hi, this is Ana from Acme.", "Great, goodbye!"])
        engine = make_engine(transport, speech, max_turns=10)

        outcome = await asyncio.wait_for(engine.run("wss://room", "t"), timeout=5)

        assert outcome.status == SessionStatus.completed
        assert outcome.stop_reason == "goodbye"
        assert outcome.persona_turns == 2
        assert outcome.transcript[-2].content == "Great, goodbye!"

    @pytest.mark.asyncio
    async def test_disconnect_without_goodbye_fails(self):
        transport = FakeTransport(script=[1.0], disconnect_at_end=True)
        engine = make_engine(transport, max_turns=10)

        outcome = await asyncio.wait_for(engine.run("wss://room", "t"), timeout=5)

        assert outcome.status == SessionStatus.failed
        assert outcome.error == "Transport disconnected before the conversation finished"
        assert outcome.persona_turns == 1
        assert outcome.errors == 1

    @pytest.mark.asyncio
    async def test_hard_limit_times_out(self):
        """An agent that never speaks is cut off at max duration + grace."""
        transport = FakeTransport(script=[])
        engine = make_engine(transport, max_duration_seconds=0.05, timeout_grace_seconds=0.05)

        outcome = await asyncio.wait_for(engine.run("wss://room", "t"), timeout=5)

        assert outcome.status == SessionStatus.failed
        assert outcome.timed_out
        assert "exceeded hard limit" in outcome.error
        assert transport.disconnected

    @pytest.mark.asyncio
    async def test_connect_failure_fails_session(self):
        transport = FakeTransport(fail_connect=True)
        engine = make_engine(transport)

        outcome = await engine.run("wss://room", "t")

        assert outcome.status == SessionStatus.failed
        assert "livekit" in outcome.error
        assert outcome.transcript == []

    @pytest.mark.asyncio
    async def test_provider_error_in_turn_is_recoverable(self):
        class FlakySpeech(FakeSpeech):
            async def transcribe(self, wav_bytes):
                if not self.transcribed:
                    self.transcribed.append(wav_bytes)
                    raise ProviderError("speech", "transcription failed")
                return await super().transcribe(wav_bytes)

        transport = FakeTransport()
        engine = make_engine(transport, FlakySpeech(), max_turns=1)
        task = asyncio.create_task(engine.run("wss://room", "t"))

        while transport.connected_with is None:
            await asyncio.sleep(0)
        transport.agent_utterance(1.0)
        await asyncio.sleep(0.05)
        assert engine.errors == 1
        assert engine.state == SessionState.listening

        transport.agent_utterance(1.0)
        outcome = await asyncio.wait_for(task, timeout=5)

        assert outcome.status == SessionStatus.completed
        assert outcome.errors == 1
        assert outcome.persona_turns == 1

    @pytest.mark.asyncio
    async def test_transcript_persisted_incrementally(self):
        saved = []

        async def persist(transcript):
            saved.append(len(transcript))

        transport = FakeTransport(script=[1.0, 1.0])
        engine = make_engine(transport, max_turns=2, persist_every=2, persist=persist)

        await asyncio.wait_for(engine.run("wss://room", "t"), timeout=5)

        assert saved == [2, 4, 4]

    @pytest.mark.asyncio
    async def test_progress_events(self):
        events = []
        transport = FakeTransport(script=[1.0, 1.0])
        engine = make_engine(transport, max_turns=2, on_progress=events.append)

        await asyncio.wait_for(engine.run("wss://room", "t"), timeout=5)

        assert events[0].state == "connecting"
        assert events[-1].state == "completed"
        assert events[-1].progress == 100.0
        assert any(e.last_message and e.last_message["role"] == "persona" for e in events)
        assert all(e.session_id == "sess_test" for e in events)

    @pytest.mark.asyncio
    async def test_engine_is_single_use(self):
        transport = FakeTransport(script=[1.0])
        engine = make_engine(transport, max_turns=1)
        await asyncio.wait_for(engine.run("wss://room", "t"), timeout=5)

        with pytest.raises(RuntimeError):
            await engine.run("wss://room", "t")


class TestCallEnding:
    """Remote hang-ups and the stop-condition order."""

    @pytest.mark.asyncio
    async def test_goodbye_then_hang_up_inside_grace_completes(self):
        """The goodbye still buffered when the agent hangs up is transcribed and ends the call."""
        transport = FakeTransport(script=[1.0], hang_up_after_last=True)
        speech = FakeSpeech(agent_lines=["Thanks for calling, goodbye!"])
        engine = make_engine(transport, speech, max_turns=10, silence_grace_seconds=5, sleep=asyncio.sleep)

        outcome = await asyncio.wait_for(engine.run("wss://room", "t"), timeout=5)

        assert outcome.status == SessionStatus.completed
        assert outcome.stop_reason == "goodbye"
        assert outcome.error is None
        assert [(t.role, t.content) for t in outcome.transcript] == [
            (TurnRole.agent, "Thanks for calling, goodbye!"),
        ]
        assert outcome.persona_turns == 0
        assert speech.synthesized == []

    @pytest.mark.asyncio
    async def test_hang_up_mid_conversation_keeps_last_words(self):
        transport = FakeTransport(script=[1.0], hang_up_after_last=True)
        speech = FakeSpeech(agent_lines=["Let me check that for"])
        engine = make_engine(transport, speech, max_turns=10, silence_grace_seconds=5, sleep=asyncio.sleep)

        outcome = await asyncio.wait_for(engine.run("wss://room", "t"), timeout=5)

        assert outcome.status == SessionStatus.failed
        assert outcome.error == "Transport disconnected before the conversation finished"
        assert [t.content for t in outcome.transcript] == ["Let me check that for"]

    @pytest.mark.asyncio
    async def test_hang_up_with_only_noise_buffered_fails(self):
        transport = FakeTransport(script=[0.2], hang_up_after_last=True)
        speech = FakeSpeech(agent_lines=["goodbye"])
        engine = make_engine(transport, speech, silence_grace_seconds=5, sleep=asyncio.sleep)

        outcome = await asyncio.wait_for(engine.run("wss://room", "t"), timeout=5)

        assert outcome.status == SessionStatus.failed
        assert speech.transcribed == []

    @pytest.mark.asyncio
    async def test_max_duration_completes(self):
        clock = SteppingClock()
        transport = FakeTransport(script=[1.0, 1.0])
        engine = make_engine(
            transport, responder=SlowResponder(clock, step=61),
            max_turns=5, max_duration_seconds=60, clock=clock,
        )

        outcome = await asyncio.wait_for(engine.run("wss://room", "t"), timeout=5)

        assert outcome.status == SessionStatus.completed
        assert outcome.stop_reason == "max_duration"
        assert outcome.persona_turns == 1
        assert outcome.duration_seconds == 61

    @pytest.mark.asyncio
    async def test_goodbye_wins_over_max_turns(self):
        transport = FakeTransport(script=[1.0])
        speech = FakeSpeech(agent_lines=["That's all, have a great day"])
        engine = make_engine(transport, speech, max_turns=1)

        outcome = await asyncio.wait_for(engine.run("wss://room", "t"), timeout=5)

        assert outcome.status == SessionStatus.completed
        assert outcome.stop_reason == "goodbye"
        assert outcome.persona_turns == 1

    @pytest.mark.asyncio
    async def test_pause_mid_sentence_makes_one_turn(self):
        """Agent resumes inside the grace window: both segments become one agent turn."""
        gate = asyncio.Event()

        async def gated_sleep(_delay):
            await gate.wait()

        transport = FakeTransport()
        speech = FakeSpeech()
        engine = make_engine(transport, speech, max_turns=1, sleep=gated_sleep)
        task = asyncio.create_task(engine.run("wss://room", "t"))
        await wait_until_connected(transport)

        # Each segment alone is under the 0.5s noise floor
        transport.agent_utterance(0.3)
        transport.agent_utterance(0.4)
        gate.set()
        outcome = await asyncio.wait_for(task, timeout=5)

        assert outcome.status == SessionStatus.completed
        assert len(speech.transcribed) == 1
        # 44-byte WAV header + 0.7s of 48kHz mono 16-bit audio
        assert len(speech.transcribed[0]) == 44 + 33600 * 2
        assert [t.role for t in outcome.transcript] == [TurnRole.agent, TurnRole.persona]
