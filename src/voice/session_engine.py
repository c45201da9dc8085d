"""
Voice Session Engine: drives one synthetic customer call.

==============================================================================
FEATURES IMPLEMENTED IN THIS MODULE:
==============================================================================

1. TURN-TAKING STATE MACHINE (Feature: voice-sessions)
   - Explicit SessionState enum with an exhaustive transition table
   - Agent audio is buffered only while the agent is talking
   - A cancellable SilenceTimer decides when the agent's turn is over
   - Turns run one at a time on the engine's own loop: transcribe, generate
     the persona reply, synthesize, publish

2. STOP CONDITIONS (Feature: voice-sessions)
   - Checked after every persona turn, in order: agent goodbye, max persona
     turns, max duration. A turn in progress always completes.
   - Hard ceiling (max duration + grace) force-ends the call as failed
   - A remote disconnect first transcribes buffered agent audio; it counts
     as completed only when that last agent utterance is a goodbye

3. INCREMENTAL TRANSCRIPT PERSISTENCE (Feature: voice-sessions)
   - persist(transcript) every TRANSCRIPT_PERSIST_EVERY messages and at the end

4. CALL ARCHIVE (Feature: audio-archive)
   - Agent audio and published persona audio are kept in call order and
     returned as one 48kHz mono WAV

==============================================================================
"""

import asyncio
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Optional

from .audio_utils import AudioFrameCollector, PcmFrame, chunk_pcm, wav_to_pcm
from .speech import SpeechProvider
from .transport import AudioTransport
from ..evolver import config
from ..evolver.errors import InvalidTransitionError, ProviderError, SessionTimeoutError
from ..evolver.models import ProgressEvent, SessionStatus, TranscriptTurn, TurnRole

import logging
logger = logging.getLogger(__name__)


class SessionState(str, Enum):
    idle = "idle"
    connecting = "connecting"
    listening = "listening"
    silence_detected = "silence_detected"
    transcribing = "transcribing"
    generating = "generating"
    synthesizing = "synthesizing"
    publishing = "publishing"
    ending = "ending"
    completed = "completed"
    failed = "failed"


_TURN_STATES = (
    SessionState.silence_detected,
    SessionState.transcribing,
    SessionState.generating,
    SessionState.synthesizing,
    SessionState.publishing,
)

# Every turn state may fall back to listening (discarded audio, empty
# transcription or reply, recoverable provider error) or move to ending.
SESSION_STATE_TRANSITIONS: Dict[SessionState, frozenset] = {
    SessionState.idle: frozenset({SessionState.connecting, SessionState.failed}),
    SessionState.connecting: frozenset({SessionState.listening, SessionState.ending}),
    SessionState.listening: frozenset({SessionState.silence_detected, SessionState.ending}),
    SessionState.silence_detected: frozenset({SessionState.transcribing, SessionState.listening, SessionState.ending}),
    SessionState.transcribing: frozenset({SessionState.generating, SessionState.listening, SessionState.ending}),
    SessionState.generating: frozenset({SessionState.synthesizing, SessionState.listening, SessionState.ending}),
    SessionState.synthesizing: frozenset({SessionState.publishing, SessionState.listening, SessionState.ending}),
    SessionState.publishing: frozenset({SessionState.listening, SessionState.ending}),
    SessionState.ending: frozenset({SessionState.completed, SessionState.failed}),
    SessionState.completed: frozenset(),
    SessionState.failed: frozenset(),
}


GOODBYE_PHRASES = (
    "adios",
    "adiós",
    "hasta luego",
    "hasta pronto",
    "chao",
    "bye",
    "goodbye",
    "gracias por tu tiempo",
    "eso seria todo",
    "eso sería todo",
    "que tengas",
    "buen dia",
    "buen día",
    "is there anything else",
    "have a great day",
    "thank you for contacting",
)


def is_goodbye(text: str) -> bool:
    lower = text.lower()
    return any(phrase in lower for phrase in GOODBYE_PHRASES)


class SilenceTimer:
    """One-shot cancellable timer. start() re-arms it, cancel() disarms it."""

    def __init__(self, delay: float, callback: Callable[[], None],
                 sleep: Callable[[float], Awaitable[None]] = asyncio.sleep):
        self.delay = delay
        self._callback = callback
        self._sleep = sleep
        self._task: Optional[asyncio.Task] = None

    @property
    def active(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        self.cancel()
        self._task = asyncio.create_task(self._run())

    def cancel(self) -> None:
        if self._task is not None and not self._task.done():
            self._task.cancel()
        self._task = None

    async def _run(self):
        await self._sleep(self.delay)
        self._task = None
        self._callback()


@dataclass
class SessionOutcome:
    status: SessionStatus
    transcript: List[TranscriptTurn] = field(default_factory=list)
    error: Optional[str] = None
    stop_reason: Optional[str] = None
    timed_out: bool = False
    persona_turns: int = 0
    errors: int = 0
    duration_seconds: float = 0.0
    tokens_in: int = 0
    tokens_out: int = 0
    avg_latency_ms: Optional[float] = None
    audio_wav: bytes = b""
    audio_duration_seconds: float = 0.0


_TURN = "turn"
_DISCONNECT = "disconnect"


def _decode_reply(wav_bytes: bytes) -> List[PcmFrame]:
    return chunk_pcm(wav_to_pcm(wav_bytes))


PersistFn = Callable[[List[TranscriptTurn]], Awaitable[None]]
ProgressFn = Callable[[ProgressEvent], None]


class VoiceSessionEngine:
    """Runs one call end to end. Instances are single-use."""

    def __init__(
        self,
        transport: AudioTransport,
        speech: SpeechProvider,
        responder,
        persona_prompt: str,
        session_id: str = "",
        max_turns: int = config.MAX_TURNS,
        max_duration_seconds: float = config.MAX_DURATION_SECONDS,
        silence_grace_seconds: float = config.SILENCE_GRACE_SECONDS,
        min_audio_seconds: float = config.MIN_AUDIO_SECONDS,
        timeout_grace_seconds: float = config.SESSION_TIMEOUT_GRACE_SECONDS,
        persist_every: int = config.TRANSCRIPT_PERSIST_EVERY,
        persist: Optional[PersistFn] = None,
        on_progress: Optional[ProgressFn] = None,
        voice: Optional[str] = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.transport = transport
        self.speech = speech
        self.responder = responder
        self.persona_prompt = persona_prompt
        self.session_id = session_id
        self.max_turns = max_turns
        self.max_duration_seconds = max_duration_seconds
        self.min_audio_seconds = min_audio_seconds
        self.timeout_grace_seconds = timeout_grace_seconds
        self.persist_every = max(1, persist_every)
        self._persist = persist
        self._on_progress = on_progress
        self.voice = voice
        self._clock = clock

        self.state = SessionState.idle
        self.transcript: List[TranscriptTurn] = []
        self.persona_turns = 0
        self.errors = 0
        self.tokens_in = 0
        self.tokens_out = 0

        self._turn_audio = AudioFrameCollector()
        self._archive = AudioFrameCollector()
        self._agent_talking = True  # the agent greets first
        self._events: asyncio.Queue = asyncio.Queue()
        self._silence_timer = SilenceTimer(silence_grace_seconds, self._on_silence, sleep)
        self._started_at: Optional[float] = None
        self._awaiting_reply_since: Optional[float] = None
        self._pending_latency_ms: Optional[float] = None
        self._stop_reason: Optional[str] = None
        self._disconnected = False
        self._timed_out = False
        self._used = False

        transport.on_frame(self._on_frame)
        transport.on_speaking(self._on_speaking)
        transport.on_disconnect(self._on_disconnect)

    # ==== STATE ====

    def _set_state(self, target: SessionState) -> None:
        if target not in SESSION_STATE_TRANSITIONS[self.state]:
            raise InvalidTransitionError("VoiceSession", self.state, target)
        self.state = target

    def _elapsed(self) -> float:
        return self._clock() - self._started_at if self._started_at is not None else 0.0

    def _progress(self) -> float:
        return min(100.0, self.persona_turns / self.max_turns * 100) if self.max_turns else 0.0

    def _emit(self, last_message: Optional[TranscriptTurn] = None, error: Optional[str] = None,
              progress: Optional[float] = None) -> None:
        if not self._on_progress:
            return
        event = ProgressEvent(
            session_id=self.session_id,
            state=self.state.value,
            turns=self.persona_turns,
            progress=self._progress() if progress is None else progress,
            last_message={"role": last_message.role.value, "content": last_message.content} if last_message else None,
            error=error,
        )
        try:
            self._on_progress(event)
        except Exception as e:
            logger.warning(f"[{self.session_id}] progress callback failed: {e}")

    # ==== TRANSPORT HANDLERS ====

    def _on_frame(self, frame: PcmFrame) -> None:
        if self._agent_talking:
            self._turn_audio.add(frame)
            self._archive.add(frame)

    def _on_speaking(self, talking: bool) -> None:
        self._agent_talking = talking
        if talking:
            self._silence_timer.cancel()
            if self._awaiting_reply_since is not None:
                self._pending_latency_ms = (self._clock() - self._awaiting_reply_since) * 1000
                self._awaiting_reply_since = None
        else:
            self._silence_timer.start()

    def _on_silence(self) -> None:
        self._events.put_nowait(_TURN)

    def _on_disconnect(self) -> None:
        self._events.put_nowait(_DISCONNECT)

    # ==== TRANSCRIPT ====

    async def _append(self, turn: TranscriptTurn) -> None:
        self.transcript.append(turn)
        self._emit(last_message=turn)
        if self._persist and len(self.transcript) % self.persist_every == 0:
            try:
                await self._persist(list(self.transcript))
            except Exception as e:
                logger.warning(f"[{self.session_id}] incremental transcript persist failed: {e}")

    def _last_agent_text(self) -> Optional[str]:
        for turn in reversed(self.transcript):
            if turn.role == TurnRole.agent:
                return turn.content
        return None

    # ==== TURN ====

    async def process_turn(self) -> Optional[str]:
        """Handle one fired silence timer. Returns a stop reason or None."""
        if self._agent_talking or self.state != SessionState.listening:
            # Agent resumed before the queued turn ran
            return None

        self._set_state(SessionState.silence_detected)
        duration = self._turn_audio.duration_seconds()
        wav = self._turn_audio.get_wav()
        self._turn_audio.clear()
        if duration < self.min_audio_seconds:
            logger.debug(f"[{self.session_id}] discarding {duration:.2f}s of audio as noise")
            self._set_state(SessionState.listening)
            return None

        self._set_state(SessionState.transcribing)
        agent_text = (await self.speech.transcribe(wav)).strip()
        if not agent_text:
            self._set_state(SessionState.listening)
            return None

        await self._append(TranscriptTurn(
            role=TurnRole.agent,
            content=agent_text,
            timestamp_ms=int(self._elapsed() * 1000),
            latency_ms=self._pending_latency_ms,
        ))
        self._pending_latency_ms = None
        logger.info(f"[{self.session_id}] Agent: {agent_text}")

        self._set_state(SessionState.generating)
        reply = await self.responder.generate_text(self.persona_prompt, list(self.transcript))
        self.tokens_in += reply.tokens_in
        self.tokens_out += reply.tokens_out
        reply_text = (reply.text or "").strip()
        if not reply_text:
            self._set_state(SessionState.listening)
            return None

        self._set_state(SessionState.synthesizing)
        audio = await self.speech.synthesize(reply_text, self.voice)
        try:
            # Decoding and resampling are CPU bound; keep them off the loop
            frames = await asyncio.to_thread(_decode_reply, audio)
        except (ValueError, EOFError) as e:
            raise ProviderError("speech", f"could not decode synthesized audio: {e}", cause=e) from e

        self._set_state(SessionState.publishing)
        await self.transport.publish(frames)
        self._archive.extend(frames)
        self._awaiting_reply_since = self._clock()

        self.persona_turns += 1
        await self._append(TranscriptTurn(
            role=TurnRole.persona,
            content=reply_text,
            timestamp_ms=int(self._elapsed() * 1000),
            tokens_in=reply.tokens_in,
            tokens_out=reply.tokens_out,
        ))
        logger.info(f"[{self.session_id}] Customer: {reply_text}")

        stop = self._check_stop(agent_text)
        if stop is None:
            self._set_state(SessionState.listening)
        return stop

    def _check_stop(self, agent_text: str) -> Optional[str]:
        if is_goodbye(agent_text):
            return "goodbye"
        if self.persona_turns >= self.max_turns:
            return "max_turns"
        if self._elapsed() >= self.max_duration_seconds:
            return "max_duration"
        return None

    # ==== RUN ====

    async def _drive(self, url: str, token: str) -> None:
        self._set_state(SessionState.connecting)
        self._emit()
        await self.transport.connect(url, token)
        self._set_state(SessionState.listening)
        self._emit()

        while True:
            event = await self._events.get()
            if event == _DISCONNECT:
                self._disconnected = True
                await self._flush_agent_audio()
                return
            try:
                stop = await self.process_turn()
            except ProviderError as e:
                self.errors += 1
                logger.warning(f"[{self.session_id}] turn failed, returning to listening: {e}")
                self._emit(error=str(e))
                if self.state in _TURN_STATES:
                    self._set_state(SessionState.listening)
                continue
            if stop:
                self._stop_reason = stop
                logger.info(f"[{self.session_id}] stop condition reached: {stop}")
                return

    async def _flush_agent_audio(self) -> None:
        """Transcribe agent audio still buffered when the agent hangs up.

        The agent often drops the call inside the silence grace window, so its
        goodbye is only in the buffer.
        """
        self._silence_timer.cancel()
        duration = self._turn_audio.duration_seconds()
        if self.state != SessionState.listening or duration < self.min_audio_seconds:
            return
        wav = self._turn_audio.get_wav()
        self._turn_audio.clear()

        self._set_state(SessionState.silence_detected)
        self._set_state(SessionState.transcribing)
        try:
            agent_text = (await self.speech.transcribe(wav)).strip()
        except ProviderError as e:
            self.errors += 1
            logger.warning(f"[{self.session_id}] could not transcribe final agent audio: {e}")
            agent_text = ""
        if agent_text:
            await self._append(TranscriptTurn(
                role=TurnRole.agent,
                content=agent_text,
                timestamp_ms=int(self._elapsed() * 1000),
                latency_ms=self._pending_latency_ms,
            ))
            self._pending_latency_ms = None
            logger.info(f"[{self.session_id}] Agent (final): {agent_text}")
        self._set_state(SessionState.listening)

    async def _watchdog(self, driver: asyncio.Task, limit: float) -> None:
        await asyncio.sleep(limit)
        if not driver.done():
            self._timed_out = True
            driver.cancel()

    async def run(self, url: str, token: str) -> SessionOutcome:
        if self._used:
            raise RuntimeError("VoiceSessionEngine instances are single-use")
        self._used = True
        self._started_at = self._clock()
        hard_limit = self.max_duration_seconds + self.timeout_grace_seconds

        error: Optional[str] = None
        driver = asyncio.create_task(self._drive(url, token))
        watchdog = asyncio.create_task(self._watchdog(driver, hard_limit))
        try:
            await driver
        except asyncio.CancelledError:
            if not self._timed_out:
                raise
            error = str(SessionTimeoutError(self.session_id, hard_limit))
            logger.error(f"[{self.session_id}] {error}")
        except Exception as e:
            error = f"{type(e).__name__}: {e}" if str(e) else type(e).__name__
            logger.error(f"[{self.session_id}] session error: {error}")
        finally:
            watchdog.cancel()
            self._silence_timer.cancel()

        return await self._finish(error)

    async def _finish(self, error: Optional[str]) -> SessionOutcome:
        if self.state != SessionState.idle:
            self._set_state(SessionState.ending)
        self._emit()

        # Also runs after a remote disconnect to release local tracks
        try:
            await self.transport.disconnect()
        except Exception as e:
            logger.warning(f"[{self.session_id}] transport disconnect failed: {e}")

        if self._persist:
            try:
                await self._persist(list(self.transcript))
            except Exception as e:
                logger.warning(f"[{self.session_id}] final transcript persist failed: {e}")

        if error is None and self._disconnected and not self._stop_reason:
            last_agent = self._last_agent_text()
            if last_agent and is_goodbye(last_agent):
                self._stop_reason = "goodbye"
            else:
                error = "Transport disconnected before the conversation finished"

        succeeded = error is None
        final = SessionState.completed if succeeded else SessionState.failed
        self._set_state(final)
        self._emit(error=error, progress=100.0 if succeeded else None)

        latencies = [t.latency_ms for t in self.transcript if t.role == TurnRole.agent and t.latency_ms is not None]
        outcome = SessionOutcome(
            status=SessionStatus.completed if succeeded else SessionStatus.failed,
            transcript=list(self.transcript),
            error=error,
            stop_reason=self._stop_reason,
            timed_out=self._timed_out,
            persona_turns=self.persona_turns,
            errors=self.errors + (0 if succeeded else 1),
            duration_seconds=self._elapsed(),
            tokens_in=self.tokens_in,
            tokens_out=self.tokens_out,
            avg_latency_ms=sum(latencies) / len(latencies) if latencies else None,
            audio_wav=self._archive.get_wav(),
            audio_duration_seconds=self._archive.duration_seconds(),
        )
        logger.info(
            f"[{self.session_id}] session {outcome.status.value}: {self.persona_turns} persona turns, "
            f"{outcome.duration_seconds:.1f}s, reason={outcome.stop_reason or outcome.error}"
        )
        return outcome
