"""
Voice Session Runner: one TestSession row end to end.

Creates the web call, drives the VoiceSessionEngine over a fresh transport,
archives the call audio, scores the transcript and finalizes the row. The
row is owned by this runner for the whole call; nothing else writes it
while the session is running.
"""

import asyncio
from datetime import datetime, timezone
from typing import Callable, Optional

from .errors import EvolverError, NotFoundError, ProviderError, SessionTimeoutError
from .judges import analyze_transcript
from .llm_service import LLMService, PersonaResponder
from .models import (
    ProgressEvent, SessionSettings, SessionStatus, TestSession, TurnRole,
    transition,
)
from .sqlite_service import SQLiteService
from . import config
from ..voice.blob_store import LocalBlobStore
from ..voice.session_engine import SessionOutcome, VoiceSessionEngine
from ..voice.speech import SpeechProvider
from ..voice.transport import AudioTransport
from ..voice.web_call import WebCallClient

import logging
logger = logging.getLogger(__name__)


def archive_path(test_run_id: str, session_id: str) -> str:
    return f"voice-calls/{test_run_id}/{session_id}.wav"


class VoiceSessionRunner:
    def __init__(
        self,
        db: SQLiteService,
        llm: LLMService,
        speech: SpeechProvider,
        transport_factory: Callable[[], AudioTransport],
        web_calls: Optional[WebCallClient] = None,
        blob_store: Optional[LocalBlobStore] = None,
        responder=None,
        livekit_url: Optional[str] = None,
        engine_options: Optional[dict] = None,
    ):
        self.db = db
        self.llm = llm
        self.speech = speech
        self.transport_factory = transport_factory
        self.web_calls = web_calls or WebCallClient()
        self.blob_store = blob_store or LocalBlobStore()
        self.responder = responder or PersonaResponder(llm)
        self.livekit_url = livekit_url or config.LIVEKIT_URL
        # Extra VoiceSessionEngine kwargs (silence grace, clock, sleep, ...)
        self.engine_options = engine_options or {}

    async def run(
        self,
        session_id: str,
        settings: SessionSettings,
        on_progress: Optional[Callable[[ProgressEvent], None]] = None,
    ) -> TestSession:
        """Run the call for one pending session.

        Returns the finalized completed session. Raises if the session
        failed, after the failure has been recorded on the row.
        """
        session = await self.db.get_session(session_id)
        if not session:
            raise NotFoundError("TestSession", session_id)
        persona = await self.db.get_persona(session.persona_id)

        try:
            if not persona:
                raise NotFoundError("Persona", session.persona_id)

            transition(session, SessionStatus.running)
            session.started_at = datetime.now(timezone.utc)
            await self.db.update_session(session)

            call = await self.web_calls.create_web_call(settings.voice_agent_id, persona.name)
            session.call_id = call.call_id
            await self.db.update_session(session)

            async def _persist(transcript):
                session.transcript = transcript
                session.turns = sum(1 for t in transcript if t.role == TurnRole.persona)
                session.progress = min(100.0, session.turns / settings.max_turns * 100)
                await self.db.update_session(session)

            engine = VoiceSessionEngine(
                transport=self.transport_factory(),
                speech=self.speech,
                responder=self.responder,
                persona_prompt=persona.behavior_prompt,
                session_id=session.id,
                max_turns=settings.max_turns,
                max_duration_seconds=settings.max_duration_seconds,
                persist=_persist,
                on_progress=on_progress,
                **self.engine_options,
            )
            outcome = await engine.run(self.livekit_url, call.access_token)
        except Exception as e:
            await self._mark_failed(session, f"{type(e).__name__}: {e}")
            raise

        # The row must leave "running" however finalization ends
        try:
            await self._archive_audio(session, outcome)
            self._apply_outcome(session, outcome)

            if outcome.status == SessionStatus.completed and outcome.transcript:
                try:
                    analysis = await analyze_transcript(self.llm, outcome.transcript, persona)
                except Exception as e:
                    raise ProviderError("judge", f"Accuracy scoring failed: {e}", cause=e) from e
                session.accuracy = analysis.accuracy

            transition(session, outcome.status)
            session.completed_at = datetime.now(timezone.utc)
            if outcome.status == SessionStatus.completed:
                session.progress = 100.0
            await self.db.update_session(session)
        except asyncio.CancelledError:
            await self._mark_failed(session, "Cancelled while finalizing the session")
            raise
        except Exception as e:
            await self._mark_failed(session, f"{type(e).__name__}: {e}")
            raise

        if outcome.status == SessionStatus.failed:
            if outcome.timed_out:
                raise SessionTimeoutError(
                    session.id, settings.max_duration_seconds + config.SESSION_TIMEOUT_GRACE_SECONDS
                )
            raise ProviderError("voice_session", outcome.error or "session failed")
        return session

    @staticmethod
    def _apply_outcome(session: TestSession, outcome: SessionOutcome) -> None:
        session.transcript = list(outcome.transcript)
        session.turns = outcome.persona_turns
        session.avg_latency = outcome.avg_latency_ms
        session.tokens_in = outcome.tokens_in
        session.tokens_out = outcome.tokens_out
        session.errors = outcome.errors
        session.error_message = outcome.error
        session.duration_seconds = outcome.duration_seconds

    async def _archive_audio(self, session: TestSession, outcome: SessionOutcome) -> None:
        if not outcome.audio_wav:
            return
        try:
            session.audio_url = await self.blob_store.put(archive_path(session.test_run_id, session.id), outcome.audio_wav)
            session.audio_duration_seconds = outcome.audio_duration_seconds
        except EvolverError as e:
            logger.warning(f"Audio archive failed for session {session.id}: {e}")

    async def _mark_failed(self, session: TestSession, message: str) -> None:
        logger.error(f"Session {session.id} failed: {message}")
        if session.status in (SessionStatus.pending, SessionStatus.running):
            transition(session, SessionStatus.failed)
        session.error_message = message
        session.errors += 1
        session.completed_at = datetime.now(timezone.utc)
        await self.db.update_session(session)

