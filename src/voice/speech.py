"""
Speech-to-text and text-to-speech through the OpenAI audio endpoints.
"""

import asyncio
from abc import ABC, abstractmethod
from typing import Optional

from ..evolver import config
from ..evolver.errors import ProviderError
from ..evolver.llm_service import retry_with_backoff

import logging
logger = logging.getLogger(__name__)


class SpeechProvider(ABC):

    @abstractmethod
    async def transcribe(self, wav_bytes: bytes) -> str:
        ...

    @abstractmethod
    async def synthesize(self, text: str, voice: Optional[str] = None) -> bytes:
        """Return speech as a 16-bit WAV container."""


class OpenAISpeechProvider(SpeechProvider):
    def __init__(self, base_url: Optional[str] = None, api_key: Optional[str] = None):
        self.base_url = base_url or config.SPEECH_BASE_URL
        self.api_key = api_key or config.SPEECH_API_KEY
        self.openai_client = None

    def _get_client(self):
        if self.openai_client is None:
            from openai import OpenAI
            self.openai_client = OpenAI(base_url=self.base_url, api_key=self.api_key)
        return self.openai_client

    async def transcribe(self, wav_bytes: bytes) -> str:
        client = self._get_client()

        async def _call():
            return await asyncio.to_thread(
                client.audio.transcriptions.create,
                model=config.STT_MODEL,
                file=("turn.wav", wav_bytes, "audio/wav"),
            )

        try:
            response = (await retry_with_backoff(_call)).result
        except Exception as e:
            raise ProviderError("speech", f"transcription failed: {e}", cause=e) from e
        return (getattr(response, "text", "") or "").strip()

    async def synthesize(self, text: str, voice: Optional[str] = None) -> bytes:
        client = self._get_client()

        async def _call():
            return await asyncio.to_thread(
                client.audio.speech.create,
                model=config.TTS_MODEL,
                voice=voice or config.TTS_VOICE,
                input=text,
                response_format="wav",
            )

        try:
            response = (await retry_with_backoff(_call)).result
        except Exception as e:
            raise ProviderError("speech", f"synthesis failed: {e}", cause=e) from e
        return response.content
