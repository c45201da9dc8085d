"""
Audio transport between the synthetic customer and the voice agent.

The session engine only sees AudioTransport: it registers handlers for
remote audio frames, agent speaking-state changes and disconnects, then
publishes its own frames. LiveKitTransport is the production implementation
on top of livekit.rtc.
"""

import asyncio
import json
from abc import ABC, abstractmethod
from typing import Callable, List, Optional, Sequence

from .audio_utils import PcmFrame
from ..evolver import config
from ..evolver.errors import ProviderError

import logging
logger = logging.getLogger(__name__)


FrameHandler = Callable[[PcmFrame], None]
SpeakingHandler = Callable[[bool], None]
DisconnectHandler = Callable[[], None]


class AudioTransport(ABC):
    """Handlers are plain callables invoked on the event loop; they must not block."""

    def __init__(self):
        self._frame_handlers: List[FrameHandler] = []
        self._speaking_handlers: List[SpeakingHandler] = []
        self._disconnect_handlers: List[DisconnectHandler] = []

    def on_frame(self, handler: FrameHandler) -> None:
        self._frame_handlers.append(handler)

    def on_speaking(self, handler: SpeakingHandler) -> None:
        """handler(True) on agent_start_talking, handler(False) on agent_stop_talking."""
        self._speaking_handlers.append(handler)

    def on_disconnect(self, handler: DisconnectHandler) -> None:
        self._disconnect_handlers.append(handler)

    def _emit_frame(self, frame: PcmFrame) -> None:
        for handler in self._frame_handlers:
            handler(frame)

    def _emit_speaking(self, talking: bool) -> None:
        for handler in self._speaking_handlers:
            handler(talking)

    def _emit_disconnect(self) -> None:
        for handler in self._disconnect_handlers:
            handler()

    @abstractmethod
    async def connect(self, url: str, token: str) -> None:
        ...

    @abstractmethod
    async def publish(self, frames: Sequence[PcmFrame]) -> None:
        ...

    @abstractmethod
    async def disconnect(self) -> None:
        ...


def parse_speaking_event(payload: bytes) -> Optional[bool]:
    """Map an agent data-channel message to a speaking state, or None."""
    try:
        event = json.loads(payload.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    if not isinstance(event, dict):
        return None
    event_type = event.get("event_type")
    if event_type == "agent_start_talking":
        return True
    if event_type == "agent_stop_talking":
        return False
    return None


class LiveKitTransport(AudioTransport):
    """WebRTC transport over a LiveKit room."""

    def __init__(self, sample_rate: int = config.SAMPLE_RATE, num_channels: int = config.NUM_CHANNELS):
        super().__init__()
        from livekit import rtc
        self._rtc = rtc
        self.sample_rate = sample_rate
        self.num_channels = num_channels
        self._room = rtc.Room()
        self._source = None
        self._local_track = None
        self._reader_tasks: List[asyncio.Task] = []
        self._closing = False

        self._room.on("track_subscribed", self._on_track_subscribed)
        self._room.on("data_received", self._on_data_received)
        self._room.on("disconnected", self._on_disconnected)

    async def connect(self, url: str, token: str) -> None:
        try:
            await self._room.connect(url, token, options=self._rtc.RoomOptions(auto_subscribe=True))
        except Exception as e:
            raise ProviderError("livekit", f"connect failed: {e}", cause=e) from e
        logger.info(f"Connected to LiveKit room {self._room.name}")

    def _on_track_subscribed(self, track, publication, participant):
        if track.kind != self._rtc.TrackKind.KIND_AUDIO:
            return
        logger.info(f"Agent audio track subscribed from {participant.identity}")
        self._reader_tasks.append(asyncio.create_task(self._read_frames(track)))

    async def _read_frames(self, track):
        stream = self._rtc.AudioStream(track, sample_rate=self.sample_rate, num_channels=self.num_channels)
        try:
            async for event in stream:
                frame = event.frame
                self._emit_frame(PcmFrame(
                    data=frame.data.tobytes(),
                    sample_rate=frame.sample_rate,
                    num_channels=frame.num_channels,
                    samples_per_channel=frame.samples_per_channel,
                ))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error(f"Audio stream error: {e}")
        finally:
            await stream.aclose()

    def _on_data_received(self, packet):
        talking = parse_speaking_event(bytes(packet.data))
        if talking is not None:
            self._emit_speaking(talking)

    def _on_disconnected(self, *args):
        if self._closing:
            return
        logger.info(f"LiveKit room disconnected: {args[0] if args else 'unknown reason'}")
        self._emit_disconnect()

    async def _ensure_published(self):
        if self._source is not None:
            return
        rtc = self._rtc
        self._source = rtc.AudioSource(self.sample_rate, self.num_channels)
        self._local_track = rtc.LocalAudioTrack.create_audio_track("customer-microphone", self._source)
        options = rtc.TrackPublishOptions(source=rtc.TrackSource.SOURCE_MICROPHONE)
        await self._room.local_participant.publish_track(self._local_track, options)

    async def publish(self, frames: Sequence[PcmFrame]) -> None:
        try:
            await self._ensure_published()
            for frame in frames:
                await self._source.capture_frame(self._rtc.AudioFrame(
                    data=frame.data,
                    sample_rate=frame.sample_rate,
                    num_channels=frame.num_channels,
                    samples_per_channel=frame.samples_per_channel,
                ))
        except Exception as e:
            raise ProviderError("livekit", f"publish failed: {e}", cause=e) from e

    async def disconnect(self) -> None:
        self._closing = True
        for task in self._reader_tasks:
            task.cancel()
        self._reader_tasks = []
        if self._source is not None:
            await self._source.aclose()
            self._source = None
        await self._room.disconnect()
