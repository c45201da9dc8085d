"""
PCM / WAV helpers for voice calls.

All audio inside the engine is 16-bit signed little-endian PCM. Frames from
the transport are collected while the agent talks, converted to WAV for
transcription, and synthesized speech is decoded, resampled to 48kHz mono and
cut into 10ms frames before publishing.
"""

import io
import wave
from array import array
from dataclasses import dataclass
from typing import List, Sequence

from ..evolver import config

BYTES_PER_SAMPLE = 2


@dataclass
class PcmFrame:
    """Transport-neutral audio frame (16-bit PCM)."""
    data: bytes
    sample_rate: int = config.SAMPLE_RATE
    num_channels: int = config.NUM_CHANNELS
    samples_per_channel: int = 0

    def __post_init__(self):
        if not self.samples_per_channel:
            self.samples_per_channel = len(self.data) // (BYTES_PER_SAMPLE * self.num_channels)

    @property
    def duration_seconds(self) -> float:
        return self.samples_per_channel / self.sample_rate if self.sample_rate else 0.0


def pcm_to_wav(pcm: bytes, sample_rate: int = config.SAMPLE_RATE, num_channels: int = config.NUM_CHANNELS) -> bytes:
    buf = io.BytesIO()
    with wave.open(buf, "wb") as wav:
        wav.setnchannels(num_channels)
        wav.setsampwidth(BYTES_PER_SAMPLE)
        wav.setframerate(sample_rate)
        wav.writeframes(pcm)
    return buf.getvalue()


def resample_linear(samples: Sequence[int], from_rate: int, to_rate: int) -> array:
    """Linear interpolation resampler for int16 samples."""
    if from_rate == to_rate or not samples:
        return array("h", samples)
    ratio = from_rate / to_rate
    new_length = int(len(samples) / ratio)
    last = len(samples) - 1
    out = array("h", bytes(new_length * BYTES_PER_SAMPLE))
    for i in range(new_length):
        src = i * ratio
        lo = int(src)
        hi = min(lo + 1, last)
        frac = src - lo
        value = samples[lo] * (1 - frac) + samples[hi] * frac
        out[i] = max(-32768, min(32767, int(round(value))))
    return out


def wav_to_pcm(wav_bytes: bytes, target_rate: int = config.SAMPLE_RATE) -> bytes:
    """Decode a 16-bit WAV to mono PCM at target_rate.

    Raises ValueError for non-16-bit input.
    """
    with wave.open(io.BytesIO(wav_bytes), "rb") as wav:
        if wav.getsampwidth() != BYTES_PER_SAMPLE:
            raise ValueError(f"Unsupported sample width: {wav.getsampwidth() * 8} bits")
        channels = wav.getnchannels()
        rate = wav.getframerate()
        raw = wav.readframes(wav.getnframes())

    samples = array("h")
    samples.frombytes(raw)
    if channels > 1:
        # Keep the first channel
        samples = samples[::channels]
    return resample_linear(samples, rate, target_rate).tobytes()


def chunk_pcm(
    pcm: bytes,
    samples_per_frame: int = config.SAMPLES_PER_FRAME,
    sample_rate: int = config.SAMPLE_RATE,
    num_channels: int = config.NUM_CHANNELS,
) -> List[PcmFrame]:
    """Split PCM into fixed-size frames; the last frame may be shorter."""
    step = samples_per_frame * BYTES_PER_SAMPLE * num_channels
    return [
        PcmFrame(data=pcm[i:i + step], sample_rate=sample_rate, num_channels=num_channels)
        for i in range(0, len(pcm), step)
    ]


class AudioFrameCollector:
    """Accumulates frames and reports their total duration."""

    def __init__(self):
        self._frames: List[PcmFrame] = []
        self._total_samples = 0

    def add(self, frame: PcmFrame) -> None:
        self._frames.append(frame)
        self._total_samples += frame.samples_per_channel

    def extend(self, frames: Sequence[PcmFrame]) -> None:
        for frame in frames:
            self.add(frame)

    @property
    def is_empty(self) -> bool:
        return not self._frames

    def __len__(self) -> int:
        return len(self._frames)

    @property
    def sample_rate(self) -> int:
        return self._frames[0].sample_rate if self._frames else config.SAMPLE_RATE

    @property
    def num_channels(self) -> int:
        return self._frames[0].num_channels if self._frames else config.NUM_CHANNELS

    def duration_seconds(self) -> float:
        if not self._frames:
            return 0.0
        return self._total_samples / self.sample_rate

    def get_pcm(self) -> bytes:
        return b"".join(f.data for f in self._frames)

    def get_wav(self) -> bytes:
        if not self._frames:
            return b""
        return pcm_to_wav(self.get_pcm(), self.sample_rate, self.num_channels)

    def clear(self) -> None:
        self._frames = []
        self._total_samples = 0
