from __future__ import annotations

import io
from pathlib import Path
from typing import Any, Literal

import numpy as np
import soundfile as sf  # type: ignore[import]
from numpy.typing import NDArray
from pydantic import BaseModel, ConfigDict, model_validator

from .errors import RenderError

FloatArray = NDArray[np.float32]
SignalStrength = Literal["strong", "weak", "silent"]

SAMPLE_RATE = 44_100


class DecodedAudio(BaseModel):
    """Decoded PCM, always shaped ``(frames, channels)``."""

    samples: np.ndarray
    sample_rate: int = SAMPLE_RATE

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        arbitrary_types_allowed=True,
    )

    @model_validator(mode="after")
    def _normalize(self) -> "DecodedAudio":
        array: FloatArray = np.array(self.samples, dtype=np.float32, copy=True)
        if array.ndim == 1:
            array = array.reshape(-1, 1)
        if array.ndim != 2:
            raise ValueError("samples must be 1-D or (frames, channels)")
        if self.sample_rate <= 0:
            raise ValueError("sample_rate must be positive")
        array.setflags(write=False)
        object.__setattr__(self, "samples", array)
        return self

    @property
    def frames(self) -> int:
        return int(self.samples.shape[0])

    @property
    def channels(self) -> int:
        return int(self.samples.shape[1])

    @property
    def duration(self) -> float:
        return self.frames / self.sample_rate

    def channel(self, index: int = 0) -> FloatArray:
        return self.samples[:, index]


class AudioAnalysis(BaseModel):
    frames: int
    sample_rate: int
    channels: int
    peak: float
    rms: float
    non_zero_percent: float
    contains_sound: bool
    signal_strength: SignalStrength

    model_config = ConfigDict(frozen=True, extra="forbid")


def analyze_audio_content(audio: DecodedAudio, *, epsilon: float = 0.001) -> AudioAnalysis:
    """Summarise the first channel; a buffer is silent when no sample exceeds ``epsilon``."""

    data = audio.channel(0) if audio.frames else np.zeros(0, dtype=np.float32)
    if data.size == 0:
        return AudioAnalysis(
            frames=0,
            sample_rate=audio.sample_rate,
            channels=audio.channels,
            peak=0.0,
            rms=0.0,
            non_zero_percent=0.0,
            contains_sound=False,
            signal_strength="silent",
        )
    magnitude = np.abs(data)
    peak = float(np.max(magnitude))
    rms = float(np.sqrt(np.mean(np.square(data, dtype=np.float64))))
    non_zero = float(np.count_nonzero(data)) / data.size * 100.0
    strength: SignalStrength
    match rms:
        case _ if rms > 0.01:
            strength = "strong"
        case _ if rms > 0.001:
            strength = "weak"
        case _:
            strength = "silent"
    return AudioAnalysis(
        frames=int(data.size),
        sample_rate=audio.sample_rate,
        channels=audio.channels,
        peak=peak,
        rms=rms,
        non_zero_percent=round(non_zero, 2),
        contains_sound=peak > epsilon,
        signal_strength=strength,
    )


def decode_wav(payload: bytes) -> DecodedAudio:
    """Decode any soundfile-readable container held in memory."""

    if not payload:
        raise RenderError("Cannot decode an empty audio payload")
    try:
        data, sample_rate = sf.read(io.BytesIO(payload), dtype="float32", always_2d=True)
    except RuntimeError as exc:
        raise RenderError(f"Audio decode failed: {exc}") from exc
    return DecodedAudio(samples=data, sample_rate=int(sample_rate))


def encode_wav(audio: DecodedAudio) -> bytes:
    """Encode as 16-bit PCM WAV, clipping to [-1, 1]."""

    clipped = np.clip(audio.samples, -1.0, 1.0)
    buffer = io.BytesIO()
    write_fn: Any = sf.write
    write_fn(buffer, clipped, audio.sample_rate, format="WAV", subtype="PCM_16")
    return buffer.getvalue()


def write_wav(path: str | Path, audio: DecodedAudio) -> Path:
    target = Path(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(encode_wav(audio))
    return target
