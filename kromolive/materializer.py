from __future__ import annotations

import logging
import threading
import uuid

from pydantic import BaseModel, ConfigDict

from .audio import AudioAnalysis, DecodedAudio, analyze_audio_content, encode_wav
from .errors import ResourceRevokedError

_LOGGER = logging.getLogger("kromolive.materializer")
_URL_SCHEME = "blob:kromolive/"


class RenderedAudio(BaseModel):
    """Immutable render result: the decoded buffer plus its WAV encoding."""

    audio: DecodedAudio
    wav: bytes
    analysis: AudioAnalysis

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        arbitrary_types_allowed=True,
    )


class ResourceStore:
    """In-memory object-URL table; a URL resolves until it is revoked."""

    def __init__(self) -> None:
        self._payloads: dict[str, bytes] = {}
        self._lock = threading.Lock()

    def create(self, payload: bytes) -> str:
        url = f"{_URL_SCHEME}{uuid.uuid4()}"
        with self._lock:
            self._payloads[url] = payload
        return url

    def resolve(self, url: str) -> bytes:
        with self._lock:
            payload = self._payloads.get(url)
        if payload is None:
            raise ResourceRevokedError(f"Resource {url} is revoked or unknown")
        return payload

    def revoke(self, url: str) -> None:
        with self._lock:
            removed = self._payloads.pop(url, None)
        if removed is None:
            raise ResourceRevokedError(f"Resource {url} was already revoked")

    def __contains__(self, url: object) -> bool:
        with self._lock:
            return url in self._payloads

    def __len__(self) -> int:
        with self._lock:
            return len(self._payloads)


class ResourceHandle:
    """A playable URL owned by exactly one sample; revoke it exactly once."""

    __slots__ = ("url", "_store", "_revoked")

    def __init__(self, url: str, store: ResourceStore) -> None:
        self.url = url
        self._store = store
        self._revoked = False

    @property
    def revoked(self) -> bool:
        return self._revoked

    def read(self) -> bytes:
        if self._revoked:
            raise ResourceRevokedError(f"Resource {self.url} is revoked")
        return self._store.resolve(self.url)

    def revoke(self) -> None:
        if self._revoked:
            raise ResourceRevokedError(f"Resource {self.url} was already revoked")
        self._revoked = True
        self._store.revoke(self.url)

    def __repr__(self) -> str:
        state = "revoked" if self._revoked else "live"
        return f"ResourceHandle({self.url!r}, {state})"


class ResourceMaterializer:
    def __init__(self, store: ResourceStore | None = None, *, silence_epsilon: float = 0.001) -> None:
        self.store = store or ResourceStore()
        self._silence_epsilon = silence_epsilon

    def prepare(self, audio: DecodedAudio, *, label: str = "") -> RenderedAudio:
        analysis = analyze_audio_content(audio, epsilon=self._silence_epsilon)
        if not analysis.contains_sound:
            _LOGGER.warning(
                "Rendered audio %s looks silent (peak %.6f, rms %.6f); registering anyway.",
                label or "<unnamed>",
                analysis.peak,
                analysis.rms,
            )
        else:
            _LOGGER.debug(
                "Rendered audio %s: %.2fs, %s signal, %.2f%% non-zero",
                label or "<unnamed>",
                audio.duration,
                analysis.signal_strength,
                analysis.non_zero_percent,
            )
        return RenderedAudio(audio=audio, wav=encode_wav(audio), analysis=analysis)

    def materialize(self, rendered: RenderedAudio) -> ResourceHandle:
        return ResourceHandle(self.store.create(rendered.wav), self.store)
