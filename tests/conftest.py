from __future__ import annotations

import asyncio
from collections.abc import Mapping

import numpy as np
import pytest

from kromolive.audio import DecodedAudio
from kromolive.cache import RenderCache
from kromolive.config import EngineSettings, SourceReference
from kromolive.errors import RenderError


def tone(seconds: float = 0.05, *, amplitude: float = 0.5, sample_rate: int = 8_000) -> DecodedAudio:
    t = np.arange(int(seconds * sample_rate), dtype=np.float32) / sample_rate
    return DecodedAudio(samples=amplitude * np.sin(2 * np.pi * 440.0 * t), sample_rate=sample_rate)


class FakeCollaborator:
    def __init__(self, *, gate: asyncio.Event | None = None, failures: int = 0) -> None:
        self.calls: list[SourceReference] = []
        self._gate = gate
        self._failures = failures

    async def render(self, source: SourceReference) -> DecodedAudio:
        self.calls.append(source)
        if self._gate is not None:
            await self._gate.wait()
        if self._failures > 0:
            self._failures -= 1
            raise RenderError(f"render of {source.source_id} failed")
        return tone()


class FakeEvaluator:
    def __init__(
        self,
        *,
        register_gate: asyncio.Event | None = None,
        register_error: Exception | None = None,
        failing_codes: set[str] | None = None,
    ) -> None:
        self.code: str | None = None
        self.evaluated: list[str] = []
        self.started = 0
        self.stopped = 0
        self.register_calls: list[dict[str, str]] = []
        self.registered: dict[str, str] = {}
        self._register_gate = register_gate
        self._register_error = register_error
        self._failing_codes = failing_codes or set()

    def set_code(self, code: str) -> None:
        self.code = code

    async def evaluate(self, code: str) -> None:
        self.evaluated.append(code)
        if code in self._failing_codes:
            raise SyntaxError(f"cannot parse {code!r}")

    def start(self) -> None:
        self.started += 1

    def stop(self) -> None:
        self.stopped += 1

    async def register_samples(self, samples: Mapping[str, str]) -> None:
        self.register_calls.append(dict(samples))
        if self._register_gate is not None:
            await self._register_gate.wait()
        if self._register_error is not None:
            raise self._register_error
        self.registered.update(samples)


class FakeHost:
    def __init__(self) -> None:
        self.shown: list[str] = []
        self.flags: list[tuple[bool, bool]] = []

    def show_code(self, code: str) -> None:
        self.shown.append(code)

    def apply_flags(self, *, sync: bool, solo: bool) -> None:
        self.flags.append((sync, solo))


@pytest.fixture
def collaborator() -> FakeCollaborator:
    return FakeCollaborator()


@pytest.fixture
def cache(collaborator: FakeCollaborator) -> RenderCache:
    return RenderCache(collaborator)


@pytest.fixture
def settings() -> EngineSettings:
    return EngineSettings(registration_timeout=0.2, resume_delay=0.0, restore_delay=0.0)
