from __future__ import annotations

import asyncio
import logging

from pydantic import BaseModel, ConfigDict

from .config import SourceReference
from .errors import RenderError
from .fetcher import RenderCollaborator
from .materializer import RenderedAudio, ResourceHandle, ResourceMaterializer

_LOGGER = logging.getLogger("kromolive.cache")


class CacheStats(BaseModel):
    entries: int
    in_flight: int
    hits: int
    misses: int
    renders: int
    failures: int

    model_config = ConfigDict(frozen=True, extra="forbid")


class RenderCache:
    """Process-wide cache of rendered audio keyed by ``SourceReference.cache_key``.

    Concurrent misses for one key share a single render task. Entries are only
    inserted on success and never replaced; a failed render leaves no trace, so
    the next request retries from scratch. Each caller of :meth:`acquire` gets
    its own handle, which keeps revocation per-sample.
    """

    def __init__(
        self,
        collaborator: RenderCollaborator,
        materializer: ResourceMaterializer | None = None,
    ) -> None:
        self._collaborator = collaborator
        self.materializer = materializer or ResourceMaterializer()
        self._entries: dict[str, RenderedAudio] = {}
        self._in_flight: dict[str, asyncio.Task[RenderedAudio]] = {}
        self._hits = 0
        self._misses = 0
        self._renders = 0
        self._failures = 0

    def peek(self, source: SourceReference) -> RenderedAudio | None:
        return self._entries.get(source.cache_key)

    def __contains__(self, source: object) -> bool:
        return isinstance(source, SourceReference) and source.cache_key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    async def get_or_render(self, source: SourceReference) -> RenderedAudio:
        key = source.cache_key
        cached = self._entries.get(key)
        if cached is not None:
            self._hits += 1
            return cached

        task = self._in_flight.get(key)
        if task is None:
            self._misses += 1
            task = asyncio.get_running_loop().create_task(
                self._render(key, source), name=f"kromolive-render:{key}"
            )
            self._in_flight[key] = task
            task.add_done_callback(lambda done, key=key: self._settle(key, done))
        else:
            self._hits += 1
            _LOGGER.debug("Joining in-flight render for %s", key)
        # Shielded: a caller giving up must not cancel the render other callers share.
        return await asyncio.shield(task)

    async def acquire(self, source: SourceReference) -> ResourceHandle:
        rendered = await self.get_or_render(source)
        return self.materializer.materialize(rendered)

    def invalidate(self, source: SourceReference) -> bool:
        return self._entries.pop(source.cache_key, None) is not None

    def clear(self) -> None:
        self._entries.clear()

    def stats(self) -> CacheStats:
        return CacheStats(
            entries=len(self._entries),
            in_flight=len(self._in_flight),
            hits=self._hits,
            misses=self._misses,
            renders=self._renders,
            failures=self._failures,
        )

    async def _render(self, key: str, source: SourceReference) -> RenderedAudio:
        self._renders += 1
        _LOGGER.info("Rendering %s", key)
        try:
            audio = await self._collaborator.render(source)
        except RenderError:
            raise
        except Exception as exc:
            raise RenderError(f"Render of {key} failed: {type(exc).__name__}: {exc}") from exc
        rendered = await asyncio.to_thread(self.materializer.prepare, audio, label=key)
        self._entries.setdefault(key, rendered)
        return self._entries[key]

    def _settle(self, key: str, task: asyncio.Task[RenderedAudio]) -> None:
        if self._in_flight.get(key) is task:
            del self._in_flight[key]
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self._failures += 1
            _LOGGER.warning("Render of %s failed: %s", key, exc)
