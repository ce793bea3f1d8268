from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Protocol, runtime_checkable

import httpx

from .audio import DecodedAudio, decode_wav
from .config import EngineSettings, SourceReference
from .errors import RenderError

_LOGGER = logging.getLogger("kromolive.fetcher")


@runtime_checkable
class RenderCollaborator(Protocol):
    """Turns a source reference into decoded audio or raises ``RenderError``."""

    async def render(self, source: SourceReference) -> DecodedAudio: ...


def rest_render_url(settings: EngineSettings, source: SourceReference) -> str:
    if not source.run_id:
        raise RenderError(f"Source {source.source_id} has no run id; cannot build a render URL")
    duration, pitch, velocity = source.path_params()
    return (
        f"{settings.rest_host}/evorenders/{source.run_id}/{source.source_id}"
        f"/{duration}/{pitch}/{velocity}"
    )


def static_render_url(settings: EngineSettings, source: SourceReference) -> str:
    if not source.run_id:
        raise RenderError(f"Source {source.source_id} has no run id; cannot build a render URL")
    duration, pitch, velocity = source.path_params()
    return (
        f"{settings.static_host}/evorenders/{source.run_id}"
        f"/{source.source_id}-{duration}_{pitch}_{velocity}.wav"
    )


class HttpAudioFetcher:
    """Fetch pre-rendered WAVs, trying the REST service, then the static host, then a renderer."""

    def __init__(
        self,
        settings: EngineSettings | None = None,
        *,
        client: httpx.AsyncClient | None = None,
        renderer: RenderCollaborator | None = None,
    ) -> None:
        self._settings = settings or EngineSettings()
        self._client = client
        self._owns_client = client is None
        self._renderer = renderer

    def candidate_urls(self, source: SourceReference) -> list[str]:
        if not source.run_id:
            return []
        return [
            rest_render_url(self._settings, source),
            static_render_url(self._settings, source),
        ]

    async def render(self, source: SourceReference) -> DecodedAudio:
        failures: list[str] = []
        urls = self.candidate_urls(source)
        if urls:
            client = self._ensure_client()
            for url in urls:
                try:
                    return await self._fetch_and_decode(client, url)
                except RenderError as exc:
                    _LOGGER.info("Render source %s unavailable: %s", url, exc)
                    failures.append(f"{url}: {exc}")
        else:
            failures.append("no run id; skipped URL sources")

        if self._renderer is not None:
            try:
                return await self._renderer.render(source)
            except RenderError as exc:
                failures.append(f"renderer: {exc}")
            except Exception as exc:
                failures.append(f"renderer: {type(exc).__name__}: {exc}")

        raise RenderError(f"All render sources failed for {source.cache_key}: " + "; ".join(failures))

    async def aclose(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
        self._client = None

    def _ensure_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                follow_redirects=True,
                timeout=httpx.Timeout(self._settings.http_timeout),
            )
            self._owns_client = True
        return self._client

    async def _fetch_and_decode(self, client: httpx.AsyncClient, url: str) -> DecodedAudio:
        try:
            response = await client.get(url)
        except httpx.TimeoutException as exc:
            raise RenderError(f"timed out: {exc}") from exc
        except httpx.HTTPError as exc:
            raise RenderError(f"connection error: {exc}") from exc
        if response.status_code != 200:
            raise RenderError(f"HTTP {response.status_code}")
        return await asyncio.to_thread(decode_wav, response.content)


class CallableRenderer:
    """Adapt an async ``source -> DecodedAudio`` function into a collaborator."""

    def __init__(
        self,
        fn: Callable[[SourceReference], Awaitable[DecodedAudio]],
        *,
        name: str = "renderer",
    ) -> None:
        self._fn = fn
        self.name = name

    async def render(self, source: SourceReference) -> DecodedAudio:
        try:
            result = await self._fn(source)
        except RenderError:
            raise
        except Exception as exc:
            raise RenderError(f"{self.name} failed: {type(exc).__name__}: {exc}") from exc
        if not isinstance(result, DecodedAudio):
            raise RenderError(f"{self.name} returned {type(result).__name__}, expected DecodedAudio")
        return result
