from __future__ import annotations

import asyncio
import enum
import logging
from collections.abc import Awaitable, Callable, Iterator
from dataclasses import dataclass

from .cache import RenderCache
from .codegen import sample_name
from .config import SourceReference
from .errors import SampleNameCollisionError, UnitClosedError
from .materializer import ResourceHandle

_LOGGER = logging.getLogger("kromolive.bank")


class RegistrationStatus(str, enum.Enum):
    PENDING = "pending"
    REGISTERED = "registered"
    FAILED = "failed"


@dataclass(slots=True, eq=False)
class Sample:
    name: str
    handle: ResourceHandle
    source: SourceReference
    status: RegistrationStatus = RegistrationStatus.PENDING

    @property
    def url(self) -> str:
        return self.handle.url

    @property
    def source_id(self) -> str:
        return self.source.source_id


class SampleBank:
    """Per-unit registry of rendered samples, keyed by source id.

    Names are ``unit<id>_evo_<n>`` with a counter that only moves forward until
    :meth:`clear`. Each sample owns its resource handle and revokes it when it
    leaves the bank.
    """

    def __init__(
        self,
        unit_id: str,
        cache: RenderCache,
        *,
        on_added: Callable[[Sample], Awaitable[None]] | None = None,
        on_removed: Callable[[Sample], None] | None = None,
    ) -> None:
        self.unit_id = unit_id
        self._cache = cache
        self._on_added = on_added
        self._on_removed = on_removed
        self._samples: dict[str, Sample] = {}
        self._names: dict[str, str] = {}
        self._pending: dict[str, asyncio.Task[Sample]] = {}
        self._counter = 0
        self._closed = False
        self.has_unregistered = False

    @property
    def counter(self) -> int:
        return self._counter

    @property
    def closed(self) -> bool:
        return self._closed

    def __len__(self) -> int:
        return len(self._samples)

    def __iter__(self) -> Iterator[Sample]:
        return iter(list(self._samples.values()))

    def __contains__(self, source_id: object) -> bool:
        return source_id in self._samples

    def get(self, source_id: str) -> Sample | None:
        return self._samples.get(source_id)

    def by_name(self, name: str) -> Sample | None:
        source_id = self._names.get(name)
        return self._samples.get(source_id) if source_id is not None else None

    def names(self) -> list[str]:
        return [sample.name for sample in self._samples.values()]

    def name_map(self) -> dict[str, str]:
        return {sample.name: sample.url for sample in self._samples.values()}

    async def add(self, source: SourceReference) -> Sample:
        if self._closed:
            raise UnitClosedError(f"Unit {self.unit_id} is closed")
        existing = self._samples.get(source.source_id)
        if existing is not None:
            _LOGGER.debug("Unit %s already holds %s as %s", self.unit_id, source.source_id, existing.name)
            return existing

        task = self._pending.get(source.source_id)
        if task is None:
            task = asyncio.get_running_loop().create_task(
                self._materialize(source), name=f"kromolive-add:{self.unit_id}:{source.source_id}"
            )
            self._pending[source.source_id] = task
            task.add_done_callback(
                lambda done, source_id=source.source_id: self._settle(source_id, done)
            )
        return await asyncio.shield(task)

    def remove(self, source_id: str) -> bool:
        sample = self._samples.pop(source_id, None)
        if sample is None:
            return False
        self._names.pop(sample.name, None)
        sample.handle.revoke()
        _LOGGER.info("Unit %s removed %s (%s)", self.unit_id, sample.name, source_id)
        if self._on_removed is not None:
            self._on_removed(sample)
        return True

    def clear(self) -> None:
        samples = list(self._samples.values())
        self._samples.clear()
        self._names.clear()
        self._counter = 0
        self.has_unregistered = False
        for sample in samples:
            sample.handle.revoke()
            if self._on_removed is not None:
                self._on_removed(sample)
        _LOGGER.info("Unit %s sample bank cleared (%d revoked)", self.unit_id, len(samples))

    def close(self) -> None:
        self.clear()
        self._closed = True

    def mark(self, names: list[str], status: RegistrationStatus) -> None:
        for name in names:
            sample = self.by_name(name)
            if sample is not None:
                sample.status = status
        self.has_unregistered = any(
            sample.status is not RegistrationStatus.REGISTERED for sample in self._samples.values()
        )

    def reset_registration(self) -> None:
        for sample in self._samples.values():
            sample.status = RegistrationStatus.PENDING
        self.has_unregistered = bool(self._samples)

    def _allocate_name(self) -> str:
        name = sample_name(self.unit_id, self._counter)
        if name in self._names:
            raise SampleNameCollisionError(
                f"Unit {self.unit_id} would reuse live sample name {name}"
            )
        self._counter += 1
        return name

    async def _materialize(self, source: SourceReference) -> Sample:
        handle = await self._cache.acquire(source)
        if self._closed:
            handle.revoke()
            raise UnitClosedError(f"Unit {self.unit_id} closed while rendering {source.source_id}")
        existing = self._samples.get(source.source_id)
        if existing is not None:
            handle.revoke()
            return existing
        try:
            name = self._allocate_name()
        except SampleNameCollisionError:
            handle.revoke()
            raise
        sample = Sample(name=name, handle=handle, source=source)
        self._samples[source.source_id] = sample
        self._names[sample.name] = source.source_id
        self.has_unregistered = True
        _LOGGER.info("Unit %s added %s as %s", self.unit_id, source.cache_key, sample.name)
        if self._on_added is not None:
            await self._on_added(sample)
        return sample

    def _settle(self, source_id: str, task: asyncio.Task[Sample]) -> None:
        if self._pending.get(source_id) is task:
            del self._pending[source_id]
        if not task.cancelled() and task.exception() is not None:
            _LOGGER.debug("Unit %s add of %s failed: %s", self.unit_id, source_id, task.exception())
