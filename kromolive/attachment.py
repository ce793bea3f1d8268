from __future__ import annotations

import asyncio
import enum
import itertools
import logging
from collections.abc import Callable, Collection, Mapping

from .evaluator import Evaluator, HostElement

_LOGGER = logging.getLogger("kromolive.attachment")
_GENERATIONS = itertools.count(1)


class AttachmentState(str, enum.Enum):
    DETACHED = "detached"
    ATTACHING = "attaching"
    ATTACHED = "attached"


class AttachmentSession:
    """One binding of a unit to a live evaluator and its hosting element.

    Sessions never inherit registrations from earlier sessions. Once discarded a
    session is frozen: in-flight work that finishes later becomes a no-op.
    """

    def __init__(self, unit_id: str, evaluator: Evaluator, host: HostElement | None = None) -> None:
        self.unit_id = unit_id
        self.evaluator = evaluator
        self.host = host
        self.generation = next(_GENERATIONS)
        self.registered: set[str] = set()
        self.last_registration = 0
        self._active = True
        self._lock = asyncio.Lock()

    @property
    def active(self) -> bool:
        return self._active

    @property
    def registering(self) -> bool:
        return self._lock.locked()

    def discard(self) -> None:
        self._active = False

    def forget(self, name: str) -> None:
        if self._active:
            self.registered.discard(name)

    async def register(
        self,
        current: Callable[[], Mapping[str, str]],
        *,
        only: Collection[str] | None = None,
    ) -> list[str]:
        """Register whatever in ``current()`` this session has not confirmed yet.

        Batches are serialized per session and the delta is computed after the
        lock is taken, so a queued batch always sees the latest bank. Names removed
        from the bank while the evaluator was busy are not marked registered.
        """

        async with self._lock:
            if not self._active:
                return []
            delta = {
                name: url
                for name, url in current().items()
                if name not in self.registered and (only is None or name in only)
            }
            if not delta:
                return []
            _LOGGER.debug(
                "Unit %s session %d registering %s", self.unit_id, self.generation, sorted(delta)
            )
            await self.evaluator.register_samples(delta)
            if not self._active:
                _LOGGER.debug(
                    "Unit %s session %d discarded during registration", self.unit_id, self.generation
                )
                return []
            live = current()
            confirmed = [name for name, url in delta.items() if live.get(name) == url]
            self.registered.update(confirmed)
            self.last_registration += 1
            return confirmed

    def __repr__(self) -> str:
        state = "active" if self._active else "discarded"
        return f"AttachmentSession(unit={self.unit_id!r}, gen={self.generation}, {state})"
