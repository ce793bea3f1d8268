from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Sequence

from pydantic import BaseModel, ConfigDict

_LOGGER = logging.getLogger("kromolive.bus")


class PlayingState(BaseModel):
    id: str
    is_playing: bool

    model_config = ConfigDict(frozen=True, extra="forbid")


class UnitCallbacks(BaseModel):
    """What a unit exposes to the bus.

    ``start``, ``toggle`` and ``evaluate`` resolve to ``True`` on success. The
    optional entries widen the restore chain; ``set_solo`` lets the bus clear a
    unit's solo flag when another unit takes over.
    """

    stop: Callable[[], None]
    start: Callable[[], Awaitable[bool]]
    get_playing_state: Callable[[], bool]
    restore_if_was_playing: Callable[[Sequence[PlayingState]], Awaitable[bool]] | None = None
    toggle: Callable[[], Awaitable[bool]] | None = None
    evaluate: Callable[[], Awaitable[bool]] | None = None
    set_solo: Callable[[bool], None] | None = None

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        arbitrary_types_allowed=True,
    )


class CoordinationBus:
    """Registry of units for stop-all, start-all and exclusive solo."""

    def __init__(self, *, restore_delay: float = 0.05) -> None:
        self._units: dict[str, UnitCallbacks] = {}
        self._restore_delay = restore_delay
        self._soloing: str | None = None
        self._solo_snapshots: dict[str, tuple[PlayingState, ...]] = {}
        self._last_known: dict[str, bool] = {}

    @property
    def soloing(self) -> str | None:
        return self._soloing

    def unit_ids(self) -> list[str]:
        return list(self._units)

    def __contains__(self, unit_id: object) -> bool:
        return unit_id in self._units

    def register_unit(self, unit_id: str, callbacks: UnitCallbacks) -> None:
        if unit_id in self._units:
            _LOGGER.debug("Replacing bus callbacks for unit %s", unit_id)
        self._units[unit_id] = callbacks

    def unregister_unit(self, unit_id: str) -> None:
        self._units.pop(unit_id, None)
        self._last_known.pop(unit_id, None)
        self._solo_snapshots.pop(unit_id, None)
        if self._soloing == unit_id:
            self._soloing = None

    def get_all_playing_states(self) -> list[PlayingState]:
        states: list[PlayingState] = []
        for unit_id, callbacks in list(self._units.items()):
            try:
                states.append(PlayingState(id=unit_id, is_playing=bool(callbacks.get_playing_state())))
            except Exception as exc:
                _LOGGER.warning("Unit %s playing-state getter failed: %s", unit_id, exc, exc_info=True)
        return states

    def stop_all(self) -> list[PlayingState]:
        snapshot = self.get_all_playing_states()
        self._last_known = {state.id: state.is_playing for state in snapshot}
        for unit_id, callbacks in list(self._units.items()):
            self._stop(unit_id, callbacks)
        _LOGGER.info("Stopped %d unit(s)", len(snapshot))
        return snapshot

    async def start_all(self) -> list[str]:
        """Restart units that were playing when :meth:`stop_all` last ran."""

        started: list[str] = []
        for unit_id, was_playing in list(self._last_known.items()):
            callbacks = self._units.get(unit_id)
            if callbacks is None or not was_playing:
                continue
            if self._is_playing(unit_id, callbacks):
                continue
            if await self._restore(unit_id, callbacks):
                started.append(unit_id)
        return started

    async def restart_specific(self, states: Sequence[PlayingState]) -> list[str]:
        restarted: list[str] = []
        wanted = {state.id for state in states if state.is_playing}
        for unit_id, callbacks in list(self._units.items()):
            if callbacks.restore_if_was_playing is not None:
                try:
                    if await callbacks.restore_if_was_playing(states):
                        restarted.append(unit_id)
                except Exception as exc:
                    _LOGGER.warning("Unit %s restore hook failed: %s", unit_id, exc, exc_info=True)
                continue
            if unit_id in wanted and not self._is_playing(unit_id, callbacks):
                if await self._restore(unit_id, callbacks):
                    restarted.append(unit_id)
        return restarted

    def solo_unit(self, unit_id: str) -> tuple[PlayingState, ...]:
        """Stop every other unit and remember which of them were playing."""

        if unit_id not in self._units:
            raise KeyError(f"Unit {unit_id} is not registered on the bus")
        previous = self._soloing
        if previous == unit_id:
            # Others were stopped by the first solo; keep the snapshot taken then.
            return self._solo_snapshots.get(unit_id, ())
        if previous is not None and previous != unit_id:
            _LOGGER.info("Unit %s takes solo from unit %s", unit_id, previous)
            self._solo_snapshots.pop(previous, None)
        snapshot: list[PlayingState] = []
        for other_id, callbacks in list(self._units.items()):
            if other_id == unit_id:
                continue
            playing = self._is_playing(other_id, callbacks)
            snapshot.append(PlayingState(id=other_id, is_playing=playing))
            if playing:
                self._stop(other_id, callbacks)
            if callbacks.set_solo is not None:
                try:
                    callbacks.set_solo(False)
                except Exception as exc:
                    _LOGGER.warning("Unit %s set_solo failed: %s", other_id, exc, exc_info=True)
        frozen = tuple(snapshot)
        self._soloing = unit_id
        self._solo_snapshots[unit_id] = frozen
        return frozen

    async def unsolo_unit(self, unit_id: str) -> list[str]:
        """Leave solo and restart exactly the units the solo snapshot saw playing."""

        snapshot = self._solo_snapshots.pop(unit_id, ())
        if self._soloing == unit_id:
            self._soloing = None
        restored: list[str] = []
        for state in snapshot:
            if not state.is_playing:
                continue
            callbacks = self._units.get(state.id)
            if callbacks is None:
                continue
            if await self._restore(state.id, callbacks):
                restored.append(state.id)
        return restored

    def solo_snapshot(self, unit_id: str) -> tuple[PlayingState, ...]:
        return self._solo_snapshots.get(unit_id, ())

    async def _restore(self, unit_id: str, callbacks: UnitCallbacks) -> bool:
        attempts: list[tuple[str, Callable[[], Awaitable[bool]]]] = [("start", callbacks.start)]
        if callbacks.toggle is not None:
            attempts.append(("toggle", callbacks.toggle))
        if callbacks.evaluate is not None:
            attempts.append(("evaluate", self._evaluate_then_start(callbacks.evaluate, callbacks.start)))
        for label, attempt in attempts:
            try:
                if await attempt():
                    _LOGGER.debug("Unit %s restored via %s", unit_id, label)
                    return True
            except Exception as exc:
                _LOGGER.warning("Unit %s restore via %s failed: %s", unit_id, label, exc, exc_info=True)
        _LOGGER.warning("Unit %s could not be restored", unit_id)
        return False

    def _evaluate_then_start(
        self,
        evaluate: Callable[[], Awaitable[bool]],
        start: Callable[[], Awaitable[bool]],
    ) -> Callable[[], Awaitable[bool]]:
        async def _run() -> bool:
            if not await evaluate():
                return False
            await asyncio.sleep(self._restore_delay)
            return await start()

        return _run

    @staticmethod
    def _is_playing(unit_id: str, callbacks: UnitCallbacks) -> bool:
        try:
            return bool(callbacks.get_playing_state())
        except Exception as exc:
            _LOGGER.warning("Unit %s playing-state getter failed: %s", unit_id, exc, exc_info=True)
            return False

    @staticmethod
    def _stop(unit_id: str, callbacks: UnitCallbacks) -> None:
        try:
            callbacks.stop()
        except Exception as exc:
            _LOGGER.warning("Unit %s stop failed: %s", unit_id, exc, exc_info=True)
