from __future__ import annotations

import itertools
import logging

from .bus import CoordinationBus, PlayingState
from .cache import RenderCache
from .config import EngineSettings
from .fetcher import HttpAudioFetcher, RenderCollaborator
from .materializer import ResourceMaterializer
from .unit import LiveCodingUnit, UnitHooks

_LOGGER = logging.getLogger("kromolive.engine")


class Engine:
    """Application root: one render cache and one coordination bus shared by every unit."""

    def __init__(
        self,
        settings: EngineSettings | None = None,
        collaborator: RenderCollaborator | None = None,
    ) -> None:
        self.settings = settings or EngineSettings()
        self._owned_fetcher: HttpAudioFetcher | None = None
        if collaborator is None:
            self._owned_fetcher = HttpAudioFetcher(self.settings)
            collaborator = self._owned_fetcher
        self.cache = RenderCache(
            collaborator,
            ResourceMaterializer(silence_epsilon=self.settings.silence_epsilon),
        )
        self.bus = CoordinationBus(restore_delay=self.settings.restore_delay)
        self._units: dict[str, LiveCodingUnit] = {}
        self._ids = itertools.count(1)

    def create_unit(
        self,
        unit_id: str | int | None = None,
        *,
        hooks: UnitHooks | None = None,
        auto_generate_code: bool = True,
        auto_play: bool = True,
    ) -> LiveCodingUnit:
        if unit_id is None:
            unit_id = self._next_id()
        key = str(unit_id)
        if key in self._units:
            raise ValueError(f"Unit {key} already exists")
        unit = LiveCodingUnit(
            key,
            self.cache,
            bus=self.bus,
            settings=self.settings,
            hooks=hooks,
            auto_generate_code=auto_generate_code,
            auto_play=auto_play,
        )
        self._units[key] = unit
        return unit

    def get_unit(self, unit_id: str | int) -> LiveCodingUnit | None:
        return self._units.get(str(unit_id))

    def remove_unit(self, unit_id: str | int) -> bool:
        unit = self._units.pop(str(unit_id), None)
        if unit is None:
            return False
        unit.cleanup()
        _LOGGER.info("Removed unit %s", unit.id)
        return True

    def units(self) -> list[LiveCodingUnit]:
        return list(self._units.values())

    def stop_all(self) -> list[PlayingState]:
        return self.bus.stop_all()

    async def start_all(self) -> list[str]:
        return await self.bus.start_all()

    async def aclose(self) -> None:
        for unit_id in list(self._units):
            self.remove_unit(unit_id)
        if self._owned_fetcher is not None:
            await self._owned_fetcher.aclose()

    def _next_id(self) -> str:
        while True:
            candidate = str(next(self._ids))
            if candidate not in self._units:
                return candidate
