from __future__ import annotations

from collections.abc import Mapping
from typing import Protocol, runtime_checkable


@runtime_checkable
class Evaluator(Protocol):
    """The pattern engine a unit drives.

    ``register_samples`` receives ``{sample_name: resource_url}`` and resolves once
    the engine can play those names. ``stop`` must silence output immediately.
    """

    def set_code(self, code: str) -> None: ...

    async def evaluate(self, code: str) -> None: ...

    def start(self) -> None: ...

    def stop(self) -> None: ...

    async def register_samples(self, samples: Mapping[str, str]) -> None: ...


@runtime_checkable
class HostElement(Protocol):
    """The UI element currently showing a unit's editor."""

    def show_code(self, code: str) -> None: ...

    def apply_flags(self, *, sync: bool, solo: bool) -> None: ...
