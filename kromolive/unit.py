from __future__ import annotations

import asyncio
import enum
import logging
import os
from collections.abc import Collection, Coroutine, Sequence
from typing import Any, Callable, Literal, TypeVar

from pydantic import BaseModel, ConfigDict

from .attachment import AttachmentSession, AttachmentState
from .bank import RegistrationStatus, Sample, SampleBank
from .bus import CoordinationBus, PlayingState, UnitCallbacks
from .cache import RenderCache
from .codegen import SILENCE, base_pattern, generate_pattern, is_silent_code, referenced_sample_names
from .config import EngineSettings, SourceReference, UnitConfigUpdate
from .errors import EvaluationError, RegistrationError, UnitClosedError
from .evaluator import Evaluator, HostElement

_LOGGER = logging.getLogger("kromolive.unit")

T = TypeVar("T")
HookKind = Literal["code_change", "playing_change", "warning", "evaluation_error"]


class PlaybackStatus(str, enum.Enum):
    IDLE = "idle"
    PLAYING = "playing"


class UnitHooks(BaseModel):
    on_code_change: Callable[[str, str], None] | None = None
    on_playing_change: Callable[[str, bool], None] | None = None
    on_warning: Callable[[str, str, Exception | None], None] | None = None
    on_evaluation_error: Callable[[str, Exception], None] | None = None

    model_config = ConfigDict(
        frozen=True,
        extra="forbid",
        arbitrary_types_allowed=True,
    )


class LiveCodingUnit:
    """A persistent live-coding session: code, sample bank and playback status.

    The evaluator binding is transient (an :class:`AttachmentSession`) and can
    be dropped and recreated freely; code, samples and the playing status stay
    with the unit. Detaching never stops playback by itself; reattaching pushes
    the code to the new evaluator and resumes if the unit was playing.
    """

    def __init__(
        self,
        unit_id: str | int,
        cache: RenderCache,
        *,
        bus: CoordinationBus | None = None,
        settings: EngineSettings | None = None,
        hooks: UnitHooks | None = None,
        auto_generate_code: bool = True,
        auto_play: bool = True,
    ) -> None:
        self.id = str(unit_id)
        self._settings = settings or EngineSettings()
        self._hooks = hooks
        self.auto_generate_code = auto_generate_code
        self.auto_play = auto_play
        self.bank = SampleBank(
            self.id,
            cache,
            on_added=self._on_sample_added,
            on_removed=self._on_sample_removed,
        )
        self.base_code = base_pattern(self.id)
        self._code = self.base_code
        self.sync = True
        self.solo = False
        self.solo_snapshot: tuple[PlayingState, ...] = ()
        self.status = PlaybackStatus.IDLE
        self.last_error: Exception | None = None
        self._session: AttachmentSession | None = None
        self._state = AttachmentState.DETACHED
        self._orphaned_evaluator: Evaluator | None = None
        self._playback_token = 0
        self._background: set[asyncio.Task[Any]] = set()
        self._bus: CoordinationBus | None = None
        self._closed = False
        if bus is not None:
            self.register_with(bus)
        _LOGGER.info("Live coding unit %s initialized", self.id)

    # ------------------------------------------------------------------
    # State accessors
    # ------------------------------------------------------------------

    @property
    def is_playing(self) -> bool:
        return self.status is PlaybackStatus.PLAYING

    @property
    def attachment_state(self) -> AttachmentState:
        return self._state

    @property
    def session(self) -> AttachmentSession | None:
        return self._session

    @property
    def closed(self) -> bool:
        return self._closed

    def is_ready_for_sounds(self) -> bool:
        return self._state is AttachmentState.ATTACHED

    def get_current_code(self) -> str:
        return self._code

    def set_code(self, code: str) -> None:
        self._code = code
        session = self._session
        if session is not None and session.active:
            try:
                session.evaluator.set_code(code)
                if session.host is not None:
                    session.host.show_code(code)
            except Exception as exc:
                self._warn(f"failed to push code to the evaluator: {exc}", exc)
        self._emit("code_change", code=code)

    # ------------------------------------------------------------------
    # Attachment protocol
    # ------------------------------------------------------------------

    async def attach(self, evaluator: Evaluator, host: HostElement | None = None) -> AttachmentSession:
        self._ensure_open()
        if self._session is not None:
            self.detach()
        orphan, self._orphaned_evaluator = self._orphaned_evaluator, None
        if orphan is not None and orphan is not evaluator:
            self._silence(orphan)

        session = AttachmentSession(self.id, evaluator, host)
        self._session = session
        self._state = AttachmentState.ATTACHING
        try:
            evaluator.set_code(self._code)
            if host is not None:
                host.show_code(self._code)
                host.apply_flags(sync=self.sync, solo=self.solo)
        except Exception:
            session.discard()
            self._session = None
            self._state = AttachmentState.DETACHED
            raise
        self._state = AttachmentState.ATTACHED
        self.bank.reset_registration()
        _LOGGER.info("Unit %s attached (session %d)", self.id, session.generation)

        registration = self._spawn(self._register(session))
        registered_in_time = await self._wait_bounded(registration, "sample registration on attach")
        if self.status is PlaybackStatus.PLAYING and session is self._session:
            if self._settings.resume_delay:
                await asyncio.sleep(self._settings.resume_delay)
            await self._start_playback(session, self._playback_token, self._code)
            if not registered_in_time:
                registration.add_done_callback(
                    lambda _task: self._spawn(self._reevaluate_if_current(session))
                )
        return session

    def detach(self) -> None:
        session = self._session
        if session is None:
            return
        session.discard()
        if self.status is PlaybackStatus.PLAYING:
            self._orphaned_evaluator = session.evaluator
        self._session = None
        self._state = AttachmentState.DETACHED
        self.bank.reset_registration()
        _LOGGER.info("Unit %s detached (session %d)", self.id, session.generation)

    # ------------------------------------------------------------------
    # Samples
    # ------------------------------------------------------------------

    async def add_source(self, source: SourceReference) -> str:
        self._ensure_open()
        sample = await self.bank.add(source)
        if self.auto_generate_code and sample.name not in referenced_sample_names(self._code):
            self.set_code(
                generate_pattern(
                    self.bank.names(),
                    gain=self._settings.default_gain,
                    max_samples=self._settings.max_pattern_samples,
                )
            )
            if self.auto_play and self._session is not None:
                await self.play()
        return sample.name

    def remove_source(self, source_id: str) -> bool:
        return self.bank.remove(source_id)

    def clear_samples(self) -> None:
        self.bank.clear()

    async def ensure_samples_for_code(self, code: str) -> list[str]:
        """Register only the referenced names this session has not confirmed yet."""

        session = self._session
        if session is None or not session.active:
            return []
        wanted = [
            name
            for name in referenced_sample_names(code)
            if name not in session.registered and self.bank.by_name(name) is not None
        ]
        if not wanted:
            return []
        task = self._spawn(self._register(session, only=wanted))
        if await self._wait_bounded(task, f"registration of {', '.join(wanted)}"):
            return task.result()
        return []

    async def _on_sample_added(self, sample: Sample) -> None:
        session = self._session
        if session is None or not session.active:
            _LOGGER.debug("Unit %s detached; %s queued for registration", self.id, sample.name)
            return
        task = self._spawn(self._register(session))
        await self._wait_bounded(task, f"registration of {sample.name}")

    def _on_sample_removed(self, sample: Sample) -> None:
        session = self._session
        if session is not None:
            session.forget(sample.name)

    async def _register(
        self,
        session: AttachmentSession,
        *,
        only: Collection[str] | None = None,
    ) -> list[str]:
        try:
            confirmed = await session.register(self.bank.name_map, only=only)
        except Exception as exc:
            pending = [name for name in self.bank.names() if name not in session.registered]
            if only is not None:
                pending = [name for name in pending if name in only]
            if session.active:
                self.bank.mark(pending, RegistrationStatus.FAILED)
            error = RegistrationError(f"Unit {self.id} failed to register {pending}: {exc}")
            error.__cause__ = exc
            self._warn(str(error), error)
            return []
        if session.active and confirmed:
            self.bank.mark(confirmed, RegistrationStatus.REGISTERED)
            _LOGGER.info("Unit %s registered %s", self.id, confirmed)
        return confirmed

    # ------------------------------------------------------------------
    # Playback
    # ------------------------------------------------------------------

    async def play(self) -> bool:
        self._ensure_open()
        code = self._code
        self.stop()
        if is_silent_code(code):
            return False
        session = self._session
        if session is None:
            _LOGGER.info("Unit %s detached; playback will start on attach", self.id)
            self._set_status(PlaybackStatus.PLAYING)
            return True
        return await self._start_playback(session, self._playback_token, code)

    def stop(self) -> None:
        self._playback_token += 1
        session = self._session
        if session is not None and session.active:
            self._silence(session.evaluator)
        orphan, self._orphaned_evaluator = self._orphaned_evaluator, None
        if orphan is not None:
            self._silence(orphan)
        self._set_status(PlaybackStatus.IDLE)

    async def toggle(self) -> bool:
        if self.is_playing:
            self.stop()
            return False
        return await self.play()

    async def evaluate(self, code: str | None = None) -> bool:
        session = self._session
        if session is None or not session.active:
            _LOGGER.warning("Unit %s cannot evaluate while detached", self.id)
            return False
        source = self._code if code is None else code
        if is_silent_code(source):
            source = SILENCE
        await self.ensure_samples_for_code(source)
        if not session.active:
            return False
        try:
            await session.evaluator.evaluate(source)
        except Exception as exc:
            error = EvaluationError(f"Unit {self.id} failed to evaluate pattern: {exc}")
            error.__cause__ = exc
            self.last_error = error
            _LOGGER.warning("%s", error, exc_info=True)
            self._emit("evaluation_error", error=error)
            if source != SILENCE and session.active:
                try:
                    await session.evaluator.evaluate(SILENCE)
                except Exception as fallback_exc:
                    _LOGGER.warning(
                        "Unit %s could not fall back to silence: %s",
                        self.id,
                        fallback_exc,
                        exc_info=True,
                    )
            if session is self._session:
                self.stop()
            return False
        return True

    async def restore_if_was_playing(self, states: Sequence[PlayingState]) -> bool:
        was_playing = any(state.id == self.id and state.is_playing for state in states)
        if not was_playing or self.is_playing:
            return False
        return await self.play()

    async def _start_playback(self, session: AttachmentSession, token: int, code: str) -> bool:
        evaluated = await self.evaluate(code)
        if token != self._playback_token or session is not self._session:
            _LOGGER.debug("Unit %s playback superseded before start", self.id)
            return False
        if not evaluated:
            self._set_status(PlaybackStatus.IDLE)
            return False
        try:
            session.evaluator.start()
        except Exception as exc:
            self._warn(f"evaluator failed to start: {exc}", exc)
            self._set_status(PlaybackStatus.IDLE)
            return False
        self._set_status(PlaybackStatus.PLAYING)
        _LOGGER.info("Unit %s started playback", self.id)
        return True

    async def _reevaluate_if_current(self, session: AttachmentSession) -> None:
        if session is not self._session or not session.active or not self.is_playing:
            return
        _LOGGER.debug("Unit %s re-evaluating after late sample registration", self.id)
        await self.evaluate()

    def _silence(self, evaluator: Evaluator) -> None:
        try:
            evaluator.stop()
        except Exception as exc:
            _LOGGER.warning("Unit %s error stopping playback: %s", self.id, exc, exc_info=True)

    def _set_status(self, status: PlaybackStatus) -> None:
        if self.status is status:
            return
        self.status = status
        self._emit("playing_change", playing=status is PlaybackStatus.PLAYING)

    # ------------------------------------------------------------------
    # Sync / solo / coordination
    # ------------------------------------------------------------------

    def register_with(self, bus: CoordinationBus) -> None:
        self._bus = bus
        bus.register_unit(
            self.id,
            UnitCallbacks(
                stop=self.stop,
                start=self.play,
                get_playing_state=lambda: self.is_playing,
                restore_if_was_playing=self.restore_if_was_playing,
                toggle=self.toggle,
                evaluate=self.evaluate,
                set_solo=self._apply_solo_flag,
            ),
        )

    async def set_solo(self, solo: bool) -> list[str]:
        """Enter or leave solo; leaving returns the ids of units restarted."""

        if solo:
            if self._bus is not None:
                self.solo_snapshot = self._bus.solo_unit(self.id)
            self._apply_solo_flag(True)
            return []
        was_solo = self.solo
        self._apply_solo_flag(False)
        if self._bus is None or not was_solo:
            return []
        return await self._bus.unsolo_unit(self.id)

    def set_sync(self, sync: bool) -> None:
        self.sync = sync
        self._push_flags()

    async def update_config(self, update: UnitConfigUpdate) -> None:
        if update.sync is not None:
            self.set_sync(update.sync)
        if update.solo is not None and update.solo != self.solo:
            await self.set_solo(update.solo)
        if update.code is not None and update.code != self._code:
            self.set_code(update.code)

    def _apply_solo_flag(self, solo: bool) -> None:
        self.solo = solo
        if not solo:
            self.solo_snapshot = ()
        self._push_flags()

    def _push_flags(self) -> None:
        session = self._session
        if session is None or session.host is None or not session.active:
            return
        try:
            session.host.apply_flags(sync=self.sync, solo=self.solo)
        except Exception as exc:
            self._warn(f"failed to apply sync/solo flags: {exc}", exc)

    # ------------------------------------------------------------------
    # Lifecycle / diagnostics
    # ------------------------------------------------------------------

    def cleanup(self) -> None:
        if self._closed:
            return
        _LOGGER.info("Unit %s starting cleanup", self.id)
        self.stop()
        self.bank.close()
        self.detach()
        if self._bus is not None:
            self._bus.unregister_unit(self.id)
            self._bus = None
        self._closed = True

    def sample_bank_info(self) -> dict[str, Any]:
        return {
            "sample_count": len(self.bank),
            "samples": [
                {
                    "source_id": sample.source_id,
                    "name": sample.name,
                    "status": sample.status.value,
                    "cache_key": sample.source.cache_key,
                    "run_id": sample.source.run_id,
                }
                for sample in self.bank
            ],
        }

    def debug_info(self) -> dict[str, Any]:
        session = self._session
        return {
            "unit_id": self.id,
            "attachment": self._state.value,
            "session": session.generation if session is not None else None,
            "registered": sorted(session.registered) if session is not None else [],
            "sample_names": self.bank.names(),
            "has_unregistered": self.bank.has_unregistered,
            "status": self.status.value,
            "sync": self.sync,
            "solo": self.solo,
            "code": self._code,
        }

    def _ensure_open(self) -> None:
        if self._closed:
            raise UnitClosedError(f"Unit {self.id} has been cleaned up")

    def _spawn(self, coro: Coroutine[Any, Any, T]) -> asyncio.Task[T]:
        task = asyncio.get_running_loop().create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    async def _wait_bounded(self, task: asyncio.Task[Any], what: str) -> bool:
        timeout = self._settings.registration_timeout
        done, _ = await asyncio.wait({task}, timeout=timeout)
        if task in done:
            return True
        self.bank.has_unregistered = True
        error = RegistrationError(f"Unit {self.id}: {what} still pending after {timeout:.2f}s")
        self._warn(str(error), error)
        return False

    def _warn(self, message: str, exc: Exception | None = None) -> None:
        _LOGGER.warning("Unit %s: %s", self.id, message, exc_info=exc is not None)
        self._emit("warning", message=message, error=exc)

    def _emit(
        self,
        kind: HookKind,
        *,
        code: str = "",
        playing: bool = False,
        message: str = "",
        error: Exception | None = None,
    ) -> None:
        hooks = self._hooks
        if hooks is None:
            return
        try:
            match kind:
                case "code_change":
                    if hooks.on_code_change is not None:
                        hooks.on_code_change(self.id, code)
                case "playing_change":
                    if hooks.on_playing_change is not None:
                        hooks.on_playing_change(self.id, playing)
                case "warning":
                    if hooks.on_warning is not None:
                        hooks.on_warning(self.id, message, error)
                case "evaluation_error":
                    if hooks.on_evaluation_error is not None and error is not None:
                        hooks.on_evaluation_error(self.id, error)
                case _:
                    raise ValueError(f"Unknown unit hook kind: {kind}")
        except Exception as exc:
            debug = bool(os.environ.get("KROMOLIVE_DEBUG"))
            _LOGGER.warning("Unit hook %s failed: %s", kind, exc, exc_info=debug)
