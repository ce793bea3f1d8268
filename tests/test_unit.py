import asyncio

import pytest

from conftest import FakeEvaluator, FakeHost
from kromolive.attachment import AttachmentState
from kromolive.bank import RegistrationStatus
from kromolive.bus import CoordinationBus, PlayingState
from kromolive.cache import RenderCache
from kromolive.codegen import SILENCE
from kromolive.config import EngineSettings, SourceReference, UnitConfigUpdate
from kromolive.errors import EvaluationError, RegistrationError, UnitClosedError
from kromolive.unit import LiveCodingUnit, PlaybackStatus, UnitHooks

_A = SourceReference(source_id="a", run_id="run")
_B = SourceReference(source_id="b", run_id="run")
_CODE_A = 's("unit1_evo_0").gain(0.8)'


def _unit(cache: RenderCache, settings: EngineSettings, **kwargs: object) -> LiveCodingUnit:
    return LiveCodingUnit("1", cache, settings=settings, **kwargs)  # type: ignore[arg-type]


@pytest.mark.asyncio
async def test_add_source_registers_generates_code_and_plays(
    cache: RenderCache, settings: EngineSettings
) -> None:
    unit = _unit(cache, settings)
    evaluator = FakeEvaluator()
    await unit.attach(evaluator)

    name = await unit.add_source(_A)

    assert name == "unit1_evo_0"
    assert unit.get_current_code() == _CODE_A
    assert evaluator.code == _CODE_A
    assert list(evaluator.registered) == ["unit1_evo_0"]
    assert evaluator.evaluated == [_CODE_A]
    assert evaluator.started == 1
    assert unit.status is PlaybackStatus.PLAYING
    assert unit.bank.get("a").status is RegistrationStatus.REGISTERED  # type: ignore[union-attr]


@pytest.mark.asyncio
async def test_adding_same_source_twice_registers_once(cache: RenderCache, settings: EngineSettings) -> None:
    unit = _unit(cache, settings, auto_play=False)
    evaluator = FakeEvaluator()
    await unit.attach(evaluator)

    first = await unit.add_source(_A)
    second = await unit.add_source(_A)

    assert first == second
    assert evaluator.register_calls == [{"unit1_evo_0": unit.bank.get("a").url}]  # type: ignore[union-attr]


@pytest.mark.asyncio
async def test_two_samples_alternate_in_generated_code(cache: RenderCache, settings: EngineSettings) -> None:
    unit = _unit(cache, settings, auto_play=False)
    await unit.add_source(_A)
    await unit.add_source(_B)
    assert unit.get_current_code() == 's("unit1_evo_0 unit1_evo_1").gain(0.8)'


@pytest.mark.asyncio
async def test_reattach_preserves_code_and_resumes(cache: RenderCache, settings: EngineSettings) -> None:
    unit = _unit(cache, settings)
    first = FakeEvaluator()
    await unit.attach(first)
    await unit.add_source(_A)
    assert unit.is_playing

    unit.detach()
    assert unit.attachment_state is AttachmentState.DETACHED
    assert unit.is_playing
    assert first.stopped == 1

    second = FakeEvaluator()
    host = FakeHost()
    await unit.attach(second, host)

    assert second.code == _CODE_A
    assert host.shown == [_CODE_A]
    assert list(second.registered) == ["unit1_evo_0"]
    assert second.evaluated[-1] == _CODE_A
    assert second.started == 1
    assert unit.is_playing
    assert unit.attachment_state is AttachmentState.ATTACHED
    # the orphaned evaluator is silenced once the new one takes over
    assert first.stopped == 2


@pytest.mark.asyncio
async def test_reattach_while_idle_does_not_start(cache: RenderCache, settings: EngineSettings) -> None:
    unit = _unit(cache, settings, auto_play=False)
    await unit.add_source(_A)
    evaluator = FakeEvaluator()
    await unit.attach(evaluator)
    assert evaluator.code == _CODE_A
    assert evaluator.started == 0
    assert evaluator.evaluated == []
    assert list(evaluator.registered) == ["unit1_evo_0"]


@pytest.mark.asyncio
async def test_play_while_detached_starts_on_attach(cache: RenderCache, settings: EngineSettings) -> None:
    unit = _unit(cache, settings)
    await unit.add_source(_A)
    assert await unit.play() is True
    assert unit.is_playing

    evaluator = FakeEvaluator()
    await unit.attach(evaluator)
    assert evaluator.evaluated == [_CODE_A]
    assert evaluator.started == 1


@pytest.mark.asyncio
async def test_detach_during_registration_is_harmless(cache: RenderCache) -> None:
    settings = EngineSettings(registration_timeout=0.05, resume_delay=0.0)
    gate = asyncio.Event()
    warnings: list[str] = []
    hooks = UnitHooks(on_warning=lambda unit_id, message, exc: warnings.append(message))
    unit = _unit(cache, settings, auto_play=False, hooks=hooks)
    evaluator = FakeEvaluator(register_gate=gate)
    await unit.attach(evaluator)

    await unit.add_source(_A)
    assert unit.bank.has_unregistered
    assert any("still pending" in message for message in warnings)
    session = unit.session
    assert session is not None

    unit.detach()
    gate.set()
    await asyncio.sleep(0.01)

    assert session.registered == set()
    assert unit.bank.get("a").status is RegistrationStatus.PENDING  # type: ignore[union-attr]


@pytest.mark.asyncio
async def test_registration_failure_is_reported_not_fatal(cache: RenderCache, settings: EngineSettings) -> None:
    errors: list[Exception | None] = []
    hooks = UnitHooks(on_warning=lambda unit_id, message, exc: errors.append(exc))
    unit = _unit(cache, settings, auto_play=False, hooks=hooks)
    await unit.attach(FakeEvaluator(register_error=RuntimeError("sampler rejected")))

    name = await unit.add_source(_A)

    assert name == "unit1_evo_0"
    assert unit.attachment_state is AttachmentState.ATTACHED
    assert unit.bank.get("a").status is RegistrationStatus.FAILED  # type: ignore[union-attr]
    assert unit.bank.has_unregistered
    assert any(isinstance(exc, RegistrationError) for exc in errors)

    retry = FakeEvaluator()
    await unit.attach(retry)
    assert list(retry.registered) == ["unit1_evo_0"]
    assert not unit.bank.has_unregistered


@pytest.mark.asyncio
async def test_evaluate_registers_missing_samples_first(cache: RenderCache, settings: EngineSettings) -> None:
    unit = _unit(cache, settings, auto_generate_code=False)
    await unit.add_source(_A)
    await unit.add_source(_B)
    evaluator = FakeEvaluator()
    await unit.attach(evaluator)
    evaluator.register_calls.clear()

    code = 's("unit1_evo_1")'
    unit.session.registered.discard("unit1_evo_1")  # type: ignore[union-attr]
    assert await unit.evaluate(code) is True

    assert evaluator.register_calls == [{"unit1_evo_1": unit.bank.get("b").url}]  # type: ignore[union-attr]
    assert evaluator.evaluated == [code]


@pytest.mark.asyncio
async def test_evaluation_failure_falls_back_to_silence(cache: RenderCache, settings: EngineSettings) -> None:
    reported: list[Exception] = []
    hooks = UnitHooks(on_evaluation_error=lambda unit_id, exc: reported.append(exc))
    unit = _unit(cache, settings, hooks=hooks)
    bad = 's("unit1_evo_0").oops('
    evaluator = FakeEvaluator(failing_codes={bad})
    await unit.attach(evaluator)
    unit.set_code(bad)

    assert await unit.play() is False

    assert evaluator.evaluated == [bad, SILENCE]
    assert evaluator.started == 0
    assert unit.status is PlaybackStatus.IDLE
    assert isinstance(unit.last_error, EvaluationError)
    assert isinstance(unit.last_error.__cause__, SyntaxError)
    assert reported == [unit.last_error]


@pytest.mark.asyncio
async def test_play_with_silent_code_stays_idle(cache: RenderCache, settings: EngineSettings) -> None:
    unit = _unit(cache, settings)
    evaluator = FakeEvaluator()
    await unit.attach(evaluator)

    assert await unit.play() is False
    unit.set_code(SILENCE)
    assert await unit.play() is False
    assert unit.status is PlaybackStatus.IDLE
    assert evaluator.started == 0


@pytest.mark.asyncio
async def test_play_is_idempotent(cache: RenderCache, settings: EngineSettings) -> None:
    changes: list[bool] = []
    hooks = UnitHooks(on_playing_change=lambda unit_id, playing: changes.append(playing))
    unit = _unit(cache, settings, auto_play=False, hooks=hooks)
    evaluator = FakeEvaluator()
    await unit.attach(evaluator)
    await unit.add_source(_A)

    assert await unit.play() is True
    assert await unit.play() is True

    assert evaluator.started == 2
    assert evaluator.stopped == 2
    assert unit.is_playing
    assert changes == [True, False, True]


@pytest.mark.asyncio
async def test_stop_and_toggle(cache: RenderCache, settings: EngineSettings) -> None:
    unit = _unit(cache, settings, auto_play=False)
    unit.stop()
    evaluator = FakeEvaluator()
    await unit.attach(evaluator)
    await unit.add_source(_A)

    assert await unit.toggle() is True
    assert unit.is_playing
    assert await unit.toggle() is False
    assert unit.status is PlaybackStatus.IDLE
    assert evaluator.stopped >= 2


@pytest.mark.asyncio
async def test_remove_source_forgets_registration_and_revokes(
    cache: RenderCache, settings: EngineSettings
) -> None:
    unit = _unit(cache, settings, auto_play=False)
    await unit.attach(FakeEvaluator())
    await unit.add_source(_A)
    sample = unit.bank.get("a")
    assert sample is not None

    assert unit.remove_source("a") is True

    assert sample.handle.revoked
    assert "unit1_evo_0" not in unit.session.registered  # type: ignore[union-attr]

    await unit.add_source(_B)
    unit.clear_samples()
    assert unit.session.registered == set()  # type: ignore[union-attr]
    assert len(unit.bank) == 0


@pytest.mark.asyncio
async def test_set_code_notifies_and_pushes_to_host(cache: RenderCache, settings: EngineSettings) -> None:
    seen: list[str] = []
    hooks = UnitHooks(on_code_change=lambda unit_id, code: seen.append(code))
    unit = _unit(cache, settings, hooks=hooks)
    evaluator = FakeEvaluator()
    host = FakeHost()
    await unit.attach(evaluator, host)

    unit.set_code("note(60)")

    assert evaluator.code == "note(60)"
    assert host.shown[-1] == "note(60)"
    assert seen == ["note(60)"]


@pytest.mark.asyncio
async def test_failing_hook_does_not_break_the_unit(cache: RenderCache, settings: EngineSettings) -> None:
    def _boom(unit_id: str, code: str) -> None:
        raise RuntimeError("editor went away")

    unit = _unit(cache, settings, hooks=UnitHooks(on_code_change=_boom))
    unit.set_code("note(60)")
    assert unit.get_current_code() == "note(60)"


@pytest.mark.asyncio
async def test_failed_bind_leaves_unit_detached(cache: RenderCache, settings: EngineSettings) -> None:
    class _BrokenHost(FakeHost):
        def show_code(self, code: str) -> None:
            raise RuntimeError("element unmounted")

    unit = _unit(cache, settings)
    with pytest.raises(RuntimeError):
        await unit.attach(FakeEvaluator(), _BrokenHost())
    assert unit.attachment_state is AttachmentState.DETACHED
    assert unit.session is None


@pytest.mark.asyncio
async def test_flags_are_applied_on_attach(cache: RenderCache, settings: EngineSettings) -> None:
    unit = _unit(cache, settings)
    await unit.update_config(UnitConfigUpdate(sync=False, code="note(62)"))
    host = FakeHost()
    await unit.attach(FakeEvaluator(), host)

    assert host.flags == [(False, False)]
    assert host.shown == ["note(62)"]
    unit.set_sync(True)
    assert host.flags[-1] == (True, False)


@pytest.mark.asyncio
async def test_solo_through_the_bus(cache: RenderCache, settings: EngineSettings) -> None:
    bus = CoordinationBus(restore_delay=0.0)
    units = {
        unit_id: LiveCodingUnit(unit_id, cache, bus=bus, settings=settings)
        for unit_id in ("1", "2", "3")
    }
    evaluators = {unit_id: FakeEvaluator() for unit_id in units}
    for unit_id, unit in units.items():
        await unit.attach(evaluators[unit_id])
        unit.set_code(f'note({unit_id})')
    await units["1"].play()
    await units["2"].play()

    await units["1"].set_solo(True)

    assert units["1"].is_playing
    assert not units["2"].is_playing
    assert not units["3"].is_playing
    assert units["1"].solo_snapshot == (
        PlayingState(id="2", is_playing=True),
        PlayingState(id="3", is_playing=False),
    )

    restored = await units["1"].set_solo(False)

    assert restored == ["2"]
    assert units["2"].is_playing
    assert not units["3"].is_playing
    assert units["1"].is_playing
    assert units["1"].solo_snapshot == ()


@pytest.mark.asyncio
async def test_solo_moves_between_units(cache: RenderCache, settings: EngineSettings) -> None:
    bus = CoordinationBus(restore_delay=0.0)
    a = LiveCodingUnit("a", cache, bus=bus, settings=settings)
    b = LiveCodingUnit("b", cache, bus=bus, settings=settings)

    await a.set_solo(True)
    await b.set_solo(True)

    assert bus.soloing == "b"
    assert a.solo is False
    assert b.solo is True


@pytest.mark.asyncio
async def test_restore_if_was_playing(cache: RenderCache, settings: EngineSettings) -> None:
    unit = _unit(cache, settings)
    await unit.attach(FakeEvaluator())
    unit.set_code("note(60)")

    assert await unit.restore_if_was_playing([PlayingState(id="1", is_playing=False)]) is False
    assert await unit.restore_if_was_playing([PlayingState(id="1", is_playing=True)]) is True
    assert unit.is_playing


@pytest.mark.asyncio
async def test_cleanup_revokes_and_unregisters(cache: RenderCache, settings: EngineSettings) -> None:
    bus = CoordinationBus()
    unit = LiveCodingUnit("1", cache, bus=bus, settings=settings)
    evaluator = FakeEvaluator()
    await unit.attach(evaluator)
    await unit.add_source(_A)
    sample = unit.bank.get("a")
    assert sample is not None

    unit.cleanup()

    assert sample.handle.revoked
    assert "1" not in bus
    assert unit.session is None
    assert not unit.is_playing
    with pytest.raises(UnitClosedError):
        await unit.add_source(_B)


@pytest.mark.asyncio
async def test_diagnostics(cache: RenderCache, settings: EngineSettings) -> None:
    unit = _unit(cache, settings, auto_play=False)
    await unit.attach(FakeEvaluator())
    await unit.add_source(_A)

    info = unit.sample_bank_info()
    assert info["sample_count"] == 1
    assert info["samples"][0]["name"] == "unit1_evo_0"
    assert info["samples"][0]["status"] == "registered"
    assert info["samples"][0]["cache_key"] == "a-4_0_1"

    debug = unit.debug_info()
    assert debug["attachment"] == "attached"
    assert debug["registered"] == ["unit1_evo_0"]
    assert debug["status"] == "idle"


@pytest.mark.asyncio
async def test_failed_evaluation_while_playing_leaves_unit_idle(
    cache: RenderCache, settings: EngineSettings
) -> None:
    bus = CoordinationBus(restore_delay=0.0)
    changes: list[bool] = []
    hooks = UnitHooks(on_playing_change=lambda unit_id, playing: changes.append(playing))
    unit = LiveCodingUnit("1", cache, bus=bus, settings=settings, hooks=hooks)
    evaluator = FakeEvaluator(failing_codes={"bad("})
    await unit.attach(evaluator)
    unit.set_code("note(1)")
    assert await unit.play() is True

    assert await unit.evaluate("bad(") is False

    assert evaluator.evaluated == ["note(1)", "bad(", SILENCE]
    assert unit.status is PlaybackStatus.IDLE
    assert evaluator.stopped == 2
    assert changes == [True, False]
    assert bus.get_all_playing_states() == [PlayingState(id="1", is_playing=False)]
    assert unit.get_current_code() == "note(1)"


@pytest.mark.asyncio
async def test_resume_does_not_wait_for_slow_registration(cache: RenderCache) -> None:
    settings = EngineSettings(registration_timeout=0.05, resume_delay=0.0)
    unit = _unit(cache, settings)
    await unit.attach(FakeEvaluator())
    await unit.add_source(_A)
    assert unit.is_playing
    unit.detach()

    gate = asyncio.Event()
    slow = FakeEvaluator(register_gate=gate)
    await unit.attach(slow)

    assert slow.started == 1
    assert slow.evaluated == [_CODE_A]
    assert unit.is_playing
    assert unit.bank.has_unregistered

    gate.set()
    await asyncio.sleep(0.05)

    assert slow.evaluated == [_CODE_A, _CODE_A]
    assert slow.started == 1
    assert list(slow.registered) == ["unit1_evo_0"]
    assert unit.bank.get("a").status is RegistrationStatus.REGISTERED  # type: ignore[union-attr]


@pytest.mark.asyncio
async def test_repeated_solo_still_restores_the_others(cache: RenderCache, settings: EngineSettings) -> None:
    bus = CoordinationBus(restore_delay=0.0)
    a = LiveCodingUnit("a", cache, bus=bus, settings=settings)
    b = LiveCodingUnit("b", cache, bus=bus, settings=settings)
    for unit in (a, b):
        await unit.attach(FakeEvaluator())
        unit.set_code(f"note({unit.id})")
        await unit.play()

    await a.set_solo(True)
    await a.set_solo(True)

    assert a.solo_snapshot == (PlayingState(id="b", is_playing=True),)
    assert not b.is_playing
    assert await a.set_solo(False) == ["b"]
    assert b.is_playing
