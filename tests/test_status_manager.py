import asyncio

from bulkpick.core.errors import BackendError
from bulkpick.core.models import RunStatus
from bulkpick.core.status_manager import RunStatusManager, StatusTrigger

from fakes import FakeBackend, FakeClock, ingredient


def _complete_backend() -> FakeBackend:
    return FakeBackend(ingredients=[ingredient("A", 1, total=4, picked=4)])


def _manager(backend, clock, **kw) -> RunStatusManager:
    return RunStatusManager(backend, debounce_seconds=1.0, settle_seconds=0.0, clock=clock, **kw)


def test_two_triggers_within_debounce_window_check_once():
    backend = FakeBackend(ingredients=[ingredient("A", 1, total=4, picked=1)])
    clock = FakeClock()

    async def scenario():
        manager = _manager(backend, clock)
        assert manager.trigger_completion_check(215, StatusTrigger.AFTER_PICK)
        await manager.wait_idle()
        clock.advance(0.5)
        assert manager.trigger_completion_check(215, StatusTrigger.PALLET_COMPLETED) is False
        await manager.wait_idle()

    asyncio.run(scenario())
    assert backend.calls["check_run_completion"] == 1


def test_back_to_back_triggers_coalesce():
    backend = FakeBackend(ingredients=[ingredient("A", 1, total=4, picked=1)])

    async def scenario():
        manager = _manager(backend, FakeClock())
        manager.trigger_completion_check(215, StatusTrigger.AFTER_PICK)
        manager.trigger_completion_check(215, StatusTrigger.INGREDIENT_COMPLETED)
        await manager.wait_idle()

    asyncio.run(scenario())
    assert backend.calls["check_run_completion"] == 1


def test_complete_run_transitions_to_print_once():
    backend = _complete_backend()
    clock = FakeClock()
    changes = []

    async def scenario():
        manager = _manager(backend, clock, on_status_change=lambda run, old, new: changes.append((run, old, new)))
        manager.set_current_status(215, RunStatus.NEW)
        manager.trigger_completion_check(215, StatusTrigger.RUN_COMPLETED)
        await manager.wait_idle()
        clock.advance(5)
        assert manager.trigger_completion_check(215, StatusTrigger.MANUAL_CHECK) is False
        return manager.status_of(215)

    assert asyncio.run(scenario()) is RunStatus.PRINT
    assert backend.calls["update_run_status_to_print"] == 1
    assert changes[-1] == (215, RunStatus.NEW, RunStatus.PRINT)


def test_already_print_error_converges_to_print():
    backend = _complete_backend()
    backend.print_errors.append(BackendError("Run 215 is already in PRINT status"))

    async def scenario():
        manager = _manager(backend, FakeClock())
        manager.trigger_completion_check(215, StatusTrigger.RUN_COMPLETED)
        await manager.wait_idle()
        return manager.status_of(215)

    assert asyncio.run(scenario()) is RunStatus.PRINT


def test_failed_check_releases_mutex_for_a_later_retry():
    backend = _complete_backend()
    backend.completion_errors.append(BackendError("Network error: timed out"))
    clock = FakeClock()

    async def scenario():
        manager = _manager(backend, clock)
        manager.trigger_completion_check(215, StatusTrigger.AFTER_PICK)
        await manager.wait_idle()
        assert manager.status_of(215) is None
        clock.advance(1.5)
        assert manager.trigger_completion_check(215, StatusTrigger.AFTER_PICK)
        await manager.wait_idle()
        return manager.status_of(215)

    assert asyncio.run(scenario()) is RunStatus.PRINT
    assert backend.calls["check_run_completion"] == 2


def test_print_cached_short_circuits():
    backend = _complete_backend()

    async def scenario():
        manager = _manager(backend, FakeClock())
        manager.set_current_status(215, RunStatus.PRINT)
        return manager.trigger_completion_check(215, StatusTrigger.AFTER_PICK)

    assert asyncio.run(scenario()) is False
    assert backend.calls["check_run_completion"] == 0


def test_revert_allows_a_fresh_check_immediately():
    backend = _complete_backend()
    clock = FakeClock()

    async def scenario():
        manager = _manager(backend, clock)
        manager.trigger_completion_check(215, StatusTrigger.RUN_COMPLETED)
        await manager.wait_idle()
        assert await manager.revert_run_status(215) is RunStatus.NEW
        assert manager.trigger_completion_check(215, StatusTrigger.MANUAL_CHECK)
        await manager.wait_idle()
        return manager.status_of(215)

    assert asyncio.run(scenario()) is RunStatus.PRINT
    assert backend.calls["revert_run_status"] == 1
    assert backend.calls["update_run_status_to_print"] == 2
