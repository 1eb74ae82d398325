from __future__ import annotations

import asyncio

import pytest

from bridge.functions import build_default_registry
from bridge.manager import SessionManager
from calls.controller import CallController
from calls.errors import CallNotFoundError, SessionCapacityError
from calls.models import CallState
from calls.store import CallStore
from fakes import FakeLeg, FakeModelConnector, FakeTelephonyProvider


def _run(coro):
    return asyncio.run(coro)


async def _active_call(store: CallStore) -> str:
    call_id = await store.create(to="+15551230000", from_="+15550000001", goal="confirm appointment")
    await store.set_active_call(call_id)
    await store.transition(call_id, CallState.DIALING)
    return call_id


def _manager(store: CallStore, **options) -> SessionManager:
    return SessionManager(store, build_default_registry(), FakeModelConnector(), **options)


def test_telephony_and_observer_share_the_active_call_bridge():
    async def scenario():
        store = CallStore()
        manager = _manager(store)
        call_id = await _active_call(store)
        telephony_bridge = await manager.for_telephony()
        observer_bridge = await manager.for_observer()
        return call_id, manager, telephony_bridge, observer_bridge

    call_id, manager, telephony_bridge, observer_bridge = _run(scenario())
    assert telephony_bridge is observer_bridge
    assert manager.get(call_id) is telephony_bridge


def test_waiting_observer_bridge_is_adopted_by_the_next_call():
    async def scenario():
        store = CallStore()
        manager = _manager(store)
        idle = await manager.for_observer()
        await idle.attach_observer(FakeLeg("observer"))
        call_id = await _active_call(store)
        adopted = await manager.for_telephony()
        return call_id, manager, idle, adopted

    call_id, manager, idle, adopted = _run(scenario())
    assert adopted is idle
    assert list(manager.bridges) == [call_id]


def test_capacity_limit_rejects_a_second_call():
    async def scenario():
        store = CallStore()
        manager = _manager(store)
        await _active_call(store)
        await manager.for_telephony()
        await _active_call(store)
        with pytest.raises(SessionCapacityError):
            await manager.for_telephony()

    _run(scenario())


def test_larger_capacity_keeps_sessions_apart():
    async def scenario():
        store = CallStore()
        manager = _manager(store, max_sessions=2)
        first_id = await _active_call(store)
        first = await manager.for_telephony()
        second_id = await _active_call(store)
        second = await manager.for_telephony()
        return manager, first_id, first, second_id, second

    manager, first_id, first, second_id, second = _run(scenario())
    assert first is not second
    assert manager.get(first_id) is first
    assert manager.get(second_id) is second


def test_bridge_is_released_when_the_call_ends():
    async def scenario():
        store = CallStore()
        manager = _manager(store)
        await _active_call(store)
        bridge = await manager.for_telephony()
        leg = FakeLeg("telephony")
        await bridge.attach_telephony(leg)
        await bridge.telephony_closed(leg)
        released = manager.bridges

        await _active_call(store)
        next_bridge = await manager.for_telephony()
        return released, bridge, next_bridge

    released, bridge, next_bridge = _run(scenario())
    assert released == {}
    assert next_bridge is not bridge


def test_observer_outlives_the_call_in_the_idle_slot():
    async def scenario():
        store = CallStore()
        manager = _manager(store)
        await _active_call(store)
        bridge = await manager.for_telephony()
        observer = FakeLeg("observer")
        await bridge.attach_observer(observer)
        telephony = FakeLeg("telephony")
        await bridge.attach_telephony(telephony)
        await bridge.telephony_closed(telephony)
        parked = manager.bridges

        await bridge.observer_closed(observer)
        return bridge, parked, manager.bridges

    bridge, parked, after = _run(scenario())
    assert parked == {None: bridge}
    assert after == {}


def test_observer_of_an_unanswered_call_does_not_hold_the_slot():
    async def scenario():
        store = CallStore()
        manager = _manager(store)
        controller = CallController(store, FakeTelephonyProvider(), default_timeout_seconds=180)
        call = dict(to="+15551230000", from_="+15550000001", goal="confirm appointment")

        await controller.place_call(**call)
        watched = await manager.for_observer()
        await watched.attach_observer(FakeLeg("observer"))
        await controller.update_from_provider_webhook("CA0001", "no-answer")

        second_id = await controller.place_call(**call)
        adopted = await manager.for_telephony()
        await controller.shutdown()
        return watched, adopted, second_id, manager.bridges

    watched, adopted, second_id, bridges = _run(scenario())
    assert adopted is watched
    assert list(bridges) == [second_id]


def test_unwatched_bridge_of_a_failed_call_is_reclaimed():
    async def scenario():
        store = CallStore()
        manager = _manager(store)
        first_id = await _active_call(store)
        stale = await manager.for_observer()
        await store.transition(first_id, CallState.FAILED, error="carrier rejected")
        await store.release_active_call(first_id)

        second_id = await _active_call(store)
        fresh = await manager.for_telephony()
        return stale, fresh, second_id, manager.bridges

    stale, fresh, second_id, bridges = _run(scenario())
    assert fresh is not stale
    assert bridges == {second_id: fresh}


def test_observer_for_an_unknown_or_finished_call_is_refused():
    async def scenario():
        store = CallStore()
        manager = _manager(store)
        call_id = await _active_call(store)
        await store.transition(call_id, CallState.CANCELED)

        for target in ("no-such-call", call_id):
            with pytest.raises(CallNotFoundError):
                await manager.for_observer(target)
        return manager.bridges

    assert _run(scenario()) == {}
