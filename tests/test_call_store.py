from __future__ import annotations

import asyncio

import pytest

from calls.errors import CallFrozenError, CallNotFoundError, IllegalTransitionError
from calls.models import CallResult, CallState
from calls.store import CallStore


def _run(coro):
    return asyncio.run(coro)


async def _new_call(store: CallStore, **overrides) -> str:
    params = {"to": "+15551230000", "from_": "+15550000001", "goal": "confirm appointment"}
    params.update(overrides)
    return await store.create(**params)


def test_create_returns_distinct_ids_and_queued_records():
    async def scenario():
        store = CallStore()
        first = await _new_call(store)
        second = await _new_call(store, context={"patient": "Ada"})
        record = await store.get(second)
        return first, second, record

    first, second, record = _run(scenario())
    assert first != second
    assert record.state == CallState.QUEUED
    assert record.context == {"patient": "Ada"}
    assert record.transcript == []
    assert record.connected_at is None and record.ended_at is None


def test_get_unknown_call_returns_none():
    assert _run(CallStore().get("missing")) is None


def test_get_returns_a_copy_that_does_not_leak_into_the_store():
    async def scenario():
        store = CallStore()
        call_id = await _new_call(store)
        snapshot = await store.get(call_id)
        snapshot.goal = "changed"
        return await store.get(call_id)

    record = _run(scenario())
    assert record.goal == "confirm appointment"


def test_transition_sets_timestamps_in_order():
    async def scenario():
        store = CallStore()
        call_id = await _new_call(store)
        await store.transition(call_id, CallState.DIALING)
        await store.transition(call_id, CallState.CONNECTED)
        await store.transition(call_id, CallState.COMPLETED)
        return await store.get(call_id)

    record = _run(scenario())
    assert record.state == CallState.COMPLETED
    assert record.started_at < record.connected_at < record.ended_at


def test_transition_to_same_state_is_a_no_op():
    async def scenario():
        store = CallStore()
        call_id = await _new_call(store)
        await store.transition(call_id, CallState.DIALING)
        return await store.transition(call_id, CallState.DIALING)

    assert _run(scenario()) is False


@pytest.mark.parametrize(
    ("legal", "illegal"),
    [
        ([], CallState.CONNECTED),
        ([CallState.DIALING], CallState.QUEUED),
        ([CallState.DIALING, CallState.CONNECTED], CallState.DIALING),
        ([CallState.DIALING, CallState.CONNECTED], CallState.NO_ANSWER),
        ([CallState.CANCELED], CallState.DIALING),
        ([CallState.DIALING, CallState.COMPLETED], CallState.CONNECTED),
    ],
)
def test_illegal_transitions_are_rejected(legal, illegal):
    async def scenario():
        store = CallStore()
        call_id = await _new_call(store)
        for state in legal:
            await store.transition(call_id, state)
        with pytest.raises(IllegalTransitionError):
            await store.transition(call_id, illegal)

    _run(scenario())


def test_terminal_state_never_regresses():
    async def scenario():
        store = CallStore()
        call_id = await _new_call(store)
        await store.transition(call_id, CallState.CANCELED)
        for state in CallState:
            if state == CallState.CANCELED:
                continue
            with pytest.raises(IllegalTransitionError):
                await store.transition(call_id, state)
        return await store.get(call_id)

    assert _run(scenario()).state == CallState.CANCELED


def test_result_is_only_recorded_with_a_terminal_state():
    async def scenario():
        store = CallStore()
        call_id = await _new_call(store)
        with pytest.raises(IllegalTransitionError):
            await store.transition(
                call_id, CallState.DIALING, result={"status": "confirmed", "summary": "ok"}
            )
        await store.transition(call_id, CallState.DIALING)
        await store.transition(call_id, CallState.CONNECTED)
        await store.transition(
            call_id, CallState.COMPLETED, result={"status": "confirmed", "summary": "Booked for 3pm"}
        )
        return await store.get(call_id)

    record = _run(scenario())
    assert record.result == CallResult(status="confirmed", summary="Booked for 3pm")


def test_update_rejects_state_and_frozen_records():
    async def scenario():
        store = CallStore()
        call_id = await _new_call(store)
        with pytest.raises(ValueError):
            await store.update(call_id, state=CallState.CONNECTED)
        updated = await store.update(call_id, error="carrier hiccup")
        await store.transition(call_id, CallState.FAILED)
        with pytest.raises(CallFrozenError):
            await store.update(call_id, error="later")
        return updated

    assert _run(scenario()).error == "carrier hiccup"


def test_operations_on_unknown_call_raise_not_found():
    async def scenario():
        store = CallStore()
        with pytest.raises(CallNotFoundError):
            await store.transition("missing", CallState.DIALING)
        with pytest.raises(CallNotFoundError):
            await store.append_transcript("missing", "user", "hello")
        with pytest.raises(CallNotFoundError):
            await store.set_active_call("missing")

    _run(scenario())


def test_transcript_preserves_arrival_order_under_concurrency():
    async def scenario():
        store = CallStore()
        call_id = await _new_call(store)
        await store.transition(call_id, CallState.DIALING)
        await store.transition(call_id, CallState.CONNECTED)
        lines = [("user" if i % 2 else "assistant", f"line {i}") for i in range(20)]
        await asyncio.gather(*(store.append_transcript(call_id, role, text) for role, text in lines))
        return lines, await store.get(call_id)

    lines, record = _run(scenario())
    assert [(entry.role, entry.content) for entry in record.transcript] == lines
    stamps = [entry.timestamp for entry in record.transcript]
    assert stamps == sorted(stamps) and len(set(stamps)) == len(stamps)


def test_transcript_appends_after_the_call_ended_are_dropped():
    async def scenario():
        store = CallStore()
        call_id = await _new_call(store)
        await store.append_transcript(call_id, "assistant", "Hello?")
        await store.transition(call_id, CallState.CANCELED)
        accepted = await store.append_transcript(call_id, "user", "too late")
        return accepted, await store.get(call_id)

    accepted, record = _run(scenario())
    assert accepted is False
    assert [entry.content for entry in record.transcript] == ["Hello?"]


def test_provider_call_id_lookup():
    async def scenario():
        store = CallStore()
        call_id = await _new_call(store)
        await store.link_provider_call_id(call_id, "CA1")
        await store.link_provider_call_id(call_id, "CA1")
        with pytest.raises(CallFrozenError):
            await store.link_provider_call_id(call_id, "CA2")
        return call_id, await store.lookup_by_provider_call_id("CA1"), await store.lookup_by_provider_call_id("CA2")

    call_id, found, missing = _run(scenario())
    assert found == call_id
    assert missing is None


def test_release_active_call_only_clears_matching_id():
    async def scenario():
        store = CallStore()
        first = await _new_call(store)
        second = await _new_call(store)
        await store.set_active_call(second)
        released_stale = await store.release_active_call(first)
        active = await store.get_active_call()
        released = await store.release_active_call(second)
        return second, released_stale, active, released, await store.get_active_call()

    second, released_stale, active, released, after = _run(scenario())
    assert released_stale is False
    assert active.id == second
    assert released is True
    assert after is None


def test_list_calls_filters_by_state():
    async def scenario():
        store = CallStore()
        live = await _new_call(store)
        ended = await _new_call(store)
        await store.transition(live, CallState.DIALING)
        await store.transition(ended, CallState.FAILED)
        return live, ended, await store.list_calls(CallState.DIALING), await store.list_calls()

    live, ended, dialing, everything = _run(scenario())
    assert [record.id for record in dialing] == [live]
    assert {record.id for record in everything} == {live, ended}
