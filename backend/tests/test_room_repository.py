"""Tests for room browsing and listener-initiated joins."""

import asyncio

import pytest

from core.errors import RoomUnavailable, ValidationError
from models import QueueStatus, Role, RoomStatus, SessionStatus
from tests.conftest import SAMPLE_VENT


@pytest.mark.asyncio
async def test_open_rooms_oldest_first_with_waiting_minutes(queue, rooms, clock):
    older = await queue.enqueue("venter-1", Role.VENTER, SAMPLE_VENT, "10-Min Vent")
    clock.advance(3 * 60)
    newer = await queue.enqueue("venter-2", Role.VENTER, "Need to talk about my exams", "30-Min Vent")
    await queue.enqueue("listener-1", Role.LISTENER)
    clock.advance(2 * 60 + 30)

    open_rooms = await rooms.list_open_rooms()

    assert [room.room_id for room in open_rooms] == [older.room_id, newer.room_id]
    assert [room.time_waiting_minutes for room in open_rooms] == [5, 2]
    assert open_rooms[0].preview_text == SAMPLE_VENT
    assert open_rooms[0].venter_id == "venter-1"


@pytest.mark.asyncio
async def test_join_room_creates_session_and_claims_room(queue, rooms, store, sessions):
    venter = await queue.enqueue("venter-1", Role.VENTER, SAMPLE_VENT, "20-Min Vent")

    descriptor = await rooms.join_room(venter.room_id, "listener-1")

    assert descriptor.role == Role.LISTENER
    assert descriptor.venter_id == "venter-1"
    assert descriptor.listener_id == "listener-1"
    assert descriptor.vent_text == SAMPLE_VENT
    assert descriptor.channel_name.startswith("ventbox_")
    assert not descriptor.is_host

    session = await sessions.get(descriptor.session_id)
    assert session.status == SessionStatus.ACTIVE
    assert session.room_id == venter.room_id

    claimed = await queue.get_entry(venter.id)
    assert claimed.status == QueueStatus.MATCHED
    assert claimed.room_status == RoomStatus.JOINED
    assert claimed.listener_count == 1
    assert claimed.listener_id == "listener-1"
    assert claimed.session_id == descriptor.session_id

    listener_entry = await queue.get_entry(claimed.listener_queue_doc_id)
    assert listener_entry.status == QueueStatus.MATCHED
    assert listener_entry.venter_id == "venter-1"
    assert session.listener_queue_doc_id == listener_entry.id

    assert await rooms.list_open_rooms() == []


@pytest.mark.asyncio
async def test_concurrent_joins_only_one_wins(queue, rooms, store):
    venter = await queue.enqueue("venter-1", Role.VENTER, SAMPLE_VENT, "20-Min Vent")

    results = await asyncio.gather(
        rooms.join_room(venter.room_id, "listener-1"),
        rooms.join_room(venter.room_id, "listener-2"),
        return_exceptions=True
    )

    winners = [r for r in results if not isinstance(r, Exception)]
    losers = [r for r in results if isinstance(r, Exception)]
    assert len(winners) == 1
    assert len(losers) == 1
    assert isinstance(losers[0], RoomUnavailable)

    assert await store.count(store.collection("sessions")) == 1
    claimed = await queue.get_entry(venter.id)
    assert claimed.listener_count == 1
    assert claimed.listener_id == winners[0].listener_id


@pytest.mark.asyncio
async def test_join_unknown_room(rooms):
    with pytest.raises(RoomUnavailable):
        await rooms.join_room("room_0_missing", "listener-1")


@pytest.mark.asyncio
async def test_join_own_room_is_rejected(queue, rooms):
    venter = await queue.enqueue("venter-1", Role.VENTER, SAMPLE_VENT, "20-Min Vent")

    with pytest.raises(ValidationError):
        await rooms.join_room(venter.room_id, "venter-1")


@pytest.mark.asyncio
async def test_join_room_after_venter_left(queue, rooms):
    venter = await queue.enqueue("venter-1", Role.VENTER, SAMPLE_VENT, "20-Min Vent")
    await queue.dequeue(venter.id)

    with pytest.raises(RoomUnavailable):
        await rooms.join_room(venter.room_id, "listener-1")
