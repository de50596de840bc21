"""Tests for the matching engine."""

import asyncio

import pytest

from core import MatchingEngine, estimate_wait_text
from core.errors import CandidateGone, ConnectivityError, MatchTimeout, ValidationError
from models import MatchingStatus, NextAction, QueueStatus, Role, SessionStatus
from tests.conftest import SAMPLE_VENT, FakeTokenService, settle


def make_engine(user_id, store, queue, config, **kwargs):
    matches = []
    failures = []
    engine = MatchingEngine(
        user_id,
        store,
        queue=queue,
        config=config,
        on_match=matches.append,
        on_failure=failures.append,
        **kwargs
    )
    return engine, matches, failures


@pytest.mark.parametrize("waiting,opposite,active,expected", [
    (0, 2, 0, "< 30 seconds"),
    (1, 0, 6, "1-2 minutes"),
    (2, 0, 1, "2-4 minutes"),
    (5, 0, 0, "3-5 minutes"),
    (9, 0, 0, "5+ minutes"),
])
def test_wait_estimate(waiting, opposite, active, expected):
    assert estimate_wait_text(waiting, opposite, active) == expected


@pytest.mark.asyncio
async def test_venter_and_listener_are_matched(store, queue, config, sessions):
    venter, venter_matches, _ = make_engine("venter-1", store, queue, config)
    listener, listener_matches, _ = make_engine("listener-1", store, queue, config)

    assert await venter.start_matching(Role.VENTER, SAMPLE_VENT, "10-Min Vent")
    assert await listener.start_matching(Role.LISTENER)
    await settle()

    assert len(venter_matches) == 1
    assert len(listener_matches) == 1
    assert venter_matches[0].session_id == listener_matches[0].session_id
    assert venter_matches[0].is_host
    assert not listener_matches[0].is_host
    assert venter.status == MatchingStatus.SESSION_CREATED
    assert listener.status == MatchingStatus.SESSION_CREATED

    session = await sessions.get(venter_matches[0].session_id)
    assert session.status == SessionStatus.ACTIVE
    assert session.plan == "10-Min Vent"
    assert session.vent_text == SAMPLE_VENT
    assert await store.count(store.collection("sessions")) == 1

    venter_entry = await queue.get_entry(session.venter_queue_doc_id)
    listener_entry = await queue.get_entry(session.listener_queue_doc_id)
    assert venter_entry.status == QueueStatus.MATCHED
    assert listener_entry.status == QueueStatus.MATCHED
    assert store.listener_count == 0


@pytest.mark.asyncio
async def test_exactly_one_of_many_claimers_wins(store, queue, config):
    await queue.enqueue("venter-1", Role.VENTER, SAMPLE_VENT, "20-Min Vent")
    engines = [make_engine(f"listener-{n}", store, queue, config) for n in range(5)]

    started = await asyncio.gather(*(engine.start_matching(Role.LISTENER) for engine, _, _ in engines))
    await settle(200)

    assert all(started)
    matched = [engine for engine, matches, _ in engines if matches]
    assert len(matched) == 1
    assert await store.count(store.collection("sessions")) == 1
    losers = [engine for engine, matches, _ in engines if not matches]
    assert all(engine.status == MatchingStatus.SEARCHING for engine in losers)

    for engine, _, _ in engines:
        await engine.close()


@pytest.mark.asyncio
async def test_listener_claims_oldest_venter(store, queue, config, clock, sessions):
    await queue.enqueue("venter-old", Role.VENTER, SAMPLE_VENT, "20-Min Vent")
    clock.advance(5)
    await queue.enqueue("venter-new", Role.VENTER, "Something else on my mind", "20-Min Vent")
    listener, matches, _ = make_engine("listener-1", store, queue, config)

    await listener.start_matching(Role.LISTENER)
    await settle()

    assert len(matches) == 1
    assert matches[0].venter_id == "venter-old"


@pytest.mark.asyncio
async def test_stop_matching_while_searching(store, queue, config):
    venter, matches, _ = make_engine("venter-1", store, queue, config)
    await venter.start_matching(Role.VENTER, SAMPLE_VENT, "20-Min Vent")
    entry_id = venter.entry.id

    await venter.stop_matching()
    await venter.stop_matching()

    assert venter.status == MatchingStatus.IDLE
    assert await queue.get_entry(entry_id) is None
    assert store.listener_count == 0

    await queue.enqueue("listener-1", Role.LISTENER)
    await settle()
    assert matches == []
    assert await store.count(store.collection("sessions")) == 0


@pytest.mark.asyncio
async def test_short_vent_text_is_rejected(store, queue, config):
    venter, _, _ = make_engine("venter-1", store, queue, config)

    with pytest.raises(ValidationError):
        await venter.start_matching(Role.VENTER, "  too short  ", "20-Min Vent")
    with pytest.raises(ValidationError):
        await venter.start_matching(Role.VENTER, SAMPLE_VENT, "Lifetime Vent")

    assert venter.status == MatchingStatus.IDLE
    assert await store.count(store.collection("queue")) == 0


@pytest.mark.asyncio
async def test_second_start_while_searching_returns_false(store, queue, config):
    listener, _, _ = make_engine("listener-1", store, queue, config)

    assert await listener.start_matching(Role.LISTENER) is True
    assert await listener.start_matching(Role.LISTENER) is False
    assert await store.count(store.collection("queue")) == 1

    await listener.close()


@pytest.mark.asyncio
async def test_unreachable_store_blocks_search(store, queue, config):
    listener, _, _ = make_engine("listener-1", store, queue, config)
    store.set_online(False)

    assert await listener.start_matching(Role.LISTENER) is False
    assert isinstance(listener.last_error, ConnectivityError)
    assert listener.status == MatchingStatus.IDLE

    store.set_online(True)
    assert await store.count(store.collection("queue")) == 0


@pytest.mark.asyncio
async def test_search_times_out(store, queue, config):
    config.match_timeout_seconds = 0.02
    listener, _, failures = make_engine("listener-1", store, queue, config)

    await listener.start_matching(Role.LISTENER)
    entry_id = listener.entry.id
    await asyncio.sleep(0.1)

    assert listener.status == MatchingStatus.FAILED
    assert isinstance(listener.last_error, MatchTimeout)
    assert len(failures) == 1
    assert await queue.get_entry(entry_id) is None
    assert store.listener_count == 0


@pytest.mark.asyncio
async def test_retry_restarts_search(store, queue, config):
    config.match_timeout_seconds = 0.02
    listener, _, _ = make_engine("listener-1", store, queue, config)
    await listener.start_matching(Role.LISTENER)
    await asyncio.sleep(0.1)
    assert listener.status == MatchingStatus.FAILED

    config.match_timeout_seconds = 240
    assert await listener.retry() is True
    assert listener.status == MatchingStatus.SEARCHING

    await listener.close()


@pytest.mark.asyncio
async def test_venter_adopts_session_created_by_room_join(store, queue, rooms, config):
    venter, matches, _ = make_engine("venter-1", store, queue, config)
    await venter.start_matching(Role.VENTER, SAMPLE_VENT, "20-Min Vent")
    await settle()

    descriptor = await rooms.join_room(venter.entry.room_id, "listener-1")
    await settle()

    assert len(matches) == 1
    assert matches[0].session_id == descriptor.session_id
    assert matches[0].role == Role.VENTER
    assert venter.status == MatchingStatus.SESSION_CREATED


@pytest.mark.asyncio
async def test_token_is_prefetched_after_match(store, queue, config):
    tokens = FakeTokenService(token="abc")
    venter, matches, _ = make_engine("venter-1", store, queue, config, token_service=tokens)
    await queue.enqueue("listener-1", Role.LISTENER)

    await venter.start_matching(Role.VENTER, SAMPLE_VENT, "20-Min Vent")
    await settle()

    assert matches[0].rtc_token == "abc"
    assert tokens.requests == [matches[0].channel_name]


@pytest.mark.asyncio
async def test_concurrent_starts_queue_a_single_entry(store, queue, config):
    venter, _, _ = make_engine("venter-1", store, queue, config)

    results = await asyncio.gather(
        venter.start_matching(Role.VENTER, SAMPLE_VENT, "20-Min Vent"),
        venter.start_matching(Role.VENTER, SAMPLE_VENT, "20-Min Vent")
    )

    assert sorted(results) == [False, True]
    waiting = await queue.list_waiting(Role.VENTER)
    assert [entry.user_id for entry in waiting] == ["venter-1"]

    await venter.close()
    assert await queue.list_waiting(Role.VENTER) == []
    assert store.listener_count == 0


@pytest.mark.asyncio
async def test_lost_claims_give_up_after_bounded_retries(store, queue, config):
    listener_entry = await queue.enqueue("listener-1", Role.LISTENER)
    attempts = []

    async def always_lost(fn, max_attempts=None):
        attempts.append(fn)
        raise CandidateGone(listener_entry.id)

    store.run_transaction = always_lost
    venter, matches, failures = make_engine("venter-1", store, queue, config)
    await venter.start_matching(Role.VENTER, SAMPLE_VENT, "20-Min Vent")
    entry_id = venter.entry.id
    await settle(200)

    assert len(attempts) == config.max_claim_retries + 1
    assert venter.status == MatchingStatus.FAILED
    assert isinstance(venter.last_error, CandidateGone)
    assert venter.last_error.actions == [NextAction.RETRY, NextAction.CANCEL]
    assert failures == [venter.last_error]
    assert matches == []
    assert await queue.get_entry(entry_id) is None
    assert store.listener_count == 0


@pytest.mark.asyncio
async def test_own_entry_removed_during_claim_fails_at_once(store, queue, config):
    await queue.enqueue("listener-1", Role.LISTENER)
    venter, matches, failures = make_engine("venter-1", store, queue, config)
    run_transaction = store.run_transaction

    async def remove_own_entry_first(fn, max_attempts=None):
        await store.delete("queue", venter.entry.id)
        return await run_transaction(fn, max_attempts)

    store.run_transaction = remove_own_entry_first
    await venter.start_matching(Role.VENTER, SAMPLE_VENT, "20-Min Vent")
    await settle()

    assert venter.status == MatchingStatus.FAILED
    assert len(failures) == 1
    assert matches == []
    assert await store.count(store.collection("sessions")) == 0
    assert store.listener_count == 0
