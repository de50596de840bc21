"""Tests for the session countdown timer."""

import asyncio

import pytest

from core import SessionTimer
from tests.conftest import FakeClock


def make_timer(total, clock, fired=None):
    return SessionTimer(
        total,
        on_expire=(lambda: fired.append(clock())) if fired is not None else None,
        clock=clock,
        auto_tick=False
    )


def test_remaining_time_never_increases(clock):
    timer = make_timer(600, clock)
    timer.start()

    readings = []
    for step in [0.4, 0.7, 1.0, 3.5, 0.0, 12.2, 1.1]:
        clock.advance(step)
        timer.tick()
        readings.append(timer.time_remaining)

    assert readings == sorted(readings, reverse=True)
    assert timer.session_time == 18


def test_expiry_fires_exactly_once(clock):
    fired = []
    timer = make_timer(600, clock, fired)
    timer.start()

    clock.advance(601)
    timer.tick()
    timer.tick()
    clock.advance(10)
    timer.tick()

    assert len(fired) == 1
    assert timer.has_expired
    assert not timer.is_active
    assert timer.time_remaining == 0


def test_paused_time_is_excluded(clock):
    timer = make_timer(600, clock)
    timer.start()
    clock.advance(30)
    timer.pause()
    clock.advance(300)
    timer.tick()

    assert timer.session_time == 30

    timer.resume()
    clock.advance(5)
    timer.tick()
    assert timer.session_time == 35
    assert timer.time_remaining == 565


def test_missed_ticks_are_corrected_from_the_clock(clock):
    timer = make_timer(600, clock)
    timer.start()

    # Process suspended for ten seconds; only one tick is delivered.
    clock.advance(10)
    timer.tick()

    assert timer.session_time == 10
    assert timer.drift_corrections == 1

    clock.advance(1)
    timer.tick()
    assert timer.drift_corrections == 1


def test_shortening_duration_past_elapsed_fires_immediately(clock):
    fired = []
    timer = make_timer(1200, clock, fired)
    timer.start()
    clock.advance(700)
    timer.tick()

    timer.set_total_duration(600)

    assert len(fired) == 1
    assert not timer.is_active


def test_extending_duration_recomputes_remaining(clock):
    timer = make_timer(600, clock)
    timer.start()
    clock.advance(100)

    timer.set_total_duration(1200)

    assert timer.time_remaining == 1100


def test_stop_then_start_continues(clock):
    timer = make_timer(600, clock)
    timer.start()
    clock.advance(20)
    timer.stop()
    clock.advance(100)
    timer.start()
    clock.advance(5)

    assert timer.session_time == 25


def test_reset_allows_a_new_run(clock):
    fired = []
    timer = make_timer(10, clock, fired)
    timer.start()
    clock.advance(11)
    timer.tick()

    timer.reset()
    assert timer.session_time == 0
    assert not timer.has_expired

    timer.start()
    clock.advance(10)
    timer.tick()
    assert len(fired) == 2


def test_progress_and_formatting(clock):
    timer = make_timer(600, clock)
    timer.start()
    clock.advance(545)

    assert timer.progress == pytest.approx(545 / 600 * 100)
    assert timer.is_near_end
    assert timer.formatted_session_time() == "09:05"
    assert timer.formatted_time_remaining() == "00:55"


@pytest.mark.asyncio
async def test_coroutine_expiry_callback_is_scheduled():
    clock = FakeClock()
    done = []

    async def on_expire():
        done.append(True)

    timer = SessionTimer(5, on_expire=on_expire, clock=clock, auto_tick=False)
    timer.start()
    clock.advance(5)
    timer.tick()
    await timer.wait_expired()

    assert done == [True]


@pytest.mark.asyncio
async def test_background_ticking_reaches_expiry():
    clock = FakeClock()
    fired = []
    timer = SessionTimer(2, on_expire=lambda: fired.append(True), clock=clock, tick_interval=0.01)
    timer.start()
    clock.advance(3)

    await asyncio.sleep(0.1)

    assert fired == [True]
    assert not timer.is_active
