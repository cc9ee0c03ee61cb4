#!/usr/bin/env python3
"""
Test script for the cancellable countdown.

Usage:
    python3 scripts/test_countdown.py
"""

import time

from harness import Counter, run_tests, wait_for

from medreminder.countdown import Countdown


def test_ticks_down_then_finishes():
    ticks, finished = Counter(), Counter()
    countdown = Countdown(3, on_tick=ticks, on_finish=finished, interval=0.01)
    countdown.start()
    assert wait_for(lambda: finished.count() == 1)
    assert ticks.calls == [(2,), (1,), (0,)]
    assert countdown.remaining == 0


def test_cancel_stops_callbacks():
    ticks, finished = Counter(), Counter()
    countdown = Countdown(60, on_tick=ticks, on_finish=finished, interval=0.02)
    countdown.start()
    assert wait_for(lambda: ticks.count() >= 1)
    countdown.cancel()
    seen = ticks.count()
    time.sleep(0.1)
    assert ticks.count() == seen
    assert finished.count() == 0
    assert countdown.cancelled and not countdown.running


def test_cancel_before_start():
    finished = Counter()
    countdown = Countdown(1, on_finish=finished, interval=0.01)
    countdown.cancel()
    countdown.start()
    time.sleep(0.05)
    assert finished.count() == 0


def test_failing_tick_does_not_kill_countdown():
    finished = Counter()

    def bad_tick(remaining):
        raise ValueError("view gone")

    countdown = Countdown(2, on_tick=bad_tick, on_finish=finished, interval=0.01)
    countdown.start()
    assert wait_for(lambda: finished.count() == 1)


def main():
    run_tests(globals(), "TEST: Countdown")


if __name__ == "__main__":
    main()
