import asyncio
import unittest

from jobconsole.core.errors import TimedOut, UpstreamHttpError
from jobconsole.workers.polling import (
    OUTCOME_DONE,
    OUTCOME_ERROR,
    OUTCOME_EXHAUSTED,
    OUTCOME_STOPPED,
    PollingLoop,
)


class DummyTimer:
    def __init__(self):
        self.now = 0.0
        self.sleeps = []

    def clock(self):
        return self.now

    async def sleep(self, seconds):
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


class PollingLoopTests(unittest.IsolatedAsyncioTestCase):
    def setUp(self):
        self.timer = DummyTimer()

    def make_loop(self, tick, interval=0.5, **kwargs):
        return PollingLoop(
            "test",
            tick,
            interval,
            clock=self.timer.clock,
            sleep=self.timer.sleep,
            **kwargs,
        )

    async def test_stops_when_tick_reports_done(self):
        calls = []

        async def tick():
            calls.append(1)
            return len(calls) == 3

        loop = self.make_loop(tick)
        loop.start()
        await loop.wait()

        self.assertEqual(loop.outcome, OUTCOME_DONE)
        self.assertEqual(loop.attempts, 3)
        self.assertEqual(self.timer.sleeps, [0.5, 0.5])
        self.assertFalse(loop.running)

    async def test_attempt_budget(self):
        exhausted = []

        async def tick():
            return False

        loop = self.make_loop(tick, max_attempts=30, on_exhausted=lambda: exhausted.append(True))
        loop.start()
        await loop.wait()

        self.assertEqual(loop.outcome, OUTCOME_EXHAUSTED)
        self.assertEqual(loop.attempts, 30)
        self.assertEqual(len(self.timer.sleeps), 29)
        self.assertEqual(exhausted, [True])

    async def test_wall_clock_ceiling(self):
        exhausted = []

        async def tick():
            return False

        loop = self.make_loop(tick, interval=2.0, max_duration_sec=10.0, on_exhausted=lambda: exhausted.append(True))
        loop.start()
        await loop.wait()

        self.assertEqual(loop.outcome, OUTCOME_EXHAUSTED)
        self.assertEqual(exhausted, [True])
        self.assertGreaterEqual(self.timer.now, 10.0)

    async def test_interval_can_change_between_ticks(self):
        intervals = iter([1.0, 5.0, 2.0])
        calls = []

        async def tick():
            calls.append(1)
            return len(calls) == 4

        loop = self.make_loop(tick, interval=lambda: next(intervals))
        loop.start()
        await loop.wait()

        self.assertEqual(self.timer.sleeps, [1.0, 5.0, 2.0])

    async def test_request_error_stops_the_loop(self):
        errors = []

        async def tick():
            raise TimedOut()

        loop = self.make_loop(tick, on_error=errors.append)
        loop.start()
        await loop.wait()

        self.assertEqual(loop.outcome, OUTCOME_ERROR)
        self.assertIsInstance(loop.error, TimedOut)
        self.assertEqual(len(errors), 1)
        self.assertEqual(loop.attempts, 1)

    async def test_unexpected_failure_is_reported_not_lost(self):
        errors = []

        async def tick():
            raise OverflowError("int too large to convert to float")

        loop = self.make_loop(tick, on_error=errors.append)
        with self.assertLogs("jobconsole.workers.polling", level="ERROR"):
            loop.start()
            await loop.wait()

        self.assertEqual(loop.outcome, OUTCOME_ERROR)
        self.assertFalse(loop.running)
        self.assertIsInstance(loop.error, UpstreamHttpError)
        self.assertEqual(loop.error.code, "UNEXPECTED_RESPONSE")
        self.assertEqual(errors, [loop.error])

    async def test_stop_while_request_in_flight(self):
        release = asyncio.Event()
        entered = asyncio.Event()
        calls = []

        async def tick():
            calls.append(1)
            entered.set()
            await release.wait()
            return False

        loop = self.make_loop(tick)
        loop.start()
        await entered.wait()
        loop.stop()
        release.set()
        await asyncio.sleep(0)
        await asyncio.sleep(0)

        self.assertEqual(loop.outcome, OUTCOME_STOPPED)
        self.assertFalse(loop.running)
        self.assertEqual(calls, [1])

    async def test_restart_resets_counters(self):
        async def tick():
            return False

        loop = self.make_loop(tick, max_attempts=2)
        loop.start()
        await loop.wait()
        loop.start()
        self.assertTrue(loop.running)
        await loop.wait()

        self.assertEqual(loop.attempts, 2)
        self.assertEqual(loop.outcome, OUTCOME_EXHAUSTED)

    async def test_start_is_idempotent_while_running(self):
        release = asyncio.Event()
        calls = []

        async def tick():
            calls.append(1)
            await release.wait()
            return True

        loop = self.make_loop(tick)
        loop.start()
        loop.start()
        await asyncio.sleep(0)
        release.set()
        await loop.wait()

        self.assertEqual(calls, [1])


if __name__ == "__main__":
    unittest.main()
