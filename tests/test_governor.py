#!/usr/bin/env python3
"""
Tests for the rate-limit governor: backoff shapes, permits, degraded mode.
"""

import asyncio
import random
import sys
from pathlib import Path
from unittest import mock

PROJECT_ROOT = Path(__file__).resolve().parent.parent
sys.path.insert(0, str(PROJECT_ROOT))

import unittest

from transcriber.core.constants import ProcessingMode, DEGRADED_EXTRA_DELAY_SEC
from transcriber.core.error_codes import InvalidState
from transcriber.core.governor import Outcome, RateLimitGovernor
from transcriber.core.modes import get_mode_config

BALANCED = get_mode_config(ProcessingMode.BALANCED)
BEST_QUALITY = get_mode_config(ProcessingMode.BEST_QUALITY)


def no_jitter():
    return mock.Mock(uniform=mock.Mock(return_value=0.0))


class TestBackoff(unittest.TestCase):

    def test_exponential_schedule(self):
        gov = RateLimitGovernor.from_mode(BALANCED, rng=no_jitter())
        self.assertEqual([gov.compute_backoff(n) for n in (1, 2, 3, 4)], [2.0, 5.0, 10.0, 10.0])

    def test_linear_schedule(self):
        gov = RateLimitGovernor.from_mode(BEST_QUALITY, rng=no_jitter())
        self.assertEqual([gov.compute_backoff(n) for n in (1, 2, 3)], [5.0, 10.0, 10.0])

    def test_jitter_bounds(self):
        gov = RateLimitGovernor.from_mode(BALANCED, rng=random.Random(7))
        for _ in range(200):
            delay = gov.compute_backoff(1)
            self.assertGreaterEqual(delay, 2.0 * 0.7)
            self.assertLessEqual(delay, 2.0 * 1.3)

    def test_retry_after_is_a_floor(self):
        gov = RateLimitGovernor.from_mode(BALANCED, rng=no_jitter())
        self.assertEqual(gov.compute_backoff(1, retry_after=7), 7.0)
        self.assertEqual(gov.compute_backoff(3, retry_after=1), 10.0)


class TestPermits(unittest.IsolatedAsyncioTestCase):

    async def test_concurrency_cap(self):
        gov = RateLimitGovernor.from_mode(BALANCED)
        running = 0
        peak = 0

        async def call():
            nonlocal running, peak
            async with gov.permit():
                running += 1
                peak = max(peak, running)
                await asyncio.sleep(0.01)
                running -= 1

        await asyncio.gather(*(call() for _ in range(10)))
        self.assertEqual(peak, 4)
        self.assertEqual(gov.stats.peak_concurrency, 4)
        self.assertEqual(gov.stats.total_attempts, 10)
        self.assertEqual(gov.active, 0)

    async def test_sequential_mode(self):
        gov = RateLimitGovernor.from_mode(BEST_QUALITY)
        first = await gov.acquire()
        waiter = asyncio.ensure_future(gov.acquire())
        await asyncio.sleep(0.01)
        self.assertFalse(waiter.done())
        await gov.release(first)
        second = await asyncio.wait_for(waiter, 1)
        await gov.release(second)

    async def test_double_release(self):
        gov = RateLimitGovernor.from_mode(BALANCED)
        permit = await gov.acquire()
        await gov.release(permit)
        with self.assertRaises(InvalidState):
            await gov.release(permit)
        self.assertEqual(gov.active, 0)

    async def test_backoff_sleeps(self):
        sleep = mock.AsyncMock()
        gov = RateLimitGovernor.from_mode(BALANCED, rng=no_jitter(), sleep=sleep)
        delay = await gov.backoff(2)
        self.assertEqual(delay, 5.0)
        sleep.assert_awaited_once_with(5.0)


class TestDegradedMode(unittest.IsolatedAsyncioTestCase):

    def setUp(self):
        self.sleep = mock.AsyncMock()
        self.gov = RateLimitGovernor.from_mode(BALANCED, sleep=self.sleep)

    async def test_enters_after_three_rate_limits(self):
        for _ in range(2):
            self.gov.record_outcome(Outcome.RATE_LIMITED)
        self.assertFalse(self.gov.degraded)
        self.gov.record_outcome(Outcome.RATE_LIMITED)
        self.assertTrue(self.gov.degraded)
        self.assertEqual(self.gov.max_concurrency, 1)
        self.assertEqual(self.gov.stats.degraded_entries, 1)

        permit = await self.gov.acquire()
        self.sleep.assert_awaited_once_with(DEGRADED_EXTRA_DELAY_SEC)
        await self.gov.release(permit)

    def test_success_breaks_rate_limit_run(self):
        self.gov.record_outcome(Outcome.RATE_LIMITED)
        self.gov.record_outcome(Outcome.RATE_LIMITED)
        self.gov.record_outcome(Outcome.SUCCESS)
        self.gov.record_outcome(Outcome.RATE_LIMITED)
        self.assertFalse(self.gov.degraded)

    def test_exits_after_five_successes(self):
        for _ in range(3):
            self.gov.record_outcome(Outcome.RATE_LIMITED)
        for _ in range(4):
            self.gov.record_outcome(Outcome.SUCCESS)
        self.assertTrue(self.gov.degraded)
        self.gov.record_outcome(Outcome.SUCCESS)
        self.assertFalse(self.gov.degraded)
        self.assertEqual(self.gov.max_concurrency, 4)

    def test_failure_resets_success_run(self):
        for _ in range(3):
            self.gov.record_outcome(Outcome.RATE_LIMITED)
        for _ in range(4):
            self.gov.record_outcome(Outcome.SUCCESS)
        self.gov.record_outcome(Outcome.FAILURE)
        for _ in range(4):
            self.gov.record_outcome(Outcome.SUCCESS)
        self.assertTrue(self.gov.degraded)
        self.assertEqual(self.gov.stats.failures, 1)

    def test_failure_breaks_rate_limit_run(self):
        self.gov.record_outcome(Outcome.RATE_LIMITED)
        self.gov.record_outcome(Outcome.FAILURE)
        self.gov.record_outcome(Outcome.RATE_LIMITED)
        self.gov.record_outcome(Outcome.RATE_LIMITED)
        self.assertFalse(self.gov.degraded)
        self.assertEqual(self.gov.max_concurrency, 4)
        self.gov.record_outcome(Outcome.RATE_LIMITED)
        self.assertTrue(self.gov.degraded)

    async def test_no_delay_when_healthy(self):
        async with self.gov.permit():
            pass
        self.sleep.assert_not_awaited()

    def test_unknown_outcome(self):
        with self.assertRaises(ValueError):
            self.gov.record_outcome("meh")


if __name__ == "__main__":
    unittest.main()
