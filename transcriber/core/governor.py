"""
Per-job rate-limit governor.

Gates provider calls behind a concurrency cap taken from the processing
mode, tracks outcomes, and drops into a degraded mode (one call at a
time plus an extra delay per permit) while the provider keeps answering
with rate limits.
"""

import asyncio
import itertools
import logging
import random
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional

from transcriber.core.constants import (
    BackoffShape,
    DEGRADE_AFTER_RATE_LIMITS, RECOVER_AFTER_SUCCESSES, DEGRADED_EXTRA_DELAY_SEC,
)
from transcriber.core.error_codes import InvalidState
from transcriber.core.modes import BackoffConfig, ModeConfig
from transcriber.core.models import GovernorStatistics

logger = logging.getLogger(__name__)


class Outcome:
    SUCCESS = "success"
    RATE_LIMITED = "rate_limited"
    FAILURE = "failure"


@dataclass
class Permit:
    id: int
    released: bool = False


class RateLimitGovernor:
    """Concurrency and backpressure controller for one job."""

    def __init__(self, max_concurrency: int, max_retries: int, backoff: BackoffConfig,
                 rng: Optional[random.Random] = None,
                 sleep: Optional[Callable[[float], Awaitable[None]]] = None):
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be at least 1")
        self.normal_concurrency = max_concurrency
        self.max_retries = max_retries
        self.backoff_config = backoff
        self.stats = GovernorStatistics()
        self.degraded = False

        self._rng = rng or random.Random()
        self._sleep = sleep or asyncio.sleep
        self._cond = asyncio.Condition()
        self._active = 0
        self._ids = itertools.count(1)
        self._rate_limit_run = 0
        self._success_run = 0

    @classmethod
    def from_mode(cls, mode_config: ModeConfig, **kwargs) -> "RateLimitGovernor":
        return cls(mode_config.max_concurrency, mode_config.max_retries,
                   mode_config.backoff, **kwargs)

    @property
    def max_concurrency(self) -> int:
        return 1 if self.degraded else self.normal_concurrency

    @property
    def active(self) -> int:
        return self._active

    # ── Permits ───────────────────────────────────────────────────────

    async def acquire(self) -> Permit:
        """Wait for a free slot. In degraded mode the grant is also delayed."""
        async with self._cond:
            await self._cond.wait_for(lambda: self._active < self.max_concurrency)
            self._active += 1
            self.stats.total_attempts += 1
            self.stats.peak_concurrency = max(self.stats.peak_concurrency, self._active)
            permit = Permit(next(self._ids))
            extra_delay = DEGRADED_EXTRA_DELAY_SEC if self.degraded else 0.0

        if extra_delay:
            logger.debug("Degraded mode: delaying permit %d by %.1fs", permit.id, extra_delay)
            try:
                await self._sleep(extra_delay)
            except BaseException:
                await self.release(permit)
                raise
        return permit

    async def release(self, permit: Permit):
        if permit.released:
            raise InvalidState(f"Permit {permit.id} already released")
        async with self._cond:
            permit.released = True
            self._active -= 1
            self._cond.notify_all()

    @asynccontextmanager
    async def permit(self):
        """`async with governor.permit():` around a single provider call."""
        permit = await self.acquire()
        try:
            yield permit
        finally:
            await self.release(permit)

    # ── Outcomes ──────────────────────────────────────────────────────

    def record_outcome(self, outcome: str):
        if outcome == Outcome.SUCCESS:
            self.stats.successes += 1
            self._rate_limit_run = 0
            self._success_run += 1
            if self.degraded and self._success_run >= RECOVER_AFTER_SUCCESSES:
                self._exit_degraded()
        elif outcome == Outcome.RATE_LIMITED:
            self.stats.rate_limited += 1
            self._success_run = 0
            self._rate_limit_run += 1
            if not self.degraded and self._rate_limit_run >= DEGRADE_AFTER_RATE_LIMITS:
                self._enter_degraded()
        elif outcome == Outcome.FAILURE:
            self.stats.failures += 1
            self._success_run = 0
            self._rate_limit_run = 0
        else:
            raise ValueError(f"Unknown outcome {outcome!r}")

    def _enter_degraded(self):
        self.degraded = True
        self.stats.degraded_entries += 1
        logger.warning("Entering degraded mode after %d consecutive rate limits "
                       "(concurrency %d -> 1)", self._rate_limit_run, self.normal_concurrency)

    def _exit_degraded(self):
        self.degraded = False
        self._rate_limit_run = 0
        # Waiters re-check the restored cap on the next release.
        logger.info("Leaving degraded mode after %d consecutive successes (concurrency restored to %d)",
                    self._success_run, self.normal_concurrency)

    # ── Backoff ───────────────────────────────────────────────────────

    def compute_backoff(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """
        Delay in seconds before retry number `attempt` (1-based).
        exponential: base * multiplier^(attempt-1); linear: base + increment*(attempt-1).
        Both are capped at max_delay, then jittered. A provider Retry-After
        hint acts as a floor.
        """
        cfg = self.backoff_config
        n = max(1, attempt)
        if cfg.shape == BackoffShape.EXPONENTIAL:
            delay = cfg.base_delay * (cfg.multiplier ** (n - 1))
        else:
            delay = cfg.base_delay + cfg.increment * (n - 1)
        delay = min(delay, cfg.max_delay)

        if cfg.jitter:
            delay += delay * cfg.jitter * self._rng.uniform(-1.0, 1.0)
        delay = max(0.0, delay)

        if retry_after:
            delay = max(delay, float(retry_after))
        return delay

    async def backoff(self, attempt: int, retry_after: Optional[float] = None) -> float:
        """Sleep for the computed backoff; returns the delay used."""
        delay = self.compute_backoff(attempt, retry_after)
        logger.debug("Backing off %.2fs before retry %d", delay, attempt)
        await self._sleep(delay)
        return delay
