"""Health verification for freshly activated releases."""

import asyncio
import time
from typing import Callable

from relctl.core.async_utils import Sleep, retry_transport
from relctl.core.exceptions import TransportError
from relctl.core.logging import StructuredLogger
from relctl.release.adapters.base import TargetAdapter
from relctl.release.models import (
    HealthResult,
    HealthSample,
    HealthVerdict,
    Policy,
    SampleStatus,
    Target,
)

logger = StructuredLogger(__name__)

Clock = Callable[[], float]


class HealthProber:
    """Poll a target until it is healthy, unhealthy, or out of time.

    A healthy verdict needs ``policy.threshold`` consecutive healthy samples.
    Any other sample resets the streak. ``policy.failure_threshold``
    consecutive unhealthy samples end the check early.
    """

    def __init__(self, sleep: Sleep = asyncio.sleep, clock: Clock = time.monotonic):
        self._sleep = sleep
        self._clock = clock

    async def _probe(self, adapter: TargetAdapter, target: Target, policy: Policy) -> HealthSample:
        try:
            return await retry_transport(
                lambda: adapter.probe_health(target, policy.probe_timeout),
                max_retries=policy.max_retries,
                base_delay=policy.backoff_base_seconds,
                max_delay=policy.backoff_max_seconds,
                sleep=self._sleep,
                label=f"health probe {target.id}",
            )
        except TransportError as e:
            return HealthSample(status=SampleStatus.NO_RESPONSE, detail=e.message)

    async def check(self, adapter: TargetAdapter, target: Target, policy: Policy) -> HealthResult:
        log = logger.bind(target=target.id)

        if policy.warmup_seconds > 0:
            log.debug(f"Warming up for {policy.warmup_seconds}s")
            await self._sleep(policy.warmup_seconds)

        deadline = self._clock() + policy.timeout
        samples: list[HealthSample] = []
        streak = 0
        failures = 0

        while True:
            sample = await self._probe(adapter, target, policy)
            samples.append(sample)

            if sample.healthy:
                streak += 1
                failures = 0
            else:
                streak = 0
                failures = failures + 1 if sample.status == SampleStatus.UNHEALTHY else 0

            log.debug(
                "Health sample",
                status=sample.status.value,
                streak=streak,
                failures=failures,
            )

            if streak >= policy.threshold:
                if policy.bake_seconds > 0:
                    return await self._bake(adapter, target, policy, samples, streak)
                log.info("Target healthy", samples=len(samples))
                return HealthResult(HealthVerdict.HEALTHY, samples, streak)

            if failures >= policy.failure_threshold:
                log.warning("Target unhealthy", failures=failures)
                return HealthResult(HealthVerdict.UNHEALTHY, samples, 0)

            remaining = deadline - self._clock()
            if remaining <= 0:
                log.warning(f"Health check timed out after {policy.timeout}s")
                return HealthResult(HealthVerdict.TIMEOUT, samples, streak)

            await self._sleep(min(policy.interval, remaining))

    async def _bake(
        self,
        adapter: TargetAdapter,
        target: Target,
        policy: Policy,
        samples: list[HealthSample],
        streak: int,
    ) -> HealthResult:
        """Keep observing after the threshold is met. Any bad sample fails the bake."""
        bake_deadline = self._clock() + policy.bake_seconds
        logger.info(f"Baking for {policy.bake_seconds}s", target=target.id)

        while True:
            remaining = bake_deadline - self._clock()
            if remaining <= 0:
                return HealthResult(HealthVerdict.HEALTHY, samples, streak)

            await self._sleep(min(policy.interval, remaining))
            sample = await self._probe(adapter, target, policy)
            samples.append(sample)

            if not sample.healthy:
                logger.warning(
                    "Target degraded during bake",
                    target=target.id,
                    status=sample.status.value,
                )
                return HealthResult(HealthVerdict.UNHEALTHY, samples, 0)
            streak += 1
