"""Manual approval gate."""

import asyncio
import time

from relctl.core.async_utils import Sleep
from relctl.core.exceptions import ApprovalTimeout
from relctl.core.logging import StructuredLogger
from relctl.release.health import Clock
from relctl.release.models import ApprovalDecision, ApprovalRecord
from relctl.release.state import ReleaseState

logger = StructuredLogger(__name__)


class ApprovalGate:
    """Wait for an operator decision recorded in the approval store.

    Decisions arrive out of band (CLI or another process) through
    ``ReleaseState.record_approval``; the gate polls the store. When no
    decision arrives before the timeout a ``timed_out`` decision is recorded
    and ApprovalTimeout is raised.
    """

    def __init__(
        self,
        state: ReleaseState,
        poll_interval: float = 5.0,
        sleep: Sleep = asyncio.sleep,
        clock: Clock = time.monotonic,
    ):
        self._state = state
        self._poll_interval = poll_interval
        self._sleep = sleep
        self._clock = clock

    async def wait(self, release_id: str, timeout: float) -> ApprovalRecord:
        """Return the first recorded decision.

        Raises:
            ApprovalTimeout: No operator decided before the deadline
        """
        deadline = self._clock() + timeout
        logger.info("Waiting for approval", release=release_id, timeout=timeout)

        while True:
            record = self._state.get_approval(release_id)
            if record is not None:
                logger.info(
                    "Approval decision received",
                    release=release_id,
                    decision=record.decision.value,
                    actor=record.actor,
                )
                return record

            remaining = deadline - self._clock()
            if remaining <= 0:
                record = ApprovalRecord(
                    release_id=release_id,
                    decision=ApprovalDecision.TIMED_OUT,
                    actor="relctl",
                    reason=f"no decision within {timeout}s",
                )
                self._state.record_approval(record)
                # A decision may have raced in just before the timeout record
                winner = self._state.get_approval(release_id) or record
                if winner.decision != ApprovalDecision.TIMED_OUT:
                    return winner
                raise ApprovalTimeout(
                    f"No approval decision for release {release_id} within {timeout}s",
                    timeout_seconds=timeout,
                    details={"release_id": release_id},
                )

            await self._sleep(min(self._poll_interval, remaining))
