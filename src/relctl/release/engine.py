"""Release orchestration state machine."""

import asyncio
import time
from collections.abc import Sequence
from datetime import datetime, timedelta
from typing import Any

from relctl.config import RelCtlConfig
from relctl.core.async_utils import Sleep, gather_with_concurrency, retry_transport
from relctl.core.exceptions import (
    ActivationError,
    ApprovalTimeout,
    ArtifactRejected,
    ConflictError,
    HealthCheckTimeout,
    InvalidTransitionError,
    NotFoundError,
    RollbackError,
    TransportError,
)
from relctl.core.logging import StructuredLogger
from relctl.release.adapters import TargetAdapter, build_adapter
from relctl.release.approval import ApprovalGate
from relctl.release.artifacts import ArtifactStore
from relctl.release.events import EventLog
from relctl.release.health import Clock, HealthProber
from relctl.release.models import (
    ApprovalDecision,
    ApprovalRecord,
    AttemptOutcome,
    AttemptTrigger,
    DeploymentAttempt,
    EventKind,
    HealthVerdict,
    Release,
    ReleaseEvent,
    ReleaseStatus,
    StagedHandle,
    Target,
    TargetKind,
    utcnow,
)
from relctl.release.notify import Notifier
from relctl.release.policy import RolloutPolicyEngine
from relctl.release.state import ReleaseState

logger = StructuredLogger(__name__)

S = ReleaseStatus

TRANSITIONS: dict[ReleaseStatus, frozenset[ReleaseStatus]] = {
    S.PENDING: frozenset({S.BUILDING, S.STAGED, S.FAILED}),
    S.BUILDING: frozenset({S.STAGED, S.FAILED}),
    S.STAGED: frozenset({S.HEALTH_CHECKING, S.FAILED}),
    S.HEALTH_CHECKING: frozenset({S.AWAITING_APPROVAL, S.PROMOTED, S.ROLLING_BACK, S.FAILED}),
    S.AWAITING_APPROVAL: frozenset({S.PROMOTED, S.ROLLING_BACK, S.FAILED}),
    S.PROMOTED: frozenset({S.ROLLING_BACK}),
    S.ROLLING_BACK: frozenset({S.ROLLED_BACK, S.FAILED}),
    S.ROLLED_BACK: frozenset(),
    S.FAILED: frozenset(),
}

ACTIVATION_STARTED = "activation_started"
ROLLBACK_STARTED = "rollback_started"

# RollbackError steps raised before the adapter touched the host
UNTOUCHED_ROLLBACK_STEPS = (None, "verify")


class ReleaseEngine:
    """Drive releases from submission to a terminal status.

    Every transition is appended to the event log before the release record
    is rewritten. A target admits one release at a time through its
    persisted ``in_flight_release_id``. The per-target lock only guards the
    read-check-write of that record and is never held across an adapter,
    prober or approval wait, so a competing request fails fast with
    ConflictError instead of queueing. Different targets proceed
    concurrently.
    """

    def __init__(
        self,
        config: RelCtlConfig,
        state: ReleaseState,
        events: EventLog,
        artifacts: ArtifactStore,
        adapters: dict[str, TargetAdapter] | None = None,
        notifier: Notifier | None = None,
        policy_engine: RolloutPolicyEngine | None = None,
        prober: HealthProber | None = None,
        gate: ApprovalGate | None = None,
        sleep: Sleep = asyncio.sleep,
        clock: Clock = time.monotonic,
    ):
        self.config = config
        self.state = state
        self.events = events
        self.artifacts = artifacts
        self._adapters: dict[str, TargetAdapter] = dict(adapters or {})
        self._notifier = notifier or Notifier()
        self._policy_engine = policy_engine or RolloutPolicyEngine()
        self._prober = prober or HealthProber(sleep=sleep, clock=clock)
        self._gate = gate or ApprovalGate(
            state,
            poll_interval=config.approval.poll_interval,
            sleep=sleep,
            clock=clock,
        )
        self._sleep = sleep
        self._locks: dict[str, asyncio.Lock] = {}
        self._running: set[str] = set()

    @classmethod
    def from_config(cls, config: RelCtlConfig, **kwargs: Any) -> "ReleaseEngine":
        """Build an engine with stores under the configured directories."""
        settings = config.global_settings
        sleep = kwargs.get("sleep", asyncio.sleep)
        kwargs.setdefault("notifier", Notifier.from_config(config.notifications, sleep=sleep))
        return cls(
            config,
            state=ReleaseState(settings.state_dir),
            events=EventLog(settings.state_dir),
            artifacts=ArtifactStore(settings.artifact_dir),
            **kwargs,
        )

    # Plumbing

    def adapter_for(self, target_id: str) -> TargetAdapter:
        if target_id not in self._adapters:
            self._adapters[target_id] = build_adapter(target_id, self.config.get_target(target_id))
        return self._adapters[target_id]

    def _lock(self, target_id: str) -> asyncio.Lock:
        if target_id not in self._locks:
            self._locks[target_id] = asyncio.Lock()
        return self._locks[target_id]

    def _load_or_create_target(self, target_id: str) -> Target:
        descriptor = self.config.get_target(target_id)
        if self.state.has_target(target_id):
            return self.state.load_target(target_id)

        target = Target(
            id=target_id,
            kind=TargetKind(descriptor.kind),
            tier=descriptor.tier or self.config.policy.default_tier,
        )
        self.state.save_target(target)
        return target

    def _save_target(self, target: Target) -> None:
        target.updated_at = utcnow()
        self.state.save_target(target)

    async def _emit(self, event: ReleaseEvent) -> None:
        await self._notifier.publish(event)

    async def _transition(
        self,
        release: Release,
        to_state: ReleaseStatus,
        reason: str,
        details: dict[str, Any] | None = None,
    ) -> None:
        from_state = release.status
        if to_state not in TRANSITIONS[from_state]:
            raise InvalidTransitionError(
                f"Release {release.id} cannot move from {from_state.value} to {to_state.value}",
                details={"release_id": release.id},
            )

        event = self.events.record_transition(
            release.id, release.target_id, from_state, to_state, reason, details
        )
        release.status = to_state
        release.message = reason
        release.updated_at = event.timestamp
        self.state.save_release(release)

        logger.info(
            f"{from_state.value} -> {to_state.value}",
            release=release.id,
            target=release.target_id,
            reason=reason,
        )
        await self._emit(event)

    async def _mark(self, release: Release, marker: str, details: dict[str, Any] | None = None) -> None:
        event = self.events.record_marker(release.id, release.target_id, marker, details)
        await self._emit(event)

    def _finish_attempt(
        self,
        attempt: DeploymentAttempt,
        outcome: AttemptOutcome,
        error: str | None = None,
    ) -> None:
        attempt.outcome = outcome
        attempt.completed_at = utcnow()
        attempt.error = error
        self.state.save_attempt(attempt)

    def _current_attempt(self, release: Release) -> DeploymentAttempt:
        if release.attempt_id:
            try:
                attempt = self.state.load_attempt(release.attempt_id)
                if attempt.outcome == AttemptOutcome.IN_PROGRESS:
                    return attempt
            except NotFoundError:
                pass

        attempt = DeploymentAttempt(release_id=release.id, target_id=release.target_id)
        self.state.save_attempt(attempt)
        release.attempt_id = attempt.id
        self.state.save_release(release)
        return attempt

    def _cancel_requested(self, release: Release) -> bool:
        record = self.state.get_approval(release.id)
        return record is not None and record.decision == ApprovalDecision.CANCELLED

    # Submission

    async def submit_release(
        self,
        target_id: str,
        artifact_ref: str,
        source_commit: str,
        version: str | None = None,
    ) -> str:
        """Accept a release for a target.

        Raises:
            ConfigError: Unknown target
            NotFoundError: Artifact not in the store
            ConflictError: Another release is in flight for the target
        """
        self.config.get_target(target_id)
        info = self.artifacts.info(artifact_ref)

        async with self._lock(target_id):
            target = self._load_or_create_target(target_id)
            self._check_not_in_flight(target)

            history = self.state.list_releases(target_id=target_id)
            policy = self._policy_engine.decide(
                history,
                self.config.policy,
                target.tier,
                self.adapter_for(target_id).atomic,
            )

            release = Release(
                target_id=target_id,
                version=version or info.version or info.short,
                artifact_ref=artifact_ref,
                source_commit=source_commit,
                policy=policy,
                message="submitted",
            )

            event = self.events.append(
                ReleaseEvent(
                    release_id=release.id,
                    target_id=target_id,
                    kind=EventKind.CREATED,
                    to_state=S.PENDING,
                    reason="submitted",
                    details={
                        "artifact_ref": artifact_ref,
                        "source_commit": source_commit,
                        "strategy": policy.strategy.value,
                    },
                )
            )
            self.state.save_release(release)

            target.in_flight_release_id = release.id
            self._save_target(target)

        logger.info(
            "Release submitted",
            release=release.id,
            target=target_id,
            version=release.version,
            strategy=policy.strategy.value,
        )
        await self._emit(event)
        return release.id

    def _check_not_in_flight(self, target: Target) -> None:
        holder = target.in_flight_release_id or target.staged_release_id
        if not holder:
            return

        try:
            if self.state.load_release(holder).is_terminal:
                # Left behind by a crash after the terminal transition
                target.in_flight_release_id = None
                target.staged_release_id = None
                self._save_target(target)
                return
        except NotFoundError:
            target.in_flight_release_id = None
            target.staged_release_id = None
            self._save_target(target)
            return

        raise ConflictError(
            f"Release {holder} is already in flight for target '{target.id}'",
            target_id=target.id,
            in_flight_release_id=holder,
        )

    async def deploy(
        self,
        target_id: str,
        artifact_ref: str,
        source_commit: str,
        version: str | None = None,
    ) -> Release:
        release_id = await self.submit_release(target_id, artifact_ref, source_commit, version)
        return await self.run_release(release_id)

    # Orchestration

    async def run_release(self, release_id: str) -> Release:
        """Drive a release to a terminal status."""
        release = self.state.load_release(release_id)

        async with self._lock(release.target_id):
            release = self.state.load_release(release_id)
            if release.is_terminal:
                return release

            target = self.state.load_target(release.target_id)
            if target.in_flight_release_id not in (None, release.id):
                raise ConflictError(
                    f"Target '{target.id}' is held by release {target.in_flight_release_id}",
                    target_id=target.id,
                    in_flight_release_id=target.in_flight_release_id,
                )
            self._claim(release.id, target.id)
            if target.in_flight_release_id is None:
                target.in_flight_release_id = release.id
                self._save_target(target)

        try:
            attempt = self._current_attempt(release)
            adapter = self.adapter_for(release.target_id)

            while not release.is_terminal:
                status = release.status
                if status in (S.PENDING, S.BUILDING):
                    await self._stage(release, target, attempt, adapter)
                elif status == S.STAGED:
                    await self._activate(release, target, attempt, adapter)
                elif status == S.HEALTH_CHECKING:
                    await self._verify_health(release, target, attempt, adapter)
                elif status == S.AWAITING_APPROVAL:
                    await self._await_approval(release, target, attempt)
                elif status == S.ROLLING_BACK:
                    await self._rollback(release, target, attempt, adapter)
        finally:
            self._running.discard(release.id)

        return release

    def _claim(self, release_id: str, target_id: str) -> None:
        """Mark a release as driven by this engine. Caller holds the target lock."""
        if release_id in self._running:
            raise ConflictError(
                f"Release {release_id} is already running",
                target_id=target_id,
                in_flight_release_id=release_id,
            )
        self._running.add(release_id)

    def _retry_counter(self, attempt: DeploymentAttempt):
        def on_retry(retry: int, error: TransportError) -> None:
            attempt.retry_count += 1
            self.state.save_attempt(attempt)

        return on_retry

    async def _stage(
        self,
        release: Release,
        target: Target,
        attempt: DeploymentAttempt,
        adapter: TargetAdapter,
    ) -> None:
        if self._cancel_requested(release):
            await self._fail(
                release,
                target,
                attempt,
                reason="cancelled before staging",
                remediation="None required: the target was not modified.",
            )
            return

        policy = release.policy
        try:
            content = self.artifacts.get(release.artifact_ref)
            handle = await retry_transport(
                lambda: adapter.stage(target, release.artifact_ref, content),
                max_retries=policy.max_retries,
                base_delay=policy.backoff_base_seconds,
                max_delay=policy.backoff_max_seconds,
                sleep=self._sleep,
                label=f"stage {release.id}",
                on_retry=self._retry_counter(attempt),
            )
        except (ArtifactRejected, NotFoundError) as e:
            await self._fail(
                release,
                target,
                attempt,
                reason=f"artifact rejected: {e.message}",
                remediation="Fix the artifact and submit a new release. Live traffic was not affected.",
                error=e,
            )
            return
        except TransportError as e:
            await self._fail(
                release,
                target,
                attempt,
                reason=f"staging failed after {policy.max_retries + 1} attempts: {e.message}",
                remediation="Check connectivity to the target and resubmit. Live traffic was not affected.",
                error=e,
            )
            return

        release.staged_handle = handle
        await self._transition(release, S.STAGED, "staged", {"location": handle.location})
        target.staged_release_id = release.id
        self._save_target(target)

    async def _activate(
        self,
        release: Release,
        target: Target,
        attempt: DeploymentAttempt,
        adapter: TargetAdapter,
    ) -> None:
        if self._cancel_requested(release):
            await self._fail(
                release,
                target,
                attempt,
                reason="cancelled before activation",
                remediation="None required: live traffic was not switched.",
            )
            return

        policy = release.policy
        handle = release.staged_handle
        await self._mark(release, ACTIVATION_STARTED, {"location": handle.location})

        try:
            result = await retry_transport(
                lambda: adapter.activate(target, handle),
                max_retries=policy.max_retries,
                base_delay=policy.backoff_base_seconds,
                max_delay=policy.backoff_max_seconds,
                sleep=self._sleep,
                label=f"activate {release.id}",
                on_retry=self._retry_counter(attempt),
            )
        except TransportError as e:
            await self._fail(
                release,
                target,
                attempt,
                reason=f"activation unreachable: {e.message}",
                remediation=(
                    "Verify the live version on the target. If it still serves the previous "
                    "release no action is needed; otherwise run 'relctl rollback "
                    f"{target.id}' once connectivity is restored."
                ),
                error=e,
            )
            return
        except ActivationError as e:
            marker = e.details.get("marker")
            if marker:
                target.recovery_marker = marker
            await self._fail(
                release,
                target,
                attempt,
                reason=f"activation failed at {e.step or 'unknown step'}: {e.message}",
                remediation=self._activation_remediation(target, adapter, e),
                error=e,
            )
            return

        target.recovery_marker = result.recovery_marker
        self._save_target(target)
        await self._transition(
            release,
            S.HEALTH_CHECKING,
            f"activated: {result.detail}" if result.detail else "activated",
            {"atomic": result.atomic},
        )

    def _activation_remediation(
        self, target: Target, adapter: TargetAdapter, error: ActivationError
    ) -> str:
        previous = (target.recovery_marker or {}).get(
            "previous_artifact_ref" if adapter.atomic else "previous_path"
        )
        if adapter.atomic:
            return (
                "Manual rollback required: confirm which slot serves live traffic; "
                f"previous artifact {previous or 'unknown'} is still recoverable by swapping back."
            )
        return (
            f"Manual rollback required: the host may be stopped or partially switched at step "
            f"'{error.step}'. Previous release path {previous or 'unknown'} is recorded in "
            ".relctl/previous on the share; restore it and start the service."
        )

    async def _verify_health(
        self,
        release: Release,
        target: Target,
        attempt: DeploymentAttempt,
        adapter: TargetAdapter,
    ) -> None:
        policy = release.policy
        result = await self._prober.check(adapter, target, policy)
        attempt.health_results.append(result.to_dict())
        self.state.save_attempt(attempt)

        if self._cancel_requested(release):
            await self._transition(release, S.ROLLING_BACK, "cancelled by operator")
            return

        if result.verdict == HealthVerdict.HEALTHY:
            if policy.requires_manual_gate:
                await self._transition(
                    release,
                    S.AWAITING_APPROVAL,
                    "healthy, awaiting approval",
                    {"samples": len(result.samples)},
                )
            else:
                await self._promote(release, target, attempt, "healthy")
            return

        reason = f"health check {result.verdict.value}"
        if policy.rollback_on_failure:
            await self._transition(release, S.ROLLING_BACK, reason, {"samples": len(result.samples)})
            return

        error = None
        if result.verdict == HealthVerdict.TIMEOUT:
            error = HealthCheckTimeout(
                f"Health checks did not converge within {policy.timeout}s",
                timeout_seconds=policy.timeout,
            )
        await self._fail(
            release,
            target,
            attempt,
            reason=f"{reason}, automatic rollback disabled",
            remediation=(
                f"The unhealthy release is serving traffic on '{target.id}'. "
                f"Fix forward or restore the previous release manually."
            ),
            error=error,
        )

    async def _await_approval(
        self,
        release: Release,
        target: Target,
        attempt: DeploymentAttempt,
    ) -> None:
        try:
            record = await self._gate.wait(release.id, release.policy.approval_timeout)
        except ApprovalTimeout as e:
            await self._transition(
                release, S.ROLLING_BACK, "approval timed out", {"timeout_seconds": e.timeout_seconds}
            )
            return

        if record.decision == ApprovalDecision.APPROVED:
            await self._promote(release, target, attempt, f"approved by {record.actor}")
            return

        reason = f"{record.decision.value} by {record.actor}"
        if record.reason:
            reason += f": {record.reason}"
        await self._transition(release, S.ROLLING_BACK, reason)

    async def _promote(
        self,
        release: Release,
        target: Target,
        attempt: DeploymentAttempt,
        reason: str,
    ) -> None:
        await self._transition(release, S.PROMOTED, reason)

        if target.live_release_id != release.id:
            target.previous_release_id = target.live_release_id
        target.live_release_id = release.id
        target.staged_release_id = None
        target.in_flight_release_id = None
        self._save_target(target)

        self._finish_attempt(attempt, AttemptOutcome.PROMOTED)

    async def _rollback(
        self,
        release: Release,
        target: Target,
        attempt: DeploymentAttempt,
        adapter: TargetAdapter,
    ) -> None:
        operator = attempt.trigger == AttemptTrigger.OPERATOR_ROLLBACK
        await self._mark(release, ROLLBACK_STARTED, {"trigger": attempt.trigger.value})

        try:
            result = await adapter.rollback(target)
        except (RollbackError, TransportError) as e:
            untouched = isinstance(e, RollbackError) and e.step in UNTOUCHED_ROLLBACK_STEPS
            if operator and untouched:
                remediation = (
                    f"Nothing was changed on '{target.id}': release {release.id} is still serving "
                    "traffic. Deploy the earlier artifact as a new release instead."
                )
            else:
                remediation = self._rollback_remediation(target, adapter)
            await self._fail(
                release,
                target,
                attempt,
                reason=f"rollback failed: {e.message}",
                remediation=remediation,
                error=e,
            )
            if operator and not untouched:
                # Live traffic is in an unknown state; nothing is Promoted there any more
                target.live_release_id = None
                self._save_target(target)
            return

        await self._transition(release, S.ROLLED_BACK, f"rolled back: {result.detail}")

        if operator:
            target.live_release_id = target.previous_release_id
            target.previous_release_id = None
        target.staged_release_id = None
        target.in_flight_release_id = None
        target.recovery_marker = None
        self._save_target(target)

        self._finish_attempt(attempt, AttemptOutcome.ROLLED_BACK)

    def _rollback_remediation(self, target: Target, adapter: TargetAdapter) -> str:
        marker = target.recovery_marker or {}
        previous = marker.get("previous_artifact_ref" if adapter.atomic else "previous_path")
        if not previous:
            return (
                f"Manual intervention required: no earlier release is recorded for '{target.id}'. "
                "Take the target out of service or deploy a known-good artifact."
            )
        return (
            f"Manual rollback required: previous artifact {previous} is still marked "
            f"recoverable on '{target.id}'."
        )

    async def _fail(
        self,
        release: Release,
        target: Target,
        attempt: DeploymentAttempt,
        reason: str,
        remediation: str,
        error: Exception | None = None,
    ) -> None:
        release.remediation = remediation
        release.last_known_state = {
            "target": target.to_dict(),
            "detail": str(error) if error else reason,
        }
        await self._transition(release, S.FAILED, reason)

        if target.staged_release_id == release.id:
            target.staged_release_id = None
        target.in_flight_release_id = None
        self._save_target(target)

        self._finish_attempt(attempt, AttemptOutcome.FAILED, error=reason)
        logger.error("Release failed", release=release.id, remediation=remediation)

    async def run_many(self, release_ids: Sequence[str]) -> dict[str, Release | Exception]:
        """Run releases concurrently across targets.

        A second release for a target that is already busy fails with
        ConflictError. Failures are returned in place of results.
        """
        results = await gather_with_concurrency(
            self.config.global_settings.max_concurrent_targets,
            *[self.run_release(rid) for rid in release_ids],
            return_exceptions=True,
        )
        return dict(zip(release_ids, results))

    # Operator actions

    def _decide(
        self,
        release_id: str,
        decision: ApprovalDecision,
        actor: str,
        reason: str,
    ) -> ApprovalRecord:
        release = self.state.load_release(release_id)
        if release.is_terminal:
            raise InvalidTransitionError(
                f"Release {release_id} is already {release.status.value}",
                details={"release_id": release_id},
            )
        if decision != ApprovalDecision.CANCELLED and release.status != S.AWAITING_APPROVAL:
            raise InvalidTransitionError(
                f"Release {release_id} is not awaiting approval ({release.status.value})",
                details={"release_id": release_id},
            )

        self.state.record_approval(
            ApprovalRecord(release_id=release_id, decision=decision, actor=actor, reason=reason)
        )
        return self.state.get_approval(release_id)

    def approve(self, release_id: str, actor: str = "operator", reason: str = "") -> ApprovalRecord:
        return self._decide(release_id, ApprovalDecision.APPROVED, actor, reason)

    def reject(self, release_id: str, actor: str = "operator", reason: str = "") -> ApprovalRecord:
        return self._decide(release_id, ApprovalDecision.REJECTED, actor, reason)

    async def cancel(self, release_id: str, actor: str = "operator", reason: str = "") -> Release:
        """Request cancellation of a release.

        A release that has never started running is failed immediately.
        Otherwise the request is honored at the next checkpoint: before
        staging or activation the release fails untouched, after activation
        it rolls back.
        """
        self._decide(release_id, ApprovalDecision.CANCELLED, actor, reason)
        release = self.state.load_release(release_id)

        async with self._lock(release.target_id):
            release = self.state.load_release(release_id)
            idle = (
                release.status == S.PENDING
                and release.attempt_id is None
                and release.id not in self._running
            )
            if not idle:
                return release
            self._claim(release.id, release.target_id)
            target = self.state.load_target(release.target_id)
            attempt = self._current_attempt(release)

        try:
            await self._fail(
                release,
                target,
                attempt,
                reason=f"cancelled by {actor}" + (f": {reason}" if reason else ""),
                remediation="None required: the target was not modified.",
            )
        finally:
            self._running.discard(release.id)
        return release

    async def rollback_target(self, target_id: str, reason: str = "", actor: str = "operator") -> Release:
        """Reverse the live release on a target back to the previous one.

        The adapter first confirms, without touching the host, that its
        recovery marker leads back to the previous release. If it does not,
        RollbackError is raised and no state changes.
        """
        async with self._lock(target_id):
            target = self._load_or_create_target(target_id)
            self._check_not_in_flight(target)

            if not target.live_release_id:
                raise NotFoundError(f"Target '{target_id}' has no live release")
            if not target.previous_release_id:
                raise RollbackError(
                    f"Target '{target_id}' has no previous release to restore",
                    target_id=target_id,
                )

            release = self.state.load_release(target.live_release_id)
            previous = self.state.load_release(target.previous_release_id)
            self._claim(release.id, target_id)
            target.in_flight_release_id = release.id
            self._save_target(target)

        adapter = self.adapter_for(target_id)
        restore = previous.staged_handle or StagedHandle(
            target_id=target_id, artifact_ref=previous.artifact_ref, location=""
        )
        try:
            await adapter.verify_rollback(target, restore)
        except BaseException:
            async with self._lock(target_id):
                target.in_flight_release_id = None
                self._save_target(target)
                self._running.discard(release.id)
            raise

        try:
            attempt = DeploymentAttempt(
                release_id=release.id,
                target_id=target_id,
                trigger=AttemptTrigger.OPERATOR_ROLLBACK,
            )
            self.state.save_attempt(attempt)
            release.attempt_id = attempt.id

            message = f"operator rollback by {actor}" + (f": {reason}" if reason else "")
            await self._transition(release, S.ROLLING_BACK, message)
            await self._rollback(release, target, attempt, adapter)
        finally:
            self._running.discard(release.id)
        return release

    # Recovery

    def _markers_since_last_transition(self, release_id: str) -> list[str]:
        markers: list[str] = []
        for event in self.events.events(release_id):
            if event.kind == EventKind.TRANSITION:
                markers = []
            elif event.kind == EventKind.MARKER and event.marker:
                markers.append(event.marker)
        return markers

    def _reconcile(self, release: Release, latest: ReleaseEvent | None) -> Release:
        """Adopt the event log's status when the record lags behind it."""
        if latest is not None and latest.to_state and latest.to_state != release.status:
            logger.warning(
                "Release record behind event log, adopting logged status",
                release=release.id,
                record=release.status.value,
                logged=latest.to_state.value,
            )
            release.status = latest.to_state
            release.message = latest.reason
            self.state.save_release(release)
        return release

    def _repair_target(self, release: Release) -> None:
        """Finish target bookkeeping for a release that reached a terminal status."""
        target = self.state.load_target(release.target_id)
        if target.in_flight_release_id != release.id:
            return

        if release.status == S.PROMOTED and target.live_release_id != release.id:
            target.previous_release_id = target.live_release_id
            target.live_release_id = release.id
        if target.staged_release_id == release.id:
            target.staged_release_id = None
        target.in_flight_release_id = None
        self._save_target(target)

    async def resume(self) -> dict[str, Release | Exception]:
        """Continue every in-flight release after a restart.

        Each release re-evaluates the exit conditions of its current status.
        An activation or rollback that started but never recorded its outcome
        is not repeated: the release fails with remediation instead.
        """
        latest = self.events.replay()
        to_run: list[str] = []

        for release in self.state.list_in_flight():
            release = self._reconcile(release, latest.get(release.id))
            if release.is_terminal:
                self._repair_target(release)
                continue

            markers = self._markers_since_last_transition(release.id)
            interrupted = (release.status == S.STAGED and ACTIVATION_STARTED in markers) or (
                release.status == S.ROLLING_BACK and ROLLBACK_STARTED in markers
            )
            if interrupted:
                await self._fail_interrupted(release)
                continue

            to_run.append(release.id)

        # Terminal releases whose target bookkeeping never completed
        for target in self.state.list_targets():
            holder = target.in_flight_release_id
            if holder and holder not in to_run:
                try:
                    held = self.state.load_release(holder)
                except NotFoundError:
                    continue
                if held.is_terminal:
                    self._repair_target(held)

        if to_run:
            logger.info(f"Resuming {len(to_run)} in-flight releases")
        return await self.run_many(to_run)

    async def _fail_interrupted(self, release: Release) -> None:
        async with self._lock(release.target_id):
            self._claim(release.id, release.target_id)
            target = self.state.load_target(release.target_id)
            attempt = self._current_attempt(release)

        adapter = self.adapter_for(release.target_id)
        step = "activation" if release.status == S.STAGED else "rollback"
        if release.status == S.STAGED:
            remediation = (
                "Activation was interrupted and its outcome is unknown. "
                + self._activation_remediation(
                    target, adapter, ActivationError("interrupted", step="unknown")
                )
            )
        else:
            remediation = "Rollback was interrupted. " + self._rollback_remediation(target, adapter)

        try:
            await self._fail(
                release,
                target,
                attempt,
                reason=f"{step} interrupted by restart",
                remediation=remediation,
            )
        finally:
            self._running.discard(release.id)

    # Maintenance

    def collect_garbage(self, now: datetime | None = None) -> list[str]:
        """Apply artifact retention, protecting artifacts any target still needs."""
        protected: set[str] = set()
        for target in self.state.list_targets():
            for release_id in (
                target.live_release_id,
                target.staged_release_id,
                target.previous_release_id,
                target.in_flight_release_id,
            ):
                if not release_id:
                    continue
                try:
                    protected.add(self.state.load_release(release_id).artifact_ref)
                except NotFoundError:
                    logger.warning("Target references a missing release", target=target.id)

        retention = self.config.retention
        return self.artifacts.retain(
            keep_last_n=retention.keep_last_n,
            keep_min_age=timedelta(days=retention.keep_min_age_days),
            protected=protected,
            now=now,
        )

    async def close(self) -> None:
        """Flush queued notifications and release adapter resources."""
        await self._notifier.close()
        for adapter in self._adapters.values():
            await adapter.close()
