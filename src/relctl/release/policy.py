"""Rollout policy decisions."""

from collections.abc import Sequence

from relctl.config import PolicyConfig
from relctl.core.logging import StructuredLogger
from relctl.release.models import Policy, PromotionStrategy, Release, ReleaseStatus

logger = StructuredLogger(__name__)

_BAD_OUTCOMES = frozenset({ReleaseStatus.ROLLED_BACK, ReleaseStatus.FAILED})


class RolloutPolicyEngine:
    """Derive the Policy for a release from tier defaults and target history.

    ``decide`` is pure: it only reads its arguments.
    """

    def recent_failures(self, history: Sequence[Release], window: int) -> bool:
        """True when the last ``window`` finished releases all went bad."""
        finished = sorted(
            (r for r in history if r.is_terminal),
            key=lambda r: r.created_at,
            reverse=True,
        )[:window]
        return len(finished) == window and all(r.status in _BAD_OUTCOMES for r in finished)

    def decide(
        self,
        history: Sequence[Release],
        config: PolicyConfig,
        tier: str | None,
        atomic: bool,
    ) -> Policy:
        """Decide how a new release on a target is rolled out.

        Args:
            history: Earlier releases on the same target
            config: Policy configuration
            tier: Environment tier of the target
            atomic: Whether the target's adapter activates atomically

        Returns:
            Policy for the release
        """
        tier_name = tier or config.default_tier
        defaults = config.get_tier(tier_name)

        requires_gate = defaults.requires_manual_gate
        threshold = defaults.threshold

        if self.recent_failures(history, config.escalate_after_failures):
            logger.info(
                "Escalating policy after repeated failures",
                tier=tier_name,
                window=config.escalate_after_failures,
            )
            requires_gate = True
            threshold += 1

        if not atomic:
            threshold = max(threshold, config.non_atomic_min_threshold)

        if requires_gate:
            strategy = PromotionStrategy.MANUAL_GATE
        elif defaults.bake_seconds > 0:
            strategy = PromotionStrategy.BAKED
        else:
            strategy = PromotionStrategy.DIRECT

        return Policy(
            tier=tier_name,
            strategy=strategy,
            warmup_seconds=defaults.warmup_seconds,
            bake_seconds=defaults.bake_seconds,
            interval=defaults.interval,
            timeout=defaults.timeout,
            threshold=threshold,
            failure_threshold=defaults.failure_threshold,
            probe_timeout=defaults.probe_timeout,
            max_retries=defaults.max_retries,
            backoff_base_seconds=defaults.backoff_base_seconds,
            backoff_max_seconds=defaults.backoff_max_seconds,
            requires_manual_gate=requires_gate,
            approval_timeout=float(defaults.approval_timeout),
            rollback_on_failure=defaults.rollback_on_failure,
        )
