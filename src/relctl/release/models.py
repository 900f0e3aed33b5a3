"""Release data models."""

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _parse_time(value: str | None) -> datetime | None:
    if not value:
        return None
    return datetime.fromisoformat(value)


def _new_id() -> str:
    return str(uuid.uuid4())[:8]


class ReleaseStatus(str, Enum):
    """Release lifecycle status."""

    PENDING = "pending"
    BUILDING = "building"
    STAGED = "staged"
    HEALTH_CHECKING = "health_checking"
    AWAITING_APPROVAL = "awaiting_approval"
    PROMOTED = "promoted"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {ReleaseStatus.PROMOTED, ReleaseStatus.ROLLED_BACK, ReleaseStatus.FAILED}
)


class TargetKind(str, Enum):
    """Deployment target kinds."""

    SLOT = "slot"
    REMOTE = "remote"


class PromotionStrategy(str, Enum):
    """How a healthy release is promoted."""

    DIRECT = "direct"
    BAKED = "baked"
    MANUAL_GATE = "manual_gate"


class AttemptOutcome(str, Enum):
    """Deployment attempt outcome."""

    IN_PROGRESS = "in_progress"
    PROMOTED = "promoted"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


class AttemptTrigger(str, Enum):
    """What started a deployment attempt."""

    DEPLOY = "deploy"
    OPERATOR_ROLLBACK = "operator_rollback"


class SampleStatus(str, Enum):
    """Outcome of a single health probe."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    NO_RESPONSE = "no_response"


class HealthVerdict(str, Enum):
    """Health prober decision."""

    HEALTHY = "healthy"
    UNHEALTHY = "unhealthy"
    TIMEOUT = "timeout"


class ApprovalDecision(str, Enum):
    """Manual gate decisions."""

    APPROVED = "approved"
    REJECTED = "rejected"
    CANCELLED = "cancelled"
    TIMED_OUT = "timed_out"


@dataclass(frozen=True)
class Policy:
    """Rollout policy for a single release. Read-only during orchestration."""

    tier: str = "development"
    strategy: PromotionStrategy = PromotionStrategy.DIRECT
    warmup_seconds: float = 0.0
    bake_seconds: float = 0.0
    interval: float = 5.0
    timeout: float = 300.0
    threshold: int = 1
    failure_threshold: int = 3
    probe_timeout: float = 5.0
    max_retries: int = 3
    backoff_base_seconds: float = 1.0
    backoff_max_seconds: float = 30.0
    requires_manual_gate: bool = False
    approval_timeout: float = 3600.0
    rollback_on_failure: bool = True

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "tier": self.tier,
            "strategy": self.strategy.value,
            "warmup_seconds": self.warmup_seconds,
            "bake_seconds": self.bake_seconds,
            "interval": self.interval,
            "timeout": self.timeout,
            "threshold": self.threshold,
            "failure_threshold": self.failure_threshold,
            "probe_timeout": self.probe_timeout,
            "max_retries": self.max_retries,
            "backoff_base_seconds": self.backoff_base_seconds,
            "backoff_max_seconds": self.backoff_max_seconds,
            "requires_manual_gate": self.requires_manual_gate,
            "approval_timeout": self.approval_timeout,
            "rollback_on_failure": self.rollback_on_failure,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Policy":
        """Create from dictionary."""
        values = dict(data)
        values["strategy"] = PromotionStrategy(values.get("strategy", "direct"))
        return cls(**values)


@dataclass(frozen=True)
class StagedHandle:
    """Where a staged artifact lives on a target."""

    target_id: str
    artifact_ref: str
    location: str

    def to_dict(self) -> dict[str, Any]:
        return {
            "target_id": self.target_id,
            "artifact_ref": self.artifact_ref,
            "location": self.location,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "StagedHandle":
        return cls(
            target_id=data["target_id"],
            artifact_ref=data["artifact_ref"],
            location=data["location"],
        )


@dataclass
class ActivationResult:
    """Result of activate() or rollback() on a target."""

    atomic: bool
    recovery_marker: dict[str, Any] | None = None
    detail: str = ""


@dataclass
class HealthSample:
    """A single health probe observation."""

    status: SampleStatus
    detail: str = ""
    status_code: int | None = None
    timestamp: datetime = field(default_factory=utcnow)

    @property
    def healthy(self) -> bool:
        return self.status == SampleStatus.HEALTHY

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "detail": self.detail,
            "status_code": self.status_code,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "HealthSample":
        return cls(
            status=SampleStatus(data["status"]),
            detail=data.get("detail", ""),
            status_code=data.get("status_code"),
            timestamp=_parse_time(data.get("timestamp")) or utcnow(),
        )


@dataclass
class HealthResult:
    """Outcome of a health check run."""

    verdict: HealthVerdict
    samples: list[HealthSample] = field(default_factory=list)
    consecutive_successes: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "verdict": self.verdict.value,
            "consecutive_successes": self.consecutive_successes,
            "samples": [s.to_dict() for s in self.samples[-20:]],
        }


@dataclass
class Release:
    """A build output on its way to a target."""

    id: str = field(default_factory=_new_id)
    target_id: str = ""
    version: str = ""
    artifact_ref: str = ""
    source_commit: str = ""
    status: ReleaseStatus = ReleaseStatus.PENDING

    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    policy: Policy | None = None
    staged_handle: StagedHandle | None = None
    attempt_id: str | None = None

    message: str = ""
    remediation: str | None = None
    last_known_state: dict[str, Any] | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "id": self.id,
            "target_id": self.target_id,
            "version": self.version,
            "artifact_ref": self.artifact_ref,
            "source_commit": self.source_commit,
            "status": self.status.value,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "policy": self.policy.to_dict() if self.policy else None,
            "staged_handle": self.staged_handle.to_dict() if self.staged_handle else None,
            "attempt_id": self.attempt_id,
            "message": self.message,
            "remediation": self.remediation,
            "last_known_state": self.last_known_state,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Release":
        """Create from dictionary."""
        release = cls(
            id=data["id"],
            target_id=data.get("target_id", ""),
            version=data.get("version", ""),
            artifact_ref=data.get("artifact_ref", ""),
            source_commit=data.get("source_commit", ""),
            status=ReleaseStatus(data.get("status", "pending")),
            attempt_id=data.get("attempt_id"),
            message=data.get("message", ""),
            remediation=data.get("remediation"),
            last_known_state=data.get("last_known_state"),
        )

        if data.get("policy"):
            release.policy = Policy.from_dict(data["policy"])
        if data.get("staged_handle"):
            release.staged_handle = StagedHandle.from_dict(data["staged_handle"])
        if data.get("created_at"):
            release.created_at = datetime.fromisoformat(data["created_at"])
        if data.get("updated_at"):
            release.updated_at = datetime.fromisoformat(data["updated_at"])

        return release


@dataclass
class Target:
    """Runtime state of a deployment destination."""

    id: str
    kind: TargetKind
    tier: str = "development"
    live_release_id: str | None = None
    staged_release_id: str | None = None
    previous_release_id: str | None = None
    in_flight_release_id: str | None = None
    recovery_marker: dict[str, Any] | None = None
    updated_at: datetime = field(default_factory=utcnow)

    @property
    def atomic(self) -> bool:
        return self.kind == TargetKind.SLOT

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind.value,
            "tier": self.tier,
            "live_release_id": self.live_release_id,
            "staged_release_id": self.staged_release_id,
            "previous_release_id": self.previous_release_id,
            "in_flight_release_id": self.in_flight_release_id,
            "recovery_marker": self.recovery_marker,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Target":
        target = cls(
            id=data["id"],
            kind=TargetKind(data["kind"]),
            tier=data.get("tier", "development"),
            live_release_id=data.get("live_release_id"),
            staged_release_id=data.get("staged_release_id"),
            previous_release_id=data.get("previous_release_id"),
            in_flight_release_id=data.get("in_flight_release_id"),
            recovery_marker=data.get("recovery_marker"),
        )
        if data.get("updated_at"):
            target.updated_at = datetime.fromisoformat(data["updated_at"])
        return target


@dataclass
class DeploymentAttempt:
    """One try at getting a release onto a target."""

    release_id: str
    target_id: str
    id: str = field(default_factory=_new_id)
    trigger: AttemptTrigger = AttemptTrigger.DEPLOY
    started_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None
    outcome: AttemptOutcome = AttemptOutcome.IN_PROGRESS
    health_results: list[dict[str, Any]] = field(default_factory=list)
    retry_count: int = 0
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "release_id": self.release_id,
            "target_id": self.target_id,
            "trigger": self.trigger.value,
            "started_at": self.started_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "outcome": self.outcome.value,
            "health_results": self.health_results,
            "retry_count": self.retry_count,
            "error": self.error,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeploymentAttempt":
        return cls(
            id=data["id"],
            release_id=data["release_id"],
            target_id=data["target_id"],
            trigger=AttemptTrigger(data.get("trigger", "deploy")),
            started_at=_parse_time(data.get("started_at")) or utcnow(),
            completed_at=_parse_time(data.get("completed_at")),
            outcome=AttemptOutcome(data.get("outcome", "in_progress")),
            health_results=data.get("health_results", []),
            retry_count=data.get("retry_count", 0),
            error=data.get("error"),
        )


@dataclass
class ApprovalRecord:
    """A recorded manual gate decision."""

    release_id: str
    decision: ApprovalDecision
    actor: str = "unknown"
    reason: str = ""
    decided_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict[str, Any]:
        return {
            "release_id": self.release_id,
            "decision": self.decision.value,
            "actor": self.actor,
            "reason": self.reason,
            "decided_at": self.decided_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ApprovalRecord":
        return cls(
            release_id=data["release_id"],
            decision=ApprovalDecision(data["decision"]),
            actor=data.get("actor", "unknown"),
            reason=data.get("reason", ""),
            decided_at=_parse_time(data.get("decided_at")) or utcnow(),
        )


class EventKind(str, Enum):
    """Event log entry kinds."""

    CREATED = "created"
    TRANSITION = "transition"
    MARKER = "marker"


@dataclass
class ReleaseEvent:
    """Event log entry for the audit trail."""

    release_id: str
    target_id: str
    kind: EventKind
    reason: str = ""
    from_state: ReleaseStatus | None = None
    to_state: ReleaseStatus | None = None
    marker: str | None = None
    details: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)
    sequence: int = 0

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary."""
        return {
            "sequence": self.sequence,
            "release_id": self.release_id,
            "target_id": self.target_id,
            "kind": self.kind.value,
            "from_state": self.from_state.value if self.from_state else None,
            "to_state": self.to_state.value if self.to_state else None,
            "marker": self.marker,
            "reason": self.reason,
            "details": self.details,
            "timestamp": self.timestamp.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ReleaseEvent":
        return cls(
            sequence=data.get("sequence", 0),
            release_id=data["release_id"],
            target_id=data.get("target_id", ""),
            kind=EventKind(data["kind"]),
            from_state=ReleaseStatus(data["from_state"]) if data.get("from_state") else None,
            to_state=ReleaseStatus(data["to_state"]) if data.get("to_state") else None,
            marker=data.get("marker"),
            reason=data.get("reason", ""),
            details=data.get("details", {}),
            timestamp=_parse_time(data.get("timestamp")) or utcnow(),
        )
