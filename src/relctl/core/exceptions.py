"""Custom exceptions for relctl."""

from typing import Any


class RelCtlError(Exception):
    """Base exception for all relctl errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        if self.details:
            return f"{self.message} - {self.details}"
        return self.message


class ConfigError(RelCtlError):
    """Configuration-related errors."""

    pass


class StateError(RelCtlError):
    """Persisted state could not be read or written."""

    pass


class NotFoundError(RelCtlError):
    """A release, target, attempt or artifact does not exist."""

    pass


class TransportError(RelCtlError):
    """Transient failure talking to a target. Safe to retry."""

    def __init__(
        self,
        message: str,
        target_id: str | None = None,
        status_code: int | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.target_id = target_id
        self.status_code = status_code


class ArtifactRejected(RelCtlError):
    """The artifact is unusable for this target. Never retried."""

    def __init__(
        self,
        message: str,
        artifact_ref: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.artifact_ref = artifact_ref


class ActivationError(RelCtlError):
    """Activation failed and may have left the target in an ambiguous state."""

    def __init__(
        self,
        message: str,
        target_id: str | None = None,
        step: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.target_id = target_id
        self.step = step


class RollbackError(RelCtlError):
    """Rollback failed. Requires manual remediation."""

    def __init__(
        self,
        message: str,
        target_id: str | None = None,
        step: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.target_id = target_id
        self.step = step


class ConflictError(RelCtlError):
    """Another release is already in flight for the target."""

    def __init__(
        self,
        message: str,
        target_id: str | None = None,
        in_flight_release_id: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.target_id = target_id
        self.in_flight_release_id = in_flight_release_id


class InvalidTransitionError(RelCtlError):
    """A release was asked to move along an edge the state machine does not have."""

    pass


class TimeoutError(RelCtlError):
    """Operation timeout errors."""

    def __init__(
        self,
        message: str,
        timeout_seconds: float | None = None,
        details: dict[str, Any] | None = None,
    ):
        super().__init__(message, details)
        self.timeout_seconds = timeout_seconds


class HealthCheckTimeout(TimeoutError):
    """Health checks did not converge before the policy timeout."""

    pass


class ApprovalTimeout(TimeoutError):
    """No approval decision arrived before the approval timeout."""

    pass
