"""Release state persistence."""

import json
from pathlib import Path
from typing import Any

from relctl.core.exceptions import NotFoundError, StateError
from relctl.core.logging import StructuredLogger
from relctl.core.utils import atomic_write_json
from relctl.release.models import (
    ApprovalRecord,
    DeploymentAttempt,
    Release,
    ReleaseStatus,
    Target,
)

logger = StructuredLogger(__name__)


class ReleaseState:
    """Durable storage for releases, targets, attempts and approvals.

    Each record is one JSON document written atomically, so a crash never
    leaves a half-written record behind. The event log lives next to these
    directories (see ``relctl.release.events``).
    """

    def __init__(self, state_dir: str | Path | None = None):
        """Initialize release state manager.

        Args:
            state_dir: Directory to store release state
        """
        if state_dir:
            self._state_dir = Path(state_dir)
        else:
            self._state_dir = Path.home() / ".relctl" / "state"

        for sub in ("releases", "targets", "attempts", "approvals"):
            (self._state_dir / sub).mkdir(parents=True, exist_ok=True)

    @property
    def state_dir(self) -> Path:
        return self._state_dir

    def _path(self, kind: str, record_id: str) -> Path:
        return self._state_dir / kind / f"{record_id}.json"

    def _write(self, kind: str, record_id: str, data: dict[str, Any]) -> None:
        try:
            atomic_write_json(self._path(kind, record_id), data)
        except OSError as e:
            raise StateError(
                f"Failed to save {kind} state: {e}",
                details={"id": record_id},
            )

    def _read(self, kind: str, record_id: str) -> dict[str, Any]:
        state_file = self._path(kind, record_id)

        if not state_file.exists():
            raise NotFoundError(
                f"{kind.rstrip('s').capitalize()} not found: {record_id}",
                details={"id": record_id},
            )

        try:
            with open(state_file) as f:
                return json.load(f)
        except (OSError, ValueError) as e:
            raise StateError(
                f"Failed to load {kind} state: {e}",
                details={"id": record_id},
            )

    def _read_all(self, kind: str) -> list[dict[str, Any]]:
        records: list[dict[str, Any]] = []

        for state_file in (self._state_dir / kind).glob("*.json"):
            try:
                with open(state_file) as f:
                    records.append(json.load(f))
            except (OSError, ValueError) as e:
                logger.warning(f"Failed to load {state_file}: {e}")

        return records

    # Releases

    def save_release(self, release: Release) -> None:
        self._write("releases", release.id, release.to_dict())
        logger.debug("Saved release state", id=release.id, status=release.status.value)

    def load_release(self, release_id: str) -> Release:
        return Release.from_dict(self._read("releases", release_id))

    def list_releases(
        self,
        target_id: str | None = None,
        status: ReleaseStatus | None = None,
        limit: int | None = None,
    ) -> list[Release]:
        """List releases, newest first.

        Args:
            target_id: Filter by target
            status: Filter by status
            limit: Maximum releases to return

        Returns:
            List of Releases
        """
        releases: list[Release] = []

        for data in self._read_all("releases"):
            try:
                release = Release.from_dict(data)
            except (KeyError, ValueError) as e:
                logger.warning(f"Skipping malformed release record: {e}")
                continue

            if target_id and release.target_id != target_id:
                continue
            if status and release.status != status:
                continue

            releases.append(release)

        releases.sort(key=lambda r: r.created_at, reverse=True)

        if limit is not None:
            return releases[:limit]
        return releases

    def list_in_flight(self) -> list[Release]:
        """Releases that have not reached a terminal status."""
        return [r for r in self.list_releases() if not r.is_terminal]

    # Targets

    def save_target(self, target: Target) -> None:
        self._write("targets", target.id, target.to_dict())
        logger.debug("Saved target state", id=target.id)

    def load_target(self, target_id: str) -> Target:
        return Target.from_dict(self._read("targets", target_id))

    def has_target(self, target_id: str) -> bool:
        return self._path("targets", target_id).exists()

    def list_targets(self) -> list[Target]:
        targets = [Target.from_dict(d) for d in self._read_all("targets")]
        targets.sort(key=lambda t: t.id)
        return targets

    # Attempts

    def save_attempt(self, attempt: DeploymentAttempt) -> None:
        self._write("attempts", attempt.id, attempt.to_dict())

    def load_attempt(self, attempt_id: str) -> DeploymentAttempt:
        return DeploymentAttempt.from_dict(self._read("attempts", attempt_id))

    def list_attempts(self, release_id: str | None = None) -> list[DeploymentAttempt]:
        attempts = [DeploymentAttempt.from_dict(d) for d in self._read_all("attempts")]
        if release_id:
            attempts = [a for a in attempts if a.release_id == release_id]
        attempts.sort(key=lambda a: a.started_at)
        return attempts

    # Approvals

    def record_approval(self, record: ApprovalRecord) -> None:
        """Record a manual gate decision. The first decision wins."""
        if self.get_approval(record.release_id) is not None:
            logger.warning(
                "Ignoring duplicate approval decision",
                release=record.release_id,
                decision=record.decision.value,
            )
            return
        self._write("approvals", record.release_id, record.to_dict())

    def get_approval(self, release_id: str) -> ApprovalRecord | None:
        if not self._path("approvals", release_id).exists():
            return None
        return ApprovalRecord.from_dict(self._read("approvals", release_id))
