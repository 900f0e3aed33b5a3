"""Base target adapter."""

import asyncio
from abc import ABC, abstractmethod
from typing import Any

import httpx

from relctl.config import TargetConfig
from relctl.core.exceptions import RollbackError, TransportError
from relctl.core.logging import StructuredLogger
from relctl.release.models import (
    ActivationResult,
    HealthSample,
    SampleStatus,
    StagedHandle,
    Target,
)

logger = StructuredLogger(__name__)


class TargetAdapter(ABC):
    """Uniform contract over heterogeneous deployment targets.

    Adapters never mutate the persisted Target record. They read it (for
    example the recovery marker) and report what they did through their
    return values; the release engine owns every state change.
    """

    def __init__(
        self,
        target_id: str,
        config: TargetConfig,
        health_client: httpx.AsyncClient | None = None,
    ):
        """Initialize adapter.

        Args:
            target_id: Target identifier
            config: Target descriptor
            health_client: HTTP client for health probes
        """
        self.target_id = target_id
        self.config = config
        self._health_client = health_client
        self._owns_health_client = health_client is None

        if not config.health_url:
            logger.warning(
                "No health_url configured, probes will always report healthy",
                target=target_id,
            )

    @property
    @abstractmethod
    def atomic(self) -> bool:
        """Whether activate() switches traffic atomically."""
        pass

    @abstractmethod
    async def stage(self, target: Target, artifact_ref: str, content: bytes) -> StagedHandle:
        """Place an artifact where it does not serve live traffic."""
        pass

    @abstractmethod
    async def activate(self, target: Target, handle: StagedHandle) -> ActivationResult:
        """Make a staged artifact serve live traffic."""
        pass

    @abstractmethod
    async def rollback(self, target: Target) -> ActivationResult:
        """Re-activate the previously live artifact using the recovery marker."""
        pass

    def recovery_marker(self, target: Target) -> dict[str, Any] | None:
        """The marker a rollback would act on."""
        return target.recovery_marker

    def marker_restores(self, marker: dict[str, Any], handle: StagedHandle) -> bool:
        """Whether rolling back with ``marker`` brings ``handle`` back live."""
        return marker.get("previous_artifact_ref") == handle.artifact_ref

    async def verify_rollback(self, target: Target, restore: StagedHandle) -> None:
        """Check, without touching the host, that rollback would restore ``restore``.

        Raises:
            RollbackError: With step ``verify`` when the marker is missing or
                leads somewhere else
        """
        marker = self.recovery_marker(target)
        if not marker:
            raise RollbackError(
                f"No recovery marker on '{target.id}': the last activation cannot be reversed",
                target_id=target.id,
                step="verify",
            )
        if not self.marker_restores(marker, restore):
            raise RollbackError(
                f"Recovery marker on '{target.id}' does not lead back to {restore.artifact_ref}",
                target_id=target.id,
                step="verify",
                details={"marker": marker},
            )

    async def probe_health(self, target: Target, timeout: float) -> HealthSample:
        """Probe the target's health endpoint once.

        Never blocks longer than ``timeout``. A probe that gets no answer in
        time yields a ``no_response`` sample; connection failures raise
        TransportError so the caller can retry.
        """
        url = self.config.health_url
        if not url:
            return HealthSample(status=SampleStatus.HEALTHY, detail="no health_url configured")

        client = self._get_health_client()
        try:
            response = await asyncio.wait_for(client.get(url, timeout=timeout), timeout=timeout)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            return HealthSample(
                status=SampleStatus.NO_RESPONSE,
                detail=f"no response within {timeout}s",
            )
        except httpx.RequestError as e:
            raise TransportError(f"Health probe failed: {e}", target_id=self.target_id)

        if 200 <= response.status_code < 400:
            return HealthSample(
                status=SampleStatus.HEALTHY,
                status_code=response.status_code,
                detail="ok",
            )
        return HealthSample(
            status=SampleStatus.UNHEALTHY,
            status_code=response.status_code,
            detail=f"HTTP {response.status_code}",
        )

    def _get_health_client(self) -> httpx.AsyncClient:
        if self._health_client is None:
            self._health_client = httpx.AsyncClient(follow_redirects=True)
        return self._health_client

    async def close(self) -> None:
        """Release network resources."""
        if self._health_client is not None and self._owns_health_client:
            await self._health_client.aclose()
            self._health_client = None
