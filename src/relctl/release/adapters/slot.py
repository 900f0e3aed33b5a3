"""Slot-based PaaS host adapter."""

from typing import Any

import httpx

from relctl.config import SlotTargetConfig, TargetConfig
from relctl.core.exceptions import (
    ActivationError,
    ArtifactRejected,
    ConfigError,
    RelCtlError,
    RollbackError,
    TransportError,
)
from relctl.core.logging import StructuredLogger
from relctl.release.adapters.base import TargetAdapter
from relctl.release.models import ActivationResult, StagedHandle, Target

logger = StructuredLogger(__name__)


class SlotHostError(RelCtlError):
    """Non-retryable error returned by the slot host API."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class SlotHostClient:
    """Client for a PaaS host REST API with deployment slots."""

    def __init__(self, config: SlotTargetConfig, client: httpx.AsyncClient | None = None):
        self._config = config
        self._client = client
        self._owns_client = client is None

    @property
    def client(self) -> httpx.AsyncClient:
        """Get or create HTTP client."""
        if self._client is None:
            headers = {"Accept": "application/json"}
            token = self._config.get_token()
            if token:
                headers["Authorization"] = f"Bearer {token}"

            self._client = httpx.AsyncClient(
                base_url=self._config.base_url.rstrip("/"),
                headers=headers,
                timeout=self._config.timeout,
            )

            logger.debug("Created slot host client", url=self._config.base_url)

        return self._client

    def _slot_path(self, slot: str) -> str:
        return f"/sites/{self._config.site}/slots/{slot}"

    async def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        """Make an API request."""
        try:
            response = await self.client.request(method, path, **kwargs)
            response.raise_for_status()

            if response.content:
                return response.json()
            return None

        except httpx.HTTPStatusError as e:
            status_code = e.response.status_code
            try:
                message = e.response.json().get("message", str(e))
            except ValueError:
                message = e.response.text or str(e)

            if status_code >= 500 or status_code == 429:
                raise TransportError(message, status_code=status_code)
            if status_code in (401, 403):
                raise ConfigError(f"Slot host rejected credentials: {message}")
            raise SlotHostError(message, status_code=status_code)

        except httpx.RequestError as e:
            raise TransportError(f"Request failed: {e}")

    async def get_slot(self, slot: str) -> dict[str, Any]:
        """Get slot state, including the artifact it serves."""
        return await self._request("GET", self._slot_path(slot)) or {}

    async def upload(self, slot: str, artifact_ref: str, content: bytes) -> dict[str, Any]:
        """Upload a package into a slot."""
        return await self._request(
            "PUT",
            f"{self._slot_path(slot)}/package",
            content=content,
            headers={
                "Content-Type": "application/octet-stream",
                "X-Artifact-Ref": artifact_ref,
            },
        ) or {}

    async def swap(self, source_slot: str, target_slot: str) -> dict[str, Any]:
        """Swap two slots atomically."""
        return await self._request(
            "POST",
            f"{self._slot_path(source_slot)}/swap",
            json={"target_slot": target_slot},
        ) or {}

    async def close(self) -> None:
        if self._client is not None and self._owns_client:
            await self._client.aclose()
            self._client = None


class SlotHostAdapter(TargetAdapter):
    """Deploys to a staging slot and swaps it with the live slot."""

    def __init__(
        self,
        target_id: str,
        config: TargetConfig,
        client: SlotHostClient | None = None,
        health_client: httpx.AsyncClient | None = None,
    ):
        super().__init__(target_id, config, health_client=health_client)
        if config.slot is None:
            raise ConfigError(f"Target '{target_id}' has no slot settings")
        self._slot = config.slot
        self._client = client or SlotHostClient(config.slot)
        # Marker of the last swap this adapter issued, kept so a retried
        # activation whose swap response was lost still reports it
        self._swap_marker: dict[str, Any] | None = None

    @property
    def atomic(self) -> bool:
        return True

    async def _slot_ref(self, slot: str) -> str | None:
        return (await self._client.get_slot(slot)).get("artifact_ref")

    async def stage(self, target: Target, artifact_ref: str, content: bytes) -> StagedHandle:
        staging = self._slot.staging_slot
        handle = StagedHandle(
            target_id=target.id,
            artifact_ref=artifact_ref,
            location=f"slot:{staging}",
        )

        if await self._slot_ref(staging) == artifact_ref:
            logger.info("Artifact already staged", target=target.id, slot=staging)
            return handle

        try:
            await self._client.upload(staging, artifact_ref, content)
        except SlotHostError as e:
            raise ArtifactRejected(
                f"Slot host rejected artifact: {e.message}",
                artifact_ref=artifact_ref,
                details={"status_code": e.status_code},
            )

        logger.info("Staged artifact", target=target.id, slot=staging, ref=artifact_ref)
        return handle

    def _known_marker(self, target: Target, artifact_ref: str) -> dict[str, Any] | None:
        """Marker recorded when ``artifact_ref`` was swapped in, if we know it."""
        for marker in (self._swap_marker, target.recovery_marker):
            if marker and marker.get("activated_artifact_ref") == artifact_ref:
                return marker
        return None

    async def activate(self, target: Target, handle: StagedHandle) -> ActivationResult:
        staging, live = self._slot.staging_slot, self._slot.live_slot

        # Transport errors here are safe to retry: the swap is only issued
        # after we know the live slot does not serve the staged artifact yet.
        live_ref = await self._slot_ref(live)
        if live_ref == handle.artifact_ref:
            logger.info("Live slot already serves staged artifact", target=target.id)
            return ActivationResult(
                atomic=True,
                recovery_marker=self._known_marker(target, handle.artifact_ref),
                detail=f"{live} already serving {handle.artifact_ref}",
            )

        marker = {
            "staging_slot": staging,
            "live_slot": live,
            "previous_artifact_ref": live_ref,
            "activated_artifact_ref": handle.artifact_ref,
        }
        self._swap_marker = marker

        try:
            await self._client.swap(staging, live)
        except SlotHostError as e:
            raise ActivationError(
                f"Slot swap failed: {e.message}",
                target_id=target.id,
                step="swap",
                details={"status_code": e.status_code},
            )

        logger.info("Swapped slots", target=target.id, source=staging, live=live)
        return ActivationResult(
            atomic=True,
            recovery_marker=marker,
            detail=f"swapped {staging} into {live}",
        )

    async def _check_slots(self, target: Target, marker: dict[str, Any]) -> bool:
        """Confirm the reverse swap is possible. Returns True if it already happened."""
        staging = marker.get("staging_slot", self._slot.staging_slot)
        live = marker.get("live_slot", self._slot.live_slot)
        previous = marker["previous_artifact_ref"]

        try:
            if await self._slot_ref(live) == previous:
                return True
            staged_ref = await self._slot_ref(staging)
        except (TransportError, SlotHostError) as e:
            raise RollbackError(
                f"Could not read slot state: {e.message}",
                target_id=target.id,
                step="verify",
            )

        if staged_ref != previous:
            raise RollbackError(
                f"Slot '{staging}' no longer holds the previous artifact",
                target_id=target.id,
                step="verify",
                details={"expected": previous, "found": staged_ref},
            )
        return False

    async def verify_rollback(self, target: Target, restore: StagedHandle) -> None:
        await super().verify_rollback(target, restore)
        await self._check_slots(target, self.recovery_marker(target))

    async def rollback(self, target: Target) -> ActivationResult:
        marker = target.recovery_marker
        if not marker or not marker.get("previous_artifact_ref"):
            raise RollbackError(
                "No recovery marker: nothing was live before the last activation",
                target_id=target.id,
            )

        staging = marker.get("staging_slot", self._slot.staging_slot)
        live = marker.get("live_slot", self._slot.live_slot)
        previous = marker["previous_artifact_ref"]

        if await self._check_slots(target, marker):
            return ActivationResult(atomic=True, detail=f"{live} already serving {previous}")

        try:
            await self._client.swap(staging, live)
        except (TransportError, SlotHostError) as e:
            raise RollbackError(
                f"Reverse swap failed: {e.message}",
                target_id=target.id,
                step="swap",
            )

        self._swap_marker = None
        logger.info("Reverse-swapped slots", target=target.id, restored=previous)
        return ActivationResult(atomic=True, detail=f"restored {previous} into {live}")

    async def close(self) -> None:
        await self._client.close()
        await super().close()
