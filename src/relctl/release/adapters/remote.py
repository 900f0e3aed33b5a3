"""Remote-machine web server adapter.

The remote host is reached through a mounted share laid out as::

    <root>/releases/<digest>/    one directory per staged artifact
    <root>/current               relative path of the active release directory
    <root>/.relctl/previous      recovery marker written before activation

Stop and start commands (for example ``ssh web01 appcmd stop site app``) run
as local subprocesses. Switching the pointer between stop and start is not
atomic, so the recovery marker always lands on the share first.
"""

import asyncio
import io
import json
import shlex
import shutil
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import httpx

from relctl.config import TargetConfig
from relctl.core.exceptions import (
    ActivationError,
    ArtifactRejected,
    ConfigError,
    RollbackError,
    TransportError,
)
from relctl.core.logging import StructuredLogger
from relctl.core.utils import atomic_write_bytes, atomic_write_json
from relctl.release.adapters.base import TargetAdapter
from relctl.release.artifacts import parse_ref
from relctl.release.models import ActivationResult, StagedHandle, Target

logger = StructuredLogger(__name__)

MARKER_FILE = Path(".relctl") / "previous"
POINTER_FILE = "current"
RELEASES_DIR = "releases"


@dataclass
class CommandResult:
    """Outcome of a stop/start command."""

    command: str
    success: bool
    returncode: int | None = None
    stdout: str = ""
    stderr: str = ""
    error: str | None = None


class CommandRunner:
    """Runs service control commands as subprocesses."""

    async def run(self, command: str, timeout: float) -> CommandResult:
        try:
            proc = await asyncio.create_subprocess_exec(
                *shlex.split(command),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            return CommandResult(command=command, success=False, error=str(e))

        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout=timeout)
        except asyncio.TimeoutError:
            proc.kill()
            await proc.wait()
            return CommandResult(
                command=command,
                success=False,
                error=f"Command timed out after {timeout}s",
            )

        return CommandResult(
            command=command,
            success=proc.returncode == 0,
            returncode=proc.returncode,
            stdout=stdout.decode(errors="replace"),
            stderr=stderr.decode(errors="replace"),
        )


def _extract_zip(content: bytes, dest: Path) -> None:
    with zipfile.ZipFile(io.BytesIO(content)) as archive:
        root = dest.resolve()
        for member in archive.namelist():
            resolved = (dest / member).resolve()
            if root != resolved and root not in resolved.parents:
                raise ArtifactRejected(f"Archive member escapes release directory: {member}")
        archive.extractall(dest)


class RemoteMachineAdapter(TargetAdapter):
    """Deploys into a parallel directory and switches the active pointer."""

    def __init__(
        self,
        target_id: str,
        config: TargetConfig,
        runner: CommandRunner | None = None,
        health_client: httpx.AsyncClient | None = None,
    ):
        super().__init__(target_id, config, health_client=health_client)
        if config.remote is None:
            raise ConfigError(f"Target '{target_id}' has no remote settings")
        self._remote = config.remote
        self._root = Path(config.remote.root)
        self._runner = runner or CommandRunner()

    @property
    def atomic(self) -> bool:
        return False

    @property
    def root(self) -> Path:
        return self._root

    def current_path(self) -> str | None:
        """Relative path of the active release directory, if any."""
        pointer = self._root / POINTER_FILE
        if not pointer.exists():
            return None
        return pointer.read_text().strip() or None

    def read_marker(self) -> dict[str, Any] | None:
        marker_file = self._root / MARKER_FILE
        if not marker_file.exists():
            return None
        with open(marker_file) as f:
            return json.load(f)

    async def stage(self, target: Target, artifact_ref: str, content: bytes) -> StagedHandle:
        digest = parse_ref(artifact_ref)
        location = f"{RELEASES_DIR}/{digest[:12]}"
        handle = StagedHandle(target_id=target.id, artifact_ref=artifact_ref, location=location)

        if self.current_path() == location:
            logger.info("Artifact is the active release, skipping re-stage", target=target.id)
            return handle

        try:
            await asyncio.to_thread(self._write_release, location, content)
        except OSError as e:
            raise TransportError(
                f"Failed to stage onto {self._root}: {e}",
                target_id=target.id,
            )

        logger.info("Staged artifact", target=target.id, location=location)
        return handle

    def _write_release(self, location: str, content: bytes) -> None:
        dest = self._root / location
        tmp = dest.with_name(f".{dest.name}.tmp")
        if tmp.exists():
            shutil.rmtree(tmp)
        tmp.mkdir(parents=True)

        try:
            if zipfile.is_zipfile(io.BytesIO(content)):
                _extract_zip(content, tmp)
            else:
                (tmp / "artifact").write_bytes(content)

            if dest.exists():
                shutil.rmtree(dest)
            tmp.rename(dest)
        except BaseException:
            shutil.rmtree(tmp, ignore_errors=True)
            raise

    async def _run_step(self, command: str | None, step: str) -> CommandResult | None:
        if not command:
            return None
        result = await self._runner.run(command, timeout=self._remote.command_timeout)
        if result.success:
            logger.debug(f"{step} command succeeded", target=self.target_id, command=command)
        else:
            logger.warning(
                f"{step} command failed",
                target=self.target_id,
                command=command,
                returncode=result.returncode,
                error=result.error or result.stderr.strip(),
            )
        return result

    def _switch(self, location: str) -> None:
        atomic_write_bytes(self._root / POINTER_FILE, location.encode())

        if self._remote.site_path:
            site = Path(self._remote.site_path)
            if site.exists():
                shutil.rmtree(site)
            shutil.copytree(self._root / location, site)

    async def _stop_switch_start(self, location: str) -> str | None:
        """Returns the failing step name, or None on success."""
        result = await self._run_step(self._remote.stop_command, "stop")
        if result is not None and not result.success:
            return "stop"

        try:
            await asyncio.to_thread(self._switch, location)
        except OSError as e:
            logger.error(f"Failed to switch active path: {e}", target=self.target_id)
            return "switch"

        result = await self._run_step(self._remote.start_command, "start")
        if result is not None and not result.success:
            return "start"
        return None

    async def activate(self, target: Target, handle: StagedHandle) -> ActivationResult:
        current = self.current_path()
        if current == handle.location:
            known = [m for m in (self.read_marker(), target.recovery_marker) if m]
            marker = next((m for m in known if m.get("activated_path") == handle.location), None)
            return ActivationResult(
                atomic=False,
                recovery_marker=marker,
                detail=f"{handle.location} already active",
            )

        marker = {
            "previous_path": current,
            "activated_path": handle.location,
            "site_path": self._remote.site_path,
        }

        # Nothing has been mutated until the marker is on the share
        try:
            atomic_write_json(self._root / MARKER_FILE, marker)
        except OSError as e:
            raise TransportError(
                f"Failed to write recovery marker: {e}",
                target_id=target.id,
            )

        failed_step = await self._stop_switch_start(handle.location)
        if failed_step:
            raise ActivationError(
                f"Activation failed at '{failed_step}' on {target.id}",
                target_id=target.id,
                step=failed_step,
                details={"marker": marker},
            )

        logger.info("Activated release", target=target.id, path=handle.location)
        return ActivationResult(
            atomic=False,
            recovery_marker=marker,
            detail=f"switched {current} -> {handle.location}",
        )

    def recovery_marker(self, target: Target) -> dict[str, Any] | None:
        return target.recovery_marker or self.read_marker()

    def marker_restores(self, marker: dict[str, Any], handle: StagedHandle) -> bool:
        return bool(handle.location) and marker.get("previous_path") == handle.location

    async def verify_rollback(self, target: Target, restore: StagedHandle) -> None:
        await super().verify_rollback(target, restore)
        if not (self._root / restore.location).is_dir():
            raise RollbackError(
                f"Previous release directory is missing: {restore.location}",
                target_id=target.id,
                step="verify",
            )

    async def rollback(self, target: Target) -> ActivationResult:
        marker = self.recovery_marker(target)
        if not marker or not marker.get("previous_path"):
            raise RollbackError(
                "No recovery marker: nothing was active before the last activation",
                target_id=target.id,
            )

        previous = marker["previous_path"]
        if not (self._root / previous).is_dir():
            raise RollbackError(
                f"Previous release directory is missing: {previous}",
                target_id=target.id,
                step="verify",
            )

        failed_step = await self._stop_switch_start(previous)
        if failed_step:
            raise RollbackError(
                f"Rollback failed at '{failed_step}' on {target.id}",
                target_id=target.id,
                step=failed_step,
                details={"marker": marker},
            )

        # A spent marker must not be reused
        try:
            (self._root / MARKER_FILE).unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Failed to remove recovery marker: {e}", target=target.id)

        logger.info("Rolled back release", target=target.id, path=previous)
        return ActivationResult(atomic=False, detail=f"restored {previous}")
