"""Content-addressed artifact storage."""

import hashlib
import json
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any

from relctl.core.exceptions import ArtifactRejected, NotFoundError, StateError
from relctl.core.logging import StructuredLogger
from relctl.core.utils import atomic_write_bytes
from relctl.release.models import utcnow

logger = StructuredLogger(__name__)

REF_PREFIX = "sha256:"


def compute_ref(content: bytes) -> str:
    """Compute the artifact reference for some content."""
    return REF_PREFIX + hashlib.sha256(content).hexdigest()


def parse_ref(ref: str) -> str:
    """Return the hex digest of a reference, validating its shape."""
    if not ref.startswith(REF_PREFIX):
        raise ArtifactRejected(f"Invalid artifact reference: {ref}", artifact_ref=ref)
    digest = ref[len(REF_PREFIX):]
    if len(digest) != 64 or any(c not in "0123456789abcdef" for c in digest):
        raise ArtifactRejected(f"Invalid artifact reference: {ref}", artifact_ref=ref)
    return digest


@dataclass
class ArtifactInfo:
    """Metadata stored next to an artifact."""

    ref: str
    size: int
    created_at: datetime = field(default_factory=utcnow)
    version: str | None = None
    filename: str | None = None
    labels: dict[str, str] = field(default_factory=dict)

    @property
    def short(self) -> str:
        return self.ref[len(REF_PREFIX):len(REF_PREFIX) + 12]

    def to_dict(self) -> dict[str, Any]:
        return {
            "ref": self.ref,
            "size": self.size,
            "created_at": self.created_at.isoformat(),
            "version": self.version,
            "filename": self.filename,
            "labels": self.labels,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ArtifactInfo":
        return cls(
            ref=data["ref"],
            size=data["size"],
            created_at=datetime.fromisoformat(data["created_at"]),
            version=data.get("version"),
            filename=data.get("filename"),
            labels=data.get("labels", {}),
        )


class ArtifactStore:
    """Immutable, content-addressed storage of build outputs.

    Blobs live under ``objects/<2 hex>/<digest>`` and their metadata under
    ``meta/<digest>.json``. Artifacts are never modified after being written,
    so concurrent readers across targets need no coordination.
    """

    def __init__(self, root: str | Path):
        self._root = Path(root)
        self._objects = self._root / "objects"
        self._meta = self._root / "meta"
        self._objects.mkdir(parents=True, exist_ok=True)
        self._meta.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def _blob_path(self, digest: str) -> Path:
        return self._objects / digest[:2] / digest

    def _meta_path(self, digest: str) -> Path:
        return self._meta / f"{digest}.json"

    def put(self, content: bytes, metadata: dict[str, Any] | None = None) -> str:
        """Store content and return its reference.

        Storing identical content twice returns the same reference and keeps
        the first metadata record.

        Args:
            content: Artifact bytes
            metadata: Optional version, filename and labels

        Returns:
            Artifact reference (``sha256:<hex>``)
        """
        metadata = metadata or {}
        ref = compute_ref(content)
        digest = parse_ref(ref)
        blob = self._blob_path(digest)

        if blob.exists() and self._meta_path(digest).exists():
            logger.debug("Artifact already stored", ref=ref)
            return ref

        try:
            blob.parent.mkdir(parents=True, exist_ok=True)
            atomic_write_bytes(blob, content)

            info = ArtifactInfo(
                ref=ref,
                size=len(content),
                version=metadata.get("version"),
                filename=metadata.get("filename"),
                labels=dict(metadata.get("labels", {})),
            )
            atomic_write_bytes(
                self._meta_path(digest),
                json.dumps(info.to_dict(), indent=2).encode(),
            )
        except OSError as e:
            raise StateError(f"Failed to store artifact: {e}", details={"ref": ref})

        logger.info("Stored artifact", ref=ref, size=len(content))
        return ref

    def get(self, ref: str) -> bytes:
        """Read artifact content, verifying its checksum."""
        digest = parse_ref(ref)
        blob = self._blob_path(digest)

        if not blob.exists():
            raise NotFoundError(f"Artifact not found: {ref}", details={"ref": ref})

        content = blob.read_bytes()
        if compute_ref(content) != ref:
            raise ArtifactRejected(
                f"Artifact content does not match its checksum: {ref}",
                artifact_ref=ref,
            )
        return content

    def exists(self, ref: str) -> bool:
        try:
            digest = parse_ref(ref)
        except ArtifactRejected:
            return False
        return self._blob_path(digest).exists()

    def info(self, ref: str) -> ArtifactInfo:
        """Get metadata for an artifact."""
        digest = parse_ref(ref)
        meta_file = self._meta_path(digest)

        if not meta_file.exists():
            raise NotFoundError(f"Artifact not found: {ref}", details={"ref": ref})

        with open(meta_file) as f:
            return ArtifactInfo.from_dict(json.load(f))

    def list_artifacts(self) -> list[ArtifactInfo]:
        """List stored artifacts, newest first."""
        infos: list[ArtifactInfo] = []

        for meta_file in self._meta.glob("*.json"):
            try:
                with open(meta_file) as f:
                    infos.append(ArtifactInfo.from_dict(json.load(f)))
            except (OSError, ValueError, KeyError) as e:
                logger.warning(f"Skipping unreadable artifact metadata {meta_file}: {e}")

        infos.sort(key=lambda i: i.created_at, reverse=True)
        return infos

    def delete(self, ref: str) -> None:
        digest = parse_ref(ref)
        self._blob_path(digest).unlink(missing_ok=True)
        self._meta_path(digest).unlink(missing_ok=True)

    def retain(
        self,
        keep_last_n: int,
        keep_min_age: timedelta,
        protected: set[str] | None = None,
        now: datetime | None = None,
    ) -> list[str]:
        """Garbage-collect artifacts outside the retention window.

        An artifact is removed only when it is not protected (referenced by
        a target's live, staged or previous release), is not among the
        ``keep_last_n`` newest artifacts, and is older than ``keep_min_age``.

        Returns:
            References that were removed
        """
        protected = protected or set()
        now = now or utcnow()
        removed: list[str] = []

        for index, info in enumerate(self.list_artifacts()):
            if index < keep_last_n:
                continue
            if info.ref in protected:
                continue
            if now - info.created_at < keep_min_age:
                continue

            self.delete(info.ref)
            removed.append(info.ref)

        if removed:
            logger.info(f"Garbage-collected {len(removed)} artifacts")

        return removed

