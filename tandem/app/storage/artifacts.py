############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# artifacts.py: Artifact storage for rendered images
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Artifact storage for rendered images."""

import hashlib
import json
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles

from tandem.app.logging_config import get_logger

logger = get_logger(__name__)

METADATA_SUFFIX = ".json"


@dataclass(frozen=True)
class RetentionPolicy:
    max_items: int
    max_age_days: int


RETENTION_PROFILES: Dict[str, RetentionPolicy] = {
    "lab": RetentionPolicy(max_items=100, max_age_days=7),
    "enterprise": RetentionPolicy(max_items=1000, max_age_days=90),
    "gov": RetentionPolicy(max_items=5000, max_age_days=365),
}


@dataclass
class Artifact:
    path: str  # relative to the storage root
    content_hash: str
    created_at: datetime
    size_bytes: int
    metadata: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "content_hash": self.content_hash,
            "created_at": self.created_at.isoformat(),
            "size_bytes": self.size_bytes,
            "metadata": self.metadata,
        }


@dataclass(frozen=True)
class SweepResult:
    removed: int
    remaining: int
    profile: str


class ArtifactStorage:
    """
    Handles storage of rendered images.

    Storage layout:
    /<base>/
      /YYYY/MM/DD/
        /<sha256_prefix>/
          /<full_sha256>_<uuid>.png
          /<full_sha256>_<uuid>.png.json   (metadata)
    """

    def __init__(self, base_path: str, max_size_mb: int = 50):
        self._base_path = Path(base_path)
        self._max_size_bytes = max_size_mb * 1024 * 1024

    @property
    def base_path(self) -> Path:
        return self._base_path

    async def initialize(self) -> None:
        """Initialize storage directory."""
        self._base_path.mkdir(parents=True, exist_ok=True)
        logger.info("artifact_storage_initialized", path=str(self._base_path))

    def resolve(self, storage_path: str) -> Path:
        """Absolute path for a relative storage path; refuses to leave the root."""
        root = self._base_path.resolve()
        candidate = (root / storage_path).resolve()
        if candidate != root and root not in candidate.parents:
            raise ValueError(f"Path escapes artifact storage: {storage_path}")
        return candidate

    async def save(
        self,
        data: bytes,
        metadata: Optional[Dict[str, Any]] = None,
        extension: str = ".png",
    ) -> Artifact:
        """
        Store an image and its metadata sidecar.

        Raises:
            ValueError: if the image exceeds the configured size limit
        """
        if len(data) > self._max_size_bytes:
            raise ValueError(
                f"Artifact of {len(data)} bytes exceeds limit of {self._max_size_bytes} bytes"
            )

        sha256_hash = hashlib.sha256(data).hexdigest()
        now = datetime.now(timezone.utc)
        date_path = now.strftime("%Y/%m/%d")
        hash_prefix = sha256_hash[:4]
        stored_filename = f"{sha256_hash}_{uuid.uuid4().hex[:8]}{extension}"

        dir_path = self._base_path / date_path / hash_prefix
        dir_path.mkdir(parents=True, exist_ok=True)
        file_path = dir_path / stored_filename
        relative_path = f"{date_path}/{hash_prefix}/{stored_filename}"

        artifact = Artifact(
            path=relative_path,
            content_hash=sha256_hash,
            created_at=now,
            size_bytes=len(data),
            metadata=dict(metadata or {}),
        )

        async with aiofiles.open(file_path, "wb") as f:
            await f.write(data)
        async with aiofiles.open(str(file_path) + METADATA_SUFFIX, "w") as f:
            await f.write(json.dumps(artifact.to_dict(), indent=2, default=str))

        logger.info(
            "artifact_stored",
            path=relative_path,
            size=len(data),
            hash=sha256_hash[:16],
        )
        return artifact

    async def retrieve(self, storage_path: str) -> Optional[bytes]:
        """Artifact bytes, or None if not found."""
        file_path = self.resolve(storage_path)
        if not file_path.is_file():
            return None
        async with aiofiles.open(file_path, "rb") as f:
            return await f.read()

    async def metadata(self, storage_path: str) -> Optional[Dict[str, Any]]:
        meta_path = Path(str(self.resolve(storage_path)) + METADATA_SUFFIX)
        if not meta_path.is_file():
            return None
        async with aiofiles.open(meta_path, "r") as f:
            return json.loads(await f.read())

    async def delete(self, storage_path: str) -> bool:
        """Delete an artifact and its metadata. False if not found."""
        file_path = self.resolve(storage_path)
        if not file_path.exists():
            return False
        file_path.unlink()
        Path(str(file_path) + METADATA_SUFFIX).unlink(missing_ok=True)
        logger.info("artifact_deleted", path=storage_path)
        return True

    def _list_images(self) -> List[Path]:
        if not self._base_path.exists():
            return []
        return [
            p for p in self._base_path.rglob("*")
            if p.is_file() and not p.name.endswith(METADATA_SUFFIX)
        ]

    async def sweep(self, profile: str = "lab", now: Optional[float] = None) -> SweepResult:
        """
        Enforce a retention profile: keep at most ``max_items`` newest
        artifacts and drop anything older than ``max_age_days``.
        Unknown profiles use ``lab``.
        """
        policy = RETENTION_PROFILES.get(profile, RETENTION_PROFILES["lab"])
        now = time.time() if now is None else now
        max_age_s = policy.max_age_days * 86400

        entries = []
        for path in self._list_images():
            try:
                entries.append((path, path.stat().st_mtime))
            except FileNotFoundError:
                continue
        entries.sort(key=lambda e: e[1], reverse=True)

        removed = 0
        for position, (path, mtime) in enumerate(entries):
            if position >= policy.max_items or now - mtime > max_age_s:
                try:
                    path.unlink()
                    Path(str(path) + METADATA_SUFFIX).unlink(missing_ok=True)
                    removed += 1
                except OSError as e:
                    logger.warning("artifact_sweep_unlink_failed", path=str(path), error=str(e))

        result = SweepResult(removed=removed, remaining=len(entries) - removed, profile=profile)
        if removed:
            logger.info("artifact_sweep", removed=removed, remaining=result.remaining, profile=profile)
        return result

    async def stats(self) -> Dict[str, Any]:
        images = self._list_images()
        total = 0
        for path in images:
            try:
                total += path.stat().st_size
            except FileNotFoundError:
                continue
        return {
            "count": len(images),
            "total_size_mb": round(total / (1024 * 1024), 1),
            "path": str(self._base_path),
        }


# Global instance
_artifact_storage: Optional[ArtifactStorage] = None


def get_artifact_storage() -> ArtifactStorage:
    """Get the global artifact storage instance."""
    global _artifact_storage
    if _artifact_storage is None:
        from tandem.app.settings import get_settings

        settings = get_settings()
        _artifact_storage = ArtifactStorage(
            settings.artifact_storage_path,
            max_size_mb=settings.artifact_max_size_mb,
        )
    return _artifact_storage
