############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# test_artifact_storage.py: Unit tests for artifact storage and retention sweeps
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Unit tests for ArtifactStorage."""

import hashlib
import os
import time

import pytest

from tandem.app.storage import RETENTION_PROFILES, ArtifactStorage, RetentionPolicy


@pytest.fixture
def storage(tmp_path):
    return ArtifactStorage(str(tmp_path / "vision"), max_size_mb=1)


def _age(storage, artifact, days, now):
    path = storage.resolve(artifact.path)
    mtime = now - days * 86400
    os.utime(path, (mtime, mtime))


class TestSave:
    @pytest.mark.asyncio
    async def test_save_and_retrieve(self, storage):
        artifact = await storage.save(b"png-bytes", {"seed": 42})

        assert artifact.content_hash == hashlib.sha256(b"png-bytes").hexdigest()
        assert artifact.path.endswith(".png")
        assert artifact.path.split("/")[3] == artifact.content_hash[:4]
        assert await storage.retrieve(artifact.path) == b"png-bytes"
        meta = await storage.metadata(artifact.path)
        assert meta["metadata"]["seed"] == 42
        assert meta["content_hash"] == artifact.content_hash

    @pytest.mark.asyncio
    async def test_same_bytes_get_distinct_paths(self, storage):
        first = await storage.save(b"same")
        second = await storage.save(b"same")
        assert first.path != second.path

    @pytest.mark.asyncio
    async def test_oversized_rejected(self, storage):
        with pytest.raises(ValueError):
            await storage.save(b"x" * (1024 * 1024 + 1))

    @pytest.mark.asyncio
    async def test_missing_returns_none(self, storage):
        assert await storage.retrieve("2026/01/01/abcd/nope.png") is None
        assert await storage.metadata("2026/01/01/abcd/nope.png") is None

    def test_path_escape_rejected(self, storage):
        with pytest.raises(ValueError):
            storage.resolve("../../etc/passwd")

    @pytest.mark.asyncio
    async def test_delete(self, storage):
        artifact = await storage.save(b"gone soon")

        assert await storage.delete(artifact.path) is True
        assert await storage.retrieve(artifact.path) is None
        assert await storage.delete(artifact.path) is False


class TestSweep:
    """Retention keeps the newest max_items and drops anything too old."""

    @pytest.mark.asyncio
    async def test_age_limit(self, storage):
        now = time.time()
        fresh = await storage.save(b"fresh")
        stale = await storage.save(b"stale")
        _age(storage, fresh, 1, now)
        _age(storage, stale, 8, now)

        result = await storage.sweep("lab", now=now)

        assert result.removed == 1
        assert result.remaining == 1
        assert await storage.retrieve(stale.path) is None
        assert await storage.metadata(stale.path) is None
        assert await storage.retrieve(fresh.path) == b"fresh"

    @pytest.mark.asyncio
    async def test_enterprise_keeps_older(self, storage):
        now = time.time()
        artifact = await storage.save(b"month old")
        _age(storage, artifact, 30, now)

        result = await storage.sweep("enterprise", now=now)

        assert result.removed == 0

    @pytest.mark.asyncio
    async def test_item_limit_keeps_newest(self, storage, monkeypatch):
        monkeypatch.setitem(RETENTION_PROFILES, "lab", RetentionPolicy(max_items=2, max_age_days=7))
        now = time.time()
        saved = []
        for i in range(4):
            artifact = await storage.save(f"image-{i}".encode())
            _age(storage, artifact, (4 - i) / 24, now)
            saved.append(artifact)

        result = await storage.sweep("lab", now=now)

        assert result.removed == 2
        assert await storage.retrieve(saved[0].path) is None
        assert await storage.retrieve(saved[3].path) == b"image-3"

    @pytest.mark.asyncio
    async def test_unknown_profile_uses_lab(self, storage):
        result = await storage.sweep("nonexistent")
        assert result.profile == "nonexistent"
        assert result.removed == 0

    @pytest.mark.asyncio
    async def test_stats(self, storage):
        await storage.save(b"a" * 2048)

        stats = await storage.stats()

        assert stats["count"] == 1
        assert stats["path"] == str(storage.base_path)
