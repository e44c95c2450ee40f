############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# test_accelerator_arbiter.py: Unit tests for accelerator lock arbitration
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Unit tests for AcceleratorArbiter."""

from unittest.mock import AsyncMock

import pytest

from tandem.app.core.arbiter import AcceleratorBusy, WorkloadClass


class TestAcquire:
    """First acquirer wins; everyone else is told who holds the lock."""

    @pytest.mark.asyncio
    async def test_acquire_free_accelerator(self, arbiter, audit):
        result = await arbiter.acquire("req-a", WorkloadClass.TEXT)

        assert result.acquired
        assert result.mode == "timeshare"
        assert not result.reentrant
        assert arbiter.holds_lock("req-a")
        assert audit.recent(1)[0].action == "gpu_acquire"

    @pytest.mark.asyncio
    async def test_second_requester_is_busy(self, arbiter, clock):
        await arbiter.acquire("req-a", WorkloadClass.TEXT)
        clock.advance(5)

        result = await arbiter.acquire("req-b", WorkloadClass.DIFFUSION)

        assert not result.acquired
        assert result.holder == "req-a"
        assert result.elapsed_ms == 5000
        assert "req-a" in result.reason
        assert arbiter.holds_lock("req-a")

    @pytest.mark.asyncio
    async def test_holder_reenters_without_eviction(self, arbiter):
        evictor = AsyncMock(return_value=["flux"])
        arbiter.register_evictor(WorkloadClass.DIFFUSION, evictor)
        await arbiter.acquire("req-a", WorkloadClass.TEXT)
        evictor.reset_mock()

        result = await arbiter.acquire("req-a", WorkloadClass.TEXT)

        assert result.acquired
        assert result.reentrant
        evictor.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_acquire_evicts_other_workload(self, arbiter):
        text_evictor = AsyncMock(return_value=["kuro-core"])
        diffusion_evictor = AsyncMock(return_value=["flux-schnell"])
        arbiter.register_evictor(WorkloadClass.TEXT, text_evictor)
        arbiter.register_evictor(WorkloadClass.DIFFUSION, diffusion_evictor)

        result = await arbiter.acquire("req-a", WorkloadClass.DIFFUSION)

        assert result.evicted == ["kuro-core"]
        text_evictor.assert_awaited_once()
        diffusion_evictor.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_failed_eviction_still_acquires(self, arbiter):
        arbiter.register_evictor(
            WorkloadClass.TEXT, AsyncMock(side_effect=RuntimeError("sidecar down"))
        )

        result = await arbiter.acquire("req-a", WorkloadClass.DIFFUSION)

        assert result.acquired
        assert result.evicted == []

    @pytest.mark.asyncio
    async def test_stale_lock_is_force_released(self, make_arbiter, clock, audit):
        arbiter = make_arbiter(lock_timeout_s=120)
        await arbiter.acquire("req-a", WorkloadClass.TEXT)
        clock.advance(121)

        result = await arbiter.acquire("req-b", WorkloadClass.DIFFUSION)

        assert result.acquired
        assert arbiter.holds_lock("req-b")
        forced = [r for r in audit.recent(50) if r.action == "gpu_force_release"]
        assert len(forced) == 1
        assert forced[0].metadata["request_id"] == "req-a"
        assert forced[0].metadata["forced_by"] == "req-b"

    @pytest.mark.asyncio
    async def test_lock_at_timeout_is_not_stale(self, make_arbiter, clock):
        arbiter = make_arbiter(lock_timeout_s=120)
        await arbiter.acquire("req-a", WorkloadClass.TEXT)
        clock.advance(120)

        result = await arbiter.acquire("req-b", WorkloadClass.TEXT)

        assert not result.acquired

    @pytest.mark.asyncio
    async def test_thermal_critical_denies_heavy(self, make_arbiter, snapshot_of):
        arbiter = make_arbiter(snapshot=snapshot_of(temperature_c=90.0))

        result = await arbiter.acquire("req-a", WorkloadClass.TEXT)

        assert not result.acquired
        assert result.reason.startswith("thermal_critical")
        assert not arbiter.is_locked()

    @pytest.mark.asyncio
    async def test_thermal_critical_allows_light(self, make_arbiter, snapshot_of):
        arbiter = make_arbiter(snapshot=snapshot_of(temperature_c=90.0))

        result = await arbiter.acquire("req-a", WorkloadClass.TEXT, heavy=False)

        assert result.acquired


class TestRelease:
    """Only the holder can release."""

    @pytest.mark.asyncio
    async def test_holder_releases(self, arbiter, clock):
        await arbiter.acquire("req-a", WorkloadClass.TEXT)
        clock.advance(2)

        result = arbiter.release("req-a")

        assert result.released
        assert result.held_ms == 2000
        assert not arbiter.is_locked()

    @pytest.mark.asyncio
    async def test_non_holder_release_is_noop(self, arbiter):
        await arbiter.acquire("req-a", WorkloadClass.TEXT)

        result = arbiter.release("req-b")

        assert not result.released
        assert result.reason == "not_lock_holder"
        assert arbiter.holds_lock("req-a")

    def test_release_when_unlocked(self, arbiter):
        result = arbiter.release("req-a")
        assert not result.released
        assert result.reason == "not_lock_holder"

    @pytest.mark.asyncio
    async def test_lock_status(self, arbiter, clock):
        assert arbiter.lock_status().to_dict()["locked"] is False

        await arbiter.acquire("req-a", WorkloadClass.DIFFUSION)
        clock.advance(1.5)
        status = arbiter.lock_status()

        assert status.locked
        assert status.holder == "req-a"
        assert status.workload == "diffusion"
        assert status.elapsed_ms == 1500


class TestLease:
    """``lease`` scopes a hold to a block."""

    @pytest.mark.asyncio
    async def test_lease_releases_on_exit(self, arbiter):
        async with arbiter.lease("req-a", WorkloadClass.DIFFUSION) as result:
            assert result.acquired
            assert arbiter.holds_lock("req-a")
        assert not arbiter.is_locked()

    @pytest.mark.asyncio
    async def test_lease_releases_on_error(self, arbiter):
        with pytest.raises(ValueError):
            async with arbiter.lease("req-a", WorkloadClass.DIFFUSION):
                raise ValueError("render failed")
        assert not arbiter.is_locked()

    @pytest.mark.asyncio
    async def test_lease_raises_when_busy(self, arbiter):
        await arbiter.acquire("req-a", WorkloadClass.TEXT)

        with pytest.raises(AcceleratorBusy) as exc_info:
            async with arbiter.lease("req-b", WorkloadClass.DIFFUSION):
                pass

        assert exc_info.value.result.holder == "req-a"
        assert arbiter.holds_lock("req-a")

    @pytest.mark.asyncio
    async def test_reentrant_lease_keeps_outer_hold(self, arbiter):
        await arbiter.acquire("req-a", WorkloadClass.TEXT)

        async with arbiter.lease("req-a", WorkloadClass.TEXT) as result:
            assert result.reentrant

        assert arbiter.holds_lock("req-a")


class TestRecommendModel:
    """Downgrade through the fallback chain when VRAM is short."""

    @pytest.mark.asyncio
    async def test_requested_fits(self, make_arbiter, snapshot_of):
        arbiter = make_arbiter(snapshot=snapshot_of(free_mb=25000))

        rec = await arbiter.recommend_model("kuro-core")

        assert rec.model == "kuro-core"
        assert rec.reason == "requested_fits"

    @pytest.mark.asyncio
    async def test_vram_downgrade(self, make_arbiter, snapshot_of):
        arbiter = make_arbiter(snapshot=snapshot_of(free_mb=9000))

        rec = await arbiter.recommend_model("kuro-core")

        assert rec.model == "kuro-scout"
        assert rec.reason == "vram_downgrade"
        assert rec.requested == "kuro-core"

    @pytest.mark.asyncio
    async def test_downgrade_to_last_in_chain(self, make_arbiter, snapshot_of):
        arbiter = make_arbiter(snapshot=snapshot_of(free_mb=1000))

        rec = await arbiter.recommend_model("kuro-core")

        assert rec.model == "kuro-embed"

    @pytest.mark.asyncio
    async def test_no_model_fits(self, make_arbiter, snapshot_of):
        arbiter = make_arbiter(snapshot=snapshot_of(free_mb=600))

        rec = await arbiter.recommend_model("kuro-core")

        assert rec.model is None
        assert rec.reason == "no_model_fits"
        assert rec.fit.deficit_mb == 20000 - 100

    @pytest.mark.asyncio
    async def test_loadable_models(self, make_arbiter, snapshot_of):
        arbiter = make_arbiter(snapshot=snapshot_of(free_mb=10500))

        table = await arbiter.loadable_models()

        assert table["available_mb"] == 10000
        assert table["models"]["kuro-logic"]["fits"] is True
        assert table["models"]["kuro-logic"]["headroom_mb"] == 0
        assert table["models"]["kuro-core"]["fits"] is False
