############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# test_session_store.py: Unit tests for chat turns and generation history
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Unit tests for SessionStore."""

import pytest

from tandem.app.storage import GenerationRecord, SessionStore


@pytest.fixture
def store(tmp_path):
    return SessionStore(str(tmp_path / "sessions"), max_turns=4)


class TestTurns:
    @pytest.mark.asyncio
    async def test_append_and_recent(self, store):
        await store.append_turns("s1", [
            {"role": "user", "content": "hi"},
            {"role": "assistant", "content": "hello"},
        ])
        await store.append_turns("s1", [{"role": "user", "content": "again"}])

        recent = await store.recent_turns("s1", limit=2)

        assert recent == [
            {"role": "assistant", "content": "hello"},
            {"role": "user", "content": "again"},
        ]

    @pytest.mark.asyncio
    async def test_turns_are_capped(self, store):
        for i in range(6):
            await store.append_turns("s1", [{"role": "user", "content": str(i)}])

        state = await store.load("s1")

        assert [t.content for t in state.turns] == ["2", "3", "4", "5"]

    @pytest.mark.asyncio
    async def test_unknown_session(self, store):
        assert await store.load("missing") is None
        assert await store.recent_turns("missing", limit=5) == []

    @pytest.mark.asyncio
    async def test_zero_limit(self, store):
        await store.append_turns("s1", [{"role": "user", "content": "hi"}])
        assert await store.recent_turns("s1", limit=0) == []

    @pytest.mark.asyncio
    @pytest.mark.parametrize("session_id", ["../escape", "has space", ""])
    async def test_invalid_session_id(self, store, session_id):
        with pytest.raises(ValueError):
            await store.load(session_id)

    @pytest.mark.asyncio
    async def test_corrupt_file_is_ignored(self, store, tmp_path):
        await store.initialize()
        (tmp_path / "sessions" / "bad.json").write_text("{not json")

        assert await store.load("bad") is None


class TestGenerations:
    @pytest.mark.asyncio
    async def test_previous_generation_superseded(self, store):
        await store.record_generation("s1", GenerationRecord(prompt="a fox", spec={"prompt": "a fox"}, seed=1))
        state = await store.record_generation(
            "s1", GenerationRecord(prompt="make it red", spec={"prompt": "a red fox"}, seed=2)
        )

        assert state.last_spec == {"prompt": "a red fox"}
        assert len(state.history) == 1
        assert state.history[0].superseded
        assert state.history[0].seed == 1

        reloaded = await store.load("s1")
        assert reloaded.last_generation.seed == 2
