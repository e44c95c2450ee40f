############################################################
#
# tandem - Shared-Accelerator Inference Scheduler
#
# sessions.py: Session store for turn history and spec continuity
#
# Luke Sheneman
# Research Computing and Data Services (RCDS)
# Institute for Interdisciplinary Data Sciences (IIDS)
# University of Idaho
# sheneman@uidaho.edu
#
############################################################

"""Session store: prior turns for chat context and the last GenerationSpec for edits."""

import asyncio
import re
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

import aiofiles
from pydantic import BaseModel, Field

from tandem.app.logging_config import get_logger

logger = get_logger(__name__)

_SESSION_ID = re.compile(r"^[A-Za-z0-9_-]{1,128}$")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Turn(BaseModel):
    role: str
    content: str
    timestamp: datetime = Field(default_factory=_utcnow)


class GenerationRecord(BaseModel):
    """One image generation. ``superseded`` once a later edit replaced its spec."""

    prompt: str
    spec: Dict[str, Any]
    seed: Optional[int] = None
    artifact_path: Optional[str] = None
    passed: Optional[bool] = None
    timestamp: datetime = Field(default_factory=_utcnow)
    superseded: bool = False


class SessionState(BaseModel):
    session_id: str
    turns: List[Turn] = Field(default_factory=list)
    last_generation: Optional[GenerationRecord] = None
    history: List[GenerationRecord] = Field(default_factory=list)
    updated_at: datetime = Field(default_factory=_utcnow)

    @property
    def last_spec(self) -> Optional[Dict[str, Any]]:
        return self.last_generation.spec if self.last_generation else None


class SessionStore:
    """JSON-file session store, one file per session."""

    def __init__(self, base_path: str, max_turns: int = 200):
        self._base_path = Path(base_path)
        self._max_turns = max_turns
        self._locks: Dict[str, asyncio.Lock] = {}

    async def initialize(self) -> None:
        self._base_path.mkdir(parents=True, exist_ok=True)
        logger.info("session_store_initialized", path=str(self._base_path))

    def _path(self, session_id: str) -> Path:
        if not _SESSION_ID.match(session_id or ""):
            raise ValueError(f"Invalid session id: {session_id!r}")
        return self._base_path / f"{session_id}.json"

    def _lock(self, session_id: str) -> asyncio.Lock:
        lock = self._locks.get(session_id)
        if lock is None:
            lock = self._locks[session_id] = asyncio.Lock()
        return lock

    async def load(self, session_id: str) -> Optional[SessionState]:
        """Load a session; None if it does not exist or is unreadable."""
        path = self._path(session_id)
        if not path.is_file():
            return None
        try:
            async with aiofiles.open(path, "r") as f:
                return SessionState.model_validate_json(await f.read())
        except (OSError, ValueError) as e:
            logger.warning("session_load_failed", session_id=session_id, error=str(e))
            return None

    async def _write(self, state: SessionState) -> None:
        path = self._path(state.session_id)
        path.parent.mkdir(parents=True, exist_ok=True)
        state.updated_at = _utcnow()
        tmp_path = path.with_suffix(".json.tmp")
        async with aiofiles.open(tmp_path, "w") as f:
            await f.write(state.model_dump_json(indent=2))
        tmp_path.replace(path)

    async def save(self, state: SessionState) -> None:
        async with self._lock(state.session_id):
            await self._write(state)

    async def recent_turns(self, session_id: str, limit: int) -> List[Dict[str, str]]:
        """The last ``limit`` turns as chat messages."""
        state = await self.load(session_id)
        if state is None or limit <= 0:
            return []
        return [{"role": t.role, "content": t.content} for t in state.turns[-limit:]]

    async def append_turns(self, session_id: str, turns: List[Dict[str, str]]) -> None:
        async with self._lock(session_id):
            state = await self.load(session_id) or SessionState(session_id=session_id)
            state.turns.extend(Turn(role=t["role"], content=t["content"]) for t in turns)
            if len(state.turns) > self._max_turns:
                state.turns = state.turns[-self._max_turns:]
            await self._write(state)

    async def record_generation(self, session_id: str, record: GenerationRecord) -> SessionState:
        """Make ``record`` the current generation; the previous one moves to history."""
        async with self._lock(session_id):
            state = await self.load(session_id) or SessionState(session_id=session_id)
            if state.last_generation is not None:
                previous = state.last_generation.model_copy(update={"superseded": True})
                state.history.append(previous)
            state.last_generation = record
            await self._write(state)
            return state


# Global instance
_session_store: Optional[SessionStore] = None


def get_session_store() -> SessionStore:
    """Get the global session store instance."""
    global _session_store
    if _session_store is None:
        from tandem.app.settings import get_settings

        _session_store = SessionStore(get_settings().session_storage_path)
    return _session_store
