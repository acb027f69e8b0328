"""
Session Store: where swarm sessions outlive the process.

The orchestrator keeps live sessions in memory and writes them through a
SessionStore after every state change. Two implementations ship:

  - InMemorySessionStore: deep copies in a dict; the default for tests and
    embedding callers.
  - JsonSessionStore: one ``<session_id>.json`` file per session under a
    directory, written atomically (temp file + rename) so a crash mid-write
    never leaves a truncated session behind.

Stores hold detached copies; mutating a session after put() does not change
what get() returns until the next put().
"""

from __future__ import annotations

import re
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import structlog
from pydantic import ValidationError as PydanticValidationError

from swarmcore.models import SwarmSession

logger = structlog.get_logger(__name__)

SESSION_ID_PATTERN = re.compile(r"^[A-Za-z0-9][A-Za-z0-9_-]{0,127}$")


class SessionStore(ABC):
    """Abstract persistence for SwarmSessions."""

    @abstractmethod
    async def get(self, session_id: str) -> Optional[SwarmSession]:
        """Return the stored session, or None."""

    @abstractmethod
    async def put(self, session: SwarmSession) -> None:
        """Insert or replace *session*."""

    @abstractmethod
    async def list_for_user(self, user_id: str) -> list[SwarmSession]:
        """Sessions owned by *user_id*, newest first."""

    @abstractmethod
    async def delete(self, session_id: str) -> bool:
        """Remove a session. Returns True if something was removed."""


class InMemorySessionStore(SessionStore):
    def __init__(self) -> None:
        self._sessions: dict[str, SwarmSession] = {}

    async def get(self, session_id: str) -> Optional[SwarmSession]:
        stored = self._sessions.get(session_id)
        return stored.snapshot() if stored else None

    async def put(self, session: SwarmSession) -> None:
        self._sessions[session.session_id] = session.snapshot()

    async def list_for_user(self, user_id: str) -> list[SwarmSession]:
        owned = [s.snapshot() for s in self._sessions.values() if s.user_id == user_id]
        owned.sort(key=lambda s: s.created_at, reverse=True)
        return owned

    async def delete(self, session_id: str) -> bool:
        return self._sessions.pop(session_id, None) is not None


class JsonSessionStore(SessionStore):
    """One JSON document per session in *sessions_dir*."""

    def __init__(self, sessions_dir: Path) -> None:
        self.sessions_dir = Path(sessions_dir)
        self._sessions_dir_resolved = self.sessions_dir.resolve()
        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        self._best_effort_chmod(self.sessions_dir, 0o700)

    async def get(self, session_id: str) -> Optional[SwarmSession]:
        path = self._path_for(session_id)
        if path is None or not path.exists():
            return None
        return self._read(path)

    async def put(self, session: SwarmSession) -> None:
        path = self._path_for(session.session_id)
        if path is None:
            raise ValueError(f"Unsafe session id: {session.session_id!r}")

        data = session.model_dump_json(indent=2)
        fd, tmp_path = tempfile.mkstemp(dir=str(self.sessions_dir), suffix=".tmp")
        try:
            with open(fd, "w", encoding="utf-8") as f:
                f.write(data)
            Path(tmp_path).replace(path)
        except Exception:
            Path(tmp_path).unlink(missing_ok=True)
            raise
        self._best_effort_chmod(path, 0o600)
        logger.debug("session_store.saved", session_id=session.session_id, status=session.status)

    async def list_for_user(self, user_id: str) -> list[SwarmSession]:
        owned: list[SwarmSession] = []
        for path in self.sessions_dir.glob("*.json"):
            session = self._read(path)
            if session is not None and session.user_id == user_id:
                owned.append(session)
        owned.sort(key=lambda s: s.created_at, reverse=True)
        return owned

    async def delete(self, session_id: str) -> bool:
        path = self._path_for(session_id)
        if path is None or not path.exists():
            return False
        path.unlink()
        logger.info("session_store.deleted", session_id=session_id)
        return True

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------

    def _path_for(self, session_id: str) -> Optional[Path]:
        if not SESSION_ID_PATTERN.fullmatch(session_id):
            return None
        path = (self.sessions_dir / f"{session_id}.json").resolve()
        try:
            path.relative_to(self._sessions_dir_resolved)
        except ValueError:
            return None
        return path

    @staticmethod
    def _read(path: Path) -> Optional[SwarmSession]:
        try:
            return SwarmSession.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, PydanticValidationError) as e:
            logger.warning("session_store.read_error", file=str(path), error=str(e))
            return None

    @staticmethod
    def _best_effort_chmod(path: Path, mode: int) -> None:
        """Attempt to harden permissions without failing on unsupported filesystems."""
        try:
            path.chmod(mode)
        except OSError:
            logger.debug("session_store.chmod_skipped", path=str(path), mode=oct(mode))
