"""
SessionStore - persist LifecycleSessions between transitions.

The orchestrator holds no state across process restarts except the
in-flight session. Snapshots are written after every transition so a
session can be resumed from its last recorded phase.

Storage backends:
- In-memory (for testing)
- File-based: one JSON document per session
"""

import copy
import json
import os
import random
import time
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

from deplorch.errors import SessionNotFoundError
from deplorch.schemas import LifecycleSession


def generate_ulid() -> str:
    """
    Generate a ULID (Universally Unique Lexicographically Sortable Identifier).

    ULIDs are 26 characters, encoding:
    - 48 bits of timestamp (milliseconds since Unix epoch)
    - 80 bits of randomness
    """
    # Crockford's Base32 alphabet (excludes I, L, O, U)
    ALPHABET = "0123456789ABCDEFGHJKMNPQRSTVWXYZ"

    timestamp_ms = int(time.time() * 1000)
    timestamp_chars = []
    for _ in range(10):
        timestamp_chars.append(ALPHABET[timestamp_ms & 0x1F])
        timestamp_ms >>= 5
    timestamp_part = "".join(reversed(timestamp_chars))

    random_part = "".join(random.choice(ALPHABET) for _ in range(16))

    return timestamp_part + random_part


class SessionStore(ABC):
    """
    Abstract base class for session storage.
    """

    @abstractmethod
    def save(self, session: LifecycleSession) -> None:
        """
        Store or replace a session snapshot.

        Args:
            session: The session to persist
        """
        pass

    @abstractmethod
    def get(self, session_id: str) -> Optional[LifecycleSession]:
        """
        Retrieve a session by ID.

        Returns:
            The LifecycleSession if found, None otherwise
        """
        pass

    @abstractmethod
    def list_sessions(self) -> list[LifecycleSession]:
        """Return all stored sessions, oldest first."""
        pass

    @abstractmethod
    def delete(self, session_id: str) -> None:
        """Remove a session (no-op if missing)."""
        pass

    def load(self, session_id: str) -> LifecycleSession:
        """
        Retrieve a session by ID or raise.

        Raises:
            SessionNotFoundError: If no session has that id
        """
        session = self.get(session_id)
        if session is None:
            raise SessionNotFoundError(f"Session not found: {session_id}")
        return session

    def active_for(self, workspace: str) -> list[LifecycleSession]:
        """Non-terminal sessions for a workspace."""
        return [s for s in self.list_sessions() if s.workspace == workspace and not s.is_terminal]


class InMemorySessionStore(SessionStore):
    """
    In-memory implementation of SessionStore for testing.

    Sessions are deep-copied on the way in and out so callers cannot mutate
    a stored snapshot.
    """

    def __init__(self):
        self._sessions: dict[str, LifecycleSession] = {}

    def save(self, session: LifecycleSession) -> None:
        self._sessions[session.session_id] = copy.deepcopy(session)

    def get(self, session_id: str) -> Optional[LifecycleSession]:
        session = self._sessions.get(session_id)
        return copy.deepcopy(session) if session is not None else None

    def list_sessions(self) -> list[LifecycleSession]:
        return [copy.deepcopy(s) for s in sorted(self._sessions.values(), key=lambda s: s.created_at)]

    def delete(self, session_id: str) -> None:
        self._sessions.pop(session_id, None)

    def clear(self) -> None:
        """Clear all stored data (for testing)."""
        self._sessions.clear()


class FileSessionStore(SessionStore):
    """
    File-based implementation of SessionStore.

    Layout:
        store_dir/
            {session_id}.json

    Writes go to a temporary file first and are renamed into place, so a
    crash mid-write leaves the previous snapshot intact.
    """

    def __init__(self, store_dir: Path | str):
        self._store_dir = Path(store_dir).expanduser()
        self._store_dir.mkdir(parents=True, exist_ok=True)

    def _path(self, session_id: str) -> Path:
        return self._store_dir / f"{session_id}.json"

    def save(self, session: LifecycleSession) -> None:
        path = self._path(session.session_id)
        tmp_path = path.with_suffix(".json.tmp")
        with open(tmp_path, "w") as f:
            json.dump(session.to_dict(), f, indent=2)
        os.replace(tmp_path, path)

    def get(self, session_id: str) -> Optional[LifecycleSession]:
        path = self._path(session_id)
        if not path.exists():
            return None
        with open(path) as f:
            data = json.load(f)
        return LifecycleSession.from_dict(data)

    def list_sessions(self) -> list[LifecycleSession]:
        sessions = []
        for path in sorted(self._store_dir.glob("*.json")):
            with open(path) as f:
                sessions.append(LifecycleSession.from_dict(json.load(f)))
        return sorted(sessions, key=lambda s: s.created_at)

    def delete(self, session_id: str) -> None:
        path = self._path(session_id)
        if path.exists():
            path.unlink()
