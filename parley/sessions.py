from __future__ import annotations

import logging
import uuid
from datetime import datetime
from pathlib import Path

from pydantic import ValidationError

from parley.models import ChatSession, SessionMessage

logger = logging.getLogger(__name__)


class SessionStore:
    """Chat transcripts as one JSON file per session. Only user/assistant turns are kept."""

    def __init__(self, directory: Path) -> None:
        self.directory = directory
        self.current: ChatSession | None = None

    def _path(self, session_id: str) -> Path:
        return self.directory / f"{session_id}.json"

    def create(self, name: str, character_name: str = "", character_file: str = "") -> ChatSession:
        session = ChatSession(
            id=uuid.uuid4().hex,
            name=name,
            character_name=character_name or "Assistant",
            character_file=character_file,
        )
        self.current = session
        self.save()
        return session

    def list_sessions(self) -> list[ChatSession]:
        """All readable sessions, newest first."""
        if not self.directory.exists():
            return []
        sessions = []
        for file in self.directory.glob("*.json"):
            try:
                sessions.append(ChatSession.model_validate_json(file.read_text(encoding="utf-8")))
            except (OSError, ValidationError) as e:
                logger.warning("Could not load session from %s: %s", file, e)
        return sorted(sessions, key=lambda s: s.last_modified, reverse=True)

    def for_character(self, character_name: str) -> list[ChatSession]:
        return [s for s in self.list_sessions() if s.character_name.lower() == character_name.lower()]

    def latest_for_character(self, character_name: str) -> ChatSession | None:
        sessions = self.for_character(character_name)
        return sessions[0] if sessions else None

    def load(self, session_id: str) -> ChatSession | None:
        path = self._path(session_id)
        if not path.exists():
            return None
        try:
            session = ChatSession.model_validate_json(path.read_text(encoding="utf-8"))
        except (OSError, ValidationError) as e:
            logger.error("Error loading session %s: %s", session_id, e)
            return None
        self.current = session
        return session

    def save(self) -> None:
        if self.current is None:
            return
        self.current.last_modified = datetime.now()
        self.directory.mkdir(parents=True, exist_ok=True)
        self._path(self.current.id).write_text(
            self.current.model_dump_json(indent=2), encoding="utf-8"
        )

    def record(self, role: str, content: str) -> None:
        """Append a turn to the current session and save it."""
        if self.current is None or role not in ("user", "assistant"):
            return
        self.current.messages.append(SessionMessage(role=role, content=content))
        self.save()

    def delete(self, session_id: str) -> bool:
        path = self._path(session_id)
        if not path.exists():
            return False
        path.unlink()
        if self.current is not None and self.current.id == session_id:
            self.current = None
        return True
