"""
Session management for the gateway.

Handles:
- Session source tracking (where messages come from)
- Conversation key derivation (one key per agent/platform/chat)
- Engine session persistence (resume ids survive restarts)
- Transcripts for engines that replay history
"""

import logging
import json
import uuid
from pathlib import Path
from datetime import datetime
from dataclasses import dataclass
from typing import Dict, List, Optional, Any

from .config import Platform

logger = logging.getLogger(__name__)


@dataclass
class SessionSource:
    """
    Describes where a message originated from.

    This information is used to:
    1. Derive the conversation key
    2. Route responses back to the right place
    3. Track origin for cron job delivery
    """
    platform: Platform
    chat_id: str
    chat_name: Optional[str] = None
    chat_type: str = "dm"  # "dm", "group", "channel"
    user_id: Optional[str] = None
    user_name: Optional[str] = None

    @property
    def is_group(self) -> bool:
        return self.chat_type != "dm"

    @property
    def description(self) -> str:
        """Human-readable description of the source."""
        if self.platform == Platform.LOCAL:
            return "CLI terminal"
        if self.chat_type == "dm":
            return f"DM with {self.user_name or self.user_id or 'user'}"
        return f"{self.chat_type}: {self.chat_name or self.chat_id}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "platform": self.platform.value,
            "chat_id": self.chat_id,
            "chat_name": self.chat_name,
            "chat_type": self.chat_type,
            "user_id": self.user_id,
            "user_name": self.user_name,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionSource":
        return cls(
            platform=Platform(data["platform"]),
            chat_id=str(data["chat_id"]),
            chat_name=data.get("chat_name"),
            chat_type=data.get("chat_type", "dm"),
            user_id=data.get("user_id"),
            user_name=data.get("user_name"),
        )


def _key_part(value: Any, fallback: str) -> str:
    """Render one key component; ':' is escaped so components never merge."""
    try:
        text = str(value).strip() if value is not None else ""
    except Exception:
        text = ""
    if not text:
        return fallback
    return text.replace("%", "%25").replace(":", "%3A")


def build_session_key(agent_id: Any, platform: Any, source: Any) -> str:
    """
    Derive the conversation key for a message source.

    Format: ``agent:<agent_id>:<platform>:<dm|group|channel>:<chat_id>``.
    Pure function of its inputs and never raises: malformed sources still
    produce a deterministic (if degenerate) key so message delivery is never
    blocked by key derivation.
    """
    if isinstance(platform, Platform):
        platform = platform.value
    chat_id = getattr(source, "chat_id", None)
    chat_type = getattr(source, "chat_type", None)
    if chat_id is None and isinstance(source, dict):
        chat_id = source.get("chat_id")
        chat_type = source.get("chat_type")
    if chat_id is None and isinstance(source, (str, int)):
        chat_id = source
    return ":".join((
        "agent",
        _key_part(agent_id, "default"),
        _key_part(platform, "unknown"),
        _key_part(chat_type, "dm"),
        _key_part(chat_id, "unknown"),
    ))


@dataclass
class SessionEntry:
    """
    Entry in the session store.

    Maps a conversation key to the engine's resumable session id.
    """
    session_key: str
    session_id: Optional[str]
    created_at: datetime
    updated_at: datetime

    # Origin metadata for delivery routing
    origin: Optional[SessionSource] = None
    run_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "session_key": self.session_key,
            "session_id": self.session_id,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
            "run_count": self.run_count,
        }
        if self.origin:
            result["origin"] = self.origin.to_dict()
        return result

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "SessionEntry":
        origin = None
        if data.get("origin"):
            try:
                origin = SessionSource.from_dict(data["origin"])
            except (KeyError, ValueError):
                origin = None

        return cls(
            session_key=data["session_key"],
            session_id=data.get("session_id"),
            created_at=datetime.fromisoformat(data["created_at"]),
            updated_at=datetime.fromisoformat(data["updated_at"]),
            origin=origin,
            run_count=data.get("run_count", 0),
        )


class SessionStore:
    """
    Manages session storage and retrieval.

    The index (conversation key -> engine session id) lives in
    ``sessions.json``; transcripts are JSONL files named after the session id.
    """

    def __init__(self, sessions_dir: Path):
        self.sessions_dir = Path(sessions_dir)
        self._entries: Dict[str, SessionEntry] = {}
        self._loaded = False

    def _ensure_loaded(self) -> None:
        """Load sessions index from disk if not already loaded."""
        if self._loaded:
            return

        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        sessions_file = self.sessions_dir / "sessions.json"

        if sessions_file.exists():
            try:
                with open(sessions_file, "r", encoding="utf-8") as f:
                    data = json.load(f)
                for key, entry_data in data.items():
                    self._entries[key] = SessionEntry.from_dict(entry_data)
            except Exception as e:
                logger.warning("Failed to load sessions: %s", e)

        self._loaded = True

    def _save(self) -> None:
        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        sessions_file = self.sessions_dir / "sessions.json"

        data = {key: entry.to_dict() for key, entry in self._entries.items()}
        with open(sessions_file, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2)

    def get(self, session_key: str) -> Optional[SessionEntry]:
        self._ensure_loaded()
        return self._entries.get(session_key)

    def get_or_create(self, session_key: str, origin: Optional[SessionSource] = None) -> SessionEntry:
        """Get the entry for a conversation, creating an empty one on first contact."""
        self._ensure_loaded()

        entry = self._entries.get(session_key)
        if entry is None:
            now = datetime.now()
            entry = SessionEntry(
                session_key=session_key,
                session_id=None,
                created_at=now,
                updated_at=now,
                origin=origin,
            )
            self._entries[session_key] = entry
            self._save()
        elif origin is not None and entry.origin is None:
            entry.origin = origin
            self._save()
        return entry

    def get_session_id(self, session_key: str) -> Optional[str]:
        """Engine session id to resume for this conversation, if any."""
        entry = self.get(session_key)
        return entry.session_id if entry else None

    def set_session_id(self, session_key: str, session_id: str) -> None:
        """Record the engine session id reported for a conversation."""
        entry = self.get_or_create(session_key)
        if entry.session_id != session_id:
            logger.info("Session %s bound to engine session %s", session_key, session_id)
        entry.session_id = session_id
        entry.updated_at = datetime.now()
        self._save()

    def touch(self, session_key: str) -> None:
        """Update a session's metadata after a completed run."""
        entry = self.get(session_key)
        if entry is None:
            return
        entry.updated_at = datetime.now()
        entry.run_count += 1
        self._save()

    def reset_session(self, session_key: str) -> bool:
        """Forget the engine session so the next run starts fresh."""
        self._ensure_loaded()

        entry = self._entries.get(session_key)
        if entry is None or entry.session_id is None:
            return False
        entry.session_id = None
        entry.updated_at = datetime.now()
        self._save()
        return True

    def list_sessions(self) -> List[SessionEntry]:
        self._ensure_loaded()
        entries = list(self._entries.values())
        entries.sort(key=lambda e: e.updated_at, reverse=True)
        return entries

    @staticmethod
    def new_session_id() -> str:
        now = datetime.now()
        return f"{now.strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:8]}"

    def get_transcript_path(self, session_id: str) -> Path:
        return self.sessions_dir / f"{session_id}.jsonl"

    def append_to_transcript(self, session_id: str, message: Dict[str, Any]) -> None:
        """Append a message to a session's transcript."""
        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        with open(self.get_transcript_path(session_id), "a", encoding="utf-8") as f:
            f.write(json.dumps(message, ensure_ascii=False) + "\n")

    def load_transcript(self, session_id: str) -> List[Dict[str, Any]]:
        """Load all messages from a session's transcript."""
        transcript_path = self.get_transcript_path(session_id)
        if not transcript_path.exists():
            return []

        messages = []
        with open(transcript_path, "r", encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    messages.append(json.loads(line))
                except json.JSONDecodeError:
                    logger.debug("Skipping corrupt transcript line in %s", transcript_path)
        return messages
