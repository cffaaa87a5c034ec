import json
import logging
import random
import string
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Iterable, List, Optional

from sahay.config import DOMAINS
from sahay.errors import SessionNotFound, StorageError

logger = logging.getLogger(__name__)

MAX_SESSIONS_PER_DOMAIN = 50
TITLE_MAX_CHARS = 40
ROLES = ("system", "user", "assistant")


# ============================================
# DATA MODELS
# ============================================

@dataclass
class Message:
    id: int
    role: str  # "system", "user" or "assistant"
    content: str
    created_at: datetime = field(default_factory=datetime.now)
    is_voice_origin: bool = False

    def to_dict(self) -> dict:
        out = {
            "id": int(self.id),
            "type": self.role,
            "content": self.content,
            "timestamp": self.created_at.isoformat(),
        }
        if self.is_voice_origin:
            out["isVoice"] = True
        return out

    @classmethod
    def from_dict(cls, data: dict) -> "Message":
        role = str(data.get("type") or data.get("role") or "user").strip().lower()
        if role not in ROLES:
            role = "user"
        return cls(
            id=int(data["id"]),
            role=role,
            content=str(data.get("content") or ""),
            created_at=_parse_ts(data.get("timestamp")),
            is_voice_origin=bool(data.get("isVoice", False)),
        )


@dataclass
class ChatSession:
    id: str
    domain: str
    title: str
    language: str
    messages: List[Message] = field(default_factory=list)
    created_at: datetime = field(default_factory=datetime.now)
    updated_at: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "domain": self.domain,
            "title": self.title,
            # System instructions are rebuilt per turn, never stored.
            "messages": [m.to_dict() for m in self.messages if m.role != "system"],
            "createdAt": self.created_at.isoformat(),
            "updatedAt": self.updated_at.isoformat(),
            "language": self.language,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ChatSession":
        messages: list[Message] = []
        for m in data.get("messages", []) or []:
            if not isinstance(m, dict):
                continue
            try:
                messages.append(Message.from_dict(m))
            except (KeyError, TypeError, ValueError):
                continue
        return cls(
            id=str(data["id"]),
            domain=str(data.get("domain") or data.get("service") or "general"),
            title=str(data.get("title") or ""),
            language=str(data.get("language") or "auto"),
            messages=messages,
            created_at=_parse_ts(data.get("createdAt")),
            updated_at=_parse_ts(data.get("updatedAt")),
        )

    def next_message_id(self) -> int:
        return next_message_id(self.messages)


def _parse_ts(value: object) -> datetime:
    if isinstance(value, datetime):
        return value
    if isinstance(value, str) and value.strip():
        s = value.strip()
        # Older files were written by a JS runtime ("...Z").
        if s.endswith("Z"):
            s = s[:-1] + "+00:00"
        try:
            ts = datetime.fromisoformat(s)
        except ValueError:
            return datetime.now()
        if ts.tzinfo is not None:
            ts = ts.astimezone().replace(tzinfo=None)
        return ts
    return datetime.now()


def next_message_id(messages: Iterable[Message]) -> int:
    return max((int(m.id) for m in messages), default=0) + 1


def generate_session_id() -> str:
    suffix = "".join(random.choices(string.ascii_lowercase + string.digits, k=9))
    return f"{int(time.time() * 1000)}_{suffix}"


def generate_title(first_message: str, *, max_len: int = TITLE_MAX_CHARS) -> str:
    text = " ".join((first_message or "").split())
    if len(text) <= max_len:
        return text
    return text[: max_len - 3] + "..."


def _touch(session: ChatSession) -> None:
    # updatedAt must move forward on every persisted mutation, even within one clock tick.
    now = datetime.now()
    if now <= session.updated_at:
        now = session.updated_at + timedelta(microseconds=1)
    session.updated_at = now


# ============================================
# SESSION PERSISTENCE
# ============================================

class SessionStore:
    """
    Per-domain chat history. Each domain is one bounded JSON collection
    (`<root>/<domain>_chats.json`), kept most-recently-updated first and capped
    at `max_sessions` entries. Every mutation is a read-modify-write of the whole
    collection under that domain's lock.
    """

    def __init__(self, root: Path, *, max_sessions: int = MAX_SESSIONS_PER_DOMAIN):
        self.root = Path(root)
        self.max_sessions = int(max(1, max_sessions))
        self._locks = {d: threading.Lock() for d in DOMAINS}

    @staticmethod
    def _check_domain(domain: str) -> str:
        d = (domain or "").strip().lower()
        if d not in DOMAINS:
            raise ValueError(f"Unknown domain: {domain!r}")
        return d

    def _path(self, domain: str) -> Path:
        return self.root / f"{domain}_chats.json"

    def _read(self, domain: str) -> list[ChatSession]:
        path = self._path(domain)
        if not path.is_file():
            return []
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except OSError as e:
            raise StorageError(f"Failed to read {path.name}: {e}", operation="read", domain=domain) from e
        except ValueError as e:
            raise StorageError(f"Malformed chat file {path.name}: {e}", operation="read", domain=domain) from e
        if not isinstance(data, list):
            raise StorageError(f"Malformed chat file {path.name}: expected a list", operation="read", domain=domain)

        sessions: list[ChatSession] = []
        for raw in data:
            if not isinstance(raw, dict):
                continue
            try:
                sessions.append(ChatSession.from_dict(raw))
            except (KeyError, TypeError, ValueError):
                logger.warning("Skipping unreadable chat entry in %s", path.name)
                continue
        return sessions

    def _write(self, domain: str, sessions: list[ChatSession]) -> None:
        path = self._path(domain)
        bounded = sessions[: self.max_sessions]
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(path.suffix + ".tmp")
            tmp_path.write_text(json.dumps([s.to_dict() for s in bounded], ensure_ascii=False), encoding="utf-8")
            tmp_path.replace(path)
        except OSError as e:
            logger.exception("Failed to save chats for %s", domain)
            raise StorageError(f"Failed to write {path.name}: {e}", operation="write", domain=domain) from e
        evicted = len(sessions) - len(bounded)
        if evicted > 0:
            logger.info("Evicted %s old chat(s) from %s", evicted, domain)

    @staticmethod
    def _index_of(sessions: list[ChatSession], session_id: str) -> int:
        for i, s in enumerate(sessions):
            if s.id == session_id:
                return i
        return -1

    def create(self, domain: str, first_message_text: str, language: str) -> ChatSession:
        d = self._check_domain(domain)
        now = datetime.now()
        session = ChatSession(
            id=generate_session_id(),
            domain=d,
            title=generate_title(first_message_text),
            language=(language or "auto"),
            messages=[],
            created_at=now,
            updated_at=now,
        )
        with self._locks[d]:
            sessions = self._read(d)
            sessions.insert(0, session)
            self._write(d, sessions)
        logger.info("Chat created for %s: %s", d, session.id)
        return session

    def save(self, session: ChatSession) -> None:
        """Insert or replace a whole session and make it most recent."""
        d = self._check_domain(session.domain)
        with self._locks[d]:
            sessions = self._read(d)
            idx = self._index_of(sessions, session.id)
            if idx >= 0:
                sessions.pop(idx)
            _touch(session)
            sessions.insert(0, session)
            self._write(d, sessions)

    def append(self, domain: str, session_id: str, messages: Iterable[Message]) -> ChatSession:
        """
        Merge messages into a stored session by id: unknown ids are appended in order,
        known ids are replaced. The session becomes the most recent one.
        """
        d = self._check_domain(domain)
        with self._locks[d]:
            sessions = self._read(d)
            idx = self._index_of(sessions, session_id)
            if idx < 0:
                raise SessionNotFound(f"Chat {session_id} not found", operation="append", domain=d, session_id=session_id)
            session = sessions.pop(idx)

            by_id = {m.id: i for i, m in enumerate(session.messages)}
            for m in messages:
                if m.role == "system":
                    continue
                pos = by_id.get(m.id)
                if pos is None:
                    by_id[m.id] = len(session.messages)
                    session.messages.append(m)
                else:
                    session.messages[pos] = m

            _touch(session)
            sessions.insert(0, session)
            self._write(d, sessions)
        return session

    def list(self, domain: str) -> List[ChatSession]:
        d = self._check_domain(domain)
        with self._locks[d]:
            sessions = self._read(d)
        # Stable sort keeps write order for equal timestamps.
        return sorted(sessions, key=lambda s: s.updated_at, reverse=True)

    def get(self, domain: str, session_id: str) -> ChatSession:
        d = self._check_domain(domain)
        with self._locks[d]:
            sessions = self._read(d)
        idx = self._index_of(sessions, session_id)
        if idx < 0:
            raise SessionNotFound(f"Chat {session_id} not found", operation="get", domain=d, session_id=session_id)
        return sessions[idx]

    def find(self, domain: str, session_id: str) -> Optional[ChatSession]:
        try:
            return self.get(domain, session_id)
        except SessionNotFound:
            return None

    def delete(self, domain: str, session_id: str) -> None:
        d = self._check_domain(domain)
        with self._locks[d]:
            sessions = self._read(d)
            remaining = [s for s in sessions if s.id != session_id]
            if len(remaining) == len(sessions):
                return
            self._write(d, remaining)
        logger.info("Chat deleted for %s: %s", d, session_id)

    def clear(self, domain: str) -> None:
        d = self._check_domain(domain)
        path = self._path(d)
        with self._locks[d]:
            try:
                if path.is_file():
                    path.unlink()
            except OSError as e:
                raise StorageError(f"Failed to clear {path.name}: {e}", operation="clear", domain=d) from e
        logger.info("All chats cleared for %s", d)

    def search(self, domain: str, query: str) -> List[ChatSession]:
        q = (query or "").strip().casefold()
        sessions = self.list(domain)
        if not q:
            return sessions
        return [
            s
            for s in sessions
            if q in s.title.casefold() or any(q in m.content.casefold() for m in s.messages)
        ]
