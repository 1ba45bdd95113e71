from __future__ import annotations

import json
import threading
from datetime import datetime
from pathlib import Path
from typing import Callable, Dict, List, Optional

from authledger.logging import get_logger
from authledger.storage.common import normalize_email
from authledger.storage.errors import ConstraintViolation
from authledger.storage.models import Session, SessionState, User


class MemoryStore:
    """In-memory backing store persisted to a JSON file under ``fs_root``.

    Serves both the credential store (users) and the session ledger
    (sessions). Every mutation happens under one re-entrant lock so that the
    uniqueness checks on ``email`` and ``token_hash`` are atomic with the insert.
    """

    def __init__(self, fs_root: str = "/tmp/authledger") -> None:
        self.logger = get_logger(__name__)
        self.users: Dict[int, User] = {}
        self.sessions: Dict[int, Session] = {}
        # secondary indexes: normalized email -> user id, token hash -> session id
        self._email_index: Dict[str, int] = {}
        self._token_index: Dict[str, int] = {}
        self._user_id_seq: int = 1
        self._session_id_seq: int = 1
        # Thread lock for sequence counters to prevent race conditions
        self._seq_lock = threading.Lock()
        # RLock for all data operations to ensure thread safety
        self._data_lock = threading.RLock()
        self.fs_root = Path(fs_root)
        self.fs_root.mkdir(parents=True, exist_ok=True)

        if not self._load_state():
            self._persist_state()

    def _state_path(self) -> Path:
        state_dir = self.fs_root / "state"
        state_dir.mkdir(parents=True, exist_ok=True)
        return state_dir / "auth_store.json"

    @staticmethod
    def _serialize_datetime(dt: datetime) -> str:
        return dt.isoformat()

    @staticmethod
    def _deserialize_datetime(raw: str) -> datetime:
        return datetime.fromisoformat(raw)

    def _next_user_id(self) -> int:
        with self._seq_lock:
            value = self._user_id_seq
            self._user_id_seq += 1
            return value

    def _next_session_id(self) -> int:
        with self._seq_lock:
            value = self._session_id_seq
            self._session_id_seq += 1
            return value

    def _persist_or_undo(self, undo: Callable[[], None]) -> None:
        """Write the state file; if the write fails, revert the in-memory change."""
        try:
            self._persist_state()
        except OSError:
            undo()
            raise

    # users
    def create_user(self, email: str, password_hash: str) -> User:
        normalized = normalize_email(email)
        with self._data_lock:
            if normalized in self._email_index:
                raise ConstraintViolation("email already exists", {"field": "email"})
            user = User(
                id=self._next_user_id(),
                email=normalized,
                password_hash=password_hash,
            )
            self.users[user.id] = user
            self._email_index[normalized] = user.id

            def undo() -> None:
                self.users.pop(user.id, None)
                self._email_index.pop(normalized, None)

            self._persist_or_undo(undo)
            return user

    def get_user(self, user_id: int) -> Optional[User]:
        with self._data_lock:
            return self.users.get(user_id)

    def get_user_by_email(self, email: str) -> Optional[User]:
        with self._data_lock:
            user_id = self._email_index.get(normalize_email(email))
            return self.users.get(user_id) if user_id is not None else None

    def update_password_hash(self, user_id: int, password_hash: str) -> None:
        with self._data_lock:
            user = self.users.get(user_id)
            if not user:
                raise ConstraintViolation(
                    "user not found for credentials", {"field": "user_id", "user_id": user_id}
                )
            previous = user.password_hash
            user.password_hash = password_hash

            def undo() -> None:
                user.password_hash = previous

            self._persist_or_undo(undo)

    # sessions
    def create_session(
        self,
        user_id: int,
        token_hash: str,
        state: SessionState = SessionState.ACTIVE,
    ) -> Session:
        with self._data_lock:
            if user_id not in self.users:
                raise ConstraintViolation(
                    "user does not exist", {"field": "user_id", "user_id": user_id}
                )
            if token_hash in self._token_index:
                raise ConstraintViolation("token already recorded", {"field": "token_hash"})
            sess = Session(
                id=self._next_session_id(),
                user_id=user_id,
                token_hash=token_hash,
                state=SessionState(state),
            )
            self.sessions[sess.id] = sess
            self._token_index[token_hash] = sess.id

            def undo() -> None:
                self.sessions.pop(sess.id, None)
                self._token_index.pop(token_hash, None)

            self._persist_or_undo(undo)
            return sess

    def get_session(self, session_id: int) -> Optional[Session]:
        with self._data_lock:
            return self.sessions.get(session_id)

    def get_session_by_token(self, token_hash: str, user_id: int) -> Optional[Session]:
        with self._data_lock:
            session_id = self._token_index.get(token_hash)
            sess = self.sessions.get(session_id) if session_id is not None else None
            if not sess or sess.user_id != user_id:
                return None
            return sess

    def list_user_sessions(self, user_id: int) -> List[Session]:
        with self._data_lock:
            return sorted(
                (s for s in self.sessions.values() if s.user_id == user_id),
                key=lambda s: s.id,
            )

    def set_session_state(self, session_id: int, state: SessionState) -> None:
        with self._data_lock:
            sess = self.sessions.get(session_id)
            if not sess or sess.state == state:
                return
            previous = sess.state
            sess.state = SessionState(state)

            def undo() -> None:
                sess.state = previous

            self._persist_or_undo(undo)

    def revoke_session(self, session_id: int) -> bool:
        with self._data_lock:
            sess = self.sessions.pop(session_id, None)
            if not sess:
                return False
            self._token_index.pop(sess.token_hash, None)
            self._persist_or_undo(lambda: self._restore_sessions([sess]))
            return True

    def revoke_user_sessions(self, user_id: int) -> int:
        with self._data_lock:
            stale = [sess for sess in self.sessions.values() if sess.user_id == user_id]
            for sess in stale:
                self.sessions.pop(sess.id)
                self._token_index.pop(sess.token_hash, None)
            if stale:
                self._persist_or_undo(lambda: self._restore_sessions(stale))
            return len(stale)

    def _restore_sessions(self, sessions: List[Session]) -> None:
        for sess in sessions:
            self.sessions[sess.id] = sess
            self._token_index[sess.token_hash] = sess.id

    # persistence
    def _serialize_user(self, user: User) -> dict:
        return {
            "id": user.id,
            "email": user.email,
            "password_hash": user.password_hash,
            "created_at": self._serialize_datetime(user.created_at),
        }

    def _deserialize_user(self, data: dict) -> User:
        return User(
            id=int(data["id"]),
            email=data["email"],
            password_hash=data["password_hash"],
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _serialize_session(self, sess: Session) -> dict:
        return {
            "id": sess.id,
            "user_id": sess.user_id,
            "token_hash": sess.token_hash,
            "state": sess.state.value,
            "created_at": self._serialize_datetime(sess.created_at),
        }

    def _deserialize_session(self, data: dict) -> Session:
        return Session(
            id=int(data["id"]),
            user_id=int(data["user_id"]),
            token_hash=data["token_hash"],
            state=SessionState(data.get("state", SessionState.ACTIVE.value)),
            created_at=self._deserialize_datetime(data["created_at"]),
        )

    def _persist_state(self) -> None:
        with self._data_lock:
            state = {
                "users": [self._serialize_user(u) for u in self.users.values()],
                "sessions": [self._serialize_session(s) for s in self.sessions.values()],
                "user_id_seq": self._user_id_seq,
                "session_id_seq": self._session_id_seq,
            }
            path = self._state_path()
            tmp_path = path.with_suffix(".json.tmp")
            try:
                tmp_path.write_text(json.dumps(state, indent=2))
                tmp_path.replace(path)
            except OSError as exc:
                self.logger.error(
                    "memory_store_persist_failed", error=str(exc), path=str(path)
                )
                raise

    def _load_state(self) -> bool:
        path = self._state_path()
        # Use try-except instead of exists() to avoid TOCTOU race condition
        try:
            data = json.loads(path.read_text())
        except FileNotFoundError:
            return False
        self.users = {
            int(u["id"]): self._deserialize_user(u) for u in data.get("users", [])
        }
        self.sessions = {
            int(s["id"]): self._deserialize_session(s) for s in data.get("sessions", [])
        }
        self._email_index = {u.email: u.id for u in self.users.values()}
        self._token_index = {s.token_hash: s.id for s in self.sessions.values()}
        self._user_id_seq = max(
            int(data.get("user_id_seq", 1)), max(self.users, default=0) + 1
        )
        self._session_id_seq = max(
            int(data.get("session_id_seq", 1)), max(self.sessions, default=0) + 1
        )
        self.logger.info(
            "memory_store_loaded",
            users=len(self.users),
            sessions=len(self.sessions),
        )
        return True
