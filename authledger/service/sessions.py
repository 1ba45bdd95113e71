from __future__ import annotations

import hashlib
from typing import Optional, Protocol

from authledger.logging import get_logger
from authledger.service.errors import DuplicateTokenError
from authledger.storage.errors import ConstraintViolation
from authledger.storage.models import Session, SessionState

logger = get_logger(__name__)


class SessionStore(Protocol):
    def create_session(
        self, user_id: int, token_hash: str, state: SessionState = SessionState.ACTIVE
    ) -> Session: ...

    def get_session_by_token(self, token_hash: str, user_id: int) -> Optional[Session]: ...

    def set_session_state(self, session_id: int, state: SessionState) -> None: ...

    def revoke_session(self, session_id: int) -> bool: ...

    def revoke_user_sessions(self, user_id: int) -> int: ...


def token_digest(token: str) -> str:
    """SHA-256 hex digest under which a token is recorded.

    The ledger never stores the bearer string itself.
    """
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class SessionLedger:
    """Server-side record of issued tokens and their ACTIVE/EXPIRED state."""

    def __init__(self, store: SessionStore) -> None:
        self.store = store

    def record(
        self, token: str, user_id: int, state: SessionState = SessionState.ACTIVE
    ) -> Session:
        try:
            return self.store.create_session(user_id, token_digest(token), state)
        except ConstraintViolation as exc:
            if exc.field != "token_hash":
                raise
            logger.error("duplicate_token_recorded", user_id=user_id)
            raise DuplicateTokenError(
                "issued token already recorded", detail={"user_id": user_id}
            ) from exc

    def find_by_token_and_user(self, token: str, user_id: int) -> Optional[Session]:
        return self.store.get_session_by_token(token_digest(token), user_id)

    def mark_expired(self, session: Session) -> Session:
        """Transition ``session`` to EXPIRED. Already expired sessions are left as is."""
        if session.state != SessionState.EXPIRED:
            self.store.set_session_state(session.id, SessionState.EXPIRED)
            session.state = SessionState.EXPIRED
        return session

    def revoke(self, token: str, user_id: int) -> bool:
        session = self.find_by_token_and_user(token, user_id)
        if not session:
            return False
        return self.store.revoke_session(session.id)

    def revoke_all(self, user_id: int) -> int:
        return self.store.revoke_user_sessions(user_id)
