from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum


class SessionState(str, Enum):
    """Lifecycle of an issued token. The only transition is ACTIVE -> EXPIRED."""

    ACTIVE = "active"
    EXPIRED = "expired"


@dataclass
class User:
    id: int
    email: str
    password_hash: str
    created_at: datetime = field(default_factory=datetime.utcnow)


@dataclass
class Session:
    id: int
    user_id: int
    token_hash: str
    state: SessionState = SessionState.ACTIVE
    created_at: datetime = field(default_factory=datetime.utcnow)

    @property
    def is_active(self) -> bool:
        return self.state == SessionState.ACTIVE
