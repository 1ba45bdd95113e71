"""Principal lookup exposed to an outer authentication framework.

Frameworks that do their own credential checks only need one capability:
"give me the record for this identifier". ``PrincipalLoader`` provides it on
top of any credential store, without the framework knowing about ``User``.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol

from authledger.storage.common import normalize_email
from authledger.storage.models import User


class CredentialStore(Protocol):
    def create_user(self, email: str, password_hash: str) -> User: ...

    def get_user(self, user_id: int) -> Optional[User]: ...

    def get_user_by_email(self, email: str) -> Optional[User]: ...

    def update_password_hash(self, user_id: int, password_hash: str) -> None: ...


@dataclass(frozen=True)
class PrincipalRecord:
    user_id: int
    identifier: str
    password_hash: str

    @classmethod
    def from_user(cls, user: User) -> "PrincipalRecord":
        return cls(user_id=user.id, identifier=user.email, password_hash=user.password_hash)

    def __repr__(self) -> str:
        return f"PrincipalRecord(user_id={self.user_id!r}, identifier={self.identifier!r})"


class PrincipalSource(Protocol):
    def load_principal(self, identifier: str) -> Optional[PrincipalRecord]: ...


class PrincipalLoader:
    def __init__(self, store: CredentialStore) -> None:
        self.store = store

    def load_principal(self, identifier: str) -> Optional[PrincipalRecord]:
        """Return the principal for an email identifier, or None when unknown."""
        if not normalize_email(identifier):
            return None
        user = self.store.get_user_by_email(identifier)
        return PrincipalRecord.from_user(user) if user else None
