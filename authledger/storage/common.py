"""Common storage utilities shared between memory and postgres implementations."""

from __future__ import annotations

from datetime import datetime
from typing import Any, Optional

from authledger.storage.models import Session, SessionState, User


def normalize_email(email: str) -> str:
    """Canonical form used for uniqueness and lookup.

    Emails are case-insensitive: ``Alice@Example.com`` and ``alice@example.com``
    name the same account.
    """
    return (email or "").strip().lower()


def safe_row_value(row: Any, key: str, default: Optional[Any] = None) -> Optional[Any]:
    """Safely extract value from row dict or object.

    Works with both dict-like objects and objects with attribute access.
    """
    if hasattr(row, "get"):
        return row.get(key, default)
    try:
        return row[key]
    except (KeyError, TypeError, AttributeError):
        return default


def user_from_row(row: Any) -> User:
    return User(
        id=int(row["id"]),
        email=row["email"],
        password_hash=row["password_hash"],
        created_at=safe_row_value(row, "created_at") or datetime.utcnow(),
    )


def session_from_row(row: Any) -> Session:
    return Session(
        id=int(row["id"]),
        user_id=int(row["user_id"]),
        token_hash=row["token_hash"],
        state=SessionState(safe_row_value(row, "state", SessionState.ACTIVE.value)),
        created_at=safe_row_value(row, "created_at") or datetime.utcnow(),
    )
