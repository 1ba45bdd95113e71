from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, Optional

from authledger.config import Settings
from authledger.logging import get_logger
from authledger.service.errors import (
    AuthFailure,
    TokenError,
    ValidationError,
)
from authledger.service.passwords import Argon2PasswordHasher
from authledger.service.principal import CredentialStore
from authledger.service.sessions import SessionLedger
from authledger.service.tokens import TokenClaims, TokenCodec, new_nonce
from authledger.storage.common import normalize_email
from authledger.storage.errors import ConstraintViolation
from authledger.storage.models import Session, User

logger = get_logger(__name__)


@dataclass
class AuthResult:
    ok: bool
    error: Optional[AuthFailure] = None
    user: Optional[User] = None
    session: Optional[Session] = None
    token: Optional[str] = None

    @classmethod
    def failure(cls, error: AuthFailure) -> "AuthResult":
        return cls(ok=False, error=error)

    def __bool__(self) -> bool:
        return self.ok


class AuthService:
    """Sign-up, login and token validation.

    Tokens are verified statelessly by signature, and additionally checked
    against the session ledger so the server can revoke or expire them.
    ``validate_token`` is the single place where both checks meet.
    """

    def __init__(
        self,
        store: CredentialStore,
        ledger: SessionLedger,
        codec: TokenCodec,
        hasher: Argon2PasswordHasher,
        settings: Settings,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.store = store
        self.ledger = ledger
        self.codec = codec
        self.hasher = hasher
        self.settings = settings
        self._clock = clock
        self.logger = logger

    def _now_ms(self) -> int:
        return int(self._clock() * 1000)

    @staticmethod
    def _require_credentials(email: str, password: str) -> str:
        normalized = normalize_email(email)
        if not normalized:
            raise ValidationError("email is required", detail={"field": "email"})
        if not password:
            raise ValidationError("password is required", detail={"field": "password"})
        return normalized

    async def signup(self, email: str, password: str) -> AuthResult:
        email = self._require_credentials(email, password)
        if self.store.get_user_by_email(email):
            self.logger.info("signup_rejected", reason=AuthFailure.USER_ALREADY_EXISTS.value)
            return AuthResult.failure(AuthFailure.USER_ALREADY_EXISTS)

        # Hashing is slow on purpose; keep it off the event loop and outside store locks
        password_hash = await asyncio.to_thread(self.hasher.hash, password)
        try:
            user = self.store.create_user(email, password_hash)
        except ConstraintViolation as exc:
            if exc.field != "email":
                raise
            # Lost a race with a concurrent sign-up for the same email
            self.logger.info(
                "signup_rejected",
                reason=AuthFailure.USER_ALREADY_EXISTS.value,
                race=True,
            )
            return AuthResult.failure(AuthFailure.USER_ALREADY_EXISTS)
        self.logger.info("user_signed_up", user_id=user.id)
        return AuthResult(ok=True, user=user)

    async def login(self, email: str, password: str) -> AuthResult:
        # Blank input is just an unknown account or a failed verification here
        email = normalize_email(email)
        user = self.store.get_user_by_email(email) if email else None
        if not user:
            self.logger.info("login_failed", reason=AuthFailure.USER_NOT_FOUND.value)
            return AuthResult.failure(AuthFailure.USER_NOT_FOUND)

        matches = await asyncio.to_thread(
            self.hasher.verify, password or "", user.password_hash
        )
        if not matches:
            self.logger.info(
                "login_failed", reason=AuthFailure.WRONG_PASSWORD.value, user_id=user.id
            )
            return AuthResult.failure(AuthFailure.WRONG_PASSWORD)

        if self.hasher.needs_rehash(user.password_hash):
            await self._rehash_password(user, password)

        token = self._issue_token(user)
        session = self.ledger.record(token, user.id)
        self.logger.info("login_succeeded", user_id=user.id, session_id=session.id)
        return AuthResult(ok=True, user=user, session=session, token=token)

    async def validate_token(self, user_id: int, token: str) -> bool:
        session = self.ledger.find_by_token_and_user(token, user_id)
        if not session:
            self.logger.debug("token_unknown", user_id=user_id)
            return False
        if not session.is_active:
            return False

        try:
            claims = self.codec.parse(token)
        except TokenError as exc:
            self.logger.info(
                "token_rejected",
                reason=exc.error_code,
                user_id=user_id,
                session_id=session.id,
            )
            return False

        if claims.user_id != user_id or claims.issuer != self.settings.jwt_issuer:
            self.logger.warning(
                "token_claims_mismatch", user_id=user_id, session_id=session.id
            )
            return False

        if self._now_ms() > claims.exp:
            self.ledger.mark_expired(session)
            self.logger.info("session_expired", user_id=user_id, session_id=session.id)
            return False
        return True

    async def logout(self, user_id: int, token: str) -> bool:
        """Revoke the session behind ``token``; the token stops validating."""
        revoked = self.ledger.revoke(token, user_id)
        if revoked:
            self.logger.info("session_revoked", user_id=user_id)
        return revoked

    async def revoke_all_user_sessions(self, user_id: int) -> int:
        count = self.ledger.revoke_all(user_id)
        self.logger.info("user_sessions_revoked", user_id=user_id, count=count)
        return count

    def _issue_token(self, user: User) -> str:
        issued_at = self._now_ms()
        claims = TokenClaims(
            iat=issued_at,
            exp=issued_at + self.settings.token_ttl_ms,
            user_id=user.id,
            issuer=self.settings.jwt_issuer,
            jti=new_nonce(),
        )
        return self.codec.issue(claims)

    async def _rehash_password(self, user: User, password: str) -> None:
        new_hash = await asyncio.to_thread(self.hasher.hash, password)
        self.store.update_password_hash(user.id, new_hash)
        user.password_hash = new_hash
        self.logger.info("password_rehashed", user_id=user.id)
