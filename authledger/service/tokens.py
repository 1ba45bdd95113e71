"""Signed, claims-bearing tokens.

Tokens use the compact JWT layout ``header.payload.signature`` with base64url
segments and an HMAC-SHA256 signature over ``header.payload``. Any instance
holding the same keyring can verify a token issued by any other instance.

Keys carry an id (``kid`` header). Rotating means installing a new active key;
tokens signed by the previous key stay verifiable only while that key is kept
in the keyring's ``retired`` set.
"""

from __future__ import annotations

import base64
import binascii
import hashlib
import hmac
import json
import secrets
from dataclasses import asdict, dataclass
from typing import Any, Dict, Iterable, Optional

from authledger.service.errors import InvalidSignatureError, MalformedTokenError

ALGORITHM = "HS256"

_INT_CLAIMS = ("iat", "exp", "user_id")
_STR_CLAIMS = ("issuer", "jti")


def new_nonce() -> str:
    return secrets.token_urlsafe(16)


@dataclass(frozen=True)
class TokenClaims:
    iat: int  # issued-at, ms since epoch
    exp: int  # expiry, ms since epoch
    user_id: int
    issuer: str
    jti: str  # random nonce so two logins in the same millisecond never collide

    def to_payload(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_payload(cls, payload: Any) -> "TokenClaims":
        if not isinstance(payload, dict):
            raise MalformedTokenError("token payload is not an object")
        for name in _INT_CLAIMS:
            value = payload.get(name)
            # bool is an int subclass; reject it explicitly
            if not isinstance(value, int) or isinstance(value, bool):
                raise MalformedTokenError(f"claim '{name}' must be an integer")
        for name in _STR_CLAIMS:
            if not isinstance(payload.get(name), str):
                raise MalformedTokenError(f"claim '{name}' must be a string")
        return cls(**{name: payload[name] for name in _INT_CLAIMS + _STR_CLAIMS})


@dataclass(frozen=True)
class SigningKey:
    key_id: str
    secret: str

    def __post_init__(self) -> None:
        if not self.key_id:
            raise ValueError("signing key id must not be empty")
        if not self.secret:
            raise ValueError("signing key secret must not be empty")

    def __repr__(self) -> str:
        return f"SigningKey(key_id={self.key_id!r})"

    def sign(self, signing_input: bytes) -> bytes:
        return hmac.new(self.secret.encode(), signing_input, hashlib.sha256).digest()


class Keyring:
    """Active signing key plus retired keys accepted for verification only."""

    def __init__(self, active: SigningKey, retired: Iterable[SigningKey] = ()) -> None:
        self.active = active
        self._verification_keys: Dict[str, SigningKey] = {}
        for key in retired:
            self._verification_keys[key.key_id] = key
        self._verification_keys[active.key_id] = active

    def get(self, key_id: Optional[str]) -> Optional[SigningKey]:
        if not isinstance(key_id, str):
            return None
        return self._verification_keys.get(key_id)

    def rotate(self, new_active: SigningKey, *, keep_previous: bool = True) -> "Keyring":
        """Return a keyring signing with ``new_active``.

        With ``keep_previous`` the old active key moves to the retired set, so
        already issued tokens remain verifiable until they expire.
        """
        retired = [k for kid, k in self._verification_keys.items() if kid != self.active.key_id]
        if keep_previous:
            retired.append(self.active)
        return Keyring(new_active, [k for k in retired if k.key_id != new_active.key_id])

    def __contains__(self, key_id: str) -> bool:
        return key_id in self._verification_keys


def _encode_segment(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")


def _decode_segment(segment: str) -> bytes:
    padding = "=" * ((4 - len(segment) % 4) % 4)
    try:
        return base64.urlsafe_b64decode(segment + padding)
    except (binascii.Error, ValueError) as exc:
        raise MalformedTokenError("token segment is not valid base64url") from exc


def _decode_json(segment: str) -> Any:
    try:
        return json.loads(_decode_segment(segment))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise MalformedTokenError("token segment is not valid JSON") from exc


class TokenCodec:
    """Builds and parses signed tokens with an injected keyring."""

    def __init__(self, keyring: Keyring) -> None:
        self.keyring = keyring

    def issue(self, claims: TokenClaims) -> str:
        key = self.keyring.active
        header = {"alg": ALGORITHM, "typ": "JWT", "kid": key.key_id}
        header_enc = _encode_segment(json.dumps(header, separators=(",", ":")).encode())
        payload_enc = _encode_segment(
            json.dumps(claims.to_payload(), separators=(",", ":"), sort_keys=True).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        signature = key.sign(signing_input.encode())
        return f"{signing_input}.{_encode_segment(signature)}"

    def parse(self, token: str) -> TokenClaims:
        """Verify ``token`` and return its claims.

        The signature is checked before the payload is decoded; no claim is
        read from an unverified token.

        Raises:
            MalformedTokenError: not a three-part token, or undecodable parts.
            InvalidSignatureError: wrong signature, unknown key id, or an
                algorithm other than HS256.
        """
        if not isinstance(token, str):
            raise MalformedTokenError("token must be a string")
        parts = token.split(".")
        if len(parts) != 3 or not all(parts):
            raise MalformedTokenError("token must have three non-empty segments")
        header_b64, payload_b64, sig_b64 = parts

        header = _decode_json(header_b64)
        if not isinstance(header, dict):
            raise MalformedTokenError("token header is not an object")
        # Pin the algorithm to prevent algorithm confusion
        if header.get("alg") != ALGORITHM:
            raise InvalidSignatureError("unexpected token algorithm")
        key = self.keyring.get(header.get("kid"))
        if key is None:
            raise InvalidSignatureError("unknown signing key")

        expected_sig = _encode_segment(key.sign(f"{header_b64}.{payload_b64}".encode()))
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode("utf-8")):
            raise InvalidSignatureError("token signature mismatch")

        return TokenClaims.from_payload(_decode_json(payload_b64))
