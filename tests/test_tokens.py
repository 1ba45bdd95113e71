import base64
import json

import pytest

from authledger.service.errors import (
    InvalidSignatureError,
    MalformedTokenError,
    TokenError,
)
from authledger.service.tokens import Keyring, SigningKey, TokenClaims, TokenCodec


def _claims(**overrides):
    values = {
        "iat": 1_700_000_000_000,
        "exp": 1_702_592_000_000,
        "user_id": 42,
        "issuer": "authledger",
        "jti": "nonce-1",
    }
    values.update(overrides)
    return TokenClaims(**values)


def _segment(obj) -> str:
    raw = json.dumps(obj).encode() if not isinstance(obj, bytes) else obj
    return base64.urlsafe_b64encode(raw).decode().rstrip("=")


def _signed(codec: TokenCodec, header, payload) -> str:
    signing_input = f"{_segment(header)}.{_segment(payload)}"
    signature = codec.keyring.active.sign(signing_input.encode())
    return f"{signing_input}.{_segment(signature)}"


class TestTokenCodec:
    @pytest.mark.parametrize(
        "overrides",
        [
            {},
            {"iat": 0, "exp": 0, "user_id": 0},
            {"iat": 2**62, "exp": 2**63 - 1, "user_id": 2**53 + 1},
            {"issuer": "émetteur-认证"},
            {"jti": ""},
        ],
        ids=["typical", "zeros", "large-ints", "unicode-issuer", "empty-jti"],
    )
    def test_issue_then_parse_returns_claims(self, codec, overrides):
        claims = _claims(**overrides)
        assert codec.parse(codec.issue(claims)) == claims

    def test_token_layout(self, codec):
        token = codec.issue(_claims())
        header_b64, _, _ = token.split(".")
        header = json.loads(base64.urlsafe_b64decode(header_b64 + "=" * (-len(header_b64) % 4)))

        assert header == {"alg": "HS256", "typ": "JWT", "kid": "test"}
        assert "=" not in token

    def test_distinct_nonce_gives_distinct_token(self, codec):
        assert codec.issue(_claims(jti="a")) != codec.issue(_claims(jti="b"))

    def test_wrong_key_is_invalid_signature(self, codec, other_codec):
        token = other_codec.issue(_claims())
        with pytest.raises(InvalidSignatureError):
            codec.parse(token)

    def test_modified_payload_is_invalid_signature(self, codec):
        token = codec.issue(_claims())
        forged = codec.issue(_claims(user_id=7))
        header, _, signature = token.split(".")
        _, forged_payload, _ = forged.split(".")

        with pytest.raises(InvalidSignatureError):
            codec.parse(f"{header}.{forged_payload}.{signature}")

    def test_unknown_key_id_is_invalid_signature(self, codec):
        token = _signed(codec, {"alg": "HS256", "typ": "JWT", "kid": "nope"}, _claims().to_payload())
        with pytest.raises(InvalidSignatureError):
            codec.parse(token)

    def test_alg_none_is_rejected(self, codec):
        payload = _segment(_claims().to_payload())
        header = _segment({"alg": "none", "typ": "JWT", "kid": "test"})
        with pytest.raises(InvalidSignatureError):
            codec.parse(f"{header}.{payload}.c2ln")

    @pytest.mark.parametrize(
        "token",
        ["", "abc", "a.b", "a.b.c.d", "..", "a..c", "!!!.@@@.###"],
    )
    def test_structurally_broken_tokens_are_malformed(self, codec, token):
        with pytest.raises(MalformedTokenError):
            codec.parse(token)

    def test_non_string_token_is_malformed(self, codec):
        with pytest.raises(MalformedTokenError):
            codec.parse(None)

    def test_header_not_an_object_is_malformed(self, codec):
        with pytest.raises(MalformedTokenError):
            codec.parse(f"{_segment([1, 2])}.{_segment({})}.c2ln")

    def test_signed_payload_with_missing_claims_is_malformed(self, codec):
        token = _signed(codec, {"alg": "HS256", "kid": "test"}, {"user_id": 1})
        with pytest.raises(MalformedTokenError):
            codec.parse(token)

    def test_signed_payload_with_wrong_claim_types_is_malformed(self, codec):
        payload = _claims().to_payload()
        payload["user_id"] = "42"
        token = _signed(codec, {"alg": "HS256", "kid": "test"}, payload)
        with pytest.raises(MalformedTokenError):
            codec.parse(token)

    def test_boolean_claim_is_malformed(self, codec):
        payload = _claims().to_payload()
        payload["exp"] = True
        token = _signed(codec, {"alg": "HS256", "kid": "test"}, payload)
        with pytest.raises(MalformedTokenError):
            codec.parse(token)

    def test_signed_non_json_payload_is_malformed(self, codec):
        token = _signed(codec, {"alg": "HS256", "kid": "test"}, b"\xff\xfe")
        with pytest.raises(MalformedTokenError):
            codec.parse(token)

    def test_token_errors_share_a_base(self):
        assert issubclass(InvalidSignatureError, TokenError)
        assert issubclass(MalformedTokenError, TokenError)


class TestKeyring:
    def test_rotation_keeps_previous_key_for_verification(self):
        old = SigningKey("v1", "first-secret")
        ring = Keyring(old)
        token = TokenCodec(ring).issue(_claims())

        rotated = ring.rotate(SigningKey("v2", "second-secret"))

        assert rotated.active.key_id == "v2"
        assert "v1" in rotated
        assert TokenCodec(rotated).parse(token).user_id == 42
        assert TokenCodec(rotated).issue(_claims()).split(".")[0] != token.split(".")[0]

    def test_rotation_without_previous_key(self):
        ring = Keyring(SigningKey("v1", "first-secret"))
        token = TokenCodec(ring).issue(_claims())

        rotated = ring.rotate(SigningKey("v2", "second-secret"), keep_previous=False)

        assert "v1" not in rotated
        with pytest.raises(InvalidSignatureError):
            TokenCodec(rotated).parse(token)

    def test_non_string_key_id_is_unknown(self):
        ring = Keyring(SigningKey("v1", "first-secret"))
        assert ring.get(["v1"]) is None
        assert ring.get(None) is None

    def test_signing_key_hides_secret(self):
        key = SigningKey("v1", "first-secret")
        assert "first-secret" not in repr(key)

    @pytest.mark.parametrize("key_id,secret", [("", "s"), ("v1", "")])
    def test_signing_key_rejects_empty_values(self, key_id, secret):
        with pytest.raises(ValueError):
            SigningKey(key_id, secret)
