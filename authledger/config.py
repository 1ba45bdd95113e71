from __future__ import annotations

import os
import secrets
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationInfo, field_validator

from authledger.logging import get_logger
from authledger.service.tokens import Keyring, SigningKey

logger = get_logger(__name__)

# 30 days; claims carry milliseconds, this value is seconds
DEFAULT_TOKEN_TTL_SECONDS = 30 * 24 * 60 * 60
DEFAULT_SHARED_FS_ROOT = "/srv/authledger"
_MIN_SECRET_LENGTH = 32


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


def parse_retired_keys(raw: str | None) -> list[SigningKey]:
    """Parse ``kid=secret,kid=secret`` into signing keys."""
    keys: list[SigningKey] = []
    if not raw:
        return keys
    for item in raw.split(","):
        item = item.strip()
        if not item:
            continue
        key_id, sep, secret = item.partition("=")
        if not sep or not key_id.strip() or not secret.strip():
            raise ValueError(f"retired key entries must look like kid=secret, got {key_id!r}")
        keys.append(SigningKey(key_id.strip(), secret.strip()))
    return keys


def _read_secret(path: Path) -> str | None:
    if path.is_symlink():
        raise RuntimeError(f"refusing to read JWT secret through symlink {path}")
    try:
        value = path.read_text().strip()
    except FileNotFoundError:
        return None
    if len(value) < _MIN_SECRET_LENGTH:
        raise RuntimeError(f"JWT secret at {path} is shorter than {_MIN_SECRET_LENGTH} characters")
    return value


def load_or_create_secret(path: Path) -> str:
    """Return the signing secret stored at ``path``, creating it on first use.

    The secret is written to a private temp file and hard-linked into place,
    which fails if the file already exists: processes starting together on a
    shared root settle on whichever secret was published first.
    """
    existing = _read_secret(path)
    if existing:
        return existing

    generated = secrets.token_urlsafe(64)
    tmp_path = path.with_name(f".{path.name}.{secrets.token_hex(4)}.tmp")
    try:
        path.parent.mkdir(mode=0o700, parents=True, exist_ok=True)
        fd = os.open(tmp_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o600)
        with os.fdopen(fd, "w") as handle:
            handle.write(generated)
        try:
            os.link(tmp_path, path)
        finally:
            tmp_path.unlink()
    except FileExistsError:
        published = _read_secret(path)
        if published:
            return published
        raise
    except OSError as exc:
        logger.error("jwt_secret_persist_failed", error=str(exc), path=str(path))
        raise RuntimeError(
            "Unable to persist JWT secret; set JWT_SECRET or make SHARED_FS_ROOT writable"
        ) from exc
    logger.info("jwt_secret_generated", path=str(path))
    return generated


class Settings(BaseModel):
    """Runtime settings for the authentication service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/authledger", "DATABASE_URL"
    )
    shared_fs_root: str = env_field(DEFAULT_SHARED_FS_ROOT, "SHARED_FS_ROOT")
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Toggle deterministic testing behaviors.",
    )
    jwt_secret: str = env_field(None, "JWT_SECRET", validate_default=True)
    jwt_key_id: str = env_field("v1", "JWT_KEY_ID")
    jwt_retired_keys: str | None = env_field(
        None,
        "JWT_RETIRED_KEYS",
        description="Previous signing keys still accepted for verification: kid=secret,kid=secret",
    )
    jwt_issuer: str = env_field("authledger", "JWT_ISSUER")
    token_ttl_seconds: int = env_field(
        DEFAULT_TOKEN_TTL_SECONDS,
        "TOKEN_TTL_SECONDS",
        description="Validity window of issued tokens, in seconds",
    )
    argon2_time_cost: int = env_field(3, "ARGON2_TIME_COST")
    argon2_memory_cost: int = env_field(65536, "ARGON2_MEMORY_COST")
    argon2_parallelism: int = env_field(4, "ARGON2_PARALLELISM")

    model_config = ConfigDict(extra="ignore")

    @classmethod
    def from_env(cls) -> "Settings":
        env_file_values = dotenv_values(".env")
        merged: dict[str, str] = {}
        for name, field in cls.model_fields.items():
            extra = field.json_schema_extra or {}
            env_key = extra.get("env") if isinstance(extra, dict) else None
            env_name = env_key or name.upper()
            if env_name in os.environ:
                merged[name] = os.environ[env_name]
            elif env_name in env_file_values:
                merged[name] = env_file_values[env_name]
        return cls(**merged)

    @property
    def token_ttl_ms(self) -> int:
        return self.token_ttl_seconds * 1000

    def keyring(self) -> Keyring:
        retired = [
            key
            for key in parse_retired_keys(self.jwt_retired_keys)
            if key.key_id != self.jwt_key_id
        ]
        return Keyring(SigningKey(self.jwt_key_id, self.jwt_secret), retired)

    @field_validator("token_ttl_seconds")
    @classmethod
    def _validate_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("token_ttl_seconds must be positive")
        return value

    @field_validator("argon2_time_cost", "argon2_memory_cost", "argon2_parallelism")
    @classmethod
    def _validate_argon2_params(cls, value: int) -> int:
        if value < 1:
            raise ValueError("argon2 parameters must be positive")
        return value

    @field_validator("jwt_retired_keys")
    @classmethod
    def _validate_retired_keys(cls, value: str | None) -> str | None:
        parse_retired_keys(value)
        return value

    @field_validator("jwt_secret", mode="before")
    @classmethod
    def _ensure_jwt_secret(cls, value: str | None, info: ValidationInfo) -> str:
        if value:
            return value
        fs_root = info.data.get("shared_fs_root") or DEFAULT_SHARED_FS_ROOT
        return load_or_create_secret(Path(fs_root) / ".jwt_secret")


def get_settings() -> Settings:
    global _settings_cache
    if _settings_cache is None:
        _settings_cache = Settings.from_env()
    return _settings_cache


_settings_cache: Settings | None = None


def reset_settings_cache() -> None:
    """Clear cached settings so future calls re-read the environment."""

    global _settings_cache
    _settings_cache = None
