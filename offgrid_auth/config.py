from __future__ import annotations

import math
import os
import re
from enum import Enum
from typing import Any

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, field_validator

from offgrid_auth.service.errors import InvalidConfigError


# Asymmetric JWS algorithms accepted for token signing.
SUPPORTED_JWT_ALGORITHMS = frozenset(
    {"RS256", "RS384", "RS512", "PS256", "ES256", "ES384", "EdDSA"}
)

_DURATION_RE = re.compile(
    r"^(?P<value>\d*\.?\d+)\s*"
    r"(?P<unit>milliseconds?|msecs?|ms|seconds?|secs?|s|minutes?|mins?|m|"
    r"hours?|hrs?|h|days?|d|weeks?|w|years?|yrs?|y)?$",
    re.IGNORECASE,
)

_MS_PER_UNIT = {
    "ms": 1,
    "s": 1000,
    "m": 60 * 1000,
    "h": 60 * 60 * 1000,
    "d": 24 * 60 * 60 * 1000,
    "w": 7 * 24 * 60 * 60 * 1000,
    "y": 365.25 * 24 * 60 * 60 * 1000,
}


def _unit_key(unit: str) -> str:
    unit = unit.lower()
    if unit.startswith(("ms", "msec", "millisecond")):
        return "ms"
    if unit.startswith("mi"):
        return "m"
    return unit[0]


def parse_duration(value: str) -> int:
    """Parse a duration such as ``15m``, ``30d`` or ``1 hour`` into whole seconds.

    A bare number is read as milliseconds. Raises ``InvalidConfigError`` when the
    value cannot be parsed or does not amount to at least one second.
    """
    text = (value or "").strip()
    match = _DURATION_RE.match(text) if len(text) <= 100 else None
    if not match:
        raise InvalidConfigError(f"Invalid duration format: {value!r}")
    unit = match.group("unit")
    millis = float(match.group("value")) * _MS_PER_UNIT[_unit_key(unit) if unit else "ms"]
    seconds = math.floor(millis / 1000)
    if seconds <= 0:
        raise InvalidConfigError(f"Duration must be at least one second: {value!r}")
    return seconds


class DevicePolicy(str, Enum):
    """How ``refresh`` resolves a bound device against newly supplied device info."""

    KEEP_BOUND = "keep_bound"
    PREFER_SUPPLIED = "prefer_supplied"


def env_field(default: Any, env: str, **kwargs):
    extra = kwargs.pop("json_schema_extra", {}) or {}
    extra = {**extra, "env": env}
    return Field(default, json_schema_extra=extra, **kwargs)


class Settings(BaseModel):
    """Runtime settings for the session service."""

    database_url: str = env_field(
        "postgresql://localhost:5432/offgrid_auth", "DATABASE_URL"
    )
    use_memory_store: bool = env_field(False, "USE_MEMORY_STORE")
    shared_fs_root: str = env_field("/srv/offgrid-auth", "SHARED_FS_ROOT")
    test_mode: bool = env_field(
        False,
        "TEST_MODE",
        description="Relax startup requirements for local runs and CI.",
    )
    jwt_issuer: str = env_field("offgrid-auth", "JWT_ISSUER")
    jwt_audience: str = env_field("offgrid-clients", "JWT_AUDIENCE")
    jwt_algorithm: str = env_field("RS256", "JWT_ALGORITHM")
    jwt_private_key: str | None = env_field(
        None, "JWT_PRIVATE_KEY", description="PEM encoded private signing key"
    )
    jwt_public_key: str | None = env_field(
        None, "JWT_PUBLIC_KEY", description="PEM encoded public verification key"
    )
    access_token_expires_in: str = env_field("15m", "ACCESS_TOKEN_EXPIRES_IN")
    refresh_token_expires_in: str = env_field("30d", "REFRESH_TOKEN_EXPIRES_IN")
    password_hash_time_cost: int = env_field(
        3, "PASSWORD_HASH_TIME_COST", description="argon2 iterations", ge=1
    )
    password_hash_memory_cost: int = env_field(
        64 * 1024, "PASSWORD_HASH_MEMORY_COST", description="argon2 memory in KiB", ge=8
    )
    revoke_on_upgrade: bool = env_field(
        False,
        "REVOKE_ON_UPGRADE",
        description="Revoke refresh tokens issued while the account was anonymous",
    )
    refresh_device_policy: DevicePolicy = env_field(
        DevicePolicy.KEEP_BOUND, "REFRESH_DEVICE_POLICY"
    )
    admin_email: str | None = env_field(None, "ADMIN_EMAIL")
    admin_username: str | None = env_field(None, "ADMIN_USERNAME")
    admin_password: str | None = env_field(None, "ADMIN_PASSWORD")

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

    @field_validator("jwt_algorithm")
    @classmethod
    def _validate_algorithm(cls, value: str) -> str:
        if value not in SUPPORTED_JWT_ALGORITHMS:
            raise ValueError(
                f"JWT_ALGORITHM must be an asymmetric algorithm, got {value!r}"
            )
        return value

    @field_validator("jwt_private_key", "jwt_public_key")
    @classmethod
    def _unescape_pem(cls, value: str | None) -> str | None:
        # Single-line env vars carry PEM newlines as literal "\n".
        if value and "\\n" in value:
            return value.replace("\\n", "\n")
        return value or None

    @field_validator("refresh_device_policy")
    @classmethod
    def _validate_device_policy(cls, value: DevicePolicy) -> DevicePolicy:
        return DevicePolicy(value)


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
