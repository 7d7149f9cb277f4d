from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Optional

import jwt

from offgrid_auth.config import Settings, parse_duration
from offgrid_auth.logging import get_logger
from offgrid_auth.service.keys import SigningKeys
from offgrid_auth.storage.models import Role, utcnow

logger = get_logger(__name__)

ACCESS_TOKEN_TYPE = "access"
REFRESH_TOKEN_TYPE = "refresh"


@dataclass(frozen=True)
class AccessClaims:
    subject: str
    role: Role
    issuer: str
    audience: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class RefreshClaims:
    subject: str
    token_id: str
    issuer: str
    audience: str
    issued_at: datetime
    expires_at: datetime


@dataclass(frozen=True)
class IssuedRefreshToken:
    token: str
    token_id: str
    expires_at: datetime


def _from_timestamp(value: Any) -> datetime:
    return datetime.fromtimestamp(int(value), tz=timezone.utc)


class TokenIssuer:
    """Signs and verifies access and refresh JWTs with an asymmetric key pair.

    TTLs are parsed once here, so a bad duration fails at startup with
    ``InvalidConfigError`` rather than on a request.
    """

    def __init__(
        self,
        keys: SigningKeys,
        *,
        issuer: str,
        audience: str,
        access_ttl: str,
        refresh_ttl: str,
        clock: Callable[[], datetime] = utcnow,
        leeway_seconds: int = 0,
    ) -> None:
        self._keys = keys
        self.issuer = issuer
        self.audience = audience
        self.access_ttl_seconds = parse_duration(access_ttl)
        self.refresh_ttl_seconds = parse_duration(refresh_ttl)
        self._clock = clock
        self._leeway = leeway_seconds

    @classmethod
    def from_settings(
        cls, settings: Settings, keys: SigningKeys, **kwargs: Any
    ) -> "TokenIssuer":
        return cls(
            keys,
            issuer=settings.jwt_issuer,
            audience=settings.jwt_audience,
            access_ttl=settings.access_token_expires_in,
            refresh_ttl=settings.refresh_token_expires_in,
            **kwargs,
        )

    @property
    def algorithm(self) -> str:
        return self._keys.algorithm

    def sign_access(self, subject: str, role: Role | str) -> str:
        now = self._clock()
        payload = {
            "sub": subject,
            "role": Role(role).value,
            "token_type": ACCESS_TOKEN_TYPE,
            **self._standard_claims(now, self.access_ttl_seconds),
        }
        return self._encode(payload)

    def sign_refresh(
        self, subject: str, token_id: Optional[str] = None
    ) -> IssuedRefreshToken:
        now = self._clock()
        jti = token_id or str(uuid.uuid4())
        claims = self._standard_claims(now, self.refresh_ttl_seconds)
        payload = {
            "sub": subject,
            "jti": jti,
            "token_type": REFRESH_TOKEN_TYPE,
            **claims,
        }
        return IssuedRefreshToken(
            token=self._encode(payload),
            token_id=jti,
            expires_at=_from_timestamp(claims["exp"]),
        )

    def verify_access(self, token: str) -> Optional[AccessClaims]:
        payload = self._decode(token, ACCESS_TOKEN_TYPE, required=("role",))
        if payload is None:
            return None
        try:
            role = Role(payload["role"])
        except ValueError:
            logger.warning("jwt_unknown_role", role=payload.get("role"))
            return None
        return AccessClaims(
            subject=payload["sub"],
            role=role,
            issuer=payload["iss"],
            audience=self.audience,
            issued_at=_from_timestamp(payload["iat"]),
            expires_at=_from_timestamp(payload["exp"]),
        )

    def verify_refresh(self, token: str) -> Optional[RefreshClaims]:
        payload = self._decode(token, REFRESH_TOKEN_TYPE, required=("jti",))
        if payload is None:
            return None
        return RefreshClaims(
            subject=payload["sub"],
            token_id=str(payload["jti"]),
            issuer=payload["iss"],
            audience=self.audience,
            issued_at=_from_timestamp(payload["iat"]),
            expires_at=_from_timestamp(payload["exp"]),
        )

    def _standard_claims(self, now: datetime, ttl_seconds: int) -> dict[str, Any]:
        issued_at = int(now.timestamp())
        expires_at = int((now + timedelta(seconds=ttl_seconds)).timestamp())
        return {
            "iss": self.issuer,
            "aud": self.audience,
            "iat": issued_at,
            "exp": expires_at,
        }

    def _encode(self, payload: dict[str, Any]) -> str:
        return jwt.encode(payload, self._keys.private_key, algorithm=self.algorithm)

    def _decode(
        self, token: str, token_type: str, *, required: tuple[str, ...] = ()
    ) -> Optional[dict[str, Any]]:
        """Return verified claims, or None for any signature/claim problem.

        PyJWT checks signature, issuer and audience. ``exp`` and ``iat`` are
        checked here against the issuer clock, the same clock that stamped them.
        """
        try:
            payload = jwt.decode(
                token,
                self._keys.public_key,
                algorithms=[self.algorithm],
                audience=self.audience,
                issuer=self.issuer,
                options={
                    "require": ["exp", "iat", "iss", "aud", "sub", *required],
                    "verify_exp": False,
                    "verify_iat": False,
                },
            )
        except jwt.PyJWTError as exc:
            logger.info("jwt_rejected", token_type=token_type, reason=type(exc).__name__)
            return None
        except (TypeError, ValueError) as exc:
            logger.info("jwt_malformed", token_type=token_type, error=str(exc))
            return None
        if payload.get("token_type") != token_type:
            logger.info(
                "jwt_wrong_type", expected=token_type, actual=payload.get("token_type")
            )
            return None
        return payload if self._within_lifetime(payload, token_type) else None

    def _within_lifetime(self, payload: dict[str, Any], token_type: str) -> bool:
        now = self._clock().timestamp()
        try:
            expires_at = int(payload["exp"])
            issued_at = int(payload["iat"])
        except (TypeError, ValueError):
            logger.info("jwt_malformed", token_type=token_type, error="non-numeric exp/iat")
            return False
        if expires_at <= now - self._leeway:
            logger.info("jwt_rejected", token_type=token_type, reason="ExpiredSignatureError")
            return False
        if issued_at > now + self._leeway:
            logger.info("jwt_rejected", token_type=token_type, reason="ImmatureSignatureError")
            return False
        return True
