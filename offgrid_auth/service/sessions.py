from __future__ import annotations

import asyncio
import functools
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, TypeVar, Union

from offgrid_auth.config import DevicePolicy
from offgrid_auth.logging import get_logger
from offgrid_auth.service.audit import AuditTrail
from offgrid_auth.service.credentials import CredentialStore
from offgrid_auth.service.devices import DeviceInfo, DeviceRegistry
from offgrid_auth.service.errors import ErrorCode, Failure
from offgrid_auth.service.ledger import (
    LedgerRejection,
    MintedRefreshToken,
    RefreshTokenLedger,
)
from offgrid_auth.service.stores import TransactionProvider
from offgrid_auth.service.tokens import AccessClaims, TokenIssuer
from offgrid_auth.storage.errors import IDENTITY_FIELDS, ConstraintViolation
from offgrid_auth.storage.models import (
    AuditEvent,
    Device,
    RefreshTokenRecord,
    User,
    UserProfile,
)

logger = get_logger(__name__)

T = TypeVar("T")

INVALID_CREDENTIALS_MESSAGE = "Invalid credentials"
INVALID_REFRESH_TOKEN_MESSAGE = "Invalid refresh token"


@dataclass(frozen=True)
class IssuedSession:
    user: UserProfile
    access_token: str
    refresh_token: str
    refresh_token_expires_at: datetime


@dataclass(frozen=True)
class LogoutResult:
    revoked: int


def _invalid_refresh() -> Failure:
    return Failure(ErrorCode.INVALID_REFRESH_TOKEN, INVALID_REFRESH_TOKEN_MESSAGE)


def _conflict(exc: ConstraintViolation) -> Failure:
    fields = [field for field in exc.fields if field in IDENTITY_FIELDS]
    return Failure(
        ErrorCode.CONFLICT, "Username or email already in use", {"fields": fields}
    )


def _guarded(
    operation: Callable[..., Awaitable[T]],
) -> Callable[..., Awaitable[Union[T, Failure]]]:
    """Turn unexpected faults into an opaque internal failure after logging them."""

    @functools.wraps(operation)
    async def wrapper(self: "SessionManager", *args: Any, **kwargs: Any):
        try:
            return await operation(self, *args, **kwargs)
        except Exception as exc:
            logger.error(
                "session_operation_failed",
                operation=operation.__name__,
                error_type=type(exc).__name__,
                error=str(exc),
                exc_info=True,
            )
            return Failure.internal()

    return wrapper


class SessionManager:
    """Orchestrates the session lifecycle over explicitly injected components.

    Every public operation takes pre-validated input and returns either its
    result object or a ``Failure``; domain failures never propagate as
    exceptions. Blocking password hashing runs in a worker thread.
    """

    def __init__(
        self,
        *,
        store: TransactionProvider,
        credentials: CredentialStore,
        devices: DeviceRegistry,
        issuer: TokenIssuer,
        ledger: RefreshTokenLedger,
        audit: AuditTrail,
        revoke_on_upgrade: bool = False,
        device_policy: DevicePolicy = DevicePolicy.KEEP_BOUND,
    ) -> None:
        self.store = store
        self.credentials = credentials
        self.devices = devices
        self.issuer = issuer
        self.ledger = ledger
        self.audit = audit
        self.revoke_on_upgrade = revoke_on_upgrade
        self.device_policy = DevicePolicy(device_policy)

    # ------------------------------------------------------------------
    # registration
    # ------------------------------------------------------------------

    @_guarded
    async def register(
        self,
        username: Optional[str] = None,
        email: Optional[str] = None,
        password: Optional[str] = None,
        device: Optional[DeviceInfo] = None,
    ) -> Union[IssuedSession, Failure]:
        """Create an anonymous account, or a credentialed one when a password is given."""
        if not password:
            # identity fields are only stored for credentialed accounts
            with self.store.transaction() as tx:
                user = self.credentials.create_anonymous(tx=tx)
                bound = self._bind_device(user.id, device, tx=tx)
                issued = self._issue_tokens(user, bound, tx=tx)
            self.audit.append(
                user.id, AuditEvent.USER_ANON_CREATED, self._device_meta(bound)
            )
            logger.info("user_registered", user_id=user.id, anonymous=True)
            return issued

        if not username and not email:
            return Failure(
                ErrorCode.INVALID_INPUT, "Username or email is required with a password"
            )
        password_hash = await asyncio.to_thread(self.credentials.hash_password, password)
        try:
            with self.store.transaction() as tx:
                user = self.credentials.create_credentialed(
                    password_hash, username=username, email=email, tx=tx
                )
                bound = self._bind_device(user.id, device, tx=tx)
                issued = self._issue_tokens(user, bound, tx=tx)
        except ConstraintViolation as exc:
            if not exc.is_identity_clash:
                raise
            logger.info("user_register_conflict", detail=exc.detail)
            return _conflict(exc)
        self.audit.append(user.id, AuditEvent.USER_REGISTERED, self._device_meta(bound))
        logger.info("user_registered", user_id=user.id, anonymous=False)
        return issued

    @_guarded
    async def upgrade_anonymous(
        self,
        user_id: str,
        password: Optional[str],
        username: Optional[str] = None,
        email: Optional[str] = None,
    ) -> Union[IssuedSession, Failure]:
        if not password:
            return Failure(ErrorCode.INVALID_INPUT, "Password is required")
        user = self.credentials.get(user_id)
        if user is None or not user.is_anonymous:
            return Failure(ErrorCode.INVALID_STATE, "Account is not anonymous")
        if not username and not email:
            return Failure(ErrorCode.INVALID_INPUT, "Username or email is required")

        password_hash = await asyncio.to_thread(self.credentials.hash_password, password)
        try:
            with self.store.transaction() as tx:
                upgraded = self.credentials.upgrade(
                    user_id, password_hash, username=username, email=email, tx=tx
                )
                if upgraded is None:
                    # lost the race against a concurrent upgrade
                    return Failure(ErrorCode.INVALID_STATE, "Account is not anonymous")
                revoked = 0
                if self.revoke_on_upgrade:
                    revoked = self.ledger.revoke_all_for_user(user_id, tx=tx)
                issued = self._issue_tokens(upgraded, None, tx=tx)
        except ConstraintViolation as exc:
            if not exc.is_identity_clash:
                raise
            logger.info("user_upgrade_conflict", user_id=user_id, detail=exc.detail)
            return _conflict(exc)
        meta: dict[str, Any] = {}
        if self.revoke_on_upgrade:
            meta["revoked_anonymous_tokens"] = revoked
        self.audit.append(user_id, AuditEvent.USER_UPGRADED, meta)
        logger.info("user_upgraded", user_id=user_id)
        return issued

    # ------------------------------------------------------------------
    # login / refresh / logout
    # ------------------------------------------------------------------

    @_guarded
    async def login(
        self,
        username_or_email: str,
        password: str,
        device: Optional[DeviceInfo] = None,
    ) -> Union[IssuedSession, Failure]:
        failure = Failure(ErrorCode.INVALID_CREDENTIALS, INVALID_CREDENTIALS_MESSAGE)
        user = self.credentials.find_by_login(username_or_email)
        if user is None:
            await asyncio.to_thread(self.credentials.burn_verification, password)
            self.audit.append(None, AuditEvent.LOGIN_FAILED, {"reason": "USER_NOT_FOUND"})
            logger.info("login_failed", reason="USER_NOT_FOUND")
            return failure
        if not user.password_hash:
            await asyncio.to_thread(self.credentials.burn_verification, password)
            self.audit.append(user.id, AuditEvent.LOGIN_FAILED, {"reason": "NO_PASSWORD_SET"})
            logger.info("login_failed", reason="NO_PASSWORD_SET", user_id=user.id)
            return failure
        if not await asyncio.to_thread(self.credentials.verify_password, user, password):
            self.audit.append(
                user.id, AuditEvent.LOGIN_FAILED, {"reason": "INVALID_PASSWORD"}
            )
            logger.info("login_failed", reason="INVALID_PASSWORD", user_id=user.id)
            return failure

        with self.store.transaction() as tx:
            bound = self._bind_device(user.id, device, tx=tx)
            issued = self._issue_tokens(user, bound, tx=tx)
        self.audit.append(user.id, AuditEvent.LOGIN_SUCCESS, self._device_meta(bound))
        logger.info("login_success", user_id=user.id)
        return issued

    @_guarded
    async def refresh(
        self, refresh_token: str, device: Optional[DeviceInfo] = None
    ) -> Union[IssuedSession, Failure]:
        """Exchange an active refresh token for a new pair, retiring the old one."""
        claims = self.issuer.verify_refresh(refresh_token)
        if claims is None:
            logger.info("refresh_rejected", reason="invalid_signature_or_claims")
            return _invalid_refresh()

        resolved: dict[str, Any] = {}

        def successor(previous: RefreshTokenRecord, tx: Any) -> MintedRefreshToken:
            user = self.credentials.get(previous.user_id, tx=tx)
            if user is None:
                raise LookupError(f"refresh token {previous.id} references missing user")
            bound = self._resolve_refresh_device(previous, device, tx=tx)
            issued = self.issuer.sign_refresh(user.id)
            resolved["user"] = user
            resolved["device"] = bound
            resolved["expires_at"] = issued.expires_at
            record = self.ledger.build(
                issued.token_id,
                user.id,
                issued.token,
                expires_at=issued.expires_at,
                device_id=bound.id if bound else None,
            )
            return MintedRefreshToken(token=issued.token, record=record)

        outcome = self.ledger.rotate(claims.token_id, refresh_token, successor)
        if isinstance(outcome, LedgerRejection):
            logger.info(
                "refresh_rejected",
                reason=outcome.reason.value,
                token_id=claims.token_id,
            )
            if outcome.is_replay:
                self.audit.append(
                    outcome.record.user_id,
                    AuditEvent.TOKEN_REUSE_DETECTED,
                    {
                        "token_id": outcome.record.id,
                        "replaced_by_id": outcome.record.replaced_by_id,
                    },
                )
            return _invalid_refresh()

        user: User = resolved["user"]
        bound: Optional[Device] = resolved["device"]
        access_token = self.issuer.sign_access(user.id, user.role)
        meta = {"previous_token_id": outcome.previous.id, "token_id": outcome.successor.id}
        meta.update(self._device_meta(bound))
        self.audit.append(user.id, AuditEvent.TOKEN_REFRESHED, meta)
        return IssuedSession(
            user=UserProfile.from_user(user),
            access_token=access_token,
            refresh_token=outcome.token,
            refresh_token_expires_at=resolved["expires_at"],
        )

    @_guarded
    async def logout(
        self, refresh_token: str, all_devices: bool = False
    ) -> Union[LogoutResult, Failure]:
        claims = self.issuer.verify_refresh(refresh_token)
        if claims is None:
            logger.info("logout_rejected", reason="invalid_signature_or_claims")
            return _invalid_refresh()
        checked = self.ledger.inspect(claims.token_id, refresh_token)
        if isinstance(checked, LedgerRejection):
            logger.info(
                "logout_rejected", reason=checked.reason.value, token_id=claims.token_id
            )
            return _invalid_refresh()

        if all_devices:
            revoked = self.ledger.revoke_all_for_user(checked.user_id)
            self.audit.append(checked.user_id, AuditEvent.LOGOUT_ALL, {"revoked": revoked})
            return LogoutResult(revoked=revoked)

        if not self.ledger.revoke(checked.id):
            logger.info("logout_rejected", reason="revoked", token_id=checked.id)
            return _invalid_refresh()
        self.audit.append(checked.user_id, AuditEvent.LOGOUT, {"token_id": checked.id})
        return LogoutResult(revoked=1)

    # ------------------------------------------------------------------
    # profile / verification
    # ------------------------------------------------------------------

    @_guarded
    async def get_profile(self, user_id: str) -> Union[UserProfile, Failure]:
        user = self.credentials.get(user_id)
        if user is None:
            return Failure(ErrorCode.NOT_FOUND, "User not found")
        return UserProfile.from_user(user)

    @_guarded
    async def verify_token(self, token: str) -> Union[AccessClaims, Failure]:
        claims = self.issuer.verify_access(token)
        if claims is None:
            return Failure(ErrorCode.INVALID_TOKEN, "Invalid token")
        return claims

    @_guarded
    async def set_verified(
        self, user_id: str, verified: bool
    ) -> Union[UserProfile, Failure]:
        user = self.credentials.set_verified(user_id, verified)
        if user is None:
            return Failure(ErrorCode.NOT_FOUND, "User not found")
        event = AuditEvent.USER_VERIFIED if verified else AuditEvent.USER_UNVERIFIED
        self.audit.append(user_id, event, {})
        return UserProfile.from_user(user)

    # ------------------------------------------------------------------
    # helpers
    # ------------------------------------------------------------------

    def _issue_tokens(
        self, user: User, device: Optional[Device], *, tx: Any = None
    ) -> IssuedSession:
        access_token = self.issuer.sign_access(user.id, user.role)
        refresh = self.issuer.sign_refresh(user.id)
        self.ledger.create(
            refresh.token_id,
            user.id,
            refresh.token,
            expires_at=refresh.expires_at,
            device_id=device.id if device else None,
            tx=tx,
        )
        return IssuedSession(
            user=UserProfile.from_user(user),
            access_token=access_token,
            refresh_token=refresh.token,
            refresh_token_expires_at=refresh.expires_at,
        )

    def _bind_device(
        self, user_id: str, device: Optional[DeviceInfo], *, tx: Any = None
    ) -> Optional[Device]:
        if device is None:
            return None
        return self.devices.register(user_id, device, tx=tx)

    def _resolve_refresh_device(
        self,
        previous: RefreshTokenRecord,
        supplied: Optional[DeviceInfo],
        *,
        tx: Any = None,
    ) -> Optional[Device]:
        if supplied is not None and self.device_policy == DevicePolicy.PREFER_SUPPLIED:
            return self.devices.register(previous.user_id, supplied, tx=tx)
        if previous.device_id:
            bound = self.devices.touch(previous.device_id, tx=tx)
            if bound is not None:
                return bound
        if supplied is not None:
            return self.devices.register(previous.user_id, supplied, tx=tx)
        return None

    @staticmethod
    def _device_meta(device: Optional[Device]) -> dict[str, Any]:
        if device is None:
            return {}
        return {"device_id": device.id, "device_type": device.type.value}
