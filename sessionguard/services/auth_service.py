"""
Session orchestration: login, refresh rotation, logout and token checks

``AuthService`` wires the token service, lockout tracker, refresh token family
store, blacklist and event bus together. The user directory and password
hashing live outside this package and are consumed through the
``UserDirectory`` and ``PasswordVerifier`` protocols.
"""

from datetime import datetime, timedelta
from typing import Any, Dict, Optional, Protocol

import structlog
from fastapi import Depends, Security
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer

from sessionguard.core.config import SessionSettings
from sessionguard.core.errors import (
    AccountDisabledError,
    AccountLockedError,
    FamilyRevokedError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidTokenError,
    NotFoundError,
    TokenReuseError,
    TokenRevokedError,
)
from sessionguard.logging_config import bind_request_context
from sessionguard.models.auth import TokenPair, TokenPayload, UserAccount
from sessionguard.models.base import TokenType
from sessionguard.models.events import DomainEventType, create_event
from sessionguard.services.account_lockout import AccountLockout, normalize_email
from sessionguard.services.auth.tokens import TokenService, hash_token
from sessionguard.services.event_bus import DomainEventBus
from sessionguard.services.token_blacklist import InMemoryTokenBlacklist
from sessionguard.services.token_manager import RefreshTokenStore, new_family_id
from sessionguard.utils.date_utils import Clock, utc_now

logger = structlog.get_logger(__name__)


class UserDirectory(Protocol):
    async def get_by_email(self, email: str) -> Optional[UserAccount]: ...


class PasswordVerifier(Protocol):
    async def verify(self, plain_password: str, password_hash: str) -> bool: ...


class AuthService:
    """Authentication service wrapping the session security components"""

    def __init__(
        self,
        users: UserDirectory,
        passwords: PasswordVerifier,
        tokens: TokenService,
        lockout: AccountLockout,
        families: RefreshTokenStore,
        blacklist: Optional[InMemoryTokenBlacklist] = None,
        events: Optional[DomainEventBus] = None,
        session_settings: Optional[SessionSettings] = None,
        clock: Clock = utc_now,
    ):
        self.users = users
        self.passwords = passwords
        self.tokens = tokens
        self.lockout = lockout
        self.families = families
        self.blacklist = (
            blacklist if blacklist is not None else InMemoryTokenBlacklist(clock=clock)
        )
        self.events = events if events is not None else DomainEventBus()
        self.session_settings = session_settings or SessionSettings()
        self._clock = clock

    def _publish(
        self,
        event_type: DomainEventType,
        user_id: Optional[str] = None,
        payload: Optional[Dict[str, Any]] = None,
        ip: Optional[str] = None,
    ) -> None:
        self.events.publish(create_event(event_type, user_id=user_id, payload=payload, ip=ip))

    def _expiry_of(self, token: str, fallback: timedelta) -> datetime:
        return self.tokens.decode_expiry(token) or self._clock() + fallback

    # --- login ---

    async def login(self, email: str, password: str, ip: Optional[str] = None) -> TokenPair:
        """Authenticate user with email and password and open a new session"""
        email_key = normalize_email(email)

        locked_until = await self.lockout.is_locked(email_key)
        if locked_until is not None:
            logger.info("auth.login_blocked", email=email_key)
            raise AccountLockedError(locked_until)

        user = await self.users.get_by_email(email_key)
        if user is None:
            # Count it anyway so an unknown email looks like a wrong password
            await self.lockout.record_failed_attempt(email_key)
            self._publish(
                DomainEventType.LOGIN_FAILED,
                payload={"email": email_key, "reason": "invalid_credentials"},
                ip=ip,
            )
            raise InvalidCredentialsError()

        if not await self.passwords.verify(password, user.password_hash):
            locked = await self.lockout.record_failed_attempt(email_key)
            if locked:
                locked_until = await self.lockout.is_locked(email_key)
                logger.warning("auth.account_locked", user_id=user.id)
                self._publish(
                    DomainEventType.ACCOUNT_LOCKED,
                    user_id=user.id,
                    payload={
                        "email": email_key,
                        "locked_until": locked_until.isoformat() if locked_until else None,
                    },
                    ip=ip,
                )
                raise AccountLockedError(locked_until)
            self._publish(
                DomainEventType.LOGIN_FAILED,
                user_id=user.id,
                payload={"email": email_key, "reason": "invalid_credentials"},
                ip=ip,
            )
            raise InvalidCredentialsError()

        await self.lockout.reset_attempts(email_key)

        if not user.is_active:
            logger.info("auth.login_inactive", user_id=user.id, status=user.status.value)
            raise AccountDisabledError()

        # The family id is embedded in the refresh token, so allocate it first
        family_id = new_family_id()
        pair = await self.tokens.sign(
            TokenPayload(sub=user.id, role=user.role, family_id=family_id)
        )
        await self.families.create_family(
            user.id, hash_token(pair.refresh_token), family_id=family_id
        )

        logger.info("auth.login_success", user_id=user.id, family_id=family_id)
        self._publish(
            DomainEventType.LOGIN_SUCCESS,
            user_id=user.id,
            payload={"family_id": family_id},
            ip=ip,
        )
        return pair

    # --- refresh ---

    async def refresh(self, refresh_token: str, ip: Optional[str] = None) -> TokenPair:
        """Rotate a refresh token; a superseded token revokes every session"""
        old_hash = hash_token(refresh_token)
        if await self.blacklist.is_blacklisted(old_hash):
            logger.warning("auth.refresh_blacklisted")
            raise TokenRevokedError()

        payload = await self.tokens.verify(refresh_token, expected_type=TokenType.REFRESH)
        if not payload.family_id:
            raise InvalidTokenError("Refresh token is not bound to a session")

        pair = await self.tokens.sign(
            TokenPayload(sub=payload.sub, role=payload.role, family_id=payload.family_id)
        )

        try:
            await self.families.rotate(
                payload.family_id, old_hash, hash_token(pair.refresh_token)
            )
        except TokenReuseError as exc:
            user_id = exc.user_id or payload.sub
            revoked = await self.families.revoke_all_for_user(user_id)
            logger.warning(
                "auth.token_reuse_detected",
                user_id=user_id,
                family_id=exc.family_id,
                revoked_sessions=revoked,
            )
            self._publish(
                DomainEventType.TOKEN_REUSE_DETECTED,
                user_id=user_id,
                payload={"family_id": exc.family_id, "revoked_sessions": revoked},
                ip=ip,
            )
            raise
        except (NotFoundError, FamilyRevokedError) as exc:
            logger.info("auth.refresh_rejected", family_id=payload.family_id, reason=type(exc).__name__)
            raise TokenRevokedError("Session is no longer valid") from exc

        logger.debug("auth.refresh_success", user_id=payload.sub, family_id=payload.family_id)
        return pair

    # --- logout ---

    async def logout(
        self, access_token: str, refresh_token: str, ip: Optional[str] = None
    ) -> None:
        access_hash = hash_token(access_token)
        refresh_hash = hash_token(refresh_token)

        settings = self.tokens.settings
        await self.blacklist.add(
            access_hash, self._expiry_of(access_token, settings.access_token_ttl)
        )
        await self.blacklist.add(
            refresh_hash, self._expiry_of(refresh_token, settings.refresh_token_ttl)
        )

        family = await self.families.find_by_token_hash(refresh_hash)
        user_id = None
        if family is not None:
            user_id = family.user_id
            await self.families.revoke_family(family.id)

        logger.info("auth.logout", user_id=user_id)
        self._publish(
            DomainEventType.LOGOUT,
            user_id=user_id,
            payload={"family_id": family.id if family else None},
            ip=ip,
        )

    async def logout_all(self, user_id: str, ip: Optional[str] = None) -> int:
        """Revoke every refresh token family the user holds"""
        revoked = await self.families.revoke_all_for_user(user_id)
        logger.info("auth.logout_all", user_id=user_id, revoked_sessions=revoked)
        self._publish(
            DomainEventType.SESSIONS_REVOKED,
            user_id=user_id,
            payload={"revoked_sessions": revoked},
            ip=ip,
        )
        return revoked

    # --- request authentication ---

    async def authenticate(self, access_token: str) -> TokenPayload:
        """Verify an access token and reject it if it was logged out"""
        payload = await self.tokens.verify(access_token, expected_type=TokenType.ACCESS)
        if await self.blacklist.is_blacklisted(hash_token(access_token)):
            raise TokenRevokedError()
        return payload

    async def prune_sessions(self, max_age: Optional[timedelta] = None) -> int:
        """Delete revoked families older than ``max_age`` and expired blacklist entries"""
        pruned = await self.families.prune(max_age or self.session_settings.family_max_age)
        await self.blacklist.prune()
        return pruned


# --- FastAPI integration ---

security = HTTPBearer()


def current_user_dependency(service: AuthService):
    """Build a FastAPI dependency that resolves the bearer token's claims"""

    async def get_current_user(
        credentials: HTTPAuthorizationCredentials = Security(security),
    ) -> TokenPayload:
        payload = await service.authenticate(credentials.credentials)
        bind_request_context(user_id=payload.sub)
        return payload

    return get_current_user


def require_role(service: AuthService, *roles):
    """Dependency that additionally restricts access to the given roles"""
    get_current_user = current_user_dependency(service)

    async def role_checker(current_user: TokenPayload = Depends(get_current_user)) -> TokenPayload:
        if roles and current_user.role not in roles:
            raise ForbiddenError("Insufficient permissions")
        return current_user

    return role_checker
