"""
JWT token service: sign, verify and refresh access/refresh token pairs

The service is stateless. Rotation bookkeeping lives in the refresh token
family store; ``refresh`` only mints a new pair from a valid refresh token and
leaves it to the caller to rotate the family with the old and new hashes.
"""

import hashlib
import secrets
from datetime import datetime, timezone
from typing import Any, Callable, Dict, Optional

import jwt
import structlog

from sessionguard.core.config import TokenSettings
from sessionguard.core.errors import (
    InternalError,
    InvalidTokenError,
    MalformedTokenError,
    TokenExpiredError,
)
from sessionguard.models.auth import TokenPair, TokenPayload
from sessionguard.models.base import TokenType, UserRole
from sessionguard.utils.async_utils import run_in_thread
from sessionguard.utils.date_utils import utc_now

logger = structlog.get_logger(__name__)


def hash_token(token: str) -> str:
    """SHA-256 hex digest used as the storage key for any token"""
    return hashlib.sha256(token.encode()).hexdigest()


class TokenService:
    """Issues and validates HS256 JWT pairs"""

    def __init__(
        self,
        settings: TokenSettings,
        clock: Callable[[], datetime] = utc_now,
    ):
        if not settings.secret_key or not settings.secret_key.strip():
            raise ValueError("TokenService requires a non-empty secret key")
        self.settings = settings
        self._clock = clock

    # --- encoding ---

    def _encode(self, payload: TokenPayload, token_type: TokenType) -> str:
        now = self._clock()
        ttl = (
            self.settings.access_token_ttl
            if token_type == TokenType.ACCESS
            else self.settings.refresh_token_ttl
        )
        claims: Dict[str, Any] = {
            "sub": payload.sub,
            "role": payload.role.value,
            "type": token_type.value,
            # Integer epoch seconds for robust decoding
            "iat": int(now.timestamp()),
            "exp": int((now + ttl).timestamp()),
            "jti": secrets.token_urlsafe(16),
        }
        if payload.family_id:
            claims["fid"] = payload.family_id
        return jwt.encode(claims, self.settings.secret_key, algorithm=self.settings.algorithm)

    def _encode_pair(self, payload: TokenPayload) -> TokenPair:
        return TokenPair(
            access_token=self._encode(payload, TokenType.ACCESS),
            refresh_token=self._encode(payload, TokenType.REFRESH),
            expires_in=int(self.settings.access_token_ttl.total_seconds()),
        )

    def _decode(self, token: str) -> Dict[str, Any]:
        # Time claims are checked against the injected clock, not PyJWT's
        claims = jwt.decode(
            token,
            self.settings.secret_key,
            algorithms=[self.settings.algorithm],
            options={
                "verify_exp": False,
                "verify_iat": False,
                "require": ["sub", "exp", "type"],
            },
        )
        if int(claims["exp"]) <= int(self._clock().timestamp()):
            raise jwt.ExpiredSignatureError("Signature has expired")
        return claims

    # --- public API ---

    async def sign(self, payload: TokenPayload) -> TokenPair:
        """Mint an access/refresh pair for the payload's subject"""
        try:
            return await run_in_thread(self._encode_pair, payload)
        except (jwt.PyJWTError, TypeError, ValueError) as exc:
            logger.error("token.sign_failed", sub=payload.sub, error=str(exc))
            raise InternalError("Failed to sign token") from exc

    async def verify(
        self, token: str, expected_type: TokenType = TokenType.ACCESS
    ) -> TokenPayload:
        """Validate signature, expiry and type; return the embedded claims"""
        if not token or token.count(".") != 2:
            raise MalformedTokenError()

        try:
            claims = await run_in_thread(self._decode, token)
        except jwt.ExpiredSignatureError as exc:
            raise TokenExpiredError() from exc
        except jwt.DecodeError as exc:
            # DecodeError covers undecodable segments; a bad signature is
            # its InvalidSignatureError subclass
            if isinstance(exc, jwt.InvalidSignatureError):
                logger.warning("token.invalid_signature")
                raise InvalidTokenError("Invalid token signature") from exc
            raise MalformedTokenError() from exc
        except jwt.PyJWTError as exc:
            logger.warning("token.validation_error", error=str(exc))
            raise InvalidTokenError() from exc

        if claims.get("type") != expected_type.value:
            raise InvalidTokenError(f"Expected {expected_type.value} token")

        try:
            role = UserRole(claims.get("role"))
        except ValueError as exc:
            raise InvalidTokenError("Unknown role claim") from exc

        return TokenPayload(
            sub=str(claims["sub"]),
            role=role,
            family_id=claims.get("fid"),
            exp=datetime.fromtimestamp(int(claims["exp"]), tz=timezone.utc),
        )

    async def refresh(self, refresh_token: str) -> TokenPair:
        """Verify a refresh token and mint a fresh pair for the same session"""
        payload = await self.verify(refresh_token, expected_type=TokenType.REFRESH)
        carried = TokenPayload(sub=payload.sub, role=payload.role, family_id=payload.family_id)
        return await self.sign(carried)

    def decode_expiry(self, token: str) -> Optional[datetime]:
        """Read ``exp`` without verification; used to size blacklist entries"""
        try:
            claims = jwt.decode(token, options={"verify_signature": False})
        except jwt.PyJWTError:
            return None
        exp = claims.get("exp")
        if exp is None:
            return None
        return datetime.fromtimestamp(int(exp), tz=timezone.utc)
