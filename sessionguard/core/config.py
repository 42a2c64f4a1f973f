"""
Core configuration for sessionguard

Centralizes the tunable knobs (token lifetimes, lockout policy, breaker and
retry defaults, webhook delivery limits) so components never scatter magic
numbers. Values are read from environment variables; a ``.env`` file is
honoured when present. Components always accept explicit arguments, settings
only provide the defaults.
"""

import os
from dataclasses import dataclass
from datetime import timedelta

from dotenv import load_dotenv

load_dotenv()


# ────────────────────────────────────────────────────────────
#  Env helpers
# ────────────────────────────────────────────────────────────

def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)) or default)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)) or default)
    except ValueError:
        return default


# ────────────────────────────────────────────────────────────
#  Tokens
# ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class TokenSettings:
    secret_key: str
    algorithm: str = "HS256"
    access_token_ttl: timedelta = timedelta(minutes=15)
    refresh_token_ttl: timedelta = timedelta(days=7)

    @classmethod
    def from_env(cls) -> "TokenSettings":
        secret = os.getenv("JWT_SECRET_KEY", "")
        if not secret.strip():
            raise ValueError(
                "JWT_SECRET_KEY environment variable must be set. "
                "Generate one with: python -c 'import secrets; print(secrets.token_urlsafe(32))'"
            )
        return cls(
            secret_key=secret,
            algorithm=os.getenv("JWT_ALGORITHM", "HS256"),
            access_token_ttl=timedelta(
                minutes=_env_int("JWT_ACCESS_TOKEN_EXPIRE_MINUTES", 15)
            ),
            refresh_token_ttl=timedelta(
                days=_env_int("JWT_REFRESH_TOKEN_EXPIRE_DAYS", 7)
            ),
        )


# ────────────────────────────────────────────────────────────
#  Lockout / sessions
# ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class LockoutSettings:
    max_attempts: int = 5
    lockout_duration: float = 15 * 60.0  # seconds

    @classmethod
    def from_env(cls) -> "LockoutSettings":
        return cls(
            max_attempts=_env_int("LOCKOUT_MAX_ATTEMPTS", 5),
            lockout_duration=_env_float("LOCKOUT_DURATION_SECONDS", 15 * 60.0),
        )


@dataclass(frozen=True)
class SessionSettings:
    # Revoked families older than this are pruned
    family_max_age: timedelta = timedelta(days=30)

    @classmethod
    def from_env(cls) -> "SessionSettings":
        return cls(
            family_max_age=timedelta(days=_env_int("REFRESH_FAMILY_MAX_AGE_DAYS", 30))
        )


# ────────────────────────────────────────────────────────────
#  Resilience
# ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class CircuitBreakerSettings:
    failure_threshold: int = 5
    reset_timeout: float = 30.0
    half_open_success_threshold: int = 2

    @classmethod
    def from_env(cls) -> "CircuitBreakerSettings":
        return cls(
            failure_threshold=_env_int("CIRCUIT_BREAKER_FAILURE_THRESHOLD", 5),
            reset_timeout=_env_float("CIRCUIT_BREAKER_RESET_TIMEOUT", 30.0),
            half_open_success_threshold=_env_int(
                "CIRCUIT_BREAKER_HALF_OPEN_SUCCESSES", 2
            ),
        )


@dataclass(frozen=True)
class RetrySettings:
    max_retries: int = 3
    base_delay: float = 0.1
    max_delay: float = 5.0
    jitter: float = 0.2

    @classmethod
    def from_env(cls) -> "RetrySettings":
        return cls(
            max_retries=_env_int("RETRY_MAX_RETRIES", 3),
            base_delay=_env_float("RETRY_BASE_DELAY", 0.1),
            max_delay=_env_float("RETRY_MAX_DELAY", 5.0),
            jitter=_env_float("RETRY_JITTER", 0.2),
        )


# ────────────────────────────────────────────────────────────
#  Webhooks
# ────────────────────────────────────────────────────────────

@dataclass(frozen=True)
class WebhookSettings:
    timeout: float = 5.0
    user_agent: str = "sessionguard-webhook/1.0"

    @classmethod
    def from_env(cls) -> "WebhookSettings":
        return cls(
            timeout=_env_float("WEBHOOK_TIMEOUT_SECONDS", 5.0),
            user_agent=os.getenv("WEBHOOK_USER_AGENT", "sessionguard-webhook/1.0"),
        )
