"""
Domain event models.

Events are emitted by the auth services and consumed by subscribers
(webhooks, audit sinks, alerting). An event is immutable once created.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class DomainEventType(str, Enum):
    """Supported domain events"""

    USER_REGISTERED = "user.registered"
    USER_DELETED = "user.deleted"
    USER_UPDATED = "user.updated"
    LOGIN_SUCCESS = "login.success"
    LOGIN_FAILED = "login.failed"
    LOGOUT = "logout"
    PASSWORD_CHANGED = "password.changed"
    PASSWORD_RESET = "password.reset"
    EMAIL_VERIFIED = "email.verified"
    MFA_ENABLED = "mfa.enabled"
    MFA_DISABLED = "mfa.disabled"
    API_KEY_CREATED = "api_key.created"
    API_KEY_REVOKED = "api_key.revoked"
    ACCOUNT_LOCKED = "account.locked"
    ACCOUNT_UNLOCKED = "account.unlocked"
    TOKEN_REUSE_DETECTED = "token.reuse_detected"
    SESSIONS_REVOKED = "sessions.revoked"


class DomainEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    type: DomainEventType
    timestamp: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    user_id: Optional[str] = None
    payload: Dict[str, Any] = Field(default_factory=dict)
    ip: Optional[str] = None

    @field_validator("payload", mode="before")
    @classmethod
    def _copy_payload(cls, value: Any) -> Dict[str, Any]:
        # Detach from the caller's dict so later mutation cannot leak in
        return dict(value or {})

    def wire_body(self) -> Dict[str, Any]:
        """The JSON shape delivered to webhook subscribers"""
        return {
            "id": self.id,
            "type": self.type.value,
            "timestamp": self.timestamp.isoformat(),
            "payload": self.payload,
        }


def create_event(
    type: DomainEventType,
    user_id: Optional[str] = None,
    payload: Optional[Dict[str, Any]] = None,
    ip: Optional[str] = None,
) -> DomainEvent:
    """Event factory: stamps id and timestamp"""
    return DomainEvent(type=type, user_id=user_id, payload=payload or {}, ip=ip)
