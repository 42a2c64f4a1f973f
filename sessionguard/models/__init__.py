"""Immutable domain models"""

from sessionguard.models.auth import (
    LockoutRecord,
    RefreshTokenFamily,
    TokenPair,
    TokenPayload,
    UserAccount,
)
from sessionguard.models.base import AccountStatus, TokenType, UserRole
from sessionguard.models.events import DomainEvent, DomainEventType, create_event
from sessionguard.models.webhooks import WebhookDelivery, WebhookSubscription

__all__ = [
    "AccountStatus",
    "DomainEvent",
    "DomainEventType",
    "LockoutRecord",
    "RefreshTokenFamily",
    "TokenPair",
    "TokenPayload",
    "TokenType",
    "UserAccount",
    "UserRole",
    "WebhookDelivery",
    "WebhookSubscription",
    "create_event",
]
