"""
Webhook subscription and delivery models
"""

import uuid
from datetime import datetime, timezone
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, HttpUrl

from sessionguard.models.events import DomainEventType


class WebhookSubscription(BaseModel):
    """An external endpoint that receives signed domain events"""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"wh_{uuid.uuid4().hex[:12]}")
    url: HttpUrl
    # Empty list means "all events"
    events: List[DomainEventType] = Field(default_factory=list)
    secret: str = Field(min_length=1, repr=False)
    active: bool = True
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))

    def matches(self, event_type: DomainEventType) -> bool:
        return self.active and (not self.events or event_type in self.events)


class WebhookDelivery(BaseModel):
    """Append-only record of one delivery outcome"""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=lambda: f"del_{uuid.uuid4().hex[:12]}")
    webhook_id: str
    event_id: str
    url: str
    status: int = 0  # HTTP status; 0 when no response was received
    success: bool = False
    attempt_number: int = 1
    delivered_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    error: Optional[str] = None
