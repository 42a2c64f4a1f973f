"""
Webhook subscriptions and signed event delivery

Deliveries are fire-and-forget from the publisher's point of view: the
dispatcher spawns one supervised task per matching subscription. Each POST
goes through a per-subscription circuit breaker and, optionally, a retry
policy. Failures end up as ``WebhookDelivery`` records and log lines; they are
never raised to whoever published the event. Durable redelivery belongs to a
job queue, not to this module.
"""

import asyncio
import hashlib
import hmac
import json
import uuid
from typing import Any, Callable, Dict, List, Optional, Sequence, Union

import httpx
import structlog

from sessionguard.core.config import WebhookSettings
from sessionguard.core.errors import NotFoundError
from sessionguard.models.events import DomainEvent, DomainEventType
from sessionguard.models.webhooks import WebhookDelivery, WebhookSubscription
from sessionguard.services.event_bus import DomainEventBus
from sessionguard.services.task_registry import TaskRegistry, task_registry
from sessionguard.utils.circuit_breaker import (
    CircuitBreakerManager,
    CircuitOpenError,
    circuit_manager,
)
from sessionguard.utils.retry import RetryPolicy

logger = structlog.get_logger(__name__)

SIGNATURE_PREFIX = "sha256="


# --- Signing ---


def encode_body(event: DomainEvent) -> bytes:
    """Canonical compact JSON body for an event"""
    return json.dumps(event.wire_body(), separators=(",", ":"), default=str).encode()


def sign_payload(body: bytes, secret: str) -> str:
    """Generate HMAC signature for webhook payload"""
    return hmac.new(secret.encode(), body, hashlib.sha256).hexdigest()


def verify_signature(body: Union[bytes, str], signature: str, secret: str) -> bool:
    """Verify an ``X-Webhook-Signature`` header against the received body"""
    if isinstance(body, str):
        body = body.encode()
    if not signature:
        return False
    provided = signature[len(SIGNATURE_PREFIX):] if signature.startswith(SIGNATURE_PREFIX) else signature
    return hmac.compare_digest(sign_payload(body, secret), provided)


# --- Registry ---


class InMemoryWebhookRegistry:
    """Subscriptions keyed by id plus an append-only delivery log"""

    def __init__(self):
        self.webhooks: Dict[str, WebhookSubscription] = {}
        self.deliveries: List[WebhookDelivery] = []

    def create(
        self,
        url: str,
        events: Optional[Sequence[DomainEventType]] = None,
        secret: str = "",
    ) -> WebhookSubscription:
        sub = WebhookSubscription(url=url, events=list(events or []), secret=secret)
        self.webhooks[sub.id] = sub
        logger.info(
            "webhook.registered",
            webhook_id=sub.id,
            events=[e.value for e in sub.events] or "*",
        )
        return sub

    def get(self, webhook_id: str) -> WebhookSubscription:
        sub = self.webhooks.get(webhook_id)
        if sub is None:
            raise NotFoundError("Webhook subscription")
        return sub

    def list(self) -> List[WebhookSubscription]:
        return list(self.webhooks.values())

    def update(
        self,
        webhook_id: str,
        url: Optional[str] = None,
        events: Optional[Sequence[DomainEventType]] = None,
        secret: Optional[str] = None,
    ) -> WebhookSubscription:
        current = self.get(webhook_id)
        changes: Dict[str, Any] = {}
        if url is not None:
            changes["url"] = url
        if events is not None:
            changes["events"] = list(events)
        if secret is not None:
            changes["secret"] = secret
        # Re-validate so a bad url or empty secret is rejected
        updated = WebhookSubscription.model_validate({**current.model_dump(), **changes})
        self.webhooks[webhook_id] = updated
        logger.info("webhook.updated", webhook_id=webhook_id, fields=sorted(changes))
        return updated

    def remove(self, webhook_id: str) -> None:
        if webhook_id not in self.webhooks:
            raise NotFoundError("Webhook subscription")
        del self.webhooks[webhook_id]
        logger.info("webhook.unregistered", webhook_id=webhook_id)

    def set_active(self, webhook_id: str, active: bool) -> WebhookSubscription:
        sub = self.get(webhook_id).model_copy(update={"active": active})
        self.webhooks[webhook_id] = sub
        return sub

    def find_by_event(self, event_type: DomainEventType) -> List[WebhookSubscription]:
        return [sub for sub in self.webhooks.values() if sub.matches(event_type)]

    def record_delivery(self, delivery: WebhookDelivery) -> None:
        self.deliveries.append(delivery)

    def list_deliveries(
        self, webhook_id: Optional[str] = None, limit: int = 100
    ) -> List[WebhookDelivery]:
        """Most recent deliveries first"""
        matching = [
            d for d in reversed(self.deliveries)
            if webhook_id is None or d.webhook_id == webhook_id
        ]
        return matching[:limit]


# --- Dispatcher ---


class WebhookDeliveryError(Exception):
    """Endpoint answered with a server error"""

    def __init__(self, status_code: int):
        self.status_code = status_code
        super().__init__(f"HTTP {status_code}")


class WebhookDispatcher:
    """Signs and POSTs domain events to matching subscriptions"""

    def __init__(
        self,
        registry: InMemoryWebhookRegistry,
        client: Optional[httpx.AsyncClient] = None,
        settings: Optional[WebhookSettings] = None,
        retry_policy: Optional[RetryPolicy] = None,
        breakers: Optional[CircuitBreakerManager] = None,
        tasks: Optional[TaskRegistry] = None,
        breaker_options: Optional[Dict[str, Any]] = None,
    ):
        self.registry = registry
        self.settings = settings or WebhookSettings()
        self.retry_policy = retry_policy
        self._client = client
        self._owns_client = client is None
        self._breakers = breakers if breakers is not None else circuit_manager
        self._tasks = tasks if tasks is not None else task_registry
        self._breaker_options = breaker_options or {}

    @property
    def client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(timeout=self.settings.timeout)
        return self._client

    async def aclose(self) -> None:
        if self._owns_client and self._client is not None:
            await self._client.aclose()
            self._client = None

    def attach(self, bus: DomainEventBus) -> Callable[[], None]:
        """Deliver every published event; returns the unsubscribe handle"""
        return bus.subscribe_all(self.dispatch)

    def dispatch(self, event: DomainEvent) -> List[asyncio.Task]:
        subscriptions = self.registry.find_by_event(event.type)
        tasks = [
            self._tasks.spawn(
                self.deliver(sub, event), name=f"webhook:{sub.id}:{event.id}"
            )
            for sub in subscriptions
        ]
        if tasks:
            logger.debug(
                "webhook.dispatched", event_type=event.type.value, deliveries=len(tasks)
            )
        return tasks

    def _headers(self, sub: WebhookSubscription, event: DomainEvent, delivery_id: str, body: bytes) -> Dict[str, str]:
        return {
            "Content-Type": "application/json",
            "User-Agent": self.settings.user_agent,
            "X-Webhook-Id": sub.id,
            "X-Webhook-Delivery": delivery_id,
            "X-Webhook-Signature": SIGNATURE_PREFIX + sign_payload(body, sub.secret),
            "X-Webhook-Event": event.type.value,
        }

    async def _post(self, url: str, body: bytes, headers: Dict[str, str]) -> httpx.Response:
        response = await self.client.post(
            url, content=body, headers=headers, timeout=self.settings.timeout
        )
        if response.status_code >= 500:
            raise WebhookDeliveryError(response.status_code)
        return response

    async def deliver(self, sub: WebhookSubscription, event: DomainEvent) -> WebhookDelivery:
        """Deliver one event to one subscription and record the outcome"""
        delivery_id = f"del_{uuid.uuid4().hex[:12]}"
        url = str(sub.url)
        body = encode_body(event)
        headers = self._headers(sub, event, delivery_id, body)
        breaker = self._breakers.get_or_create(
            f"webhook:{sub.id}",
            expected_exception=(httpx.HTTPError, WebhookDeliveryError),
            **self._breaker_options,
        )

        attempts = 0

        async def attempt() -> httpx.Response:
            nonlocal attempts
            attempts += 1
            return await breaker.call(self._post, url, body, headers)

        status = 0
        error: Optional[str] = None
        try:
            if self.retry_policy is not None:
                response = await self.retry_policy.execute(attempt)
            else:
                response = await attempt()
            status = response.status_code
            if not 200 <= status < 300:
                error = f"HTTP {status}"
        except WebhookDeliveryError as exc:
            status = exc.status_code
            error = str(exc)
        except CircuitOpenError as exc:
            error = exc.message
        except httpx.HTTPError as exc:
            error = str(exc) or type(exc).__name__

        delivery = WebhookDelivery(
            id=delivery_id,
            webhook_id=sub.id,
            event_id=event.id,
            url=url,
            status=status,
            success=error is None,
            attempt_number=max(attempts, 1),
            error=error,
        )
        self.registry.record_delivery(delivery)

        if delivery.success:
            logger.debug(
                "webhook.delivered",
                webhook_id=sub.id,
                delivery_id=delivery_id,
                status=status,
            )
        else:
            logger.warning(
                "webhook.delivery_failed",
                webhook_id=sub.id,
                delivery_id=delivery_id,
                url=url,
                status=status,
                attempts=delivery.attempt_number,
                error=error,
            )
        return delivery
