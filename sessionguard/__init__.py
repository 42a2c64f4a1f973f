"""sessionguard: identity-session security for async Python services.

Token issuance, refresh-token rotation with reuse detection, brute-force
lockout, plus the resilience (circuit breaker, retry) and notification
(domain events, signed webhooks) layer around them.

Subpackages follow the usual layout:

- ``core``      errors, configuration, FastAPI error mapping
- ``models``    immutable pydantic domain models
- ``database``  SQLAlchemy tables and async engine/session helpers
- ``services``  stores, trackers, event bus, webhooks, auth orchestration
- ``utils``     circuit breaker, retry policy, async/time helpers
"""

from __future__ import annotations

__version__ = "0.1.0"

__all__ = ["__version__"]
