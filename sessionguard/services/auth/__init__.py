"""Token issuance and verification"""

from sessionguard.services.auth.tokens import TokenService, hash_token

__all__ = ["TokenService", "hash_token"]
