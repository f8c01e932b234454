"""JWT verification producing a BillingContext.

Tokens are issued by the platform's identity service and signed with a shared
HS256 secret. This module only verifies them and reads the billing claims.
"""
from datetime import datetime, timedelta, timezone
from typing import Optional

import jwt

from agency_billing.auth.context import BillingContext, Role
from agency_billing.config import Settings


class JWTAuth:
    """JWT handler bound to the configured secret and algorithm."""

    def __init__(self, settings: Settings):
        self.secret_key = settings.jwt_secret_key
        self.algorithm = settings.jwt_algorithm
        self.access_token_expire_minutes = 60

    def create_access_token(self, actor_id: str, role: Role, tenant_id: Optional[int] = None) -> str:
        """
        Create an access token. Used by tooling and tests.

        Args:
            actor_id: User identifier
            role: Billing role
            tenant_id: Tenant the user belongs to

        Returns:
            Encoded JWT token
        """
        now = datetime.now(timezone.utc)
        claims = {
            "sub": actor_id,
            "role": role.value,
            "tenant_id": tenant_id,
            "iat": now,
            "exp": now + timedelta(minutes=self.access_token_expire_minutes),
            "type": "access",
        }
        return jwt.encode(claims, self.secret_key, algorithm=self.algorithm)

    def verify_access_token(self, token: str) -> BillingContext:
        """
        Verify a token and build the caller context.

        Raises:
            jwt.InvalidTokenError: If the token is invalid, expired or lacks claims
        """
        payload = jwt.decode(
            token,
            self.secret_key,
            algorithms=[self.algorithm],
            options={"require": ["sub", "exp", "role"]},
        )
        if payload.get("type") != "access":
            raise jwt.InvalidTokenError("Invalid token type")
        try:
            role = Role(payload["role"])
        except ValueError:
            raise jwt.InvalidTokenError(f"Unknown role {payload['role']!r}") from None

        tenant_id = payload.get("tenant_id")
        return BillingContext(
            tenant_id=int(tenant_id) if tenant_id is not None else None,
            actor_id=str(payload["sub"]),
            role=role,
        )
