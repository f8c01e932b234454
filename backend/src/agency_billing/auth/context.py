"""Resolved caller context and billing roles.

Roles:
- Platform Admin: operates collections for every tenant
- Owner / Billing Manager: manage their own tenant's billing
- Viewer: read-only access to their tenant's billing
"""
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict


class Role(str, Enum):
    """Caller roles relevant to billing."""

    PLATFORM_ADMIN = "platform_admin"
    OWNER = "owner"
    BILLING_MANAGER = "billing_manager"
    VIEWER = "viewer"


TENANT_BILLING_ROLES = {Role.OWNER, Role.BILLING_MANAGER}
TENANT_READ_ROLES = {Role.OWNER, Role.BILLING_MANAGER, Role.VIEWER, Role.PLATFORM_ADMIN}


class BillingContext(BaseModel):
    """Already-authenticated caller: tenant, actor and role."""

    model_config = ConfigDict(frozen=True)

    tenant_id: Optional[int] = None
    actor_id: str
    role: Role

    @property
    def can_manage_tenant_billing(self) -> bool:
        return self.role in TENANT_BILLING_ROLES and self.tenant_id is not None

    @property
    def can_read_tenant_billing(self) -> bool:
        return self.role in TENANT_READ_ROLES and self.tenant_id is not None

    @property
    def is_platform_admin(self) -> bool:
        return self.role == Role.PLATFORM_ADMIN
