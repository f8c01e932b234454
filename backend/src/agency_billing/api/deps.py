"""FastAPI dependencies for sessions, settings and the caller context."""
from typing import AsyncGenerator, Optional

import jwt
import structlog
from fastapi import Depends, HTTPException, Request, status
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from agency_billing.adapters.fallback.registry import FallbackProviderRegistry
from agency_billing.auth.context import BillingContext
from agency_billing.auth.jwt import JWTAuth
from agency_billing.config import Settings
from agency_billing.storage.artifact_store import ArtifactStore

logger = structlog.get_logger(__name__)

security = HTTPBearer(auto_error=False)


def get_settings(request: Request) -> Settings:
    """Settings the application was built with."""
    return request.app.state.settings


def get_artifact_store(request: Request) -> ArtifactStore:
    return request.app.state.artifact_store


def get_fallback_registry(request: Request) -> FallbackProviderRegistry:
    return request.app.state.fallback_registry


async def get_db(request: Request) -> AsyncGenerator[AsyncSession, None]:
    """
    Database session dependency.

    The request is the transaction: commit after the handler returns, roll
    back when it raises.

    Yields:
        AsyncSession: Database session for the request lifecycle
    """
    async with request.app.state.session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


async def get_billing_context(
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(security),
    settings: Settings = Depends(get_settings),
) -> BillingContext:
    """
    Resolve the caller from the bearer token.

    Raises:
        HTTPException: 401 if the token is missing, invalid or expired
    """
    if not credentials:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )

    try:
        ctx = JWTAuth(settings).verify_access_token(credentials.credentials)
    except jwt.ExpiredSignatureError:
        logger.warning("token_expired")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Token has expired",
            headers={"WWW-Authenticate": "Bearer"},
        )
    except jwt.InvalidTokenError as e:
        logger.warning("invalid_token", error=str(e))
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid authentication token",
            headers={"WWW-Authenticate": "Bearer"},
        )

    structlog.contextvars.bind_contextvars(actor_id=ctx.actor_id, tenant_id=ctx.tenant_id)
    return ctx


async def require_tenant_reader(ctx: BillingContext = Depends(get_billing_context)) -> BillingContext:
    if not ctx.can_read_tenant_billing:
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Tenant billing access required")
    return ctx


async def require_tenant_manager(ctx: BillingContext = Depends(get_billing_context)) -> BillingContext:
    if not ctx.can_manage_tenant_billing:
        logger.warning("permission_denied", role=ctx.role.value, required="tenant_billing")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Only owners and billing managers can do this")
    return ctx


async def require_platform_admin(ctx: BillingContext = Depends(get_billing_context)) -> BillingContext:
    if not ctx.is_platform_admin:
        logger.warning("permission_denied", role=ctx.role.value, required="platform_admin")
        raise HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail="Platform admin role required")
    return ctx
