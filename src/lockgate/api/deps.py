"""API dependencies."""

import logging
import secrets
from typing import AsyncGenerator
from uuid import UUID

from fastapi import Depends, Header, HTTPException, Request
from sqlalchemy.ext.asyncio import AsyncSession

from lockgate.auth import DEV_TENANT_ID, AuthContext, extract_bearer
from lockgate.config import Environment, Settings
from lockgate.engine import LockManager
from lockgate.services import LockServices

logger = logging.getLogger("lockgate.api")


def get_services(request: Request) -> LockServices:
    return request.app.state.services


def get_settings(services: LockServices = Depends(get_services)) -> Settings:
    return services.settings


async def get_db_session(
    services: LockServices = Depends(get_services),
) -> AsyncGenerator[AsyncSession, None]:
    """Get database session."""
    async with services.database.session_factory() as session:
        try:
            yield session
            await session.commit()
        except Exception:
            await session.rollback()
            raise


def get_lock_manager(
    services: LockServices = Depends(get_services),
    session: AsyncSession = Depends(get_db_session),
) -> LockManager:
    return services.lock_manager(session)


async def get_tenant_id(
    x_tenant_id: str | None = Header(None, alias="X-Tenant-ID"),
    settings: Settings = Depends(get_settings),
) -> UUID:
    """
    Extract tenant ID from request.

    The bakery tenant is passed as a header by the dashboard's API client.
    """
    if x_tenant_id:
        try:
            return UUID(x_tenant_id)
        except ValueError:
            raise HTTPException(status_code=400, detail="Invalid tenant ID format")

    if settings.allow_insecure_dev and settings.env == Environment.DEVELOPMENT:
        return DEV_TENANT_ID

    raise HTTPException(status_code=401, detail="Missing tenant ID")


async def verify_api_key(
    authorization: str | None = Header(None),
    x_api_key: str | None = Header(None, alias="X-API-Key"),
    settings: Settings = Depends(get_settings),
) -> AuthContext:
    """
    Verify API key authentication.

    Fails closed: without a configured key, requests are rejected unless
    insecure dev mode is explicitly enabled.
    """
    if settings.allow_insecure_dev and settings.env == Environment.DEVELOPMENT:
        return AuthContext(auth_type="insecure_dev")

    api_key = extract_bearer(authorization) or x_api_key

    if not api_key:
        raise HTTPException(
            status_code=401,
            detail="Missing authorization. Use Authorization: Bearer <key> or X-API-Key header",
        )

    if settings.api_key:
        if secrets.compare_digest(api_key, settings.api_key):
            return AuthContext(auth_type="api_key")
        raise HTTPException(status_code=401, detail="Invalid API key")

    logger.error("SECURITY VIOLATION: No API key configured. Set LOCKGATE_API_KEY.")
    raise HTTPException(
        status_code=503,
        detail="Server misconfigured: authentication not properly initialized",
    )


def validate_auth_config(settings: Settings) -> None:
    """
    Validate authentication configuration at startup.

    Raises:
        RuntimeError: If configuration is insecure for the current environment
    """
    if settings.allow_insecure_dev and settings.env != Environment.DEVELOPMENT:
        raise RuntimeError(
            f"SECURITY ERROR: allow_insecure_dev=true is only permitted in development. "
            f"Current environment: {settings.env.value}. "
            f"Set LOCKGATE_ALLOW_INSECURE_DEV=false for {settings.env.value}."
        )

    if settings.allow_insecure_dev:
        logger.warning(
            "=" * 80 + "\n"
            "WARNING: Running in INSECURE DEV MODE\n"
            "  - REST authentication is DISABLED\n"
            "  - Realtime connections may identify themselves via query parameters\n"
            "  - Set LOCKGATE_ALLOW_INSECURE_DEV=false for any deployment\n"
            + "=" * 80
        )
    else:
        logger.info(f"Authentication enabled: API key + JWT realtime tokens for {settings.env.value}")
