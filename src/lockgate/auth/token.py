"""Token verification for the realtime channel."""

from __future__ import annotations

import logging
from uuid import UUID

from jose import JWTError, jwt

from lockgate.auth.context import ChannelIdentity
from lockgate.config import Environment, Settings
from lockgate.engine.errors import UnauthorizedError

logger = logging.getLogger(__name__)

DEV_TENANT_ID = UUID("00000000-0000-0000-0000-000000000000")


def _parse_tenant(value: object) -> UUID:
    try:
        return UUID(str(value))
    except ValueError:
        raise UnauthorizedError("Token carries an invalid tenant_id")


def extract_bearer(authorization: str | None) -> str | None:
    if authorization and authorization.startswith("Bearer "):
        return authorization[7:]
    return None


def verify_channel_token(
    token: str | None,
    settings: Settings,
    *,
    dev_user_id: str | None = None,
    dev_display_name: str | None = None,
    dev_tenant_id: str | None = None,
) -> ChannelIdentity:
    """
    Resolve the identity behind a realtime connection.

    Production tokens are JWTs signed with ``jwt_secret`` carrying ``sub``
    (holder id), ``name`` (display name) and ``tenant_id``. In insecure dev
    mode an unsigned identity may be passed as query parameters instead.

    Raises:
        UnauthorizedError: token missing, malformed, expired or badly signed
    """
    insecure = settings.allow_insecure_dev and settings.env == Environment.DEVELOPMENT

    if not token:
        if insecure and dev_user_id:
            return ChannelIdentity(
                tenant_id=_parse_tenant(dev_tenant_id) if dev_tenant_id else DEV_TENANT_ID,
                user_id=dev_user_id,
                display_name=dev_display_name or dev_user_id,
                auth_type="insecure_dev",
            )
        raise UnauthorizedError("Authentication token required")

    if not settings.jwt_secret:
        raise UnauthorizedError("JWT verification key not configured")

    try:
        payload = jwt.decode(token, settings.jwt_secret, algorithms=[settings.jwt_algorithm])
    except JWTError as e:
        logger.debug(f"Rejected realtime token: {e}")
        raise UnauthorizedError("Invalid or expired authentication token")

    user_id = payload.get("sub")
    if not user_id:
        raise UnauthorizedError("Token has no subject")

    tenant_claim = payload.get("tenant_id")
    if tenant_claim is None and not insecure:
        raise UnauthorizedError("Token has no tenant_id")

    return ChannelIdentity(
        tenant_id=_parse_tenant(tenant_claim) if tenant_claim is not None else DEV_TENANT_ID,
        user_id=str(user_id),
        display_name=str(payload.get("name") or payload.get("email") or user_id),
        auth_type="jwt",
    )
