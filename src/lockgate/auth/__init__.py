"""LockGate authentication."""

from lockgate.auth.context import AuthContext, ChannelIdentity
from lockgate.auth.token import DEV_TENANT_ID, extract_bearer, verify_channel_token

__all__ = [
    "AuthContext",
    "ChannelIdentity",
    "DEV_TENANT_ID",
    "extract_bearer",
    "verify_channel_token",
]
