"""Authentication context helpers."""

from dataclasses import dataclass
from typing import Literal
from uuid import UUID


@dataclass(frozen=True)
class AuthContext:
    """Authentication context for the current request."""

    auth_type: Literal["api_key", "insecure_dev", "jwt"]


@dataclass(frozen=True)
class ChannelIdentity:
    """Who is on the other end of a realtime connection."""

    tenant_id: UUID
    user_id: str
    display_name: str
    auth_type: Literal["insecure_dev", "jwt"] = "jwt"
