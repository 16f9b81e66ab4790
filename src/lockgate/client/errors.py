"""Client-side errors."""


class LockClientError(Exception):
    """Base exception for LockGate client errors."""

    def __init__(self, message: str, status_code: int | None = None):
        self.message = message
        self.status_code = status_code
        super().__init__(message)


class LockTransportError(LockClientError):
    """The lock service could not be reached."""


class LockAuthError(LockClientError):
    """The lock service rejected the client's credentials."""


class LockServiceUnavailable(LockClientError):
    """The lock service answered but cannot serve lock state (fail closed)."""


class ChannelAuthFailed(LockClientError):
    """The realtime channel refused the token; re-authenticate out of band."""
