"""LockGate engine errors.

Conflicts and rejected renewals are ordinary outcomes and are returned as
values; only infrastructure failures and malformed input are raised.
"""


class LockGateError(Exception):
    """Base error for LockGate operations."""

    def __init__(self, message: str, code: str = "LOCKGATE_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class StorageUnavailable(LockGateError):
    """Lease store could not be reached; nothing was granted."""

    def __init__(self, operation: str, detail: str = ""):
        message = f"Lease store unavailable during {operation}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, "STORAGE_UNAVAILABLE")
        self.operation = operation


class LockContention(LockGateError):
    """The record's lease kept changing under us; the caller may retry."""

    def __init__(self, record_id: str):
        super().__init__(f"Lease for record {record_id} changed concurrently", "LOCK_CONTENTION")
        self.record_id = record_id


class InvalidRequest(LockGateError):
    """Malformed lock request."""

    def __init__(self, message: str):
        super().__init__(message, "INVALID_REQUEST")


class UnauthorizedError(LockGateError):
    """Operation not authorized."""

    def __init__(self, message: str = "Unauthorized"):
        super().__init__(message, "UNAUTHORIZED")
