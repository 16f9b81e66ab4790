"""LockGate database layer."""

from lockgate.db.base import Base, Database
from lockgate.db.repositories import CreateResult, LeaseRepository
from lockgate.db.tables import LeaseTable

__all__ = [
    "Base",
    "CreateResult",
    "Database",
    "LeaseRepository",
    "LeaseTable",
]
