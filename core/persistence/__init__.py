"""Persistence interfaces.

These protocols define the persistence boundary for the custody and trigger
order engine. Implementations live in `core.storage` (in-memory and
SQLAlchemy-backed). Core logic assumes nothing beyond atomic single-row
read-modify-write.
"""

from .interfaces import (
    CustodyStore,
    LoginAttemptStore,
    SecurityLogStore,
    TriggerOrderStore,
    UserSecurityStore,
    WalletStore,
    WhitelistStore,
)

__all__ = [
    "CustodyStore",
    "LoginAttemptStore",
    "SecurityLogStore",
    "TriggerOrderStore",
    "UserSecurityStore",
    "WalletStore",
    "WhitelistStore",
]
