"""SQLAlchemy models for the custody trader database."""

from db.models.custody import (
    Base,
    LoginAttemptRow,
    SecurityLogRow,
    UserSecurityRow,
    WalletRow,
    WhitelistRow,
)
from db.models.trigger_orders import TriggerOrderRow

__all__ = [
    "Base",
    "LoginAttemptRow",
    "SecurityLogRow",
    "TriggerOrderRow",
    "UserSecurityRow",
    "WalletRow",
    "WhitelistRow",
]
