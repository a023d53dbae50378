"""Key custody: password-derived encryption, unlock sessions and the custody service."""

from .addresses import AddressDeriver, ChainAddressDeriver, InvalidSecretError
from .service import (
    CustodyResult,
    CustodyService,
    LockoutStatus,
    MigrationReport,
    PasswordChangeResult,
    UnlockResult,
    WalletUnlockStatus,
)
from .sessions import SessionInfo, SessionStore

__all__ = [
    "AddressDeriver",
    "ChainAddressDeriver",
    "CustodyResult",
    "CustodyService",
    "InvalidSecretError",
    "LockoutStatus",
    "MigrationReport",
    "PasswordChangeResult",
    "SessionInfo",
    "SessionStore",
    "UnlockResult",
    "WalletUnlockStatus",
]
