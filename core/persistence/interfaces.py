from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Mapping, Optional, Protocol, Sequence

from core.types import (
    Chain,
    CreateTriggerOrderParams,
    EncryptedWallet,
    SecurityEvent,
    TriggerOrder,
    UserSecurity,
    WhitelistEntry,
)


# ========== Custody ==========


class UserSecurityStore(Protocol):
    def has_user_security(self, *, user_id: int) -> bool:
        """Return whether the user has completed password setup."""

    def get_user_security(self, *, user_id: int) -> Optional[UserSecurity]:
        """Fetch security settings for a user."""

    def create_user_security(self, *, user_id: int, password_hash: str) -> UserSecurity:
        """Insert the security row created on first password setup."""

    def update_user_security(
        self,
        *,
        user_id: int,
        password_hash: str | None = None,
        anti_phishing_code: str | None = None,
        transfer_limits: Mapping[Chain, Decimal] | None = None,
        two_factor_secret: str | None = None,
        two_factor_enabled: bool | None = None,
    ) -> None:
        """Update only the provided fields. Setting password_hash stamps last_password_change."""


class WalletStore(Protocol):
    def get_wallet(self, *, user_id: int, chain: Chain) -> Optional[EncryptedWallet]:
        """Fetch the wallet for (user, chain)."""

    def list_wallets(self, *, user_id: int) -> Sequence[EncryptedWallet]:
        """List every wallet for a user."""

    def save_wallet(self, *, wallet: EncryptedWallet) -> None:
        """Insert or replace the wallet row for (user, chain), including its version."""

    def update_wallet_encryption(
        self,
        *,
        user_id: int,
        chain: Chain,
        encrypted_secret: str,
        encryption_version: int,
    ) -> bool:
        """Atomically replace blob and version of an existing wallet. Returns False if missing."""

    def delete_wallet(self, *, user_id: int, chain: Chain) -> bool:
        """Delete a wallet row."""


class WhitelistStore(Protocol):
    def list_whitelist(self, *, user_id: int, chain: Chain | None = None) -> Sequence[WhitelistEntry]:
        """List whitelisted withdrawal addresses."""

    def is_whitelisted(self, *, user_id: int, chain: Chain, address: str) -> bool:
        """Case-insensitive whitelist membership."""

    def add_to_whitelist(self, *, user_id: int, chain: Chain, address: str, label: str | None = None) -> None:
        """Insert or replace a whitelist entry."""

    def remove_from_whitelist(self, *, user_id: int, chain: Chain, address: str) -> bool:
        """Remove an entry. Returns whether a row was removed."""


class LoginAttemptStore(Protocol):
    def record_login_attempt(self, *, user_id: int, success: bool, at: datetime) -> None:
        """Append an attempt and prune this user's attempts past the retention window."""

    def count_failed_attempts(self, *, user_id: int, since: datetime) -> int:
        """Count failed attempts strictly after `since`."""

    def last_attempt_time(self, *, user_id: int, success: bool) -> Optional[datetime]:
        """Most recent successful or failed attempt."""


class SecurityLogStore(Protocol):
    def log_security_event(self, *, user_id: int, action: str, details: str | None = None) -> None:
        """Append to the security audit log. `details` must never contain secrets."""

    def get_security_log(self, *, user_id: int, limit: int = 20) -> Sequence[SecurityEvent]:
        """Recent events, newest first."""


class CustodyStore(
    UserSecurityStore,
    WalletStore,
    WhitelistStore,
    LoginAttemptStore,
    SecurityLogStore,
    Protocol,
):
    """Everything the custody service needs from durable storage."""


# ========== Trigger orders ==========


class TriggerOrderStore(Protocol):
    def create_trigger_order(self, *, params: CreateTriggerOrderParams) -> TriggerOrder:
        """Persist a new order with status 'active' and return it."""

    def get_trigger_order(self, *, order_id: int) -> Optional[TriggerOrder]:
        """Fetch an order by id."""

    def list_active_orders(self) -> Sequence[TriggerOrder]:
        """All active orders, oldest first."""

    def list_active_orders_for_token(self, *, chain: Chain, token_address: str) -> Sequence[TriggerOrder]:
        """Active orders for one token (address compared case-insensitively)."""

    def list_user_active_orders(self, *, user_id: int) -> Sequence[TriggerOrder]:
        """A user's active orders, newest first."""

    def list_user_order_history(self, *, user_id: int, limit: int = 20) -> Sequence[TriggerOrder]:
        """A user's orders in any status, newest first."""

    def tokens_with_active_orders(self) -> Sequence[tuple[Chain, str]]:
        """Distinct (chain, token_address) pairs that have at least one active order."""

    def mark_triggered(self, *, order_id: int, at: datetime) -> bool:
        """Compare-and-set active -> triggered. Returns True only for the caller that won."""

    def mark_executed(self, *, order_id: int, tx_hash: str, execution_price: Decimal, at: datetime) -> bool:
        """triggered -> executed. Returns False if the order was not in 'triggered'."""

    def mark_failed(self, *, order_id: int, error: str, at: datetime) -> bool:
        """triggered -> failed. Returns False if the order was not in 'triggered'."""

    def cancel_order(self, *, order_id: int, user_id: int) -> bool:
        """active -> cancelled, only for the owning user."""

    def cancel_all_user_orders(self, *, user_id: int) -> int:
        """Cancel every active order of a user. Returns the number cancelled."""
