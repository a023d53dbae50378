"""Thread-safe in-memory store implementations.

Used by tests and paper runs. Semantics match the SQLAlchemy stores,
including the compare-and-set status transitions on trigger orders.
"""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from threading import Lock
from typing import Mapping, Optional, Sequence

from core.persistence.interfaces import CustodyStore, TriggerOrderStore
from core.types import (
    Chain,
    CreateTriggerOrderParams,
    EncryptedWallet,
    SecurityEvent,
    TriggerOrder,
    UserSecurity,
    WhitelistEntry,
)

DEFAULT_SLIPPAGE_BPS = 100


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class MemoryCustodyStore(CustodyStore):
    def __init__(self, *, login_attempt_retention: timedelta = timedelta(hours=24)) -> None:
        self._lock = Lock()
        self._retention = login_attempt_retention
        self._security: dict[int, UserSecurity] = {}
        self._wallets: dict[tuple[int, Chain], EncryptedWallet] = {}
        self._whitelist: list[WhitelistEntry] = []
        self._attempts: dict[int, list[tuple[datetime, bool]]] = {}
        self._log: list[SecurityEvent] = []

    # ---- user security

    def has_user_security(self, *, user_id: int) -> bool:
        with self._lock:
            return user_id in self._security

    def get_user_security(self, *, user_id: int) -> Optional[UserSecurity]:
        with self._lock:
            return self._security.get(user_id)

    def create_user_security(self, *, user_id: int, password_hash: str) -> UserSecurity:
        with self._lock:
            if user_id in self._security:
                raise ValueError(f"user {user_id} already has security settings")
            row = UserSecurity(user_id=user_id, password_hash=password_hash, created_at=_utcnow())
            self._security[user_id] = row
            return row

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
        with self._lock:
            row = self._security.get(user_id)
            if row is None:
                return
            changes: dict[str, object] = {}
            if password_hash is not None:
                changes["password_hash"] = password_hash
                changes["last_password_change"] = _utcnow()
            if anti_phishing_code is not None:
                changes["anti_phishing_code"] = anti_phishing_code
            if transfer_limits is not None:
                changes["transfer_limits"] = dict(transfer_limits)
            if two_factor_secret is not None:
                changes["two_factor_secret"] = two_factor_secret
            if two_factor_enabled is not None:
                changes["two_factor_enabled"] = two_factor_enabled
            self._security[user_id] = replace(row, **changes)

    # ---- wallets

    def get_wallet(self, *, user_id: int, chain: Chain) -> Optional[EncryptedWallet]:
        with self._lock:
            return self._wallets.get((user_id, chain))

    def list_wallets(self, *, user_id: int) -> Sequence[EncryptedWallet]:
        with self._lock:
            return [w for (uid, _), w in self._wallets.items() if uid == user_id]

    def save_wallet(self, *, wallet: EncryptedWallet) -> None:
        if wallet.created_at is None:
            wallet = replace(wallet, created_at=_utcnow())
        with self._lock:
            self._wallets[(wallet.user_id, wallet.chain)] = wallet

    def update_wallet_encryption(
        self,
        *,
        user_id: int,
        chain: Chain,
        encrypted_secret: str,
        encryption_version: int,
    ) -> bool:
        with self._lock:
            wallet = self._wallets.get((user_id, chain))
            if wallet is None:
                return False
            self._wallets[(user_id, chain)] = replace(
                wallet, encrypted_secret=encrypted_secret, encryption_version=encryption_version
            )
            return True

    def delete_wallet(self, *, user_id: int, chain: Chain) -> bool:
        with self._lock:
            return self._wallets.pop((user_id, chain), None) is not None

    # ---- whitelist

    def list_whitelist(self, *, user_id: int, chain: Chain | None = None) -> Sequence[WhitelistEntry]:
        with self._lock:
            return [
                e for e in self._whitelist if e.user_id == user_id and (chain is None or e.chain == chain)
            ]

    def _find_whitelist_locked(self, user_id: int, chain: Chain, address: str) -> int | None:
        needle = address.lower()
        for i, e in enumerate(self._whitelist):
            if e.user_id == user_id and e.chain == chain and e.address.lower() == needle:
                return i
        return None

    def is_whitelisted(self, *, user_id: int, chain: Chain, address: str) -> bool:
        with self._lock:
            return self._find_whitelist_locked(user_id, chain, address) is not None

    def add_to_whitelist(self, *, user_id: int, chain: Chain, address: str, label: str | None = None) -> None:
        entry = WhitelistEntry(user_id=user_id, chain=chain, address=address, label=label, created_at=_utcnow())
        with self._lock:
            idx = self._find_whitelist_locked(user_id, chain, address)
            if idx is None:
                self._whitelist.append(entry)
            else:
                self._whitelist[idx] = entry

    def remove_from_whitelist(self, *, user_id: int, chain: Chain, address: str) -> bool:
        with self._lock:
            idx = self._find_whitelist_locked(user_id, chain, address)
            if idx is None:
                return False
            del self._whitelist[idx]
            return True

    # ---- login attempts

    def record_login_attempt(self, *, user_id: int, success: bool, at: datetime) -> None:
        cutoff = at - self._retention
        with self._lock:
            attempts = [a for a in self._attempts.get(user_id, []) if a[0] > cutoff]
            attempts.append((at, success))
            self._attempts[user_id] = attempts

    def count_failed_attempts(self, *, user_id: int, since: datetime) -> int:
        with self._lock:
            return sum(1 for at, ok in self._attempts.get(user_id, []) if not ok and at > since)

    def last_attempt_time(self, *, user_id: int, success: bool) -> Optional[datetime]:
        with self._lock:
            times = [at for at, ok in self._attempts.get(user_id, []) if ok == success]
        return max(times) if times else None

    # ---- security log

    def log_security_event(self, *, user_id: int, action: str, details: str | None = None) -> None:
        with self._lock:
            self._log.append(SecurityEvent(user_id=user_id, action=action, created_at=_utcnow(), details=details))

    def get_security_log(self, *, user_id: int, limit: int = 20) -> Sequence[SecurityEvent]:
        with self._lock:
            events = [e for e in self._log if e.user_id == user_id]
        return list(reversed(events))[:limit]


class MemoryTriggerOrderStore(TriggerOrderStore):
    def __init__(self) -> None:
        self._lock = Lock()
        self._orders: dict[int, TriggerOrder] = {}
        self._next_id = 1

    def create_trigger_order(self, *, params: CreateTriggerOrderParams) -> TriggerOrder:
        with self._lock:
            order = TriggerOrder(
                id=self._next_id,
                user_id=params.user_id,
                chat_id=params.chat_id,
                chain=params.chain,
                token_address=params.token_address,
                token_symbol=params.token_symbol,
                side=params.side,
                trigger_type=params.trigger_type,
                trigger_condition=params.trigger_condition,
                trigger_value=params.trigger_value,
                amount=params.amount,
                amount_type=params.amount_type,
                slippage_bps=params.slippage_bps if params.slippage_bps is not None else DEFAULT_SLIPPAGE_BPS,
                status="active",
                price_at_creation=params.price_at_creation,
                created_at=_utcnow(),
            )
            self._orders[order.id] = order
            self._next_id += 1
            return order

    def get_trigger_order(self, *, order_id: int) -> Optional[TriggerOrder]:
        with self._lock:
            return self._orders.get(order_id)

    def _active_locked(self) -> list[TriggerOrder]:
        return [o for o in sorted(self._orders.values(), key=lambda o: o.id) if o.status == "active"]

    def list_active_orders(self) -> Sequence[TriggerOrder]:
        with self._lock:
            return self._active_locked()

    def list_active_orders_for_token(self, *, chain: Chain, token_address: str) -> Sequence[TriggerOrder]:
        key = (chain, token_address.lower())
        with self._lock:
            return [o for o in self._active_locked() if o.token_key == key]

    def list_user_active_orders(self, *, user_id: int) -> Sequence[TriggerOrder]:
        with self._lock:
            return [o for o in reversed(self._active_locked()) if o.user_id == user_id]

    def list_user_order_history(self, *, user_id: int, limit: int = 20) -> Sequence[TriggerOrder]:
        with self._lock:
            orders = [o for o in self._orders.values() if o.user_id == user_id]
        return sorted(orders, key=lambda o: o.id, reverse=True)[:limit]

    def tokens_with_active_orders(self) -> Sequence[tuple[Chain, str]]:
        seen: dict[tuple[Chain, str], tuple[Chain, str]] = {}
        with self._lock:
            for o in self._active_locked():
                seen.setdefault(o.token_key, (o.chain, o.token_address))
        return list(seen.values())

    def _transition(self, order_id: int, expected: str, **changes: object) -> bool:
        with self._lock:
            order = self._orders.get(order_id)
            if order is None or order.status != expected:
                return False
            self._orders[order_id] = replace(order, **changes)
            return True

    def mark_triggered(self, *, order_id: int, at: datetime) -> bool:
        return self._transition(order_id, "active", status="triggered", triggered_at=at)

    def mark_executed(self, *, order_id: int, tx_hash: str, execution_price: Decimal, at: datetime) -> bool:
        return self._transition(
            order_id,
            "triggered",
            status="executed",
            tx_hash=tx_hash,
            execution_price=execution_price,
            executed_at=at,
        )

    def mark_failed(self, *, order_id: int, error: str, at: datetime) -> bool:
        return self._transition(order_id, "triggered", status="failed", error=error, executed_at=at)

    def cancel_order(self, *, order_id: int, user_id: int) -> bool:
        with self._lock:
            order = self._orders.get(order_id)
            if order is None or order.user_id != user_id or order.status != "active":
                return False
            self._orders[order_id] = replace(order, status="cancelled")
            return True

    def cancel_all_user_orders(self, *, user_id: int) -> int:
        with self._lock:
            ids = [o.id for o in self._orders.values() if o.user_id == user_id and o.status == "active"]
            for order_id in ids:
                self._orders[order_id] = replace(self._orders[order_id], status="cancelled")
        return len(ids)
