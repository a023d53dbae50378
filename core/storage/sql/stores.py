from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone
from decimal import Decimal
from pathlib import Path
from typing import Any, Mapping, Optional, Sequence

from sqlalchemy import create_engine, delete, func, select, update
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from core.persistence.interfaces import CustodyStore, TriggerOrderStore
from core.storage.sql.config import SqlConfig
from core.types import (
    Chain,
    CreateTriggerOrderParams,
    EncryptedWallet,
    SecurityEvent,
    TriggerOrder,
    UserSecurity,
    WhitelistEntry,
)
from db.models import (
    Base,
    LoginAttemptRow,
    SecurityLogRow,
    TriggerOrderRow,
    UserSecurityRow,
    WalletRow,
    WhitelistRow,
)

logger = logging.getLogger(__name__)

DEFAULT_SLIPPAGE_BPS = 100


# ========== Row mapping ==========


def _as_utc(value: datetime | None) -> datetime | None:
    # SQLite drops tzinfo; everything is written in UTC.
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _to_epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def _from_epoch_ms(value: int) -> datetime:
    return datetime.fromtimestamp(value / 1000, tz=timezone.utc)


def _dump_limits(limits: Mapping[Chain, Decimal]) -> dict[str, str]:
    return {Chain(chain).value: str(value) for chain, value in limits.items()}


def _load_limits(raw: Mapping[str, Any] | None) -> dict[Chain, Decimal]:
    limits: dict[Chain, Decimal] = {}
    for key, value in (raw or {}).items():
        try:
            limits[Chain(key)] = Decimal(str(value))
        except ValueError:
            logger.warning("Ignoring transfer limit for unknown chain %r", key)
    return limits


def _user_security(row: UserSecurityRow) -> UserSecurity:
    return UserSecurity(
        user_id=row.user_id,
        password_hash=row.password_hash,
        created_at=_as_utc(row.created_at),
        anti_phishing_code=row.anti_phishing_code,
        transfer_limits=_load_limits(row.transfer_limits),
        two_factor_secret=row.two_factor_secret,
        two_factor_enabled=bool(row.two_factor_enabled),
        last_password_change=_as_utc(row.last_password_change),
    )


def _wallet(row: WalletRow) -> EncryptedWallet:
    return EncryptedWallet(
        user_id=row.user_id,
        chain=Chain(row.chain),
        address=row.address,
        encrypted_secret=row.encrypted_private_key,
        encryption_version=row.encryption_version,
        created_at=_as_utc(row.created_at),
    )


def _whitelist_entry(row: WhitelistRow) -> WhitelistEntry:
    return WhitelistEntry(
        user_id=row.user_id,
        chain=Chain(row.chain),
        address=row.address,
        label=row.label,
        created_at=_as_utc(row.created_at),
    )


def _decimal(value: Any) -> Optional[Decimal]:
    if value is None:
        return None
    return value if isinstance(value, Decimal) else Decimal(str(value))


def _trigger_order(row: TriggerOrderRow) -> TriggerOrder:
    return TriggerOrder(
        id=row.id,
        user_id=row.user_id,
        chat_id=row.chat_id,
        chain=Chain(row.chain),
        token_address=row.token_address,
        token_symbol=row.token_symbol,
        side=row.order_type,
        trigger_type=row.trigger_type,
        trigger_condition=row.trigger_condition,
        trigger_value=_decimal(row.trigger_value),
        amount=row.amount,
        amount_type=row.amount_type,
        slippage_bps=row.slippage_bps,
        status=row.status,
        price_at_creation=_decimal(row.price_at_creation),
        created_at=_as_utc(row.created_at),
        triggered_at=_as_utc(row.triggered_at),
        executed_at=_as_utc(row.executed_at),
        tx_hash=row.tx_hash,
        execution_price=_decimal(row.execution_price),
        error=row.error,
    )


# ========== Stores ==========


class SqlStores(CustodyStore, TriggerOrderStore):
    """Single entrypoint for the SQLAlchemy-backed persistence layer."""

    def __init__(
        self,
        *,
        config: SqlConfig,
        login_attempt_retention: timedelta = timedelta(hours=24),
    ) -> None:
        self._config = config
        self._retention = login_attempt_retention
        self._engine: Engine | None = None
        self._sessions: sessionmaker[Session] | None = None

    def _get_engine(self) -> Engine:
        if self._engine is None:
            url = make_url(self._config.database_url)
            kwargs: dict[str, Any] = {"echo": self._config.echo}
            if url.get_backend_name() == "sqlite":
                if url.database in (None, "", ":memory:"):
                    # One shared connection, otherwise every checkout sees an empty database.
                    kwargs.update(poolclass=StaticPool, connect_args={"check_same_thread": False})
                else:
                    Path(url.database).parent.mkdir(parents=True, exist_ok=True)
            else:
                kwargs["pool_pre_ping"] = True
            # Do not log the URL (it may contain secrets).
            self._engine = create_engine(url, **kwargs)
        return self._engine

    def _session(self) -> sessionmaker[Session]:
        if self._sessions is None:
            self._sessions = sessionmaker(bind=self._get_engine(), expire_on_commit=False)
        return self._sessions

    def create_schema(self) -> None:
        """Create all tables that do not exist yet."""
        Base.metadata.create_all(self._get_engine())

    def dispose(self) -> None:
        if self._engine is not None:
            self._engine.dispose()
            self._engine = None
            self._sessions = None

    # ---- user security

    def has_user_security(self, *, user_id: int) -> bool:
        with self._session()() as session:
            return session.get(UserSecurityRow, user_id) is not None

    def get_user_security(self, *, user_id: int) -> Optional[UserSecurity]:
        with self._session()() as session:
            row = session.get(UserSecurityRow, user_id)
            return None if row is None else _user_security(row)

    def create_user_security(self, *, user_id: int, password_hash: str) -> UserSecurity:
        with self._session().begin() as session:
            row = UserSecurityRow(user_id=user_id, password_hash=password_hash, transfer_limits={})
            session.add(row)
            session.flush()
            return _user_security(row)

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
        values: dict[str, Any] = {}
        if password_hash is not None:
            values["password_hash"] = password_hash
            values["last_password_change"] = datetime.now(timezone.utc)
        if anti_phishing_code is not None:
            values["anti_phishing_code"] = anti_phishing_code
        if transfer_limits is not None:
            values["transfer_limits"] = _dump_limits(transfer_limits)
        if two_factor_secret is not None:
            values["two_factor_secret"] = two_factor_secret
        if two_factor_enabled is not None:
            values["two_factor_enabled"] = two_factor_enabled
        if not values:
            return

        with self._session().begin() as session:
            session.execute(
                update(UserSecurityRow)
                .where(UserSecurityRow.user_id == user_id)
                .values(**values)
                .execution_options(synchronize_session=False)
            )

    # ---- wallets

    def get_wallet(self, *, user_id: int, chain: Chain) -> Optional[EncryptedWallet]:
        with self._session()() as session:
            row = session.scalars(
                select(WalletRow).where(WalletRow.user_id == user_id, WalletRow.chain == Chain(chain).value)
            ).first()
            return None if row is None else _wallet(row)

    def list_wallets(self, *, user_id: int) -> Sequence[EncryptedWallet]:
        with self._session()() as session:
            rows = session.scalars(select(WalletRow).where(WalletRow.user_id == user_id).order_by(WalletRow.id))
            return [_wallet(r) for r in rows]

    def save_wallet(self, *, wallet: EncryptedWallet) -> None:
        chain = Chain(wallet.chain).value
        with self._session().begin() as session:
            row = session.scalars(
                select(WalletRow).where(WalletRow.user_id == wallet.user_id, WalletRow.chain == chain)
            ).first()
            if row is None:
                row = WalletRow(user_id=wallet.user_id, chain=chain)
                session.add(row)
            row.address = wallet.address
            row.encrypted_private_key = wallet.encrypted_secret
            row.encryption_version = wallet.encryption_version
            if wallet.created_at is not None:
                row.created_at = wallet.created_at

    def update_wallet_encryption(
        self,
        *,
        user_id: int,
        chain: Chain,
        encrypted_secret: str,
        encryption_version: int,
    ) -> bool:
        with self._session().begin() as session:
            result = session.execute(
                update(WalletRow)
                .where(WalletRow.user_id == user_id, WalletRow.chain == Chain(chain).value)
                .values(encrypted_private_key=encrypted_secret, encryption_version=encryption_version)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def delete_wallet(self, *, user_id: int, chain: Chain) -> bool:
        with self._session().begin() as session:
            result = session.execute(
                delete(WalletRow).where(WalletRow.user_id == user_id, WalletRow.chain == Chain(chain).value)
            )
            return result.rowcount > 0

    # ---- whitelist

    def _whitelist_match(self, user_id: int, chain: Chain, address: str) -> Any:
        return (
            (WhitelistRow.user_id == user_id)
            & (WhitelistRow.chain == Chain(chain).value)
            & (func.lower(WhitelistRow.address) == address.lower())
        )

    def list_whitelist(self, *, user_id: int, chain: Chain | None = None) -> Sequence[WhitelistEntry]:
        stmt = select(WhitelistRow).where(WhitelistRow.user_id == user_id)
        if chain is not None:
            stmt = stmt.where(WhitelistRow.chain == Chain(chain).value)
        with self._session()() as session:
            return [_whitelist_entry(r) for r in session.scalars(stmt.order_by(WhitelistRow.id))]

    def is_whitelisted(self, *, user_id: int, chain: Chain, address: str) -> bool:
        with self._session()() as session:
            row = session.scalars(select(WhitelistRow).where(self._whitelist_match(user_id, chain, address))).first()
            return row is not None

    def add_to_whitelist(self, *, user_id: int, chain: Chain, address: str, label: str | None = None) -> None:
        with self._session().begin() as session:
            row = session.scalars(select(WhitelistRow).where(self._whitelist_match(user_id, chain, address))).first()
            if row is None:
                session.add(WhitelistRow(user_id=user_id, chain=Chain(chain).value, address=address, label=label))
            else:
                row.address = address
                row.label = label

    def remove_from_whitelist(self, *, user_id: int, chain: Chain, address: str) -> bool:
        with self._session().begin() as session:
            result = session.execute(
                delete(WhitelistRow)
                .where(self._whitelist_match(user_id, chain, address))
                .execution_options(synchronize_session=False)
            )
            return result.rowcount > 0

    # ---- login attempts

    def record_login_attempt(self, *, user_id: int, success: bool, at: datetime) -> None:
        cutoff = _to_epoch_ms(at - self._retention)
        with self._session().begin() as session:
            session.add(LoginAttemptRow(user_id=user_id, attempt_time=_to_epoch_ms(at), success=success))
            session.execute(
                delete(LoginAttemptRow).where(
                    LoginAttemptRow.user_id == user_id,
                    LoginAttemptRow.attempt_time <= cutoff,
                )
            )

    def count_failed_attempts(self, *, user_id: int, since: datetime) -> int:
        with self._session()() as session:
            count = session.scalar(
                select(func.count())
                .select_from(LoginAttemptRow)
                .where(
                    LoginAttemptRow.user_id == user_id,
                    LoginAttemptRow.success.is_(False),
                    LoginAttemptRow.attempt_time > _to_epoch_ms(since),
                )
            )
            return int(count or 0)

    def last_attempt_time(self, *, user_id: int, success: bool) -> Optional[datetime]:
        with self._session()() as session:
            value = session.scalar(
                select(func.max(LoginAttemptRow.attempt_time)).where(
                    LoginAttemptRow.user_id == user_id,
                    LoginAttemptRow.success.is_(success),
                )
            )
            return None if value is None else _from_epoch_ms(int(value))

    # ---- security log

    def log_security_event(self, *, user_id: int, action: str, details: str | None = None) -> None:
        with self._session().begin() as session:
            session.add(SecurityLogRow(user_id=user_id, action=action, details=details))

    def get_security_log(self, *, user_id: int, limit: int = 20) -> Sequence[SecurityEvent]:
        with self._session()() as session:
            rows = session.scalars(
                select(SecurityLogRow)
                .where(SecurityLogRow.user_id == user_id)
                .order_by(SecurityLogRow.id.desc())
                .limit(limit)
            )
            return [
                SecurityEvent(
                    user_id=r.user_id,
                    action=r.action,
                    created_at=_as_utc(r.created_at),
                    details=r.details,
                )
                for r in rows
            ]

    # ---- trigger orders

    def create_trigger_order(self, *, params: CreateTriggerOrderParams) -> TriggerOrder:
        with self._session().begin() as session:
            row = TriggerOrderRow(
                user_id=params.user_id,
                chat_id=params.chat_id,
                chain=Chain(params.chain).value,
                token_address=params.token_address,
                token_symbol=params.token_symbol,
                order_type=params.side,
                trigger_type=params.trigger_type,
                trigger_condition=params.trigger_condition,
                trigger_value=params.trigger_value,
                amount=params.amount,
                amount_type=params.amount_type,
                slippage_bps=params.slippage_bps if params.slippage_bps is not None else DEFAULT_SLIPPAGE_BPS,
                status="active",
                price_at_creation=params.price_at_creation,
            )
            session.add(row)
            session.flush()
            order_id = row.id
        order = self.get_trigger_order(order_id=order_id)
        if order is None:
            raise RuntimeError(f"Trigger order #{order_id} vanished after insert")
        return order

    def get_trigger_order(self, *, order_id: int) -> Optional[TriggerOrder]:
        with self._session()() as session:
            row = session.get(TriggerOrderRow, order_id)
            return None if row is None else _trigger_order(row)

    def _select_orders(self, stmt: Any) -> list[TriggerOrder]:
        with self._session()() as session:
            return [_trigger_order(r) for r in session.scalars(stmt)]

    def list_active_orders(self) -> Sequence[TriggerOrder]:
        return self._select_orders(
            select(TriggerOrderRow).where(TriggerOrderRow.status == "active").order_by(TriggerOrderRow.id)
        )

    def list_active_orders_for_token(self, *, chain: Chain, token_address: str) -> Sequence[TriggerOrder]:
        return self._select_orders(
            select(TriggerOrderRow)
            .where(
                TriggerOrderRow.status == "active",
                TriggerOrderRow.chain == Chain(chain).value,
                func.lower(TriggerOrderRow.token_address) == token_address.lower(),
            )
            .order_by(TriggerOrderRow.id)
        )

    def list_user_active_orders(self, *, user_id: int) -> Sequence[TriggerOrder]:
        return self._select_orders(
            select(TriggerOrderRow)
            .where(TriggerOrderRow.user_id == user_id, TriggerOrderRow.status == "active")
            .order_by(TriggerOrderRow.id.desc())
        )

    def list_user_order_history(self, *, user_id: int, limit: int = 20) -> Sequence[TriggerOrder]:
        return self._select_orders(
            select(TriggerOrderRow)
            .where(TriggerOrderRow.user_id == user_id)
            .order_by(TriggerOrderRow.id.desc())
            .limit(limit)
        )

    def tokens_with_active_orders(self) -> Sequence[tuple[Chain, str]]:
        with self._session()() as session:
            rows = session.execute(
                select(TriggerOrderRow.chain, TriggerOrderRow.token_address)
                .where(TriggerOrderRow.status == "active")
                .order_by(TriggerOrderRow.id)
            ).all()
        seen: dict[tuple[str, str], tuple[Chain, str]] = {}
        for chain, address in rows:
            seen.setdefault((chain, address.lower()), (Chain(chain), address))
        return list(seen.values())

    def _transition(self, order_id: int, expected: str, values: dict[str, Any]) -> bool:
        with self._session().begin() as session:
            result = session.execute(
                update(TriggerOrderRow)
                .where(TriggerOrderRow.id == order_id, TriggerOrderRow.status == expected)
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def mark_triggered(self, *, order_id: int, at: datetime) -> bool:
        return self._transition(order_id, "active", {"status": "triggered", "triggered_at": at})

    def mark_executed(self, *, order_id: int, tx_hash: str, execution_price: Decimal, at: datetime) -> bool:
        return self._transition(
            order_id,
            "triggered",
            {"status": "executed", "tx_hash": tx_hash, "execution_price": execution_price, "executed_at": at},
        )

    def mark_failed(self, *, order_id: int, error: str, at: datetime) -> bool:
        return self._transition(order_id, "triggered", {"status": "failed", "error": error, "executed_at": at})

    def cancel_order(self, *, order_id: int, user_id: int) -> bool:
        with self._session().begin() as session:
            result = session.execute(
                update(TriggerOrderRow)
                .where(
                    TriggerOrderRow.id == order_id,
                    TriggerOrderRow.user_id == user_id,
                    TriggerOrderRow.status == "active",
                )
                .values(status="cancelled")
                .execution_options(synchronize_session=False)
            )
            return result.rowcount == 1

    def cancel_all_user_orders(self, *, user_id: int) -> int:
        with self._session().begin() as session:
            result = session.execute(
                update(TriggerOrderRow)
                .where(TriggerOrderRow.user_id == user_id, TriggerOrderRow.status == "active")
                .values(status="cancelled")
                .execution_options(synchronize_session=False)
            )
            return int(result.rowcount or 0)
