"""SQLAlchemy models for key custody tables.

- user_security
- wallets
- withdrawal_whitelist
- login_attempts
- security_log
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Column,
    DateTime,
    Index,
    Integer,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
BigId = BigInteger().with_variant(Integer, "sqlite")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class UserSecurityRow(Base):
    """Per-user password hash and security settings.

    Table: user_security
    """

    __tablename__ = "user_security"

    user_id = Column(BigInteger, primary_key=True, autoincrement=False)
    password_hash = Column(Text, nullable=False)  # saltHex:hashHex
    anti_phishing_code = Column(Text, nullable=True)
    transfer_limits = Column(JSON, nullable=False, default=dict)  # {"solana": "1.0", "base": "0.1"}
    two_factor_secret = Column(Text, nullable=True)
    two_factor_enabled = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    last_password_change = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self) -> str:
        return f"<UserSecurityRow(user_id={self.user_id})>"


class WalletRow(Base):
    """Encrypted wallet secret per (user, chain).

    Table: wallets
    """

    __tablename__ = "wallets"

    id = Column(BigId, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, nullable=False)
    chain = Column(Text, nullable=False)  # solana|base
    address = Column(Text, nullable=False)
    encrypted_private_key = Column(Text, nullable=False)
    encryption_version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (UniqueConstraint("user_id", "chain", name="uq_wallets_user_chain"),)

    def __repr__(self) -> str:
        return f"<WalletRow(user_id={self.user_id}, chain={self.chain}, v{self.encryption_version})>"


class WhitelistRow(Base):
    """Pre-approved withdrawal destinations.

    Table: withdrawal_whitelist
    """

    __tablename__ = "withdrawal_whitelist"

    id = Column(BigId, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, nullable=False)
    chain = Column(Text, nullable=False)
    address = Column(Text, nullable=False)
    label = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        UniqueConstraint("user_id", "chain", "address", name="uq_whitelist_user_chain_address"),
        Index("idx_whitelist_user", "user_id"),
    )


class LoginAttemptRow(Base):
    """Append-only unlock attempts, pruned after the retention window.

    Table: login_attempts
    """

    __tablename__ = "login_attempts"

    id = Column(BigId, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, nullable=False)
    attempt_time = Column(BigInteger, nullable=False)  # epoch milliseconds
    success = Column(Boolean, nullable=False, default=False)

    __table_args__ = (Index("idx_login_attempts_user", "user_id", "attempt_time"),)


class SecurityLogRow(Base):
    """Security audit log. Never holds secrets.

    Table: security_log
    """

    __tablename__ = "security_log"

    id = Column(BigId, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, nullable=False)
    action = Column(Text, nullable=False)
    details = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (Index("idx_security_log_user", "user_id", "created_at"),)

    def __repr__(self) -> str:
        return f"<SecurityLogRow(id={self.id}, user_id={self.user_id}, action={self.action})>"
