"""SQLAlchemy model for trigger (limit-style) orders.

Table: trigger_orders
"""

from __future__ import annotations

from sqlalchemy import BigInteger, Column, DateTime, Index, Integer, Numeric, Text

from db.models.custody import Base, BigId, utcnow


class TriggerOrderRow(Base):
    """Standing order executed by the trigger scheduler.

    Status: active -> triggered -> executed|failed, or active -> cancelled.
    """

    __tablename__ = "trigger_orders"

    id = Column(BigId, primary_key=True, autoincrement=True)
    user_id = Column(BigInteger, nullable=False)
    chat_id = Column(BigInteger, nullable=False)
    chain = Column(Text, nullable=False)  # solana|base
    token_address = Column(Text, nullable=False)
    token_symbol = Column(Text, nullable=False)
    order_type = Column(Text, nullable=False)  # buy|sell
    trigger_type = Column(Text, nullable=False)  # price|marketcap
    trigger_condition = Column(Text, nullable=False)  # above|below
    trigger_value = Column(Numeric(38, 12), nullable=False)
    amount = Column(Text, nullable=False)  # native amount (buy) or percent (sell)
    amount_type = Column(Text, nullable=False)  # fixed|percentage
    slippage_bps = Column(Integer, nullable=False, default=100)
    status = Column(Text, nullable=False, default="active")
    price_at_creation = Column(Numeric(38, 12), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    triggered_at = Column(DateTime(timezone=True), nullable=True)
    executed_at = Column(DateTime(timezone=True), nullable=True)
    tx_hash = Column(Text, nullable=True)
    execution_price = Column(Numeric(38, 12), nullable=True)
    error = Column(Text, nullable=True)

    __table_args__ = (
        Index("idx_trigger_orders_user", "user_id"),
        Index("idx_trigger_orders_status", "status"),
        Index("idx_trigger_orders_token", "chain", "token_address"),
    )

    def __repr__(self) -> str:
        return f"<TriggerOrderRow(id={self.id}, {self.order_type} {self.token_symbol}, status={self.status})>"
