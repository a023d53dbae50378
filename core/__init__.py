"""Core domain modules.

This package contains the custody and trigger order building blocks:

- custody: password-derived wallet encryption, unlock sessions, lockout
- triggers: trigger order validation, evaluation and the polling scheduler
- persistence: persistence boundary (interfaces)
- storage: in-memory and SQLAlchemy implementations of the persistence interfaces
- market_data: token price and market cap lookups (DexScreener)
- execution: swap execution boundary (paper by default)
- notifications: chat delivery (Telegram)
"""
