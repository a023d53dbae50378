from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class SqlConfig:
    """Connection configuration.

    `database_url` is any SQLAlchemy URL and should come from the environment
    (DATABASE_URL). SQLite and PostgreSQL are supported. Do not log it.
    """

    database_url: str
    echo: bool = False
