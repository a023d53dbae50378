"""SQLAlchemy storage.

One `SqlStores` object implements both the custody store and the trigger
order store over a single engine.

Notes
- We avoid logging connection URLs to prevent accidental secret leakage.
- Status transitions on trigger orders are conditional UPDATEs checked by
  rowcount, so they are safe against concurrent writers.
"""

from .config import SqlConfig
from .stores import SqlStores

__all__ = ["SqlConfig", "SqlStores"]
