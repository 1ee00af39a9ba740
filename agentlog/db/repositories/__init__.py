"""Repository package for database access."""

from .sessions import SqliteSessionRepository
from .search import SqliteSearchRepository
from .metrics import SqliteMetricsRepository
from .analytics import SqliteAnalyticsRepository
from .checkpoints import SqliteCheckpointRepository

__all__ = [
    "SqliteSessionRepository",
    "SqliteSearchRepository",
    "SqliteMetricsRepository",
    "SqliteAnalyticsRepository",
    "SqliteCheckpointRepository",
]
