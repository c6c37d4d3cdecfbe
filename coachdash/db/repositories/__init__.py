"""Repository package for database access."""

from .sessions import SqliteCheckpointRepository, SqliteSessionRepository
from .context_usage import SqliteContextUsageRepository
from .reality import SqliteRealitySnapshotRepository
from .projects import SqliteBlockerRepository, SqliteProjectRepository
from .documentations import SqliteDocumentationRepository
from .agent_memory import SqliteAgentMemoryRepository, SqliteSymbolRepository

__all__ = [
    "SqliteSessionRepository",
    "SqliteCheckpointRepository",
    "SqliteContextUsageRepository",
    "SqliteRealitySnapshotRepository",
    "SqliteProjectRepository",
    "SqliteBlockerRepository",
    "SqliteDocumentationRepository",
    "SqliteAgentMemoryRepository",
    "SqliteSymbolRepository",
]
