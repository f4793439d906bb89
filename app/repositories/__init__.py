from app.repositories.dlq_items import InMemoryDlqItemsRepository, PostgresDlqItemsRepository
from app.repositories.fallback_buffer import InMemoryFallbackBufferRepository, PostgresFallbackBufferRepository
from app.repositories.processed_signals import (
    InMemoryProcessedSignalsRepository,
    PostgresProcessedSignalsRepository,
)
from app.repositories.replay_audit import InMemoryReplayAuditRepository, PostgresReplayAuditRepository
from app.repositories.sessions import InMemorySessionsRepository, PostgresSessionsRepository
from app.repositories.signals import InMemorySignalsRepository, PostgresSignalsRepository

__all__ = [
    "InMemoryDlqItemsRepository",
    "PostgresDlqItemsRepository",
    "InMemoryFallbackBufferRepository",
    "PostgresFallbackBufferRepository",
    "InMemoryProcessedSignalsRepository",
    "PostgresProcessedSignalsRepository",
    "InMemoryReplayAuditRepository",
    "PostgresReplayAuditRepository",
    "InMemorySessionsRepository",
    "PostgresSessionsRepository",
    "InMemorySignalsRepository",
    "PostgresSignalsRepository",
]
