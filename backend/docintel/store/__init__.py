from docintel.store.base import (
    ChatSessionRecord,
    ChatSessionRepository,
    ChunkRecord,
    DocumentRecord,
    DocumentRepository,
    EmbeddingStats,
    EmbeddingStore,
    JobRecord,
    JobRepository,
    NewChunk,
    Repositories,
    ScoredChunk,
)

__all__ = [
    "ChatSessionRecord",
    "ChatSessionRepository",
    "ChunkRecord",
    "DocumentRecord",
    "DocumentRepository",
    "EmbeddingStats",
    "EmbeddingStore",
    "JobRecord",
    "JobRepository",
    "NewChunk",
    "Repositories",
    "ScoredChunk",
]
