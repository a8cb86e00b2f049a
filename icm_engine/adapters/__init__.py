from .base import AuditSink, BatchStore, RowStoreAdapter
from .memory import InMemoryAuditSink, InMemoryBatchStore, InMemoryRowStore
