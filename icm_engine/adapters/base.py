# adapters/base.py
"""
Boundaries between the engine and the hosting service.

  RowStoreAdapter: committed rows, rule sets and entities (the only I/O the
                    engine performs, treated as synchronous)
  BatchStore     : calculation batches and their per-entity traces
  AuditSink      : append-only audit records

Implementations raise PersistenceFailure for I/O problems.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, Iterable, List, Optional

from ..models.batch import AuditRecord, CalculationBatch
from ..models.schemas import EntityRef, Row, RuleSet
from ..models.traces import EntityTrace


class RowStoreAdapter(ABC):
    @abstractmethod
    def fetch_rows(
        self, tenant_id: str, period_id: str, filters: Optional[Dict[str, Any]] = None
    ) -> Iterable[Row]:
        """Rows for a tenant/period. May be a lazy, paged iterator."""

    @abstractmethod
    def fetch_rules(self, tenant_id: str, rule_set_id: str) -> RuleSet:
        ...

    @abstractmethod
    def fetch_entities(self, tenant_id: str) -> List[EntityRef]:
        ...


class BatchStore(ABC):
    @abstractmethod
    def create_batch(self, batch: CalculationBatch) -> CalculationBatch:
        ...

    @abstractmethod
    def get_batch(self, batch_id: str) -> CalculationBatch:
        """Raises BatchNotFound for an unknown id."""

    @abstractmethod
    def list_batches(
        self,
        tenant_id: str,
        rule_set_id: Optional[str] = None,
        period_id: Optional[str] = None,
    ) -> List[CalculationBatch]:
        """Batches for a tenant in creation order, superseded ones included."""

    @abstractmethod
    def compare_and_set(self, batch: CalculationBatch, expected_version: int) -> CalculationBatch:
        """Store ``batch`` only if the stored version still equals ``expected_version``.

        Raises ConcurrentTransitionError otherwise, leaving the stored batch as is.
        """

    @abstractmethod
    def delete_batch(self, batch_id: str) -> None:
        """Remove a batch that never became visible. Unknown ids are ignored."""

    @abstractmethod
    def write_traces(self, batch_id: str, traces: List[EntityTrace]) -> None:
        ...

    @abstractmethod
    def read_traces(self, batch_id: str) -> List[EntityTrace]:
        ...

    @abstractmethod
    def delete_traces(self, batch_id: str) -> None:
        """Drop the traces of an aborted run. Unknown ids are ignored."""

    def current_batch(
        self, tenant_id: str, rule_set_id: str, period_id: str
    ) -> Optional[CalculationBatch]:
        """The non-superseded batch for a key, if any."""
        for batch in reversed(self.list_batches(tenant_id, rule_set_id, period_id)):
            if not batch.is_superseded:
                return batch
        return None


class AuditSink(ABC):
    @abstractmethod
    def write(self, record: AuditRecord) -> None:
        ...
