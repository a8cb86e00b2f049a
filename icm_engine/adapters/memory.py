# adapters/memory.py
"""
In-memory adapters for tests and single-process hosting.

State lives on the instance, never at module level, so every test builds
its own isolated store.
"""
import logging
import threading
from typing import Any, Dict, Iterable, Iterator, List, Optional, Sequence

from ..config.settings import EngineSettings
from ..errors import BatchNotFound, ConcurrentTransitionError, ConfigurationError, PersistenceFailure
from ..models.batch import AuditRecord, CalculationBatch
from ..models.schemas import EntityRef, Row, RuleSet
from ..models.traces import EntityTrace
from ..utils.validation import load_rule_set
from .base import AuditSink, BatchStore, RowStoreAdapter

logger = logging.getLogger(__name__)


def _row_value(row: Row, key: str) -> Any:
    if key in ("entity_id", "period_id", "data_type"):
        return getattr(row, key)
    return row.fields.get(key)


class InMemoryRowStore(RowStoreAdapter):
    """Rows, rule sets and entities held in dictionaries keyed by tenant.

    ``fetch_rows`` yields pages of ``page_size`` rows lazily, the way a
    paginated database adapter would.
    """

    def __init__(self, page_size: int = 500):
        self.page_size = page_size
        self._rows: Dict[str, List[Row]] = {}
        self._rule_sets: Dict[str, Dict[str, RuleSet]] = {}
        self._entities: Dict[str, List[EntityRef]] = {}

    @classmethod
    def from_settings(cls, settings: EngineSettings) -> "InMemoryRowStore":
        return cls(page_size=settings.engine.row_page_size)

    def add_rows(self, tenant_id: str, rows: Iterable[Row]) -> None:
        self._rows.setdefault(tenant_id, []).extend(rows)

    def add_rule_set(self, tenant_id: str, rule_set) -> RuleSet:
        if not isinstance(rule_set, RuleSet):
            rule_set = load_rule_set(rule_set)
        self._rule_sets.setdefault(tenant_id, {})[rule_set.rule_set_id] = rule_set
        return rule_set

    def add_entities(self, tenant_id: str, entities: Iterable[EntityRef]) -> None:
        self._entities.setdefault(tenant_id, []).extend(entities)

    def _pages(self, rows: Sequence[Row]) -> Iterator[List[Row]]:
        for start in range(0, len(rows), self.page_size):
            yield list(rows[start:start + self.page_size])

    def fetch_rows(
        self, tenant_id: str, period_id: str, filters: Optional[Dict[str, Any]] = None
    ) -> Iterator[Row]:
        filters = filters or {}
        selected = [
            row for row in self._rows.get(tenant_id, [])
            if row.period_id in (None, period_id)
            and all(_row_value(row, k) == v for k, v in filters.items())
        ]
        for page in self._pages(selected):
            yield from page

    def fetch_rules(self, tenant_id: str, rule_set_id: str) -> RuleSet:
        try:
            return self._rule_sets[tenant_id][rule_set_id]
        except KeyError:
            raise ConfigurationError(
                f"Rule set not found for tenant '{tenant_id}'", rule=rule_set_id
            ) from None

    def fetch_entities(self, tenant_id: str) -> List[EntityRef]:
        return list(self._entities.get(tenant_id, []))


class InMemoryBatchStore(BatchStore):
    """Batches and traces behind one short-held lock.

    The lock only guards the dictionary compare-and-set; callers never hold it
    across a transition, so reads are never blocked by a pending approval.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._batches: Dict[str, CalculationBatch] = {}
        self._traces: Dict[str, List[EntityTrace]] = {}

    def create_batch(self, batch: CalculationBatch) -> CalculationBatch:
        with self._lock:
            if batch.batch_id in self._batches:
                raise PersistenceFailure(f"Batch {batch.batch_id} already exists")
            self._batches[batch.batch_id] = batch
        logger.debug(f"Created batch {batch.batch_id} for {batch.key}")
        return batch

    def get_batch(self, batch_id: str) -> CalculationBatch:
        try:
            return self._batches[batch_id]
        except KeyError:
            raise BatchNotFound(batch_id) from None

    def list_batches(
        self,
        tenant_id: str,
        rule_set_id: Optional[str] = None,
        period_id: Optional[str] = None,
    ) -> List[CalculationBatch]:
        with self._lock:
            batches = list(self._batches.values())
        return [
            b for b in batches
            if b.tenant_id == tenant_id
            and (rule_set_id is None or b.rule_set_id == rule_set_id)
            and (period_id is None or b.period_id == period_id)
        ]

    def compare_and_set(self, batch: CalculationBatch, expected_version: int) -> CalculationBatch:
        with self._lock:
            stored = self._batches.get(batch.batch_id)
            if stored is None:
                raise BatchNotFound(batch.batch_id)
            if stored.version != expected_version:
                raise ConcurrentTransitionError(batch.batch_id, expected_version, stored.version)
            self._batches[batch.batch_id] = batch
        return batch

    def delete_batch(self, batch_id: str) -> None:
        with self._lock:
            self._batches.pop(batch_id, None)
        logger.debug(f"Deleted batch {batch_id}")

    def write_traces(self, batch_id: str, traces: List[EntityTrace]) -> None:
        with self._lock:
            self._traces[batch_id] = list(traces)

    def read_traces(self, batch_id: str) -> List[EntityTrace]:
        with self._lock:
            if batch_id not in self._traces:
                raise BatchNotFound(batch_id)
            return list(self._traces[batch_id])

    def delete_traces(self, batch_id: str) -> None:
        with self._lock:
            self._traces.pop(batch_id, None)


class InMemoryAuditSink(AuditSink):
    def __init__(self):
        self._lock = threading.Lock()
        self.records: List[AuditRecord] = []

    def write(self, record: AuditRecord) -> None:
        with self._lock:
            self.records.append(record)

    def for_resource(self, resource_id: str) -> List[AuditRecord]:
        return [r for r in self.records if r.resource_id == resource_id]
