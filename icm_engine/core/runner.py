# core/runner.py
"""
Batch runner: one calculation run for (tenant, rule set, period).

  1. fetch + validate the rule set   (ConfigurationError aborts before any entity)
  2. fetch entities
  3. per entity, on a bounded thread pool: stream rows -> derive -> evaluate
  4. write traces, then create the batch (the commit point), superseding the
     previous batch for the same key
  5. DRAFT -> PREVIEW, then notify observers

A failed entity is recorded on its own trace and the run carries on. A
PersistenceFailure (or a lost supersede race) while writing traces or the
batch aborts the run: the half-written traces are dropped and no new batch
is visible.

With ``cache.enabled`` set and no cache injected, derivations are memoized
in a TTLCache sized from ``settings.cache``.
"""
import logging
import uuid
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence

from ..adapters.base import AuditSink, BatchStore, RowStoreAdapter
from ..config.settings import EngineSettings
from ..errors import ConcurrentTransitionError, PersistenceFailure
from ..models.batch import CalculationBatch, LifecycleState
from ..models.reports import CalculationSummary
from ..models.schemas import EntityRef, RuleSet
from ..models.traces import EntityTrace
from ..utils.cache import TTLCache, derivation_cache_key
from ..utils.logging_utils import BatchLoggerAdapter
from ..utils.validation import validate_rule_set
from .derivation import DerivationResult, MetricDerivationEngine
from .evaluator import evaluate_all
from .lifecycle import LifecycleService
from .observers import BatchObserver, notify_observers
from .summary import summarize

logger = logging.getLogger(__name__)


def _cache_from_settings(settings: EngineSettings) -> Optional[TTLCache]:
    if not settings.cache.enabled:
        return None
    return TTLCache(ttl=settings.cache.ttl_seconds, max_entries=settings.cache.max_entries)


@dataclass
class RunResult:
    batch: CalculationBatch
    summary: CalculationSummary
    traces: List[EntityTrace]
    superseded: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    @property
    def failed_entities(self) -> List[str]:
        return [t.entity_id for t in self.traces if not t.succeeded]


class CalculationRunner:
    def __init__(
        self,
        row_store: RowStoreAdapter,
        batch_store: BatchStore,
        audit_sink: Optional[AuditSink] = None,
        settings: Optional[EngineSettings] = None,
        observers: Optional[Sequence[BatchObserver]] = None,
        cache: Optional[TTLCache] = None,
        lifecycle: Optional[LifecycleService] = None,
        id_factory: Optional[Callable[[], str]] = None,
    ):
        self.row_store = row_store
        self.batch_store = batch_store
        self.settings = settings or EngineSettings()
        self.observers = list(observers or [])
        self.cache = cache if cache is not None else _cache_from_settings(self.settings)
        self.lifecycle = lifecycle or LifecycleService(batch_store, audit_sink)
        self.id_factory = id_factory or (lambda: str(uuid.uuid4()))

    def _derive(self, engine: MetricDerivationEngine, rule_set: RuleSet, rows) -> DerivationResult:
        if self.cache is None:
            return engine.derive_with_diagnostics(rows)
        rows = list(rows)
        key = derivation_cache_key(rule_set.derivation_rules, rows)
        result = self.cache.get(key)
        if result is None:
            result = engine.derive_with_diagnostics(rows)
            self.cache.set(key, result)
        return result

    def _discard_traces(self, batch_id: str, log: logging.LoggerAdapter) -> None:
        try:
            self.batch_store.delete_traces(batch_id)
        except PersistenceFailure as e:
            log.error(f"Orphaned traces for {batch_id} could not be deleted: {e}")

    def evaluate_entity(
        self,
        tenant_id: str,
        period_id: str,
        entity: EntityRef,
        rule_set: RuleSet,
        engine: Optional[MetricDerivationEngine] = None,
    ) -> EntityTrace:
        """Derive and evaluate one entity. Never raises for entity-level problems."""
        engine = engine or MetricDerivationEngine(rule_set.derivation_rules)
        try:
            rows = self.row_store.fetch_rows(tenant_id, period_id, {"entity_id": entity.entity_id})
            derivation = self._derive(engine, rule_set, rows)
            evaluations = evaluate_all(
                derivation.metrics, rule_set.components, derivation.unmatched, entity.entity_id
            )
        except Exception as e:
            logger.exception(f"Entity {entity.entity_id} failed: {e}")
            return EntityTrace(
                entity_id=entity.entity_id,
                entity_name=entity.name,
                group_id=entity.group_id,
                variant=entity.variant,
                error=f"{type(e).__name__}: {e}",
            )

        return EntityTrace(
            entity_id=entity.entity_id,
            entity_name=entity.name,
            group_id=entity.group_id,
            variant=entity.variant,
            metrics=derivation.metrics,
            components=[e.trace for e in evaluations],
            total=sum(e.value for e in evaluations),
        )

    def run(self, tenant_id: str, rule_set_id: str, period_id: str, actor: str) -> RunResult:
        batch_id = self.id_factory()
        log = BatchLoggerAdapter(logger, {"tenant": tenant_id, "period": period_id, "batch": batch_id})

        rule_set = self.row_store.fetch_rules(tenant_id, rule_set_id)
        warnings = validate_rule_set(rule_set)
        engine = MetricDerivationEngine(rule_set.derivation_rules)

        entities = self.row_store.fetch_entities(tenant_id)
        log.info(f"Calculating {len(entities)} entities with rule set '{rule_set_id}'")

        workers = max(1, min(self.settings.engine.max_workers, len(entities) or 1))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="icm-entity") as pool:
            futures = [
                pool.submit(self.evaluate_entity, tenant_id, period_id, entity, rule_set, engine)
                for entity in entities
            ]
            traces = [f.result() for f in futures]

        failed = [t.entity_id for t in traces if not t.succeeded]
        if failed:
            log.warning(f"{len(failed)} of {len(traces)} entities failed")

        summary = summarize(
            traces,
            batch_id=batch_id,
            tenant_id=tenant_id,
            period_id=period_id,
            outlier_sigma=self.settings.summary.outlier_sigma,
        )

        try:
            self.batch_store.write_traces(batch_id, traces)
            batch, create_warnings = self.lifecycle.create_batch(
                tenant_id,
                rule_set_id,
                period_id,
                actor,
                entity_count=len(traces),
                summary=summary.model_dump(mode="json"),
                batch_id=batch_id,
            )
        except (ConcurrentTransitionError, PersistenceFailure) as e:
            log.error(f"Run aborted, batch not persisted: {e}")
            self._discard_traces(batch_id, log)
            raise
        warnings.extend(create_warnings)

        transition = self.lifecycle.transition(
            batch, LifecycleState.PREVIEW, actor, details=f"Calculated {len(traces)} entities"
        )
        warnings.extend(transition.warnings)
        warnings.extend(notify_observers(self.observers, transition.batch, summary))

        log.info(f"Run complete: total payout {summary.total_payout:,.2f}")
        return RunResult(
            batch=transition.batch,
            summary=summary,
            traces=traces,
            superseded=[batch.supersedes] if batch.supersedes else [],
            warnings=warnings,
        )
