# core/lifecycle.py
"""
Lifecycle State Machine for calculation batches.

Display order:
  DRAFT -> PREVIEW -> RECONCILE -> OFFICIAL -> APPROVED -> POSTED -> CLOSED -> PAID -> PUBLISHED

Approval always goes through the side states:
  OFFICIAL -> PENDING_APPROVAL -> APPROVED | REJECTED,   REJECTED -> OFFICIAL

Every successful transition bumps the batch version through the store's
compare-and-set, appends one AuditEntry to the batch, and ships one
AuditRecord to the audit sink. A failing sink never undoes the transition.
"""
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple, Union

from ..adapters.base import AuditSink, BatchStore
from ..errors import (
    ConcurrentTransitionError,
    InvalidTransition,
    LifecycleError,
    PersistenceFailure,
    SeparationOfDutiesViolation,
)
from ..models.batch import AuditEntry, AuditRecord, CalculationBatch, LifecycleState

logger = logging.getLogger(__name__)

S = LifecycleState

DISPLAY_ORDER: Tuple[LifecycleState, ...] = (
    S.DRAFT, S.PREVIEW, S.RECONCILE, S.OFFICIAL, S.APPROVED,
    S.POSTED, S.CLOSED, S.PAID, S.PUBLISHED,
)

TRANSITIONS: Dict[LifecycleState, Tuple[LifecycleState, ...]] = {
    S.DRAFT: (S.PREVIEW,),
    S.PREVIEW: (S.RECONCILE, S.DRAFT),
    S.RECONCILE: (S.OFFICIAL, S.PREVIEW),
    S.OFFICIAL: (S.PENDING_APPROVAL, S.PREVIEW, S.RECONCILE),
    S.PENDING_APPROVAL: (S.APPROVED, S.REJECTED),
    S.REJECTED: (S.OFFICIAL,),
    S.APPROVED: (S.POSTED, S.OFFICIAL),
    S.POSTED: (S.CLOSED,),
    S.CLOSED: (S.PAID,),
    S.PAID: (S.PUBLISHED,),
    S.PUBLISHED: (),
}

APPROVAL_TRANSITIONS = frozenset({
    (S.PENDING_APPROVAL, S.APPROVED),
    (S.PENDING_APPROVAL, S.REJECTED),
})

# Visibility rank; the approval side states sit with OFFICIAL.
STATE_RANK: Dict[LifecycleState, int] = {
    S.DRAFT: 0,
    S.PREVIEW: 1,
    S.RECONCILE: 2,
    S.OFFICIAL: 3,
    S.PENDING_APPROVAL: 3,
    S.REJECTED: 3,
    S.APPROVED: 4,
    S.POSTED: 5,
    S.CLOSED: 6,
    S.PAID: 7,
    S.PUBLISHED: 8,
}

SIDE_EFFECTS: Dict[Tuple[LifecycleState, LifecycleState], str] = {
    (S.DRAFT, S.PREVIEW): "Publish preview results to administrators",
    (S.PREVIEW, S.RECONCILE): "Open reconciliation against ground truth",
    (S.RECONCILE, S.OFFICIAL): "Lock calculation results",
    (S.OFFICIAL, S.PENDING_APPROVAL): "Create approval request",
    (S.PENDING_APPROVAL, S.APPROVED): "Record approval",
    (S.PENDING_APPROVAL, S.REJECTED): "Record rejection",
    (S.REJECTED, S.OFFICIAL): "Return batch for rework",
    (S.APPROVED, S.POSTED): "Make results visible",
    (S.POSTED, S.CLOSED): "Prevent further changes",
    (S.CLOSED, S.PAID): "Record payment",
    (S.PAID, S.PUBLISHED): "Seal audit trail",
}

NEXT_ACTIONS: Dict[LifecycleState, Optional[str]] = {
    S.DRAFT: "Run preview",
    S.PREVIEW: "Reconcile results",
    S.RECONCILE: "Mark results official",
    S.OFFICIAL: "Submit for approval",
    S.PENDING_APPROVAL: "Awaiting approval",
    S.REJECTED: "Rework and resubmit",
    S.APPROVED: "Post results",
    S.POSTED: "Close period",
    S.CLOSED: "Record payment",
    S.PAID: "Publish",
    S.PUBLISHED: None,
}


class Audience(str, Enum):
    ENTITY = "entity"
    REVIEWER = "reviewer"
    ADMIN = "admin"


_MIN_RANK_BY_AUDIENCE = {
    Audience.ENTITY: STATE_RANK[S.POSTED],
    Audience.REVIEWER: STATE_RANK[S.OFFICIAL],
    Audience.ADMIN: STATE_RANK[S.DRAFT],
}


def allowed_transitions(state: LifecycleState) -> List[LifecycleState]:
    return list(TRANSITIONS[LifecycleState(state)])


def is_valid_transition(current: LifecycleState, target: LifecycleState) -> bool:
    return LifecycleState(target) in TRANSITIONS[LifecycleState(current)]


def side_effect(current: LifecycleState, target: LifecycleState) -> Optional[str]:
    return SIDE_EFFECTS.get((LifecycleState(current), LifecycleState(target)))


def next_action(state: LifecycleState) -> Optional[str]:
    return NEXT_ACTIONS[LifecycleState(state)]


def progress_percent(state: LifecycleState) -> int:
    """Position along the display order, side states counted as OFFICIAL."""
    rank = STATE_RANK[LifecycleState(state)]
    return round(rank / (len(DISPLAY_ORDER) - 1) * 100)


def can_view(batch: CalculationBatch, audience: Union[Audience, str]) -> bool:
    return STATE_RANK[batch.lifecycle_state] >= _MIN_RANK_BY_AUDIENCE[Audience(audience)]


def can_act(batch: CalculationBatch, actor: str) -> bool:
    """False while the actor's own submission is waiting for someone else."""
    return not (
        batch.lifecycle_state == S.PENDING_APPROVAL and batch.submitted_by == actor
    )


@dataclass
class TransitionResult:
    batch: CalculationBatch
    audit_entry: AuditEntry
    side_effect: Optional[str] = None
    superseded: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class LifecycleService:
    """Applies transitions against a BatchStore.

    ``clock`` is injectable so tests get deterministic timestamps.
    """

    def __init__(
        self,
        store: BatchStore,
        audit_sink: Optional[AuditSink] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.store = store
        self.audit_sink = audit_sink
        self.clock = clock or _utcnow

    def _audit(self, record: AuditRecord) -> Optional[str]:
        if self.audit_sink is None:
            return None
        try:
            self.audit_sink.write(record)
        except Exception as e:
            warning = f"Audit write failed for {record.resource_id} ({record.action}): {e}"
            logger.warning(warning)
            return warning
        return None

    def create_batch(
        self,
        tenant_id: str,
        rule_set_id: str,
        period_id: str,
        actor: str,
        entity_count: int = 0,
        summary: Optional[Dict[str, Any]] = None,
        batch_id: Optional[str] = None,
    ) -> Tuple[CalculationBatch, List[str]]:
        """Create a DRAFT batch and supersede the current one for the same key.

        Returns the stored batch and any audit warnings. If the previous batch
        cannot be superseded the new batch is deleted again and the error
        propagates, so the key never ends up with two current batches.
        """
        previous = self.store.current_batch(tenant_id, rule_set_id, period_id)
        now = self.clock()
        batch = CalculationBatch(
            batch_id=batch_id or str(uuid.uuid4()),
            tenant_id=tenant_id,
            rule_set_id=rule_set_id,
            period_id=period_id,
            entity_count=entity_count,
            summary=summary or {},
            supersedes=previous.batch_id if previous else None,
            created_by=actor,
            created_at=now,
            updated_at=now,
        )
        batch = self.store.create_batch(batch)
        try:
            _, warnings = self.supersede_previous(batch)
        except (ConcurrentTransitionError, PersistenceFailure) as e:
            logger.error(f"Discarding batch {batch.batch_id}: previous batch for {batch.key} not superseded: {e}")
            self.store.delete_batch(batch.batch_id)
            raise
        logger.info(f"Created batch {batch.batch_id} ({entity_count} entities) for {batch.key}")

        warning = self._audit(AuditRecord(
            tenant_id=tenant_id,
            action="batch_created",
            resource_type="calculation_batch",
            resource_id=batch.batch_id,
            changes={"rule_set_id": rule_set_id, "period_id": period_id, "actor": actor},
            timestamp=now,
        ))
        if warning:
            warnings.append(warning)
        return batch, warnings

    def _mark_superseded(self, batch_id: str, superseded_by: Optional[str]) -> bool:
        """CAS ``superseded_by`` onto a batch, retrying on version races.

        Returns False when the batch was already superseded by someone else.
        """
        for attempt in range(3):
            current = self.store.get_batch(batch_id)
            if superseded_by is not None and current.is_superseded:
                return False
            updated = current.model_copy(update={
                "superseded_by": superseded_by,
                "version": current.version + 1,
                "updated_at": self.clock(),
            })
            try:
                self.store.compare_and_set(updated, expected_version=current.version)
                return True
            except ConcurrentTransitionError:
                logger.debug(f"Retrying supersede of {batch_id} (attempt {attempt + 1})")
        latest = self.store.get_batch(batch_id)
        raise ConcurrentTransitionError(batch_id, current.version, latest.version)

    def _restore(self, batch_ids: List[str], superseded_by: str) -> None:
        for batch_id in batch_ids:
            try:
                if self.store.get_batch(batch_id).superseded_by == superseded_by:
                    self._mark_superseded(batch_id, None)
                    logger.info(f"Restored batch {batch_id} after failed supersede by {superseded_by}")
            except (LifecycleError, PersistenceFailure) as e:
                logger.error(f"Could not restore batch {batch_id}: {e}")

    def supersede_previous(self, batch: CalculationBatch) -> Tuple[List[str], List[str]]:
        """Mark every older non-superseded batch for ``batch.key`` as superseded by it.

        Only batches stored before ``batch`` are touched, and nothing happens
        once ``batch`` is itself superseded, so two overlapping runs for one
        key settle on the later one. If a write fails, the batches already
        marked are restored before the error propagates.
        """
        if self.store.get_batch(batch.batch_id).is_superseded:
            logger.info(f"Batch {batch.batch_id} already superseded; nothing to supersede")
            return [], []

        siblings = self.store.list_batches(batch.tenant_id, batch.rule_set_id, batch.period_id)
        ids = [b.batch_id for b in siblings]
        older = siblings[:ids.index(batch.batch_id)] if batch.batch_id in ids else siblings

        superseded: List[str] = []
        try:
            for other in older:
                if not other.is_superseded and self._mark_superseded(other.batch_id, batch.batch_id):
                    superseded.append(other.batch_id)
                    logger.info(f"Batch {other.batch_id} superseded by {batch.batch_id}")
        except (ConcurrentTransitionError, PersistenceFailure):
            self._restore(superseded, batch.batch_id)
            raise

        warnings: List[str] = []
        for batch_id in superseded:
            warning = self._audit(AuditRecord(
                tenant_id=batch.tenant_id,
                action="batch_superseded",
                resource_type="calculation_batch",
                resource_id=batch_id,
                changes={"superseded_by": batch.batch_id},
                timestamp=self.clock(),
            ))
            if warning:
                warnings.append(warning)
        return superseded, warnings

    def transition(
        self,
        batch: Union[CalculationBatch, str],
        target: Union[LifecycleState, str],
        actor: str,
        details: Optional[str] = None,
    ) -> TransitionResult:
        """Move ``batch`` to ``target``.

        Validation runs against the batch as passed in; the write only lands
        if the stored version still matches it. For REJECTED ``details`` is the
        rejection reason, for PAID the payment reference.
        """
        if isinstance(batch, str):
            batch = self.store.get_batch(batch)
        target = LifecycleState(target)
        current = batch.lifecycle_state

        if batch.is_superseded:
            raise LifecycleError(
                f"Batch {batch.batch_id} is superseded by {batch.superseded_by} and read-only"
            )
        if not is_valid_transition(current, target):
            raise InvalidTransition(current.value, target.value)
        if (current, target) in APPROVAL_TRANSITIONS and actor == batch.submitted_by:
            raise SeparationOfDutiesViolation(actor, target.value)

        now = self.clock()
        entry = AuditEntry(from_state=current, to_state=target, actor=actor, timestamp=now, details=details)
        updates: Dict[str, Any] = {
            "lifecycle_state": target,
            "version": batch.version + 1,
            "updated_at": now,
            "audit_trail": batch.audit_trail + (entry,),
        }
        if target == S.PENDING_APPROVAL:
            updates["submitted_by"] = actor
        elif target == S.APPROVED:
            updates["approved_by"] = actor
        elif target == S.REJECTED:
            updates["rejected_by"] = actor
            updates["rejection_reason"] = details
        elif target == S.PAID:
            updates["payment_reference"] = details

        updated = self.store.compare_and_set(
            batch.model_copy(update=updates), expected_version=batch.version
        )
        effect = side_effect(current, target)
        logger.info(
            f"Batch {batch.batch_id}: {current.value} -> {target.value} by {actor}"
            + (f" ({effect})" if effect else "")
        )

        result = TransitionResult(batch=updated, audit_entry=entry, side_effect=effect)
        if STATE_RANK[target] >= STATE_RANK[S.OFFICIAL]:
            # The state change is committed; a sibling that cannot be marked is reported only.
            try:
                result.superseded, result.warnings = self.supersede_previous(updated)
            except (ConcurrentTransitionError, PersistenceFailure) as e:
                warning = f"Batch {batch.batch_id} is {target.value} but older batches were not superseded: {e}"
                logger.warning(warning)
                result.warnings.append(warning)

        warning = self._audit(AuditRecord(
            tenant_id=batch.tenant_id,
            action=f"lifecycle_transition:{current.value}->{target.value}",
            resource_type="calculation_batch",
            resource_id=batch.batch_id,
            changes={"from_state": current.value, "to_state": target.value, "actor": actor, "details": details},
            timestamp=now,
        ))
        if warning:
            result.warnings.append(warning)
        return result

    def current_batch(self, tenant_id: str, rule_set_id: str, period_id: str) -> Optional[CalculationBatch]:
        return self.store.current_batch(tenant_id, rule_set_id, period_id)
