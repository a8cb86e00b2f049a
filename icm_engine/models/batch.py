# models/batch.py - Calculation batch and audit records
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional, Tuple

from pydantic import BaseModel, ConfigDict


class LifecycleState(str, Enum):
    DRAFT = "DRAFT"
    PREVIEW = "PREVIEW"
    RECONCILE = "RECONCILE"
    OFFICIAL = "OFFICIAL"
    PENDING_APPROVAL = "PENDING_APPROVAL"
    REJECTED = "REJECTED"
    APPROVED = "APPROVED"
    POSTED = "POSTED"
    CLOSED = "CLOSED"
    PAID = "PAID"
    PUBLISHED = "PUBLISHED"


class AuditEntry(BaseModel):
    """One lifecycle transition as recorded on the batch itself."""
    model_config = ConfigDict(frozen=True)

    from_state: LifecycleState
    to_state: LifecycleState
    actor: str
    timestamp: datetime
    details: Optional[str] = None


class AuditRecord(BaseModel):
    """Append-only record shipped to the external audit sink."""
    model_config = ConfigDict(frozen=True)

    tenant_id: str
    action: str
    resource_type: str
    resource_id: str
    changes: Dict[str, Any] = {}
    timestamp: datetime


class CalculationBatch(BaseModel):
    """One evaluation run for (tenant, rule_set, period).

    A batch that became current is never deleted; a newer run for the same
    key sets ``superseded_by`` on the older one.
    """
    batch_id: str
    tenant_id: str
    rule_set_id: str
    period_id: str
    lifecycle_state: LifecycleState = LifecycleState.DRAFT
    entity_count: int = 0
    summary: Dict[str, Any] = {}
    superseded_by: Optional[str] = None
    supersedes: Optional[str] = None
    created_by: Optional[str] = None
    submitted_by: Optional[str] = None
    approved_by: Optional[str] = None
    rejected_by: Optional[str] = None
    rejection_reason: Optional[str] = None
    payment_reference: Optional[str] = None
    version: int = 0
    audit_trail: Tuple[AuditEntry, ...] = ()
    created_at: datetime
    updated_at: datetime

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.tenant_id, self.rule_set_id, self.period_id)

    @property
    def is_superseded(self) -> bool:
        return self.superseded_by is not None
