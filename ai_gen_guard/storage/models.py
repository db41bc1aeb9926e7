"""
Data models for storage layer.

Defines the spend ledger row and the generation job record.
"""

from dataclasses import dataclass, field, replace
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class SpendRecord:
    """Immutable record of a billed AI call.

    Append-only rows that form the auditable spend ledger. Once written,
    these records must never be modified.
    """
    principal: str
    amount_usd: float
    timestamp: datetime
    category: Optional[str] = None
    model: Optional[str] = None
    operation: Optional[str] = None
    generation_id: Optional[str] = None
    request_id: Optional[str] = None

    def __post_init__(self):
        if not self.principal:
            raise ValueError("principal is required")
        if self.amount_usd < 0:
            raise ValueError("amount_usd cannot be negative")


class JobStatus(Enum):
    """Generation job states."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


@dataclass
class GenerationJob:
    """Durable record of one logical generation attempt.

    A retry mutates this same record, so ``retry_count`` and the latest
    ``error_message`` form the audit trail.
    """
    id: str
    principal: str
    status: JobStatus
    input_spec: Dict[str, Any]
    started_at: datetime
    operation_handle: Optional[str] = None
    retry_count: int = 0
    error_message: Optional[str] = None
    completed_at: Optional[datetime] = None
    output_metadata: Optional[Dict[str, Any]] = None
    estimated_cost_usd: float = 0.0
    updated_at: Optional[datetime] = field(default=None, compare=False)

    def check_invariants(self) -> None:
        """Raise ValueError if the status-dependent fields are inconsistent."""
        if self.operation_handle is not None and self.status != JobStatus.PROCESSING:
            raise ValueError("operation_handle is only set while processing")
        if self.error_message is not None and self.status != JobStatus.FAILED:
            raise ValueError("error_message is only set while failed")
        if (self.completed_at is not None) != self.status.is_terminal:
            raise ValueError("completed_at must be set exactly when terminal")

    def copy(self) -> "GenerationJob":
        """Snapshot safe to hand to callers."""
        return replace(
            self,
            input_spec=dict(self.input_spec),
            output_metadata=dict(self.output_metadata) if self.output_metadata is not None else None,
        )
