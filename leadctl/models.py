import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

# Item states
PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"
SKIPPED = "skipped"
LOW_QUALITY = "low_quality"
EXHAUSTED = "exhausted"
AWAITING_APPROVAL = "awaiting_approval"

STATUSES = (
    PENDING, PROCESSING, COMPLETED, FAILED, SKIPPED,
    LOW_QUALITY, EXHAUSTED, AWAITING_APPROVAL,
)
TERMINAL_STATUSES = (COMPLETED, FAILED, SKIPPED, EXHAUSTED)

# Worker states
RUNNING = "running"
STOPPED = "stopped"
CRASHED = "crashed"

# Health
HEALTHY = "healthy"
STALE = "stale"


class PipelineError(Exception):
    """Base class for errors raised by the coordinator and its handlers."""


class TransientError(PipelineError):
    """Retryable failure: timeouts, flaky services, malformed AI output."""


class ValidationError(PipelineError):
    """The input can never succeed at this stage; fail without retrying."""


class HandlerNotFound(PipelineError):
    pass


class UnknownStage(PipelineError):
    pass


@dataclass
class QueueItem:
    id: int
    queue: str
    status: str
    company_name: str = ""
    payload: Dict[str, Any] = field(default_factory=dict)
    attempts: int = 0
    max_attempts: int = 3
    lock_owner: Optional[str] = None
    lease_expiry: Optional[str] = None
    last_error: Optional[str] = None
    source_id: Optional[int] = None
    created_at: str = ""
    updated_at: str = ""
    completed_at: Optional[str] = None
    row: Dict[str, Any] = field(default_factory=dict, repr=False)

    @classmethod
    def from_row(cls, queue: str, row) -> "QueueItem":
        data = dict(row)
        try:
            payload = json.loads(data.get("payload") or "{}")
        except ValueError:
            payload = {}
        return cls(
            id=data["id"],
            queue=queue,
            status=data["status"],
            company_name=data.get("company_name") or "",
            payload=payload,
            attempts=data.get("attempts") or 0,
            max_attempts=data.get("max_attempts") or 0,
            lock_owner=data.get("lock_owner"),
            lease_expiry=data.get("lease_expiry"),
            last_error=data.get("last_error"),
            source_id=data.get("source_id"),
            created_at=data.get("created_at") or "",
            updated_at=data.get("updated_at") or "",
            completed_at=data.get("completed_at"),
            row=data,
        )

    def get(self, column: str, default=None):
        value = self.row.get(column)
        return default if value is None else value


@dataclass
class WorkerRecord:
    name: str
    enabled: bool = True
    status: str = STOPPED
    last_heartbeat: Optional[str] = None
    processed_count: int = 0
    error_count: int = 0
    started_at: Optional[str] = None
    current_item: Optional[str] = None


# ---------- Handler outcomes ----------
@dataclass
class Advance:
    """Hand the item to the next queue, then mark it completed."""
    payload: Dict[str, Any] = field(default_factory=dict)
    fields: Dict[str, Any] = field(default_factory=dict)
    quality: Optional[float] = None


@dataclass
class Scored:
    """A result with a quality score; the stage's gate decides what happens."""
    score: float
    payload: Dict[str, Any] = field(default_factory=dict)
    fields: Dict[str, Any] = field(default_factory=dict)


@dataclass
class Requeue:
    reason: str


@dataclass
class Skip:
    reason: str


@dataclass
class Park:
    """Leave the item in a non-forward status such as low_quality or exhausted."""
    status: str
    reason: Optional[str] = None
    fields: Dict[str, Any] = field(default_factory=dict)
