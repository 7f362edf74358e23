"""Pydantic v2 models for the case transition engine.

Defines the lifecycle enumerations, the static transition rule types, the
persisted records (cases, tasks, events, history, approvals, notifications)
and the result payloads returned by the services.
"""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid4().hex


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Phase(str, Enum):
    """Case lifecycle phases, declared in workflow order.

    intake → preparation → proceedings → resolution → closure
    Closure is terminal.
    """

    INTAKE_RISK_ASSESSMENT = "intake_risk_assessment"
    PRE_PROCEEDING_PREPARATION = "pre_proceeding_preparation"
    FORMAL_PROCEEDINGS = "formal_proceedings"
    RESOLUTION_POST_PROCEEDING = "resolution_post_proceeding"
    CLOSURE_REVIEW_ARCHIVING = "closure_review_archiving"

    @property
    def is_terminal(self) -> bool:
        return self is Phase.CLOSURE_REVIEW_ARCHIVING


PHASE_ORDER: tuple[Phase, ...] = tuple(Phase)


class CaseStatus(str, Enum):
    """User-facing case status, tracked alongside the phase."""

    INTAKE = "intake"
    ACTIVE = "active"
    PENDING = "pending"
    COMPLETED = "completed"
    CLOSED = "closed"


class CaseType(str, Enum):
    """Practice area; selects the rule overlay and side effects."""

    LABOR_DISPUTE = "labor_dispute"
    MEDICAL_MALPRACTICE = "medical_malpractice"
    CRIMINAL_DEFENSE = "criminal_defense"
    DIVORCE_FAMILY = "divorce_family"
    INHERITANCE_DISPUTE = "inheritance_dispute"
    CONTRACT_DISPUTE = "contract_dispute"
    ADMINISTRATIVE_CASE = "administrative_case"
    DEMOLITION_CASE = "demolition_case"
    SPECIAL_MATTERS = "special_matters"


class UserRole(str, Enum):
    """Roles of the people acting on a case."""

    ADMIN = "admin"
    ATTORNEY = "attorney"
    PARALEGAL = "paralegal"
    ASSISTANT = "assistant"
    CLIENT = "client"


class ConditionOperator(str, Enum):
    """Predicates supported by the condition evaluator."""

    EQUALS = "equals"
    NOT_EQUALS = "not_equals"
    CONTAINS = "contains"
    EXISTS = "exists"
    NOT_EXISTS = "not_exists"


class LifecycleEventType(str, Enum):
    PHASE_ENTERED = "phase_entered"
    PHASE_COMPLETED = "phase_completed"
    STATUS_CHANGED = "status_changed"
    MILESTONE_REACHED = "milestone_reached"


class ApprovalStatus(str, Enum):
    """Approval request state. PENDING is initial; the others are terminal."""

    PENDING = "pending"
    APPROVED = "approved"
    REJECTED = "rejected"


class NotificationType(str, Enum):
    PHASE_CHANGE = "phase_change"
    STATUS_CHANGE = "status_change"
    APPROVAL_REQUIRED = "approval_required"
    APPROVAL_REJECTED = "approval_rejected"
    TRANSITION_COMPLETED = "transition_completed"


class TaskStatus(str, Enum):
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    CANCELLED = "cancelled"

    @property
    def is_open(self) -> bool:
        return self in (TaskStatus.PENDING, TaskStatus.IN_PROGRESS)


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


# ---------------------------------------------------------------------------
# Transition rules (static configuration)
# ---------------------------------------------------------------------------

class Condition(BaseModel):
    """Guard evaluated against the metadata supplied with a request.

    ``operator`` accepts any string so that rule tables with an unknown
    operator still load; the evaluator treats those as failing.
    """

    model_config = ConfigDict(frozen=True)

    field: str
    operator: ConditionOperator | str
    value: Any = None


class StateTransition(BaseModel):
    """One allowed move between two phases."""

    model_config = ConfigDict(frozen=True)

    from_phase: Phase
    to_phase: Phase
    allowed_roles: frozenset[UserRole]
    conditions: tuple[Condition, ...] = ()
    required_fields: tuple[str, ...] = ()


class CaseState(BaseModel):
    """Decision-time view over a case record."""

    phase: Phase
    status: CaseStatus
    case_type: CaseType
    metadata: dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Persisted records
# ---------------------------------------------------------------------------

class User(BaseModel):
    id: str = Field(default_factory=new_id)
    name: str
    role: UserRole


class CaseRecord(BaseModel):
    """A case; the single source of truth for its phase and status."""

    id: str = Field(default_factory=new_id)
    title: str
    case_type: CaseType
    phase: Phase = Phase.INTAKE_RISK_ASSESSMENT
    status: CaseStatus = CaseStatus.INTAKE
    attorney_id: str
    client_id: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    version: int = 0
    phase_entered_at: datetime = Field(default_factory=utcnow)
    closed_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)

    def to_state(self) -> CaseState:
        return CaseState(
            phase=self.phase,
            status=self.status,
            case_type=self.case_type,
            metadata=dict(self.metadata),
        )


class Task(BaseModel):
    id: str = Field(default_factory=new_id)
    case_id: str
    title: str
    description: str = ""
    assigned_to: str
    assigned_by: str
    due_date: datetime
    priority: TaskPriority = TaskPriority.MEDIUM
    status: TaskStatus = TaskStatus.PENDING
    created_at: datetime = Field(default_factory=utcnow)


class Appointment(BaseModel):
    id: str = Field(default_factory=new_id)
    case_id: str
    title: str
    description: str = ""
    start_time: datetime
    end_time: datetime
    attorney_id: str
    client_id: str
    status: str = "scheduled"


class LifecycleEvent(BaseModel):
    """Append-only lifecycle log entry."""

    id: str = Field(default_factory=new_id)
    case_id: str
    event_type: LifecycleEventType
    phase: Phase
    status: CaseStatus | None = None
    timestamp: datetime = Field(default_factory=utcnow)
    user_id: str
    description: str
    metadata: dict[str, Any] | None = None


class TransitionHistory(BaseModel):
    """Append-only record of one executed transition."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(default_factory=new_id)
    case_id: str
    from_phase: Phase
    to_phase: Phase
    from_status: CaseStatus
    to_status: CaseStatus
    user_id: str
    user_role: UserRole
    reason: str | None = None
    timestamp: datetime = Field(default_factory=utcnow)
    metadata: dict[str, Any] = Field(default_factory=dict)


class TransitionRequest(BaseModel):
    """Caller's request to move a case to another phase.

    ``expected_version`` optionally pins the case version the caller last
    saw; the request fails with a retryable error if the case moved on.
    """

    case_id: str
    target_phase: Phase
    target_status: CaseStatus | None = None
    actor_id: str
    actor_role: UserRole
    reason: str | None = None
    metadata: dict[str, Any] = Field(default_factory=dict)
    expected_version: int | None = None


class TransitionApproval(BaseModel):
    """Parked transition awaiting a decision.

    ``request`` keeps the original request verbatim so approval replays
    exactly what was asked for.
    """

    id: str = Field(default_factory=new_id)
    case_id: str
    target_phase: Phase
    target_status: CaseStatus | None = None
    requested_by: str
    requested_by_role: UserRole
    approved_by: str | None = None
    approved_by_role: UserRole | None = None
    status: ApprovalStatus = ApprovalStatus.PENDING
    reason: str | None = None
    decision_reason: str | None = None
    request: TransitionRequest
    created_at: datetime = Field(default_factory=utcnow)
    decided_at: datetime | None = None


class TransitionNotification(BaseModel):
    id: str = Field(default_factory=new_id)
    case_id: str
    transition_id: str
    recipient_id: str
    recipient_role: UserRole
    message: str
    type: NotificationType
    is_read: bool = False
    created_at: datetime = Field(default_factory=utcnow)
    read_at: datetime | None = None


# ---------------------------------------------------------------------------
# Results
# ---------------------------------------------------------------------------

class TransitionCheck(BaseModel):
    """Structural allow/deny decision from the state machine."""

    allowed: bool
    message: str = ""
    errors: list[str] = Field(default_factory=list)


class ValidationResult(BaseModel):
    """Outcome of a domain validator pass."""

    is_valid: bool = True
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class PhaseTransitionOutcome(BaseModel):
    """Result of ``LifecycleService.transition_to_phase``."""

    success: bool
    message: str = ""
    events: list[LifecycleEvent] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class TransitionResult(BaseModel):
    """Result returned to callers of the transition service."""

    success: bool
    message: str
    transition_id: str | None = None
    approval_required: bool = False
    events: list[LifecycleEvent] = Field(default_factory=list)
    errors: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    recommendations: list[str] = Field(default_factory=list)


class PhaseRequirements(BaseModel):
    phase: Phase
    requirements: list[str] = Field(default_factory=list)
    estimated_duration: int = 0
    critical_tasks: list[str] = Field(default_factory=list)
    deliverables: list[str] = Field(default_factory=list)


class CaseProgress(BaseModel):
    current_phase: Phase
    current_status: CaseStatus
    progress_percentage: int
    completed_phases: list[Phase] = Field(default_factory=list)
    upcoming_milestones: list[str] = Field(default_factory=list)
    overdue_tasks: list[str] = Field(default_factory=list)
    estimated_completion: datetime | None = None
