"""Best-effort work that follows a committed phase change.

Phase-entry tasks and case-type follow-ups (court dates, expert
consultations, mediation) are attempted a few times and then given up on.
A failed side effect is logged and reported as a warning; it never undoes
the transition that triggered it.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from pydantic import BaseModel, ConfigDict
from tenacity import Retrying, before_sleep_log, stop_after_attempt, wait_exponential

from .exceptions import RuleConfigurationError
from .schemas import (
    Appointment,
    CaseRecord,
    CaseType,
    Phase,
    Task,
    TaskPriority,
)
from .store import CaseStore

logger = logging.getLogger(__name__)


class SideEffectRunner:
    """Runs a callable with retries and reports whether it finally succeeded.

    Args:
        attempts: Total attempts before giving up.
        wait_seconds: Base of the exponential back-off between attempts.
    """

    def __init__(self, attempts: int = 3, wait_seconds: float = 0.5) -> None:
        self.attempts = max(1, attempts)
        self.wait_seconds = wait_seconds

    def run(self, name: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> bool:
        """Call ``fn(*args, **kwargs)``, retrying on any exception.

        Returns:
            True if a call succeeded, False once every attempt failed.
        """
        retrying = Retrying(
            stop=stop_after_attempt(self.attempts),
            wait=wait_exponential(multiplier=self.wait_seconds, max=self.wait_seconds * 8),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            retrying(fn, *args, **kwargs)
        except Exception:
            logger.exception("Side effect %r failed after %d attempt(s)", name, self.attempts)
            return False
        return True


# ---------------------------------------------------------------------------
# Phase-entry actions
# ---------------------------------------------------------------------------

class TaskTemplate(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str
    description: str
    due_in_days: int
    priority: TaskPriority = TaskPriority.MEDIUM


class AppointmentTemplate(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str
    description: str
    starts_in_days: int
    duration_hours: int


class PhaseEntryAction(BaseModel):
    """What happens when a case enters a phase.

    ``closes_case`` is applied together with the phase change itself; the
    tasks are created afterwards as side effects.
    """

    model_config = ConfigDict(frozen=True)

    tasks: tuple[TaskTemplate, ...] = ()
    closes_case: bool = False


PHASE_ENTRY_ACTIONS: dict[Phase, PhaseEntryAction] = {
    Phase.INTAKE_RISK_ASSESSMENT: PhaseEntryAction(tasks=(
        TaskTemplate(
            title="Complete client intake form",
            description="Gather all necessary client information and documentation",
            due_in_days=3,
            priority=TaskPriority.HIGH,
        ),
        TaskTemplate(
            title="Conduct risk assessment",
            description="Assess case risks and determine viability",
            due_in_days=5,
            priority=TaskPriority.HIGH,
        ),
    )),
    Phase.PRE_PROCEEDING_PREPARATION: PhaseEntryAction(tasks=(
        TaskTemplate(
            title="Complete legal research",
            description="Research relevant laws and precedents",
            due_in_days=14,
        ),
        TaskTemplate(
            title="Prepare necessary documents",
            description="Draft and prepare all required legal documents",
            due_in_days=21,
        ),
    )),
    Phase.FORMAL_PROCEEDINGS: PhaseEntryAction(tasks=(
        TaskTemplate(
            title="Monitor court proceedings",
            description="Track and manage all court appearances and filings",
            due_in_days=90,
        ),
    )),
    Phase.RESOLUTION_POST_PROCEEDING: PhaseEntryAction(tasks=(
        TaskTemplate(
            title="Finalize case resolution",
            description="Complete all post-proceeding requirements and documentation",
            due_in_days=30,
        ),
    )),
    Phase.CLOSURE_REVIEW_ARCHIVING: PhaseEntryAction(
        closes_case=True,
        tasks=(
            TaskTemplate(
                title="Archive case file",
                description="Complete case archival and final documentation",
                due_in_days=7,
                priority=TaskPriority.LOW,
            ),
        ),
    ),
}

_unhandled = [p.value for p in Phase if p not in PHASE_ENTRY_ACTIONS]
if _unhandled:
    raise RuleConfigurationError(f"No phase-entry action for: {', '.join(_unhandled)}")


# ---------------------------------------------------------------------------
# Case-type follow-ups
# ---------------------------------------------------------------------------

class CaseTypeEffect(BaseModel):
    """Follow-up scheduled when a case of one type enters one phase.

    A task is assigned to the case attorney.
    """

    model_config = ConfigDict(frozen=True)

    appointment: AppointmentTemplate | None = None
    task: TaskTemplate | None = None


CASE_TYPE_EFFECTS: dict[tuple[CaseType, Phase], CaseTypeEffect] = {
    (CaseType.CRIMINAL_DEFENSE, Phase.FORMAL_PROCEEDINGS): CaseTypeEffect(
        appointment=AppointmentTemplate(
            title="Court Appearance - Arraignment",
            description="Initial court appearance for arraignment",
            starts_in_days=7,
            duration_hours=2,
        ),
    ),
    (CaseType.MEDICAL_MALPRACTICE, Phase.PRE_PROCEEDING_PREPARATION): CaseTypeEffect(
        task=TaskTemplate(
            title="Schedule Medical Expert Consultation",
            description="Arrange consultation with medical expert for case evaluation",
            due_in_days=14,
            priority=TaskPriority.HIGH,
        ),
    ),
    (CaseType.DIVORCE_FAMILY, Phase.PRE_PROCEEDING_PREPARATION): CaseTypeEffect(
        appointment=AppointmentTemplate(
            title="Mediation Session",
            description="Court-ordered mediation session",
            starts_in_days=21,
            duration_hours=3,
        ),
    ),
}


def create_task(
    store: CaseStore,
    case: CaseRecord,
    template: TaskTemplate,
    assigned_to: str,
    assigned_by: str,
    now: datetime,
) -> Task:
    return store.create_task(Task(
        case_id=case.id,
        title=template.title,
        description=template.description,
        assigned_to=assigned_to,
        assigned_by=assigned_by,
        due_date=now + timedelta(days=template.due_in_days),
        priority=template.priority,
        created_at=now,
    ))


def schedule_appointment(
    store: CaseStore,
    case: CaseRecord,
    template: AppointmentTemplate,
    now: datetime,
) -> Appointment:
    start = now + timedelta(days=template.starts_in_days)
    return store.create_appointment(Appointment(
        case_id=case.id,
        title=template.title,
        description=template.description,
        start_time=start,
        end_time=start + timedelta(hours=template.duration_hours),
        attorney_id=case.attorney_id,
        client_id=case.client_id,
    ))


def run_phase_entry_tasks(
    runner: SideEffectRunner,
    store: CaseStore,
    case: CaseRecord,
    phase: Phase,
    actor_id: str,
    now: datetime,
) -> list[str]:
    """Create the entry tasks for ``phase``, assigned to the actor.

    Returns:
        Warning messages for tasks that could not be created.
    """
    warnings: list[str] = []
    for template in PHASE_ENTRY_ACTIONS[phase].tasks:
        ok = runner.run(
            f"task:{template.title}",
            create_task, store, case, template, actor_id, actor_id, now,
        )
        if not ok:
            warnings.append(f"Could not create task '{template.title}' for {phase.value}")
    return warnings


def run_case_type_effects(
    runner: SideEffectRunner,
    store: CaseStore,
    case: CaseRecord,
    phase: Phase,
    now: datetime,
) -> list[str]:
    """Schedule the follow-ups for the case's type on entering ``phase``.

    Returns:
        Warning messages for follow-ups that could not be scheduled.
    """
    effect = CASE_TYPE_EFFECTS.get((case.case_type, phase))
    if effect is None:
        return []

    warnings: list[str] = []
    if effect.appointment is not None:
        title = effect.appointment.title
        if not runner.run(f"appointment:{title}", schedule_appointment, store, case, effect.appointment, now):
            warnings.append(f"Could not schedule appointment '{title}'")
    if effect.task is not None:
        title = effect.task.title
        ok = runner.run(
            f"task:{title}",
            create_task, store, case, effect.task, case.attorney_id, case.attorney_id, now,
        )
        if not ok:
            warnings.append(f"Could not create task '{title}'")
    return warnings
