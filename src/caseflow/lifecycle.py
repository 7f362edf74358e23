"""Case lifecycle: phase changes, status changes, events and progress."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from datetime import datetime, timedelta
from typing import Any

from .case_type_validator import CaseTypeValidator
from .exceptions import (
    CaseNotFoundError,
    ConcurrentModificationError,
    InvalidStatusTransitionError,
)
from .locks import CaseLocks
from .phase_validator import PhaseValidator
from .rules import CASE_TYPE_PHASE_REQUIREMENTS, PHASE_DETAILS, PHASE_DURATIONS_DAYS
from .schemas import (
    PHASE_ORDER,
    CaseProgress,
    CaseStatus,
    CaseType,
    LifecycleEvent,
    LifecycleEventType,
    Phase,
    PhaseRequirements,
    PhaseTransitionOutcome,
    UserRole,
    utcnow,
)
from .side_effects import PHASE_ENTRY_ACTIONS, SideEffectRunner, run_phase_entry_tasks
from .state_machine import StateMachine
from .store import CaseStore

logger = logging.getLogger(__name__)

MAX_UPCOMING_MILESTONES = 5


def phase_requirements(phase: Phase, case_type: CaseType) -> PhaseRequirements:
    """Requirements, duration, critical tasks and deliverables of a phase."""
    details = PHASE_DETAILS[phase]
    extra = CASE_TYPE_PHASE_REQUIREMENTS.get(case_type, {}).get(phase, ())
    return PhaseRequirements(
        phase=phase,
        requirements=[*details["requirements"], *extra],
        estimated_duration=PHASE_DURATIONS_DAYS[phase],
        critical_tasks=list(details["critical_tasks"]),
        deliverables=list(details["deliverables"]),
    )


class LifecycleService:
    """Moves cases between phases and keeps their lifecycle log.

    Args:
        store: Backing store.
        state_machine: Structural transition checks.
        phase_validator: Phase-level validation.
        case_type_validator: Practice-area validation.
        locks: Per-case lock registry, shared with other services that
            write the same cases.
        runner: Executes best-effort side effects.
        now: Clock returning aware UTC datetimes.
    """

    def __init__(
        self,
        store: CaseStore,
        state_machine: StateMachine | None = None,
        phase_validator: PhaseValidator | None = None,
        case_type_validator: CaseTypeValidator | None = None,
        locks: CaseLocks | None = None,
        runner: SideEffectRunner | None = None,
        now: Callable[[], datetime] | None = None,
    ) -> None:
        self.store = store
        self.state_machine = state_machine or StateMachine()
        self.phase_validator = phase_validator or PhaseValidator()
        self.case_type_validator = case_type_validator or CaseTypeValidator()
        self.locks = locks or CaseLocks()
        self.runner = runner or SideEffectRunner()
        self.now = now or utcnow

    # ------------------------------------------------------------------
    # Phase changes
    # ------------------------------------------------------------------

    def initialize_case_lifecycle(self, case_id: str, actor_id: str) -> list[LifecycleEvent]:
        """Log a new case's entry into intake and create the intake tasks.

        Raises:
            CaseNotFoundError: If the case does not exist.
        """
        with self.locks.hold(case_id):
            case = self.store.get_case(case_id)
            now = self.now()
            event = self.store.append_event(LifecycleEvent(
                case_id=case_id,
                event_type=LifecycleEventType.PHASE_ENTERED,
                phase=case.phase,
                status=case.status,
                timestamp=now,
                user_id=actor_id,
                description=f"Case {case_id} initialized in {case.phase.value} phase",
            ))
            run_phase_entry_tasks(self.runner, self.store, case, case.phase, actor_id, now)
        logger.info("Initialized lifecycle for case %s", case_id)
        return [event]

    def transition_to_phase(
        self,
        case_id: str,
        target: Phase,
        actor_id: str,
        actor_role: UserRole,
        metadata: Mapping[str, Any] | None = None,
        expected_version: int | None = None,
    ) -> PhaseTransitionOutcome:
        """Validate and apply a phase change.

        Validation runs state machine, phase validator, then case-type
        validator; the first failing stage ends the attempt. On success
        the phase is written with a compare-and-swap on the case version,
        ``phase_completed`` and ``phase_entered`` are logged and the
        target phase's entry tasks are created.

        Args:
            case_id: Case to move.
            target: Phase to enter.
            actor_id: User performing the change.
            actor_role: Role of that user.
            metadata: Request metadata checked by every stage.
            expected_version: Case version the caller last saw, if any.

        Returns:
            PhaseTransitionOutcome; never raises for validation failures.
        """
        data = dict(metadata or {})
        with self.locks.hold(case_id):
            try:
                case = self.store.get_case(case_id)
            except CaseNotFoundError:
                return PhaseTransitionOutcome(
                    success=False, message="Case not found", errors=["Case not found"]
                )

            if expected_version is not None and expected_version != case.version:
                exc = ConcurrentModificationError(case_id, expected_version, case.version)
                return PhaseTransitionOutcome(success=False, message=str(exc), errors=[str(exc)])

            check = self.state_machine.can_transition(case.to_state(), target, actor_role, data)
            if not check.allowed:
                logger.warning("Transition of case %s denied: %s", case_id, check.message)
                return PhaseTransitionOutcome(
                    success=False, message=check.message, errors=check.errors
                )

            phase_result = self.phase_validator.validate_phase_transition(case, target, data)
            if not phase_result.is_valid:
                return PhaseTransitionOutcome(
                    success=False,
                    message="Phase validation failed",
                    errors=phase_result.errors,
                    warnings=phase_result.warnings,
                )

            now = self.now()
            type_result = self.case_type_validator.validate_case_type_transition(
                case.case_type,
                case.phase,
                target,
                data,
                phase_entered_at=case.phase_entered_at,
                now=now,
            )
            if not type_result.is_valid:
                return PhaseTransitionOutcome(
                    success=False,
                    message="Case type validation failed",
                    errors=type_result.errors,
                    warnings=type_result.warnings,
                    recommendations=type_result.recommendations,
                )

            changes: dict[str, Any] = {"phase": target, "phase_entered_at": now}
            if PHASE_ENTRY_ACTIONS[target].closes_case:
                changes.update(status=CaseStatus.CLOSED, closed_at=now)
            try:
                saved = self.store.update_case(case.model_copy(update=changes))
            except ConcurrentModificationError as exc:
                return PhaseTransitionOutcome(success=False, message=str(exc), errors=[str(exc)])

            completed = LifecycleEvent(
                case_id=case_id,
                event_type=LifecycleEventType.PHASE_COMPLETED,
                phase=case.phase,
                status=case.status,
                timestamp=now,
                user_id=actor_id,
                description=f"Case {case_id} completed {case.phase.value} phase",
            )
            entered = LifecycleEvent(
                case_id=case_id,
                event_type=LifecycleEventType.PHASE_ENTERED,
                phase=target,
                status=saved.status,
                timestamp=now,
                user_id=actor_id,
                description=f"Case {case_id} entered {target.value} phase",
            )

            # the phase is committed; everything below is best effort
            warnings = phase_result.warnings + type_result.warnings
            warnings.extend(self._record_events(completed, entered))
            warnings.extend(
                run_phase_entry_tasks(self.runner, self.store, saved, target, actor_id, now)
            )

        logger.info(
            "Case %s moved %s -> %s by %s", case_id, case.phase.value, target.value, actor_id
        )
        return PhaseTransitionOutcome(
            success=True,
            message=f"Case {case_id} entered {target.value} phase",
            events=[completed, entered],
            warnings=warnings,
            recommendations=type_result.recommendations,
        )

    def update_case_status(
        self,
        case_id: str,
        new_status: CaseStatus,
        actor_id: str,
        reason: str | None = None,
    ) -> LifecycleEvent:
        """Change a case's status within its current phase.

        Raises:
            CaseNotFoundError: If the case does not exist.
            InvalidStatusTransitionError: If the phase does not allow it.
        """
        with self.locks.hold(case_id):
            case = self.store.get_case(case_id)
            result = self.phase_validator.validate_status_transition(
                case.status, new_status, case.phase
            )
            if not result.is_valid:
                raise InvalidStatusTransitionError(result.errors)

            self.store.update_case(case.model_copy(update={"status": new_status}))
            suffix = f": {reason}" if reason else ""
            event = LifecycleEvent(
                case_id=case_id,
                event_type=LifecycleEventType.STATUS_CHANGED,
                phase=case.phase,
                status=new_status,
                timestamp=self.now(),
                user_id=actor_id,
                description=(
                    f"Case {case_id} status changed from {case.status.value} "
                    f"to {new_status.value}{suffix}"
                ),
            )
            self._record_events(event)
        logger.info("Case %s status %s -> %s", case_id, case.status.value, new_status.value)
        return event

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_case_progress(self, case_id: str) -> CaseProgress:
        """Summarize how far a case has come and what is left.

        Raises:
            CaseNotFoundError: If the case does not exist.
        """
        case = self.store.get_case(case_id)
        now = self.now()
        index = PHASE_ORDER.index(case.phase)

        open_tasks = [t for t in self.store.list_tasks(case_id) if t.status.is_open]
        upcoming = sorted(open_tasks, key=lambda t: t.due_date)[:MAX_UPCOMING_MILESTONES]
        overdue = [t.title for t in open_tasks if t.due_date < now]

        remaining_days = sum(
            self.get_phase_requirements(p, case.case_type).estimated_duration
            for p in PHASE_ORDER[index + 1:]
        )

        return CaseProgress(
            current_phase=case.phase,
            current_status=case.status,
            progress_percentage=round(index / (len(PHASE_ORDER) - 1) * 100),
            completed_phases=list(PHASE_ORDER[:index]),
            upcoming_milestones=[t.title for t in upcoming],
            overdue_tasks=overdue,
            estimated_completion=now + timedelta(days=remaining_days),
        )

    def get_phase_requirements(self, phase: Phase, case_type: CaseType) -> PhaseRequirements:
        return phase_requirements(phase, case_type)

    def get_lifecycle_events(self, case_id: str) -> list[LifecycleEvent]:
        return self.store.list_events(case_id)

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _record_events(self, *events: LifecycleEvent) -> list[str]:
        """Append lifecycle events after a committed change.

        Returns:
            Warning messages for events that could not be recorded.
        """
        warnings: list[str] = []
        for event in events:
            ok = self.runner.run(
                f"event:{event.event_type.value}", self.store.append_event, event
            )
            if not ok:
                warnings.append(
                    f"Could not record {event.event_type.value} event for case {event.case_id}"
                )
        return warnings
