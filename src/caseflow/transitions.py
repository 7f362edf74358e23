"""Transition service: the entry point for moving cases between phases.

Requests either execute directly or, when the case type reserves the
target phase for particular roles, are parked as approval requests until
an approver decides them.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from datetime import datetime

from .exceptions import (
    ApprovalNotAuthorizedError,
    CaseflowError,
    CaseNotFoundError,
)
from .lifecycle import LifecycleService
from .rules import requires_approval
from .schemas import (
    ApprovalStatus,
    CaseRecord,
    CaseStatus,
    NotificationType,
    Phase,
    TransitionApproval,
    TransitionHistory,
    TransitionNotification,
    TransitionRequest,
    TransitionResult,
    UserRole,
)
from .side_effects import PHASE_ENTRY_ACTIONS, run_case_type_effects
from .store import CaseStore

logger = logging.getLogger(__name__)

DEFAULT_APPROVER_ROLES = frozenset({UserRole.ADMIN})


class TransitionService:
    """Executes, parks and resolves phase transition requests.

    Args:
        store: Backing store.
        lifecycle: Lifecycle service used to apply phase and status
            changes. Its lock registry, side-effect runner and clock are
            shared with this service.
        approver_roles: Roles allowed to decide approval requests.
    """

    def __init__(
        self,
        store: CaseStore,
        lifecycle: LifecycleService | None = None,
        approver_roles: Iterable[UserRole] = DEFAULT_APPROVER_ROLES,
    ) -> None:
        self.store = store
        self.lifecycle = lifecycle or LifecycleService(store)
        self.approver_roles = frozenset(approver_roles)

    @property
    def now(self) -> Callable[[], datetime]:
        return self.lifecycle.now

    # ------------------------------------------------------------------
    # Requests
    # ------------------------------------------------------------------

    def request_transition(self, request: TransitionRequest) -> TransitionResult:
        """Execute a transition, or park it for approval.

        The case is locked for the whole load, gate and execute sequence.

        Args:
            request: What the caller wants done.

        Returns:
            TransitionResult. A parked request is reported as a success
            with ``approval_required`` set and the approval id as
            ``transition_id``.
        """
        try:
            with self.lifecycle.locks.hold(request.case_id):
                try:
                    case = self.store.get_case(request.case_id)
                except CaseNotFoundError:
                    return TransitionResult(
                        success=False, message="Case not found", errors=["Case not found"]
                    )

                if requires_approval(case.case_type, request.target_phase, request.actor_role):
                    return self._park(case, request)
                return self._execute(case, request)
        except CaseflowError as exc:
            logger.warning("Transition request for case %s failed: %s", request.case_id, exc)
            return TransitionResult(success=False, message="Transition failed", errors=[str(exc)])

    def approve_transition(
        self,
        approval_id: str,
        approver_id: str,
        approver_role: UserRole,
        reason: str | None = None,
    ) -> TransitionResult:
        """Approve a pending request and execute it as originally asked.

        The stored request is replayed verbatim, including the requester's
        role, and the requester is notified once it has run.
        """
        try:
            self._check_approver(approver_role)
            approval = self.store.get_approval(approval_id)
            with self.lifecycle.locks.hold(approval.case_id):
                decided = self.store.decide_approval(
                    approval_id,
                    ApprovalStatus.APPROVED,
                    approver_id,
                    approver_role,
                    reason,
                    self.now(),
                )
                logger.info("Approval %s approved by %s", approval_id, approver_id)
                case = self.store.get_case(decided.case_id)
                result = self._execute(case, decided.request)
                if result.success:
                    self._notify(
                        case.id,
                        result.transition_id or approval_id,
                        decided.requested_by,
                        decided.requested_by_role,
                        f"Your transition request for case {case.title} was approved "
                        f"and moved it to {decided.target_phase.value}",
                        NotificationType.TRANSITION_COMPLETED,
                    )
                return result
        except CaseflowError as exc:
            logger.warning("Approval %s failed: %s", approval_id, exc)
            return TransitionResult(success=False, message=str(exc), errors=[str(exc)])

    def reject_transition(
        self,
        approval_id: str,
        approver_id: str,
        approver_role: UserRole,
        reason: str,
    ) -> TransitionResult:
        """Reject a pending request; the case is left untouched."""
        try:
            self._check_approver(approver_role)
            approval = self.store.get_approval(approval_id)
            with self.lifecycle.locks.hold(approval.case_id):
                decided = self.store.decide_approval(
                    approval_id,
                    ApprovalStatus.REJECTED,
                    approver_id,
                    approver_role,
                    reason,
                    self.now(),
                )
            logger.info("Approval %s rejected by %s", approval_id, approver_id)
            self._notify(
                decided.case_id,
                approval_id,
                decided.requested_by,
                decided.requested_by_role,
                f"Your transition request was rejected: {reason}",
                NotificationType.APPROVAL_REJECTED,
            )
            return TransitionResult(
                success=True,
                message="Transition request rejected successfully",
                transition_id=approval_id,
            )
        except CaseflowError as exc:
            logger.warning("Rejection of %s failed: %s", approval_id, exc)
            return TransitionResult(success=False, message=str(exc), errors=[str(exc)])

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    def get_transition_history(self, case_id: str) -> list[TransitionHistory]:
        """Return the executed transitions of a case, newest first."""
        return list(reversed(self.store.list_history(case_id)))

    def get_available_transitions(self, case_id: str, actor_role: UserRole) -> list[Phase]:
        try:
            case = self.store.get_case(case_id)
        except CaseNotFoundError:
            return []
        return self.lifecycle.state_machine.get_available_transitions(case.to_state(), actor_role)

    def get_pending_approvals(self, actor_id: str, actor_role: UserRole) -> list[TransitionApproval]:
        """Pending requests visible to the actor, newest first.

        Approvers see every pending request; anyone else sees their own.
        """
        pending = self.store.list_approvals(ApprovalStatus.PENDING)
        if actor_role not in self.approver_roles:
            pending = [a for a in pending if a.requested_by == actor_id]
        return list(reversed(pending))

    def get_notifications(self, actor_id: str, actor_role: UserRole) -> list[TransitionNotification]:
        return [
            n
            for n in reversed(self.store.list_notifications(actor_id))
            if n.recipient_role == actor_role
        ]

    def mark_notification_as_read(self, notification_id: str) -> TransitionNotification:
        """Mark a notification read.

        Raises:
            NotificationNotFoundError: If no notification has this id.
        """
        return self.store.mark_notification_read(notification_id, self.now())

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _check_approver(self, role: UserRole) -> None:
        if role not in self.approver_roles:
            raise ApprovalNotAuthorizedError(role.value)

    def _park(self, case: CaseRecord, request: TransitionRequest) -> TransitionResult:
        approval = self.store.create_approval(TransitionApproval(
            case_id=case.id,
            target_phase=request.target_phase,
            target_status=request.target_status,
            requested_by=request.actor_id,
            requested_by_role=request.actor_role,
            reason=request.reason,
            request=request,
            created_at=self.now(),
        ))
        approvers = [u for u in self.store.list_users() if u.role in self.approver_roles]
        for approver in approvers:
            self._notify(
                case.id,
                approval.id,
                approver.id,
                approver.role,
                f"Transition approval required for case {case.title}",
                NotificationType.APPROVAL_REQUIRED,
            )
        logger.info(
            "Transition of case %s to %s parked for approval (%s)",
            case.id, request.target_phase.value, approval.id,
        )
        return TransitionResult(
            success=True,
            message="Transition approval request created successfully",
            transition_id=approval.id,
            approval_required=True,
        )

    def _execute(self, case: CaseRecord, request: TransitionRequest) -> TransitionResult:
        target = request.target_phase
        status_after = (
            CaseStatus.CLOSED if PHASE_ENTRY_ACTIONS[target].closes_case else case.status
        )
        change_status = (
            request.target_status is not None and request.target_status != status_after
        )
        if change_status:
            check = self.lifecycle.phase_validator.validate_status_transition(
                status_after, request.target_status, target
            )
            if not check.is_valid:
                return TransitionResult(
                    success=False, message="Status validation failed", errors=check.errors
                )

        outcome = self.lifecycle.transition_to_phase(
            case.id,
            target,
            request.actor_id,
            request.actor_role,
            request.metadata,
            expected_version=request.expected_version,
        )
        if not outcome.success:
            return TransitionResult(
                success=False,
                message=outcome.message or "Phase transition failed",
                errors=outcome.errors,
                warnings=outcome.warnings,
                recommendations=outcome.recommendations,
            )

        # the phase is committed; everything below is best effort
        events = list(outcome.events)
        warnings = list(outcome.warnings)
        if change_status:
            try:
                events.append(self.lifecycle.update_case_status(
                    case.id, request.target_status, request.actor_id, request.reason
                ))
            except CaseflowError as exc:
                warnings.append(f"Status update failed: {exc}")

        after = self.store.get_case(case.id)
        now = self.now()
        history = TransitionHistory(
            case_id=case.id,
            from_phase=case.phase,
            to_phase=target,
            from_status=case.status,
            to_status=after.status,
            user_id=request.actor_id,
            user_role=request.actor_role,
            reason=request.reason,
            timestamp=now,
            metadata=request.metadata,
        )
        if not self.lifecycle.runner.run("history", self.store.append_history, history):
            warnings.append(f"Could not record transition history for case {case.id}")

        warnings.extend(self._notify_parties(after, request, history.id))
        warnings.extend(self._post_transition(after, case.phase, request, now))

        logger.info(
            "Transition %s executed for case %s: %s -> %s",
            history.id, case.id, case.phase.value, target.value,
        )
        return TransitionResult(
            success=True,
            message=f"Successfully transitioned case from {case.phase.value} to {target.value}",
            transition_id=history.id,
            events=events,
            warnings=warnings,
            recommendations=outcome.recommendations,
        )

    def _notify_parties(
        self,
        case: CaseRecord,
        request: TransitionRequest,
        transition_id: str,
    ) -> list[str]:
        recipients = (
            (case.attorney_id, UserRole.ATTORNEY,
             f"Case {case.title} transitioned to {request.target_phase.value}"),
            (case.client_id, UserRole.CLIENT,
             f"Your case {case.title} has moved to {request.target_phase.value}"),
        )
        warnings: list[str] = []
        for recipient_id, role, message in recipients:
            if recipient_id == request.actor_id:
                continue
            ok = self._notify(
                case.id, transition_id, recipient_id, role, message, NotificationType.PHASE_CHANGE
            )
            if not ok:
                warnings.append(f"Could not notify {role.value} {recipient_id}")
        return warnings

    def _post_transition(
        self,
        case: CaseRecord,
        from_phase: Phase,
        request: TransitionRequest,
        now: datetime,
    ) -> list[str]:
        warnings: list[str] = []
        last_transition = {
            "timestamp": now.isoformat(),
            "fromPhase": from_phase.value,
            "toPhase": request.target_phase.value,
            "by": request.actor_id,
        }
        if not self.lifecycle.runner.run(
            "record-last-transition", self._record_last_transition, case.id, last_transition
        ):
            warnings.append("Could not record last transition on case metadata")
        warnings.extend(run_case_type_effects(
            self.lifecycle.runner, self.store, case, request.target_phase, now
        ))
        return warnings

    def _record_last_transition(self, case_id: str, last_transition: dict[str, str]) -> None:
        case = self.store.get_case(case_id)
        metadata = {**case.metadata, "lastTransition": last_transition}
        self.store.update_case(case.model_copy(update={"metadata": metadata}))

    def _notify(
        self,
        case_id: str,
        transition_id: str,
        recipient_id: str,
        recipient_role: UserRole,
        message: str,
        kind: NotificationType,
    ) -> bool:
        notification = TransitionNotification(
            case_id=case_id,
            transition_id=transition_id,
            recipient_id=recipient_id,
            recipient_role=recipient_role,
            message=message,
            type=kind,
            created_at=self.now(),
        )
        return self.lifecycle.runner.run(
            f"notify:{recipient_id}", self.store.create_notification, notification
        )
