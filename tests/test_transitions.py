from __future__ import annotations

import threading
from datetime import timedelta

import pytest

from caseflow.exceptions import NotificationNotFoundError, StoreError
from caseflow.lifecycle import LifecycleService
from caseflow.schemas import (
    ApprovalStatus,
    CaseRecord,
    CaseStatus,
    CaseType,
    NotificationType,
    Phase,
    TransitionRequest,
    UserRole,
)
from caseflow.store import JsonFileStore
from caseflow.transitions import TransitionService

from .conftest import satisfying_metadata

INTAKE = Phase.INTAKE_RISK_ASSESSMENT
PREPARATION = Phase.PRE_PROCEEDING_PREPARATION
PROCEEDINGS = Phase.FORMAL_PROCEEDINGS
ADMIN = "u-admin"
ATTORNEY = "u-attorney"
CLIENT = "u-client"


def _request(case, target, actor_id=ATTORNEY, role=UserRole.ATTORNEY, **kwargs) -> TransitionRequest:
    kwargs.setdefault("metadata", satisfying_metadata(case.case_type, case.phase, target))
    return TransitionRequest(
        case_id=case.id, target_phase=target, actor_id=actor_id, actor_role=role, **kwargs
    )


@pytest.fixture
def criminal_case(make_case):
    return make_case(
        case_type=CaseType.CRIMINAL_DEFENSE,
        phase=PREPARATION,
        status=CaseStatus.ACTIVE,
        title="State v. Doe",
    )


@pytest.fixture
def parked(service, criminal_case):
    """A criminal-defense move into proceedings waiting for an admin."""
    result = service.request_transition(_request(criminal_case, PROCEEDINGS))
    assert result.approval_required
    return result.transition_id


class TestDirectExecution:
    def test_executes_and_records_history(self, service, make_case, clock):
        case = make_case()
        result = service.request_transition(_request(case, PREPARATION, reason="ready"))

        assert result.success, result.errors
        assert not result.approval_required
        assert result.message == f"Successfully transitioned case from {INTAKE.value} to {PREPARATION.value}"

        (entry,) = service.get_transition_history(case.id)
        assert entry.id == result.transition_id
        assert (entry.from_phase, entry.to_phase) == (INTAKE, PREPARATION)
        assert (entry.from_status, entry.to_status) == (CaseStatus.INTAKE, CaseStatus.INTAKE)
        assert entry.user_role == UserRole.ATTORNEY
        assert entry.reason == "ready"
        assert entry.timestamp == clock()

    def test_records_last_transition_on_case(self, service, make_case, clock):
        case = make_case()
        service.request_transition(_request(case, PREPARATION))

        stored = service.store.get_case(case.id)
        assert stored.metadata["lastTransition"] == {
            "timestamp": clock().isoformat(),
            "fromPhase": INTAKE.value,
            "toPhase": PREPARATION.value,
            "by": ATTORNEY,
        }

    def test_status_change_rides_along(self, service, make_case):
        case = make_case()
        result = service.request_transition(
            _request(case, PREPARATION, target_status=CaseStatus.ACTIVE)
        )

        assert result.success, result.errors
        assert len(result.events) == 3
        assert service.store.get_case(case.id).status == CaseStatus.ACTIVE
        assert service.get_transition_history(case.id)[0].to_status == CaseStatus.ACTIVE

    def test_disallowed_status_leaves_case_untouched(self, service, make_case):
        case = make_case()
        result = service.request_transition(
            _request(case, PREPARATION, target_status=CaseStatus.COMPLETED)
        )

        assert not result.success
        assert result.message == "Status validation failed"
        stored = service.store.get_case(case.id)
        assert (stored.phase, stored.status, stored.version) == (INTAKE, CaseStatus.INTAKE, case.version)
        assert service.get_transition_history(case.id) == []

    def test_failed_validation_is_reported(self, service, make_case):
        case = make_case()
        result = service.request_transition(_request(case, PREPARATION, metadata={}))

        assert not result.success
        assert result.errors[0].startswith("Missing required fields")
        assert service.get_transition_history(case.id) == []

    def test_unknown_case(self, service):
        request = TransitionRequest(
            case_id="missing", target_phase=PREPARATION, actor_id=ATTORNEY, actor_role=UserRole.ATTORNEY
        )
        result = service.request_transition(request)
        assert not result.success
        assert result.errors == ["Case not found"]

    def test_parties_are_notified_except_the_actor(self, service, make_case):
        case = make_case()
        result = service.request_transition(_request(case, PREPARATION))

        assert service.get_notifications(ATTORNEY, UserRole.ATTORNEY) == []
        (note,) = service.get_notifications(CLIENT, UserRole.CLIENT)
        assert note.type == NotificationType.PHASE_CHANGE
        assert note.transition_id == result.transition_id
        assert note.message == f"Your case Acme v. Widgets has moved to {PREPARATION.value}"

    def test_admin_actor_notifies_attorney_and_client(self, service, make_case):
        case = make_case()
        service.request_transition(_request(case, PREPARATION, actor_id=ADMIN, role=UserRole.ADMIN))

        (note,) = service.get_notifications(ATTORNEY, UserRole.ATTORNEY)
        assert note.message == f"Case Acme v. Widgets transitioned to {PREPARATION.value}"
        assert len(service.get_notifications(CLIENT, UserRole.CLIENT)) == 1

    def test_case_type_follow_up_task(self, service, make_case, clock):
        case = make_case(case_type=CaseType.MEDICAL_MALPRACTICE)
        result = service.request_transition(_request(case, PREPARATION, actor_id=ADMIN, role=UserRole.ADMIN))

        assert result.success, result.errors
        (task,) = [t for t in service.store.list_tasks(case.id) if "Medical Expert" in t.title]
        assert task.assigned_to == ATTORNEY
        assert task.due_date == clock() + timedelta(days=14)

    def test_failed_notification_does_not_undo_transition(self, service, make_case, monkeypatch):
        def unavailable(notification):
            raise ConnectionError("mail relay down")

        monkeypatch.setattr(service.store, "create_notification", unavailable)
        case = make_case()
        result = service.request_transition(_request(case, PREPARATION))

        assert result.success
        assert service.store.get_case(case.id).phase == PREPARATION
        assert result.warnings == [f"Could not notify client {CLIENT}"]

    def test_failed_history_append_does_not_undo_transition(self, service, make_case, monkeypatch):
        def unavailable(history):
            raise StoreError("audit log unavailable")

        monkeypatch.setattr(service.store, "append_history", unavailable)
        case = make_case()
        result = service.request_transition(_request(case, PREPARATION))

        assert result.success, result.errors
        assert service.store.get_case(case.id).phase == PREPARATION
        assert result.warnings == [f"Could not record transition history for case {case.id}"]
        assert len(service.get_notifications(CLIENT, UserRole.CLIENT)) == 1
        assert service.store.get_case(case.id).metadata["lastTransition"]["toPhase"] == PREPARATION.value

    def test_failed_status_write_becomes_warning(self, service, make_case, monkeypatch):
        def unavailable(*args):
            raise StoreError("disk full")

        monkeypatch.setattr(service.lifecycle, "update_case_status", unavailable)
        case = make_case()
        result = service.request_transition(
            _request(case, PREPARATION, target_status=CaseStatus.ACTIVE)
        )

        assert result.success, result.errors
        assert result.warnings == ["Status update failed: disk full"]
        stored = service.store.get_case(case.id)
        assert (stored.phase, stored.status) == (PREPARATION, CaseStatus.INTAKE)
        assert service.get_transition_history(case.id)[0].to_status == CaseStatus.INTAKE

    def test_store_write_failure_is_reported(self, users, clock, runner, tmp_path, monkeypatch):
        store = JsonFileStore(tmp_path / "store.json")
        for user in users.values():
            store.add_user(user)
        case = store.add_case(CaseRecord(
            title="Acme v. Widgets", case_type=CaseType.CONTRACT_DISPUTE, attorney_id=ATTORNEY, client_id=CLIENT,
            phase_entered_at=clock(),
        ))
        service = TransitionService(store, LifecycleService(store, runner=runner, now=clock))

        def disk_full(*args, **kwargs):
            raise OSError("No space left on device")

        monkeypatch.setattr("caseflow.store.tempfile.NamedTemporaryFile", disk_full)
        result = service.request_transition(_request(case, PREPARATION))

        assert not result.success
        assert result.message == "Transition failed"
        assert "No space left on device" in result.errors[0]
        assert store.get_case(case.id).phase == INTAKE
        assert service.get_transition_history(case.id) == []


class TestApprovalWorkflow:
    def test_request_is_parked_and_approvers_notified(self, service, criminal_case, parked):
        stored = service.store.get_case(criminal_case.id)
        assert stored.phase == PREPARATION
        assert stored.version == criminal_case.version
        assert service.get_transition_history(criminal_case.id) == []

        approval = service.store.get_approval(parked)
        assert approval.status == ApprovalStatus.PENDING
        assert approval.requested_by == ATTORNEY
        assert approval.request.target_phase == PROCEEDINGS

        (note,) = service.get_notifications(ADMIN, UserRole.ADMIN)
        assert note.type == NotificationType.APPROVAL_REQUIRED
        assert note.message == "Transition approval required for case State v. Doe"

    def test_admin_skips_the_gate(self, service, criminal_case):
        result = service.request_transition(
            _request(criminal_case, PROCEEDINGS, actor_id=ADMIN, role=UserRole.ADMIN)
        )
        assert result.success
        assert not result.approval_required
        assert service.store.get_case(criminal_case.id).phase == PROCEEDINGS

    def test_approval_executes_the_original_request(self, service, criminal_case, parked, clock):
        result = service.approve_transition(parked, ADMIN, UserRole.ADMIN, reason="looks right")

        assert result.success, result.errors
        assert service.store.get_case(criminal_case.id).phase == PROCEEDINGS

        (entry,) = service.get_transition_history(criminal_case.id)
        assert entry.user_id == ATTORNEY
        assert entry.user_role == UserRole.ATTORNEY

        approval = service.store.get_approval(parked)
        assert approval.status == ApprovalStatus.APPROVED
        assert (approval.approved_by, approval.decision_reason) == (ADMIN, "looks right")

        (hearing,) = service.store.list_appointments(criminal_case.id)
        assert hearing.title == "Court Appearance - Arraignment"
        assert hearing.start_time == clock() + timedelta(days=7)
        assert hearing.end_time - hearing.start_time == timedelta(hours=2)

        kinds = [n.type for n in service.get_notifications(ATTORNEY, UserRole.ATTORNEY)]
        assert kinds == [NotificationType.TRANSITION_COMPLETED]

    def test_second_decision_fails_without_side_effects(self, service, criminal_case, parked):
        assert service.approve_transition(parked, ADMIN, UserRole.ADMIN).success
        version = service.store.get_case(criminal_case.id).version

        again = service.approve_transition(parked, ADMIN, UserRole.ADMIN)
        assert not again.success
        assert again.errors == ["Approval request already approved"]

        rejected = service.reject_transition(parked, ADMIN, UserRole.ADMIN, "too late")
        assert not rejected.success
        assert rejected.errors == ["Approval request already approved"]

        assert service.store.get_case(criminal_case.id).version == version
        assert len(service.get_transition_history(criminal_case.id)) == 1
        assert service.store.get_approval(parked).status == ApprovalStatus.APPROVED

    def test_rejection_leaves_case_and_notifies_requester(self, service, criminal_case, parked):
        result = service.reject_transition(parked, ADMIN, UserRole.ADMIN, "Need bail paperwork")

        assert result.success
        assert result.transition_id == parked
        assert service.store.get_case(criminal_case.id).phase == PREPARATION
        assert service.store.get_approval(parked).status == ApprovalStatus.REJECTED

        (note,) = service.get_notifications(ATTORNEY, UserRole.ATTORNEY)
        assert note.type == NotificationType.APPROVAL_REJECTED
        assert note.message == "Your transition request was rejected: Need bail paperwork"

    def test_non_approver_cannot_decide(self, service, parked):
        result = service.approve_transition(parked, ATTORNEY, UserRole.ATTORNEY)
        assert not result.success
        assert "not authorized" in result.message
        assert service.store.get_approval(parked).status == ApprovalStatus.PENDING

    def test_configured_approver_roles(self, store, lifecycle, criminal_case):
        service = TransitionService(store, lifecycle, approver_roles={UserRole.ADMIN, UserRole.ATTORNEY})
        parked = service.request_transition(_request(criminal_case, PROCEEDINGS, actor_id=ATTORNEY))
        assert service.approve_transition(parked.transition_id, ATTORNEY, UserRole.ATTORNEY).success

    def test_unknown_approval(self, service):
        result = service.approve_transition("nope", ADMIN, UserRole.ADMIN)
        assert not result.success
        assert result.errors == ["Approval request not found: 'nope'"]

    def test_pending_visibility(self, service, parked):
        assert [a.id for a in service.get_pending_approvals(ADMIN, UserRole.ADMIN)] == [parked]
        assert [a.id for a in service.get_pending_approvals(ATTORNEY, UserRole.ATTORNEY)] == [parked]
        assert service.get_pending_approvals("u-paralegal", UserRole.PARALEGAL) == []

        service.reject_transition(parked, ADMIN, UserRole.ADMIN, "no")
        assert service.get_pending_approvals(ADMIN, UserRole.ADMIN) == []


class TestConcurrency:
    def test_only_one_writer_wins_a_version(self, service, make_case):
        case = make_case()
        request = _request(case, PREPARATION, expected_version=case.version)
        results = []
        barrier = threading.Barrier(4)

        def submit():
            barrier.wait()
            results.append(service.request_transition(request))

        threads = [threading.Thread(target=submit) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sum(r.success for r in results) == 1
        for failed in (r for r in results if not r.success):
            assert failed.errors[0].startswith("Case state changed, retry")
        assert len(service.get_transition_history(case.id)) == 1

    def test_racing_targets_leave_one_consistent_phase(self, service, make_case):
        case = make_case()
        requests = [_request(case, PREPARATION), _request(case, Phase.CLOSURE_REVIEW_ARCHIVING)]
        results = {}
        barrier = threading.Barrier(len(requests))

        def submit(request):
            barrier.wait()
            results[request.target_phase] = service.request_transition(request)

        threads = [threading.Thread(target=submit, args=(r,)) for r in requests]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        (winner,) = [phase for phase, r in results.items() if r.success]
        (loser,) = [r for r in results.values() if not r.success]
        assert loser.errors
        stored = service.store.get_case(case.id)
        assert stored.phase == winner
        assert [h.to_phase for h in service.get_transition_history(case.id)] == [winner]


class TestQueries:
    def test_history_grows_one_per_executed_transition(self, service, make_case):
        case = make_case()
        for target in (PREPARATION, PROCEEDINGS):
            current = service.store.get_case(case.id)
            assert service.request_transition(_request(current, target)).success

        history = service.get_transition_history(case.id)
        assert [h.to_phase for h in history] == [PROCEEDINGS, PREPARATION]

    def test_available_transitions(self, service, make_case):
        case = make_case()
        assert service.get_available_transitions(case.id, UserRole.ATTORNEY) == [
            PREPARATION,
            Phase.CLOSURE_REVIEW_ARCHIVING,
        ]
        assert service.get_available_transitions(case.id, UserRole.CLIENT) == []
        assert service.get_available_transitions("missing", UserRole.ADMIN) == []

    def test_notifications_newest_first_and_mark_read(self, service, make_case, clock):
        case = make_case()
        service.request_transition(_request(case, PREPARATION))
        clock.advance(hours=1)
        service.request_transition(_request(service.store.get_case(case.id), PROCEEDINGS))

        notes = service.get_notifications(CLIENT, UserRole.CLIENT)
        assert [n.created_at for n in notes] == sorted((n.created_at for n in notes), reverse=True)
        assert service.get_notifications(CLIENT, UserRole.ATTORNEY) == []

        read = service.mark_notification_as_read(notes[0].id)
        assert read.is_read
        assert read.read_at == clock()

    def test_mark_unknown_notification(self, service):
        with pytest.raises(NotificationNotFoundError):
            service.mark_notification_as_read("missing")
