from __future__ import annotations

import json
from datetime import datetime, timezone

import pytest

from caseflow.exceptions import (
    ApprovalAlreadyDecidedError,
    ApprovalNotFoundError,
    CaseNotFoundError,
    ConcurrentModificationError,
    StoreCorruptedError,
    StoreError,
)
from caseflow.schemas import (
    ApprovalStatus,
    CaseRecord,
    CaseType,
    LifecycleEvent,
    LifecycleEventType,
    Phase,
    Task,
    TransitionApproval,
    TransitionRequest,
    User,
    UserRole,
)
from caseflow.store import InMemoryStore, JsonFileStore

DECIDED_AT = datetime(2024, 5, 1, tzinfo=timezone.utc)


def _case(**overrides) -> CaseRecord:
    fields = dict(title="Estate of Smith", case_type=CaseType.INHERITANCE_DISPUTE, attorney_id="a", client_id="c")
    fields.update(overrides)
    return CaseRecord(**fields)


def _approval(case_id: str) -> TransitionApproval:
    request = TransitionRequest(
        case_id=case_id,
        target_phase=Phase.FORMAL_PROCEEDINGS,
        actor_id="a",
        actor_role=UserRole.ATTORNEY,
    )
    return TransitionApproval(
        case_id=case_id,
        target_phase=request.target_phase,
        requested_by="a",
        requested_by_role=UserRole.ATTORNEY,
        request=request,
    )


class TestCases:
    def test_update_bumps_version(self):
        store = InMemoryStore()
        case = store.add_case(_case())

        saved = store.update_case(case.model_copy(update={"phase": Phase.PRE_PROCEEDING_PREPARATION}))

        assert saved.version == case.version + 1
        assert store.get_case(case.id).phase == Phase.PRE_PROCEEDING_PREPARATION

    def test_stale_write_is_refused(self):
        store = InMemoryStore()
        case = store.add_case(_case())
        store.update_case(case.model_copy(update={"title": "first"}))

        with pytest.raises(ConcurrentModificationError) as info:
            store.update_case(case.model_copy(update={"title": "second"}))

        assert (info.value.expected, info.value.actual) == (0, 1)
        assert store.get_case(case.id).title == "first"

    def test_returned_records_are_copies(self):
        store = InMemoryStore()
        case = store.add_case(_case())

        fetched = store.get_case(case.id)
        fetched.metadata["leak"] = True

        assert "leak" not in store.get_case(case.id).metadata

    def test_missing_case(self):
        store = InMemoryStore()
        with pytest.raises(CaseNotFoundError):
            store.get_case("nope")
        with pytest.raises(CaseNotFoundError):
            store.update_case(_case())


class TestApprovals:
    def test_first_decision_wins(self):
        store = InMemoryStore()
        approval = store.create_approval(_approval("case-1"))

        decided = store.decide_approval(
            approval.id, ApprovalStatus.REJECTED, "admin", UserRole.ADMIN, "no", DECIDED_AT
        )
        assert decided.status == ApprovalStatus.REJECTED
        assert decided.decided_at == DECIDED_AT

        with pytest.raises(ApprovalAlreadyDecidedError, match="already rejected"):
            store.decide_approval(
                approval.id, ApprovalStatus.APPROVED, "admin", UserRole.ADMIN, None, DECIDED_AT
            )
        assert store.get_approval(approval.id).status == ApprovalStatus.REJECTED

    def test_list_by_status(self):
        store = InMemoryStore()
        first = store.create_approval(_approval("case-1"))
        store.create_approval(_approval("case-2"))
        store.decide_approval(first.id, ApprovalStatus.APPROVED, "admin", UserRole.ADMIN, None, DECIDED_AT)

        assert [a.case_id for a in store.list_approvals(ApprovalStatus.PENDING)] == ["case-2"]
        assert len(store.list_approvals()) == 2

    def test_unknown_approval(self):
        store = InMemoryStore()
        with pytest.raises(ApprovalNotFoundError):
            store.decide_approval("nope", ApprovalStatus.APPROVED, "admin", UserRole.ADMIN, None, DECIDED_AT)


class TestJsonFileStore:
    def test_round_trip(self, tmp_path):
        path = tmp_path / "data" / "store.json"
        store = JsonFileStore(path)
        store.add_user(User(id="u1", name="Lee", role=UserRole.PARALEGAL))
        case = store.add_case(_case())
        store.create_approval(_approval(case.id))

        reopened = JsonFileStore(path)

        assert reopened.get_user("u1").role == UserRole.PARALEGAL
        assert reopened.get_case(case.id).title == "Estate of Smith"
        assert len(reopened.list_approvals(ApprovalStatus.PENDING)) == 1
        assert not list(path.parent.glob("*.tmp"))

    def test_missing_file_starts_empty(self, tmp_path):
        store = JsonFileStore(tmp_path / "store.json")
        assert store.list_cases() == []
        assert not (tmp_path / "store.json").exists()

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "store.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(StoreCorruptedError, match="Failed to parse"):
            JsonFileStore(path)

    def test_invalid_schema(self, tmp_path):
        path = tmp_path / "store.json"
        path.write_text(json.dumps({"cases": [{"title": "no type"}]}), encoding="utf-8")
        with pytest.raises(StoreCorruptedError, match="Schema validation failed"):
            JsonFileStore(path)

    def test_stale_write_from_another_instance_is_refused(self, tmp_path):
        path = tmp_path / "store.json"
        first = JsonFileStore(path)
        case = first.add_case(_case())
        second = JsonFileStore(path)

        seen_by_first = first.get_case(case.id)
        seen_by_second = second.get_case(case.id)
        assert seen_by_first.version == seen_by_second.version == 0

        first.update_case(seen_by_first.model_copy(update={"phase": Phase.PRE_PROCEEDING_PREPARATION}))
        with pytest.raises(ConcurrentModificationError):
            second.update_case(seen_by_second.model_copy(update={"phase": Phase.CLOSURE_REVIEW_ARCHIVING}))

        stored = JsonFileStore(path).get_case(case.id)
        assert (stored.phase, stored.version) == (Phase.PRE_PROCEEDING_PREPARATION, 1)

    def test_writes_from_another_instance_are_kept(self, tmp_path):
        path = tmp_path / "store.json"
        first = JsonFileStore(path)
        case = first.add_case(_case())
        second = JsonFileStore(path)

        first.append_event(LifecycleEvent(
            case_id=case.id,
            event_type=LifecycleEventType.PHASE_ENTERED,
            phase=Phase.INTAKE_RISK_ASSESSMENT,
            user_id="a",
            description="opened",
        ))
        second.create_task(Task(
            case_id=case.id, title="Collect documents", assigned_to="a", assigned_by="a", due_date=DECIDED_AT
        ))

        reopened = JsonFileStore(path)
        assert [e.description for e in reopened.list_events(case.id)] == ["opened"]
        assert [t.title for t in reopened.list_tasks(case.id)] == ["Collect documents"]
        assert (tmp_path / "store.json.lock").exists()

    def test_failed_write_leaves_memory_unchanged(self, tmp_path, monkeypatch):
        path = tmp_path / "store.json"
        store = JsonFileStore(path)
        case = store.add_case(_case())

        def disk_full(*args, **kwargs):
            raise OSError("No space left on device")

        monkeypatch.setattr("caseflow.store.tempfile.NamedTemporaryFile", disk_full)
        with pytest.raises(StoreError, match="No space left on device"):
            store.update_case(case.model_copy(update={"phase": Phase.PRE_PROCEEDING_PREPARATION}))

        stored = store.get_case(case.id)
        assert (stored.phase, stored.version) == (Phase.INTAKE_RISK_ASSESSMENT, 0)
        monkeypatch.undo()
        assert JsonFileStore(path).get_case(case.id).version == 0
