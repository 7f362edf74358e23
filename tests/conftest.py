"""Shared fixtures: an in-memory store, a fixed clock, seeded users and cases."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Any, Callable

import pytest

from caseflow.case_type_validator import CaseTypeValidator
from caseflow.lifecycle import LifecycleService
from caseflow.phase_validator import PhaseValidator
from caseflow.schemas import (
    CaseRecord,
    CaseStatus,
    CaseType,
    ConditionOperator,
    Phase,
    User,
    UserRole,
)
from caseflow.side_effects import SideEffectRunner
from caseflow.state_machine import StateMachine
from caseflow.store import InMemoryStore
from caseflow.transitions import TransitionService

START = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


class FixedClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime = START) -> None:
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs: float) -> None:
        self.current += timedelta(**kwargs)


def satisfying_metadata(case_type: CaseType, source: Phase, target: Phase) -> dict[str, Any]:
    """Metadata that passes every validation stage for ``source -> target``."""
    data: dict[str, Any] = {}
    fields = list(PhaseValidator().get_phase_requirements(target, case_type))
    fields += CaseTypeValidator().get_case_type_requirements(case_type, target)
    conditions = []
    for transition in StateMachine().transitions_from(source, case_type):
        if transition.to_phase == target:
            fields += transition.required_fields
            conditions += transition.conditions
    for field in fields:
        data[field] = "provided"
    for condition in conditions:
        data[condition.field] = True if condition.operator == ConditionOperator.EQUALS else "provided"
    return data


@pytest.fixture
def clock() -> FixedClock:
    return FixedClock()


@pytest.fixture
def store() -> InMemoryStore:
    return InMemoryStore()


@pytest.fixture
def users(store: InMemoryStore) -> dict[UserRole, User]:
    seeded = {
        UserRole.ADMIN: User(id="u-admin", name="Ada Admin", role=UserRole.ADMIN),
        UserRole.ATTORNEY: User(id="u-attorney", name="Avery Attorney", role=UserRole.ATTORNEY),
        UserRole.PARALEGAL: User(id="u-paralegal", name="Pat Paralegal", role=UserRole.PARALEGAL),
        UserRole.ASSISTANT: User(id="u-assistant", name="Sam Assistant", role=UserRole.ASSISTANT),
        UserRole.CLIENT: User(id="u-client", name="Casey Client", role=UserRole.CLIENT),
    }
    for user in seeded.values():
        store.add_user(user)
    return seeded


@pytest.fixture
def runner() -> SideEffectRunner:
    return SideEffectRunner(attempts=2, wait_seconds=0)


@pytest.fixture
def lifecycle(store: InMemoryStore, runner: SideEffectRunner, clock: FixedClock) -> LifecycleService:
    return LifecycleService(store, runner=runner, now=clock)


@pytest.fixture
def service(store: InMemoryStore, lifecycle: LifecycleService) -> TransitionService:
    return TransitionService(store, lifecycle)


@pytest.fixture
def make_case(
    store: InMemoryStore,
    users: dict[UserRole, User],
    clock: FixedClock,
) -> Callable[..., CaseRecord]:
    def _make(
        case_type: CaseType = CaseType.CONTRACT_DISPUTE,
        phase: Phase = Phase.INTAKE_RISK_ASSESSMENT,
        status: CaseStatus = CaseStatus.INTAKE,
        title: str = "Acme v. Widgets",
    ) -> CaseRecord:
        return store.add_case(CaseRecord(
            title=title,
            case_type=case_type,
            phase=phase,
            status=status,
            attorney_id=users[UserRole.ATTORNEY].id,
            client_id=users[UserRole.CLIENT].id,
            phase_entered_at=clock(),
            created_at=clock(),
        ))

    return _make
