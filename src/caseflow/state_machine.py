"""Phase transition state machine for the case lifecycle.

Checks a proposed phase change in a fixed order, stopping at the first
failing stage:

    phase validity → transition exists → role → required fields → conditions

The condition stage reports every failing condition, not just the first.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from .conditions import describe, failing
from .rules import BASE_TRANSITIONS, CASE_TYPE_TRANSITIONS, build_transition_index
from .schemas import (
    CaseState,
    CaseType,
    Phase,
    StateTransition,
    TransitionCheck,
    UserRole,
)


class StateMachine:
    """Structural transition checks over the merged rule index.

    Args:
        base: Base transitions keyed by source phase.
        overlays: Case-type overlays keyed by case type, then source phase.
    """

    def __init__(
        self,
        base: Mapping[Phase, tuple[StateTransition, ...]] = BASE_TRANSITIONS,
        overlays: Mapping[CaseType, Mapping[Phase, tuple[StateTransition, ...]]] = CASE_TYPE_TRANSITIONS,
    ) -> None:
        self._phases = frozenset(base)
        self._index = build_transition_index(base, overlays)

    def transitions_from(self, phase: Phase, case_type: CaseType) -> tuple[StateTransition, ...]:
        return self._index.get((phase, case_type), ())

    def can_transition(
        self,
        state: CaseState,
        target: Phase,
        role: UserRole,
        metadata: Mapping[str, Any] | None = None,
    ) -> TransitionCheck:
        """Check whether ``role`` may move a case in ``state`` to ``target``.

        Args:
            state: Current case state.
            target: The desired next phase.
            role: Role of the acting user.
            metadata: Request metadata checked for fields and conditions.

        Returns:
            A TransitionCheck; ``errors`` is empty when allowed.
        """
        current = state.phase
        if current not in self._phases:
            msg = f"Invalid current phase: {getattr(current, 'value', current)}"
            return TransitionCheck(allowed=False, message=msg, errors=[msg])

        transition = next(
            (t for t in self.transitions_from(current, state.case_type) if t.to_phase == target),
            None,
        )
        if transition is None:
            return TransitionCheck(
                allowed=False,
                message=f"Cannot transition from {current.value} to {target.value}",
                errors=[f"Invalid transition from {current.value} to {target.value}"],
            )

        if role not in transition.allowed_roles:
            return TransitionCheck(
                allowed=False,
                message=f"User role {role.value} is not authorized for this transition",
                errors=["Insufficient permissions for transition"],
            )

        data = metadata or {}
        missing = [f for f in transition.required_fields if f not in data]
        if missing:
            msg = f"Missing required fields: {', '.join(missing)}"
            return TransitionCheck(allowed=False, message=msg, errors=[msg])

        failed = failing(transition.conditions, data)
        if failed:
            return TransitionCheck(
                allowed=False,
                message="Transition conditions not met",
                errors=[f"Condition failed: {describe(c)}" for c in failed],
            )

        return TransitionCheck(
            allowed=True,
            message=f"Transition from {current.value} to {target.value} is allowed",
        )

    def get_available_transitions(self, state: CaseState, role: UserRole) -> list[Phase]:
        """Return all phases ``role`` may target from the current phase."""
        return [
            t.to_phase
            for t in self.transitions_from(state.phase, state.case_type)
            if role in t.allowed_roles
        ]

    def get_phase_requirements(self, phase: Phase, case_type: CaseType) -> list[str]:
        """Return every field required by transitions out of ``phase``."""
        requirements: list[str] = []
        for transition in self.transitions_from(phase, case_type):
            requirements.extend(
                f for f in transition.required_fields if f not in requirements
            )
        return requirements

    def get_case_type_workflow(self, case_type: CaseType) -> list[StateTransition]:
        """Return the effective transitions for one case type, in phase order."""
        return [
            t
            for (_, ct), transitions in self._index.items()
            if ct == case_type
            for t in transitions
        ]

    def get_all_transitions(self) -> dict[CaseType, list[StateTransition]]:
        return {ct: self.get_case_type_workflow(ct) for ct in CaseType}
