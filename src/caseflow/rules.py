"""Static rule tables for the case lifecycle.

Base transitions apply to every case; case-type overlays add transitions and
guards for specific practice areas. Both are merged once into a flat index
keyed by ``(phase, case_type)``:

    intake → preparation → proceedings → resolution → closure
       ↘──────────↘────────────↘──────────────↘ closure (reject/settle/dismiss)
"""

from __future__ import annotations

from collections.abc import Iterable, Mapping

from .exceptions import RuleConfigurationError
from .schemas import (
    PHASE_ORDER,
    CaseType,
    Condition,
    ConditionOperator,
    Phase,
    StateTransition,
    UserRole,
)

INTAKE = Phase.INTAKE_RISK_ASSESSMENT
PREPARATION = Phase.PRE_PROCEEDING_PREPARATION
PROCEEDINGS = Phase.FORMAL_PROCEEDINGS
RESOLUTION = Phase.RESOLUTION_POST_PROCEEDING
CLOSURE = Phase.CLOSURE_REVIEW_ARCHIVING

LEGAL_STAFF = frozenset({UserRole.ATTORNEY, UserRole.ADMIN})


def _is_true(field: str) -> Condition:
    return Condition(field=field, operator=ConditionOperator.EQUALS, value=True)


def _exists(field: str) -> Condition:
    return Condition(field=field, operator=ConditionOperator.EXISTS)


def _transition(
    source: Phase,
    target: Phase,
    conditions: Iterable[Condition] = (),
    required_fields: Iterable[str] = (),
    roles: frozenset[UserRole] = LEGAL_STAFF,
) -> StateTransition:
    return StateTransition(
        from_phase=source,
        to_phase=target,
        allowed_roles=roles,
        conditions=tuple(conditions),
        required_fields=tuple(required_fields),
    )


# ---------------------------------------------------------------------------
# Base transitions: from_phase → allowed transitions
# ---------------------------------------------------------------------------

BASE_TRANSITIONS: dict[Phase, tuple[StateTransition, ...]] = {
    INTAKE: (
        _transition(
            INTAKE, PREPARATION,
            [_is_true("riskAssessmentCompleted")],
            ["clientInformation", "caseDescription", "initialEvidence"],
        ),
        _transition(INTAKE, CLOSURE, [_is_true("caseRejected")]),
    ),
    PREPARATION: (
        _transition(
            PREPARATION, PROCEEDINGS,
            [_is_true("preparationCompleted")],
            ["legalResearch", "documentPreparation", "witnessPreparation"],
        ),
        _transition(PREPARATION, CLOSURE, [_is_true("caseSettled")]),
    ),
    PROCEEDINGS: (
        _transition(PROCEEDINGS, RESOLUTION, [_is_true("proceedingsCompleted")]),
        _transition(PROCEEDINGS, CLOSURE, [_is_true("caseDismissed")]),
    ),
    RESOLUTION: (
        _transition(
            RESOLUTION, CLOSURE,
            [_is_true("resolutionCompleted")],
            ["finalJudgment", "settlementAgreement", "appealPeriod"],
        ),
    ),
    CLOSURE: (),
}


# ---------------------------------------------------------------------------
# Case-type overlays: extra guards per practice area
# ---------------------------------------------------------------------------

CASE_TYPE_TRANSITIONS: dict[CaseType, dict[Phase, tuple[StateTransition, ...]]] = {
    CaseType.CRIMINAL_DEFENSE: {
        INTAKE: (
            _transition(
                INTAKE, PREPARATION,
                [_is_true("bailHearingScheduled"), _is_true("evidenceSecured")],
                ["arrestRecords", "policeReports", "witnessStatements"],
            ),
        ),
    },
    CaseType.DIVORCE_FAMILY: {
        PREPARATION: (
            _transition(
                PREPARATION, PROCEEDINGS,
                [_is_true("mediationAttempted"), _exists("custodyAgreement")],
                ["marriageCertificate", "financialDisclosures", "childCustodyPlan"],
            ),
        ),
    },
    CaseType.MEDICAL_MALPRACTICE: {
        INTAKE: (
            _transition(
                INTAKE, PREPARATION,
                [_is_true("medicalRecordsReviewed"), _is_true("expertConsultationCompleted")],
                ["medicalRecords", "expertReports", "hospitalDocumentation"],
            ),
        ),
    },
    CaseType.CONTRACT_DISPUTE: {
        PREPARATION: (
            _transition(
                PREPARATION, PROCEEDINGS,
                [_is_true("contractAnalyzed"), _is_true("breachDocumented")],
                ["contractDocument", "breachEvidence", "correspondence"],
            ),
        ),
    },
    CaseType.LABOR_DISPUTE: {
        PREPARATION: (
            _transition(
                PREPARATION, PROCEEDINGS,
                [_is_true("laborBoardNotified"), _is_true("employmentHistoryVerified")],
                ["employmentContract", "payrollRecords", "grievanceDocumentation"],
            ),
        ),
    },
    CaseType.INHERITANCE_DISPUTE: {
        INTAKE: (
            _transition(
                INTAKE, PREPARATION,
                [_exists("willLocated"), _is_true("heirsIdentified")],
                ["deathCertificate", "willDocument", "probateCourtFiling"],
            ),
        ),
    },
    CaseType.ADMINISTRATIVE_CASE: {
        PROCEEDINGS: (
            _transition(
                PROCEEDINGS, RESOLUTION,
                [_is_true("administrativeHearingCompleted"), _is_true("evidenceSubmitted")],
                ["agencyDecision", "appealDocumentation", "complianceReport"],
            ),
        ),
    },
    CaseType.DEMOLITION_CASE: {
        PREPARATION: (
            _transition(
                PREPARATION, PROCEEDINGS,
                [_is_true("propertyInspectionCompleted"), _is_true("noticesServed")],
                ["propertySurvey", "demolitionPermit", "environmentalAssessment"],
            ),
        ),
    },
    CaseType.SPECIAL_MATTERS: {
        INTAKE: (
            _transition(
                INTAKE, PREPARATION,
                [_is_true("specializedAssessmentCompleted"), _is_true("expertConsultationScheduled")],
                ["caseAssessment", "expertReferral", "specializedDocumentation"],
            ),
        ),
    },
}


# ---------------------------------------------------------------------------
# Approval gate: roles that may move straight into a phase without approval.
# Pairs not listed never require approval.
# ---------------------------------------------------------------------------

APPROVAL_EXEMPT_ROLES: dict[CaseType, dict[Phase, frozenset[UserRole]]] = {
    CaseType.CRIMINAL_DEFENSE: {
        PROCEEDINGS: frozenset({UserRole.ADMIN}),
        RESOLUTION: frozenset({UserRole.ADMIN}),
    },
    CaseType.MEDICAL_MALPRACTICE: {
        PREPARATION: frozenset({UserRole.ADMIN}),
        PROCEEDINGS: frozenset({UserRole.ADMIN}),
    },
    CaseType.DIVORCE_FAMILY: {
        PROCEEDINGS: frozenset({UserRole.ADMIN}),
    },
}


def requires_approval(case_type: CaseType, target: Phase, role: UserRole) -> bool:
    """Return True if ``role`` must have this move approved first."""
    exempt = APPROVAL_EXEMPT_ROLES.get(case_type, {}).get(target)
    if exempt is None:
        return False
    return role not in exempt


# ---------------------------------------------------------------------------
# Phase details (durations in days)
# ---------------------------------------------------------------------------

PHASE_DURATIONS_DAYS: dict[Phase, int] = {
    INTAKE: 7,
    PREPARATION: 30,
    PROCEEDINGS: 90,
    RESOLUTION: 30,
    CLOSURE: 14,
}

PHASE_DETAILS: dict[Phase, dict[str, tuple[str, ...]]] = {
    INTAKE: {
        "requirements": ("clientInformation", "caseDescription", "initialEvidence", "riskAssessment"),
        "critical_tasks": ("Initial consultation", "Risk assessment", "Document collection"),
        "deliverables": ("Client intake form", "Risk assessment report", "Case file setup"),
    },
    PREPARATION: {
        "requirements": ("legalResearch", "documentPreparation", "witnessPreparation"),
        "critical_tasks": ("Legal research", "Document preparation", "Witness interviews"),
        "deliverables": ("Legal research memo", "Prepared documents", "Witness statements"),
    },
    PROCEEDINGS: {
        "requirements": ("courtFiling", "evidenceSubmission", "hearingPreparation"),
        "critical_tasks": ("File court documents", "Submit evidence", "Prepare for hearings"),
        "deliverables": ("Court filings", "Evidence packages", "Hearing preparation"),
    },
    RESOLUTION: {
        "requirements": ("judgmentAnalysis", "settlementNegotiation", "appealConsideration"),
        "critical_tasks": ("Analyze judgment", "Negotiate settlement", "Consider appeals"),
        "deliverables": ("Judgment analysis", "Settlement agreement", "Appeal decision"),
    },
    CLOSURE: {
        "requirements": ("finalDocumentation", "clientNotification", "archivalPreparation"),
        "critical_tasks": ("Final documentation", "Client notification", "Case archival"),
        "deliverables": ("Final case report", "Client notification", "Archived case file"),
    },
}

CASE_TYPE_PHASE_REQUIREMENTS: dict[CaseType, dict[Phase, tuple[str, ...]]] = {
    CaseType.CRIMINAL_DEFENSE: {
        INTAKE: ("bailHearing", "policeReports", "witnessStatements"),
        PROCEEDINGS: ("courtAppearances", "evidencePresentation"),
    },
    CaseType.DIVORCE_FAMILY: {
        INTAKE: ("marriageCertificate", "childrenInformation"),
        PREPARATION: ("mediationAttempts", "custodyAgreement"),
    },
    CaseType.MEDICAL_MALPRACTICE: {
        INTAKE: ("medicalRecords", "expertReports"),
        PROCEEDINGS: ("expertTestimony", "medicalEvidence"),
    },
}


# ---------------------------------------------------------------------------
# Index construction
# ---------------------------------------------------------------------------

def _check_source(
    label: str,
    table: Mapping[Phase, tuple[StateTransition, ...]],
) -> None:
    for phase, transitions in table.items():
        targets: set[Phase] = set()
        for transition in transitions:
            if transition.from_phase != phase:
                raise RuleConfigurationError(
                    f"{label}: transition {transition.from_phase.value} -> "
                    f"{transition.to_phase.value} listed under {phase.value}"
                )
            if transition.to_phase in targets:
                raise RuleConfigurationError(
                    f"{label}: duplicate transition {phase.value} -> "
                    f"{transition.to_phase.value}"
                )
            targets.add(transition.to_phase)


def merge_transitions(base: StateTransition, overlay: StateTransition) -> StateTransition:
    """Combine a base transition with an overlay for the same target.

    The overlay only ever adds constraints: roles are intersected, required
    fields and conditions are accumulated.
    """
    required = list(base.required_fields)
    required.extend(f for f in overlay.required_fields if f not in required)
    conditions = list(base.conditions)
    conditions.extend(c for c in overlay.conditions if c not in conditions)
    return StateTransition(
        from_phase=base.from_phase,
        to_phase=base.to_phase,
        allowed_roles=base.allowed_roles & overlay.allowed_roles,
        conditions=tuple(conditions),
        required_fields=tuple(required),
    )


def build_transition_index(
    base: Mapping[Phase, tuple[StateTransition, ...]] = BASE_TRANSITIONS,
    overlays: Mapping[CaseType, Mapping[Phase, tuple[StateTransition, ...]]] = CASE_TYPE_TRANSITIONS,
) -> dict[tuple[Phase, CaseType], tuple[StateTransition, ...]]:
    """Flatten base and overlay tables into ``(phase, case_type)`` lookups.

    Raises:
        RuleConfigurationError: If a table is inconsistent or an overlay
            adds transitions out of the terminal phase.
    """
    _check_source("base", base)
    for case_type, table in overlays.items():
        _check_source(f"overlay[{case_type.value}]", table)
        for phase, transitions in table.items():
            if phase.is_terminal and transitions:
                raise RuleConfigurationError(
                    f"overlay[{case_type.value}]: {phase.value} is terminal"
                )
            if phase not in base:
                raise RuleConfigurationError(
                    f"overlay[{case_type.value}]: unknown phase {phase.value}"
                )

    index: dict[tuple[Phase, CaseType], tuple[StateTransition, ...]] = {}
    for phase in PHASE_ORDER:
        if phase not in base:
            continue
        for case_type in CaseType:
            merged = {t.to_phase: t for t in base[phase]}
            for extra in overlays.get(case_type, {}).get(phase, ()):
                existing = merged.get(extra.to_phase)
                merged[extra.to_phase] = (
                    merge_transitions(existing, extra) if existing else extra
                )
            index[(phase, case_type)] = tuple(merged.values())
    return index
