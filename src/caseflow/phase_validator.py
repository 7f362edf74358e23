"""Phase-level domain validation.

Complements the state machine with rules that depend on the target phase as
a whole: fields the phase needs on entry, extra fields per case type,
forward-only ordering and which status changes each phase permits.
"""

from __future__ import annotations

from collections.abc import Mapping
from typing import Any

from pydantic import BaseModel, ConfigDict

from .conditions import missing_values
from .schemas import (
    PHASE_ORDER,
    CaseRecord,
    CaseStatus,
    CaseType,
    Phase,
    ValidationResult,
)


class ConditionalFields(BaseModel):
    """Fields a case type must additionally provide for a phase."""

    model_config = ConfigDict(frozen=True)

    required_fields: tuple[str, ...]
    error_message: str


class StatusRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    from_status: frozenset[CaseStatus]
    to_status: frozenset[CaseStatus]
    allowed: bool = True
    reason: str | None = None


class PhaseRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    required_fields: tuple[str, ...]
    conditional: dict[CaseType, ConditionalFields] = {}
    status_rules: tuple[StatusRule, ...] = ()


def _status(from_status: set[CaseStatus], to_status: set[CaseStatus], reason: str | None = None) -> StatusRule:
    return StatusRule(from_status=frozenset(from_status), to_status=frozenset(to_status), reason=reason)


S = CaseStatus

PHASE_RULES: dict[Phase, PhaseRule] = {
    Phase.INTAKE_RISK_ASSESSMENT: PhaseRule(
        required_fields=("clientInformation", "caseDescription", "initialContactDate"),
        conditional={
            CaseType.CRIMINAL_DEFENSE: ConditionalFields(
                required_fields=("arrestDate", "charges", "policeReportNumber"),
                error_message="Criminal defense cases require arrest information and police report number",
            ),
            CaseType.MEDICAL_MALPRACTICE: ConditionalFields(
                required_fields=("incidentDate", "healthcareProvider", "injuryDescription"),
                error_message="Medical malpractice cases require incident details and healthcare provider information",
            ),
            CaseType.DIVORCE_FAMILY: ConditionalFields(
                required_fields=("marriageDate", "spouseInformation", "childrenInformation"),
                error_message="Divorce/Family cases require marriage and family information",
            ),
        },
        status_rules=(
            _status({S.INTAKE}, {S.ACTIVE, S.PENDING}),
            _status({S.INTAKE}, {S.CLOSED}, "Case can be rejected during intake"),
        ),
    ),
    Phase.PRE_PROCEEDING_PREPARATION: PhaseRule(
        required_fields=("legalResearchCompleted", "documentPreparationStarted", "strategyDefined"),
        conditional={
            CaseType.CRIMINAL_DEFENSE: ConditionalFields(
                required_fields=("bailHearingScheduled", "evidenceSecured", "witnessList"),
                error_message="Criminal defense requires bail hearing and evidence securing",
            ),
            CaseType.MEDICAL_MALPRACTICE: ConditionalFields(
                required_fields=("expertConsultationCompleted", "medicalRecordsReviewed", "violationAnalysis"),
                error_message="Medical malpractice requires expert consultation and medical record review",
            ),
            CaseType.CONTRACT_DISPUTE: ConditionalFields(
                required_fields=("contractAnalyzed", "breachIdentified", "damagesCalculated"),
                error_message="Contract disputes require contract analysis and breach identification",
            ),
        },
        status_rules=(
            _status({S.INTAKE, S.PENDING}, {S.ACTIVE}),
        ),
    ),
    Phase.FORMAL_PROCEEDINGS: PhaseRule(
        required_fields=("courtDocumentsFiled", "hearingScheduled", "evidenceSubmitted"),
        conditional={
            CaseType.CRIMINAL_DEFENSE: ConditionalFields(
                required_fields=("arraignmentCompleted", "pleaEntered", "trialDateSet"),
                error_message="Criminal defense requires arraignment and plea entry",
            ),
            CaseType.DIVORCE_FAMILY: ConditionalFields(
                required_fields=("mediationCompleted", "custodyAgreement", "assetDivision"),
                error_message="Divorce cases require mediation and custody agreements",
            ),
            CaseType.ADMINISTRATIVE_CASE: ConditionalFields(
                required_fields=("administrativeHearingScheduled", "evidencePackageSubmitted"),
                error_message="Administrative cases require hearing scheduling and evidence submission",
            ),
        },
        status_rules=(
            _status({S.ACTIVE}, {S.PENDING}, "Case may be pending during proceedings"),
        ),
    ),
    Phase.RESOLUTION_POST_PROCEEDING: PhaseRule(
        required_fields=("judgmentReceived", "resolutionDocumented", "appealPeriodStarted"),
        conditional={
            CaseType.CRIMINAL_DEFENSE: ConditionalFields(
                required_fields=("sentencingCompleted", "appealConsidered", "probationTerms"),
                error_message="Criminal defense requires sentencing completion and appeal consideration",
            ),
            CaseType.CONTRACT_DISPUTE: ConditionalFields(
                required_fields=("judgmentEnforced", "settlementReceived", "damagesCollected"),
                error_message="Contract disputes require judgment enforcement and settlement",
            ),
            CaseType.INHERITANCE_DISPUTE: ConditionalFields(
                required_fields=("willProbated", "assetsDistributed", "taxesPaid"),
                error_message="Inheritance disputes require will probate and asset distribution",
            ),
        },
        status_rules=(
            _status({S.ACTIVE, S.PENDING}, {S.COMPLETED}),
        ),
    ),
    Phase.CLOSURE_REVIEW_ARCHIVING: PhaseRule(
        required_fields=("finalDocumentation", "clientNotified", "feesSettled"),
        conditional={
            CaseType.CRIMINAL_DEFENSE: ConditionalFields(
                required_fields=("recordExpunged", "probationCompleted", "restrictionsLifted"),
                error_message="Criminal defense requires record handling and probation completion",
            ),
            CaseType.DIVORCE_FAMILY: ConditionalFields(
                required_fields=("childSupportArranged", "visitationSchedule", "nameChangeProcessed"),
                error_message="Divorce cases require child support and visitation arrangements",
            ),
            CaseType.MEDICAL_MALPRACTICE: ConditionalFields(
                required_fields=("medicalBillsPaid", "insuranceClaimsSettled", "followUpCare"),
                error_message="Medical malpractice requires medical billing and insurance settlement",
            ),
        },
        status_rules=(
            _status({S.COMPLETED}, {S.CLOSED}),
            _status({S.ACTIVE, S.PENDING}, {S.CLOSED}, "Case can be closed directly from active status"),
        ),
    ),
}

# Flags that must be set before a case may leave the phase.
COMPLETION_CHECKS: dict[Phase, tuple[str, str]] = {
    Phase.INTAKE_RISK_ASSESSMENT: (
        "conflictCheckCompleted",
        "Conflict check must be completed before ending intake phase",
    ),
    Phase.PRE_PROCEEDING_PREPARATION: (
        "clientAgreementSigned",
        "Client agreement must be signed before ending preparation phase",
    ),
    Phase.FORMAL_PROCEEDINGS: (
        "allHearingsAttended",
        "All required hearings must be attended before ending proceedings phase",
    ),
    Phase.RESOLUTION_POST_PROCEEDING: (
        "finalJudgmentReceived",
        "Final judgment must be received before ending resolution phase",
    ),
}

COMPLETION_WARNINGS: dict[Phase, tuple[str, str]] = {
    Phase.PRE_PROCEEDING_PREPARATION: (
        "deadlinesMet",
        "Some preparation deadlines may not have been met",
    ),
    Phase.FORMAL_PROCEEDINGS: (
        "allEvidenceSubmitted",
        "Not all evidence has been submitted in court",
    ),
}

# (case type, phase entered) → (flag, warning when flag is falsy)
ENTRY_WARNINGS: dict[tuple[CaseType, Phase], tuple[str, str]] = {
    (CaseType.CRIMINAL_DEFENSE, Phase.FORMAL_PROCEEDINGS): (
        "bailPosted",
        "Bail has not been posted for criminal defense case",
    ),
    (CaseType.MEDICAL_MALPRACTICE, Phase.PRE_PROCEEDING_PREPARATION): (
        "statuteOfLimitationsChecked",
        "Statute of limitations should be verified for medical malpractice case",
    ),
    (CaseType.DIVORCE_FAMILY, Phase.FORMAL_PROCEEDINGS): (
        "minorChildrenInvolved",
        "Child custody arrangements should be confirmed for divorce cases",
    ),
}


class PhaseValidator:
    """Validates phase entry, phase completion and status changes.

    Args:
        rules: Phase rule table; defaults to ``PHASE_RULES``.
    """

    def __init__(self, rules: Mapping[Phase, PhaseRule] | None = None) -> None:
        self._rules = dict(PHASE_RULES if rules is None else rules)

    def validate_phase_transition(
        self,
        case: CaseRecord,
        target: Phase,
        metadata: Mapping[str, Any] | None = None,
    ) -> ValidationResult:
        """Validate entering ``target`` from the case's current phase."""
        rule = self._rules.get(target)
        if rule is None:
            return ValidationResult(
                is_valid=False,
                errors=[f"No validation rules found for phase: {target.value}"],
            )

        errors: list[str] = []
        missing = missing_values(rule.required_fields, metadata)
        if missing:
            errors.append(f"Missing required fields for {target.value}: {', '.join(missing)}")
        errors.extend(self._conditional_errors(rule, case.case_type, metadata))
        errors.extend(self._order_errors(case.phase, target))

        warnings: list[str] = []
        entry_warning = ENTRY_WARNINGS.get((case.case_type, target))
        if entry_warning and not (metadata or {}).get(entry_warning[0]):
            warnings.append(entry_warning[1])

        return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)

    def validate_status_transition(
        self,
        current: CaseStatus,
        target: CaseStatus,
        phase: Phase,
    ) -> ValidationResult:
        """Check a status change against the rules of ``phase``."""
        rule = self._rules.get(phase)
        if rule is None or not rule.status_rules:
            return ValidationResult()

        applicable = next(
            (r for r in rule.status_rules if current in r.from_status and target in r.to_status),
            None,
        )
        if applicable is None:
            return ValidationResult(
                is_valid=False,
                errors=[
                    f"Status transition from {current.value} to {target.value} "
                    f"is not defined for phase {phase.value}"
                ],
            )
        if not applicable.allowed:
            return ValidationResult(
                is_valid=False,
                errors=[
                    applicable.reason
                    or f"Status transition from {current.value} to {target.value} is not allowed"
                ],
            )
        return ValidationResult()

    def validate_phase_completion(
        self,
        case: CaseRecord,
        metadata: Mapping[str, Any] | None = None,
    ) -> ValidationResult:
        """Check whether the case has done everything its current phase asks."""
        rule = self._rules.get(case.phase)
        if rule is None:
            return ValidationResult(
                is_valid=False,
                errors=[f"No validation rules found for phase: {case.phase.value}"],
            )

        data = metadata or {}
        errors: list[str] = []
        missing = missing_values(rule.required_fields, data)
        if missing:
            errors.append(
                f"Cannot complete phase {case.phase.value}. "
                f"Missing required fields: {', '.join(missing)}"
            )
        errors.extend(self._conditional_errors(rule, case.case_type, data))

        check = COMPLETION_CHECKS.get(case.phase)
        if check and not data.get(check[0]):
            errors.append(check[1])

        warnings: list[str] = []
        warning = COMPLETION_WARNINGS.get(case.phase)
        if warning and not data.get(warning[0]):
            warnings.append(warning[1])

        return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)

    def get_phase_requirements(self, phase: Phase, case_type: CaseType) -> list[str]:
        rule = self._rules.get(phase)
        if rule is None:
            return []
        requirements = list(rule.required_fields)
        extra = rule.conditional.get(case_type)
        if extra:
            requirements.extend(extra.required_fields)
        return requirements

    def get_phase_progress(
        self,
        phase: Phase,
        case_type: CaseType,
        metadata: Mapping[str, Any] | None,
    ) -> int:
        """Percentage of the phase's requirements present in ``metadata``."""
        requirements = self.get_phase_requirements(phase, case_type)
        if not requirements or not metadata:
            return 0
        filled = [f for f in requirements if metadata.get(f) is not None]
        return round(len(filled) / len(requirements) * 100)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _conditional_errors(
        rule: PhaseRule,
        case_type: CaseType,
        metadata: Mapping[str, Any] | None,
    ) -> list[str]:
        extra = rule.conditional.get(case_type)
        if extra and missing_values(extra.required_fields, metadata):
            return [extra.error_message]
        return []

    @staticmethod
    def _order_errors(current: Phase, target: Phase) -> list[str]:
        # forward only; closure is reachable from any phase
        if PHASE_ORDER.index(target) <= PHASE_ORDER.index(current) and not target.is_terminal:
            return [
                f"Cannot transition from {current.value} to {target.value}. "
                "Phases must progress forward."
            ]
        return []
