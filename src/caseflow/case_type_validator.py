"""Case-type domain validation.

Each practice area carries its own intake fields, per-phase requirements,
conditional requirements, expected documents and timeline limits. Missing
requirements block a transition; documents and timelines only warn, and
recommendations are purely advisory.
"""

from __future__ import annotations

from collections.abc import Mapping
from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, ConfigDict

from .conditions import describe, evaluate, missing_values
from .schemas import (
    CaseType,
    Condition,
    ConditionOperator,
    Phase,
    ValidationResult,
    utcnow,
)

INTAKE = Phase.INTAKE_RISK_ASSESSMENT
PREPARATION = Phase.PRE_PROCEEDING_PREPARATION
PROCEEDINGS = Phase.FORMAL_PROCEEDINGS
RESOLUTION = Phase.RESOLUTION_POST_PROCEEDING

# Settlements above this amount need the court's sign-off.
COURT_APPROVAL_THRESHOLD = 100_000


class ConditionalRequirement(BaseModel):
    """``require`` must be present whenever ``when`` holds."""

    model_config = ConfigDict(frozen=True)

    when: Condition
    require: str


class PhaseSpecificRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    additional_required_fields: tuple[str, ...]
    conditional: tuple[ConditionalRequirement, ...] = ()


class DocumentRequirement(BaseModel):
    model_config = ConfigDict(frozen=True)

    document_type: str
    required: bool
    phase: Phase
    description: str


class TimelineConstraint(BaseModel):
    model_config = ConfigDict(frozen=True)

    phase: Phase
    max_duration_days: int
    critical_milestones: tuple[str, ...]


class CaseTypeRule(BaseModel):
    model_config = ConfigDict(frozen=True)

    required_fields: tuple[str, ...]
    prohibited_fields: tuple[str, ...] = ()
    phase_rules: dict[Phase, PhaseSpecificRule]
    documents: tuple[DocumentRequirement, ...]
    timeline: tuple[TimelineConstraint, ...]
    fee_structures: tuple[str, ...]


def _when(flag: str, require: str) -> ConditionalRequirement:
    return ConditionalRequirement(
        when=Condition(field=flag, operator=ConditionOperator.EQUALS, value=True),
        require=require,
    )


def _phase(fields: tuple[str, ...], *conditional: ConditionalRequirement) -> PhaseSpecificRule:
    return PhaseSpecificRule(additional_required_fields=fields, conditional=conditional)


def _doc(document_type: str, phase: Phase, description: str, required: bool = True) -> DocumentRequirement:
    return DocumentRequirement(
        document_type=document_type, required=required, phase=phase, description=description
    )


def _limits(intake_days: int, intake: tuple[str, ...], prep_days: int, prep: tuple[str, ...]) -> tuple[TimelineConstraint, ...]:
    return (
        TimelineConstraint(phase=INTAKE, max_duration_days=intake_days, critical_milestones=intake),
        TimelineConstraint(phase=PREPARATION, max_duration_days=prep_days, critical_milestones=prep),
    )


CASE_TYPE_RULES: dict[CaseType, CaseTypeRule] = {
    CaseType.LABOR_DISPUTE: CaseTypeRule(
        required_fields=("employerInformation", "employeeInformation", "employmentContract", "disputeDetails", "employmentDates"),
        prohibited_fields=("criminalRecord", "medicalHistory"),
        phase_rules={
            INTAKE: _phase(("laborContract", "payRecords", "workHistory"), _when("unionMember", "unionContract")),
            PREPARATION: _phase(("witnessStatements", "expertReports", "damageCalculations"), _when("severancePay", "severanceAgreement")),
        },
        documents=(
            _doc("EmploymentContract", INTAKE, "Original employment contract"),
            _doc("PayStubs", INTAKE, "Recent pay statements"),
            _doc("TerminationLetter", INTAKE, "Notice of termination"),
            _doc("LaborComplaint", PREPARATION, "Filed labor complaint"),
        ),
        timeline=_limits(30, ("File complaint with labor bureau",), 60, ("Mediation attempt",)),
        fee_structures=("CONTINGENCY", "HOURLY"),
    ),
    CaseType.MEDICAL_MALPRACTICE: CaseTypeRule(
        required_fields=("patientInformation", "healthcareProvider", "incidentDate", "injuryDescription", "medicalRecords"),
        phase_rules={
            INTAKE: _phase(("medicalRecords", "expertConsultation", "injuryDocumentation"), _when("emergencyTreatment", "emergencyRecords")),
            PREPARATION: _phase(("expertReports", "violationAnalysis", "damagesAssessment"), _when("permanentInjury", "lifeCarePlan")),
        },
        documents=(
            _doc("MedicalRecords", INTAKE, "Complete medical history"),
            _doc("ExpertReport", PREPARATION, "Medical expert analysis"),
            _doc("IncidentReport", INTAKE, "Medical incident report"),
            _doc("ConsentForms", INTAKE, "Patient consent forms"),
        ),
        timeline=_limits(90, ("Statute of limitations check",), 180, ("Expert review completed",)),
        fee_structures=("CONTINGENCY",),
    ),
    CaseType.CRIMINAL_DEFENSE: CaseTypeRule(
        required_fields=("defendantInformation", "charges", "arrestDate", "courtInformation", "policeReports"),
        prohibited_fields=("plaintiffDemands", "settlementAmount"),
        phase_rules={
            INTAKE: _phase(("arrestRecords", "policeReports", "bailInformation"), _when("felony", "preliminaryHearingDate")),
            PREPARATION: _phase(("evidenceList", "witnessList", "defenseStrategy"), _when("pleaBargain", "pleaAgreement")),
        },
        documents=(
            _doc("ArrestRecords", INTAKE, "Arrest and booking records"),
            _doc("PoliceReports", INTAKE, "Official police reports"),
            _doc("ChargingDocuments", INTAKE, "Formal charges"),
            _doc("BailDocuments", PREPARATION, "Bail and bond documents"),
        ),
        timeline=_limits(14, ("Arraignment",), 90, ("Preliminary hearing", "Trial preparation")),
        fee_structures=("FLAT", "HOURLY", "RETAINER"),
    ),
    CaseType.DIVORCE_FAMILY: CaseTypeRule(
        required_fields=("marriageInformation", "spouseInformation", "childrenInformation", "assetInformation", "incomeInformation"),
        phase_rules={
            INTAKE: _phase(("marriageCertificate", "childrenDetails", "residencyInformation"), _when("minorChildren", "childCustodyPreferences")),
            PREPARATION: _phase(("assetValuation", "incomeDocumentation", "custodyAgreement"), _when("highConflict", "parentingCoordinator")),
        },
        documents=(
            _doc("MarriageCertificate", INTAKE, "Official marriage certificate"),
            _doc("BirthCertificates", INTAKE, "Children's birth certificates"),
            _doc("FinancialStatements", PREPARATION, "Financial disclosure statements"),
            _doc("PropertyDeeds", PREPARATION, "Real property documentation"),
        ),
        timeline=_limits(30, ("Residency verification",), 120, ("Mediation completion", "Financial disclosure")),
        fee_structures=("FLAT", "HOURLY", "RETAINER"),
    ),
    CaseType.INHERITANCE_DISPUTE: CaseTypeRule(
        required_fields=("deceasedInformation", "willInformation", "beneficiaryInformation", "assetInventory", "executorInformation"),
        phase_rules={
            INTAKE: _phase(("deathCertificate", "willDocument", "probateCourtInformation"), _when("noWill", "intestacyInformation")),
            PREPARATION: _phase(("assetAppraisal", "creditorClaims", "beneficiaryNotices"), _when("contested", "contestGrounds")),
        },
        documents=(
            _doc("DeathCertificate", INTAKE, "Official death certificate"),
            _doc("WillDocument", INTAKE, "Last will and testament"),
            _doc("AssetInventory", PREPARATION, "Complete asset inventory"),
            _doc("ProbateDocuments", PREPARATION, "Probate court filings"),
        ),
        timeline=_limits(60, ("Will probate",), 365, ("Creditor notification", "Asset distribution")),
        fee_structures=("HOURLY", "FLAT"),
    ),
    CaseType.CONTRACT_DISPUTE: CaseTypeRule(
        required_fields=("contractInformation", "partiesInvolved", "breachDetails", "damagesClaimed", "contractValue"),
        phase_rules={
            INTAKE: _phase(("contractDocument", "breachEvidence", "correspondence"), _when("international", "jurisdictionAnalysis")),
            PREPARATION: _phase(("damageCalculations", "expertReports", "settlementDemand"), _when("liquidatedDamages", "enforceabilityAnalysis")),
        },
        documents=(
            _doc("ContractDocument", INTAKE, "Signed contract agreement"),
            _doc("BreachEvidence", INTAKE, "Evidence of breach"),
            _doc("Correspondence", INTAKE, "Related correspondence"),
            _doc("ExpertReport", PREPARATION, "Expert analysis if needed", required=False),
        ),
        timeline=_limits(45, ("Statute of limitations check",), 90, ("Demand letter sent",)),
        fee_structures=("HOURLY", "CONTINGENCY", "FLAT"),
    ),
    CaseType.ADMINISTRATIVE_CASE: CaseTypeRule(
        required_fields=("agencyInformation", "caseNumber", "violationDetails", "hearingInformation", "regulatoryCitations"),
        phase_rules={
            INTAKE: _phase(("agencyNotice", "violationDetails", "responseDeadline"), _when("licenseSuspension", "licenseDetails")),
            PREPARATION: _phase(("legalArguments", "evidencePackage", "witnessList"), _when("emergencyHearing", "emergencyMotion")),
        },
        documents=(
            _doc("AgencyNotice", INTAKE, "Official agency notice"),
            _doc("ViolationReport", INTAKE, "Violation details report"),
            _doc("Regulations", PREPARATION, "Applicable regulations"),
            _doc("HearingNotice", PREPARATION, "Hearing notice"),
        ),
        timeline=_limits(30, ("Response deadline",), 60, ("Hearing preparation",)),
        fee_structures=("HOURLY", "FLAT"),
    ),
    CaseType.DEMOLITION_CASE: CaseTypeRule(
        required_fields=("propertyInformation", "demolitionOrder", "ownerInformation", "contractorInformation", "safetyPlan"),
        phase_rules={
            INTAKE: _phase(("demolitionPermit", "propertySurvey", "environmentalAssessment"), _when("historicProperty", "heritageApproval")),
            PREPARATION: _phase(("contractorLicenses", "insuranceDocumentation", "neighborhoodNotices"), _when("asbestos", "abatementPlan")),
        },
        documents=(
            _doc("DemolitionPermit", INTAKE, "Official demolition permit"),
            _doc("PropertySurvey", INTAKE, "Property site survey"),
            _doc("SafetyPlan", PREPARATION, "Demolition safety plan"),
            _doc("ContractorLicense", PREPARATION, "Contractor license documentation"),
        ),
        timeline=_limits(45, ("Permit approval",), 30, ("Contractor selection",)),
        fee_structures=("FLAT", "HOURLY"),
    ),
    CaseType.SPECIAL_MATTERS: CaseTypeRule(
        required_fields=("matterDescription", "partiesInvolved", "jurisdiction", "legalBasis", "reliefSought"),
        phase_rules={
            INTAKE: _phase(("legalResearch", "precedentCases", "jurisdictionAnalysis"), _when("classAction", "classCertification")),
            PREPARATION: _phase(("legalArguments", "evidenceStrategy", "expertConsultation"), _when("constitutionalIssue", "constitutionalAnalysis")),
        },
        documents=(
            _doc("LegalMemorandum", INTAKE, "Legal research memorandum"),
            _doc("JurisdictionAnalysis", INTAKE, "Jurisdiction analysis"),
            _doc("ExpertReport", PREPARATION, "Expert consultation if needed", required=False),
            _doc("StrategyDocument", PREPARATION, "Case strategy document"),
        ),
        timeline=_limits(60, ("Research completion",), 90, ("Strategy finalization",)),
        fee_structures=("HOURLY", "CONTINGENCY", "FLAT", "RETAINER"),
    ),
}

INITIALIZATION_WARNINGS: dict[CaseType, tuple[str, str]] = {
    CaseType.MEDICAL_MALPRACTICE: (
        "statuteOfLimitationsChecked",
        "Statute of limitations should be verified immediately for medical malpractice cases",
    ),
    CaseType.CONTRACT_DISPUTE: (
        "contractAnalyzed",
        "Contract should be thoroughly analyzed for all potential claims and defenses",
    ),
    CaseType.CRIMINAL_DEFENSE: (
        "constitutionalRightsReviewed",
        "Constitutional rights should be reviewed immediately",
    ),
}


def _as_datetime(value: Any) -> datetime | None:
    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, str):
        try:
            parsed = datetime.fromisoformat(value)
        except ValueError:
            return None
    else:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class CaseTypeValidator:
    """Validates transitions against practice-area requirements.

    Args:
        rules: Case-type rule table; defaults to ``CASE_TYPE_RULES``.
    """

    def __init__(self, rules: Mapping[CaseType, CaseTypeRule] | None = None) -> None:
        self._rules = dict(CASE_TYPE_RULES if rules is None else rules)

    def validate_case_type_transition(
        self,
        case_type: CaseType,
        from_phase: Phase,
        to_phase: Phase,
        metadata: Mapping[str, Any] | None = None,
        phase_entered_at: datetime | None = None,
        now: datetime | None = None,
    ) -> ValidationResult:
        """Validate a phase change for one practice area.

        Args:
            case_type: The case's practice area.
            from_phase: Phase being left.
            to_phase: Phase being entered.
            metadata: Request metadata.
            phase_entered_at: When the case entered ``from_phase``; falls
                back to ``metadata["phaseStartDate"]``.
            now: Reference time for timeline checks.

        Returns:
            ValidationResult with blocking errors, warnings and advisory
            recommendations.
        """
        rule = self._rules.get(case_type)
        if rule is None:
            return ValidationResult(
                is_valid=False,
                errors=[f"No validation rules found for case type: {case_type.value}"],
            )

        data = metadata or {}
        errors: list[str] = []
        phase_rule = rule.phase_rules.get(to_phase)
        if phase_rule:
            required = list(rule.required_fields)
            required.extend(f for f in phase_rule.additional_required_fields if f not in required)
            missing = missing_values(required, data)
            if missing:
                errors.append(
                    f"Missing required fields for {case_type.value} case in "
                    f"{to_phase.value}: {', '.join(missing)}"
                )
            errors.extend(self._conditional_errors(phase_rule, data))

        warnings = self._timeline_warnings(rule, from_phase, data, phase_entered_at, now)
        warnings.extend(self._document_warnings(rule, to_phase, data))

        return ValidationResult(
            is_valid=not errors,
            errors=errors,
            warnings=warnings,
            recommendations=self._recommendations(case_type, from_phase, to_phase, data),
        )

    def validate_case_type_initialization(
        self,
        case_type: CaseType,
        metadata: Mapping[str, Any] | None = None,
    ) -> ValidationResult:
        """Check the data a new case of ``case_type`` is opened with."""
        rule = self._rules.get(case_type)
        if rule is None:
            return ValidationResult(
                is_valid=False,
                errors=[f"No validation rules found for case type: {case_type.value}"],
            )

        data = metadata or {}
        errors: list[str] = []
        missing = missing_values(rule.required_fields, data)
        if missing:
            errors.append(
                f"Missing required fields for {case_type.value} case initialization: "
                f"{', '.join(missing)}"
            )
        prohibited = [f for f in rule.prohibited_fields if data.get(f) is not None]
        if prohibited:
            errors.append(f"Prohibited fields present for {case_type.value} case: {', '.join(prohibited)}")

        intake_rule = rule.phase_rules.get(INTAKE)
        if intake_rule:
            missing_intake = missing_values(intake_rule.additional_required_fields, data)
            if missing_intake:
                errors.append(
                    f"Missing initial phase requirements for {case_type.value} case: "
                    f"{', '.join(missing_intake)}"
                )

        warnings: list[str] = []
        warning = INITIALIZATION_WARNINGS.get(case_type)
        if warning and not data.get(warning[0]):
            warnings.append(warning[1])

        return ValidationResult(is_valid=not errors, errors=errors, warnings=warnings)

    def get_case_type_requirements(self, case_type: CaseType, phase: Phase | None = None) -> list[str]:
        rule = self._rules.get(case_type)
        if rule is None:
            return []
        requirements = list(rule.required_fields)
        phase_rule = rule.phase_rules.get(phase) if phase else None
        if phase_rule:
            requirements.extend(phase_rule.additional_required_fields)
        return requirements

    def get_document_requirements(self, case_type: CaseType, phase: Phase | None = None) -> list[DocumentRequirement]:
        rule = self._rules.get(case_type)
        if rule is None:
            return []
        return [d for d in rule.documents if phase is None or d.phase == phase]

    def get_timeline_constraints(self, case_type: CaseType) -> list[TimelineConstraint]:
        rule = self._rules.get(case_type)
        return list(rule.timeline) if rule else []

    def get_supported_fee_structures(self, case_type: CaseType) -> list[str]:
        rule = self._rules.get(case_type)
        return list(rule.fee_structures) if rule else []

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _conditional_errors(phase_rule: PhaseSpecificRule, data: Mapping[str, Any]) -> list[str]:
        return [
            f"Conditional requirement not met: {req.require} is required when {describe(req.when)}"
            for req in phase_rule.conditional
            if evaluate(req.when, data) and missing_values([req.require], data)
        ]

    @staticmethod
    def _timeline_warnings(
        rule: CaseTypeRule,
        from_phase: Phase,
        data: Mapping[str, Any],
        phase_entered_at: datetime | None,
        now: datetime | None,
    ) -> list[str]:
        constraint = next((c for c in rule.timeline if c.phase == from_phase), None)
        started = phase_entered_at or _as_datetime(data.get("phaseStartDate"))
        if constraint is None or started is None:
            return []
        if started.tzinfo is None:
            started = started.replace(tzinfo=timezone.utc)
        elapsed = ((now or utcnow()) - started).days
        if elapsed > constraint.max_duration_days:
            return [
                f"{from_phase.value} phase has exceeded maximum duration of "
                f"{constraint.max_duration_days} days"
            ]
        return []

    @staticmethod
    def _document_warnings(rule: CaseTypeRule, phase: Phase, data: Mapping[str, Any]) -> list[str]:
        documents = data.get("documents")
        if not isinstance(documents, list):
            return []
        present = {d.get("type") for d in documents if isinstance(d, Mapping)}
        missing = [
            d.document_type
            for d in rule.documents
            if d.phase == phase and d.required and d.document_type not in present
        ]
        if missing:
            return [f"Missing required documents for {phase.value}: {', '.join(missing)}"]
        return []

    @staticmethod
    def _recommendations(
        case_type: CaseType,
        from_phase: Phase,
        to_phase: Phase,
        data: Mapping[str, Any],
    ) -> list[str]:
        recommendations: list[str] = []
        if case_type == CaseType.MEDICAL_MALPRACTICE and to_phase == PREPARATION:
            recommendations.append("Consider consulting with medical experts early in the preparation phase")
        elif case_type == CaseType.CRIMINAL_DEFENSE and from_phase == INTAKE and to_phase == PREPARATION:
            recommendations.append("Consider plea bargain options before proceeding to formal proceedings")
        elif case_type == CaseType.DIVORCE_FAMILY and to_phase == PREPARATION:
            recommendations.append("Mediation should be attempted before formal proceedings")

        amount = data.get("settlementAmount")
        if (
            to_phase == RESOLUTION
            and isinstance(amount, (int, float))
            and not isinstance(amount, bool)
            and amount > COURT_APPROVAL_THRESHOLD
        ):
            recommendations.append(
                f"Obtain court approval for settlement amounts over {COURT_APPROVAL_THRESHOLD:,}"
            )
        return recommendations
