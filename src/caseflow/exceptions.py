"""Custom exception hierarchy for the case transition engine."""


class CaseflowError(Exception):
    """Base exception for all caseflow errors."""


class RuleConfigurationError(CaseflowError):
    """Transition rule tables are inconsistent."""


# ---------------------------------------------------------------------------
# Not found
# ---------------------------------------------------------------------------

class NotFoundError(CaseflowError):
    """A referenced record does not exist."""

    kind = "Record"

    def __init__(self, record_id: str) -> None:
        self.record_id = record_id
        super().__init__(f"{self.kind} not found: {record_id!r}")


class CaseNotFoundError(NotFoundError):
    """Referenced case does not exist."""

    kind = "Case"


class ApprovalNotFoundError(NotFoundError):
    """Referenced approval request does not exist."""

    kind = "Approval request"


class NotificationNotFoundError(NotFoundError):
    """Referenced notification does not exist."""

    kind = "Notification"


# ---------------------------------------------------------------------------
# Transitions
# ---------------------------------------------------------------------------

class TransitionError(CaseflowError):
    """Errors raised while changing a case's phase or status."""


class InvalidStatusTransitionError(TransitionError):
    """Status change is not permitted in the case's current phase."""

    def __init__(self, errors: list[str]) -> None:
        self.errors = errors
        super().__init__(f"Invalid status transition: {', '.join(errors)}")


class ConcurrentModificationError(TransitionError):
    """The case changed between read and write."""

    def __init__(self, case_id: str, expected: int, actual: int) -> None:
        self.case_id = case_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Case state changed, retry: {case_id!r} "
            f"(expected version {expected}, found {actual})"
        )


# ---------------------------------------------------------------------------
# Approvals
# ---------------------------------------------------------------------------

class ApprovalError(CaseflowError):
    """Errors related to approval resolution."""


class ApprovalAlreadyDecidedError(ApprovalError):
    """Approval request has already been approved or rejected."""

    def __init__(self, approval_id: str, status: str) -> None:
        self.approval_id = approval_id
        self.status = status
        super().__init__(f"Approval request already {status}")


class ApprovalNotAuthorizedError(ApprovalError):
    """Role is not allowed to decide approval requests."""

    def __init__(self, role: str) -> None:
        self.role = role
        super().__init__(f"Role {role!r} is not authorized to decide approvals")


# ---------------------------------------------------------------------------
# Storage
# ---------------------------------------------------------------------------

class StoreError(CaseflowError):
    """Errors related to the backing store."""


class StoreCorruptedError(StoreError):
    """Store file contains invalid data."""


class ConfigError(CaseflowError):
    """Configuration file is missing required data or cannot be parsed."""
