"""
Coordination error hierarchy.

Every error is recoverable by the caller (retry against fresh state or
escalate) and carries a machine-readable ``code`` used by the API layer.
"""


class CoordinationError(Exception):
    """Base class for all coordinator errors."""

    code = "COORDINATION_ERROR"

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class NotFoundError(CoordinationError):
    """Unknown workspace, agent, bead, message or merge request."""
    code = "NOT_FOUND"


class UnknownParentError(NotFoundError):
    """Parent agent does not exist or has been terminated."""
    code = "UNKNOWN_PARENT"


class ConflictError(CoordinationError):
    """Losing side of a concurrent update on the same entity."""
    code = "CONFLICT"


class AlreadyClaimedError(ConflictError):
    """Bead is already held by another agent."""
    code = "ALREADY_CLAIMED"


class InvalidTransitionError(CoordinationError):
    """State machine violation."""
    code = "INVALID_TRANSITION"


class DepthExceededError(CoordinationError):
    """Spawning would exceed the configured hierarchy depth."""
    code = "DEPTH_EXCEEDED"


class TestGateNotMetError(CoordinationError):
    """Bead closed as done without passing (or skipped) tests."""
    __test__ = False

    code = "TEST_GATE_NOT_MET"


class UnauthorizedError(CoordinationError):
    """Caller's role lacks permission for the operation."""
    code = "UNAUTHORIZED"


class NotAssigneeError(UnauthorizedError):
    """Caller is neither the bead's assignee nor an escalation authority."""
    code = "NOT_ASSIGNEE"


class NotAReviewerError(UnauthorizedError):
    """Review decisions require the reviewer or mayor role."""
    code = "NOT_A_REVIEWER"
