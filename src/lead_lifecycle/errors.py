"""Error taxonomy for the lead lifecycle engine."""


class LifecycleError(Exception):
    """Base class for errors surfaced to callers."""

    kind = "lifecycle_error"
    retryable = False

    def __init__(self, message: str = ""):
        super().__init__(message or self.kind)
        self.message = message or self.kind

    def to_dict(self) -> dict:
        return {"success": False, "error": self.kind, "detail": self.message}


class ValidationError(LifecycleError):
    """Malformed input, rejected before any mutation."""

    kind = "validation_error"


class DuplicateActiveEnrollment(LifecycleError):
    """The lead already has an active enrollment in this journey."""

    kind = "duplicate_active_enrollment"

    def __init__(self, lead_id: str, journey_id: str):
        super().__init__(f"Lead {lead_id} already has an active enrollment in journey {journey_id}")
        self.lead_id = lead_id
        self.journey_id = journey_id


class TerminalStateViolation(LifecycleError):
    """Attempted mutation of a completed or exited enrollment."""

    kind = "terminal_state_violation"

    def __init__(self, enrollment_id: str, status: str):
        super().__init__(f"Enrollment {enrollment_id} is {status} and accepts no further transitions")
        self.enrollment_id = enrollment_id
        self.status = status


class ConcurrentModification(LifecycleError):
    """Another writer changed the enrollment first. Safe to retry."""

    kind = "concurrent_modification"
    retryable = True

    def __init__(self, enrollment_id: str):
        super().__init__(f"Enrollment {enrollment_id} was modified concurrently, retry against current state")
        self.enrollment_id = enrollment_id


class NoActiveModel(LifecycleError):
    """No scoring model is active for the tenant."""

    kind = "no_active_model"

    def __init__(self, tenant_id: str):
        super().__init__(f"No active scoring model for tenant {tenant_id}")
        self.tenant_id = tenant_id


class OperationFailed(LifecycleError):
    """Internal failure. The cause is logged, never exposed."""

    kind = "operation_failed"
    retryable = True

    def __init__(self, message: str = "operation failed, retry"):
        super().__init__(message)
