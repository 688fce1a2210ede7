"""
Typed Exception Hierarchy for the Field Service Kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

The API layer translates core failures into transport responses. It must do
so by type and code, never by parsing message text:

    try:
        unit.run(ctx, lambda h: PaymentReconciler(h).record_payment(...))
    except ValidationError as e:
        return respond(400, code=e.code, message=str(e))
    except NotFoundError as e:
        return respond(404, code=e.code)

Every exception carries:
  1. A CODE class attribute (machine-readable, API-safe)
  2. Structured attributes describing the failure
  3. A human-readable message

None of these are retried by the core. Retry policy belongs to the caller.

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    FieldServiceError (base)
    |
    +-- NotFoundError
    +-- InvalidTransitionError
    +-- PreconditionFailedError
    +-- ImmutableEntityError
    +-- ValidationError
    |   +-- InvalidAutomationConfigError
    +-- ConflictError
    +-- PermissionDeniedError
    +-- TenantIsolationError
    +-- AutomationBookkeepingError
    +-- ConfigurationError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Code                          | When Raised
------------------------------|-----------------------------------------------
NOT_FOUND                     | Entity absent or outside the bound tenant
INVALID_TRANSITION            | Status change not on a transition edge
PRECONDITION_FAILED           | Guard predicate failed on a legal edge
IMMUTABLE_ENTITY              | Mutation of a terminal or frozen field
VALIDATION_ERROR              | Malformed or out-of-range input
INVALID_AUTOMATION_CONFIG     | Automation config does not match its type
CONFLICT                      | Duplicate-submission heuristic triggered
PERMISSION_DENIED             | Role may not perform the operation
TENANT_ISOLATION_VIOLATION    | Write or read outside the bound tenant scope
AUTOMATION_BOOKKEEPING_FAILED | Schedule timestamps could not be advanced
CONFIGURATION_ERROR           | Settings file missing or invalid

NotFoundError deliberately does not say whether the entity exists in another
tenant. Both cases produce the same message.
"""

from typing import Any


class FieldServiceError(Exception):
    """
    Base exception for all field service kernel errors.

    All subclasses have a `code` class attribute for machine-readable
    error identification.
    """

    code: str = "FIELD_SERVICE_ERROR"


class NotFoundError(FieldServiceError):
    """Entity was not found in the bound tenant."""

    code: str = "NOT_FOUND"

    def __init__(self, entity_type: str, entity_id: Any):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        super().__init__(f"{entity_type} not found: {entity_id}")


class InvalidTransitionError(FieldServiceError):
    """
    Status change is not an edge of the entity's transition table.

    Carries the allowed set so callers can report legal next states.
    """

    code: str = "INVALID_TRANSITION"

    def __init__(
        self,
        entity_type: str,
        from_status: str,
        to_status: str,
        allowed: frozenset[str] | tuple[str, ...] = (),
        message: str | None = None,
    ):
        self.entity_type = entity_type
        self.from_status = from_status
        self.to_status = to_status
        self.allowed = tuple(sorted(allowed))
        if message is None:
            allowed_text = ", ".join(self.allowed) if self.allowed else "none"
            message = (
                f"Cannot transition {entity_type} from '{from_status}' to "
                f"'{to_status}'. Allowed: {allowed_text}"
            )
        super().__init__(message)


class PreconditionFailedError(FieldServiceError):
    """A guard predicate rejected a structurally legal transition."""

    code: str = "PRECONDITION_FAILED"

    def __init__(self, reason: str, guard: str | None = None):
        self.reason = reason
        self.guard = guard
        super().__init__(reason)


class ImmutableEntityError(FieldServiceError):
    """Mutation attempted on a terminal entity or a frozen field."""

    code: str = "IMMUTABLE_ENTITY"

    def __init__(self, entity_type: str, entity_id: Any, reason: str):
        self.entity_type = entity_type
        self.entity_id = str(entity_id)
        self.reason = reason
        super().__init__(reason)


class ValidationError(FieldServiceError):
    """Malformed or out-of-range input."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class InvalidAutomationConfigError(ValidationError):
    """Automation config does not match the variant for its type."""

    code: str = "INVALID_AUTOMATION_CONFIG"

    def __init__(self, automation_type: str, message: str):
        self.automation_type = automation_type
        super().__init__(
            f"Invalid {automation_type} config: {message}", field="config"
        )


class ConflictError(FieldServiceError):
    """Duplicate submission detected."""

    code: str = "CONFLICT"

    def __init__(self, message: str, existing_id: Any = None):
        self.existing_id = str(existing_id) if existing_id is not None else None
        super().__init__(message)


class PermissionDeniedError(FieldServiceError):
    """The bound role may not perform this operation."""

    code: str = "PERMISSION_DENIED"

    def __init__(self, role: str, operation: str):
        self.role = role
        self.operation = operation
        super().__init__(f"Role '{role}' may not {operation}")


class TenantIsolationError(FieldServiceError):
    """
    Access outside the bound tenant scope.

    Raised by the session-level isolation listeners. Indicates a programming
    error, never a user error.
    """

    code: str = "TENANT_ISOLATION_VIOLATION"

    def __init__(self, reason: str, entity_type: str | None = None):
        self.reason = reason
        self.entity_type = entity_type
        super().__init__(reason)


class AutomationBookkeepingError(FieldServiceError):
    """The dispatcher could not advance an automation's schedule."""

    code: str = "AUTOMATION_BOOKKEEPING_FAILED"

    def __init__(self, automation_id: Any, reason: str):
        self.automation_id = str(automation_id)
        self.reason = reason
        super().__init__(
            f"Could not update schedule of automation {automation_id}: {reason}"
        )


class ConfigurationError(FieldServiceError):
    """Settings could not be loaded or failed validation."""

    code: str = "CONFIGURATION_ERROR"

    def __init__(self, message: str, source: str | None = None):
        self.source = source
        super().__init__(message)
