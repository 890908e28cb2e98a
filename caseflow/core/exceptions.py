"""
Platform-wide exception hierarchy.

Every service raises one of these types; blueprints never translate
business failures by hand. ``caseflow.utils.errors.register_error_handlers``
maps each type to one HTTP status and machine-readable code, so a caller can
render a specific message for each failure mode.

None of these are retried by the engine. ``StateConflictError`` is the only
one a caller may retry (re-fetch state, re-derive the transition, resubmit).

Usage:
    from caseflow.core.exceptions import NotFoundError, InvalidTransitionError

    raise NotFoundError(resource="WorkflowExecution", resource_id="REVIEW/42")
    raise InvalidTransitionError("REVIEW", "42", "SUBMITTED", "submit")
"""


class CaseflowError(Exception):
    """Base class for all business-rule outcomes."""

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class NotFoundError(CaseflowError):
    """Raised when an entity, definition, clock or override does not exist.

    Args:
        resource: Human-readable model name (e.g. "SLAClock", "COIOverride").
        resource_id: The key that was looked up.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(CaseflowError):
    """Raised when well-formed input violates a business rule.

    Maps to HTTP 422 in the error handlers.
    """


class ConflictError(CaseflowError):
    """Raised when an operation would duplicate a unique record.

    Args:
        resource: Model name.
        field: The unique field (or key) that would be duplicated.
        value: The conflicting value.
    """

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(f"{resource} with {field}={value!r} already exists")


class InvalidTransitionError(CaseflowError):
    """No edge with this code leaves the execution's current state."""

    def __init__(self, entity_type: str, entity_id: str, current_state: str, transition_code: str) -> None:
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.current_state = current_state
        self.transition_code = transition_code
        super().__init__(
            f"Invalid transition '{transition_code}' from '{current_state}' "
            f"for {entity_type}/{entity_id}",
            details={"current_state": current_state, "transition_code": transition_code},
        )


class ForbiddenError(CaseflowError):
    """The performer's role is not in the transition's allowed-role set."""

    def __init__(self, role: str | None, action: str, allowed_roles: list[str] | None = None) -> None:
        self.role = role
        self.action = action
        self.allowed_roles = list(allowed_roles or [])
        super().__init__(
            f"Role '{role}' cannot perform '{action}'",
            details={"role": role, "allowed_roles": self.allowed_roles},
        )


class ConflictOfInterestError(CaseflowError):
    """The COI gate refused the transition.

    ``overridable`` distinguishes "blocked, cannot be overridden" (a hard
    block is present) from "blocked, override available" (only overridable
    conflicts and no active override covers them).
    """

    def __init__(self, actor_id: str, organization_id: str, *, overridable: bool, report: dict | None = None) -> None:
        self.actor_id = actor_id
        self.organization_id = organization_id
        self.overridable = overridable
        self.report = report or {}
        if overridable:
            msg = (
                f"Actor {actor_id} has an unresolved conflict of interest with "
                f"organization {organization_id}; an administrator may grant an override"
            )
        else:
            msg = (
                f"Actor {actor_id} has a hard-block conflict of interest with "
                f"organization {organization_id}; it cannot be overridden"
            )
        super().__init__(msg, details={"overridable": overridable, "report": self.report})


class GuardFailedError(CaseflowError):
    """A caller-supplied business precondition was not met."""

    def __init__(self, guard: str, reason: str | None = None) -> None:
        self.guard = guard
        self.reason = reason
        msg = f"Guard '{guard}' failed"
        if reason:
            msg += f": {reason}"
        super().__init__(msg, details={"guard": guard, "reason": reason})


class StateConflictError(CaseflowError):
    """Concurrent modification detected while applying a state change."""

    def __init__(self, entity_type: str, entity_id: str, expected_version: int | None = None) -> None:
        self.entity_type = entity_type
        self.entity_id = entity_id
        self.expected_version = expected_version
        super().__init__(
            f"{entity_type}/{entity_id} was modified concurrently; re-fetch and retry",
            details={"expected_version": expected_version, "retryable": True},
        )


class InvalidOverrideError(CaseflowError):
    """Override request rejected: hard block, clean relationship, or duplicate."""


class ClockStateError(CaseflowError):
    """Pause/resume/extend attempted on a clock in an incompatible status."""

    def __init__(self, clock_id: int, status: str, operation: str) -> None:
        self.clock_id = clock_id
        self.status = status
        self.operation = operation
        super().__init__(
            f"Cannot {operation} SLA clock {clock_id} in status {status}",
            details={"clock_id": clock_id, "status": status, "operation": operation},
        )
