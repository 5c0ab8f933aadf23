"""
Platform-wide exception hierarchy.

Services raise these; blueprints never build business-rule error responses
themselves.  ``register_error_handlers`` in ``grc.blueprints`` maps each type
to one HTTP status, so every route reports failures the same way.

Usage:
    from grc.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Risk", resource_id=42)
    raise ValidationError("Rejection reason is required", details={"reason": "required"})
"""


class NotFoundError(Exception):
    """Raised when a requested resource does not exist.

    Maps to HTTP 404.

    Args:
        resource: Human-readable entity name (e.g. "Risk", "Version entry").
        resource_id: The PK that was looked up. Included in logs and message.
    """

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(Exception):
    """Raised when input is missing or violates a business rule.

    Maps to HTTP 400.

    Args:
        message: Human-readable explanation of what failed.
        details: Optional field-level breakdown for structured API responses.
    """

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class AuthorizationError(Exception):
    """Raised when the actor lacks the membership, role or assignment an action needs.

    Maps to HTTP 403.

    Args:
        message: Explanation shown to the caller.
        actor_id: The user who attempted the action. For logs only.
        action: The attempted workflow action, if any.
    """

    def __init__(self, message: str, actor_id: int | None = None, action: str | None = None) -> None:
        self.actor_id = actor_id
        self.action = action
        super().__init__(message)


class InvalidStateTransitionError(Exception):
    """Raised when the current approval status does not permit the requested action.

    Maps to HTTP 400.  The message always names the current status so the
    caller can see why the transition was refused.
    """

    def __init__(self, entity_label: str, action: str, current_status: str, reason: str | None = None) -> None:
        self.entity_label = entity_label
        self.action = action
        self.current_status = current_status
        self.reason = reason
        msg = f"Cannot '{action}' {entity_label} (current: {current_status})"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class ConflictError(Exception):
    """Raised when a write would collide with a concurrent change or a unique key.

    Maps to HTTP 409.

    Args:
        resource: Model name.
        field: The field whose expected value no longer holds.
        value: The conflicting value (current value in the store).
    """

    def __init__(self, resource: str, field: str, value: str | None = None, message: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        super().__init__(message or f"{resource} with {field}={value!r} conflicts with the current state")
