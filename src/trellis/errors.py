"""Exception taxonomy for the trellis core.

Every exception raised by the engines derives from ``TrellisError`` so the
CLI and HTTP layers can map them in one place. Input/validation-type errors
also subclass ``ValueError`` and lookups subclass ``KeyError`` so callers
written against plain builtins keep working.
"""

from __future__ import annotations


class TrellisError(Exception):
    """Base class for all trellis errors."""

    code = "TRELLIS_ERROR"


class NotFoundError(TrellisError, KeyError):
    """A referenced record does not exist or is soft-deleted."""

    code = "NOT_FOUND"

    def __init__(self, resource: str, resource_id: str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource} not found"
        if resource_id is not None:
            msg = f"{resource} not found: {resource_id}"
        super().__init__(msg)

    def __str__(self) -> str:
        # KeyError.__str__ quotes its argument; keep the plain message.
        return str(self.args[0]) if self.args else ""


class PermissionDeniedError(TrellisError):
    """The authorization decision point refused the operation."""

    code = "PERMISSION_DENIED"

    def __init__(self, user: str, action: str, scope: str) -> None:
        self.user = user
        self.action = action
        self.scope = scope
        super().__init__(f"User '{user}' may not {action} on {scope}")


class DepthLimitExceededError(TrellisError, ValueError):
    code = "DEPTH_LIMIT_EXCEEDED"

    def __init__(self, depth: int, limit: int) -> None:
        self.depth = depth
        self.limit = limit
        super().__init__(f"Maximum nesting depth of {limit} levels exceeded (would be {depth})")


class CircularMoveError(TrellisError, ValueError):
    code = "CIRCULAR_MOVE"

    def __init__(self, item_id: str, new_parent_id: str) -> None:
        self.item_id = item_id
        self.new_parent_id = new_parent_id
        if item_id == new_parent_id:
            msg = f"Work item {item_id} cannot be its own parent"
        else:
            msg = f"Cannot move work item {item_id} under its own descendant {new_parent_id}"
        super().__init__(msg)


class CircularRelationshipError(TrellisError, ValueError):
    code = "CIRCULAR_RELATIONSHIP"

    def __init__(self, type_id: str) -> None:
        self.type_id = type_id
        super().__init__(f"A type cannot be its own child type: {type_id}")


class DuplicateRelationshipError(TrellisError, ValueError):
    code = "DUPLICATE_RELATIONSHIP"

    def __init__(self, parent_type_id: str, child_type_id: str) -> None:
        self.parent_type_id = parent_type_id
        self.child_type_id = child_type_id
        super().__init__(f"Relationship {parent_type_id} -> {child_type_id} already exists")


class DuplicateTransitionError(TrellisError, ValueError):
    code = "DUPLICATE_TRANSITION"

    def __init__(self, type_id: str, from_status_id: str, to_status_id: str) -> None:
        self.type_id = type_id
        self.from_status_id = from_status_id
        self.to_status_id = to_status_id
        super().__init__(f"Transition {from_status_id} -> {to_status_id} already defined for type {type_id}")


class InvalidChildTypeError(TrellisError, ValueError):
    code = "INVALID_CHILD_TYPE"

    def __init__(self, parent_type: str, child_type: str) -> None:
        self.parent_type = parent_type
        self.child_type = child_type
        super().__init__(f"Type '{child_type}' is not allowed as a child of type '{parent_type}'")


class CountConstraintViolationError(TrellisError, ValueError):
    code = "COUNT_CONSTRAINT_VIOLATION"

    def __init__(self, child_type: str, max_count: int) -> None:
        self.child_type = child_type
        self.max_count = max_count
        super().__init__(f"Maximum number of '{child_type}' items ({max_count}) reached")


class HasChildrenError(TrellisError, ValueError):
    code = "HAS_CHILDREN"

    def __init__(self, item_id: str, child_count: int) -> None:
        self.item_id = item_id
        self.child_count = child_count
        super().__init__(
            f"Work item {item_id} has {child_count} live child item(s); move or delete them first"
        )


class TransitionNotAllowedError(TrellisError, ValueError):
    code = "TRANSITION_NOT_ALLOWED"

    def __init__(self, from_status: str, to_status: str, type_name: str) -> None:
        self.from_status = from_status
        self.to_status = to_status
        self.type_name = type_name
        super().__init__(f"Transition '{from_status}' -> '{to_status}' is not allowed for type '{type_name}'")


class StatusConflictError(TrellisError, ValueError):
    """The item left the expected status before the change was written."""

    code = "STATUS_CONFLICT"

    def __init__(self, item_id: str, expected_status: str) -> None:
        self.item_id = item_id
        self.expected_status = expected_status
        super().__init__(f"Work item {item_id} is no longer in status '{expected_status}'; reload and retry")


class ValidationFailedError(TrellisError, ValueError):
    """Carries every unmet condition so a caller can show them together."""

    code = "VALIDATION_FAILED"

    def __init__(self, errors: list[str]) -> None:
        self.errors = list(errors)
        super().__init__("; ".join(self.errors) or "Validation failed")


class InvalidTemplateSyntaxError(TrellisError, ValueError):
    code = "INVALID_TEMPLATE_SYNTAX"

    def __init__(self, template: str, reason: str) -> None:
        self.template = template
        self.reason = reason
        super().__init__(f"Invalid template {template!r}: {reason}")


class InvalidFieldValueError(TrellisError, ValueError):
    code = "INVALID_FIELD_VALUE"


class NotificationDeliveryError(TrellisError):
    """A sink failed to deliver a notification. Logged by the engine, never propagated."""

    code = "NOTIFICATION_DELIVERY_FAILURE"

    def __init__(self, template_name: str, reason: str) -> None:
        self.template_name = template_name
        self.reason = reason
        super().__init__(reason)
