"""
Platform-wide exception hierarchy.

Every service raises one of these types. Blueprints register handlers
against them once and get consistent HTTP status codes everywhere;
callers branch on the exception class (or ``code``), never on the message.

Usage:
    from tourlink.core.exceptions import NotFoundError, ValidationError

    raise NotFoundError(resource="Task", resource_id=42)
    raise ValidationError("Invalid task data", details={"title": "required"})

Client errors (4xx):
    ValidationError, InvalidRating, NotFoundError, AuthorizationError,
    InvalidTransition, ConflictError, DuplicateApplication, DuplicateRating,
    TaskNotAcceptingApplications, ConcurrentModification
Infrastructure errors (5xx):
    PersistenceFailure
"""


class WorkflowError(Exception):
    """Base class for every error the workflow services raise."""

    code = "ERR_WORKFLOW"
    retryable = False


class NotFoundError(WorkflowError):
    """Raised when a requested record does not exist.

    Args:
        resource: Human-readable model/entity name (e.g. "Task", "TaskApplication").
        resource_id: The PK that was looked up.
    """

    code = "ERR_NOT_FOUND"

    def __init__(self, resource: str, resource_id: int | str | None = None) -> None:
        self.resource = resource
        self.resource_id = resource_id
        msg = f"{resource}"
        if resource_id is not None:
            msg += f" id={resource_id}"
        msg += " not found"
        super().__init__(msg)


class ValidationError(WorkflowError):
    """Raised when input fails business-rule validation in the service layer.

    All violations are collected before raising; ``details`` maps each
    offending field to its error description.

    Args:
        message: Human-readable summary.
        details: Field-level breakdown for structured API responses.
    """

    code = "ERR_VALIDATION"

    def __init__(self, message: str, details: dict | None = None) -> None:
        self.details = details or {}
        super().__init__(message)


class InvalidRating(ValidationError):
    """Rating score outside the accepted 1-5 range."""

    code = "ERR_INVALID_RATING"

    def __init__(self, score) -> None:
        self.score = score
        super().__init__(
            f"Rating score must be between 1 and 5 (got {score!r})",
            details={"score": "must be between 1 and 5"},
        )


class AuthorizationError(WorkflowError):
    """Actor lacks the required relationship to the task."""

    code = "ERR_FORBIDDEN"

    def __init__(self, actor_id, action: str, reason: str | None = None) -> None:
        self.actor_id = actor_id
        self.action = action
        msg = f"User {actor_id} is not allowed to {action}"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class InvalidTransition(WorkflowError):
    """Requested stage change is not permitted from the task's current stage."""

    code = "ERR_INVALID_TRANSITION"

    def __init__(self, task_id, current: str, target: str, reason: str | None = None) -> None:
        self.task_id = task_id
        self.current_stage = current
        self.target_stage = target
        msg = f"Cannot move task {task_id} from '{current}' to '{target}'"
        if reason:
            msg += f": {reason}"
        super().__init__(msg)


class ConflictError(WorkflowError):
    """Raised when an operation would violate a uniqueness constraint.

    Args:
        resource: Model name.
        field: The unique field (or field tuple) that would be duplicated.
        value: The conflicting value.
    """

    code = "ERR_CONFLICT_DUPLICATE"

    def __init__(self, resource: str, field: str, value: str | None = None) -> None:
        self.resource = resource
        self.field = field
        self.value = value
        msg = f"{resource} with {field}={value!r} already exists"
        super().__init__(msg)


class DuplicateApplication(ConflictError):
    """The creator already applied to this task."""

    code = "ERR_DUPLICATE_APPLICATION"

    def __init__(self, task_id, creator_id) -> None:
        self.task_id = task_id
        self.creator_id = creator_id
        super().__init__("TaskApplication", "(task_id, creator_id)", f"{task_id},{creator_id}")


class DuplicateRating(ConflictError):
    """A rating for (task, from, to, type) already exists."""

    code = "ERR_DUPLICATE_RATING"

    def __init__(self, task_id, from_user_id, to_user_id, rating_type: str) -> None:
        self.task_id = task_id
        super().__init__(
            "TaskRating",
            "(task_id, from_user_id, to_user_id, rating_type)",
            f"{task_id},{from_user_id},{to_user_id},{rating_type}",
        )


class TaskNotAcceptingApplications(WorkflowError):
    """The task is not in a stage that accepts new applications."""

    code = "ERR_NOT_ACCEPTING_APPLICATIONS"

    def __init__(self, task_id, status: str) -> None:
        self.task_id = task_id
        self.status = status
        super().__init__(f"Task {task_id} is not accepting applications (status={status})")


class ConcurrentModification(WorkflowError):
    """Optimistic lock lost; the caller should retry the whole operation."""

    code = "ERR_CONCURRENT_MODIFICATION"
    retryable = True

    def __init__(self, resource: str, resource_id) -> None:
        self.resource = resource
        self.resource_id = resource_id
        super().__init__(f"{resource} id={resource_id} was modified concurrently; retry the operation")


class PersistenceFailure(WorkflowError):
    """Underlying storage error. The unit of work has been rolled back in full."""

    code = "ERR_DATABASE"
    retryable = True

    def __init__(self, message: str = "Database error", original: Exception | None = None) -> None:
        self.original = original
        super().__init__(message)
