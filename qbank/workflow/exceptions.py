"""
Workflow error taxonomy.

Every failed precondition surfaces to the caller as one of these. Only
StorageFailure (and its ConcurrentModification subtype) is worth retrying:
preconditions are re-validated on every call, so re-attempting the same
operation is safe.
"""

from typing import Any, Dict, Iterable, Optional


class WorkflowError(Exception):
    """Base exception for workflow errors."""

    kind: str = "workflow_error"
    retryable: bool = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Convert exception to dictionary for API responses."""
        return {
            "error": self.kind,
            "message": self.message,
            "retryable": self.retryable,
            "details": self.details,
        }


class Forbidden(WorkflowError):
    """Raised when the caller's role is not allowed to run an operation."""

    kind = "forbidden"

    def __init__(
        self,
        operation: str,
        role: Optional[str] = None,
        allowed_roles: Iterable[str] = (),
        message: Optional[str] = None,
    ):
        allowed = sorted(allowed_roles)
        if message is None:
            message = f"Access denied. Required role: {' or '.join(allowed)}" if allowed else "Access denied"
        super().__init__(message, {"operation": operation, "role": role, "allowed_roles": allowed})
        self.operation = operation
        self.role = role
        self.allowed_roles = allowed


class NotFound(WorkflowError):
    """Raised when a submission does not exist."""

    kind = "not_found"

    def __init__(self, submission_id: str):
        super().__init__(f"Submission not found: {submission_id}", {"submission_id": submission_id})
        self.submission_id = submission_id


class InvalidState(WorkflowError):
    """Raised when a submission is not in the state an operation requires."""

    kind = "invalid_state"

    def __init__(self, operation: str, current_state: str, required_state: Optional[str] = None):
        if required_state:
            message = (
                f"Cannot {operation}: submission is in '{current_state}' status, "
                f"'{required_state}' required"
            )
        else:
            message = f"Cannot {operation}: submission is in terminal '{current_state}' status"
        super().__init__(
            message,
            {"operation": operation, "current_state": current_state, "required_state": required_state},
        )
        self.operation = operation
        self.current_state = current_state
        self.required_state = required_state


class ReferenceNotFound(WorkflowError):
    """Raised when an exam, subject or topic is missing, or a topic is not under its subject."""

    kind = "reference_not_found"

    def __init__(self, reference: str, reference_id: str, message: Optional[str] = None):
        super().__init__(
            message or f"{reference.capitalize()} not found: {reference_id}",
            {"reference": reference, "reference_id": reference_id},
        )
        self.reference = reference
        self.reference_id = reference_id


class IncompleteChoiceSet(WorkflowError):
    """Raised when a choice question is missing options or has a bad correct option."""

    kind = "incomplete_choice_set"

    def __init__(self, field: str, message: str):
        super().__init__(message, {"field": field})
        self.field = field


class EmptyExplanation(WorkflowError):
    """Raised when an explanation is empty after trimming."""

    kind = "empty_explanation"

    def __init__(self, message: str = "Explanation is required"):
        super().__init__(message, {"field": "explanation"})


class EmptyComment(WorkflowError):
    """Raised when a comment is empty after trimming."""

    kind = "empty_comment"

    def __init__(self, message: str = "Comment is required"):
        super().__init__(message, {"field": "comment"})


class StorageFailure(WorkflowError):
    """Opaque persistence error. Safe to retry."""

    kind = "storage_failure"
    retryable = True

    def __init__(self, message: str = "Storage operation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__(message, details)


class ConcurrentModification(StorageFailure):
    """Raised when a save races with another writer on the same submission."""

    def __init__(self, submission_id: str, expected_version: int, actual_version: Optional[int]):
        super().__init__(
            f"Submission {submission_id} was modified concurrently "
            f"(expected version {expected_version}, found {actual_version})",
            {
                "submission_id": submission_id,
                "expected_version": expected_version,
                "actual_version": actual_version,
            },
        )
        self.submission_id = submission_id
        self.expected_version = expected_version
        self.actual_version = actual_version
