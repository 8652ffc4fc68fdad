"""
Role gate for workflow operations.

Every engine entry point is wrapped with `gated(...)`. The check runs before
any other validation and before the record store is touched.
"""

from enum import Enum
from functools import wraps
from typing import Callable, Dict, FrozenSet, List, TypeVar
import logging

from qbank.core.identity import Identity, Role, STAGE_ROLES
from .exceptions import Forbidden

logger = logging.getLogger(__name__)

F = TypeVar("F", bound=Callable)


class WorkflowOperation(str, Enum):
    CREATE_SUBMISSION = "create_submission"
    CREATE_VARIANT = "create_variant"
    REVISE_BY_AUTHOR = "revise_by_author"
    SUPPLY_EXPLANATION = "supply_explanation"
    APPROVE = "approve"
    REJECT = "reject"
    ADD_COMMENT = "add_comment"
    GET_BY_ID = "get_by_id"
    LIST_BY_STATUS = "list_by_status"
    LIST_SUBMISSIONS = "list_submissions"
    STATISTICS = "statistics"
    COUNTS = "counts"
    TOPICS_FOR_SUBJECT = "topics_for_subject"


OPERATION_ROLES: Dict[WorkflowOperation, FrozenSet[Role]] = {
    WorkflowOperation.CREATE_SUBMISSION: frozenset({Role.GATHERER}),
    WorkflowOperation.CREATE_VARIANT: frozenset({Role.CREATOR}),
    WorkflowOperation.REVISE_BY_AUTHOR: frozenset({Role.CREATOR}),
    WorkflowOperation.SUPPLY_EXPLANATION: frozenset({Role.EXPLAINER}),
    WorkflowOperation.APPROVE: frozenset({Role.PROCESSOR}),
    WorkflowOperation.REJECT: frozenset({Role.PROCESSOR}),
    WorkflowOperation.ADD_COMMENT: STAGE_ROLES,
    WorkflowOperation.GET_BY_ID: STAGE_ROLES,
    WorkflowOperation.LIST_BY_STATUS: STAGE_ROLES,
    WorkflowOperation.LIST_SUBMISSIONS: STAGE_ROLES,
    WorkflowOperation.STATISTICS: STAGE_ROLES,
    WorkflowOperation.COUNTS: STAGE_ROLES,
    WorkflowOperation.TOPICS_FOR_SUBJECT: STAGE_ROLES,
}


def can(identity: Identity, operation: WorkflowOperation) -> bool:
    """Superadmin passes everything; otherwise the role must be in the allowed set."""
    if identity is None:
        return False
    if identity.is_super:
        return True
    return identity.role in OPERATION_ROLES.get(operation, frozenset())


def require(identity: Identity, operation: WorkflowOperation) -> None:
    if not can(identity, operation):
        allowed = [role.value for role in OPERATION_ROLES.get(operation, frozenset())]
        role = identity.role.value if identity is not None else None
        logger.warning(f"Forbidden: role '{role}' attempted '{operation.value}'")
        raise Forbidden(operation.value, role=role, allowed_roles=allowed)


def allowed_operations(identity: Identity) -> List[WorkflowOperation]:
    return [operation for operation in WorkflowOperation if can(identity, operation)]


def gated(operation: WorkflowOperation) -> Callable[[F], F]:
    """
    Decorator for engine methods taking the caller identity as first argument.
    """
    def decorator(func: F) -> F:
        @wraps(func)
        def wrapper(self, identity: Identity, *args, **kwargs):
            require(identity, operation)
            return func(self, identity, *args, **kwargs)

        wrapper.operation = operation  # type: ignore[attr-defined]
        return wrapper  # type: ignore[return-value]
    return decorator
