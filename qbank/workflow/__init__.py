"""
Question Bank Approval Workflow

State machine, role gate and engine driving submissions from the gatherer
through authoring and explanation to completion.
"""

from .workflow_engine import SubmissionWorkflowEngine, create_workflow_engine, validate_choice_set
from .state_machine import SubmissionStateMachine, next_stage_after
from .access_gate import WorkflowOperation, allowed_operations, can
from .exceptions import (
    WorkflowError,
    Forbidden,
    NotFound,
    InvalidState,
    ReferenceNotFound,
    IncompleteChoiceSet,
    EmptyExplanation,
    EmptyComment,
    StorageFailure,
    ConcurrentModification,
)
from .schemas import (
    SubmissionStatus,
    Submission,
    SubmissionDraft,
    AuthorRevision,
    VariantDraft,
    SingleCorrectChoice,
    BinaryChoice,
    HistoryEntry,
    SubmissionFilters,
    SubmissionPage,
    StatusStatistics,
    SubmissionCounts,
)

__all__ = [
    'SubmissionWorkflowEngine',
    'create_workflow_engine',
    'validate_choice_set',
    'SubmissionStateMachine',
    'next_stage_after',
    'WorkflowOperation',
    'allowed_operations',
    'can',
    'WorkflowError',
    'Forbidden',
    'NotFound',
    'InvalidState',
    'ReferenceNotFound',
    'IncompleteChoiceSet',
    'EmptyExplanation',
    'EmptyComment',
    'StorageFailure',
    'ConcurrentModification',
    'SubmissionStatus',
    'Submission',
    'SubmissionDraft',
    'AuthorRevision',
    'VariantDraft',
    'SingleCorrectChoice',
    'BinaryChoice',
    'HistoryEntry',
    'SubmissionFilters',
    'SubmissionPage',
    'StatusStatistics',
    'SubmissionCounts',
]
