"""
Question Bank Workflow Schemas

Pydantic models for submissions, their history ledger, operation payloads and
query results.
"""

from datetime import datetime, timezone
from typing import Annotated, ClassVar, Dict, List, Literal, Optional, Tuple, Union
from enum import Enum
import uuid

from pydantic import BaseModel, ConfigDict, Field, field_validator

from qbank.core.identity import Role


class SubmissionStatus(str, Enum):
    """Workflow states for submissions"""
    AWAITING_PROCESSOR = "awaiting_processor"
    AWAITING_AUTHOR = "awaiting_author"
    AWAITING_EXPLAINER = "awaiting_explainer"
    COMPLETED = "completed"
    REJECTED = "rejected"


PENDING_STATUSES: Tuple[SubmissionStatus, ...] = (
    SubmissionStatus.AWAITING_PROCESSOR,
    SubmissionStatus.AWAITING_AUTHOR,
    SubmissionStatus.AWAITING_EXPLAINER,
)

TERMINAL_STATUSES: Tuple[SubmissionStatus, ...] = (
    SubmissionStatus.COMPLETED,
    SubmissionStatus.REJECTED,
)


class WorkflowAction(str, Enum):
    """Operations that drive the state machine"""
    CREATE = "create"
    CREATE_VARIANT = "create_variant"
    REVISE = "revise"
    SUPPLY_EXPLANATION = "supply_explanation"
    APPROVE = "approve"
    REJECT = "reject"
    COMMENT = "comment"


class HistoryAction(str, Enum):
    """Tags recorded in the history ledger"""
    CREATED = "created"
    UPDATED = "updated"
    APPROVED = "approved"
    REJECTED = "rejected"
    VARIANT_CREATED = "variant_created"


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_submission_id() -> str:
    return uuid.uuid4().hex


# ===========================
# Choice sets
# ===========================

SINGLE_CORRECT_CHOICE = "single_correct_choice"
BINARY_CHOICE = "binary_choice"


class FourOptions(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, frozen=True)

    A: Optional[str] = None
    B: Optional[str] = None
    C: Optional[str] = None
    D: Optional[str] = None


class TwoOptions(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, frozen=True)

    A: Optional[str] = None
    B: Optional[str] = None


class _ChoiceBase(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True, frozen=True)

    labels: ClassVar[Tuple[str, ...]] = ()

    def option_text(self, label: str) -> Optional[str]:
        return getattr(self.options, label, None)  # type: ignore[attr-defined]

    def missing_options(self) -> List[str]:
        """Labels whose option text is absent or blank."""
        return [label for label in self.labels if not (self.option_text(label) or "").strip()]


class SingleCorrectChoice(_ChoiceBase):
    """Four labelled options with exactly one correct answer"""
    kind: Literal["single_correct_choice"] = SINGLE_CORRECT_CHOICE
    options: FourOptions = Field(default_factory=FourOptions)
    correct_option: Optional[str] = None
    labels: ClassVar[Tuple[str, ...]] = ("A", "B", "C", "D")


class BinaryChoice(_ChoiceBase):
    """Two labelled options with exactly one correct answer"""
    kind: Literal["binary_choice"] = BINARY_CHOICE
    options: TwoOptions = Field(default_factory=TwoOptions)
    correct_option: Optional[str] = None
    labels: ClassVar[Tuple[str, ...]] = ("A", "B")


ChoiceSet = Annotated[Union[SingleCorrectChoice, BinaryChoice], Field(discriminator="kind")]


# ===========================
# Ledger
# ===========================

class HistoryEntry(BaseModel):
    """One immutable line of the history ledger"""
    model_config = ConfigDict(frozen=True)

    action: HistoryAction
    performed_by_role: Role
    performed_by: str
    timestamp: datetime
    note: str = ""


class Comment(BaseModel):
    model_config = ConfigDict(frozen=True)

    comment: str
    commented_by: str
    created_at: datetime


# ===========================
# Core Data Models
# ===========================

class Submission(BaseModel):
    """A question moving through the review pipeline"""
    model_config = ConfigDict(validate_assignment=True)

    id: str = Field(default_factory=new_submission_id)
    exam_ref: str
    subject_ref: str
    topic_ref: str
    content: str
    choice: ChoiceSet
    explanation: Optional[str] = None
    status: SubmissionStatus = SubmissionStatus.AWAITING_PROCESSOR

    created_by: str
    last_modified_by: Optional[str] = None
    approved_by: Optional[str] = None
    rejected_by: Optional[str] = None
    rejection_reason: Optional[str] = None

    original_ref: Optional[str] = None
    history: List[HistoryEntry] = Field(default_factory=list)
    comments: List[Comment] = Field(default_factory=list)

    version: int = 0
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)

    @property
    def kind(self) -> str:
        return self.choice.kind

    @property
    def is_variant(self) -> bool:
        return self.original_ref is not None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def last_history_entry(self) -> Optional[HistoryEntry]:
        return self.history[-1] if self.history else None


class Exam(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str


class Subject(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str


class Topic(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    subject_id: str


# ===========================
# Operation payloads
# ===========================

class SubmissionDraft(BaseModel):
    """Payload for a gatherer creating a submission"""
    model_config = ConfigDict(str_strip_whitespace=True)

    exam_ref: str = Field(..., min_length=1)
    subject_ref: str = Field(..., min_length=1)
    topic_ref: str = Field(..., min_length=1)
    content: str = Field(..., min_length=1)
    choice: ChoiceSet
    explanation: Optional[str] = None

    @field_validator("explanation")
    @classmethod
    def blank_explanation_is_none(cls, v: Optional[str]) -> Optional[str]:
        return v or None


class AuthorRevision(BaseModel):
    """
    Changes a creator applies in the authoring stage.

    Fields left as None keep the stored value. A new choice set replaces kind,
    options and correct option together.
    """
    model_config = ConfigDict(str_strip_whitespace=True)

    exam_ref: Optional[str] = Field(None, min_length=1)
    subject_ref: Optional[str] = Field(None, min_length=1)
    topic_ref: Optional[str] = Field(None, min_length=1)
    content: Optional[str] = Field(None, min_length=1)
    choice: Optional[ChoiceSet] = None

    def changes_classification(self) -> bool:
        return any(v is not None for v in (self.exam_ref, self.subject_ref, self.topic_ref))


class VariantDraft(AuthorRevision):
    """Payload for deriving a variant; unspecified fields come from the original"""
    explanation: Optional[str] = None


# ===========================
# Queries
# ===========================

class SubmissionFilters(BaseModel):
    model_config = ConfigDict(str_strip_whitespace=True)

    statuses: Optional[List[SubmissionStatus]] = None
    exam_ref: Optional[str] = None
    subject_ref: Optional[str] = None
    topic_ref: Optional[str] = None


class SubmissionQuery(SubmissionFilters):
    """Filters as handed to the record store"""
    created_by: Optional[str] = None
    search: Optional[str] = None

    @field_validator("search")
    @classmethod
    def blank_search_is_none(cls, v: Optional[str]) -> Optional[str]:
        return v or None


class SubmissionPage(BaseModel):
    """Paginated submission listing"""
    items: List[Submission]
    page: int
    page_size: int
    total_items: int
    total_pages: int
    has_next_page: bool
    has_previous_page: bool

    @classmethod
    def build(cls, items: List[Submission], page: int, page_size: int, total_items: int) -> "SubmissionPage":
        total_pages = (total_items + page_size - 1) // page_size if total_items > 0 else 0
        return cls(
            items=items,
            page=page,
            page_size=page_size,
            total_items=total_items,
            total_pages=total_pages,
            has_next_page=page < total_pages,
            has_previous_page=page > 1,
        )


class StatusStatistics(BaseModel):
    """Submission count per status"""
    awaiting_processor: int = 0
    awaiting_author: int = 0
    awaiting_explainer: int = 0
    completed: int = 0
    rejected: int = 0
    total: int = 0

    @classmethod
    def from_counts(cls, counts: Dict[SubmissionStatus, int]) -> "StatusStatistics":
        values = {status.value: counts.get(status, 0) for status in SubmissionStatus}
        return cls(**values, total=sum(values.values()))


class SubmissionCounts(BaseModel):
    """Tab counters for listing views"""
    total: int
    approved: int
    pending: int
    rejected: int
