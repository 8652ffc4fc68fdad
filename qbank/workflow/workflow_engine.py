"""
Question Bank Workflow Engine

Core orchestration for the review pipeline: a question is gathered, staged for
the processor, sent through authoring and explanation, and finally completed
or rejected. Every entry point is role-gated, validates completely before
touching the record, and writes the field changes and the new history entry
in a single save.
"""

from __future__ import annotations

import threading
import weakref
from datetime import datetime
from typing import TYPE_CHECKING, Callable, List, Optional

from qbank.core.identity import Identity, Role
from qbank.core.logging_config import get_logger
from qbank.core.settings import Settings, get_settings

from .access_gate import WorkflowOperation, gated
from .exceptions import (
    EmptyComment,
    EmptyExplanation,
    Forbidden,
    IncompleteChoiceSet,
    ReferenceNotFound,
)
from .schemas import (
    PENDING_STATUSES,
    AuthorRevision,
    ChoiceSet,
    Comment,
    HistoryAction,
    HistoryEntry,
    StatusStatistics,
    Submission,
    SubmissionCounts,
    SubmissionDraft,
    SubmissionFilters,
    SubmissionPage,
    SubmissionQuery,
    SubmissionStatus,
    Topic,
    VariantDraft,
    WorkflowAction,
    utc_now,
)
from .state_machine import INITIAL_STATUS, SubmissionStateMachine

if TYPE_CHECKING:
    from qbank.db.session import DatabaseSessionManager
    from qbank.repositories.classification_store import ClassificationStore
    from qbank.repositories.submission_store import SubmissionStore

logger = get_logger(__name__)


def validate_choice_set(choice: ChoiceSet) -> None:
    """
    Every option of the kind must be filled and the correct option must name one of them.

    Raises:
        IncompleteChoiceSet: naming the first offending field
    """
    labels = choice.labels
    missing = choice.missing_options()
    if missing:
        raise IncompleteChoiceSet(
            field=f"options.{missing[0]}",
            message=(
                f"All {len(labels)} options ({', '.join(labels)}) are required for "
                f"{choice.kind} questions; missing: {', '.join(missing)}"
            ),
        )
    if not choice.correct_option:
        raise IncompleteChoiceSet(
            field="correct_option",
            message=f"Correct option is required for {choice.kind} questions",
        )
    if choice.correct_option not in labels:
        raise IncompleteChoiceSet(
            field="correct_option",
            message=(
                f"Correct option must be one of {', '.join(labels)} for {choice.kind} "
                f"questions, got {choice.correct_option!r}"
            ),
        )


class SubmissionWorkflowEngine:
    """
    Workflow engine for question submissions.

    The caller identity is an explicit argument of every operation. History
    entries record the stage role of the operation rather than the caller's
    role, so a superadmin acting on a stage's behalf leaves the ledger exactly
    as the stage owner would.
    """

    def __init__(
        self,
        submission_store: "SubmissionStore",
        classification_store: "ClassificationStore",
        settings: Optional[Settings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.submissions = submission_store
        self.classifications = classification_store
        self.settings = settings or get_settings()
        self.state_machine = SubmissionStateMachine()
        self._clock = clock
        # Entries vanish once no caller holds the lock
        self._locks: "weakref.WeakValueDictionary[str, threading.Lock]" = weakref.WeakValueDictionary()
        self._locks_guard = threading.Lock()

    # ===========================
    # Producing stages
    # ===========================

    @gated(WorkflowOperation.CREATE_SUBMISSION)
    def create_submission(self, identity: Identity, draft: SubmissionDraft) -> Submission:
        """Gatherer stages a new question for the processor."""
        self._validate_references(draft.exam_ref, draft.subject_ref, draft.topic_ref)
        validate_choice_set(draft.choice)

        now = self._clock()
        submission = Submission(
            exam_ref=draft.exam_ref,
            subject_ref=draft.subject_ref,
            topic_ref=draft.topic_ref,
            content=draft.content,
            choice=draft.choice,
            explanation=draft.explanation,
            status=INITIAL_STATUS,
            created_by=identity.user_id,
            last_modified_by=identity.user_id,
            history=[
                HistoryEntry(
                    action=HistoryAction.CREATED,
                    performed_by_role=Role.GATHERER,
                    performed_by=identity.user_id,
                    timestamp=now,
                    note="Question created by gatherer",
                )
            ],
            created_at=now,
            updated_at=now,
        )
        self.submissions.create(submission)
        logger.info(
            "submission_created",
            submission_id=submission.id,
            actor=identity.user_id,
            to_status=submission.status.value,
        )
        return self.submissions.get(submission.id)

    @gated(WorkflowOperation.CREATE_VARIANT)
    def create_variant(self, identity: Identity, original_id: str, draft: VariantDraft) -> Submission:
        """
        Creator derives a new question from an existing one.

        Unspecified fields are inherited from the original. The original record
        is left untouched; the link lives on the variant's `original_ref`.
        """
        original = self.submissions.get(original_id)

        exam_ref = draft.exam_ref or original.exam_ref
        subject_ref = draft.subject_ref or original.subject_ref
        topic_ref = draft.topic_ref or original.topic_ref
        choice = draft.choice or original.choice

        self._validate_references(exam_ref, subject_ref, topic_ref)
        validate_choice_set(choice)

        now = self._clock()
        variant = Submission(
            exam_ref=exam_ref,
            subject_ref=subject_ref,
            topic_ref=topic_ref,
            content=draft.content or original.content,
            choice=choice,
            explanation=draft.explanation or original.explanation,
            status=INITIAL_STATUS,
            created_by=identity.user_id,
            last_modified_by=identity.user_id,
            original_ref=original.id,
            history=[
                HistoryEntry(
                    action=HistoryAction.VARIANT_CREATED,
                    performed_by_role=Role.CREATOR,
                    performed_by=identity.user_id,
                    timestamp=now,
                    note=f"Variant created from question {original.id}",
                )
            ],
            created_at=now,
            updated_at=now,
        )
        self.submissions.create(variant)
        logger.info(
            "variant_created",
            submission_id=variant.id,
            original_id=original.id,
            actor=identity.user_id,
            to_status=variant.status.value,
        )
        return self.submissions.get(variant.id)

    @gated(WorkflowOperation.REVISE_BY_AUTHOR)
    def revise_by_author(self, identity: Identity, submission_id: str, revision: AuthorRevision) -> Submission:
        """Creator finishes the authoring stage and hands the question back to the processor."""

        def apply(submission: Submission, new_status: SubmissionStatus) -> str:
            exam_ref = revision.exam_ref or submission.exam_ref
            subject_ref = revision.subject_ref or submission.subject_ref
            topic_ref = revision.topic_ref or submission.topic_ref
            if revision.changes_classification():
                self._validate_references(exam_ref, subject_ref, topic_ref)

            choice = revision.choice or submission.choice
            validate_choice_set(choice)

            submission.exam_ref = exam_ref
            submission.subject_ref = subject_ref
            submission.topic_ref = topic_ref
            submission.choice = choice
            if revision.content is not None:
                submission.content = revision.content
            return "Question updated by creator"

        return self._advance(
            identity,
            submission_id,
            action=WorkflowAction.REVISE,
            history_action=HistoryAction.UPDATED,
            stage_role=Role.CREATOR,
            apply=apply,
        )

    @gated(WorkflowOperation.SUPPLY_EXPLANATION)
    def supply_explanation(self, identity: Identity, submission_id: str, explanation: str) -> Submission:
        """Explainer attaches the explanation and hands the question back to the processor."""

        def apply(submission: Submission, new_status: SubmissionStatus) -> str:
            text = (explanation or "").strip()
            if not text:
                raise EmptyExplanation()
            submission.explanation = text
            return "Explanation added/updated by explainer"

        return self._advance(
            identity,
            submission_id,
            action=WorkflowAction.SUPPLY_EXPLANATION,
            history_action=HistoryAction.UPDATED,
            stage_role=Role.EXPLAINER,
            apply=apply,
        )

    # ===========================
    # Processor decisions
    # ===========================

    @gated(WorkflowOperation.APPROVE)
    def approve(self, identity: Identity, submission_id: str) -> Submission:
        """
        Advance a staged submission to the stage after the one that just finished.
        """

        def apply(submission: Submission, new_status: SubmissionStatus) -> str:
            submission.approved_by = identity.user_id
            submission.rejected_by = None
            submission.rejection_reason = None
            return f"Question approved, moved to {new_status.value}"

        return self._advance(
            identity,
            submission_id,
            action=WorkflowAction.APPROVE,
            history_action=HistoryAction.APPROVED,
            stage_role=Role.PROCESSOR,
            apply=apply,
            touches_content=False,
        )

    @gated(WorkflowOperation.REJECT)
    def reject(self, identity: Identity, submission_id: str, reason: Optional[str] = None) -> Submission:
        """Terminate a staged submission. A blank reason is replaced by the configured placeholder."""
        final_reason = (reason or "").strip() or self.settings.rejection_placeholder

        def apply(submission: Submission, new_status: SubmissionStatus) -> str:
            submission.rejected_by = identity.user_id
            submission.rejection_reason = final_reason
            return f"Question rejected: {final_reason}"

        return self._advance(
            identity,
            submission_id,
            action=WorkflowAction.REJECT,
            history_action=HistoryAction.REJECTED,
            stage_role=Role.PROCESSOR,
            apply=apply,
            touches_content=False,
        )

    @gated(WorkflowOperation.ADD_COMMENT)
    def add_comment(self, identity: Identity, submission_id: str, text: str) -> Submission:
        """Attach a reviewer comment. Comments never enter the history ledger."""
        comment_text = (text or "").strip()

        with self._lock_for(submission_id):
            current = self.submissions.get(submission_id)
            self._check_ownership(identity, current, WorkflowOperation.ADD_COMMENT)
            self.state_machine.transition(current.status, WorkflowAction.COMMENT)
            if not comment_text:
                raise EmptyComment()

            updated = current.model_copy(deep=True)
            updated.comments.append(
                Comment(comment=comment_text, commented_by=identity.user_id, created_at=self._clock())
            )
            saved = self.submissions.save(updated)

        logger.info("comment_added", submission_id=submission_id, actor=identity.user_id)
        return saved

    # ===========================
    # Reads
    # ===========================

    @gated(WorkflowOperation.GET_BY_ID)
    def get_by_id(self, identity: Identity, submission_id: str) -> Submission:
        submission = self.submissions.get(submission_id)
        self._check_ownership(identity, submission, WorkflowOperation.GET_BY_ID)
        return submission

    @gated(WorkflowOperation.LIST_BY_STATUS)
    def list_by_status(self, identity: Identity, status: SubmissionStatus) -> List[Submission]:
        """Stage queue. Gatherers only see their own submissions."""
        return self.submissions.list_by_status(SubmissionStatus(status), owner_filter=self._owner_filter(identity))

    @gated(WorkflowOperation.LIST_SUBMISSIONS)
    def list_submissions(
        self,
        identity: Identity,
        filters: Optional[SubmissionFilters] = None,
        search: Optional[str] = None,
        page: int = 1,
        page_size: Optional[int] = None,
    ) -> SubmissionPage:
        """
        Filtered, searchable, paginated listing, newest first.

        Args:
            identity: Caller
            filters: Status set and classification filters
            search: Case-insensitive text matched against content, explanation,
                status and history notes
            page: 1-based page number
            page_size: Items per page, capped by settings.max_page_size
        """
        query = self._build_query(identity, filters, search)
        page = max(1, int(page or 1))
        size = page_size or self.settings.default_page_size
        size = max(1, min(int(size), self.settings.max_page_size))

        total = self.submissions.count(query)
        items = self.submissions.query(query, offset=(page - 1) * size, limit=size)
        return SubmissionPage.build(items, page=page, page_size=size, total_items=total)

    @gated(WorkflowOperation.STATISTICS)
    def statistics(self, identity: Identity) -> StatusStatistics:
        counts = self.submissions.count_by_status(self._build_query(identity, None, None))
        return StatusStatistics.from_counts(counts)

    @gated(WorkflowOperation.COUNTS)
    def counts(
        self,
        identity: Identity,
        filters: Optional[SubmissionFilters] = None,
        search: Optional[str] = None,
    ) -> SubmissionCounts:
        """Tab counters: total, approved (completed), pending (awaiting any stage) and rejected."""
        by_status = self.submissions.count_by_status(self._build_query(identity, filters, search))
        return SubmissionCounts(
            total=sum(by_status.values()),
            approved=by_status.get(SubmissionStatus.COMPLETED, 0),
            pending=sum(by_status.get(status, 0) for status in PENDING_STATUSES),
            rejected=by_status.get(SubmissionStatus.REJECTED, 0),
        )

    @gated(WorkflowOperation.TOPICS_FOR_SUBJECT)
    def topics_for_subject(self, identity: Identity, subject_id: str) -> List[Topic]:
        if not self.classifications.subject_exists(subject_id):
            raise ReferenceNotFound("subject", subject_id)
        return self.classifications.topics_for_subject(subject_id)

    # ===========================
    # Internals
    # ===========================

    def _advance(
        self,
        identity: Identity,
        submission_id: str,
        action: WorkflowAction,
        history_action: HistoryAction,
        stage_role: Role,
        apply: Callable[[Submission, SubmissionStatus], str],
        touches_content: bool = True,
    ) -> Submission:
        """
        Load, validate, mutate a copy, append history and save, under the submission's lock.

        `apply` validates and mutates the copy, given the resulting status, and
        returns the history note. Any exception it raises leaves the stored
        record untouched.
        """
        log = logger.bind(submission_id=submission_id, operation=action.value, actor=identity.user_id)

        with self._lock_for(submission_id):
            current = self.submissions.get(submission_id)
            new_status = self.state_machine.transition(current.status, action, current.history)

            updated = current.model_copy(deep=True)
            note = apply(updated, new_status)

            updated.status = new_status
            if touches_content:
                updated.last_modified_by = identity.user_id
            updated.history.append(
                HistoryEntry(
                    action=history_action,
                    performed_by_role=stage_role,
                    performed_by=identity.user_id,
                    timestamp=self._next_timestamp(current.history),
                    note=note,
                )
            )
            saved = self.submissions.save(updated)

        log.info(
            "submission_transition",
            from_status=current.status.value,
            to_status=saved.status.value,
            history_length=len(saved.history),
        )
        return saved

    def _validate_references(self, exam_ref: str, subject_ref: str, topic_ref: str) -> None:
        if not self.classifications.exam_exists(exam_ref):
            raise ReferenceNotFound("exam", exam_ref)
        if not self.classifications.subject_exists(subject_ref):
            raise ReferenceNotFound("subject", subject_ref)
        if not self.classifications.topic_belongs_to_subject(topic_ref, subject_ref):
            raise ReferenceNotFound(
                "topic",
                topic_ref,
                message=f"Topic {topic_ref} not found or does not belong to subject {subject_ref}",
            )

    def _next_timestamp(self, history: List[HistoryEntry]) -> datetime:
        """Clock reading clamped so the ledger never goes backwards."""
        now = self._clock()
        if history and history[-1].timestamp > now:
            return history[-1].timestamp
        return now

    def _lock_for(self, submission_id: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(submission_id)
            if lock is None:
                lock = self._locks[submission_id] = threading.Lock()
            return lock

    @staticmethod
    def _owner_filter(identity: Identity) -> Optional[str]:
        return identity.user_id if identity.role == Role.GATHERER else None

    def _check_ownership(self, identity: Identity, submission: Submission, operation: WorkflowOperation) -> None:
        owner = self._owner_filter(identity)
        if owner is not None and submission.created_by != owner:
            logger.warning(
                "ownership_denied",
                submission_id=submission.id,
                actor=identity.user_id,
                operation=operation.value,
            )
            raise Forbidden(operation.value, role=identity.role.value, message="Access denied")

    def _build_query(
        self,
        identity: Identity,
        filters: Optional[SubmissionFilters],
        search: Optional[str],
    ) -> SubmissionQuery:
        base = filters.model_dump() if filters is not None else {}
        return SubmissionQuery(**base, created_by=self._owner_filter(identity), search=search)


def create_workflow_engine(
    settings: Optional[Settings] = None,
    db: Optional["DatabaseSessionManager"] = None,
) -> SubmissionWorkflowEngine:
    """
    Factory wiring the engine to the stores selected by configuration.
    """
    settings = settings or get_settings()

    if settings.is_sql_backend():
        from qbank.db.session import DatabaseSessionManager
        from qbank.repositories.classification_store import SqlClassificationStore
        from qbank.repositories.submission_store import SqlSubmissionStore

        db = db or DatabaseSessionManager(settings)
        return SubmissionWorkflowEngine(
            SqlSubmissionStore(db),
            SqlClassificationStore(db),
            settings=settings,
        )

    from qbank.repositories.classification_store import InMemoryClassificationStore
    from qbank.repositories.submission_store import InMemorySubmissionStore

    return SubmissionWorkflowEngine(
        InMemorySubmissionStore(),
        InMemoryClassificationStore(),
        settings=settings,
    )
