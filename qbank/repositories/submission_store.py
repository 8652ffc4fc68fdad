"""
Durable storage for submissions and their history ledger.

`save` is a full-record replace guarded by the submission's `version`: the
caller hands back the version it read, the store rejects the write if someone
else saved in between, and bumps the version on success. It also refuses any
history that is not an extension of the stored one, so the ledger stays
append-only whatever the caller does.
"""

import logging
import re
from datetime import datetime, timezone
import threading
from typing import Dict, List, Optional, Protocol

from sqlalchemy import func, or_, select, update

from qbank.db.models import CommentRecord, HistoryRecord, SubmissionRecord
from qbank.db.session import DatabaseSessionManager
from qbank.repositories.base import storage_scope
from qbank.workflow.exceptions import ConcurrentModification, NotFound, StorageFailure
from qbank.workflow.schemas import (
    Comment,
    HistoryEntry,
    Submission,
    SubmissionQuery,
    SubmissionStatus,
    utc_now,
)

logger = logging.getLogger(__name__)


class SubmissionStore(Protocol):
    def create(self, submission: Submission) -> str:
        ...

    def get(self, submission_id: str) -> Submission:
        ...

    def save(self, submission: Submission) -> Submission:
        ...

    def list_by_status(self, status: SubmissionStatus, owner_filter: Optional[str] = None) -> List[Submission]:
        ...

    def query(self, query: SubmissionQuery, offset: int = 0, limit: Optional[int] = None) -> List[Submission]:
        ...

    def count(self, query: SubmissionQuery) -> int:
        ...

    def count_by_status(self, query: SubmissionQuery) -> Dict[SubmissionStatus, int]:
        ...


def _ensure_append_only(stored: List[HistoryEntry], incoming: List[HistoryEntry], submission_id: str) -> None:
    if len(incoming) < len(stored) or incoming[: len(stored)] != stored:
        raise StorageFailure(
            f"History of submission {submission_id} must only be appended to",
            {"submission_id": submission_id},
        )


# ===========================
# In-memory implementation
# ===========================

class InMemorySubmissionStore:
    """
    Thread-safe in-memory record store.

    Records are deep-copied on the way in and out so callers can never mutate
    stored state without going through save().
    """

    def __init__(self):
        self._records: Dict[str, Submission] = {}
        self._lock = threading.Lock()

    def create(self, submission: Submission) -> str:
        if not submission.history:
            raise StorageFailure("A submission cannot be stored without history")
        with self._lock:
            if submission.id in self._records:
                raise StorageFailure(f"Submission {submission.id} already exists", {"submission_id": submission.id})
            stored = submission.model_copy(deep=True)
            stored.version = 1
            self._records[submission.id] = stored
        logger.debug(f"Stored submission {submission.id}")
        return submission.id

    def get(self, submission_id: str) -> Submission:
        with self._lock:
            record = self._records.get(submission_id)
            if record is None:
                raise NotFound(submission_id)
            return record.model_copy(deep=True)

    def save(self, submission: Submission) -> Submission:
        with self._lock:
            current = self._records.get(submission.id)
            if current is None:
                raise NotFound(submission.id)
            if current.version != submission.version:
                raise ConcurrentModification(submission.id, submission.version, current.version)
            _ensure_append_only(current.history, submission.history, submission.id)

            stored = submission.model_copy(deep=True)
            stored.version = current.version + 1
            stored.updated_at = utc_now()
            self._records[submission.id] = stored
            return stored.model_copy(deep=True)

    def list_by_status(self, status: SubmissionStatus, owner_filter: Optional[str] = None) -> List[Submission]:
        return self.query(SubmissionQuery(statuses=[status], created_by=owner_filter))

    def query(self, query: SubmissionQuery, offset: int = 0, limit: Optional[int] = None) -> List[Submission]:
        matched = self._matching(query)
        matched.sort(key=lambda s: (s.created_at, s.id), reverse=True)
        end = None if limit is None else offset + limit
        return [s.model_copy(deep=True) for s in matched[offset:end]]

    def count(self, query: SubmissionQuery) -> int:
        return len(self._matching(query))

    def count_by_status(self, query: SubmissionQuery) -> Dict[SubmissionStatus, int]:
        counts: Dict[SubmissionStatus, int] = {}
        for submission in self._matching(query):
            counts[submission.status] = counts.get(submission.status, 0) + 1
        return counts

    def _matching(self, query: SubmissionQuery) -> List[Submission]:
        pattern = re.compile(re.escape(query.search), re.IGNORECASE) if query.search else None
        with self._lock:
            records = list(self._records.values())
        return [s for s in records if self._matches(s, query, pattern)]

    @staticmethod
    def _matches(submission: Submission, query: SubmissionQuery, pattern: Optional[re.Pattern]) -> bool:
        if query.statuses is not None and submission.status not in query.statuses:
            return False
        if query.exam_ref and submission.exam_ref != query.exam_ref:
            return False
        if query.subject_ref and submission.subject_ref != query.subject_ref:
            return False
        if query.topic_ref and submission.topic_ref != query.topic_ref:
            return False
        if query.created_by and submission.created_by != query.created_by:
            return False
        if pattern is not None:
            haystack = [submission.content, submission.explanation or "", submission.status.value]
            haystack.extend(entry.note for entry in submission.history)
            if not any(pattern.search(text) for text in haystack):
                return False
        return True


# ===========================
# SQL implementation
# ===========================

class SqlSubmissionStore:
    """Record store over the submissions, submission_history and submission_comments tables."""

    def __init__(self, db: DatabaseSessionManager):
        self.db = db

    def create(self, submission: Submission) -> str:
        if not submission.history:
            raise StorageFailure("A submission cannot be stored without history")
        with storage_scope(self.db, "create") as session:
            if session.get(SubmissionRecord, submission.id) is not None:
                raise StorageFailure(f"Submission {submission.id} already exists", {"submission_id": submission.id})
            record = SubmissionRecord(id=submission.id, version=1)
            self._apply_fields(record, submission)
            record.updated_at = submission.updated_at
            session.add(record)
            self._append_history(record, submission.history, start=0)
            self._append_comments(record, submission.comments, start=0)
        logger.debug(f"Stored submission {submission.id}")
        return submission.id

    def get(self, submission_id: str) -> Submission:
        with storage_scope(self.db, "get") as session:
            record = session.get(SubmissionRecord, submission_id)
            if record is None:
                raise NotFound(submission_id)
            return self._to_model(record)

    def save(self, submission: Submission) -> Submission:
        with storage_scope(self.db, "save") as session:
            record = session.get(SubmissionRecord, submission.id)
            if record is None:
                raise NotFound(submission.id)
            if record.version != submission.version:
                raise ConcurrentModification(submission.id, submission.version, record.version)

            stored_history = [self._history_to_model(row) for row in record.history]
            _ensure_append_only(stored_history, submission.history, submission.id)

            # Compare-and-swap on version so concurrent writers cannot both win
            now = utc_now()
            result = session.execute(
                update(SubmissionRecord)
                .where(
                    SubmissionRecord.id == submission.id,
                    SubmissionRecord.version == submission.version,
                )
                .values(version=SubmissionRecord.version + 1, updated_at=now)
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:
                raise ConcurrentModification(submission.id, submission.version, record.version)

            session.refresh(record)
            self._apply_fields(record, submission)
            self._append_history(record, submission.history, start=len(stored_history))
            self._append_comments(record, submission.comments, start=len(record.comments))
            session.flush()
            session.refresh(record)
            return self._to_model(record)

    def list_by_status(self, status: SubmissionStatus, owner_filter: Optional[str] = None) -> List[Submission]:
        return self.query(SubmissionQuery(statuses=[status], created_by=owner_filter))

    def query(self, query: SubmissionQuery, offset: int = 0, limit: Optional[int] = None) -> List[Submission]:
        statement = (
            select(SubmissionRecord)
            .where(*self._conditions(query))
            .order_by(SubmissionRecord.created_at.desc(), SubmissionRecord.id.desc())
            .offset(offset)
        )
        if limit is not None:
            statement = statement.limit(limit)
        with storage_scope(self.db, "query") as session:
            rows = session.execute(statement).scalars().all()
            return [self._to_model(row) for row in rows]

    def count(self, query: SubmissionQuery) -> int:
        statement = select(func.count()).select_from(SubmissionRecord).where(*self._conditions(query))
        with storage_scope(self.db, "count") as session:
            return int(session.execute(statement).scalar_one())

    def count_by_status(self, query: SubmissionQuery) -> Dict[SubmissionStatus, int]:
        statement = (
            select(SubmissionRecord.status, func.count())
            .where(*self._conditions(query))
            .group_by(SubmissionRecord.status)
        )
        with storage_scope(self.db, "count_by_status") as session:
            return {SubmissionStatus(status): int(n) for status, n in session.execute(statement).all()}

    # --- mapping helpers ---

    @staticmethod
    def _conditions(query: SubmissionQuery) -> list:
        conditions = []
        if query.statuses is not None:
            conditions.append(SubmissionRecord.status.in_([s.value for s in query.statuses]))
        if query.exam_ref:
            conditions.append(SubmissionRecord.exam_ref == query.exam_ref)
        if query.subject_ref:
            conditions.append(SubmissionRecord.subject_ref == query.subject_ref)
        if query.topic_ref:
            conditions.append(SubmissionRecord.topic_ref == query.topic_ref)
        if query.created_by:
            conditions.append(SubmissionRecord.created_by == query.created_by)
        if query.search:
            escaped = query.search.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
            like = f"%{escaped}%"
            note_match = (
                select(HistoryRecord.id)
                .where(
                    HistoryRecord.submission_id == SubmissionRecord.id,
                    HistoryRecord.note.ilike(like, escape="\\"),
                )
                .exists()
            )
            conditions.append(
                or_(
                    SubmissionRecord.content.ilike(like, escape="\\"),
                    SubmissionRecord.explanation.ilike(like, escape="\\"),
                    SubmissionRecord.status.ilike(like, escape="\\"),
                    note_match,
                )
            )
        return conditions

    @staticmethod
    def _apply_fields(record: SubmissionRecord, submission: Submission) -> None:
        choice = submission.choice
        record.exam_ref = submission.exam_ref
        record.subject_ref = submission.subject_ref
        record.topic_ref = submission.topic_ref
        record.content = submission.content
        record.kind = choice.kind
        record.options = choice.options.model_dump()
        record.correct_option = choice.correct_option
        record.explanation = submission.explanation
        record.status = submission.status.value
        record.created_by = submission.created_by
        record.last_modified_by = submission.last_modified_by
        record.approved_by = submission.approved_by
        record.rejected_by = submission.rejected_by
        record.rejection_reason = submission.rejection_reason
        record.original_ref = submission.original_ref
        record.created_at = submission.created_at

    @staticmethod
    def _append_history(record: SubmissionRecord, history: List[HistoryEntry], start: int) -> None:
        for position, entry in enumerate(history[start:], start=start):
            record.history.append(
                HistoryRecord(
                    position=position,
                    action=entry.action.value,
                    performed_by_role=entry.performed_by_role.value,
                    performed_by=entry.performed_by,
                    timestamp=entry.timestamp,
                    note=entry.note,
                )
            )

    @staticmethod
    def _append_comments(record: SubmissionRecord, comments: List[Comment], start: int) -> None:
        for position, comment in enumerate(comments[start:], start=start):
            record.comments.append(
                CommentRecord(
                    position=position,
                    comment=comment.comment,
                    commented_by=comment.commented_by,
                    created_at=comment.created_at,
                )
            )

    @staticmethod
    def _history_to_model(row: HistoryRecord) -> HistoryEntry:
        return HistoryEntry(
            action=row.action,
            performed_by_role=row.performed_by_role,
            performed_by=row.performed_by,
            timestamp=_as_utc(row.timestamp),
            note=row.note or "",
        )

    @classmethod
    def _to_model(cls, record: SubmissionRecord) -> Submission:
        return Submission(
            id=record.id,
            exam_ref=record.exam_ref,
            subject_ref=record.subject_ref,
            topic_ref=record.topic_ref,
            content=record.content,
            choice={
                "kind": record.kind,
                "options": dict(record.options or {}),
                "correct_option": record.correct_option,
            },
            explanation=record.explanation,
            status=record.status,
            created_by=record.created_by,
            last_modified_by=record.last_modified_by,
            approved_by=record.approved_by,
            rejected_by=record.rejected_by,
            rejection_reason=record.rejection_reason,
            original_ref=record.original_ref,
            history=[cls._history_to_model(row) for row in record.history],
            comments=[
                Comment(comment=row.comment, commented_by=row.commented_by, created_at=_as_utc(row.created_at))
                for row in record.comments
            ],
            version=record.version,
            created_at=_as_utc(record.created_at),
            updated_at=_as_utc(record.updated_at),
        )


def _as_utc(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; stored values are always UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value
