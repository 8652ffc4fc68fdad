"""
Database models for the question bank workflow.
"""

from sqlalchemy import (
    Column,
    Integer,
    String,
    Text,
    DateTime,
    JSON,
    CheckConstraint,
    ForeignKey,
    Index,
)
from sqlalchemy.orm import declarative_base, relationship
from sqlalchemy.sql import func

Base = declarative_base()


class ExamRecord(Base):
    __tablename__ = "exams"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class SubjectRecord(Base):
    __tablename__ = "subjects"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class TopicRecord(Base):
    """
    A topic belongs to exactly one subject.
    """
    __tablename__ = "topics"

    id = Column(String(64), primary_key=True)
    name = Column(String(255), nullable=False)
    parent_subject_id = Column(String(64), ForeignKey("subjects.id"), nullable=False, index=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), nullable=False)


class SubmissionRecord(Base):
    """
    A question and its workflow fields. The ledger lives in submission_history.
    """
    __tablename__ = "submissions"

    id = Column(String(64), primary_key=True)
    exam_ref = Column(String(64), nullable=False, index=True)
    subject_ref = Column(String(64), nullable=False, index=True)
    topic_ref = Column(String(64), nullable=False, index=True)
    content = Column(Text, nullable=False)
    kind = Column(String(32), nullable=False)
    options = Column(JSON, nullable=False)
    correct_option = Column(String(1), nullable=True)
    explanation = Column(Text, nullable=True)
    status = Column(String(32), nullable=False, index=True)

    created_by = Column(String(255), nullable=False, index=True)
    last_modified_by = Column(String(255), nullable=True)
    approved_by = Column(String(255), nullable=True)
    rejected_by = Column(String(255), nullable=True)
    rejection_reason = Column(Text, nullable=True)
    original_ref = Column(String(64), nullable=True, index=True)

    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    history = relationship(
        "HistoryRecord",
        order_by="HistoryRecord.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )
    comments = relationship(
        "CommentRecord",
        order_by="CommentRecord.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint(
            "status IN ('awaiting_processor', 'awaiting_author', 'awaiting_explainer', 'completed', 'rejected')",
            name="valid_submission_status",
        ),
        CheckConstraint(
            "kind IN ('single_correct_choice', 'binary_choice')",
            name="valid_submission_kind",
        ),
        CheckConstraint(
            "status != 'rejected' OR (rejected_by IS NOT NULL AND LENGTH(rejection_reason) > 0)",
            name="rejection_carries_reason",
        ),
        Index("idx_submission_classification", "exam_ref", "subject_ref", "topic_ref"),
    )


class HistoryRecord(Base):
    """
    Append-only ledger row. Rows are inserted, never updated or deleted.
    """
    __tablename__ = "submission_history"

    id = Column(Integer, primary_key=True, autoincrement=True)
    submission_id = Column(String(64), ForeignKey("submissions.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    action = Column(String(32), nullable=False)
    performed_by_role = Column(String(32), nullable=False)
    performed_by = Column(String(255), nullable=False)
    timestamp = Column(DateTime(timezone=True), nullable=False)
    note = Column(Text, nullable=False, default="")

    __table_args__ = (
        CheckConstraint(
            "action IN ('created', 'updated', 'approved', 'rejected', 'variant_created')",
            name="valid_history_action",
        ),
        Index("idx_history_position_unique", "submission_id", "position", unique=True),
    )


class CommentRecord(Base):
    __tablename__ = "submission_comments"

    id = Column(Integer, primary_key=True, autoincrement=True)
    submission_id = Column(String(64), ForeignKey("submissions.id"), nullable=False, index=True)
    position = Column(Integer, nullable=False)
    comment = Column(Text, nullable=False)
    commented_by = Column(String(255), nullable=False)
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index("idx_comment_position_unique", "submission_id", "position", unique=True),
    )
