"""
Classification reference data: exams, subjects and topics.

The workflow engine only reads from this store. The add_* helpers exist to
seed it; managing classification data is the job of the surrounding system.
"""

import logging
import threading
from typing import Dict, List, Protocol

from sqlalchemy import select

from qbank.db.models import ExamRecord, SubjectRecord, TopicRecord
from qbank.db.session import DatabaseSessionManager
from qbank.repositories.base import storage_scope
from qbank.workflow.exceptions import ReferenceNotFound
from qbank.workflow.schemas import Exam, Subject, Topic

logger = logging.getLogger(__name__)


class ClassificationStore(Protocol):
    def exam_exists(self, exam_id: str) -> bool:
        ...

    def subject_exists(self, subject_id: str) -> bool:
        ...

    def topic_belongs_to_subject(self, topic_id: str, subject_id: str) -> bool:
        ...

    def topics_for_subject(self, subject_id: str) -> List[Topic]:
        ...


class InMemoryClassificationStore:
    """Dictionary-backed classification store."""

    def __init__(self):
        self._exams: Dict[str, Exam] = {}
        self._subjects: Dict[str, Subject] = {}
        self._topics: Dict[str, Topic] = {}
        self._lock = threading.Lock()

    def add_exam(self, exam_id: str, name: str) -> Exam:
        exam = Exam(id=exam_id, name=name)
        with self._lock:
            self._exams[exam_id] = exam
        return exam

    def add_subject(self, subject_id: str, name: str) -> Subject:
        subject = Subject(id=subject_id, name=name)
        with self._lock:
            self._subjects[subject_id] = subject
        return subject

    def add_topic(self, topic_id: str, name: str, subject_id: str) -> Topic:
        with self._lock:
            if subject_id not in self._subjects:
                raise ReferenceNotFound("subject", subject_id)
            topic = Topic(id=topic_id, name=name, subject_id=subject_id)
            self._topics[topic_id] = topic
        return topic

    def exam_exists(self, exam_id: str) -> bool:
        return exam_id in self._exams

    def subject_exists(self, subject_id: str) -> bool:
        return subject_id in self._subjects

    def topic_belongs_to_subject(self, topic_id: str, subject_id: str) -> bool:
        topic = self._topics.get(topic_id)
        return topic is not None and topic.subject_id == subject_id

    def topics_for_subject(self, subject_id: str) -> List[Topic]:
        with self._lock:
            topics = [t for t in self._topics.values() if t.subject_id == subject_id]
        return sorted(topics, key=lambda t: t.name)


class SqlClassificationStore:
    """Classification store over the exams, subjects and topics tables."""

    def __init__(self, db: DatabaseSessionManager):
        self.db = db

    def add_exam(self, exam_id: str, name: str) -> Exam:
        with storage_scope(self.db, "classification") as session:
            session.merge(ExamRecord(id=exam_id, name=name))
        return Exam(id=exam_id, name=name)

    def add_subject(self, subject_id: str, name: str) -> Subject:
        with storage_scope(self.db, "classification") as session:
            session.merge(SubjectRecord(id=subject_id, name=name))
        return Subject(id=subject_id, name=name)

    def add_topic(self, topic_id: str, name: str, subject_id: str) -> Topic:
        if not self.subject_exists(subject_id):
            raise ReferenceNotFound("subject", subject_id)
        with storage_scope(self.db, "classification") as session:
            session.merge(TopicRecord(id=topic_id, name=name, parent_subject_id=subject_id))
        return Topic(id=topic_id, name=name, subject_id=subject_id)

    def exam_exists(self, exam_id: str) -> bool:
        with storage_scope(self.db, "classification") as session:
            return session.get(ExamRecord, exam_id) is not None

    def subject_exists(self, subject_id: str) -> bool:
        with storage_scope(self.db, "classification") as session:
            return session.get(SubjectRecord, subject_id) is not None

    def topic_belongs_to_subject(self, topic_id: str, subject_id: str) -> bool:
        with storage_scope(self.db, "classification") as session:
            found = session.execute(
                select(TopicRecord.id).where(
                    TopicRecord.id == topic_id,
                    TopicRecord.parent_subject_id == subject_id,
                )
            ).first()
            return found is not None

    def topics_for_subject(self, subject_id: str) -> List[Topic]:
        with storage_scope(self.db, "classification") as session:
            rows = session.execute(
                select(TopicRecord)
                .where(TopicRecord.parent_subject_id == subject_id)
                .order_by(TopicRecord.name)
            ).scalars().all()
            return [Topic(id=row.id, name=row.name, subject_id=row.parent_subject_id) for row in rows]

