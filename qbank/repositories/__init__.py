from .classification_store import ClassificationStore, InMemoryClassificationStore, SqlClassificationStore
from .submission_store import InMemorySubmissionStore, SqlSubmissionStore, SubmissionStore

__all__ = [
    'ClassificationStore',
    'InMemoryClassificationStore',
    'SqlClassificationStore',
    'SubmissionStore',
    'InMemorySubmissionStore',
    'SqlSubmissionStore',
]
