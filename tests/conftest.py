"""
Shared fixtures for the question bank workflow tests.

Store-backed fixtures are parametrized so every engine scenario runs against
both the in-memory stores and the SQL stores over in-memory SQLite.
"""

import pytest

from qbank.core.identity import Identity, Role
from qbank.core.settings import Settings
from qbank.db.session import DatabaseSessionManager
from qbank.repositories import (
    InMemoryClassificationStore,
    InMemorySubmissionStore,
    SqlClassificationStore,
    SqlSubmissionStore,
)
from qbank.workflow import SubmissionWorkflowEngine
from qbank.workflow.schemas import BinaryChoice, SingleCorrectChoice, SubmissionDraft


@pytest.fixture
def settings():
    """Settings isolated from the process environment"""
    return Settings(
        database_url="sqlite://",
        submission_store_backend="memory",
        rejection_placeholder="No reason provided",
        default_page_size=5,
        max_page_size=100,
        log_json=False,
    )


def seed_classifications(store):
    store.add_exam("jee", "JEE Main")
    store.add_exam("neet", "NEET")
    store.add_subject("physics", "Physics")
    store.add_subject("chemistry", "Chemistry")
    store.add_topic("kinematics", "Kinematics", "physics")
    store.add_topic("optics", "Optics", "physics")
    store.add_topic("organic", "Organic Chemistry", "chemistry")
    return store


@pytest.fixture(params=["memory", "sql"])
def stores(request, settings):
    """(submission_store, classification_store) for each backend"""
    if request.param == "memory":
        yield InMemorySubmissionStore(), seed_classifications(InMemoryClassificationStore())
        return

    db = DatabaseSessionManager(settings, database_url="sqlite://")
    try:
        yield SqlSubmissionStore(db), seed_classifications(SqlClassificationStore(db))
    finally:
        db.close()


@pytest.fixture
def sql_stores(settings):
    """(db, submission_store, classification_store) over SQLite only"""
    db = DatabaseSessionManager(settings, database_url="sqlite://")
    try:
        yield db, SqlSubmissionStore(db), seed_classifications(SqlClassificationStore(db))
    finally:
        db.close()


@pytest.fixture
def submission_store(stores):
    return stores[0]


@pytest.fixture
def classification_store(stores):
    return stores[1]


@pytest.fixture
def engine(submission_store, classification_store, settings):
    return SubmissionWorkflowEngine(submission_store, classification_store, settings=settings)


@pytest.fixture
def memory_engine(settings):
    """Engine over in-memory stores only, for thread-heavy tests"""
    return SubmissionWorkflowEngine(
        InMemorySubmissionStore(),
        seed_classifications(InMemoryClassificationStore()),
        settings=settings,
    )


# ===========================
# Identities
# ===========================

@pytest.fixture
def gatherer():
    return Identity(user_id="gatherer-1", role=Role.GATHERER)


@pytest.fixture
def other_gatherer():
    return Identity(user_id="gatherer-2", role=Role.GATHERER)


@pytest.fixture
def creator():
    return Identity(user_id="creator-1", role=Role.CREATOR)


@pytest.fixture
def explainer():
    return Identity(user_id="explainer-1", role=Role.EXPLAINER)


@pytest.fixture
def processor():
    return Identity(user_id="processor-1", role=Role.PROCESSOR)


@pytest.fixture
def superadmin():
    return Identity(user_id="admin-1", role=Role.SUPERADMIN)


# ===========================
# Payload factories
# ===========================

def build_four_options(correct_option="B", **overrides):
    options = {"A": "1 m/s", "B": "2 m/s", "C": "3 m/s", "D": "4 m/s"}
    options.update(overrides)
    return SingleCorrectChoice(options=options, correct_option=correct_option)


def build_two_options(correct_option="A", **overrides):
    options = {"A": "True", "B": "False"}
    options.update(overrides)
    return BinaryChoice(options=options, correct_option=correct_option)


@pytest.fixture
def four_options():
    return build_four_options


@pytest.fixture
def two_options():
    return build_two_options


@pytest.fixture
def make_draft():
    """Build a valid SubmissionDraft, overriding any field"""
    def _make(**overrides):
        fields = {
            "exam_ref": "jee",
            "subject_ref": "physics",
            "topic_ref": "kinematics",
            "content": "A body covers 4 m in 2 s. What is its average speed?",
            "choice": build_four_options(),
        }
        fields.update(overrides)
        return SubmissionDraft(**fields)
    return _make
