"""
Tests for the submission workflow engine

Every test runs against the in-memory and the SQL stores.
"""

import gc
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import pytest

from qbank.core.identity import Role
from qbank.core.settings import Settings
from qbank.workflow import SubmissionWorkflowEngine, create_workflow_engine
from qbank.workflow.exceptions import (
    EmptyComment,
    EmptyExplanation,
    Forbidden,
    IncompleteChoiceSet,
    InvalidState,
    NotFound,
    ReferenceNotFound,
)
from qbank.workflow.schemas import (
    AuthorRevision,
    HistoryAction,
    SubmissionFilters,
    SubmissionQuery,
    SubmissionStatus,
    VariantDraft,
)


def assert_ledger_invariants(submission):
    assert len(submission.history) >= 1
    timestamps = [entry.timestamp for entry in submission.history]
    assert timestamps == sorted(timestamps)
    assert submission.status in set(SubmissionStatus)
    if submission.status == SubmissionStatus.REJECTED:
        assert submission.rejected_by
        assert submission.rejection_reason


@pytest.fixture
def staged(engine, gatherer, make_draft):
    """A freshly gathered submission awaiting the processor"""
    return engine.create_submission(gatherer, make_draft())


@pytest.fixture
def with_author(engine, staged, processor):
    return engine.approve(processor, staged.id)


@pytest.fixture
def with_explainer(engine, with_author, creator, processor):
    engine.revise_by_author(creator, with_author.id, AuthorRevision(content="Average speed for 4 m in 2 s?"))
    return engine.approve(processor, with_author.id)


class TestCreateSubmission:

    def test_create_then_get(self, engine, gatherer, make_draft):
        draft = make_draft(explanation="Speed is distance over time")
        created = engine.create_submission(gatherer, draft)
        fetched = engine.get_by_id(gatherer, created.id)

        assert fetched.status == SubmissionStatus.AWAITING_PROCESSOR
        assert fetched.content == draft.content
        assert fetched.choice == draft.choice
        assert fetched.explanation == "Speed is distance over time"
        assert fetched.created_by == gatherer.user_id
        assert fetched.version == 1
        assert len(fetched.history) == 1
        assert fetched.history[0].action == HistoryAction.CREATED
        assert fetched.history[0].performed_by_role == Role.GATHERER
        assert_ledger_invariants(fetched)

    def test_binary_choice(self, engine, gatherer, make_draft, two_options):
        created = engine.create_submission(gatherer, make_draft(choice=two_options()))
        assert created.kind == "binary_choice"

    def test_missing_option_persists_nothing(self, engine, gatherer, make_draft, four_options, submission_store):
        with pytest.raises(IncompleteChoiceSet) as exc_info:
            engine.create_submission(gatherer, make_draft(choice=four_options(D=None)))

        assert exc_info.value.field == "options.D"
        assert submission_store.count(SubmissionQuery()) == 0

    def test_missing_correct_option(self, engine, gatherer, make_draft, four_options):
        with pytest.raises(IncompleteChoiceSet) as exc_info:
            engine.create_submission(gatherer, make_draft(choice=four_options(correct_option=None)))
        assert exc_info.value.field == "correct_option"

    @pytest.mark.parametrize(
        "overrides,reference",
        [
            ({"exam_ref": "gate"}, "exam"),
            ({"subject_ref": "biology"}, "subject"),
            ({"topic_ref": "organic"}, "topic"),
            ({"topic_ref": "nonexistent"}, "topic"),
        ],
    )
    def test_bad_references(self, engine, gatherer, make_draft, submission_store, overrides, reference):
        with pytest.raises(ReferenceNotFound) as exc_info:
            engine.create_submission(gatherer, make_draft(**overrides))
        assert exc_info.value.reference == reference
        assert submission_store.count(SubmissionQuery()) == 0

    def test_wrong_role_leaves_store_untouched(self, engine, creator, make_draft, submission_store):
        with pytest.raises(Forbidden):
            engine.create_submission(creator, make_draft())
        assert submission_store.count(SubmissionQuery()) == 0

    def test_superadmin_records_stage_role(self, engine, superadmin, processor, make_draft):
        created = engine.create_submission(superadmin, make_draft())
        assert created.history[0].performed_by_role == Role.GATHERER
        assert created.history[0].performed_by == superadmin.user_id
        assert engine.approve(processor, created.id).status == SubmissionStatus.AWAITING_AUTHOR


class TestApproveAndReject:

    def test_gathered_submission_goes_to_author(self, with_author, processor):
        assert with_author.status == SubmissionStatus.AWAITING_AUTHOR
        assert with_author.approved_by == processor.user_id
        last = with_author.history[-1]
        assert last.action == HistoryAction.APPROVED
        assert last.performed_by_role == Role.PROCESSOR
        assert "awaiting_author" in last.note
        assert_ledger_invariants(with_author)

    def test_authored_submission_goes_to_explainer(self, with_explainer):
        assert with_explainer.status == SubmissionStatus.AWAITING_EXPLAINER

    def test_approve_outside_processor_stage(self, engine, with_author, processor, submission_store):
        before = submission_store.get(with_author.id)
        with pytest.raises(InvalidState) as exc_info:
            engine.approve(processor, with_author.id)

        assert exc_info.value.current_state == "awaiting_author"
        assert exc_info.value.required_state == "awaiting_processor"
        after = submission_store.get(with_author.id)
        assert after.history == before.history
        assert after.version == before.version

    def test_approve_missing(self, engine, processor):
        with pytest.raises(NotFound):
            engine.approve(processor, "missing-id")

    def test_role_checked_before_lookup(self, engine, gatherer):
        with pytest.raises(Forbidden):
            engine.approve(gatherer, "missing-id")

    def test_approval_clears_stale_rejection(self, engine, staged, processor, submission_store):
        seeded = submission_store.get(staged.id)
        seeded.rejected_by = "processor-0"
        seeded.rejection_reason = "left over"
        submission_store.save(seeded)

        approved = engine.approve(processor, staged.id)
        assert approved.rejected_by is None
        assert approved.rejection_reason is None

    def test_reject_with_reason(self, engine, staged, processor):
        rejected = engine.reject(processor, staged.id, "duplicate")

        assert rejected.status == SubmissionStatus.REJECTED
        assert rejected.rejection_reason == "duplicate"
        assert rejected.rejected_by == processor.user_id
        rejected_entries = [e for e in rejected.history if e.action == HistoryAction.REJECTED]
        assert len(rejected_entries) == 1
        assert "duplicate" in rejected_entries[0].note
        assert_ledger_invariants(rejected)

    @pytest.mark.parametrize("reason", [None, "", "   "])
    def test_reject_blank_reason_uses_placeholder(self, engine, staged, processor, reason):
        rejected = engine.reject(processor, staged.id, reason)
        assert rejected.rejection_reason == "No reason provided"

    def test_reject_placeholder_is_configurable(self, submission_store, classification_store, staged, processor):
        settings = Settings(rejection_placeholder="Rejected without comment", database_url="sqlite://")
        engine = SubmissionWorkflowEngine(submission_store, classification_store, settings=settings)
        assert engine.reject(processor, staged.id).rejection_reason == "Rejected without comment"

    def test_reason_with_braces_kept_verbatim(self, engine, staged, processor):
        rejected = engine.reject(processor, staged.id, "see {notes}")
        assert rejected.history[-1].note.endswith("see {notes}")

    def test_terminal_states_accept_nothing(self, engine, staged, processor, creator, explainer):
        engine.reject(processor, staged.id, "off syllabus")

        with pytest.raises(InvalidState):
            engine.approve(processor, staged.id)
        with pytest.raises(InvalidState):
            engine.reject(processor, staged.id, "again")
        with pytest.raises(InvalidState):
            engine.revise_by_author(creator, staged.id, AuthorRevision(content="x"))
        with pytest.raises(InvalidState):
            engine.supply_explanation(explainer, staged.id, "because")


class TestProducingStages:

    def test_revise_requires_author_stage(self, engine, staged, creator):
        with pytest.raises(InvalidState) as exc_info:
            engine.revise_by_author(creator, staged.id, AuthorRevision(content="x"))
        assert exc_info.value.required_state == "awaiting_author"

    def test_revise_updates_and_returns_to_processor(self, engine, with_author, creator, two_options):
        revised = engine.revise_by_author(
            creator,
            with_author.id,
            AuthorRevision(content="Is speed a scalar?", choice=two_options(), topic_ref="optics"),
        )

        assert revised.status == SubmissionStatus.AWAITING_PROCESSOR
        assert revised.content == "Is speed a scalar?"
        assert revised.kind == "binary_choice"
        assert revised.topic_ref == "optics"
        assert revised.last_modified_by == creator.user_id
        assert revised.history[-1].performed_by_role == Role.CREATOR
        assert revised.history[-1].action == HistoryAction.UPDATED

    def test_revise_rechecks_completeness_for_new_kind(self, engine, with_author, creator, two_options, submission_store):
        with pytest.raises(IncompleteChoiceSet) as exc_info:
            engine.revise_by_author(creator, with_author.id, AuthorRevision(choice=two_options(B=None)))

        assert exc_info.value.field == "options.B"
        stored = submission_store.get(with_author.id)
        assert stored.status == SubmissionStatus.AWAITING_AUTHOR
        assert stored.kind == "single_correct_choice"

    def test_revise_rechecks_changed_references(self, engine, with_author, creator, submission_store):
        with pytest.raises(ReferenceNotFound):
            engine.revise_by_author(creator, with_author.id, AuthorRevision(subject_ref="chemistry"))
        assert submission_store.get(with_author.id).subject_ref == "physics"

    def test_supply_explanation(self, engine, with_explainer, explainer, processor):
        explained = engine.supply_explanation(explainer, with_explainer.id, "  v = d / t = 2 m/s  ")

        assert explained.status == SubmissionStatus.AWAITING_PROCESSOR
        assert explained.explanation == "v = d / t = 2 m/s"
        assert explained.history[-1].performed_by_role == Role.EXPLAINER
        assert engine.approve(processor, explained.id).status == SubmissionStatus.COMPLETED

    def test_blank_explanation(self, engine, with_explainer, explainer, submission_store):
        with pytest.raises(EmptyExplanation):
            engine.supply_explanation(explainer, with_explainer.id, "   ")
        assert submission_store.get(with_explainer.id).status == SubmissionStatus.AWAITING_EXPLAINER

    def test_explanation_requires_explainer_stage(self, engine, with_author, explainer):
        with pytest.raises(InvalidState):
            engine.supply_explanation(explainer, with_author.id, "early")

    def test_full_pipeline(self, engine, gatherer, creator, explainer, processor, make_draft):
        submission = engine.create_submission(gatherer, make_draft())
        assert engine.approve(processor, submission.id).status == SubmissionStatus.AWAITING_AUTHOR
        engine.revise_by_author(creator, submission.id, AuthorRevision())
        assert engine.approve(processor, submission.id).status == SubmissionStatus.AWAITING_EXPLAINER
        engine.supply_explanation(explainer, submission.id, "Distance divided by time")
        completed = engine.approve(processor, submission.id)

        assert completed.status == SubmissionStatus.COMPLETED
        assert [e.performed_by_role for e in completed.history] == [
            Role.GATHERER,
            Role.PROCESSOR,
            Role.CREATOR,
            Role.PROCESSOR,
            Role.EXPLAINER,
            Role.PROCESSOR,
        ]
        assert completed.version == 6
        assert_ledger_invariants(completed)

    def test_history_timestamps_never_go_backwards(self, submission_store, classification_store, settings,
                                                   gatherer, processor, make_draft):
        readings = iter([
            datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
            datetime(2024, 5, 1, 11, 0, tzinfo=timezone.utc),
        ])
        engine = SubmissionWorkflowEngine(
            submission_store, classification_store, settings=settings, clock=lambda: next(readings)
        )
        created = engine.create_submission(gatherer, make_draft())
        approved = engine.approve(processor, created.id)

        assert approved.history[1].timestamp == approved.history[0].timestamp
        assert_ledger_invariants(approved)


class TestVariants:

    def test_variant_inherits_and_goes_to_explainer(self, engine, staged, creator, processor, submission_store):
        original_before = submission_store.get(staged.id)
        variant = engine.create_variant(creator, staged.id, VariantDraft(content="A body covers 6 m in 2 s."))

        assert variant.id != staged.id
        assert variant.original_ref == staged.id
        assert variant.is_variant
        assert variant.status == SubmissionStatus.AWAITING_PROCESSOR
        assert variant.topic_ref == staged.topic_ref
        assert variant.choice == staged.choice
        assert variant.created_by == creator.user_id
        assert len(variant.history) == 1
        assert variant.history[0].action == HistoryAction.VARIANT_CREATED
        assert variant.history[0].performed_by_role == Role.CREATOR

        assert engine.approve(processor, variant.id).status == SubmissionStatus.AWAITING_EXPLAINER
        assert submission_store.get(staged.id) == original_before

    def test_variant_of_missing_original(self, engine, creator):
        with pytest.raises(NotFound):
            engine.create_variant(creator, "missing-id", VariantDraft())

    def test_variant_validates_merged_choice(self, engine, staged, creator, four_options, submission_store):
        with pytest.raises(IncompleteChoiceSet):
            engine.create_variant(creator, staged.id, VariantDraft(choice=four_options(A="")))
        assert submission_store.count(SubmissionQuery()) == 1

    def test_variant_requires_creator(self, engine, staged, gatherer):
        with pytest.raises(Forbidden):
            engine.create_variant(gatherer, staged.id, VariantDraft())


class TestComments:

    def test_comment_does_not_touch_history(self, engine, staged, processor):
        commented = engine.add_comment(processor, staged.id, "  Check the units  ")

        assert [c.comment for c in commented.comments] == ["Check the units"]
        assert commented.comments[0].commented_by == processor.user_id
        assert commented.history == staged.history
        assert commented.status == staged.status

    def test_blank_comment(self, engine, staged, processor):
        with pytest.raises(EmptyComment):
            engine.add_comment(processor, staged.id, " ")

    def test_comment_on_terminal_submission(self, engine, staged, processor):
        engine.reject(processor, staged.id, "duplicate")
        with pytest.raises(InvalidState):
            engine.add_comment(processor, staged.id, "too late")

    def test_gatherer_comments_only_on_own(self, engine, staged, gatherer, other_gatherer):
        engine.add_comment(gatherer, staged.id, "Source: NCERT")
        with pytest.raises(Forbidden):
            engine.add_comment(other_gatherer, staged.id, "Not mine")


class TestReads:

    def test_gatherer_reads_only_own(self, engine, staged, gatherer, other_gatherer, creator):
        assert engine.get_by_id(gatherer, staged.id).id == staged.id
        assert engine.get_by_id(creator, staged.id).id == staged.id
        with pytest.raises(Forbidden):
            engine.get_by_id(other_gatherer, staged.id)

    def test_get_missing(self, engine, processor):
        with pytest.raises(NotFound):
            engine.get_by_id(processor, "missing-id")

    def test_list_by_status_owner_filter(self, engine, gatherer, other_gatherer, processor, make_draft):
        engine.create_submission(gatherer, make_draft())
        engine.create_submission(other_gatherer, make_draft())

        assert len(engine.list_by_status(processor, SubmissionStatus.AWAITING_PROCESSOR)) == 2
        own = engine.list_by_status(gatherer, SubmissionStatus.AWAITING_PROCESSOR)
        assert [s.created_by for s in own] == [gatherer.user_id]
        assert engine.list_by_status(processor, SubmissionStatus.COMPLETED) == []

    def test_list_submissions_paginates(self, engine, gatherer, processor, make_draft):
        for i in range(7):
            engine.create_submission(gatherer, make_draft(content=f"Question number {i}"))

        first = engine.list_submissions(processor)
        second = engine.list_submissions(processor, page=2)

        assert first.page_size == 5
        assert first.total_items == 7
        assert first.total_pages == 2
        assert len(first.items) == 5
        assert first.has_next_page and not first.has_previous_page
        assert len(second.items) == 2
        assert second.has_previous_page and not second.has_next_page
        assert {s.id for s in first.items}.isdisjoint({s.id for s in second.items})

    def test_page_size_is_capped(self, engine, processor, staged):
        page = engine.list_submissions(processor, page=0, page_size=1000)
        assert page.page == 1
        assert page.page_size == 100

    def test_list_submissions_filters_and_search(self, engine, gatherer, processor, make_draft):
        engine.create_submission(gatherer, make_draft(content="Focal length of a convex lens", topic_ref="optics"))
        moving = engine.create_submission(gatherer, make_draft(content="Uniform motion on a straight road"))
        engine.reject(processor, moving.id, "duplicate of Q12")

        optics = engine.list_submissions(processor, SubmissionFilters(topic_ref="optics"))
        assert [s.topic_ref for s in optics.items] == ["optics"]

        by_note = engine.list_submissions(processor, search="q12")
        assert [s.id for s in by_note.items] == [moving.id]

        rejected = engine.list_submissions(processor, SubmissionFilters(statuses=[SubmissionStatus.REJECTED]))
        assert rejected.total_items == 1

    def test_statistics_and_counts(self, engine, gatherer, other_gatherer, processor, make_draft):
        first = engine.create_submission(gatherer, make_draft())
        second = engine.create_submission(gatherer, make_draft())
        engine.create_submission(other_gatherer, make_draft())
        engine.approve(processor, first.id)
        engine.reject(processor, second.id)

        stats = engine.statistics(processor)
        assert stats.total == 3
        assert stats.awaiting_processor == 1
        assert stats.awaiting_author == 1
        assert stats.rejected == 1

        counts = engine.counts(processor)
        assert (counts.total, counts.approved, counts.pending, counts.rejected) == (3, 0, 2, 1)

        own = engine.counts(gatherer)
        assert (own.total, own.pending, own.rejected) == (2, 1, 1)
        assert engine.statistics(other_gatherer).total == 1

    def test_topics_for_subject(self, engine, explainer):
        topics = engine.topics_for_subject(explainer, "physics")
        assert [t.id for t in topics] == ["kinematics", "optics"]
        with pytest.raises(ReferenceNotFound):
            engine.topics_for_subject(explainer, "biology")


class TestEngineFactory:

    def test_memory_backend(self):
        engine = create_workflow_engine(Settings(submission_store_backend="memory", database_url="sqlite://"))
        assert type(engine.submissions).__name__ == "InMemorySubmissionStore"
        assert type(engine.classifications).__name__ == "InMemoryClassificationStore"

    def test_sql_backend(self):
        engine = create_workflow_engine(Settings(submission_store_backend="sql", database_url="sqlite://"))
        assert type(engine.submissions).__name__ == "SqlSubmissionStore"
        engine.classifications.add_exam("jee", "JEE Main")
        assert engine.classifications.exam_exists("jee")


class TestConcurrency:

    def test_parallel_approvals_apply_once(self, memory_engine, gatherer, processor, make_draft):
        engine = memory_engine
        submission = engine.create_submission(gatherer, make_draft())

        def attempt(_):
            try:
                engine.approve(processor, submission.id)
                return "approved"
            except InvalidState:
                return "refused"

        with ThreadPoolExecutor(max_workers=8) as pool:
            outcomes = list(pool.map(attempt, range(8)))

        assert outcomes.count("approved") == 1
        assert outcomes.count("refused") == 7
        stored = engine.get_by_id(processor, submission.id)
        assert len(stored.history) == 2
        assert stored.version == 2

    def test_submission_locks_are_released_after_use(self, memory_engine, gatherer, processor, make_draft):
        engine = memory_engine
        for _ in range(50):
            submission = engine.create_submission(gatherer, make_draft())
            engine.add_comment(processor, submission.id, "Check the units")
            engine.reject(processor, submission.id, "duplicate")

        gc.collect()
        assert len(engine._locks) == 0
