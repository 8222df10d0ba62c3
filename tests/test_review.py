import pytest
from conftest import make_message
from fakes import relevance

from application_tracker.backends import RulesBackend
from application_tracker.classifier import TwoStageClassifier
from application_tracker.errors import InvalidTransition
from application_tracker.models import ExtractedFields, Stage, TriageDecision
from application_tracker.pipeline import Pipeline
from application_tracker.review import MANUAL, ReviewQueue
from application_tracker.state import PipelineTracker


@pytest.fixture
def tracker(store):
    return PipelineTracker(store)


@pytest.fixture
def queue(tracker):
    return ReviewQueue(tracker)


def _low_confidence(tracker, msg):
    state = tracker.start(msg)
    state = tracker.record_triage(state, TriageDecision.UNCERTAIN)
    state = tracker.record_relevance(state, True, 0.4, "fake")
    return tracker.flag_review(state, "low relevance confidence 0.40")


def test_pending_review_lists_flagged_only(tracker, queue):
    flagged = make_message("Quick question")
    tracker.start(make_message("Other"))
    _low_confidence(tracker, flagged)
    assert [s.message_id for s in queue.pending_review()] == [flagged.message_id]
    assert queue.pending_review(account="someone-else") == []


def test_set_and_clear_review(tracker, queue):
    msg = make_message("Hello")
    tracker.start(msg)
    state = queue.set_needs_review(msg.message_id, msg.account, "looks odd")
    assert state.needs_review and state.review_reason == "looks odd"
    state = queue.clear_review(msg.message_id, msg.account)
    assert not state.needs_review
    assert state.human_verified


def test_unknown_message_raises(queue):
    with pytest.raises(InvalidTransition):
        queue.clear_review("missing", "me")


def test_correct_classification_not_job(tracker, queue):
    msg = make_message("Quick question")
    _low_confidence(tracker, msg)
    state = queue.correct_classification(msg.message_id, msg.account, False)
    assert state.stage == Stage.RELEVANCE_CLASSIFIED
    assert state.is_job_related is False
    assert state.relevance_method == MANUAL
    assert not state.needs_review and state.human_verified


def test_corrected_message_is_extracted_on_next_run(store, tracker, queue):
    msg = make_message("Quick question", sender="recruiter@acme.com", body="Are you free for a call?")
    classifier = TwoStageClassifier(relevance(True, 0.4), [RulesBackend()])
    pipeline = Pipeline(store, classifier, tracker=tracker)
    try:
        assert pipeline.run([msg]).counts == {"needs_review": 1}
        state = queue.correct_classification(msg.message_id, msg.account, True)
        assert state.stage == Stage.EXTRACTION_PENDING

        batch = pipeline.run([msg])
        assert batch.counts == {"matched": 1}
        state = store.get_state(msg.message_id, msg.account)
        assert state.relevance_confidence == 1.0
        assert store.get_application(state.application_id).company == "Acme"
    finally:
        classifier.close()


def test_correct_classification_resets_failed(tracker, queue):
    msg = make_message("Quick question")
    state = tracker.start(msg)
    tracker.mark_failed(state, "boom")
    state = queue.correct_classification(msg.message_id, msg.account, True)
    assert state.stage == Stage.EXTRACTION_PENDING
    assert state.retry_count == 1
    assert state.error is None


def test_correct_extraction_selects_manual_attempt(tracker, queue, store):
    msg = make_message("Quick question")
    _low_confidence(tracker, msg)
    fields = ExtractedFields(company="Acme", position="Data Analyst", status="Interview")
    state = queue.correct_extraction(msg.message_id, msg.account, fields)

    assert state.stage == Stage.SELECTED
    assert state.selected_extraction == fields
    assert state.selected_model_id == MANUAL and state.selection_method == MANUAL
    assert not state.needs_review and state.human_verified
    stored = store.get_state(msg.message_id, msg.account)
    assert [a.model_id for a in stored.extraction_attempts] == [MANUAL]
    assert [s.message_id for s in tracker.eligible_for_matching()] == [msg.message_id]


def test_correct_extraction_over_an_existing_selection(tracker, queue):
    msg = make_message("Quick question")
    state = _low_confidence(tracker, msg)
    state = tracker.advance(state, Stage.EXTRACTION_PENDING)
    state = queue.correct_extraction(msg.message_id, msg.account, ExtractedFields(company="Acme"))
    state = queue.correct_extraction(msg.message_id, msg.account, ExtractedFields(company="Initech"))
    assert state.selected_extraction.company == "Initech"
    assert len(state.extraction_attempts) == 2
