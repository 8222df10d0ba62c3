import pytest
from conftest import make_message

from application_tracker.errors import InvalidTransition
from application_tracker.models import ExtractedFields, ExtractionAttempt, Stage, TriageDecision
from application_tracker.state import PipelineTracker


@pytest.fixture
def tracker(store):
    return PipelineTracker(store)


def _attempt(company="Acme"):
    return ExtractionAttempt(model_id="rules", fields=ExtractedFields(company=company), duration=0.1)


def _to_extraction_pending(tracker, msg):
    state = tracker.start(msg)
    state = tracker.record_triage(state, TriageDecision.UNCERTAIN)
    state = tracker.record_relevance(state, True, 0.9, "fake")
    return tracker.advance(state, Stage.EXTRACTION_PENDING)


def test_start_is_idempotent(tracker, store):
    msg = make_message("Hello")
    first = tracker.start(msg)
    second = tracker.start(msg)
    assert first.stage == second.stage == Stage.PENDING
    assert len(store.list_states()) == 1
    assert store.get_message(msg.message_id, msg.account) == msg


def test_full_forward_path(tracker, store):
    msg = make_message("Hello")
    state = _to_extraction_pending(tracker, msg)
    state = tracker.record_attempt(state, _attempt())
    assert state.stage == Stage.EXTRACTION_COMPLETE
    state = tracker.record_selection(state, ExtractedFields(company="Acme"), "rules", "auto_best")

    stored = store.get_state(msg.message_id, msg.account)
    assert stored.stage == Stage.SELECTED
    assert stored.selected_extraction.company == "Acme"
    assert stored.relevance_method == "fake"
    assert [a.model_id for a in stored.extraction_attempts] == ["rules"]


def test_reentering_stage_is_noop(tracker):
    state = tracker.start(make_message("Hello"))
    state = tracker.record_triage(state, TriageDecision.UNCERTAIN)
    assert tracker.advance(state, Stage.TRIAGED).stage == Stage.TRIAGED


def test_moving_backwards_raises(tracker):
    state = _to_extraction_pending(tracker, make_message("Hello"))
    with pytest.raises(InvalidTransition):
        tracker.advance(state, Stage.TRIAGED)


def test_selection_requires_extraction(tracker):
    state = tracker.start(make_message("Hello"))
    with pytest.raises(InvalidTransition):
        tracker.record_selection(state, ExtractedFields(company="Acme"), "rules", "auto_best")
    with pytest.raises(InvalidTransition):
        tracker.record_attempt(state, _attempt())


def test_failed_is_left_only_by_reset(tracker, store):
    msg = make_message("Hello")
    state = _to_extraction_pending(tracker, msg)
    state = tracker.record_attempt(state, _attempt())
    state = tracker.mark_failed(state, "boom")
    assert store.get_state(msg.message_id, msg.account).error == "boom"
    with pytest.raises(InvalidTransition):
        tracker.advance(state, Stage.SELECTED)

    state = tracker.reset(msg.message_id, msg.account, "retry")
    assert state.stage == Stage.PENDING
    assert state.retry_count == 1
    assert state.error is None
    # the attempt log survives a reset
    assert len(store.get_state(msg.message_id, msg.account).extraction_attempts) == 1
    assert tracker.failed() == []


def test_review_flag_round_trip(tracker, store):
    msg = make_message("Hello")
    state = tracker.start(msg)
    tracker.flag_review(state, "looks odd")
    stored = store.get_state(msg.message_id, msg.account)
    assert stored.needs_review and stored.review_reason == "looks odd"
    tracker.clear_review(stored)
    stored = store.get_state(msg.message_id, msg.account)
    assert not stored.needs_review
    assert stored.human_verified


def test_eligible_for_matching(tracker):
    selected = _to_extraction_pending(tracker, make_message("A"))
    selected = tracker.record_attempt(selected, _attempt())
    selected = tracker.record_selection(selected, ExtractedFields(company="Acme"), "rules", "auto_best")

    linked = _to_extraction_pending(tracker, make_message("B"))
    linked = tracker.record_attempt(linked, _attempt())
    linked = tracker.record_selection(linked, ExtractedFields(company="Acme"), "rules", "auto_best")
    tracker.link_application(linked, "app_1")

    _to_extraction_pending(tracker, make_message("C"))

    eligible = tracker.eligible_for_matching()
    assert [s.message_id for s in eligible] == [selected.message_id]


def test_reset_keeps_review_flag(tracker, store):
    msg = make_message("Hello")
    state = tracker.start(msg)
    tracker.flag_review(state, "operator: check company")
    tracker.mark_failed(store.get_state(msg.message_id, msg.account), "boom")

    state = tracker.reset(msg.message_id, msg.account, "retry")
    assert state.stage == Stage.PENDING
    stored = store.get_state(msg.message_id, msg.account)
    assert stored.needs_review
    assert stored.review_reason == "operator: check company"
