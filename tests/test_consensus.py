import pytest

from application_tracker.consensus import score_extraction, select_extraction
from application_tracker.errors import SelectionError
from application_tracker.models import ExtractedFields, ExtractionAttempt


def attempt(model_id, duration, **fields):
    return ExtractionAttempt(model_id=model_id, fields=ExtractedFields(**fields), duration=duration)


def test_score_weights():
    assert score_extraction(ExtractedFields()) == 0
    assert score_extraction(ExtractedFields(company="Acme")) == 3
    assert score_extraction(ExtractedFields(
        company="Acme", position="Engineer", status="Applied",
        location="Austin", remote_status="hybrid", salary_range="$100k",
    )) == 10


def test_auto_best_prefers_completeness():
    attempts = [
        attempt("fast", 0.1, status="Applied"),
        attempt("slow", 2.0, company="Acme", position="Engineer", status="Applied"),
    ]
    selection = select_extraction(attempts, "auto_best")
    assert selection.model_id == "slow"
    assert selection.method == "auto_best"


def test_auto_best_tie_breaks_on_duration_then_order():
    attempts = [
        attempt("a", 1.0, company="Acme"),
        attempt("b", 0.5, company="Initech"),
        attempt("c", 0.5, company="Globex"),
    ]
    assert select_extraction(attempts, "auto_best").model_id == "b"


def test_auto_best_never_picks_less_complete():
    attempts = [attempt(f"m{i}", 1.0 / (i + 1), **f) for i, f in enumerate([
        {"company": "Acme", "position": "Engineer"},
        {"company": "Acme"},
        {"status": "Applied"},
    ])]
    chosen = select_extraction(attempts, "auto_best").fields
    assert all(score_extraction(chosen) >= score_extraction(a.fields) for a in attempts)


def test_consensus_majority_per_field():
    attempts = [
        attempt("a", 1.0, company="Acme", position="Engineer", status="Applied"),
        attempt("b", 1.0, company="Acme", position="Sr Engineer", status="Interview"),
        attempt("c", 1.0, company="Acme Inc", position="Sr Engineer"),
    ]
    selection = select_extraction(attempts, "consensus")
    assert selection.model_id == "consensus"
    assert selection.fields.company == "Acme"
    assert selection.fields.position == "Sr Engineer"
    # one vote each: first seen wins
    assert selection.fields.status == "Applied"
    assert selection.fields.location is None


def test_fastest_ignores_completeness():
    attempts = [
        attempt("complete", 0.9, company="Acme", position="Engineer", status="Offer"),
        attempt("quick", 0.2, status="Offer"),
    ]
    assert select_extraction(attempts, "fastest").model_id == "quick"


@pytest.mark.parametrize("method", ["first", "unknown", None])
def test_other_methods_take_first(method):
    attempts = [attempt("a", 5.0), attempt("b", 0.1, company="Acme")]
    selection = select_extraction(attempts, method)
    assert selection.model_id == "a"
    assert selection.method == "first"


def test_empty_raises():
    with pytest.raises(SelectionError):
        select_extraction([], "auto_best")


def test_selection_is_idempotent():
    attempts = [attempt("a", 0.3, company="Acme"), attempt("b", 0.1, position="Engineer")]
    for method in ("auto_best", "consensus", "fastest", "first"):
        assert select_extraction(attempts, method) == select_extraction(attempts, method)
