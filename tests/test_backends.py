import pytest

from application_tracker.backends import RulesBackend, build_text, make_backend, split_text
from application_tracker.errors import BackendError
from application_tracker.models import ClassifierStage


def test_make_backend_rules():
    assert isinstance(make_backend("rules"), RulesBackend)


def test_make_backend_unknown():
    with pytest.raises(BackendError):
        make_backend("carrier-pigeon")


def test_statistical_backend_needs_a_model(tmp_path):
    with pytest.raises(BackendError):
        make_backend("statistical", {"model_path": str(tmp_path / "missing.joblib")})


def test_build_and_split_text():
    text = build_text("Interview", "x" * 2000)
    subject, body = split_text(text)
    assert subject == "Interview"
    assert len(body) == 1503 and body.endswith("...")


def test_rules_backend_relevance_from_text_only():
    result = RulesBackend().invoke(
        ClassifierStage.RELEVANCE,
        build_text("Interview for the Analyst position", "We'd like to schedule an interview."),
        {},
    )
    assert result.fields["is_job_related"] is True
    assert 0 < result.confidence <= 0.6


def test_rules_backend_extraction_uses_sender():
    result = RulesBackend().invoke(
        ClassifierStage.EXTRACTION,
        "",
        {"subject": "Thank you for applying", "body": "", "sender": "jobs@initech.com"},
    )
    assert result.fields["company"] == "Initech"
    assert result.fields["status"] == "Applied"
