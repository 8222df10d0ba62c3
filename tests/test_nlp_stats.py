import pytest

from application_tracker.errors import BackendError
from application_tracker.models import ClassifierStage
from application_tracker.nlp_stats import StatisticalBackend, meta_features, train_relevance_model

JOB = [
    ("Thank you for applying to the Data Analyst position", "jobs@acme.com"),
    ("Interview invitation for Software Engineer", "no-reply@greenhouse.io"),
    ("Your application has been received", "careers@initech.com"),
    ("We would like to schedule an interview", "recruiting@globex.com"),
    ("Offer letter for the Backend Engineer role", "hr@hooli.com"),
    ("Update on your application and resume", "talent@umbrella.com"),
]
NOT_JOB = [
    ("Weekly newsletter: top stories", "digest@news.example"),
    ("Your receipt from the coffee shop", "receipts@shop.example"),
    ("Unsubscribe from our marketing emails", "promo@store.example"),
    ("Dinner on Friday?", "friend@example.org"),
    ("Spring sale: 30% discount", "deals@store.example"),
    ("Your monthly statement is ready", "bank@example.com"),
]


@pytest.fixture(scope="module")
def bundle():
    texts = [t for t, _ in JOB + NOT_JOB]
    senders = [s for _, s in JOB + NOT_JOB]
    labels = [1] * len(JOB) + [0] * len(NOT_JOB)
    return train_relevance_model(texts, senders, labels, path=None)


def test_meta_features():
    feats = meta_features("Interview about your application", "x@greenhouse.io")
    assert feats[0] == 1.0
    assert len(feats) == 2 + 5 + 2 + 1


def test_backend_separates_obvious_cases(bundle):
    backend = StatisticalBackend(bundle=bundle)
    job = backend.invoke(ClassifierStage.RELEVANCE, "", {
        "subject": "Interview invitation for the Data Analyst position",
        "body": "We received your application", "sender": "jobs@acme.com",
    })
    spam = backend.invoke(ClassifierStage.RELEVANCE, "", {
        "subject": "Newsletter: spring sale discount", "body": "unsubscribe", "sender": "promo@store.example",
    })
    assert job.fields["is_job_related"] is True
    assert spam.fields["is_job_related"] is False
    assert 0.5 <= job.confidence <= 1.0


def test_saved_model_round_trip(tmp_path, bundle):
    path = tmp_path / "relevance.joblib"
    train_relevance_model([t for t, _ in JOB + NOT_JOB], [s for _, s in JOB + NOT_JOB],
                          [1] * len(JOB) + [0] * len(NOT_JOB), path=str(path))
    backend = StatisticalBackend(model_path=str(path))
    result = backend.invoke(ClassifierStage.RELEVANCE, "Subject: Your application\nBody: received", {})
    assert "is_job_related" in result.fields


def test_missing_model_and_wrong_stage(tmp_path, bundle):
    with pytest.raises(BackendError):
        StatisticalBackend(model_path=str(tmp_path / "nope.joblib"))
    with pytest.raises(BackendError):
        StatisticalBackend(bundle=bundle).invoke(ClassifierStage.EXTRACTION, "", {})
