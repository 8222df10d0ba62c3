import os
import time
from typing import Any, Dict, List, Optional, Sequence

import joblib
import numpy as np
from scipy.sparse import csr_matrix, hstack
from sklearn.feature_extraction.text import TfidfVectorizer
from sklearn.linear_model import LogisticRegression

from .backends import BackendResult, split_text
from .errors import BackendError
from .models import ClassifierStage
from .triage import ATS_DOMAINS, sender_domain, is_ats_domain

MODEL_PATH = os.path.join(os.path.dirname(os.path.dirname(__file__)), "..", "model", "relevance.joblib")

LIFECYCLE_TERMS = ["interview", "application", "position", "resume", "offer"]
NEGATIVE_TERMS = ["unsubscribe", "newsletter"]


def meta_features(text: str, sender: str = "") -> List[float]:
    lowered = (text or "").lower()
    domain = sender_domain(sender) or ""
    feats = [
        1.0 if is_ats_domain(domain) else 0.0,
        1.0 if any(ats in lowered for ats in ATS_DOMAINS) else 0.0,
    ]
    feats += [1.0 if t in lowered else 0.0 for t in LIFECYCLE_TERMS]
    feats += [1.0 if t in lowered else 0.0 for t in NEGATIVE_TERMS]
    feats.append(min(len(lowered) / 10000.0, 1.0))
    return feats


def _features(vectorizer: TfidfVectorizer, texts: Sequence[str], senders: Sequence[str]):
    meta = csr_matrix(np.array([meta_features(t, s) for t, s in zip(texts, senders)]))
    return hstack([vectorizer.transform(texts), meta]).tocsr()


def train_relevance_model(
    texts: Sequence[str],
    senders: Sequence[str],
    labels: Sequence[int],
    path: str = MODEL_PATH,
) -> Dict[str, Any]:
    """Fit TF-IDF + logistic regression on labelled mail and save it with joblib."""
    vectorizer = TfidfVectorizer(
        lowercase=True, ngram_range=(1, 2), min_df=1, max_features=5000, sublinear_tf=True
    )
    vectorizer.fit(texts)
    model = LogisticRegression(max_iter=1000, class_weight="balanced")
    model.fit(_features(vectorizer, texts, senders), np.asarray(labels))
    bundle = {"vectorizer": vectorizer, "model": model}
    if path:
        os.makedirs(os.path.dirname(os.path.abspath(path)), exist_ok=True)
        joblib.dump(bundle, path)
    return bundle


class StatisticalBackend:
    name = "statistical"
    stages = frozenset([ClassifierStage.RELEVANCE])

    def __init__(self, model_path: str = MODEL_PATH, bundle: Optional[Dict[str, Any]] = None):
        if bundle is None:
            if not os.path.exists(model_path):
                raise BackendError(f"No relevance model at {model_path}")
            bundle = joblib.load(model_path)
        self.vectorizer = bundle["vectorizer"]
        self.model = bundle["model"]

    def invoke(self, stage: ClassifierStage, text: str, metadata: Dict[str, Any]) -> BackendResult:
        if stage not in self.stages:
            raise BackendError(f"{self.name} backend does not support {stage.value}")
        start = time.monotonic()
        subject, body = split_text(text)
        doc = f"{metadata.get('subject', subject)}\n{metadata.get('body', body)}"
        X = _features(self.vectorizer, [doc], [metadata.get("sender", "")])
        proba = self.model.predict_proba(X)[0]
        classes = list(self.model.classes_)
        p_job = float(proba[classes.index(1)]) if 1 in classes else 0.0
        is_job = p_job >= 0.5
        return BackendResult(
            fields={"is_job_related": is_job},
            confidence=round(p_job if is_job else 1.0 - p_job, 4),
            raw_response=f"p_job={p_job:.4f}",
            duration=time.monotonic() - start,
        )
