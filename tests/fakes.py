import threading
import time

from application_tracker.backends import BackendResult
from application_tracker.models import ClassifierStage


class FakeBackend:
    """Scripted backend: returns canned fields, or fails, optionally after a delay."""

    def __init__(self, name="fake", fields=None, confidence=0.9, fail=None, delay=0.0,
                 stages=(ClassifierStage.RELEVANCE, ClassifierStage.EXTRACTION)):
        self.name = name
        self.stages = frozenset(stages)
        self.fields = fields or {}
        self.confidence = confidence
        self.fail = fail
        self.delay = delay
        self.calls = 0
        self._lock = threading.Lock()

    def invoke(self, stage, text, metadata):
        with self._lock:
            self.calls += 1
        if self.delay:
            time.sleep(self.delay)
        if self.fail:
            raise self.fail
        fields = self.fields.get(stage, self.fields) if isinstance(self.fields, dict) else self.fields
        return BackendResult(fields=dict(fields), confidence=self.confidence, raw_response="fake", duration=self.delay)


def relevance(is_job=True, confidence=0.9, **kw):
    return FakeBackend(
        name=kw.pop("name", "fake-relevance"),
        fields={ClassifierStage.RELEVANCE: {"is_job_related": is_job}},
        confidence=confidence,
        stages=(ClassifierStage.RELEVANCE,),
        **kw,
    )


def extractor(name="fake-extractor", **fields_and_kw):
    kw = {k: fields_and_kw.pop(k) for k in ("fail", "delay") if k in fields_and_kw}
    return FakeBackend(
        name=name,
        fields={ClassifierStage.EXTRACTION: fields_and_kw},
        stages=(ClassifierStage.EXTRACTION,),
        **kw,
    )
