"""
Model backends share one calling convention::

    backend.invoke(stage, text, metadata) -> BackendResult

Any exception raised by ``invoke`` counts as a backend failure; the
classifier decides what to do about it. Which backend runs for which stage
is configuration (see ``make_backend``), not subclassing.
"""
import time
from dataclasses import dataclass, field
from typing import Any, Dict, FrozenSet, Optional, Protocol

from . import nlp_rules
from .errors import BackendError
from .models import ClassifierStage


@dataclass
class BackendResult:
    fields: Dict[str, Any] = field(default_factory=dict)
    confidence: Optional[float] = None
    raw_response: str = ""
    duration: float = 0.0


class ModelBackend(Protocol):
    name: str
    stages: FrozenSet[ClassifierStage]

    def invoke(self, stage: ClassifierStage, text: str, metadata: Dict[str, Any]) -> BackendResult:
        ...


def build_text(subject: str, body: str, max_body: int = 1500) -> str:
    body = body or ""
    if len(body) > max_body:
        body = body[:max_body] + "..."
    return f"Subject: {subject or ''}\nBody: {body}"


def split_text(text: str):
    """Inverse of build_text for backends that want subject and body apart."""
    subject, _, body = (text or "").partition("\nBody: ")
    if subject.startswith("Subject: "):
        subject = subject[len("Subject: "):]
    return subject, body


class RulesBackend:
    """Keyword scoring and regex extraction; never raises."""

    name = "rules"
    stages = frozenset([ClassifierStage.RELEVANCE, ClassifierStage.EXTRACTION])

    def invoke(self, stage: ClassifierStage, text: str, metadata: Dict[str, Any]) -> BackendResult:
        start = time.monotonic()
        subject = metadata.get("subject")
        body = metadata.get("body")
        if subject is None or body is None:
            subject, body = split_text(text)
        sender = metadata.get("sender", "")
        if stage == ClassifierStage.RELEVANCE:
            is_job, confidence = nlp_rules.score_relevance(subject, body, sender)
            return BackendResult(
                fields={"is_job_related": is_job},
                confidence=confidence,
                raw_response=f"keywords={nlp_rules.keywords_found(subject + ' ' + body)}",
                duration=time.monotonic() - start,
            )
        extracted = nlp_rules.extract_fields(subject, sender, body)
        return BackendResult(
            fields=extracted.as_dict(),
            raw_response="rules",
            duration=time.monotonic() - start,
        )


BACKEND_NAMES = ("rules", "statistical", "spacy", "transformer", "llm_command")


def make_backend(name: str, options: Optional[Dict[str, Any]] = None) -> ModelBackend:
    """Build a backend by its configured name. Heavy libraries load only when selected."""
    options = options or {}
    if name == "rules":
        return RulesBackend()
    if name == "statistical":
        from .nlp_stats import StatisticalBackend
        return StatisticalBackend(**options)
    if name == "spacy":
        from .nlp_spacy import SpacyBackend
        return SpacyBackend(**options)
    if name == "transformer":
        from .nlp_xfmr import TransformerBackend
        return TransformerBackend(**options)
    if name == "llm_command":
        from .llm_command import LLMCommandBackend
        return LLMCommandBackend(**options)
    raise BackendError(f"Unknown backend {name!r}; expected one of {', '.join(BACKEND_NAMES)}")
