"""
Two-stage classification: a cheap relevance decision for every message that
triage could not settle, then structured extraction for the job-related ones.

Backend calls run on the classifier's own executor and are bounded by
``backend_timeout``. A running call that times out cannot be stopped, so it
is abandoned and later calls go to a fresh executor instead of queueing
behind it. Past ``max_abandoned`` stuck calls, new calls fail at once.

Any failure (timeout, exception, unusable output) falls
back to the deterministic rules in ``nlp_rules``; fallback relevance results
are never written to the cache.
"""
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, TimeoutError as FutureTimeout
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from . import nlp_rules
from .backends import BackendResult, ModelBackend, build_text
from .cache import ClassificationCache, make_key
from .errors import BackendError
from .models import FIELD_NAMES, ClassifierStage, ExtractedFields, ExtractionAttempt, MessageRecord
from .triage import is_bulk_sender

logger = logging.getLogger(__name__)

FALLBACK_METHOD = "rules_fallback"
# used when a backend answers without a score of its own
DEFAULT_BACKEND_CONFIDENCE = 0.75
BLANK_VALUES = {"", "unknown", "n/a", "na", "none", "null", "not specified", "-"}


@dataclass
class RelevanceResult:
    is_job_related: bool
    confidence: float
    method: str
    needs_review: bool = False
    review_reason: Optional[str] = None
    used_fallback: bool = False


def normalize_fields(raw: Optional[Dict[str, Any]]) -> ExtractedFields:
    values: Dict[str, Optional[str]] = {}
    for name in FIELD_NAMES:
        value = (raw or {}).get(name)
        if value is None:
            values[name] = None
            continue
        value = " ".join(str(value).split())
        values[name] = None if value.lower() in BLANK_VALUES else value
    values["status"] = nlp_rules.normalize_status(values["status"])
    if values["remote_status"]:
        values["remote_status"] = values["remote_status"].lower()
    return ExtractedFields(**values)


class TwoStageClassifier:
    def __init__(
        self,
        relevance_backend: ModelBackend,
        extraction_backends: List[ModelBackend],
        cache: Optional[ClassificationCache] = None,
        relevance_threshold: float = 0.6,
        backend_timeout: float = 30.0,
        body_prefix_chars: int = 1000,
        max_workers: int = 4,
        max_abandoned: int = 8,
    ):
        if ClassifierStage.RELEVANCE not in relevance_backend.stages:
            raise BackendError(f"{relevance_backend.name} cannot classify relevance")
        for backend in extraction_backends:
            if ClassifierStage.EXTRACTION not in backend.stages:
                raise BackendError(f"{backend.name} cannot extract fields")
        if not extraction_backends:
            raise BackendError("At least one extraction backend is required")
        self.relevance_backend = relevance_backend
        self.extraction_backends = list(extraction_backends)
        self.cache = cache
        self.relevance_threshold = relevance_threshold
        self.backend_timeout = backend_timeout
        self.body_prefix_chars = body_prefix_chars
        self.max_workers = max_workers
        self.max_abandoned = max_abandoned
        self._abandoned = 0
        self._pool_lock = threading.Lock()
        self._executor = self._new_executor()

    def _new_executor(self) -> ThreadPoolExecutor:
        return ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="backend")

    def _metadata(self, message: MessageRecord, headers: Optional[Dict[str, str]] = None) -> Dict[str, Any]:
        return {
            "message_id": message.message_id,
            "subject": message.subject,
            "body": message.body,
            "sender": message.sender,
            "headers": dict(headers if headers is not None else message.headers or {}),
        }

    def _abandon(self, executor: ThreadPoolExecutor, future) -> None:
        with self._pool_lock:
            self._abandoned += 1
            if executor is self._executor:
                self._executor = self._new_executor()
                executor.shutdown(wait=False)
        future.add_done_callback(self._release)

    def _release(self, future) -> None:
        with self._pool_lock:
            self._abandoned -= 1

    @property
    def abandoned_calls(self) -> int:
        with self._pool_lock:
            return self._abandoned

    def _call(self, backend: ModelBackend, stage: ClassifierStage, text: str, metadata: Dict[str, Any]) -> BackendResult:
        with self._pool_lock:
            if self._abandoned >= self.max_abandoned:
                raise BackendError(f"{self._abandoned} timed-out backend calls still running; not starting {backend.name}")
            executor = self._executor
            future = executor.submit(backend.invoke, stage, text, metadata)
        try:
            result = future.result(timeout=self.backend_timeout)
        except FutureTimeout:
            if not future.cancel():
                self._abandon(executor, future)
            raise BackendError(f"{backend.name} timed out after {self.backend_timeout}s")
        if not isinstance(result, BackendResult):
            raise BackendError(f"{backend.name} returned {type(result).__name__}, not BackendResult")
        return result

    def _review_override(self, message: MessageRecord) -> Optional[str]:
        # bulk senders phrase real rejections and marketing alike
        if is_bulk_sender(message.sender) and nlp_rules.is_rejection(message.subject, message.body):
            return "rejection phrasing from bulk sender"
        return None

    def _with_override(self, message: MessageRecord, result: RelevanceResult) -> RelevanceResult:
        reason = self._review_override(message)
        if reason:
            result.needs_review = True
            result.review_reason = reason
            logger.info("[STAGE1] %s flagged for review: %s", message.message_id, reason)
        return result

    # --- stage 1 ------------------------------------------------------------

    def _relevance_fallback(self, message: MessageRecord) -> Dict[str, Any]:
        is_job, confidence = nlp_rules.score_relevance(message.subject, message.body, message.sender)
        return {
            "is_job_related": is_job,
            "confidence": confidence,
            "method": FALLBACK_METHOD,
            "used_fallback": True,
        }

    def _relevance_compute(self, message: MessageRecord, headers: Optional[Dict[str, str]]) -> Dict[str, Any]:
        backend = self.relevance_backend
        text = build_text(message.subject, message.body)
        try:
            result = self._call(backend, ClassifierStage.RELEVANCE, text, self._metadata(message, headers))
            if "is_job_related" not in result.fields:
                raise BackendError(f"{backend.name} answer lacks is_job_related")
            confidence = DEFAULT_BACKEND_CONFIDENCE if result.confidence is None else float(result.confidence)
            return {
                "is_job_related": bool(result.fields["is_job_related"]),
                "confidence": min(1.0, max(0.0, confidence)),
                "method": backend.name,
                "used_fallback": False,
            }
        except Exception as e:
            logger.warning("[STAGE1] %s failed for %s, using rules: %s", backend.name, message.message_id, e)
            return self._relevance_fallback(message)

    def classify_relevance(self, message: MessageRecord, headers: Optional[Dict[str, str]] = None) -> RelevanceResult:
        computed = []

        def compute() -> Dict[str, Any]:
            computed.append(True)
            return self._relevance_compute(message, headers)

        if self.cache is None:
            value = compute()
        else:
            key = make_key(message.subject, message.body, message.sender, self.body_prefix_chars)
            value = self.cache.get_or_compute(
                ClassifierStage.RELEVANCE, key, compute,
                cacheable=lambda v: not v.get("used_fallback"),
            )
        result = RelevanceResult(
            is_job_related=bool(value["is_job_related"]),
            confidence=float(value["confidence"]),
            method=value["method"] if computed or value.get("used_fallback") else "cache",
            used_fallback=bool(value.get("used_fallback")),
        )
        logger.debug(
            "[STAGE1] %s job=%s conf=%.2f via %s",
            message.message_id, result.is_job_related, result.confidence, result.method,
        )
        return self._with_override(message, result)

    def confirm_by_triage(self, message: MessageRecord) -> RelevanceResult:
        return self._with_override(message, RelevanceResult(True, 1.0, "triage"))

    def confirm_by_thread(self, message: MessageRecord) -> RelevanceResult:
        """A reply on a thread already known to be about an application."""
        return self._with_override(message, RelevanceResult(True, 1.0, "thread"))

    def passes_threshold(self, result: RelevanceResult) -> bool:
        return result.is_job_related and result.confidence >= self.relevance_threshold

    # --- stage 2 ------------------------------------------------------------

    def extract(
        self,
        message: MessageRecord,
        relevance_confidence: Optional[float],
        backend: Optional[ModelBackend] = None,
    ) -> ExtractionAttempt:
        backend = backend or self.extraction_backends[0]
        metadata = self._metadata(message)
        metadata["relevance_confidence"] = relevance_confidence
        text = build_text(message.subject, message.body)
        start = time.monotonic()
        try:
            result = self._call(backend, ClassifierStage.EXTRACTION, text, metadata)
            fields = normalize_fields(result.fields)
            attempt = ExtractionAttempt(
                model_id=backend.name,
                fields=fields,
                duration=result.duration or (time.monotonic() - start),
                raw_response=result.raw_response,
            )
        except Exception as e:
            logger.warning("[STAGE2] %s failed for %s, using rules: %s", backend.name, message.message_id, e)
            fields = nlp_rules.extract_fields(message.subject, message.sender, message.body)
            attempt = ExtractionAttempt(
                model_id=FALLBACK_METHOD,
                fields=fields,
                duration=time.monotonic() - start,
                raw_response=f"{backend.name} failed: {e}",
                used_fallback=True,
            )
        logger.debug(
            "[STAGE2] %s via %s: company=%s position=%s status=%s",
            message.message_id, attempt.model_id, attempt.fields.company,
            attempt.fields.position, attempt.fields.status,
        )
        return attempt

    def close(self) -> None:
        with self._pool_lock:
            self._executor.shutdown(wait=False, cancel_futures=True)
