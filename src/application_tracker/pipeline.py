"""
Batch runner: triage, classify and extract every message on a worker pool,
then match the selected extractions serially on the calling thread.
Messages of one thread are classified in received order by a single worker,
so an uncertain reply can lean on an earlier message of the same thread.

A single bad message never stops a batch. Its state is marked failed and the
batch carries on; ``retry_failed`` puts failed messages back to pending.
"""
import logging
import threading
from collections import Counter
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Tuple

from .backends import ModelBackend, make_backend
from .cache import ClassificationCache
from .classifier import TwoStageClassifier
from .consensus import select_extraction
from .errors import BatchCancelled
from .matcher import MatchingEngine, has_enough_data
from .models import MessageRecord, PipelineState, Stage, TriageDecision
from .review import MANUAL
from .settings import Settings, load_settings
from .state import PipelineTracker
from .store import Store
from .triage import explain

logger = logging.getLogger(__name__)

MATCHED = "matched"
NOT_JOB = "not_job"
NOT_JOB_RELATED = "not_job_related"
NEEDS_REVIEW = "needs_review"
FAILED = "failed"
SKIPPED = "skipped"
CANCELLED = "cancelled"
# classified and selected, waiting for the matching pass
SELECTED = "selected"


@dataclass
class MessageOutcome:
    message_id: str
    account: str
    outcome: str
    application_id: Optional[str] = None
    used_fallback: bool = False
    detail: Optional[str] = None


@dataclass
class BatchResult:
    outcomes: List[MessageOutcome] = field(default_factory=list)
    cancelled: bool = False

    @property
    def counts(self) -> Dict[str, int]:
        return dict(Counter(o.outcome for o in self.outcomes))

    @property
    def fallback_count(self) -> int:
        return sum(1 for o in self.outcomes if o.used_fallback)

    def outcome_for(self, message_id: str) -> Optional[MessageOutcome]:
        for o in self.outcomes:
            if o.message_id == message_id:
                return o
        return None


class Pipeline:
    def __init__(
        self,
        store: Store,
        classifier: TwoStageClassifier,
        tracker: Optional[PipelineTracker] = None,
        matcher: Optional[MatchingEngine] = None,
        selection_method: str = "auto_best",
        workers: int = 4,
        review_below_threshold: bool = True,
        attempts_per_backend: int = 1,
    ):
        self.store = store
        self.classifier = classifier
        self.tracker = tracker or PipelineTracker(store)
        self.matcher = matcher or MatchingEngine(store)
        self.selection_method = selection_method
        self.workers = max(1, int(workers))
        self.review_below_threshold = review_below_threshold
        self.attempts_per_backend = max(1, int(attempts_per_backend))

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None, db_path: Optional[str] = None) -> "Pipeline":
        settings = settings or load_settings()
        store = Store(db_path or settings.storage["db_path"])
        store.init_schema()
        cache = ClassificationCache(ttl=float(settings.cache["ttl_hours"]) * 3600, store=store)

        built: Dict[str, ModelBackend] = {}
        def backend(name: str) -> ModelBackend:
            if name not in built:
                built[name] = make_backend(name, settings.backend_options(name))
            return built[name]

        pipe_cfg = settings.pipeline
        classifier = TwoStageClassifier(
            relevance_backend=backend(settings.backends["relevance"]),
            extraction_backends=[backend(n) for n in settings.backends["extraction"]],
            cache=cache,
            relevance_threshold=float(pipe_cfg["relevance_threshold"]),
            backend_timeout=float(pipe_cfg["backend_timeout"]),
            body_prefix_chars=int(settings.cache["body_prefix_chars"]),
            max_workers=int(pipe_cfg["workers"]),
            max_abandoned=int(pipe_cfg["max_abandoned_calls"]),
        )
        matcher = MatchingEngine(store, float(settings.matching["title_similarity_threshold"]))
        return cls(
            store,
            classifier,
            PipelineTracker(store),
            matcher,
            selection_method=pipe_cfg["selection_method"],
            workers=pipe_cfg["workers"],
            review_below_threshold=bool(pipe_cfg["review_below_threshold"]),
            attempts_per_backend=pipe_cfg["attempts_per_backend"],
        )

    # --- per-message classification (worker threads) ------------------------

    def _checkpoint(self, cancel_event: threading.Event) -> None:
        if cancel_event.is_set():
            raise BatchCancelled()

    def _classify(self, message: MessageRecord, state: PipelineState, cancel_event: threading.Event) -> MessageOutcome:
        def outcome(kind: str, **kw) -> MessageOutcome:
            return MessageOutcome(message.message_id, message.account, kind, **kw)

        decision, rule = explain(message)
        state = self.tracker.record_triage(state, decision)
        if decision == TriageDecision.NOT_JOB:
            logger.debug("[TRIAGE] %s not a job email (%s)", message.message_id, rule)
            return outcome(NOT_JOB, detail=rule)
        self._checkpoint(cancel_event)

        if decision == TriageDecision.DEFINITELY_JOB:
            relevance = self.classifier.confirm_by_triage(message)
        elif self.store.thread_is_job_related(message.thread_id, message.account, message.message_id):
            relevance = self.classifier.confirm_by_thread(message)
        else:
            relevance = self.classifier.classify_relevance(message)
        state = self.tracker.record_relevance(
            state, relevance.is_job_related, relevance.confidence, relevance.method, relevance.review_reason,
        )
        used_fallback = relevance.used_fallback
        if not self.classifier.passes_threshold(relevance):
            if relevance.is_job_related and self.review_below_threshold:
                self.tracker.flag_review(state, f"low relevance confidence {relevance.confidence:.2f}")
                return outcome(NEEDS_REVIEW, used_fallback=used_fallback, detail="low confidence")
            return outcome(NOT_JOB_RELATED, used_fallback=used_fallback)
        self._checkpoint(cancel_event)

        state = self.tracker.advance(state, Stage.EXTRACTION_PENDING)
        return self._extract(message, state, relevance.confidence, used_fallback, cancel_event)

    def _extract(
        self,
        message: MessageRecord,
        state: PipelineState,
        relevance_confidence: Optional[float],
        used_fallback: bool,
        cancel_event: threading.Event,
    ) -> MessageOutcome:
        def outcome(kind: str, **kw) -> MessageOutcome:
            return MessageOutcome(message.message_id, message.account, kind, **kw)

        for backend in self.classifier.extraction_backends:
            for _ in range(self.attempts_per_backend):
                self._checkpoint(cancel_event)
                attempt = self.classifier.extract(message, relevance_confidence, backend)
                used_fallback = used_fallback or attempt.used_fallback
                state = self.tracker.record_attempt(state, attempt)

        selection = select_extraction(state.extraction_attempts, self.selection_method)
        if not has_enough_data(selection.fields):
            self.tracker.flag_review(state, "insufficient data: no company or position")
            return outcome(NEEDS_REVIEW, used_fallback=used_fallback, detail="insufficient data")
        self.tracker.record_selection(state, selection.fields, selection.model_id, selection.method)
        return outcome(SELECTED, used_fallback=used_fallback)

    def process_message(self, message: MessageRecord, cancel_event: Optional[threading.Event] = None) -> MessageOutcome:
        cancel_event = cancel_event or threading.Event()
        if cancel_event.is_set():
            return MessageOutcome(message.message_id, message.account, CANCELLED)
        try:
            state = self.tracker.start(message)
        except Exception as e:
            logger.exception("[PIPELINE] %s could not be stored", message.message_id)
            return MessageOutcome(message.message_id, message.account, FAILED, detail=str(e))
        resume = state.stage == Stage.EXTRACTION_PENDING and state.relevance_method == MANUAL
        if state.stage != Stage.PENDING and not resume:
            kind = SELECTED if state.stage == Stage.SELECTED and state.application_id is None else SKIPPED
            return MessageOutcome(message.message_id, message.account, kind, state.application_id)
        try:
            if resume:
                # relevance was settled by an operator
                return self._extract(message, state, state.relevance_confidence, False, cancel_event)
            return self._classify(message, state, cancel_event)
        except BatchCancelled:
            self.tracker.reset(message.message_id, message.account, "cancelled")
            return MessageOutcome(message.message_id, message.account, CANCELLED)
        except Exception as e:
            logger.exception("[PIPELINE] %s failed", message.message_id)
            self.tracker.mark_failed(state, f"{type(e).__name__}: {e}")
            return MessageOutcome(message.message_id, message.account, FAILED, detail=str(e))

    # --- matching (calling thread) -------------------------------------------

    def _match_selected(self, outcomes: Dict[Tuple[str, str], MessageOutcome], cancel_event: threading.Event) -> None:
        pending = []
        for state in self.tracker.eligible_for_matching():
            message = self.store.get_message(state.message_id, state.account)
            if message is not None:
                pending.append((message, state))
        pending.sort(key=lambda pair: pair[0].received_at)

        for message, state in pending:
            key = (message.message_id, message.account)
            outcome = outcomes.get(key)
            if cancel_event.is_set():
                if outcome is not None:
                    outcome.outcome = CANCELLED
                continue
            try:
                result = self.matcher.match(message, state.selected_extraction)
                self.tracker.link_application(state, result.application_id)
            except Exception as e:
                logger.exception("[MATCH] %s failed", message.message_id)
                self.tracker.mark_failed(state, f"{type(e).__name__}: {e}")
                if outcome is not None:
                    outcome.outcome, outcome.detail = FAILED, str(e)
                continue
            if outcome is not None:
                outcome.outcome, outcome.application_id = MATCHED, result.application_id

    def run(self, messages: Iterable[MessageRecord], cancel_event: Optional[threading.Event] = None) -> BatchResult:
        cancel_event = cancel_event or threading.Event()
        messages = list(messages)
        results: List[Optional[MessageOutcome]] = [None] * len(messages)
        threads: Dict[Tuple[str, str], List[int]] = {}
        seen = set()
        for i, m in enumerate(messages):
            key = (m.message_id, m.account)
            if key in seen:
                results[i] = MessageOutcome(m.message_id, m.account, SKIPPED, detail="repeated in batch")
                continue
            seen.add(key)
            threads.setdefault((m.account, m.thread_id or m.message_id), []).append(i)

        def process_thread(indexes: List[int]) -> None:
            # oldest first, so a reply sees the earlier messages of its thread
            for i in sorted(indexes, key=lambda i: messages[i].received_at):
                results[i] = self.process_message(messages[i], cancel_event)

        with ThreadPoolExecutor(max_workers=self.workers, thread_name_prefix="classify") as pool:
            for future in [pool.submit(process_thread, indexes) for indexes in threads.values()]:
                future.result()

        outcomes = {
            (messages[i].message_id, messages[i].account): results[i]
            for indexes in threads.values() for i in indexes
        }
        self._match_selected(outcomes, cancel_event)

        batch = BatchResult(outcomes=results, cancelled=cancel_event.is_set())
        logger.info("[PIPELINE] batch of %d: %s", len(results), batch.counts)
        return batch

    def retry_failed(self, account: Optional[str] = None) -> List[MessageRecord]:
        """Reset failed messages to pending and return them for another run."""
        messages = []
        for state in self.tracker.failed(account):
            self.tracker.reset(state.message_id, state.account, "retry")
            message = self.store.get_message(state.message_id, state.account)
            if message is not None:
                messages.append(message)
        return messages

    def deduplicate(self) -> List[Tuple[str, str]]:
        return self.matcher.deduplicate()

    def close(self) -> None:
        self.classifier.close()
        self.store.close()
