"""Operator corrections. Everything here marks the state human-verified."""
import logging
from typing import List, Optional

from .consensus import score_extraction
from .errors import InvalidTransition
from .models import ExtractedFields, ExtractionAttempt, PipelineState, Stage
from .state import PipelineTracker

logger = logging.getLogger(__name__)

MANUAL = "manual"


class ReviewQueue:
    def __init__(self, tracker: PipelineTracker):
        self.tracker = tracker

    def _state(self, message_id: str, account: str) -> PipelineState:
        state = self.tracker.get(message_id, account)
        if state is None:
            raise InvalidTransition(f"No pipeline state for {message_id}")
        return state

    def pending_review(self, account: Optional[str] = None) -> List[PipelineState]:
        return self.tracker.store.list_states(needs_review=True, account=account)

    def set_needs_review(self, message_id: str, account: str, reason: str) -> PipelineState:
        return self.tracker.flag_review(self._state(message_id, account), reason)

    def clear_review(self, message_id: str, account: str) -> PipelineState:
        return self.tracker.clear_review(self._state(message_id, account))

    def correct_classification(self, message_id: str, account: str, is_job_related: bool) -> PipelineState:
        state = self._state(message_id, account)
        if state.stage == Stage.FAILED:
            state = self.tracker.reset(message_id, account, "manual classification")
        target = max(state.stage, Stage.RELEVANCE_CLASSIFIED, key=lambda s: s.order)
        if is_job_related and target == Stage.RELEVANCE_CLASSIFIED:
            # extraction picks it up on the next run
            target = Stage.EXTRACTION_PENDING
        state = self.tracker.advance(
            state, target,
            is_job_related=is_job_related, relevance_confidence=1.0, relevance_method=MANUAL,
        )
        logger.info("[REVIEW] %s classified as %s by operator", message_id, "job" if is_job_related else "not job")
        return self.tracker.clear_review(state)

    def correct_extraction(self, message_id: str, account: str, fields: ExtractedFields) -> PipelineState:
        """Append a manual attempt and select it, whatever the automatic scores say."""
        state = self._state(message_id, account)
        if state.stage.order < Stage.EXTRACTION_PENDING.order:
            state = self.tracker.advance(
                state, Stage.EXTRACTION_PENDING,
                is_job_related=True, relevance_confidence=1.0, relevance_method=MANUAL,
            )
        attempt = ExtractionAttempt(model_id=MANUAL, fields=fields, duration=0.0, raw_response="operator")
        with self.tracker.store.transaction():
            state = self.tracker.record_attempt(state, attempt)
            state = self.tracker.record_selection(state, fields, MANUAL, MANUAL)
            state = self.tracker.clear_review(state)
        logger.info(
            "[REVIEW] %s extraction corrected (completeness %d)", message_id, score_extraction(fields),
        )
        return state
