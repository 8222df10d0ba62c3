"""
Per-message pipeline state machine.

    pending -> triaged -> relevance_classified -> extraction_pending
            -> extraction_complete -> selected

``failed`` can be entered from anywhere and left only through ``reset``.
Every write goes through the store inside a transaction.
"""
import logging
from typing import List, Optional

from .errors import InvalidTransition
from .models import ExtractionAttempt, MessageRecord, PipelineState, Stage, TriageDecision
from .store import Store

logger = logging.getLogger(__name__)


class PipelineTracker:
    def __init__(self, store: Store):
        self.store = store

    def start(self, message: MessageRecord) -> PipelineState:
        """Ingest a message and return its state, creating it at ``pending`` if new."""
        with self.store.transaction():
            self.store.insert_message(message)
            self.store.create_state(message.message_id, message.account)
            return self.store.get_state(message.message_id, message.account)

    def get(self, message_id: str, account: str) -> Optional[PipelineState]:
        return self.store.get_state(message_id, account)

    def _check(self, state: PipelineState, target: Stage) -> None:
        if state.stage == Stage.FAILED:
            raise InvalidTransition(f"{state.message_id} is failed; reset it first")
        if target == Stage.FAILED:
            return
        if target.order < state.stage.order:
            raise InvalidTransition(
                f"{state.message_id}: cannot move back from {state.stage.value} to {target.value}"
            )

    def advance(self, state: PipelineState, stage: Stage, **changes) -> PipelineState:
        if state.stage == stage and not changes:
            return state
        self._check(state, stage)
        selected = changes.get("selected_extraction", state.selected_extraction)
        if selected is not None and stage.order < Stage.EXTRACTION_COMPLETE.order:
            raise InvalidTransition(f"{state.message_id}: selection before extraction_complete")
        for name, value in changes.items():
            setattr(state, name, value)
        state.stage = stage
        self.store.save_state(state)
        return state

    def record_triage(self, state: PipelineState, decision: TriageDecision) -> PipelineState:
        return self.advance(state, Stage.TRIAGED, triage_decision=decision)

    def record_relevance(
        self,
        state: PipelineState,
        is_job_related: bool,
        confidence: float,
        method: str,
        review_reason: Optional[str] = None,
    ) -> PipelineState:
        changes = dict(is_job_related=is_job_related, relevance_confidence=confidence, relevance_method=method)
        if review_reason:
            changes.update(needs_review=True, review_reason=review_reason)
        return self.advance(state, Stage.RELEVANCE_CLASSIFIED, **changes)

    def record_attempt(self, state: PipelineState, attempt: ExtractionAttempt) -> PipelineState:
        if state.stage.order < Stage.EXTRACTION_PENDING.order:
            raise InvalidTransition(
                f"{state.message_id}: extraction attempt recorded at {state.stage.value}"
            )
        with self.store.transaction():
            self.store.append_attempt(state.message_id, state.account, attempt)
            state.extraction_attempts.append(attempt)
            target = max(state.stage, Stage.EXTRACTION_COMPLETE, key=lambda s: s.order)
            if target == state.stage:
                self.store.save_state(state)
                return state
            return self.advance(state, target)

    def record_selection(self, state: PipelineState, fields, model_id: str, method: str) -> PipelineState:
        if state.stage.order < Stage.EXTRACTION_COMPLETE.order:
            raise InvalidTransition(
                f"{state.message_id}: cannot select at {state.stage.value}"
            )
        return self.advance(
            state, Stage.SELECTED,
            selected_extraction=fields, selected_model_id=model_id, selection_method=method,
        )

    def flag_review(self, state: PipelineState, reason: str) -> PipelineState:
        state.needs_review = True
        state.review_reason = reason
        self.store.save_state(state)
        logger.info("[PIPELINE] %s needs review: %s", state.message_id, reason)
        return state

    def clear_review(self, state: PipelineState, human_verified: bool = True) -> PipelineState:
        state.needs_review = False
        state.review_reason = None
        state.human_verified = state.human_verified or human_verified
        self.store.save_state(state)
        return state

    def mark_failed(self, state: PipelineState, error: str) -> PipelineState:
        state.stage = Stage.FAILED
        state.error = error
        self.store.save_state(state)
        logger.error("[PIPELINE] %s failed: %s", state.message_id, error)
        return state

    def link_application(self, state: PipelineState, application_id: str) -> PipelineState:
        state.application_id = application_id
        self.store.save_state(state)
        return state

    def reset(self, message_id: str, account: str, reason: Optional[str] = None) -> PipelineState:
        """Back to pending for a retry. The attempt log and any review flag are kept."""
        with self.store.transaction():
            state = self.store.get_state(message_id, account)
            if state is None:
                raise InvalidTransition(f"No pipeline state for {message_id}")
            state.stage = Stage.PENDING
            state.triage_decision = None
            state.is_job_related = None
            state.relevance_confidence = None
            state.relevance_method = None
            state.selected_extraction = None
            state.selected_model_id = None
            state.selection_method = None
            state.application_id = None
            state.error = None
            state.retry_count += 1
            self.store.save_state(state)
        logger.info("[PIPELINE] %s reset to pending (%s)", message_id, reason or "retry")
        return state

    def eligible_for_matching(self, account: Optional[str] = None) -> List[PipelineState]:
        states = self.store.list_states(stage=Stage.SELECTED, account=account, unmatched=True)
        return [s for s in states if s.is_job_related]

    def failed(self, account: Optional[str] = None) -> List[PipelineState]:
        return self.store.list_states(stage=Stage.FAILED, account=account)
