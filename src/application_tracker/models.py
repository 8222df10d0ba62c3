from dataclasses import dataclass, field, fields as dc_fields, replace
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Set


class TriageDecision(str, Enum):
    NOT_JOB = "not_job"
    DEFINITELY_JOB = "definitely_job"
    UNCERTAIN = "uncertain"


class ClassifierStage(str, Enum):
    RELEVANCE = "relevance"
    EXTRACTION = "extraction"


class Stage(str, Enum):
    PENDING = "pending"
    TRIAGED = "triaged"
    RELEVANCE_CLASSIFIED = "relevance_classified"
    EXTRACTION_PENDING = "extraction_pending"
    EXTRACTION_COMPLETE = "extraction_complete"
    SELECTED = "selected"
    FAILED = "failed"

    @property
    def order(self) -> int:
        # failed sits outside the main sequence
        return STAGE_ORDER.index(self) if self in STAGE_ORDER else -1


STAGE_ORDER = [
    Stage.PENDING,
    Stage.TRIAGED,
    Stage.RELEVANCE_CLASSIFIED,
    Stage.EXTRACTION_PENDING,
    Stage.EXTRACTION_COMPLETE,
    Stage.SELECTED,
]


class Status(str, Enum):
    APPLIED = "Applied"
    INTERVIEW = "Interview"
    OFFER = "Offer"
    REJECTED = "Rejected"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass(frozen=True)
class MessageRecord:
    message_id: str
    thread_id: str
    account: str
    subject: str
    sender: str
    body: str
    received_at: datetime
    headers: Mapping[str, str] = field(default_factory=dict, compare=False)


@dataclass(frozen=True)
class ExtractedFields:
    company: Optional[str] = None
    position: Optional[str] = None
    status: Optional[str] = None              # Applied | Interview | Offer | Rejected
    location: Optional[str] = None
    remote_status: Optional[str] = None       # remote | hybrid | onsite
    salary_range: Optional[str] = None

    def as_dict(self) -> Dict[str, Optional[str]]:
        return {f.name: getattr(self, f.name) for f in dc_fields(self)}

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "ExtractedFields":
        data = data or {}
        values = {}
        for f in dc_fields(cls):
            value = data.get(f.name)
            values[f.name] = str(value) if value is not None else None
        return cls(**values)

    def merged_with(self, **changes: Optional[str]) -> "ExtractedFields":
        return replace(self, **changes)


FIELD_NAMES = [f.name for f in dc_fields(ExtractedFields)]


@dataclass(frozen=True)
class ExtractionAttempt:
    model_id: str
    fields: ExtractedFields
    duration: float                          # seconds
    raw_response: str = ""
    extracted_at: datetime = field(default_factory=utcnow)
    used_fallback: bool = False


@dataclass
class PipelineState:
    message_id: str
    account: str
    stage: Stage = Stage.PENDING
    triage_decision: Optional[TriageDecision] = None
    is_job_related: Optional[bool] = None
    relevance_confidence: Optional[float] = None
    relevance_method: Optional[str] = None
    needs_review: bool = False
    review_reason: Optional[str] = None
    extraction_attempts: List[ExtractionAttempt] = field(default_factory=list)
    selected_extraction: Optional[ExtractedFields] = None
    selected_model_id: Optional[str] = None
    selection_method: Optional[str] = None
    application_id: Optional[str] = None
    retry_count: int = 0
    error: Optional[str] = None
    human_verified: bool = False
    updated_at: datetime = field(default_factory=utcnow)


@dataclass
class CacheEntry:
    stage: ClassifierStage
    key: str
    value: Dict[str, Any]
    confidence: Optional[float]
    expires_at: float                        # epoch seconds

    def is_expired(self, now: float) -> bool:
        return now >= self.expires_at


@dataclass
class ApplicationRecord:
    application_id: str
    company: Optional[str]
    company_key: Optional[str]
    job_title: Optional[str]
    normalized_title: Optional[str]
    status: str
    location: Optional[str]
    first_contact: datetime
    last_contact: datetime
    message_count: int
    primary_thread_id: Optional[str]
    thread_ids: Set[str] = field(default_factory=set)
    created_at: datetime = field(default_factory=utcnow)


@dataclass(frozen=True)
class StatusHistoryEntry:
    application_id: str
    status: str
    changed_at: datetime
    message_id: Optional[str]
