"""
Folds job-related messages into application records.

Matching order for a message:

1. thread: its thread id already belongs to a record
2. fuzzy: same company key and a title similarity above the threshold
3. otherwise a new record is created

All mutations run under the engine lock and inside one store transaction,
so a merge either happens completely or not at all.
"""
import logging
import re
import threading
import uuid
from dataclasses import dataclass
from typing import List, Optional, Tuple

from .errors import MergeError
from .models import ApplicationRecord, ExtractedFields, MessageRecord, Status, StatusHistoryEntry
from .nlp_rules import normalize_status
from .store import Store
from .triage import org_label, sender_domain

logger = logging.getLogger(__name__)

CORPORATE_SUFFIXES = {
    "inc", "incorporated", "llc", "ltd", "limited", "co", "corp", "corporation",
    "company", "plc", "gmbh", "ag", "sa", "bv", "pty", "lp", "llp",
}
SENIORITY_RE = re.compile(r"\b(?:sr|jr|senior|junior|lead|principal|staff)\b")
ROMAN_RE = re.compile(r"\b(?:i{1,3}|iv|v|vi{1,3}|ix|x)\b")


def _words(text: str) -> List[str]:
    return re.sub(r"[^\w\s]", " ", text.lower().replace("&", " and ")).split()


def company_key(company: Optional[str], sender: Optional[str] = None) -> Optional[str]:
    """'Acme Corp.' -> 'acme'; falls back to the sender's organisation label."""
    source = company or (org_label(sender_domain(sender or "")) or "").replace("-", " ")
    words = [w for w in _words(source) if w not in CORPORATE_SUFFIXES]
    return " ".join(words) or None


def normalize_title(title: Optional[str]) -> Optional[str]:
    if not title:
        return None
    text = " ".join(_words(title))
    text = SENIORITY_RE.sub(" ", text)
    text = ROMAN_RE.sub(" ", text)
    text = re.sub(r"\b\d+\b", " ", text)
    return " ".join(text.split()) or None


def title_similarity(a: Optional[str], b: Optional[str]) -> float:
    norm_a, norm_b = normalize_title(a), normalize_title(b)
    if not norm_a or not norm_b:
        return 0.0
    if norm_a == norm_b:
        return 1.0
    tokens_a, tokens_b = set(norm_a.split()), set(norm_b.split())
    return len(tokens_a & tokens_b) / len(tokens_a | tokens_b)


def has_enough_data(fields: Optional[ExtractedFields]) -> bool:
    return fields is not None and bool(fields.company or fields.position)


@dataclass(frozen=True)
class MatchResult:
    application_id: str
    created: bool
    status_changed: bool
    strategy: str                   # existing | thread | fuzzy | new


class MatchingEngine:
    def __init__(self, store: Store, title_similarity_threshold: float = 0.7):
        self.store = store
        self.threshold = title_similarity_threshold
        self._lock = threading.RLock()

    def _fuzzy(self, key: Optional[str], title: Optional[str]) -> Optional[ApplicationRecord]:
        if not key or not title:
            return None
        best, best_score = None, 0.0
        for record in self.store.list_applications(company_key=key):
            score = title_similarity(record.job_title, title)
            if score <= self.threshold:
                continue
            if best is None or score > best_score or (score == best_score and record.last_contact > best.last_contact):
                best, best_score = record, score
        return best

    def _create(self, message: MessageRecord, fields: ExtractedFields, key: Optional[str], status: str) -> ApplicationRecord:
        record = ApplicationRecord(
            application_id=f"app_{uuid.uuid4().hex[:12]}",
            company=fields.company,
            company_key=key,
            job_title=fields.position,
            normalized_title=normalize_title(fields.position),
            status=status,
            location=fields.location,
            first_contact=message.received_at,
            last_contact=message.received_at,
            message_count=1,
            primary_thread_id=message.thread_id or None,
            thread_ids={message.thread_id} if message.thread_id else set(),
        )
        self.store.insert_application(record)
        self.store.add_thread(record.application_id, message.thread_id, message.account)
        self.store.append_status(StatusHistoryEntry(record.application_id, status, message.received_at, message.message_id))
        return record

    def _attach(self, record: ApplicationRecord, message: MessageRecord, fields: ExtractedFields, status: str) -> bool:
        record.message_count += 1
        record.last_contact = max(record.last_contact, message.received_at)
        if message.thread_id:
            record.thread_ids.add(message.thread_id)
            self.store.add_thread(record.application_id, message.thread_id, message.account)
        if not record.company and fields.company:
            record.company = fields.company
            record.company_key = record.company_key or company_key(fields.company)
        if not record.job_title and fields.position:
            record.job_title = fields.position
            record.normalized_title = normalize_title(fields.position)
        if not record.location and fields.location:
            record.location = fields.location
        changed = status != record.status
        if changed:
            # latest seen wins; no transition rules
            record.status = status
            self.store.append_status(StatusHistoryEntry(record.application_id, status, message.received_at, message.message_id))
        self.store.update_application(record)
        return changed

    def match(self, message: MessageRecord, extraction: ExtractedFields) -> MatchResult:
        if not has_enough_data(extraction):
            raise ValueError(f"{message.message_id}: no company or position to match on")
        status = normalize_status(extraction.status) or Status.APPLIED.value
        with self._lock, self.store.transaction():
            existing = self.store.linked_application(message.message_id, message.account)
            if existing:
                return MatchResult(existing, False, False, "existing")

            key = company_key(extraction.company, message.sender)
            record, strategy = None, "new"
            thread_app = self.store.find_application_by_thread(message.thread_id, message.account)
            if thread_app:
                record, strategy = self.store.get_application(thread_app), "thread"
            else:
                record = self._fuzzy(key, extraction.position)
                if record is not None:
                    strategy = "fuzzy"

            if record is None:
                record = self._create(message, extraction, key, status)
                created, changed = True, False
            else:
                created, changed = False, self._attach(record, message, extraction, status)
            self.store.link_message(record.application_id, message.message_id, message.account)

        logger.info(
            "[MATCH] %s -> %s (%s%s)", message.message_id, record.application_id, strategy,
            ", status " + status if changed else "",
        )
        return MatchResult(record.application_id, created, changed, strategy)

    def find_duplicates(self) -> List[Tuple[str, str]]:
        """Pairs (earlier, later) sharing a company key with similar titles."""
        with self._lock:
            records = self.store.list_applications()
        pairs = []
        for i, a in enumerate(records):
            for b in records[i + 1:]:
                if not a.company_key or a.company_key != b.company_key:
                    continue
                if title_similarity(a.job_title, b.job_title) > self.threshold:
                    pairs.append((a.application_id, b.application_id))
        return pairs

    def merge(self, primary_id: str, secondary_id: str) -> ApplicationRecord:
        if primary_id == secondary_id:
            raise MergeError(f"Cannot merge {primary_id} into itself")
        with self._lock, self.store.transaction():
            primary = self.store.get_application(primary_id)
            secondary = self.store.get_application(secondary_id)
            if primary is None or secondary is None:
                missing = primary_id if primary is None else secondary_id
                raise MergeError(f"No application {missing}")

            self.store.move_dependents(secondary_id, primary_id)
            primary.thread_ids |= secondary.thread_ids
            primary.message_count += secondary.message_count
            primary.first_contact = min(primary.first_contact, secondary.first_contact)
            primary.last_contact = max(primary.last_contact, secondary.last_contact)
            primary.job_title = primary.job_title or secondary.job_title
            primary.normalized_title = primary.normalized_title or secondary.normalized_title
            primary.location = primary.location or secondary.location
            primary.company = primary.company or secondary.company
            history = self.store.status_history(primary_id)
            if history:
                primary.status = history[-1].status
            self.store.delete_application(secondary_id)
            self.store.update_application(primary)
        logger.info("[MERGE] %s absorbed %s (%d messages)", primary_id, secondary_id, primary.message_count)
        return primary

    def deduplicate(self) -> List[Tuple[str, str]]:
        merged = []
        gone = set()
        for primary_id, secondary_id in self.find_duplicates():
            if primary_id in gone or secondary_id in gone:
                continue
            self.merge(primary_id, secondary_id)
            gone.add(secondary_id)
            merged.append((primary_id, secondary_id))
        return merged
