"""
SQLite persistence for pipeline state, extraction attempts, the classification
cache and application records.

One connection is shared by every worker thread; access is serialized with a
re-entrant lock and multi-row updates go through ``transaction()``.
"""
import json
import logging
import os
import sqlite3
import threading
import time
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, List, Optional, Tuple

from .models import (
    ApplicationRecord,
    CacheEntry,
    ClassifierStage,
    ExtractedFields,
    ExtractionAttempt,
    MessageRecord,
    PipelineState,
    Stage,
    StatusHistoryEntry,
    TriageDecision,
    utcnow,
)

logger = logging.getLogger(__name__)

SCHEMA_VERSION = "1.1.0"

SCHEMA = """
CREATE TABLE IF NOT EXISTS meta (
    key TEXT PRIMARY KEY,
    value TEXT
);

CREATE TABLE IF NOT EXISTS messages (
    message_id TEXT NOT NULL,
    account TEXT NOT NULL,
    thread_id TEXT,
    subject TEXT,
    sender TEXT,
    body TEXT,
    received_at TEXT NOT NULL,
    headers TEXT,
    PRIMARY KEY (message_id, account)
);

CREATE TABLE IF NOT EXISTS pipeline_state (
    message_id TEXT NOT NULL,
    account TEXT NOT NULL,
    stage TEXT NOT NULL DEFAULT 'pending',
    triage_decision TEXT,
    is_job_related INTEGER,
    relevance_confidence REAL,
    relevance_method TEXT,
    needs_review INTEGER NOT NULL DEFAULT 0,
    review_reason TEXT,
    selected_extraction TEXT,
    selected_model_id TEXT,
    selection_method TEXT,
    application_id TEXT,
    retry_count INTEGER NOT NULL DEFAULT 0,
    error TEXT,
    human_verified INTEGER NOT NULL DEFAULT 0,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (message_id, account)
);

CREATE TABLE IF NOT EXISTS extraction_attempts (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    message_id TEXT NOT NULL,
    account TEXT NOT NULL,
    model_id TEXT NOT NULL,
    fields TEXT NOT NULL,
    duration REAL NOT NULL,
    raw_response TEXT,
    used_fallback INTEGER NOT NULL DEFAULT 0,
    extracted_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS cache_entries (
    stage TEXT NOT NULL,
    cache_key TEXT NOT NULL,
    value TEXT NOT NULL,
    confidence REAL,
    expires_at REAL NOT NULL,
    PRIMARY KEY (stage, cache_key)
);

CREATE TABLE IF NOT EXISTS applications (
    application_id TEXT PRIMARY KEY,
    company TEXT,
    company_key TEXT,
    job_title TEXT,
    normalized_title TEXT,
    status TEXT NOT NULL,
    location TEXT,
    first_contact TEXT NOT NULL,
    last_contact TEXT NOT NULL,
    message_count INTEGER NOT NULL DEFAULT 0,
    primary_thread_id TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS application_threads (
    account TEXT NOT NULL,
    thread_id TEXT NOT NULL,
    application_id TEXT NOT NULL REFERENCES applications(application_id),
    PRIMARY KEY (account, thread_id)
);

CREATE TABLE IF NOT EXISTS application_messages (
    message_id TEXT NOT NULL,
    account TEXT NOT NULL,
    application_id TEXT NOT NULL REFERENCES applications(application_id),
    PRIMARY KEY (message_id, account)
);

CREATE TABLE IF NOT EXISTS status_history (
    seq INTEGER PRIMARY KEY AUTOINCREMENT,
    application_id TEXT NOT NULL REFERENCES applications(application_id),
    status TEXT NOT NULL,
    changed_at TEXT NOT NULL,
    message_id TEXT
);

CREATE INDEX IF NOT EXISTS idx_state_stage ON pipeline_state(stage);
CREATE INDEX IF NOT EXISTS idx_state_review ON pipeline_state(needs_review);
CREATE INDEX IF NOT EXISTS idx_attempts_message ON extraction_attempts(message_id, account);
CREATE INDEX IF NOT EXISTS idx_attempts_model ON extraction_attempts(model_id);
CREATE INDEX IF NOT EXISTS idx_cache_expiry ON cache_entries(expires_at);
CREATE INDEX IF NOT EXISTS idx_app_company_key ON applications(company_key);
CREATE INDEX IF NOT EXISTS idx_app_threads_app ON application_threads(application_id);
CREATE INDEX IF NOT EXISTS idx_app_messages_app ON application_messages(application_id);
CREATE INDEX IF NOT EXISTS idx_history_app ON status_history(application_id);
"""


def _ts(value: Optional[datetime]) -> Optional[str]:
    if value is None:
        return None
    if value.tzinfo is not None:
        # one offset everywhere so ORDER BY on the text column is chronological
        value = value.astimezone(timezone.utc)
    return value.isoformat()


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


def _fields_json(fields: Optional[ExtractedFields]) -> Optional[str]:
    return json.dumps(fields.as_dict()) if fields is not None else None


def _fields_from_json(value: Optional[str]) -> Optional[ExtractedFields]:
    return ExtractedFields.from_dict(json.loads(value)) if value else None


def _bool(value) -> Optional[bool]:
    return None if value is None else bool(value)


class Store:
    def __init__(self, db_path: str = ":memory:", retries: int = 3, delay: float = 1.0):
        self.db_path = db_path
        self._lock = threading.RLock()
        self._depth = 0
        self.conn = self._connect(retries, delay)

    def _connect(self, retries: int, delay: float) -> sqlite3.Connection:
        if self.db_path != ":memory:":
            os.makedirs(os.path.dirname(os.path.abspath(self.db_path)), exist_ok=True)
        last_error: Optional[Exception] = None
        for attempt in range(retries):
            try:
                conn = sqlite3.connect(self.db_path, check_same_thread=False, isolation_level=None)
                conn.row_factory = sqlite3.Row
                conn.execute("PRAGMA foreign_keys = ON")
                return conn
            except sqlite3.OperationalError as e:
                last_error = e
                if "locked" not in str(e).lower():
                    raise
                logger.warning("[STORE] Attempt %d: database is locked, retrying in %.1fs", attempt + 1, delay)
                time.sleep(delay)
        raise sqlite3.OperationalError(f"Failed to open {self.db_path}: {last_error}")

    def init_schema(self) -> None:
        with self._lock:
            self.conn.executescript(SCHEMA)
            self.conn.execute(
                "INSERT OR REPLACE INTO meta (key, value) VALUES (?, ?)",
                ("schema_version", SCHEMA_VERSION),
            )

    def close(self) -> None:
        with self._lock:
            self.conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        with self._lock:
            if self._depth:
                # nested: the outermost block owns commit/rollback
                self._depth += 1
                try:
                    yield self.conn
                finally:
                    self._depth -= 1
                return
            self.conn.execute("BEGIN IMMEDIATE")
            self._depth = 1
            try:
                yield self.conn
            except BaseException:
                self.conn.execute("ROLLBACK")
                raise
            else:
                self.conn.execute("COMMIT")
            finally:
                self._depth = 0

    def _query(self, sql: str, params=()) -> List[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchall()

    def _query_one(self, sql: str, params=()) -> Optional[sqlite3.Row]:
        with self._lock:
            return self.conn.execute(sql, params).fetchone()

    # --- messages -----------------------------------------------------------

    def insert_message(self, message: MessageRecord) -> bool:
        """Returns False when the message was already ingested."""
        with self.transaction() as conn:
            cur = conn.execute(
                """INSERT OR IGNORE INTO messages
                   (message_id, account, thread_id, subject, sender, body, received_at, headers)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    message.message_id, message.account, message.thread_id, message.subject,
                    message.sender, message.body, _ts(message.received_at),
                    json.dumps(dict(message.headers or {})),
                ),
            )
            return cur.rowcount > 0

    def get_message(self, message_id: str, account: str) -> Optional[MessageRecord]:
        row = self._query_one(
            "SELECT * FROM messages WHERE message_id = ? AND account = ?", (message_id, account)
        )
        if row is None:
            return None
        return MessageRecord(
            message_id=row["message_id"],
            thread_id=row["thread_id"] or "",
            account=row["account"],
            subject=row["subject"] or "",
            sender=row["sender"] or "",
            body=row["body"] or "",
            received_at=_dt(row["received_at"]),
            headers=json.loads(row["headers"] or "{}"),
        )

    # --- pipeline state -----------------------------------------------------

    def create_state(self, message_id: str, account: str) -> bool:
        with self.transaction() as conn:
            cur = conn.execute(
                """INSERT OR IGNORE INTO pipeline_state (message_id, account, stage, updated_at)
                   VALUES (?, ?, ?, ?)""",
                (message_id, account, Stage.PENDING.value, _ts(utcnow())),
            )
            return cur.rowcount > 0

    def _state_from_row(self, row: sqlite3.Row) -> PipelineState:
        return PipelineState(
            message_id=row["message_id"],
            account=row["account"],
            stage=Stage(row["stage"]),
            triage_decision=TriageDecision(row["triage_decision"]) if row["triage_decision"] else None,
            is_job_related=_bool(row["is_job_related"]),
            relevance_confidence=row["relevance_confidence"],
            relevance_method=row["relevance_method"],
            needs_review=bool(row["needs_review"]),
            review_reason=row["review_reason"],
            extraction_attempts=self.list_attempts(row["message_id"], row["account"]),
            selected_extraction=_fields_from_json(row["selected_extraction"]),
            selected_model_id=row["selected_model_id"],
            selection_method=row["selection_method"],
            application_id=row["application_id"],
            retry_count=row["retry_count"],
            error=row["error"],
            human_verified=bool(row["human_verified"]),
            updated_at=_dt(row["updated_at"]),
        )

    def get_state(self, message_id: str, account: str) -> Optional[PipelineState]:
        with self._lock:
            row = self._query_one(
                "SELECT * FROM pipeline_state WHERE message_id = ? AND account = ?",
                (message_id, account),
            )
            return self._state_from_row(row) if row else None

    def save_state(self, state: PipelineState) -> None:
        state.updated_at = utcnow()
        with self.transaction() as conn:
            conn.execute(
                """UPDATE pipeline_state SET
                       stage = ?, triage_decision = ?, is_job_related = ?,
                       relevance_confidence = ?, relevance_method = ?, needs_review = ?,
                       review_reason = ?, selected_extraction = ?, selected_model_id = ?,
                       selection_method = ?, application_id = ?, retry_count = ?, error = ?,
                       human_verified = ?, updated_at = ?
                   WHERE message_id = ? AND account = ?""",
                (
                    state.stage.value,
                    state.triage_decision.value if state.triage_decision else None,
                    None if state.is_job_related is None else int(state.is_job_related),
                    state.relevance_confidence,
                    state.relevance_method,
                    int(state.needs_review),
                    state.review_reason,
                    _fields_json(state.selected_extraction),
                    state.selected_model_id,
                    state.selection_method,
                    state.application_id,
                    state.retry_count,
                    state.error,
                    int(state.human_verified),
                    _ts(state.updated_at),
                    state.message_id,
                    state.account,
                ),
            )

    def list_states(
        self,
        stage: Optional[Stage] = None,
        needs_review: Optional[bool] = None,
        account: Optional[str] = None,
        unmatched: bool = False,
    ) -> List[PipelineState]:
        clauses, params = [], []
        if stage is not None:
            clauses.append("stage = ?")
            params.append(stage.value)
        if needs_review is not None:
            clauses.append("needs_review = ?")
            params.append(int(needs_review))
        if account is not None:
            clauses.append("account = ?")
            params.append(account)
        if unmatched:
            clauses.append("application_id IS NULL")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._lock:
            rows = self._query(f"SELECT * FROM pipeline_state {where} ORDER BY rowid", params)
            return [self._state_from_row(r) for r in rows]

    # --- extraction attempts ------------------------------------------------

    def append_attempt(self, message_id: str, account: str, attempt: ExtractionAttempt) -> None:
        with self.transaction() as conn:
            conn.execute(
                """INSERT INTO extraction_attempts
                   (message_id, account, model_id, fields, duration, raw_response, used_fallback, extracted_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    message_id, account, attempt.model_id, _fields_json(attempt.fields),
                    attempt.duration, attempt.raw_response, int(attempt.used_fallback),
                    _ts(attempt.extracted_at),
                ),
            )

    def list_attempts(self, message_id: str, account: str) -> List[ExtractionAttempt]:
        rows = self._query(
            "SELECT * FROM extraction_attempts WHERE message_id = ? AND account = ? ORDER BY seq",
            (message_id, account),
        )
        return [
            ExtractionAttempt(
                model_id=r["model_id"],
                fields=_fields_from_json(r["fields"]),
                duration=r["duration"],
                raw_response=r["raw_response"] or "",
                extracted_at=_dt(r["extracted_at"]),
                used_fallback=bool(r["used_fallback"]),
            )
            for r in rows
        ]

    def purge_attempts(self, model_id: str) -> int:
        with self.transaction() as conn:
            cur = conn.execute("DELETE FROM extraction_attempts WHERE model_id = ?", (model_id,))
            return cur.rowcount

    # --- cache --------------------------------------------------------------

    def get_cache_entry(self, stage: ClassifierStage, key: str) -> Optional[CacheEntry]:
        row = self._query_one(
            "SELECT * FROM cache_entries WHERE stage = ? AND cache_key = ?", (stage.value, key)
        )
        if row is None:
            return None
        return CacheEntry(
            stage=ClassifierStage(row["stage"]),
            key=row["cache_key"],
            value=json.loads(row["value"]),
            confidence=row["confidence"],
            expires_at=row["expires_at"],
        )

    def put_cache_entry(self, entry: CacheEntry) -> None:
        with self.transaction() as conn:
            conn.execute(
                """INSERT OR REPLACE INTO cache_entries (stage, cache_key, value, confidence, expires_at)
                   VALUES (?, ?, ?, ?, ?)""",
                (entry.stage.value, entry.key, json.dumps(entry.value), entry.confidence, entry.expires_at),
            )

    def purge_expired_cache(self, now: float) -> int:
        with self.transaction() as conn:
            cur = conn.execute("DELETE FROM cache_entries WHERE expires_at <= ?", (now,))
            return cur.rowcount

    # --- applications -------------------------------------------------------

    def _application_from_row(self, row: sqlite3.Row) -> ApplicationRecord:
        threads = self._query(
            "SELECT thread_id FROM application_threads WHERE application_id = ?",
            (row["application_id"],),
        )
        return ApplicationRecord(
            application_id=row["application_id"],
            company=row["company"],
            company_key=row["company_key"],
            job_title=row["job_title"],
            normalized_title=row["normalized_title"],
            status=row["status"],
            location=row["location"],
            first_contact=_dt(row["first_contact"]),
            last_contact=_dt(row["last_contact"]),
            message_count=row["message_count"],
            primary_thread_id=row["primary_thread_id"],
            thread_ids={t["thread_id"] for t in threads},
            created_at=_dt(row["created_at"]),
        )

    def insert_application(self, record: ApplicationRecord) -> None:
        with self.transaction() as conn:
            conn.execute(
                """INSERT INTO applications
                   (application_id, company, company_key, job_title, normalized_title, status,
                    location, first_contact, last_contact, message_count, primary_thread_id, created_at)
                   VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                (
                    record.application_id, record.company, record.company_key, record.job_title,
                    record.normalized_title, record.status, record.location,
                    _ts(record.first_contact), _ts(record.last_contact), record.message_count,
                    record.primary_thread_id, _ts(record.created_at),
                ),
            )

    def update_application(self, record: ApplicationRecord) -> None:
        with self.transaction() as conn:
            conn.execute(
                """UPDATE applications SET
                       company = ?, company_key = ?, job_title = ?, normalized_title = ?, status = ?,
                       location = ?, first_contact = ?, last_contact = ?, message_count = ?,
                       primary_thread_id = ?
                   WHERE application_id = ?""",
                (
                    record.company, record.company_key, record.job_title, record.normalized_title,
                    record.status, record.location, _ts(record.first_contact),
                    _ts(record.last_contact), record.message_count, record.primary_thread_id,
                    record.application_id,
                ),
            )

    def get_application(self, application_id: str) -> Optional[ApplicationRecord]:
        with self._lock:
            row = self._query_one(
                "SELECT * FROM applications WHERE application_id = ?", (application_id,)
            )
            return self._application_from_row(row) if row else None

    def list_applications(self, company_key: Optional[str] = None) -> List[ApplicationRecord]:
        with self._lock:
            if company_key is None:
                rows = self._query("SELECT * FROM applications ORDER BY created_at, rowid")
            else:
                rows = self._query(
                    "SELECT * FROM applications WHERE company_key = ? ORDER BY created_at, rowid",
                    (company_key,),
                )
            return [self._application_from_row(r) for r in rows]

    def delete_application(self, application_id: str) -> None:
        with self.transaction() as conn:
            conn.execute("DELETE FROM application_threads WHERE application_id = ?", (application_id,))
            conn.execute("DELETE FROM applications WHERE application_id = ?", (application_id,))

    def find_application_by_thread(self, thread_id: str, account: str) -> Optional[str]:
        """Thread ids are only unique within one mailbox."""
        if not thread_id:
            return None
        row = self._query_one(
            "SELECT application_id FROM application_threads WHERE account = ? AND thread_id = ?",
            (account, thread_id),
        )
        return row["application_id"] if row else None

    def add_thread(self, application_id: str, thread_id: str, account: str) -> None:
        if not thread_id:
            return
        with self.transaction() as conn:
            conn.execute(
                "INSERT OR IGNORE INTO application_threads (account, thread_id, application_id) VALUES (?, ?, ?)",
                (account, thread_id, application_id),
            )

    def link_message(self, application_id: str, message_id: str, account: str) -> bool:
        with self.transaction() as conn:
            cur = conn.execute(
                """INSERT OR IGNORE INTO application_messages (message_id, account, application_id)
                   VALUES (?, ?, ?)""",
                (message_id, account, application_id),
            )
            return cur.rowcount > 0

    def thread_is_job_related(self, thread_id: str, account: str, exclude_message_id: Optional[str] = None) -> bool:
        """True when the thread already has an application or another message past the relevance check."""
        if not thread_id:
            return False
        if self.find_application_by_thread(thread_id, account):
            return True
        row = self._query_one(
            """SELECT 1 FROM pipeline_state s
                   JOIN messages m ON m.message_id = s.message_id AND m.account = s.account
               WHERE m.thread_id = ? AND m.account = ? AND m.message_id != ?
                 AND s.is_job_related = 1 AND s.stage IN (?, ?, ?)
               LIMIT 1""",
            (
                thread_id, account, exclude_message_id or "",
                Stage.EXTRACTION_PENDING.value, Stage.EXTRACTION_COMPLETE.value, Stage.SELECTED.value,
            ),
        )
        return row is not None

    def linked_application(self, message_id: str, account: str) -> Optional[str]:
        row = self._query_one(
            "SELECT application_id FROM application_messages WHERE message_id = ? AND account = ?",
            (message_id, account),
        )
        return row["application_id"] if row else None

    def linked_messages(self, application_id: str) -> List[Tuple[str, str]]:
        rows = self._query(
            "SELECT message_id, account FROM application_messages WHERE application_id = ? ORDER BY rowid",
            (application_id,),
        )
        return [(r["message_id"], r["account"]) for r in rows]

    def move_dependents(self, from_id: str, to_id: str) -> None:
        """Re-point linked messages, status history, threads and pipeline rows."""
        with self.transaction() as conn:
            for table in ("application_messages", "status_history", "application_threads", "pipeline_state"):
                conn.execute(
                    f"UPDATE {table} SET application_id = ? WHERE application_id = ?",
                    (to_id, from_id),
                )

    def append_status(self, entry: StatusHistoryEntry) -> None:
        with self.transaction() as conn:
            conn.execute(
                "INSERT INTO status_history (application_id, status, changed_at, message_id) VALUES (?, ?, ?, ?)",
                (entry.application_id, entry.status, _ts(entry.changed_at), entry.message_id),
            )

    def status_history(self, application_id: str) -> List[StatusHistoryEntry]:
        rows = self._query(
            "SELECT * FROM status_history WHERE application_id = ? ORDER BY changed_at, seq",
            (application_id,),
        )
        return [
            StatusHistoryEntry(
                application_id=r["application_id"],
                status=r["status"],
                changed_at=_dt(r["changed_at"]),
                message_id=r["message_id"],
            )
            for r in rows
        ]
