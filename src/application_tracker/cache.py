"""
Content-addressed cache for classifier decisions.

Entries are keyed by classifier stage plus a hash of the normalized message
text. ``get_or_compute`` is single-flight: while one caller computes a key,
every other caller for that key blocks on the same future instead of
invoking the backend again.
"""
import hashlib
import logging
import re
import threading
import time
from concurrent.futures import Future
from typing import Any, Callable, Dict, Optional, Tuple

from .models import CacheEntry, ClassifierStage
from .store import Store

logger = logging.getLogger(__name__)

_WS_RE = re.compile(r"\s+")


def _normalize(text: str) -> str:
    return _WS_RE.sub(" ", (text or "").casefold()).strip()


def make_key(subject: str, body: str, sender: str, prefix_chars: int = 1000) -> str:
    content = "\n".join([_normalize(subject), _normalize((body or "")[:prefix_chars]), _normalize(sender)])
    return hashlib.sha256(content.encode("utf-8")).hexdigest()


class ClassificationCache:
    def __init__(
        self,
        ttl: float,
        store: Optional[Store] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.ttl = ttl
        self.store = store
        self.clock = clock
        self._entries: Dict[Tuple[ClassifierStage, str], CacheEntry] = {}
        self._inflight: Dict[Tuple[ClassifierStage, str], Future] = {}
        self._lock = threading.Lock()
        self.hits = 0
        self.misses = 0

    def _lookup(self, stage: ClassifierStage, key: str) -> Optional[CacheEntry]:
        entry = self._entries.get((stage, key))
        if entry is None and self.store is not None:
            entry = self.store.get_cache_entry(stage, key)
            if entry is not None:
                self._entries[(stage, key)] = entry
        if entry is None or entry.is_expired(self.clock()):
            # expired rows stay until the next write to this key
            return None
        return entry

    def get(self, stage: ClassifierStage, key: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            entry = self._lookup(stage, key)
        return entry.value if entry else None

    def set(self, stage: ClassifierStage, key: str, value: Dict[str, Any], confidence: Optional[float] = None) -> None:
        entry = CacheEntry(
            stage=stage,
            key=key,
            value=value,
            confidence=confidence,
            expires_at=self.clock() + self.ttl,
        )
        with self._lock:
            self._entries[(stage, key)] = entry
        if self.store is not None:
            self.store.put_cache_entry(entry)

    def get_or_compute(
        self,
        stage: ClassifierStage,
        key: str,
        compute: Callable[[], Dict[str, Any]],
        cacheable: Optional[Callable[[Dict[str, Any]], bool]] = None,
    ) -> Dict[str, Any]:
        with self._lock:
            entry = self._lookup(stage, key)
            if entry is not None:
                self.hits += 1
                logger.debug("[CACHE] hit %s:%s", stage.value, key[:12])
                return entry.value
            future = self._inflight.get((stage, key))
            owner = future is None
            if owner:
                self.misses += 1
                future = Future()
                self._inflight[(stage, key)] = future

        if not owner:
            logger.debug("[CACHE] waiting on in-flight %s:%s", stage.value, key[:12])
            return future.result()

        try:
            value = compute()
        except BaseException as e:
            with self._lock:
                self._inflight.pop((stage, key), None)
            future.set_exception(e)
            raise
        if cacheable is None or cacheable(value):
            self.set(stage, key, value, value.get("confidence"))
        with self._lock:
            self._inflight.pop((stage, key), None)
        future.set_result(value)
        return value

    def purge_expired(self) -> int:
        now = self.clock()
        with self._lock:
            expired = [k for k, e in self._entries.items() if e.is_expired(now)]
            for k in expired:
                del self._entries[k]
        removed = len(expired)
        if self.store is not None:
            removed = max(removed, self.store.purge_expired_cache(now))
        if removed:
            logger.info("[CACHE] purged %d expired entries", removed)
        return removed
