import threading
import time

import pytest

from application_tracker.cache import ClassificationCache, make_key
from application_tracker.models import ClassifierStage


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


def test_make_key_normalizes_case_and_whitespace():
    a = make_key("Interview  Invite", "Hello\n\nthere", "Jobs@Acme.com")
    b = make_key("interview invite", "hello there", "jobs@acme.com")
    assert a == b
    assert a != make_key("interview invite", "hello there", "other@acme.com")


def test_make_key_only_uses_body_prefix():
    assert make_key("s", "a" * 1000 + "tail one", "x") == make_key("s", "a" * 1000 + "tail two", "x")


def test_get_set_and_expiry():
    clock = FakeClock()
    cache = ClassificationCache(ttl=60, clock=clock)
    cache.set(ClassifierStage.RELEVANCE, "k", {"is_job_related": True}, 0.9)
    assert cache.get(ClassifierStage.RELEVANCE, "k") == {"is_job_related": True}
    clock.now += 60
    assert cache.get(ClassifierStage.RELEVANCE, "k") is None


def test_stages_do_not_share_entries():
    cache = ClassificationCache(ttl=60)
    cache.set(ClassifierStage.RELEVANCE, "k", {"is_job_related": True})
    assert cache.get(ClassifierStage.EXTRACTION, "k") is None


def test_expired_entry_is_recomputed():
    clock = FakeClock()
    cache = ClassificationCache(ttl=10, clock=clock)
    calls = []
    compute = lambda: calls.append(1) or {"n": len(calls)}
    assert cache.get_or_compute(ClassifierStage.RELEVANCE, "k", compute) == {"n": 1}
    assert cache.get_or_compute(ClassifierStage.RELEVANCE, "k", compute) == {"n": 1}
    clock.now += 11
    assert cache.get_or_compute(ClassifierStage.RELEVANCE, "k", compute) == {"n": 2}
    assert cache.hits == 1 and cache.misses == 2


def test_single_flight():
    cache = ClassificationCache(ttl=60)
    calls = []
    gate = threading.Event()

    def compute():
        calls.append(1)
        gate.wait(2)
        return {"is_job_related": True, "confidence": 0.9}

    results = []
    threads = [
        threading.Thread(target=lambda: results.append(
            cache.get_or_compute(ClassifierStage.RELEVANCE, "same", compute)))
        for _ in range(8)
    ]
    for t in threads:
        t.start()
    time.sleep(0.2)
    gate.set()
    for t in threads:
        t.join(5)
    assert len(calls) == 1
    assert len(results) == 8
    assert all(r == {"is_job_related": True, "confidence": 0.9} for r in results)


def test_errors_reach_every_waiter_and_are_not_cached():
    cache = ClassificationCache(ttl=60)
    gate = threading.Event()

    def boom():
        gate.wait(2)
        raise RuntimeError("backend down")

    errors = []

    def call():
        try:
            cache.get_or_compute(ClassifierStage.RELEVANCE, "k", boom)
        except RuntimeError as e:
            errors.append(str(e))

    threads = [threading.Thread(target=call) for _ in range(4)]
    for t in threads:
        t.start()
    time.sleep(0.2)
    gate.set()
    for t in threads:
        t.join(5)
    assert errors == ["backend down"] * 4
    assert cache.get(ClassifierStage.RELEVANCE, "k") is None


def test_cacheable_veto():
    cache = ClassificationCache(ttl=60)
    value = cache.get_or_compute(
        ClassifierStage.RELEVANCE, "k", lambda: {"used_fallback": True},
        cacheable=lambda v: not v["used_fallback"],
    )
    assert value == {"used_fallback": True}
    assert cache.get(ClassifierStage.RELEVANCE, "k") is None


def test_write_through_to_store(store):
    clock = FakeClock()
    first = ClassificationCache(ttl=60, store=store, clock=clock)
    first.set(ClassifierStage.RELEVANCE, "k", {"is_job_related": False}, 0.8)

    second = ClassificationCache(ttl=60, store=store, clock=clock)
    assert second.get(ClassifierStage.RELEVANCE, "k") == {"is_job_related": False}

    clock.now += 120
    assert second.purge_expired() == 1
    assert store.get_cache_entry(ClassifierStage.RELEVANCE, "k") is None


@pytest.mark.parametrize("stage", list(ClassifierStage))
def test_missing_key(stage):
    assert ClassificationCache(ttl=60).get(stage, "nope") is None
