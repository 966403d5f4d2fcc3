"""
DedupCache Tests
================

Bounded insertion-ordered set used for call keys and transcript
fingerprints.
"""
import pytest

from dispatch.services.dedup_cache import DedupCache, transcript_fingerprint


class TestDedupCache:

    def test_check_and_remember_reports_repeat(self):
        cache = DedupCache(10)
        assert cache.check_and_remember("123-1700000000") is False
        assert cache.check_and_remember("123-1700000000") is True
        assert len(cache) == 1

    def test_never_exceeds_bound(self):
        cache = DedupCache(3)
        for i in range(10):
            cache.remember(i)
            assert len(cache) <= 3
        assert len(cache) == 3

    def test_evicts_oldest_first(self):
        cache = DedupCache(3)
        for key in ("a", "b", "c", "d"):
            cache.remember(key)
        assert not cache.seen("a")
        assert all(cache.seen(k) for k in ("b", "c", "d"))

    def test_reinsert_does_not_refresh_age(self):
        cache = DedupCache(2)
        cache.remember("a")
        cache.remember("b")
        cache.remember("a")
        cache.remember("c")
        assert "a" not in cache
        assert "b" in cache and "c" in cache

    def test_evicted_key_is_new_again(self):
        cache = DedupCache(1)
        cache.remember("first")
        cache.remember("second")
        assert cache.check_and_remember("first") is False

    def test_rejects_non_positive_size(self):
        with pytest.raises(ValueError):
            DedupCache(0)


class TestTranscriptFingerprint:

    def test_strips_case_and_punctuation(self):
        a = transcript_fingerprint("Shots fired, 123 Main St!")
        b = transcript_fingerprint("shots FIRED 123 main st")
        assert a == b == "shotsfired123mainst"

    def test_only_first_fifty_characters_count(self):
        prefix = "x" * 50
        assert transcript_fingerprint(prefix + " one") == transcript_fingerprint(prefix + " two")

    def test_empty_text(self):
        assert transcript_fingerprint("") == ""
        assert transcript_fingerprint(None) == ""
