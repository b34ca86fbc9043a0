"""Tests for one-time code stores."""

import threading

import mongomock

from storefront.otp import InMemoryOtpStore, MongoOtpStore, generate_otp_code


def test_generate_otp_code_is_numeric():
    code = generate_otp_code()
    assert len(code) == 6
    assert code.isdigit()


def test_generate_otp_code_length():
    assert len(generate_otp_code(8)) == 8


class TestInMemoryOtpStore:
    def test_get_before_expiry(self, clock):
        store = InMemoryOtpStore(clock=clock)
        store.set("newsletter:a@b.co", "123456", 600)
        clock.advance(599)
        assert store.get("newsletter:a@b.co") == "123456"

    def test_expired_entry_is_absent(self, clock):
        store = InMemoryOtpStore(clock=clock)
        store.set("newsletter:a@b.co", "123456", 600)
        clock.advance(600)
        assert store.get("newsletter:a@b.co") is None

    def test_set_replaces_previous_code(self, clock):
        store = InMemoryOtpStore(clock=clock)
        store.set("k", "111111", 60)
        store.set("k", "222222", 60)
        assert store.get("k") == "222222"

    def test_delete(self, clock):
        store = InMemoryOtpStore(clock=clock)
        store.set("k", "111111", 60)
        store.delete("k")
        store.delete("missing")
        assert store.get("k") is None

    def test_consume_removes_matching_code(self, clock):
        store = InMemoryOtpStore(clock=clock)
        store.set("k", "123456", 60)
        assert store.consume("k", "123456") is True
        assert store.consume("k", "123456") is False

    def test_consume_discards_after_failed_attempts(self, clock):
        store = InMemoryOtpStore(clock=clock)
        store.set("k", "123456", 60)
        for _ in range(2):
            assert store.consume("k", "000000", max_failed_attempts=3) is False
        assert store.get("k") == "123456"
        assert store.consume("k", "000000", max_failed_attempts=3) is False
        assert store.get("k") is None

    def test_consume_expired(self, clock):
        store = InMemoryOtpStore(clock=clock)
        store.set("k", "123456", 60)
        clock.advance(60)
        assert store.consume("k", "123456") is False

    def test_only_one_concurrent_consumer_wins(self, clock):
        store = InMemoryOtpStore(clock=clock)
        store.set("k", "123456", 60)
        results = []
        threads = [
            threading.Thread(target=lambda: results.append(store.consume("k", "123456")))
            for _ in range(8)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()
        assert results.count(True) == 1


class TestMongoOtpStore:
    def test_round_trip_and_delete(self):
        store = MongoOtpStore(mongomock.MongoClient().db.otp_codes)
        store.set("k", "654321", 60)
        assert store.get("k") == "654321"
        store.delete("k")
        assert store.get("k") is None

    def test_expired_record_is_removed(self):
        collection = mongomock.MongoClient().db.otp_codes
        store = MongoOtpStore(collection)
        store.set("k", "654321", -1)
        assert store.get("k") is None
        assert collection.count_documents({}) == 0

    def test_consume_is_single_use(self):
        store = MongoOtpStore(mongomock.MongoClient().db.otp_codes)
        store.set("k", "654321", 60)
        assert store.consume("k", "654321") is True
        assert store.consume("k", "654321") is False

    def test_consume_counts_failed_attempts(self):
        collection = mongomock.MongoClient().db.otp_codes
        store = MongoOtpStore(collection)
        store.set("k", "654321", 60)
        assert store.consume("k", "000000", max_failed_attempts=2) is False
        assert collection.find_one({"key": "k"})["failed_attempts"] == 1
        assert store.consume("k", "000000", max_failed_attempts=2) is False
        assert collection.count_documents({}) == 0
        assert store.consume("k", "654321") is False

    def test_new_code_resets_failed_attempts(self):
        collection = mongomock.MongoClient().db.otp_codes
        store = MongoOtpStore(collection)
        store.set("k", "654321", 60)
        store.consume("k", "000000")
        store.set("k", "111222", 60)
        assert collection.find_one({"key": "k"})["failed_attempts"] == 0
