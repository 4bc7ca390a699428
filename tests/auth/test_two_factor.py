"""Tests for TwoFactorManager - challenge issue, verification and expiry."""

import hashlib
import re
import threading
import uuid

import pytest

from auth.two_factor import TwoFactorManager, generate_code, hash_code

ORG_ID = 1


@pytest.fixture
def manager(auth_db, config):
    return TwoFactorManager(auth_db, config)


@pytest.fixture
def user_id(auth_db, hasher):
    return auth_db.add_user("twofa@example.com", hasher.hash("Passw0rd1"))


def wrong_code(code: str) -> str:
    return f"{(int(code) + 1) % 1_000_000:06d}"


class TestCodeHelpers:
    """Code generation and hashing."""

    def test_code_is_six_digits(self):
        """Codes are always 6 decimal digits, zero padded."""
        for _ in range(200):
            assert re.fullmatch(r"\d{6}", generate_code())

    def test_hash_is_sha256_hex(self):
        assert hash_code("123456") == hashlib.sha256(b"123456").hexdigest()


class TestIssue:
    """Challenge creation."""

    def test_stores_only_hash(self, manager, auth_db, user_id, clock):
        """Plaintext is returned, only its hash is persisted."""
        code = manager.issue(user_id, ORG_ID, "10.0.0.1", "TestBrowser/1.0")

        [challenge] = auth_db.challenges.values()
        assert challenge.code_hash == hash_code(code)
        assert code not in challenge.model_dump_json()

    def test_expires_after_ten_minutes(self, manager, auth_db, user_id, clock):
        """expires_at = created_at + 10 minutes, attempts start at zero."""
        manager.issue(user_id, ORG_ID, None, None)

        [challenge] = auth_db.challenges.values()
        assert (challenge.expires_at - challenge.created_at).total_seconds() == 600
        assert challenge.attempts == 0
        assert challenge.verified is False

    def test_records_request_origin(self, manager, auth_db, user_id, clock):
        manager.issue(user_id, ORG_ID, "10.0.0.1", "TestBrowser/1.0")

        [challenge] = auth_db.challenges.values()
        assert challenge.ip_address == "10.0.0.1"
        assert challenge.user_agent == "TestBrowser/1.0"

    def test_non_ip_origin_not_stored(self, manager, auth_db, user_id, clock):
        manager.issue(user_id, ORG_ID, "testclient", None)

        [challenge] = auth_db.challenges.values()
        assert challenge.ip_address is None


class TestVerify:
    """Code verification."""

    def test_correct_code_verifies(self, manager, user_id, clock):
        code = manager.issue(user_id, ORG_ID, None, None)
        assert manager.verify(user_id, ORG_ID, code) is True

    def test_wrong_code_fails_and_counts(self, manager, auth_db, user_id, clock):
        code = manager.issue(user_id, ORG_ID, None, None)

        assert manager.verify(user_id, ORG_ID, wrong_code(code)) is False

        [challenge] = auth_db.challenges.values()
        assert challenge.attempts == 1

    def test_cannot_verify_twice(self, manager, user_id, clock):
        """After one success the same code is rejected (no replay)."""
        code = manager.issue(user_id, ORG_ID, None, None)

        assert manager.verify(user_id, ORG_ID, code) is True
        assert manager.verify(user_id, ORG_ID, code) is False

    def test_sixth_attempt_with_correct_code_fails(self, manager, auth_db, user_id, clock):
        """Five failures exhaust the challenge even for the right code."""
        code = manager.issue(user_id, ORG_ID, None, None)
        for _ in range(5):
            assert manager.verify(user_id, ORG_ID, wrong_code(code)) is False

        assert manager.verify(user_id, ORG_ID, code) is False

        [challenge] = auth_db.challenges.values()
        assert challenge.attempts == 5
        assert challenge.verified is False

    def test_attempts_never_exceed_five(self, manager, auth_db, user_id, clock):
        code = manager.issue(user_id, ORG_ID, None, None)
        for _ in range(9):
            manager.verify(user_id, ORG_ID, wrong_code(code))

        [challenge] = auth_db.challenges.values()
        assert challenge.attempts == 5

    def test_fifth_attempt_can_still_succeed(self, manager, user_id, clock):
        code = manager.issue(user_id, ORG_ID, None, None)
        for _ in range(4):
            manager.verify(user_id, ORG_ID, wrong_code(code))

        assert manager.verify(user_id, ORG_ID, code) is True

    def test_expired_challenge_fails(self, manager, auth_db, user_id, clock):
        """A challenge created at T is unverifiable at T + 10 minutes + 1 second."""
        code = manager.issue(user_id, ORG_ID, None, None)
        clock.advance(minutes=10, seconds=1)

        assert manager.verify(user_id, ORG_ID, code) is False

        [challenge] = auth_db.challenges.values()
        assert challenge.attempts == 0

    def test_valid_just_before_expiry(self, manager, user_id, clock):
        code = manager.issue(user_id, ORG_ID, None, None)
        clock.advance(minutes=9, seconds=59)

        assert manager.verify(user_id, ORG_ID, code) is True

    def test_no_challenge_returns_false(self, manager, user_id, clock):
        assert manager.verify(user_id, ORG_ID, "123456") is False

    def test_targets_newest_challenge(self, manager, user_id, clock):
        """With two outstanding challenges only the newest code is accepted."""
        old_code = manager.issue(user_id, ORG_ID, None, None)
        clock.advance(seconds=30)
        new_code = manager.issue(user_id, ORG_ID, None, None)

        if old_code != new_code:
            assert manager.verify(user_id, ORG_ID, old_code) is False
        assert manager.verify(user_id, ORG_ID, new_code) is True

    def test_scoped_to_organization(self, manager, user_id, clock):
        """A code issued for one organization does not verify in another."""
        code = manager.issue(user_id, ORG_ID, None, None)
        assert manager.verify(user_id, 2, code) is False

    def test_scoped_to_user(self, manager, auth_db, hasher, user_id, clock):
        other = auth_db.add_user("other@example.com", hasher.hash("Passw0rd1"))
        code = manager.issue(user_id, ORG_ID, None, None)
        assert manager.verify(other, ORG_ID, code) is False

    def test_lost_race_fails_closed(self, manager, auth_db, user_id, clock, monkeypatch):
        """If the row changed between read and write, the attempt is rejected."""
        code = manager.issue(user_id, ORG_ID, None, None)
        monkeypatch.setattr(auth_db, "record_challenge_attempt", lambda *args, **kwargs: False)

        assert manager.verify(user_id, ORG_ID, code) is False

    def test_parallel_correct_guesses_succeed_once(self, manager, user_id, clock):
        """Concurrent submissions of the right code yield exactly one success."""
        code = manager.issue(user_id, ORG_ID, None, None)
        results = []
        lock = threading.Lock()

        def attempt():
            outcome = manager.verify(user_id, ORG_ID, code)
            with lock:
                results.append(outcome)

        threads = [threading.Thread(target=attempt) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(True) == 1


class TestCleanupExpired:
    """Housekeeping."""

    def test_deletes_only_expired(self, manager, auth_db, user_id, clock):
        manager.issue(user_id, ORG_ID, None, None)
        clock.advance(minutes=11)
        manager.issue(user_id, ORG_ID, None, None)

        assert manager.cleanup_expired() == 1
        assert len(auth_db.challenges) == 1


def test_challenge_ids_are_unique(manager, auth_db, user_id, clock):
    for _ in range(3):
        manager.issue(user_id, ORG_ID, None, None)
    assert all(isinstance(cid, uuid.UUID) for cid in auth_db.challenges)
    assert len(auth_db.challenges) == 3
