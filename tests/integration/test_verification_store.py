"""Integration tests for the Redis verification code store.

Requires: Redis reachable through the REDIS_* settings
"""

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from election_services.storage.redis_client import VerificationOutcome


@pytest.mark.integration
class TestVerificationCodeStore:
    """Expiring codes with attempt counting."""

    def test_store_and_get(self, code_store):
        code_store.store("IT-1", "482913", ttl_seconds=60)

        pending = code_store.get("IT-1")

        assert pending.code == "482913"
        assert pending.attempts == 0
        assert 0 < pending.ttl_seconds <= 60

    def test_correct_code_is_consumed(self, code_store):
        code_store.store("IT-2", "111222")

        assert code_store.verify("IT-2", "111222") == VerificationOutcome.VERIFIED
        assert code_store.get("IT-2") is None
        assert code_store.verify("IT-2", "111222") == VerificationOutcome.NOT_FOUND

    def test_attempt_limit(self, code_store):
        """Test: three wrong codes discard the pending code.

        Flow:
        1. Store a code
        2. Submit two wrong codes, verify MISMATCH and the remaining count
        3. Submit a third wrong code, verify TOO_MANY_ATTEMPTS
        4. Verify the correct code is no longer accepted
        """
        code_store.store("IT-3", "999000")

        assert code_store.verify("IT-3", "000000") == VerificationOutcome.MISMATCH
        assert code_store.verify("IT-3", "000001") == VerificationOutcome.MISMATCH
        assert code_store.remaining_attempts("IT-3") == 1
        assert code_store.verify("IT-3", "000002") == VerificationOutcome.TOO_MANY_ATTEMPTS
        assert code_store.verify("IT-3", "999000") == VerificationOutcome.NOT_FOUND

    @pytest.mark.concurrency
    def test_concurrent_guesses_respect_attempt_limit(self, code_store):
        """Test: simultaneous wrong guesses cannot exceed the attempt limit.

        Flow:
        1. Store a code with a 3-attempt limit
        2. Submit 10 wrong codes at once from 10 threads
        3. Verify only the first two are reported as MISMATCH, none verified
        4. Verify the correct code is no longer accepted
        """
        code_store.store("IT-7", "581204")
        guesses = 10
        barrier = threading.Barrier(guesses)

        def guess(i):
            barrier.wait()
            return code_store.verify("IT-7", f"{i:06d}")

        with ThreadPoolExecutor(max_workers=guesses) as executor:
            outcomes = list(executor.map(guess, range(guesses)))

        assert VerificationOutcome.VERIFIED not in outcomes
        assert outcomes.count(VerificationOutcome.MISMATCH) == code_store.max_attempts - 1
        assert VerificationOutcome.TOO_MANY_ATTEMPTS in outcomes
        assert code_store.verify("IT-7", "581204") == VerificationOutcome.NOT_FOUND

    def test_correct_code_after_limit_rejected(self, code_store):
        code_store.store("IT-8", "246810")
        for wrong in ("000000", "000001", "000002"):
            code_store.verify("IT-8", wrong)

        assert code_store.verify("IT-8", "246810") == VerificationOutcome.NOT_FOUND

    def test_new_code_resets_attempts(self, code_store):
        code_store.store("IT-4", "123456")
        code_store.verify("IT-4", "654321")

        code_store.store("IT-4", "777777")

        assert code_store.get("IT-4").attempts == 0
        assert code_store.verify("IT-4", "777777") == VerificationOutcome.VERIFIED

    @pytest.mark.slow
    def test_code_expires(self, code_store):
        code_store.store("IT-5", "314159", ttl_seconds=1)

        time.sleep(1.5)

        assert code_store.get("IT-5") is None
        assert code_store.verify("IT-5", "314159") == VerificationOutcome.NOT_FOUND

    def test_delete(self, code_store):
        code_store.store("IT-6", "271828")
        code_store.delete("IT-6")

        assert code_store.get("IT-6") is None
        assert code_store.ping() is True
