"""Tests for verification code store argument handling.

These run without a Redis server: the client only connects on its first
command, and invalid lifetimes are rejected before any command is sent.
"""

import pytest
import redis

from election_services.storage.redis_client import VerificationCodeStore


@pytest.fixture
def offline_code_store(test_settings) -> VerificationCodeStore:
    """Code store whose client points at an unused port."""
    client = redis.Redis(host="localhost", port=1, decode_responses=True)
    return VerificationCodeStore(client=client, config=test_settings)


class TestCodeLifetime:

    @pytest.mark.parametrize("ttl_seconds", [0, -1, -600])
    def test_non_positive_lifetime_rejected(self, offline_code_store, ttl_seconds):
        with pytest.raises(ValueError):
            offline_code_store.store("V1", "123456", ttl_seconds=ttl_seconds)

    def test_configured_lifetime_used_by_default(self, offline_code_store, test_settings):
        assert offline_code_store.ttl_seconds == test_settings.VERIFICATION_CODE_TTL_SECONDS
        assert offline_code_store.max_attempts == test_settings.VERIFICATION_MAX_ATTEMPTS
