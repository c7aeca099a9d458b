"""Redis-backed store for pending identity verification codes."""

import hmac
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Tuple

import redis

from ..config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

KEY_TEMPLATE = 'verification_code:{}'


class VerificationOutcome(str, Enum):
    """Result of checking a submitted verification code."""
    VERIFIED = "verified"
    MISMATCH = "mismatch"
    NOT_FOUND = "not_found"
    TOO_MANY_ATTEMPTS = "too_many_attempts"


@dataclass
class PendingCode:
    """A stored code with its attempt counter and remaining lifetime."""
    code: str
    attempts: int
    ttl_seconds: int


class VerificationCodeStore:
    """
    Expiring key-value store for verification codes, keyed by voter id.

    Each code lives in a Redis hash {code, attempts} whose expiry is the code
    lifetime. Every check claims an attempt with HINCRBY before the code is
    compared, so concurrent guesses against one code cannot exceed the limit.
    """

    def __init__(
        self,
        client: Optional[redis.Redis] = None,
        config: Optional[Settings] = None
    ):
        """Initialize Redis connection pool."""
        self.config = config or default_settings
        self.pool = None
        if client is None:
            self.pool = redis.ConnectionPool(
                host=self.config.REDIS_HOST,
                port=self.config.REDIS_PORT,
                db=self.config.REDIS_DB,
                password=self.config.REDIS_PASSWORD,
                max_connections=self.config.REDIS_MAX_CONNECTIONS,
                decode_responses=True,
                socket_connect_timeout=5,
                socket_keepalive=True,
                health_check_interval=30
            )
            client = redis.Redis(connection_pool=self.pool)
        self.client = client
        self.ttl_seconds = self.config.VERIFICATION_CODE_TTL_SECONDS
        self.max_attempts = self.config.VERIFICATION_MAX_ATTEMPTS

    @staticmethod
    def _key(voter_id: str) -> str:
        return KEY_TEMPLATE.format(voter_id)

    def ping(self) -> bool:
        """Return True if Redis answers."""
        try:
            return bool(self.client.ping())
        except redis.RedisError as e:
            logger.error(f"Redis ping failed: {e}")
            return False

    def store(self, voter_id: str, code: str, ttl_seconds: Optional[int] = None) -> None:
        """
        Store a new code for a voter, replacing any pending one.

        Args:
            voter_id: The voter the code was issued to
            code: The verification code
            ttl_seconds: Lifetime override (defaults to configured TTL)
        """
        key = self._key(voter_id)
        ttl = ttl_seconds if ttl_seconds is not None else self.ttl_seconds
        if ttl <= 0:
            raise ValueError(f"Verification code lifetime must be positive, got {ttl}")
        try:
            pipe = self.client.pipeline(transaction=True)
            pipe.delete(key)
            pipe.hset(key, mapping={'code': code, 'attempts': 0})
            pipe.expire(key, ttl)
            pipe.execute()
            logger.debug(f"Stored verification code for voter {voter_id} (ttl {ttl}s)")
        except redis.RedisError as e:
            logger.error(f"Redis error storing verification code: {e}")
            raise

    def get(self, voter_id: str) -> Optional[PendingCode]:
        """
        Get the pending code for a voter.

        Returns:
            PendingCode, or None when missing or expired
        """
        key = self._key(voter_id)
        try:
            pipe = self.client.pipeline(transaction=True)
            pipe.hgetall(key)
            pipe.ttl(key)
            data, ttl = pipe.execute()
        except redis.RedisError as e:
            logger.error(f"Redis error reading verification code: {e}")
            raise

        if not data:
            return None
        return PendingCode(
            code=data['code'],
            attempts=int(data.get('attempts', 0)),
            ttl_seconds=max(int(ttl), 0)
        )

    def delete(self, voter_id: str) -> None:
        """Remove any pending code for a voter."""
        try:
            self.client.delete(self._key(voter_id))
        except redis.RedisError as e:
            logger.error(f"Redis error deleting verification code: {e}")
            raise

    def verify(self, voter_id: str, code: str) -> VerificationOutcome:
        """
        Check a submitted code.

        A matching code is consumed. A mismatch counts as an attempt; once
        the attempt limit is reached the code is discarded and a new one must
        be issued.

        Args:
            voter_id: The voter submitting the code
            code: The submitted code

        Returns:
            VerificationOutcome
        """
        claimed = self._claim_attempt(voter_id)
        if claimed is None:
            return VerificationOutcome.NOT_FOUND

        stored_code, attempts = claimed
        if attempts > self.max_attempts:
            self.delete(voter_id)
            return VerificationOutcome.TOO_MANY_ATTEMPTS

        if hmac.compare_digest(stored_code, code):
            self.delete(voter_id)
            logger.info(f"Verification code accepted for voter {voter_id}")
            return VerificationOutcome.VERIFIED

        logger.info(f"Verification code mismatch for voter {voter_id} (attempt {attempts})")
        if attempts >= self.max_attempts:
            self.delete(voter_id)
            return VerificationOutcome.TOO_MANY_ATTEMPTS
        return VerificationOutcome.MISMATCH

    def _claim_attempt(self, voter_id: str) -> Optional[Tuple[str, int]]:
        """
        Count one attempt against the pending code before it is compared.

        Reads the code and increments the counter in one WATCH/MULTI
        transaction, so every concurrent check gets a distinct attempt
        number and no more than max_attempts comparisons can happen per code.

        Returns:
            (stored code, attempt number), or None when no code is pending
        """
        key = self._key(voter_id)
        try:
            with self.client.pipeline(transaction=True) as pipe:
                while True:
                    try:
                        pipe.watch(key)
                        stored_code = pipe.hget(key, 'code')
                        if stored_code is None:
                            return None
                        pipe.multi()
                        pipe.hincrby(key, 'attempts', 1)
                        attempts, = pipe.execute()
                        return stored_code, int(attempts)
                    except redis.WatchError:
                        # another check or a new code changed the key; re-read
                        continue
        except redis.RedisError as e:
            logger.error(f"Redis error counting verification attempt: {e}")
            raise

    def remaining_attempts(self, voter_id: str) -> int:
        """Attempts left before the pending code is discarded."""
        pending = self.get(voter_id)
        if pending is None:
            return 0
        return max(self.max_attempts - pending.attempts, 0)

    def close(self):
        """Close Redis connection pool."""
        if self.pool is None:
            return
        try:
            self.pool.disconnect()
            logger.info("Redis connection pool closed")
        except redis.RedisError as e:
            logger.error(f"Error closing Redis connection: {e}")
