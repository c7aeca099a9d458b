"""
Storage backends for the ballot store and the verification-code store.
"""

from .base import BallotStore, CastingSession, ReadSnapshot
from .memory import MemoryBallotStore
from ..config import Settings, settings as default_settings


def build_store(config: Settings = None) -> BallotStore:
    """
    Create the ballot store selected by STORAGE_BACKEND.

    Args:
        config: Settings to use (defaults to the process settings)

    Returns:
        BallotStore: A ready-to-use store
    """
    config = config or default_settings
    backend = config.STORAGE_BACKEND.lower()

    if backend == 'memory':
        return MemoryBallotStore(lock_timeout_seconds=config.CAST_LOCK_TIMEOUT_MS / 1000)

    if backend == 'postgres':
        from .postgres import PostgresBallotStore

        store = PostgresBallotStore(config)
        if config.AUTO_CREATE_SCHEMA:
            store.initialize_schema()
        return store

    raise ValueError(f"Unknown STORAGE_BACKEND '{config.STORAGE_BACKEND}'")


__all__ = [
    'BallotStore',
    'CastingSession',
    'ReadSnapshot',
    'MemoryBallotStore',
    'build_store',
]
