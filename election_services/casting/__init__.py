"""Vote casting transaction."""

from .caster import BallotCaster

__all__ = ['BallotCaster']
