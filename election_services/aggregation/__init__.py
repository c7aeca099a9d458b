"""Results aggregation and publication-gated views."""

from .aggregator import ResultsAggregator, rank_position

__all__ = ['ResultsAggregator', 'rank_position']
