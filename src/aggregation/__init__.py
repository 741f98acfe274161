"""
Class average aggregation: full recompute of per-(class, subject) averages.
"""

from .aggregator import (
    AggregationResult,
    AggregationSetupError,
    AggregatorConfig,
    ClassAverageAggregator,
    FailureDetail,
    compute_average,
    pair_same_school,
)

__all__ = [
    'AggregationResult',
    'AggregationSetupError',
    'AggregatorConfig',
    'ClassAverageAggregator',
    'FailureDetail',
    'compute_average',
    'pair_same_school',
]
