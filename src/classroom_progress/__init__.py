"""
Classroom Progress Core

Aggregation of class averages from progress entries and realtime cache
invalidation for the classroom progress dashboards.
"""

__version__ = "0.1.0"
