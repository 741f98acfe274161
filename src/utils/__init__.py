"""
Utility modules for the classroom progress core.
"""

from .retry import RetryExhaustedError, RetryPolicy

__all__ = [
    'RetryExhaustedError',
    'RetryPolicy',
]
