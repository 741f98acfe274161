"""
Realtime change propagation: change feed listener, transports and the cache
invalidation broker.
"""

from .events import ChangeEvent, OperationKind, Topic
from .transport import FeedDisconnectedError, FeedTransport, PostgresNotifyTransport
from .broker import REGIONS_BY_TABLE, CacheInvalidationBroker
from .change_feed import ChangeFeedListener, SubscriptionHandle

__all__ = [
    # Events
    'ChangeEvent',
    'OperationKind',
    'Topic',

    # Transports
    'FeedDisconnectedError',
    'FeedTransport',
    'PostgresNotifyTransport',

    # Invalidation
    'REGIONS_BY_TABLE',
    'CacheInvalidationBroker',

    # Listener
    'ChangeFeedListener',
    'SubscriptionHandle',
]
