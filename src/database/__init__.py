"""
Database integration layer for the classroom progress core.

Provides async PostgreSQL connectivity, the progress store queries, the
change-trigger DDL and the region cache used by dashboard reads.
"""

from .connection import (
    PoolConfig,
    DatabasePool,
    DatabaseConnectionError,
    get_database_pool,
    close_database_pool,
    create_pool_config,
)

from .queries import (
    ProgressStore,
    ProgressQueries,
)

from .cache import (
    InMemoryCache,
    RegionCache,
    PROGRESS_REGION,
    CLASS_AVERAGES_REGION,
)

from .schema import install_schema

__all__ = [
    # Connection
    'PoolConfig',
    'DatabasePool',
    'DatabaseConnectionError',
    'get_database_pool',
    'close_database_pool',
    'create_pool_config',

    # Queries
    'ProgressStore',
    'ProgressQueries',

    # Caching
    'InMemoryCache',
    'RegionCache',
    'PROGRESS_REGION',
    'CLASS_AVERAGES_REGION',

    # Schema
    'install_schema',
]
