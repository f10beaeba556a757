"""
followgraph - a follow graph whose in-memory copies know when they are stale.

Usage:
    from followgraph import Database, GraphConsistencyService

    database = Database()
    await database.init_models()
    service = GraphConsistencyService(database)
"""

from followgraph.core import (
    FollowGraphError,
    FollowGraphSettings,
    InvalidReference,
    RelationshipNotLoaded,
    StaleReadViolation,
    StoreUnavailable,
    UnitOfWorkError,
    get_config,
    load_config,
)
from followgraph.domain import Direction, RelationshipState, User
from followgraph.graph import GraphConsistencyService, RelationshipStore
from followgraph.infrastructure import Database, setup_logging
from followgraph.infrastructure.transaction import UnitOfWork

__version__ = "0.1.0"

__all__ = [
    "FollowGraphError",
    "FollowGraphSettings",
    "InvalidReference",
    "RelationshipNotLoaded",
    "StaleReadViolation",
    "StoreUnavailable",
    "UnitOfWorkError",
    "get_config",
    "load_config",
    "Direction",
    "RelationshipState",
    "User",
    "GraphConsistencyService",
    "RelationshipStore",
    "Database",
    "setup_logging",
    "UnitOfWork",
]
