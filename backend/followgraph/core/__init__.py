"""
Core Module - configuration and error hierarchy.
"""

from followgraph.core.config import (
    DatabaseSettings,
    FollowGraphSettings,
    LoggingSettings,
    get_config,
    load_config,
    set_config,
)
from followgraph.core.exceptions import (
    ErrorCategory,
    ErrorSeverity,
    FollowGraphError,
    InvalidReference,
    RelationshipNotLoaded,
    StaleReadViolation,
    StoreUnavailable,
    UnitOfWorkError,
    handle_store_errors,
)

__all__ = [
    "DatabaseSettings",
    "FollowGraphSettings",
    "LoggingSettings",
    "get_config",
    "load_config",
    "set_config",
    "ErrorCategory",
    "ErrorSeverity",
    "FollowGraphError",
    "InvalidReference",
    "RelationshipNotLoaded",
    "StaleReadViolation",
    "StoreUnavailable",
    "UnitOfWorkError",
    "handle_store_errors",
]
