"""
Infrastructure Module - Core infrastructure components.

Provides:
- database: Engine and session management
- logging: Logging configuration and utilities
- transaction: Units of work
"""

from followgraph.infrastructure.database import Base, Database
from followgraph.infrastructure.logging import get_logger, log_context, setup_logging

__all__ = [
    "Base",
    "Database",
    "get_logger",
    "log_context",
    "setup_logging",
]
