"""
Infrastructure Database Module.

Provides database connection and session management.
"""

from .database import Base, Database

__all__ = ["Base", "Database"]
