"""
Follow Graph - relationship store and consistency service.

Provides:
- RelationshipStore: durable follow edges
- GraphConsistencyService: follow/unfollow with staleness tracking
- CopyRegistry: weak index of in-memory user copies
"""

from followgraph.graph.copies import CopyRegistry
from followgraph.graph.service import GraphConsistencyService
from followgraph.graph.store import RelationshipStore, RemovedUser, UserRow

__all__ = [
    "CopyRegistry",
    "GraphConsistencyService",
    "RelationshipStore",
    "RemovedUser",
    "UserRow",
]
