"""
Domain Module - persisted tables and in-memory user copies.
"""

from followgraph.domain.models import FollowEdgeModel, UserModel
from followgraph.domain.user import (
    Direction,
    RelationshipSet,
    RelationshipSnapshot,
    RelationshipState,
    User,
)

__all__ = [
    "FollowEdgeModel",
    "UserModel",
    "Direction",
    "RelationshipSet",
    "RelationshipSnapshot",
    "RelationshipState",
    "User",
]
