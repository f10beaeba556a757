"""
SQLAlchemy models for users and follow edges.
"""

from sqlalchemy import BigInteger, CheckConstraint, ForeignKey, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from followgraph.infrastructure.database import Base

# SQLite only autoincrements INTEGER PRIMARY KEY columns.
UserId = BigInteger().with_variant(Integer, "sqlite")


class UserModel(Base):
    """User row. Relationship versions are bumped on every edge change."""

    __tablename__ = "user_"

    id: Mapped[int] = mapped_column(UserId, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    following_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    followers_version: Mapped[int] = mapped_column(Integer, nullable=False, default=0)


class FollowEdgeModel(Base):
    """Directed edge: follower_id follows followee_id."""

    __tablename__ = "followers"
    __table_args__ = (
        CheckConstraint("follower_id <> followee_id", name="ck_followers_no_self_follow"),
        Index("ix_followers_followee_id", "followee_id"),
    )

    follower_id: Mapped[int] = mapped_column(
        UserId, ForeignKey("user_.id", ondelete="CASCADE"), primary_key=True
    )
    followee_id: Mapped[int] = mapped_column(
        UserId, ForeignKey("user_.id", ondelete="CASCADE"), primary_key=True
    )
