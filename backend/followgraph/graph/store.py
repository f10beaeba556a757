"""
Relationship Store - durable follow edges.

All operations run inside the caller's AsyncSession, so reads observe writes
made earlier in the same unit of work. Nothing here is cached: every count
and id set is a fresh query.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Iterable

from sqlalchemy import delete, func, or_, select, text, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.ext.asyncio import AsyncSession

from followgraph.core.exceptions import InvalidReference, handle_store_errors
from followgraph.domain.models import FollowEdgeModel, UserModel


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class UserRow:
    """Plain snapshot of a user row."""
    id: int
    name: str
    following_version: int
    followers_version: int


@dataclass(frozen=True)
class RemovedUser:
    """Neighbours of a deleted user, captured before the cascade."""
    user_id: int
    following: frozenset[int]
    followers: frozenset[int]


class RelationshipStore:
    """
    SQLAlchemy-backed store of follow edges.

    Every edge insert/delete bumps the follower's ``following_version`` and
    the followee's ``followers_version`` in the same transaction.

    Usage:
        store = RelationshipStore()
        async with session_maker() as session:
            await store.insert_edge(session, 1, 2)
            await session.commit()
    """

    # ===== Edge Operations =====

    @handle_store_errors()
    async def insert_edge(self, session: AsyncSession, follower_id: int, followee_id: int) -> bool:
        """
        Insert an edge. Inserting an existing edge is a no-op.

        Returns:
            True if a new edge was written

        Raises:
            InvalidReference: Self-follow or missing user
            StoreUnavailable: Store unreachable
        """
        if follower_id == followee_id:
            raise InvalidReference(
                f"User {follower_id} cannot follow themselves",
                user_ids=(follower_id,),
                operation="insert_edge",
            )
        await self._require_users(session, (follower_id, followee_id), "insert_edge")

        values = {"follower_id": follower_id, "followee_id": followee_id}
        dialect = session.get_bind().dialect.name

        if dialect == "postgresql":
            stmt = pg_insert(FollowEdgeModel).values(**values).on_conflict_do_nothing(
                index_elements=["follower_id", "followee_id"]
            )
            inserted = (await session.execute(stmt)).rowcount > 0
        elif dialect == "sqlite":
            stmt = sqlite_insert(FollowEdgeModel).values(**values).on_conflict_do_nothing()
            inserted = (await session.execute(stmt)).rowcount > 0
        else:
            inserted = not await self.edge_exists(session, follower_id, followee_id)
            if inserted:
                session.add(FollowEdgeModel(**values))
                await session.flush()

        if inserted:
            await self._bump_versions(session, following=[follower_id], followers=[followee_id])
            logger.debug(f"Edge inserted: {follower_id} -> {followee_id}")
        return inserted

    @handle_store_errors()
    async def delete_edge(self, session: AsyncSession, follower_id: int, followee_id: int) -> bool:
        """
        Delete an edge. Deleting a missing edge is a no-op.

        Returns:
            True if an edge was removed
        """
        result = await session.execute(
            delete(FollowEdgeModel).where(
                FollowEdgeModel.follower_id == follower_id,
                FollowEdgeModel.followee_id == followee_id,
            )
        )
        deleted = result.rowcount > 0
        if deleted:
            await self._bump_versions(session, following=[follower_id], followers=[followee_id])
            logger.debug(f"Edge deleted: {follower_id} -> {followee_id}")
        return deleted

    @handle_store_errors()
    async def edge_exists(self, session: AsyncSession, follower_id: int, followee_id: int) -> bool:
        result = await session.execute(
            select(FollowEdgeModel.follower_id).where(
                FollowEdgeModel.follower_id == follower_id,
                FollowEdgeModel.followee_id == followee_id,
            )
        )
        return result.first() is not None

    @handle_store_errors()
    async def clear_edges(self, session: AsyncSession) -> list[tuple[int, int]]:
        """
        Delete every edge.

        Returns:
            The removed (follower_id, followee_id) pairs
        """
        result = await session.execute(
            select(FollowEdgeModel.follower_id, FollowEdgeModel.followee_id)
        )
        edges = [(row.follower_id, row.followee_id) for row in result]
        if not edges:
            return []

        await session.execute(delete(FollowEdgeModel))
        await self._bump_versions(
            session,
            following={follower for follower, _ in edges},
            followers={followee for _, followee in edges},
        )
        logger.debug(f"Cleared {len(edges)} edges")
        return edges

    # ===== Counts and id sets =====

    @handle_store_errors()
    async def count_by_follower(self, session: AsyncSession, user_id: int) -> int:
        """Number of users ``user_id`` follows."""
        result = await session.execute(
            select(func.count()).select_from(FollowEdgeModel).where(
                FollowEdgeModel.follower_id == user_id
            )
        )
        return int(result.scalar_one() or 0)

    @handle_store_errors()
    async def count_by_followee(self, session: AsyncSession, user_id: int) -> int:
        """Number of users following ``user_id``."""
        result = await session.execute(
            select(func.count()).select_from(FollowEdgeModel).where(
                FollowEdgeModel.followee_id == user_id
            )
        )
        return int(result.scalar_one() or 0)

    @handle_store_errors()
    async def following_ids(self, session: AsyncSession, user_id: int) -> set[int]:
        result = await session.execute(
            select(FollowEdgeModel.followee_id).where(FollowEdgeModel.follower_id == user_id)
        )
        return set(result.scalars().all())

    @handle_store_errors()
    async def follower_ids(self, session: AsyncSession, user_id: int) -> set[int]:
        result = await session.execute(
            select(FollowEdgeModel.follower_id).where(FollowEdgeModel.followee_id == user_id)
        )
        return set(result.scalars().all())

    # ===== Users =====

    @handle_store_errors()
    async def create_user(
        self,
        session: AsyncSession,
        name: str,
        user_id: int | None = None,
    ) -> UserRow:
        model = UserModel(name=name, following_version=0, followers_version=0)
        if user_id is not None:
            model.id = user_id
        session.add(model)
        await session.flush()

        row = UserRow(
            id=model.id,
            name=model.name,
            following_version=model.following_version,
            followers_version=model.followers_version,
        )
        # Rows are always re-read with column selects; keep the identity map empty.
        session.expunge(model)
        logger.debug(f"User created: {row.id}")
        return row

    @handle_store_errors()
    async def get_user_row(self, session: AsyncSession, user_id: int) -> UserRow | None:
        result = await session.execute(
            select(
                UserModel.id,
                UserModel.name,
                UserModel.following_version,
                UserModel.followers_version,
            ).where(UserModel.id == user_id)
        )
        row = result.first()
        if row is None:
            return None
        return UserRow(
            id=row.id,
            name=row.name,
            following_version=row.following_version,
            followers_version=row.followers_version,
        )

    @handle_store_errors()
    async def user_exists(self, session: AsyncSession, user_id: int) -> bool:
        result = await session.execute(select(UserModel.id).where(UserModel.id == user_id))
        return result.first() is not None

    @handle_store_errors()
    async def relationship_versions(self, session: AsyncSession, user_id: int) -> tuple[int, int]:
        """
        Returns:
            (following_version, followers_version)

        Raises:
            InvalidReference: User does not exist
        """
        row = await self.get_user_row(session, user_id)
        if row is None:
            raise InvalidReference(
                f"User {user_id} does not exist",
                user_ids=(user_id,),
                operation="relationship_versions",
            )
        return row.following_version, row.followers_version

    @handle_store_errors()
    async def delete_user(self, session: AsyncSession, user_id: int) -> RemovedUser | None:
        """
        Delete a user together with every edge touching it.

        Returns:
            The user's neighbours before deletion, or None if it did not exist
        """
        if not await self.user_exists(session, user_id):
            return None

        following = await self.following_ids(session, user_id)
        followers = await self.follower_ids(session, user_id)

        await self._bump_versions(session, following=followers, followers=following)
        # Explicit delete keeps dialects without enforced cascades consistent.
        await session.execute(
            delete(FollowEdgeModel).where(
                or_(
                    FollowEdgeModel.follower_id == user_id,
                    FollowEdgeModel.followee_id == user_id,
                )
            )
        )
        await session.execute(delete(UserModel).where(UserModel.id == user_id))
        logger.debug(f"User deleted: {user_id}")

        return RemovedUser(
            user_id=user_id,
            following=frozenset(following),
            followers=frozenset(followers),
        )

    @handle_store_errors()
    async def ping(self, session: AsyncSession) -> dict[str, Any]:
        await session.execute(text("SELECT 1"))
        return {
            "status": "healthy",
            "dialect": session.get_bind().dialect.name,
        }

    # ===== Internals =====

    async def _require_users(
        self,
        session: AsyncSession,
        user_ids: Iterable[int],
        operation: str,
    ) -> None:
        wanted = set(user_ids)
        result = await session.execute(select(UserModel.id).where(UserModel.id.in_(wanted)))
        missing = wanted - set(result.scalars().all())
        if missing:
            raise InvalidReference(
                f"Unknown user(s): {sorted(missing)}",
                user_ids=sorted(missing),
                operation=operation,
            )

    async def _bump_versions(
        self,
        session: AsyncSession,
        following: Iterable[int] = (),
        followers: Iterable[int] = (),
    ) -> None:
        following = set(following)
        followers = set(followers)
        if following:
            await session.execute(
                update(UserModel)
                .where(UserModel.id.in_(following))
                .values(following_version=UserModel.following_version + 1)
            )
        if followers:
            await session.execute(
                update(UserModel)
                .where(UserModel.id.in_(followers))
                .values(followers_version=UserModel.followers_version + 1)
            )
