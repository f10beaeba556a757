"""
Graph Consistency Service.

Mutates the follow graph and keeps every in-memory User copy honest about
whether its relationship sets still match the store.

Staleness contract:
- A set is trustworthy right after it was loaded in the current unit of
  work, or right after a mutation applied to that exact copy in the current
  unit of work.
- follow/unfollow patch only the copy tracked by the unit of work for each
  endpoint, plus any copy passed in explicitly. A passed copy that was not
  already at the pre-mutation version is marked stale instead of patched.
- When the unit of work commits, every other known copy of the affected
  users is marked stale. Reading a stale set raises StaleReadViolation.
- Copies held by other processes are detected with verify().
- Counts always go to the store.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator, Callable

from sqlalchemy.exc import SQLAlchemyError

from followgraph.core.exceptions import FollowGraphError, InvalidReference
from followgraph.domain.user import Direction, RelationshipSet, RelationshipState, User
from followgraph.graph.copies import CopyRegistry
from followgraph.graph.store import RelationshipStore
from followgraph.infrastructure.database import Database
from followgraph.infrastructure.logging import log_context
from followgraph.infrastructure.transaction import UnitOfWork


logger = logging.getLogger(__name__)


class GraphConsistencyService:
    """
    Follow/unfollow with explicit in-memory staleness tracking.

    Every public operation accepts an optional ``uow``. Without one, the
    operation runs in its own unit of work and commits before returning.
    A store error or InvalidReference raised inside a caller's unit of work
    aborts it: the unit of work is rolled back and can no longer commit.

    Usage:
        service = GraphConsistencyService(database)

        async with service.unit_of_work() as uow:
            alice = await service.get_user(1, uow=uow)
            await service.follow(1, 2, uow=uow)
            assert 2 in alice.following

        assert await service.following_count(1) == 1
    """

    def __init__(
        self,
        database: Database,
        store: RelationshipStore | None = None,
    ):
        self._database = database
        self._store = store or RelationshipStore()
        self._copies = CopyRegistry()

    @property
    def store(self) -> RelationshipStore:
        return self._store

    @property
    def copies(self) -> CopyRegistry:
        return self._copies

    # ===== Units of work =====

    @asynccontextmanager
    async def unit_of_work(self) -> AsyncIterator[UnitOfWork]:
        """Open a unit of work that commits on success and rolls back on error."""
        uow = UnitOfWork(self._database.session_maker, on_commit=self._publish_changes)
        with log_context(unit_id=uow.unit_id):
            async with uow:
                yield uow

    @asynccontextmanager
    async def _scope(self, uow: UnitOfWork | None) -> AsyncIterator[UnitOfWork]:
        if uow is not None:
            uow.ensure_active()
            try:
                yield uow
            except (FollowGraphError, SQLAlchemyError) as e:
                if uow.is_active:
                    await uow.abort(e)
                raise
            return
        async with self.unit_of_work() as own:
            yield own

    def _publish_changes(self, uow: UnitOfWork) -> None:
        marked = 0
        for (user_id, direction), version in uow.changes.versions.items():
            marked += self._copies.invalidate(user_id, direction, version)
        for user_id in uow.changes.removed_users:
            marked += self._copies.invalidate_user(user_id, f"user {user_id} was deleted")
        if marked:
            logger.info(f"Marked {marked} relationship set(s) stale after {uow.unit_id}")

    # ===== Users =====

    async def create_user(
        self,
        name: str,
        *,
        user_id: int | None = None,
        uow: UnitOfWork | None = None,
    ) -> User:
        """Create a user. The returned copy starts with empty, loaded sets."""
        async with self._scope(uow) as scope:
            row = await self._store.create_user(scope.session, name, user_id=user_id)
            user = User(row.id, row.name, unit_id=scope.unit_id)
            for direction, version in (
                (Direction.FOLLOWING, row.following_version),
                (Direction.FOLLOWERS, row.followers_version),
            ):
                scope.record(user.relationship(direction))
                user.relationship(direction).load((), version)
            scope.track(user)
            self._copies.register(user)
            logger.info(f"Created user {row.id} ({row.name})")
            return user

    async def get_user(
        self,
        user_id: int,
        *,
        uow: UnitOfWork | None = None,
        load_relationships: bool = True,
    ) -> User:
        """
        Return the unit of work's copy of a user, loading it if needed.

        With ``load_relationships=False`` a new copy starts with UNLOADED sets
        and reading them raises RelationshipNotLoaded.

        Raises:
            InvalidReference: User does not exist
        """
        async with self._scope(uow) as scope:
            user = scope.get(user_id)
            if user is None:
                row = await self._store.get_user_row(scope.session, user_id)
                if row is None:
                    raise InvalidReference(
                        f"User {user_id} does not exist",
                        user_ids=(user_id,),
                        operation="get_user",
                    )
                user = scope.track(User(row.id, row.name, unit_id=scope.unit_id))
                self._copies.register(user)

            if load_relationships:
                for direction in Direction:
                    if not user.relationship(direction).is_loaded:
                        await self._load(scope, user, direction)
            return user

    async def delete_user(self, user_id: int, *, uow: UnitOfWork | None = None) -> bool:
        """
        Delete a user and its edges. Every copy of the user goes stale, and
        so do the affected sets of its former neighbours.

        Returns:
            False if the user did not exist
        """
        with log_context(user_id=user_id):
            async with self._scope(uow) as scope:
                removed = await self._store.delete_user(scope.session, user_id)
                if removed is None:
                    return False

                held = scope.forget(user_id)
                if held is not None:
                    for direction in Direction:
                        scope.record(held.relationship(direction))
                        held.relationship(direction).mark_stale(
                            f"user {user_id} was deleted", unit_id=scope.unit_id
                        )
                scope.note_removed(user_id)

                drop = _discard(user_id)
                for followee_id in removed.following:
                    await self._sync_copies(scope, followee_id, Direction.FOLLOWERS, True, drop)
                for follower_id in removed.followers:
                    await self._sync_copies(scope, follower_id, Direction.FOLLOWING, True, drop)

                logger.info(
                    f"Deleted user {user_id} with {len(removed.following)} following "
                    f"and {len(removed.followers)} follower edge(s)"
                )
                return True

    # ===== Follow graph =====

    async def follow(
        self,
        user_id: int,
        target_id: int,
        *,
        uow: UnitOfWork | None = None,
        user: User | None = None,
        target: User | None = None,
    ) -> bool:
        """
        Make ``user_id`` follow ``target_id``. Idempotent.

        Args:
            user_id: Follower
            target_id: Followee
            uow: Unit of work to run in (own unit of work if omitted)
            user: Copy of the follower to patch in addition to the tracked one
            target: Copy of the followee to patch in addition to the tracked one

        Returns:
            True if a new edge was written

        Raises:
            InvalidReference: Self-follow or unknown user
            StoreUnavailable: Store unreachable; nothing was applied
        """
        return await self._mutate(user_id, target_id, present=True, uow=uow, user=user, target=target)

    async def unfollow(
        self,
        user_id: int,
        target_id: int,
        *,
        uow: UnitOfWork | None = None,
        user: User | None = None,
        target: User | None = None,
    ) -> bool:
        """Remove the edge ``user_id -> target_id``. Idempotent; same contract as follow()."""
        return await self._mutate(user_id, target_id, present=False, uow=uow, user=user, target=target)

    async def _mutate(
        self,
        user_id: int,
        target_id: int,
        *,
        present: bool,
        uow: UnitOfWork | None,
        user: User | None,
        target: User | None,
    ) -> bool:
        _check_copy(user, user_id, "user")
        _check_copy(target, target_id, "target")
        action = "follow" if present else "unfollow"

        with log_context(action=action, user_id=user_id, target_id=target_id):
            async with self._scope(uow) as scope:
                if present:
                    changed = await self._store.insert_edge(scope.session, user_id, target_id)
                else:
                    changed = await self._store.delete_edge(scope.session, user_id, target_id)

                await self._sync_copies(
                    scope, user_id, Direction.FOLLOWING, changed,
                    _add(target_id) if present else _discard(target_id), explicit=user,
                )
                await self._sync_copies(
                    scope, target_id, Direction.FOLLOWERS, changed,
                    _add(user_id) if present else _discard(user_id), explicit=target,
                )

                if changed:
                    logger.info(f"{action}: {user_id} -> {target_id}")
                else:
                    logger.debug(f"{action}: {user_id} -> {target_id} already in place")
                return changed

    async def _sync_copies(
        self,
        scope: UnitOfWork,
        owner_id: int,
        direction: Direction,
        changed: bool,
        patch: Callable[[RelationshipSet, int], None],
        explicit: User | None = None,
    ) -> None:
        """
        Bring the tracked and explicitly passed copies of one set in line
        with a change just written to the store.

        A loaded copy at the pre-change version is patched; any other loaded
        copy is marked stale.
        """
        following_version, followers_version = await self._store.relationship_versions(
            scope.session, owner_id
        )
        version = following_version if direction is Direction.FOLLOWING else followers_version
        expected = version - 1 if changed else version

        candidates: list[User] = []
        for copy in (scope.get(owner_id), explicit):
            if copy is not None and all(copy is not c for c in candidates):
                candidates.append(copy)

        for copy in candidates:
            rel_set = copy.relationship(direction)
            if not rel_set.is_loaded:
                continue
            if rel_set.version == expected:
                if changed:
                    scope.record(rel_set)
                    patch(rel_set, version)
            else:
                scope.record(rel_set)
                rel_set.mark_stale(
                    f"copy was at version {rel_set.version}, store moved to {version}",
                    unit_id=scope.unit_id,
                )

        if changed:
            scope.note_change(owner_id, direction, version)

    # ===== Counts =====

    async def following_count(self, user_id: int, *, uow: UnitOfWork | None = None) -> int:
        """Fresh count of users ``user_id`` follows. Never reads a cached set."""
        async with self._scope(uow) as scope:
            return await self._store.count_by_follower(scope.session, user_id)

    async def follower_count(self, user_id: int, *, uow: UnitOfWork | None = None) -> int:
        """Fresh count of users following ``user_id``. Never reads a cached set."""
        async with self._scope(uow) as scope:
            return await self._store.count_by_followee(scope.session, user_id)

    # ===== Reloading =====

    async def reload(self, user_id: int, *, uow: UnitOfWork | None = None) -> User:
        """
        Discard the unit of work's relationship sets for ``user_id`` and load
        them fresh. Creates the copy if the unit of work holds none.

        Raises:
            InvalidReference: User does not exist
        """
        async with self._scope(uow) as scope:
            user = scope.get(user_id)
            if user is None:
                return await self.get_user(user_id, uow=scope)
            for direction in Direction:
                await self._load(scope, user, direction)
            logger.debug(f"Reloaded user {user_id}")
            return user

    async def refresh(self, user: User, *, uow: UnitOfWork | None = None) -> User:
        """
        Reload the sets of a specific copy in place.

        The copy is adopted by the unit of work if it holds no copy of that
        user yet.
        """
        async with self._scope(uow) as scope:
            if not await self._store.user_exists(scope.session, user.id):
                raise InvalidReference(
                    f"User {user.id} does not exist",
                    user_ids=(user.id,),
                    operation="refresh",
                )
            scope.track(user)
            self._copies.register(user)
            for direction in Direction:
                await self._load(scope, user, direction)
            logger.debug(f"Refreshed copy of user {user.id}")
            return user

    async def verify(self, user: User, *, uow: UnitOfWork | None = None) -> bool:
        """
        Compare a copy's loaded versions with the store and mark sets that
        fell behind as stale. Detects changes made by other processes.

        Returns:
            True if every set of the copy is loaded and current
        """
        async with self._scope(uow) as scope:
            row = await self._store.get_user_row(scope.session, user.id)
            if row is None:
                for direction in Direction:
                    user.relationship(direction).mark_stale(f"user {user.id} no longer exists")
                return False

            current = {
                Direction.FOLLOWING: row.following_version,
                Direction.FOLLOWERS: row.followers_version,
            }
            for direction, version in current.items():
                rel_set = user.relationship(direction)
                if rel_set.state is RelationshipState.UNLOADED or rel_set.version == version:
                    continue
                if rel_set.mark_stale(f"copy was at version {rel_set.version}, store is at {version}"):
                    logger.info(f"{direction.value} of user {user.id} is stale")
            return user.is_fresh

    async def clear_edges(self, *, uow: UnitOfWork | None = None) -> int:
        """Delete every edge. Returns the number of edges removed."""
        async with self._scope(uow) as scope:
            edges = await self._store.clear_edges(scope.session)
            affected = {(follower_id, Direction.FOLLOWING) for follower_id, _ in edges}
            affected |= {(followee_id, Direction.FOLLOWERS) for _, followee_id in edges}
            for owner_id, direction in sorted(affected):
                await self._sync_copies(scope, owner_id, direction, True, _empty)
            logger.info(f"Cleared {len(edges)} edge(s)")
            return len(edges)

    async def _load(self, scope: UnitOfWork, user: User, direction: Direction) -> None:
        if direction is Direction.FOLLOWING:
            members = await self._store.following_ids(scope.session, user.id)
        else:
            members = await self._store.follower_ids(scope.session, user.id)
        following_version, followers_version = await self._store.relationship_versions(
            scope.session, user.id
        )
        version = following_version if direction is Direction.FOLLOWING else followers_version

        rel_set = user.relationship(direction)
        scope.record(rel_set)
        rel_set.load(members, version)


def _check_copy(copy: User | None, expected_id: int, role: str) -> None:
    if copy is not None and copy.id != expected_id:
        raise ValueError(f"{role} copy has id {copy.id}, expected {expected_id}")


def _add(member_id: int) -> Callable[[RelationshipSet, int], None]:
    return lambda rel_set, version: rel_set.apply(member_id, True, version)


def _discard(member_id: int) -> Callable[[RelationshipSet, int], None]:
    return lambda rel_set, version: rel_set.apply(member_id, False, version)


def _empty(rel_set: RelationshipSet, version: int) -> None:
    rel_set.load((), version)

