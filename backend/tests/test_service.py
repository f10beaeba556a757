"""
Tests for GraphConsistencyService.

Follow/unfollow, fresh counts, staleness detection across units of work,
rollback, and detection of changes made through another service.
"""

import random

import pytest

from followgraph.core.exceptions import (
    InvalidReference,
    RelationshipNotLoaded,
    StaleReadViolation,
    UnitOfWorkError,
)
from followgraph.domain.user import Direction, RelationshipState
from followgraph.graph import GraphConsistencyService
from followgraph.infrastructure.transaction import UnitOfWorkState


class TestFollowScenario:
    """The basic A follows B, A unfollows B walk-through."""

    @pytest.mark.asyncio
    async def test_follow_then_unfollow_counts(self, service, users):
        await service.follow(1, 2)

        assert await service.following_count(1) == 1
        assert await service.follower_count(2) == 1
        assert await service.following_count(2) == 0
        assert await service.follower_count(1) == 0

        await service.unfollow(1, 2)

        assert await service.following_count(1) == 0
        assert await service.follower_count(2) == 0

    @pytest.mark.asyncio
    async def test_follow_is_idempotent(self, service, users):
        assert await service.follow(1, 2) is True
        assert await service.follow(1, 2) is False

        assert await service.following_count(1) == 1

    @pytest.mark.asyncio
    async def test_unfollow_missing_edge_is_noop(self, service, users):
        assert await service.unfollow(1, 2) is False
        assert await service.following_count(1) == 0

    @pytest.mark.asyncio
    async def test_follow_round_trip(self, service, users):
        await service.follow(1, 2)
        await service.unfollow(1, 2)
        await service.follow(1, 2)

        a = await service.get_user(1)
        b = await service.get_user(2)
        assert a.following == {2}
        assert b.followers == {1}

    @pytest.mark.asyncio
    async def test_counts_for_unknown_user(self, service, users):
        assert await service.following_count(99) == 0
        assert await service.follower_count(99) == 0

    @pytest.mark.asyncio
    async def test_self_follow(self, service, users):
        with pytest.raises(InvalidReference):
            await service.follow(1, 1)

    @pytest.mark.asyncio
    async def test_follow_unknown_user(self, service, users):
        with pytest.raises(InvalidReference):
            await service.follow(1, 99)
        with pytest.raises(InvalidReference):
            await service.unfollow(1, 99)

        assert await service.following_count(1) == 0


class TestStaleness:
    """Tests for stale copy detection."""

    @pytest.mark.asyncio
    async def test_earlier_copy_goes_stale(self, service, users):
        a = await service.get_user(1)
        b = await service.get_user(2)

        await service.follow(1, 2)

        with pytest.raises(StaleReadViolation) as exc_info:
            a.following
        assert exc_info.value.user_id == 1
        assert exc_info.value.direction == "following"

        with pytest.raises(StaleReadViolation):
            b.followers

        # Untouched directions stay readable.
        assert a.followers == frozenset()
        assert b.following == frozenset()

    @pytest.mark.asyncio
    async def test_created_copy_goes_stale(self, service, users):
        a, b = users

        await service.follow(1, 2)

        assert a.state_of(Direction.FOLLOWING) is RelationshipState.STALE
        assert b.state_of("followers") is RelationshipState.STALE

    @pytest.mark.asyncio
    async def test_noop_follow_keeps_copies_fresh(self, service, users):
        await service.follow(1, 2)
        a = await service.get_user(1)

        await service.follow(1, 2)

        assert a.following == {2}
        assert a.is_fresh

    @pytest.mark.asyncio
    async def test_reload_after_stale(self, service, users):
        a = await service.get_user(1)
        await service.follow(1, 2)

        fresh = await service.reload(1)

        assert fresh is not a
        assert fresh.following == {2}
        with pytest.raises(StaleReadViolation):
            a.following

    @pytest.mark.asyncio
    async def test_refresh_in_place(self, service, users):
        a = await service.get_user(1)
        await service.follow(1, 2)

        refreshed = await service.refresh(a)

        assert refreshed is a
        assert a.following == {2}
        assert a.is_fresh

    @pytest.mark.asyncio
    async def test_refresh_missing_user(self, service, users):
        a = await service.get_user(1)
        await service.delete_user(1)

        with pytest.raises(InvalidReference):
            await service.refresh(a)

    @pytest.mark.asyncio
    async def test_unloaded_relationships(self, service, users):
        a = await service.get_user(1, load_relationships=False)

        assert a.state_of(Direction.FOLLOWING) is RelationshipState.UNLOADED
        with pytest.raises(RelationshipNotLoaded) as exc_info:
            a.following
        assert exc_info.value.direction == "following"

    @pytest.mark.asyncio
    async def test_stale_set_not_refreshed_by_later_changes(self, service, users):
        a = await service.get_user(1)
        await service.follow(1, 2)
        await service.unfollow(1, 2)

        # Back to the old contents, but the copy never saw the transitions.
        with pytest.raises(StaleReadViolation):
            a.following


class TestUnitOfWork:
    """Tests for copies shared inside one unit of work."""

    @pytest.mark.asyncio
    async def test_tracked_copy_is_patched(self, service, users):
        async with service.unit_of_work() as uow:
            a = await service.get_user(1, uow=uow)
            b = await service.get_user(2, uow=uow)

            await service.follow(1, 2, uow=uow)

            assert a.following == {2}
            assert b.followers == {1}

        assert a.following == {2}
        assert a.is_fresh

    @pytest.mark.asyncio
    async def test_identity_map_returns_same_copy(self, service, users):
        async with service.unit_of_work() as uow:
            first = await service.get_user(1, uow=uow)
            second = await service.get_user(1, uow=uow)

            assert first is second
            assert first.unit_id == uow.unit_id

    @pytest.mark.asyncio
    async def test_explicit_copy_is_patched(self, service, users):
        a = await service.get_user(1)

        await service.follow(1, 2, user=a)

        assert a.following == {2}
        assert a.relationship(Direction.FOLLOWING).version == 1

    @pytest.mark.asyncio
    async def test_explicit_copy_behind_is_marked_stale(self, database, service, users):
        other = GraphConsistencyService(database)
        b = await other.get_user(2)
        await service.follow(1, 2)
        assert b.state_of(Direction.FOLLOWERS) is RelationshipState.LOADED

        # b never saw the follow, so it cannot be patched.
        await service.unfollow(1, 2, target=b)

        with pytest.raises(StaleReadViolation):
            b.followers

    @pytest.mark.asyncio
    async def test_explicit_copy_id_mismatch(self, service, users):
        a = await service.get_user(1)

        with pytest.raises(ValueError):
            await service.follow(2, 1, user=a)

    @pytest.mark.asyncio
    async def test_rollback_restores_copies_and_store(self, service, users):
        a = await service.get_user(1)

        with pytest.raises(InvalidReference):
            async with service.unit_of_work() as uow:
                await service.follow(1, 2, uow=uow, user=a)
                assert a.following == {2}
                await service.follow(1, 99, uow=uow)

        assert a.following == frozenset()
        assert a.relationship(Direction.FOLLOWING).version == 0
        assert await service.following_count(1) == 0

    @pytest.mark.asyncio
    async def test_rollback_publishes_nothing(self, service, users):
        b = await service.get_user(2)

        with pytest.raises(InvalidReference):
            async with service.unit_of_work() as uow:
                await service.follow(1, 2, uow=uow)
                await service.follow(2, 2, uow=uow)

        assert b.followers == frozenset()

    @pytest.mark.asyncio
    async def test_rollback_keeps_stale_mark_from_other_unit(self, service, users):
        a = await service.get_user(1)

        with pytest.raises(RuntimeError):
            async with service.unit_of_work() as uow:
                await service.refresh(a, uow=uow)
                await service.follow(1, 2)
                raise RuntimeError("abort")

        assert await service.following_count(1) == 1
        assert a.state_of(Direction.FOLLOWING) is RelationshipState.STALE
        with pytest.raises(StaleReadViolation):
            a.following

    @pytest.mark.asyncio
    async def test_caught_error_aborts_unit_of_work(self, service, users):
        with pytest.raises(UnitOfWorkError):
            async with service.unit_of_work() as uow:
                await service.follow(1, 2, uow=uow)
                with pytest.raises(InvalidReference):
                    await service.follow(1, 99, uow=uow)

                assert uow.state is UnitOfWorkState.FAILED
                with pytest.raises(UnitOfWorkError):
                    await service.follow(2, 1, uow=uow)

        assert await service.following_count(1) == 0
        assert await service.following_count(2) == 0

    @pytest.mark.asyncio
    async def test_rollback_unloads_created_copy(self, service, users):
        with pytest.raises(RuntimeError):
            async with service.unit_of_work() as uow:
                c = await service.create_user("C", user_id=3, uow=uow)
                assert c.following == frozenset()
                raise RuntimeError("abort")

        assert c.state_of(Direction.FOLLOWING) is RelationshipState.UNLOADED
        with pytest.raises(RelationshipNotLoaded):
            c.followers
        with pytest.raises(InvalidReference):
            await service.get_user(3)


class TestOtherService:
    """Tests for changes made through a second service on the same store."""

    @pytest.mark.asyncio
    async def test_verify_detects_foreign_change(self, database, service, users):
        other = GraphConsistencyService(database)
        a = await service.get_user(1)

        await other.follow(1, 2)

        # This service was never told about the change.
        assert a.state_of(Direction.FOLLOWING) is RelationshipState.LOADED
        assert await service.verify(a) is False
        with pytest.raises(StaleReadViolation):
            a.following

    @pytest.mark.asyncio
    async def test_verify_fresh_copy(self, service, users):
        a = await service.get_user(1)

        assert await service.verify(a) is True
        assert a.following == frozenset()

    @pytest.mark.asyncio
    async def test_verify_deleted_user(self, database, service, users):
        other = GraphConsistencyService(database)
        a = await service.get_user(1)

        await other.delete_user(1)

        assert await service.verify(a) is False
        assert a.state_of(Direction.FOLLOWERS) is RelationshipState.STALE


class TestBulkOperations:
    """Tests for delete_user and clear_edges."""

    @pytest.mark.asyncio
    async def test_delete_user(self, service, users):
        await service.follow(1, 2)
        b = await service.get_user(2)

        assert await service.delete_user(1) is True

        assert await service.follower_count(2) == 0
        with pytest.raises(StaleReadViolation):
            b.followers
        with pytest.raises(InvalidReference):
            await service.get_user(1)

    @pytest.mark.asyncio
    async def test_delete_missing_user(self, service, users):
        assert await service.delete_user(99) is False

    @pytest.mark.asyncio
    async def test_delete_user_marks_own_copies_stale(self, service, users):
        a = await service.get_user(1)

        await service.delete_user(1)

        with pytest.raises(StaleReadViolation):
            a.following
        with pytest.raises(StaleReadViolation):
            a.followers

    @pytest.mark.asyncio
    async def test_delete_user_patches_tracked_neighbour(self, service, users):
        await service.follow(1, 2)

        async with service.unit_of_work() as uow:
            b = await service.get_user(2, uow=uow)
            await service.delete_user(1, uow=uow)

            assert b.followers == frozenset()

    @pytest.mark.asyncio
    async def test_clear_edges(self, service, users):
        await service.follow(1, 2)
        await service.follow(2, 1)
        a = await service.get_user(1)

        assert await service.clear_edges() == 2

        assert await service.following_count(1) == 0
        assert await service.follower_count(1) == 0
        with pytest.raises(StaleReadViolation):
            a.following

    @pytest.mark.asyncio
    async def test_clear_edges_patches_tracked_copy(self, service, users):
        await service.follow(1, 2)

        async with service.unit_of_work() as uow:
            a = await service.get_user(1, uow=uow)
            await service.clear_edges(uow=uow)

            assert a.following == frozenset()

        assert a.is_fresh


class TestFreshCounts:
    """Counts and reloaded sets against a reference edge set."""

    @pytest.mark.asyncio
    @pytest.mark.parametrize("seed", [7, 42, 2024])
    async def test_random_follow_sequence(self, service, seed):
        user_ids = []
        for i in range(4):
            user = await service.create_user(f"user{i}")
            user_ids.append(user.id)

        rng = random.Random(seed)
        edges: set[tuple[int, int]] = set()

        for _ in range(30):
            follower_id, followee_id = rng.sample(user_ids, 2)
            if rng.random() < 0.6:
                await service.follow(follower_id, followee_id)
                edges.add((follower_id, followee_id))
            else:
                await service.unfollow(follower_id, followee_id)
                edges.discard((follower_id, followee_id))

            for user_id in user_ids:
                expected_following = sum(1 for f, _ in edges if f == user_id)
                expected_followers = sum(1 for _, t in edges if t == user_id)
                assert await service.following_count(user_id) == expected_following
                assert await service.follower_count(user_id) == expected_followers

        for user_id in user_ids:
            fresh = await service.reload(user_id)
            assert fresh.following == {t for f, t in edges if f == user_id}
            assert fresh.followers == {f for f, t in edges if t == user_id}
