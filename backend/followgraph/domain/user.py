"""
In-memory User and its guarded relationship sets.

Each User object is one *copy* of a persisted user. Its ``following`` and
``followers`` sets carry a state:

    UNLOADED -> LOADED -> STALE -> LOADED (reload/refresh)

Reading a STALE set raises StaleReadViolation and reading an UNLOADED set
raises RelationshipNotLoaded. Only the GraphConsistencyService mutates the
sets; callers read them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable

from followgraph.core.exceptions import RelationshipNotLoaded, StaleReadViolation


class Direction(str, Enum):
    """Which side of the follow table a set is derived from."""
    FOLLOWING = "following"
    FOLLOWERS = "followers"


class RelationshipState(str, Enum):
    """Relationship set state."""
    UNLOADED = "unloaded"
    LOADED = "loaded"
    STALE = "stale"


@dataclass(frozen=True)
class RelationshipSnapshot:
    """Saved set state, used to undo in-memory changes on rollback."""
    members: frozenset[int]
    state: RelationshipState
    version: int | None
    stale_reason: str | None
    foreign_marks: int = 0


@dataclass(eq=False)
class RelationshipSet:
    """
    One direction of a user's relationships as held by one copy.

    Attributes:
        owner_id: Id of the user owning the set
        direction: following or followers
        state: Current state
        version: Store relationship version the members correspond to
        stale_reason: Why the set was marked stale, for diagnostics
    """

    owner_id: int
    direction: Direction
    state: RelationshipState = RelationshipState.UNLOADED
    version: int | None = None
    stale_reason: str | None = None
    _members: set[int] = field(default_factory=set, repr=False)
    _foreign_marks: int = field(default=0, repr=False)
    _foreign_reason: str | None = field(default=None, repr=False)

    def read(self) -> frozenset[int]:
        if self.state is RelationshipState.STALE:
            raise StaleReadViolation(self.owner_id, self.direction.value)
        if self.state is RelationshipState.UNLOADED:
            raise RelationshipNotLoaded(self.owner_id, self.direction.value)
        return frozenset(self._members)

    @property
    def is_loaded(self) -> bool:
        return self.state is RelationshipState.LOADED

    def load(self, members: Iterable[int], version: int) -> None:
        self._members = set(members)
        self.version = version
        self.state = RelationshipState.LOADED
        self.stale_reason = None

    def unload(self) -> None:
        self._members = set()
        self.version = None
        self.state = RelationshipState.UNLOADED
        self.stale_reason = None

    def mark_stale(self, reason: str, *, unit_id: str | None = None) -> bool:
        """
        Mark a loaded set stale. Returns True if the state changed.

        ``unit_id`` names the unit of work making the mark as part of its own
        changes. Marks without one (commit notifications, verify()) are
        counted even on an already stale set, and a rollback never clears
        them.
        """
        if unit_id is None and self.state is not RelationshipState.UNLOADED:
            self._foreign_marks += 1
            self._foreign_reason = reason
        if self.state is not RelationshipState.LOADED:
            return False
        self.state = RelationshipState.STALE
        self.stale_reason = reason
        return True

    def apply(self, member: int, present: bool, version: int) -> None:
        """Apply a single committed-in-this-unit change to a loaded set."""
        if present:
            self._members.add(member)
        else:
            self._members.discard(member)
        self.version = version

    def snapshot(self) -> RelationshipSnapshot:
        return RelationshipSnapshot(
            members=frozenset(self._members),
            state=self.state,
            version=self.version,
            stale_reason=self.stale_reason,
            foreign_marks=self._foreign_marks,
        )

    def restore(self, snapshot: RelationshipSnapshot) -> None:
        """
        Put back a snapshot taken earlier in a unit of work.

        A set that held members at snapshot time and was marked stale from
        outside since then stays STALE.
        """
        self._members = set(snapshot.members)
        self.version = snapshot.version
        if (
            snapshot.state is not RelationshipState.UNLOADED
            and self._foreign_marks > snapshot.foreign_marks
        ):
            self.state = RelationshipState.STALE
            self.stale_reason = self._foreign_reason
            return
        self.state = snapshot.state
        self.stale_reason = snapshot.stale_reason


class User:
    """
    In-memory copy of a user.

    Copies compare by identity: two copies of the same user id are distinct
    objects that may disagree about their relationship sets.

    A service marks its own copies stale when one of its units of work
    commits. Changes committed through another service or another process
    reach a copy only through ``GraphConsistencyService.verify()``; until
    then the copy stays readable and may be out of date.
    """

    def __init__(self, user_id: int, name: str, unit_id: str | None = None):
        self.id = user_id
        self.name = name
        self.unit_id = unit_id
        self._sets = {
            direction: RelationshipSet(owner_id=user_id, direction=direction)
            for direction in Direction
        }

    @property
    def following(self) -> frozenset[int]:
        """Ids of users this user follows."""
        return self._sets[Direction.FOLLOWING].read()

    @property
    def followers(self) -> frozenset[int]:
        """Ids of users following this user."""
        return self._sets[Direction.FOLLOWERS].read()

    def relationship(self, direction: Direction) -> RelationshipSet:
        return self._sets[direction]

    def state_of(self, direction: Direction | str) -> RelationshipState:
        return self._sets[Direction(direction)].state

    @property
    def is_fresh(self) -> bool:
        """True if both sets are loaded and not stale."""
        return all(s.is_loaded for s in self._sets.values())

    def __repr__(self) -> str:
        states = ", ".join(f"{d.value}={s.state.value}" for d, s in self._sets.items())
        return f"User(id={self.id}, name={self.name!r}, {states})"
