"""
Copy Registry - weak index of every in-memory User handed out by a service.

The registry never serves reads. It only exists so that a committed change
can mark other copies of the affected users stale.
"""

from __future__ import annotations

import logging
import weakref
from typing import Iterator

from followgraph.domain.user import Direction, RelationshipState, User


logger = logging.getLogger(__name__)


class CopyRegistry:
    """Weakly tracks User copies by id."""

    def __init__(self) -> None:
        self._copies: dict[int, weakref.WeakSet[User]] = {}

    def register(self, user: User) -> None:
        self._prune()
        self._copies.setdefault(user.id, weakref.WeakSet()).add(user)

    def _prune(self) -> None:
        for user_id in [uid for uid, copies in self._copies.items() if not copies]:
            del self._copies[user_id]

    def copies_of(self, user_id: int) -> list[User]:
        copies = self._copies.get(user_id)
        if copies is None:
            return []
        alive = list(copies)
        if not alive:
            del self._copies[user_id]
        return alive

    def __iter__(self) -> Iterator[User]:
        for user_id in list(self._copies):
            yield from self.copies_of(user_id)

    def __len__(self) -> int:
        return sum(1 for _ in self)

    def invalidate(self, user_id: int, direction: Direction, version: int) -> int:
        """
        Mark stale every copy whose set holds members not at ``version``.

        Copies that were patched or loaded by the committing unit of work
        already carry ``version`` and are left alone.

        Returns:
            Number of sets marked stale
        """
        marked = 0
        for user in self.copies_of(user_id):
            rel_set = user.relationship(direction)
            if rel_set.state is not RelationshipState.UNLOADED and rel_set.version != version:
                if rel_set.mark_stale(f"{direction.value} changed to version {version}"):
                    marked += 1
        return marked

    def invalidate_user(self, user_id: int, reason: str) -> int:
        marked = 0
        for user in self.copies_of(user_id):
            for direction in Direction:
                if user.relationship(direction).mark_stale(reason):
                    marked += 1
        return marked

