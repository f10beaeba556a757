"""
Transaction Management - units of work.

Provides:
- UnitOfWork: one session, one database transaction, one identity map, and
  an undo log for in-memory relationship changes
- UnitOfWorkState: lifecycle states
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from followgraph.core.exceptions import UnitOfWorkError, translate_store_error
from followgraph.domain.user import Direction, RelationshipSet, RelationshipSnapshot, User


logger = logging.getLogger(__name__)


class UnitOfWorkState(str, Enum):
    """Unit of work state."""
    PENDING = "pending"
    ACTIVE = "active"
    COMMITTING = "committing"
    COMMITTED = "committed"
    ROLLING_BACK = "rolling_back"
    ROLLED_BACK = "rolled_back"
    FAILED = "failed"


@dataclass
class UnitOfWorkChanges:
    """Relationship changes made by a unit of work, published after commit."""

    versions: dict[tuple[int, Direction], int] = field(default_factory=dict)
    removed_users: set[int] = field(default_factory=set)

    def __bool__(self) -> bool:
        return bool(self.versions or self.removed_users)


class UnitOfWork:
    """
    Atomic scope for store mutations and in-memory relationship updates.

    Features:
    - One AsyncSession and one database transaction
    - Identity map: at most one User copy per id
    - Undo log restoring in-memory sets on rollback
    - Post-commit hook receiving the recorded changes

    Usage:
        async with UnitOfWork(session_maker) as uow:
            await store.insert_edge(uow.session, 1, 2)
    """

    def __init__(
        self,
        session_maker: async_sessionmaker[AsyncSession],
        on_commit: Callable[[UnitOfWork], Any] | None = None,
    ):
        self.unit_id = f"uow_{uuid.uuid4().hex[:12]}"
        self.state = UnitOfWorkState.PENDING
        self.created_at = datetime.now(timezone.utc)
        self.updated_at = self.created_at
        self.changes = UnitOfWorkChanges()
        self.error: BaseException | None = None
        self._session_maker = session_maker
        self._on_commit = on_commit
        self._session: AsyncSession | None = None
        self._identity_map: dict[int, User] = {}
        self._undo_log: list[tuple[RelationshipSet, RelationshipSnapshot]] = []
        self._recorded: set[int] = set()

    def _update_state(self, state: UnitOfWorkState) -> None:
        self.state = state
        self.updated_at = datetime.now(timezone.utc)

    @property
    def is_active(self) -> bool:
        return self.state is UnitOfWorkState.ACTIVE

    def ensure_active(self) -> None:
        if not self.is_active:
            raise UnitOfWorkError(
                f"Unit of work {self.unit_id} is {self.state.value}, not active",
                unit_id=self.unit_id,
            )

    @property
    def session(self) -> AsyncSession:
        self.ensure_active()
        if self._session is None:
            raise UnitOfWorkError(f"Unit of work {self.unit_id} has no session", unit_id=self.unit_id)
        return self._session

    # ===== Lifecycle =====

    async def __aenter__(self) -> UnitOfWork:
        if self.state is not UnitOfWorkState.PENDING:
            raise UnitOfWorkError(f"Unit of work {self.unit_id} cannot be reused", unit_id=self.unit_id)
        self._session = self._session_maker()
        self._update_state(UnitOfWorkState.ACTIVE)
        logger.debug(f"Unit of work started: {self.unit_id}")
        return self

    async def __aexit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        try:
            if self.is_active:
                if exc_type is None:
                    await self.commit()
                else:
                    await self.rollback()
            elif exc_type is None and self.state is UnitOfWorkState.FAILED:
                raise UnitOfWorkError(
                    f"Unit of work {self.unit_id} was aborted by an earlier error: {self.error}",
                    unit_id=self.unit_id,
                )
        finally:
            if self._session is not None:
                await self._session.close()

    async def commit(self) -> None:
        """Commit the transaction, then publish the recorded changes."""
        self.ensure_active()
        self._update_state(UnitOfWorkState.COMMITTING)

        try:
            await self._session.commit()
        except SQLAlchemyError as e:
            self._restore_snapshots()
            self._update_state(UnitOfWorkState.FAILED)
            logger.error(f"Commit failed for {self.unit_id}: {e}")
            raise translate_store_error(e, "commit") from e

        self._update_state(UnitOfWorkState.COMMITTED)
        self._undo_log.clear()
        self._recorded.clear()
        logger.debug(f"Unit of work committed: {self.unit_id}")

        if self._on_commit is not None and self.changes:
            self._on_commit(self)

    async def rollback(self) -> None:
        """Roll back the transaction and restore in-memory sets."""
        self.ensure_active()
        self._update_state(UnitOfWorkState.ROLLING_BACK)

        self._restore_snapshots()
        self.changes = UnitOfWorkChanges()

        try:
            await self._session.rollback()
        except SQLAlchemyError as e:
            logger.error(f"Rollback failed for {self.unit_id}: {e}")
            self._update_state(UnitOfWorkState.FAILED)
            return

        self._update_state(UnitOfWorkState.ROLLED_BACK)
        logger.debug(f"Unit of work rolled back: {self.unit_id}")

    async def abort(self, error: BaseException) -> None:
        """
        Roll back after an operation failed inside this unit of work.

        The unit of work ends FAILED, so a later commit raises
        UnitOfWorkError instead of persisting the writes made before the
        error.
        """
        self.error = error
        await self.rollback()
        self._update_state(UnitOfWorkState.FAILED)
        logger.warning(f"Unit of work {self.unit_id} aborted: {error}")

    def _restore_snapshots(self) -> None:
        for rel_set, snapshot in reversed(self._undo_log):
            rel_set.restore(snapshot)
        self._undo_log.clear()
        self._recorded.clear()

    # ===== Identity map =====

    def get(self, user_id: int) -> User | None:
        return self._identity_map.get(user_id)

    def track(self, user: User) -> User:
        """Track a copy unless the identity map already holds one for its id."""
        return self._identity_map.setdefault(user.id, user)

    def forget(self, user_id: int) -> User | None:
        return self._identity_map.pop(user_id, None)

    def tracked(self) -> list[User]:
        return list(self._identity_map.values())

    # ===== Undo log and change recording =====

    def record(self, rel_set: RelationshipSet) -> None:
        """Snapshot a set before its first in-memory change in this unit."""
        self.ensure_active()
        if id(rel_set) in self._recorded:
            return
        self._recorded.add(id(rel_set))
        self._undo_log.append((rel_set, rel_set.snapshot()))

    def note_change(self, user_id: int, direction: Direction, version: int) -> None:
        self.changes.versions[(user_id, direction)] = version

    def note_removed(self, user_id: int) -> None:
        self.changes.removed_users.add(user_id)
