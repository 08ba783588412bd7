"""
Board sync: keeps one client's view of a board in step with the store.

Edit flow:
  1. compute the new task set with the ordering engine (no I/O)
  2. adopt it locally right away
  3. write only the tasks that changed in one batch
  4. on repeated failure, reload from the store and raise PersistenceError

The task subscription is the source of truth: every snapshot replaces the
local list, so all clients converge on the last committed write.
Creation is the one edit that reads and writes inside a transaction, so
two clients adding at once never hand out the same order.
"""
import asyncio
import logging
from typing import Callable, Dict, List, Optional, Tuple

from . import ordering
from .docstore import DocumentNotFound, DocumentSnapshot, DocumentStore, Query, StoreError
from .members import AccessDenied, CollaborationGate
from .ordering import check_invariants, split_tasks
from .projection import BoardView, project
from .schema import Task, TaskCategory, clean_titles, tasks_collection

logger = logging.getLogger(__name__)

MAX_RETRY_DELAY = 3.0


class PersistenceError(Exception):
    """Raised when an edit could not be written; local state was reloaded first."""
    pass


def task_delta(before: List[Task], after: List[Task]) -> Tuple[List[Tuple[Task, Dict]], List[str]]:
    """
    Diff two task sets.

    Returns ([(task, changed document fields)], [removed task ids]).
    Tasks whose document is unchanged are left out.
    """
    old = {t.id: t.to_doc() for t in before}
    changes = []
    for task in after:
        doc = task.to_doc()
        previous = old.get(task.id, {})
        fields = {k: v for k, v in doc.items() if previous.get(k) != v}
        if fields:
            changes.append((task, fields))
    kept = {t.id for t in after}
    removed = [task_id for task_id in old if task_id not in kept]
    return changes, removed


class BoardSync:
    """
    One client's session on a board.

    With a `gate`, the user must be a board member before anything is read
    or written. Without one (personal boards) every edit is allowed.
    """

    def __init__(
        self,
        store: DocumentStore,
        board_id: str,
        user_id: Optional[str] = None,
        gate: Optional[CollaborationGate] = None,
        write_attempts: int = 3,
        retry_delay: float = 0.2,
        transaction_attempts: int = 5,
        on_change: Optional[Callable[[BoardView], None]] = None,
    ):
        self.store = store
        self.board_id = board_id
        self.user_id = user_id
        self.gate = gate
        self.write_attempts = max(1, write_attempts)
        self.retry_delay = retry_delay
        self.transaction_attempts = transaction_attempts
        self.on_change = on_change
        self.collection = tasks_collection(board_id)
        self.tasks: List[Task] = []
        self.error: Optional[Exception] = None
        self._authorized = gate is None
        self._unsubscribe: Optional[Callable[[], None]] = None

    # ── Lifecycle ────────────────────────────────────────────────────

    async def start(self) -> "BoardSync":
        if self.gate is not None:
            await self.gate.require_member(self.board_id, self.user_id)
            self._authorized = True
        if self._unsubscribe is None:
            self._unsubscribe = self.store.subscribe(self._query(), self._on_snapshot, self._on_error)
        return self

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    async def __aenter__(self) -> "BoardSync":
        return await self.start()

    async def __aexit__(self, exc_type, exc, tb) -> None:
        self.stop()

    def _query(self) -> Query:
        return Query(self.collection, order_by="order")

    def _on_snapshot(self, snaps: List[DocumentSnapshot]) -> None:
        self._adopt([Task.from_doc(s.id, s.data) for s in snaps])
        self.error = None
        active, _ = split_tasks(self.tasks)
        problems = check_invariants(active)
        if problems:
            logger.warning(f"Board {self.board_id} snapshot is inconsistent: {'; '.join(problems)}")

    def _on_error(self, error: Exception) -> None:
        self.error = error
        logger.error(f"Task subscription on board {self.board_id} failed: {error}")

    def _adopt(self, tasks: List[Task]) -> None:
        self.tasks = tasks
        if self.on_change:
            self.on_change(self.view)

    # ── Read model ───────────────────────────────────────────────────

    @property
    def view(self) -> BoardView:
        return project(self.tasks)

    @property
    def active(self) -> List[Task]:
        return split_tasks(self.tasks)[0]

    async def resync(self) -> None:
        """Replace local state with what the store currently holds."""
        snaps = await self.store.query(self._query())
        self._adopt([Task.from_doc(s.id, s.data) for s in snaps])

    # ── Edits ────────────────────────────────────────────────────────

    def _require_access(self) -> None:
        if not self._authorized:
            raise AccessDenied(f"Session on board {self.board_id} is not authorized")

    async def create(self, titles, category) -> List[Task]:
        """Add one task per title at the end of `category`."""
        self._require_access()
        titles = clean_titles(titles)
        category = TaskCategory.from_str(category)

        async def insert(txn):
            snaps = await txn.query(self._query())
            active, _ = split_tasks(Task.from_doc(s.id, s.data) for s in snaps)
            result = ordering.bulk_insert(
                active, titles, category,
                id_factory=self.store.new_id,
                created_by=self.user_id,
            )
            created = result[len(active):]
            for task in created:
                txn.set(self.collection, task.id, task.to_doc())
            return created

        created = await self.store.run_transaction(insert, max_attempts=self.transaction_attempts)
        known = {t.id for t in self.tasks}
        missing = [t for t in created if t.id not in known]
        if missing:
            self._adopt(self.tasks + missing)
        logger.info(f"Board {self.board_id}: created {len(created)} task(s) in {category.value}")
        return created

    async def move_within(self, task_id: str, new_index) -> BoardView:
        self._require_access()
        active, archived = split_tasks(self.tasks)
        after = ordering.move_within(active, task_id, new_index) + archived
        return await self._commit_edit(after, f"move {task_id} to #{new_index}")

    async def move_across(self, task_id: str, category, index=None) -> BoardView:
        self._require_access()
        active, archived = split_tasks(self.tasks)
        after = ordering.move_across(active, task_id, category, index) + archived
        return await self._commit_edit(after, f"move {task_id} to {category}")

    async def drop(self, task_id: str, over: str) -> BoardView:
        self._require_access()
        active, archived = split_tasks(self.tasks)
        after = ordering.apply_drop(active, task_id, over) + archived
        return await self._commit_edit(after, f"drop {task_id} over {over}")

    async def archive(self, task_id: str) -> BoardView:
        self._require_access()
        active, archived = split_tasks(self.tasks)
        remaining, done = ordering.archive(active, archived, task_id)
        return await self._commit_edit(remaining + done, f"archive {task_id}")

    async def delete(self, task_id: str) -> BoardView:
        self._require_access()
        after = ordering.delete(self.tasks, task_id)
        return await self._commit_edit(after, f"delete {task_id}")

    # ── Persistence ──────────────────────────────────────────────────

    async def _commit_edit(self, after: List[Task], label: str) -> BoardView:
        before = self.tasks
        self._adopt(after)
        await self._persist(before, after, label)
        return self.view

    async def _persist(self, before: List[Task], after: List[Task], label: str) -> None:
        changes, removed = task_delta(before, after)
        if not changes and not removed:
            return

        delay = self.retry_delay
        last_error: Optional[StoreError] = None
        for attempt in range(1, self.write_attempts + 1):
            batch = self.store.batch()
            for task, fields in changes:
                batch.update(self.collection, task.id, fields)
            for task_id in removed:
                batch.delete(self.collection, task_id)
            try:
                await batch.commit()
                logger.info(
                    f"Board {self.board_id}: {label} "
                    f"({len(changes)} updated, {len(removed)} removed)"
                )
                return
            except DocumentNotFound as e:
                # Another client removed a task we touched; retrying cannot help
                last_error = e
                break
            except StoreError as e:
                last_error = e
                logger.warning(
                    f"Board {self.board_id}: write for {label} failed "
                    f"(attempt {attempt}/{self.write_attempts}): {e}"
                )
                if attempt < self.write_attempts:
                    await asyncio.sleep(delay)
                    delay = min(delay * 1.5, MAX_RETRY_DELAY)

        logger.warning(f"Board {self.board_id}: giving up on {label}, reloading from store")
        try:
            await self.resync()
        except StoreError:
            logger.exception(f"Board {self.board_id}: resync failed, restoring previous state")
            self._adopt(before)
        raise PersistenceError(f"Could not save {label}: {last_error}") from last_error
