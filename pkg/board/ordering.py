"""
Ordering engine: pure functions that re-index a board after one structural edit.

Every function takes the current tasks and returns new Task objects; inputs
are never mutated and nothing here touches the store.

Rules:
  - `order` is unique across the active tasks of a board (gaps allowed)
  - `tag` = category letter + 1-based rank inside the category by (order, id)
  - an edit re-indexes only the categories it touches, reusing their own
    order slots, so untouched categories keep their order and tag
  - untouched categories whose tags went stale are re-ranked with the edit
  - if the active set carries duplicate orders (two clients wrote at once),
    the whole board is renumbered instead
"""
import uuid
from dataclasses import replace
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional, Tuple

from .schema import (
    CATEGORY_ORDER,
    Task,
    TaskCategory,
    TaskStatus,
    ValidationError,
    clean_titles,
    make_tag,
    utc_now,
)


class OrderingError(Exception):
    """Raised when a structural edit cannot be applied."""
    pass


class TaskNotFound(OrderingError):
    """Raised when an edit names a task that is not on the board."""

    def __init__(self, task_id: str):
        super().__init__(f"Task {task_id} not found")
        self.task_id = task_id


def new_task_id() -> str:
    return uuid.uuid4().hex


def split_tasks(tasks: Iterable[Task]) -> Tuple[List[Task], List[Task]]:
    """Split a task set into (active, archived)."""
    active, archived = [], []
    for task in tasks:
        (active if task.is_active else archived).append(task)
    return active, archived


def category_sequence(active: Iterable[Task], category: TaskCategory) -> List[Task]:
    """Active tasks of one category in rank order."""
    return sorted((t for t in active if t.category == category), key=lambda t: t.sort_key)


def sequences(active: Iterable[Task]) -> Dict[TaskCategory, List[Task]]:
    active = list(active)
    return {c: category_sequence(active, c) for c in CATEGORY_ORDER}


def _find_active(active: List[Task], task_id: str) -> Task:
    for task in active:
        if task.id == task_id:
            return task
    raise TaskNotFound(task_id)


def _clamp(index, upper: int) -> int:
    try:
        index = int(index)
    except (TypeError, ValueError):
        raise ValidationError(f"Position must be an integer, got: '{index}'")
    return max(0, min(index, upper))


def _assign(seqs: Dict[TaskCategory, List[Task]], slots: List[int]) -> List[Task]:
    """
    Hand out `slots` (ascending) to the sequences in category order and
    set each task's category and tag from its position.
    """
    result = []
    slot_iter = iter(slots)
    for category in CATEGORY_ORDER:
        for rank, task in enumerate(seqs.get(category, []), start=1):
            result.append(replace(
                task,
                category=category,
                order=next(slot_iter),
                tag=make_tag(category, rank),
            ))
    return result


def _stale_tags(seqs: Dict[TaskCategory, List[Task]]) -> Dict[TaskCategory, List[Task]]:
    """Sequences holding a tag that does not match the task's rank."""
    return {
        category: seq
        for category, seq in seqs.items()
        if any(task.tag != make_tag(category, rank) for rank, task in enumerate(seq, start=1))
    }


def _reindex(active: List[Task], touched: Dict[TaskCategory, List[Task]]) -> List[Task]:
    """
    Re-rank the categories in `touched`, each given in its new sequence.

    The touched tasks share out the order values they already held, so
    the rest of the board is left as it was. Untouched categories whose
    tags went stale (two writers racing on the same column) are re-ranked
    along with them.
    """
    touched_ids = {t.id for seq in touched.values() for t in seq}
    stale = _stale_tags(sequences(t for t in active if t.id not in touched_ids))
    if stale:
        touched = {**stale, **touched}
        touched_ids |= {t.id for seq in stale.values() for t in seq}

    untouched = [t for t in active if t.id not in touched_ids]
    slots = sorted(t.order for seq in touched.values() for t in seq)

    orders = [t.order for t in untouched] + slots
    if len(set(orders)) == len(orders):
        result = untouched + _assign(touched, slots)
    else:
        # Colliding orders from concurrent writers: rebuild the whole board
        seqs = sequences(untouched)
        seqs.update(touched)
        result = _assign(seqs, list(range(len(orders))))
    return sorted(result, key=lambda t: t.sort_key)


def renumber(active: Iterable[Task]) -> List[Task]:
    """
    Recompute order and tag for every active task from scratch.

    Categories are walked in fixed order (Now, Day, Week, Month), each
    sorted by (order, id), and given increasing orders starting at 0.
    Applying it twice gives the same result as applying it once.
    """
    active = list(active)
    return _assign(sequences(active), list(range(len(active))))


def bulk_insert(
    existing_active: Iterable[Task],
    titles,
    category,
    id_factory: Optional[Callable[[], str]] = None,
    created_by: Optional[str] = None,
) -> List[Task]:
    """
    Append one new task per title to `category`.

    New orders start right after the current maximum (first order is 0 on
    an empty board) and follow the input order of the titles. Existing
    tasks are returned untouched, followed by the new ones.
    """
    titles = clean_titles(titles)
    category = TaskCategory.from_str(category)
    existing = list(existing_active)
    id_factory = id_factory or new_task_id

    max_order = max((t.order for t in existing), default=-1)
    in_category = sum(1 for t in existing if t.category == category)

    created = [
        Task(
            id=id_factory(),
            title=title,
            category=category,
            order=max_order + 1 + i,
            tag=make_tag(category, in_category + i + 1),
            status=TaskStatus.ACTIVE,
            created_by=created_by,
        )
        for i, title in enumerate(titles)
    ]
    return existing + created


def move_within(active: Iterable[Task], task_id: str, new_index) -> List[Task]:
    """
    Move a task to `new_index` inside its own category.

    The index is clamped to the category bounds. Returns the tasks
    unchanged when the task is already at that position and the board
    is consistent; otherwise the stale tags are repaired.
    """
    active = list(active)
    task = _find_active(active, task_id)
    seq = category_sequence(active, task.category)
    current = seq.index(task)

    rest = [t for t in seq if t.id != task_id]
    index = _clamp(new_index, len(rest))
    if index == current and not check_invariants(active):
        return active

    rest.insert(index, task)
    return _reindex(active, {task.category: rest})


def move_across(
    active: Iterable[Task],
    task_id: str,
    target_category,
    target_index=None,
) -> List[Task]:
    """
    Move a task into another category at `target_index` (end when None).

    Both the source and the target category are re-indexed.
    """
    active = list(active)
    target_category = TaskCategory.from_str(target_category)
    task = _find_active(active, task_id)

    if task.category == target_category:
        if target_index is None:
            target_index = len(category_sequence(active, target_category))
        return move_within(active, task_id, target_index)

    source = [t for t in category_sequence(active, task.category) if t.id != task_id]
    target = category_sequence(active, target_category)
    index = len(target) if target_index is None else _clamp(target_index, len(target))
    target.insert(index, task)

    return _reindex(active, {task.category: source, target_category: target})


def resolve_drop(active: Iterable[Task], over: str) -> Tuple[TaskCategory, Optional[int]]:
    """
    Translate a drop target into (category, index).

    `over` is either a sibling task id (drop before that task) or a
    category name (drop on the column itself, index None = end).
    """
    active = list(active)
    for task in active:
        if task.id == over:
            return task.category, category_sequence(active, task.category).index(task)
    try:
        return TaskCategory.from_str(over), None
    except ValidationError:
        raise TaskNotFound(over)


def apply_drop(active: Iterable[Task], task_id: str, over: str) -> List[Task]:
    """Apply a drag that ended over `over` (task id or category name)."""
    active = list(active)
    task = _find_active(active, task_id)
    if over == task_id:
        return active
    category, index = resolve_drop(active, over)
    if category == task.category:
        if index is None:
            index = len(category_sequence(active, category))
        return move_within(active, task_id, index)
    return move_across(active, task_id, category, index)


def archive(
    active: Iterable[Task],
    archived: Iterable[Task],
    task_id: str,
    now: Optional[datetime] = None,
) -> Tuple[List[Task], List[Task]]:
    """
    Mark a task done and move it out of the active set.

    Remaining siblings keep their orders and are re-tagged so the ranks
    close the gap. Returns (active, archived).
    """
    active = list(active)
    task = _find_active(active, task_id)
    done = replace(task, status=TaskStatus.DONE, completed_at=now or utc_now())

    remaining = [t for t in active if t.id != task_id]
    remaining = _reindex(remaining, {task.category: category_sequence(remaining, task.category)})
    return remaining, list(archived) + [done]


def delete(tasks: Iterable[Task], task_id: str) -> List[Task]:
    """Remove a task (active or archived); active siblings are re-tagged."""
    tasks = list(tasks)
    target = next((t for t in tasks if t.id == task_id), None)
    if target is None:
        raise TaskNotFound(task_id)

    rest = [t for t in tasks if t.id != task_id]
    if not target.is_active:
        return rest

    active, archived = split_tasks(rest)
    active = _reindex(active, {target.category: category_sequence(active, target.category)})
    return active + archived


def check_invariants(active: Iterable[Task]) -> List[str]:
    """
    List every way the active set breaks the ordering rules.

    An empty list means orders are unique and non-negative and every
    tag matches what renumbering would give it.
    """
    active = list(active)
    problems = []
    seen: Dict[int, str] = {}
    for task in active:
        if not task.is_active:
            problems.append(f"{task.id}: archived task in active set")
        if task.order < 0:
            problems.append(f"{task.id}: negative order {task.order}")
        if task.order in seen:
            problems.append(f"order {task.order} shared by {seen[task.order]} and {task.id}")
        seen.setdefault(task.order, task.id)

    for category, seq in sequences(active).items():
        for rank, task in enumerate(seq, start=1):
            expected = make_tag(category, rank)
            if task.tag != expected:
                problems.append(f"{task.id}: tag {task.tag!r} should be {expected!r}")
    return problems
