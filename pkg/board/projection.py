"""
Board view: the read model rendered by every client.

Recomputed from the flat task set after each change; nothing here is stored.
"""
from dataclasses import dataclass, field
from datetime import date, timezone
from typing import Dict, Iterable, List

from .ordering import category_sequence, split_tasks
from .schema import CATEGORY_ORDER, Task, TaskCategory


@dataclass
class ArchiveDay:
    """Tasks completed on one calendar day (UTC), newest first."""
    day: date
    tasks: List[Task] = field(default_factory=list)

    def to_dict(self) -> Dict:
        return {"day": self.day.isoformat(), "tasks": [t.to_dict() for t in self.tasks]}


@dataclass
class BoardView:
    columns: Dict[TaskCategory, List[Task]]
    archive: List[ArchiveDay]

    @property
    def active_count(self) -> int:
        return sum(len(tasks) for tasks in self.columns.values())

    @property
    def archived_count(self) -> int:
        return sum(len(day.tasks) for day in self.archive)

    def column(self, category) -> List[Task]:
        return self.columns[TaskCategory.from_str(category)]

    def to_dict(self) -> Dict:
        return {
            "columns": {
                category.value: [t.to_dict() for t in tasks]
                for category, tasks in self.columns.items()
            },
            "archive": [day.to_dict() for day in self.archive],
        }


def project(tasks: Iterable[Task]) -> BoardView:
    """
    Build the board view.

    Active tasks are split into the four columns, each sorted by order.
    Archived tasks are grouped by the UTC day of `completed_at`, most
    recent day first and most recent completion first inside a day.
    Archived tasks without a completion time are left out.
    """
    active, archived = split_tasks(tasks)
    columns = {category: category_sequence(active, category) for category in CATEGORY_ORDER}

    stamped = [t for t in archived if t.completed_at is not None]
    stamped.sort(key=lambda t: (t.completed_at, t.id), reverse=True)

    days: List[ArchiveDay] = []
    for task in stamped:
        day = task.completed_at.astimezone(timezone.utc).date()
        if not days or days[-1].day != day:
            days.append(ArchiveDay(day=day))
        days[-1].tasks.append(task)

    return BoardView(columns=columns, archive=days)
