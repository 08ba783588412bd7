"""
Telegram to board integration: turn bot commands into board edits and
render the board as chat messages.

Tasks are addressed by their tag (e.g. "D2"), the same label users see.
Replies use Telegram's legacy Markdown, so task titles are escaped.
"""
import logging
from typing import List, Optional

from telegram.helpers import escape_markdown

from .ordering import TaskNotFound
from .reconcile import BoardSync
from .schema import CATEGORY_ORDER, Task, TaskCategory, ValidationError

logger = logging.getLogger(__name__)

CATEGORY_EMOJI = {
    TaskCategory.NOW: "🔥",
    TaskCategory.DAY: "📅",
    TaskCategory.WEEK: "🗓",
    TaskCategory.MONTH: "🌙",
}


class TelegramBoardBridge:
    """Board commands and summaries for one chat session."""

    def __init__(self, sync: BoardSync):
        self.sync = sync

    def find_by_tag(self, tag: str) -> Task:
        """Active task carrying `tag` (case-insensitive)."""
        wanted = (tag or "").strip().upper()
        for task in self.sync.active:
            if task.tag.upper() == wanted:
                return task
        raise TaskNotFound(tag)

    async def add_from_message(self, text: str) -> List[Task]:
        """
        Handle the body of /add.

        The first word is the category; the rest of the first line and
        every following line is one title each.
        """
        text = (text or "").strip()
        if not text:
            raise ValidationError("Usage: /add <category> followed by one title per line")
        first, _, rest = text.partition("\n")
        category, _, inline = first.strip().partition(" ")
        titles = [inline] + rest.splitlines()
        return await self.sync.create(titles, category)

    async def move_by_tag(self, tag: str, category: str, position: Optional[str] = None) -> Task:
        """Move a task to `category`; `position` is 1-based, end of column when omitted."""
        task = self.find_by_tag(tag)
        index = None
        if position is not None:
            try:
                index = int(position) - 1
            except ValueError:
                raise ValidationError(f"Position must be a number, got: '{position}'")
        await self.sync.move_across(task.id, category, index)
        return self._current(task.id)

    async def done_by_tag(self, tag: str) -> Task:
        task = self.find_by_tag(tag)
        await self.sync.archive(task.id)
        return task

    async def delete_by_tag(self, tag: str) -> Task:
        task = self.find_by_tag(tag)
        await self.sync.delete(task.id)
        return task

    def _current(self, task_id: str) -> Task:
        for task in self.sync.tasks:
            if task.id == task_id:
                return task
        raise TaskNotFound(task_id)

    def board_summary(self, title: str = "Board") -> str:
        """Format the active columns for Telegram."""
        view = self.sync.view
        if view.active_count == 0:
            return f"📋 {title}: no open tasks."

        lines = [f"📋 {title} ({view.active_count} open):"]
        for category in CATEGORY_ORDER:
            tasks = view.columns[category]
            if not tasks:
                continue
            lines.append(f"\n{CATEGORY_EMOJI[category]} *{category.value}*")
            for task in tasks:
                lines.append(f"`{task.tag}` {escape_markdown(task.title)}")
        return "\n".join(lines)

    def archive_summary(self, days: int = 3) -> str:
        """Format the most recent archive days."""
        view = self.sync.view
        if not view.archive:
            return "🗄 Archive is empty."

        lines = [f"🗄 Archive ({view.archived_count} done):"]
        for day in view.archive[:days]:
            lines.append(f"\n*{day.day.isoformat()}*")
            for task in day.tasks:
                lines.append(f"✅ {escape_markdown(task.title)}")
        return "\n".join(lines)
