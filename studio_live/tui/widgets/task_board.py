"""Task board: tasks grouped by status, redrawn from the cache."""

from __future__ import annotations

from rich.table import Table
from rich.text import Text
from textual.widget import Widget

from studio_live.engine.cache import CacheView
from studio_live.shared.models.entities import Task

# Column order on the board; unknown statuses are appended after these
STATUS_COLUMNS = (
    "todo", "planning", "planning_review", "in_progress", "ai_review", "fix", "review", "done",
)

_STATUS_STYLES = {
    "todo": "white",
    "planning": "cyan",
    "planning_review": "cyan",
    "in_progress": "yellow",
    "ai_review": "magenta",
    "fix": "red",
    "review": "magenta",
    "done": "green",
}


def group_by_status(tasks: list[Task]) -> dict[str, list[Task]]:
    """Bucket *tasks* by status, board columns first, each sorted by title."""
    groups: dict[str, list[Task]] = {status: [] for status in STATUS_COLUMNS}
    for task in tasks:
        groups.setdefault(task.status, []).append(task)
    for bucket in groups.values():
        bucket.sort(key=lambda t: (t.title.lower(), t.id))
    return groups


class TaskBoard(Widget):
    """Kanban-style view over a CacheView."""

    DEFAULT_CSS = """
    TaskBoard {
        height: 1fr;
        padding: 0 1;
    }
    """

    def __init__(self, view: CacheView, **kwargs) -> None:
        super().__init__(**kwargs)
        self._view = view
        self._seen_version = -1

    def sync(self) -> bool:
        """Redraw if the cache changed since the last draw."""
        if self._view.version == self._seen_version:
            return False
        self._seen_version = self._view.version
        self.refresh()
        return True

    def render(self) -> Table:
        groups = group_by_status(self._view.tasks())
        executing = self._view.executing_task_ids()

        table = Table(expand=True, show_lines=False, box=None)
        for status in groups:
            style = _STATUS_STYLES.get(status, "white")
            table.add_column(
                Text(f"{status} ({len(groups[status])})", style=f"bold {style}"),
                ratio=1,
            )

        depth = max((len(bucket) for bucket in groups.values()), default=0)
        for row in range(depth):
            cells: list[Text] = []
            for bucket in groups.values():
                if row >= len(bucket):
                    cells.append(Text(""))
                    continue
                task = bucket[row]
                cell = Text()
                if task.id in executing:
                    cell.append("● ", style="yellow")
                cell.append(task.title or task.id)
                cells.append(cell)
            table.add_row(*cells)
        return table
