import logging
from collections.abc import Iterable
from dataclasses import dataclass, field

log = logging.getLogger(__name__)


@dataclass
class TaskProgress:
    pending: set[int] = field(default_factory=set)
    completed: set[int] = field(default_factory=set)


class ProcessSheet:
    """Per-task ledger of pending and completed photo ids.

    Ids only ever move from ``pending`` to ``completed``; ``initialize`` is the
    only operation that resets a task. No I/O happens here, the owning process
    persists the sheet through ``to_dict``.
    """

    def __init__(self, tasks: dict[str, TaskProgress] | None = None):
        self.tasks: dict[str, TaskProgress] = tasks or {}

    def initialize(self, task_names: Iterable[str], photo_ids: Iterable[int]):
        ids = set(photo_ids)
        self.tasks = {name: TaskProgress(pending=set(ids)) for name in task_names}

    def mark_completed(self, task_name: str, photo_ids: Iterable[int]):
        progress = self.tasks.get(task_name)
        if progress is None:
            log.warning(f"Task '{task_name}' is not in the process sheet, ignoring completion")
            return
        for photo_id in photo_ids:
            if photo_id in progress.pending:
                progress.pending.discard(photo_id)
                progress.completed.add(photo_id)
            elif photo_id not in progress.completed:
                log.debug(f"Photo {photo_id} is not tracked by task '{task_name}'")

    def pending_for(self, task_name: str) -> list[int]:
        progress = self.tasks.get(task_name)
        return sorted(progress.pending) if progress else []

    def completed_for(self, task_name: str) -> list[int]:
        progress = self.tasks.get(task_name)
        return sorted(progress.completed) if progress else []

    def is_complete(self) -> bool:
        return all(not progress.pending for progress in self.tasks.values())

    def summary(self) -> dict[str, dict[str, int]]:
        return {
            name: {"pending": len(progress.pending), "completed": len(progress.completed)}
            for name, progress in self.tasks.items()
        }

    def render(self) -> str:
        lines = []
        for name, progress in self.tasks.items():
            lines.append(f"{name}:")
            for photo_id in sorted(progress.pending | progress.completed):
                mark = "✅" if photo_id in progress.completed else "❌"
                lines.append(f"  {mark} {photo_id}")
        return "\n".join(lines)

    # --- Serialization ---

    def to_dict(self) -> dict:
        return {
            name: {"pending": sorted(progress.pending), "completed": sorted(progress.completed)}
            for name, progress in self.tasks.items()
        }

    @classmethod
    def from_dict(cls, data: dict | None) -> "ProcessSheet":
        tasks = {}
        for name, entry in (data or {}).items():
            completed = {int(i) for i in entry.get("completed", [])}
            pending = {int(i) for i in entry.get("pending", [])} - completed
            tasks[name] = TaskProgress(pending=pending, completed=completed)
        return cls(tasks)
