import logging
from abc import ABC, abstractmethod
from collections.abc import Iterable
from dataclasses import dataclass, field
from typing import Any

from services.analyzer.health import HealthChecker, checks_satisfied
from services.analyzer.runner import BatchRunner
from services.database import AnalyzerMode, Photo
from services.errors import PersistenceError
from services.photos.images import ImageCache, PhotoImage, PhotoImageLoader
from services.photos.store import PhotoStore, photo_store

log = logging.getLogger(__name__)


@dataclass
class TaskContext:
    """Collaborators shared by the tasks of one process run."""

    gateway: Any
    store: PhotoStore = field(default_factory=lambda: photo_store)
    images: PhotoImageLoader | None = None
    health: HealthChecker | None = None
    runner: BatchRunner = field(default_factory=BatchRunner)

    def __post_init__(self):
        if self.images is None:
            self.images = PhotoImageLoader(cache=ImageCache())
        if self.health is None:
            self.health = HealthChecker(self.store)


def photo_of(item: Photo | PhotoImage) -> Photo:
    return item.photo if isinstance(item, PhotoImage) else item


class AnalyzerTask(ABC):
    """One analysis step over the photos of a process.

    ``prepare`` selects targets, ``process`` calls the model gateway and fills
    ``data`` (photo id -> result), ``commit`` persists one batch of ``data``
    and marks those photos completed in the process sheet.
    """

    def __init__(self, config, context: TaskContext):
        self.config = config
        self.context = context
        self.data: dict[int, Any] = {}

    @property
    def name(self) -> str:
        return self.config.name

    @property
    def needs_image(self) -> bool:
        return self.config.needs_image

    @property
    def with_guide_lines(self) -> bool:
        return getattr(self.config, "use_guide_lines", False)

    async def run(self, process):
        targets = await self.prepare(process)
        if not targets:
            log.info(f"[{self.name}] nothing to do")
            return
        log.info(f"[{self.name}] processing {len(targets)} photos")
        try:
            await self.process(targets, process)
        finally:
            self.data.clear()

    async def prepare(self, process) -> list[Photo] | list[PhotoImage]:
        photos = await self.context.store.get_photos(p.id for p in process.photos)
        if process.mode == AnalyzerMode.RETRY or self.config.only_if_needed:
            photos = await self.needing_work(photos, process)
        if self.needs_image:
            return await self.context.images.photos_with_images(photos, self.with_guide_lines)
        return photos

    async def needing_work(self, photos: list[Photo], process) -> list[Photo]:
        """Drop photos whose checks already pass; those are marked completed."""
        if not self.config.checks:
            return photos
        reports = await self.context.health.health_for_photos(p.id for p in photos)
        satisfied = {r.photo_id for r in reports if checks_satisfied(r, self.config.checks)}
        if satisfied:
            await process.mark_photos_completed(self.name, sorted(satisfied))
        log.debug(f"[{self.name}] {len(photos) - len(satisfied)}/{len(photos)} photos need work")
        return [p for p in photos if p.id not in satisfied]

    @abstractmethod
    async def process(self, targets: list, process): ...

    async def persist(self, photo_id: int, result: Any):
        """Save one photo's result. Needed by every task that goes through ``commit``."""
        raise NotImplementedError(f"{type(self).__name__} does not persist through commit")

    async def commit(self, batch: Iterable[Photo | PhotoImage], process) -> list[int]:
        """Persist the batch's accumulated data and mark those photos completed."""
        batch_ids = [photo_of(item).id for item in batch]
        done = [photo_id for photo_id in batch_ids if photo_id in self.data]
        try:
            for photo_id in done:
                await self.persist(photo_id, self.data[photo_id])
        except PersistenceError as e:
            log.error(f"[{self.name}] could not save photos {done}: {e}")
            return []
        finally:
            for photo_id in batch_ids:
                self.data.pop(photo_id, None)
        if done:
            await process.mark_photos_completed(self.name, done)
        return done
