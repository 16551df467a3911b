import asyncio
import logging
from collections.abc import Iterable

from services.analyzer.packages import PackageConfig, get_package
from services.analyzer.repository import ProcessRepository
from services.analyzer.sheet import ProcessSheet
from services.analyzer.tasks import TaskContext, build_task
from services.database import STAGE_ORDER, AnalyzerMode, AnalyzerProcessRecord, Photo, StageType
from services.errors import ConfigurationError

log = logging.getLogger(__name__)


class AnalyzerProcess:
    """One run of a package of tasks over the photos owned by a process record.

    The process sheet is the durable record of per-task progress; the stage is
    a coarse marker that only moves forward during a run (or to ``failed``).
    """

    def __init__(
        self,
        record: AnalyzerProcessRecord,
        context: TaskContext,
        repository: ProcessRepository | None = None,
    ):
        self.record = record
        self.context = context
        self.repository = repository or ProcessRepository()
        self.sheet = ProcessSheet.from_dict(record.process_sheet)
        self.photos: list[Photo] = []
        self.package: PackageConfig | None = None
        self._save_lock = asyncio.Lock()

    @property
    def id(self) -> int:
        return self.record.id

    @property
    def mode(self) -> AnalyzerMode:
        return self.record.mode

    @property
    def stage(self) -> StageType:
        return self.record.current_stage

    async def initialize(self, user_photos: Iterable[Photo], package_id: str, mode: AnalyzerMode):
        package = get_package(package_id)
        store = self.context.store

        selected = await store.select_for_mode(mode, user_photos, self.id)
        await store.assign_process(self.id, [p.id for p in selected])
        self.photos = await store.get_owned_photos(self.id)
        self.package = package

        self.record.package_id = package.id
        self.record.is_preprocess = package.is_preprocess
        self.record.mode = mode
        self.record.current_stage = StageType.INIT
        if mode != AnalyzerMode.RETRY:
            self.sheet.initialize(package.task_names, [p.id for p in self.photos])
        await self.save()
        log.info(
            f"Process {self.id} initialized: package={package.id} mode={mode} "
            f"photos={len(self.photos)}"
        )

    async def load(self):
        """Attach package and owned photos to a process restored from its record."""
        self.package = get_package(self.record.package_id)
        self.photos = await self.context.store.get_owned_photos(self.id)

    async def save(self):
        async with self._save_lock:
            # Snapshot inside the lock so the last write always carries the latest sheet
            await self.repository.save(self.record, self.sheet.to_dict())

    async def mark_photos_completed(self, task_name: str, photo_ids: Iterable[int]):
        self.sheet.mark_completed(task_name, photo_ids)
        await self.save()

    async def advance_stage(self, stage: StageType):
        current = self.record.current_stage
        if stage == StageType.FAILED or current == StageType.FAILED:
            self.record.current_stage = stage
        elif STAGE_ORDER.index(stage) > STAGE_ORDER.index(current):
            self.record.current_stage = stage
        else:
            return
        log.debug(f"Process {self.id} stage {current} -> {self.record.current_stage}")
        await self.save()

    async def run(self):
        if self.package is None:
            raise ConfigurationError(f"Process {self.id} was not initialized")

        try:
            for config in self.package.tasks:
                await self.advance_stage(config.stage)
                task = build_task(config, self.context)
                await task.run(self)
                log.info(
                    f"Process {self.id} [{task.name}] done: "
                    f"{len(self.sheet.completed_for(task.name))} completed, "
                    f"{len(self.sheet.pending_for(task.name))} pending"
                )
        except Exception:
            log.exception(f"Process {self.id} failed")
            await self.advance_stage(StageType.FAILED)
            raise
        finally:
            self.context.images.cache.clear()

        await self.advance_stage(StageType.FINISHED)
        if not self.sheet.is_complete():
            log.warning(f"Process {self.id} finished with pending photos: {self.summary()}")
        return self.summary()

    def summary(self) -> dict:
        return {
            "id": self.id,
            "package_id": self.record.package_id,
            "mode": self.record.mode,
            "stage": self.record.current_stage,
            "photos": len(self.photos),
            "complete": self.sheet.is_complete(),
            "tasks": self.sheet.summary(),
        }
