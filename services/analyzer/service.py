import asyncio
import logging

from services.analyzer.health import HealthChecker, HealthReport
from services.analyzer.packages import get_package
from services.analyzer.process import AnalyzerProcess
from services.analyzer.repository import ProcessRepository
from services.analyzer.sheet import ProcessSheet
from services.analyzer.tasks import TaskContext
from services.database import AnalyzerMode
from services.errors import ProcessNotFoundError
from services.llm import model_gateway
from services.photos.images import ImageCache, PhotoImageLoader

log = logging.getLogger(__name__)


class AnalyzerService:
    """Control surface over analyzer processes, used by the HTTP layer."""

    def __init__(self, gateway=None, store=None, repository: ProcessRepository | None = None):
        self.gateway = gateway or model_gateway
        self.store = store
        self.repository = repository or ProcessRepository()
        self._background: set[asyncio.Task] = set()

    def new_context(self) -> TaskContext:
        # One image cache per run
        kwargs = {"gateway": self.gateway, "images": PhotoImageLoader(cache=ImageCache())}
        if self.store is not None:
            kwargs["store"] = self.store
        return TaskContext(**kwargs)

    @property
    def health(self) -> HealthChecker:
        return self.new_context().health

    async def create(
        self, user_id: int | None, package_id: str, mode: AnalyzerMode
    ) -> AnalyzerProcess:
        package = get_package(package_id)
        record = await self.repository.create(
            package.id, mode, user_id=user_id, is_preprocess=package.is_preprocess
        )
        process = AnalyzerProcess(record, self.new_context(), self.repository)
        user_photos = await process.context.store.get_user_photos(user_id)
        await process.initialize(user_photos, package.id, mode)
        return process

    async def create_and_run(
        self,
        user_id: int | None,
        package_id: str,
        mode: AnalyzerMode = AnalyzerMode.ADDING,
        sync: bool = True,
    ) -> int:
        process = await self.create(user_id, package_id, mode)
        await self._run(process, sync)
        return process.id

    async def load(self, process_id: int) -> AnalyzerProcess:
        record = await self.repository.get(process_id)
        if record is None:
            raise ProcessNotFoundError(f"Process {process_id} not found")
        process = AnalyzerProcess(record, self.new_context(), self.repository)
        await process.load()
        return process

    async def get_process(self, process_id: int) -> dict:
        record = await self.repository.get(process_id)
        if record is None:
            raise ProcessNotFoundError(f"Process {process_id} not found")
        sheet = ProcessSheet.from_dict(record.process_sheet)
        return {
            "id": record.id,
            "package_id": record.package_id,
            "mode": record.mode,
            "stage": record.current_stage,
            "complete": sheet.is_complete(),
            "sheet": sheet.summary(),
        }

    async def retry(self, process_id: int, sync: bool = True) -> int:
        """Re-run a process over its own photos; tasks pick their work from health checks."""
        process = await self.load(process_id)
        user_photos = await process.context.store.get_user_photos(process.record.user_id)
        await process.initialize(user_photos, process.record.package_id, AnalyzerMode.RETRY)
        await self._run(process, sync)
        return process.id

    async def reconcile(self, process_id: int) -> dict[str, list[int]]:
        process = await self.load(process_id)
        return await process.context.health.reconcile_process_sheet(process)

    async def photo_health(self, photo_id: int) -> HealthReport:
        return await self.health.photo_health(photo_id)

    async def _run(self, process: AnalyzerProcess, sync: bool):
        if sync:
            await process.run()
            return
        task = asyncio.create_task(process.run(), name=f"analyzer-process-{process.id}")
        self._background.add(task)
        task.add_done_callback(self._finished)

    def _finished(self, task: asyncio.Task):
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            log.error(f"{task.get_name()} ended with {task.exception()!r}")


# Singleton instance
analyzer_service = AnalyzerService()
