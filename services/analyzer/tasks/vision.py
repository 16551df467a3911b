import logging

from config.settings import settings
from services.analyzer.prompts import PROMPTS
from services.analyzer.runner import chunked
from services.analyzer.tasks.base import AnalyzerTask
from services.database import Photo
from services.errors import BatchTimeoutError, ParseError
from services.llm.base import BatchResult, ImagePayload
from services.llm.parsing import as_photo_results, parse_photo_results

log = logging.getLogger(__name__)

TOPOLOGICAL_AREAS = {"left", "middle", "right", "whole"}
CUSTOM_ID_SEPARATOR = "-"


def custom_id_for(photos: list[Photo]) -> str:
    return CUSTOM_ID_SEPARATOR.join(str(p.id) for p in photos)


def photo_ids_from_custom_id(custom_id: str) -> list[int]:
    return [int(part) for part in custom_id.split(CUSTOM_ID_SEPARATOR)]


class VisionTask(AnalyzerTask):
    def images_for(self, batch) -> list[ImagePayload]:
        return [ImagePayload(item.base64, item.mime_type, self.config.resolution) for item in batch]


class VisionDescriptionTask(VisionTask):
    """Writes model descriptions into ``photo.descriptions``.

    Uses the asynchronous batch API when the task declares it and there are
    enough targets; sub-requests that fail to parse are re-run once through
    the direct API after every large batch has finished.
    """

    def __init__(self, config, context):
        super().__init__(config, context)
        self.failed_requests = []

    def prompt_for(self, photos: list[Photo]) -> str:
        return PROMPTS[self.config.prompt](photos, self.config.prompt_dependent_field)

    async def process(self, targets, process):
        self.failed_requests = []
        if self.config.batch_api and len(targets) >= self.config.images_per_batch:
            await self.process_with_batch_api(targets, process)
        else:
            await self.process_with_direct_api(targets, process)
        self.failed_requests = []

    async def persist(self, photo_id: int, result: dict):
        descriptions = {"visual_aspects": result} if self.config.visual_aspects else result
        await self.context.store.update_descriptions(photo_id, descriptions)

    def merge(self, photo_id: int, result: dict):
        self.data[photo_id] = {**self.data.get(photo_id, {}), **result}

    # --- Direct API ---

    async def process_with_direct_api(self, targets, process):
        cfg = self.config
        gateway = self.context.gateway

        async def handle(batch, index):
            photos = [item.photo for item in batch]
            log.debug(f"[{self.name}] calling {cfg.model} for {len(batch)} images")
            payload = await gateway.infer_direct(
                cfg.model, self.prompt_for(photos), self.images_for(batch), model=cfg.model_name
            )
            for item, result in zip(batch, as_photo_results(payload, len(batch))):
                self.merge(item.photo.id, result)
            return await self.commit(batch, process)

        return await self.context.runner.run_direct(
            targets,
            cfg.images_per_batch,
            handle,
            sequential=cfg.sequential,
            stagger=cfg.stagger_seconds,
            max_concurrency=cfg.max_concurrency,
        )

    # --- Batch API ---

    async def process_with_batch_api(self, targets, process):
        cfg = self.config
        gateway = self.context.gateway
        runner = self.context.runner

        async def handle(large_batch):
            def build_requests():
                return [
                    gateway.build_batch_request(
                        cfg.model,
                        custom_id_for([item.photo for item in request]),
                        self.prompt_for([item.photo for item in request]),
                        self.images_for(request),
                        model=cfg.model_name,
                    )
                    for request in chunked(large_batch, settings.batch_photos_per_request)
                ]

            try:
                outcome = await runner.poller(gateway, cfg.model).run(build_requests)
            except BatchTimeoutError:
                if cfg.fallback_on_batch_timeout:
                    self.failed_requests.extend(large_batch)
                raise
            self.merge_batch_results(outcome.results, large_batch)
            return await self.commit(large_batch, process)

        await runner.run_batch_api(targets, handle)

        if self.failed_requests:
            failed, self.failed_requests = self.failed_requests, []
            log.warning(f"[{self.name}] re-running {len(failed)} photos through the direct API")
            await self.process_with_direct_api(failed, process)

    def merge_batch_results(self, results: list[BatchResult], large_batch):
        by_id = {item.photo.id: item for item in large_batch}
        expected = {
            custom_id_for([item.photo for item in request])
            for request in chunked(large_batch, settings.batch_photos_per_request)
        }
        seen = set()
        for result in results:
            seen.add(result.custom_id)
            photo_ids = photo_ids_from_custom_id(result.custom_id)
            try:
                if result.error or result.content is None:
                    raise ParseError(f"sub-request failed: {result.error}")
                parsed = parse_photo_results(result.content, len(photo_ids))
            except ParseError as e:
                log.error(f"[{self.name}] batch result {result.custom_id} unusable: {e}")
                self.failed_requests.extend(by_id[i] for i in photo_ids if i in by_id)
                continue
            for photo_id, photo_result in zip(photo_ids, parsed):
                if photo_id in by_id:
                    self.merge(photo_id, photo_result)

        for custom_id in expected - seen:
            log.error(f"[{self.name}] batch returned no result for {custom_id}")
            self.failed_requests.extend(by_id[i] for i in photo_ids_from_custom_id(custom_id))


class VisionTopologicalTask(VisionTask):
    """Asks, per photo, in which area each of its tags appears and stores it on the tag link."""

    async def process(self, targets, process):
        cfg = self.config
        gateway = self.context.gateway

        async def handle(batch, index):
            for item in batch:
                links = [link for link in item.photo.tags if link.tag is not None]
                if not links:
                    log.debug(f"[{self.name}] photo {item.photo.id} has no tags, skipping")
                    continue
                prompt = PROMPTS[cfg.prompt](links, cfg.use_guide_lines)
                payload = await gateway.infer_direct(
                    cfg.model, prompt, self.images_for([item]), model=cfg.model_name
                )
                areas = self.parse_areas(payload, {link.id for link in links})
                if areas:
                    self.data[item.photo.id] = areas
                else:
                    log.warning(f"[{self.name}] no usable areas for photo {item.photo.id}")
            return await self.commit(batch, process)

        return await self.context.runner.run_direct(
            targets,
            cfg.images_per_batch,
            handle,
            sequential=cfg.sequential,
            stagger=cfg.stagger_seconds,
            max_concurrency=cfg.max_concurrency,
        )

    @staticmethod
    def parse_areas(payload, link_ids: set[int]) -> dict[int, str]:
        if isinstance(payload, list) and len(payload) == 1:
            payload = payload[0]
        if not isinstance(payload, dict):
            raise ParseError("Expected an object mapping tag ids to areas")
        areas = {}
        for key, area in payload.items():
            try:
                link_id = int(key)
            except (TypeError, ValueError):
                continue
            area = str(area).strip().lower()
            if link_id in link_ids and area in TOPOLOGICAL_AREAS:
                areas[link_id] = area
        return areas

    async def persist(self, photo_id: int, result: dict[int, str]):
        await self.context.store.update_tag_photo_areas(photo_id, result)
