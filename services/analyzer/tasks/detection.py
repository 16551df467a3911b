import logging

from services.analyzer.prompts import PROMPTS
from services.analyzer.tasks.vision import VisionTask
from services.errors import ParseError
from services.photos.store import DetectionInput

log = logging.getLogger(__name__)


def parse_detections(
    payload, categories: list[str], min_box_size: float = 0.0
) -> list[DetectionInput]:
    """Keep well-formed boxes of known categories that are at least ``min_box_size`` on each side."""
    if isinstance(payload, dict):
        payload = payload.get("detections", [])
    if not isinstance(payload, list):
        raise ParseError("Expected a list of detections")

    detections = []
    for item in payload:
        if not isinstance(item, dict):
            continue
        category = str(item.get("category", "")).strip().lower()
        box = item.get("box")
        if category not in categories or not isinstance(box, list) or len(box) != 4:
            continue
        try:
            x1, y1, x2, y2 = (float(v) for v in box)
        except (TypeError, ValueError):
            continue
        width, height = x2 - x1, y2 - y1
        if width <= 0 or height <= 0 or width < min_box_size or height < min_box_size:
            continue
        detections.append(DetectionInput(category, x1, y1, x2, y2))
    return detections


class ObjectDetectionTask(VisionTask):
    """Stores detection boxes per category, replacing previous detections of the photo."""

    async def process(self, targets, process):
        cfg = self.config
        categories = [c.lower() for c in cfg.categories]
        prompt = PROMPTS[cfg.prompt](cfg.categories)

        async def handle(batch, index):
            for item in batch:
                payload = await self.context.gateway.infer_direct(
                    cfg.model, prompt, self.images_for([item]), model=cfg.model_name
                )
                detections = parse_detections(payload, categories, cfg.min_box_size)
                log.debug(f"[{self.name}] photo {item.photo.id}: {len(detections)} detections")
                self.data[item.photo.id] = detections
            return await self.commit(batch, process)

        return await self.context.runner.run_direct(
            targets,
            cfg.images_per_batch,
            handle,
            sequential=cfg.sequential,
            stagger=cfg.stagger_seconds,
            max_concurrency=cfg.max_concurrency,
        )

    async def persist(self, photo_id: int, result: list[DetectionInput]):
        await self.context.store.update_detections(photo_id, result, replace_all=True)
