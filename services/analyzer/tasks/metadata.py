import asyncio
import io
import logging

import httpx
from PIL import Image, ImageStat

from services.analyzer.tasks.base import AnalyzerTask
from services.database import Photo

log = logging.getLogger(__name__)

TEMPERATURE_THRESHOLD = 10
COLOR_THRESHOLD_HIGH = 0.08
COLOR_THRESHOLD_LOW = 0.02
SATURATION_THRESHOLD = 0.05
GRAYSCALE_MODES = {"1", "L", "LA", "I", "I;16", "F"}


def orientation_of(width: int, height: int) -> str:
    if width > height:
        return "horizontal"
    if height > width:
        return "vertical"
    return "square"


def temperature_of(img: Image.Image) -> str:
    r_mean, _, b_mean = ImageStat.Stat(img.convert("RGB")).mean
    diff = r_mean - b_mean
    if diff > TEMPERATURE_THRESHOLD:
        return "warm"
    if diff < -TEMPERATURE_THRESHOLD:
        return "cold"
    return "neutral"


def color_factor(img: Image.Image) -> float:
    """Mean absolute channel difference, normalised to [0, 1]."""
    small = img.convert("RGB")
    small.thumbnail((100, 100))
    pixels = list(small.getdata())
    total = sum(abs(r - g) + abs(r - b) + abs(g - b) for r, g, b in pixels)
    return total / (len(pixels) * 255 * 3)


def mean_saturation(img: Image.Image) -> float:
    small = img.convert("RGB")
    small.thumbnail((50, 50))
    total = 0.0
    for r, g, b in small.getdata():
        high, low = max(r, g, b), min(r, g, b)
        total += 0 if high == 0 else (high - low) / high
    return total / (small.width * small.height)


def palette_of(img: Image.Image) -> str:
    if img.mode in GRAYSCALE_MODES:
        return "black and white"
    factor = color_factor(img)
    if factor >= COLOR_THRESHOLD_HIGH:
        return "color"
    if factor <= COLOR_THRESHOLD_LOW:
        return "black and white"
    return "color" if mean_saturation(img) > SATURATION_THRESHOLD else "black and white"


def extract_metadata(raw: bytes) -> dict:
    with Image.open(io.BytesIO(raw)) as img:
        img.load()
        aspects = {
            "orientation": [orientation_of(img.width, img.height)],
            "temperature": [temperature_of(img)],
            "palette": [palette_of(img)],
            "dimensions": [f"{img.width}x{img.height}"],
        }
        if img.format:
            aspects["format"] = [img.format.lower()]
    return aspects


class MetadataTask(AnalyzerTask):
    """Orientation, colour temperature and palette read from the image file itself."""

    async def process(self, targets: list[Photo], process):
        loader = self.context.images

        async def extract(photo: Photo):
            try:
                raw = await loader.read_bytes(photo)
                self.data[photo.id] = await asyncio.to_thread(extract_metadata, raw)
            except (OSError, httpx.HTTPError) as e:
                log.error(f"[{self.name}] metadata of photo {photo.id} ({photo.name}) failed: {e}")

        async def handle(batch, index):
            await asyncio.gather(*(extract(photo) for photo in batch))
            return await self.commit(batch, process)

        return await self.context.runner.run_direct(
            targets, self.config.photos_per_batch, handle, sequential=True
        )

    async def persist(self, photo_id: int, result: dict):
        await self.context.store.update_descriptions(photo_id, {"visual_aspects": result})
