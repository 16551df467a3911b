import asyncio
import base64
import io
import logging
from collections import OrderedDict
from dataclasses import dataclass
from pathlib import Path

import httpx
from PIL import Image, ImageDraw

from config.settings import settings
from services.database import Photo

log = logging.getLogger(__name__)

GUIDE_LINES_WIDTH = 1000
GUIDE_LINE_POSITIONS = (0.375, 0.625)
GUIDE_LINE_THICKNESS = 5


@dataclass
class PhotoImage:
    """A photo paired with its base64-encoded image. Never persisted."""

    photo: Photo
    base64: str
    mime_type: str = "image/jpeg"


class ImageCache:
    """Bounded LRU cache of encoded images, scoped to one process run."""

    def __init__(self, max_size: int | None = None):
        self.max_size = max_size if max_size is not None else settings.image_cache_size
        self._items: OrderedDict[tuple[int, bool], str] = OrderedDict()
        self.hits = 0
        self.misses = 0

    def get(self, photo_id: int, with_guide_lines: bool = False) -> str | None:
        key = (photo_id, with_guide_lines)
        if key not in self._items:
            self.misses += 1
            return None
        self.hits += 1
        self._items.move_to_end(key)
        return self._items[key]

    def put(self, photo_id: int, with_guide_lines: bool, value: str):
        if self.max_size <= 0:
            return
        key = (photo_id, with_guide_lines)
        self._items[key] = value
        self._items.move_to_end(key)
        while len(self._items) > self.max_size:
            self._items.popitem(last=False)

    def clear(self):
        if self._items:
            log.debug(f"Clearing image cache ({len(self._items)} items, {self.hits} hits)")
        self._items.clear()
        self.hits = 0
        self.misses = 0

    def __len__(self) -> int:
        return len(self._items)


def draw_guide_lines(raw: bytes) -> bytes:
    """Scale to a fixed width and draw the two white vertical guide bars used for area prompts."""
    with Image.open(io.BytesIO(raw)) as img:
        img = img.convert("RGB")
        height = max(1, round(img.height * GUIDE_LINES_WIDTH / img.width))
        img = img.resize((GUIDE_LINES_WIDTH, height))
        draw = ImageDraw.Draw(img)
        for position in GUIDE_LINE_POSITIONS:
            x = round(GUIDE_LINES_WIDTH * position)
            draw.rectangle(
                [x - GUIDE_LINE_THICKNESS // 2, 0, x + GUIDE_LINE_THICKNESS // 2, height],
                fill=(255, 255, 255),
            )
        out = io.BytesIO()
        img.save(out, format="JPEG", quality=90)
    return out.getvalue()


class PhotoImageLoader:
    """Loads photo bytes from the local photos directory or the photo URL."""

    def __init__(
        self,
        cache: ImageCache | None = None,
        photos_dir: Path | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        concurrency: int | None = None,
    ):
        self.cache = cache if cache is not None else ImageCache()
        self.photos_dir = Path(photos_dir or settings.photos_dir)
        self._transport = transport
        self.concurrency = concurrency or settings.image_load_concurrency

    async def read_bytes(self, photo: Photo) -> bytes:
        path = self.photos_dir / photo.name
        if path.is_file():
            return await asyncio.to_thread(path.read_bytes)
        if photo.url:
            async with httpx.AsyncClient(timeout=60.0, transport=self._transport) as client:
                resp = await client.get(photo.url)
                resp.raise_for_status()
                return resp.content
        raise FileNotFoundError(f"No image for photo {photo.id} ({photo.name})")

    async def load_image_bytes(self, photo: Photo, with_guide_lines: bool = False) -> str:
        cached = self.cache.get(photo.id, with_guide_lines)
        if cached is not None:
            return cached
        raw = await self.read_bytes(photo)
        if with_guide_lines:
            raw = await asyncio.to_thread(draw_guide_lines, raw)
        encoded = base64.b64encode(raw).decode()
        self.cache.put(photo.id, with_guide_lines, encoded)
        return encoded

    async def photos_with_images(
        self, photos: list[Photo], with_guide_lines: bool = False
    ) -> list[PhotoImage]:
        """Load images for ``photos``; photos whose image cannot be read are skipped."""
        semaphore = asyncio.Semaphore(self.concurrency)

        async def load(photo: Photo) -> PhotoImage | None:
            async with semaphore:
                try:
                    encoded = await self.load_image_bytes(photo, with_guide_lines)
                except (OSError, httpx.HTTPError) as e:
                    log.warning(f"Skipping photo {photo.id}: image unavailable ({e})")
                    return None
            return PhotoImage(photo=photo, base64=encoded)

        loaded = await asyncio.gather(*(load(photo) for photo in photos))
        return [item for item in loaded if item is not None]
