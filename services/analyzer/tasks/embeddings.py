import asyncio
import io
import logging
from base64 import b64decode

from PIL import Image

from config.settings import settings
from services.analyzer.health import checks_satisfied
from services.analyzer.runner import BoundedPool, chunked
from services.analyzer.tasks.base import AnalyzerTask

log = logging.getLogger(__name__)

HISTOGRAM_BINS_PER_CHANNEL = 8
DOMINANT_COLORS = 5


async def embed_in_groups(
    gateway,
    texts: list[str],
    batch_size: int | None = None,
    concurrency: int | None = None,
) -> list[list[float]]:
    """Embed ``texts`` in groups with bounded concurrency, keeping input order."""
    if not texts:
        return []
    groups = list(enumerate(chunked(texts, batch_size or settings.embeddings_batch_size)))
    pool = BoundedPool(concurrency or settings.embeddings_concurrency)

    async def embed(entry):
        index, group = entry
        return index, await gateway.embed_texts(group)

    outcome = await pool.run(groups, embed)
    if outcome.failures:
        raise outcome.failures[0][1]
    embeddings = []
    for _, vectors in sorted(outcome.results, key=lambda r: r[0]):
        embeddings.extend(vectors)
    return embeddings


def color_histograms(raw: bytes) -> tuple[list[float], list[float]]:
    """Normalised RGB histogram (8 bins per channel) and dominant colours as (r, g, b, share)."""
    with Image.open(io.BytesIO(raw)) as img:
        img = img.convert("RGB")
        img.thumbnail((256, 256))
        pixels = img.width * img.height

        histogram = img.histogram()
        step = 256 // HISTOGRAM_BINS_PER_CHANNEL
        full = []
        for channel in range(3):
            values = histogram[channel * 256 : (channel + 1) * 256]
            full.extend(
                round(sum(values[b : b + step]) / pixels, 6) for b in range(0, 256, step)
            )

        quantized = img.quantize(colors=DOMINANT_COLORS)
        palette = quantized.getpalette() or []
        counts = sorted(quantized.getcolors() or [], reverse=True)

    dominant = []
    for count, index in counts[:DOMINANT_COLORS]:
        r, g, b = palette[index * 3 : index * 3 + 3]
        share = count / pixels
        dominant.extend(round(v, 4) for v in (r / 255, g / 255, b / 255, share))
    dominant.extend([0.0] * (DOMINANT_COLORS * 4 - len(dominant)))
    return full, dominant


class VisualEmbeddingTask(AnalyzerTask):
    """CLIP image embeddings into ``photo.embedding``."""

    async def process(self, targets, process):
        gateway = self.context.gateway

        async def handle(batch, index):
            items = [{"id": item.photo.id, "base64": item.base64} for item in batch]
            embeddings = await gateway.embed_images(items)
            for item in batch:
                if item.photo.id in embeddings:
                    self.data[item.photo.id] = embeddings[item.photo.id]
            return await self.commit(batch, process)

        return await self.context.runner.run_direct(targets, self.config.images_per_batch, handle)

    async def persist(self, photo_id: int, result: list[float]):
        await self.context.store.update_embedding(photo_id, result)


class ColorEmbeddingTask(AnalyzerTask):
    """Colour histograms computed locally from the photo bytes."""

    async def process(self, targets, process):
        async def handle(batch, index):
            for item in batch:
                try:
                    self.data[item.photo.id] = await asyncio.to_thread(
                        color_histograms, b64decode(item.base64)
                    )
                except (OSError, ValueError) as e:
                    log.warning(f"[{self.name}] cannot read image of photo {item.photo.id}: {e}")
            return await self.commit(batch, process)

        return await self.context.runner.run_direct(targets, self.config.images_per_batch, handle)

    async def persist(self, photo_id: int, result: tuple[list[float], list[float]]):
        full, dominant = result
        await self.context.store.update_color_histograms(photo_id, full, dominant)


class EmbeddingsBackfillTask(AnalyzerTask):
    """Embeds tags or description chunks of the process photos that still lack an embedding."""

    async def process(self, targets, process):
        store = self.context.store
        photo_ids = [p.id for p in targets]

        if self.config.target == "tags":
            items = await store.tags_missing_embeddings(photo_ids)
            texts = [tag.name for tag in items]
            save = store.save_tag_embeddings
        else:
            items = await store.chunks_missing_embeddings(photo_ids)
            texts = [chunk.chunk for chunk in items]
            save = store.save_chunk_embeddings

        log.info(f"[{self.name}] {len(items)} {self.config.target} missing embeddings")
        gateway = self.context.gateway
        group = settings.embeddings_batch_size
        pairs = list(zip(items, texts))

        async def handle(batch, index):
            vectors = await gateway.embed_texts([text for _, text in batch])
            await save({item.id: vector for (item, _), vector in zip(batch, vectors)})

        await self.context.runner.run_direct(
            pairs, group, handle, max_concurrency=settings.embeddings_concurrency
        )

        # Completion is whatever the health checks now say
        reports = await self.context.health.health_for_photos(photo_ids)
        done = [r.photo_id for r in reports if checks_satisfied(r, self.config.checks)]
        if done:
            await process.mark_photos_completed(self.name, done)
        log.info(f"[{self.name}] {len(done)}/{len(photo_ids)} photos have every embedding")
