import logging
import re

from services.analyzer.tasks.base import AnalyzerTask
from services.analyzer.tasks.embeddings import embed_in_groups
from services.database import Photo
from services.photos.store import ChunkInput

log = logging.getLogger(__name__)

_SENTENCE_END = re.compile(r"(?<=[.!?])\s+")


def split_by_size(text: str, max_length: int) -> list[str]:
    """Group whole sentences into chunks of at most ``max_length`` characters.

    A single sentence longer than ``max_length`` becomes a chunk of its own.
    """
    chunks = []
    current = ""
    for sentence in _SENTENCE_END.split(text.strip()):
        sentence = sentence.strip()
        if not sentence:
            continue
        candidate = f"{current} {sentence}" if current else sentence
        if len(candidate) <= max_length or not current:
            current = candidate
        else:
            chunks.append(current)
            current = sentence
        if len(current) > max_length:
            chunks.append(current)
            current = ""
    if current:
        chunks.append(current)
    return chunks


def split_by_pipes(text: str) -> list[str]:
    return [part.strip() for part in text.split("|") if part.strip()]


def split_field(value, method) -> list[str]:
    if value is None or value == "":
        return []
    if isinstance(value, list):
        separator = " | " if method.type == "split_by_pipes" else " "
        value = separator.join(map(str, value))
    value = str(value)
    if method.type == "split_by_pipes":
        return split_by_pipes(value)
    return split_by_size(value, method.max_length)


class ChunkTask(AnalyzerTask):
    """Splits description fields into embedded chunks, replacing the photo's previous chunks."""

    def chunks_for(self, photo: Photo) -> list[ChunkInput]:
        descriptions = photo.descriptions or {}
        chunks = []
        for field in self.config.description_source_fields:
            method = self.config.methods[field]
            chunks.extend(
                ChunkInput(category=field, chunk=text)
                for text in split_field(descriptions.get(field), method)
            )
        return chunks

    async def process(self, targets: list[Photo], process):
        fields = self.config.description_source_fields
        valid = [p for p in targets if any((p.descriptions or {}).get(f) for f in fields)]
        if len(valid) < len(targets):
            log.info(f"[{self.name}] skipping {len(targets) - len(valid)} photos without {fields}")

        async def handle(batch, index):
            chunks = {photo.id: self.chunks_for(photo) for photo in batch}
            flat = [chunk for photo_chunks in chunks.values() for chunk in photo_chunks]
            vectors = await embed_in_groups(self.context.gateway, [c.chunk for c in flat])
            for chunk, vector in zip(flat, vectors):
                chunk.embedding = vector
            self.data.update(chunks)
            return await self.commit(batch, process)

        return await self.context.runner.run_direct(valid, self.config.photos_per_batch, handle)

    async def persist(self, photo_id: int, result: list[ChunkInput]):
        await self.context.store.replace_description_chunks(photo_id, result)
