import logging
from collections.abc import Iterable
from contextlib import asynccontextmanager
from dataclasses import dataclass

from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from services.database import (
    AnalyzerMode,
    DescriptionChunk,
    DetectionPhoto,
    Photo,
    Tag,
    TagPhoto,
    async_session,
)
from services.errors import PersistenceError

log = logging.getLogger(__name__)


@dataclass
class TagInput:
    name: str
    group: str = "misc"
    embedding: list[float] | None = None


@dataclass
class ChunkInput:
    category: str
    chunk: str
    embedding: list[float] | None = None


@dataclass
class DetectionInput:
    category: str
    x1: float
    y1: float
    x2: float
    y2: float


def deep_merge(base: dict, updates: dict) -> dict:
    """Merge nested dicts recursively; scalars and lists in ``updates`` replace."""
    merged = dict(base)
    for key, value in updates.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


class PhotoStore:
    """Durable storage for photos, tags, tag links, detections and description chunks.

    Every call opens its own session, so sub-batches running concurrently never
    share one. Write failures surface as ``PersistenceError``.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession] | None = None):
        self.session_factory = session_factory or async_session

    @asynccontextmanager
    async def _write(self, action: str):
        try:
            async with self.session_factory() as session:
                yield session
                await session.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to {action}: {e}") from e

    # --- Reads ---

    async def get_photo(self, photo_id: int) -> Photo | None:
        async with self.session_factory() as session:
            return await session.get(Photo, photo_id)

    async def get_photos(self, photo_ids: Iterable[int]) -> list[Photo]:
        ids = list(photo_ids)
        if not ids:
            return []
        async with self.session_factory() as session:
            result = await session.execute(select(Photo).where(Photo.id.in_(ids)).order_by(Photo.id))
            return list(result.scalars().all())

    async def get_user_photos(self, user_id: int | None) -> list[Photo]:
        async with self.session_factory() as session:
            stmt = select(Photo).order_by(Photo.id)
            if user_id is not None:
                stmt = stmt.where(Photo.user_id == user_id)
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def get_owned_photos(self, process_id: int) -> list[Photo]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Photo).where(Photo.analyzer_process_id == process_id).order_by(Photo.id)
            )
            return list(result.scalars().all())

    async def select_for_mode(
        self, mode: AnalyzerMode, user_photos: Iterable[Photo], process_id: int
    ) -> list[Photo]:
        """Photos a process should own for ``mode``.

        ``adding`` keeps the unowned user photos, ``remake`` keeps all of them
        and ``retry`` reuses whatever the process already owns.
        """
        match mode:
            case AnalyzerMode.ADDING:
                return [p for p in user_photos if p.analyzer_process_id is None]
            case AnalyzerMode.REMAKE:
                return list(user_photos)
            case _:
                return await self.get_owned_photos(process_id)

    async def get_tags_by_names(self, names: Iterable[str]) -> dict[str, Tag]:
        names = list(set(names))
        if not names:
            return {}
        async with self.session_factory() as session:
            result = await session.execute(select(Tag).where(Tag.name.in_(names)))
            return {tag.name: tag for tag in result.scalars().all()}

    async def tags_missing_embeddings(self, photo_ids: Iterable[int]) -> list[Tag]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Tag)
                .join(TagPhoto, TagPhoto.tag_id == Tag.id)
                .where(TagPhoto.photo_id.in_(list(photo_ids)), Tag.embedding.is_(None))
                .distinct()
            )
            return list(result.scalars().all())

    async def chunks_missing_embeddings(self, photo_ids: Iterable[int]) -> list[DescriptionChunk]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(DescriptionChunk).where(
                    DescriptionChunk.photo_id.in_(list(photo_ids)),
                    DescriptionChunk.embedding.is_(None),
                )
            )
            return list(result.scalars().all())

    # --- Ownership ---

    async def assign_process(self, process_id: int, photo_ids: Iterable[int]):
        """Make ``photo_ids`` exactly the set owned by the process, in one transaction."""
        ids = list(photo_ids)
        async with self._write("assign photos to process") as session:
            await session.execute(
                update(Photo)
                .where(Photo.analyzer_process_id == process_id, Photo.id.not_in(ids))
                .values(analyzer_process_id=None)
            )
            if ids:
                await session.execute(
                    update(Photo).where(Photo.id.in_(ids)).values(analyzer_process_id=process_id)
                )

    # --- Writes ---

    async def update_descriptions(self, photo_id: int, partial: dict) -> Photo:
        async with self._write(f"update descriptions of photo {photo_id}") as session:
            photo = await session.get(Photo, photo_id)
            if photo is None:
                raise PersistenceError(f"Photo {photo_id} not found")
            # JSON columns are not mutation-tracked, assign a fresh dict
            photo.descriptions = deep_merge(photo.descriptions or {}, partial)
        return photo

    async def update_embedding(self, photo_id: int, embedding: list[float]):
        async with self._write(f"update embedding of photo {photo_id}") as session:
            await session.execute(update(Photo).where(Photo.id == photo_id).values(embedding=embedding))

    async def update_color_histograms(self, photo_id: int, full: list[float], dominant: list[float]):
        async with self._write(f"update color histograms of photo {photo_id}") as session:
            await session.execute(
                update(Photo)
                .where(Photo.id == photo_id)
                .values(color_histogram=full, color_histogram_dominant=dominant)
            )

    async def update_detections(
        self, photo_id: int, detections: list[DetectionInput], replace_all: bool = True
    ):
        async with self._write(f"update detections of photo {photo_id}") as session:
            if replace_all:
                await session.execute(delete(DetectionPhoto).where(DetectionPhoto.photo_id == photo_id))
            session.add_all(
                DetectionPhoto(
                    photo_id=photo_id, category=d.category, x1=d.x1, y1=d.y1, x2=d.x2, y2=d.y2
                )
                for d in detections
            )

    async def replace_tags_for_category(self, photo_id: int, category: str, tags: list[TagInput]):
        """Replace the photo's tag links of ``category``, creating missing tags by name."""
        async with self._write(f"replace {category} tags of photo {photo_id}") as session:
            await session.execute(
                delete(TagPhoto).where(TagPhoto.photo_id == photo_id, TagPhoto.category == category)
            )
            names = list({t.name for t in tags})
            existing = {}
            if names:
                result = await session.execute(select(Tag).where(Tag.name.in_(names)))
                existing = {tag.name: tag for tag in result.scalars().all()}

            linked = set()
            for tag_input in tags:
                tag = existing.get(tag_input.name)
                if tag is None:
                    tag = Tag(name=tag_input.name, group=tag_input.group, embedding=tag_input.embedding)
                    session.add(tag)
                    await session.flush()
                    existing[tag.name] = tag
                elif tag.embedding is None and tag_input.embedding is not None:
                    tag.embedding = tag_input.embedding
                if tag.id in linked:
                    continue
                linked.add(tag.id)
                session.add(TagPhoto(photo_id=photo_id, tag_id=tag.id, category=category))

    async def update_tag_photo_areas(self, photo_id: int, areas: dict[int, str]):
        async with self._write(f"update tag areas of photo {photo_id}") as session:
            for tag_photo_id, area in areas.items():
                await session.execute(
                    update(TagPhoto)
                    .where(TagPhoto.id == tag_photo_id, TagPhoto.photo_id == photo_id)
                    .values(area=area)
                )

    async def replace_description_chunks(self, photo_id: int, chunks: list[ChunkInput]):
        async with self._write(f"replace description chunks of photo {photo_id}") as session:
            await session.execute(delete(DescriptionChunk).where(DescriptionChunk.photo_id == photo_id))
            session.add_all(
                DescriptionChunk(
                    photo_id=photo_id, category=c.category, chunk=c.chunk, embedding=c.embedding
                )
                for c in chunks
            )

    async def save_tag_embeddings(self, embeddings: dict[int, list[float]]):
        async with self._write("save tag embeddings") as session:
            for tag_id, embedding in embeddings.items():
                await session.execute(update(Tag).where(Tag.id == tag_id).values(embedding=embedding))

    async def save_chunk_embeddings(self, embeddings: dict[int, list[float]]):
        async with self._write("save chunk embeddings") as session:
            for chunk_id, embedding in embeddings.items():
                await session.execute(
                    update(DescriptionChunk)
                    .where(DescriptionChunk.id == chunk_id)
                    .values(embedding=embedding)
                )


# Singleton instance
photo_store = PhotoStore()
