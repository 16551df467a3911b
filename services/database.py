from datetime import UTC, datetime
from enum import StrEnum
from pathlib import Path

from sqlalchemy import JSON, Boolean, DateTime, Float, ForeignKey, Integer, String, Text
from sqlalchemy import Enum as SAEnum
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship

from config.settings import settings

engine = create_async_engine(settings.database_url, echo=False)
async_session = async_sessionmaker(engine, expire_on_commit=False)


class Base(DeclarativeBase):
    pass


# --- Enums ---


class AnalyzerMode(StrEnum):
    ADDING = "adding"  # only photos not owned by any process
    REMAKE = "remake"  # every user photo, detached from previous processes
    RETRY = "retry"  # photos already owned by the process


class StageType(StrEnum):
    INIT = "init"
    VISION_TASKS = "vision_tasks"
    TAGS_TASKS = "tags_tasks"
    EMBEDDINGS_TAGS = "embeddings_tags"
    CHUNKS_TASKS = "chunks_tasks"
    EMBEDDINGS_CHUNKS = "embeddings_chunks"
    FINISHED = "finished"
    FAILED = "failed"


STAGE_ORDER = [
    StageType.INIT,
    StageType.VISION_TASKS,
    StageType.TAGS_TASKS,
    StageType.EMBEDDINGS_TAGS,
    StageType.CHUNKS_TASKS,
    StageType.EMBEDDINGS_CHUNKS,
    StageType.FINISHED,
]


def utcnow() -> datetime:
    return datetime.now(UTC)


# --- Models ---


class AnalyzerProcessRecord(Base):
    """Persisted state of one analyzer process: its package, mode, stage and sheet."""

    __tablename__ = "analyzer_processes"

    id: Mapped[int] = mapped_column(primary_key=True)
    package_id: Mapped[str] = mapped_column(String(255))
    mode: Mapped[AnalyzerMode] = mapped_column(SAEnum(AnalyzerMode), default=AnalyzerMode.ADDING)
    current_stage: Mapped[StageType] = mapped_column(SAEnum(StageType), default=StageType.INIT)
    process_sheet: Mapped[dict | None] = mapped_column(JSON(none_as_null=True), nullable=True)
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    is_preprocess: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)


class Photo(Base):
    __tablename__ = "photos"

    id: Mapped[int] = mapped_column(primary_key=True)
    user_id: Mapped[int | None] = mapped_column(Integer, nullable=True, index=True)
    name: Mapped[str] = mapped_column(String(500))
    url: Mapped[str | None] = mapped_column(Text, nullable=True)
    descriptions: Mapped[dict | None] = mapped_column(JSON(none_as_null=True), nullable=True)
    embedding: Mapped[list | None] = mapped_column(JSON(none_as_null=True), nullable=True)
    color_histogram: Mapped[list | None] = mapped_column(JSON(none_as_null=True), nullable=True)
    color_histogram_dominant: Mapped[list | None] = mapped_column(JSON(none_as_null=True), nullable=True)
    analyzer_process_id: Mapped[int | None] = mapped_column(
        ForeignKey("analyzer_processes.id", ondelete="SET NULL"), nullable=True, index=True
    )
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, onupdate=utcnow)

    tags: Mapped[list["TagPhoto"]] = relationship(
        back_populates="photo", lazy="selectin", cascade="all, delete-orphan"
    )
    detections: Mapped[list["DetectionPhoto"]] = relationship(
        lazy="selectin", cascade="all, delete-orphan"
    )
    description_chunks: Mapped[list["DescriptionChunk"]] = relationship(
        lazy="selectin", cascade="all, delete-orphan"
    )


class Tag(Base):
    __tablename__ = "tags"

    id: Mapped[int] = mapped_column(primary_key=True)
    name: Mapped[str] = mapped_column(String(255), unique=True)
    group: Mapped[str] = mapped_column(String(100), default="misc")
    embedding: Mapped[list | None] = mapped_column(JSON(none_as_null=True), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow)


class TagPhoto(Base):
    __tablename__ = "tags_photos"

    id: Mapped[int] = mapped_column(primary_key=True)
    photo_id: Mapped[int] = mapped_column(ForeignKey("photos.id", ondelete="CASCADE"), index=True)
    tag_id: Mapped[int] = mapped_column(ForeignKey("tags.id", ondelete="CASCADE"))
    category: Mapped[str] = mapped_column(String(100), default="")
    area: Mapped[str | None] = mapped_column(String(50), nullable=True)

    photo: Mapped[Photo] = relationship(back_populates="tags")
    tag: Mapped[Tag] = relationship(lazy="selectin")


class DescriptionChunk(Base):
    __tablename__ = "descriptions_chunks"

    id: Mapped[int] = mapped_column(primary_key=True)
    photo_id: Mapped[int] = mapped_column(ForeignKey("photos.id", ondelete="CASCADE"), index=True)
    category: Mapped[str] = mapped_column(String(100))
    chunk: Mapped[str] = mapped_column(Text)
    embedding: Mapped[list | None] = mapped_column(JSON(none_as_null=True), nullable=True)


class DetectionPhoto(Base):
    __tablename__ = "detections_photos"

    id: Mapped[int] = mapped_column(primary_key=True)
    photo_id: Mapped[int] = mapped_column(ForeignKey("photos.id", ondelete="CASCADE"), index=True)
    category: Mapped[str] = mapped_column(String(100))
    x1: Mapped[float] = mapped_column(Float)
    y1: Mapped[float] = mapped_column(Float)
    x2: Mapped[float] = mapped_column(Float)
    y2: Mapped[float] = mapped_column(Float)


async def init_db():
    if engine.url.get_backend_name() == "sqlite" and engine.url.database:
        Path(engine.url.database).parent.mkdir(parents=True, exist_ok=True)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


async def get_session() -> AsyncSession:
    async with async_session() as session:
        yield session
