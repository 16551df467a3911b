"""Shared fixtures for analyzer tests.

Every database is a throwaway SQLite file and every model call is answered in
memory by ``FakeGateway``. No network access required.
"""
import asyncio
import base64
import io
import json

import pytest
from PIL import Image
from sqlalchemy.ext.asyncio import async_sessionmaker, create_async_engine
from sqlalchemy.pool import NullPool

import services.analyzer.process as process_module
import services.analyzer.service as service_module
from services.analyzer.packages import REGISTRY, get_package
from services.analyzer.process import AnalyzerProcess
from services.analyzer.repository import ProcessRepository
from services.analyzer.runner import BatchRunner
from services.analyzer.tasks import TaskContext
from services.database import AnalyzerMode, Base, Photo
from services.errors import TransientGatewayError
from services.llm.base import ACTIVE_BATCH_STATUSES, BatchResult, BatchStatus
from services.photos.images import ImageCache, PhotoImage
from services.photos.store import PhotoStore


# ---------------------------------------------------------------------------
# Fakes
# ---------------------------------------------------------------------------

def encode_photo_id(photo_id: int) -> str:
    return base64.b64encode(f"photo:{photo_id}".encode()).decode()


def photo_ids_in(images) -> list[int]:
    """Recover photo ids from images produced by ``FakeImageLoader``."""
    return [int(base64.b64decode(image.base64).decode().split(":")[1]) for image in images or []]


def png_bytes(size=(40, 30), color=(200, 80, 40), mode="RGB") -> bytes:
    out = io.BytesIO()
    Image.new(mode, size, color).save(out, format="PNG")
    return out.getvalue()


class FakeClock:
    """Records requested sleeps and only yields to the event loop."""

    def __init__(self):
        self.sleeps: list[float] = []

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        await asyncio.sleep(0)


class FakeImageLoader:
    """Encodes each photo as its own id so the fake gateway can tell which photos it was sent."""

    def __init__(self):
        self.cache = ImageCache(max_size=16)
        self.unreadable: set[int] = set()
        self.files: dict[int, bytes] = {}

    async def photos_with_images(self, photos, with_guide_lines=False):
        return [
            PhotoImage(photo=p, base64=encode_photo_id(p.id))
            for p in photos
            if p.id not in self.unreadable
        ]

    async def read_bytes(self, photo) -> bytes:
        if photo.id in self.unreadable:
            raise FileNotFoundError(f"No image for photo {photo.id}")
        return self.files.get(photo.id) or png_bytes()


def default_batch_content(custom_id: str, photo_ids: list[int]) -> str:
    return json.dumps([{"artistic_scores": {"composition": 7}} for _ in photo_ids])


class FakeGateway:
    """In-memory model gateway.

    ``on_direct(prompt, photo_ids)`` answers direct calls; batches follow
    ``status_script`` one status per poll, the last status repeating.
    """

    def __init__(self):
        self.direct_calls: list[tuple[str, str, list[int]]] = []
        self.on_direct = lambda prompt, photo_ids: [{} for _ in photo_ids]
        self.batches: dict[str, list[dict]] = {}
        self.status_script = [BatchStatus.IN_PROGRESS, BatchStatus.COMPLETED]
        self._statuses: dict[str, list[BatchStatus]] = {}
        self.batch_content = default_batch_content
        self.submit_errors = 0
        self.outstanding = 0
        self.max_outstanding = 0
        self.embed_calls: list[list[str]] = []
        self.fail_embeddings = False

    async def infer_direct(self, family, prompt, images=None, model=None, **kwargs):
        photo_ids = photo_ids_in(images)
        self.direct_calls.append((str(family), prompt, photo_ids))
        await asyncio.sleep(0)
        return self.on_direct(prompt, photo_ids)

    def build_batch_request(self, family, custom_id, prompt, images, model=None):
        return {"custom_id": custom_id, "photo_ids": photo_ids_in(images)}

    async def submit_batch(self, family, requests):
        if self.submit_errors:
            self.submit_errors -= 1
            raise TransientGatewayError("batch submission failed")
        batch_id = f"batch_{len(self.batches) + 1}"
        self.batches[batch_id] = requests
        self._statuses[batch_id] = list(self.status_script)
        self.outstanding += 1
        self.max_outstanding = max(self.max_outstanding, self.outstanding)
        return batch_id

    async def poll_batch_status(self, family, batch_id):
        await asyncio.sleep(0)
        script = self._statuses[batch_id]
        status = script.pop(0) if len(script) > 1 else script[0]
        if status not in ACTIVE_BATCH_STATUSES:
            self.outstanding -= 1
        return status

    async def fetch_batch_results(self, family, batch_id):
        return [
            BatchResult(r["custom_id"], self.batch_content(r["custom_id"], r["photo_ids"]))
            for r in self.batches[batch_id]
        ]

    async def embed_texts(self, texts):
        self.embed_calls.append(list(texts))
        if self.fail_embeddings:
            raise TransientGatewayError("embeddings unavailable")
        return [[float(len(text)), 1.0] for text in texts]

    async def embed_images(self, items):
        return {item["id"]: [0.5, 0.5] for item in items}


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------

@pytest.fixture
def session_factory(tmp_path):
    """Fresh SQLite database per test. NullPool keeps connections out of finished event loops."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'analyzer.db'}", poolclass=NullPool)

    async def create_schema():
        async with engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    asyncio.run(create_schema())
    yield async_sessionmaker(engine, expire_on_commit=False)
    asyncio.run(engine.dispose())


@pytest.fixture
def store(session_factory) -> PhotoStore:
    return PhotoStore(session_factory)


@pytest.fixture
def repository(session_factory) -> ProcessRepository:
    return ProcessRepository(session_factory)


@pytest.fixture
def add_photos(session_factory):
    """Insert photos and return their ids."""

    def add(count=3, user_id=1, process_id=None, descriptions=None) -> list[int]:
        async def insert():
            async with session_factory() as session:
                photos = [
                    Photo(
                        user_id=user_id,
                        name=f"photo_{i}.jpg",
                        analyzer_process_id=process_id,
                        descriptions=dict(descriptions) if descriptions else None,
                    )
                    for i in range(count)
                ]
                session.add_all(photos)
                await session.commit()
                return [p.id for p in photos]

        return asyncio.run(insert())

    return add


# ---------------------------------------------------------------------------
# Analyzer
# ---------------------------------------------------------------------------

@pytest.fixture
def gateway() -> FakeGateway:
    return FakeGateway()


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def images() -> FakeImageLoader:
    return FakeImageLoader()


@pytest.fixture
def context(gateway, store, images, clock) -> TaskContext:
    return TaskContext(gateway=gateway, store=store, images=images, runner=BatchRunner(clock=clock))


@pytest.fixture
def registry(monkeypatch):
    """Packages visible to processes: the built-in ones plus whatever a test adds."""
    packages = dict(REGISTRY)
    for module in (process_module, service_module):
        monkeypatch.setattr(
            module, "get_package", lambda package_id: get_package(package_id, packages)
        )
    return packages


@pytest.fixture
def make_process(repository, context, registry):
    """Async factory: create (or reload) a process record and initialize it over user 1's photos.

    Call it inside the same ``asyncio.run`` that runs the process.
    """

    async def make(package_id, mode=AnalyzerMode.ADDING, user_id=1, process_id=None):
        if process_id is None:
            record = await repository.create(package_id, mode, user_id=user_id)
        else:
            record = await repository.get(process_id)
        process = AnalyzerProcess(record, context, repository)
        user_photos = await context.store.get_user_photos(user_id)
        await process.initialize(user_photos, package_id, mode)
        return process

    return make
