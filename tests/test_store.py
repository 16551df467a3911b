"""Tests for the photo store against a throwaway SQLite database."""
import asyncio

import pytest

from services.database import AnalyzerMode
from services.errors import PersistenceError
from services.photos.store import ChunkInput, DetectionInput, TagInput, deep_merge


def test_deep_merge():
    base = {"visual_aspects": {"genre": ["street"], "palette": ["color"]}, "story": "old"}
    merged = deep_merge(base, {"visual_aspects": {"palette": ["black and white"]}, "context": "c"})
    assert merged == {
        "visual_aspects": {"genre": ["street"], "palette": ["black and white"]},
        "story": "old",
        "context": "c",
    }
    assert base["visual_aspects"]["palette"] == ["color"]


class TestDescriptions:
    def test_updates_merge_into_existing_descriptions(self, store, add_photos):
        (photo_id,) = add_photos(1, descriptions={"visual_aspects": {"genre": ["portrait"]}})

        async def scenario():
            await store.update_descriptions(photo_id, {"visual_aspects": {"orientation": ["vertical"]}})
            await store.update_descriptions(photo_id, {"story": "A walk."})
            return await store.get_photo(photo_id)

        photo = asyncio.run(scenario())
        assert photo.descriptions == {
            "visual_aspects": {"genre": ["portrait"], "orientation": ["vertical"]},
            "story": "A walk.",
        }

    def test_missing_photo(self, store):
        with pytest.raises(PersistenceError):
            asyncio.run(store.update_descriptions(404, {"story": "x"}))


class TestTags:
    def test_replacing_one_category_keeps_the_others(self, store, add_photos):
        (photo_id,) = add_photos(1)

        async def scenario():
            await store.replace_tags_for_category(photo_id, "context_story", [TagInput("dog")])
            await store.replace_tags_for_category(photo_id, "visual_accents", [TagInput("red hat")])
            await store.replace_tags_for_category(
                photo_id, "context_story", [TagInput("cat"), TagInput("cat")]
            )
            return await store.get_photo(photo_id)

        photo = asyncio.run(scenario())
        links = sorted((link.category, link.tag.name) for link in photo.tags)
        assert links == [("context_story", "cat"), ("visual_accents", "red hat")]

    def test_tags_are_reused_by_name(self, store, add_photos):
        p1, p2 = add_photos(2)

        async def scenario():
            await store.replace_tags_for_category(p1, "misc", [TagInput("dog", embedding=[0.1])])
            await store.replace_tags_for_category(p2, "misc", [TagInput("dog")])
            return await store.get_tags_by_names(["dog", "unknown"])

        tags = asyncio.run(scenario())
        assert list(tags) == ["dog"]
        assert tags["dog"].embedding == [0.1]

    def test_missing_embeddings_and_backfill(self, store, add_photos):
        (photo_id,) = add_photos(1)

        async def scenario():
            await store.replace_tags_for_category(
                photo_id, "misc", [TagInput("dog"), TagInput("sun", embedding=[0.3])]
            )
            missing = await store.tags_missing_embeddings([photo_id])
            await store.save_tag_embeddings({tag.id: [0.9] for tag in missing})
            return missing, await store.tags_missing_embeddings([photo_id])

        missing, after = asyncio.run(scenario())
        assert [tag.name for tag in missing] == ["dog"]
        assert after == []

    def test_tag_areas(self, store, add_photos):
        (photo_id,) = add_photos(1)

        async def scenario():
            await store.replace_tags_for_category(photo_id, "misc", [TagInput("dog")])
            (link,) = (await store.get_photo(photo_id)).tags
            await store.update_tag_photo_areas(photo_id, {link.id: "middle"})
            return await store.get_photo(photo_id)

        (link,) = asyncio.run(scenario()).tags
        assert link.area == "middle"


class TestChunksAndDetections:
    def test_chunks_are_replaced(self, store, add_photos):
        (photo_id,) = add_photos(1)

        async def scenario():
            await store.replace_description_chunks(photo_id, [ChunkInput("story", "old")])
            await store.replace_description_chunks(
                photo_id, [ChunkInput("story", "new", [0.1]), ChunkInput("context", "park")]
            )
            missing = await store.chunks_missing_embeddings([photo_id])
            return await store.get_photo(photo_id), missing

        photo, missing = asyncio.run(scenario())
        assert sorted(c.chunk for c in photo.description_chunks) == ["new", "park"]
        assert [c.chunk for c in missing] == ["park"]

    def test_detections_replace_all(self, store, add_photos):
        (photo_id,) = add_photos(1)

        async def scenario():
            await store.update_detections(photo_id, [DetectionInput("person", 0, 0, 10, 10)])
            await store.update_detections(
                photo_id,
                [DetectionInput("animal", 1, 2, 30, 40), DetectionInput("person", 5, 5, 50, 50)],
            )
            return await store.get_photo(photo_id)

        photo = asyncio.run(scenario())
        assert sorted((d.category, d.x1) for d in photo.detections) == [
            ("animal", 1.0),
            ("person", 5.0),
        ]


class TestOwnership:
    def test_assign_process_sets_exact_membership(self, store, add_photos):
        p1, p2, p3 = add_photos(3, process_id=7)

        async def scenario():
            await store.assign_process(7, [p2, p3])
            return await store.get_owned_photos(7), await store.get_photo(p1)

        owned, released = asyncio.run(scenario())
        assert [p.id for p in owned] == [p2, p3]
        assert released.analyzer_process_id is None

    def test_select_for_mode(self, store, add_photos):
        free = add_photos(2)
        owned = add_photos(1, process_id=7)
        add_photos(1, user_id=2)

        async def scenario():
            user_photos = await store.get_user_photos(1)
            return [
                await store.select_for_mode(mode, user_photos, process_id=7)
                for mode in (AnalyzerMode.ADDING, AnalyzerMode.REMAKE, AnalyzerMode.RETRY)
            ]

        adding, remake, retry = asyncio.run(scenario())
        assert [p.id for p in adding] == free
        assert [p.id for p in remake] == free + owned
        assert [p.id for p in retry] == owned
