"""Tests for tag extraction, tag embeddings and the embeddings backfill."""
import asyncio

import pytest

from services.analyzer.packages import validate_package
from services.analyzer.tasks.tags import description_text, parse_tags
from services.database import AnalyzerMode, Photo, StageType
from services.errors import ParseError, TransientGatewayError
from services.photos.store import TagInput

TAGS_TASK = "tags_context_story"


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _tags_package(checks=("tags.any",)):
    return validate_package(
        {
            "id": "tags",
            "tasks": [
                {
                    "name": TAGS_TASK,
                    "type": "tags",
                    "model": "gemini",
                    "prompt": "tags_extraction",
                    "description_source_fields": ["context", "story"],
                    "photos_per_request": 1,
                    "checks": list(checks),
                }
            ],
        }
    )


def _extract(failing_word=None):
    def answer(prompt, photo_ids):
        if failing_word and failing_word in prompt:
            raise TransientGatewayError("model overloaded")
        return [{"tags": ["Dog | animals", "beach | places", "the"]}]

    return answer


def _tag_names(photo: Photo) -> set[str]:
    return {link.tag.name for link in photo.tags}


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------

class TestParseTags:
    def test_name_and_group(self):
        tags = parse_tags(["Dog | Animals", "sunset|mood", "bench"])
        assert [(t.name, t.group) for t in tags] == [
            ("dog", "animals"),
            ("sunset", "mood"),
            ("bench", "misc"),
        ]

    def test_drops_stopwords_blanks_and_duplicates(self):
        tags = parse_tags(["the", " ", "dog", "DOG | animals", "photo"])
        assert [t.name for t in tags] == ["dog"]

    def test_accepts_objects(self):
        tags = parse_tags([{"name": "Cat", "group": "animals"}, {"name": "lamp"}])
        assert [(t.name, t.group) for t in tags] == [("cat", "animals"), ("lamp", "misc")]

    def test_nothing_to_parse(self):
        assert parse_tags(None) == []

    def test_entries_without_a_string_name_are_skipped(self):
        tags = parse_tags(
            [{"name": None}, {"name": 3, "group": "x"}, 7, {"name": "dog", "group": None}]
        )
        assert [(t.name, t.group) for t in tags] == [("dog", "misc")]

    def test_a_bare_string_is_not_a_tag_list(self):
        with pytest.raises(ParseError):
            parse_tags("dog | animals, beach | places")

    def test_description_text_flattens_fields(self):
        photo = Photo(descriptions={"context": "A park", "story": ["kids", "play"]})
        assert description_text(photo, ["context", "story"]) == "A park kids, play"


# ---------------------------------------------------------------------------
# TagTask
# ---------------------------------------------------------------------------

class TestTagTask:
    def test_retry_only_processes_photos_without_tags(
        self, make_process, add_photos, registry, gateway, store
    ):
        registry["tags"] = _tags_package()
        p1, p2, p3 = add_photos(
            3, descriptions={"context": "A dog on a beach.", "story": "It runs."}
        )
        asyncio.run(store.update_descriptions(p2, {"context": "A cat on a sofa."}))
        gateway.on_direct = _extract(failing_word="sofa")

        async def first_run():
            process = await make_process("tags")
            await process.run()
            return process

        process = asyncio.run(first_run())
        assert process.sheet.pending_for(TAGS_TASK) == [p2]
        assert process.sheet.completed_for(TAGS_TASK) == [p1, p3]

        gateway.direct_calls.clear()
        embed_calls = len(gateway.embed_calls)
        gateway.on_direct = _extract()

        async def retry():
            retried = await make_process("tags", AnalyzerMode.RETRY, process_id=process.id)
            await retried.run()
            return retried

        retried = asyncio.run(retry())
        (call,) = gateway.direct_calls
        assert "A cat on a sofa." in call[1]
        assert retried.sheet.pending_for(TAGS_TASK) == []
        assert retried.sheet.completed_for(TAGS_TASK) == [p1, p2, p3]
        # dog and beach were embedded on the first run
        assert len(gateway.embed_calls) == embed_calls

    def test_tags_are_linked_under_the_task_category(
        self, make_process, add_photos, registry, gateway, store
    ):
        registry["tags"] = _tags_package()
        p1, p2 = add_photos(2, descriptions={"context": "A dog.", "story": "Sun."})
        gateway.on_direct = _extract()

        async def scenario():
            process = await make_process("tags")
            await process.run()

        asyncio.run(scenario())
        photos = asyncio.run(store.get_photos([p1, p2]))
        for photo in photos:
            assert _tag_names(photo) == {"dog", "beach"}
            assert {link.category for link in photo.tags} == {"context_story"}
            assert all(link.tag.embedding is not None for link in photo.tags)
        # Both photos share the same tag rows
        assert {link.tag_id for link in photos[0].tags} == {link.tag_id for link in photos[1].tags}

    def test_photos_without_source_fields_are_skipped(
        self, make_process, add_photos, registry, gateway
    ):
        registry["tags"] = _tags_package()
        (described,) = add_photos(1, descriptions={"context": "A dog.", "story": "Sun."})
        (bare,) = add_photos(1, descriptions={"context": "Only context."})
        gateway.on_direct = _extract()

        async def scenario():
            process = await make_process("tags")
            await process.run()
            return process

        process = asyncio.run(scenario())
        assert len(gateway.direct_calls) == 1
        assert process.sheet.completed_for(TAGS_TASK) == [described]
        assert process.sheet.pending_for(TAGS_TASK) == [bare]

    def test_failed_embeddings_are_left_for_the_backfill(
        self, make_process, add_photos, registry, gateway, store
    ):
        registry["tags"] = _tags_package()
        (photo_id,) = add_photos(1, descriptions={"context": "A dog.", "story": "Sun."})
        gateway.on_direct = _extract()
        gateway.fail_embeddings = True

        async def tags_run():
            process = await make_process("tags")
            await process.run()
            return process

        process = asyncio.run(tags_run())
        assert process.sheet.completed_for(TAGS_TASK) == [photo_id]
        photo = asyncio.run(store.get_photo(photo_id))
        assert _tag_names(photo) == {"dog", "beach"}
        assert all(link.tag.embedding is None for link in photo.tags)

        gateway.fail_embeddings = False

        async def backfill_run():
            backfill = await make_process("embeddings", AnalyzerMode.REMAKE)
            await backfill.run()
            return backfill

        backfill = asyncio.run(backfill_run())
        assert backfill.sheet.completed_for("embeddings_tags") == [photo_id]
        assert backfill.sheet.is_complete()
        photo = asyncio.run(store.get_photo(photo_id))
        assert all(link.tag.embedding is not None for link in photo.tags)

    def test_malformed_answer_only_fails_its_own_sub_batch(
        self, make_process, add_photos, registry, gateway, store
    ):
        registry["tags"] = _tags_package()
        p1, p2, p3 = add_photos(3, descriptions={"context": "A dog.", "story": "Sun."})
        asyncio.run(store.update_descriptions(p2, {"context": "A cat on a sofa."}))

        def answer(prompt, photo_ids):
            if "sofa" in prompt:
                return [{"tags": "dog | animals, beach | places"}]
            return [{"tags": [{"name": None}, "dog | animals"]}]

        gateway.on_direct = answer

        async def scenario():
            process = await make_process("tags")
            await process.run()
            return process

        process = asyncio.run(scenario())
        assert process.stage == StageType.FINISHED
        assert process.sheet.completed_for(TAGS_TASK) == [p1, p3]
        assert process.sheet.pending_for(TAGS_TASK) == [p2]

    def test_backfill_completes_only_photos_whose_embeddings_exist(
        self, make_process, add_photos, gateway, store
    ):
        embedded, missing = add_photos(2)
        asyncio.run(
            store.replace_tags_for_category(embedded, "misc", [TagInput("sun", embedding=[0.1])])
        )
        asyncio.run(store.replace_tags_for_category(missing, "misc", [TagInput("dog")]))
        gateway.fail_embeddings = True

        async def scenario():
            process = await make_process("embeddings", AnalyzerMode.REMAKE)
            await process.run()
            return process

        process = asyncio.run(scenario())
        assert process.stage == StageType.FINISHED
        assert process.sheet.completed_for("embeddings_tags") == [embedded]
        assert process.sheet.pending_for("embeddings_tags") == [missing]
