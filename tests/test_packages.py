"""Tests for the package registry and task declaration validation."""
import pytest

from config.settings import ModelFamily
from services.analyzer.packages import (
    PACKAGES,
    REGISTRY,
    TagsConfig,
    VisionDescriptionConfig,
    get_package,
    load_packages,
    validate_package,
)
from services.database import StageType
from services.errors import ConfigurationError


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _vision(**overrides) -> dict:
    task = {
        "name": "vision",
        "type": "vision_description",
        "model": "gemini",
        "prompt": "context_story_accents",
        "images_per_batch": 2,
    }
    task.update(overrides)
    return task


def _package(*tasks, package_id="test") -> dict:
    return {"id": package_id, "tasks": list(tasks)}


# ---------------------------------------------------------------------------
# Built-in packages
# ---------------------------------------------------------------------------

class TestBuiltInPackages:
    def test_every_declared_package_is_registered(self):
        assert set(REGISTRY) == {p["id"] for p in PACKAGES}
        assert {"preprocess", "advanced", "remake_visuals", "detection", "embeddings"} <= set(REGISTRY)

    def test_advanced_task_order(self):
        assert get_package("advanced").task_names == [
            "visual_color_embedding_task",
            "clip_embeddings",
            "metadata_extraction",
            "vision_visual_aspects",
            "vision_context_story_accents",
            "vision_artistic",
            "tags_visual_aspects",
            "tags_context_story",
            "tags_visual_accents",
            "topological_tags",
            "embeddings_tags",
            "chunks_context_story_visual_accents",
            "embeddings_chunks",
        ]

    def test_preprocess_is_flagged(self):
        assert get_package("preprocess").is_preprocess
        assert not get_package("advanced").is_preprocess

    def test_declarations_are_typed(self):
        advanced = get_package("advanced")
        artistic = advanced.task("vision_artistic")
        assert isinstance(artistic, VisionDescriptionConfig)
        assert artistic.batch_api and artistic.model == ModelFamily.GPT
        tags = advanced.task("tags_context_story")
        assert isinstance(tags, TagsConfig)
        assert tags.category == "context_story"
        assert tags.stage == StageType.TAGS_TASKS

    def test_unknown_package(self):
        with pytest.raises(ConfigurationError, match="Unknown package 'nope'"):
            get_package("nope")

    def test_unknown_task_in_package(self):
        with pytest.raises(ConfigurationError):
            get_package("advanced").task("nope")


# ---------------------------------------------------------------------------
# Validation
# ---------------------------------------------------------------------------

class TestValidation:
    def test_minimal_vision_task(self):
        package = validate_package(_package(_vision()))
        task = package.tasks[0]
        assert task.stage == StageType.VISION_TASKS
        assert task.resolution == "low"
        assert not task.sequential

    def test_images_per_batch_is_required(self):
        task = _vision()
        del task["images_per_batch"]
        with pytest.raises(ConfigurationError):
            validate_package(_package(task))

    def test_images_per_batch_must_be_positive(self):
        with pytest.raises(ConfigurationError):
            validate_package(_package(_vision(images_per_batch=0)))

    def test_unknown_prompt(self):
        with pytest.raises(ConfigurationError, match="unknown prompt"):
            validate_package(_package(_vision(prompt="does_not_exist")))

    def test_unknown_task_type(self):
        with pytest.raises(ConfigurationError):
            validate_package(_package(_vision(type="teleport")))

    def test_unknown_field(self):
        with pytest.raises(ConfigurationError):
            validate_package(_package(_vision(colour="red")))

    def test_batch_api_needs_gpt(self):
        with pytest.raises(ConfigurationError, match="batch_api"):
            validate_package(_package(_vision(batch_api=True)))
        package = validate_package(_package(_vision(model="gpt", batch_api=True)))
        assert package.tasks[0].batch_api

    def test_vision_task_needs_a_vision_model(self):
        with pytest.raises(ConfigurationError):
            validate_package(_package(_vision(model="none")))

    def test_stage_must_be_a_work_stage(self):
        with pytest.raises(ConfigurationError):
            validate_package(_package(_vision(stage="finished")))

    def test_chunks_need_a_method_per_field(self):
        chunks = {
            "name": "chunks",
            "type": "chunks",
            "description_source_fields": ["context", "story"],
            "methods": {"context": {"type": "split_by_size"}},
        }
        with pytest.raises(ConfigurationError, match="split method"):
            validate_package(_package(chunks))

    def test_empty_package(self):
        with pytest.raises(ConfigurationError):
            validate_package(_package())

    def test_duplicate_task_names(self):
        with pytest.raises(ConfigurationError, match="duplicated"):
            validate_package(_package(_vision(), _vision()))

    def test_duplicate_package_ids(self):
        with pytest.raises(ConfigurationError, match="declared twice"):
            load_packages([_package(_vision()), _package(_vision())])

    def test_custom_registry(self):
        registry = load_packages([_package(_vision(), package_id="mine")])
        assert get_package("mine", registry).task_names == ["vision"]
        with pytest.raises(ConfigurationError):
            get_package("advanced", registry)
