"""Package registry.

A package is an ordered list of task declarations. The table below is plain
data; it is validated into typed task configurations when this module is
imported, so a malformed declaration fails before any process starts.
"""

from enum import StrEnum
from typing import Annotated, ClassVar, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from config.settings import ModelFamily
from services.analyzer.prompts import PROMPTS
from services.database import StageType
from services.errors import ConfigurationError


class TaskKind(StrEnum):
    VISION_DESCRIPTION = "vision_description"
    VISION_TOPOLOGICAL = "vision_topological"
    TAGS = "tags"
    CHUNKS = "chunks"
    VISUAL_EMBEDDING = "visual_embedding"
    COLOR_EMBEDDING = "color_embedding"
    OBJECT_DETECTION = "object_detection"
    METADATA = "metadata"
    EMBEDDINGS_BACKFILL = "embeddings_backfill"


WORK_STAGES = {
    StageType.VISION_TASKS,
    StageType.TAGS_TASKS,
    StageType.EMBEDDINGS_TAGS,
    StageType.CHUNKS_TASKS,
    StageType.EMBEDDINGS_CHUNKS,
}


class BaseTaskConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True, protected_namespaces=())

    needs_image: ClassVar[bool] = False

    name: str = Field(min_length=1)
    model: ModelFamily = ModelFamily.NONE
    model_name: str | None = None
    stage: StageType = StageType.VISION_TASKS
    checks: list[str] = Field(default_factory=list)
    only_if_needed: bool = False

    @field_validator("stage")
    @classmethod
    def _work_stage(cls, stage: StageType) -> StageType:
        if stage not in WORK_STAGES:
            raise ValueError(f"'{stage}' is not a task stage")
        return stage


class PromptedTaskConfig(BaseTaskConfig):
    prompt: str

    @field_validator("prompt")
    @classmethod
    def _known_prompt(cls, prompt: str) -> str:
        if prompt not in PROMPTS:
            raise ValueError(f"unknown prompt '{prompt}'")
        return prompt


class VisionTaskConfig(PromptedTaskConfig):
    needs_image: ClassVar[bool] = True

    images_per_batch: int = Field(gt=0)
    resolution: Literal["low", "medium", "high"] = "low"
    sequential: bool = False
    stagger_seconds: float = Field(default=0.0, ge=0)
    max_concurrency: int | None = Field(default=None, gt=0)
    batch_api: bool = False
    fallback_on_batch_timeout: bool = False
    use_guide_lines: bool = False
    prompt_dependent_field: str | None = None

    @model_validator(mode="after")
    def _batch_api_family(self):
        if self.batch_api and self.model != ModelFamily.GPT:
            raise ValueError("batch_api is only available for the gpt model family")
        if self.model in (ModelFamily.NONE, ModelFamily.EMBEDDING):
            raise ValueError("vision tasks need a vision model family")
        return self


class VisionDescriptionConfig(VisionTaskConfig):
    type: Literal["vision_description"]
    visual_aspects: bool = False


class VisionTopologicalConfig(VisionTaskConfig):
    type: Literal["vision_topological"]


class ObjectDetectionConfig(VisionTaskConfig):
    type: Literal["object_detection"]
    categories: list[str] = Field(default_factory=lambda: ["person", "animal"], min_length=1)
    min_box_size: float = Field(default=0.0, ge=0)


class TagsConfig(PromptedTaskConfig):
    type: Literal["tags"]
    stage: StageType = StageType.TAGS_TASKS
    description_source_fields: list[str] = Field(min_length=1)
    photos_per_request: int = Field(default=5, gt=0)
    max_concurrency: int | None = Field(default=None, gt=0)

    @property
    def category(self) -> str:
        return "_".join(self.description_source_fields)


class SplitMethod(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    type: Literal["split_by_size", "split_by_pipes"] = "split_by_size"
    max_length: int = Field(default=250, gt=0)


class ChunksConfig(BaseTaskConfig):
    type: Literal["chunks"]
    model: ModelFamily = ModelFamily.EMBEDDING
    stage: StageType = StageType.CHUNKS_TASKS
    description_source_fields: list[str] = Field(min_length=1)
    methods: dict[str, SplitMethod] = Field(default_factory=dict)
    photos_per_batch: int = Field(default=50, gt=0)

    @model_validator(mode="after")
    def _method_per_field(self):
        missing = [f for f in self.description_source_fields if f not in self.methods]
        if missing:
            raise ValueError(f"no split method for {missing}")
        return self


class VisualEmbeddingConfig(BaseTaskConfig):
    needs_image: ClassVar[bool] = True

    type: Literal["visual_embedding"]
    model: ModelFamily = ModelFamily.EMBEDDING
    images_per_batch: int = Field(default=16, gt=0)


class ColorEmbeddingConfig(BaseTaskConfig):
    needs_image: ClassVar[bool] = True

    type: Literal["color_embedding"]
    images_per_batch: int = Field(default=16, gt=0)


class MetadataConfig(BaseTaskConfig):
    type: Literal["metadata"]
    photos_per_batch: int = Field(default=5, gt=0)


class EmbeddingsBackfillConfig(BaseTaskConfig):
    type: Literal["embeddings_backfill"]
    model: ModelFamily = ModelFamily.EMBEDDING
    target: Literal["tags", "chunks"]


TaskConfig = Annotated[
    VisionDescriptionConfig
    | VisionTopologicalConfig
    | ObjectDetectionConfig
    | TagsConfig
    | ChunksConfig
    | VisualEmbeddingConfig
    | ColorEmbeddingConfig
    | MetadataConfig
    | EmbeddingsBackfillConfig,
    Field(discriminator="type"),
]


class PackageConfig(BaseModel):
    model_config = ConfigDict(extra="forbid", frozen=True)

    id: str
    is_preprocess: bool = False
    tasks: list[TaskConfig] = Field(min_length=1)

    @model_validator(mode="after")
    def _unique_task_names(self):
        names = [t.name for t in self.tasks]
        duplicated = {n for n in names if names.count(n) > 1}
        if duplicated:
            raise ValueError(f"duplicated task names {sorted(duplicated)}")
        return self

    @property
    def task_names(self) -> list[str]:
        return [t.name for t in self.tasks]

    def task(self, name: str) -> TaskConfig:
        for task in self.tasks:
            if task.name == name:
                return task
        raise ConfigurationError(f"Package '{self.id}' has no task '{name}'")


# --- Declarations ---

_METADATA = {
    "name": "metadata_extraction",
    "type": "metadata",
    "only_if_needed": True,
    "checks": [
        "descriptions.visual_aspects.orientation",
        "descriptions.visual_aspects.temperature",
        "descriptions.visual_aspects.palette",
    ],
}
_CLIP = {
    "name": "clip_embeddings",
    "type": "visual_embedding",
    "only_if_needed": True,
    "checks": ["photo.embedding"],
}
_COLOR = {
    "name": "visual_color_embedding_task",
    "type": "color_embedding",
    "only_if_needed": True,
    "checks": ["photo.color_histogram"],
}
_VISION_VISUAL_ASPECTS = {
    "name": "vision_visual_aspects",
    "type": "vision_description",
    "model": "gemini",
    "model_name": "gemini-2.5-flash",
    "prompt": "visual_aspects",
    "resolution": "low",
    "images_per_batch": 4,
    "visual_aspects": True,
    "checks": ["descriptions.visual_aspects.genre"],
}
_TAGS_VISUAL_ASPECTS = {
    "name": "tags_visual_aspects",
    "type": "tags",
    "model": "gemini",
    "model_name": "gemini-2.5-flash-lite",
    "prompt": "tags_extraction",
    "description_source_fields": ["visual_aspects"],
    "checks": ["tags.any", "tags.visual_aspects"],
}
_EMBEDDINGS_TAGS = {
    "name": "embeddings_tags",
    "type": "embeddings_backfill",
    "target": "tags",
    "stage": "embeddings_tags",
    "checks": ["tagPhoto#*.tag#*.embedding"],
}
_EMBEDDINGS_CHUNKS = {
    "name": "embeddings_chunks",
    "type": "embeddings_backfill",
    "target": "chunks",
    "stage": "embeddings_chunks",
    "checks": ["descriptionChunk#*.embedding"],
}

PACKAGES: list[dict] = [
    {
        "id": "preprocess",
        "is_preprocess": True,
        "tasks": [_METADATA, _CLIP, _COLOR],
    },
    {
        "id": "advanced",
        "tasks": [
            _COLOR,
            _CLIP,
            _METADATA,
            _VISION_VISUAL_ASPECTS,
            {
                "name": "vision_context_story_accents",
                "type": "vision_description",
                "model": "gemini",
                "model_name": "gemini-2.5-flash-lite",
                "prompt": "context_story_accents",
                "resolution": "high",
                "images_per_batch": 1,
                "checks": [
                    "descriptions.context",
                    "descriptions.story",
                    "descriptions.visual_accents",
                ],
            },
            {
                "name": "vision_artistic",
                "type": "vision_description",
                "model": "gpt",
                "model_name": "gpt-4.1",
                "prompt": "artistic_scores",
                "resolution": "high",
                "images_per_batch": 6,
                "batch_api": True,
                "checks": ["descriptions.artistic_scores"],
            },
            _TAGS_VISUAL_ASPECTS,
            {
                "name": "tags_context_story",
                "type": "tags",
                "model": "gemini",
                "model_name": "gemini-2.0-flash",
                "prompt": "tags_extraction",
                "description_source_fields": ["context", "story"],
                "checks": ["tags.any", "tags.context_story"],
            },
            {
                "name": "tags_visual_accents",
                "type": "tags",
                "model": "gemini",
                "model_name": "gemini-2.0-flash",
                "prompt": "tags_extraction",
                "description_source_fields": ["visual_accents"],
                "checks": ["tags.visual_accents"],
            },
            {
                "name": "topological_tags",
                "type": "vision_topological",
                "model": "gemini",
                "model_name": "gemini-2.0-flash",
                "prompt": "topological_tags",
                "stage": "tags_tasks",
                "resolution": "low",
                "images_per_batch": 1,
                "checks": ["tags.topological"],
            },
            _EMBEDDINGS_TAGS,
            {
                "name": "chunks_context_story_visual_accents",
                "type": "chunks",
                "description_source_fields": ["context", "story", "visual_accents"],
                "methods": {
                    "context": {"type": "split_by_size", "max_length": 250},
                    "story": {"type": "split_by_size", "max_length": 250},
                    "visual_accents": {"type": "split_by_pipes"},
                },
                "checks": ["descriptionChunks.any", "descriptionChunk#*.embedding"],
            },
            _EMBEDDINGS_CHUNKS,
        ],
    },
    {
        "id": "remake_visuals",
        "tasks": [_VISION_VISUAL_ASPECTS, _TAGS_VISUAL_ASPECTS],
    },
    {
        "id": "detection",
        "tasks": [
            {
                "name": "object_detection",
                "type": "object_detection",
                "model": "gemini",
                "prompt": "object_detection",
                "images_per_batch": 1,
                "categories": ["person", "animal"],
                "min_box_size": 20,
                "checks": ["detections.any"],
            },
        ],
    },
    {
        "id": "embeddings",
        "tasks": [_EMBEDDINGS_TAGS, _EMBEDDINGS_CHUNKS],
    },
]


def validate_package(raw: dict) -> PackageConfig:
    try:
        return PackageConfig.model_validate(raw)
    except ValidationError as e:
        raise ConfigurationError(f"Invalid package '{raw.get('id')}': {e}") from e


def load_packages(raw_packages: list[dict]) -> dict[str, PackageConfig]:
    packages = {}
    for raw in raw_packages:
        package = validate_package(raw)
        if package.id in packages:
            raise ConfigurationError(f"Package '{package.id}' declared twice")
        packages[package.id] = package
    return packages


REGISTRY = load_packages(PACKAGES)


def get_package(package_id: str, registry: dict[str, PackageConfig] | None = None) -> PackageConfig:
    registry = REGISTRY if registry is None else registry
    package = registry.get(package_id)
    if package is None:
        raise ConfigurationError(f"Unknown package '{package_id}'. Available: {sorted(registry)}")
    return package
