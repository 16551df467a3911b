from services.analyzer.packages import TaskKind
from services.analyzer.tasks.base import AnalyzerTask, TaskContext
from services.analyzer.tasks.chunks import ChunkTask
from services.analyzer.tasks.detection import ObjectDetectionTask
from services.analyzer.tasks.embeddings import (
    ColorEmbeddingTask,
    EmbeddingsBackfillTask,
    VisualEmbeddingTask,
)
from services.analyzer.tasks.metadata import MetadataTask
from services.analyzer.tasks.tags import TagTask
from services.analyzer.tasks.vision import VisionDescriptionTask, VisionTopologicalTask


def build_task(config, context: TaskContext) -> AnalyzerTask:
    """Instantiate the task implementation for a validated task configuration."""
    match TaskKind(config.type):
        case TaskKind.VISION_DESCRIPTION:
            return VisionDescriptionTask(config, context)
        case TaskKind.VISION_TOPOLOGICAL:
            return VisionTopologicalTask(config, context)
        case TaskKind.OBJECT_DETECTION:
            return ObjectDetectionTask(config, context)
        case TaskKind.TAGS:
            return TagTask(config, context)
        case TaskKind.CHUNKS:
            return ChunkTask(config, context)
        case TaskKind.VISUAL_EMBEDDING:
            return VisualEmbeddingTask(config, context)
        case TaskKind.COLOR_EMBEDDING:
            return ColorEmbeddingTask(config, context)
        case TaskKind.METADATA:
            return MetadataTask(config, context)
        case TaskKind.EMBEDDINGS_BACKFILL:
            return EmbeddingsBackfillTask(config, context)


__all__ = ["AnalyzerTask", "TaskContext", "build_task"]
