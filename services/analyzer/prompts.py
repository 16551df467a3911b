"""Prompt templates for the analyzer tasks.

Every template answers with JSON only, one result object per photo, in the
same order as the attached images.
"""

import json
from collections.abc import Callable

from services.database import Photo, TagPhoto

JSON_ONLY = "Answer with JSON only, no prose and no markdown."


def _per_photo(count: int, keys: str) -> str:
    return (
        f"You receive {count} photo(s). Return a JSON array with exactly {count} object(s), "
        f"one per photo in the order given, each with the keys {keys}. {JSON_ONLY}"
    )


def _dependent(photos: list[Photo], field: str | None) -> str:
    if not field:
        return ""
    known = [(p.descriptions or {}).get(field, "") for p in photos]
    return f"\nPreviously written '{field}' for each photo, in order: {json.dumps(known)}"


def visual_aspects(photos: list[Photo], dependent_field: str | None = None) -> str:
    return (
        "Describe the visual aspects of each photo. "
        + _per_photo(
            len(photos),
            '"genre" (list of strings), "framing" (list of strings), "lighting" (list of strings)',
        )
        + _dependent(photos, dependent_field)
    )


def context_story_accents(photos: list[Photo], dependent_field: str | None = None) -> str:
    return (
        "Write what is going on in each photo. "
        + _per_photo(
            len(photos),
            '"context" (what and where), "story" (what is happening), '
            '"visual_accents" (short list of striking details separated by |)',
        )
        + _dependent(photos, dependent_field)
    )


def artistic_scores(photos: list[Photo], dependent_field: str | None = None) -> str:
    return (
        "Score each photo from 1 to 10. "
        + _per_photo(
            len(photos),
            '"artistic_scores" (object with "composition", "storytelling", "aesthetic_quality")',
        )
        + _dependent(photos, dependent_field)
    )


def tags_extraction(texts: list[str]) -> str:
    numbered = "\n".join(f"{i + 1}. {text}" for i, text in enumerate(texts))
    return (
        'Extract short tags from each description. Each tag is a string "name | group", '
        "where group is one of person, animals, objects, places, mood, style, misc. "
        + _per_photo(len(texts), '"tags" (list of strings)')
        + f"\n\n{numbered}"
    )


def topological_tags(tag_links: list[TagPhoto], with_guide_lines: bool = False) -> str:
    tags = {str(link.id): link.tag.name for link in tag_links if link.tag is not None}
    guide = (
        " Two white vertical lines split the image into left, middle and right areas."
        if with_guide_lines
        else ""
    )
    return (
        "For each tag, say in which area of the photo it appears: left, middle, right "
        f"or whole.{guide} Return a JSON object mapping each tag id to its area. {JSON_ONLY}"
        f"\nTags: {json.dumps(tags)}"
    )


def object_detection(categories: list[str]) -> str:
    return (
        f"Find every {', '.join(categories)} in the photo. Return a JSON object "
        '{"detections": [{"category": ..., "box": [x1, y1, x2, y2]}]} with pixel coordinates. '
        + JSON_ONLY
    )


PROMPTS: dict[str, Callable[..., str]] = {
    "visual_aspects": visual_aspects,
    "context_story_accents": context_story_accents,
    "artistic_scores": artistic_scores,
    "tags_extraction": tags_extraction,
    "topological_tags": topological_tags,
    "object_detection": object_detection,
}
