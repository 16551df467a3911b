import json
import logging

from services.analyzer.prompts import PROMPTS
from services.analyzer.tasks.base import AnalyzerTask
from services.analyzer.tasks.embeddings import embed_in_groups
from services.database import Photo
from services.errors import AnalyzerError, ParseError
from services.llm.parsing import as_photo_results
from services.photos.store import TagInput

log = logging.getLogger(__name__)

STOPWORDS = {
    "a", "an", "and", "the", "of", "in", "on", "at", "with", "to", "for", "from", "by",
    "is", "are", "it", "its", "this", "that", "these", "those", "some", "none", "other",
    "image", "photo", "picture", "thing", "things", "something",
}
DEFAULT_GROUP = "misc"


def parse_tags(raw_tags) -> list[TagInput]:
    """Turn ``"name | group"`` strings (or ``{"name", "group"}`` objects) into tags.

    Names are lower-cased, stopwords and duplicates dropped. Entries without a
    string name are skipped; anything but a list raises ``ParseError``.
    """
    if raw_tags is None:
        return []
    if not isinstance(raw_tags, list):
        raise ParseError(f"Expected a list of tags, got {type(raw_tags).__name__}")
    tags = {}
    for raw in raw_tags:
        if isinstance(raw, dict):
            name, group = raw.get("name"), raw.get("group")
        elif isinstance(raw, str):
            name, _, group = raw.partition("|")
        else:
            continue
        if not isinstance(name, str):
            continue
        name = name.strip().lower()
        group = group.strip().lower() if isinstance(group, str) else ""
        if not name or name in STOPWORDS or name in tags:
            continue
        tags[name] = TagInput(name=name, group=group or DEFAULT_GROUP)
    return list(tags.values())


def _flatten(value) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, list):
        return ", ".join(_flatten(v) for v in value)
    if isinstance(value, dict):
        return "; ".join(f"{k}: {_flatten(v)}" for k, v in value.items())
    return json.dumps(value)


def description_text(photo: Photo, fields: list[str]) -> str:
    descriptions = photo.descriptions or {}
    return " ".join(_flatten(descriptions.get(field)) for field in fields)


class TagTask(AnalyzerTask):
    """Extracts tags from description fields and links them to the photo under one category."""

    async def process(self, targets: list[Photo], process):
        cfg = self.config
        fields = cfg.description_source_fields
        valid = [p for p in targets if all((p.descriptions or {}).get(f) for f in fields)]
        skipped = len(targets) - len(valid)
        if skipped:
            log.info(f"[{self.name}] skipping {skipped} photos without {fields}")
        if not valid:
            return

        async def handle(batch, index):
            texts = [description_text(photo, fields) for photo in batch]
            payload = await self.context.gateway.infer_direct(
                cfg.model, PROMPTS[cfg.prompt](texts), model=cfg.model_name
            )
            parsed = [parse_tags(r.get("tags")) for r in as_photo_results(payload, len(batch))]
            for photo, tags in zip(batch, parsed):
                self.data[photo.id] = tags
            await self.attach_embeddings(batch)
            return await self.commit(batch, process)

        return await self.context.runner.run_direct(
            valid, cfg.photos_per_request, handle, max_concurrency=cfg.max_concurrency
        )

    async def attach_embeddings(self, batch: list[Photo]):
        """Embed only tag names that have no embedding yet; the backfill task covers failures."""
        tags = [tag for photo in batch for tag in self.data.get(photo.id, [])]
        names = sorted({tag.name for tag in tags})
        existing = await self.context.store.get_tags_by_names(names)
        missing = [n for n in names if n not in existing or existing[n].embedding is None]
        try:
            vectors = dict(zip(missing, await embed_in_groups(self.context.gateway, missing)))
        except AnalyzerError as e:
            log.warning(f"[{self.name}] tag embeddings failed, leaving them for backfill: {e}")
            return
        for tag in tags:
            tag.embedding = vectors.get(tag.name)

    async def persist(self, photo_id: int, result: list[TagInput]):
        await self.context.store.replace_tags_for_category(photo_id, self.config.category, result)
