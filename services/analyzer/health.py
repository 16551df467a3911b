import logging
import re
from collections.abc import Iterable
from dataclasses import dataclass, field
from functools import lru_cache

from services.database import Photo
from services.photos.store import PhotoStore, photo_store

log = logging.getLogger(__name__)

VISUAL_ASPECT_FIELDS = ("genre", "orientation", "temperature", "palette")


@dataclass
class HealthReport:
    photo_id: int
    ok: bool
    checks: list[tuple[str, bool]] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)

    def render(self) -> str:
        lines = [f"Photo #{self.photo_id} {'✅' if self.ok else '❌'}"]
        lines += [f"  {'✅' if ok else '❌'} {label}" for label, ok in self.checks]
        return "\n".join(lines)


def _present(value) -> bool:
    return bool(value)


def evaluate_photo(photo_id: int, photo: Photo | None) -> HealthReport:
    """Evaluate the fixed, ordered list of health checks over a loaded photo."""
    if photo is None:
        return HealthReport(photo_id, ok=False, checks=[("photo.exists", False)], missing=["photo"])

    checks = [("photo.exists", True)]

    def push(label: str, ok: bool):
        checks.append((label, ok))

    push("photo.embedding", _present(photo.embedding))

    d = photo.descriptions or {}
    push("descriptions.context", _present(d.get("context")))
    push("descriptions.story", _present(d.get("story")))
    push("descriptions.visual_accents", _present(d.get("visual_accents")))
    push("descriptions.artistic_scores", _present(d.get("artistic_scores")))

    visual_aspects = d.get("visual_aspects") or {}
    for name in VISUAL_ASPECT_FIELDS:
        push(f"descriptions.visual_aspects.{name}", _present(visual_aspects.get(name)))

    tags = photo.tags
    push("tags.any", len(tags) > 0)
    push("tags.context_story", any(t.category == "context_story" for t in tags))
    push("tags.visual_accents", any(t.category == "visual_accents" for t in tags))
    push("tags.visual_aspects", any(t.category == "visual_aspects" for t in tags))

    push("descriptionChunks.any", len(photo.description_chunks) > 0)
    for chunk in photo.description_chunks:
        push(f"descriptionChunk#{chunk.id}.embedding", _present(chunk.embedding))

    push("photo.color_histogram", _present(photo.color_histogram))
    push("tags.topological", any(t.area for t in tags))
    push("detections.any", len(photo.detections) > 0)

    for tag_photo in tags:
        push(
            f"tagPhoto#{tag_photo.id}.tag#{tag_photo.tag_id}.embedding",
            tag_photo.tag is not None and _present(tag_photo.tag.embedding),
        )

    missing = [label for label, ok in checks if not ok]
    return HealthReport(photo_id, ok=not missing, checks=checks, missing=missing)


@lru_cache(maxsize=256)
def _pattern_regex(pattern: str) -> re.Pattern:
    return re.compile("^" + r"\d+".join(re.escape(part) for part in pattern.split("*")) + "$")


def check_satisfied(report: HealthReport, pattern: str) -> bool:
    """An exact label must exist and be ok. A wildcard pattern holds when every matching label is ok."""
    if "*" in pattern:
        regex = _pattern_regex(pattern)
        return all(ok for label, ok in report.checks if regex.match(label))
    for label, ok in report.checks:
        if label == pattern:
            return ok
    return False


def checks_satisfied(report: HealthReport, patterns: Iterable[str]) -> bool:
    return all(check_satisfied(report, pattern) for pattern in patterns)


class HealthChecker:
    def __init__(self, store: PhotoStore | None = None):
        self.store = store or photo_store

    async def photo_health(self, photo_id: int) -> HealthReport:
        photo = await self.store.get_photo(photo_id)
        return evaluate_photo(photo_id, photo)

    async def health_for_photos(self, photo_ids: Iterable[int]) -> list[HealthReport]:
        """One store query for all photos; unknown ids get a report of their own."""
        ids = sorted(set(photo_ids))
        photos = {photo.id: photo for photo in await self.store.get_photos(ids)}
        return [evaluate_photo(pid, photos.get(pid)) for pid in ids]

    async def health_for_process(self, process, verbose: bool = False) -> list[HealthReport]:
        reports = await self.health_for_photos(p.id for p in process.photos)
        if verbose:
            for report in reports:
                log.info(report.render())
            failed = [r for r in reports if not r.ok]
            if failed:
                for r in failed:
                    log.info(f"❌ #{r.photo_id} -> {', '.join(r.missing)}")
            else:
                log.info("✅ Every photo is complete")
        return reports

    async def reconcile_process_sheet(self, process) -> dict[str, list[int]]:
        """Mark as completed, for every task of the package, the photos whose checks already pass."""
        reports = await self.health_for_process(process)
        reconciled = {}
        for task in process.package.tasks:
            if not task.checks:
                continue
            done = [r.photo_id for r in reports if checks_satisfied(r, task.checks)]
            reconciled[task.name] = done
            await process.mark_photos_completed(task.name, done)
        counts = {name: len(ids) for name, ids in reconciled.items()}
        log.info(f"Process {process.id} reconciled with health checks: {counts}")
        return reconciled
