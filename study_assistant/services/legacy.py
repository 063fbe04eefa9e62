"""Upgrade summaries stored in the old single-blob chapter format."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import List, Sequence

from .parsing import LEGACY_CHAPTER_MARKER, normalize_chapters
from .storage import Chapter, StudyRepository


LOGGER = logging.getLogger(__name__)


@dataclass
class MigrationReport:
    scanned: int = 0
    upgraded: int = 0
    unparseable: int = 0


def is_legacy_summary(chapters: Sequence[Chapter]) -> bool:
    return len(chapters) == 1 and chapters[0].title == LEGACY_CHAPTER_MARKER


def upgrade_legacy_chapters(chapters: Sequence[Chapter]) -> List[Chapter]:
    """Unpack a legacy single-chapter summary into its real chapter list.

    Anything that is not a legacy record, or whose embedded array cannot be
    recovered, is returned unchanged.
    """

    if not is_legacy_summary(chapters):
        return list(chapters)

    content = chapters[0].content
    start = content.find("[")
    end = content.rfind("]")
    if start == -1 or end <= start:
        LOGGER.debug("Legacy summary content has no bracketed array")
        return list(chapters)
    try:
        data = json.loads(content[start : end + 1])
    except ValueError:
        LOGGER.debug("Legacy summary content is not valid JSON")
        return list(chapters)
    if not isinstance(data, list):
        return list(chapters)

    upgraded = normalize_chapters(data)
    if not upgraded:
        return list(chapters)
    return upgraded


def migrate_legacy_summaries(repository: StudyRepository) -> MigrationReport:
    """Rewrite every stored legacy summary in the current chapter format."""

    report = MigrationReport()
    for summary in repository.iter_summaries():
        report.scanned += 1
        if not is_legacy_summary(summary.chapters):
            continue
        upgraded = upgrade_legacy_chapters(summary.chapters)
        if is_legacy_summary(upgraded):
            report.unparseable += 1
            LOGGER.warning(
                "Legacy summary id=%s (file_id=%s) could not be upgraded",
                summary.id,
                summary.file_id,
            )
            continue
        repository.replace_summary_chapters(summary.id, upgraded)
        report.upgraded += 1
        LOGGER.info(
            "Upgraded legacy summary id=%s into %s chapter(s)", summary.id, len(upgraded)
        )
    return report


__all__ = [
    "MigrationReport",
    "is_legacy_summary",
    "migrate_legacy_summaries",
    "upgrade_legacy_chapters",
]
