"""Bulk import of automation timelines from CSV.

Expected columns: ``hour,minute,second,name,message,mode``. The first line is
a header. ``mode`` ``CTA`` produces a call-to-action popup, anything else a
timed chat message posted under ``name``.
"""

from __future__ import annotations

import csv
import io
import logging
from typing import Any

from .models import AutomationKind
from .payloads import CtaPopupPayload, TimedMessagePayload
from .repository import AutomationRepository

logger = logging.getLogger(__name__)

DEFAULT_SENDER = "System"
COLUMNS = ("hour", "minute", "second", "name", "message", "mode")


class CsvImportError(ValueError):
    """A CSV row has time fields that are not non-negative integers."""


def parse_timeline_csv(text: str) -> list[dict[str, Any]]:
    rows: list[dict[str, Any]] = []
    reader = csv.reader(io.StringIO(text.lstrip("\ufeff")))
    for line_number, row in enumerate(reader, start=1):
        if line_number == 1:
            continue
        cells = [cell.strip() for cell in row]
        if not any(cells):
            continue
        cells += [""] * (len(COLUMNS) - len(cells))
        hour, minute, second, name, message, mode = cells[: len(COLUMNS)]
        if not (hour and minute and second and message):
            logger.debug("Skipping incomplete CSV row", extra={"line": line_number})
            continue
        try:
            parts = [int(hour), int(minute), int(second)]
        except ValueError as exc:
            raise CsvImportError(f"Line {line_number}: hour, minute and second must be integers") from exc
        if any(part < 0 for part in parts):
            raise CsvImportError(f"Line {line_number}: time fields cannot be negative")
        offset = parts[0] * 3600 + parts[1] * 60 + parts[2]

        if mode.upper() == "CTA":
            kind = AutomationKind.CTA_POPUP
            content = CtaPopupPayload(description=message).to_content()
        else:
            kind = AutomationKind.TIMED_MESSAGE
            content = TimedMessagePayload(sender_name=name or DEFAULT_SENDER, message=message).to_content()
        rows.append(
            {
                "kind": kind.value,
                "trigger_offset_seconds": offset,
                "content": content,
                "enabled": True,
            }
        )
    return rows


async def import_timeline(
    repository: AutomationRepository, webinar_id: str, text: str, *, actor_id: str
) -> int:
    """Replace the timeline of ``webinar_id`` with the events described by ``text``."""

    rows = parse_timeline_csv(text)
    imported = await repository.replace_for_webinar(webinar_id, rows, actor_id=actor_id)
    logger.info("Imported automation timeline", extra={"webinar_id": webinar_id, "imported": imported})
    return imported


__all__ = ["CsvImportError", "import_timeline", "parse_timeline_csv"]
