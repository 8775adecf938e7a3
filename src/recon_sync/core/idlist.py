"""Parsing of operator-supplied ID lists."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from datetime import datetime

from recon_sync.models import parse_timestamp
from recon_sync.schema import get_entity_class

logger = logging.getLogger(__name__)

_SPLIT = re.compile(r"[,\t]")
_HEADER_WORDS = ("type", "id", "modified")


@dataclass(frozen=True)
class IdListEntry:
    """One requested record, optionally with the modification time the operator saw."""

    entity_class: str
    natural_key: str
    modified_at: datetime | None = None


def _is_class_name(token: str) -> bool:
    try:
        get_entity_class(token)
    except KeyError:
        return False
    return True


def parse_id_list(text: str, default_class: str = "invoice") -> list[IdListEntry]:
    """
    Parse an ID list.

    Two shapes are accepted, and may be mixed line by line:

    - ``class,id[,modifiedDate]`` rows (comma or tab separated), with an
      optional header row such as ``type,id,modified date``
    - bare IDs separated by newlines and/or commas, taken as ``default_class``

    Rows whose modified date cannot be parsed are skipped with a warning.
    Duplicates keep their first occurrence.
    """
    default_name = get_entity_class(default_class).name
    entries: list[IdListEntry] = []
    seen: set[tuple[str, str]] = set()

    for line_no, line in enumerate(text.splitlines(), start=1):
        line = line.strip()
        if not line or line.startswith("#"):
            continue
        parts = [p.strip() for p in _SPLIT.split(line)]
        parts = [p for p in parts if p]
        if not parts:
            continue

        lowered = [p.lower() for p in parts]
        if not entries:
            if any(word in token for token in lowered for word in _HEADER_WORDS) and not any(
                _looks_like_key(p) for p in parts
            ):
                continue

        if _is_class_name(parts[0]) and len(parts) in (2, 3):
            entity = get_entity_class(parts[0]).name
            modified = None
            if len(parts) == 3:
                try:
                    modified = parse_timestamp(parts[2])
                except ValueError:
                    logger.warning(
                        "Line %d: skipping %s, unparsable date %r",
                        line_no, parts[1], parts[2],
                    )
                    continue
            candidates = [IdListEntry(entity, parts[1], modified)]
        else:
            candidates = [IdListEntry(default_name, part) for part in parts]

        for entry in candidates:
            marker = (entry.entity_class, entry.natural_key)
            if marker in seen:
                continue
            seen.add(marker)
            entries.append(entry)

    return entries


def _looks_like_key(token: str) -> bool:
    # Source keys look like "1699876543210x123456789012345678"
    return any(ch.isdigit() for ch in token)
