"""
Conflict Resolution choices and the merge builder.

Accepted resolutions:
    ResolutionChoice.KEEP_LOCAL   force-save the local snapshot
    ResolutionChoice.KEEP_SERVER  adopt the server snapshot, no write
    KeepServer(touch=True)        adopt the server snapshot, metadata-only write
    CustomMerge(record)           force-save caller-supplied data

Legacy spellings ("keep_local", "keepLocal", "keep_server", "keepServer",
{"merged": record}) are parsed into the same values.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Iterable, Mapping, Optional, Union

from coedit.core import constants as C
from coedit.core.errors import ResolutionError
from coedit.core.types import Record


class ResolutionChoice(Enum):
    KEEP_LOCAL = "keep_local"
    KEEP_SERVER = "keep_server"


@dataclass(frozen=True)
class KeepServer:
    """Adopt the server snapshot; `touch` re-stamps last_modified_by/updated_at."""

    touch: bool = False


@dataclass(frozen=True)
class CustomMerge:
    """Caller-built record to force-save."""

    record: Record = field(default_factory=dict)


Resolution = Union[ResolutionChoice, KeepServer, CustomMerge]

_ALIASES: dict[str, ResolutionChoice] = {
    "keep_local": ResolutionChoice.KEEP_LOCAL,
    "keeplocal": ResolutionChoice.KEEP_LOCAL,
    "local": ResolutionChoice.KEEP_LOCAL,
    "keep_server": ResolutionChoice.KEEP_SERVER,
    "keepserver": ResolutionChoice.KEEP_SERVER,
    "server": ResolutionChoice.KEEP_SERVER,
}


def parse_resolution(choice: Any) -> Resolution:
    """
    Normalize a resolution to ResolutionChoice.KEEP_LOCAL, KeepServer or CustomMerge.

    Raises:
        ResolutionError: Unknown choice or malformed merge record
    """
    if isinstance(choice, (KeepServer, CustomMerge)):
        if isinstance(choice, CustomMerge) and not isinstance(choice.record, Mapping):
            raise ResolutionError.invalid_record("merged record must be a mapping")
        return choice
    if choice is ResolutionChoice.KEEP_SERVER:
        return KeepServer()
    if choice is ResolutionChoice.KEEP_LOCAL:
        return choice
    if isinstance(choice, str):
        parsed = _ALIASES.get(choice.strip().lower())
        if parsed is ResolutionChoice.KEEP_SERVER:
            return KeepServer()
        if parsed is not None:
            return parsed
    if isinstance(choice, Mapping) and set(choice.keys()) == {"merged"}:
        merged = choice["merged"]
        if not isinstance(merged, Mapping):
            raise ResolutionError.invalid_record("merged record must be a mapping")
        return CustomMerge(record=dict(merged))
    raise ResolutionError.invalid_choice(choice)


def build_merge(
    server: Mapping[str, Any],
    local: Mapping[str, Any],
    conflicting_fields: Iterable[str],
    changed_fields: Optional[Iterable[str]] = None,
    ignored_fields: Iterable[str] = C.SYSTEM_FIELDS,
) -> Record:
    """
    Server snapshot overlaid with local fields that do not conflict.

    Args:
        changed_fields: Restrict the overlay to fields the local side
            changed (three-way); None overlays every local field.
    """
    blocked = frozenset(conflicting_fields) | frozenset(ignored_fields)
    candidates = frozenset(local.keys()) if changed_fields is None else frozenset(changed_fields)

    merged = dict(server)
    for name in candidates:
        if name in blocked or name not in local:
            continue
        merged[name] = local[name]
    return merged
