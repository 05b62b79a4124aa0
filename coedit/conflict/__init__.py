"""
Conflict module: detection of lost optimistic-locking races and the
resolution choices offered to callers.
"""

from coedit.conflict.detector import (
    ConflictDetector,
    ConflictKind,
    ConflictReport,
    normalize,
    values_equal,
)
from coedit.conflict.resolution import (
    CustomMerge,
    KeepServer,
    Resolution,
    ResolutionChoice,
    build_merge,
    parse_resolution,
)

__all__ = [
    "ConflictDetector",
    "ConflictKind",
    "ConflictReport",
    "normalize",
    "values_equal",
    "CustomMerge",
    "KeepServer",
    "Resolution",
    "ResolutionChoice",
    "build_merge",
    "parse_resolution",
]
