from __future__ import annotations

import posixpath
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import List, Optional
from urllib.parse import urlparse

from .formatting import NOT_AVAILABLE, UNKNOWN_SIZE


class PruningMode(str, Enum):
    PRUNED = "pruned"
    ARCHIVE = "archive"

    @classmethod
    def parse(cls, value: "str | PruningMode") -> "PruningMode":
        if isinstance(value, PruningMode):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError:
            raise ValueError(
                f"Unsupported pruning mode: {value!r} (expected 'pruned' or 'archive')"
            ) from None

    def __str__(self) -> str:
        return self.value


CONSENSUS = "consensus"
EXECUTION = "execution"


@dataclass(frozen=True)
class Asset:
    """One downloadable component of a snapshot."""

    role: str
    locator: str
    size: Optional[str] = None

    @property
    def filename(self) -> str:
        path = urlparse(self.locator).path or self.locator
        return posixpath.basename(path.rstrip("/"))


@dataclass
class SnapshotDescriptor:
    """Normalized metadata about one candidate snapshot from one provider."""

    provider: str
    mode: PruningMode
    assets: List[Asset] = field(default_factory=list)
    block_height: str = NOT_AVAILABLE
    total_size: str = UNKNOWN_SIZE
    timestamp: Optional[datetime] = None
    age: str = NOT_AVAILABLE
    available: bool = True

    @classmethod
    def unknown(cls, provider: str, mode: PruningMode) -> "SnapshotDescriptor":
        return cls(provider=provider, mode=mode, available=False)

    def asset(self, role: str) -> Asset:
        for candidate in self.assets:
            if candidate.role == role:
                return candidate
        raise KeyError(f"{self.provider} snapshot has no '{role}' asset")

    def summary(self) -> str:
        return (
            f"( mode: {self.mode} | size: {self.total_size} | "
            f"height: {self.block_height} | {self.age} )"
        )
