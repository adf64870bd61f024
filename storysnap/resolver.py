from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Callable, Iterable, List, Optional, Sequence

from .errors import IntegrityError
from .models import PruningMode, SnapshotDescriptor
from .providers.base import SnapshotProvider

logger = logging.getLogger(__name__)

Chooser = Callable[[List[SnapshotDescriptor]], SnapshotDescriptor]


def resolve_for_mode(
    providers: Sequence[SnapshotProvider],
    mode: PruningMode,
    *,
    max_workers: Optional[int] = None,
) -> List[SnapshotDescriptor]:
    """
    Query every provider for mode and return one descriptor per provider.

    Providers are queried concurrently, results come back in registration
    order. A provider that fails yields its "unknown" placeholder.
    """
    mode = PruningMode.parse(mode)
    if not providers:
        return []
    workers = max_workers or len(providers)
    with ThreadPoolExecutor(max_workers=workers) as pool:
        futures = [pool.submit(provider.describe, mode) for provider in providers]
        return [future.result() for future in futures]


def resolve_for_modes(
    providers: Sequence[SnapshotProvider],
    modes: Iterable[PruningMode],
) -> List[SnapshotDescriptor]:
    results: List[SnapshotDescriptor] = []
    for mode in modes:
        results.extend(resolve_for_mode(providers, mode))
    return results


def candidates(results: Iterable[SnapshotDescriptor]) -> List[SnapshotDescriptor]:
    return [descriptor for descriptor in results if descriptor.available]


def require_candidates(
    results: Iterable[SnapshotDescriptor], mode: PruningMode
) -> List[SnapshotDescriptor]:
    usable = candidates(results)
    if not usable:
        raise IntegrityError(f"no snapshot provider offers a usable {mode} snapshot")
    return usable


def choose(results: List[SnapshotDescriptor], chooser: Chooser) -> SnapshotDescriptor:
    """Let chooser (usually a terminal prompt) pick one of the listed descriptors."""
    if not results:
        raise IntegrityError("no providers data found")
    picked = chooser(results)
    if not picked.available:
        raise IntegrityError(f"{picked.provider} has no usable {picked.mode} snapshot")
    logger.info("Selected provider %s %s", picked.provider, picked.summary())
    return picked
