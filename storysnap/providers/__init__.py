from __future__ import annotations

from typing import List

import requests

from ..config import Settings, discover_itrocket_mirrors
from .base import SnapshotProvider
from .itrocket import ItrocketProvider
from .jnode import JnodeProvider
from .krews import KrewsProvider

__all__ = [
    "ItrocketProvider",
    "JnodeProvider",
    "KrewsProvider",
    "SnapshotProvider",
    "default_providers",
    "find_provider",
]


def default_providers(settings: Settings, http: requests.Session) -> List[SnapshotProvider]:
    """Build the provider registry. List order is display order."""
    timeout = settings.timeout
    mirrors = discover_itrocket_mirrors(http, settings.discovery_url, timeout)
    return [
        ItrocketProvider(http, timeout, mirrors),
        KrewsProvider(http, timeout, settings.krews_catalog_url, settings.s3_config_dir),
        JnodeProvider(http, timeout, settings.jnode_catalog_url),
    ]


def find_provider(providers: List[SnapshotProvider], name: str) -> SnapshotProvider:
    for provider in providers:
        if provider.name.lower() == name.strip().lower():
            return provider
    known = ", ".join(p.name for p in providers)
    raise ValueError(f"Unsupported provider: {name!r} (known: {known})")
