from __future__ import annotations

import logging
import os
import shutil
from typing import Any, Callable, Dict, Optional, Tuple

import requests

from ..config import NodeLayout
from ..errors import FilesystemError, SchemaError
from ..formatting import NOT_AVAILABLE, sum_sizes
from ..models import CONSENSUS, EXECUTION, Asset, PruningMode, SnapshotDescriptor
from ..transport import download_http, download_parallel
from .base import SnapshotProvider, extract_and_remove, notify

logger = logging.getLogger(__name__)

_FILE_ROLES = (("story", CONSENSUS), ("geth", EXECUTION))


def _file_entry(files: Dict[str, Any], key: str) -> Dict[str, Any]:
    entry = files.get(key)
    if not isinstance(entry, dict) or not entry.get("url"):
        raise SchemaError(f"catalog has no '{key}' file url")
    return entry


class JnodeProvider(SnapshotProvider):
    """
    Computed-catalog provider.

    The catalog is keyed by mode and already carries absolute URLs, float
    sizes and a preformatted age. Applying wipes the old data first.
    """

    name = "Jnode"

    def __init__(
        self, http: requests.Session, timeout: Tuple[float, float], catalog_url: str
    ) -> None:
        super().__init__(http, timeout)
        self.catalog_url = catalog_url

    def fetch(self, mode: PruningMode) -> SnapshotDescriptor:
        payload = self._get_json(self.catalog_url)
        section = payload.get(mode.value) if isinstance(payload, dict) else None
        if not isinstance(section, dict):
            raise SchemaError(f"catalog from {self.catalog_url} has no '{mode}' section")
        files = section.get("files")
        if not isinstance(files, dict):
            raise SchemaError(f"catalog '{mode}' section has no files")

        assets = []
        sizes = []
        for key, role in _FILE_ROLES:
            entry = _file_entry(files, key)
            size = entry.get("size_gb")
            sizes.append(size)
            size_label = f"{size:.2f}G" if isinstance(size, (int, float)) else None
            assets.append(Asset(role, entry["url"], size_label))

        height = section.get("snapshot_height")
        return SnapshotDescriptor(
            provider=self.name,
            mode=mode,
            assets=assets,
            block_height=str(height) if height not in (None, "") else NOT_AVAILABLE,
            total_size=sum_sizes(*sizes),
            age=str(section.get("time_ago") or NOT_AVAILABLE),
        )

    def prepare_targets(self, layout: NodeLayout) -> None:
        data_dir = layout.consensus_data_dir
        logger.info("Removing old %s consensus data in %s", self.name, data_dir)
        try:
            if os.path.isdir(data_dir):
                for entry in os.listdir(data_dir):
                    path = os.path.join(data_dir, entry)
                    if os.path.isfile(path) or os.path.islink(path):
                        os.remove(path)
            chaindata = layout.execution_chaindata_dir
            logger.info("Removing old %s execution chaindata in %s", self.name, chaindata)
            if os.path.exists(chaindata):
                shutil.rmtree(chaindata)
        except OSError as exc:
            raise FilesystemError(f"Failed to wipe old chain data: {exc}") from exc

    def install(
        self,
        descriptor: SnapshotDescriptor,
        layout: NodeLayout,
        on_downloaded: Optional[Callable[[], None]] = None,
    ) -> None:
        targets = (
            (descriptor.asset(CONSENSUS), "Story_snapshot.lz4", layout.consensus_dir),
            (descriptor.asset(EXECUTION), "Geth_snapshot.lz4", layout.execution_dir),
        )
        downloaded = []
        for asset, archive_name, dest_dir in targets:
            archive_path = os.path.join(layout.home, archive_name)
            logger.info("Downloading %s %s snapshot", self.name, asset.role)
            download_parallel(asset.locator, archive_path)
            downloaded.append((archive_path, dest_dir))
        notify(on_downloaded)
        for archive_path, dest_dir in downloaded:
            extract_and_remove(archive_path, dest_dir)

    def export(self, descriptor: SnapshotDescriptor, output_dir: str) -> None:
        for asset in descriptor.assets:
            dest_path = os.path.join(output_dir, asset.filename)
            logger.info("Downloading %s %s snapshot to %s", self.name, asset.role, dest_path)
            download_http(self.http, asset.locator, dest_path, timeout=self.timeout)
