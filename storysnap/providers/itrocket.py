from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Tuple

import requests

from ..config import NodeLayout
from ..errors import NetworkError, SchemaError
from ..formatting import format_age, parse_iso_timestamp, sum_sizes
from ..models import CONSENSUS, EXECUTION, Asset, PruningMode, SnapshotDescriptor
from ..transport import download_http
from .base import SnapshotProvider, extract_and_remove, notify

logger = logging.getLogger(__name__)

_STATE_SUFFIX = "/.current_state.json"


@dataclass
class _MirrorState:
    url: str
    payload: Dict[str, Any]
    block_time: datetime


def asset_url(mirror_url: str, name: str) -> str:
    base = mirror_url[: -len(_STATE_SUFFIX)] if mirror_url.endswith(_STATE_SUFFIX) else mirror_url
    return f"{base.rstrip('/')}/{name}"


def _size_label(value: Any) -> Optional[str]:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


class ItrocketProvider(SnapshotProvider):
    """
    Mirrored-state provider.

    Every mirror serves the same .current_state.json schema; the mirror with
    the most recent snapshot_block_time wins. Unreachable or malformed
    mirrors are skipped, and fetch() only fails when none of them answer.
    """

    name = "Itrocket"

    def __init__(
        self,
        http: requests.Session,
        timeout: Tuple[float, float],
        mirrors: Dict[PruningMode, List[str]],
    ) -> None:
        super().__init__(http, timeout)
        self.mirrors = mirrors

    def _read_mirror(self, url: str) -> _MirrorState:
        payload = self._get_json(url)
        if not isinstance(payload, dict):
            raise SchemaError(f"state from {url} is not a JSON object")
        names = (payload.get("snapshot_name"), payload.get("snapshot_geth_name"))
        if not all(isinstance(name, str) and name for name in names):
            raise SchemaError(f"state from {url} is missing snapshot names")
        block_time = parse_iso_timestamp(payload.get("snapshot_block_time"))
        if block_time is None:
            raise SchemaError(
                f"could not parse snapshot_block_time {payload.get('snapshot_block_time')!r} from {url}"
            )
        return _MirrorState(url=url, payload=payload, block_time=block_time)

    def best_mirror(self, mode: PruningMode) -> _MirrorState:
        best: Optional[_MirrorState] = None
        for url in self.mirrors.get(mode, []):
            try:
                state = self._read_mirror(url)
            except NetworkError as exc:
                logger.warning("Could not use mirror %s: %s", url, exc)
                continue
            if best is None or state.block_time > best.block_time:
                best = state
        if best is None:
            raise NetworkError(f"no valid {mode} snapshot state found on any {self.name} mirror")
        return best

    def fetch(self, mode: PruningMode) -> SnapshotDescriptor:
        best = self.best_mirror(mode)
        payload = best.payload
        consensus_size = _size_label(payload.get("snapshot_size"))
        execution_size = _size_label(payload.get("geth_snapshot_size"))
        return SnapshotDescriptor(
            provider=self.name,
            mode=mode,
            assets=[
                Asset(CONSENSUS, asset_url(best.url, payload["snapshot_name"]), consensus_size),
                Asset(EXECUTION, asset_url(best.url, payload["snapshot_geth_name"]), execution_size),
            ],
            block_height=str(payload.get("snapshot_height") or "N/A"),
            total_size=sum_sizes(consensus_size, execution_size),
            timestamp=best.block_time,
            age=format_age(best.block_time),
        )

    def install(
        self,
        descriptor: SnapshotDescriptor,
        layout: NodeLayout,
        on_downloaded: Optional[Callable[[], None]] = None,
    ) -> None:
        targets = (
            (descriptor.asset(CONSENSUS), "story_snapshot.tar.lz4", layout.consensus_dir),
            (descriptor.asset(EXECUTION), "geth_snapshot.tar.lz4", layout.execution_dir),
        )
        # Each archive is unpacked before the next one is fetched.
        for index, (asset, archive_name, dest_dir) in enumerate(targets):
            archive_path = os.path.join(layout.story_dir, archive_name)
            logger.info("Downloading %s %s snapshot", self.name, asset.role)
            download_http(self.http, asset.locator, archive_path, timeout=self.timeout)
            if index == len(targets) - 1:
                notify(on_downloaded)
            extract_and_remove(archive_path, dest_dir)

    def export(self, descriptor: SnapshotDescriptor, output_dir: str) -> None:
        for asset in descriptor.assets:
            dest_path = os.path.join(output_dir, asset.filename)
            logger.info("Downloading %s %s snapshot to %s", self.name, asset.role, dest_path)
            download_http(self.http, asset.locator, dest_path, timeout=self.timeout)
