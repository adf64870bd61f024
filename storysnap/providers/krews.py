from __future__ import annotations

import logging
import os
from typing import Any, Callable, Dict, Optional, Tuple

import requests

from .. import s3
from ..config import NodeLayout
from ..errors import SchemaError
from ..formatting import NOT_AVAILABLE, UNKNOWN_SIZE, format_age, parse_catalog_date
from ..models import CONSENSUS, EXECUTION, Asset, PruningMode, SnapshotDescriptor
from .base import SnapshotProvider, notify

logger = logging.getLogger(__name__)

REMOTE_NAME = "krews-snapshot"
BUCKET = "krews-1-eu"
REMOTE = s3.S3Config(
    endpoint="https://fra1.cdn.digitaloceanspaces.com",
    region="fra1",
    provider="DigitalOcean",
)


def snapshot_name(mode: PruningMode) -> str:
    return f"story_testnet_{mode.value}_snapshot"


def _block_string(value: Any) -> str:
    if value is None or value == "":
        return NOT_AVAILABLE
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


class KrewsProvider(SnapshotProvider):
    """
    Aggregated-catalog provider.

    One catalog lists pruned and archive snapshots side by side; assets are
    pulled from an S3-compatible bucket straight into the node directories.
    """

    name = "Krews"

    def __init__(
        self,
        http: requests.Session,
        timeout: Tuple[float, float],
        catalog_url: str,
        config_dir: str,
        *,
        transfers: int = 6,
    ) -> None:
        super().__init__(http, timeout)
        self.catalog_url = catalog_url
        self.config_dir = config_dir
        self.transfers = transfers

    def _entry_for(self, mode: PruningMode, details: list) -> Optional[Dict[str, Any]]:
        want_pruned = mode is PruningMode.PRUNED
        match = None
        for entry in details:
            if not isinstance(entry, dict):
                continue
            if bool(entry.get("pruned")) == want_pruned:
                match = entry
        return match

    def fetch(self, mode: PruningMode) -> SnapshotDescriptor:
        payload = self._get_json(self.catalog_url)
        details = payload.get("details") if isinstance(payload, dict) else None
        if not isinstance(details, list):
            raise SchemaError(f"catalog from {self.catalog_url} has no 'details' list")

        entry = self._entry_for(mode, details)
        if entry is None:
            logger.warning("%s catalog lists no %s snapshot", self.name, mode)
            return SnapshotDescriptor.unknown(self.name, mode)

        prefix = f"s3://{BUCKET}/{snapshot_name(mode)}"
        snapshot_time = parse_catalog_date(entry.get("snapshot_date"))
        if snapshot_time is None and entry.get("snapshot_date"):
            logger.warning(
                "Could not parse %s snapshot_date=%r", self.name, entry.get("snapshot_date")
            )
        return SnapshotDescriptor(
            provider=self.name,
            mode=mode,
            assets=[
                Asset(CONSENSUS, f"{prefix}/story"),
                Asset(EXECUTION, f"{prefix}/geth"),
            ],
            block_height=_block_string(entry.get("block")),
            total_size=str(entry.get("size") or UNKNOWN_SIZE),
            timestamp=snapshot_time,
            age=format_age(snapshot_time),
        )

    def _client(self):
        config_path = os.path.join(self.config_dir, f"{REMOTE_NAME}.properties")
        s3.write_remote_config(config_path, REMOTE, name=REMOTE_NAME)
        return s3.create_s3_client(s3.load_s3_config(config_path), self.timeout)

    def _copy(self, client, asset: Asset, dest_dir: str) -> None:
        bucket, _, prefix = asset.locator[len("s3://"):].partition("/")
        logger.info("Copying %s %s snapshot into %s", self.name, asset.role, dest_dir)
        s3.copy_prefix(client, bucket, prefix, dest_dir, transfers=self.transfers)

    def install(
        self,
        descriptor: SnapshotDescriptor,
        layout: NodeLayout,
        on_downloaded: Optional[Callable[[], None]] = None,
    ) -> None:
        client = self._client()
        self._copy(client, descriptor.asset(CONSENSUS), layout.consensus_dir)
        self._copy(client, descriptor.asset(EXECUTION), layout.execution_root)
        # Objects land unpacked, so downloading is extracting.
        notify(on_downloaded)

    def export(self, descriptor: SnapshotDescriptor, output_dir: str) -> None:
        client = self._client()
        base = os.path.join(output_dir, snapshot_name(descriptor.mode))
        for asset in descriptor.assets:
            self._copy(client, asset, os.path.join(base, asset.filename))
