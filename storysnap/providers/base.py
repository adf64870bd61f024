from __future__ import annotations

import logging
import os
import tarfile
from abc import ABC, abstractmethod
from typing import Any, Callable, Optional, Tuple

import requests

from ..archive import extract_lz4_tar
from ..config import NodeLayout
from ..errors import FilesystemError, NetworkError, SchemaError, SnapshotError
from ..models import PruningMode, SnapshotDescriptor

logger = logging.getLogger(__name__)


class SnapshotProvider(ABC):
    """
    One snapshot provider.

    Subclasses turn the provider's metadata into a SnapshotDescriptor and
    implement the provider-specific part of applying it: wiping targets
    (prepare_targets) and fetching plus unpacking each asset (install).
    Everything else in the apply pipeline is shared.
    """

    name: str = ""

    def __init__(self, http: requests.Session, timeout: Tuple[float, float]) -> None:
        self.http = http
        self.timeout = timeout

    @abstractmethod
    def fetch(self, mode: PruningMode) -> SnapshotDescriptor:
        """Return the descriptor for mode or raise a SnapshotError."""

    def describe(self, mode: PruningMode) -> SnapshotDescriptor:
        """Like fetch(), but degrades every failure to a flagged placeholder."""
        try:
            return self.fetch(mode)
        except (
            SnapshotError,
            requests.RequestException,
            ValueError,
            TypeError,
            KeyError,
            AttributeError,
        ) as exc:
            logger.warning("Failed to fetch %s data (mode=%s): %s", self.name, mode, exc)
            return SnapshotDescriptor.unknown(self.name, mode)

    def prepare_targets(self, layout: NodeLayout) -> None:
        """Wipe target directories before install. Default: overwrite in place."""

    @abstractmethod
    def install(
        self,
        descriptor: SnapshotDescriptor,
        layout: NodeLayout,
        on_downloaded: Optional[Callable[[], None]] = None,
    ) -> None:
        """
        Download and unpack every asset into the node's data directories.

        on_downloaded is called once, after the last download finished and
        before the last extraction starts.
        """

    @abstractmethod
    def export(self, descriptor: SnapshotDescriptor, output_dir: str) -> None:
        """Download every asset into output_dir without touching a node."""

    def _get_json(self, url: str) -> Any:
        try:
            resp = self.http.get(url, timeout=self.timeout)
        except requests.RequestException as exc:
            raise NetworkError(f"GET {url} failed: {exc}") from exc
        try:
            if not 200 <= resp.status_code < 300:
                raise NetworkError(f"GET {url} returned HTTP {resp.status_code}")
            try:
                return resp.json()
            except ValueError as exc:
                raise SchemaError(f"Could not decode JSON from {url}: {exc}") from exc
        finally:
            resp.close()


def notify(callback: Optional[Callable[[], None]]) -> None:
    if callback is not None:
        callback()


def extract_and_remove(archive_path: str, dest_dir: str) -> None:
    logger.info("Extracting %s into %s", os.path.basename(archive_path), dest_dir)
    try:
        extract_lz4_tar(archive_path, dest_dir)
    except (OSError, ValueError, EOFError, RuntimeError, tarfile.TarError) as exc:
        raise FilesystemError(f"Failed to extract {archive_path}: {exc}") from exc
    try:
        os.remove(archive_path)
    except OSError as exc:
        raise FilesystemError(f"Failed to remove {archive_path}: {exc}") from exc
