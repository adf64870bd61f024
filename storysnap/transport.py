from __future__ import annotations

import logging
import os
import shutil
import subprocess
from typing import Optional, Tuple

import requests
from tqdm import tqdm

from .errors import DependencyError, IntegrityError, NetworkError

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 1024 * 1024
_ARIA2_INSTALL_CMD = ["sudo", "apt-get", "install", "aria2", "-y"]


class _ProgressBar:
    def __init__(self, desc: str, total: Optional[int]) -> None:
        self._bar = tqdm(total=total, unit="B", unit_scale=True, desc=desc)
        self._total = total
        self._seen_so_far = 0

    def __call__(self, bytes_amount: int) -> None:
        self._seen_so_far += bytes_amount
        self._bar.update(bytes_amount)
        if self._total is not None and self._seen_so_far >= self._total:
            self._bar.close()

    def close(self) -> None:
        self._bar.close()


def _remove_quietly(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass
    except OSError as exc:
        logger.warning("Could not remove partial file %s: %s", path, exc)


def _content_length(resp: requests.Response, url: str) -> int:
    raw = resp.headers.get("Content-Length")
    try:
        size = int(raw) if raw is not None else 0
    except ValueError:
        size = 0
    if size <= 0:
        raise IntegrityError(f"invalid Content-Length {raw!r} for {url}")
    return size


def download_http(
    http: requests.Session,
    url: str,
    dest_path: str,
    *,
    timeout: Tuple[float, float] = (10.0, 60.0),
    desc: Optional[str] = None,
) -> int:
    """
    Download url into dest_path over a single HTTP stream.

    The server must announce a positive Content-Length. The body is written
    to '<dest_path>.part' and renamed on success; partial files are removed,
    so a retry always starts from scratch. Returns the number of bytes written.
    """
    parent = os.path.dirname(dest_path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    part_path = f"{dest_path}.part"

    try:
        resp = http.get(url, stream=True, timeout=timeout)
    except requests.RequestException as exc:
        raise NetworkError(f"GET {url} failed: {exc}") from exc

    try:
        if not 200 <= resp.status_code < 300:
            raise NetworkError(f"GET {url} returned HTTP {resp.status_code}")
        total_size = _content_length(resp, url)

        progress = _ProgressBar(desc=desc or os.path.basename(dest_path), total=total_size)
        written = 0
        try:
            with open(part_path, "wb") as out:
                for chunk in resp.iter_content(chunk_size=_CHUNK_SIZE):
                    if not chunk:
                        continue
                    out.write(chunk)
                    written += len(chunk)
                    progress(len(chunk))
        except requests.RequestException as exc:
            raise NetworkError(f"download of {url} interrupted: {exc}") from exc
        finally:
            progress.close()

        if written != total_size:
            raise IntegrityError(
                f"short download from {url}: got {written} of {total_size} bytes"
            )
        os.replace(part_path, dest_path)
        return written
    finally:
        resp.close()
        if os.path.exists(part_path):
            _remove_quietly(part_path)


def ensure_aria2() -> str:
    """Return the aria2c path, installing it through apt when missing."""
    path = shutil.which("aria2c")
    if path is not None:
        return path

    logger.warning("aria2c is not installed; attempting to install aria2")
    try:
        completed = subprocess.run(
            _ARIA2_INSTALL_CMD,
            check=False,
            stdout=subprocess.DEVNULL,
            stderr=subprocess.PIPE,
            text=True,
        )
    except OSError as exc:
        raise DependencyError(f"failed to install aria2: {exc}") from exc
    if completed.returncode != 0:
        stderr = (completed.stderr or "").strip()
        raise DependencyError(f"failed to install aria2: {stderr or completed.returncode}")

    path = shutil.which("aria2c")
    if path is None:
        raise DependencyError("aria2 installation finished but aria2c is still not on PATH")
    return path


def download_parallel(url: str, dest_path: str) -> None:
    """Download url with aria2c using 16 parallel segments."""
    aria2c = ensure_aria2()
    parent = os.path.dirname(dest_path) or "."
    os.makedirs(parent, exist_ok=True)
    if os.path.exists(dest_path):
        os.remove(dest_path)
    _remove_quietly(f"{dest_path}.aria2")

    cmd = [
        aria2c,
        "--split=16",
        "--max-connection-per-server=16",
        "--min-split-size=1M",
        "--console-log-level=error",
        "--summary-interval=1",
        "--allow-overwrite=true",
        f"--dir={parent}",
        f"--out={os.path.basename(dest_path)}",
        url,
    ]
    logger.info("Downloading %s with aria2c", url)
    try:
        completed = subprocess.run(cmd, check=False, stderr=subprocess.PIPE, text=True)
    except OSError as exc:
        raise DependencyError(f"failed to start aria2c: {exc}") from exc
    if completed.returncode != 0:
        _remove_quietly(dest_path)
        stderr = (completed.stderr or "").strip()
        raise NetworkError(f"aria2c failed for {url}: {stderr or completed.returncode}")
