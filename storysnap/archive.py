from __future__ import annotations

import logging
import os
import posixpath
import shutil
import tarfile

import lz4.frame

logger = logging.getLogger(__name__)

_COPY_BUFFER = 4 * 1024 * 1024


def _normalize_archive_path(path: str) -> str:
    normalized = posixpath.normpath(path.replace("\\", "/"))
    if normalized in ("", "/"):
        raise ValueError(f"Unsafe path in tar: {path}")
    if normalized.startswith("/") or normalized == ".." or normalized.startswith("../"):
        raise ValueError(f"Unsafe path in tar: {path}")
    return normalized


def _target_path(dest_dir: str, name: str) -> str:
    normalized = _normalize_archive_path(name)
    dest_abs = os.path.abspath(dest_dir)
    target = os.path.abspath(os.path.join(dest_abs, normalized))
    if os.path.commonpath([dest_abs, target]) != dest_abs:
        raise ValueError(f"Unsafe path in tar: {name}")
    return target


def extract_lz4_tar(archive_path: str, dest_dir: str) -> int:
    """
    Stream-extract an LZ4-compressed tar archive into dest_dir.

    Directories are created with the header's mode bits and may already
    exist. Regular files are truncated, written, closed and then chmod'ed to
    the header's mode. Links, devices and other entry types are skipped with
    a warning. Returns the number of regular files written.
    """
    os.makedirs(dest_dir, exist_ok=True)
    written = 0
    with lz4.frame.open(archive_path, mode="rb") as compressed:
        with tarfile.open(fileobj=compressed, mode="r|") as tar:
            for member in tar:
                target = _target_path(dest_dir, member.name)

                if member.isdir():
                    if target == os.path.abspath(dest_dir):
                        continue
                    os.makedirs(target, mode=member.mode & 0o7777, exist_ok=True)
                    continue

                if not member.isfile():
                    logger.warning(
                        "Skipping unsupported tar entry type %r: %s", member.type, member.name
                    )
                    continue

                extracted = tar.extractfile(member)
                if extracted is None:
                    raise OSError(f"Failed to read tar entry: {member.name}")

                parent = os.path.dirname(target)
                if parent:
                    os.makedirs(parent, exist_ok=True)
                with open(target, "wb") as out:
                    shutil.copyfileobj(extracted, out, length=_COPY_BUFFER)
                os.chmod(target, member.mode & 0o7777)
                written += 1

    logger.info("Extracted %d files from %s into %s", written, archive_path, dest_dir)
    return written


def create_lz4_tar(src_dir: str, archive_path: str) -> str:
    """Pack the contents of src_dir (not the directory itself) into an .tar.lz4."""
    src_dir = os.path.abspath(src_dir)
    with lz4.frame.open(archive_path, mode="wb") as compressed:
        with tarfile.open(fileobj=compressed, mode="w|") as tar:
            for root, dirs, files in os.walk(src_dir):
                dirs.sort()
                for dirname in dirs:
                    full_path = os.path.join(root, dirname)
                    tar.add(
                        full_path,
                        arcname=os.path.relpath(full_path, start=src_dir),
                        recursive=False,
                    )
                for filename in sorted(files):
                    full_path = os.path.join(root, filename)
                    tar.add(full_path, arcname=os.path.relpath(full_path, start=src_dir))
    return archive_path
