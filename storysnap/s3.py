from __future__ import annotations

import logging
import os
import posixpath
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import boto3
from botocore import UNSIGNED
from botocore.client import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from tqdm import tqdm

from .config import _parse_properties
from .errors import NetworkError
from .transport import _ProgressBar

logger = logging.getLogger(__name__)

_PROPERTIES_ENCODING = "utf-8"
_DEFAULT_TRANSFERS = 6


@dataclass
class S3Config:
    """S3-compatible remote settings."""

    endpoint: Optional[str] = None
    region: Optional[str] = None
    provider: Optional[str] = None
    access_key: Optional[str] = None
    secret_key: Optional[str] = None
    session_token: Optional[str] = None

    @property
    def anonymous(self) -> bool:
        return not (self.access_key and self.secret_key)


def write_remote_config(path: str, cfg: S3Config, *, name: str) -> str:
    """
    Write the .properties file describing one remote.

    The file is rewritten unconditionally on every run so a stale or
    hand-edited copy never decides where snapshots come from.
    """
    parent = os.path.dirname(path)
    if parent:
        os.makedirs(parent, exist_ok=True)
    lines = [f"# remote: {name}"]
    for key, value in (
        ("s3.provider", cfg.provider),
        ("s3.region", cfg.region),
        ("s3.endpoint", cfg.endpoint),
        ("s3.accessKey", cfg.access_key),
        ("s3.secretKey", cfg.secret_key),
        ("s3.sessionToken", cfg.session_token),
    ):
        if value:
            lines.append(f"{key}={value}")
    with open(path, "w", encoding=_PROPERTIES_ENCODING) as f:
        f.write("\n".join(lines) + "\n")
    os.chmod(path, 0o644)
    return path


def load_s3_config(path: str) -> S3Config:
    if not os.path.exists(path):
        raise FileNotFoundError(f"S3 properties file not found: {path}")

    props = _parse_properties(path)
    return S3Config(
        endpoint=props.get("s3.endpoint"),
        region=props.get("s3.region"),
        provider=props.get("s3.provider"),
        access_key=props.get("s3.accessKey") or props.get("accessKey"),
        secret_key=props.get("s3.secretKey") or props.get("secretKey"),
        session_token=props.get("s3.sessionToken"),
    )


def create_s3_client(cfg: S3Config, timeout: Tuple[float, float] = (10.0, 60.0)):
    """
    Create a boto3 S3 client from S3Config.

    Without an access/secret key pair requests are sent unsigned, which is
    what public snapshot buckets expect.
    """
    config_kwargs = {
        "max_pool_connections": 16,
        "connect_timeout": timeout[0],
        "read_timeout": timeout[1],
    }
    if cfg.anonymous:
        config_kwargs["signature_version"] = UNSIGNED
    else:
        config_kwargs["signature_version"] = "s3v4"
    boto_config = BotoConfig(**config_kwargs)

    session_kwargs = {}
    client_kwargs = {}

    if cfg.region:
        client_kwargs["region_name"] = cfg.region
    if cfg.endpoint:
        client_kwargs["endpoint_url"] = cfg.endpoint

    if not cfg.anonymous:
        session_kwargs["aws_access_key_id"] = cfg.access_key
        session_kwargs["aws_secret_access_key"] = cfg.secret_key
        if cfg.session_token:
            session_kwargs["aws_session_token"] = cfg.session_token

    session = boto3.Session(**session_kwargs)
    return session.client(
        "s3",
        config=boto_config,
        **client_kwargs,
    )


def _list_objects(s3_client, bucket: str, prefix: str) -> List[Dict]:
    objects: List[Dict] = []
    paginator = s3_client.get_paginator("list_objects_v2")
    for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
        for item in page.get("Contents", []):
            if item["Key"].endswith("/"):
                continue
            objects.append(item)
    return objects


def _download_object(
    s3_client,
    bucket: str,
    key: str,
    dest_path: str,
    *,
    total_size: Optional[int] = None,
) -> None:
    os.makedirs(os.path.dirname(dest_path), exist_ok=True)
    part_path = f"{dest_path}.download"
    progress = _ProgressBar(desc=posixpath.basename(key), total=total_size)
    try:
        s3_client.download_file(bucket, key, part_path, Callback=progress)
        os.replace(part_path, dest_path)
    finally:
        progress.close()
        if os.path.exists(part_path):
            try:
                os.remove(part_path)
            except OSError:
                pass


def copy_prefix(
    s3_client,
    bucket: str,
    prefix: str,
    local_dir: str,
    *,
    transfers: int = _DEFAULT_TRANSFERS,
) -> int:
    """
    Copy every object under s3://bucket/prefix into local_dir.

    Keys keep their path relative to the prefix. Existing files are
    overwritten. The first failed object aborts the copy with NetworkError.
    Returns the number of objects copied.
    """
    if transfers < 1:
        raise ValueError("transfers must be >= 1")

    prefix = prefix.strip("/")
    list_prefix = f"{prefix}/" if prefix else ""
    try:
        objects = _list_objects(s3_client, bucket, list_prefix)
    except (BotoCoreError, ClientError) as exc:
        raise NetworkError(f"Failed to list s3://{bucket}/{list_prefix}: {exc}") from exc
    if not objects:
        raise NetworkError(f"No objects found under s3://{bucket}/{list_prefix}")

    local_abs = os.path.abspath(local_dir)
    os.makedirs(local_abs, exist_ok=True)

    def _copy_one(item: Dict) -> str:
        key = item["Key"]
        rel_path = key[len(list_prefix):]
        dest_path = os.path.abspath(os.path.join(local_abs, rel_path))
        if os.path.commonpath([local_abs, dest_path]) != local_abs:
            raise ValueError(f"Unsafe object key: {key}")
        _download_object(s3_client, bucket, key, dest_path, total_size=item.get("Size"))
        return key

    object_progress = tqdm(total=len(objects), unit="obj", desc=f"s3://{bucket}/{prefix}")
    try:
        with ThreadPoolExecutor(max_workers=transfers) as pool:
            future_map = {pool.submit(_copy_one, item): item["Key"] for item in objects}
            for future in as_completed(future_map):
                key = future_map[future]
                try:
                    future.result()
                except (BotoCoreError, ClientError, OSError) as exc:
                    for pending in future_map:
                        pending.cancel()
                    raise NetworkError(
                        f"Failed to copy s3://{bucket}/{key} -> {local_dir}: {exc}"
                    ) from exc
                object_progress.update(1)
    finally:
        object_progress.close()

    logger.info("Copied %d objects from s3://%s/%s", len(objects), bucket, prefix)
    return len(objects)
