from __future__ import annotations

import os
import tempfile
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import boto3
from botocore.client import Config as BotoConfig
from botocore.exceptions import BotoCoreError, ClientError
from tqdm import tqdm

_PROPERTIES_ENCODING = "utf-8"
_DEFAULT_PROPERTIES = "s3.properties"
_S3_SCHEME = "s3://"
_ACCESS_KEYS = ("s3.accessKey", "accessKey")
_SECRET_KEYS = ("s3.secretKey", "secretKey")


@dataclass
class S3Config:
    """Credentials used to fetch a backup stream from a bucket; None means the boto3 default."""

    access_key: Optional[str] = None
    secret_key: Optional[str] = None
    session_token: Optional[str] = None


def _read_properties(path: str) -> Dict[str, str]:
    with open(path, "r", encoding=_PROPERTIES_ENCODING) as f:
        pairs = (
            line.split("=", 1)
            for line in (raw.strip() for raw in f)
            if line and not line.startswith("#") and "=" in line
        )
        return {key.strip(): value.strip() for key, value in pairs}


def _first(props: Dict[str, str], keys: Tuple[str, ...]) -> Optional[str]:
    for key in keys:
        if props.get(key):
            return props[key]
    return None


def load_s3_config(path: Optional[str] = None) -> S3Config:
    """
    Credentials for ``s3://`` backup sources.

    An explicit ``path`` or ``$S3_PROPERTIES`` must point at an existing
    properties file. Otherwise ``./s3.properties`` is used when present,
    and an empty config (boto3's own credential chain) when it is not.
    """
    if path is None:
        path = os.environ.get("S3_PROPERTIES")
    if path is None:
        if not os.path.exists(_DEFAULT_PROPERTIES):
            return S3Config()
        path = _DEFAULT_PROPERTIES
    if not os.path.exists(path):
        raise FileNotFoundError(f"S3 properties file not found: {path}")

    props = _read_properties(path)
    return S3Config(
        access_key=_first(props, _ACCESS_KEYS),
        secret_key=_first(props, _SECRET_KEYS),
        session_token=props.get("s3.sessionToken"),
    )


def create_s3_client(cfg: S3Config, region: Optional[str] = None):
    """S3 client for downloading backup objects."""
    session_kwargs: Dict[str, str] = {}
    if cfg.access_key and cfg.secret_key:
        session_kwargs.update(
            aws_access_key_id=cfg.access_key,
            aws_secret_access_key=cfg.secret_key,
        )
    if cfg.session_token:
        session_kwargs["aws_session_token"] = cfg.session_token

    return boto3.Session(**session_kwargs).client(
        "s3",
        region_name=region or None,
        config=BotoConfig(signature_version="s3v4"),
    )


def is_s3_url(source: str) -> bool:
    return source.startswith(_S3_SCHEME)


def parse_s3_url(url: str) -> Tuple[str, str]:
    """Split ``s3://bucket/key`` into (bucket, key)."""
    if not is_s3_url(url):
        raise ValueError(f"Not an s3 URL: {url}")
    bucket, _, key = url[len(_S3_SCHEME):].partition("/")
    if not bucket:
        raise ValueError(f"s3 URL is missing a bucket: {url}")
    if not key or key.endswith("/"):
        raise ValueError(f"s3 URL must name an object, not a prefix: {url}")
    return bucket, key


class _DownloadProgress:
    """boto3 transfer callback feeding a byte-count tqdm bar."""

    def __init__(self, url: str, size: Optional[int]) -> None:
        self._bar = tqdm(total=size, unit="B", unit_scale=True, desc=url)

    def __call__(self, bytes_amount: int) -> None:
        self._bar.update(bytes_amount)

    def close(self) -> None:
        self._bar.close()


def _head_object(s3_client, bucket: str, key: str) -> Optional[Dict[str, Any]]:
    try:
        return s3_client.head_object(Bucket=bucket, Key=key)
    except (BotoCoreError, ClientError):
        return None


def _download_object(s3_client, bucket: str, key: str, dest_path: str) -> bool:
    head = _head_object(s3_client, bucket, key)
    total_size = head.get("ContentLength") if head is not None else None
    progress = _DownloadProgress(f"s3://{bucket}/{key}", total_size)
    try:
        s3_client.download_file(bucket, key, dest_path, Callback=progress)
        return True
    except (BotoCoreError, ClientError) as exc:
        print(f"[WARN] Failed to download s3://{bucket}/{key} -> {dest_path}: {exc}")
        return False
    finally:
        progress.close()


def download_backup_from_s3(
    cfg: S3Config,
    url: str,
    region: Optional[str] = None,
) -> str:
    """
    Download the backup stream at ``url`` into a temporary file.

    Returns the temporary file's path; the caller owns it and must remove
    it. Raises FileNotFoundError when the object cannot be fetched.
    """
    bucket, key = parse_s3_url(url)
    s3_client = create_s3_client(cfg, region)

    suffix = os.path.splitext(key)[1] or ".gz"
    with tempfile.NamedTemporaryFile(delete=False, suffix=suffix) as tmp:
        dest_path = tmp.name

    if not _download_object(s3_client, bucket, key, dest_path):
        try:
            os.remove(dest_path)
        except OSError:
            pass
        raise FileNotFoundError(f"Unable to fetch backup stream: {url}")

    return dest_path
