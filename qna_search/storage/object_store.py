# Object-store backends used as the durability layer.
#
# Two implementations share one small protocol:
#   - S3ObjectStore   : boto3 client (AWS S3 or any S3-compatible endpoint, e.g. R2)
#   - LocalObjectStore: a plain directory, for local dev and tests
#
# Both record a sha256 of the body as object metadata at write time so the
# reconciler can compare content without downloading it again.

from __future__ import annotations

import hashlib
import json
import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Protocol

from ..errors import NotFoundError, PermanentIOError, TransientIOError
from .retry import call_with_retry

logger = logging.getLogger(__name__)

CHECKSUM_KEY = "sha256"
PART_SUFFIX = ".qna-part"


def sha256_bytes(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def sha256_file(path: Path, chunk_size: int = 64 * 1024) -> str:
    h = hashlib.sha256()
    with open(path, "rb") as f:
        for blk in iter(lambda: f.read(chunk_size), b""):
            h.update(blk)
    return h.hexdigest()


def join_key(prefix: str, rel: str) -> str:
    prefix = prefix.strip("/")
    return f"{prefix}/{rel}" if prefix else rel


@dataclass
class ObjectInfo:
    """One entry of a listing. `checksum` is None when the listing does not carry it."""
    key: str
    size: int
    checksum: Optional[str] = None


class ObjectStore(Protocol):
    def list(self, prefix: str) -> List[ObjectInfo]: ...

    def head(self, key: str) -> ObjectInfo: ...

    def get(self, key: str) -> bytes: ...

    def put(self, key: str, data: bytes, metadata: Optional[Dict[str, str]] = None) -> None: ...

    def delete(self, key: str) -> None: ...


# ============================================================================
# Local directory backend
# ============================================================================

class LocalObjectStore:
    """Directory-backed store. Metadata lives under `<root>/.meta/<key>.json`."""

    META_DIR = ".meta"

    def __init__(self, root: Path | str):
        self.root = Path(root)
        self.root.mkdir(parents=True, exist_ok=True)

    def _path(self, key: str) -> Path:
        return self.root / key

    def _meta_path(self, key: str) -> Path:
        return self.root / self.META_DIR / f"{key}.json"

    def _read_meta(self, key: str) -> Dict[str, str]:
        p = self._meta_path(key)
        if not p.exists():
            return {}
        with open(p, "r", encoding="utf-8") as fh:
            return json.load(fh)

    def list(self, prefix: str) -> List[ObjectInfo]:
        base = self.root / prefix.strip("/") if prefix.strip("/") else self.root
        out: List[ObjectInfo] = []
        if not base.is_dir():
            return out
        for p in sorted(base.rglob("*")):
            if not p.is_file() or p.name.endswith(PART_SUFFIX):
                continue
            rel = p.relative_to(self.root).as_posix()
            if rel.split("/", 1)[0] == self.META_DIR:
                continue
            out.append(ObjectInfo(key=rel, size=p.stat().st_size, checksum=self._read_meta(rel).get(CHECKSUM_KEY)))
        return out

    def head(self, key: str) -> ObjectInfo:
        p = self._path(key)
        if not p.is_file():
            raise NotFoundError(f"No such object: {key}")
        return ObjectInfo(key=key, size=p.stat().st_size, checksum=self._read_meta(key).get(CHECKSUM_KEY))

    def get(self, key: str) -> bytes:
        p = self._path(key)
        if not p.is_file():
            raise NotFoundError(f"No such object: {key}")
        return p.read_bytes()

    def put(self, key: str, data: bytes, metadata: Optional[Dict[str, str]] = None) -> None:
        p = self._path(key)
        p.parent.mkdir(parents=True, exist_ok=True)
        atomic_write(p, data)
        mp = self._meta_path(key)
        mp.parent.mkdir(parents=True, exist_ok=True)
        atomic_write(mp, json.dumps(dict(metadata or {}), sort_keys=True).encode("utf-8"))

    def delete(self, key: str) -> None:
        for p in (self._path(key), self._meta_path(key)):
            try:
                p.unlink()
            except FileNotFoundError:
                pass


def atomic_write(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(prefix=f".{path.name}.", suffix=PART_SUFFIX, dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as fh:
            fh.write(data)
        os.replace(tmp, path)
    except BaseException:
        try:
            os.unlink(tmp)
        except FileNotFoundError:
            pass
        raise


# ============================================================================
# S3 backend
# ============================================================================

_TRANSIENT_CODES = {
    "Throttling",
    "ThrottlingException",
    "SlowDown",
    "RequestTimeout",
    "RequestTimeoutException",
    "InternalError",
    "ServiceUnavailable",
    "500",
    "502",
    "503",
    "504",
}
_NOT_FOUND_CODES = {"NoSuchKey", "NotFound", "404"}


def _translate(exc: Exception, key: str) -> Exception:
    """Map botocore exceptions onto the qna_search taxonomy."""
    from botocore.exceptions import (
        ClientError,
        ConnectionClosedError,
        ConnectTimeoutError,
        EndpointConnectionError,
        ReadTimeoutError,
    )

    if isinstance(exc, ClientError):
        code = str(exc.response.get("Error", {}).get("Code", ""))
        status = exc.response.get("ResponseMetadata", {}).get("HTTPStatusCode")
        if code in _NOT_FOUND_CODES or status == 404:
            return NotFoundError(f"No such object: {key}")
        if code in _TRANSIENT_CODES or (status is not None and status >= 500) or status == 429:
            return TransientIOError(f"{key}: {code or status}")
        return PermanentIOError(f"{key}: {code or status}")
    if isinstance(exc, (EndpointConnectionError, ConnectionClosedError, ConnectTimeoutError, ReadTimeoutError)):
        return TransientIOError(f"{key}: {exc}")
    return exc


class S3ObjectStore:
    """boto3-backed store. Retries are owned by tenacity, not botocore."""

    def __init__(
        self,
        bucket: str,
        *,
        endpoint_url: Optional[str] = None,
        region: Optional[str] = None,
        timeout: float = 30.0,
        attempts: int = 5,
        backoff: float = 0.5,
        client=None,
    ):
        self.bucket = bucket
        self.attempts = attempts
        self.backoff = backoff
        if client is None:
            import boto3
            from botocore.config import Config

            client = boto3.client(
                "s3",
                endpoint_url=endpoint_url,
                region_name=region,
                config=Config(
                    connect_timeout=timeout,
                    read_timeout=timeout,
                    retries={"mode": "standard", "total_max_attempts": 1},
                ),
            )
        self.client = client
        logger.info("S3 object store ready (bucket=%s, endpoint=%s)", bucket, endpoint_url or "aws")

    def _call(self, key: str, fn, **kwargs):
        def once():
            try:
                return fn(**kwargs)
            except Exception as e:
                translated = _translate(e, key)
                if translated is e:
                    raise
                raise translated from e

        return call_with_retry(once, attempts=self.attempts, backoff=self.backoff)

    def list(self, prefix: str) -> List[ObjectInfo]:
        """Drain the paginator; callers always diff against a complete listing."""
        prefix_key = prefix.strip("/") + "/" if prefix.strip("/") else ""

        def drain() -> List[ObjectInfo]:
            out: List[ObjectInfo] = []
            paginator = self.client.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix_key):
                for obj in page.get("Contents", []):
                    k = obj["Key"]
                    if k.endswith("/"):
                        continue
                    out.append(ObjectInfo(key=k, size=int(obj.get("Size", 0))))
            return out

        return self._call(prefix_key, drain)

    def head(self, key: str) -> ObjectInfo:
        resp = self._call(key, self.client.head_object, Bucket=self.bucket, Key=key)
        meta = resp.get("Metadata", {}) or {}
        return ObjectInfo(key=key, size=int(resp.get("ContentLength", 0)), checksum=meta.get(CHECKSUM_KEY))

    def get(self, key: str) -> bytes:
        def fetch() -> bytes:
            resp = self.client.get_object(Bucket=self.bucket, Key=key)
            return resp["Body"].read()

        return self._call(key, fetch)

    def put(self, key: str, data: bytes, metadata: Optional[Dict[str, str]] = None) -> None:
        self._call(
            key,
            self.client.put_object,
            Bucket=self.bucket,
            Key=key,
            Body=data,
            Metadata=dict(metadata or {}),
        )

    def delete(self, key: str) -> None:
        try:
            self._call(key, self.client.delete_object, Bucket=self.bucket, Key=key)
        except NotFoundError:
            pass
