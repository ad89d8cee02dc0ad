from __future__ import annotations

import asyncio
import logging
import uuid
from pathlib import Path
from typing import Any, Protocol

import boto3

logger = logging.getLogger("exportflow.blob_store")


class BlobStore(Protocol):
    async def list_objects(self, location: str) -> list[str]: ...

    async def read_bytes(self, location: str) -> bytes: ...

    async def write_bytes(self, key: str, content: bytes, *, content_type: str = ...) -> str: ...


def parse_s3_uri(uri: str) -> tuple[str, str]:
    if not uri.startswith("s3://"):
        raise ValueError(f"Invalid s3 uri: {uri}")
    no_scheme = uri[len("s3://") :]
    parts = no_scheme.split("/", 1)
    bucket = parts[0]
    key = parts[1] if len(parts) > 1 else ""
    return bucket, key.lstrip("/")


class LocalBlobStore:
    """Filesystem store rooted at ``root``; locations are ``file://`` URIs or root-relative keys."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root).resolve()

    def _resolve(self, location: str) -> Path:
        if location.startswith("file://"):
            path = Path(location[len("file://") :]).resolve()
        else:
            path = (self.root / location.lstrip("/")).resolve()
        return path

    def _list_sync(self, location: str) -> list[str]:
        base = self._resolve(location)
        if base.is_file():
            return [base.as_uri()]
        if not base.is_dir():
            return []
        return sorted(p.as_uri() for p in base.rglob("*") if p.is_file())

    async def list_objects(self, location: str) -> list[str]:
        return await asyncio.to_thread(self._list_sync, location)

    async def read_bytes(self, location: str) -> bytes:
        return await asyncio.to_thread(self._resolve(location).read_bytes)

    def _write_sync(self, key: str, content: bytes) -> str:
        target_path = self._resolve(key)
        if not target_path.is_relative_to(self.root):
            raise ValueError("Invalid destination path")
        target_path.parent.mkdir(parents=True, exist_ok=True)

        # Unique per write; concurrent owners of one key must not share a temp file.
        tmp_path = target_path.with_name(f"{target_path.name}.{uuid.uuid4().hex}.tmp")
        tmp_path.write_bytes(content)
        tmp_path.replace(target_path)
        return target_path.as_uri()

    async def write_bytes(
        self, key: str, content: bytes, *, content_type: str = "application/x-ndjson"
    ) -> str:
        return await asyncio.to_thread(self._write_sync, key, content)


class S3BlobStore:
    """S3 store; locations are ``s3://bucket/key`` URIs or keys within ``bucket``."""

    def __init__(
        self,
        bucket: str,
        *,
        region_name: str | None = None,
        client: Any | None = None,
    ) -> None:
        if not bucket:
            raise ValueError("bucket is required")
        self.bucket = bucket
        self._client = client or boto3.client("s3", region_name=region_name)

    def _split(self, location: str) -> tuple[str, str]:
        if location.startswith("s3://"):
            return parse_s3_uri(location)
        return self.bucket, location.lstrip("/")

    def _list_sync(self, location: str) -> list[str]:
        bucket, prefix = self._split(location)
        if prefix and not prefix.endswith("/"):
            prefix = prefix + "/"
        paginator = self._client.get_paginator("list_objects_v2")
        out: list[str] = []
        for page in paginator.paginate(Bucket=bucket, Prefix=prefix):
            for obj in page.get("Contents", []) or []:
                out.append(f"s3://{bucket}/{obj['Key']}")
        return sorted(out)

    async def list_objects(self, location: str) -> list[str]:
        return await asyncio.to_thread(self._list_sync, location)

    def _read_sync(self, location: str) -> bytes:
        bucket, key = self._split(location)
        resp = self._client.get_object(Bucket=bucket, Key=key)
        return resp["Body"].read()

    async def read_bytes(self, location: str) -> bytes:
        return await asyncio.to_thread(self._read_sync, location)

    def _write_sync(self, key: str, content: bytes, content_type: str) -> str:
        bucket, object_key = self._split(key)
        self._client.put_object(
            Bucket=bucket,
            Key=object_key,
            Body=content,
            ContentType=content_type,
        )
        return f"s3://{bucket}/{object_key}"

    async def write_bytes(
        self, key: str, content: bytes, *, content_type: str = "application/x-ndjson"
    ) -> str:
        uri = await asyncio.to_thread(self._write_sync, key, content, content_type)
        logger.debug("s3_object_written", extra={"uri": uri, "size_bytes": len(content)})
        return uri
