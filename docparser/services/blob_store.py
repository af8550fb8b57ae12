# docparser/services/blob_store.py
from __future__ import annotations

import io
import os
import uuid
from typing import Optional, Protocol, Tuple

import boto3
from botocore.client import BaseClient
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError
from starlette.concurrency import run_in_threadpool

from docparser.config import StorageSettings
from docparser.shared.errors import NotFoundError, StorageError


class BlobStore(Protocol):
    async def save(self, content: bytes, filename: str, content_type: Optional[str] = None) -> str: ...

    async def read(self, path: str) -> bytes: ...

    async def delete(self, path: str) -> None: ...


def _gen_name(prefix: str, filename: Optional[str]) -> str:
    ext = os.path.splitext(filename or "")[1].lower()
    return f"{prefix}{uuid.uuid4().hex}{ext}"


class LocalBlobStore:
    """Blobs on local disk under `root`; paths returned are relative to it."""

    def __init__(self, root: str):
        self.root = os.path.abspath(root)

    def _abs(self, path: str) -> str:
        full = os.path.abspath(os.path.join(self.root, path))
        if not full.startswith(self.root + os.sep):
            raise StorageError("blob path escapes storage root")
        return full

    async def save(self, content: bytes, filename: str, content_type: Optional[str] = None) -> str:
        name = _gen_name("", filename)

        def _write() -> None:
            os.makedirs(self.root, exist_ok=True)
            with open(self._abs(name), "wb") as f:
                f.write(content)

        try:
            await run_in_threadpool(_write)
        except OSError as e:
            raise StorageError(f"could not save blob: {e}") from e
        return name

    async def read(self, path: str) -> bytes:
        full = self._abs(path)

        def _read() -> bytes:
            with open(full, "rb") as f:
                return f.read()

        try:
            return await run_in_threadpool(_read)
        except FileNotFoundError as e:
            raise NotFoundError(f"blob {path} not found") from e
        except OSError as e:
            raise StorageError(f"could not read blob: {e}") from e

    async def delete(self, path: str) -> None:
        full = self._abs(path)
        try:
            await run_in_threadpool(os.remove, full)
        except FileNotFoundError:
            return
        except OSError as e:
            raise StorageError(f"could not delete blob: {e}") from e


class S3BlobStore:
    def __init__(self, client: BaseClient, bucket: str, prefix: str = ""):
        self.client = client
        self.bucket = bucket
        self.prefix = prefix.rstrip("/") + ("/" if prefix and not prefix.endswith("/") else "")

    @staticmethod
    def _extract_key_and_bucket(key_or_url: str) -> Tuple[str, Optional[str]]:
        """
        Accepts:
          - 'docparser/uploads/abc.pdf'               -> ('docparser/uploads/abc.pdf', None)
          - 's3://bucket/docparser/uploads/abc.pdf'   -> ('docparser/uploads/abc.pdf', 'bucket')
        """
        if key_or_url.startswith("s3://"):
            rest = key_or_url[len("s3://"):]
            parts = rest.split("/", 1)
            if len(parts) == 1:
                return "", parts[0] or None
            return parts[1].lstrip("/"), parts[0] or None
        return key_or_url.lstrip("/"), None

    async def save(self, content: bytes, filename: str, content_type: Optional[str] = None) -> str:
        key = _gen_name(self.prefix, filename)
        try:
            await run_in_threadpool(
                self.client.upload_fileobj,
                Fileobj=io.BytesIO(content),
                Bucket=self.bucket,
                Key=key,
                ExtraArgs={"ContentType": content_type or "application/octet-stream", "ACL": "private"},
            )
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"s3 upload failed: {e}") from e
        return f"s3://{self.bucket}/{key}"

    async def read(self, path: str) -> bytes:
        key, bucket = self._extract_key_and_bucket(path)

        def _get() -> bytes:
            obj = self.client.get_object(Bucket=bucket or self.bucket, Key=key)
            return obj["Body"].read()

        try:
            return await run_in_threadpool(_get)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in ("NoSuchKey", "404"):
                raise NotFoundError(f"blob {path} not found") from e
            raise StorageError(f"s3 read failed: {e}") from e
        except BotoCoreError as e:
            raise StorageError(f"s3 read failed: {e}") from e

    async def delete(self, path: str) -> None:
        key, bucket = self._extract_key_and_bucket(path)
        try:
            await run_in_threadpool(self.client.delete_object, Bucket=bucket or self.bucket, Key=key)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"s3 delete failed: {e}") from e


# Factory
def build_blob_store(conf: StorageSettings) -> BlobStore:
    if conf.backend == "s3":
        if not conf.s3_bucket:
            raise ValueError("storage.s3_bucket is required for the s3 backend")
        client = boto3.client(
            "s3",
            region_name=conf.region,
            config=Config(s3={"addressing_style": "virtual"}),
        )
        return S3BlobStore(client=client, bucket=conf.s3_bucket, prefix=conf.s3_prefix)
    return LocalBlobStore(conf.local_dir)
