# storage.py - Object storage for attachment files
# Local filesystem for development, S3 (or MinIO via S3_ENDPOINT) in production.
# Attachment rows keep the object key; URLs are derived on read.

import os
import asyncio
import logging
from functools import lru_cache
from typing import Optional
from urllib.parse import urlparse

logger = logging.getLogger("board-service.storage")

STORAGE_BACKEND = os.getenv("STORAGE_BACKEND", "local").lower()
FILE_STORAGE_ROOT = os.getenv("FILE_STORAGE_ROOT", "/data/board-files")
FILE_PUBLIC_URL = os.getenv("FILE_PUBLIC_URL", "/files")

S3_BUCKET = os.getenv("S3_BUCKET", "board-attachments")
S3_REGION = os.getenv("S3_REGION", "ap-northeast-2")
S3_ENDPOINT = os.getenv("S3_ENDPOINT", "")
S3_PUBLIC_ENDPOINT = os.getenv("S3_PUBLIC_ENDPOINT", "")
S3_ACCESS_KEY = os.getenv("S3_ACCESS_KEY", "")
S3_SECRET_KEY = os.getenv("S3_SECRET_KEY", "")


class ObjectStore:
    """Minimal object store interface used by attachment cleanup"""

    async def delete_file(self, key: str) -> None:
        raise NotImplementedError

    def get_file_url(self, key: str) -> str:
        raise NotImplementedError

    def extract_key(self, file_url: str) -> str:
        """Return the object key for a stored key or a full URL, '' if none can be derived"""
        if not file_url:
            return ""
        if "://" not in file_url:
            return file_url.lstrip("/")
        return urlparse(file_url).path.lstrip("/")


class LocalObjectStore(ObjectStore):

    def __init__(self, root: str = FILE_STORAGE_ROOT, public_url: str = FILE_PUBLIC_URL):
        self.root = os.path.abspath(root)
        self.public_url = public_url.rstrip("/")

    def _path_for(self, key: str) -> str:
        path = os.path.abspath(os.path.join(self.root, key))
        if not path.startswith(self.root + os.sep):
            raise ValueError(f"Key escapes storage root: {key}")
        return path

    def extract_key(self, file_url: str) -> str:
        key = super().extract_key(file_url)
        prefix = self.public_url.lstrip("/")
        if prefix and key.startswith(prefix + "/"):
            key = key[len(prefix) + 1:]
        return key

    async def delete_file(self, key: str) -> None:
        path = self._path_for(key)
        if not os.path.exists(path):
            logger.debug(f"Local object already gone: {key}")
            return
        await asyncio.to_thread(os.remove, path)

    def get_file_url(self, key: str) -> str:
        return f"{self.public_url}/{key}"


class S3ObjectStore(ObjectStore):

    def __init__(
        self,
        bucket: str = S3_BUCKET,
        region: str = S3_REGION,
        endpoint: str = S3_ENDPOINT,
        public_endpoint: str = S3_PUBLIC_ENDPOINT,
        access_key: str = S3_ACCESS_KEY,
        secret_key: str = S3_SECRET_KEY,
        client=None,
    ):
        self.bucket = bucket
        self.region = region
        self.public_endpoint = (public_endpoint or endpoint).rstrip("/")
        if client is None:
            import boto3

            client = boto3.client(
                "s3",
                region_name=region,
                endpoint_url=endpoint or None,
                aws_access_key_id=access_key or None,
                aws_secret_access_key=secret_key or None,
            )
        self._client = client

    def extract_key(self, file_url: str) -> str:
        key = super().extract_key(file_url)
        # path-style URLs carry the bucket as the first segment
        if key.startswith(self.bucket + "/"):
            key = key[len(self.bucket) + 1:]
        return key

    async def delete_file(self, key: str) -> None:
        await asyncio.to_thread(self._client.delete_object, Bucket=self.bucket, Key=key)

    def get_file_url(self, key: str) -> str:
        if self.public_endpoint:
            return f"{self.public_endpoint}/{self.bucket}/{key}"
        return f"https://{self.bucket}.s3.{self.region}.amazonaws.com/{key}"


@lru_cache(maxsize=1)
def get_object_store(backend: Optional[str] = None) -> ObjectStore:
    backend = (backend or STORAGE_BACKEND).lower()
    if backend == "s3":
        logger.info(f"Using S3 object store (bucket={S3_BUCKET})")
        return S3ObjectStore()
    logger.info(f"Using local object store at {FILE_STORAGE_ROOT}")
    return LocalObjectStore()
