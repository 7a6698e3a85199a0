"""
Content store for test-case input/output text.

Keys follow ``testcases/{problem_id}/{test_case_id}/{file_name}``. Backends:

- ``LocalContentStore``: files under a data directory (default backend)
- ``S3ContentStore``: any S3-compatible bucket through boto3
- ``MemoryContentStore``: process-local dict, for development and tests

Backends raise ``ContentStoreError`` when the store itself fails. A key that
does not exist is not a failure: ``get_text`` returns ``None``, ``size``
returns 0 and ``delete`` returns ``False``.
"""
from functools import lru_cache
from pathlib import Path
from typing import Any, Dict, Optional, Protocol
import logging
import shutil

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from codearena.config import Settings, get_settings

logger = logging.getLogger("codearena.storage")

KEY_PREFIX = "testcases"
INPUT_FILE_NAME = "input.txt"
OUTPUT_FILE_NAME = "output.txt"
_MISSING_CODES = ("404", "NoSuchKey", "NotFound")


class ContentStoreError(Exception):
    """Raised when the backing store cannot complete an operation."""


class ContentStore(Protocol):
    def put_text(self, key: str, content: str) -> None: ...

    def get_text(self, key: str) -> Optional[str]: ...

    def size(self, key: str) -> int: ...

    def delete(self, key: str) -> bool: ...

    def delete_prefix(self, prefix: str) -> int: ...


def problem_prefix(problem_id: int) -> str:
    return f"{KEY_PREFIX}/{int(problem_id)}/"


def testcase_key(problem_id: int, test_case_id: int, file_name: str) -> str:
    name = Path(file_name or "").name
    if name not in (INPUT_FILE_NAME, OUTPUT_FILE_NAME):
        raise ValueError(f"unsupported test case file name: {file_name!r}")
    return f"{KEY_PREFIX}/{int(problem_id)}/{int(test_case_id)}/{name}"


class MemoryContentStore:
    def __init__(self):
        self._blobs: Dict[str, bytes] = {}

    def put_text(self, key: str, content: str) -> None:
        self._blobs[key] = content.encode("utf-8")

    def get_text(self, key: str) -> Optional[str]:
        data = self._blobs.get(key)
        return None if data is None else data.decode("utf-8")

    def size(self, key: str) -> int:
        return len(self._blobs.get(key, b""))

    def delete(self, key: str) -> bool:
        return self._blobs.pop(key, None) is not None

    def delete_prefix(self, prefix: str) -> int:
        doomed = [k for k in self._blobs if k.startswith(prefix)]
        for k in doomed:
            del self._blobs[k]
        return len(doomed)

    def keys(self, prefix: str = ""):
        return sorted(k for k in self._blobs if k.startswith(prefix))


class LocalContentStore:
    def __init__(self, root: Path):
        self.root = Path(root).resolve()

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if path != self.root and self.root not in path.parents:
            raise ContentStoreError(f"key escapes storage root: {key}")
        return path

    def put_text(self, key: str, content: str) -> None:
        path = self._path(key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_bytes(content.encode("utf-8"))
        except OSError as exc:
            raise ContentStoreError(f"write failed for {key}") from exc

    def get_text(self, key: str) -> Optional[str]:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except OSError as exc:
            raise ContentStoreError(f"read failed for {key}") from exc

    def size(self, key: str) -> int:
        path = self._path(key)
        try:
            return path.stat().st_size if path.is_file() else 0
        except OSError as exc:
            raise ContentStoreError(f"stat failed for {key}") from exc

    def delete(self, key: str) -> bool:
        path = self._path(key)
        if not path.exists():
            return False
        try:
            path.unlink()
        except OSError as exc:
            raise ContentStoreError(f"delete failed for {key}") from exc
        return True

    def delete_prefix(self, prefix: str) -> int:
        path = self._path(prefix.rstrip("/"))
        if not path.is_dir():
            return 0
        count = sum(1 for p in path.rglob("*") if p.is_file())
        try:
            shutil.rmtree(path)
        except OSError as exc:
            raise ContentStoreError(f"delete failed for {prefix}") from exc
        return count


class S3ContentStore:
    def __init__(self, bucket: str, client: Any):
        self.bucket = bucket
        self._s3 = client

    @staticmethod
    def _is_missing(exc: ClientError) -> bool:
        code = (exc.response.get("Error") or {}).get("Code")
        return code in _MISSING_CODES

    def put_text(self, key: str, content: str) -> None:
        try:
            self._s3.put_object(
                Bucket=self.bucket,
                Key=key,
                Body=content.encode("utf-8"),
                ContentType="text/plain; charset=utf-8",
            )
        except (ClientError, BotoCoreError) as exc:
            raise ContentStoreError(f"write failed for {key}") from exc

    def get_text(self, key: str) -> Optional[str]:
        try:
            resp = self._s3.get_object(Bucket=self.bucket, Key=key)
            return resp["Body"].read().decode("utf-8")
        except ClientError as exc:
            if self._is_missing(exc):
                return None
            raise ContentStoreError(f"read failed for {key}") from exc
        except BotoCoreError as exc:
            raise ContentStoreError(f"read failed for {key}") from exc

    def size(self, key: str) -> int:
        try:
            resp = self._s3.head_object(Bucket=self.bucket, Key=key)
            return int(resp.get("ContentLength") or 0)
        except ClientError as exc:
            if self._is_missing(exc):
                return 0
            raise ContentStoreError(f"head failed for {key}") from exc
        except BotoCoreError as exc:
            raise ContentStoreError(f"head failed for {key}") from exc

    def delete(self, key: str) -> bool:
        # S3 delete is idempotent and does not report whether the key existed.
        try:
            self._s3.delete_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            if self._is_missing(exc):
                return False
            raise ContentStoreError(f"delete failed for {key}") from exc
        except BotoCoreError as exc:
            raise ContentStoreError(f"delete failed for {key}") from exc
        return True

    def delete_prefix(self, prefix: str) -> int:
        deleted = 0
        try:
            paginator = self._s3.get_paginator("list_objects_v2")
            for page in paginator.paginate(Bucket=self.bucket, Prefix=prefix):
                objects = [{"Key": obj["Key"]} for obj in page.get("Contents", [])]
                if not objects:
                    continue
                self._s3.delete_objects(Bucket=self.bucket, Delete={"Objects": objects, "Quiet": True})
                deleted += len(objects)
        except (ClientError, BotoCoreError) as exc:
            raise ContentStoreError(f"delete failed for {prefix}") from exc
        return deleted


def build_content_store(settings: Settings) -> ContentStore:
    backend = settings.storage_backend
    if backend == "s3":
        client = boto3.client("s3", endpoint_url=settings.s3_endpoint_url or None)
        logger.info("content store: s3 bucket=%s", settings.storage_bucket)
        return S3ContentStore(settings.storage_bucket, client)
    if backend == "memory":
        logger.info("content store: memory")
        return MemoryContentStore()
    if backend == "local":
        logger.info("content store: local root=%s", settings.data_dir)
        return LocalContentStore(settings.data_dir)
    raise ValueError(f"unknown storage backend: {backend}")


@lru_cache
def get_content_store() -> ContentStore:
    return build_content_store(get_settings())
