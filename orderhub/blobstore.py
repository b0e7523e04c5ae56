import os
import shutil
import tempfile
import uuid
from collections.abc import Iterator
from contextlib import contextmanager
from pathlib import Path
from typing import BinaryIO

from botocore.exceptions import ClientError

from orderhub.config import settings
from orderhub.errors import StorageError

_NOT_FOUND_CODES = {"404", "NoSuchKey", "NotFound"}


class BlobStore:
    """Key-addressed byte storage with directory semantics.

    Keys are ``/``-separated relative paths. A "directory" is a key prefix;
    deleting one removes every object beneath it. Missing objects raise
    ``FileNotFoundError``; other backend failures raise ``OSError`` or
    ``StorageError``.
    """

    def make_directory(self, key: str) -> None:
        raise NotImplementedError

    def list_directories(self, key: str) -> list[str]:
        raise NotImplementedError

    def delete_directory(self, key: str) -> None:
        raise NotImplementedError

    def put(self, key: str, data: bytes) -> None:
        raise NotImplementedError

    def get(self, key: str) -> bytes:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def size(self, key: str) -> int:
        raise NotImplementedError

    def delete(self, key: str) -> None:
        raise NotImplementedError

    def open_read(self, key: str) -> BinaryIO:
        raise NotImplementedError

    def writer(self, key: str):
        """Context manager yielding a writable stream for ``key``.

        The object only becomes visible at ``key`` when the block exits
        normally; on an exception the partial output is discarded.
        """
        raise NotImplementedError


class LocalBlobStore(BlobStore):
    def __init__(self, root: str) -> None:
        self.root = Path(root).resolve()
        self.root.mkdir(parents=True, exist_ok=True)

    def _full_path(self, key: str) -> Path:
        full_path = (self.root / key).resolve()
        if full_path != self.root and self.root not in full_path.parents:
            raise StorageError(f"key escapes storage root: {key}")
        return full_path

    def make_directory(self, key: str) -> None:
        self._full_path(key).mkdir(parents=True, exist_ok=True)

    def list_directories(self, key: str) -> list[str]:
        base = self._full_path(key)
        if not base.is_dir():
            return []
        return sorted(path.name for path in base.iterdir() if path.is_dir())

    def delete_directory(self, key: str) -> None:
        target = self._full_path(key)
        if target.exists():
            shutil.rmtree(target)

    def put(self, key: str, data: bytes) -> None:
        full_path = self._full_path(key)
        full_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = full_path.with_name(f".{full_path.name}.{uuid.uuid4().hex}.tmp")
        try:
            tmp_path.write_bytes(data)
            os.replace(tmp_path, full_path)
        except BaseException:
            tmp_path.unlink(missing_ok=True)
            raise

    def get(self, key: str) -> bytes:
        return self._full_path(key).read_bytes()

    def exists(self, key: str) -> bool:
        return self._full_path(key).is_file()

    def size(self, key: str) -> int:
        return self._full_path(key).stat().st_size

    def delete(self, key: str) -> None:
        self._full_path(key).unlink(missing_ok=True)

    def open_read(self, key: str) -> BinaryIO:
        return self._full_path(key).open("rb")

    @contextmanager
    def writer(self, key: str) -> Iterator[BinaryIO]:
        full_path = self._full_path(key)
        full_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = full_path.with_name(f".{full_path.name}.{uuid.uuid4().hex}.part")
        handle = tmp_path.open("xb")
        try:
            yield handle
            handle.close()
            os.replace(tmp_path, full_path)
        finally:
            handle.close()
            tmp_path.unlink(missing_ok=True)


class S3BlobStore(BlobStore):
    def __init__(
        self,
        bucket: str,
        region: str,
        endpoint_url: str | None = None,
        access_key_id: str | None = None,
        secret_access_key: str | None = None,
        spool_max_bytes: int = 8 * 1024 * 1024,
    ) -> None:
        if not bucket:
            raise ValueError("bucket must be set for s3-compatible backends")
        import boto3

        self.bucket = bucket
        self.spool_max_bytes = spool_max_bytes
        client_kwargs = {"region_name": region}
        if endpoint_url:
            client_kwargs["endpoint_url"] = endpoint_url
        if access_key_id and secret_access_key:
            client_kwargs["aws_access_key_id"] = access_key_id
            client_kwargs["aws_secret_access_key"] = secret_access_key
        self.client = boto3.client("s3", **client_kwargs)

    @staticmethod
    def _prefix(key: str) -> str:
        return key.rstrip("/") + "/"

    def _translate(self, exc: ClientError, key: str) -> Exception:
        code = str(exc.response.get("Error", {}).get("Code", ""))
        if code in _NOT_FOUND_CODES:
            return FileNotFoundError(key)
        return StorageError(f"s3 request failed for {key}: {code or exc}")

    def _list_keys(self, prefix: str) -> list[str]:
        keys: list[str] = []
        continuation_token = None
        while True:
            params = {"Bucket": self.bucket, "Prefix": prefix}
            if continuation_token:
                params["ContinuationToken"] = continuation_token
            response = self.client.list_objects_v2(**params)
            for item in response.get("Contents", []):
                key = item.get("Key")
                if key:
                    keys.append(key)
            if not response.get("IsTruncated"):
                break
            continuation_token = response.get("NextContinuationToken")
        return keys

    def make_directory(self, key: str) -> None:
        # Prefixes exist implicitly once an object is written under them.
        return None

    def list_directories(self, key: str) -> list[str]:
        prefix = self._prefix(key)
        names: list[str] = []
        continuation_token = None
        while True:
            params = {"Bucket": self.bucket, "Prefix": prefix, "Delimiter": "/"}
            if continuation_token:
                params["ContinuationToken"] = continuation_token
            try:
                response = self.client.list_objects_v2(**params)
            except ClientError as exc:
                raise self._translate(exc, prefix) from exc
            for item in response.get("CommonPrefixes", []):
                sub = item.get("Prefix", "")
                name = sub[len(prefix) :].strip("/")
                if name:
                    names.append(name)
            if not response.get("IsTruncated"):
                break
            continuation_token = response.get("NextContinuationToken")
        return sorted(names)

    def delete_directory(self, key: str) -> None:
        prefix = self._prefix(key)
        try:
            keys = self._list_keys(prefix)
            for start in range(0, len(keys), 1000):
                batch = keys[start : start + 1000]
                response = self.client.delete_objects(
                    Bucket=self.bucket,
                    Delete={"Objects": [{"Key": item} for item in batch], "Quiet": True},
                )
                failed = response.get("Errors") or []
                if failed:
                    first = failed[0]
                    raise StorageError(
                        f"failed to delete {len(failed)} objects under {prefix}: "
                        f"{first.get('Key')} ({first.get('Code')})"
                    )
        except ClientError as exc:
            raise self._translate(exc, prefix) from exc

    def put(self, key: str, data: bytes) -> None:
        try:
            self.client.put_object(Bucket=self.bucket, Key=key, Body=data)
        except ClientError as exc:
            raise self._translate(exc, key) from exc

    def get(self, key: str) -> bytes:
        try:
            obj = self.client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            raise self._translate(exc, key) from exc
        return obj["Body"].read()

    def exists(self, key: str) -> bool:
        try:
            self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            translated = self._translate(exc, key)
            if isinstance(translated, FileNotFoundError):
                return False
            raise translated from exc
        return True

    def size(self, key: str) -> int:
        try:
            head = self.client.head_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            raise self._translate(exc, key) from exc
        return int(head["ContentLength"])

    def delete(self, key: str) -> None:
        try:
            self.client.delete_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            translated = self._translate(exc, key)
            if isinstance(translated, FileNotFoundError):
                return
            raise translated from exc

    def open_read(self, key: str) -> BinaryIO:
        try:
            obj = self.client.get_object(Bucket=self.bucket, Key=key)
        except ClientError as exc:
            raise self._translate(exc, key) from exc
        return obj["Body"]

    @contextmanager
    def writer(self, key: str) -> Iterator[BinaryIO]:
        with tempfile.SpooledTemporaryFile(max_size=self.spool_max_bytes) as spool:
            yield spool
            spool.seek(0)
            try:
                self.client.upload_fileobj(spool, self.bucket, key)
            except ClientError as exc:
                raise self._translate(exc, key) from exc


def build_blob_store() -> BlobStore:
    backend = settings.storage_backend.lower()
    if backend == "local":
        return LocalBlobStore(settings.storage_root)
    if backend == "s3":
        return S3BlobStore(settings.s3_bucket, settings.aws_region)
    if backend == "r2":
        if not settings.r2_bucket:
            raise ValueError("r2_bucket must be set when storage_backend=r2")
        endpoint_url = settings.r2_endpoint_url
        if not endpoint_url:
            if not settings.r2_account_id:
                raise ValueError("set r2_endpoint_url or r2_account_id when storage_backend=r2")
            endpoint_url = f"https://{settings.r2_account_id}.r2.cloudflarestorage.com"

        return S3BlobStore(
            bucket=settings.r2_bucket,
            region="auto",
            endpoint_url=endpoint_url,
            access_key_id=settings.r2_access_key_id or None,
            secret_access_key=settings.r2_secret_access_key or None,
        )
    raise ValueError(f"unsupported storage backend: {settings.storage_backend}")
