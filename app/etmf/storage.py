from __future__ import annotations

import logging
import os
import time
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from werkzeug.utils import secure_filename

from app.etmf.errors import StorageUnavailable, Timeout

logger = logging.getLogger(__name__)


class Storage:
    """
    Blob storage collaborator. Callers only need `store`; the lower-level
    key API is shared by the backends.
    """

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        raise NotImplementedError

    def open(self, key: str) -> BinaryIO:
        raise NotImplementedError

    def exists(self, key: str) -> bool:
        raise NotImplementedError

    def url_for(self, key: str) -> str:
        raise NotImplementedError

    def store(self, data: bytes, filename: str, content_type: str | None = None) -> tuple[str, str]:
        """
        Persist `data` under a unique key derived from `filename`.
        Returns (url, storage_key). Raises StorageUnavailable / Timeout.
        """
        key = build_storage_key(filename)
        self.put_bytes(key, data, content_type=content_type)
        url = self.url_for(key)
        logger.info("Stored blob key=%s size=%s", key, len(data))
        return url, key


def build_storage_key(filename: str) -> str:
    safe = secure_filename(filename or "") or "document.bin"
    # Millisecond prefix keeps keys roughly time-ordered; the uuid keeps them unique.
    return f"documents/{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}-{safe}"


@dataclass(frozen=True)
class LocalStorage(Storage):
    root: Path
    public_base_url: str = ""

    def _path(self, key: str) -> Path:
        safe_key = key.lstrip("/").replace("\\", "/")
        return self.root / safe_key

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        p = self._path(key)
        try:
            p.parent.mkdir(parents=True, exist_ok=True)
            p.write_bytes(data)
        except OSError as e:
            logger.error("Local storage write failed key=%s: %s", key, e)
            raise StorageUnavailable(f"Could not write blob {key!r}.") from e

    def open(self, key: str) -> BinaryIO:
        p = self._path(key)
        try:
            return p.open("rb")
        except OSError as e:
            raise StorageUnavailable(f"Could not read blob {key!r}.") from e

    def exists(self, key: str) -> bool:
        return self._path(key).exists()

    def url_for(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url.rstrip('/')}/{key}"
        return self._path(key).resolve().as_uri()


@dataclass(frozen=True)
class S3Storage(Storage):
    endpoint: str
    region: str
    bucket: str
    access_key_id: str
    secret_access_key: str
    timeout_seconds: float = 30.0
    public_base_url: str = ""

    def _client(self):
        import boto3
        from botocore.config import Config

        return boto3.client(
            "s3",
            endpoint_url=f"https://{self.endpoint}" if self.endpoint else None,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
            config=Config(
                connect_timeout=self.timeout_seconds,
                read_timeout=self.timeout_seconds,
                retries={"max_attempts": 2},
            ),
        )

    def _call(self, op: str, key: str, fn):
        from botocore.exceptions import BotoCoreError, ClientError, ConnectTimeoutError, ReadTimeoutError

        try:
            return fn()
        except (ConnectTimeoutError, ReadTimeoutError) as e:
            logger.error("S3 %s timed out key=%s: %s", op, key, e)
            raise Timeout(f"Blob storage timed out during {op}.") from e
        except (BotoCoreError, ClientError) as e:
            logger.error("S3 %s failed key=%s: %s", op, key, e)
            raise StorageUnavailable(f"Blob storage {op} failed.") from e

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        extra: dict[str, object] = {}
        if content_type:
            extra["ContentType"] = content_type
        self._call(
            "upload",
            key,
            lambda: self._client().put_object(Bucket=self.bucket, Key=key, Body=data, **extra),
        )

    def open(self, key: str) -> BinaryIO:
        obj = self._call("download", key, lambda: self._client().get_object(Bucket=self.bucket, Key=key))
        return obj["Body"]  # type: ignore[return-value]

    def exists(self, key: str) -> bool:
        from botocore.exceptions import ClientError

        try:
            self._client().head_object(Bucket=self.bucket, Key=key)
            return True
        except ClientError:
            return False

    def url_for(self, key: str) -> str:
        if self.public_base_url:
            return f"{self.public_base_url.rstrip('/')}/{key}"
        if self.endpoint:
            return f"https://{self.bucket}.{self.endpoint}/{key}"
        return f"https://{self.bucket}.s3.amazonaws.com/{key}"


def storage_from_config(config: dict) -> Storage:
    backend = (config.get("STORAGE_BACKEND") or "local").strip().lower()
    public_base_url = (config.get("STORAGE_PUBLIC_BASE_URL") or "").strip()
    if backend == "s3":
        return S3Storage(
            endpoint=(config.get("S3_ENDPOINT") or "").strip(),
            region=(config.get("S3_REGION") or "nyc3").strip(),
            bucket=(config.get("S3_BUCKET") or "").strip(),
            access_key_id=(config.get("S3_ACCESS_KEY_ID") or "").strip(),
            secret_access_key=(config.get("S3_SECRET_ACCESS_KEY") or "").strip(),
            timeout_seconds=float(config.get("STORAGE_TIMEOUT_SECONDS") or 30.0),
            public_base_url=public_base_url,
        )
    # default local
    root_cfg = (config.get("STORAGE_ROOT") or "").strip()
    root = Path(root_cfg) if root_cfg else Path(os.getcwd()) / "storage"
    return LocalStorage(root=root, public_base_url=public_base_url)
