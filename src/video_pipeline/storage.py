"""Object storage for original uploads, renditions and thumbnails.

Objects are addressed by (bucket, key). Two implementations:
- LocalObjectStorage: a directory per bucket under a root path
- S3ObjectStorage: boto3 S3 client, pointed at MinIO via endpoint_url
"""

import logging
import shutil
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Optional

import boto3
from botocore.exceptions import BotoCoreError, ClientError

from .errors import ObjectNotFound, StorageError

logger = logging.getLogger(__name__)


def original_key(video_id: str, extension: str) -> str:
    """Key of an uploaded source file in the videos bucket."""
    return f"videos/original/{video_id}{extension}"


def processed_key(video_id: str, quality: str) -> str:
    """Key of a transcoded rendition in the videos bucket."""
    return f"videos/processed/{video_id}_{quality}.mp4"


def thumbnail_key(video_id: str) -> str:
    """Key of a video thumbnail in the thumbnails bucket."""
    return f"{video_id}_thumb.jpg"


class ObjectStorage(ABC):
    """Abstract object store used by the upload service and executors."""

    @abstractmethod
    def download(self, bucket: str, key: str, dest: Path) -> Path:
        """
        Copy an object to a local file.

        Raises:
            ObjectNotFound: The object does not exist
            StorageError: Any other storage failure
        """
        pass

    @abstractmethod
    def upload(self, bucket: str, key: str, src: Path, content_type: str) -> int:
        """
        Store a local file as an object.

        Returns:
            Size of the stored object in bytes
        """
        pass

    @abstractmethod
    def stat(self, bucket: str, key: str) -> int:
        """Size in bytes of an existing object."""
        pass

    @abstractmethod
    def delete(self, bucket: str, key: str) -> None:
        pass

    def ensure_bucket(self, bucket: str) -> None:
        """Create ``bucket`` if the backend needs buckets to exist."""
        pass


class LocalObjectStorage(ObjectStorage):
    """Buckets as directories under ``root``."""

    def __init__(self, root: Path):
        self.root = Path(root)

    def _path(self, bucket: str, key: str) -> Path:
        path = (self.root / bucket / key).resolve()
        bucket_root = (self.root / bucket).resolve()
        if bucket_root not in path.parents:
            raise StorageError(bucket, key, "key escapes bucket")
        return path

    def ensure_bucket(self, bucket: str) -> None:
        (self.root / bucket).mkdir(parents=True, exist_ok=True)

    def download(self, bucket: str, key: str, dest: Path) -> Path:
        src = self._path(bucket, key)
        if not src.is_file():
            raise ObjectNotFound(bucket, key)
        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        try:
            shutil.copyfile(src, dest)
        except OSError as e:
            raise StorageError(bucket, key, str(e)) from e
        return dest

    def upload(self, bucket: str, key: str, src: Path, content_type: str) -> int:
        dest = self._path(bucket, key)
        try:
            dest.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(src, dest)
        except OSError as e:
            raise StorageError(bucket, key, str(e)) from e
        return dest.stat().st_size

    def stat(self, bucket: str, key: str) -> int:
        path = self._path(bucket, key)
        if not path.is_file():
            raise ObjectNotFound(bucket, key)
        return path.stat().st_size

    def delete(self, bucket: str, key: str) -> None:
        path = self._path(bucket, key)
        if not path.is_file():
            raise ObjectNotFound(bucket, key)
        path.unlink()


class S3ObjectStorage(ObjectStorage):
    """S3-compatible storage (AWS or MinIO) through boto3."""

    def __init__(self, client):
        self.client = client

    @classmethod
    def from_settings(
        cls,
        endpoint_url: Optional[str],
        access_key: Optional[str],
        secret_key: Optional[str],
        region: str = "us-east-1",
    ) -> "S3ObjectStorage":
        client = boto3.client(
            "s3",
            endpoint_url=endpoint_url,
            aws_access_key_id=access_key,
            aws_secret_access_key=secret_key,
            region_name=region,
        )
        return cls(client)

    @staticmethod
    def _is_missing(error: ClientError) -> bool:
        code = str(error.response.get("Error", {}).get("Code", ""))
        return code in ("404", "NoSuchKey", "NotFound")

    def ensure_bucket(self, bucket: str) -> None:
        try:
            self.client.head_bucket(Bucket=bucket)
            return
        except ClientError as e:
            if not self._is_missing(e) and "NoSuchBucket" not in str(e):
                raise StorageError(bucket, "", str(e)) from e
        except BotoCoreError as e:
            raise StorageError(bucket, "", str(e)) from e

        try:
            self.client.create_bucket(Bucket=bucket)
            logger.info("Created bucket %s", bucket)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(bucket, "", str(e)) from e

    def download(self, bucket: str, key: str, dest: Path) -> Path:
        dest = Path(dest)
        dest.parent.mkdir(parents=True, exist_ok=True)
        try:
            self.client.download_file(Bucket=bucket, Key=key, Filename=str(dest))
        except ClientError as e:
            if self._is_missing(e):
                raise ObjectNotFound(bucket, key) from e
            raise StorageError(bucket, key, str(e)) from e
        except BotoCoreError as e:
            raise StorageError(bucket, key, str(e)) from e
        return dest

    def upload(self, bucket: str, key: str, src: Path, content_type: str) -> int:
        try:
            self.client.upload_file(
                Filename=str(src),
                Bucket=bucket,
                Key=key,
                ExtraArgs={"ContentType": content_type},
            )
        except (ClientError, BotoCoreError) as e:
            raise StorageError(bucket, key, str(e)) from e
        return Path(src).stat().st_size

    def stat(self, bucket: str, key: str) -> int:
        try:
            response = self.client.head_object(Bucket=bucket, Key=key)
        except ClientError as e:
            if self._is_missing(e):
                raise ObjectNotFound(bucket, key) from e
            raise StorageError(bucket, key, str(e)) from e
        except BotoCoreError as e:
            raise StorageError(bucket, key, str(e)) from e
        return int(response.get("ContentLength", 0))

    def delete(self, bucket: str, key: str) -> None:
        try:
            self.client.delete_object(Bucket=bucket, Key=key)
        except (ClientError, BotoCoreError) as e:
            raise StorageError(bucket, key, str(e)) from e
