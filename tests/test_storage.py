"""Tests for object storage backends."""

from unittest.mock import MagicMock

import pytest
from botocore.exceptions import ClientError, EndpointConnectionError

from video_pipeline.errors import ObjectNotFound, StorageError
from video_pipeline.storage import (
    LocalObjectStorage,
    S3ObjectStorage,
    original_key,
    processed_key,
    thumbnail_key,
)


def test_object_keys():
    assert original_key("abc", ".mov") == "videos/original/abc.mov"
    assert processed_key("abc", "720p") == "videos/processed/abc_720p.mp4"
    assert thumbnail_key("abc") == "abc_thumb.jpg"


class TestLocalObjectStorage:

    def test_upload_download_roundtrip(self, storage, tmp_path):
        src = tmp_path / "in.bin"
        src.write_bytes(b"payload")

        size = storage.upload("videos", "videos/original/x.mp4", src, "video/mp4")
        assert size == 7
        assert storage.stat("videos", "videos/original/x.mp4") == 7

        dest = storage.download("videos", "videos/original/x.mp4", tmp_path / "out" / "x.mp4")
        assert dest.read_bytes() == b"payload"

    def test_missing_object(self, storage, tmp_path):
        with pytest.raises(ObjectNotFound):
            storage.download("videos", "nope", tmp_path / "x")
        with pytest.raises(ObjectNotFound):
            storage.stat("videos", "nope")

    def test_delete(self, storage, tmp_path):
        src = tmp_path / "in.bin"
        src.write_bytes(b"x")
        storage.upload("thumbnails", "t.jpg", src, "image/jpeg")
        storage.delete("thumbnails", "t.jpg")
        with pytest.raises(ObjectNotFound):
            storage.stat("thumbnails", "t.jpg")

    def test_key_cannot_escape_bucket(self, storage, tmp_path):
        src = tmp_path / "in.bin"
        src.write_bytes(b"x")
        with pytest.raises(StorageError):
            storage.upload("videos", "../thumbnails/evil.jpg", src, "image/jpeg")

    def test_ensure_bucket(self, storage):
        storage.ensure_bucket("videos")
        assert (storage.root / "videos").is_dir()


def _client_error(code, op):
    return ClientError({"Error": {"Code": code, "Message": code}}, op)


class TestS3ObjectStorage:

    def test_upload_sets_content_type(self, tmp_path):
        client = MagicMock()
        src = tmp_path / "thumb.jpg"
        src.write_bytes(b"jpeg")

        size = S3ObjectStorage(client).upload("thumbnails", "a_thumb.jpg", src, "image/jpeg")

        assert size == 4
        client.upload_file.assert_called_once_with(
            Filename=str(src),
            Bucket="thumbnails",
            Key="a_thumb.jpg",
            ExtraArgs={"ContentType": "image/jpeg"},
        )

    def test_download_missing(self, tmp_path):
        client = MagicMock()
        client.download_file.side_effect = _client_error("404", "HeadObject")
        with pytest.raises(ObjectNotFound):
            S3ObjectStorage(client).download("videos", "k", tmp_path / "k")

    def test_download_other_error(self, tmp_path):
        client = MagicMock()
        client.download_file.side_effect = _client_error("AccessDenied", "GetObject")
        with pytest.raises(StorageError) as exc_info:
            S3ObjectStorage(client).download("videos", "k", tmp_path / "k")
        assert not isinstance(exc_info.value, ObjectNotFound)

    def test_connection_error(self, tmp_path):
        client = MagicMock()
        client.head_object.side_effect = EndpointConnectionError(endpoint_url="http://minio:9000")
        with pytest.raises(StorageError):
            S3ObjectStorage(client).stat("videos", "k")

    def test_stat(self):
        client = MagicMock()
        client.head_object.return_value = {"ContentLength": 123}
        assert S3ObjectStorage(client).stat("videos", "k") == 123

    def test_ensure_bucket_creates_missing(self):
        client = MagicMock()
        client.head_bucket.side_effect = _client_error("404", "HeadBucket")
        S3ObjectStorage(client).ensure_bucket("videos")
        client.create_bucket.assert_called_once_with(Bucket="videos")

    def test_ensure_bucket_existing(self):
        client = MagicMock()
        S3ObjectStorage(client).ensure_bucket("videos")
        client.create_bucket.assert_not_called()
