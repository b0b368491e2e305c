"""Tests for the resume file source: local filesystem and S3 with mocked boto3."""

import sys
from unittest.mock import MagicMock, patch

import pytest

from app.errors import FileRetrievalError
from app.object_storage import (
    LocalObjectStorage,
    ObjectStorageConfig,
    S3ObjectStorage,
    build_upload_path,
    create_object_storage_from_env,
)


class FakeClientError(Exception):
    def __init__(self, code: str):
        super().__init__(code)
        self.response = {"Error": {"Code": code}}


def _config(**overrides) -> ObjectStorageConfig:
    values = {
        "backend": "s3",
        "bucket": "resumes",
        "root": "/tmp",
        "endpoint": "http://localhost:9000",
        "region": "us-east-1",
        "access_key": "key",
        "secret_key": "secret",
        "force_path_style": True,
        "public_base_url": "",
    }
    values.update(overrides)
    return ObjectStorageConfig(**values)


@pytest.fixture
def mock_boto3():
    """Mock boto3 and botocore for S3ObjectStorage tests."""
    mock_boto3_module = MagicMock()
    mock_botocore = MagicMock()
    mock_client = MagicMock()
    mock_boto3_module.session.Session.return_value.client.return_value = mock_client

    with patch.dict(
        sys.modules,
        {"boto3": mock_boto3_module, "botocore": mock_botocore, "botocore.config": mock_botocore.config},
    ):
        yield mock_boto3_module, mock_client


def test_build_upload_path_keeps_extension():
    path = build_upload_path("Jane Doe.PDF")
    assert path.startswith("uploads/")
    assert path.endswith(".PDF")
    assert build_upload_path("no_extension").endswith(".bin")


def test_local_storage_round_trip_and_missing(tmp_path):
    storage = LocalObjectStorage(config=_config(backend="local", root=str(tmp_path), public_base_url="http://files.test/"))

    key = storage.put_bytes("/uploads/a.pdf", b"resume")

    assert key == "uploads/a.pdf"
    assert storage.get_bytes("uploads/a.pdf") == b"resume"
    assert storage.public_url("uploads/a b.pdf") == "http://files.test/resumes/uploads/a%20b.pdf"
    with pytest.raises(FileRetrievalError) as exc:
        storage.get_bytes("uploads/missing.pdf")
    assert exc.value.path == "uploads/missing.pdf"


def test_local_storage_rejects_traversal(tmp_path):
    storage = LocalObjectStorage(config=_config(backend="local", root=str(tmp_path)))
    with pytest.raises(ValueError, match="relative segments"):
        storage.get_bytes("uploads/../../etc/passwd")
    with pytest.raises(ValueError, match="must not be empty"):
        storage.put_bytes("  ", b"x")


def test_local_storage_file_uri_without_public_base(tmp_path):
    storage = LocalObjectStorage(config=_config(backend="local", root=str(tmp_path)))
    storage.put_bytes("uploads/a.pdf", b"resume")
    assert storage.public_url("uploads/a.pdf").startswith("file://")


def test_factory_rejects_unknown_backend(tmp_path):
    with pytest.raises(RuntimeError, match="unsupported object storage backend"):
        create_object_storage_from_env({"OBJECT_STORAGE_BACKEND": "gcs", "OBJECT_STORAGE_ROOT": str(tmp_path)})
    local = create_object_storage_from_env({"OBJECT_STORAGE_ROOT": str(tmp_path)})
    assert isinstance(local, LocalObjectStorage)


def test_s3_get_bytes_reads_and_closes_body(mock_boto3):
    _, mock_client = mock_boto3
    body = MagicMock()
    body.read.return_value = b"%PDF"
    mock_client.get_object.return_value = {"Body": body}
    storage = S3ObjectStorage(config=_config())

    assert storage.get_bytes("uploads/a.pdf") == b"%PDF"
    mock_client.get_object.assert_called_once_with(Bucket="resumes", Key="uploads/a.pdf")
    body.close.assert_called_once()


def test_s3_missing_key_maps_to_file_retrieval_error(mock_boto3):
    _, mock_client = mock_boto3
    mock_client.get_object.side_effect = FakeClientError("NoSuchKey")
    storage = S3ObjectStorage(config=_config())

    with pytest.raises(FileRetrievalError) as exc:
        storage.get_bytes("uploads/gone.pdf")
    assert exc.value.reason == "NoSuchKey"


def test_s3_other_errors_propagate(mock_boto3):
    _, mock_client = mock_boto3
    mock_client.get_object.side_effect = FakeClientError("AccessDenied")
    storage = S3ObjectStorage(config=_config())

    with pytest.raises(FakeClientError):
        storage.get_bytes("uploads/a.pdf")


def test_s3_put_creates_missing_bucket_once(mock_boto3):
    _, mock_client = mock_boto3
    mock_client.head_bucket.side_effect = FakeClientError("404")
    storage = S3ObjectStorage(config=_config())

    storage.put_bytes("uploads/a.pdf", b"one", content_type="application/pdf")
    storage.put_bytes("uploads/b.pdf", b"two")

    mock_client.create_bucket.assert_called_once_with(Bucket="resumes")
    assert mock_client.put_object.call_count == 2
    kwargs = mock_client.put_object.call_args_list[0].kwargs
    assert kwargs["ContentType"] == "application/pdf"
    assert kwargs["ContentLength"] == 3


def test_s3_public_url_presigns_without_base(mock_boto3):
    _, mock_client = mock_boto3
    mock_client.generate_presigned_url.return_value = "http://minio/resumes/uploads/a.pdf?sig=1"
    storage = S3ObjectStorage(config=_config())

    assert storage.public_url("uploads/a.pdf") == "http://minio/resumes/uploads/a.pdf?sig=1"
    mock_client.generate_presigned_url.assert_called_once_with(
        "get_object",
        Params={"Bucket": "resumes", "Key": "uploads/a.pdf"},
        ExpiresIn=3600,
    )


def test_s3_public_url_uses_configured_base(mock_boto3):
    _, mock_client = mock_boto3
    storage = S3ObjectStorage(config=_config(public_base_url="https://cdn.example.com"))

    assert storage.public_url("uploads/a.pdf") == "https://cdn.example.com/resumes/uploads/a.pdf"
    mock_client.generate_presigned_url.assert_not_called()
