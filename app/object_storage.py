from __future__ import annotations

import os
import re
import uuid
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from urllib.parse import quote

from app.errors import FileRetrievalError

PUBLIC_URL_EXPIRY_S = 60 * 60


def _clean_segment(value: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", value.strip())
    return cleaned or "object"


def _normalize_key(path: str) -> str:
    key = str(path or "").strip().lstrip("/")
    if not key:
        raise ValueError("object path must not be empty")
    parts = PurePosixPath(key).parts
    if any(part in {"..", "."} for part in parts):
        raise ValueError(f"object path must not contain relative segments: {path}")
    return "/".join(parts)


def build_upload_path(filename: str) -> str:
    """Key for a freshly uploaded resume, uploads/<uuid>.<ext>."""
    suffix = PurePosixPath(filename or "").suffix.lstrip(".")
    ext = _clean_segment(suffix) if suffix else "bin"
    return f"uploads/{uuid.uuid4()}.{ext}"


@dataclass(frozen=True)
class ObjectStorageConfig:
    backend: str
    bucket: str
    root: str
    endpoint: str
    region: str
    access_key: str
    secret_key: str
    force_path_style: bool
    public_base_url: str


class ObjectStorageBackend:
    backend_name = "base"

    def get_bytes(self, path: str) -> bytes:
        raise NotImplementedError

    def put_bytes(self, path: str, data: bytes, *, content_type: str | None = None) -> str:
        raise NotImplementedError

    def public_url(self, path: str) -> str:
        raise NotImplementedError


class LocalObjectStorage(ObjectStorageBackend):
    backend_name = "local"

    def __init__(self, *, config: ObjectStorageConfig) -> None:
        self._bucket = config.bucket
        self._root = Path(config.root)
        self._public_base_url = config.public_base_url.rstrip("/")
        self._root.mkdir(parents=True, exist_ok=True)

    def _path_for_key(self, key: str) -> Path:
        return self._root / self._bucket / key

    def get_bytes(self, path: str) -> bytes:
        key = _normalize_key(path)
        target = self._path_for_key(key)
        if not target.is_file():
            raise FileRetrievalError(path)
        return target.read_bytes()

    def put_bytes(self, path: str, data: bytes, *, content_type: str | None = None) -> str:
        key = _normalize_key(path)
        target = self._path_for_key(key)
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_bytes(data)
        return key

    def public_url(self, path: str) -> str:
        key = _normalize_key(path)
        if self._public_base_url:
            return f"{self._public_base_url}/{self._bucket}/{quote(key)}"
        return self._path_for_key(key).resolve().as_uri()

    def reset(self) -> None:
        if not self._root.exists():
            return
        for path in sorted(self._root.rglob("*"), reverse=True):
            if path.is_file():
                path.unlink()
            elif path.is_dir():
                path.rmdir()


class S3ObjectStorage(ObjectStorageBackend):
    """S3-compatible storage (MinIO in the default deployment)."""

    backend_name = "s3"

    def __init__(self, *, config: ObjectStorageConfig) -> None:
        try:
            import boto3  # type: ignore
            from botocore.config import Config  # type: ignore
        except Exception as exc:  # pragma: no cover - optional dependency
            raise RuntimeError("boto3 is required for s3 object storage backend") from exc
        self._bucket = config.bucket
        self._public_base_url = config.public_base_url.rstrip("/")
        session = boto3.session.Session(
            aws_access_key_id=config.access_key or None,
            aws_secret_access_key=config.secret_key or None,
            region_name=config.region or None,
        )
        self._client = session.client(
            "s3",
            endpoint_url=config.endpoint or None,
            config=Config(s3={"addressing_style": "path" if config.force_path_style else "auto"}),
        )
        self._bucket_checked = False

    @staticmethod
    def _error_code(exc: Exception) -> str:
        response = getattr(exc, "response", None)
        if isinstance(response, dict):
            return str(response.get("Error", {}).get("Code", ""))
        return ""

    def _ensure_bucket(self) -> None:
        if self._bucket_checked:
            return
        try:
            self._client.head_bucket(Bucket=self._bucket)
        except Exception as exc:
            if self._error_code(exc) not in {"404", "NoSuchBucket", "NotFound"}:
                raise
            self._client.create_bucket(Bucket=self._bucket)
        self._bucket_checked = True

    def get_bytes(self, path: str) -> bytes:
        key = _normalize_key(path)
        try:
            response = self._client.get_object(Bucket=self._bucket, Key=key)
        except Exception as exc:
            if self._error_code(exc) in {"NoSuchKey", "404", "NotFound", "NoSuchBucket"}:
                raise FileRetrievalError(path, reason=self._error_code(exc)) from exc
            raise
        body = response["Body"]
        try:
            return body.read()
        finally:
            body.close()

    def put_bytes(self, path: str, data: bytes, *, content_type: str | None = None) -> str:
        key = _normalize_key(path)
        self._ensure_bucket()
        self._client.put_object(
            Bucket=self._bucket,
            Key=key,
            Body=data,
            ContentLength=len(data),
            ContentType=content_type or "application/octet-stream",
        )
        return key

    def public_url(self, path: str) -> str:
        key = _normalize_key(path)
        if self._public_base_url:
            return f"{self._public_base_url}/{self._bucket}/{quote(key)}"
        return self._client.generate_presigned_url(
            "get_object",
            Params={"Bucket": self._bucket, "Key": key},
            ExpiresIn=PUBLIC_URL_EXPIRY_S,
        )


def create_object_storage_from_env(environ: Mapping[str, str] | None = None) -> ObjectStorageBackend:
    env = os.environ if environ is None else environ
    backend = env.get("OBJECT_STORAGE_BACKEND", "local").strip().lower() or "local"
    config = ObjectStorageConfig(
        backend=backend,
        bucket=env.get("OBJECT_STORAGE_BUCKET", "resumes").strip() or "resumes",
        root=env.get("OBJECT_STORAGE_ROOT", "/tmp/upload-queue-object-storage").strip()
        or "/tmp/upload-queue-object-storage",
        endpoint=env.get("OBJECT_STORAGE_ENDPOINT", "").strip(),
        region=env.get("OBJECT_STORAGE_REGION", "").strip(),
        access_key=env.get("OBJECT_STORAGE_ACCESS_KEY", "").strip(),
        secret_key=env.get("OBJECT_STORAGE_SECRET_KEY", "").strip(),
        force_path_style=env.get("OBJECT_STORAGE_FORCE_PATH_STYLE", "true").strip().lower()
        not in {"0", "false", "no", "off"},
        public_base_url=env.get("OBJECT_STORAGE_PUBLIC_URL", "").strip(),
    )
    if config.backend == "s3":
        return S3ObjectStorage(config=config)
    if config.backend != "local":
        raise RuntimeError(f"unsupported object storage backend: {config.backend}")
    return LocalObjectStorage(config=config)
