from __future__ import annotations

import os
import re
from collections.abc import Mapping
from dataclasses import dataclass
from pathlib import Path


def _clean_filename(value: str) -> str:
    cleaned = re.sub(r"[^A-Za-z0-9._-]+", "_", value.strip())
    cleaned = cleaned.lstrip(".")
    return cleaned or "upload"


@dataclass(frozen=True)
class FileStorageConfig:
    backend: str
    root: str
    bucket: str
    prefix: str
    endpoint: str
    region: str
    access_key: str
    secret_key: str
    force_path_style: bool


class FileStorageBackend:
    """Flat namespace of stored upload files addressed by filename."""

    backend_name = "base"

    def put_file(self, *, filename: str, content_bytes: bytes, content_type: str | None = None) -> str:
        raise NotImplementedError

    def get_file(self, *, filename: str) -> bytes:
        raise NotImplementedError

    def delete_file(self, *, filename: str) -> bool:
        raise NotImplementedError

    def exists(self, *, filename: str) -> bool:
        raise NotImplementedError


class LocalFileStorage(FileStorageBackend):
    backend_name = "local"

    def __init__(self, *, config: FileStorageConfig) -> None:
        self._root = Path(config.root)
        self._root.mkdir(parents=True, exist_ok=True)

    @property
    def root(self) -> Path:
        return self._root

    def put_file(self, *, filename: str, content_bytes: bytes, content_type: str | None = None) -> str:
        name = _clean_filename(filename)
        path = self._root / name
        path.write_bytes(content_bytes)
        return name

    def get_file(self, *, filename: str) -> bytes:
        path = self._path_for(filename)
        if not path.is_file():
            raise FileNotFoundError(filename)
        return path.read_bytes()

    def delete_file(self, *, filename: str) -> bool:
        path = self._path_for(filename)
        if not path.is_file():
            return False
        path.unlink()
        return True

    def exists(self, *, filename: str) -> bool:
        return self._path_for(filename).is_file()

    def reset(self) -> None:
        if not self._root.exists():
            return
        for path in sorted(self._root.rglob("*"), reverse=True):
            if path.is_file():
                path.unlink()
            elif path.is_dir():
                path.rmdir()

    def _path_for(self, filename: str) -> Path:
        name = _clean_filename(filename)
        if name != filename:
            # Only names produced by put_file are addressable.
            raise FileNotFoundError(filename)
        return self._root / name


class S3FileStorage(FileStorageBackend):
    backend_name = "s3"

    def __init__(self, *, config: FileStorageConfig) -> None:
        try:
            import boto3  # type: ignore
        except Exception as exc:  # pragma: no cover - optional dependency
            raise RuntimeError("boto3 is required for the s3 file storage backend") from exc
        self._bucket = config.bucket
        self._prefix = config.prefix.strip("/")
        session = boto3.session.Session(
            aws_access_key_id=config.access_key or None,
            aws_secret_access_key=config.secret_key or None,
            region_name=config.region or None,
        )
        self._client = session.client(
            "s3",
            endpoint_url=config.endpoint or None,
            config=boto3.session.Config(s3={"addressing_style": "path" if config.force_path_style else "auto"}),
        )

    def put_file(self, *, filename: str, content_bytes: bytes, content_type: str | None = None) -> str:
        name = _clean_filename(filename)
        self._client.put_object(
            Bucket=self._bucket,
            Key=self._key_for(name),
            Body=content_bytes,
            ContentType=content_type or "application/octet-stream",
        )
        return name

    def get_file(self, *, filename: str) -> bytes:
        try:
            response = self._client.get_object(Bucket=self._bucket, Key=self._key_for(filename))
        except Exception as exc:
            if _is_missing_key_error(exc):
                raise FileNotFoundError(filename) from exc
            raise
        return response["Body"].read()

    def delete_file(self, *, filename: str) -> bool:
        if not self.exists(filename=filename):
            return False
        self._client.delete_object(Bucket=self._bucket, Key=self._key_for(filename))
        return True

    def exists(self, *, filename: str) -> bool:
        try:
            self._client.head_object(Bucket=self._bucket, Key=self._key_for(filename))
            return True
        except Exception as exc:
            if _is_missing_key_error(exc):
                return False
            raise

    def _key_for(self, filename: str) -> str:
        name = _clean_filename(filename)
        if self._prefix:
            return f"{self._prefix}/uploads/{name}"
        return f"uploads/{name}"


def _is_missing_key_error(exc: Exception) -> bool:
    response = getattr(exc, "response", None)
    if not isinstance(response, dict):
        return False
    code = str(response.get("Error", {}).get("Code", ""))
    return code in {"404", "NoSuchKey", "NotFound"}


def create_file_storage_from_env(environ: Mapping[str, str] | None = None) -> FileStorageBackend:
    env = os.environ if environ is None else environ
    backend = env.get("FIRENOC_FILE_STORAGE_BACKEND", "local").strip().lower() or "local"
    config = FileStorageConfig(
        backend=backend,
        root=env.get("UPLOADS_ROOT", "uploads").strip() or "uploads",
        bucket=env.get("FILE_STORAGE_BUCKET", "firenoc").strip() or "firenoc",
        prefix=env.get("FILE_STORAGE_PREFIX", "").strip(),
        endpoint=env.get("FILE_STORAGE_ENDPOINT", "").strip(),
        region=env.get("FILE_STORAGE_REGION", "").strip(),
        access_key=env.get("FILE_STORAGE_ACCESS_KEY", "").strip(),
        secret_key=env.get("FILE_STORAGE_SECRET_KEY", "").strip(),
        force_path_style=env.get("FILE_STORAGE_FORCE_PATH_STYLE", "true").strip().lower()
        not in {"0", "false", "no", "off"},
    )
    if config.backend == "s3":
        return S3FileStorage(config=config)
    return LocalFileStorage(config=config)
