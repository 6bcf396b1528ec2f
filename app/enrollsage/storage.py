"""
Blob storage for applicant documents (birth certificates, report cards, ...).

Local disk in development, any S3-compatible bucket in production. Keys are scoped
per school: ``schools/<school_id>/applications/<application_id>/<sha12>-<name>``.
"""
from __future__ import annotations

import os
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from werkzeug.utils import secure_filename

MAX_DOCUMENT_BYTES = 10 * 1024 * 1024
DOCUMENT_EXTENSIONS = {
    ".pdf": "application/pdf",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".heic": "image/heic",
    ".doc": "application/msword",
    ".docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
}


class StorageError(RuntimeError):
    pass


def clean_document_name(filename: str | None) -> str:
    """Safe on-disk name; raises if the extension is not an accepted document type."""
    name = secure_filename(filename or "") or "document"
    ext = Path(name).suffix.lower()
    if ext not in DOCUMENT_EXTENSIONS:
        allowed = ", ".join(sorted(DOCUMENT_EXTENSIONS))
        raise StorageError(f"Unsupported file type. Upload one of: {allowed}")
    return name


def check_document_bytes(data: bytes) -> None:
    if not data:
        raise StorageError("The uploaded file is empty.")
    if len(data) > MAX_DOCUMENT_BYTES:
        raise StorageError(f"Files must be {MAX_DOCUMENT_BYTES // (1024 * 1024)} MB or smaller.")


def content_type_for(name: str, reported: str | None = None) -> str:
    guessed = DOCUMENT_EXTENSIONS.get(Path(name).suffix.lower())
    if reported and reported != "application/octet-stream":
        return reported
    return guessed or "application/octet-stream"


def application_document_key(school_id: int, application_id: int, sha256: str, name: str) -> str:
    return f"schools/{school_id}/applications/{application_id}/{sha256[:12]}-{name}"


class Storage:
    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        raise NotImplementedError

    def open(self, key: str) -> BinaryIO:
        raise NotImplementedError

    def ping(self) -> str:
        """Confirm the backend is reachable; returns a short description."""
        raise NotImplementedError


@dataclass(frozen=True)
class LocalStorage(Storage):
    root: Path

    def _path(self, key: str) -> Path:
        parts = key.lstrip("/").replace("\\", "/").split("/")
        if ".." in parts:
            raise StorageError(f"Invalid storage key: {key}")
        return self.root.joinpath(*parts)

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        p = self._path(key)
        p.parent.mkdir(parents=True, exist_ok=True)
        p.write_bytes(data)

    def open(self, key: str) -> BinaryIO:
        p = self._path(key)
        if not p.is_file():
            raise StorageError(f"Document not found: {key}")
        return p.open("rb")

    def ping(self) -> str:
        self.root.mkdir(parents=True, exist_ok=True)
        if not os.access(self.root, os.W_OK):
            raise StorageError(f"Storage directory {self.root} is not writable.")
        return f"local:{self.root}"


@dataclass(frozen=True)
class S3Storage(Storage):
    endpoint: str
    region: str
    bucket: str
    access_key_id: str
    secret_access_key: str

    def _client(self):
        return boto3.client(
            "s3",
            endpoint_url=f"https://{self.endpoint}" if self.endpoint else None,
            region_name=self.region or None,
            aws_access_key_id=self.access_key_id,
            aws_secret_access_key=self.secret_access_key,
        )

    def put_bytes(self, key: str, data: bytes, *, content_type: str | None = None) -> None:
        extra: dict[str, object] = {"ServerSideEncryption": "AES256"}
        if content_type:
            extra["ContentType"] = content_type
        try:
            self._client().put_object(Bucket=self.bucket, Key=key, Body=data, **extra)
        except (BotoCoreError, ClientError) as e:
            raise StorageError("Could not store the document. Please try again.") from e

    def open(self, key: str) -> BinaryIO:
        try:
            obj = self._client().get_object(Bucket=self.bucket, Key=key)
        except ClientError as e:
            raise StorageError(f"Document not found: {key}") from e
        return obj["Body"]  # type: ignore[return-value]

    def ping(self) -> str:
        try:
            self._client().head_bucket(Bucket=self.bucket)
        except (BotoCoreError, ClientError) as e:
            raise StorageError(f"Cannot access S3 bucket '{self.bucket}': {e}") from e
        return f"s3:{self.bucket}"


S3_REQUIRED = ("S3_ENDPOINT", "S3_BUCKET", "S3_ACCESS_KEY_ID", "S3_SECRET_ACCESS_KEY")


def storage_from_config(config: dict) -> Storage:
    backend = (config.get("STORAGE_BACKEND") or "local").strip().lower()
    if backend == "s3":
        missing = [k for k in S3_REQUIRED if not (config.get(k) or "").strip()]
        if missing:
            raise StorageError(f"Missing S3 settings: {', '.join(missing)}")
        return S3Storage(
            endpoint=config["S3_ENDPOINT"].strip(),
            region=(config.get("S3_REGION") or "nyc3").strip(),
            bucket=config["S3_BUCKET"].strip(),
            access_key_id=config["S3_ACCESS_KEY_ID"].strip(),
            secret_access_key=config["S3_SECRET_ACCESS_KEY"].strip(),
        )
    root = (config.get("STORAGE_ROOT") or "").strip()
    return LocalStorage(root=Path(root) if root else Path(os.getcwd()) / "storage")
