from __future__ import annotations

import json
import logging
import time
from datetime import datetime, timezone
from pathlib import Path
from threading import Lock
from typing import Any, Protocol
from uuid import uuid4

import httpx

from shobdotori.config import Settings
from shobdotori.errors import StorageError
from shobdotori.models import StorageRef, sanitize_dialect

logger = logging.getLogger(__name__)

FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
TOKEN_EXPIRY_MARGIN_SECONDS = 60.0


def folder_name_for(dialect_code: str, folder_names: dict[str, str]) -> str:
    sanitized = sanitize_dialect(dialect_code)
    return folder_names.get(sanitized) or sanitized.capitalize()


def generate_filename(dialect_code: str, index: int, gender: str | None = None) -> str:
    sanitized = sanitize_dialect(dialect_code)
    if gender:
        return f"{gender.lower()}_{sanitized}_{index}.wav"
    return f"{sanitized}_{index}.wav"


def pending_filename(dialect_code: str, gender: str | None = None) -> str:
    """Unique staging name; the file is renamed once its sequence index is committed."""
    prefix = f"{gender.lower()}_" if gender else ""
    return f"pending_{prefix}{sanitize_dialect(dialect_code)}_{uuid4().hex}.wav"


class RecordingStorage(Protocol):
    def upload(self, data: bytes, filename: str, dialect_code: str) -> StorageRef: ...

    def rename(self, storage_id: str, new_filename: str) -> StorageRef: ...

    def delete(self, storage_id: str) -> None: ...

    def delete_folder_if_empty(self, dialect_code: str) -> bool: ...

    def list_files(self, dialect_code: str) -> list[dict[str, Any]]: ...

    def list_folders(self) -> list[dict[str, Any]]: ...

    def ping(self) -> dict[str, Any]: ...


class LocalStorage:
    """Folder-per-dialect storage on the local filesystem."""

    def __init__(self, root_dir: Path, folder_names: dict[str, str]) -> None:
        self._root_dir = root_dir
        self._folder_names = dict(folder_names)

    def _folder(self, dialect_code: str) -> Path:
        return self._root_dir / folder_name_for(dialect_code, self._folder_names)

    def _resolve(self, storage_id: str) -> Path:
        path = (self._root_dir / storage_id).resolve()
        if self._root_dir.resolve() not in path.parents:
            raise StorageError(f"storage id outside storage root: {storage_id}")
        return path

    def upload(self, data: bytes, filename: str, dialect_code: str) -> StorageRef:
        folder = self._folder(dialect_code)
        target = folder / filename
        try:
            folder.mkdir(parents=True, exist_ok=True)
            with open(target, "xb") as handle:
                handle.write(data)
        except FileExistsError as exc:
            raise StorageError(f"{folder.name}/{filename} already exists") from exc
        except OSError as exc:
            raise StorageError(f"failed to store {filename}: {exc}") from exc
        return StorageRef(
            storage_id=f"{folder.name}/{filename}",
            filename=filename,
            link=target.resolve().as_uri(),
            size=len(data),
        )

    def rename(self, storage_id: str, new_filename: str) -> StorageRef:
        source = self._resolve(storage_id)
        target = source.parent / new_filename
        try:
            data = source.read_bytes()
            with open(target, "xb") as handle:
                handle.write(data)
            source.unlink()
        except FileExistsError as exc:
            raise StorageError(f"{source.parent.name}/{new_filename} already exists") from exc
        except OSError as exc:
            raise StorageError(f"failed to rename {storage_id}: {exc}") from exc
        return StorageRef(
            storage_id=f"{source.parent.name}/{new_filename}",
            filename=new_filename,
            link=target.resolve().as_uri(),
            size=len(data),
        )

    def delete(self, storage_id: str) -> None:
        try:
            self._resolve(storage_id).unlink(missing_ok=True)
        except OSError as exc:
            raise StorageError(f"failed to delete {storage_id}: {exc}") from exc

    def delete_folder_if_empty(self, dialect_code: str) -> bool:
        folder = self._folder(dialect_code)
        try:
            if not folder.exists() or any(folder.iterdir()):
                return False
            folder.rmdir()
        except OSError as exc:
            raise StorageError(f"failed to delete folder {folder.name}: {exc}") from exc
        return True

    def list_files(self, dialect_code: str) -> list[dict[str, Any]]:
        folder = self._folder(dialect_code)
        if not folder.exists():
            return []
        files: list[dict[str, Any]] = []
        for path in sorted(folder.iterdir()):
            if not path.is_file():
                continue
            stat = path.stat()
            files.append(
                {
                    "id": f"{folder.name}/{path.name}",
                    "name": path.name,
                    "size": stat.st_size,
                    "created_at": datetime.fromtimestamp(stat.st_mtime, tz=timezone.utc).isoformat(),
                    "link": path.resolve().as_uri(),
                }
            )
        return files

    def list_folders(self) -> list[dict[str, Any]]:
        if not self._root_dir.exists():
            return []
        return [
            {
                "id": path.name,
                "name": path.name,
                "file_count": sum(1 for child in path.iterdir() if child.is_file()),
            }
            for path in sorted(self._root_dir.iterdir())
            if path.is_dir()
        ]

    def ping(self) -> dict[str, Any]:
        return {"backend": "local", "root": str(self._root_dir), "accessible": True}


class DriveStorage:
    """Google Drive v3 client: one sub-folder per dialect under a root folder."""

    def __init__(self, settings: Settings) -> None:
        if not settings.drive_root_folder_id:
            raise ValueError("drive_root_folder_id is required for drive storage")
        self._settings = settings
        self._root_folder_id = settings.drive_root_folder_id
        self._lock = Lock()
        self._access_token: str | None = None
        self._token_expires_at = 0.0
        self._folder_ids: dict[str, str] = {}

    def _token(self) -> str:
        with self._lock:
            if self._access_token and time.monotonic() < self._token_expires_at:
                return self._access_token

            try:
                response = httpx.post(
                    self._settings.drive_token_url,
                    data={
                        "client_id": self._settings.drive_client_id,
                        "client_secret": self._settings.drive_client_secret,
                        "refresh_token": self._settings.drive_refresh_token,
                        "grant_type": "refresh_token",
                    },
                    timeout=30.0,
                )
                response.raise_for_status()
                payload = response.json()
            except httpx.HTTPError as exc:
                raise StorageError(f"failed to refresh drive access token: {exc}") from exc

            self._access_token = str(payload["access_token"])
            expires_in = float(payload.get("expires_in", 3600))
            self._token_expires_at = time.monotonic() + max(0.0, expires_in - TOKEN_EXPIRY_MARGIN_SECONDS)
            return self._access_token

    def _headers(self) -> dict[str, str]:
        return {"Authorization": f"Bearer {self._token()}"}

    def _request(
        self,
        method: str,
        url: str,
        *,
        timeout: float = 30.0,
        extra_headers: dict[str, str] | None = None,
        **kwargs: Any,
    ) -> httpx.Response:
        headers = self._headers()
        if extra_headers:
            headers.update(extra_headers)
        try:
            response = httpx.request(method, url, headers=headers, timeout=timeout, **kwargs)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise StorageError(f"drive request failed: {method} {url}: {exc}") from exc
        return response

    def _find_folder(self, folder_name: str) -> str | None:
        escaped = folder_name.replace("\\", "\\\\").replace("'", "\\'")
        response = self._request(
            "GET",
            f"{self._settings.drive_api_url}/files",
            params={
                "q": (
                    f"name = '{escaped}' and '{self._root_folder_id}' in parents "
                    f"and mimeType = '{FOLDER_MIME_TYPE}' and trashed = false"
                ),
                "fields": "files(id, name)",
            },
        )
        files = response.json().get("files") or []
        return str(files[0]["id"]) if files else None

    def _folder_id(self, dialect_code: str, *, create: bool) -> str | None:
        folder_name = folder_name_for(dialect_code, self._settings.folder_names)
        cached = self._folder_ids.get(folder_name)
        if cached:
            return cached

        folder_id = self._find_folder(folder_name)
        if folder_id is None and create:
            response = self._request(
                "POST",
                f"{self._settings.drive_api_url}/files",
                params={"fields": "id, name"},
                json={
                    "name": folder_name,
                    "mimeType": FOLDER_MIME_TYPE,
                    "parents": [self._root_folder_id],
                },
            )
            folder_id = str(response.json()["id"])
            logger.info("drive_folder_created folder=%s id=%s", folder_name, folder_id)
        if folder_id is not None:
            self._folder_ids[folder_name] = folder_id
        return folder_id

    def upload(self, data: bytes, filename: str, dialect_code: str) -> StorageRef:
        folder_id = self._folder_id(dialect_code, create=True)
        boundary = f"shobdotori-{uuid4().hex}"
        metadata = json.dumps({"name": filename, "parents": [folder_id]})
        body = b"".join(
            [
                f"--{boundary}\r\nContent-Type: application/json; charset=UTF-8\r\n\r\n".encode(),
                metadata.encode("utf-8"),
                f"\r\n--{boundary}\r\nContent-Type: audio/wav\r\n\r\n".encode(),
                data,
                f"\r\n--{boundary}--\r\n".encode(),
            ]
        )
        response = self._request(
            "POST",
            self._settings.drive_upload_url,
            params={"uploadType": "multipart", "fields": "id, name, size, webViewLink"},
            content=body,
            extra_headers={"Content-Type": f"multipart/related; boundary={boundary}"},
            timeout=self._settings.upload_timeout_seconds,
        )
        payload = response.json()
        logger.info("drive_upload_completed filename=%s id=%s", filename, payload.get("id"))
        return StorageRef(
            storage_id=str(payload["id"]),
            filename=str(payload.get("name") or filename),
            link=payload.get("webViewLink"),
            size=int(payload["size"]) if payload.get("size") is not None else len(data),
        )

    def rename(self, storage_id: str, new_filename: str) -> StorageRef:
        payload = self._request(
            "PATCH",
            f"{self._settings.drive_api_url}/files/{storage_id}",
            params={"fields": "id, name, size, webViewLink"},
            json={"name": new_filename},
        ).json()
        return StorageRef(
            storage_id=str(payload.get("id") or storage_id),
            filename=str(payload.get("name") or new_filename),
            link=payload.get("webViewLink"),
            size=int(payload["size"]) if payload.get("size") is not None else None,
        )

    def delete(self, storage_id: str) -> None:
        try:
            self._request("DELETE", f"{self._settings.drive_api_url}/files/{storage_id}")
        except StorageError as exc:
            cause = exc.__cause__
            if isinstance(cause, httpx.HTTPStatusError) and cause.response.status_code == 404:
                logger.info("drive_delete_missing id=%s", storage_id)
                return
            raise

    def _list_children(self, folder_id: str, fields: str) -> list[dict[str, Any]]:
        response = self._request(
            "GET",
            f"{self._settings.drive_api_url}/files",
            params={
                "q": f"'{folder_id}' in parents and trashed = false",
                "fields": f"files({fields})",
                "orderBy": "name",
            },
        )
        return list(response.json().get("files") or [])

    def delete_folder_if_empty(self, dialect_code: str) -> bool:
        folder_id = self._folder_id(dialect_code, create=False)
        if folder_id is None:
            return False
        if self._list_children(folder_id, "id"):
            logger.info("drive_folder_not_empty dialect=%s", dialect_code)
            return False
        self.delete(folder_id)
        folder_name = folder_name_for(dialect_code, self._settings.folder_names)
        self._folder_ids.pop(folder_name, None)
        return True

    def list_files(self, dialect_code: str) -> list[dict[str, Any]]:
        folder_id = self._folder_id(dialect_code, create=False)
        if folder_id is None:
            return []
        return [
            {
                "id": str(item["id"]),
                "name": str(item["name"]),
                "size": int(item["size"]) if item.get("size") is not None else None,
                "created_at": item.get("createdTime"),
                "link": item.get("webViewLink"),
            }
            for item in self._list_children(folder_id, "id, name, size, createdTime, webViewLink")
        ]

    def list_folders(self) -> list[dict[str, Any]]:
        response = self._request(
            "GET",
            f"{self._settings.drive_api_url}/files",
            params={
                "q": f"'{self._root_folder_id}' in parents and mimeType = '{FOLDER_MIME_TYPE}' and trashed = false",
                "fields": "files(id, name)",
                "orderBy": "name",
            },
        )
        folders = response.json().get("files") or []
        return [
            {
                "id": str(folder["id"]),
                "name": str(folder["name"]),
                "file_count": len(self._list_children(str(folder["id"]), "id")),
            }
            for folder in folders
        ]

    def ping(self) -> dict[str, Any]:
        about = self._request(
            "GET",
            f"{self._settings.drive_api_url}/about",
            params={"fields": "user"},
        ).json()
        root = self._request(
            "GET",
            f"{self._settings.drive_api_url}/files/{self._root_folder_id}",
            params={"fields": "id, name, mimeType"},
        ).json()
        return {
            "backend": "drive",
            "user": about.get("user"),
            "folder_id": self._root_folder_id,
            "folder_name": root.get("name"),
            "accessible": True,
        }


def build_storage(settings: Settings) -> RecordingStorage:
    if settings.storage_backend == "local":
        return LocalStorage(settings.local_storage_dir, settings.folder_names)
    return DriveStorage(settings)
