from __future__ import annotations

import os
from pathlib import Path
from typing import Literal

from pydantic import BaseModel, Field, model_validator

from shobdotori.runtime_paths import RUNTIME_DB_PATH, RUNTIME_RECORDINGS_DIR

KNOWN_DIALECT_CODES = (
    "dhaka",
    "chittagong",
    "rajshahi",
    "khulna",
    "barisal",
    "sylhet",
    "rangpur",
    "mymensingh",
    "noakhali",
    "comilla",
    "feni",
    "brahmanbaria",
    "sandwip",
    "chandpur",
    "lakshmipur",
    "bhola",
    "patuakhali",
    "bagerhat",
    "jessore",
    "kushtia",
    "jhenaidah",
    "gaibandha",
    "kurigram",
    "panchagarh",
    "lalmonirhat",
    "dinajpur",
    "natore",
    "pabna",
    "sirajganj",
    "bogura",
)
DEFAULT_FOLDER_NAMES: dict[str, str] = {code: code.capitalize() for code in KNOWN_DIALECT_CODES}


class Settings(BaseModel):
    selection_policy: Literal["sequential", "random"] = "sequential"
    storage_backend: Literal["drive", "local"] = "drive"
    db_path: Path = RUNTIME_DB_PATH
    local_storage_dir: Path = RUNTIME_RECORDINGS_DIR
    drive_api_url: str = "https://www.googleapis.com/drive/v3"
    drive_upload_url: str = "https://www.googleapis.com/upload/drive/v3/files"
    drive_token_url: str = "https://oauth2.googleapis.com/token"
    drive_root_folder_id: str | None = Field(
        default_factory=lambda: os.getenv("GOOGLE_DRIVE_FOLDER_ID")
    )
    drive_client_id: str | None = Field(
        default_factory=lambda: os.getenv("GOOGLE_CLIENT_ID")
    )
    drive_client_secret: str | None = Field(
        default_factory=lambda: os.getenv("GOOGLE_CLIENT_SECRET")
    )
    drive_refresh_token: str | None = Field(
        default_factory=lambda: os.getenv("GOOGLE_REFRESH_TOKEN")
    )
    folder_names: dict[str, str] = Field(default_factory=lambda: dict(DEFAULT_FOLDER_NAMES))
    allowed_extensions: tuple[str, ...] = (".wav", ".webm", ".ogg", ".mp3")
    allowed_genders: tuple[str, ...] = ("male", "female")
    max_upload_bytes: int = Field(default=10 * 1024 * 1024, gt=0)
    ffmpeg_binary: str = "ffmpeg"
    transcode_timeout_seconds: float = Field(default=60.0, gt=0.0)
    upload_timeout_seconds: float = Field(default=60.0, gt=0.0)
    reconcile_on_startup: bool = True

    @model_validator(mode="after")
    def validate_drive_credentials(self) -> "Settings":
        if self.storage_backend != "drive":
            return self
        missing = [
            name
            for name in (
                "drive_root_folder_id",
                "drive_client_id",
                "drive_client_secret",
                "drive_refresh_token",
            )
            if not getattr(self, name)
        ]
        if missing:
            raise ValueError(f"drive storage requires {', '.join(missing)}")
        return self
